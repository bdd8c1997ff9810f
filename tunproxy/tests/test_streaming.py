"""
Streaming Relay Tests

Bodies must be relayed chunk by chunk in both directions: the proxy never
holds more than the chunk in flight, however large the body.
"""

import hashlib

import httpx
import pytest

from tunproxy.main import create_app, lifespan
from tunproxy.proxy.engine import relay_body

CHUNK = 64 * 1024
TOTAL = 50 * 1024 * 1024


class CountingStream(httpx.AsyncByteStream):
    """Produces ``count`` chunks lazily and tracks how far ahead it ran."""

    def __init__(self, count: int, size: int = CHUNK):
        self.count = count
        self.size = size
        self.produced = 0
        self.closed = False

    async def __aiter__(self):
        for _ in range(self.count):
            self.produced += 1
            yield b"\0" * self.size

    async def aclose(self):
        self.closed = True


class FailingStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"first"
        raise httpx.ReadError("connection reset")

    async def aclose(self):
        pass


def upstream_response(stream) -> httpx.Response:
    return httpx.Response(
        200,
        stream=stream,
        request=httpx.Request("GET", "https://x.test/big"),
    )


async def test_large_body_streams_with_bounded_lookahead():
    stream = CountingStream(TOTAL // CHUNK)
    consumed = 0
    total = 0

    async for chunk in relay_body(upstream_response(stream)):
        consumed += 1
        total += len(chunk)
        # The producer is never more than the current chunk ahead
        assert stream.produced - consumed <= 1

    assert total == TOTAL
    assert stream.closed


async def test_first_chunk_available_before_body_complete():
    stream = CountingStream(100)
    body = relay_body(upstream_response(stream))

    first = await body.__anext__()

    assert len(first) == CHUNK
    assert stream.produced == 1
    await body.aclose()


async def test_early_stop_closes_upstream():
    """A caller that goes away mid-body releases the upstream connection"""
    stream = CountingStream(100)
    body = relay_body(upstream_response(stream))

    await body.__anext__()
    await body.aclose()

    assert stream.closed
    assert stream.produced < 100


async def test_mid_stream_failure_is_raised():
    body = relay_body(upstream_response(FailingStream()))

    assert await body.__anext__() == b"first"
    with pytest.raises(httpx.ReadError):
        await body.__anext__()


# ============================================================================
# Request Direction
# ============================================================================

class UploadTarget(httpx.AsyncBaseTransport):
    """
    Target that consumes the request body as it arrives.

    Only a digest and the size of each chunk are kept; ``lookahead`` is the
    furthest the client's upload ran ahead of what the target had received.
    """

    def __init__(self, upload):
        self.upload = upload
        self.headers = None
        self.chunk_sizes = []
        self.digest = hashlib.sha256()
        self.lookahead = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.headers = request.headers
        async for chunk in request.stream:
            self.chunk_sizes.append(len(chunk))
            self.digest.update(chunk)
            self.lookahead = max(self.lookahead, self.upload.produced - len(self.chunk_sizes))
        return httpx.Response(204, stream=CountingStream(0))


class ChunkedUpload:
    """Async body with no declared length, generated lazily."""

    def __init__(self, count: int, size: int = CHUNK):
        self.count = count
        self.size = size
        self.produced = 0
        self.digest = hashlib.sha256()

    async def __aiter__(self):
        for i in range(self.count):
            self.produced += 1
            chunk = bytes([i % 256]) * self.size
            self.digest.update(chunk)
            yield chunk


async def test_chunked_upload_streams_to_target(settings):
    upload = ChunkedUpload(TOTAL // CHUNK)
    target = UploadTarget(upload)
    app = create_app(settings, transport=target)

    async with lifespan(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://tunproxy.test"
        ) as caller:
            response = await caller.post(
                "/proxy",
                params={"url": "https://x.test/upload"},
                headers={"Authorization": f"Bearer {settings.TUNPROXY_TOKEN}"},
                content=upload,
            )

    assert response.status_code == 204
    assert sum(target.chunk_sizes) == TOTAL
    assert target.digest.hexdigest() == upload.digest.hexdigest()
    # Relayed piecewise as it arrived, never gathered first
    assert len(target.chunk_sizes) > 1
    assert target.lookahead <= 2
    assert "content-length" not in target.headers
    assert target.headers["transfer-encoding"] == "chunked"
