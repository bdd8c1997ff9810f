# Shared fixtures for the tunproxy test-suite.
# Living at the repository root also puts the root on sys.path, so
# `import tunproxy` works without installing the package.
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from tunproxy.config import Settings
from tunproxy.main import create_app

TEST_TOKEN = "test-token-123"


class TargetBody(httpx.AsyncByteStream):
    """Response body left unread, as a real connection delivers it"""

    def __init__(self, content: bytes = b""):
        self.content = content

    async def __aiter__(self):
        if self.content:
            yield self.content

    async def aclose(self):
        pass


def target_response(status_code: int = 200, headers=None, content: bytes = b"") -> httpx.Response:
    # httpx reads an in-memory body on construction, which a relay cannot stream
    return httpx.Response(status_code, headers=headers, stream=TargetBody(content))


class RecordingTarget:
    """
    Stand-in for the target server behind httpx.MockTransport.

    Records every request it receives (with its body) and answers with
    ``responder``, which tests replace as needed.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = (
            lambda request: target_response(200, content=b"ok")
        )

    def respond_with(self, status_code: int = 200, headers=None, content: bytes = b"") -> None:
        self.responder = lambda request: target_response(status_code, headers, content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def settings():
    """Settings isolated from any local .env file"""
    return Settings(TUNPROXY_TOKEN=TEST_TOKEN, _env_file=None)


@pytest.fixture
def target():
    return RecordingTarget()


@pytest.fixture
def app(settings, target):
    """Application whose outbound calls all land on ``target``"""
    return create_app(settings, transport=httpx.MockTransport(target))


@pytest.fixture
def client(app):
    """Test client with the lifespan (and thus the outbound client) running"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Standard authorization headers for authenticated requests"""
    return {"Authorization": f"Bearer {TEST_TOKEN}"}
