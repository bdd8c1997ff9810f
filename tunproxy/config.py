"""
Configuration module for the tunnel proxy.

This module uses Pydantic Settings to load and validate environment variables
for the bearer secret, listening address, TLS material, the outbound client
and the CORS policy applied to every response.

Environment variables are loaded from a .env file or the system environment.
Settings are frozen once loaded: every request handler shares the same
instance and never mutates it.
"""

import logging
import os
import uuid
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


ENV_FILE_VARIABLE = "TUNPROXY_ENV_FILE"

_UPSTREAM_PROXY_SCHEMES = ("http", "https", "socks5", "socks5h")


def generate_token() -> str:
    """Return a fresh random bearer secret."""
    return str(uuid.uuid4())


class Settings(BaseSettings):
    """
    Proxy settings loaded from environment variables.

    Everything the core needs (secret, outbound client options, CORS
    policy) plus the bootstrap options consumed by the CLI.
    """

    # =========================================================================
    # Authentication
    # =========================================================================

    TUNPROXY_TOKEN: str = Field(
        default_factory=generate_token,
        description="Bearer secret clients must present as 'Authorization: Bearer <token>'",
        min_length=1,
    )

    # =========================================================================
    # Listener Configuration
    # =========================================================================

    LISTEN_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the proxy server",
    )

    LISTEN_PORT: int = Field(
        default=10010,
        description="Port to bind the proxy server",
        ge=1,
        le=65535,
    )

    TLS_ENABLED: bool = Field(
        default=False,
        description="Serve HTTPS instead of plain HTTP",
    )

    TLS_CERT_FILE: Optional[str] = Field(
        None,
        description="PEM certificate chain used when TLS_ENABLED is set",
    )

    TLS_KEY_FILE: Optional[str] = Field(
        None,
        description="PEM private key used when TLS_ENABLED is set",
    )

    PROXY_PATH: str = Field(
        default="/proxy",
        description="Path of the single proxy endpoint",
    )

    # =========================================================================
    # Outbound Client Configuration
    # =========================================================================

    UPSTREAM_PROXY: Optional[str] = Field(
        None,
        description="Optional proxy for outbound calls (http://, https://, socks5://)",
    )

    INSECURE_SKIP_VERIFY: bool = Field(
        default=False,
        description="Skip TLS certificate verification of target servers (development only)",
    )

    UPSTREAM_CONNECT_TIMEOUT: float = Field(default=10.0, gt=0)
    UPSTREAM_READ_TIMEOUT: float = Field(default=300.0, gt=0)
    UPSTREAM_WRITE_TIMEOUT: float = Field(default=300.0, gt=0)
    UPSTREAM_POOL_TIMEOUT: float = Field(default=10.0, gt=0)

    UPSTREAM_MAX_CONNECTIONS: int = Field(
        default=200,
        description="Maximum concurrent outbound connections",
        ge=1,
    )

    UPSTREAM_MAX_KEEPALIVE: int = Field(
        default=50,
        description="Maximum idle keep-alive connections kept in the pool",
        ge=0,
    )

    # =========================================================================
    # CORS Configuration
    # =========================================================================

    CORS_ALLOW_METHODS: str = Field(
        default="*",
        description="Value of Access-Control-Allow-Methods",
    )

    CORS_ALLOW_HEADERS: Optional[str] = Field(
        None,
        description="Fixed Access-Control-Allow-Headers (default: reflect the preflight request)",
    )

    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)

    CORS_MAX_AGE: int = Field(
        default=86400,
        description="Preflight cache lifetime in seconds",
        ge=0,
    )

    # =========================================================================
    # Logging
    # =========================================================================

    LOG_LEVEL: str = Field(default="INFO")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def token_was_generated(self) -> bool:
        """True when no token was configured and a random one is in use."""
        return "TUNPROXY_TOKEN" not in self.model_fields_set

    @property
    def listen_address(self) -> str:
        scheme = "https" if self.TLS_ENABLED else "http"
        return f"{scheme}://{self.LISTEN_HOST}:{self.LISTEN_PORT}"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("UPSTREAM_PROXY", "CORS_ALLOW_HEADERS", "TLS_CERT_FILE", "TLS_KEY_FILE")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty or whitespace-only values as unset."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("UPSTREAM_PROXY")
    @classmethod
    def validate_upstream_proxy(cls, v: Optional[str]) -> Optional[str]:
        """
        Validate the outbound proxy URL.

        Raises:
            ValueError: If the scheme is unsupported or the host is missing
        """
        if v is None:
            return None

        parts = urlsplit(v)
        if parts.scheme.lower() not in _UPSTREAM_PROXY_SCHEMES or not parts.hostname:
            raise ValueError(
                f"Invalid UPSTREAM_PROXY: '{v}'. "
                f"Expected a URL with one of the schemes {list(_UPSTREAM_PROXY_SCHEMES)}"
            )
        return v

    @field_validator("PROXY_PATH")
    @classmethod
    def validate_proxy_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"PROXY_PATH must start with '/', got: {v}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        v = v.upper()
        if v not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")

        return v

    @model_validator(mode="after")
    def validate_tls_material(self) -> "Settings":
        """TLS needs both a certificate and a key."""
        if self.TLS_ENABLED and not (self.TLS_CERT_FILE and self.TLS_KEY_FILE):
            raise ValueError("TLS_ENABLED requires both TLS_CERT_FILE and TLS_KEY_FILE")
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create the process-wide Settings instance.

    The .env file location can be overridden with the TUNPROXY_ENV_FILE
    environment variable.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If a variable is present but invalid.
    """
    env_file = os.environ.get(ENV_FILE_VARIABLE, ".env")
    return Settings(_env_file=env_file)


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Check settings that can only be verified at startup.

    Returns:
        Dictionary with validation status, errors and warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors: List[str] = []
    warnings: List[str] = []

    if settings.TLS_ENABLED:
        for name in ("TLS_CERT_FILE", "TLS_KEY_FILE"):
            path = getattr(settings, name)
            if not Path(path).is_file():
                errors.append(f"{name} does not exist: {path}")

    if settings.token_was_generated:
        warnings.append(
            "TUNPROXY_TOKEN is not set; a random token was generated for this run only"
        )

    if settings.INSECURE_SKIP_VERIFY:
        warnings.append("INSECURE_SKIP_VERIFY is enabled; target certificates are not checked")

    if not settings.TLS_ENABLED and settings.LISTEN_HOST not in ("127.0.0.1", "localhost", "::1"):
        warnings.append("Serving plain HTTP on a non-loopback address; the bearer token travels in clear text")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "listen_address": settings.listen_address,
        "upstream_proxy": settings.UPSTREAM_PROXY,
    }


ENV_TEMPLATE = """\
# tunproxy configuration
# Rename to .env (or point TUNPROXY_ENV_FILE at it) and restart.

# Bearer secret clients send as "Authorization: Bearer <token>"
TUNPROXY_TOKEN={token}

LISTEN_HOST=0.0.0.0
LISTEN_PORT=10010

# HTTPS listener
TLS_ENABLED=false
TLS_CERT_FILE=
TLS_KEY_FILE=

# Optional proxy for outbound calls, e.g. http://127.0.0.1:8080 or socks5://127.0.0.1:1080
UPSTREAM_PROXY=

# Skip certificate verification of target servers (development only)
INSECURE_SKIP_VERIFY=false

LOG_LEVEL=INFO
"""


def write_env_template(path) -> Path:
    """
    Write a commented configuration template with a fresh token.

    Args:
        path: Destination file

    Returns:
        The path that was written

    Raises:
        FileExistsError: If the destination already exists
    """
    path = Path(path)
    if path.exists():
        raise FileExistsError(f"Refusing to overwrite existing file: {path}")

    path.write_text(ENV_TEMPLATE.format(token=generate_token()), encoding="utf-8")
    logger.info("Wrote configuration template", extra={"path": str(path)})
    return path
