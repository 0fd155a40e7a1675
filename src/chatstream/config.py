"""Connection and model configuration."""

import logging
import os
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field

from chatstream.errors import InvalidEndpointError, MissingCredentialError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "chatstream"
DEFAULT_X_TITLE = "chatstream"


class ModelConfig(BaseModel):
    """Where to send requests and which model to ask.

    Args:
        token: API key sent as a bearer token.
        host: Server host name.
        port: Explicit port, or ``None`` for the scheme default.
        scheme: ``https`` or ``http``.
        base_path: Path prefix of the API; ``/v1`` when ``None``.
        model_id: Model identifier placed in the request body.
        organization_id: Optional ``OpenAI-Organization`` header value.
        extra_headers: Headers added to every request.
        extra_body: Keys merged into every request body.
        request_timeout: Seconds before a stalled request fails.
    """

    token: str = ""
    host: str = "api.openai.com"
    port: int | None = None
    scheme: str = "https"
    base_path: str | None = None
    model_id: str = "gpt-4"
    organization_id: str | None = None
    extra_headers: dict[str, str] = Field(default_factory=dict)
    extra_body: dict[str, Any] = Field(default_factory=dict)
    request_timeout: float | None = 90.0
    model_config = {"protected_namespaces": ()}

    @property
    def base_url(self) -> str | None:
        """The API root URL, or ``None`` if it cannot be built."""
        if self.scheme not in ("http", "https") or not self.host:
            return None
        if any(c in self.host for c in "/?#@ "):
            return None
        if self.port is not None and not 0 < self.port < 65536:
            return None
        netloc = self.host if self.port is None else f"{self.host}:{self.port}"
        path = self.base_path if self.base_path is not None else "/v1"
        if path and not path.startswith("/"):
            path = "/" + path
        return urlunsplit((self.scheme, netloc, path.rstrip("/"), "", ""))

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent on every request, defaults filled in."""
        headers = dict(self.extra_headers)
        headers.setdefault("User-Agent", DEFAULT_USER_AGENT)
        headers.setdefault("X-Title", DEFAULT_X_TITLE)
        if self.organization_id:
            headers["OpenAI-Organization"] = self.organization_id
        return headers

    def validate_for_request(self) -> str:
        """Check the config can be used and return the base URL.

        Raises:
            MissingCredentialError: If no token is configured.
            InvalidEndpointError: If the URL cannot be constructed.
        """
        if not self.token:
            raise MissingCredentialError()
        url = self.base_url
        if url is None:
            raise InvalidEndpointError(
                f"cannot build a URL from scheme={self.scheme!r} "
                f"host={self.host!r} port={self.port!r}"
            )
        return url

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "ModelConfig":
        """Build a config from a full base URL such as ``http://localhost:8000/v1``.

        Raises:
            InvalidEndpointError: If *url* has no scheme or host.
        """
        parts = urlsplit(url)
        if not parts.scheme or not parts.hostname:
            raise InvalidEndpointError(f"invalid base URL: {url!r}")
        return cls(
            scheme=parts.scheme,
            host=parts.hostname,
            port=parts.port,
            base_path=parts.path or "",
            **kwargs,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> "ModelConfig":
        """Read ``OPENAI_API_KEY``, ``OPENAI_BASE_URL`` and ``OPENAI_MODEL``."""
        values: dict[str, Any] = {"token": os.getenv("OPENAI_API_KEY", "")}
        model = os.getenv("OPENAI_MODEL")
        if model:
            values["model_id"] = model
        values.update(overrides)
        base_url = os.getenv("OPENAI_BASE_URL")
        if base_url:
            logger.debug(f"Using base URL from OPENAI_BASE_URL: {base_url}")
            return cls.from_url(base_url, **values)
        return cls(**values)
