"""Exception hierarchy for chatstream.

Every error raised by the library derives from :class:`ChatStreamError`
so callers can catch them in one place.  Cancellation is *not* part of
this hierarchy: it surfaces as :class:`asyncio.CancelledError`.
"""


class ChatStreamError(Exception):
    """Base class for all chatstream errors."""


class ConfigurationError(ChatStreamError):
    """The model configuration cannot be used to build a request."""


class MissingCredentialError(ConfigurationError):
    """No API token is configured."""

    def __init__(self, message: str = "No API token configured"):
        super().__init__(message)


class InvalidEndpointError(ConfigurationError):
    """The request URL cannot be constructed from the configuration."""

    def __init__(self, message: str = "Invalid endpoint URL"):
        super().__init__(message)


class TransportError(ChatStreamError):
    """Network failure or non-2xx response from the server.

    Args:
        message: Human-readable summary.
        status_code: HTTP status, or ``None`` when no response arrived
            (connection failure, timeout).
        body: Raw response body text, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (HTTP {self.status_code}): {self.body or ''}"


class DecodeError(ChatStreamError):
    """A streamed payload could not be decoded."""


class SchemaDerivationError(ChatStreamError):
    """A type definition cannot be turned into a JSON schema.

    These are programmer errors in the type definition and are raised
    at schema-build time, before any request is sent.
    """
