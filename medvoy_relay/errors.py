"""Exception taxonomy for the relay.

`RelayRequestError` subclasses are pre-stream fatal conditions and carry the
HTTP status and client-facing message. Everything else is recoverable and
absorbed inside the running stream.
"""

from __future__ import annotations


class RelayRequestError(Exception):
    """Fatal error raised before any SSE byte was sent."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, detail: str | None = None, *, public_message: str | None = None) -> None:
        super().__init__(detail or public_message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class InvalidRequestError(RelayRequestError):
    status_code = 400
    public_message = "Messages array is required"

    def __init__(self, detail: str) -> None:
        super().__init__(detail, public_message=detail)


class ConfigurationError(RelayRequestError):
    status_code = 500
    public_message = "AI service not configured"


class UpstreamRejectedError(RelayRequestError):
    """Upstream answered the first call with a non-2xx status."""

    _MESSAGES = {
        429: "Rate limit exceeded. Please try again in a moment.",
        402: "AI service credits exhausted. Please contact support.",
    }

    def __init__(self, upstream_status: int, body: str = "") -> None:
        self.upstream_status = upstream_status
        self.body = body
        self.status_code = upstream_status if upstream_status in self._MESSAGES else 500
        super().__init__(
            f"upstream returned HTTP {upstream_status}: {body[:500]}",
            public_message=self._MESSAGES.get(upstream_status, "AI service error"),
        )


class UpstreamUnavailableError(RelayRequestError):
    status_code = 502
    public_message = "AI service unavailable"


class CapabilityError(Exception):
    """A capability endpoint could not produce a result."""


class ToolArgumentsError(ValueError):
    """Accumulated tool-call arguments are not a complete JSON object."""


class UnsupportedToolCallError(Exception):
    """Upstream started a second tool call inside one assistant turn."""
