"""Error taxonomy shared by the relay server and the client.

Every failure that can be reported to a user derives from ``RelayError``
and carries an HTTP ``status_code`` plus a human-readable ``message``.
``CancellationSignal`` sits outside the hierarchy: cancelling a stream is a
normal terminal state, not a failure.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for reportable relay failures."""

    status_code: int = 500
    default_message: str = "Internal server error, please try again later."

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(RelayError):
    status_code = 400
    default_message = "Prompt must not be empty."


class ConfigurationError(RelayError):
    status_code = 500
    default_message = "Server configuration error, please contact the administrator."


class UpstreamError(RelayError):
    """The completion service refused the request before streaming."""


class UpstreamRateLimitError(UpstreamError):
    status_code = 429
    default_message = (
        "Too many requests, please try again later. "
        "If the problem persists, check your API quota."
    )

    def __init__(self, message: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamAuthError(UpstreamError):
    status_code = 401
    default_message = "Invalid API key, please check the configuration."


class UpstreamFaultError(UpstreamError):
    status_code = 500
    default_message = "The completion service failed, please try again later."


class UpstreamGenericError(UpstreamError):
    """Any other non-2xx upstream status, passed through verbatim."""

    def __init__(self, message: str | None = None, status_code: int = 502) -> None:
        super().__init__(message or f"HTTP error! status: {status_code}", status_code)


class FrameParseError(RelayError):
    default_message = "Malformed stream frame."


class StreamTransportError(RelayError):
    default_message = "Stream read failed."


class SessionBusyError(RelayError):
    status_code = 409
    default_message = "A reply is still streaming; wait for it or stop it first."


class CancellationSignal(Exception):
    """Raised inside a stream consumer when its cancellation token fires."""


def upstream_error_for_status(
    status_code: int,
    message: str | None = None,
    retry_after: float | None = None,
) -> UpstreamError:
    """Map a non-2xx completion-service status to the matching typed error."""
    if status_code == 401:
        return UpstreamAuthError(message)
    if status_code == 429:
        return UpstreamRateLimitError(message, retry_after=retry_after)
    if status_code == 500:
        return UpstreamFaultError(message)
    return UpstreamGenericError(message, status_code=status_code)


def error_for_status(
    status_code: int,
    message: str | None = None,
    retry_after: float | None = None,
) -> RelayError:
    """Map a relay error response back to a typed error on the client."""
    if status_code == 400:
        return ValidationError(message)
    return upstream_error_for_status(status_code, message, retry_after)
