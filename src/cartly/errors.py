"""Error taxonomy for the Mnexium client core."""

from __future__ import annotations

from dataclasses import dataclass


def is_retryable_status(status: int) -> bool:
    """Return True for HTTP statuses worth retrying (429 and 5xx)."""
    return status == 429 or 500 <= status <= 599


class ServiceError(Exception):
    """Base class for every failure surfaced by the client core."""

    code = "service_error"
    retryable = False


class InvalidResponseError(ServiceError):
    """The transport succeeded but the status/body pairing was unusable."""

    code = "invalid_response"
    retryable = True

    def __init__(self, detail: str = "Mnexium returned an invalid response.") -> None:
        super().__init__(detail)


class InvalidInputError(ServiceError):
    """A required caller-supplied field was empty or malformed."""

    code = "invalid_input"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid request input: {reason}")


class HTTPStatusError(ServiceError):
    """The server answered with a non-success status."""

    code = "http_status"

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"Mnexium request failed with status {status}: {body}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return is_retryable_status(self.status)


class TransportError(ServiceError):
    """Network, connection or timeout failure."""

    code = "transport"
    retryable = True

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Network error while contacting Mnexium: {reason}")


class ParseError(ServiceError):
    """The response body could not be interpreted as the expected shape."""

    code = "parse"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Could not parse Mnexium response: {reason}")


@dataclass(frozen=True)
class ErrorReport:
    """User-safe summary of a failure."""

    code: str
    status_code: int | None
    retryable: bool
    user_message: str


def describe_error(error: BaseException, fallback_message: str) -> ErrorReport:
    """Map an exception onto a user-facing report.

    Retryable failures ask the user to try again, authentication failures
    ask them to reconnect, and invalid input asks them to check it.
    Anything else gets ``fallback_message``.
    """
    if isinstance(error, InvalidInputError):
        return ErrorReport(
            code="mnexium_invalid_input",
            status_code=None,
            retryable=False,
            user_message="Please check the input and try again.",
        )
    if isinstance(error, InvalidResponseError):
        return ErrorReport(
            code="mnexium_invalid_response",
            status_code=None,
            retryable=True,
            user_message="Mnexium returned an invalid response. Please try again.",
        )
    if isinstance(error, HTTPStatusError):
        if error.retryable:
            message = "Mnexium is temporarily unavailable. Please try again."
        elif error.status in (401, 403):
            message = "Authentication to Mnexium failed. Please reconnect and try again."
        else:
            message = fallback_message
        return ErrorReport(
            code=f"mnexium_http_{error.status}",
            status_code=error.status,
            retryable=error.retryable,
            user_message=message,
        )
    if isinstance(error, TransportError):
        return ErrorReport(
            code="mnexium_transport",
            status_code=None,
            retryable=True,
            user_message="Network issue while contacting Mnexium. Please try again.",
        )
    if isinstance(error, ParseError):
        return ErrorReport(
            code="mnexium_parse",
            status_code=None,
            retryable=False,
            user_message=fallback_message,
        )
    return ErrorReport(
        code="unknown",
        status_code=None,
        retryable=False,
        user_message=fallback_message,
    )
