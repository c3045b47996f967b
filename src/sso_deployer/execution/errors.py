"""Structured errors raised by the cloud-call adapter."""

from __future__ import annotations

import traceback

from botocore.exceptions import ClientError

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "RequestThrottledException",
        "SlowDown",
    }
)

_THROTTLING_MESSAGE_MARKERS = ("rate exceeded",)


class CloudCallError(Exception):
    """A failed AWS API call, tagged with whether retrying it can help."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.code = code
        self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.operation} failed ({self.code}): {self.message}"

    def to_details(self) -> dict[str, object]:
        return {
            "operation": self.operation,
            "code": self.code,
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


def from_client_error(exc: ClientError, operation: str) -> CloudCallError:
    error = exc.response.get("Error", {})
    code = str(error.get("Code") or "Unknown")
    message = str(error.get("Message") or exc)
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return CloudCallError(
        message,
        operation=operation,
        code=code,
        retryable=_is_throttling_signal(code, message),
        status_code=status if isinstance(status, int) else None,
    )


def _is_throttling_signal(code: str, message: str) -> bool:
    if code in THROTTLING_CODES:
        return True
    lowered = message.lower()
    return any(marker in lowered for marker in _THROTTLING_MESSAGE_MARKERS)


def is_throttling_error(exc: BaseException) -> bool:
    """Return True when ``exc`` signals a transient rate-limit rejection.

    Errors produced by the adapter carry an explicit ``retryable`` flag and
    are classified by it alone. Anything else is recognized by exception
    name, an error ``code`` attribute, or the "Rate exceeded" message.
    """
    retryable = getattr(exc, "retryable", None)
    if isinstance(retryable, bool):
        return retryable
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        return _is_throttling_signal(str(error.get("Code") or ""), str(error.get("Message") or ""))
    if type(exc).__name__ in THROTTLING_CODES:
        return True
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code in THROTTLING_CODES:
        return True
    return _is_throttling_signal("", str(exc))


def error_details(exc: BaseException) -> dict[str, object]:
    """Structured context recorded in ERROR deployment log entries."""
    details: dict[str, object] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }
    if isinstance(exc, CloudCallError):
        details.update(exc.to_details())
    else:
        code = getattr(exc, "code", None)
        if isinstance(code, str):
            details["code"] = code
    return details
