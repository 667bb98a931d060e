"""Error taxonomy shared by every remote call and the MCP tool boundary.

Pattern: Classify Once, Hint From a Table
------------------------------------------
Every failure that can come out of a remote call is mapped to exactly one
``ErrorKind``.  The Operation Executor uses the kind to decide whether a
retry can help; the MCP server uses it to pick a human hint from ``HINTS``
and to build the uniform ``{success: false, ...}`` envelope.

Only three kinds are recoverable: an unauthorized or forbidden answer often
means a stale admin token, and a transport failure may be transient.  All
other kinds are caller mistakes or missing configuration and are surfaced
immediately.
"""

from __future__ import annotations

import datetime
import enum
from typing import Any

import httpx


class ErrorKind(enum.Enum):
    CONFIGURATION = "CONFIGURATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION_REJECTED"
    RATE_LIMITED = "RATE_LIMITED"
    TRANSPORT = "TRANSPORT_ERROR"
    UNAVAILABLE = "UNAVAILABLE"
    REMOTE = "REMOTE_ERROR"
    INTERNAL = "UNKNOWN_ERROR"


RECOVERABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.UNAUTHORIZED, ErrorKind.FORBIDDEN, ErrorKind.TRANSPORT}
)

HINTS: dict[ErrorKind, str] = {
    ErrorKind.CONFIGURATION: "Fix the listed configuration problems and restart the server",
    ErrorKind.UNAUTHORIZED: "Check your authentication credentials",
    ErrorKind.FORBIDDEN: "Check collection rules or authentication status",
    ErrorKind.NOT_FOUND: "Verify the collection name or record ID is correct and exists",
    ErrorKind.VALIDATION: "Verify that all required fields are provided and data types are correct",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded; wait a moment before retrying",
    ErrorKind.TRANSPORT: "Check network connectivity and that the service URL is reachable",
    ErrorKind.UNAVAILABLE: (
        "Set POCKETBASE_URL (and optionally POCKETBASE_ADMIN_EMAIL, "
        "POCKETBASE_ADMIN_PASSWORD) to enable PocketBase functionality"
    ),
    ErrorKind.REMOTE: "The remote service reported an error; check its status and try again",
    ErrorKind.INTERNAL: "Check the server logs for details",
}

_STATUS_TO_KIND: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    402: ErrorKind.VALIDATION,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


class PocketBaseMCPError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(PocketBaseMCPError):
    """Raised when connection parameters are missing or malformed.

    ``violations`` lists every problem found so they can all be fixed at once.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Invalid configuration: " + "; ".join(self.violations))


class UnavailableError(PocketBaseMCPError):
    """Raised when a backend has no live connection configured at all.

    ``hint`` names the setting that would fix it; when omitted the envelope
    falls back to the PocketBase hint from ``HINTS``.
    """

    def __init__(self, message: str, hint: str | None = None) -> None:
        self.hint = hint
        super().__init__(message)


class RemoteError(PocketBaseMCPError):
    """A remote service failed in a way that carries no HTTP status."""


class InputRejected(PocketBaseMCPError):
    """Tool input was well-formed but cannot be acted upon."""


class ServiceError(PocketBaseMCPError):
    """A non-2xx answer from a remote HTTP API.

    Attributes:
        status:  HTTP status code of the response.
        message: Error message extracted from the response body.
        data:    Parsed response body (field-level details when present).
        service: Which backend answered (``pocketbase``, ``stripe``, ``sendgrid``).
    """

    def __init__(
        self,
        status: int,
        message: str,
        data: Any = None,
        service: str = "pocketbase",
    ) -> None:
        self.status = status
        self.message = message
        self.data = data
        self.service = service
        super().__init__(f"{service} returned {status}: {message}")

    @classmethod
    def from_response(cls, response: httpx.Response, service: str) -> ServiceError:
        try:
            body = response.json()
        except ValueError:
            body = response.text
        message = _extract_message(body) or response.reason_phrase or "request failed"
        return cls(response.status_code, message, data=body, service=service)


def _extract_message(body: Any) -> str:
    if not isinstance(body, dict):
        return str(body)[:500] if body else ""
    # PocketBase: {"message": ...}; Stripe: {"error": {"message": ...}};
    # SendGrid: {"errors": [{"message": ...}]}.
    if isinstance(body.get("message"), str):
        return body["message"]
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return str(errors[0].get("message", ""))
    return ""


def classify(exc: BaseException) -> ErrorKind:
    """Map an exception to its ``ErrorKind``."""
    if isinstance(exc, ConfigurationError):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, UnavailableError):
        return ErrorKind.UNAVAILABLE
    if isinstance(exc, ServiceError):
        return _STATUS_TO_KIND.get(exc.status, ErrorKind.REMOTE)
    if isinstance(exc, InputRejected):
        return ErrorKind.VALIDATION
    if isinstance(exc, RemoteError):
        return ErrorKind.REMOTE
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSPORT
    return ErrorKind.INTERNAL


def is_recoverable(exc: BaseException) -> bool:
    return classify(exc) in RECOVERABLE_KINDS


def utc_timestamp() -> str:
    return datetime.datetime.now(datetime.UTC).isoformat()


def error_envelope(exc: BaseException, **context: Any) -> dict[str, Any]:
    """Build the uniform failure envelope for *exc*.

    ``code`` mirrors the remote HTTP status when there is one; otherwise it is
    the ``ErrorKind`` value.  Extra keyword arguments (collection, record id,
    tool name...) are copied into the envelope for the caller's benefit.
    """
    kind = classify(exc)
    code: int | str = exc.status if isinstance(exc, ServiceError) else kind.value
    envelope: dict[str, Any] = {
        "success": False,
        "error": str(exc) if not isinstance(exc, ServiceError) else exc.message,
        "code": code,
        "hint": getattr(exc, "hint", None) or HINTS[kind],
    }
    if isinstance(exc, ConfigurationError):
        envelope["violations"] = exc.violations
    if isinstance(exc, ServiceError):
        envelope["service"] = exc.service
        if isinstance(exc.data, dict) and exc.data.get("data"):
            envelope["details"] = exc.data["data"]
    envelope.update(context)
    envelope["timestamp"] = utc_timestamp()
    return envelope
