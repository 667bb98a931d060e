"""Tests for error classification and the failure envelope."""

from __future__ import annotations

import httpx
import pytest

from pocketbase_mcp.errors import (
    HINTS,
    RECOVERABLE_KINDS,
    ConfigurationError,
    ErrorKind,
    InputRejected,
    RemoteError,
    ServiceError,
    UnavailableError,
    classify,
    error_envelope,
    is_recoverable,
)


class TestClassify:
    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (400, ErrorKind.VALIDATION),
            (401, ErrorKind.UNAUTHORIZED),
            (403, ErrorKind.FORBIDDEN),
            (404, ErrorKind.NOT_FOUND),
            (429, ErrorKind.RATE_LIMITED),
            (500, ErrorKind.REMOTE),
            (502, ErrorKind.REMOTE),
        ],
    )
    def test_http_status(self, status: int, kind: ErrorKind) -> None:
        assert classify(ServiceError(status, "x")) is kind

    def test_transport_errors(self) -> None:
        assert classify(httpx.ReadTimeout("slow")) is ErrorKind.TRANSPORT
        assert classify(httpx.ConnectError("refused")) is ErrorKind.TRANSPORT
        assert classify(TimeoutError()) is ErrorKind.TRANSPORT

    def test_domain_errors(self) -> None:
        assert classify(ConfigurationError(["URL required"])) is ErrorKind.CONFIGURATION
        assert classify(UnavailableError("no url")) is ErrorKind.UNAVAILABLE
        assert classify(InputRejected("bad")) is ErrorKind.VALIDATION
        assert classify(RemoteError("smtp")) is ErrorKind.REMOTE
        assert classify(KeyError("x")) is ErrorKind.INTERNAL

    def test_only_auth_and_transport_are_recoverable(self) -> None:
        assert RECOVERABLE_KINDS == {ErrorKind.UNAUTHORIZED, ErrorKind.FORBIDDEN, ErrorKind.TRANSPORT}
        assert is_recoverable(ServiceError(401, "x"))
        assert is_recoverable(ServiceError(403, "x"))
        assert not is_recoverable(ServiceError(404, "x"))
        assert not is_recoverable(UnavailableError("x"))

    def test_every_kind_has_a_hint(self) -> None:
        assert set(HINTS) == set(ErrorKind)


class TestServiceErrorFromResponse:
    @pytest.mark.parametrize(
        ("body", "message"),
        [
            ({"code": 400, "message": "Failed to create record.", "data": {}}, "Failed to create record."),
            ({"error": {"type": "card_error", "message": "Your card was declined."}}, "Your card was declined."),
            ({"errors": [{"message": "The from address does not match"}]}, "The from address does not match"),
        ],
    )
    def test_message_extraction(self, body: dict, message: str) -> None:
        response = httpx.Response(400, json=body)
        error = ServiceError.from_response(response, service="any")
        assert error.message == message
        assert error.status == 400
        assert error.data == body

    def test_plain_text_body(self) -> None:
        error = ServiceError.from_response(httpx.Response(502, text="Bad Gateway"), service="stripe")
        assert error.message == "Bad Gateway"
        assert error.service == "stripe"


class TestEnvelope:
    def test_remote_status_is_code(self) -> None:
        exc = ServiceError(403, "Only superusers can perform this action.")
        envelope = error_envelope(exc, collection="posts")
        assert envelope["success"] is False
        assert envelope["code"] == 403
        assert envelope["error"] == "Only superusers can perform this action."
        assert envelope["hint"] == "Check collection rules or authentication status"
        assert envelope["collection"] == "posts"
        assert envelope["service"] == "pocketbase"
        assert "timestamp" in envelope

    def test_field_details_are_forwarded(self) -> None:
        exc = ServiceError(400, "Failed", data={"data": {"title": {"code": "validation_required"}}})
        assert error_envelope(exc)["details"] == {"title": {"code": "validation_required"}}

    def test_configuration_violations(self) -> None:
        envelope = error_envelope(ConfigurationError(["URL required"]))
        assert envelope["code"] == "CONFIGURATION_ERROR"
        assert envelope["violations"] == ["URL required"]

    def test_unavailable_hint_mentions_url(self) -> None:
        envelope = error_envelope(UnavailableError("no url"))
        assert envelope["code"] == "UNAVAILABLE"
        assert "POCKETBASE_URL" in envelope["hint"]

    def test_unavailable_carries_its_own_hint(self) -> None:
        envelope = error_envelope(UnavailableError("no key", hint="Set STRIPE_SECRET_KEY"))
        assert envelope["code"] == "UNAVAILABLE"
        assert envelope["hint"] == "Set STRIPE_SECRET_KEY"

    def test_context_can_override_hint(self) -> None:
        envelope = error_envelope(KeyError("x"), hint="custom")
        assert envelope["hint"] == "custom"
