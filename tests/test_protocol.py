"""Unit tests for the shared protocol module."""

import pytest

from redep.exceptions import ProtocolError
from redep.shared.crypto import sign_message
from redep.shared.protocol import (
    MessageType,
    ErrorCode,
    DeploymentRequest,
    DeploymentResult,
    ErrorResponse,
)


class TestMessageType:

    def test_message_types_exist(self):
        assert MessageType.DEPLOY == "deploy"
        assert MessageType.RESULT == "result"
        assert MessageType.ERROR == "error"


class TestDeploymentRequest:
    """Tests for DeploymentRequest parsing."""

    def test_from_signed_message(self):
        message = sign_message("secret", MessageType.DEPLOY, {})
        request = DeploymentRequest.from_message(message)

        assert request.request_id == message["request_id"]
        assert request.issued_at == message["issued_at"]
        assert request.auth_proof == message["auth_proof"]
        assert request.to_message() == message

    def test_rejects_non_object(self):
        with pytest.raises(ProtocolError):
            DeploymentRequest.from_message(["deploy"])

    def test_rejects_wrong_type(self):
        message = sign_message("secret", MessageType.RESULT, {})
        with pytest.raises(ProtocolError, match="Unexpected message type"):
            DeploymentRequest.from_message(message)

    @pytest.mark.parametrize("field,value", [
        ("request_id", ""),
        ("request_id", 42),
        ("issued_at", "1700000000"),
        ("issued_at", True),
        ("auth_proof", None),
        ("payload", "nope"),
    ])
    def test_rejects_bad_fields(self, field, value):
        message = sign_message("secret", MessageType.DEPLOY, {})
        message[field] = value
        with pytest.raises(ProtocolError):
            DeploymentRequest.from_message(message)


class TestDeploymentResult:
    """Tests for DeploymentResult."""

    def test_to_payload(self):
        result = DeploymentResult(
            request_id="r1",
            success=False,
            exit_code=2,
            stdout="out",
            stderr="err",
            duration_ms=15,
            timestamp="2026-01-01T00:00:00+00:00",
        )
        assert result.to_payload() == {
            "request_id": "r1",
            "success": False,
            "exit_code": 2,
            "stdout": "out",
            "stderr": "err",
            "duration_ms": 15,
            "timestamp": "2026-01-01T00:00:00+00:00",
            "truncated": False,
            "error": None,
        }

    def test_from_payload_defaults(self):
        result = DeploymentResult.from_payload({
            "request_id": "r1",
            "success": True,
            "exit_code": 0,
            "stdout": "",
            "stderr": "",
            "duration_ms": 1,
        })
        assert result.truncated is False
        assert result.error is None

    def test_timestamp_is_set_by_default(self):
        result = DeploymentResult("r1", True, 0, "", "", 1)
        assert result.timestamp.endswith("+00:00")

    def test_from_payload_missing_field(self):
        with pytest.raises(ProtocolError):
            DeploymentResult.from_payload({"request_id": "r1"})

    @pytest.mark.parametrize("payload", ["result", ["r1"], None])
    def test_from_payload_not_an_object(self, payload):
        with pytest.raises(ProtocolError):
            DeploymentResult.from_payload(payload)

    @pytest.mark.parametrize("field,value", [
        ("request_id", 5),
        ("success", "true"),
        ("exit_code", 0.0),
        ("exit_code", False),
        ("stderr", b"bytes"),
        ("duration_ms", "15"),
        ("timestamp", 0),
        ("truncated", None),
        ("error", {"detail": "x"}),
    ])
    def test_from_payload_rejects_wrong_types(self, field, value):
        payload = DeploymentResult("r1", True, 0, "", "", 1).to_payload()
        payload[field] = value
        with pytest.raises(ProtocolError, match=field):
            DeploymentResult.from_payload(payload)


class TestErrorResponse:

    def test_for_code_is_generic(self):
        message = ErrorResponse.for_code(ErrorCode.UNAUTHORIZED).to_message()
        assert message == {
            "type": "error",
            "payload": {"error": "Authentication failed", "code": "UNAUTHORIZED"},
        }

    def test_from_payload_defaults(self):
        error = ErrorResponse.from_payload({})
        assert error.code == "SERVER_ERROR"

    @pytest.mark.parametrize("payload", ["boom", None, ["UNAUTHORIZED"], {"code": 401}])
    def test_from_payload_malformed(self, payload):
        with pytest.raises(ProtocolError):
            ErrorResponse.from_payload(payload)
