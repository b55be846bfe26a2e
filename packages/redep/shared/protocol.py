"""Protocol definitions for redep deploy triggers.

One connection carries exactly one exchange:

    client -> server   deploy  (signed, empty payload)
    server -> client   result  (signed)  or  error  (unsigned, generic)
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..exceptions import ProtocolError


# Exit code reported when the shell could not be started at all
SPAWN_FAILED_EXIT_CODE = -1


class MessageType(str, Enum):
    """Types of messages in the redep protocol."""
    DEPLOY = "deploy"    # Trigger the configured deployment
    RESULT = "result"    # Outcome of the deployment
    ERROR = "error"      # Generic rejection


class ErrorCode(str, Enum):
    """Rejection codes sent to clients. Details stay in the server log."""
    UNAUTHORIZED = "UNAUTHORIZED"
    BAD_REQUEST = "BAD_REQUEST"
    HANDSHAKE_TIMEOUT = "HANDSHAKE_TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"


# Fixed client-facing text per code
ERROR_MESSAGES = {
    ErrorCode.UNAUTHORIZED: "Authentication failed",
    ErrorCode.BAD_REQUEST: "Invalid request",
    ErrorCode.HANDSHAKE_TIMEOUT: "No request received in time",
    ErrorCode.SERVER_ERROR: "Server could not run the deployment",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DeploymentRequest:
    """A single authenticated deploy trigger."""
    request_id: str
    issued_at: int
    auth_proof: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": MessageType.DEPLOY.value,
            "request_id": self.request_id,
            "issued_at": self.issued_at,
            "payload": self.payload,
            "auth_proof": self.auth_proof
        }

    @classmethod
    def from_message(cls, message: Any) -> "DeploymentRequest":
        """Parse an inbound deploy message.

        Raises:
            ProtocolError: If the message is not a well-formed deploy request
        """
        if not isinstance(message, dict):
            raise ProtocolError("Message must be a JSON object")
        if message.get("type") != MessageType.DEPLOY.value:
            raise ProtocolError(f"Unexpected message type: {message.get('type')!r}")

        request_id = message.get("request_id")
        issued_at = message.get("issued_at")
        auth_proof = message.get("auth_proof")
        payload = message.get("payload", {})

        if not isinstance(request_id, str) or not request_id:
            raise ProtocolError("request_id must be a non-empty string")
        if not isinstance(issued_at, int) or isinstance(issued_at, bool):
            raise ProtocolError("issued_at must be an integer timestamp")
        if not isinstance(auth_proof, str) or not auth_proof:
            raise ProtocolError("auth_proof must be a non-empty string")
        if not isinstance(payload, dict):
            raise ProtocolError("payload must be an object")

        return cls(
            request_id=request_id,
            issued_at=issued_at,
            auth_proof=auth_proof,
            payload=payload
        )


@dataclass
class DeploymentResult:
    """Outcome of one deployment command run."""
    request_id: str
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timestamp: str = field(default_factory=utc_now_iso)
    truncated: bool = False
    error: str | None = None  # Set when the command timed out or never started

    def to_payload(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "success": self.success,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "truncated": self.truncated,
            "error": self.error
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "DeploymentResult":
        """Parse a result payload received from the server.

        Raises:
            ProtocolError: If a field is missing or has the wrong type
        """
        if not isinstance(payload, dict):
            raise ProtocolError("Result payload must be an object")
        try:
            result = cls(
                request_id=payload["request_id"],
                success=payload["success"],
                exit_code=payload["exit_code"],
                stdout=payload["stdout"],
                stderr=payload["stderr"],
                duration_ms=payload["duration_ms"],
                timestamp=payload.get("timestamp", ""),
                truncated=payload.get("truncated", False),
                error=payload.get("error")
            )
        except KeyError as e:
            raise ProtocolError(f"Invalid result payload: missing {e}") from e

        for name in ("request_id", "stdout", "stderr", "timestamp"):
            if not isinstance(getattr(result, name), str):
                raise ProtocolError(f"Invalid result payload: {name} must be a string")
        for name in ("success", "truncated"):
            if not isinstance(getattr(result, name), bool):
                raise ProtocolError(f"Invalid result payload: {name} must be a boolean")
        for name in ("exit_code", "duration_ms"):
            value = getattr(result, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ProtocolError(f"Invalid result payload: {name} must be an integer")
        if result.error is not None and not isinstance(result.error, str):
            raise ProtocolError("Invalid result payload: error must be a string")
        return result


@dataclass
class ErrorResponse:
    """Error response."""
    error: str
    code: str = ErrorCode.SERVER_ERROR.value

    def to_message(self) -> dict[str, Any]:
        return {
            "type": MessageType.ERROR.value,
            "payload": {
                "error": self.error,
                "code": self.code
            }
        }

    @classmethod
    def for_code(cls, code: ErrorCode) -> "ErrorResponse":
        return cls(error=ERROR_MESSAGES[code], code=code.value)

    @classmethod
    def from_payload(cls, payload: Any) -> "ErrorResponse":
        """Parse an error payload.

        Raises:
            ProtocolError: If the payload is not an object of strings
        """
        if not isinstance(payload, dict):
            raise ProtocolError("Error payload must be an object")
        error = payload.get("error", "Unknown error")
        code = payload.get("code", ErrorCode.SERVER_ERROR.value)
        if not isinstance(error, str) or not isinstance(code, str):
            raise ProtocolError("Error payload fields must be strings")
        return cls(error=error, code=code)
