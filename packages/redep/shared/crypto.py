"""HMAC-SHA256 proofs for redep messages.

The shared secret never leaves either host: each message carries an
`auth_proof` computed over its type, timestamp, request id and payload.
"""

import hmac
import hashlib
import json
import secrets
import time
import uuid
from typing import Any


# Maximum age of a message in seconds (prevents replay attacks)
MAX_MESSAGE_AGE = 300  # 5 minutes

DEFAULT_SECRET_LENGTH = 32


def generate_request_id() -> str:
    """Generate a unique request id."""
    return str(uuid.uuid4())


def get_timestamp() -> int:
    """Get current Unix timestamp."""
    return int(time.time())


def generate_secret_key(length: int = DEFAULT_SECRET_LENGTH) -> str:
    """Generate a URL-safe random secret of exactly `length` characters."""
    return secrets.token_urlsafe(length)[:length]


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize a payload the same way on both ends of the wire."""
    return json.dumps(payload, sort_keys=True, separators=(',', ':'))


def create_proof(
    shared_secret: str,
    msg_type: str,
    issued_at: int,
    request_id: str,
    payload: dict[str, Any]
) -> str:
    """Create the HMAC-SHA256 proof for a message.

    Args:
        shared_secret: The shared secret key
        msg_type: Message type (deploy, result)
        issued_at: Unix timestamp
        request_id: Unique request id
        payload: Message payload dict

    Returns:
        Hex-encoded HMAC-SHA256 proof
    """
    if hasattr(msg_type, 'value'):
        msg_type = msg_type.value

    message = f"{msg_type}:{issued_at}:{request_id}:{canonical_json(payload)}"

    return hmac.new(
        shared_secret.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


def verify_proof(
    shared_secret: str,
    msg_type: str,
    issued_at: int,
    request_id: str,
    payload: dict[str, Any],
    auth_proof: str,
    check_timestamp: bool = True,
    now: int | None = None
) -> tuple[bool, str | None]:
    """Verify the HMAC-SHA256 proof of a message.

    Args:
        shared_secret: The shared secret key
        msg_type: Message type
        issued_at: Unix timestamp from the message
        request_id: Request id from the message
        payload: Message payload dict
        auth_proof: Proof to verify
        check_timestamp: Whether to check message age
        now: Reference time for the age check (defaults to current time)

    Returns:
        Tuple of (is_valid, error_message)
    """
    if check_timestamp:
        current_time = get_timestamp() if now is None else now
        age = abs(current_time - issued_at)
        if age > MAX_MESSAGE_AGE:
            return False, f"Message expired (age: {age}s)"

    expected = create_proof(shared_secret, msg_type, issued_at, request_id, payload)

    # Constant-time comparison to prevent timing attacks
    if hmac.compare_digest(expected, auth_proof):
        return True, None
    return False, "Invalid proof"


def sign_message(
    shared_secret: str,
    msg_type: str,
    payload: dict[str, Any],
    request_id: str | None = None
) -> dict[str, Any]:
    """Create a signed message ready for transmission.

    Args:
        shared_secret: The shared secret key
        msg_type: Message type
        payload: Message payload
        request_id: Id to bind the message to (a new one when omitted)

    Returns:
        Complete signed message dict
    """
    if hasattr(msg_type, 'value'):
        msg_type = msg_type.value

    issued_at = get_timestamp()
    request_id = request_id or generate_request_id()
    auth_proof = create_proof(shared_secret, msg_type, issued_at, request_id, payload)

    return {
        "type": msg_type,
        "request_id": request_id,
        "issued_at": issued_at,
        "payload": payload,
        "auth_proof": auth_proof
    }


def verify_message(shared_secret: str, message: dict[str, Any]) -> tuple[bool, str | None]:
    """Verify a received message.

    Args:
        shared_secret: The shared secret key
        message: The received message dict

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        msg_type = message["type"]
        request_id = message["request_id"]
        issued_at = message["issued_at"]
        payload = message["payload"]
        auth_proof = message["auth_proof"]
    except (KeyError, TypeError) as e:
        return False, f"Missing required field: {e}"

    if not isinstance(issued_at, int) or not isinstance(auth_proof, str):
        return False, "Malformed proof fields"
    if not isinstance(payload, dict):
        return False, "Payload must be an object"

    return verify_proof(
        shared_secret, msg_type, issued_at, request_id, payload, auth_proof
    )
