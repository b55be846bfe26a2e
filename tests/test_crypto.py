"""Unit tests for the shared crypto module."""

import pytest
import time

from redep.shared.crypto import (
    MAX_MESSAGE_AGE,
    create_proof,
    generate_request_id,
    generate_secret_key,
    get_timestamp,
    sign_message,
    verify_message,
    verify_proof,
)


class TestRequestId:
    """Tests for request id generation."""

    def test_generate_request_id_unique(self):
        ids = [generate_request_id() for _ in range(100)]
        assert len(set(ids)) == 100

    def test_generate_request_id_format(self):
        request_id = generate_request_id()
        # UUID format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx
        assert len(request_id) == 36
        assert request_id.count('-') == 4


class TestTimestamp:

    def test_get_timestamp_reasonable_value(self):
        ts = get_timestamp()
        assert isinstance(ts, int)
        assert abs(ts - int(time.time())) < 2


class TestSecretKey:
    """Tests for secret generation."""

    def test_default_length(self):
        assert len(generate_secret_key()) == 32

    def test_url_safe(self):
        secret = generate_secret_key(64)
        assert len(secret) == 64
        assert all(c.isalnum() or c in "-_" for c in secret)

    def test_unique(self):
        assert generate_secret_key() != generate_secret_key()


class TestProof:
    """Tests for proof creation."""

    def test_create_proof_returns_hex_string(self):
        proof = create_proof("secret", "deploy", 1234567890, "req-1", {})
        assert all(c in '0123456789abcdef' for c in proof)
        assert len(proof) == 64  # SHA256 hex = 64 chars

    def test_proof_deterministic(self):
        kwargs = {
            "shared_secret": "secret",
            "msg_type": "deploy",
            "issued_at": 1234567890,
            "request_id": "req-1",
            "payload": {"key": "value"}
        }
        assert create_proof(**kwargs) == create_proof(**kwargs)

    def test_proof_changes_with_secret(self):
        kwargs = {
            "msg_type": "deploy",
            "issued_at": 1234567890,
            "request_id": "req-1",
            "payload": {}
        }
        assert create_proof(shared_secret="secret1", **kwargs) != create_proof(shared_secret="secret2", **kwargs)

    def test_proof_bound_to_request_id(self):
        p1 = create_proof("secret", "deploy", 1234567890, "req-1", {})
        p2 = create_proof("secret", "deploy", 1234567890, "req-2", {})
        assert p1 != p2

    def test_proof_ignores_payload_key_order(self):
        p1 = create_proof("secret", "result", 1, "r", {"a": 1, "b": 2})
        p2 = create_proof("secret", "result", 1, "r", {"b": 2, "a": 1})
        assert p1 == p2

    def test_proof_does_not_contain_secret(self):
        message = sign_message("super-secret-value", "deploy", {})
        assert "super-secret-value" not in str(message)


class TestVerifyProof:
    """Tests for proof verification."""

    def test_verify_valid_proof(self):
        ts = get_timestamp()
        proof = create_proof("s3cret", "deploy", ts, "req-1", {})
        is_valid, error = verify_proof("s3cret", "deploy", ts, "req-1", {}, proof)
        assert is_valid is True
        assert error is None

    def test_verify_wrong_secret(self):
        ts = get_timestamp()
        proof = create_proof("s3cret", "deploy", ts, "req-1", {})
        is_valid, error = verify_proof("other", "deploy", ts, "req-1", {}, proof)
        assert is_valid is False
        assert error == "Invalid proof"

    def test_verify_expired(self):
        ts = get_timestamp() - MAX_MESSAGE_AGE - 10
        proof = create_proof("s3cret", "deploy", ts, "req-1", {})
        is_valid, error = verify_proof("s3cret", "deploy", ts, "req-1", {}, proof)
        assert is_valid is False
        assert "expired" in error

    def test_verify_from_the_future(self):
        ts = get_timestamp() + MAX_MESSAGE_AGE + 10
        proof = create_proof("s3cret", "deploy", ts, "req-1", {})
        is_valid, _ = verify_proof("s3cret", "deploy", ts, "req-1", {}, proof)
        assert is_valid is False

    def test_skip_timestamp_check(self):
        ts = 1000
        proof = create_proof("s3cret", "deploy", ts, "req-1", {})
        is_valid, _ = verify_proof("s3cret", "deploy", ts, "req-1", {}, proof, check_timestamp=False)
        assert is_valid is True


class TestSignAndVerifyMessage:

    def test_roundtrip(self):
        message = sign_message("s3cret", "deploy", {})
        assert message["type"] == "deploy"
        assert set(message) == {"type", "request_id", "issued_at", "payload", "auth_proof"}
        assert verify_message("s3cret", message) == (True, None)

    def test_uses_given_request_id(self):
        message = sign_message("s3cret", "result", {"x": 1}, request_id="abc")
        assert message["request_id"] == "abc"

    def test_tampered_payload_rejected(self):
        message = sign_message("s3cret", "result", {"exit_code": 1})
        message["payload"]["exit_code"] = 0
        is_valid, _ = verify_message("s3cret", message)
        assert is_valid is False

    def test_tampered_type_rejected(self):
        message = sign_message("s3cret", "result", {})
        message["type"] = "deploy"
        assert verify_message("s3cret", message)[0] is False

    @pytest.mark.parametrize("field", ["type", "request_id", "issued_at", "payload", "auth_proof"])
    def test_missing_field(self, field):
        message = sign_message("s3cret", "deploy", {})
        del message[field]
        is_valid, error = verify_message("s3cret", message)
        assert is_valid is False
        assert "Missing required field" in error

    def test_non_integer_timestamp(self):
        message = sign_message("s3cret", "deploy", {})
        message["issued_at"] = str(message["issued_at"])
        assert verify_message("s3cret", message)[0] is False
