from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from datetime import UTC, datetime, timedelta
from typing import Any

PBKDF2_ALGORITHM = "sha256"
PBKDF2_ITERATIONS = 390_000
PBKDF2_SALT_BYTES = 16
REQUEST_SIGNATURE_VERSION = "v0"


def compute_hmac_sha256_hex(secret: str, message: str | bytes) -> str:
    message_bytes = message.encode("utf-8") if isinstance(message, str) else message
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()


def build_request_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Signature a platform sends in ``X-Signature`` for a signed delivery.

    The body is hashed exactly as received; re-serialized JSON can differ
    byte-wise from what the sender signed.
    """
    prefix = f"{REQUEST_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8")
    digest = compute_hmac_sha256_hex(secret, prefix + raw_body)
    return f"{REQUEST_SIGNATURE_VERSION}={digest}"


def is_valid_request_signature(
    *,
    secret: str,
    timestamp: str | None,
    raw_body: bytes,
    signature: str | None,
) -> bool:
    if not secret or not timestamp or not signature:
        return False
    expected_signature = build_request_signature(secret, timestamp, raw_body)
    return hmac.compare_digest(
        expected_signature.encode("utf-8"),
        signature.strip().encode("utf-8"),
    )


def secrets_match(provided: str | None, expected: str) -> bool:
    if not expected or provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def hash_password(password: str) -> str:
    password_bytes = password.encode("utf-8")
    salt = os.urandom(PBKDF2_SALT_BYTES)
    digest = hashlib.pbkdf2_hmac(
        PBKDF2_ALGORITHM,
        password_bytes,
        salt,
        PBKDF2_ITERATIONS,
    )
    return (
        "pbkdf2_sha256"
        f"${PBKDF2_ITERATIONS}"
        f"${_b64url_encode(salt)}"
        f"${_b64url_encode(digest)}"
    )


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        algorithm, raw_iterations, raw_salt, raw_digest = stored_hash.split("$", maxsplit=3)
    except ValueError:
        return False

    if algorithm != "pbkdf2_sha256":
        return False

    try:
        iterations = int(raw_iterations)
        salt = _b64url_decode(raw_salt)
        expected_digest = _b64url_decode(raw_digest)
    except (ValueError, TypeError):
        return False

    actual_digest = hashlib.pbkdf2_hmac(
        PBKDF2_ALGORITHM,
        password.encode("utf-8"),
        salt,
        iterations,
    )
    return hmac.compare_digest(actual_digest, expected_digest)


def create_access_token(
    *,
    claims: dict[str, Any],
    secret_key: str,
    ttl_minutes: int,
) -> tuple[str, int]:
    issued_at = datetime.now(UTC)
    expires_at = issued_at + timedelta(minutes=ttl_minutes)

    payload = {
        **claims,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    payload_bytes = json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_segment = _b64url_encode(payload_bytes)
    signature = hmac.new(
        secret_key.encode("utf-8"),
        payload_segment.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    signature_segment = _b64url_encode(signature)
    token = f"{payload_segment}.{signature_segment}"
    expires_in_seconds = max(int((expires_at - issued_at).total_seconds()), 0)
    return token, expires_in_seconds


def decode_access_token(token: str, secret_key: str) -> dict[str, Any] | None:
    try:
        payload_segment, signature_segment = token.split(".", maxsplit=1)
    except ValueError:
        return None

    expected_signature = hmac.new(
        secret_key.encode("utf-8"),
        payload_segment.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    try:
        provided_signature = _b64url_decode(signature_segment)
    except ValueError:
        return None
    if not hmac.compare_digest(expected_signature, provided_signature):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_segment).decode("utf-8"))
    except ValueError:
        return None

    if not isinstance(payload, dict):
        return None

    raw_expiration = payload.get("exp")
    if not isinstance(raw_expiration, int):
        return None
    if raw_expiration < int(datetime.now(UTC).timestamp()):
        return None

    return payload


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding_size = (-len(value)) % 4
    padded = f"{value}{'=' * padding_size}"
    return base64.urlsafe_b64decode(padded.encode("ascii"))
