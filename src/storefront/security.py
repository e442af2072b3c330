"""Password hashing and bearer credentials.

Passwords are hashed with PBKDF2-HMAC-SHA256 and stored as
``pbkdf2_sha256$<iterations>$<salt>$<hash>`` so the work factor can be
raised later without invalidating existing hashes.

Bearer tokens use the compact JWT layout (``header.payload.signature``,
base64url, HS256).  Verification is stateless: a token is valid while its
signature matches and its ``exp`` claim lies in the future.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict

from storefront.errors import Forbidden

PBKDF2_ITERATIONS = 260_000
_HASH_SCHEME = "pbkdf2_sha256"
_TOKEN_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, as carried by a verified token."""

    user_id: int
    email: str
    expires_at: int


# ------------------------------------------------------------------------------
# Passwords
# ------------------------------------------------------------------------------

def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{_HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    """Return True when ``password`` matches the stored ``encoded`` hash."""
    try:
        scheme, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if scheme != _HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


# ------------------------------------------------------------------------------
# Tokens
# ------------------------------------------------------------------------------

def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256)
    return _b64encode(mac.digest())


def issue_token(user_id: int, email: str, secret: str, ttl_seconds: int = 3600, now: float | None = None) -> str:
    issued_at = int(time.time() if now is None else now)
    claims = {"userId": user_id, "email": email, "iat": issued_at, "exp": issued_at + ttl_seconds}
    header = _b64encode(json.dumps(_TOKEN_HEADER, separators=(",", ":")).encode("utf-8"))
    payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header}.{payload}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def verify_token(token: str, secret: str, now: float | None = None) -> Identity:
    """Validate a bearer token and return the identity it carries.

    Raises:
        Forbidden: The token is malformed, its signature does not match or
            it has expired.
    """
    if not token.isascii():
        raise Forbidden()
    parts = token.split(".")
    if len(parts) != 3:
        raise Forbidden()
    header_b64, payload_b64, signature = parts
    if not hmac.compare_digest(_sign(f"{header_b64}.{payload_b64}", secret), signature):
        raise Forbidden()
    try:
        header: Dict[str, Any] = json.loads(_b64decode(header_b64))
        claims: Dict[str, Any] = json.loads(_b64decode(payload_b64))
        user_id = int(claims["userId"])
        email = str(claims["email"])
        expires_at = int(claims["exp"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
        raise Forbidden()
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise Forbidden()
    current = time.time() if now is None else now
    if current >= expires_at:
        raise Forbidden("Token has expired.")
    return Identity(user_id=user_id, email=email, expires_at=expires_at)
