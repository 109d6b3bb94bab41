from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_TOKEN_BYTES = 32

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
_NULLISH = frozenset({"null", "undefined"})


@dataclass(frozen=True)
class OpaqueToken:
    """A clear bearer value and the digest that is the only persisted form."""

    clear: str = field(repr=False)
    hash: str


def hash_token(clear: str) -> str:
    """Return the base64 SHA-256 digest used to look tokens up."""
    digest = hashlib.sha256(clear.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_opaque_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> OpaqueToken:
    if byte_length < 16:
        raise ValueError("opaque tokens need at least 16 random bytes")
    raw = secrets.token_bytes(byte_length)
    clear = base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return OpaqueToken(clear=clear, hash=hash_token(clear))


def generate_numeric_code(length: int) -> str:
    """Uniformly random fixed-length digit string; leading zeros allowed."""
    if length < 1:
        raise ValueError("code length must be positive")
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


def tokens_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def extract_bearer(value: Optional[str]) -> Optional[str]:
    """Normalize a bearer credential from a header, query string or cookie.

    Accepts ``Bearer <token>`` (any case) or a bare token, strips one layer of
    surrounding quotes and rejects empty and ``null``/``undefined`` values that
    browser clients send when local storage is empty.
    """
    if value is None:
        return None
    candidate = value.strip()
    match = _BEARER_PATTERN.match(candidate)
    if match:
        candidate = match.group(1).strip()
    if len(candidate) >= 2 and candidate[0] == candidate[-1] and candidate[0] in {'"', "'"}:
        candidate = candidate[1:-1].strip()
    if not candidate or candidate.lower() in _NULLISH:
        return None
    return candidate


def base64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


__all__ = [
    "OpaqueToken",
    "base64url_decode",
    "extract_bearer",
    "generate_numeric_code",
    "generate_opaque_token",
    "hash_code",
    "hash_token",
    "tokens_match",
]
