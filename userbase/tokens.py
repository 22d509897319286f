"""Helpers for opaque refresh tokens.

Raw tokens only ever live in the client's cookie; storage and lookups use the
SHA-256 hex digest.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Optional


def hash_token(token: str) -> str:
    """Return the deterministic SHA-256 hex digest of ``token``."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_refresh_token() -> str:
    """Create a new opaque refresh token suitable for a session cookie."""
    return secrets.token_urlsafe(32)


def extract_bearer(header_value: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


__all__ = ["extract_bearer", "generate_refresh_token", "hash_token"]
