"""
Utility functions for the Userbase identity core.

Shared helpers for identifier normalization, address handling and log masking.
"""

import re
import secrets
from datetime import datetime, timezone
from typing import Optional

from eth_utils import is_address, to_checksum_address

from userbase.records import IdentityType

HANDLE_PATTERN = re.compile(r"[a-z0-9][a-z0-9.-]{2,31}")
# dot-separated segments of 3+ chars: a letter first, no trailing dash
HIVE_SEGMENT_PATTERN = re.compile(r"[a-z][a-z0-9-]+[a-z0-9]")


def utc_now() -> datetime:
    """Timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_handle(handle: Optional[str]) -> Optional[str]:
    if not handle:
        return None
    normalized = handle.strip().lower()
    return normalized or None


def normalize_address(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    normalized = address.strip().lower()
    return normalized or None


def is_valid_handle(handle: str) -> bool:
    return bool(HANDLE_PATTERN.fullmatch(handle))


def is_hive_account_name(name: Optional[str]) -> bool:
    """Hive account names are 3-16 characters of lower-case dot-separated segments."""
    if not name or not 3 <= len(name) <= 16:
        return False
    return all(HIVE_SEGMENT_PATTERN.fullmatch(segment) for segment in name.split("."))


def is_evm_address(value: Optional[str]) -> bool:
    """
    Validate a hex address.

    All-lowercase and all-uppercase forms are accepted; mixed case must carry a
    valid EIP-55 checksum.
    """
    if not value or not isinstance(value, str):
        return False
    return is_address(value.strip())


def checksum_address(address: str) -> str:
    return to_checksum_address(address.strip())


def identifier_for(
    identity_type: IdentityType,
    handle: Optional[str] = None,
    address: Optional[str] = None,
    external_id: Optional[str] = None,
) -> Optional[str]:
    """
    Return the normalized identifier that must be unique for ``identity_type``.

    evm -> address, hive -> handle, farcaster -> external_id.
    """
    if identity_type is IdentityType.EVM:
        return normalize_address(address)
    if identity_type is IdentityType.HIVE:
        return normalize_handle(handle)
    if external_id is None:
        return None
    return str(external_id).strip() or None


def mask_identifier(value: Optional[str], visible: int = 6) -> str:
    """Mask an identifier for logs, keeping a short prefix and suffix."""
    if not value:
        return "-"
    if len(value) <= visible * 2:
        return value[: max(1, len(value) // 3)] + "..."
    return f"{value[:visible]}...{value[-4:]}"


def secure_random_hex(nbytes: int = 16) -> str:
    """
    Generate cryptographically secure random hex string.

    Args:
        nbytes: Number of random bytes

    Returns:
        Hex-encoded random string
    """
    return secrets.token_hex(nbytes)
