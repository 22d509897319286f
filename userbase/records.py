"""
Plain records returned by the repositories.

Repositories never hand out ORM instances: callers get frozen dataclasses, or
``None`` when a row does not exist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class IdentityType(str, Enum):
    HIVE = "hive"
    EVM = "evm"
    FARCASTER = "farcaster"

    @classmethod
    def parse(cls, value: Any) -> "IdentityType":
        """Return the member for ``value``; raises ValueError when unknown."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class UserProfile:
    id: str
    handle: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    cover_url: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "handle": self.handle,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "cover_url": self.cover_url,
            "bio": self.bio,
            "location": self.location,
            "status": self.status,
        }


@dataclass(frozen=True)
class Identity:
    id: str
    user_id: str
    type: IdentityType
    identifier: str
    handle: Optional[str] = None
    address: Optional[str] = None
    external_id: Optional[str] = None
    is_primary: bool = False
    verified_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "handle": self.handle,
            "address": self.address,
            "external_id": self.external_id,
            "is_primary": self.is_primary,
            "verified_at": _iso(self.verified_at),
            "metadata": dict(self.metadata),
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class SessionRecord:
    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def is_valid_at(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass(frozen=True)
class Challenge:
    id: str
    user_id: str
    type: IdentityType
    identifier: str
    nonce: str
    message: str
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at
