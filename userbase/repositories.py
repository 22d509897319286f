"""
Repository interfaces for the identity core.

Each method maps to one atomic operation against the backing store. "Not found"
is ``None`` or an empty list; store failures raise ``BackendUnavailable``;
unique-constraint violations raise the matching conflict error.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from userbase.records import Challenge, Identity, IdentityType, SessionRecord, UserProfile

PROFILE_FIELDS = ("display_name", "avatar_url", "cover_url", "bio", "location", "handle")


class UserRepository(ABC):
    @abstractmethod
    def create(self, handle: Optional[str] = None, display_name: Optional[str] = None, **fields: Any) -> UserProfile:
        """Insert a user; raises HandleTaken if the handle exists."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserProfile]: ...

    @abstractmethod
    def find_by_handle(self, handle: str) -> Optional[UserProfile]:
        """Exact match on the lower-cased handle."""

    @abstractmethod
    def find_by_display_name(self, display_name: str, limit: int = 2) -> List[UserProfile]:
        """Case-insensitive exact display name match, at most ``limit`` rows."""

    @abstractmethod
    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> Optional[UserProfile]:
        """Apply ``fields`` (subset of PROFILE_FIELDS); raises HandleTaken on collision."""


class SessionRepository(ABC):
    @abstractmethod
    def insert(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord: ...

    @abstractmethod
    def find_active_by_token_hash(self, refresh_token_hash: str) -> Optional[SessionRecord]:
        """Return the non-revoked session with this digest, expired or not."""

    @abstractmethod
    def revoke(self, session_id: str, revoked_at: datetime) -> bool:
        """Set revoked_at if still null; returns True if this call revoked it."""


class ChallengeRepository(ABC):
    @abstractmethod
    def insert(
        self,
        user_id: str,
        identity_type: IdentityType,
        identifier: str,
        nonce: str,
        message: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> Challenge: ...

    @abstractmethod
    def find_latest_unconsumed(
        self, user_id: str, identity_type: IdentityType, identifier: str
    ) -> Optional[Challenge]:
        """Newest unconsumed challenge by created_at, regardless of expiry."""

    @abstractmethod
    def mark_consumed(self, challenge_id: str, consumed_at: datetime) -> bool:
        """Set consumed_at if still null; returns True if this call consumed it."""


class IdentityRepository(ABC):
    @abstractmethod
    def get(self, identity_id: str) -> Optional[Identity]: ...

    @abstractmethod
    def find_by_type_and_identifier(self, identity_type: IdentityType, identifier: str) -> Optional[Identity]: ...

    @abstractmethod
    def find_all_for_user(self, user_id: str) -> List[Identity]:
        """All identities of ``user_id``, primary first then oldest first."""

    @abstractmethod
    def insert(
        self,
        user_id: str,
        identity_type: IdentityType,
        identifier: str,
        handle: Optional[str] = None,
        address: Optional[str] = None,
        external_id: Optional[str] = None,
        is_primary: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
        verified_at: Optional[datetime] = None,
        consume_challenge_id: Optional[str] = None,
    ) -> Identity:
        """
        Insert an identity atomically.

        ``is_primary=None`` makes the row primary iff it is the user's first of
        that type; ``True`` demotes the current primary of that type. When
        ``consume_challenge_id`` is given, the challenge is consumed in the same
        transaction and NoActiveChallenge is raised if it was already consumed.
        Raises DuplicateIdentity if (type, identifier) exists for any user.
        """

    @abstractmethod
    def delete(self, identity_id: str, requesting_user_id: str) -> None:
        """Raises NotFound for a missing row and Forbidden for another user's row."""


@dataclass
class Repositories:
    users: UserRepository
    sessions: SessionRepository
    challenges: ChallengeRepository
    identities: IdentityRepository
