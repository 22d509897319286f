"""In-memory repositories for tests and local development.

This module mirrors the interface of ``userbase.db_storage`` but keeps every
row in Python dictionaries behind a single lock. The unique constraints of the
SQL schema are enforced here too, so tests exercise the same conflict paths
without PostgreSQL.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from userbase.errors import DuplicateIdentity, Forbidden, HandleTaken, NoActiveChallenge, NotFound
from userbase.records import Challenge, Identity, IdentityType, SessionRecord, UserProfile
from userbase.repositories import (
    PROFILE_FIELDS,
    ChallengeRepository,
    IdentityRepository,
    Repositories,
    SessionRepository,
    UserRepository,
)
from userbase.utils import utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class MemoryStore:
    """Shared buckets for the in-memory repositories."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users: Dict[str, UserProfile] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.challenges: Dict[str, Challenge] = {}
        self.identities: Dict[str, Identity] = {}

    def clear(self) -> None:
        with self.lock:
            self.users.clear()
            self.sessions.clear()
            self.challenges.clear()
            self.identities.clear()


class MemoryUserRepository(UserRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def _handle_in_use(self, handle: Optional[str], exclude_id: Optional[str] = None) -> bool:
        if handle is None:
            return False
        return any(user.handle == handle and user.id != exclude_id for user in self.store.users.values())

    def create(self, handle: Optional[str] = None, display_name: Optional[str] = None, **fields: Any) -> UserProfile:
        with self.store.lock:
            if self._handle_in_use(handle):
                raise HandleTaken()
            extra = {key: value for key, value in fields.items() if key in PROFILE_FIELDS or key == "status"}
            user = UserProfile(id=_new_id(), handle=handle, display_name=display_name, **extra)
            self.store.users[user.id] = user
            return user

    def get(self, user_id: str) -> Optional[UserProfile]:
        with self.store.lock:
            return self.store.users.get(user_id)

    def find_by_handle(self, handle: str) -> Optional[UserProfile]:
        with self.store.lock:
            for user in self.store.users.values():
                if user.handle == handle:
                    return user
        return None

    def find_by_display_name(self, display_name: str, limit: int = 2) -> List[UserProfile]:
        needle = display_name.lower()
        with self.store.lock:
            matches = [
                user
                for user in self.store.users.values()
                if user.display_name is not None and user.display_name.lower() == needle
            ]
        return matches[:limit]

    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> Optional[UserProfile]:
        with self.store.lock:
            user = self.store.users.get(user_id)
            if user is None:
                return None
            changes = {key: value for key, value in fields.items() if key in PROFILE_FIELDS}
            if "handle" in changes and self._handle_in_use(changes["handle"], exclude_id=user_id):
                raise HandleTaken()
            user = replace(user, **changes)
            self.store.users[user_id] = user
            return user


class MemorySessionRepository(SessionRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def insert(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        record = SessionRecord(
            id=_new_id(),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=expires_at,
            created_at=utc_now(),
        )
        with self.store.lock:
            self.store.sessions[record.id] = record
        return record

    def find_active_by_token_hash(self, refresh_token_hash: str) -> Optional[SessionRecord]:
        with self.store.lock:
            for record in self.store.sessions.values():
                if record.refresh_token_hash == refresh_token_hash and record.revoked_at is None:
                    return record
        return None

    def revoke(self, session_id: str, revoked_at: datetime) -> bool:
        with self.store.lock:
            record = self.store.sessions.get(session_id)
            if record is None or record.revoked_at is not None:
                return False
            self.store.sessions[session_id] = replace(record, revoked_at=revoked_at)
            return True


class MemoryChallengeRepository(ChallengeRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def insert(
        self,
        user_id: str,
        identity_type: IdentityType,
        identifier: str,
        nonce: str,
        message: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> Challenge:
        challenge = Challenge(
            id=_new_id(),
            user_id=user_id,
            type=identity_type,
            identifier=identifier,
            nonce=nonce,
            message=message,
            created_at=created_at,
            expires_at=expires_at,
        )
        with self.store.lock:
            self.store.challenges[challenge.id] = challenge
        return challenge

    def find_latest_unconsumed(
        self, user_id: str, identity_type: IdentityType, identifier: str
    ) -> Optional[Challenge]:
        with self.store.lock:
            candidates = [
                challenge
                for challenge in self.store.challenges.values()
                if challenge.user_id == user_id
                and challenge.type is identity_type
                and challenge.identifier == identifier
                and challenge.consumed_at is None
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda challenge: challenge.created_at)

    def mark_consumed(self, challenge_id: str, consumed_at: datetime) -> bool:
        with self.store.lock:
            challenge = self.store.challenges.get(challenge_id)
            if challenge is None or challenge.consumed_at is not None:
                return False
            self.store.challenges[challenge_id] = replace(challenge, consumed_at=consumed_at)
            return True


class MemoryIdentityRepository(IdentityRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def get(self, identity_id: str) -> Optional[Identity]:
        with self.store.lock:
            return self.store.identities.get(identity_id)

    def find_by_type_and_identifier(self, identity_type: IdentityType, identifier: str) -> Optional[Identity]:
        with self.store.lock:
            for identity in self.store.identities.values():
                if identity.type is identity_type and identity.identifier == identifier:
                    return identity
        return None

    def find_all_for_user(self, user_id: str) -> List[Identity]:
        with self.store.lock:
            owned = [identity for identity in self.store.identities.values() if identity.user_id == user_id]
        # dict order is insertion order, so the sort is stable on creation
        return sorted(owned, key=lambda identity: not identity.is_primary)

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
        now = utc_now()
        with self.store.lock:
            if self.find_by_type_and_identifier(identity_type, identifier) is not None:
                raise DuplicateIdentity()

            challenge = self.store.challenges.get(consume_challenge_id) if consume_challenge_id else None
            if consume_challenge_id and (challenge is None or challenge.consumed_at is not None):
                raise NoActiveChallenge()

            same_type: List[Tuple[str, Identity]] = [
                (key, identity)
                for key, identity in self.store.identities.items()
                if identity.user_id == user_id and identity.type is identity_type
            ]
            if is_primary is None:
                is_primary = not same_type
            elif is_primary:
                for key, identity in same_type:
                    if identity.is_primary:
                        self.store.identities[key] = replace(identity, is_primary=False)

            identity = Identity(
                id=_new_id(),
                user_id=user_id,
                type=identity_type,
                identifier=identifier,
                handle=handle,
                address=address,
                external_id=external_id,
                is_primary=is_primary,
                verified_at=verified_at or now,
                metadata=dict(metadata or {}),
                created_at=now,
            )
            self.store.identities[identity.id] = identity
            if challenge is not None:
                self.store.challenges[challenge.id] = replace(challenge, consumed_at=now)
            return identity

    def delete(self, identity_id: str, requesting_user_id: str) -> None:
        with self.store.lock:
            identity = self.store.identities.get(identity_id)
            if identity is None:
                raise NotFound("Identity not found")
            if identity.user_id != requesting_user_id:
                raise Forbidden("Identity belongs to another user")
            del self.store.identities[identity_id]


def build_memory_repositories(store: Optional[MemoryStore] = None) -> Repositories:
    """Bundle in-memory repositories sharing one ``MemoryStore``."""
    store = store or MemoryStore()
    return Repositories(
        users=MemoryUserRepository(store),
        sessions=MemorySessionRepository(store),
        challenges=MemoryChallengeRepository(store),
        identities=MemoryIdentityRepository(store),
    )
