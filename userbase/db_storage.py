"""
Database-backed repositories for Userbase - Production version.

SQLAlchemy implementations of the interfaces in ``userbase.repositories``. Every
SQLAlchemy failure is surfaced as ``BackendUnavailable`` so a dropped connection
or a statement timeout is never mistaken for "no row".
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from userbase import models
from userbase.database import session_scope
from userbase.errors import (
    BackendUnavailable,
    DuplicateIdentity,
    Forbidden,
    HandleTaken,
    NoActiveChallenge,
    NotFound,
    UserbaseError,
)
from userbase.records import Challenge, Identity, IdentityType, SessionRecord, UserProfile
from userbase.repositories import (
    PROFILE_FIELDS,
    ChallengeRepository,
    IdentityRepository,
    Repositories,
    SessionRepository,
    UserRepository,
)
from userbase.utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


@contextmanager
def _transaction(
    operation: str, on_conflict: Optional[Callable[[IntegrityError], UserbaseError]] = None
) -> Generator[Session, None, None]:
    """Run one repository operation in its own transaction with error mapping."""
    try:
        with session_scope() as session:
            yield session
    except IntegrityError as exc:
        if on_conflict is not None:
            raise on_conflict(exc) from exc
        logger.error(f"Storage operation failed | op={operation} | error={type(exc).__name__}")
        raise BackendUnavailable(operation=operation, cause=exc) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Storage operation failed | op={operation} | error={type(exc).__name__}")
        raise BackendUnavailable(operation=operation, cause=exc) from exc


# ============================================================================
# Row conversion
# ============================================================================


def _user_record(row: models.User) -> UserProfile:
    return UserProfile(
        id=row.id,
        handle=row.handle,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        cover_url=row.cover_url,
        bio=row.bio,
        location=row.location,
        status=row.status,
    )


def _identity_record(row: models.Identity) -> Identity:
    return Identity(
        id=row.id,
        user_id=row.user_id,
        type=IdentityType(row.type),
        identifier=row.identifier,
        handle=row.handle,
        address=row.address,
        external_id=row.external_id,
        is_primary=bool(row.is_primary),
        verified_at=ensure_aware(row.verified_at),
        metadata=dict(row.metadata_json or {}),
        created_at=ensure_aware(row.created_at),
    )


def _session_record(row: models.Session) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        expires_at=ensure_aware(row.expires_at),
        revoked_at=ensure_aware(row.revoked_at),
        created_at=ensure_aware(row.created_at),
    )


def _challenge_record(row: models.IdentityChallenge) -> Challenge:
    return Challenge(
        id=row.id,
        user_id=row.user_id,
        type=IdentityType(row.type),
        identifier=row.identifier,
        nonce=row.nonce,
        message=row.message,
        created_at=ensure_aware(row.created_at),
        expires_at=ensure_aware(row.expires_at),
        consumed_at=ensure_aware(row.consumed_at),
    )


def _handle_taken(exc: IntegrityError) -> UserbaseError:
    return HandleTaken()


def _duplicate_identity(exc: IntegrityError) -> UserbaseError:
    return DuplicateIdentity()


# ============================================================================
# User Management
# ============================================================================


class SqlUserRepository(UserRepository):
    def create(self, handle: Optional[str] = None, display_name: Optional[str] = None, **fields: Any) -> UserProfile:
        with _transaction("user.create", on_conflict=_handle_taken) as session:
            extra = {key: value for key, value in fields.items() if key in PROFILE_FIELDS or key == "status"}
            user = models.User(handle=handle, display_name=display_name, **extra)
            session.add(user)
            session.flush()
            return _user_record(user)

    def get(self, user_id: str) -> Optional[UserProfile]:
        with _transaction("user.get") as session:
            user = session.query(models.User).filter_by(id=user_id).first()
            return _user_record(user) if user else None

    def find_by_handle(self, handle: str) -> Optional[UserProfile]:
        with _transaction("user.find_by_handle") as session:
            user = session.query(models.User).filter_by(handle=handle).first()
            return _user_record(user) if user else None

    def find_by_display_name(self, display_name: str, limit: int = 2) -> List[UserProfile]:
        with _transaction("user.find_by_display_name") as session:
            users = (
                session.query(models.User)
                .filter(func.lower(models.User.display_name) == display_name.lower())
                .order_by(models.User.created_at)
                .limit(limit)
                .all()
            )
            return [_user_record(user) for user in users]

    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> Optional[UserProfile]:
        with _transaction("user.update_profile", on_conflict=_handle_taken) as session:
            user = session.query(models.User).filter_by(id=user_id).first()
            if not user:
                return None

            for key, value in fields.items():
                if key in PROFILE_FIELDS:
                    setattr(user, key, value)
            session.flush()
            return _user_record(user)


# ============================================================================
# Session Management
# ============================================================================


class SqlSessionRepository(SessionRepository):
    def insert(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        with _transaction("session.insert") as session:
            row = models.Session(
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                expires_at=expires_at,
                device_id=device_id,
                user_agent=user_agent,
            )
            session.add(row)
            session.flush()
            return _session_record(row)

    def find_active_by_token_hash(self, refresh_token_hash: str) -> Optional[SessionRecord]:
        with _transaction("session.lookup") as session:
            row = (
                session.query(models.Session)
                .filter(
                    models.Session.refresh_token_hash == refresh_token_hash,
                    models.Session.revoked_at.is_(None),
                )
                .first()
            )
            return _session_record(row) if row else None

    def revoke(self, session_id: str, revoked_at: datetime) -> bool:
        with _transaction("session.revoke") as session:
            updated = (
                session.query(models.Session)
                .filter(models.Session.id == session_id, models.Session.revoked_at.is_(None))
                .update({models.Session.revoked_at: revoked_at}, synchronize_session=False)
            )
            return updated == 1


# ============================================================================
# Challenge Management
# ============================================================================


def _consume(session: Session, challenge_id: str, consumed_at: datetime) -> bool:
    updated = (
        session.query(models.IdentityChallenge)
        .filter(
            models.IdentityChallenge.id == challenge_id,
            models.IdentityChallenge.consumed_at.is_(None),
        )
        .update({models.IdentityChallenge.consumed_at: consumed_at}, synchronize_session=False)
    )
    return updated == 1


class SqlChallengeRepository(ChallengeRepository):
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
        with _transaction("challenge.insert") as session:
            row = models.IdentityChallenge(
                user_id=user_id,
                type=identity_type.value,
                identifier=identifier,
                nonce=nonce,
                message=message,
                created_at=created_at,
                expires_at=expires_at,
            )
            session.add(row)
            session.flush()
            return _challenge_record(row)

    def find_latest_unconsumed(
        self, user_id: str, identity_type: IdentityType, identifier: str
    ) -> Optional[Challenge]:
        with _transaction("challenge.lookup") as session:
            row = (
                session.query(models.IdentityChallenge)
                .filter(
                    models.IdentityChallenge.user_id == user_id,
                    models.IdentityChallenge.type == identity_type.value,
                    models.IdentityChallenge.identifier == identifier,
                    models.IdentityChallenge.consumed_at.is_(None),
                )
                .order_by(models.IdentityChallenge.created_at.desc())
                .first()
            )
            return _challenge_record(row) if row else None

    def mark_consumed(self, challenge_id: str, consumed_at: datetime) -> bool:
        with _transaction("challenge.consume") as session:
            return _consume(session, challenge_id, consumed_at)


# ============================================================================
# Identity Management
# ============================================================================


class SqlIdentityRepository(IdentityRepository):
    def get(self, identity_id: str) -> Optional[Identity]:
        with _transaction("identity.get") as session:
            row = session.query(models.Identity).filter_by(id=identity_id).first()
            return _identity_record(row) if row else None

    def find_by_type_and_identifier(self, identity_type: IdentityType, identifier: str) -> Optional[Identity]:
        with _transaction("identity.lookup") as session:
            row = (
                session.query(models.Identity)
                .filter_by(type=identity_type.value, identifier=identifier)
                .first()
            )
            return _identity_record(row) if row else None

    def find_all_for_user(self, user_id: str) -> List[Identity]:
        with _transaction("identity.list") as session:
            rows = (
                session.query(models.Identity)
                .filter_by(user_id=user_id)
                .order_by(models.Identity.is_primary.desc(), models.Identity.created_at.asc())
                .all()
            )
            return [_identity_record(row) for row in rows]

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
        with _transaction("identity.insert", on_conflict=_duplicate_identity) as session:
            if consume_challenge_id and not _consume(session, consume_challenge_id, now):
                raise NoActiveChallenge()

            same_type = session.query(models.Identity).filter_by(user_id=user_id, type=identity_type.value)
            if is_primary is None:
                is_primary = same_type.first() is None
            elif is_primary:
                current = same_type.filter_by(is_primary=True).first()
                if current:
                    current.is_primary = False
                    session.flush()

            row = models.Identity(
                user_id=user_id,
                type=identity_type.value,
                identifier=identifier,
                handle=handle,
                address=address,
                external_id=external_id,
                is_primary=is_primary,
                verified_at=verified_at or now,
                metadata_json=metadata or {},
                created_at=now,
            )
            session.add(row)
            session.flush()
            return _identity_record(row)

    def delete(self, identity_id: str, requesting_user_id: str) -> None:
        with _transaction("identity.delete") as session:
            row = session.query(models.Identity).filter_by(id=identity_id).first()
            if not row:
                raise NotFound("Identity not found")
            if row.user_id != requesting_user_id:
                raise Forbidden("Identity belongs to another user")
            session.delete(row)


def build_sql_repositories() -> Repositories:
    """Bundle the SQLAlchemy repositories (requires ``init_database``)."""
    return Repositories(
        users=SqlUserRepository(),
        sessions=SqlSessionRepository(),
        challenges=SqlChallengeRepository(),
        identities=SqlIdentityRepository(),
    )
