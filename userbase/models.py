"""
SQLAlchemy database models for Userbase.

Schema for app accounts, their linked external identities, refresh-token
sessions and wallet ownership challenges.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid():
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


def utc_now():
    """Generate timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class User(Base):
    """
    App account that owns identities and sessions.
    """

    __tablename__ = "userbase_users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    handle = Column(String(64), unique=True)  # Lower-cased display handle
    display_name = Column(String(255))
    avatar_url = Column(Text)
    cover_url = Column(Text)
    bio = Column(Text)
    location = Column(String(255))
    status = Column(String(32), default="active")
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    identities = relationship("Identity", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("Session", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_userbase_user_created", "created_at"),)

    def __repr__(self):
        return f"<User(id={self.id}, handle={self.handle})>"


class Identity(Base):
    """
    External identity (hive account, evm address, farcaster fid) linked to a user.
    """

    __tablename__ = "userbase_identities"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("userbase_users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(20), nullable=False)  # 'hive', 'evm', 'farcaster'
    identifier = Column(String(255), nullable=False)  # Normalized unique value per type
    handle = Column(String(255))
    address = Column(String(42))
    external_id = Column(String(255))
    is_primary = Column(Boolean, default=False, nullable=False)
    verified_at = Column(DateTime(timezone=True))
    metadata_json = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    # Relationships
    user = relationship("User", back_populates="identities")

    __table_args__ = (
        UniqueConstraint("type", "identifier", name="uq_identity_type_identifier"),
        Index("idx_identity_user", "user_id", "type"),
        Index(
            "uq_identity_primary_per_type",
            "user_id",
            "type",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary = 1"),
        ),
    )

    def __repr__(self):
        return f"<Identity(id={self.id}, type={self.type}, user={self.user_id})>"


class Session(Base):
    """
    Refresh-token sessions. Rows are revoked, never deleted.
    """

    __tablename__ = "userbase_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("userbase_users.id"), nullable=False)
    refresh_token_hash = Column(String(64), unique=True, nullable=False)
    device_id = Column(String(255))
    user_agent = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True))

    # Relationships
    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("idx_userbase_session_user", "user_id"),
        Index("idx_userbase_session_expires", "expires_at"),
    )

    def __repr__(self):
        return f"<Session(id={self.id}, user={self.user_id})>"


class IdentityChallenge(Base):
    """
    One-time nonce and canonical message a wallet must sign.
    """

    __tablename__ = "userbase_identity_challenges"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("userbase_users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(20), nullable=False)
    identifier = Column(String(255), nullable=False)
    nonce = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_challenge_lookup", "user_id", "type", "identifier", "created_at"),
        Index("idx_challenge_expires", "expires_at"),
    )

    def __repr__(self):
        return f"<IdentityChallenge(id={self.id}, type={self.type}, consumed={self.consumed_at is not None})>"
