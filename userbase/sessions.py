"""
Session validation from opaque refresh tokens.

Only validation and revocation live here; sessions are created by the login
flow. A session is valid iff it is not revoked and ``now < expires_at``.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from userbase.audit_logger import get_audit_logger
from userbase.errors import BackendUnavailable, SessionExpired, Unauthenticated
from userbase.metrics import SESSION_CHECKS
from userbase.records import SessionRecord
from userbase.repositories import SessionRepository
from userbase.tokens import hash_token
from userbase.utils import utc_now

logger = logging.getLogger(__name__)


class SessionValidator:
    def __init__(self, sessions: SessionRepository, clock: Callable[[], datetime] = utc_now):
        self.sessions = sessions
        self.clock = clock
        self.audit = get_audit_logger()

    def resolve_session(self, raw_token: Optional[str], ip_address: Optional[str] = None) -> SessionRecord:
        """
        Resolve a raw refresh token to its session.

        Raises:
            Unauthenticated: no token, unknown token or revoked session (not distinguished)
            SessionExpired: the session exists but ``now >= expires_at``
            BackendUnavailable: the session store could not be queried
        """
        if not raw_token:
            SESSION_CHECKS.labels(outcome="missing").inc()
            raise Unauthenticated()

        try:
            session = self.sessions.find_active_by_token_hash(hash_token(raw_token))
        except BackendUnavailable:
            SESSION_CHECKS.labels(outcome="backend_error").inc()
            logger.error("Session lookup failed | op=session.lookup")
            raise

        if session is None:
            SESSION_CHECKS.labels(outcome="unknown").inc()
            self.audit.log_session_check("unknown", ip_address=ip_address)
            raise Unauthenticated()

        if not session.is_valid_at(self.clock()):
            SESSION_CHECKS.labels(outcome="expired").inc()
            self.audit.log_session_check("expired", user_id=session.user_id, ip_address=ip_address)
            raise SessionExpired()

        SESSION_CHECKS.labels(outcome="valid").inc()
        return session

    def resolve_user_id(self, raw_token: Optional[str], ip_address: Optional[str] = None) -> str:
        return self.resolve_session(raw_token, ip_address=ip_address).user_id

    def revoke(self, raw_token: Optional[str], reason: str = "logout") -> SessionRecord:
        """
        Revoke the session behind ``raw_token``; the row is kept for audit.

        An expired session can still be revoked. Unknown or already revoked
        tokens raise Unauthenticated.
        """
        if not raw_token:
            raise Unauthenticated()

        session = self.sessions.find_active_by_token_hash(hash_token(raw_token))
        if session is None:
            raise Unauthenticated()

        self.sessions.revoke(session.id, self.clock())
        self.audit.log_session_revoked(session.id, session.user_id, reason=reason)
        return session
