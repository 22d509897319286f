"""
Audit logging for Userbase.

Security-relevant events (session checks, challenges, signature checks, links,
merge conflicts) are written to the ``audit`` logger. Identifiers are masked
and raw tokens or signatures are never passed in.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from userbase.utils import mask_identifier

_logger = logging.getLogger("audit")
_audit_logger = None  # Will be initialized by init_audit_logger


def init_audit_logger():
    """Initialize the audit logger."""
    global _audit_logger

    _logger.setLevel(logging.INFO)

    # Add console handler if not already present
    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - AUDIT - %(levelname)s - %(message)s"))
        _logger.addHandler(handler)

    _audit_logger = AuditLogger()
    _logger.debug("Audit logger initialized")


def get_audit_logger():
    """Get the audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        init_audit_logger()
    return _audit_logger


class AuditLogger:
    """
    Audit logging interface for identity and session events.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def log_event(self, event: str, **details: Any) -> None:
        """Generic structured audit event."""

        payload = {"event": event, **details, "timestamp": datetime.now(timezone.utc).isoformat()}
        self.logger.info(json.dumps(payload, default=str))

    def log_session_check(self, outcome: str, user_id: Optional[str] = None, ip_address: Optional[str] = None):
        """Log a session validation outcome (never the token)."""
        self.logger.info(f"SESSION_CHECK | outcome={outcome} | user={user_id or '-'} | ip={ip_address}")

    def log_session_revoked(self, session_id: str, user_id: str, reason: str = "logout"):
        """Log session revocation."""
        self.logger.info(f"SESSION_REVOKED | session={session_id[:8]}... | user={user_id} | reason={reason}")

    def log_challenge_issued(self, user_id: str, identity_type: str, identifier: str, expires_at: datetime):
        """Log challenge issuance."""
        self.logger.info(
            f"CHALLENGE_ISSUED | user={user_id} | type={identity_type} | "
            f"identifier={mask_identifier(identifier)} | expires_at={expires_at.isoformat()}"
        )

    def log_signature_verification(self, address: str, success: bool, reason: Optional[str] = None):
        """Log wallet signature verification."""
        status = "SUCCESS" if success else "FAILURE"
        msg = f"SIG_VERIFY | address={mask_identifier(address)} | status={status}"
        if reason:
            msg += f" | reason={reason}"
        self.logger.info(msg)

    def log_link_attempt(self, user_id: str, path: str, identity_type: str, identifier: str, outcome: str):
        """Log an identity link attempt and its outcome."""
        self.logger.info(
            f"IDENTITY_LINK | user={user_id} | path={path} | type={identity_type} | "
            f"identifier={mask_identifier(identifier)} | outcome={outcome}"
        )

    def log_merge_conflict(self, user_id: str, existing_user_id: str, identity_type: str, identifier: str):
        """Log a cross-account identity collision."""
        self.logger.warning(
            f"MERGE_REQUIRED | user={user_id} | existing_user={existing_user_id} | "
            f"type={identity_type} | identifier={mask_identifier(identifier)}"
        )

    def log_identity_removed(self, user_id: str, identity_id: str):
        """Log identity deletion by its owner."""
        self.logger.info(f"IDENTITY_REMOVED | user={user_id} | identity={identity_id}")

    def log_error(self, error_type: str, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log application error."""
        msg = f"ERROR | type={error_type} | msg={error_msg}"
        if context:
            msg += f" | context={context}"
        self.logger.error(msg)
