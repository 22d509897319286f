"""
Ownership challenges for wallet and Hive identities.

A challenge is a random nonce embedded in a canonical, human-readable message.
The message template is versioned: changing it invalidates every outstanding
challenge, so bump ``CHALLENGE_MESSAGE_VERSION`` with any wording change.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from userbase.audit_logger import get_audit_logger
from userbase.errors import ChallengeExpired, InvalidAddress, InvalidInput, NoActiveChallenge
from userbase.metrics import CHALLENGES_ISSUED
from userbase.records import Challenge, IdentityType
from userbase.repositories import ChallengeRepository
from userbase.utils import (
    is_evm_address,
    is_hive_account_name,
    normalize_address,
    normalize_handle,
    secure_random_hex,
    utc_now,
)

logger = logging.getLogger(__name__)

CHALLENGE_MESSAGE_VERSION = 1
DEFAULT_CHALLENGE_TTL = timedelta(minutes=10)
NONCE_BYTES = 16


def _compose(headline: str, user_id: str, subject: str, nonce: str, issued_at: datetime) -> str:
    return "\n".join(
        [
            headline,
            "",
            f"Version: {CHALLENGE_MESSAGE_VERSION}",
            f"User ID: {user_id}",
            subject,
            f"Nonce: {nonce}",
            f"Issued at: {issued_at.isoformat()}",
            "",
            "If you did not request this, you can ignore this message.",
        ]
    )


def build_challenge_message(app_name: str, user_id: str, address: str, nonce: str, issued_at: datetime) -> str:
    """Compose the exact text a wallet signs to link ``address``."""
    headline = f"{app_name} wants to link your wallet to your app account."
    return _compose(headline, user_id, f"Address: {address}", nonce, issued_at)


def build_hive_challenge_message(app_name: str, user_id: str, handle: str, nonce: str, issued_at: datetime) -> str:
    """Compose the text signed with the posting key of Hive account ``handle``."""
    headline = f"{app_name} wants to link your Hive account to your app account."
    return _compose(headline, user_id, f"Hive: @{handle}", nonce, issued_at)


class ChallengeService:
    """Issue, look up and consume ownership challenges for evm and hive identities."""

    def __init__(
        self,
        challenges: ChallengeRepository,
        app_name: str = "Userbase",
        ttl: timedelta = DEFAULT_CHALLENGE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.challenges = challenges
        self.app_name = app_name
        self.ttl = ttl
        self.clock = clock
        self.audit = get_audit_logger()

    def _normalize(self, identity_type: IdentityType, identifier: str) -> str:
        if identity_type is IdentityType.EVM:
            if not is_evm_address(identifier):
                raise InvalidAddress()
            return normalize_address(identifier)
        if identity_type is IdentityType.HIVE:
            handle = normalize_handle(identifier)
            if not is_hive_account_name(handle):
                raise InvalidInput("Invalid Hive handle")
            return handle
        raise InvalidInput(f"Challenges are not supported for {identity_type.value} identities")

    def _message(self, identity_type: IdentityType, user_id: str, identifier: str, nonce: str, issued_at: datetime) -> str:
        if identity_type is IdentityType.HIVE:
            return build_hive_challenge_message(self.app_name, user_id, identifier, nonce, issued_at)
        return build_challenge_message(self.app_name, user_id, identifier, nonce, issued_at)

    def issue(self, user_id: str, identity_type: IdentityType, identifier: str) -> Challenge:
        """Create and persist a fresh challenge; older ones stay outstanding."""
        normalized = self._normalize(identity_type, identifier)
        now = self.clock()
        nonce = secure_random_hex(NONCE_BYTES)
        message = self._message(identity_type, user_id, normalized, nonce, now)

        challenge = self.challenges.insert(
            user_id=user_id,
            identity_type=identity_type,
            identifier=normalized,
            nonce=nonce,
            message=message,
            created_at=now,
            expires_at=now + self.ttl,
        )

        CHALLENGES_ISSUED.labels(type=identity_type.value).inc()
        self.audit.log_challenge_issued(user_id, identity_type.value, normalized, challenge.expires_at)
        return challenge

    def fetch_active(self, user_id: str, identity_type: IdentityType, identifier: str) -> Challenge:
        """
        Return the newest unconsumed challenge for (user, type, identifier).

        Raises:
            NoActiveChallenge: nothing outstanding
            ChallengeExpired: the newest one is past its expiry; callers re-issue
        """
        normalized = self._normalize(identity_type, identifier)
        challenge = self.challenges.find_latest_unconsumed(user_id, identity_type, normalized)
        if challenge is None:
            raise NoActiveChallenge()
        if challenge.is_expired_at(self.clock()):
            raise ChallengeExpired()
        return challenge

    def consume(self, challenge_id: str, consumed_at: Optional[datetime] = None) -> bool:
        """Mark consumed; returns False if it already was (a no-op)."""
        consumed = self.challenges.mark_consumed(challenge_id, consumed_at or self.clock())
        if not consumed:
            logger.info(f"Challenge already consumed | challenge={challenge_id[:8]}...")
        return consumed
