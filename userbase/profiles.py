"""
Profile lookup and profile updates.

Lookup order for ``ProfileResolver.resolve``: hive identity by handle, user
handle, display name, evm identity by address. The first step that finds a
user wins; a display name shared by several users is reported as ambiguous
instead of picking one.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from userbase.audit_logger import get_audit_logger
from userbase.errors import Ambiguous, InvalidInput, NotFound
from userbase.records import Identity, IdentityType, UserProfile
from userbase.repositories import PROFILE_FIELDS, IdentityRepository, UserRepository
from userbase.utils import is_valid_handle, normalize_address, normalize_handle

logger = logging.getLogger(__name__)

MATCH_HIVE = "hive"
MATCH_HANDLE = "handle"
MATCH_EVM = "evm"


@dataclass(frozen=True)
class ProfileMatch:
    user: UserProfile
    identities: List[Identity]
    matched_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict(),
            "identities": [identity.to_dict() for identity in self.identities],
            "match": self.matched_by,
        }


class ProfileResolver:
    def __init__(self, users: UserRepository, identities: IdentityRepository):
        self.users = users
        self.identities = identities

    def resolve(
        self,
        handle: Optional[str] = None,
        provider_handle: Optional[str] = None,
        address: Optional[str] = None,
    ) -> ProfileMatch:
        """
        Resolve a public profile.

        Args:
            handle: app handle, falling back to a display name match
            provider_handle: hive account name
            address: wallet address of a linked evm identity

        Raises:
            InvalidInput: no identifier given
            Ambiguous: the handle only matched display names of several users
            NotFound: nothing matched
        """
        handle = normalize_handle(handle)
        provider_handle = normalize_handle(provider_handle)
        address = normalize_address(address)

        if not handle and not provider_handle and not address:
            raise InvalidInput("Missing profile identifier")

        user_id: Optional[str] = None
        user: Optional[UserProfile] = None
        matched_by: Optional[str] = None

        if provider_handle:
            identity = self.identities.find_by_type_and_identifier(IdentityType.HIVE, provider_handle)
            if identity is not None:
                user_id, matched_by = identity.user_id, MATCH_HIVE

        if user_id is None and handle:
            user = self.users.find_by_handle(handle)
            if user is None:
                candidates = self.users.find_by_display_name(handle, limit=2)
                if len(candidates) > 1:
                    logger.info(f"Ambiguous profile lookup | handle={handle}")
                    raise Ambiguous("Profile lookup ambiguous")
                user = candidates[0] if candidates else None
            if user is not None:
                user_id, matched_by = user.id, MATCH_HANDLE

        if user_id is None and address:
            identity = self.identities.find_by_type_and_identifier(IdentityType.EVM, address)
            if identity is not None:
                user_id, matched_by = identity.user_id, MATCH_EVM

        if user_id is None:
            raise NotFound("Profile not found")

        if user is None:
            user = self.users.get(user_id)
            if user is None:
                # identity row outlived its user
                raise NotFound("Profile not found")

        return ProfileMatch(user=user, identities=self.identities.find_all_for_user(user_id), matched_by=matched_by)


class ProfileService:
    """Owner-side profile edits."""

    def __init__(self, users: UserRepository):
        self.users = users
        self.audit = get_audit_logger()

    def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> UserProfile:
        changes: Dict[str, Any] = {}
        for key in PROFILE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if value is not None and not isinstance(value, str):
                raise InvalidInput(f"{key} must be a string")
            if isinstance(value, str):
                value = value.strip() or None
            changes[key] = value

        if not changes:
            raise InvalidInput("No profile fields to update")

        if "handle" in changes and changes["handle"] is not None:
            handle = changes["handle"].lower()
            if not is_valid_handle(handle):
                raise InvalidInput("Handle must be 3-32 characters of a-z, 0-9, '.' or '-'")
            changes["handle"] = handle

        user = self.users.update_profile(user_id, changes)
        if user is None:
            raise NotFound("User not found")
        self.audit.log_event("profile.updated", user=user_id, fields=sorted(changes))
        return user
