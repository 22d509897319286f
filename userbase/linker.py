"""
Identity linking.

Four ways to attach an external identity to the caller's account:

- ``link_via_signature``: prove wallet ownership by signing an issued challenge.
- ``link_via_hive_signature``: prove control of a Hive account by signing an
  issued challenge with one of its posting keys. Wallets and the Farcaster
  account the Hive profile publishes are linked along with it.
- ``link_via_vouching``: accept an address because an identity the caller has
  already linked (Farcaster) verified it.
- ``link_provider_identity``: attach a provider account (Farcaster fid) that
  the provider's own sign-in flow authenticated.

All paths end in the same dedupe step: an identifier already owned by the
caller is returned unchanged, one owned by somebody else raises MergeRequired
without any write, otherwise a row is inserted.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from userbase.audit_logger import get_audit_logger
from userbase.challenges import ChallengeService
from userbase.errors import (
    DuplicateIdentity,
    InvalidAddress,
    InvalidInput,
    InvalidPublicKey,
    InvalidSignature,
    KeyNotAuthorized,
    LinkFailed,
    MergeRequired,
    NoActiveChallenge,
    SignatureMismatch,
    UpstreamUnavailable,
    UserbaseError,
    VouchingIdentityMissing,
)
from userbase.hive import HiveAccount, HiveClient
from userbase.metrics import IDENTITY_LINKS
from userbase.records import Challenge, Identity, IdentityType
from userbase.repositories import IdentityRepository
from userbase.signatures import HiveSignatureVerifier, SignatureVerifier
from userbase.utils import (
    identifier_for,
    is_evm_address,
    is_hive_account_name,
    mask_identifier,
    normalize_address,
    normalize_handle,
)

logger = logging.getLogger(__name__)

PATH_SIGNATURE = "signature"
PATH_VOUCHING = "vouching"
PATH_PROVIDER = "provider"
PATH_HIVE = "hive_signature"
PATH_HIVE_PROFILE = "hive_profile"


@dataclass(frozen=True)
class LinkResult:
    identity: Identity
    created: bool


class IdentityLinker:
    def __init__(
        self,
        identities: IdentityRepository,
        challenges: ChallengeService,
        verifier: Optional[SignatureVerifier] = None,
        hive: Optional[HiveClient] = None,
        hive_verifier: Optional[HiveSignatureVerifier] = None,
    ):
        self.identities = identities
        self.challenges = challenges
        self.verifier = verifier or SignatureVerifier()
        self.hive = hive
        self.hive_verifier = hive_verifier or HiveSignatureVerifier()
        self.audit = get_audit_logger()

    # ------------------------------------------------------------------
    # Queries and removal
    # ------------------------------------------------------------------

    def list_identities(self, user_id: str) -> List[Identity]:
        return self.identities.find_all_for_user(user_id)

    def unlink(self, user_id: str, identity_id: str) -> None:
        """Delete one of the caller's identities; no other identity is promoted."""
        self.identities.delete(identity_id, user_id)
        self.audit.log_identity_removed(user_id, identity_id)

    # ------------------------------------------------------------------
    # Link paths
    # ------------------------------------------------------------------

    def link_via_signature(self, user_id: str, address: str, signature: str) -> LinkResult:
        """Verify a signed challenge for ``address`` and link it as an evm identity."""

        def attempt() -> LinkResult:
            normalized = self._require_address(address)
            if not signature:
                raise InvalidSignature("Missing signature")

            challenge = self.challenges.fetch_active(user_id, IdentityType.EVM, normalized)

            try:
                self.verifier.verify(challenge.message, signature, normalized)
            except (InvalidSignature, SignatureMismatch) as exc:
                self.audit.log_signature_verification(normalized, False, reason=exc.error_code)
                raise
            self.audit.log_signature_verification(normalized, True)

            return self._claim(
                user_id,
                IdentityType.EVM,
                normalized,
                address=normalized,
                challenge_id=challenge.id,
            )

        return self._run(PATH_SIGNATURE, user_id, IdentityType.EVM, address, attempt)

    def issue_hive_challenge(self, user_id: str, handle: str) -> Challenge:
        """Issue a challenge for ``handle`` once the chain confirms the account exists."""
        normalized = self._require_hive_handle(handle)
        self._hive_client().fetch_account(normalized)
        return self.challenges.issue(user_id, IdentityType.HIVE, normalized)

    def link_via_hive_signature(self, user_id: str, handle: str, signature: str, public_key: str) -> LinkResult:
        """
        Link a Hive account whose posting key signed the outstanding challenge.

        The key must be listed in the account's posting authority on chain; a
        valid signature by any other key raises KeyNotAuthorized.
        """

        def attempt() -> LinkResult:
            normalized = self._require_hive_handle(handle)
            if not signature:
                raise InvalidSignature("Missing signature")
            if not public_key:
                raise InvalidPublicKey("Missing public key")

            challenge = self.challenges.fetch_active(user_id, IdentityType.HIVE, normalized)

            try:
                self.hive_verifier.verify(challenge.message, signature, public_key)
            except (InvalidPublicKey, InvalidSignature, SignatureMismatch) as exc:
                self.audit.log_signature_verification(normalized, False, reason=exc.error_code)
                raise

            account = self._hive_client().fetch_account(normalized)
            if public_key.strip() not in account.posting_keys:
                self.audit.log_signature_verification(normalized, False, reason=KeyNotAuthorized.error_code)
                raise KeyNotAuthorized()
            self.audit.log_signature_verification(normalized, True)

            result = self._claim(
                user_id,
                IdentityType.HIVE,
                normalized,
                handle=normalized,
                challenge_id=challenge.id,
            )
            self._link_hive_profile(user_id, account)
            return result

        return self._run(PATH_HIVE, user_id, IdentityType.HIVE, handle or "", attempt)

    def link_via_vouching(
        self,
        user_id: str,
        address: str,
        vouching_external_id: Any,
        vouching_type: IdentityType = IdentityType.FARCASTER,
    ) -> LinkResult:
        """Link ``address`` without a signature because a linked identity vouches for it."""

        def attempt() -> LinkResult:
            normalized = self._require_address(address)
            external_id = identifier_for(vouching_type, external_id=vouching_external_id)
            if not external_id:
                raise InvalidInput(f"Missing {vouching_type.value} id")

            voucher = self.identities.find_by_type_and_identifier(vouching_type, external_id)
            if voucher is None or voucher.user_id != user_id or voucher.verified_at is None:
                raise VouchingIdentityMissing(f"You must link your {vouching_type.value} account first")

            metadata = {"verified_via": vouching_type.value, f"{vouching_type.value}_fid": external_id}
            return self._claim(user_id, IdentityType.EVM, normalized, address=normalized, metadata=metadata)

        return self._run(PATH_VOUCHING, user_id, IdentityType.EVM, address, attempt)

    def link_provider_identity(
        self,
        user_id: str,
        identity_type: Any,
        external_id: Any = None,
        handle: Optional[str] = None,
        address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_primary: Optional[bool] = None,
    ) -> LinkResult:
        """Attach a provider account (currently Farcaster) identified by its external id."""
        try:
            parsed_type = IdentityType.parse(identity_type)
        except ValueError:
            raise InvalidInput("Unsupported identity type") from None
        if parsed_type is not IdentityType.FARCASTER:
            raise InvalidInput("Unsupported identity type")

        def attempt() -> LinkResult:
            identifier = identifier_for(parsed_type, external_id=external_id)
            if not identifier:
                raise InvalidInput("Farcaster fid is required")
            if address is not None and not is_evm_address(address):
                raise InvalidAddress()

            return self._claim(
                user_id,
                parsed_type,
                identifier,
                handle=normalize_handle(handle),
                address=normalize_address(address),
                external_id=identifier,
                metadata=metadata,
                is_primary=is_primary,
            )

        return self._run(PATH_PROVIDER, user_id, parsed_type, str(external_id or ""), attempt)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    @staticmethod
    def _require_hive_handle(handle: Optional[str]) -> str:
        normalized = normalize_handle(handle)
        if not normalized:
            raise InvalidInput("Missing Hive handle")
        if not is_hive_account_name(normalized):
            raise InvalidInput("Invalid Hive handle")
        return normalized

    def _hive_client(self) -> HiveClient:
        if self.hive is None:
            raise UpstreamUnavailable("Hive API is not configured")
        return self.hive

    def _link_hive_profile(self, user_id: str, account: HiveAccount) -> None:
        """Link the wallets and Farcaster account a Hive profile publishes; conflicts are skipped."""
        links = [
            (IdentityType.EVM, address, {"address": address, "metadata": {"source": "hive"}})
            for address in account.wallet_addresses()
        ]
        farcaster = account.farcaster_account()
        if farcaster:
            fields = {
                "handle": normalize_handle(farcaster["username"]),
                "address": normalize_address(farcaster["custody_address"]),
                "external_id": farcaster["fid"],
                "metadata": {"verified_wallets": farcaster["verified_wallets"], "source": "hive"},
            }
            links.append((IdentityType.FARCASTER, farcaster["fid"], fields))

        for identity_type, identifier, fields in links:
            try:
                self._run(
                    PATH_HIVE_PROFILE,
                    user_id,
                    identity_type,
                    identifier,
                    partial(self._claim, user_id, identity_type, identifier, **fields),
                )
            except UserbaseError as exc:
                logger.info(
                    f"Skipped Hive profile link | type={identity_type.value} | "
                    f"identifier={mask_identifier(identifier)} | reason={exc.error_code}"
                )

    @staticmethod
    def _require_address(address: Optional[str]) -> str:
        if not is_evm_address(address):
            raise InvalidAddress()
        return normalize_address(address)

    def _claim(
        self,
        user_id: str,
        identity_type: IdentityType,
        identifier: str,
        handle: Optional[str] = None,
        address: Optional[str] = None,
        external_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_primary: Optional[bool] = None,
        challenge_id: Optional[str] = None,
    ) -> LinkResult:
        existing = self.identities.find_by_type_and_identifier(identity_type, identifier)
        if existing is not None:
            return self._resolve_existing(user_id, existing, challenge_id)

        try:
            identity = self.identities.insert(
                user_id=user_id,
                identity_type=identity_type,
                identifier=identifier,
                handle=handle,
                address=address,
                external_id=external_id,
                is_primary=is_primary,
                metadata=metadata or {},
                consume_challenge_id=challenge_id,
            )
        except DuplicateIdentity:
            # Lost an insert race; the winner's row decides mine vs merge.
            existing = self.identities.find_by_type_and_identifier(identity_type, identifier)
            if existing is None:
                raise LinkFailed("Identity changed while linking") from None
            return self._resolve_existing(user_id, existing, challenge_id)

        return LinkResult(identity=identity, created=True)

    def _resolve_existing(self, user_id: str, existing: Identity, challenge_id: Optional[str]) -> LinkResult:
        if existing.user_id != user_id:
            raise MergeRequired(existing.user_id)
        if challenge_id and not self.challenges.consume(challenge_id):
            raise NoActiveChallenge()
        return LinkResult(identity=existing, created=False)

    def _run(
        self,
        path: str,
        user_id: str,
        identity_type: IdentityType,
        identifier: str,
        attempt: Callable[[], LinkResult],
    ) -> LinkResult:
        try:
            result = attempt()
        except MergeRequired as exc:
            IDENTITY_LINKS.labels(path=path, outcome=exc.error_code).inc()
            self.audit.log_merge_conflict(user_id, exc.existing_user_id, identity_type.value, identifier)
            raise
        except UserbaseError as exc:
            IDENTITY_LINKS.labels(path=path, outcome=exc.error_code).inc()
            self.audit.log_link_attempt(user_id, path, identity_type.value, identifier, exc.error_code)
            raise
        except Exception as exc:
            IDENTITY_LINKS.labels(path=path, outcome=LinkFailed.error_code).inc()
            logger.error(
                f"Identity link failed | path={path} | type={identity_type.value} | "
                f"identifier={mask_identifier(identifier)} | error={type(exc).__name__}"
            )
            raise LinkFailed(cause=exc) from exc

        outcome = "created" if result.created else "existing"
        IDENTITY_LINKS.labels(path=path, outcome=outcome).inc()
        self.audit.log_link_attempt(user_id, path, identity_type.value, identifier, outcome)
        return result
