"""
Unit tests for wallet ownership challenges and signature verification.
"""

from datetime import datetime, timedelta, timezone

import pytest

from userbase.challenges import (
    CHALLENGE_MESSAGE_VERSION,
    ChallengeService,
    build_challenge_message,
    build_hive_challenge_message,
)
from userbase.errors import (
    ChallengeExpired,
    InvalidAddress,
    InvalidInput,
    InvalidPublicKey,
    InvalidSignature,
    NoActiveChallenge,
    SignatureMismatch,
)
from userbase.records import IdentityType
from userbase.signatures import HiveSignatureVerifier, SignatureVerifier


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def challenge_service(repositories, clock):
    return ChallengeService(repositories.challenges, app_name="Userbase", ttl=timedelta(minutes=10), clock=clock)


class TestChallengeMessage:
    """Test the canonical challenge text."""

    def test_message_layout(self):
        """Test that the message is versioned and names user, address and nonce."""
        issued_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        message = build_challenge_message("Userbase", "u1", "0xabc", "ff" * 16, issued_at)

        lines = message.split("\n")
        assert lines[0] == "Userbase wants to link your wallet to your app account."
        assert lines[1] == ""
        assert lines[2] == f"Version: {CHALLENGE_MESSAGE_VERSION}"
        assert lines[3] == "User ID: u1"
        assert lines[4] == "Address: 0xabc"
        assert lines[5] == "Nonce: " + "ff" * 16
        assert lines[6] == "Issued at: 2030-01-01T00:00:00+00:00"
        assert lines[-1] == "If you did not request this, you can ignore this message."

    def test_hive_message_layout(self):
        """Test that the Hive message names the account instead of an address."""
        issued_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        message = build_hive_challenge_message("Userbase", "u1", "alice", "ff" * 16, issued_at)

        lines = message.split("\n")
        assert lines[0] == "Userbase wants to link your Hive account to your app account."
        assert lines[2] == f"Version: {CHALLENGE_MESSAGE_VERSION}"
        assert lines[3] == "User ID: u1"
        assert lines[4] == "Hive: @alice"
        assert lines[5] == "Nonce: " + "ff" * 16
        assert lines[-1] == "If you did not request this, you can ignore this message."


class TestChallengeService:
    """Test challenge issue, lookup and consumption."""

    def test_issue_normalizes_address(self, challenge_service, alice_wallet):
        """Test that challenges are stored under the lower-cased address."""
        challenge = challenge_service.issue("u1", IdentityType.EVM, alice_wallet.address)

        assert challenge.identifier == alice_wallet.address.lower()
        assert f"Address: {alice_wallet.address.lower()}" in challenge.message
        assert len(challenge.nonce) == 32
        assert challenge.expires_at - challenge.created_at == timedelta(minutes=10)

    def test_issue_rejects_bad_address(self, challenge_service):
        """Test that malformed addresses are refused."""
        with pytest.raises(InvalidAddress):
            challenge_service.issue("u1", IdentityType.EVM, "0x1234")

    def test_issue_rejects_non_wallet_types(self, challenge_service):
        """Test that only evm and hive identities use challenges."""
        with pytest.raises(InvalidInput):
            challenge_service.issue("u1", IdentityType.FARCASTER, "123")

    def test_issue_hive_normalizes_handle(self, challenge_service):
        """Test that Hive challenges are stored under the lower-cased handle."""
        challenge = challenge_service.issue("u1", IdentityType.HIVE, " Alice ")

        assert challenge.identifier == "alice"
        assert "Hive: @alice" in challenge.message
        assert challenge_service.fetch_active("u1", IdentityType.HIVE, "ALICE").id == challenge.id

    @pytest.mark.parametrize("handle", ["ab", "1alice", "alice-", "a" * 17, "bad..dots"])
    def test_issue_rejects_invalid_hive_handle(self, challenge_service, handle):
        """Test that names outside Hive's account rules are refused."""
        with pytest.raises(InvalidInput):
            challenge_service.issue("u1", IdentityType.HIVE, handle)

    def test_fetch_active_returns_newest(self, challenge_service, clock, alice_wallet):
        """Test that the most recent outstanding challenge wins."""
        challenge_service.issue("u1", IdentityType.EVM, alice_wallet.address)
        clock.advance(seconds=5)
        newest = challenge_service.issue("u1", IdentityType.EVM, alice_wallet.address)

        assert challenge_service.fetch_active("u1", IdentityType.EVM, alice_wallet.address).id == newest.id

    def test_fetch_active_is_scoped_to_user(self, challenge_service, alice_wallet):
        """Test that another user's challenge is invisible."""
        challenge_service.issue("u1", IdentityType.EVM, alice_wallet.address)

        with pytest.raises(NoActiveChallenge):
            challenge_service.fetch_active("u2", IdentityType.EVM, alice_wallet.address)

    def test_fetch_active_expired(self, challenge_service, clock, alice_wallet):
        """Test that an expired challenge is reported, not re-issued."""
        challenge_service.issue("u1", IdentityType.EVM, alice_wallet.address)
        clock.advance(minutes=10)

        with pytest.raises(ChallengeExpired):
            challenge_service.fetch_active("u1", IdentityType.EVM, alice_wallet.address)

    def test_consume_is_single_use(self, challenge_service, alice_wallet):
        """Test that a consumed challenge is no longer active."""
        challenge = challenge_service.issue("u1", IdentityType.EVM, alice_wallet.address)

        assert challenge_service.consume(challenge.id) is True
        assert challenge_service.consume(challenge.id) is False
        with pytest.raises(NoActiveChallenge):
            challenge_service.fetch_active("u1", IdentityType.EVM, alice_wallet.address)


class TestSignatureVerifier:
    """Test EIP-191 signer recovery."""

    @pytest.fixture
    def verifier(self):
        return SignatureVerifier()

    def test_recover_signer(self, verifier, alice_wallet, sign):
        """Test that the checksummed signer address is recovered."""
        signature = sign(alice_wallet, "hello")

        assert verifier.recover_signer("hello", signature) == alice_wallet.address

    def test_verify_accepts_lowercase_claim(self, verifier, alice_wallet, sign):
        """Test that the claimed address is compared case-insensitively."""
        signature = sign(alice_wallet, "hello")

        assert verifier.verify("hello", signature, alice_wallet.address.lower()) == alice_wallet.address

    def test_verify_rejects_other_address(self, verifier, alice_wallet, bob_wallet, sign):
        """Test that a signature by A claimed for B is a mismatch."""
        signature = sign(alice_wallet, "hello")

        with pytest.raises(SignatureMismatch):
            verifier.verify("hello", signature, bob_wallet.address)

    def test_verify_rejects_other_message(self, verifier, alice_wallet, sign):
        """Test that a signature over different text does not recover the claimant."""
        signature = sign(alice_wallet, "hello")

        with pytest.raises(SignatureMismatch):
            verifier.verify("goodbye", signature, alice_wallet.address)

    @pytest.mark.parametrize("signature", ["0x1234", "not-hex"])
    def test_malformed_signature(self, verifier, signature):
        """Test that garbage signatures are invalid rather than mismatched."""
        with pytest.raises(InvalidSignature):
            verifier.recover_signer("hello", signature)

    def test_missing_signature(self, verifier):
        """Test that an empty signature is invalid."""
        with pytest.raises(InvalidSignature):
            verifier.recover_signer("hello", "")


class TestHiveSignatureVerifier:
    """Test posting key signatures over challenge text."""

    @pytest.fixture
    def verifier(self):
        return HiveSignatureVerifier()

    def test_verify_compact_signature(self, verifier, hive_alice_key):
        """Test that a 65-byte signature with a recovery byte verifies."""
        verifier.verify("hello", hive_alice_key.sign("hello"), hive_alice_key.public_key)

    def test_verify_signature_without_recovery_byte(self, verifier, hive_alice_key):
        """Test that the bare 64-byte r||s form verifies too."""
        signature = hive_alice_key.sign("hello")[2:]

        verifier.verify("hello", "0x" + signature, hive_alice_key.public_key)

    def test_verify_rejects_other_key(self, verifier, hive_alice_key, hive_bob_key):
        """Test that a signature by one key does not verify against another."""
        with pytest.raises(SignatureMismatch):
            verifier.verify("hello", hive_alice_key.sign("hello"), hive_bob_key.public_key)

    def test_verify_rejects_other_message(self, verifier, hive_alice_key):
        with pytest.raises(SignatureMismatch):
            verifier.verify("goodbye", hive_alice_key.sign("hello"), hive_alice_key.public_key)

    @pytest.mark.parametrize("signature", ["", "zz", "1234", "ab" * 63])
    def test_malformed_signature(self, verifier, hive_alice_key, signature):
        """Test that signatures of the wrong shape are invalid rather than mismatched."""
        with pytest.raises(InvalidSignature):
            verifier.verify("hello", signature, hive_alice_key.public_key)

    def test_wrong_key_prefix(self, verifier, hive_alice_key):
        public_key = "TST" + hive_alice_key.public_key[3:]

        with pytest.raises(InvalidPublicKey):
            verifier.verify("hello", hive_alice_key.sign("hello"), public_key)

    def test_bad_key_checksum(self, verifier, hive_alice_key):
        """Test that a key whose trailing checksum does not match is refused."""
        tampered = hive_alice_key.public_key[:-1] + ("1" if hive_alice_key.public_key[-1] != "1" else "2")

        with pytest.raises(InvalidPublicKey):
            verifier.verify("hello", hive_alice_key.sign("hello"), tampered)
