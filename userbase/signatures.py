"""
Signature verification.

``SignatureVerifier`` recovers the signer of an EIP-191 ``personal_sign``
message and compares it to the address the caller claims to own.
``HiveSignatureVerifier`` checks a Hive Keychain style signature (secp256k1
over the SHA-256 of the message) against a public key in ``STM...`` form.
"""

import hashlib
import logging
import re

import base58
from Crypto.Hash import RIPEMD160
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.datatypes import NonRecoverableSignature, PublicKey
from eth_keys.exceptions import BadSignature
from eth_utils.exceptions import ValidationError

from userbase.errors import InvalidPublicKey, InvalidSignature, SignatureMismatch
from userbase.utils import checksum_address

logger = logging.getLogger(__name__)


class SignatureVerifier:
    """Ethereum-style message signature recovery."""

    def recover_signer(self, message: str, signature: str) -> str:
        """
        Recover the checksummed address that signed ``message``.

        Raises:
            InvalidSignature: malformed signature bytes or unrecoverable key
        """
        if not signature or not isinstance(signature, str):
            raise InvalidSignature("Missing signature")

        try:
            signable = encode_defunct(text=message)
            recovered = Account.recover_message(signable, signature=signature.strip())
        except (BadSignature, ValidationError, ValueError, TypeError) as exc:
            logger.debug(f"Signature recovery failed: {type(exc).__name__}")
            raise InvalidSignature() from exc

        return checksum_address(recovered)

    def verify(self, message: str, signature: str, claimed_address: str) -> str:
        """
        Check that ``claimed_address`` signed ``message``.

        Returns the recovered checksummed address. A well-formed signature from a
        different key raises SignatureMismatch, not InvalidSignature.
        """
        recovered = self.recover_signer(message, signature)
        if recovered != checksum_address(claimed_address):
            raise SignatureMismatch()
        return recovered


HIVE_KEY_PREFIX = "STM"
HEX_PATTERN = re.compile(r"[0-9a-f]+")


def decode_hive_public_key(public_key: str, prefix: str = HIVE_KEY_PREFIX) -> PublicKey:
    """
    Decode ``STM`` + base58(compressed key + ripemd160 checksum).

    Raises:
        InvalidPublicKey: wrong prefix, bad encoding or checksum, or not a curve point
    """
    if not public_key or not public_key.startswith(prefix):
        raise InvalidPublicKey()
    try:
        raw = base58.b58decode(public_key[len(prefix):])
    except ValueError as exc:
        raise InvalidPublicKey() from exc
    if len(raw) != 37:
        raise InvalidPublicKey()

    compressed, checksum = raw[:33], raw[33:]
    if RIPEMD160.new(compressed).digest()[:4] != checksum:
        raise InvalidPublicKey("Public key checksum mismatch")
    try:
        return PublicKey.from_compressed_bytes(compressed)
    except (ValidationError, ValueError) as exc:
        raise InvalidPublicKey() from exc


def parse_hive_signature(signature: str) -> NonRecoverableSignature:
    """
    Parse a hex signature: 65 bytes (recovery byte, r, s) or 64 bytes (r, s).

    Raises:
        InvalidSignature: not hex, wrong length or out-of-range r/s
    """
    normalized = (signature or "").strip().lower()
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    if not HEX_PATTERN.fullmatch(normalized) or len(normalized) % 2:
        raise InvalidSignature("Invalid signature format")

    raw = bytes.fromhex(normalized)
    if len(raw) == 65:
        raw = raw[1:]
    elif len(raw) != 64:
        raise InvalidSignature("Invalid signature format")

    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:], "big")
    try:
        # the recovery byte is not needed to verify against a known key
        return NonRecoverableSignature(rs=(r, s))
    except BadSignature as exc:
        raise InvalidSignature("Invalid signature format") from exc


class HiveSignatureVerifier:
    """Posting-key signature checks for Hive account links."""

    def __init__(self, prefix: str = HIVE_KEY_PREFIX):
        self.prefix = prefix

    def verify(self, message: str, signature: str, public_key: str) -> None:
        """
        Check that ``public_key`` signed ``message``.

        Raises:
            InvalidPublicKey / InvalidSignature: malformed input
            SignatureMismatch: well-formed, but not a signature by that key
        """
        if not signature:
            raise InvalidSignature("Missing signature")
        key = decode_hive_public_key(public_key.strip(), self.prefix)
        parsed = parse_hive_signature(signature)
        digest = hashlib.sha256(message.encode("utf-8")).digest()

        if not key.verify_msg_hash(digest, parsed):
            logger.debug("Hive signature does not verify against the given key")
            raise SignatureMismatch("Signature does not match public key")
