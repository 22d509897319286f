"""
Identities Blueprint - Listing, Linking and Unlinking External Identities

Wallet links go through a signed challenge (``/identities/evm/challenge`` then
``/identities/evm/verify``) or through a linked Farcaster account vouching for
the address (``/identities/evm/verify-farcaster``). Hive accounts sign a
challenge with a posting key (``/identities/hive/challenge`` then
``/identities/hive/verify``).

Rate-limited routes resolve the session before the limiter runs, so each
session gets its own bucket.
"""

import logging

from flask import Blueprint, g, jsonify

from userbase.blueprints.common import get_services, json_body, optional_str, session_required
from userbase.errors import (
    Forbidden,
    InvalidAddress,
    InvalidInput,
    InvalidPublicKey,
    InvalidSignature,
    Unauthenticated,
)
from userbase.records import IdentityType
from userbase.security import limiter, verify_limit

logger = logging.getLogger(__name__)

identities_bp = Blueprint("identities", __name__)

CHALLENGE_RATE_LIMIT = "20 per minute"


@identities_bp.route("/identities", methods=["GET"])
@session_required
def list_identities():
    identities = get_services().linker.list_identities(g.user_id)
    return jsonify({"identities": [identity.to_dict() for identity in identities]}), 200


@identities_bp.route("/identities", methods=["POST"])
@session_required
def link_identity():
    """
    Link a provider identity authenticated by the provider itself.

    Expected JSON body:
        - type: identity type (``farcaster``)
        - external_id: provider account id (required)
        - handle, address, metadata, is_primary: optional

    Returns:
        JSON ``{identity}``; 200 for both new and existing links
    """
    data = json_body()

    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise InvalidInput("metadata must be an object")
    is_primary = data.get("is_primary")
    if is_primary is not None and not isinstance(is_primary, bool):
        raise InvalidInput("is_primary must be a boolean")

    result = get_services().linker.link_provider_identity(
        g.user_id,
        data.get("type"),
        external_id=optional_str(data, "external_id"),
        handle=optional_str(data, "handle"),
        address=optional_str(data, "address"),
        metadata=metadata,
        is_primary=is_primary,
    )
    return jsonify({"identity": result.identity.to_dict()}), 200


@identities_bp.route("/identities", methods=["DELETE"])
@session_required
def unlink_identity():
    data = json_body()
    identity_id = optional_str(data, "id")
    if not identity_id:
        raise InvalidInput("Missing identity id")

    try:
        get_services().linker.unlink(g.user_id, identity_id)
    except Forbidden:
        # another user's identity answers 401, same as an unauthenticated caller
        raise Unauthenticated("Not authorized to remove this identity") from None

    return jsonify({"success": True}), 200


@identities_bp.route("/identities/evm/challenge", methods=["POST"])
@session_required
@limiter.limit(CHALLENGE_RATE_LIMIT)
def issue_evm_challenge():
    """
    Issue a wallet ownership challenge.

    Expected JSON body:
        - address: hex wallet address

    Returns:
        JSON ``{message, nonce, expires_at}``; the wallet signs ``message``
    """
    data = json_body()
    address = optional_str(data, "address")
    if not address:
        raise InvalidAddress()

    challenge = get_services().challenges.issue(g.user_id, IdentityType.EVM, address)
    return jsonify(
        {
            "message": challenge.message,
            "nonce": challenge.nonce,
            "expires_at": challenge.expires_at.isoformat(),
        }
    ), 200


@identities_bp.route("/identities/evm/verify", methods=["POST"])
@session_required
@limiter.limit(verify_limit)
def verify_evm_signature():
    """
    Link a wallet by verifying the signature over its outstanding challenge.

    Expected JSON body:
        - address: hex wallet address the challenge was issued for
        - signature: personal_sign signature (0x-prefixed hex)

    Returns:
        JSON ``{identity}``; 409 ``{merge_required, existing_user_id}`` when
        another account owns the address
    """
    data = json_body()
    address = optional_str(data, "address")
    signature = optional_str(data, "signature")
    if not address:
        raise InvalidAddress()
    if not signature:
        raise InvalidSignature("Missing signature")

    result = get_services().linker.link_via_signature(g.user_id, address, signature)
    return jsonify({"identity": result.identity.to_dict()}), 200


@identities_bp.route("/identities/evm/verify-farcaster", methods=["POST"])
@session_required
@limiter.limit(verify_limit)
def verify_evm_via_farcaster():
    """
    Link a wallet that the caller's linked Farcaster account has verified.

    Expected JSON body:
        - address: hex wallet address
        - farcaster_fid: the linked Farcaster account id
    """
    data = json_body()
    address = optional_str(data, "address")
    fid = optional_str(data, "farcaster_fid")
    if not address:
        raise InvalidAddress()
    if not fid:
        raise InvalidInput("Missing farcaster_fid")

    result = get_services().linker.link_via_vouching(g.user_id, address, fid, IdentityType.FARCASTER)
    message = "Wallet linked" if result.created else "Wallet already linked"
    return jsonify(
        {
            "message": message,
            "identity_id": result.identity.id,
            "identity": result.identity.to_dict(),
        }
    ), 200


@identities_bp.route("/identities/hive/challenge", methods=["POST"])
@session_required
@limiter.limit(CHALLENGE_RATE_LIMIT)
def issue_hive_challenge():
    """
    Issue a Hive account ownership challenge.

    Expected JSON body:
        - handle: Hive account name, with or without ``@``

    Returns:
        JSON ``{message, nonce, expires_at}``; 404 when the chain has no such
        account, 502 when no Hive node answered
    """
    data = json_body()
    handle = optional_str(data, "handle")
    if not handle:
        raise InvalidInput("Missing Hive handle")

    challenge = get_services().linker.issue_hive_challenge(g.user_id, handle.lstrip("@"))
    return jsonify(
        {
            "message": challenge.message,
            "nonce": challenge.nonce,
            "expires_at": challenge.expires_at.isoformat(),
        }
    ), 200


@identities_bp.route("/identities/hive/verify", methods=["POST"])
@session_required
@limiter.limit(verify_limit)
def verify_hive_signature():
    """
    Link a Hive account by verifying a posting key signature over its challenge.

    Expected JSON body:
        - handle: Hive account name the challenge was issued for
        - signature: hex signature over the challenge message
        - public_key: ``STM...`` posting public key that signed it

    Returns:
        JSON ``{identity}``; 403 when the key is not a posting key of the
        account, 409 ``{merge_required, existing_user_id}`` when another
        account owns the handle
    """
    data = json_body()
    handle = optional_str(data, "handle")
    signature = optional_str(data, "signature")
    public_key = optional_str(data, "public_key")
    if not handle:
        raise InvalidInput("Missing Hive handle")
    if not signature:
        raise InvalidSignature("Missing signature")
    if not public_key:
        raise InvalidPublicKey("Missing public key")

    result = get_services().linker.link_via_hive_signature(g.user_id, handle.lstrip("@"), signature, public_key)
    return jsonify({"identity": result.identity.to_dict()}), 200
