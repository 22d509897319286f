"""
Profile Blueprint - Public Profile Lookup and Owner Updates
"""

import logging

from flask import Blueprint, g, jsonify, request

from userbase.blueprints.common import get_services, json_body, session_required

logger = logging.getLogger(__name__)

profile_bp = Blueprint("profile", __name__)


@profile_bp.route("/profile", methods=["GET"])
def get_profile():
    """
    Resolve a public profile.

    Query parameters (at least one):
        - handle: app handle or display name
        - hive_handle: hive account name
        - address: linked wallet address

    Returns:
        JSON ``{user, identities, match}``
    """
    match = get_services().profiles.resolve(
        handle=request.args.get("handle"),
        provider_handle=request.args.get("hive_handle"),
        address=request.args.get("address"),
    )
    return jsonify(match.to_dict()), 200


@profile_bp.route("/profile", methods=["PATCH"])
@session_required
def update_profile():
    user = get_services().profile_editor.update_profile(g.user_id, json_body())
    return jsonify({"user": user.to_dict()}), 200
