"""
Session Blueprint - Current Session and Logout
"""

import logging

from flask import Blueprint, g, jsonify

from userbase.blueprints.common import get_services, session_cookie_name, session_required, session_token

logger = logging.getLogger(__name__)

session_bp = Blueprint("session", __name__)


@session_bp.route("/session", methods=["GET"])
@session_required
def current_session():
    """
    Describe the caller's session.

    Returns:
        JSON ``{user_id, session_id, expires_at, user}``; 401 without a valid session
    """
    user = get_services().repositories.users.get(g.user_id)
    return jsonify(
        {
            "user_id": g.user_id,
            "session_id": g.session.id,
            "expires_at": g.session.expires_at.isoformat(),
            "user": user.to_dict() if user else None,
        }
    ), 200


@session_bp.route("/session/logout", methods=["POST"])
def logout():
    """Revoke the session and clear its cookie."""
    get_services().sessions.revoke(session_token())

    response = jsonify({"success": True})
    response.delete_cookie(session_cookie_name())
    return response, 200
