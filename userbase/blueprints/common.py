"""Helpers shared by the HTTP blueprints: service lookup, session guard, JSON bodies."""

from functools import wraps
from typing import Any, Dict, Optional

from flask import current_app, g, request

from userbase.errors import InvalidInput
from userbase.factory import EXTENSION_KEY, Services
from userbase.tokens import extract_bearer


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def session_cookie_name() -> str:
    return current_app.config.get("SESSION_COOKIE_NAME_USERBASE", "userbase_refresh")


def session_token() -> Optional[str]:
    """Raw refresh token from the session cookie, else from a Bearer header."""
    return request.cookies.get(session_cookie_name()) or extract_bearer(request.headers.get("Authorization"))


def session_required(view):
    """Resolve the caller's session and expose it as ``g.session`` / ``g.user_id``."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        session = get_services().sessions.resolve_session(session_token(), ip_address=request.remote_addr)
        g.session = session
        g.user_id = session.user_id
        return view(*args, **kwargs)

    return wrapper


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput("Request body must be a JSON object")
    return data


def optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise InvalidInput(f"{key} must be a string")
    return str(value).strip() or None
