"""
Error taxonomy for the identity and session core.

Every failure the core can report is a ``UserbaseError`` subclass carrying the
HTTP status and machine-readable error code used at the API boundary.
"""

from typing import Any, Dict, Optional


class UserbaseError(Exception):
    """Base class for all identity/session failures."""

    status_code = 500
    error_code = "internal_error"
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def payload(self) -> Dict[str, Any]:
        """Structured fields that are always safe to return to the caller."""
        return {}

    def to_dict(self, expose_details: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        body.update(self.payload())
        if expose_details and self.details.get("cause"):
            body["details"] = str(self.details["cause"])
        return body


class Unauthenticated(UserbaseError):
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class SessionExpired(UserbaseError):
    status_code = 401
    error_code = "session_expired"
    default_message = "Session expired"


class Forbidden(UserbaseError):
    status_code = 403
    error_code = "forbidden"
    default_message = "Access denied"


class NotFound(UserbaseError):
    status_code = 404
    error_code = "not_found"
    default_message = "Resource not found"


class InvalidInput(UserbaseError):
    status_code = 400
    error_code = "invalid_input"
    default_message = "Invalid request"


class InvalidAddress(InvalidInput):
    error_code = "invalid_address"
    default_message = "Invalid address"


class InvalidSignature(InvalidInput):
    error_code = "invalid_signature"
    default_message = "Invalid signature"


class InvalidPublicKey(InvalidInput):
    error_code = "invalid_public_key"
    default_message = "Invalid public key"


class NoActiveChallenge(UserbaseError):
    status_code = 400
    error_code = "no_active_challenge"
    default_message = "No active challenge found"


class ChallengeExpired(UserbaseError):
    status_code = 400
    error_code = "challenge_expired"
    default_message = "Challenge expired"


class SignatureMismatch(UserbaseError):
    status_code = 400
    error_code = "signature_mismatch"
    default_message = "Signature does not match address"


class DuplicateIdentity(UserbaseError):
    """Raised by repositories when (type, identifier) already exists."""

    status_code = 409
    error_code = "duplicate_identity"
    default_message = "Identity already exists"


class MergeRequired(UserbaseError):
    status_code = 409
    error_code = "merge_required"
    default_message = "Identity already linked to another account"

    def __init__(self, existing_user_id: str, message: Optional[str] = None, **details: Any):
        self.existing_user_id = existing_user_id
        super().__init__(message, **details)

    def payload(self) -> Dict[str, Any]:
        return {"merge_required": True, "existing_user_id": self.existing_user_id}


class KeyNotAuthorized(Forbidden):
    error_code = "key_not_authorized"
    default_message = "Public key not authorized for posting"


class HiveAccountNotFound(NotFound):
    error_code = "hive_account_not_found"
    default_message = "Hive account not found"


class VouchingIdentityMissing(UserbaseError):
    status_code = 403
    error_code = "vouching_identity_missing"
    default_message = "You must link the vouching account first"


class Ambiguous(UserbaseError):
    status_code = 409
    error_code = "ambiguous"
    default_message = "Profile lookup ambiguous"

    def payload(self) -> Dict[str, Any]:
        return {"ambiguous": True}


class HandleTaken(UserbaseError):
    status_code = 409
    error_code = "handle_taken"
    default_message = "This handle is already taken"


class BackendUnavailable(UserbaseError):
    status_code = 500
    error_code = "backend_unavailable"
    default_message = "Storage backend unavailable"


class UpstreamUnavailable(UserbaseError):
    """The Hive API could not be reached or answered with an error."""

    status_code = 502
    error_code = "upstream_unavailable"
    default_message = "Failed to reach the Hive API"


class LinkFailed(UserbaseError):
    status_code = 500
    error_code = "link_failed"
    default_message = "Failed to link identity"
