"""Authentication error taxonomy.

Every failure surfaced by the authentication core carries a stable machine-readable
code, a human message, an optional underlying-cause string, the HTTP status the web
layer should answer with, and the terminal flow state it represents. None of these
errors are retried internally.
"""

from typing import Any, Dict, Optional

from datahub.broker.auth.flow_state import FlowState


class AuthError(Exception):
    """Base class for all authentication failures."""

    code: str = "AUTH_ERROR"
    status: int = 400
    flow_state: Optional[FlowState] = None
    default_message: str = "Authentication failed"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Render the uniform error envelope body."""
        error: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            error["details"] = self.details
        return {"error": error, "success": False, "status": self.status}


class InvalidState(AuthError):
    """State parameter missing, never issued, expired or already consumed."""

    code = "INVALID_STATE"
    flow_state = FlowState.STATE_INVALID
    default_message = "Invalid state parameter"


class ExchangeFailed(AuthError):
    """Network failure or provider rejection during the code exchange."""

    code = "TOKEN_EXCHANGE_FAILED"
    flow_state = FlowState.EXCHANGE_FAILED
    default_message = "Failed to exchange authorization code for tokens"


class ProfileFailed(AuthError):
    """Profile fetch failed or the profile is missing required fields."""

    code = "USER_INFO_FAILED"
    flow_state = FlowState.PROFILE_FAILED
    default_message = "Failed to retrieve user information"


class PersistFailed(AuthError):
    """Storage layer error other than a definitive not-found."""

    code = "TOKEN_STORAGE_FAILED"
    flow_state = FlowState.PERSIST_FAILED
    default_message = "Failed to store OAuth tokens in database"


class SessionFailed(AuthError):
    """Signing the session credential failed."""

    code = "JWT_GENERATION_FAILED"
    flow_state = FlowState.SESSION_FAILED
    default_message = "Failed to generate authentication token"


class Unauthenticated(AuthError):
    """Missing or invalid session credential on a request that requires one."""

    code = "UNAUTHENTICATED"
    status = 401
    default_message = "Unauthorized"


class StateGenerationFailed(AuthError):
    """No randomness was available to mint a state token."""

    code = "STATE_GENERATION_FAILED"
    status = 500
    default_message = "Failed to generate OAuth state"
