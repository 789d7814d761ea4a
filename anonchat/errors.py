"""
Error taxonomy for the AnonChat API.

Every error carries the HTTP status and the message that is safe to show
to the client. Handlers in main.py render them into the response envelope.
"""

from typing import Dict, Optional


class AnonChatError(Exception):
    """Base class for errors rendered into the response envelope."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.message = message or self.public_message
        self.headers = headers or {}
        super().__init__(self.message)


class ValidationError(AnonChatError):
    """Missing, oversized or malformed field. User-fixable."""

    status_code = 422
    public_message = "Invalid request"


class AuthenticationError(AnonChatError):
    """Bad credentials or missing identity. Text stays generic on purpose."""

    status_code = 401
    public_message = "Unauthorized"


class AccountLockedError(AuthenticationError):
    """Credentials refused because the account is locked."""

    status_code = 429
    public_message = "Account temporarily locked"


class AuthorizationError(AnonChatError):
    """CSRF mismatch, cross-conversation access or insufficient role."""

    status_code = 403
    public_message = "Unauthorized"


class RateLimitError(AnonChatError):
    """Too many attempts from one address within the current window."""

    status_code = 429

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            f"Too many attempts. Try again in ~{retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


class NotFoundError(AnonChatError):
    status_code = 404
    public_message = "Not found"


class InternalError(AnonChatError):
    status_code = 500
    public_message = "Internal server error"
