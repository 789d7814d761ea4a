"""
Per-purpose CSRF tokens bound to the server-side session.

A token is reusable for the lifetime of the session that minted it and
only validates for the purpose it was minted for.
"""

import logging

from anonchat.sessions import SessionContext
from anonchat.utils import constant_time_equals, generate_token

logger = logging.getLogger(__name__)

PURPOSE_ADMIN_LOGIN = "admin-login"
PURPOSE_JOIN = "join"
PURPOSE_CHAT = "chat"
PURPOSE_ADMIN_PANEL = "admin-panel"
PURPOSE_LOGOUT = "logout"

PURPOSES = (
    PURPOSE_ADMIN_LOGIN,
    PURPOSE_JOIN,
    PURPOSE_CHAT,
    PURPOSE_ADMIN_PANEL,
    PURPOSE_LOGOUT,
)

_SESSION_KEY = "csrf_tokens"


def issue_token(session: SessionContext, purpose: str) -> str:
    """Return the session's token for `purpose`, minting it on first use."""
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown CSRF purpose: {purpose}")

    tokens = session.data.setdefault(_SESSION_KEY, {})
    token = tokens.get(purpose)
    if token is None:
        token = generate_token(32)
        tokens[purpose] = token
        logger.debug(f"CSRF token issued for purpose={purpose}")
    return token


def validate_token(session: SessionContext, token: str, purpose: str) -> bool:
    """
    Check a presented token against the session's token for `purpose`.

    Sessions that were never started hold no tokens, so nothing validates.
    """
    if not session.started or not token:
        return False

    expected = session.data.get(_SESSION_KEY, {}).get(purpose)
    return constant_time_equals(expected, token)
