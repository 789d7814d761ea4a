"""
Conversation-level authorization.

Administrators may address any conversation; a participant only the one
its session is bound to.
"""

import enum

from anonchat.sessions import AdminClaim, Claim, ParticipantClaim


class AccessDecision(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    # A participant reaching for a conversation other than its own
    DENY_CROSS_CONVERSATION = "deny_cross_conversation"

    @property
    def allowed(self) -> bool:
        return self is AccessDecision.ALLOW


def authorize(claim: Claim, conversation_id: int) -> AccessDecision:
    if isinstance(claim, AdminClaim):
        return AccessDecision.ALLOW
    if isinstance(claim, ParticipantClaim):
        if claim.conversation_id == conversation_id:
            return AccessDecision.ALLOW
        return AccessDecision.DENY_CROSS_CONVERSATION
    return AccessDecision.DENY
