"""
Message synchronization for the polling chat protocol.

Clients poll list_messages with the highest message id they have seen and
receive everything newer, in id order. Read receipts and the typing
indicator ride on the same request/response cycle.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, get_args

from sqlalchemy.orm import Session

from anonchat import storage
from anonchat.access import authorize
from anonchat.audit import ClientInfo, log_suspicious
from anonchat.config import settings
from anonchat.errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from anonchat.models import SENDER_ADMIN, SENDER_ANONYMOUS, SENDERS
from anonchat.schemas import (
    AdminListDeletedAction,
    AdminSaveReportAction,
    AdminSetStatusAction,
    ConversationDetailsAction,
    ConversationOut,
    DeletedMessageOut,
    ListMessagesAction,
    MarkReadAction,
    MessageOut,
    MessagesPage,
    SendMessageAction,
    TypingAction,
)
from anonchat.sessions import AdminClaim, Claim, NoClaim, ParticipantClaim, SessionStore
from anonchat.utils import utcnow

logger = logging.getLogger(__name__)


def role_of(claim: Claim) -> str:
    """Sender role written by, and read receipts owned by, this claim."""
    return SENDER_ADMIN if isinstance(claim, AdminClaim) else SENDER_ANONYMOUS


def other_role(role: str) -> str:
    return SENDER_ANONYMOUS if role == SENDER_ADMIN else SENDER_ADMIN


# =============================================================================
# Synchronizer operations
# =============================================================================

def fetch_since(db: Session, conversation_id: int, after_id: int) -> List[MessageOut]:
    """Visible messages with id > after_id, ascending by id."""
    return [MessageOut.model_validate(m) for m in storage.get_messages_after(db, conversation_id, after_id)]


def send(
    db: Session,
    conversation_id: int,
    claim: Claim,
    content: str,
    sender: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MessageOut:
    """
    Store a message from the caller.

    Administrators may post as either role; participants only as themselves.
    Length is measured in characters.
    """
    content = (content or "").strip()
    if not content:
        raise ValidationError("content: message is empty")
    if len(content) > settings.MAX_MESSAGE_LENGTH:
        raise ValidationError(f"content: message exceeds {settings.MAX_MESSAGE_LENGTH} characters")

    if isinstance(claim, AdminClaim):
        if sender not in SENDERS:
            raise ValidationError(f"sender: must be one of {', '.join(SENDERS)}")
    elif isinstance(claim, ParticipantClaim):
        if sender not in (None, SENDER_ANONYMOUS):
            raise AuthorizationError()
        sender = SENDER_ANONYMOUS
    else:
        raise AuthenticationError()

    message = storage.insert_message(db, conversation_id, sender, content, now or utcnow())
    return MessageOut.model_validate(message)


def mark_read(
    db: Session,
    conversation_id: int,
    ids: List[int],
    claim: Claim,
    now: Optional[datetime] = None,
) -> int:
    """
    Flag messages from the other role as read.

    Returns:
        Number of messages whose flag actually flipped
    """
    wanted = sorted({i for i in ids if i > 0})
    if not wanted:
        return 0
    return storage.mark_messages_read(
        db, conversation_id, wanted, other_role(role_of(claim)), now or utcnow()
    )


def set_typing(store: SessionStore, conversation_id: int, claim: Claim, active: bool,
               now: Optional[datetime] = None) -> None:
    key = ("typing", conversation_id, role_of(claim))
    if active:
        store.set_signal(key, now)
    else:
        store.clear_signal(key)


def other_typing(store: SessionStore, conversation_id: int, claim: Claim,
                 now: Optional[datetime] = None) -> bool:
    """True while the counterpart's typing signal is fresh."""
    key = ("typing", conversation_id, other_role(role_of(claim)))
    age = store.signal_age(key, now)
    return age is not None and age <= settings.TYPING_FRESHNESS_SECONDS


# =============================================================================
# Action dispatch
# =============================================================================

class ChatContext:
    """Everything a chat action handler needs for one request."""

    def __init__(self, db: Session, claim: Claim, store: SessionStore, client: Optional[ClientInfo]):
        self.db = db
        self.claim = claim
        self.store = store
        self.client = client

    @property
    def is_admin(self) -> bool:
        return isinstance(self.claim, AdminClaim)


def _conversation_details(ctx: ChatContext, req: ConversationDetailsAction) -> dict:
    conversation = storage.get_conversation(ctx.db, req.conversation_id)
    out = ConversationOut.model_validate(conversation)
    exclude = None if ctx.is_admin else {"report", "creator_ip"}
    return {"conversation": out.model_dump(mode="json", exclude=exclude)}


def _list_messages(ctx: ChatContext, req: ListMessagesAction) -> dict:
    messages = fetch_since(ctx.db, req.conversation_id, req.after_id)
    theirs = other_role(role_of(ctx.claim))
    page = MessagesPage(
        messages=messages,
        mark_read_ids=[m.id for m in messages if m.sender == theirs],
        other_typing=other_typing(ctx.store, req.conversation_id, ctx.claim),
    )
    return page.model_dump(mode="json")


def _send_message(ctx: ChatContext, req: SendMessageAction) -> dict:
    try:
        message = send(ctx.db, req.conversation_id, ctx.claim, req.content, req.sender)
    except AuthorizationError:
        log_suspicious(ctx.client, "participant_sender_spoof", {"conversation_id": req.conversation_id})
        raise
    return {"message": message.model_dump(mode="json")}


def _mark_read(ctx: ChatContext, req: MarkReadAction) -> dict:
    return {"updated": mark_read(ctx.db, req.conversation_id, req.ids, ctx.claim)}


def _typing(ctx: ChatContext, req: TypingAction) -> dict:
    set_typing(ctx.store, req.conversation_id, ctx.claim, req.typing)
    return {"ok": True}


def _admin_save_report(ctx: ChatContext, req: AdminSaveReportAction) -> dict:
    if len(req.report) > settings.MAX_REPORT_LENGTH:
        raise ValidationError(f"report: exceeds {settings.MAX_REPORT_LENGTH} characters")
    storage.update_conversation(ctx.db, req.conversation_id, utcnow(), report=req.report)
    return {"saved": True}


def _admin_list_deleted(ctx: ChatContext, req: AdminListDeletedAction) -> dict:
    rows = storage.get_deleted_messages(ctx.db, req.conversation_id, settings.DELETED_MESSAGES_LIMIT)
    return {"messages": [DeletedMessageOut.model_validate(m).model_dump(mode="json") for m in rows]}


def _admin_set_status(ctx: ChatContext, req: AdminSetStatusAction) -> dict:
    storage.update_conversation(ctx.db, req.conversation_id, utcnow(), status=req.status)
    logger.info(f"Conversation {req.conversation_id} status set to {req.status}")
    return {"updated": True}


HANDLERS: Dict[type, Callable[[ChatContext, object], dict]] = {
    ConversationDetailsAction: _conversation_details,
    ListMessagesAction: _list_messages,
    SendMessageAction: _send_message,
    MarkReadAction: _mark_read,
    TypingAction: _typing,
    AdminSaveReportAction: _admin_save_report,
    AdminListDeletedAction: _admin_list_deleted,
    AdminSetStatusAction: _admin_set_status,
}

# Action names accepted by the chat endpoint
ACTIONS = tuple(get_args(cls.model_fields["action"].annotation)[0] for cls in HANDLERS)


def dispatch(ctx: ChatContext, req) -> dict:
    """
    Authorize and run one chat action.

    Raises:
        AuthenticationError: no identity on the session
        AuthorizationError: conversation not accessible, or admin-only action
        NotFoundError: conversation does not exist
    """
    if isinstance(ctx.claim, NoClaim):
        raise AuthenticationError()

    decision = authorize(ctx.claim, req.conversation_id)
    if not decision.allowed:
        log_suspicious(
            ctx.client,
            decision.value,
            {"requested": req.conversation_id, "bound": getattr(ctx.claim, "conversation_id", None)},
        )
        raise AuthorizationError()

    if req.admin_only and not ctx.is_admin:
        log_suspicious(ctx.client, "admin_action_denied", {"action": req.action})
        raise AuthorizationError()

    if storage.get_conversation(ctx.db, req.conversation_id) is None:
        raise NotFoundError("Conversation not found")

    return HANDLERS[type(req)](ctx, req)
