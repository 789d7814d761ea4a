"""
Admin login and participant join flows.

Login order: rate limit by IP, then account lookup, then claim and lockout
checks, and only then password verification. Invalid-credential responses
are padded to a minimum latency without holding any database lock. Password
hashing runs in a worker thread so the event loop keeps serving.
"""

import asyncio
import logging
import secrets
import time
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from anonchat import audit, storage
from anonchat.config import settings
from anonchat.errors import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from anonchat.lockout import LockoutPolicy, is_locked, record_failure, record_success
from anonchat.metrics import record_login_outcome
from anonchat.models import CLOSED_STATUSES
from anonchat.ratelimit import check_and_increment
from anonchat.schemas import AdminLoginRequest, JoinOut, JoinRequest
from anonchat.sessions import AdminClaim, ParticipantClaim, SessionContext
from anonchat.utils import hash_password, password_needs_rehash, utcnow, verify_password

logger = logging.getLogger(__name__)

LOGIN_ACTION = "login_attempt"
JOIN_ACTION = "conversation_join"

# Unambiguous alphabet for conversation codes
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


async def _pad_latency(started: float) -> None:
    """Sleep until FAILED_LOGIN_DELAY_MS has passed since `started`."""
    floor = settings.FAILED_LOGIN_DELAY_MS / 1000
    remaining = floor - (time.monotonic() - started)
    if remaining > 0:
        await asyncio.sleep(remaining)


async def login_admin(
    db: Session,
    session: SessionContext,
    client: audit.ClientInfo,
    payload: AdminLoginRequest,
) -> str:
    """
    Authenticate an administrator and bind the session to the account.

    Returns:
        The redirect target for the admin console

    Raises:
        RateLimitError: too many attempts from this IP
        ValidationError: user or password missing
        AuthenticationError: unknown user or wrong password (generic text)
        AccountLockedError: account is locked, or this failure locked it
    """
    started = time.monotonic()

    # A participant session can never become an admin session
    if isinstance(session.claim, ParticipantClaim):
        audit.log_suspicious(client, "claim_switch_attempt", {"from": "participant", "to": "admin"})
        raise AuthorizationError()

    check_and_increment(
        db, client.ip, LOGIN_ACTION,
        settings.LOGIN_RATE_LIMIT_ATTEMPTS, settings.LOGIN_RATE_LIMIT_WINDOW,
    )

    if not payload.user or not payload.password:
        record_login_outcome("validation_error")
        raise ValidationError("user and password are required")

    account = storage.get_admin_by_username(db, payload.user)
    if account is None:
        audit.log_event(
            audit.EVENT_LOGIN_FAILED, client,
            file_event="admin_login_failed",
            data={"user": payload.user, "reason": "invalid_credentials"},
            details=f"admin_login_failed:user={payload.user}",
        )
        record_login_outcome("invalid_credentials")
        await _pad_latency(started)
        raise AuthenticationError("Invalid credentials")

    if is_locked(account):
        audit.log_event(
            audit.EVENT_LOGIN_FAILED, client,
            file_event="admin_login_locked",
            data={"user": payload.user},
            details=f"admin_login_locked:user={payload.user}",
        )
        record_login_outcome("locked")
        raise AccountLockedError()

    # An admin session stays bound to the account it logged in as
    try:
        session.ensure_can_claim(AdminClaim(account_id=account.id, username=account.username))
    except AuthorizationError:
        audit.log_suspicious(client, "claim_switch_attempt", {"from": "admin", "to": "admin"})
        raise

    policy = LockoutPolicy.from_settings(settings)

    if not await asyncio.to_thread(verify_password, payload.password, account.password_hash):
        attempts, locked_until = record_failure(db, account, policy)
        audit.log_event(
            audit.EVENT_LOGIN_FAILED, client,
            file_event="admin_login_failed",
            data={"user": payload.user, "attempts": attempts},
            details=f"admin_login_failed:user={payload.user};attempts={attempts}",
        )

        if locked_until:
            record_login_outcome("locked")
            minutes = int(policy.lock_duration(attempts).total_seconds() // 60)
            raise AccountLockedError(f"Too many attempts. Account locked for {minutes} min.")

        record_login_outcome("invalid_credentials")
        await _pad_latency(started)
        raise AuthenticationError(
            f"Invalid credentials. Attempts: {attempts}/{policy.max_attempts} "
            f"(remaining: {policy.remaining_attempts(attempts)})"
        )

    if password_needs_rehash(account.password_hash):
        account.password_hash = await asyncio.to_thread(hash_password, payload.password)
        db.commit()
        logger.info(f"Password rehashed for admin id={account.id}")

    record_success(db, account)
    session.authenticate_as_admin(account.id, account.username)

    audit.log_event(
        audit.EVENT_LOGIN_SUCCESS, client,
        file_event="admin_login_success",
        data={"user": account.username, "admin_id": account.id},
        details=f"admin_login_success:user={account.username}",
    )
    record_login_outcome("success")
    return settings.ADMIN_REDIRECT


def generate_code(length: Optional[int] = None) -> str:
    length = length or settings.CONVERSATION_CODE_LENGTH
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def join_conversation(
    db: Session,
    session: SessionContext,
    client: audit.ClientInfo,
    payload: JoinRequest,
) -> JoinOut:
    """
    Bind the session to a conversation as the anonymous participant.

    With a code the existing conversation is joined; without one a new
    conversation is created.

    Raises:
        RateLimitError: too many join attempts from this IP
        NotFoundError: unknown, closed or expired code
    """
    claim = session.claim
    if isinstance(claim, AdminClaim) or (
        isinstance(claim, ParticipantClaim) and claim.code != payload.code
    ):
        audit.log_suspicious(client, "claim_switch_attempt", {"from": claim.role, "to": "participant"})
        raise AuthorizationError()

    check_and_increment(
        db, client.ip, JOIN_ACTION,
        settings.JOIN_RATE_LIMIT_ATTEMPTS, settings.JOIN_RATE_LIMIT_WINDOW,
    )
    now = utcnow()

    if payload.code:
        conversation = storage.get_conversation_by_code(db, payload.code)
        if (
            conversation is None
            or conversation.status in CLOSED_STATUSES
            or (conversation.expires_at is not None and conversation.expires_at <= now)
        ):
            audit.file_log("conversation_join_failed", client, {"code": payload.code})
            raise NotFoundError("Conversation not found")
    else:
        conversation = _create_conversation(db, client, now)

    session.authenticate_as_participant(conversation.id, conversation.code)
    logger.info(f"Participant joined conversation {conversation.id}")

    return JoinOut(
        conversation_id=conversation.id,
        code=conversation.code,
        redirect=settings.PARTICIPANT_REDIRECT,
    )


def _create_conversation(db: Session, client: audit.ClientInfo, now, retries: int = 5):
    for _ in range(retries):
        try:
            conversation = storage.create_conversation(
                db, generate_code(), client.ip, now, settings.CONVERSATION_TTL_HOURS
            )
        except IntegrityError:
            logger.warning("Conversation code collision, retrying")
            continue

        audit.log_event(
            audit.EVENT_CONVERSATION_CREATED, client,
            data={"conversation_id": conversation.id},
            details=f"conversation_created:id={conversation.id}",
        )
        return conversation

    raise InternalError("Could not allocate a conversation code")
