"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

All timestamps are naive UTC datetimes (see utils.utcnow).
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from anonchat.storage import Base
from anonchat.utils import utcnow


SENDER_ADMIN = "admin"
SENDER_ANONYMOUS = "anonymous"
SENDERS = (SENDER_ADMIN, SENDER_ANONYMOUS)

CONVERSATION_STATUSES = ("pending", "active", "waiting", "closed", "archived")
# Conversations in these states can no longer be joined by code
CLOSED_STATUSES = ("closed", "archived")


class Admin(Base):
    """
    Administrator account.

    `locked_until` in the future means every login attempt is rejected
    before the password is looked at.
    """
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Conversation(Base):
    """
    A two-party conversation addressed by clients through its short code.

    Status is advisory; any value from CONVERSATION_STATUSES may be set
    at any time by an administrator.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    code = Column(String(32), nullable=False, unique=True, index=True)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, nullable=True)
    report = Column(Text, nullable=True)
    creator_ip = Column(String(64), nullable=True)


class Message(Base):
    """
    A chat message.

    The primary key doubles as the polling cursor. AUTOINCREMENT keeps ids
    monotonic and never reused on SQLite, even after rows are removed.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_id_id", "conversation_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    file_path = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)


class RateLimit(Base):
    """Fixed-window attempt counter keyed by (ip_address, action_type)."""
    __tablename__ = "rate_limits"
    __table_args__ = (
        UniqueConstraint("ip_address", "action_type", name="uq_rate_limits_ip_action"),
    )

    id = Column(Integer, primary_key=True)
    ip_address = Column(String(64), nullable=False)
    action_type = Column(String(64), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime, nullable=False)


class SecurityLog(Base):
    """Durable audit trail of security-relevant events."""
    __tablename__ = "security_log"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(32), nullable=False, index=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
