import logging
from datetime import datetime, timedelta
from typing import Generator, Iterable, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from anonchat.config import settings

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("admins", "conversations", "messages", "rate_limits", "security_log")

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from anonchat import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Admin Repository Functions
# =============================================================================

def get_admin_by_username(db: Session, username: str):
    from anonchat.models import Admin

    return db.query(Admin).filter(Admin.username == username).first()


def create_admin(db: Session, username: str, password_hash: str):
    """
    Create an administrator account.

    Raises:
        IntegrityError: if the username is already taken
    """
    from anonchat.models import Admin

    admin = Admin(username=username, password_hash=password_hash, failed_login_attempts=0)
    db.add(admin)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(admin)
    logger.info(f"Admin account created: {username}")
    return admin


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation(db: Session, conversation_id: int):
    from anonchat.models import Conversation

    return db.get(Conversation, conversation_id)


def get_conversation_by_code(db: Session, code: str):
    from anonchat.models import Conversation

    return db.query(Conversation).filter(Conversation.code == code).first()


def create_conversation(
    db: Session,
    code: str,
    creator_ip: Optional[str],
    now: datetime,
    ttl_hours: int,
):
    """
    Create a new pending conversation.

    Raises:
        IntegrityError: if the code collides with an existing conversation
    """
    from anonchat.models import Conversation

    conversation = Conversation(
        code=code,
        status="pending",
        created_at=now,
        updated_at=now,
        last_activity=now,
        expires_at=now + timedelta(hours=ttl_hours),
        creator_ip=creator_ip,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(conversation)
    logger.info(f"Conversation created: id={conversation.id}")
    return conversation


def update_conversation(db: Session, conversation_id: int, now: datetime, **values) -> bool:
    """
    Update columns of one conversation, stamping updated_at.

    Returns:
        True if a row was updated
    """
    from anonchat.models import Conversation

    values["updated_at"] = now
    updated = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id)
        .update(values, synchronize_session=False)
    )
    db.commit()
    logger.debug(f"Conversation {conversation_id} updated: {sorted(values)}")
    return updated > 0


# =============================================================================
# Message Repository Functions
# =============================================================================

def get_messages_after(db: Session, conversation_id: int, after_id: int) -> List:
    """
    Retrieve visible messages of a conversation with id > after_id.

    Ordering is by id ASC; ids are the only ordering guarantee.
    """
    from anonchat.models import Message

    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_(None),
            Message.id > after_id,
        )
        .order_by(Message.id.asc())
        .all()
    )


def get_deleted_messages(db: Session, conversation_id: int, limit: int) -> List:
    from anonchat.models import Message

    return (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_not(None),
        )
        .order_by(Message.deleted_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )


def insert_message(db: Session, conversation_id: int, sender: str, content: str, now: datetime):
    """
    Insert a message and bump the conversation's activity markers.

    Returns:
        The stored Message with its assigned id
    """
    from anonchat.models import Conversation, Message

    message = Message(
        conversation_id=conversation_id,
        sender=sender,
        content=content,
        created_at=now,
        is_read=False,
    )
    db.add(message)
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {"last_activity": now, "updated_at": now}, synchronize_session=False
    )
    db.commit()
    db.refresh(message)
    logger.info(f"Message stored: id={message.id}, conversation={conversation_id}, sender={sender}")
    return message


def mark_messages_read(
    db: Session,
    conversation_id: int,
    ids: Iterable[int],
    sender: str,
    now: datetime,
) -> int:
    """
    Flag unread, visible messages from `sender` as read.

    Returns:
        Number of rows actually updated
    """
    from anonchat.models import Message

    ids = list(ids)
    if not ids:
        return 0

    updated = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_(None),
            Message.is_read.is_(False),
            Message.sender == sender,
            Message.id.in_(ids),
        )
        .update({"is_read": True, "read_at": now}, synchronize_session=False)
    )
    db.commit()
    logger.debug(f"Marked {updated} of {len(ids)} messages read in conversation {conversation_id}")
    return updated
