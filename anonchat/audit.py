"""
Security event recording.

Every event is appended to the JSON-lines security log file and stored in
the security_log table. The database write is best effort: if it fails the
failure itself is appended to the file and the request carries on.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

from anonchat import storage
from anonchat.config import settings
from anonchat.metrics import record_security_event
from anonchat.utils import client_ip

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("anonchat.security")

EVENT_LOGIN_SUCCESS = "login_success"
EVENT_LOGIN_FAILED = "login_failed"
EVENT_CONVERSATION_CREATED = "conversation_created"
EVENT_SUSPICIOUS = "suspicious_activity"

# Only these event types are stored in the security_log table
DB_EVENT_TYPES = (
    EVENT_LOGIN_SUCCESS,
    EVENT_LOGIN_FAILED,
    EVENT_CONVERSATION_CREATED,
    EVENT_SUSPICIOUS,
)


@dataclass(frozen=True)
class ClientInfo:
    ip: str
    user_agent: str


def get_client_info(request: Request) -> ClientInfo:
    """Dependency resolving the caller's address and user agent."""
    remote = request.client.host if request.client else None
    ip = client_ip(remote, request.headers.get("x-forwarded-for"), settings.TRUST_FORWARDED_FOR)
    user_agent = (request.headers.get("user-agent") or "unknown")[:255]
    return ClientInfo(ip=ip, user_agent=user_agent)


def file_log(event: str, client: Optional[ClientInfo], data: Optional[Dict[str, Any]] = None) -> None:
    """Append one event to the security log file."""
    security_logger.info(
        event,
        extra={
            "event": event,
            "ip": client.ip if client else "unknown",
            "ua": client.user_agent if client else "unknown",
            "data": data or {},
        },
    )


def db_log(event_type: str, client: Optional[ClientInfo], details: Optional[str] = None,
           session_factory=None) -> bool:
    """
    Store one event in the security_log table.

    Returns:
        True if the row was written, False if the database refused it
    """
    from anonchat.models import SecurityLog

    if event_type not in DB_EVENT_TYPES:
        event_type = EVENT_SUSPICIOUS

    factory = session_factory or storage.SessionLocal
    db = factory()
    try:
        db.add(SecurityLog(
            event_type=event_type,
            ip_address=client.ip if client else None,
            user_agent=client.user_agent if client else None,
            details=details,
        ))
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store security event {event_type}: {e}")
        file_log("db_log_error", client, {"error": str(e), "event_type": event_type})
        return False
    finally:
        db.close()


def log_event(
    event_type: str,
    client: Optional[ClientInfo],
    file_event: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    details: Optional[str] = None,
) -> None:
    """
    Record a security event on both sinks.

    Args:
        event_type: Category stored in the database
        client: Caller address and user agent
        file_event: Finer-grained event name for the file sink
            (defaults to event_type)
        data: Structured payload for the file sink
        details: Free-text details for the database row
    """
    file_event = file_event or event_type
    record_security_event(file_event)
    file_log(file_event, client, data)
    db_log(event_type, client, details)


def log_suspicious(client: Optional[ClientInfo], reason: str, data: Optional[Dict[str, Any]] = None) -> None:
    log_event(EVENT_SUSPICIOUS, client, file_event=reason, data=data, details=reason)
