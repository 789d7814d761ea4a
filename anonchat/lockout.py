"""
Per-account lockout after repeated failed logins.

The failed counter survives an expired lock, so each further failure past
the threshold re-locks the account for an escalating duration until a
successful login resets it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from anonchat.models import Admin
from anonchat.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int
    lock_minutes: int
    escalation_factor: float = 1.0
    max_lock_minutes: Optional[int] = None

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.LOCKOUT_MAX_ATTEMPTS,
            lock_minutes=settings.LOCKOUT_DURATION_MINUTES,
            escalation_factor=settings.LOCKOUT_ESCALATION_FACTOR,
            max_lock_minutes=settings.LOCKOUT_MAX_DURATION_MINUTES,
        )

    def lock_duration(self, attempts: int) -> timedelta:
        """Lock length after `attempts` consecutive failures (attempts >= max_attempts)."""
        relocks = max(0, attempts - self.max_attempts)
        minutes = self.lock_minutes * (self.escalation_factor ** relocks)
        if self.max_lock_minutes is not None:
            minutes = min(minutes, self.max_lock_minutes)
        return timedelta(minutes=minutes)

    def remaining_attempts(self, attempts: int) -> int:
        return max(0, self.max_attempts - attempts)


def is_locked(account: Admin, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return account.locked_until is not None and account.locked_until > now


def _reload_for_update(db: Session, account: Admin) -> Admin:
    return db.query(Admin).filter(Admin.id == account.id).with_for_update().populate_existing().one()


def record_failure(
    db: Session,
    account: Admin,
    policy: LockoutPolicy,
    now: Optional[datetime] = None,
) -> Tuple[int, Optional[datetime]]:
    """
    Count a failed password for the account.

    Returns:
        (attempts, locked_until) where locked_until is None unless this
        failure locked the account
    """
    now = now or utcnow()
    row = _reload_for_update(db, account)

    attempts = (row.failed_login_attempts or 0) + 1
    locked_until = None
    if attempts >= policy.max_attempts:
        locked_until = now + policy.lock_duration(attempts)

    row.failed_login_attempts = attempts
    row.locked_until = locked_until
    db.commit()

    if locked_until:
        logger.warning(f"Account locked: id={row.id}, attempts={attempts}, until={locked_until.isoformat()}")
    else:
        logger.info(f"Failed login recorded: id={row.id}, attempts={attempts}")
    return attempts, locked_until


def record_success(db: Session, account: Admin, now: Optional[datetime] = None) -> None:
    """Reset the failed counter, clear the lock and stamp last_login."""
    now = now or utcnow()
    row = _reload_for_update(db, account)
    row.failed_login_attempts = 0
    row.locked_until = None
    row.last_login = now
    db.commit()
