"""
Fixed-window rate limiting keyed by (client IP, action type).

Buckets live in the rate_limits table. The first attempt of a window sets
the count to 1; later attempts in the same window increment it; once the
window has elapsed the count restarts at 1. Account state is never touched.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from anonchat.errors import RateLimitError
from anonchat.models import RateLimit
from anonchat.utils import utcnow

logger = logging.getLogger(__name__)


def _load_bucket(db: Session, ip: str, action_type: str) -> Optional[RateLimit]:
    # Row lock so concurrent attempts from one IP serialize (no-op on SQLite)
    return (
        db.query(RateLimit)
        .filter(RateLimit.ip_address == ip, RateLimit.action_type == action_type)
        .with_for_update()
        .first()
    )


def check_and_increment(
    db: Session,
    ip: str,
    action_type: str,
    max_attempts: int,
    window_seconds: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Count one attempt for (ip, action_type).

    Returns:
        The attempt count within the current window

    Raises:
        RateLimitError: once the count exceeds max_attempts, with the
            seconds remaining in the window (minimum 1)
    """
    now = now or utcnow()

    bucket = _load_bucket(db, ip, action_type)
    if bucket is None:
        db.add(RateLimit(ip_address=ip, action_type=action_type, attempt_count=1, window_start=now))
        try:
            db.commit()
            return 1
        except IntegrityError:
            # Another request created the bucket first
            db.rollback()
            bucket = _load_bucket(db, ip, action_type)

    elapsed = (now - bucket.window_start).total_seconds()
    if elapsed >= window_seconds:
        bucket.attempt_count = 1
        bucket.window_start = now
        db.commit()
        logger.debug(f"Rate limit window reset: action={action_type}")
        return 1

    bucket.attempt_count += 1
    attempts = bucket.attempt_count
    db.commit()

    if attempts > max_attempts:
        retry_after = max(1, int(window_seconds - elapsed))
        logger.warning(f"Rate limit exceeded: action={action_type}, attempts={attempts}, retry_after={retry_after}")
        raise RateLimitError(retry_after)

    return attempts
