"""Publish pre-flight checks.

All of these run before a build id is created, so a rejected publish
never consumes a queue slot:
- check_dangerous_patterns(): SES / lockdown() constructs that break in
  the browser sandbox
- is_rate_limited(): per-user minimum interval between publishes
- check_quota(): maximum number of active listings per user
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from bundlepipe.errors import DANGEROUS_PATTERN, MAX_APPS, RATE_LIMITED
from bundlepipe.listings.service import count_active_listings
from bundlepipe.publish.models import RateLimitEntry

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

SES_PATTERN = re.compile(
    r"(\blockdown\s*\("
    r"|\brequire\s*\(\s*['\"]ses['\"]\s*\)"
    r"|\bfrom\s+['\"]ses['\"]"
    r"|import\s*\(\s*['\"]ses['\"]\s*\))"
)


class DangerousPatternError(Exception):
    """Raised when submitted source uses a construct known to break the sandbox."""

    def __init__(self, match: str, code: str = DANGEROUS_PATTERN) -> None:
        super().__init__(
            "SES/lockdown is not supported in the browser. Remove it or guard for server-only."
        )
        self.match = match
        self.code = code
        self.details = {"match": match}


class QuotaExceededError(Exception):
    """Raised when a user already has the maximum number of active listings."""

    def __init__(self, limit: int, code: str = MAX_APPS) -> None:
        super().__init__(f"Maximum number of apps reached ({limit})")
        self.limit = limit
        self.code = code
        self.details = {"limit": limit}


class RateLimitedError(Exception):
    """Raised when a user publishes again within the rate limit window."""

    def __init__(self, retry_after: float, code: str = RATE_LIMITED) -> None:
        super().__init__(f"Too many publishes; retry in {retry_after:.1f}s")
        self.retry_after = retry_after
        self.code = code
        self.details = {"retryAfter": retry_after}


def check_dangerous_patterns(source: str) -> None:
    """Reject source that uses SES or lockdown().

    Raises:
        DangerousPatternError: On the first match.
    """
    match = SES_PATTERN.search(source)
    if match:
        logger.info("Publish blocked: dangerous pattern %r", match.group(0))
        raise DangerousPatternError(match.group(0))


def is_rate_limited(session: Session, key: str, ttl_seconds: float, now: int | None = None) -> bool:
    """Check and update the last-call time of a key.

    Store errors degrade to "not limited" so that the build path stays
    available.

    Args:
        session: Database session.
        key: Rate limit key.
        ttl_seconds: Minimum interval between calls.
        now: Current time in epoch ms.

    Returns:
        True if the key was used within ttl_seconds; otherwise False, and
        the stored time is updated.
    """
    if ttl_seconds <= 0:
        return False
    if now is None:
        now = int(time.time() * 1000)
    ttl_ms = int(ttl_seconds * 1000)
    try:
        with session.begin_nested():
            entry = session.get(RateLimitEntry, key)
            if entry is not None and now - entry.ts < ttl_ms:
                return True
            expires_at = datetime.fromtimestamp((now + ttl_ms) / 1000, tz=timezone.utc)
            if entry is None:
                session.add(RateLimitEntry(key=key, ts=now, expires_at=expires_at))
            else:
                entry.ts = now
                entry.expires_at = expires_at
        return False
    except OperationalError as e:
        logger.warning("Rate limit store unavailable, not limiting %s: %s", key, e)
        return False


def check_rate_limit(session: Session, owner_uid: str, settings: Settings, now: int | None = None) -> None:
    """Raise if the user published within the rate limit window.

    Raises:
        RateLimitedError: If limited.
    """
    if is_rate_limited(session, f"publish:{owner_uid}", settings.publish_rate_limit_seconds, now):
        raise RateLimitedError(settings.publish_rate_limit_seconds)


def check_quota(session: Session, owner_uid: str, settings: Settings, gold: bool = False) -> None:
    """Raise if the user cannot create another listing.

    Raises:
        QuotaExceededError: If the active listing count is at the limit.
    """
    limit = settings.gold_max_apps_per_user if gold else settings.max_apps_per_user
    active = count_active_listings(session, owner_uid)
    if active >= limit:
        logger.info("Publish blocked: %s has %d of %d apps", owner_uid, active, limit)
        raise QuotaExceededError(limit)


__all__ = [
    "SES_PATTERN",
    "DangerousPatternError",
    "QuotaExceededError",
    "RateLimitedError",
    "check_dangerous_patterns",
    "check_quota",
    "check_rate_limit",
    "is_rate_limited",
]
