"""Build status push feed.

Produces server-sent event frames for one build by polling the job
record. A ``state`` event is emitted on every observed change of state or
progress, a comment line keeps idle connections open, and a single
``final`` event carrying the artifact set ends the feed.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

from bundlepipe.builds.service import COMPLETED_STATES, get_status
from bundlepipe.db import get_session
from bundlepipe.types import TERMINAL_STATES

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

# Build work is over once a job is in review; moderation may take days
FEED_END_STATES = TERMINAL_STATES | COMPLETED_STATES

KEEPALIVE_FRAME = ":ka\n\n"


def format_event(event: str, data: dict[str, Any]) -> str:
    """Render one server-sent event frame."""
    return f"event: {event}\ndata: {json.dumps(data, sort_keys=True)}\n\n"


def status_events(
    session_factory: sessionmaker[Session],
    build_id: str,
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[str]:
    """Yield event frames for a build until it stops building.

    Args:
        session_factory: Session factory of the job store.
        build_id: Build to follow.
        settings: Application settings (poll and keep-alive intervals).
        sleep: Sleep function, replaceable in tests.
        clock: Monotonic clock, replaceable in tests.

    Yields:
        ``event: state`` frames, ``:ka`` keep-alive comments, and one
        ``event: final`` frame.

    Raises:
        BuildNotFoundError: If the build does not exist at the first poll.
    """
    last_seen: tuple[str, int] | None = None
    last_sent = clock()

    while True:
        with get_session(session_factory) as session:
            report = get_status(session, build_id, settings=settings)

        snapshot = (report.state.value, report.progress)
        if snapshot != last_seen:
            last_seen = snapshot
            last_sent = clock()
            yield format_event("state", {"state": report.state.value, "progress": report.progress})

        if report.state in FEED_END_STATES:
            final: dict[str, Any] = {
                "state": report.state.value,
                "artifacts": report.artifacts.to_dict() if report.artifacts else None,
                "error": report.error,
            }
            if report.condition is not None:
                final["condition"] = report.condition
            logger.debug("Feed for build %s finished in %s", build_id, report.state.value)
            yield format_event("final", final)
            return

        if clock() - last_sent >= settings.feed_keepalive_interval:
            last_sent = clock()
            yield KEEPALIVE_FRAME

        sleep(settings.feed_poll_interval)


__all__ = ["FEED_END_STATES", "KEEPALIVE_FRAME", "format_event", "status_events"]
