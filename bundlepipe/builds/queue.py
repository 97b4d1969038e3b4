"""Durable build queue and orchestrator context.

This module handles:
- A FIFO queue stored in a database table (``build_queue``)
- Claiming entries with a conditional update so one job has one worker
- The orchestrator context: settings, session factory, queue and resolver,
  created explicitly and closed on shutdown
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from bundlepipe.builds.models import QueuedBuild
from bundlepipe.db import get_engine, get_session, get_session_factory
from bundlepipe.errors import QUEUE_DISABLED
from bundlepipe.resolver.service import ImportResolver

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

# Attempts to claim an entry when other workers win the race
MAX_CLAIM_ATTEMPTS = 5


class QueueDisabledError(Exception):
    """Raised when no asynchronous build backend is configured.

    Callers should run the build synchronously instead of retrying.
    """

    def __init__(self, message: str = "Build queue is disabled", code: str = QUEUE_DISABLED) -> None:
        super().__init__(message)
        self.code = code


class QueueBackend:
    """FIFO build queue on a database table.

    Args:
        engine: SQLAlchemy engine of the queue database.
    """

    def __init__(self, engine: Any) -> None:
        self.engine = engine
        self.session_factory = get_session_factory(engine)

    def ensure_schema(self) -> None:
        """Create the queue table if needed."""
        QueuedBuild.__table__.create(bind=self.engine, checkfirst=True)

    def push(self, build_id: str) -> None:
        """Append a build to the queue; pushing a queued id is a no-op."""
        try:
            with get_session(self.session_factory) as session:
                session.add(QueuedBuild(build_id=build_id, status="pending"))
        except IntegrityError:
            logger.debug("Build %s already queued", build_id)
            return
        logger.info("Enqueued build %s", build_id)

    def claim(self, worker_id: str) -> str | None:
        """Claim the oldest pending entry.

        Args:
            worker_id: Identifier of the claiming worker.

        Returns:
            Claimed build id, or None if the queue is empty.
        """
        for _ in range(MAX_CLAIM_ATTEMPTS):
            with get_session(self.session_factory) as session:
                entry = session.scalars(
                    select(QueuedBuild)
                    .where(QueuedBuild.status == "pending")
                    .order_by(QueuedBuild.id)
                    .limit(1)
                ).first()
                if entry is None:
                    return None
                result = session.execute(
                    update(QueuedBuild)
                    .where(QueuedBuild.id == entry.id, QueuedBuild.status == "pending")
                    .values(
                        status="claimed",
                        worker_id=worker_id,
                        claimed_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return entry.build_id
        return None

    def complete(self, build_id: str) -> None:
        """Remove a processed entry."""
        with get_session(self.session_factory) as session:
            session.execute(delete(QueuedBuild).where(QueuedBuild.build_id == build_id))

    def pending_count(self) -> int:
        """Number of entries waiting for a worker."""
        with get_session(self.session_factory) as session:
            return session.scalar(
                select(func.count()).select_from(QueuedBuild).where(QueuedBuild.status == "pending")
            ) or 0

    def close(self) -> None:
        """Dispose the queue engine."""
        self.engine.dispose()


@dataclass
class OrchestratorContext:
    """Everything a build needs, created once and passed down.

    Attributes:
        settings: Application settings.
        session_factory: Session factory of the job/listing store.
        queue: Durable queue, or None when asynchronous builds are disabled.
    """

    settings: Settings
    session_factory: sessionmaker[Session]
    queue: QueueBackend | None = None
    _resolver: ImportResolver | None = field(default=None, repr=False)
    _resolver_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def create(
        cls,
        settings: Settings,
        session_factory: sessionmaker[Session] | None = None,
    ) -> OrchestratorContext:
        """Build a context from settings.

        The queue is set up only when the worker is enabled and a queue URL
        is configured.
        """
        if session_factory is None:
            session_factory = get_session_factory(get_engine(settings.db_url))

        queue: QueueBackend | None = None
        if settings.worker_enabled and settings.queue_url:
            queue = QueueBackend(get_engine(settings.queue_url))
            queue.ensure_schema()
            logger.info("Build queue enabled (%d worker(s))", settings.max_concurrent_builds)
        else:
            logger.info("Build queue disabled; builds run synchronously")
        return cls(settings=settings, session_factory=session_factory, queue=queue)

    @property
    def queue_enabled(self) -> bool:
        return self.queue is not None

    @property
    def resolver(self) -> ImportResolver:
        """Import resolver, created once on first use and shared by workers."""
        with self._resolver_lock:
            if self._resolver is None:
                self._resolver = ImportResolver(self.settings)
            return self._resolver

    def close(self) -> None:
        """Release the resolver client and the queue engine."""
        with self._resolver_lock:
            if self._resolver is not None:
                self._resolver.close()
                self._resolver = None
        if self.queue is not None:
            self.queue.close()


def enqueue(context: OrchestratorContext, build_id: str) -> str:
    """Hand a created job to the asynchronous workers.

    Args:
        context: Orchestrator context.
        build_id: Id of a job in the queued state.

    Returns:
        The build id.

    Raises:
        QueueDisabledError: If no queue backend is configured.
    """
    if context.queue is None:
        raise QueueDisabledError()
    context.queue.push(build_id)
    return build_id


__all__ = [
    "OrchestratorContext",
    "QueueBackend",
    "QueueDisabledError",
    "enqueue",
]
