"""Build ORM models.

This module defines the BuildJob model holding per-build state and the
QueuedBuild model backing the durable build queue.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bundlepipe.db import Base
from bundlepipe.types import TERMINAL_STATES, BuildState


class BuildJob(Base):
    """ORM model for a build job.

    A BuildJob is mutated only through the transition function in
    ``bundlepipe.builds.service``; once it reaches a terminal state it is
    never changed again.

    Attributes:
        id: Build id, also the artifact directory name.
        state: Current BuildState value.
        progress: Integer 0-100.
        error: Error message if the build failed (capped length).
        error_code: Machine-readable error code if the build failed.
        kind: 'inline' (single document) or 'project' (package.json).
        owner_uid: Submitting user, if known.
        listing_id: Listing this build was submitted for, if any.
        network_policy: Declared network tier of the build.
        created_at: Timestamp when the job was created.
        updated_at: Timestamp of the last transition.
    """

    __tablename__ = "build_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildState.QUEUED.value, index=True
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="inline")
    owner_uid: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    listing_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    network_policy: Mapped[str] = mapped_column(
        String(20), nullable=False, default="NO_NET"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of BuildJob."""
        return (
            f"<BuildJob(id='{self.id}', state='{self.state}', "
            f"progress={self.progress})>"
        )

    def is_terminal(self) -> bool:
        """Check if this job reached a terminal state."""
        return BuildState(self.state) in TERMINAL_STATES


class QueuedBuild(Base):
    """ORM model for an entry in the durable build queue.

    Attributes:
        id: Primary key; FIFO order.
        build_id: Job to process.
        status: 'pending', 'claimed' or 'done'.
        worker_id: Worker that claimed the entry.
        enqueued_at: Timestamp when the entry was added.
        claimed_at: Timestamp when a worker claimed the entry.
    """

    __tablename__ = "build_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    worker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_build_queue_status_id", "status", "id"),)

    def __repr__(self) -> str:
        """Return string representation of QueuedBuild."""
        return f"<QueuedBuild(id={self.id}, build_id='{self.build_id}', status='{self.status}')>"


__all__ = ["BuildJob", "QueuedBuild"]
