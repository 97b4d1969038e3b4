"""Build job service module.

This module provides the job state machine:
- create_job(): Record a new job in the queued state
- transition(): The only way a job's state, progress or error changes
- get_status(): Poll view of a job with its artifact set
- approve_build() / reject_build(): Moderation hooks
- finalize_publish(): approved -> published plus listing handoff

Transitions are conditional updates against the observed row, so two
writers can never both move a job out of the same state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bundlepipe.builds.artifacts import compute_artifact_set, get_build_dir
from bundlepipe.builds.models import BuildJob
from bundlepipe.config import get_settings
from bundlepipe.errors import ARTIFACTS_MISSING, BUILD_NOT_FOUND, INVALID_TRANSITION
from bundlepipe.types import TERMINAL_STATES, BuildArtifactSet, BuildState, NetworkPolicy

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[BuildState, frozenset[BuildState]] = {
    BuildState.QUEUED: frozenset({BuildState.BUILDING, BuildState.FAILED}),
    BuildState.BUILDING: frozenset({BuildState.PENDING_REVIEW, BuildState.FAILED}),
    BuildState.PENDING_REVIEW: frozenset(
        {BuildState.APPROVED, BuildState.REJECTED, BuildState.FAILED}
    ),
    BuildState.APPROVED: frozenset({BuildState.PUBLISHED}),
}

# States whose build output is expected to be complete
COMPLETED_STATES = frozenset(
    {BuildState.PENDING_REVIEW, BuildState.APPROVED, BuildState.PUBLISHED}
)

# Attempts before a contended transition gives up
MAX_TRANSITION_ATTEMPTS = 3


class BuildNotFoundError(Exception):
    """Raised when a build job is not found."""

    def __init__(self, build_id: str, code: str = BUILD_NOT_FOUND) -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class InvalidTransitionError(Exception):
    """Raised when a state change is not allowed."""

    def __init__(
        self,
        build_id: str,
        current: str,
        requested: str,
        code: str = INVALID_TRANSITION,
    ) -> None:
        super().__init__(f"Build {build_id}: cannot move from {current} to {requested}")
        self.build_id = build_id
        self.current = current
        self.requested = requested
        self.code = code


@dataclass
class BuildStatusReport:
    """Poll view of a build job.

    Attributes:
        build_id: Build id.
        state: Current state.
        progress: Integer 0-100.
        error: Error message if failed.
        error_code: Error code if failed.
        listing_id: Listing referencing this build, if any.
        artifacts: Artifact set, once the build directory exists.
        condition: 'artifacts_missing' when a completed build lacks
            expected files, else None.
    """

    build_id: str
    state: BuildState
    progress: int
    error: str | None = None
    error_code: str | None = None
    listing_id: int | None = None
    artifacts: BuildArtifactSet | None = None
    condition: str | None = None
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        result: dict[str, Any] = {
            "buildId": self.build_id,
            "state": self.state.value,
            "progress": self.progress,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.error_code is not None:
            result["errorCode"] = self.error_code
        if self.listing_id is not None:
            result["listingId"] = self.listing_id
        if self.artifacts is not None:
            result["artifacts"] = self.artifacts.to_dict()
        if self.condition is not None:
            result["condition"] = self.condition
            result["missing"] = list(self.missing)
        return result


def create_job(
    session: Session,
    build_id: str,
    kind: str = "inline",
    owner_uid: str | None = None,
    listing_id: int | None = None,
    network_policy: NetworkPolicy = NetworkPolicy.NO_NET,
) -> BuildJob:
    """Create a job in the queued state.

    Args:
        session: Database session.
        build_id: New build id.
        kind: 'inline' or 'project'.
        owner_uid: Submitting user.
        listing_id: Listing the build is for.
        network_policy: Declared network tier.

    Returns:
        New BuildJob.
    """
    job = BuildJob(
        id=build_id,
        state=BuildState.QUEUED.value,
        progress=0,
        kind=kind,
        owner_uid=owner_uid,
        listing_id=listing_id,
        network_policy=network_policy.value,
        updated_at=datetime.now(timezone.utc),
    )
    session.add(job)
    session.flush()
    logger.info("Created build job %s (%s)", build_id, kind)
    return job


def get_job(session: Session, build_id: str) -> BuildJob:
    """Get a job by id.

    Raises:
        BuildNotFoundError: If no such job exists.
    """
    job = session.get(BuildJob, build_id)
    if job is None:
        raise BuildNotFoundError(build_id)
    return job


def get_job_or_none(session: Session, build_id: str) -> BuildJob | None:
    """Get a job by id, or None."""
    return session.get(BuildJob, build_id)


def list_jobs(
    session: Session,
    state: BuildState | None = None,
    limit: int = 100,
) -> list[BuildJob]:
    """List jobs, newest first."""
    stmt = select(BuildJob).order_by(BuildJob.created_at.desc()).limit(limit)
    if state is not None:
        stmt = stmt.where(BuildJob.state == state.value)
    return list(session.scalars(stmt))


def _next_progress(current_state: BuildState, new_state: BuildState, current: int, requested: int | None) -> int:
    if new_state == BuildState.BUILDING and current_state != BuildState.BUILDING:
        value = requested or 0
    elif requested is None:
        value = current
    else:
        value = max(current, requested)
    return min(max(value, 0), 100)


def transition(
    session: Session,
    build_id: str,
    new_state: BuildState,
    progress: int | None = None,
    error: str | None = None,
    error_code: str | None = None,
    settings: Settings | None = None,
) -> BuildJob:
    """Move a job to a new state, or update progress within its state.

    Progress never decreases, except for the reset to 0 when the job
    enters ``building``. Jobs in a terminal state accept no change at all.

    Args:
        session: Database session.
        build_id: Job id.
        new_state: Target state; the current state for a progress update.
        progress: New progress value.
        error: Error message, stored capped to error_message_max_length.
        error_code: Error code.
        settings: Optional settings instance.

    Returns:
        Updated BuildJob.

    Raises:
        BuildNotFoundError: If no such job exists.
        InvalidTransitionError: If the job is terminal, the move is not in
            the transition table, or the row kept changing underneath.
    """
    if settings is None:
        settings = get_settings()
    if error is not None:
        error = error[: settings.error_message_max_length]

    for _ in range(MAX_TRANSITION_ATTEMPTS):
        job = get_job(session, build_id)
        session.refresh(job)
        current_state = BuildState(job.state)

        if current_state in TERMINAL_STATES:
            raise InvalidTransitionError(build_id, current_state.value, new_state.value)
        if new_state != current_state and new_state not in ALLOWED_TRANSITIONS.get(
            current_state, frozenset()
        ):
            raise InvalidTransitionError(build_id, current_state.value, new_state.value)

        values: dict[str, Any] = {
            "state": new_state.value,
            "progress": _next_progress(current_state, new_state, job.progress, progress),
            "updated_at": datetime.now(timezone.utc),
        }
        if error is not None:
            values["error"] = error
        if error_code is not None:
            values["error_code"] = error_code

        result = session.execute(
            update(BuildJob)
            .where(
                BuildJob.id == build_id,
                BuildJob.state == job.state,
                BuildJob.progress == job.progress,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.flush()
            session.refresh(job)
            if new_state != current_state:
                log = logger.error if new_state == BuildState.FAILED else logger.info
                log(
                    "Build %s: %s -> %s (progress %d)%s",
                    build_id,
                    current_state.value,
                    new_state.value,
                    job.progress,
                    f": {error}" if error else "",
                )
            return job

        logger.debug("Build %s changed during transition, retrying", build_id)

    raise InvalidTransitionError(build_id, "contended", new_state.value)


def set_progress(
    session: Session,
    build_id: str,
    progress: int,
    settings: Settings | None = None,
) -> BuildJob:
    """Raise a job's progress without changing its state."""
    job = get_job(session, build_id)
    return transition(session, build_id, BuildState(job.state), progress=progress, settings=settings)


def fail_job(
    session: Session,
    build_id: str,
    error: str,
    error_code: str | None = None,
    settings: Settings | None = None,
) -> BuildJob:
    """Move a job to failed with progress 100 and the error recorded."""
    return transition(
        session,
        build_id,
        BuildState.FAILED,
        progress=100,
        error=error,
        error_code=error_code,
        settings=settings,
    )


def get_status(
    session: Session,
    build_id: str,
    settings: Settings | None = None,
) -> BuildStatusReport:
    """Build the poll view of a job.

    The artifact set is computed fresh from the build directory. A job in a
    completed state with expected files absent is reported with the
    ``artifacts_missing`` condition.

    Args:
        session: Database session.
        build_id: Job id.
        settings: Optional settings instance.

    Returns:
        BuildStatusReport.

    Raises:
        BuildNotFoundError: If no such job exists.
    """
    from bundlepipe.listings.service import find_listing_for_build

    if settings is None:
        settings = get_settings()

    job = get_job(session, build_id)
    state = BuildState(job.state)
    report = BuildStatusReport(
        build_id=build_id,
        state=state,
        progress=job.progress,
        error=job.error,
        error_code=job.error_code,
        listing_id=job.listing_id,
    )

    listing = find_listing_for_build(session, build_id)
    if listing is not None:
        report.listing_id = listing.id

    build_dir = get_build_dir(build_id, settings)
    if build_dir.is_dir():
        report.artifacts = compute_artifact_set(build_dir)
        if state in COMPLETED_STATES and report.artifacts.missing:
            report.condition = ARTIFACTS_MISSING
            report.missing = list(report.artifacts.missing)
    return report


def finalize_publish(
    session: Session,
    build_id: str,
    settings: Settings | None = None,
) -> BuildJob:
    """Publish an approved build and attach it to its listing.

    Args:
        session: Database session.
        build_id: Job id in the approved state.
        settings: Optional settings instance.

    Returns:
        Updated BuildJob.
    """
    from bundlepipe.listings.service import attach_build, find_listing_for_build

    if settings is None:
        settings = get_settings()

    job = transition(session, build_id, BuildState.PUBLISHED, progress=100, settings=settings)
    listing = find_listing_for_build(session, build_id)
    if listing is None and job.listing_id is not None:
        from bundlepipe.listings.service import get_listing_or_none

        listing = get_listing_or_none(session, job.listing_id)
    if listing is not None:
        attach_build(session, listing, build_id, settings=settings)
    else:
        logger.warning("Published build %s has no listing to attach to", build_id)
    return job


def approve_build(
    session: Session,
    build_id: str,
    settings: Settings | None = None,
) -> BuildJob:
    """Approve a build in review and publish it.

    Raises:
        BuildNotFoundError: If no such job exists.
        InvalidTransitionError: If the job is not pending review.
    """
    transition(session, build_id, BuildState.APPROVED, settings=settings)
    return finalize_publish(session, build_id, settings=settings)


def reject_build(
    session: Session,
    build_id: str,
    reason: str | None = None,
    settings: Settings | None = None,
) -> BuildJob:
    """Reject a build in review.

    Raises:
        BuildNotFoundError: If no such job exists.
        InvalidTransitionError: If the job is not pending review.
    """
    from bundlepipe.listings.service import clear_pending_build

    job = transition(
        session,
        build_id,
        BuildState.REJECTED,
        error=reason,
        settings=settings,
    )
    clear_pending_build(session, build_id)
    return job


__all__ = [
    "ALLOWED_TRANSITIONS",
    "COMPLETED_STATES",
    "BuildNotFoundError",
    "BuildStatusReport",
    "InvalidTransitionError",
    "approve_build",
    "create_job",
    "fail_job",
    "finalize_publish",
    "get_job",
    "get_job_or_none",
    "get_status",
    "list_jobs",
    "reject_build",
    "set_progress",
    "transition",
]
