"""Build job endpoints.

- GET /build - List build jobs
- POST /build/{id}/enqueue - Hand a queued job to the workers
- GET /build/{id}/status - Poll job status and artifact set
- GET /build/{id}/events - Server-sent status feed
- POST /build/{id}/approve - Approve a build in review and publish it
- POST /build/{id}/reject - Reject a build in review
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bundlepipe.builds.artifacts import InvalidBuildIdError, validate_build_id
from bundlepipe.builds.feed import status_events
from bundlepipe.builds.queue import OrchestratorContext, QueueDisabledError, enqueue
from bundlepipe.builds.service import (
    BuildNotFoundError,
    InvalidTransitionError,
    approve_build,
    get_job,
    get_job_or_none,
    get_status,
    list_jobs,
    reject_build,
)
from bundlepipe.db import get_session
from bundlepipe.types import BuildState
from web.deps import get_context, get_db, http_error

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RejectRequest(BaseModel):
    """Request body for rejecting a build."""

    reason: str | None = None


def _checked_id(build_id: str) -> str:
    try:
        return validate_build_id(build_id)
    except InvalidBuildIdError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None


@router.get("")
def list_builds_endpoint(
    state: str | None = Query(None, description="Filter by state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build jobs, newest first."""
    state_filter: BuildState | None = None
    if state:
        try:
            state_filter = BuildState(state)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={"code": "invalid_state", "message": f"Invalid state: {state}"},
            ) from None

    return [
        {
            "buildId": job.id,
            "state": job.state,
            "progress": job.progress,
            "kind": job.kind,
            "listingId": job.listing_id,
            "error": job.error,
            "errorCode": job.error_code,
            "createdAt": job.created_at.isoformat() if job.created_at else None,
        }
        for job in list_jobs(db, state=state_filter, limit=limit)
    ]


@router.post("/{build_id}/enqueue", status_code=http_status.HTTP_202_ACCEPTED)
def enqueue_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, str]:
    """Hand a queued job to the asynchronous workers.

    Returns 503 with code ``queue_disabled`` when no queue backend is
    configured; callers should use the synchronous path instead.
    """
    build_id = _checked_id(build_id)
    try:
        job = get_job(db, build_id)
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    if job.state != BuildState.QUEUED.value:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={"code": "invalid_transition", "message": f"Build {build_id} is {job.state}"},
        )
    try:
        enqueue(context, build_id)
    except QueueDisabledError as e:
        raise http_error(http_status.HTTP_503_SERVICE_UNAVAILABLE, e) from None
    return {"buildId": build_id}


@router.get("/{build_id}/status")
def status_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """Poll a build's state, progress, error and artifact set."""
    build_id = _checked_id(build_id)
    try:
        return get_status(db, build_id, settings=context.settings).to_dict()
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.get("/{build_id}/events")
def events_endpoint(
    build_id: str,
    context: OrchestratorContext = Depends(get_context),
) -> StreamingResponse:
    """Stream build status as server-sent events.

    The feed opens its own short sessions per poll, so no request session
    is held for the lifetime of the stream.
    """
    build_id = _checked_id(build_id)
    with get_session(context.session_factory) as session:
        if get_job_or_none(session, build_id) is None:
            raise http_error(http_status.HTTP_404_NOT_FOUND, BuildNotFoundError(build_id))

    return StreamingResponse(
        status_events(context.session_factory, build_id, context.settings),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{build_id}/approve")
def approve_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """Approve a build in review; it is published and attached to its listing."""
    build_id = _checked_id(build_id)
    try:
        approve_build(db, build_id, settings=context.settings)
        return get_status(db, build_id, settings=context.settings).to_dict()
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except InvalidTransitionError as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None


@router.post("/{build_id}/reject")
def reject_endpoint(
    build_id: str,
    body: RejectRequest | None = None,
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """Reject a build in review."""
    build_id = _checked_id(build_id)
    try:
        reject_build(
            db,
            build_id,
            reason=body.reason if body else None,
            settings=context.settings,
        )
        return get_status(db, build_id, settings=context.settings).to_dict()
    except BuildNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except InvalidTransitionError as e:
        raise http_error(http_status.HTTP_409_CONFLICT, e) from None
