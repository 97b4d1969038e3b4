"""Listing endpoints.

- GET /listings/{ref} - Get a listing by id or slug
- GET /listings/{ref}/versions - Current and archived versions
- POST /listings/{ref}/promote - Make an archived build current again
"""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bundlepipe.builds.queue import OrchestratorContext
from bundlepipe.listings.service import (
    ArchivedVersionNotFoundError,
    ListingNotFoundError,
    NotListingOwnerError,
    get_listing,
    promote_version,
)
from web.deps import get_caller_uid, get_context, get_db, http_error

router = APIRouter()


class PromoteRequest(BaseModel):
    """Request body for promoting an archived version."""

    archivedBuildId: str


@router.get("/{listing_ref}")
def get_listing_endpoint(
    listing_ref: str,
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """Get a listing; expired archived versions are pruned on read."""
    try:
        return get_listing(db, listing_ref, context.settings).to_dict()
    except ListingNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None


@router.get("/{listing_ref}/versions")
def list_versions_endpoint(
    listing_ref: str,
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """List the current and archived versions of a listing."""
    try:
        listing = get_listing(db, listing_ref, context.settings)
    except ListingNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    return {
        "listingId": listing.id,
        "current": {"buildId": listing.build_id, "version": listing.version},
        "pending": (
            {"buildId": listing.pending_build_id, "version": listing.pending_version}
            if listing.pending_build_id
            else None
        ),
        "archived": sorted(
            listing.archived_versions or [], key=lambda v: v["version"], reverse=True
        ),
    }


@router.post("/{listing_ref}/promote")
def promote_endpoint(
    listing_ref: str,
    body: PromoteRequest,
    caller_uid: str = Depends(get_caller_uid),
    db: Session = Depends(get_db),
    context: OrchestratorContext = Depends(get_context),
) -> dict[str, Any]:
    """Promote an archived build; the caller must own the listing."""
    try:
        listing = promote_version(
            db, listing_ref, body.archivedBuildId, caller_uid, settings=context.settings
        )
    except (ListingNotFoundError, ArchivedVersionNotFoundError) as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from None
    except NotListingOwnerError as e:
        raise http_error(http_status.HTTP_403_FORBIDDEN, e) from None
    return listing.to_dict()
