"""Version lifecycle service.

This module provides the listing APIs:
- get_listing(): Load by id or slug, pruning expired archived versions
- create_listing() / set_pending_build(): Publish-time bookkeeping
- attach_build(): Make a published build current, archiving the old one
- promote_version(): Swap an archived build back in
- find_listing_for_build(): Reverse lookup used by status polling

Archived versions expire lazily: every read drops entries older than the
archive TTL and writes the listing back if anything changed.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from bundlepipe.builds.artifacts import get_build_dir
from bundlepipe.config import get_settings
from bundlepipe.errors import FORBIDDEN, LISTING_NOT_FOUND, VERSION_NOT_FOUND
from bundlepipe.listings.models import Listing
from bundlepipe.listings.preview import ensure_preview
from bundlepipe.types import ArchivedVersion

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 80
DAY_MS = 24 * 60 * 60 * 1000


class ListingNotFoundError(Exception):
    """Raised when a listing is not found."""

    def __init__(self, listing_ref: int | str, code: str = LISTING_NOT_FOUND) -> None:
        super().__init__(f"Listing not found: {listing_ref}")
        self.listing_ref = listing_ref
        self.code = code


class ArchivedVersionNotFoundError(Exception):
    """Raised when a build is not among a listing's archived versions."""

    def __init__(self, listing_id: int, build_id: str, code: str = VERSION_NOT_FOUND) -> None:
        super().__init__(f"Build {build_id} is not an archived version of listing {listing_id}")
        self.listing_id = listing_id
        self.build_id = build_id
        self.code = code


class NotListingOwnerError(Exception):
    """Raised when the caller does not own a listing."""

    def __init__(self, listing_id: int, code: str = FORBIDDEN) -> None:
        super().__init__(f"Not the owner of listing {listing_id}")
        self.listing_id = listing_id
        self.code = code


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def slugify(text: str) -> str:
    """Derive a URL slug from a title."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower().strip()).strip("-")
    return slug[:MAX_SLUG_LENGTH].strip("-")


def unique_slug(session: Session, title: str) -> str:
    """Derive a slug not used by any listing, adding -2, -3, ... on collision."""
    base = slugify(title) or "app"
    taken = set(
        session.scalars(
            select(Listing.slug).where(
                or_(Listing.slug == base, Listing.slug.like(f"{base}-%"))
            )
        )
    )
    if base not in taken:
        return base
    suffix = 2
    while True:
        tail = f"-{suffix}"
        candidate = base[: MAX_SLUG_LENGTH - len(tail)] + tail
        if candidate not in taken:
            return candidate
        suffix += 1


def prune_archived(listing: Listing, ttl_days: int, now: int | None = None) -> bool:
    """Drop archived versions older than the TTL.

    Args:
        listing: Listing to prune in place.
        ttl_days: Retention window in days.
        now: Current time in epoch ms.

    Returns:
        True if any entry was removed.
    """
    if now is None:
        now = now_ms()
    expiry = now - ttl_days * DAY_MS
    current = list(listing.archived_versions or [])
    kept = [entry for entry in current if entry.get("archivedAt", 0) >= expiry]
    if len(kept) == len(current):
        return False
    listing.archived_versions = kept
    listing.updated_at = datetime.now(timezone.utc)
    logger.info(
        "Pruned %d expired archived version(s) from listing %s",
        len(current) - len(kept),
        listing.id,
    )
    return True


def _lookup(session: Session, listing_ref: int | str) -> Listing | None:
    if isinstance(listing_ref, int) or str(listing_ref).isdigit():
        listing = session.get(Listing, int(listing_ref))
        if listing is not None:
            return listing
    return session.scalars(select(Listing).where(Listing.slug == str(listing_ref))).first()


def get_listing_or_none(
    session: Session,
    listing_ref: int | str,
    settings: Settings | None = None,
) -> Listing | None:
    """Get a listing by id or slug, pruning expired archived versions."""
    if settings is None:
        settings = get_settings()
    listing = _lookup(session, listing_ref)
    if listing is not None and prune_archived(listing, settings.archive_ttl_days):
        session.flush()
    return listing


def get_listing(
    session: Session,
    listing_ref: int | str,
    settings: Settings | None = None,
) -> Listing:
    """Get a listing by id or slug, pruning expired archived versions.

    Raises:
        ListingNotFoundError: If no such listing exists.
    """
    listing = get_listing_or_none(session, listing_ref, settings)
    if listing is None:
        raise ListingNotFoundError(listing_ref)
    return listing


def find_owned_listing(
    session: Session,
    owner_uid: str,
    listing_ref: int | str,
    settings: Settings | None = None,
) -> Listing | None:
    """Get a listing by id or slug only if owner_uid owns it."""
    listing = get_listing_or_none(session, listing_ref, settings)
    if listing is None or listing.owner_uid != owner_uid:
        return None
    return listing


def count_active_listings(session: Session, owner_uid: str) -> int:
    """Count the listings of a user that are not inactive."""
    return session.scalar(
        select(func.count())
        .select_from(Listing)
        .where(Listing.owner_uid == owner_uid, Listing.status != "inactive")
    ) or 0


def find_listing_for_build(session: Session, build_id: str) -> Listing | None:
    """Find the listing whose current or pending build is build_id."""
    return session.scalars(
        select(Listing).where(
            or_(Listing.pending_build_id == build_id, Listing.build_id == build_id)
        )
    ).first()


def create_listing(
    session: Session,
    owner_uid: str,
    title: str,
    pending_build_id: str,
    description: str | None = None,
    capabilities: dict[str, Any] | None = None,
    visibility: str = "public",
) -> Listing:
    """Create a listing whose first build is pending."""
    listing = Listing(
        slug=unique_slug(session, title),
        owner_uid=owner_uid,
        title=title,
        description=description,
        capabilities=capabilities or {},
        visibility=visibility,
        status="active",
        build_id=None,
        version=0,
        latest_version=0,
        pending_build_id=pending_build_id,
        pending_version=1,
        archived_versions=[],
        updated_at=datetime.now(timezone.utc),
    )
    session.add(listing)
    session.flush()
    logger.info("Created listing %s (%s) for %s", listing.id, listing.slug, owner_uid)
    return listing


def next_version(listing: Listing) -> int:
    """Version number for the listing's next published build.

    One more than the highest version ever assigned, so publishing after a
    promotion never reuses a number.
    """
    versions = [listing.latest_version or 0, listing.version or 0]
    versions.extend(entry["version"] for entry in listing.archived_versions or [])
    return max(versions) + 1


def set_pending_build(
    listing: Listing,
    build_id: str,
    title: str | None = None,
    description: str | None = None,
    capabilities: dict[str, Any] | None = None,
    visibility: str | None = None,
) -> Listing:
    """Record a submitted build on an existing listing."""
    listing.pending_build_id = build_id
    listing.pending_version = next_version(listing)
    if title:
        listing.title = title
    if description is not None:
        listing.description = description
    if capabilities is not None:
        listing.capabilities = capabilities
    if visibility:
        listing.visibility = visibility
    listing.updated_at = datetime.now(timezone.utc)
    return listing


def clear_pending_build(session: Session, build_id: str) -> None:
    """Forget a pending build that will never be published."""
    for listing in session.scalars(select(Listing).where(Listing.pending_build_id == build_id)):
        listing.pending_build_id = None
        listing.pending_version = None
        listing.updated_at = datetime.now(timezone.utc)
    session.flush()


def attach_build(
    session: Session,
    listing: Listing,
    build_id: str,
    settings: Settings | None = None,
    now: int | None = None,
) -> Listing:
    """Make a published build the listing's current build.

    The build gets the next unused version number. A previous current
    build is appended to the archived versions.

    Args:
        session: Database session.
        listing: Listing to update.
        build_id: Newly published build.
        settings: Optional settings instance.
        now: Current time in epoch ms.

    Returns:
        Updated listing.
    """
    if settings is None:
        settings = get_settings()
    if now is None:
        now = now_ms()

    version = next_version(listing)
    prune_archived(listing, settings.archive_ttl_days, now)
    archived: list[ArchivedVersion] = [
        entry for entry in listing.archived_versions or [] if entry["buildId"] != build_id
    ]
    previous_build = listing.build_id
    previous_version = listing.version or 0
    if previous_build and previous_build != build_id:
        archived.append(
            {"buildId": previous_build, "version": previous_version or 1, "archivedAt": now}
        )

    listing.build_id = build_id
    listing.version = version
    listing.latest_version = version
    listing.archived_versions = archived
    if listing.pending_build_id == build_id:
        listing.pending_build_id = None
        listing.pending_version = None
    listing.updated_at = datetime.now(timezone.utc)
    session.flush()

    logger.info(
        "Listing %s now at version %d (build %s)", listing.id, listing.version, build_id
    )
    return listing


def promote_version(
    session: Session,
    listing_ref: int | str,
    archived_build_id: str,
    caller_uid: str,
    settings: Settings | None = None,
    render_preview: bool = True,
    now: int | None = None,
) -> Listing:
    """Make an archived build current again.

    The build that was current is archived in its place. A missing preview
    for the promoted build is regenerated on a best-effort basis.

    Args:
        session: Database session.
        listing_ref: Listing id or slug.
        archived_build_id: Build id of the archived entry.
        caller_uid: Calling user; must own the listing.
        settings: Optional settings instance.
        render_preview: Regenerate a missing preview.
        now: Current time in epoch ms.

    Returns:
        Updated listing.

    Raises:
        ListingNotFoundError: If no such listing exists.
        NotListingOwnerError: If the caller does not own the listing.
        ArchivedVersionNotFoundError: If the build is not archived there.
    """
    if settings is None:
        settings = get_settings()
    if now is None:
        now = now_ms()

    listing = get_listing(session, listing_ref, settings)
    if listing.owner_uid != caller_uid:
        raise NotListingOwnerError(listing.id)

    entries = list(listing.archived_versions or [])
    target = next((e for e in entries if e["buildId"] == archived_build_id), None)
    if target is None:
        raise ArchivedVersionNotFoundError(listing.id, archived_build_id)

    archived: list[ArchivedVersion] = [e for e in entries if e["buildId"] != archived_build_id]
    if listing.build_id:
        archived.append(
            {"buildId": listing.build_id, "version": listing.version or 1, "archivedAt": now}
        )

    previous_version = listing.version
    listing.build_id = target["buildId"]
    listing.version = target["version"]
    listing.archived_versions = archived
    listing.updated_at = datetime.now(timezone.utc)
    session.flush()

    logger.info(
        "Listing %s promoted build %s (version %d -> %d)",
        listing.id,
        archived_build_id,
        previous_version,
        listing.version,
    )

    if render_preview:
        ensure_preview(get_build_dir(archived_build_id, settings), settings)
    return listing


__all__ = [
    "ArchivedVersionNotFoundError",
    "ListingNotFoundError",
    "NotListingOwnerError",
    "attach_build",
    "clear_pending_build",
    "count_active_listings",
    "create_listing",
    "find_listing_for_build",
    "find_owned_listing",
    "get_listing",
    "get_listing_or_none",
    "next_version",
    "now_ms",
    "promote_version",
    "prune_archived",
    "set_pending_build",
    "slugify",
    "unique_slug",
]
