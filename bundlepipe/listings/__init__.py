"""Version lifecycle module.

This module handles:
- Listings and their current build/version
- Archiving superseded builds with lazy TTL pruning
- Promoting an archived build back to current
- Best-effort preview rendering
"""

from bundlepipe.listings.models import Listing
from bundlepipe.listings.preview import ensure_preview, render_preview
from bundlepipe.listings.service import (
    ArchivedVersionNotFoundError,
    ListingNotFoundError,
    NotListingOwnerError,
    attach_build,
    get_listing,
    promote_version,
    prune_archived,
    slugify,
)

__all__ = [
    # Models
    "Listing",
    # Preview module
    "ensure_preview",
    "render_preview",
    # Service module
    "ArchivedVersionNotFoundError",
    "ListingNotFoundError",
    "NotListingOwnerError",
    "attach_build",
    "get_listing",
    "promote_version",
    "prune_archived",
    "slugify",
]
