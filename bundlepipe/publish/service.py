"""Publish service.

This module provides publish():
1. Dangerous-pattern guard on the submitted source
2. Listing lookup (updates must target a listing the caller owns)
3. Per-user rate limit, then the active listing quota for new listings
4. Build directory creation and source persistence
5. Job creation and listing create/update
6. Enqueue, or the synchronous path when the queue is disabled

Steps 1-3 run before a build id exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from bundlepipe.builds.artifacts import (
    SOURCE_DIR,
    BuildRequest,
    ensure_build_dir,
    new_build_id,
    write_request,
)
from bundlepipe.builds.queue import QueueDisabledError, enqueue
from bundlepipe.builds.service import create_job
from bundlepipe.builds.worker import is_html_document, process_job
from bundlepipe.db import get_session
from bundlepipe.errors import INVALID_SUBMISSION
from bundlepipe.listings.service import (
    NotListingOwnerError,
    create_listing,
    get_listing,
    set_pending_build,
)
from bundlepipe.publish.guards import check_dangerous_patterns, check_quota, check_rate_limit
from bundlepipe.types import NetworkPolicy, PermissionFlags

if TYPE_CHECKING:
    from bundlepipe.builds.queue import OrchestratorContext

logger = logging.getLogger(__name__)

HTML_ENTRY = "index.html"
COMPONENT_ENTRY = "index.tsx"
PROJECT_MARKER = "package.json"

# Declared permission name -> PermissionFlags key
PERMISSION_KEYS = {
    "camera": "camera",
    "microphone": "microphone",
    "geolocation": "geolocation",
    "clipboardRead": "clipboardRead",
    "clipboardWrite": "clipboardWrite",
}


class InvalidSubmissionError(Exception):
    """Raised when a submission has no source or an unsafe file path."""

    def __init__(self, message: str, code: str = INVALID_SUBMISSION) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class PublishRequest:
    """A publish submission.

    Attributes:
        title: Listing title.
        inline_code: Entry document: HTML or component source.
        description: Listing description.
        capabilities: ``{permissions: {...}, network: {access, domains}}``.
        visibility: 'public' or 'unlisted'.
        listing_ref: Id or slug of an existing listing to update.
        files: Additional source files by relative path; a package.json
            makes this a project build.
    """

    title: str
    inline_code: str
    description: str | None = None
    capabilities: dict[str, Any] = field(default_factory=dict)
    visibility: str = "public"
    listing_ref: int | str | None = None
    files: dict[str, str] = field(default_factory=dict)


@dataclass
class PublishResult:
    """An accepted publish."""

    build_id: str
    listing_id: int
    slug: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {"buildId": self.build_id, "listingId": self.listing_id, "slug": self.slug}


def parse_network_policy(value: Any) -> NetworkPolicy:
    """Parse a declared network access tier; unknown values mean NO_NET."""
    if not isinstance(value, str):
        return NetworkPolicy.NO_NET
    try:
        return NetworkPolicy(value.strip().upper().replace("-", "_"))
    except ValueError:
        return NetworkPolicy.NO_NET


def parse_capabilities(
    capabilities: dict[str, Any] | None,
) -> tuple[NetworkPolicy, list[str], PermissionFlags]:
    """Split declared capabilities into network tier, domains and permissions."""
    capabilities = capabilities or {}
    network = capabilities.get("network") or {}
    permissions = capabilities.get("permissions") or {}
    if not isinstance(network, dict):
        network = {}
    if not isinstance(permissions, dict):
        permissions = {}

    domains = network.get("domains") or []
    flags: PermissionFlags = {}
    for name, key in PERMISSION_KEYS.items():
        if permissions.get(name) is True:
            flags[key] = True  # type: ignore[literal-required]
    return (
        parse_network_policy(network.get("access")),
        [d for d in domains if isinstance(d, str)] if isinstance(domains, list) else [],
        flags,
    )


def _safe_relative(path: str) -> str:
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".")]
    if not parts or ".." in parts:
        raise InvalidSubmissionError(f"Invalid source path: {path}")
    return "/".join(parts)


def publish(
    context: OrchestratorContext,
    owner_uid: str,
    request: PublishRequest,
    gold: bool = False,
) -> PublishResult:
    """Accept a publish and start its build.

    Args:
        context: Orchestrator context.
        owner_uid: Submitting user.
        request: Submission.
        gold: Owner has the higher app quota.

    Returns:
        PublishResult; the build itself continues asynchronously unless the
        queue is disabled.

    Raises:
        DangerousPatternError: Source uses SES / lockdown().
        InvalidSubmissionError: No source, or a file path escapes source/.
        ListingNotFoundError: listing_ref names no listing.
        NotListingOwnerError: listing_ref names someone else's listing.
        RateLimitedError: Published again too soon.
        QuotaExceededError: Too many active listings.
    """
    settings = context.settings
    check_dangerous_patterns(request.inline_code)
    for text in request.files.values():
        check_dangerous_patterns(text)

    network_policy, domains, permissions = parse_capabilities(request.capabilities)
    files = {_safe_relative(path): text for path, text in request.files.items()}
    kind = "project" if PROJECT_MARKER in files else "inline"
    entry = HTML_ENTRY if is_html_document(request.inline_code) else COMPONENT_ENTRY
    if request.inline_code.strip():
        files.setdefault(entry, request.inline_code)
    elif kind == "inline":
        raise InvalidSubmissionError("Submission has no source")

    with get_session(context.session_factory) as session:
        existing = None
        if request.listing_ref is not None:
            existing = get_listing(session, request.listing_ref, settings)
            if existing.owner_uid != owner_uid:
                raise NotListingOwnerError(existing.id)

        check_rate_limit(session, owner_uid, settings)
        if existing is None:
            check_quota(session, owner_uid, settings, gold=gold)

        build_id = new_build_id()
        build_dir = ensure_build_dir(build_id, settings)
        source_dir = build_dir / SOURCE_DIR
        for path, text in files.items():
            target = source_dir / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        write_request(
            build_dir,
            BuildRequest(
                kind=kind,
                entry=entry,
                title=request.title,
                network_policy=network_policy,
                network_domains=domains,
                permissions=permissions,
            ),
        )

        if existing is None:
            listing = create_listing(
                session,
                owner_uid,
                request.title,
                build_id,
                description=request.description,
                capabilities=request.capabilities,
                visibility=request.visibility,
            )
        else:
            listing = set_pending_build(
                existing,
                build_id,
                title=request.title,
                description=request.description,
                capabilities=request.capabilities,
                visibility=request.visibility,
            )
        create_job(
            session,
            build_id,
            kind=kind,
            owner_uid=owner_uid,
            listing_id=listing.id,
            network_policy=network_policy,
        )
        result = PublishResult(build_id=build_id, listing_id=listing.id, slug=listing.slug)

    logger.info("Publish accepted: build %s for listing %s (%s)", build_id, result.listing_id, result.slug)

    try:
        enqueue(context, build_id)
    except QueueDisabledError:
        logger.info("Queue disabled; building %s synchronously", build_id)
        process_job(context, build_id)
    return result


__all__ = [
    "InvalidSubmissionError",
    "PublishRequest",
    "PublishResult",
    "parse_capabilities",
    "parse_network_policy",
    "publish",
]
