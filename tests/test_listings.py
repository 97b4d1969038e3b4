"""Tests for listings/service.py module.

Tests version lifecycle: publish attachment, archive TTL and promotion.
"""

from unittest.mock import patch

import pytest
from playwright.sync_api import Error as PlaywrightError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bundlepipe.config import Settings
from bundlepipe.types import NetworkPolicy
from bundlepipe.builds.artifacts import PREVIEW_FILE, write_manifest
from bundlepipe.db import create_all_tables
from bundlepipe.listings.preview import ensure_preview, is_request_allowed
from bundlepipe.listings.service import (
    DAY_MS,
    ArchivedVersionNotFoundError,
    ListingNotFoundError,
    NotListingOwnerError,
    attach_build,
    count_active_listings,
    create_listing,
    find_owned_listing,
    get_listing,
    next_version,
    now_ms,
    promote_version,
    prune_archived,
    set_pending_build,
    slugify,
    unique_slug,
)

NOW = now_ms()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a 30 day archive window."""
    return Settings(artifacts_dir=tmp_path / "builds", cache_dir=tmp_path / "cache", archive_ttl_days=30)


@pytest.fixture
def session():
    """Create a session on a fresh in-memory database."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def listing(session):
    """A listing with one pending build."""
    return create_listing(session, "owner", "Weather Board", pending_build_id="b1")


class TestSlugs:
    """Tests for slug derivation."""

    def test_slugify(self):
        assert slugify("  Hello, World! ") == "hello-world"
        assert slugify("***") == ""

    def test_unique_slug(self, session, listing):
        """Collisions get a numeric suffix."""
        assert listing.slug == "weather-board"
        assert unique_slug(session, "Weather Board") == "weather-board-2"
        create_listing(session, "owner", "Weather Board", pending_build_id="b2")
        assert unique_slug(session, "Weather Board") == "weather-board-3"

    def test_empty_title(self, session):
        """Titles without slug characters fall back to 'app'."""
        assert create_listing(session, "owner", "!!!", pending_build_id="b1").slug == "app"


class TestLookup:
    """Tests for get_listing and friends."""

    def test_by_id_and_slug(self, session, settings, listing):
        assert get_listing(session, listing.id, settings) is listing
        assert get_listing(session, str(listing.id), settings) is listing
        assert get_listing(session, "weather-board", settings) is listing

    def test_missing(self, session, settings):
        with pytest.raises(ListingNotFoundError) as exc_info:
            get_listing(session, "nope", settings)
        assert exc_info.value.code == "listing_not_found"

    def test_owned(self, session, settings, listing):
        """Only the owner finds the listing."""
        assert find_owned_listing(session, "owner", listing.id, settings) is listing
        assert find_owned_listing(session, "someone", listing.id, settings) is None

    def test_active_count(self, session, listing):
        """Inactive listings do not count."""
        other = create_listing(session, "owner", "Other", pending_build_id="b2")
        other.status = "inactive"
        session.flush()
        assert count_active_listings(session, "owner") == 1


class TestAttachBuild:
    """Tests for attach_build."""

    def test_first_publish(self, session, settings, listing):
        """The first build becomes version 1."""
        attach_build(session, listing, "b1", settings=settings, now=NOW)
        assert listing.build_id == "b1"
        assert listing.version == 1
        assert listing.archived_versions == []
        assert listing.pending_build_id is None

    def test_previous_build_archived(self, session, settings, listing):
        """The previous current build is archived with its version."""
        attach_build(session, listing, "b1", settings=settings, now=NOW)
        set_pending_build(listing, "b2")
        assert listing.pending_version == 2

        attach_build(session, listing, "b2", settings=settings, now=NOW + 1)

        assert listing.build_id == "b2"
        assert listing.version == 2
        assert listing.archived_versions == [{"buildId": "b1", "version": 1, "archivedAt": NOW + 1}]

    def test_current_never_archived(self, session, settings, listing):
        """Re-attaching the current build does not archive it."""
        attach_build(session, listing, "b1", settings=settings, now=NOW)
        attach_build(session, listing, "b1", settings=settings, now=NOW)
        assert all(e["buildId"] != listing.build_id for e in listing.archived_versions)


class TestPruneArchived:
    """Tests for archive TTL pruning."""

    def test_prune(self, listing):
        """Entries older than the TTL are dropped."""
        listing.archived_versions = [
            {"buildId": "old", "version": 1, "archivedAt": NOW - 31 * DAY_MS},
            {"buildId": "new", "version": 2, "archivedAt": NOW - 29 * DAY_MS},
        ]
        assert prune_archived(listing, 30, now=NOW) is True
        assert [e["buildId"] for e in listing.archived_versions] == ["new"]

    def test_nothing_to_prune(self, listing):
        listing.archived_versions = [{"buildId": "new", "version": 2, "archivedAt": NOW}]
        assert prune_archived(listing, 30, now=NOW) is False

    def test_read_prunes(self, session, settings, listing):
        """Reading a listing drops expired entries."""
        listing.archived_versions = [{"buildId": "old", "version": 1, "archivedAt": 0}]
        session.flush()
        assert get_listing(session, listing.id, settings).archived_versions == []


class TestPromoteVersion:
    """Tests for promote_version."""

    @pytest.fixture
    def published(self, session, listing):
        """A listing at version 3 with versions 1 and 2 archived."""
        listing.build_id = "b3"
        listing.version = 3
        listing.pending_build_id = None
        listing.archived_versions = [
            {"buildId": "b1", "version": 1, "archivedAt": NOW},
            {"buildId": "b2", "version": 2, "archivedAt": NOW},
        ]
        session.flush()
        return listing

    def test_promote(self, session, settings, published):
        """The promoted entry becomes current and the old current is archived."""
        with patch("bundlepipe.listings.service.ensure_preview") as ensure_preview:
            promote_version(session, published.id, "b2", "owner", settings=settings, now=NOW + 5)

        assert published.build_id == "b2"
        assert published.version == 2
        archived = {e["buildId"]: e for e in published.archived_versions}
        assert set(archived) == {"b1", "b3"}
        assert archived["b3"]["version"] == 3
        ensure_preview.assert_called_once_with(settings.artifacts_dir / "b2", settings)

    def test_not_owner(self, session, settings, published):
        with pytest.raises(NotListingOwnerError) as exc_info:
            promote_version(session, published.id, "b2", "intruder", settings=settings, now=NOW)
        assert exc_info.value.code == "forbidden"
        assert published.build_id == "b3"

    def test_not_archived(self, session, settings, published):
        with pytest.raises(ArchivedVersionNotFoundError):
            promote_version(session, published.id, "b9", "owner", settings=settings, now=NOW)

    def test_current_cannot_be_promoted(self, session, settings, published):
        """The current build is not an archived entry."""
        with pytest.raises(ArchivedVersionNotFoundError):
            promote_version(session, published.id, "b3", "owner", settings=settings, now=NOW)

    def test_publish_after_promote(self, session, settings, published):
        """A publish after promoting an old version gets a fresh number."""
        with patch("bundlepipe.listings.service.ensure_preview"):
            promote_version(session, published.id, "b1", "owner", settings=settings, now=NOW)
        assert published.version == 1
        assert next_version(published) == 4

        attach_build(session, published, "b4", settings=settings, now=NOW + 1)

        assert published.version == 4
        versions = [e["version"] for e in published.archived_versions]
        assert sorted(versions) == [1, 2, 3]

    def test_preview_failure_does_not_fail_promotion(self, session, settings, published):
        """A browser failure while regenerating the preview is only logged."""
        with patch(
            "bundlepipe.listings.preview.render_preview",
            side_effect=PlaywrightError("browser missing"),
        ) as render:
            promote_version(session, published.id, "b2", "owner", settings=settings, now=NOW)

        render.assert_called_once()
        assert published.build_id == "b2"
        assert published.version == 2


class TestPreview:
    """Tests for best-effort preview rendering."""

    @pytest.fixture
    def build_dir(self, settings):
        build_dir = settings.artifacts_dir / "b1"
        build_dir.mkdir(parents=True)
        (build_dir / "index.html").write_text("<!doctype html><p>hi</p>")
        return build_dir

    @pytest.mark.parametrize("error", [PlaywrightError("crashed"), OSError("no display")])
    def test_render_failure_returns_false(self, build_dir, settings, error):
        """Browser and OS errors are swallowed and reported as False."""
        with patch("bundlepipe.listings.preview.render_preview", side_effect=error):
            assert ensure_preview(build_dir, settings) is False

    def test_missing_entry_returns_false(self, settings):
        """A build without index.html has no preview."""
        build_dir = settings.artifacts_dir / "empty"
        build_dir.mkdir(parents=True)
        with patch("bundlepipe.listings.preview.sync_playwright") as playwright:
            assert ensure_preview(build_dir, settings) is False
        playwright.assert_not_called()

    def test_existing_preview_not_rendered(self, build_dir, settings):
        (build_dir / PREVIEW_FILE).write_bytes(b"png")
        with patch("bundlepipe.listings.preview.render_preview") as render:
            assert ensure_preview(build_dir, settings) is True
        render.assert_not_called()

    def test_rendered_with_allowed_origins(self, build_dir, settings):
        """The renderer is given the CDN and the declared OPEN_NET domains."""
        write_manifest(build_dir, NetworkPolicy.OPEN_NET, ["api.example.com"])
        with patch("bundlepipe.listings.preview.render_preview") as render:
            assert ensure_preview(build_dir, settings) is True
        origins = render.call_args.args[1]
        assert "https://esm.sh" in origins
        assert "https://api.example.com" in origins

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("file:///tmp/b1/app.js", True),
            ("https://esm.sh/react@18", True),
            ("https://evil.example/x.js", False),
            ("http://esm.sh/react", False),
            ("data:text/plain,hi", False),
        ],
    )
    def test_is_request_allowed(self, url, expected):
        assert is_request_allowed(url, frozenset({"https://esm.sh"})) is expected
