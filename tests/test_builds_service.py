"""Tests for builds/service.py module.

Tests the job state machine against an in-memory database.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bundlepipe.builds.artifacts import (
    BUILD_LOG,
    BUNDLE_ZIP,
    ENTRY_HTML,
    MANIFEST_FILE,
    PREVIEW_FILE,
)
from bundlepipe.builds.service import (
    BuildNotFoundError,
    InvalidTransitionError,
    approve_build,
    create_job,
    fail_job,
    get_job,
    get_status,
    list_jobs,
    reject_build,
    set_progress,
    transition,
)
from bundlepipe.config import Settings
from bundlepipe.db import create_all_tables
from bundlepipe.listings.service import create_listing
from bundlepipe.types import BuildState


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with artifacts under tmp_path."""
    return Settings(
        artifacts_dir=tmp_path / "builds",
        cache_dir=tmp_path / "cache",
        error_message_max_length=64,
    )


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


def to_review(session, build_id: str, settings: Settings) -> None:
    """Drive a job from queued to pending_review."""
    transition(session, build_id, BuildState.BUILDING, settings=settings)
    transition(session, build_id, BuildState.PENDING_REVIEW, progress=100, settings=settings)


class TestCreateJob:
    """Tests for create_job and lookups."""

    def test_create(self, session):
        """New jobs start queued at progress 0."""
        job = create_job(session, "b1", kind="project", owner_uid="u1")
        assert job.state == BuildState.QUEUED.value
        assert job.progress == 0
        assert job.kind == "project"
        assert get_job(session, "b1") is job

    def test_get_missing(self, session):
        """Unknown ids raise BuildNotFoundError."""
        with pytest.raises(BuildNotFoundError) as exc_info:
            get_job(session, "nope")
        assert exc_info.value.code == "build_not_found"

    def test_list_by_state(self, session, settings):
        """Jobs can be filtered by state."""
        create_job(session, "b1")
        create_job(session, "b2")
        transition(session, "b2", BuildState.BUILDING, settings=settings)

        assert [j.id for j in list_jobs(session, state=BuildState.BUILDING)] == ["b2"]
        assert {j.id for j in list_jobs(session)} == {"b1", "b2"}


class TestTransition:
    """Tests for transition and its helpers."""

    def test_happy_path(self, session, settings):
        """queued -> building -> pending_review."""
        create_job(session, "b1")
        to_review(session, "b1", settings)
        job = get_job(session, "b1")
        assert job.state == BuildState.PENDING_REVIEW.value
        assert job.progress == 100

    def test_progress_never_decreases(self, session, settings):
        """A lower progress value is ignored within a state."""
        create_job(session, "b1")
        transition(session, "b1", BuildState.BUILDING, settings=settings)
        set_progress(session, "b1", 60, settings=settings)
        set_progress(session, "b1", 30, settings=settings)
        assert get_job(session, "b1").progress == 60

    def test_progress_clamped(self, session, settings):
        """Progress stays within 0-100."""
        create_job(session, "b1")
        transition(session, "b1", BuildState.BUILDING, settings=settings)
        set_progress(session, "b1", 250, settings=settings)
        assert get_job(session, "b1").progress == 100

    def test_skipping_states_rejected(self, session, settings):
        """queued cannot jump to pending_review."""
        create_job(session, "b1")
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(session, "b1", BuildState.PENDING_REVIEW, settings=settings)
        assert exc_info.value.code == "invalid_transition"
        assert get_job(session, "b1").state == BuildState.QUEUED.value

    def test_terminal_is_final(self, session, settings):
        """A failed job accepts no further change."""
        create_job(session, "b1")
        transition(session, "b1", BuildState.BUILDING, settings=settings)
        fail_job(session, "b1", "boom", error_code="build_failed", settings=settings)

        with pytest.raises(InvalidTransitionError):
            transition(session, "b1", BuildState.BUILDING, settings=settings)
        with pytest.raises(InvalidTransitionError):
            set_progress(session, "b1", 100, settings=settings)

        job = get_job(session, "b1")
        assert job.state == BuildState.FAILED.value
        assert job.error_code == "build_failed"
        assert job.progress == 100

    def test_error_capped(self, session, settings):
        """Stored errors are truncated to the configured length."""
        create_job(session, "b1")
        fail_job(session, "b1", "x" * 500, settings=settings)
        assert get_job(session, "b1").error == "x" * 64


class TestGetStatus:
    """Tests for get_status."""

    def test_no_build_dir(self, session, settings):
        """Before any artifacts exist there is no artifact set."""
        create_job(session, "b1")
        report = get_status(session, "b1", settings=settings)
        assert report.state == BuildState.QUEUED
        assert report.artifacts is None
        assert report.to_dict() == {"buildId": "b1", "state": "queued", "progress": 0}

    def test_complete_build(self, session, settings):
        """A complete build reports its files and no condition."""
        create_job(session, "b1")
        to_review(session, "b1", settings)
        build_dir = settings.artifacts_dir / "b1"
        build_dir.mkdir(parents=True)
        for name in (ENTRY_HTML, MANIFEST_FILE, PREVIEW_FILE, BUNDLE_ZIP, BUILD_LOG):
            (build_dir / name).write_text("x")

        report = get_status(session, "b1", settings=settings)
        assert report.condition is None
        assert report.artifacts.preview_exists is True
        assert report.artifacts.missing == []

    def test_artifacts_missing(self, session, settings):
        """A completed build lacking expected files gets a condition."""
        create_job(session, "b1")
        to_review(session, "b1", settings)
        build_dir = settings.artifacts_dir / "b1"
        build_dir.mkdir(parents=True)
        (build_dir / ENTRY_HTML).write_text("<!doctype html>")

        data = get_status(session, "b1", settings=settings).to_dict()
        assert data["condition"] == "artifacts_missing"
        assert PREVIEW_FILE in data["missing"]
        assert data["artifacts"]["files"] == [ENTRY_HTML]

    def test_building_is_not_missing(self, session, settings):
        """Incomplete artifacts are normal while building."""
        create_job(session, "b1")
        transition(session, "b1", BuildState.BUILDING, settings=settings)
        (settings.artifacts_dir / "b1").mkdir(parents=True)
        assert get_status(session, "b1", settings=settings).condition is None


class TestModeration:
    """Tests for approve_build and reject_build."""

    def test_approve_publishes_and_attaches(self, session, settings):
        """Approval publishes the build and makes it the listing's current build."""
        create_job(session, "b1")
        listing = create_listing(session, "u1", "My App", pending_build_id="b1")
        to_review(session, "b1", settings)

        approve_build(session, "b1", settings=settings)

        assert get_job(session, "b1").state == BuildState.PUBLISHED.value
        assert listing.build_id == "b1"
        assert listing.version == 1
        assert listing.pending_build_id is None
        assert get_status(session, "b1", settings=settings).listing_id == listing.id

    def test_approve_requires_review(self, session, settings):
        """Only builds in review can be approved."""
        create_job(session, "b1")
        with pytest.raises(InvalidTransitionError):
            approve_build(session, "b1", settings=settings)

    def test_reject_clears_pending(self, session, settings):
        """Rejection records the reason and leaves the listing untouched."""
        create_job(session, "b1")
        listing = create_listing(session, "u1", "My App", pending_build_id="b1")
        to_review(session, "b1", settings)

        reject_build(session, "b1", reason="spam", settings=settings)

        job = get_job(session, "b1")
        assert job.state == BuildState.REJECTED.value
        assert job.error == "spam"
        assert listing.pending_build_id is None
        assert listing.build_id is None
