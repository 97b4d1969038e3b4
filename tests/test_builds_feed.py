"""Tests for the build status feed."""

import itertools
import json

import pytest

from bundlepipe.builds.feed import KEEPALIVE_FRAME, format_event, status_events
from bundlepipe.builds.service import BuildNotFoundError, create_job, fail_job, transition
from bundlepipe.config import Settings
from bundlepipe.db import create_all_tables, get_engine, get_session, get_session_factory
from bundlepipe.types import BuildState


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with short feed intervals."""
    return Settings(
        artifacts_dir=tmp_path / "builds",
        cache_dir=tmp_path / "cache",
        feed_poll_interval=0.01,
        feed_keepalive_interval=1,
    )


@pytest.fixture
def session_factory(tmp_path):
    """Session factory on a fresh file database."""
    engine = get_engine(f"sqlite:///{tmp_path / 'db.sqlite'}")
    create_all_tables(engine)
    yield get_session_factory(engine)
    engine.dispose()


def parse(frame: str) -> tuple[str, dict]:
    """Split an event frame into its name and data."""
    lines = frame.strip().split("\n")
    return lines[0].removeprefix("event: "), json.loads(lines[1].removeprefix("data: "))


class TestFormatEvent:
    """Tests for format_event."""

    def test_frame(self):
        """Frames end with a blank line and carry JSON data."""
        frame = format_event("state", {"state": "queued", "progress": 0})
        assert frame == 'event: state\ndata: {"progress": 0, "state": "queued"}\n\n'


class TestStatusEvents:
    """Tests for status_events."""

    def test_follows_build_to_review(self, session_factory, settings):
        """Every change is emitted, then one final event ends the feed."""
        with get_session(session_factory) as session:
            create_job(session, "b1")

        steps = iter(
            [
                (BuildState.BUILDING, 10),
                (BuildState.BUILDING, 60),
                (BuildState.PENDING_REVIEW, 100),
            ]
        )

        def advance(_seconds):
            state, progress = next(steps)
            with get_session(session_factory) as session:
                transition(session, "b1", state, progress=progress, settings=settings)

        frames = list(status_events(session_factory, "b1", settings, sleep=advance))
        events = [parse(f) for f in frames]

        assert [e[1].get("progress") for e in events[:-1]] == [0, 10, 60, 100]
        assert events[-1][0] == "final"
        assert events[-1][1]["state"] == "pending_review"
        assert events[-1][1]["artifacts"] is None

    def test_unchanged_polls_are_silent(self, session_factory, settings):
        """Polls without a change emit nothing but keep-alives."""
        with get_session(session_factory) as session:
            create_job(session, "b1")
        polls = itertools.count()

        def advance(_seconds):
            if next(polls) == 3:
                with get_session(session_factory) as session:
                    fail_job(session, "b1", "boom", error_code="build_failed", settings=settings)

        frames = list(status_events(session_factory, "b1", settings, sleep=advance))
        names = [parse(f)[0] for f in frames]
        assert names == ["state", "state", "final"]
        assert parse(frames[-1])[1]["error"] == "boom"

    def test_keepalive(self, session_factory, settings):
        """Idle feeds send a keep-alive comment after the interval."""
        with get_session(session_factory) as session:
            create_job(session, "b1")
        clock = itertools.count(0, 5)
        sleeps = itertools.count()

        def advance(_seconds):
            if next(sleeps) == 1:
                with get_session(session_factory) as session:
                    fail_job(session, "b1", "boom", settings=settings)

        frames = list(
            status_events(
                session_factory, "b1", settings, sleep=advance, clock=lambda: next(clock)
            )
        )

        assert frames[1] == KEEPALIVE_FRAME
        assert frames[2] == KEEPALIVE_FRAME
        assert parse(frames[-1])[0] == "final"

    def test_unknown_build(self, session_factory, settings):
        """A missing build fails at the first poll."""
        with pytest.raises(BuildNotFoundError):
            next(status_events(session_factory, "missing", settings))
