"""Tests for the publish flow and its pre-flight guards.

The queue is disabled unless a test sets one up, so publishes build
synchronously; preview rendering is patched out.
"""

from unittest.mock import patch

import pytest

from bundlepipe.builds.artifacts import read_request
from bundlepipe.builds.queue import OrchestratorContext, QueueBackend
from bundlepipe.builds.service import get_job
from bundlepipe.config import Settings
from bundlepipe.db import create_all_tables, get_engine, get_session, get_session_factory
from bundlepipe.listings.service import NotListingOwnerError, get_listing
from bundlepipe.publish.guards import (
    DangerousPatternError,
    QuotaExceededError,
    RateLimitedError,
    check_dangerous_patterns,
    is_rate_limited,
)
from bundlepipe.publish.service import (
    InvalidSubmissionError,
    PublishRequest,
    parse_capabilities,
    parse_network_policy,
    publish,
)
from bundlepipe.types import NetworkPolicy

HTML = "<!doctype html><html><body>hello</body></html>"


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no rate limit and a quota of one app."""
    return Settings(
        artifacts_dir=tmp_path / "builds",
        cache_dir=tmp_path / "cache",
        db_url=f"sqlite:///{tmp_path / 'db.sqlite'}",
        publish_rate_limit_seconds=0,
        max_apps_per_user=1,
        gold_max_apps_per_user=3,
    )


@pytest.fixture
def context(settings):
    """Orchestrator context without a queue."""
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    ctx = OrchestratorContext(settings=settings, session_factory=get_session_factory(engine))
    yield ctx
    ctx.close()
    engine.dispose()


@pytest.fixture(autouse=True)
def no_preview():
    """Skip browser rendering."""
    with patch("bundlepipe.builds.worker.ensure_preview", return_value=True):
        yield


class TestDangerousPatterns:
    """Tests for check_dangerous_patterns."""

    @pytest.mark.parametrize(
        "source",
        [
            "lockdown();",
            "lockdown ({ errorTaming: 'unsafe' })",
            "const ses = require('ses');",
            'import "x";\nimport { harden } from "ses";',
            "await import('ses')",
        ],
    )
    def test_blocked(self, source):
        with pytest.raises(DangerousPatternError) as exc_info:
            check_dangerous_patterns(source)
        assert exc_info.value.code == "ses_lockdown"

    @pytest.mark.parametrize(
        "source",
        ["const lockdownMode = true;", "import sesame from 'sesame';", "// nothing here"],
    )
    def test_allowed(self, source):
        check_dangerous_patterns(source)


class TestRateLimit:
    """Tests for is_rate_limited."""

    def test_window(self, context):
        """A second call inside the window is limited; after it, allowed."""
        with get_session(context.session_factory) as session:
            assert is_rate_limited(session, "publish:u1", 5, now=1_000) is False
            assert is_rate_limited(session, "publish:u1", 5, now=3_000) is True
            assert is_rate_limited(session, "publish:u1", 5, now=7_000) is False
            assert is_rate_limited(session, "publish:u2", 5, now=7_000) is False

    def test_disabled(self, context):
        with get_session(context.session_factory) as session:
            assert is_rate_limited(session, "k", 0, now=1) is False
            assert is_rate_limited(session, "k", 0, now=1) is False


class TestParseCapabilities:
    """Tests for capability parsing."""

    def test_full(self):
        policy, domains, flags = parse_capabilities(
            {
                "network": {"access": "open-net", "domains": ["api.example.com", 7]},
                "permissions": {"camera": True, "microphone": "yes"},
            }
        )
        assert policy == NetworkPolicy.OPEN_NET
        assert domains == ["api.example.com"]
        assert flags == {"camera": True}

    def test_defaults(self):
        assert parse_capabilities(None) == (NetworkPolicy.NO_NET, [], {})

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("MEDIA_ONLY", NetworkPolicy.MEDIA_ONLY), ("bogus", NetworkPolicy.NO_NET), (3, NetworkPolicy.NO_NET)],
    )
    def test_network_policy(self, value, expected):
        assert parse_network_policy(value) == expected


class TestPublish:
    """Tests for publish."""

    def test_html_document(self, context, settings):
        """A new listing is created and the build runs to review."""
        result = publish(
            context,
            "u1",
            PublishRequest(
                title="Hello App",
                inline_code=HTML,
                capabilities={"network": {"access": "OPEN_NET", "domains": ["api.example.com"]}},
            ),
        )

        assert result.slug == "hello-app"
        build_dir = settings.artifacts_dir / result.build_id
        assert (build_dir / "source" / "index.html").read_text() == HTML
        request = read_request(build_dir)
        assert request.entry == "index.html"
        assert request.network_domains == ["api.example.com"]
        with get_session(context.session_factory) as session:
            assert get_job(session, result.build_id).state == "pending_review"
            listing = get_listing(session, result.listing_id, settings)
            assert listing.pending_build_id == result.build_id
            assert listing.build_id is None

    def test_dangerous_source_rejected_early(self, context, settings):
        """Blocked sources never get a build directory."""
        with pytest.raises(DangerousPatternError):
            publish(context, "u1", PublishRequest(title="X", inline_code="lockdown();"))
        assert not settings.artifacts_dir.exists()

    def test_dangerous_extra_file(self, context):
        with pytest.raises(DangerousPatternError):
            publish(
                context,
                "u1",
                PublishRequest(title="X", inline_code=HTML, files={"lib.js": "require('ses')"}),
            )

    def test_empty_source(self, context):
        with pytest.raises(InvalidSubmissionError) as exc_info:
            publish(context, "u1", PublishRequest(title="X", inline_code="   "))
        assert exc_info.value.code == "invalid_submission"

    def test_unsafe_path(self, context):
        with pytest.raises(InvalidSubmissionError):
            publish(
                context,
                "u1",
                PublishRequest(title="X", inline_code=HTML, files={"../escape.js": "x"}),
            )

    def test_quota(self, context):
        """A user at the quota cannot create another listing."""
        publish(context, "u1", PublishRequest(title="One", inline_code=HTML))
        with pytest.raises(QuotaExceededError) as exc_info:
            publish(context, "u1", PublishRequest(title="Two", inline_code=HTML))
        assert exc_info.value.code == "max_apps"

    def test_gold_quota(self, context):
        """Gold users have the higher quota."""
        publish(context, "u1", PublishRequest(title="One", inline_code=HTML), gold=True)
        publish(context, "u1", PublishRequest(title="Two", inline_code=HTML), gold=True)

    def test_update_not_counted(self, context, settings):
        """Updating an owned listing bypasses the quota."""
        first = publish(context, "u1", PublishRequest(title="One", inline_code=HTML))
        second = publish(
            context,
            "u1",
            PublishRequest(title="One v2", inline_code=HTML, listing_ref=first.slug),
        )
        assert second.listing_id == first.listing_id
        with get_session(context.session_factory) as session:
            listing = get_listing(session, first.listing_id, settings)
            assert listing.pending_build_id == second.build_id
            assert listing.title == "One v2"

    def test_update_not_owner(self, context):
        first = publish(context, "u1", PublishRequest(title="One", inline_code=HTML))
        with pytest.raises(NotListingOwnerError):
            publish(
                context,
                "u2",
                PublishRequest(title="Mine now", inline_code=HTML, listing_ref=first.listing_id),
            )

    def test_rate_limited(self, context, settings):
        """A second publish inside the window is refused."""
        settings.publish_rate_limit_seconds = 60
        settings.max_apps_per_user = 5
        publish(context, "u1", PublishRequest(title="One", inline_code=HTML))
        with pytest.raises(RateLimitedError) as exc_info:
            publish(context, "u1", PublishRequest(title="Two", inline_code=HTML))
        assert exc_info.value.code == "rate_limited"

    def test_project_kind(self, context, settings):
        """A package.json makes a project build, which is queued when enabled."""
        context.queue = QueueBackend(get_engine(f"sqlite:///{settings.artifacts_dir.parent / 'q.sqlite'}"))
        context.queue.ensure_schema()

        result = publish(
            context,
            "u1",
            PublishRequest(
                title="Vite App",
                inline_code="",
                files={"package.json": "{}", "src/main.ts": "console.log(1);"},
            ),
        )

        build_dir = settings.artifacts_dir / result.build_id
        assert (build_dir / "source" / "src" / "main.ts").is_file()
        assert read_request(build_dir).kind == "project"
        assert context.queue.pending_count() == 1
        with get_session(context.session_factory) as session:
            job = get_job(session, result.build_id)
            assert job.state == "queued"
            assert job.kind == "project"
