"""Build worker.

This module handles:
- process_job(): run one job through bundle/execute and artifact writing
- WorkerPool: threads that claim queued jobs and process them

A job is processed strictly in sequence: resolve and bundle (or install
and build), write artifacts, render a preview, then hand over to review.
Any failure moves the job to ``failed`` with the error recorded; the
previously published build of the listing is never touched.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from bundlepipe.builds.artifacts import (
    BUILD_LOG,
    SOURCE_DIR,
    BuildRequest,
    copy_output_tree,
    get_build_dir,
    package_bundle,
    read_request,
    read_source_files,
    write_entry,
    write_manifest,
    write_policy,
)
from bundlepipe.builds.service import (
    approve_build,
    fail_job,
    get_job,
    set_progress,
    transition,
)
from bundlepipe.bundler.service import BundleOptions, InlineBundler
from bundlepipe.db import get_session
from bundlepipe.errors import BUILD_FAILED, INTERNAL_ERROR, error_info
from bundlepipe.executor.runner import BuildExecutionError
from bundlepipe.executor.service import execute
from bundlepipe.listings.preview import ensure_preview
from bundlepipe.types import BuildState, ExecutionMode, ImportPolicy

if TYPE_CHECKING:
    from bundlepipe.builds.queue import OrchestratorContext

logger = logging.getLogger(__name__)

HTML_DOCTYPE = "<!doctype html"


def is_html_document(source: str) -> bool:
    """Check whether submitted source is a full HTML document."""
    return source.lstrip().lower().startswith(HTML_DOCTYPE)


def _progress(context: OrchestratorContext, build_id: str, value: int) -> None:
    with get_session(context.session_factory) as session:
        set_progress(session, build_id, value, settings=context.settings)


def _run_inline(
    context: OrchestratorContext,
    build_dir: Path,
    request: BuildRequest,
) -> None:
    files = read_source_files(build_dir)
    source = files.pop(request.entry, None)
    if source is None:
        raise FileNotFoundError(f"Entry document {request.entry} was not submitted")

    with (build_dir / BUILD_LOG).open("w") as log_file:
        log_file.write(f"# Inline build of {request.entry}\n")
        log_file.write(f"# Started: {datetime.now(timezone.utc).isoformat()}\n")
        if is_html_document(source):
            write_entry(build_dir, html=source, bundle_text="")
            log_file.write("# HTML document stored verbatim\n")
            return

        options = BundleOptions(
            entry=request.entry,
            files=files,
            policy=ImportPolicy.from_settings(context.settings),
        )
        try:
            bundle_text = InlineBundler(context.resolver, context.settings).bundle(source, options)
        except Exception as e:
            log_file.write(f"# FAILED: {e}\n")
            raise
        write_entry(build_dir, bundle_text=bundle_text)
        log_file.write(f"# Bundle: {len(bundle_text)} bytes\n")
        log_file.write(f"# Finished: {datetime.now(timezone.utc).isoformat()}\n")


def _run_project(context: OrchestratorContext, build_dir: Path) -> None:
    settings = context.settings
    result = execute(
        build_dir / SOURCE_DIR,
        mode=ExecutionMode(settings.build_mode),
        allow_scripts=settings.allow_scripts,
        timeout=settings.build_timeout,
        settings=settings,
        log_path=build_dir / BUILD_LOG,
    )
    if result.output_dir is None:
        raise BuildExecutionError(
            "Build produced no index.html in dist/, build/ or out/",
            code=BUILD_FAILED,
            log_path=result.log_path,
        )
    copy_output_tree(result.output_dir, build_dir)


def _record_failure(context: OrchestratorContext, build_id: str, exc: Exception) -> BuildState:
    info = error_info(exc)
    if info.code == INTERNAL_ERROR:
        logger.exception("Unexpected error in build %s", build_id)
    with get_session(context.session_factory) as session:
        fail_job(
            session,
            build_id,
            info.message or type(exc).__name__,
            error_code=info.code,
            settings=context.settings,
        )
    return BuildState.FAILED


def process_job(context: OrchestratorContext, build_id: str) -> BuildState:
    """Run one queued job to pending_review (or further) or to failed.

    Args:
        context: Orchestrator context.
        build_id: Id of a job in the queued state.

    Returns:
        The state the job ended in.
    """
    settings = context.settings
    build_dir = get_build_dir(build_id, settings)

    with get_session(context.session_factory) as session:
        job = transition(session, build_id, BuildState.BUILDING, progress=0, settings=settings)
        kind = job.kind

    try:
        request = read_request(build_dir)
        _progress(context, build_id, 10)

        if kind == "project":
            _run_project(context, build_dir)
        else:
            _run_inline(context, build_dir, request)
        _progress(context, build_id, 60)

        write_manifest(
            build_dir,
            request.network_policy,
            request.network_domains,
            title=request.title,
            buildId=build_id,
            kind=kind,
        )
        write_policy(build_dir, request.permissions)
        package_bundle(build_dir)
        _progress(context, build_id, 80)
    except Exception as e:
        return _record_failure(context, build_id, e)

    ensure_preview(build_dir, settings)

    # Review hand-off and auto-publish roll back together; the job is then failed
    try:
        with get_session(context.session_factory) as session:
            transition(session, build_id, BuildState.PENDING_REVIEW, progress=100, settings=settings)
            if not settings.require_publish_approval:
                approve_build(session, build_id, settings=settings)
            return BuildState(get_job(session, build_id).state)
    except Exception as e:
        return _record_failure(context, build_id, e)


class WorkerPool:
    """Threads that pull jobs from the durable queue.

    Args:
        context: Orchestrator context with a queue backend.
    """

    def __init__(self, context: OrchestratorContext) -> None:
        if context.queue is None:
            raise ValueError("WorkerPool requires a queue backend")
        self.context = context
        self.size = context.settings.max_concurrent_builds
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def _loop(self, worker_id: str) -> None:
        queue = self.context.queue
        assert queue is not None
        interval = self.context.settings.worker_poll_interval
        while not self._stop_event.is_set():
            build_id = queue.claim(worker_id)
            if build_id is None:
                self._stop_event.wait(interval)
                continue
            logger.info("%s claimed build %s", worker_id, build_id)
            try:
                process_job(self.context, build_id)
            except Exception:
                logger.exception("%s failed to process build %s", worker_id, build_id)
            finally:
                queue.complete(build_id)

    def start(self) -> None:
        """Start the worker threads."""
        if self.running:
            logger.warning("Worker pool is already running")
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(f"worker-{i}",), daemon=True)
            for i in range(self.size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d build worker(s)", self.size)

    def stop(self, timeout: float | None = None) -> None:
        """Signal the workers to stop and wait for running jobs."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Build workers stopped")

    def wait(self) -> None:
        """Block until stop() is called from another thread."""
        self._stop_event.wait()


__all__ = ["WorkerPool", "is_html_document", "process_job"]
