"""Preview rendering.

Renders a build's entry document in headless Chromium and saves a
screenshot. Local file:// requests are served, and so are requests to the
origins the build is allowed to load from (the CDN, the always-allowed
origins and declared OPEN_NET domains). Everything else is aborted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Route, sync_playwright

from bundlepipe.builds.artifacts import ENTRY_HTML, PREVIEW_FILE
from bundlepipe.policy.headers import allowed_origins, origin_of

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1280, "height": 720}
NAVIGATION_TIMEOUT_MS = 15_000
SETTLE_MS = 500


def is_request_allowed(url: str, origins: frozenset[str]) -> bool:
    """Check whether the preview browser may fetch a URL."""
    if url.startswith("file:"):
        return True
    if not url.startswith(("http://", "https://")):
        return False
    return origin_of(url) in origins


def render_preview(build_dir: Path, origins: Iterable[str] = ()) -> Path:
    """Render index.html of a build to preview.png.

    Args:
        build_dir: Build directory.
        origins: Network origins the page may load from.

    Returns:
        Path to the written preview.

    Raises:
        FileNotFoundError: If the build has no entry document.
        PlaywrightError: If the browser fails.
    """
    index_path = build_dir / ENTRY_HTML
    if not index_path.is_file():
        raise FileNotFoundError(index_path)

    allowed = frozenset(origins)

    def route_request(route: Route) -> None:
        if is_request_allowed(route.request.url, allowed):
            route.continue_()
        else:
            route.abort()

    output = build_dir / PREVIEW_FILE
    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(headless=True)
        try:
            page = browser.new_page(viewport=VIEWPORT)
            page.route("**/*", route_request)
            page.goto(index_path.resolve().as_uri(), wait_until="load", timeout=NAVIGATION_TIMEOUT_MS)
            page.wait_for_timeout(SETTLE_MS)
            page.screenshot(path=str(output))
        finally:
            browser.close()

    logger.info("Rendered preview %s", output)
    return output


def ensure_preview(build_dir: Path, settings: Settings | None = None) -> bool:
    """Render a preview if missing; failures are logged, never raised.

    Args:
        build_dir: Build directory.
        settings: Optional settings instance.

    Returns:
        True if preview.png exists afterwards.
    """
    if (build_dir / PREVIEW_FILE).is_file():
        return True
    try:
        render_preview(build_dir, allowed_origins(build_dir, settings))
    except (PlaywrightError, OSError) as e:
        logger.warning("Preview rendering failed for %s: %s", build_dir.name, e)
        return False
    return True


__all__ = ["ensure_preview", "is_request_allowed", "render_preview"]
