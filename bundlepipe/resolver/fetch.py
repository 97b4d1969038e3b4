"""Module fetch and cache.

This module handles:
- Downloading a module source from a canonical URL with bounded retry
- A content-addressed on-disk cache keyed by URL hash
- Atomic cache writes safe for concurrent builds
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from bundlepipe.errors import UNREACHABLE

logger = logging.getLogger(__name__)

# Status codes worth another attempt
RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


class FetchError(Exception):
    """Raised when a module cannot be fetched."""

    def __init__(self, message: str, url: str, code: str = UNREACHABLE) -> None:
        """Initialize FetchError.

        Args:
            message: Error description.
            url: URL that failed.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.url = url
        self.code = code


@dataclass
class CachedModule:
    """A module body stored in the fetch cache."""

    url: str
    path: Path
    content_hash: str
    size_bytes: int


def url_key(url: str) -> str:
    """Return the cache key (sha256 hex) for a URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def compute_sha256(data: bytes) -> str:
    """Return the sha256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


def _atomic_write(path: Path, data: bytes) -> None:
    """Write data via a temp file in the same directory and rename it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FetchCache:
    """Content cache for fetched modules.

    Each entry is ``<sha256(url)>.js`` plus a ``.json`` sidecar recording the
    URL and content hash. Entries are written atomically, so concurrent
    writers of the same URL leave one complete file behind.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir

    def module_path(self, url: str) -> Path:
        return self.cache_dir / f"{url_key(url)}.js"

    def meta_path(self, url: str) -> Path:
        return self.cache_dir / f"{url_key(url)}.json"

    def get(self, url: str) -> CachedModule | None:
        """Look up a cached module.

        Args:
            url: Canonical URL.

        Returns:
            CachedModule, or None on miss or a corrupt entry.
        """
        path = self.module_path(url)
        meta_path = self.meta_path(url)
        if not path.is_file() or not meta_path.is_file():
            return None

        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Discarding unreadable cache metadata for %s", url)
            return None

        data = path.read_bytes()
        digest = compute_sha256(data)
        if meta.get("url") != url or meta.get("sha256") != digest:
            logger.warning("Discarding stale cache entry for %s", url)
            return None

        return CachedModule(
            url=url, path=path, content_hash=digest, size_bytes=len(data)
        )

    def put(self, url: str, data: bytes) -> CachedModule:
        """Store a module body.

        Args:
            url: Canonical URL.
            data: Module body.

        Returns:
            CachedModule for the stored entry.
        """
        digest = compute_sha256(data)
        path = self.module_path(url)
        _atomic_write(path, data)
        meta = {"url": url, "sha256": digest, "size": len(data)}
        _atomic_write(self.meta_path(url), json.dumps(meta).encode("utf-8"))
        return CachedModule(
            url=url, path=path, content_hash=digest, size_bytes=len(data)
        )


def fetch_module(
    client: httpx.Client,
    url: str,
    timeout: float,
    retries: int = 3,
    backoff: float = 0.5,
) -> bytes:
    """Download a module body with bounded retry.

    Connection errors, timeouts and retryable status codes are retried up to
    ``retries`` attempts with exponential backoff. Other non-2xx responses
    fail immediately.

    Args:
        client: HTTPX client instance.
        url: URL to fetch.
        timeout: Per-attempt timeout in seconds.
        retries: Maximum number of attempts.
        backoff: Base delay between attempts in seconds.

    Returns:
        Response body.

    Raises:
        FetchError: If the module cannot be fetched.
    """
    last_error = ""
    for attempt in range(1, retries + 1):
        logger.debug("Fetching %s (attempt %d/%d)", url, attempt, retries)
        try:
            response = client.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            last_error = f"HTTP {status} {e.response.reason_phrase}"
            if status not in RETRYABLE_STATUS:
                raise FetchError(f"Failed to fetch {url}: {last_error}", url) from e
        except httpx.TimeoutException:
            last_error = "timeout"
        except httpx.RequestError as e:
            last_error = f"network error: {e}"

        if attempt < retries:
            delay = backoff * (2 ** (attempt - 1))
            logger.info(
                "Fetch of %s failed (%s), retrying in %.1fs", url, last_error, delay
            )
            time.sleep(delay)

    raise FetchError(
        f"Failed to fetch {url} after {retries} attempts: {last_error}", url
    )


__all__ = [
    "CachedModule",
    "FetchCache",
    "FetchError",
    "compute_sha256",
    "fetch_module",
    "url_key",
]
