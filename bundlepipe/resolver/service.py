"""Import resolver service.

This module provides the high-level API for turning bare module specifiers
into fetched, cached CDN modules:
- ImportResolver.plan(): policy check and canonical URL, no network
- ImportResolver.resolve(): plan plus fetch-through-cache
- ImportResolver.resolve_all(): all-or-nothing resolution for one build

Resolved entries are memoized per (specifier, policy) for the lifetime of
the resolver and are safe to share between concurrent builds.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import httpx

from bundlepipe.errors import UNREACHABLE
from bundlepipe.resolver.fetch import FetchCache, FetchError, fetch_module
from bundlepipe.resolver.specifier import (
    ResolutionError,
    canonical_url,
    is_bare_specifier,
)
from bundlepipe.types import ImportPolicy, ResolvedImport

if TYPE_CHECKING:
    from collections.abc import Iterable

    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)


def _policy_key(policy: ImportPolicy) -> tuple[object, ...]:
    return (
        policy.allow_any,
        tuple(sorted(policy.allow_list)),
        tuple(sorted(policy.pin_map.items())),
    )


class ImportResolver:
    """Resolve bare specifiers against a CDN mirror.

    Args:
        settings: Application settings (cdn_base, cache_dir, fetch_*).
        client: Optional HTTPX client; one is created and owned otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.Client | None = None,
    ) -> None:
        self.cdn_base = settings.cdn_base
        self.cache = FetchCache(settings.cache_dir)
        self.timeout = settings.fetch_timeout
        self.retries = settings.fetch_retries
        self.backoff = settings.fetch_backoff
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self._memo: dict[tuple[object, ...], ResolvedImport] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the owned HTTP client."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ImportResolver:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def plan(self, specifier: str, policy: ImportPolicy) -> str:
        """Check policy and compute the canonical URL without fetching.

        Args:
            specifier: Import specifier.
            policy: Import policy for this build.

        Returns:
            Canonical URL, or the specifier itself if it is not bare.

        Raises:
            ResolutionError: If the specifier is invalid or not allowed.
        """
        if not is_bare_specifier(specifier):
            return specifier
        return canonical_url(specifier, policy, self.cdn_base)

    def resolve(self, specifier: str, policy: ImportPolicy) -> ResolvedImport:
        """Resolve one specifier, fetching through the cache.

        Relative, absolute and URL specifiers pass through unchanged with no
        fetch.

        Args:
            specifier: Import specifier.
            policy: Import policy for this build.

        Returns:
            ResolvedImport.

        Raises:
            ResolutionError: NOT_ALLOWED, INVALID_SPECIFIER or UNREACHABLE.
        """
        if not is_bare_specifier(specifier):
            return ResolvedImport(
                specifier=specifier,
                resolved_url=specifier,
                content_hash="",
                cached_path="",
            )

        key = (specifier, *_policy_key(policy))
        with self._lock:
            memoized = self._memo.get(key)
        if memoized is not None:
            return memoized

        url = canonical_url(specifier, policy, self.cdn_base)
        cached = self.cache.get(url)
        if cached is None:
            try:
                data = fetch_module(
                    self._client,
                    url,
                    timeout=self.timeout,
                    retries=self.retries,
                    backoff=self.backoff,
                )
            except FetchError as e:
                raise ResolutionError(str(e), specifier, code=UNREACHABLE) from e
            cached = self.cache.put(url, data)
            logger.info("Fetched %s -> %s (%d bytes)", specifier, url, cached.size_bytes)
        else:
            logger.debug("Cache hit for %s (%s)", specifier, url)

        resolved = ResolvedImport(
            specifier=specifier,
            resolved_url=url,
            content_hash=cached.content_hash,
            cached_path=str(cached.path),
        )
        with self._lock:
            self._memo[key] = resolved
        return resolved

    def resolve_all(
        self,
        specifiers: Iterable[str],
        policy: ImportPolicy,
    ) -> dict[str, ResolvedImport]:
        """Resolve every specifier for one build, all or nothing.

        Policy is checked for all specifiers before any network access, so
        a disallowed package fails the build without partial fetches.

        Args:
            specifiers: Import specifiers.
            policy: Import policy for this build.

        Returns:
            Mapping of specifier to ResolvedImport.

        Raises:
            ResolutionError: On the first failing specifier.
        """
        ordered = list(dict.fromkeys(specifiers))
        for specifier in ordered:
            self.plan(specifier, policy)
        return {specifier: self.resolve(specifier, policy) for specifier in ordered}


__all__ = ["ImportResolver"]
