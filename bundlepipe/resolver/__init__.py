"""Import resolution module.

This module handles:
- Classifying module specifiers (bare, relative, absolute, URL)
- Enforcing the allow-list and pin-map import policy
- Fetching CDN modules through a content-addressed cache
"""

from bundlepipe.resolver.fetch import CachedModule, FetchCache, FetchError, fetch_module
from bundlepipe.resolver.service import ImportResolver
from bundlepipe.resolver.specifier import (
    ParsedSpecifier,
    ResolutionError,
    canonical_url,
    is_bare_specifier,
    parse_bare_specifier,
)

__all__ = [
    # Specifier module
    "ParsedSpecifier",
    "ResolutionError",
    "canonical_url",
    "is_bare_specifier",
    "parse_bare_specifier",
    # Fetch module
    "CachedModule",
    "FetchCache",
    "FetchError",
    "fetch_module",
    # Service module
    "ImportResolver",
]
