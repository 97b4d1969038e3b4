"""Inline bundler module.

This module handles:
- Transpiling JSX/TypeScript sources through esbuild
- Inlining local modules into one ES module
- Rewriting bare imports to resolved CDN URLs
- Rejecting output that still contains bare imports
"""

from bundlepipe.bundler.scan import (
    UnresolvedImportsError,
    assert_no_bare_imports,
    find_unresolved_imports,
    scan_import_specifiers,
)
from bundlepipe.bundler.service import BundleOptions, InlineBundler, bundle
from bundlepipe.bundler.transpile import BundleError, transpile

__all__ = [
    # Scan module
    "UnresolvedImportsError",
    "assert_no_bare_imports",
    "find_unresolved_imports",
    "scan_import_specifiers",
    # Transpile module
    "BundleError",
    "transpile",
    # Service module
    "BundleOptions",
    "InlineBundler",
    "bundle",
]
