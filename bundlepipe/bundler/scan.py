"""Post-bundle import scan.

Scans finished bundle text for static or dynamic imports whose specifier
is still bare. This runs on the output only and does not trust the
resolver or the rewriting that produced it.
"""

from __future__ import annotations

import re

from bundlepipe.errors import UNRESOLVED_IMPORTS
from bundlepipe.resolver.specifier import is_bare_specifier

# import ... from "x", import "x", export ... from "x" anywhere in the text,
# not only at the start of a line
STATEMENT_SCAN_RE = re.compile(
    r"""(?<![\w$.])(?:import|export)\b\s*(?:[^'"`]*?\bfrom\s*)?["'`]([^"'`\s]+)["'`]"""
)

# import("x")
DYNAMIC_SCAN_RE = re.compile(r"""(?<![\w$.])import\s*\(\s*["'`]([^"'`]*)["'`]\s*\)""")


class UnresolvedImportsError(Exception):
    """Raised when a bundle still contains bare import specifiers."""

    def __init__(self, specifiers: list[str], code: str = UNRESOLVED_IMPORTS) -> None:
        """Initialize UnresolvedImportsError.

        Args:
            specifiers: Offending specifiers in order of appearance.
            code: Error code for structured error handling.
        """
        super().__init__(f"Unresolved imports in bundle: {', '.join(specifiers)}")
        self.specifiers = specifiers
        self.code = code
        self.details = {"specifiers": specifiers}


def scan_import_specifiers(text: str) -> list[str]:
    """List every import specifier found in module text.

    Args:
        text: Module source.

    Returns:
        Specifiers in order of appearance, without duplicates.
    """
    found: list[tuple[int, str]] = []
    for pattern in (STATEMENT_SCAN_RE, DYNAMIC_SCAN_RE):
        found.extend((m.start(1), m.group(1)) for m in pattern.finditer(text))
    found.sort()
    return list(dict.fromkeys(specifier for _, specifier in found))


def find_unresolved_imports(text: str) -> list[str]:
    """List bare specifiers left in module text."""
    return [specifier for specifier in scan_import_specifiers(text) if is_bare_specifier(specifier)]


def assert_no_bare_imports(text: str) -> None:
    """Fail if any bare import specifier remains.

    Args:
        text: Finished bundle text.

    Raises:
        UnresolvedImportsError: With the full list of offending specifiers.
    """
    offending = find_unresolved_imports(text)
    if offending:
        raise UnresolvedImportsError(offending)


__all__ = [
    "UnresolvedImportsError",
    "assert_no_bare_imports",
    "find_unresolved_imports",
    "scan_import_specifiers",
]
