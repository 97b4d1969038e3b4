"""Module specifier classification and parsing.

This module handles:
- Deciding whether an import specifier is bare (needs resolution)
- Splitting a bare specifier into package name, version and subpath
- Building the canonical CDN URL for a bare specifier under a policy

Nothing here touches the network.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from bundlepipe.errors import INVALID_SPECIFIER, NOT_ALLOWED
from bundlepipe.types import ImportPolicy

# Prefixes that mark a specifier as a full URL
URL_PREFIXES = ("http://", "https://", "data:", "blob:")

# npm package name rules (lowercase, optional scope)
PACKAGE_NAME_PATTERN = re.compile(
    r"^(?:@[a-z0-9~][a-z0-9._~-]*/)?[a-z0-9~][a-z0-9._~-]*$"
)
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9.^~<>=*+_-]+$")


class ResolutionError(Exception):
    """Raised when a specifier cannot be resolved."""

    def __init__(
        self,
        message: str,
        specifier: str,
        code: str = NOT_ALLOWED,
    ) -> None:
        super().__init__(message)
        self.specifier = specifier
        self.code = code
        self.details = {"specifier": specifier}


@dataclass(frozen=True)
class ParsedSpecifier:
    """A bare specifier split into its parts.

    Attributes:
        name: Package name, including scope if any.
        version: Explicit version from the specifier, if any.
        subpath: Path inside the package, with leading '/', or ''.
    """

    name: str
    version: str | None
    subpath: str


def is_relative(specifier: str) -> bool:
    """Check for './x', '../x', '.' or '..'."""
    return specifier in (".", "..") or specifier.startswith(("./", "../"))


def is_absolute(specifier: str) -> bool:
    """Check for an absolute path specifier."""
    return specifier.startswith("/")


def is_url(specifier: str) -> bool:
    """Check for a full URL specifier."""
    return specifier.lower().startswith(URL_PREFIXES)


def is_bare_specifier(specifier: str) -> bool:
    """Check whether a specifier needs resolution.

    Args:
        specifier: Import specifier as written in source.

    Returns:
        True if the specifier is neither relative, absolute nor a URL.
    """
    if not specifier:
        return False
    return not (
        is_relative(specifier) or is_absolute(specifier) or is_url(specifier)
    )


def parse_bare_specifier(specifier: str) -> ParsedSpecifier:
    """Split a bare specifier into name, version and subpath.

    Handles scoped packages ('@scope/pkg/sub') and explicit versions
    ('pkg@1.2.3/sub', '@scope/pkg@^2').

    Args:
        specifier: Bare specifier.

    Returns:
        ParsedSpecifier.

    Raises:
        ResolutionError: If the specifier is not a valid package reference.
    """
    parts = specifier.split("/")
    if specifier.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            raise ResolutionError(
                f"Invalid scoped specifier: {specifier}",
                specifier,
                code=INVALID_SPECIFIER,
            )
        head = f"{parts[0]}/{parts[1]}"
        rest = parts[2:]
        scope_prefix, _, bare_head = head.partition("/")
        name_part, sep, version = bare_head.partition("@")
        name = f"{scope_prefix}/{name_part}"
    else:
        head = parts[0]
        rest = parts[1:]
        name, sep, version = head.partition("@")

    if not sep:
        version = ""

    if not PACKAGE_NAME_PATTERN.match(name):
        raise ResolutionError(
            f"Invalid package name in specifier: {specifier}",
            specifier,
            code=INVALID_SPECIFIER,
        )
    if sep and not VERSION_PATTERN.match(version):
        raise ResolutionError(
            f"Invalid version in specifier: {specifier}",
            specifier,
            code=INVALID_SPECIFIER,
        )
    if any(segment in ("", ".", "..") for segment in rest):
        raise ResolutionError(
            f"Invalid subpath in specifier: {specifier}",
            specifier,
            code=INVALID_SPECIFIER,
        )

    subpath = "/" + "/".join(rest) if rest else ""
    return ParsedSpecifier(name=name, version=version or None, subpath=subpath)


def canonical_url(specifier: str, policy: ImportPolicy, cdn_base: str) -> str:
    """Compute the canonical fetch URL for a bare specifier.

    Precedence: a pin-map entry always wins; otherwise the package must be
    allowed by the policy. Pin values starting with http(s) are used as the
    package base URL; any other pin value is an exact version.

    Args:
        specifier: Bare specifier.
        policy: Import policy for this build.
        cdn_base: CDN mirror base URL.

    Returns:
        Canonical URL string.

    Raises:
        ResolutionError: If the specifier is invalid or not allowed.
    """
    parsed = parse_bare_specifier(specifier)
    pin = policy.pin_map.get(parsed.name)

    if pin is not None:
        if is_url(pin):
            return pin.rstrip("/") + parsed.subpath if parsed.subpath else pin
        version: str | None = pin
    elif not policy.allow_any and parsed.name not in policy.allow_list:
        raise ResolutionError(
            f"Package not allowed: {parsed.name}",
            specifier,
            code=NOT_ALLOWED,
        )
    else:
        version = parsed.version

    base = cdn_base.rstrip("/")
    versioned = f"{parsed.name}@{version}" if version else parsed.name
    return f"{base}/{versioned}{parsed.subpath}"


__all__ = [
    "URL_PREFIXES",
    "ParsedSpecifier",
    "ResolutionError",
    "canonical_url",
    "is_absolute",
    "is_bare_specifier",
    "is_relative",
    "is_url",
    "parse_bare_specifier",
]
