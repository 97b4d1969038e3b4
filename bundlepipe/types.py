"""Shared type definitions for bundlepipe.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, TypedDict

if TYPE_CHECKING:
    from bundlepipe.config import Settings


class BuildState(str, Enum):
    """State of a build job."""

    QUEUED = "queued"
    BUILDING = "building"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {BuildState.PUBLISHED, BuildState.REJECTED, BuildState.FAILED}
)


class NetworkPolicy(str, Enum):
    """Network egress tier of a served build."""

    NO_NET = "NO_NET"
    MEDIA_ONLY = "MEDIA_ONLY"
    OPEN_NET = "OPEN_NET"


class ExecutionMode(str, Enum):
    """Requested project build mode."""

    NATIVE = "native"
    CONTAINER = "container"


class PackageManager(str, Enum):
    """Package manager used by a project build."""

    PNPM = "pnpm"
    NPM = "npm"
    YARN = "yarn"


class PermissionFlags(TypedDict, total=False):
    """Opt-in browser permissions declared for a build."""

    camera: bool
    microphone: bool
    geolocation: bool
    clipboardRead: bool
    clipboardWrite: bool


class ArchivedVersion(TypedDict):
    """A previously-current build kept for a retention window.

    ``archivedAt`` is in epoch milliseconds.
    """

    buildId: str
    version: int
    archivedAt: int


@dataclass(frozen=True)
class ImportPolicy:
    """Rules for resolving bare module specifiers.

    Attributes:
        allow_any: Accept any package name.
        allow_list: Package names accepted when allow_any is false.
        pin_map: Package name to exact version or URL; always wins.
    """

    allow_any: bool = False
    allow_list: frozenset[str] = field(default_factory=frozenset)
    pin_map: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> ImportPolicy:
        """Build a policy from application settings."""
        return cls(
            allow_any=settings.allow_any_npm,
            allow_list=frozenset(settings.cdn_allow),
            pin_map=dict(settings.cdn_pin),
        )


@dataclass(frozen=True)
class ResolvedImport:
    """A bare specifier mapped to a fetched, cached module."""

    specifier: str
    resolved_url: str
    content_hash: str
    cached_path: str


@dataclass
class BuildArtifactSet:
    """Read-only view of the files present in a build directory."""

    build_dir: str
    files: set[str] = field(default_factory=set)
    preview_exists: bool = False
    bundle_entry_exists: bool = False
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "buildDir": self.build_dir,
            "files": sorted(self.files),
            "previewExists": self.preview_exists,
            "bundleEntryExists": self.bundle_entry_exists,
            "missing": list(self.missing),
        }


__all__ = [
    "TERMINAL_STATES",
    "ArchivedVersion",
    "BuildArtifactSet",
    "BuildState",
    "ExecutionMode",
    "ImportPolicy",
    "NetworkPolicy",
    "PackageManager",
    "PermissionFlags",
    "ResolvedImport",
]
