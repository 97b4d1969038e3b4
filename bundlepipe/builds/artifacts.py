"""Build artifact store.

This module handles:
- The per-build directory layout under ``artifacts_dir/<build_id>/``
- Build id validation (no traversal outside the artifacts root)
- Writing the manifest, policy, entry document and packaged bundle
- Computing the artifact set of a build on demand

Layout of one build directory::

    source/          submitted source (document or project tree)
    index.html       entry document
    app.js           bundle output (inline builds)
    manifest.json    {networkPolicy, networkDomains, ...}
    policy.json      permission flags
    preview.png      rendered preview (best effort)
    build.log        full build output
    bundle.zip       packaged served files
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bundlepipe.errors import INVALID_BUILD_ID
from bundlepipe.types import BuildArtifactSet, NetworkPolicy, PermissionFlags

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

SOURCE_DIR = "source"
ENTRY_HTML = "index.html"
BUNDLE_ENTRY = "app.js"
MANIFEST_FILE = "manifest.json"
POLICY_FILE = "policy.json"
PREVIEW_FILE = "preview.png"
BUILD_LOG = "build.log"
BUNDLE_ZIP = "bundle.zip"
REQUEST_FILE = "request.json"

# Files every completed build must have
EXPECTED_FILES = (ENTRY_HTML, MANIFEST_FILE, PREVIEW_FILE, BUNDLE_ZIP, BUILD_LOG)

# Never packaged into bundle.zip
UNPACKAGED = {SOURCE_DIR, BUILD_LOG, BUNDLE_ZIP, PREVIEW_FILE}

BUILD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# Fixed timestamp for reproducible zip entries
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)

DEFAULT_ENTRY_HTML = (
    '<!doctype html>\n<html>\n<head>\n<meta charset="utf-8">\n'
    '<meta name="viewport" content="width=device-width, initial-scale=1">\n'
    "</head>\n<body>\n"
    '<div id="root"></div>\n'
    '<script type="module" src="./app.js"></script>\n'
    "</body>\n</html>\n"
)


class InvalidBuildIdError(Exception):
    """Raised when a build id could escape the artifacts root."""

    def __init__(self, build_id: str, code: str = INVALID_BUILD_ID) -> None:
        super().__init__(f"Invalid build id: {build_id!r}")
        self.build_id = build_id
        self.code = code


def new_build_id() -> str:
    """Generate a fresh build id."""
    return uuid.uuid4().hex


def validate_build_id(build_id: str) -> str:
    """Check that a build id is a single safe path segment.

    Args:
        build_id: Candidate build id.

    Returns:
        The build id unchanged.

    Raises:
        InvalidBuildIdError: If the id is empty, contains '..' or a path
            separator, or has characters outside [A-Za-z0-9_-].
    """
    if ".." in build_id or "/" in build_id or "\\" in build_id:
        raise InvalidBuildIdError(build_id)
    if not BUILD_ID_PATTERN.match(build_id):
        raise InvalidBuildIdError(build_id)
    return build_id


def get_build_dir(build_id: str, settings: Settings) -> Path:
    """Return the directory of a build (not created)."""
    return settings.artifacts_dir / validate_build_id(build_id)


def ensure_build_dir(build_id: str, settings: Settings) -> Path:
    """Create and return the directory of a build."""
    build_dir = get_build_dir(build_id, settings)
    (build_dir / SOURCE_DIR).mkdir(parents=True, exist_ok=True)
    return build_dir


def write_json(path: Path, data: Any) -> None:
    """Write JSON with stable key order."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def read_json(path: Path) -> Any:
    """Read JSON, returning None if absent or malformed."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Ignoring malformed %s: %s", path, e)
        return None


@dataclass
class BuildRequest:
    """What a worker needs to run a build, stored as source/request.json.

    Attributes:
        kind: 'inline' or 'project'.
        entry: Entry document path inside source/ (inline builds).
        title: Listing title, copied into the manifest.
        network_policy: Declared network tier.
        network_domains: Declared egress domains.
        permissions: Declared permission flags.
    """

    kind: str = "inline"
    entry: str = "index.tsx"
    title: str = ""
    network_policy: NetworkPolicy = NetworkPolicy.NO_NET
    network_domains: list[str] = field(default_factory=list)
    permissions: PermissionFlags = field(default_factory=dict)  # type: ignore[assignment]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "kind": self.kind,
            "entry": self.entry,
            "title": self.title,
            "networkPolicy": self.network_policy.value,
            "networkDomains": list(self.network_domains),
            "permissions": dict(self.permissions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildRequest:
        """Parse a stored request, tolerating missing fields."""
        try:
            policy = NetworkPolicy(data.get("networkPolicy", NetworkPolicy.NO_NET.value))
        except ValueError:
            policy = NetworkPolicy.NO_NET
        domains = data.get("networkDomains") or []
        permissions = data.get("permissions") or {}
        return cls(
            kind=str(data.get("kind", "inline")),
            entry=str(data.get("entry", "index.tsx")),
            title=str(data.get("title", "")),
            network_policy=policy,
            network_domains=[str(d) for d in domains if isinstance(d, str)],
            permissions={k: bool(v) for k, v in permissions.items()},  # type: ignore[misc]
        )


def write_request(build_dir: Path, request: BuildRequest) -> Path:
    """Store the build request in the source directory."""
    path = build_dir / SOURCE_DIR / REQUEST_FILE
    write_json(path, request.to_dict())
    return path


def read_request(build_dir: Path) -> BuildRequest:
    """Load the build request; defaults apply when it is absent."""
    data = read_json(build_dir / SOURCE_DIR / REQUEST_FILE)
    return BuildRequest.from_dict(data if isinstance(data, dict) else {})


def read_source_files(build_dir: Path) -> dict[str, str]:
    """Read every submitted text file under source/, keyed by posix path."""
    source_dir = build_dir / SOURCE_DIR
    files: dict[str, str] = {}
    for path in sorted(source_dir.rglob("*")):
        relative = path.relative_to(source_dir)
        if not path.is_file() or relative.as_posix() == REQUEST_FILE:
            continue
        if "node_modules" in relative.parts:
            continue
        files[relative.as_posix()] = path.read_text(encoding="utf-8", errors="replace")
    return files


def write_manifest(
    build_dir: Path,
    network_policy: NetworkPolicy,
    network_domains: list[str],
    **extra: Any,
) -> Path:
    """Write manifest.json for a build.

    Args:
        build_dir: Build directory.
        network_policy: Network tier.
        network_domains: Declared or observed egress domains.
        **extra: Additional manifest fields (title, entry, ...).

    Returns:
        Path to the manifest.
    """
    manifest = {
        **extra,
        "networkPolicy": network_policy.value,
        "networkDomains": list(network_domains),
    }
    path = build_dir / MANIFEST_FILE
    write_json(path, manifest)
    return path


def write_policy(build_dir: Path, flags: PermissionFlags) -> Path:
    """Write policy.json (permission flags) for a build."""
    path = build_dir / POLICY_FILE
    write_json(path, {key: bool(value) for key, value in flags.items()})
    return path


def write_entry(build_dir: Path, html: str | None = None, bundle_text: str | None = None) -> None:
    """Write the entry document and, if given, the bundle output.

    Args:
        build_dir: Build directory.
        html: Entry document; a loader for app.js if not given.
        bundle_text: Bundled module text.
    """
    (build_dir / ENTRY_HTML).write_text(html or DEFAULT_ENTRY_HTML, encoding="utf-8")
    if bundle_text is not None:
        (build_dir / BUNDLE_ENTRY).write_text(bundle_text, encoding="utf-8")


def copy_output_tree(output_dir: Path, build_dir: Path) -> None:
    """Copy a project build output directory into the build directory."""
    for path in sorted(output_dir.rglob("*")):
        relative = path.relative_to(output_dir)
        if relative.parts[0] in UNPACKAGED:
            continue
        target = build_dir / relative
        if path.is_dir():
            target.mkdir(parents=True, exist_ok=True)
        elif path.is_file():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)


def package_bundle(build_dir: Path) -> Path:
    """Zip the served files of a build into bundle.zip.

    Entries are sorted and carry a fixed timestamp so that identical
    builds produce identical archives.

    Args:
        build_dir: Build directory.

    Returns:
        Path to bundle.zip.
    """
    zip_path = build_dir / BUNDLE_ZIP
    tmp_path = build_dir / f".{BUNDLE_ZIP}.tmp"
    with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(build_dir.rglob("*")):
            relative = path.relative_to(build_dir)
            if not path.is_file() or relative.parts[0] in UNPACKAGED:
                continue
            if relative.name.startswith("."):
                continue
            info = zipfile.ZipInfo(relative.as_posix(), date_time=ZIP_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            archive.writestr(info, path.read_bytes())
    tmp_path.replace(zip_path)
    return zip_path


def compute_artifact_set(build_dir: Path) -> BuildArtifactSet:
    """Compute the artifact set of a build directory.

    Args:
        build_dir: Build directory (may not exist).

    Returns:
        BuildArtifactSet; ``files`` lists every file relative to the build
        directory and ``missing`` lists absent expected files.
    """
    files: set[str] = set()
    if build_dir.is_dir():
        for path in build_dir.rglob("*"):
            relative = path.relative_to(build_dir)
            if path.is_file() and relative.parts[0] != SOURCE_DIR:
                files.add(relative.as_posix())

    return BuildArtifactSet(
        build_dir=str(build_dir),
        files=files,
        preview_exists=PREVIEW_FILE in files,
        bundle_entry_exists=BUNDLE_ENTRY in files or ENTRY_HTML in files,
        missing=[name for name in EXPECTED_FILES if name not in files],
    )


__all__ = [
    "BUILD_LOG",
    "BUNDLE_ENTRY",
    "BUNDLE_ZIP",
    "REQUEST_FILE",
    "ENTRY_HTML",
    "EXPECTED_FILES",
    "MANIFEST_FILE",
    "POLICY_FILE",
    "PREVIEW_FILE",
    "SOURCE_DIR",
    "BuildRequest",
    "InvalidBuildIdError",
    "compute_artifact_set",
    "copy_output_tree",
    "ensure_build_dir",
    "get_build_dir",
    "new_build_id",
    "package_bundle",
    "read_json",
    "read_request",
    "read_source_files",
    "validate_build_id",
    "write_entry",
    "write_json",
    "write_manifest",
    "write_policy",
    "write_request",
]
