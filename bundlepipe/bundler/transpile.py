"""JSX/TypeScript transpilation through the esbuild CLI.

Source is fed on stdin and the ES module comes back on stdout. No
bundling happens here; import statements are left for the bundler.
"""

from __future__ import annotations

import logging
import posixpath
import subprocess
from typing import TYPE_CHECKING

from bundlepipe.errors import BUNDLE_ERROR

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

# Extension to esbuild loader; anything else is plain JavaScript
LOADERS = {
    ".jsx": "jsx",
    ".ts": "ts",
    ".tsx": "tsx",
    ".mts": "ts",
}

TRANSPILE_TIMEOUT = 60


class BundleError(Exception):
    """Raised when a source document cannot be bundled."""

    def __init__(self, message: str, code: str = BUNDLE_ERROR) -> None:
        super().__init__(message)
        self.code = code


def loader_for(path: str) -> str | None:
    """Return the esbuild loader for a module path, or None for plain JS."""
    return LOADERS.get(posixpath.splitext(path)[1].lower())


def compose_esbuild_command(settings: Settings, loader: str) -> list[str]:
    """Compose the esbuild transform command.

    Args:
        settings: Application settings.
        loader: esbuild loader name.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [
        settings.esbuild_bin,
        f"--loader={loader}",
        "--format=esm",
        "--jsx=automatic",
        f"--target={settings.bundle_target}",
        "--log-level=error",
    ]
    if settings.jsx_dev:
        cmd.append("--jsx-dev")
    return cmd


def transpile(source: str, path: str, settings: Settings, loader: str | None = None) -> str:
    """Transpile one module to an ES module.

    Args:
        source: Module source text.
        path: Module path, used for the loader and error messages.
        settings: Application settings.
        loader: Explicit loader; derived from the path if not given.

    Returns:
        Transpiled module text.

    Raises:
        BundleError: If esbuild is missing or rejects the source.
    """
    loader = loader or loader_for(path) or "tsx"
    cmd = compose_esbuild_command(settings, loader)
    logger.debug("Transpiling %s with loader %s", path, loader)

    try:
        result = subprocess.run(
            cmd,
            input=source,
            capture_output=True,
            text=True,
            timeout=TRANSPILE_TIMEOUT,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise BundleError(f"Transpiling {path} timed out") from e
    except OSError as e:
        raise BundleError(f"Failed to run {settings.esbuild_bin}: {e}") from e

    if result.returncode != 0:
        raise BundleError(f"Failed to compile {path}: {result.stderr.strip()}")
    return result.stdout


__all__ = [
    "LOADERS",
    "BundleError",
    "compose_esbuild_command",
    "loader_for",
    "transpile",
]
