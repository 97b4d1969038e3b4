"""Package manager detection and command composition.

Detection precedence, first match wins:

1. ``pnpm-lock.yaml``  -> pnpm
2. ``package-lock.json`` -> npm
3. ``yarn.lock``       -> yarn
4. ``packageManager`` field in package.json (``pnpm@...``, ``yarn@...``,
   ``npm@...``)
5. npm

The manager decides the install command. With a lockfile the install is
frozen (``pnpm install --frozen-lockfile``, ``npm ci``,
``yarn install --frozen-lockfile``); without one it is a plain install.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from bundlepipe.types import PackageManager

logger = logging.getLogger(__name__)

LOCKFILES: tuple[tuple[str, PackageManager], ...] = (
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("package-lock.json", PackageManager.NPM),
    ("yarn.lock", PackageManager.YARN),
)

# Environment that disables dependency lifecycle scripts during install
SCRIPT_GUARD_ENV = {
    "npm_config_ignore_scripts": "true",
    "YARN_IGNORE_DEPENDENCY_SCRIPTS": "1",
}

INSTALL_ENV = {
    "NODE_ENV": "development",
    "npm_config_production": "false",
}

VITE_CONFIG_FILES = ("vite.config.ts", "vite.config.js", "vite.config.mjs", "vite.config.cjs")
VITE_SCRIPT_RE = re.compile(r"\bvite\b")


@dataclass(frozen=True)
class Tooling:
    """Commands selected for one project.

    Attributes:
        manager: Detected package manager.
        detected_from: Lockfile name, 'packageManager' or 'default'.
        has_lockfile: Whether a lockfile decided the manager.
        install_command: Install command (scripts enabled).
        build_command: Build script command.
    """

    manager: PackageManager
    detected_from: str
    has_lockfile: bool
    install_command: tuple[str, ...]
    build_command: tuple[str, ...]

    def install_argv(self, allow_scripts: bool) -> list[str]:
        """Install command, with lifecycle scripts disabled unless allowed."""
        argv = list(self.install_command)
        if not allow_scripts:
            argv.append("--ignore-scripts")
        return argv


@dataclass(frozen=True)
class NoRepair:
    """No repair applies; a failed build stays failed."""


@dataclass(frozen=True)
class InstallDevTool:
    """Install a missing build tool as a dev dependency, then retry once."""

    tool: str
    command: tuple[str, ...]


RepairAction = NoRepair | InstallDevTool


def read_package_json(project_dir: Path) -> dict[str, object]:
    """Read package.json, returning {} when absent or malformed."""
    path = project_dir / "package.json"
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def detect_package_manager(project_dir: Path) -> tuple[PackageManager, str]:
    """Detect the package manager of a project.

    Args:
        project_dir: Project root.

    Returns:
        Tuple of (manager, what decided it).
    """
    for filename, manager in LOCKFILES:
        if (project_dir / filename).is_file():
            return manager, filename

    declared = read_package_json(project_dir).get("packageManager")
    if isinstance(declared, str):
        for manager in (PackageManager.PNPM, PackageManager.YARN, PackageManager.NPM):
            if declared.startswith(manager.value):
                return manager, "packageManager"

    return PackageManager.NPM, "default"


def install_command(manager: PackageManager, has_lockfile: bool) -> list[str]:
    """Compose the install command for a manager."""
    if not has_lockfile:
        return [manager.value, "install"]
    if manager == PackageManager.NPM:
        return ["npm", "ci"]
    return [manager.value, "install", "--frozen-lockfile"]


def build_command(manager: PackageManager) -> list[str]:
    """Compose the build script command for a manager."""
    if manager == PackageManager.YARN:
        return ["yarn", "build"]
    return [manager.value, "run", "build"]


def detect_tooling(project_dir: Path) -> Tooling:
    """Select package manager and commands for a project.

    Args:
        project_dir: Project root.

    Returns:
        Tooling for the project.
    """
    manager, detected_from = detect_package_manager(project_dir)
    has_lockfile = detected_from in {name for name, _ in LOCKFILES}
    tooling = Tooling(
        manager=manager,
        detected_from=detected_from,
        has_lockfile=has_lockfile,
        install_command=tuple(install_command(manager, has_lockfile)),
        build_command=tuple(build_command(manager)),
    )
    logger.info("Using %s (detected from %s)", manager.value, detected_from)
    return tooling


def install_env(allow_scripts: bool) -> dict[str, str]:
    """Environment overrides for the install step."""
    env = dict(INSTALL_ENV)
    if not allow_scripts:
        env.update(SCRIPT_GUARD_ENV)
    return env


def uses_vite(project_dir: Path) -> bool:
    """Check whether config files or the build script reference vite."""
    if any((project_dir / name).is_file() for name in VITE_CONFIG_FILES):
        return True
    scripts = read_package_json(project_dir).get("scripts")
    if isinstance(scripts, dict):
        build_script = scripts.get("build")
        return isinstance(build_script, str) and bool(VITE_SCRIPT_RE.search(build_script))
    return False


def plan_repair(project_dir: Path, manager: PackageManager) -> RepairAction:
    """Decide the one-shot repair for a failed build.

    Only a missing vite binary is repaired: the project references vite but
    ``node_modules/.bin/vite`` was not installed.

    Args:
        project_dir: Project root.
        manager: Detected package manager.

    Returns:
        InstallDevTool or NoRepair.
    """
    if not uses_vite(project_dir):
        return NoRepair()
    if (project_dir / "node_modules" / ".bin" / "vite").exists():
        return NoRepair()

    if manager == PackageManager.NPM:
        command = ("npm", "install", "-D", "vite")
    else:
        command = (manager.value, "add", "-D", "vite")
    return InstallDevTool(tool="vite", command=command)


__all__ = [
    "INSTALL_ENV",
    "LOCKFILES",
    "SCRIPT_GUARD_ENV",
    "InstallDevTool",
    "NoRepair",
    "RepairAction",
    "Tooling",
    "build_command",
    "detect_package_manager",
    "detect_tooling",
    "install_command",
    "install_env",
    "plan_repair",
    "read_package_json",
    "uses_vite",
]
