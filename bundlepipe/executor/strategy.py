"""Execution strategies for project builds.

A strategy turns a package manager command into the argv and environment
actually spawned. ``select_strategy`` picks one per invocation from the
requested mode and the container runtime check result; a missing runtime
means native execution.
"""

from __future__ import annotations

import logging
import os
import secrets
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from bundlepipe.executor.tooling import SCRIPT_GUARD_ENV
from bundlepipe.types import ExecutionMode

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

RUNTIME_CHECK_TIMEOUT = 10
CONTAINER_WORKDIR = "/workspace"

# Writable locations inside the read-only container root
CONTAINER_ENV = {
    "HOME": "/tmp",
    "npm_config_cache": "/tmp/.npm",
    "YARN_CACHE_FOLDER": "/tmp/.yarn",
}


@dataclass
class PreparedCommand:
    """A command ready to spawn.

    Attributes:
        argv: Full argument vector.
        env: Complete environment, or None to inherit.
        cleanup_argv: Command that stops the workload if the spawned
            process is killed, or None.
    """

    argv: list[str]
    env: dict[str, str] | None
    cleanup_argv: list[str] | None = None


@dataclass(frozen=True)
class NativeStrategy:
    """Run commands directly in the project directory."""

    name = "native"

    def prepare(self, command: list[str], project_dir: Path, env: dict[str, str]) -> PreparedCommand:
        base = {k: v for k, v in os.environ.items() if k not in SCRIPT_GUARD_ENV}
        base.update(env)
        return PreparedCommand(argv=list(command), env=base)


@dataclass(frozen=True)
class ContainerStrategy:
    """Run commands in a capped, capability-dropped, read-only container."""

    runtime: str
    image: str
    memory: str = "2g"
    cpus: str = "1.5"
    pids_limit: int = 256

    name = "container"

    def prepare(self, command: list[str], project_dir: Path, env: dict[str, str]) -> PreparedCommand:
        container_name = f"bundlepipe-{secrets.token_hex(6)}"
        argv = [
            self.runtime,
            "run",
            "--rm",
            "--name",
            container_name,
            f"--memory={self.memory}",
            f"--cpus={self.cpus}",
            f"--pids-limit={self.pids_limit}",
            "--cap-drop=ALL",
            "--security-opt",
            "no-new-privileges",
            "--read-only",
            "--tmpfs",
            "/tmp:exec,mode=1777",
        ]
        for key, value in sorted({**CONTAINER_ENV, **env}.items()):
            argv.extend(["-e", f"{key}={value}"])
        argv.extend(
            [
                "-v",
                f"{project_dir.resolve()}:{CONTAINER_WORKDIR}",
                "-w",
                CONTAINER_WORKDIR,
                self.image,
                *command,
            ]
        )
        return PreparedCommand(
            argv=argv,
            env=None,
            cleanup_argv=[self.runtime, "kill", container_name],
        )


ExecutionStrategy = NativeStrategy | ContainerStrategy


def container_runtime_available(runtime: str, timeout: float = RUNTIME_CHECK_TIMEOUT) -> bool:
    """Check that a container runtime answers.

    Args:
        runtime: Runtime executable (e.g. 'docker').
        timeout: Check timeout in seconds.

    Returns:
        True if the runtime's server is reachable.
    """
    try:
        result = subprocess.run(
            [runtime, "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Container runtime check failed: %s", e)
        return False
    return result.returncode == 0 and bool(result.stdout.strip())


def select_strategy(
    mode: ExecutionMode,
    runtime_available: bool,
    settings: Settings,
) -> ExecutionStrategy:
    """Pick the execution strategy for one invocation.

    Args:
        mode: Requested mode.
        runtime_available: Result of the container runtime check.
        settings: Application settings (container limits).

    Returns:
        ContainerStrategy only when requested and available, else native.
    """
    if mode == ExecutionMode.CONTAINER and runtime_available:
        return ContainerStrategy(
            runtime=settings.container_runtime,
            image=settings.container_image,
            memory=settings.container_memory,
            cpus=settings.container_cpus,
            pids_limit=settings.container_pids_limit,
        )
    return NativeStrategy()


__all__ = [
    "ContainerStrategy",
    "ExecutionStrategy",
    "NativeStrategy",
    "PreparedCommand",
    "container_runtime_available",
    "select_strategy",
]
