"""Sandboxed project build executor.

Runs ``detect tooling -> install -> build`` for an uploaded project, natively
or in a resource-capped container, under one wall-clock deadline. A failed
build gets at most one repair (installing a missing build tool) followed by
exactly one retry of the build step.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from bundlepipe.config import get_settings
from bundlepipe.errors import BUILD_FAILED
from bundlepipe.executor.runner import BuildExecutionError, StepResult, run_step
from bundlepipe.executor.strategy import (
    ExecutionStrategy,
    NativeStrategy,
    container_runtime_available,
    select_strategy,
)
from bundlepipe.executor.tooling import (
    InstallDevTool,
    detect_tooling,
    install_env,
    plan_repair,
)
from bundlepipe.types import ExecutionMode, PackageManager

if TYPE_CHECKING:
    from bundlepipe.config import Settings
    from bundlepipe.executor.tooling import Tooling

logger = logging.getLogger(__name__)

# Conventional build output directories, in lookup order
OUTPUT_DIRS = ("dist", "build", "out")


@dataclass
class ExecutionResult:
    """Result of a successful project build.

    Attributes:
        manager: Package manager used.
        strategy: 'native' or 'container'.
        steps: Executed steps in order.
        repaired: Whether the one-shot repair ran.
        log_path: Path to the build log.
        output_dir: Directory holding index.html, if found.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    manager: PackageManager
    strategy: str
    log_path: Path
    started_at: datetime
    finished_at: datetime
    steps: list[StepResult] = field(default_factory=list)
    repaired: bool = False
    output_dir: Path | None = None


def find_output_dir(project_dir: Path) -> Path | None:
    """Locate the build output directory containing index.html."""
    for name in OUTPUT_DIRS:
        candidate = project_dir / name
        if (candidate / "index.html").is_file():
            return candidate
    return None


def _failed(step: StepResult, log_path: Path) -> BuildExecutionError:
    logger.error("%s step failed with exit code %d. See log: %s", step.name, step.exit_code, log_path)
    return BuildExecutionError(
        f"{step.name} step failed with exit code {step.exit_code}",
        code=BUILD_FAILED,
        exit_code=step.exit_code,
        stderr_tail=step.stderr_tail,
        log_path=log_path,
    )


def choose_strategy(
    mode: ExecutionMode,
    settings: Settings,
    runtime_check: Callable[[str], bool] = container_runtime_available,
) -> ExecutionStrategy:
    """Check the runtime if needed and select the strategy.

    Args:
        mode: Requested mode.
        settings: Application settings.
        runtime_check: Container runtime check, injectable for tests.

    Returns:
        Selected strategy.
    """
    runtime_available = mode == ExecutionMode.CONTAINER and runtime_check(settings.container_runtime)
    strategy = select_strategy(mode, runtime_available, settings)
    if mode == ExecutionMode.CONTAINER and isinstance(strategy, NativeStrategy):
        logger.warning(
            "Container runtime %s unavailable, falling back to native build",
            settings.container_runtime,
        )
    return strategy


def execute(
    project_dir: Path,
    mode: ExecutionMode = ExecutionMode.NATIVE,
    allow_scripts: bool = False,
    timeout: float | None = None,
    settings: Settings | None = None,
    log_path: Path | None = None,
    runtime_check: Callable[[str], bool] = container_runtime_available,
) -> ExecutionResult:
    """Install dependencies and run the build script of a project.

    Args:
        project_dir: Project root containing package.json.
        mode: Native or container execution.
        allow_scripts: Run dependency lifecycle scripts during install. The
            build script always runs.
        timeout: Wall-clock budget for the whole sequence (seconds); uses
            settings.build_timeout if not provided.
        settings: Optional settings instance.
        log_path: Build log path; defaults to project_dir/build.log.
        runtime_check: Container runtime check, injectable for tests.

    Returns:
        ExecutionResult.

    Raises:
        BuildExecutionError: With code build_failed or timeout.
    """
    if settings is None:
        settings = get_settings()
    if timeout is None:
        timeout = settings.build_timeout
    if log_path is None:
        log_path = project_dir / "build.log"

    deadline = time.monotonic() + timeout
    started_at = datetime.now(timezone.utc)

    if not (project_dir / "package.json").is_file():
        message = f"No package.json in {project_dir}"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"# Project: {project_dir}\n# {message}\n")
        raise BuildExecutionError(message, code=BUILD_FAILED, log_path=log_path)

    tooling: Tooling = detect_tooling(project_dir)
    strategy = choose_strategy(mode, settings, runtime_check)
    logger.info(
        "Building %s with %s (%s, scripts %s, timeout %.0fs)",
        project_dir,
        tooling.manager.value,
        strategy.name,
        "allowed" if allow_scripts else "blocked",
        timeout,
    )

    result = ExecutionResult(
        manager=tooling.manager,
        strategy=strategy.name,
        log_path=log_path,
        started_at=started_at,
        finished_at=started_at,
    )

    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("w") as log_file:
        log_file.write(f"# Project: {project_dir}\n")
        log_file.write(f"# Package manager: {tooling.manager.value} ({tooling.detected_from})\n")
        log_file.write(f"# Strategy: {strategy.name}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        def step(name: str, command: list[str], env: dict[str, str]) -> StepResult:
            prepared = strategy.prepare(command, project_dir, env)
            outcome = run_step(name, prepared, project_dir, log_file, deadline, log_path)
            result.steps.append(outcome)
            return outcome

        installed = step("install", tooling.install_argv(allow_scripts), install_env(allow_scripts))
        if not installed.success:
            raise _failed(installed, log_path)

        built = step("build", list(tooling.build_command), {})
        if not built.success:
            repair = plan_repair(project_dir, tooling.manager)
            if isinstance(repair, InstallDevTool):
                logger.warning("Build failed; installing missing %s and retrying once", repair.tool)
                result.repaired = True
                repaired = step("repair", list(repair.command), install_env(allow_scripts))
                if repaired.success:
                    built = step("build-retry", list(tooling.build_command), {})
            if not built.success:
                raise _failed(built, log_path)

    result.finished_at = datetime.now(timezone.utc)
    result.output_dir = find_output_dir(project_dir)
    logger.info(
        "Build of %s succeeded in %.1fs",
        project_dir,
        (result.finished_at - started_at).total_seconds(),
    )
    return result


__all__ = [
    "OUTPUT_DIRS",
    "ExecutionResult",
    "choose_strategy",
    "execute",
    "find_output_dir",
]
