"""Step runner for project builds.

This module handles:
- Spawning one build step in its own process group
- Enforcing the remaining wall-clock budget of the whole build
- Killing the whole process group on timeout
- Writing stdout and stderr of every step to the build log
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING

from bundlepipe.errors import BUILD_FAILED, TIMEOUT

if TYPE_CHECKING:
    from bundlepipe.executor.strategy import PreparedCommand

logger = logging.getLogger(__name__)

# Characters of stderr kept on the error
STDERR_TAIL_CHARS = 4000

CLEANUP_TIMEOUT = 30


class BuildExecutionError(Exception):
    """Raised when a project build fails or times out."""

    def __init__(
        self,
        message: str,
        code: str = BUILD_FAILED,
        exit_code: int | None = None,
        stderr_tail: str = "",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.log_path = log_path
        self.details = {"exit_code": exit_code, "stderr_tail": stderr_tail}


@dataclass
class StepResult:
    """Result of one build step.

    Attributes:
        name: Step name (install, build, repair, build-retry).
        command: The command that was executed.
        exit_code: Process exit code.
        stderr_tail: Last characters of stderr.
        duration: Wall-clock seconds.
    """

    name: str
    command: str
    exit_code: int
    stderr_tail: str
    duration: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def tail(text: str, limit: int = STDERR_TAIL_CHARS) -> str:
    """Return the last ``limit`` characters of text."""
    return text[-limit:] if len(text) > limit else text


def kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    """Force-kill the process group led by proc."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _run_cleanup(argv: list[str]) -> None:
    try:
        subprocess.run(argv, capture_output=True, timeout=CLEANUP_TIMEOUT, check=False)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Cleanup command %s failed: %s", shlex.join(argv), e)


def run_step(
    name: str,
    prepared: PreparedCommand,
    cwd: Path,
    log_file: IO[str],
    deadline: float,
    log_path: Path | None = None,
) -> StepResult:
    """Run one build step within the build deadline.

    Args:
        name: Step name for logs.
        prepared: Command from the execution strategy.
        cwd: Working directory.
        log_file: Open build log; stdout is streamed into it.
        deadline: time.monotonic() value the whole build must finish by.
        log_path: Build log path, attached to errors.

    Returns:
        StepResult; a non-zero exit is returned, not raised.

    Raises:
        BuildExecutionError: On spawn failure (build_failed) or when the
            deadline passes (timeout).
    """
    cmd_str = shlex.join(prepared.argv)
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise BuildExecutionError(
            f"Build timed out before step {name}",
            code=TIMEOUT,
            log_path=log_path,
        )

    logger.info("Running %s step: %s", name, cmd_str)
    log_file.write(f"# Step: {name}\n# Command: {cmd_str}\n")
    log_file.write(f"# Started: {datetime.now(timezone.utc).isoformat()}\n\n")
    log_file.flush()

    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            prepared.argv,
            cwd=cwd,
            env=prepared.env,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        message = f"Failed to start {name} step: {e}"
        log_file.write(f"\n# {message}\n")
        raise BuildExecutionError(message, code=BUILD_FAILED, log_path=log_path) from e

    try:
        _, stderr = proc.communicate(timeout=remaining)
    except subprocess.TimeoutExpired as e:
        kill_process_group(proc)
        _, stderr = proc.communicate()
        if prepared.cleanup_argv:
            _run_cleanup(prepared.cleanup_argv)
        stderr_text = stderr.decode("utf-8", errors="replace")
        log_file.write(stderr_text)
        log_file.write(f"\n# TIMEOUT during {name} step\n")
        log_file.flush()
        logger.error("Build timed out during %s step. See log: %s", name, log_path)
        raise BuildExecutionError(
            f"Build timed out during {name} step",
            code=TIMEOUT,
            stderr_tail=tail(stderr_text),
            log_path=log_path,
        ) from e

    stderr_text = stderr.decode("utf-8", errors="replace")
    duration = time.monotonic() - started
    log_file.write(stderr_text)
    log_file.write(f"\n# Exit code: {proc.returncode}\n# Duration: {duration:.1f}s\n\n")
    log_file.flush()

    if proc.returncode != 0:
        logger.warning("%s step exited with code %d", name, proc.returncode)

    return StepResult(
        name=name,
        command=cmd_str,
        exit_code=proc.returncode,
        stderr_tail=tail(stderr_text),
        duration=duration,
    )


__all__ = [
    "BuildExecutionError",
    "StepResult",
    "kill_process_group",
    "run_step",
    "tail",
]
