"""Sandboxed project build executor.

This module handles:
- Package manager detection by lockfile precedence
- Native and container execution strategies
- Install and build steps under one wall-clock timeout
- One-shot build tool repair with a single build retry
"""

from bundlepipe.executor.runner import BuildExecutionError, StepResult, run_step
from bundlepipe.executor.service import ExecutionResult, choose_strategy, execute
from bundlepipe.executor.strategy import (
    ContainerStrategy,
    ExecutionStrategy,
    NativeStrategy,
    container_runtime_available,
    select_strategy,
)
from bundlepipe.executor.tooling import (
    InstallDevTool,
    NoRepair,
    RepairAction,
    Tooling,
    detect_package_manager,
    detect_tooling,
    plan_repair,
)

__all__ = [
    # Runner module
    "BuildExecutionError",
    "StepResult",
    "run_step",
    # Strategy module
    "ContainerStrategy",
    "ExecutionStrategy",
    "NativeStrategy",
    "container_runtime_available",
    "select_strategy",
    # Tooling module
    "InstallDevTool",
    "NoRepair",
    "RepairAction",
    "Tooling",
    "detect_package_manager",
    "detect_tooling",
    "plan_repair",
    # Service module
    "ExecutionResult",
    "choose_strategy",
    "execute",
]
