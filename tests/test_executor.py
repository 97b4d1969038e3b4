"""Tests for the project build executor.

Package managers are replaced with small shell scripts on PATH so the
real install/build sequence runs without network access.
"""

import json
import os
import stat
import time
from pathlib import Path

import pytest

from bundlepipe.config import Settings
from bundlepipe.executor.runner import BuildExecutionError, run_step
from bundlepipe.executor.service import choose_strategy, execute, find_output_dir
from bundlepipe.executor.strategy import (
    ContainerStrategy,
    NativeStrategy,
    PreparedCommand,
    select_strategy,
)
from bundlepipe.executor.tooling import (
    InstallDevTool,
    NoRepair,
    detect_package_manager,
    detect_tooling,
    install_env,
    plan_repair,
)
from bundlepipe.types import ExecutionMode, PackageManager

FAKE_NPM = """#!/bin/sh
echo "npm $*"
case "$1" in
  install)
    if [ "$2" = "-D" ]; then mkdir -p node_modules/.bin && touch "node_modules/.bin/$3"; fi
    if [ -n "$SLOW_INSTALL" ]; then sleep 10; fi
    ;;
  run)
    if [ -n "$REQUIRE_VITE" ] && [ ! -e node_modules/.bin/vite ]; then
      echo "vite: not found" >&2
      exit 127
    fi
    mkdir -p dist && echo "<!doctype html>" > dist/index.html
    ;;
esac
"""


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with artifacts under tmp_path."""
    return Settings(artifacts_dir=tmp_path / "builds", cache_dir=tmp_path / "cache")


@pytest.fixture
def fake_npm(tmp_path, monkeypatch) -> Path:
    """Put a fake npm executable first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    npm = bin_dir / "npm"
    npm.write_text(FAKE_NPM)
    npm.chmod(npm.stat().st_mode | stat.S_IEXEC)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return npm


def make_project(root: Path, package_json: dict | None = None, files: tuple[str, ...] = ()) -> Path:
    """Create a project directory with package.json and marker files."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "package.json").write_text(json.dumps(package_json or {"name": "app"}))
    for name in files:
        (root / name).write_text("")
    return root


def process_running(status: Path) -> bool:
    """True while /proc shows the process alive and not a zombie."""
    try:
        text = status.read_text()
    except FileNotFoundError:
        return False
    state = next((line for line in text.splitlines() if line.startswith("State:")), "")
    letter = state.partition(":")[2].strip()[:1]
    return letter not in ("Z", "X")


class TestDetectPackageManager:
    """Tests for package manager detection."""

    @pytest.mark.parametrize(
        ("lockfile", "expected"),
        [
            ("pnpm-lock.yaml", PackageManager.PNPM),
            ("package-lock.json", PackageManager.NPM),
            ("yarn.lock", PackageManager.YARN),
        ],
    )
    def test_lockfile(self, tmp_path, lockfile, expected):
        """Should detect the manager from its lockfile."""
        project = make_project(tmp_path / "app", files=(lockfile,))
        assert detect_package_manager(project) == (expected, lockfile)

    def test_lockfile_precedence(self, tmp_path):
        """pnpm beats npm beats yarn when several lockfiles exist."""
        project = make_project(
            tmp_path / "app", files=("yarn.lock", "package-lock.json", "pnpm-lock.yaml")
        )
        assert detect_package_manager(project)[0] == PackageManager.PNPM

    def test_package_manager_field(self, tmp_path):
        """Should fall back to the packageManager field."""
        project = make_project(tmp_path / "app", {"packageManager": "yarn@4.1.0"})
        assert detect_package_manager(project) == (PackageManager.YARN, "packageManager")

    def test_default_npm(self, tmp_path):
        """Should default to npm."""
        project = make_project(tmp_path / "app")
        assert detect_package_manager(project) == (PackageManager.NPM, "default")

    def test_malformed_package_json(self, tmp_path):
        """A broken package.json is ignored for detection."""
        project = tmp_path / "app"
        project.mkdir()
        (project / "package.json").write_text("{not json")
        assert detect_package_manager(project)[0] == PackageManager.NPM


class TestDetectTooling:
    """Tests for install and build command selection."""

    def test_yarn_lockfile(self, tmp_path):
        """yarn.lock selects a frozen yarn install."""
        project = make_project(tmp_path / "app", files=("yarn.lock",))
        tooling = detect_tooling(project)

        assert tooling.manager == PackageManager.YARN
        assert tooling.install_command == ("yarn", "install", "--frozen-lockfile")
        assert tooling.build_command == ("yarn", "build")

    def test_npm_lockfile_uses_ci(self, tmp_path):
        """package-lock.json selects npm ci."""
        project = make_project(tmp_path / "app", files=("package-lock.json",))
        tooling = detect_tooling(project)
        assert tooling.install_command == ("npm", "ci")
        assert tooling.build_command == ("npm", "run", "build")

    def test_no_lockfile_plain_install(self, tmp_path):
        """Without a lockfile the install is not frozen."""
        project = make_project(tmp_path / "app", {"packageManager": "pnpm@9.0.0"})
        tooling = detect_tooling(project)
        assert tooling.has_lockfile is False
        assert tooling.install_command == ("pnpm", "install")

    def test_scripts_blocked_by_default(self, tmp_path):
        """Lifecycle scripts are disabled unless allowed."""
        tooling = detect_tooling(make_project(tmp_path / "app", files=("package-lock.json",)))
        assert tooling.install_argv(allow_scripts=False) == ["npm", "ci", "--ignore-scripts"]
        assert tooling.install_argv(allow_scripts=True) == ["npm", "ci"]

    def test_install_env(self):
        """Dev dependencies are always installed; the script guard is optional."""
        assert install_env(True)["NODE_ENV"] == "development"
        assert "npm_config_ignore_scripts" not in install_env(True)
        assert install_env(False)["npm_config_ignore_scripts"] == "true"


class TestPlanRepair:
    """Tests for the one-shot repair plan."""

    def test_missing_vite(self, tmp_path):
        """A vite project without the vite binary gets a dev install."""
        project = make_project(tmp_path / "app", {"scripts": {"build": "vite build"}})
        action = plan_repair(project, PackageManager.NPM)
        assert action == InstallDevTool(tool="vite", command=("npm", "install", "-D", "vite"))

    def test_vite_config_file(self, tmp_path):
        """A vite config file marks a vite project."""
        project = make_project(tmp_path / "app", files=("vite.config.ts",))
        action = plan_repair(project, PackageManager.PNPM)
        assert action == InstallDevTool(tool="vite", command=("pnpm", "add", "-D", "vite"))

    def test_vite_present(self, tmp_path):
        """No repair when the binary is already installed."""
        project = make_project(tmp_path / "app", {"scripts": {"build": "vite build"}})
        (project / "node_modules" / ".bin").mkdir(parents=True)
        (project / "node_modules" / ".bin" / "vite").write_text("")
        assert isinstance(plan_repair(project, PackageManager.NPM), NoRepair)

    def test_not_vite(self, tmp_path):
        """Other build failures are not repaired."""
        project = make_project(tmp_path / "app", {"scripts": {"build": "webpack"}})
        assert isinstance(plan_repair(project, PackageManager.NPM), NoRepair)


class TestStrategy:
    """Tests for execution strategy selection."""

    def test_native_requested(self, settings):
        """Native mode never uses a container."""
        assert isinstance(select_strategy(ExecutionMode.NATIVE, True, settings), NativeStrategy)

    def test_container_available(self, settings):
        """Container mode with a runtime uses the container strategy."""
        strategy = select_strategy(ExecutionMode.CONTAINER, True, settings)
        assert isinstance(strategy, ContainerStrategy)
        assert strategy.runtime == settings.container_runtime

    def test_container_unavailable_falls_back(self, settings):
        """A failed runtime check falls back to native."""
        strategy = choose_strategy(ExecutionMode.CONTAINER, settings, runtime_check=lambda runtime: False)
        assert isinstance(strategy, NativeStrategy)

    def test_runtime_check_skipped_for_native(self, settings):
        """The runtime is not checked in native mode."""
        calls = []
        choose_strategy(ExecutionMode.NATIVE, settings, runtime_check=calls.append)
        assert calls == []

    def test_container_command(self, tmp_path):
        """The container is capped, capability-dropped and read-only."""
        strategy = ContainerStrategy(runtime="docker", image="node:20", memory="1g", cpus="1")
        prepared = strategy.prepare(["npm", "ci"], tmp_path, {"NODE_ENV": "development"})

        assert prepared.argv[:3] == ["docker", "run", "--rm"]
        assert "--memory=1g" in prepared.argv
        assert "--cpus=1" in prepared.argv
        assert "--cap-drop=ALL" in prepared.argv
        assert "--read-only" in prepared.argv
        assert "NODE_ENV=development" in prepared.argv
        assert f"{tmp_path.resolve()}:/workspace" in prepared.argv
        assert prepared.argv[-3:] == ["node:20", "npm", "ci"]
        assert prepared.cleanup_argv[:2] == ["docker", "kill"]

    def test_native_strips_script_guard(self, tmp_path, monkeypatch):
        """An inherited script guard does not leak into native builds."""
        monkeypatch.setenv("npm_config_ignore_scripts", "true")
        prepared = NativeStrategy().prepare(["npm", "run", "build"], tmp_path, {})
        assert "npm_config_ignore_scripts" not in prepared.env


class TestRunStep:
    """Tests for run_step."""

    def test_success(self, tmp_path):
        """Output goes to the log and the exit code is returned."""
        log_path = tmp_path / "build.log"
        with log_path.open("w") as log_file:
            result = run_step(
                "build",
                PreparedCommand(argv=["sh", "-c", "echo hello; echo oops >&2; exit 3"], env=None),
                tmp_path,
                log_file,
                deadline=time.monotonic() + 30,
            )

        assert result.exit_code == 3
        assert result.success is False
        assert "oops" in result.stderr_tail
        assert "hello" in log_path.read_text()

    def test_timeout_kills_process(self, tmp_path):
        """A step running past the deadline is killed with its children."""
        pid_file = tmp_path / "child.pid"
        script = f'sleep 10 & echo $! > "{pid_file}"; wait'
        started = time.monotonic()
        with (tmp_path / "build.log").open("w") as log_file, pytest.raises(
            BuildExecutionError
        ) as exc_info:
            run_step(
                "build",
                PreparedCommand(argv=["sh", "-c", script], env=None),
                tmp_path,
                log_file,
                deadline=time.monotonic() + 0.5,
            )

        assert exc_info.value.code == "timeout"
        assert time.monotonic() - started < 5
        status = Path("/proc") / pid_file.read_text().strip() / "status"
        for _ in range(50):
            if not process_running(status):
                break
            time.sleep(0.05)
        assert not process_running(status)

    def test_deadline_already_passed(self, tmp_path):
        """No process is spawned once the budget is spent."""
        with (tmp_path / "build.log").open("w") as log_file, pytest.raises(
            BuildExecutionError
        ) as exc_info:
            run_step(
                "build",
                PreparedCommand(argv=["true"], env=None),
                tmp_path,
                log_file,
                deadline=time.monotonic() - 1,
            )
        assert exc_info.value.code == "timeout"

    def test_spawn_failure(self, tmp_path):
        """A missing executable is a build failure."""
        with (tmp_path / "build.log").open("w") as log_file, pytest.raises(
            BuildExecutionError
        ) as exc_info:
            run_step(
                "install",
                PreparedCommand(argv=["definitely-not-a-real-binary"], env=None),
                tmp_path,
                log_file,
                deadline=time.monotonic() + 30,
            )
        assert exc_info.value.code == "build_failed"


class TestExecute:
    """Tests for the full install/build sequence."""

    def test_build_succeeds(self, tmp_path, settings, fake_npm):
        """Install then build; the output directory is found."""
        project = make_project(tmp_path / "app", files=("package-lock.json",))
        result = execute(project, settings=settings, timeout=30)

        assert [s.name for s in result.steps] == ["install", "build"]
        assert result.steps[0].command == "npm ci --ignore-scripts"
        assert result.manager == PackageManager.NPM
        assert result.strategy == "native"
        assert result.output_dir == project / "dist"
        assert "npm run build" in result.log_path.read_text()

    def test_missing_package_json(self, tmp_path, settings):
        """A directory without package.json fails and says so in the build log."""
        (tmp_path / "empty").mkdir()
        with pytest.raises(BuildExecutionError) as exc_info:
            execute(tmp_path / "empty", settings=settings)
        assert exc_info.value.code == "build_failed"
        log_path = tmp_path / "empty" / "build.log"
        assert exc_info.value.log_path == log_path
        assert "No package.json" in log_path.read_text()

    def test_repair_then_retry(self, tmp_path, settings, fake_npm, monkeypatch):
        """A missing vite is installed and the build retried once."""
        monkeypatch.setenv("REQUIRE_VITE", "1")
        project = make_project(tmp_path / "app", {"scripts": {"build": "vite build"}})
        result = execute(project, settings=settings, timeout=30)

        assert [s.name for s in result.steps] == ["install", "build", "repair", "build-retry"]
        assert result.repaired is True
        assert result.output_dir == project / "dist"

    def test_unrepairable_failure(self, tmp_path, settings, fake_npm, monkeypatch):
        """A failure with no repair surfaces the exit code and stderr."""
        monkeypatch.setenv("REQUIRE_VITE", "1")
        project = make_project(tmp_path / "app", {"scripts": {"build": "webpack"}})
        with pytest.raises(BuildExecutionError) as exc_info:
            execute(project, settings=settings, timeout=30)

        assert exc_info.value.code == "build_failed"
        assert exc_info.value.exit_code == 127
        assert "vite: not found" in exc_info.value.stderr_tail

    def test_timeout_covers_install(self, tmp_path, settings, fake_npm, monkeypatch):
        """The wall-clock budget applies to the whole sequence."""
        monkeypatch.setenv("SLOW_INSTALL", "1")
        project = make_project(tmp_path / "app")
        started = time.monotonic()
        with pytest.raises(BuildExecutionError) as exc_info:
            execute(project, settings=settings, timeout=0.5)

        assert exc_info.value.code == "timeout"
        assert time.monotonic() - started < 5


class TestFindOutputDir:
    """Tests for find_output_dir."""

    def test_prefers_dist(self, tmp_path):
        """dist wins over build when both hold an entry document."""
        for name in ("build", "dist"):
            (tmp_path / name).mkdir()
            (tmp_path / name / "index.html").write_text("")
        assert find_output_dir(tmp_path) == tmp_path / "dist"

    def test_none(self, tmp_path):
        """No entry document means no output directory."""
        (tmp_path / "dist").mkdir()
        assert find_output_dir(tmp_path) is None
