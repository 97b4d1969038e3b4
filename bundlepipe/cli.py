"""Thin CLI wrapper for bundlepipe.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from bundlepipe import __version__
from bundlepipe.config import get_settings, print_settings_json
from bundlepipe.errors import error_info

app = typer.Typer(
    name="bundlepipe",
    help="Bundle Pipeline - build, check and serve untrusted mini-app sources",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"bundlepipe version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(exc: Exception, json_output: bool = False) -> None:
    info = error_info(exc)
    if json_output:
        console.print(json.dumps(info.to_dict(), indent=2), soft_wrap=True)
    else:
        console.print(f"[red]Error ({info.code}): {info.message}[/red]")
        if info.log_path:
            console.print(f"  Log: {info.log_path}")
    raise typer.Exit(code=1) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Bundle Pipeline - build, check and serve untrusted mini-app sources."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Import resolution:[/bold]")
    console.print(f"  CDN base:            {settings.cdn_base}")
    console.print(f"  Allow any package:   {settings.allow_any_npm}")
    console.print(f"  Allow list:          {', '.join(settings.cdn_allow) or '(none)'}")
    console.print(f"  Pins:                {len(settings.cdn_pin)}")
    console.print()
    console.print("[bold]Builds:[/bold]")
    console.print(f"  Build mode:          {settings.build_mode}")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Lifecycle scripts:   {settings.allow_scripts}")
    console.print(f"  Worker enabled:      {settings.worker_enabled}")
    console.print(f"  Queue URL:           {settings.queue_url or '(disabled)'}")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print(f"  Publish approval:    {settings.require_publish_approval}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Archive TTL (days):  {settings.archive_ttl_days}")


@app.command()
def resolve(
    specifier: Annotated[str, typer.Argument(help="Module specifier, e.g. react@18")],
    plan_only: Annotated[
        bool,
        typer.Option("--plan", help="Only check policy and print the URL; no fetch"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve a module specifier under the configured import policy."""
    from bundlepipe.resolver.fetch import FetchError
    from bundlepipe.resolver.service import ImportResolver
    from bundlepipe.resolver.specifier import ResolutionError
    from bundlepipe.types import ImportPolicy

    settings = get_settings()
    policy = ImportPolicy.from_settings(settings)
    with ImportResolver(settings) as resolver:
        try:
            if plan_only:
                url = resolver.plan(specifier, policy)
                data = {"specifier": specifier, "resolvedUrl": url}
            else:
                resolved = resolver.resolve(specifier, policy)
                data = {
                    "specifier": resolved.specifier,
                    "resolvedUrl": resolved.resolved_url,
                    "contentHash": resolved.content_hash,
                    "cachedPath": resolved.cached_path,
                }
        except (ResolutionError, FetchError) as e:
            _fail(e, json_output)
            return

    if json_output:
        console.print(json.dumps(data, indent=2), soft_wrap=True)
    else:
        console.print(f"[green]{specifier}[/green] -> {data['resolvedUrl']}")
        if "contentHash" in data:
            console.print(f"  SHA-256: {data['contentHash']}")
            console.print(f"  Cached:  {data['cachedPath']}")


@app.command()
def bundle(
    entry: Annotated[Path, typer.Argument(help="Entry source file")],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the bundle here instead of stdout"),
    ] = None,
    no_transpile: Annotated[
        bool,
        typer.Option("--no-transpile", help="Skip the JSX/TypeScript transpile step"),
    ] = False,
) -> None:
    """Bundle a source file (and its relative imports) into one module."""
    from bundlepipe.bundler.scan import UnresolvedImportsError
    from bundlepipe.bundler.service import BundleOptions, InlineBundler
    from bundlepipe.bundler.transpile import BundleError
    from bundlepipe.resolver.fetch import FetchError
    from bundlepipe.resolver.service import ImportResolver
    from bundlepipe.resolver.specifier import ResolutionError
    from bundlepipe.types import ImportPolicy

    if not entry.is_file():
        console.print(f"[red]File not found: {entry}[/red]")
        raise typer.Exit(code=1)

    settings = get_settings()
    root = entry.parent
    files = {
        path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
        and path.suffix in (".js", ".mjs", ".jsx", ".ts", ".mts", ".tsx")
        and "node_modules" not in path.relative_to(root).parts
    }
    options = BundleOptions(
        entry=entry.name,
        files=files,
        policy=ImportPolicy.from_settings(settings),
        transpile=False if no_transpile else None,
    )

    with ImportResolver(settings) as resolver:
        try:
            text = InlineBundler(resolver, settings).bundle(
                entry.read_text(encoding="utf-8"), options
            )
        except (ResolutionError, FetchError, BundleError, UnresolvedImportsError) as e:
            _fail(e)
            return

    if output is None:
        typer.echo(text, nl=False)
    else:
        output.write_text(text, encoding="utf-8")
        err_console.print(f"[green]Wrote {len(text)} bytes to {output}[/green]")


@app.command()
def execute(
    project_dir: Annotated[Path, typer.Argument(help="Project directory with package.json")],
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="Execution mode: native or container"),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", "-t", help="Wall-clock timeout for install+build (seconds)"),
    ] = None,
    allow_scripts: Annotated[
        bool,
        typer.Option("--allow-scripts", help="Run dependency lifecycle scripts"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Install and build a project in the sandboxed executor."""
    from bundlepipe.executor.runner import BuildExecutionError
    from bundlepipe.executor.service import execute as run_execute
    from bundlepipe.types import ExecutionMode

    settings = get_settings()
    try:
        exec_mode = ExecutionMode(mode or settings.build_mode)
    except ValueError:
        console.print(f"[red]Invalid mode: {mode}[/red]")
        raise typer.Exit(code=1) from None

    try:
        result = run_execute(
            project_dir,
            mode=exec_mode,
            allow_scripts=allow_scripts or settings.allow_scripts,
            timeout=timeout,
            settings=settings,
        )
    except (BuildExecutionError, FileNotFoundError) as e:
        _fail(e, json_output)
        return

    if json_output:
        data = {
            "manager": result.manager.value,
            "strategy": result.strategy,
            "repaired": result.repaired,
            "logPath": str(result.log_path),
            "outputDir": str(result.output_dir) if result.output_dir else None,
            "steps": [
                {"name": s.name, "exitCode": s.exit_code, "duration": round(s.duration, 3)}
                for s in result.steps
            ],
        }
        console.print(json.dumps(data, indent=2), soft_wrap=True)
        return

    console.print(f"[green]Build succeeded[/green] ({result.manager.value}, {result.strategy})")
    for step in result.steps:
        console.print(f"  {step.name}: exit {step.exit_code} in {step.duration:.1f}s")
    if result.repaired:
        console.print("  [yellow]Repaired missing dev tool and retried[/yellow]")
    console.print(f"  Output: {result.output_dir or '(no index.html found)'}")
    console.print(f"  Log:    {result.log_path}")


@app.command()
def headers(
    build_id: Annotated[str, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the security headers served with a build."""
    from bundlepipe.builds.artifacts import InvalidBuildIdError
    from bundlepipe.policy.headers import derive_headers

    try:
        derived = derive_headers(build_id, get_settings())
    except InvalidBuildIdError as e:
        _fail(e, json_output)
        return

    if json_output:
        console.print(json.dumps(derived.to_dict(), indent=2), soft_wrap=True)
        return
    for name, value in derived.to_headers().items():
        console.print(f"[bold]{name}:[/bold] {value}", soft_wrap=True)


jobs_app = typer.Typer(help="Inspect build jobs")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    state: Annotated[
        str | None,
        typer.Option("--state", "-s", help="Filter by state"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of jobs to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build jobs, newest first."""
    from bundlepipe.builds.service import list_jobs
    from bundlepipe.db import create_all_tables, get_engine, get_session_factory
    from bundlepipe.types import BuildState

    state_filter: BuildState | None = None
    if state:
        try:
            state_filter = BuildState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        jobs = list_jobs(session, state=state_filter, limit=limit)
        if json_output:
            data = [
                {
                    "buildId": j.id,
                    "state": j.state,
                    "progress": j.progress,
                    "kind": j.kind,
                    "listingId": j.listing_id,
                    "errorCode": j.error_code,
                }
                for j in jobs
            ]
            console.print(json.dumps(data, indent=2), soft_wrap=True)
            return

        if not jobs:
            console.print("No build jobs found.")
            return
        console.print(f"[bold]Build jobs ({len(jobs)}):[/bold]")
        for j in jobs:
            color = {"failed": "red", "published": "green", "rejected": "yellow"}.get(j.state, "blue")
            console.print(f"  [{color}]{j.id}[/{color}] {j.state} {j.progress}% ({j.kind})")
            if j.error:
                console.print(f"    Error: {j.error}")


@jobs_app.command("show")
def jobs_show(
    build_id: Annotated[str, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the status of one build job."""
    from bundlepipe.builds.artifacts import InvalidBuildIdError
    from bundlepipe.builds.service import BuildNotFoundError, get_status
    from bundlepipe.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            report = get_status(session, build_id, settings=settings)
        except (BuildNotFoundError, InvalidBuildIdError) as e:
            _fail(e, json_output)
            return
        session.commit()

    if json_output:
        console.print(json.dumps(report.to_dict(), indent=2), soft_wrap=True)
        return

    console.print(f"[bold]Build {report.build_id}[/bold]")
    console.print(f"  State:    {report.state.value}")
    console.print(f"  Progress: {report.progress}%")
    if report.listing_id is not None:
        console.print(f"  Listing:  {report.listing_id}")
    if report.error:
        console.print(f"  [red]Error ({report.error_code}): {report.error}[/red]")
    if report.artifacts is not None:
        console.print(f"  Files:    {', '.join(sorted(report.artifacts.files)) or '(none)'}")
    if report.condition:
        console.print(f"  [yellow]{report.condition}: {', '.join(report.missing)}[/yellow]")


@app.command()
def worker() -> None:
    """Run the build worker pool in the foreground."""
    from bundlepipe.builds.queue import OrchestratorContext
    from bundlepipe.builds.worker import WorkerPool
    from bundlepipe.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    context = OrchestratorContext.create(settings, get_session_factory(engine))
    if not context.queue_enabled:
        context.close()
        console.print(
            "[red]Build queue is disabled; set BUNDLEPIPE_WORKER_ENABLED and "
            "BUNDLEPIPE_QUEUE_URL[/red]"
        )
        raise typer.Exit(code=1)

    pool = WorkerPool(context)
    pool.start()
    console.print(f"[green]Worker pool running ({pool.size} thread(s)); Ctrl+C to stop[/green]")
    try:
        pool.wait()
    except KeyboardInterrupt:
        console.print("Stopping...")
    finally:
        pool.stop()
        context.close()


if __name__ == "__main__":
    app()
