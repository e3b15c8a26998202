"""Thin CLI wrapper for kata_static.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes of ``run`` and ``merge``: 0 when the merged tarball was
produced, 1 on failure, 3 when some assets built but the merge was not
attempted.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from kata_static import __version__
from kata_static.config import Settings, get_settings, print_settings_json
from kata_static.errors import KataStaticError
from kata_static.types import PipelineStatus, Stage

app = typer.Typer(
    name="kata-static",
    help="Kata static tarball builder - build assets and merge kata-static.tar.xz",
    no_args_is_help=True,
)
console = Console()

EXIT_PARTIAL = 3

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "partial": "yellow",
    "running": "blue",
    "pending": "white",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kata-static version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), rich_tracebacks=True)
        ],
        force=True,
    )


def _echo_json(data: Any) -> None:
    text = data if isinstance(data, str) else json.dumps(data, indent=2)
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def _fail(e: KataStaticError) -> typer.Exit:
    console.print(f"[red]Error ({e.code}):[/red] {e}", soft_wrap=True)
    return typer.Exit(code=1)


def _parse_stage(value: str | None) -> Stage | None:
    if value is None:
        return None
    try:
        return Stage(value)
    except ValueError:
        console.print(f"[red]Invalid stage: {value}[/red]")
        console.print("Valid values: test, release")
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
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Kata static tarball builder - build assets and merge kata-static.tar.xz."""
    configure_logging((log_level or get_settings().log_level).upper())


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
        _echo_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Source directory:    {settings.source_dir}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Version manifest:    {settings.resolve_versions_file()}")
    console.print(f"  Asset catalog:       {settings.catalog_path or '(built-in)'}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Architecture:        {settings.arch}")
    console.print(f"  Build command:       {settings.build_command}")
    console.print(f"  Rebase command:      {settings.rebase_command}")
    max_builds = settings.max_concurrent_builds or "(one per asset)"
    console.print(f"  Max builds:          {max_builds}")
    console.print(f"  Source date epoch:   {settings.source_date_epoch}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Artifacts:[/bold]")
    console.print(f"  Store:               {settings.store_url or settings.store_dir}")
    console.print(f"  Retention (days):    {settings.retention_days}")
    console.print(f"  Registry:            {settings.registry}")
    credentials = "configured" if settings.registry_username else "not configured"
    console.print(f"  Registry credentials: {credentials}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Sync timeout:        {settings.sync_timeout}")


assets_app = typer.Typer(help="Inspect the asset catalog")
app.add_typer(assets_app, name="assets")


@assets_app.command("list")
def assets_list(
    stage: Annotated[
        str | None,
        typer.Option("--stage", "-s", help="Only assets built in this stage"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List buildable assets."""
    from kata_static.assets.io import get_catalog
    from kata_static.pipeline.collector import retention_predicate

    stage_filter = _parse_stage(stage)
    try:
        catalog = get_catalog()
    except KataStaticError as e:
        raise _fail(e) from None

    assets = catalog.list_assets(stage_filter) if stage_filter else list(catalog)

    if json_output:
        output = [
            {
                "name": a.name,
                "kind": a.kind.value,
                "make_target": a.make_target,
                "excluded_stages": sorted(s.value for s in a.excluded_stages),
                "embedded_in_release": a.embedded_in_release,
                "retained": retention_predicate(a.name, stage_filter, catalog)
                if stage_filter
                else None,
            }
            for a in assets
        ]
        _echo_json(output)
        return

    table = Table(title=f"{len(assets)} asset(s)")
    table.add_column("Name", style="green")
    table.add_column("Kind")
    table.add_column("Make target")
    table.add_column("Excluded in")
    table.add_column("Embedded in release")
    for a in assets:
        table.add_row(
            a.name,
            a.kind.value,
            a.make_target,
            ", ".join(sorted(s.value for s in a.excluded_stages)) or "-",
            "yes" if a.embedded_in_release else "no",
        )
    console.print(table)


def _print_result(result: Any) -> None:
    color = STATUS_COLORS.get(result.status.value, "white")
    console.print(
        f"[bold]Run #{result.run_id}[/bold] ({result.kind}, stage={result.stage.value}): "
        f"[{color}]{result.status.value}[/{color}]"
    )
    for t in result.tasks:
        if t.status.value == "succeeded":
            kept = "" if t.retained else " (embedded)"
            console.print(f"  [green]✓ {t.asset}{kept}[/green]")
        else:
            console.print(f"  [red]✗ {t.asset}[/red]")
            if t.error_message:
                console.print(f"      Error: {t.error_message}", soft_wrap=True)
            if t.log_path:
                console.print(f"      Log: {t.log_path}", soft_wrap=True)
    if result.tarball_path:
        console.print(f"  Tarball: {result.tarball_path}", soft_wrap=True)
        console.print(f"  SHA256:  {result.tarball_sha256}")
        console.print(f"  Assets:  {len(result.contained_assets)}")
    elif result.error_message:
        console.print(f"  [red]{result.error_message}[/red]", soft_wrap=True)


def _exit_for(status: PipelineStatus) -> None:
    if status is PipelineStatus.PARTIAL:
        raise typer.Exit(code=EXIT_PARTIAL)
    if status is not PipelineStatus.SUCCEEDED:
        raise typer.Exit(code=1)


def _apply_overrides(
    settings: Settings,
    source_dir: Path | None,
    output_dir: Path | None,
    max_workers: int | None,
) -> Settings:
    overrides: dict[str, Any] = {}
    if source_dir is not None:
        overrides["source_dir"] = source_dir
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if max_workers is not None:
        overrides["max_concurrent_builds"] = max_workers
    return settings.model_copy(update=overrides) if overrides else settings


@app.command()
def run(
    stage: Annotated[
        str,
        typer.Option("--stage", "-s", help="Build mode: test or release"),
    ] = "test",
    tarball_suffix: Annotated[
        str,
        typer.Option("--tarball-suffix", help="Suffix appended to stored artifact names"),
    ] = "",
    push_to_registry: Annotated[
        str,
        typer.Option("--push-to-registry", help="Let build steps push (yes/no)"),
    ] = "no",
    commit_ref: Annotated[
        str,
        typer.Option("--commit", help="Commit to build (default: HEAD)"),
    ] = "",
    target_branch: Annotated[
        str,
        typer.Option("--target-branch", help="Rebase atop this branch first"),
    ] = "",
    versions_file: Annotated[
        Path | None,
        typer.Option("--versions-file", help="Version manifest to embed"),
    ] = None,
    source_dir: Annotated[
        Path | None,
        typer.Option("--source-dir", help="Kata Containers source tree"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Directory for kata-static.tar.xz"),
    ] = None,
    max_workers: Annotated[
        int | None,
        typer.Option("--max-workers", "-j", min=1, help="Concurrent build cap"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build every asset of the stage and merge the kata-static tarball."""
    from kata_static.db import create_all_tables, get_engine, get_session_factory
    from kata_static.pipeline.service import run_pipeline
    from kata_static.pipeline.stage import RunInputs

    settings = _apply_overrides(get_settings(), source_dir, output_dir, max_workers)
    inputs = RunInputs(
        stage=stage,
        tarball_suffix=tarball_suffix,
        push_to_registry=push_to_registry,
        commit_ref=commit_ref,
        target_branch=target_branch,
    )

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        if not json_output:
            console.print("[blue]Starting pipeline run...[/blue]")
        try:
            result = run_pipeline(
                session, inputs, settings=settings, manifest_path=versions_file
            )
        except KataStaticError as e:
            raise _fail(e) from None
        except KeyboardInterrupt:
            # Keep the cancelled run in the ledger
            session.commit()
            raise
        session.commit()

        if json_output:
            _echo_json(result.model_dump_json(indent=2))
        else:
            _print_result(result)
        _exit_for(result.status)


@app.command()
def merge(
    stage: Annotated[
        str,
        typer.Option("--stage", "-s", help="Stage the artifacts were built for"),
    ] = "test",
    tarball_suffix: Annotated[
        str,
        typer.Option("--tarball-suffix", help="Suffix of the stored artifact names"),
    ] = "",
    versions_file: Annotated[
        Path | None,
        typer.Option("--versions-file", help="Version manifest to embed"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Directory for kata-static.tar.xz"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Merge stored per-asset artifacts into the kata-static tarball."""
    from kata_static.db import create_all_tables, get_engine, get_session_factory
    from kata_static.pipeline.service import merge_from_store
    from kata_static.pipeline.stage import RunInputs

    settings = _apply_overrides(get_settings(), None, output_dir, None)
    inputs = RunInputs(stage=stage, tarball_suffix=tarball_suffix)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            result = merge_from_store(
                session, inputs, settings=settings, manifest_path=versions_file
            )
        except KataStaticError as e:
            raise _fail(e) from None
        session.commit()

        if json_output:
            _echo_json(result.model_dump_json(indent=2))
        else:
            _print_result(result)
        _exit_for(result.status)


runs_app = typer.Typer(help="Inspect the run ledger")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    stage: Annotated[
        str | None,
        typer.Option("--stage", "-s", help="Filter by stage"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", help="Filter by status (running/succeeded/partial/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List pipeline runs."""
    from kata_static.db import create_all_tables, get_engine, get_session_factory
    from kata_static.pipeline.service import list_runs

    stage_filter = _parse_stage(stage)
    status_filter: PipelineStatus | None = None
    if status:
        try:
            status_filter = PipelineStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: running, succeeded, partial, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        runs = list_runs(session, stage=stage_filter, status=status_filter, limit=limit)

        if not runs:
            if json_output:
                _echo_json([])
            else:
                console.print("[yellow]No runs found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": r.id,
                    "kind": r.kind,
                    "stage": r.stage,
                    "arch": r.arch,
                    "commit_ref": r.commit_ref,
                    "status": r.status,
                    "requested_at": r.requested_at.isoformat()
                    if r.requested_at
                    else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "tarball_path": r.tarball_path,
                    "error_type": r.error_type,
                    "error_message": r.error_message,
                    "task_count": len(r.tasks),
                }
                for r in runs
            ]
            _echo_json(output)
        else:
            console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
            console.print()
            for r in runs:
                color = STATUS_COLORS.get(r.status, "white")
                console.print(f"  [{color}]Run #{r.id}[/{color}] ({r.kind})")
                console.print(f"    Stage: {r.stage}")
                console.print(f"    Status: {r.status}")
                console.print(f"    Commit: {r.commit_ref or 'N/A'}")
                if r.tarball_path:
                    console.print(f"    Tarball: {r.tarball_path}", soft_wrap=True)
                if r.error_message:
                    console.print(f"    Error: {r.error_message}", soft_wrap=True)
                console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a run with its per-asset outcomes."""
    from kata_static.db import create_all_tables, get_engine, get_session_factory
    from kata_static.pipeline.service import PipelineResult, RunNotFoundError, get_run

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            run_record = get_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        result = PipelineResult.from_run(run_record)
        if json_output:
            _echo_json(result.model_dump_json(indent=2))
        else:
            _print_result(result)


store_app = typer.Typer(help="Manage the artifact store")
app.add_typer(store_app, name="store")


@store_app.command("list")
def store_list(
    pattern: Annotated[
        str,
        typer.Option("--pattern", "-p", help="Glob pattern on artifact names"),
    ] = "*",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List stored artifacts."""
    from kata_static.store import get_store
    from kata_static.store.base import artifact_to_dict

    try:
        artifacts = get_store().list(pattern)
    except KataStaticError as e:
        raise _fail(e) from None

    if json_output:
        _echo_json([artifact_to_dict(a) for a in artifacts])
        return
    if not artifacts:
        console.print("[yellow]No artifacts found[/yellow]")
        return

    table = Table(title=f"{len(artifacts)} artifact(s)")
    table.add_column("Name", style="green")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Expires")
    for a in artifacts:
        table.add_row(
            a.name,
            a.filename,
            str(a.size_bytes),
            a.expires_at.isoformat() if a.expires_at else "never",
        )
    console.print(table)


@store_app.command("prune")
def store_prune(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Delete artifacts whose retention has elapsed."""
    from kata_static.store import LocalArtifactStore, get_store

    store = get_store()
    if not isinstance(store, LocalArtifactStore):
        console.print("[red]Pruning is only supported for the local store[/red]")
        raise typer.Exit(code=1)

    pruned = store.prune_expired()
    if json_output:
        _echo_json({"pruned": pruned})
    elif pruned:
        console.print(f"[green]Pruned {len(pruned)} artifact(s):[/green]")
        for name in pruned:
            console.print(f"  - {name}")
    else:
        console.print("[yellow]Nothing to prune[/yellow]")


__all__ = ["app"]
