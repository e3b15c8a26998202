"""Pipeline service module.

This module provides the high-level pipeline API:
- run_pipeline(): configure, build every asset, collect, merge
- merge_from_store(): the standalone merge job over stored artifacts
- Run ledger persistence and queries

A run ends in exactly one terminal status. ``partial`` (some assets built,
merge not attempted) is distinct from both ``succeeded`` and ``failed``.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from kata_static.assets.io import get_catalog
from kata_static.config import get_settings
from kata_static.errors import ConfigurationError, KataStaticError, MergeError
from kata_static.pipeline.collector import (
    collect,
    fetch_artifacts,
    fetch_run_index,
    store_artifacts,
    store_run_index,
)
from kata_static.pipeline.executor import execute_all
from kata_static.pipeline.merge import (
    MERGED_TARBALL_NAME,
    MergedTarball,
    VersionManifest,
    load_version_manifest,
    merge,
)
from kata_static.pipeline.models import PipelineRun, TaskRecord
from kata_static.pipeline.runner import MakeBuildStep
from kata_static.pipeline.source import (
    resolve_commit_ref,
    sync_source_tree,
    verify_commit_ref,
)
from kata_static.pipeline.stage import build_run_config
from kata_static.store import get_store
from kata_static.types import PipelineStatus, Stage, TaskStatus

if TYPE_CHECKING:
    from kata_static.assets.catalog import AssetCatalog
    from kata_static.config import Settings
    from kata_static.pipeline.collector import ArtifactRecord
    from kata_static.pipeline.runner import BuildStep
    from kata_static.pipeline.stage import RunConfig, RunInputs
    from kata_static.store.base import ArtifactStore

logger = logging.getLogger(__name__)


class RunNotFoundError(KataStaticError):
    """Raised when a pipeline run is not found."""

    def __init__(self, run_id: int) -> None:
        super().__init__(f"Run not found: {run_id}", code="run_not_found")
        self.run_id = run_id


class TaskOutcome(BaseModel):
    """Per-asset outcome of a run."""

    asset: str
    status: TaskStatus
    exit_code: int | None = None
    log_path: str | None = None
    artifact_path: str | None = None
    retained: bool | None = None
    stored_name: str | None = None
    error_type: str | None = None
    error_message: str | None = None

    @classmethod
    def from_record(cls, record: TaskRecord) -> TaskOutcome:
        """Build an outcome from a ledger row."""
        return cls(
            asset=record.asset_name,
            status=TaskStatus(record.status),
            exit_code=record.exit_code,
            log_path=record.log_path,
            artifact_path=record.artifact_path,
            retained=record.retained,
            stored_name=record.stored_name,
            error_type=record.error_type,
            error_message=record.error_message,
        )


class PipelineResult(BaseModel):
    """Terminal report of a pipeline run."""

    run_id: int
    kind: str
    stage: Stage
    arch: str
    commit_ref: str | None = None
    status: PipelineStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    tasks: list[TaskOutcome] = []
    tarball_path: str | None = None
    tarball_sha256: str | None = None
    contained_assets: list[str] = []
    error_type: str | None = None
    error_message: str | None = None

    @classmethod
    def from_run(cls, run: PipelineRun) -> PipelineResult:
        """Build a result from a ledger row and its task rows."""
        return cls(
            run_id=run.id,
            kind=run.kind,
            stage=Stage(run.stage),
            arch=run.arch,
            commit_ref=run.commit_ref,
            status=PipelineStatus(run.status),
            started_at=run.started_at,
            finished_at=run.finished_at,
            tasks=[
                TaskOutcome.from_record(t)
                for t in sorted(run.tasks, key=lambda t: t.asset_name)
            ],
            tarball_path=run.tarball_path,
            tarball_sha256=run.tarball_sha256,
            contained_assets=sorted(run.contained_assets or []),
            error_type=run.error_type,
            error_message=run.error_message,
        )

    @property
    def failed_assets(self) -> list[str]:
        """Names of assets whose build failed."""
        return [t.asset for t in self.tasks if t.status is TaskStatus.FAILED]

    def is_succeeded(self) -> bool:
        """Check if the run produced its merged tarball."""
        return self.status is PipelineStatus.SUCCEEDED


def _create_run(
    session: Session,
    config: RunConfig,
    kind: str,
    settings: Settings,
) -> PipelineRun:
    run = PipelineRun(
        kind=kind,
        stage=config.stage.value,
        arch=config.arch,
        commit_ref=config.commit_ref or None,
        target_branch=config.target_branch,
        tarball_suffix=config.tarball_suffix,
        push_to_registry=config.push_to_registry,
    )
    session.add(run)
    session.flush()

    run_dir = settings.work_dir / f"run-{run.id:06d}"
    run.work_dir = str(run_dir)
    run.mark_running()
    session.flush()
    logger.info("Created %s run %d (stage=%s)", kind, run.id, config.stage.value)
    return run


def _load_manifest(settings: Settings, manifest_path: Path | None) -> VersionManifest:
    if manifest_path is None:
        manifest_path = settings.resolve_versions_file()
    try:
        return load_version_manifest(manifest_path)
    except MergeError as e:
        raise ConfigurationError(str(e), code=e.code) from e


def _publish(
    records: list[ArtifactRecord],
    manifest: VersionManifest,
    config: RunConfig,
    settings: Settings,
    store: ArtifactStore,
    catalog: AssetCatalog,
) -> MergedTarball:
    merged = merge(
        records,
        manifest,
        settings.output_dir / MERGED_TARBALL_NAME,
        config.stage,
        catalog=catalog,
        source_date_epoch=settings.source_date_epoch,
    )
    store.put(
        config.tarball_artifact_name,
        merged.path,
        retention_days=settings.retention_days,
    )
    logger.info("Stored merged tarball as %s", config.tarball_artifact_name)
    return merged


def _mark_merged(run: PipelineRun, merged: MergedTarball) -> None:
    run.mark_succeeded(
        tarball_path=str(merged.path),
        tarball_sha256=merged.sha256,
        tarball_size_bytes=merged.size_bytes,
        contained_assets=sorted(merged.contained_assets),
    )


def run_pipeline(
    session: Session,
    inputs: RunInputs,
    settings: Settings | None = None,
    step: BuildStep | None = None,
    store: ArtifactStore | None = None,
    manifest_path: Path | None = None,
    catalog: AssetCatalog | None = None,
    cancel_event: threading.Event | None = None,
) -> PipelineResult:
    """Build every asset of the stage and merge them into the tarball.

    This is the main entry point of the pipeline. It:
    1. Derives the run configuration and checks the version manifest exists
    2. Checks the source tree is at the requested commit
    3. Rebases the source tree when a target branch was requested and
       reloads the manifest from the rebased tree
    4. Builds every asset concurrently and waits for all of them
    5. Collects and stores the retained artifacts with the run index
    6. Merges them into the canonical tarball if every build succeeded

    Args:
        session: Database session.
        inputs: Raw invocation parameters.
        settings: Application settings.
        step: Build step override (defaults to MakeBuildStep).
        store: Artifact store override.
        manifest_path: Version manifest override.
        catalog: Asset catalog override.
        cancel_event: Event that aborts builds not yet started.

    Returns:
        PipelineResult with per-asset outcomes and the terminal status.

    Raises:
        ConfigurationError: If the run cannot start; nothing was built.
    """
    if settings is None:
        settings = get_settings()
    if catalog is None:
        catalog = get_catalog(settings)

    config = build_run_config(inputs, settings)
    manifest = _load_manifest(settings, manifest_path)
    if inputs.commit_ref.strip():
        verify_commit_ref(
            settings.source_dir, config.commit_ref, timeout=settings.sync_timeout
        )
    rebased = sync_source_tree(
        settings.source_dir,
        config.target_branch,
        settings.rebase_command,
        timeout=settings.sync_timeout,
    )
    if rebased:
        # The rebase moves HEAD and may rewrite the manifest
        head = resolve_commit_ref(settings.source_dir, timeout=settings.sync_timeout)
        config = config.model_copy(update={"commit_ref": head})
        manifest = _load_manifest(settings, manifest_path)
        logger.info("Source tree rebased onto %s at %s", config.target_branch, head)
    assets = catalog.list_assets(config.stage)

    if store is None:
        store = get_store(settings)
    if step is None:
        step = MakeBuildStep(
            settings.source_dir,
            command_template=settings.build_command,
            timeout=settings.build_timeout,
        )

    run = _create_run(session, config, "build", settings)
    run_dir = Path(run.work_dir or settings.work_dir)
    task_rows = {asset.name: TaskRecord(asset_name=asset.name) for asset in assets}
    run.tasks.extend(task_rows.values())
    session.flush()

    try:
        tasks = execute_all(
            assets,
            config,
            step,
            work_dir=run_dir / "build",
            staging_dir=run_dir / "staging",
            max_workers=settings.max_concurrent_builds,
            cancel_event=cancel_event,
        )
    except KeyboardInterrupt:
        run.mark_failed("cancelled", "Pipeline aborted during builds")
        session.flush()
        raise

    for task in tasks:
        task_rows[task.name].update_from_task(task)
    failed = [t.name for t in tasks if not t.is_succeeded()]

    try:
        records = collect(tasks, catalog)
        for record in records:
            task_rows[record.asset_name].retained = record.retained
        stored = store_artifacts(records, store, config, settings.retention_days)
        for record in records:
            if record.retained:
                task_rows[record.asset_name].stored_name = config.artifact_name(
                    record.asset_name
                )
        store_run_index(
            stored, store, config, run.id, run_dir, settings.retention_days
        )

        if failed:
            message = f"{len(failed)} of {len(tasks)} builds failed: {', '.join(failed)}"
            if len(failed) < len(tasks):
                run.mark_partial(message)
            else:
                run.mark_failed("build_failed", message)
            logger.error("Run %d: %s; merge not attempted", run.id, message)
        else:
            merged = _publish(records, manifest, config, settings, store, catalog)
            _mark_merged(run, merged)
            logger.info("Run %d succeeded: %s", run.id, merged.path)
    except KataStaticError as e:
        run.mark_failed(e.code, str(e))
        logger.error("Run %d failed: %s", run.id, e)

    session.flush()
    return PipelineResult.from_run(run)


def merge_from_store(
    session: Session,
    inputs: RunInputs,
    settings: Settings | None = None,
    store: ArtifactStore | None = None,
    manifest_path: Path | None = None,
    catalog: AssetCatalog | None = None,
) -> PipelineResult:
    """Merge previously stored per-asset artifacts into the tarball.

    Fetches the per-asset artifacts listed in the index of the latest
    build run, merges them and stores the merged tarball. Blobs left over
    from older runs fail the merge with a manifest mismatch.

    Args:
        session: Database session.
        inputs: Raw invocation parameters (stage, suffix).
        settings: Application settings.
        store: Artifact store override.
        manifest_path: Version manifest override.
        catalog: Asset catalog override.

    Returns:
        PipelineResult; status is succeeded or failed.

    Raises:
        ConfigurationError: If the merge cannot start.
    """
    if settings is None:
        settings = get_settings()
    if catalog is None:
        catalog = get_catalog(settings)

    config = build_run_config(inputs, settings, resolve_commit=False)
    manifest = _load_manifest(settings, manifest_path)
    if store is None:
        store = get_store(settings)

    run = _create_run(session, config, "merge", settings)
    fetch_dir = Path(run.work_dir or settings.work_dir) / "fetched"

    try:
        index = fetch_run_index(store, config, fetch_dir)
        run.commit_ref = index.commit_ref
        records = fetch_artifacts(store, config, fetch_dir / "artifacts", index)
        merged = _publish(records, manifest, config, settings, store, catalog)
        _mark_merged(run, merged)
        logger.info("Merge run %d succeeded: %s", run.id, merged.path)
    except KataStaticError as e:
        run.mark_failed(e.code, str(e))
        logger.error("Merge run %d failed: %s", run.id, e)

    session.flush()
    return PipelineResult.from_run(run)


def get_run(session: Session, run_id: int) -> PipelineRun:
    """Get a pipeline run by ID.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = session.get(PipelineRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    stage: Stage | None = None,
    status: PipelineStatus | None = None,
    limit: int = 100,
) -> list[PipelineRun]:
    """List pipeline runs, newest first.

    Args:
        session: Database session.
        stage: Filter by stage.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of PipelineRun instances.
    """
    stmt = select(PipelineRun)

    if stage is not None:
        stmt = stmt.where(PipelineRun.stage == stage.value)
    if status is not None:
        stmt = stmt.where(PipelineRun.status == status.value)

    stmt = stmt.order_by(PipelineRun.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_run_tasks(session: Session, run_id: int) -> list[TaskRecord]:
    """Get the task rows of a run, sorted by asset name.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = get_run(session, run_id)
    return list(run.tasks)


__all__ = [
    "PipelineResult",
    "RunNotFoundError",
    "TaskOutcome",
    "get_run",
    "get_run_tasks",
    "list_runs",
    "merge_from_store",
    "run_pipeline",
]
