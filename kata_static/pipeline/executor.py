"""Parallel build executor.

This module handles:
- One BuildTask per (asset, stage) pair
- Concurrent fan-out over a thread pool, one worker per asset by default
- Per-task failure isolation (no sibling cancellation, no retries)
- The join barrier: execute_all returns only once every task is terminal

Each task writes into its own ``<work_dir>/<asset>/`` and
``<staging_dir>/<asset>/`` directories, so concurrent tasks never share
a writable path.
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from kata_static.errors import ArtifactMissingError, BuildFailure
from kata_static.pipeline.runner import build_environment, relocate_artifacts
from kata_static.types import TaskStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

    from kata_static.assets.catalog import AssetSpec
    from kata_static.pipeline.runner import BuildStep
    from kata_static.pipeline.stage import RunConfig

logger = logging.getLogger(__name__)


@dataclass
class BuildTask:
    """One asset build within a pipeline run.

    Mutated only by its own execution; terminal once succeeded or failed.

    Attributes:
        asset: Asset being built.
        config: Shared run configuration.
        status: Task status.
        artifact_path: Primary artifact in the staging area (on success).
        log_path: Path to the build log.
        started_at: When execution started.
        finished_at: When the task reached a terminal state.
        exit_code: Build step exit code, if it ran.
        error_type: Error code if the task failed.
        error_message: Error details if the task failed.
    """

    asset: AssetSpec
    config: RunConfig
    status: TaskStatus = TaskStatus.PENDING
    artifact_path: Path | None = None
    log_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    error_type: str | None = None
    error_message: str | None = None

    @property
    def name(self) -> str:
        """Asset name of the task."""
        return self.asset.name

    @property
    def is_terminal(self) -> bool:
        """Check if the task has finished."""
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)

    def is_succeeded(self) -> bool:
        """Check if the task succeeded."""
        return self.status is TaskStatus.SUCCEEDED

    def mark_running(self) -> None:
        """Mark this task as running."""
        self.status = TaskStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def mark_succeeded(self, artifact_path: Path) -> None:
        """Mark this task as succeeded with its primary artifact."""
        self.status = TaskStatus.SUCCEEDED
        self.artifact_path = artifact_path
        self.finished_at = datetime.now(timezone.utc)

    def mark_failed(self, error_type: str, message: str | None = None) -> None:
        """Mark this task as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = TaskStatus.FAILED
        self.artifact_path = None
        self.finished_at = datetime.now(timezone.utc)
        self.error_type = error_type
        self.error_message = message


def _reset_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def run_task(
    task: BuildTask,
    step: BuildStep,
    work_dir: Path,
    staging_dir: Path,
) -> BuildTask:
    """Execute a single build task to a terminal state.

    Build failures and missing artifacts are recorded on the task rather
    than raised.

    Args:
        task: Pending task.
        step: Build step to invoke.
        work_dir: Root of per-asset working directories.
        staging_dir: Root of per-asset staging directories.

    Returns:
        The same task, now terminal.
    """
    asset = task.asset
    task_dir = work_dir / asset.name
    output_dir = task_dir / "build"
    asset_staging = staging_dir / asset.name
    task.log_path = task_dir / "build.log"

    task.mark_running()
    _reset_dir(task_dir)
    _reset_dir(asset_staging)

    env = build_environment(asset, task.config, output_dir)
    try:
        result = step(asset, env, output_dir, task.log_path)
        task.exit_code = result.exit_code
        if not result.success:
            task.mark_failed("build_failed", result.error_message)
            logger.error("[%s] Build failed: %s", asset.name, result.error_message)
            return task

        artifact = relocate_artifacts(output_dir, asset_staging, asset)
    except BuildFailure as e:
        task.exit_code = e.exit_code
        task.mark_failed(e.code, str(e))
        logger.error("[%s] Build failed: %s", asset.name, e)
        return task
    except ArtifactMissingError as e:
        task.mark_failed(e.code, str(e))
        logger.error("[%s] %s", asset.name, e)
        return task

    task.mark_succeeded(artifact)
    logger.info("[%s] Build succeeded: %s", asset.name, artifact.name)
    return task


def execute_all(
    assets: Sequence[AssetSpec],
    config: RunConfig,
    step: BuildStep,
    work_dir: Path,
    staging_dir: Path,
    max_workers: int | None = None,
    cancel_event: threading.Event | None = None,
) -> list[BuildTask]:
    """Run one build task per asset concurrently and join on all of them.

    Args:
        assets: Assets to build (already filtered for the stage).
        config: Shared run configuration.
        step: Build step invoked per asset.
        work_dir: Root of per-asset working directories.
        staging_dir: Root of per-asset staging directories.
        max_workers: Concurrency cap; defaults to one worker per asset.
        cancel_event: When set, tasks that have not started are failed
            with ``cancelled`` instead of running.

    Returns:
        Terminal tasks, in the order of ``assets``.
    """
    tasks = [BuildTask(asset=asset, config=config) for asset in assets]
    if not tasks:
        return tasks

    workers = max_workers or len(tasks)
    logger.info(
        "Building %d assets for stage %s with %d workers",
        len(tasks),
        config.stage.value,
        workers,
    )

    def _guarded(task: BuildTask) -> BuildTask:
        if cancel_event is not None and cancel_event.is_set():
            task.mark_failed("cancelled", "Pipeline aborted before the build started")
            return task
        return run_task(task, step, work_dir, staging_dir)

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kata-build")
    futures: dict[Future[BuildTask], BuildTask] = {}
    try:
        for task in tasks:
            futures[executor.submit(_guarded, task)] = task
        # Barrier: nothing downstream may start before every task is terminal
        wait(futures)
    except BaseException:
        if cancel_event is not None:
            cancel_event.set()
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)

    for future, task in futures.items():
        error = future.exception()
        if error is not None:
            logger.error(
                "[%s] Unexpected error during build",
                task.name,
                exc_info=(type(error), error, error.__traceback__),
            )
            task.mark_failed("internal_error", f"{type(error).__name__}: {error}")

    succeeded = sum(1 for t in tasks if t.is_succeeded())
    logger.info(
        "All builds finished: %d succeeded, %d failed",
        succeeded,
        len(tasks) - succeeded,
    )
    return tasks


__all__ = ["BuildTask", "execute_all", "run_task"]
