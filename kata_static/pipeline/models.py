"""Pipeline run ORM models.

This module defines the PipelineRun and TaskRecord models that form the
run ledger: one PipelineRun per invocation and one TaskRecord per asset
build within it.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kata_static.db import Base
from kata_static.types import PipelineStatus, TaskStatus

if TYPE_CHECKING:
    from kata_static.pipeline.executor import BuildTask


class PipelineRun(Base):
    """ORM model for one pipeline invocation.

    Attributes:
        id: Primary key.
        kind: ``build`` for a full run, ``merge`` for a standalone merge.
        stage: Stage of the run (test or release).
        arch: Architecture the run targets.
        commit_ref: Commit the run builds.
        target_branch: Branch the source was rebased onto, if any.
        tarball_suffix: Suffix appended to store names.
        push_to_registry: Whether build steps were allowed to push.
        status: Run status (running, succeeded, partial, failed).
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when the run started executing.
        finished_at: Timestamp when the run finished.
        work_dir: Per-run working directory.
        tarball_path: Path of the merged tarball (on success).
        tarball_sha256: SHA-256 of the merged tarball.
        tarball_size_bytes: Size of the merged tarball.
        contained_assets: Assets contained in the merged tarball.
        error_type: Error code if the run failed.
        error_message: Error message if the run failed.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="build")

    # Effective run configuration
    stage: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    arch: Mapped[str] = mapped_column(String(50), nullable=False)
    commit_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_branch: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tarball_suffix: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    push_to_registry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PipelineStatus.RUNNING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    work_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Merged tarball
    tarball_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    tarball_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tarball_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    contained_assets: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    tasks: Mapped[list["TaskRecord"]] = relationship(
        "TaskRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="TaskRecord.asset_name",
    )

    __table_args__ = (Index("ix_pipeline_runs_stage_status", "stage", "status"),)

    def __repr__(self) -> str:
        """Return string representation of PipelineRun."""
        return (
            f"<PipelineRun(id={self.id}, kind='{self.kind}', stage='{self.stage}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = PipelineStatus.RUNNING.value
        self.started_at = datetime.now(timezone.utc)

    def mark_succeeded(
        self,
        tarball_path: str | None = None,
        tarball_sha256: str | None = None,
        tarball_size_bytes: int | None = None,
        contained_assets: list[str] | None = None,
    ) -> None:
        """Mark this run as succeeded with its merged tarball."""
        self.status = PipelineStatus.SUCCEEDED.value
        self.finished_at = datetime.now(timezone.utc)
        self.tarball_path = tarball_path
        self.tarball_sha256 = tarball_sha256
        self.tarball_size_bytes = tarball_size_bytes
        self.contained_assets = contained_assets

    def mark_partial(self, message: str | None = None) -> None:
        """Mark this run as partially built; no tarball was merged."""
        self.status = PipelineStatus.PARTIAL.value
        self.finished_at = datetime.now(timezone.utc)
        self.error_type = "build_failed"
        if message:
            self.error_message = message

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = PipelineStatus.FAILED.value
        self.finished_at = datetime.now(timezone.utc)
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == PipelineStatus.SUCCEEDED.value


class TaskRecord(Base):
    """ORM model for one asset build within a run.

    Attributes:
        id: Primary key.
        run_id: Foreign key to PipelineRun.
        asset_name: Asset that was built.
        status: Terminal task status.
        started_at: When the build started.
        finished_at: When the build finished.
        exit_code: Build step exit code.
        log_path: Path to the build log.
        artifact_path: Primary artifact in the staging area.
        retained: Whether the artifact is kept as a standalone deliverable.
        stored_name: Store name the artifact was uploaded under.
        error_type: Error code if the task failed.
        error_message: Error message if the task failed.
    """

    __tablename__ = "task_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True
    )
    asset_name: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskStatus.PENDING.value
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    retained: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    stored_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="tasks")

    __table_args__ = (
        UniqueConstraint("run_id", "asset_name", name="uq_task_records_run_asset"),
    )

    def __repr__(self) -> str:
        """Return string representation of TaskRecord."""
        return (
            f"<TaskRecord(id={self.id}, run_id={self.run_id}, "
            f"asset='{self.asset_name}', status='{self.status}')>"
        )

    def update_from_task(self, task: "BuildTask") -> None:
        """Copy the terminal state of an executed build task."""
        self.status = task.status.value
        self.started_at = task.started_at
        self.finished_at = task.finished_at
        self.exit_code = task.exit_code
        self.log_path = str(task.log_path) if task.log_path else None
        self.artifact_path = str(task.artifact_path) if task.artifact_path else None
        self.error_type = task.error_type
        self.error_message = task.error_message

    def is_succeeded(self) -> bool:
        """Check if this task succeeded."""
        return self.status == TaskStatus.SUCCEEDED.value


__all__ = ["PipelineRun", "TaskRecord"]
