"""Run ledger endpoints.

- GET /runs - List runs
- GET /runs/{id} - Get a run with its per-asset outcomes
- GET /runs/{id}/tasks - Get the task rows of a run
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from kata_static.pipeline.models import PipelineRun
from kata_static.pipeline.service import (
    PipelineResult,
    RunNotFoundError,
    TaskOutcome,
    get_run,
    get_run_tasks,
    list_runs,
)
from kata_static.types import PipelineStatus, Stage
from web.deps import get_db

router = APIRouter()


def _run_to_dict(run: PipelineRun) -> dict[str, Any]:
    """Convert a run record to a summary dictionary."""
    return {
        "id": run.id,
        "kind": run.kind,
        "stage": run.stage,
        "arch": run.arch,
        "commit_ref": run.commit_ref,
        "status": run.status,
        "requested_at": run.requested_at.isoformat() if run.requested_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "tarball_path": run.tarball_path,
        "error_type": run.error_type,
        "error_message": run.error_message,
        "task_count": len(run.tasks),
    }


def _not_found(e: RunNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": e.code, "message": str(e)},
    )


@router.get("")
def list_runs_endpoint(
    stage: str | None = Query(None, description="Filter by stage"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List pipeline runs, newest first."""
    try:
        stage_filter = Stage(stage) if stage else None
    except ValueError:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_stage",
                "message": f"Invalid stage: {stage}. Valid values: test, release",
            },
        ) from None
    try:
        status_filter = PipelineStatus(status) if status else None
    except ValueError:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_status",
                "message": f"Invalid status: {status}. Valid values: running, "
                "succeeded, partial, failed",
            },
        ) from None

    runs = list_runs(db, stage=stage_filter, status=status_filter, limit=limit)
    return [_run_to_dict(r) for r in runs]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a run with its per-asset outcomes."""
    try:
        run = get_run(db, run_id)
    except RunNotFoundError as e:
        raise _not_found(e) from None
    return PipelineResult.from_run(run).model_dump(mode="json")


@router.get("/{run_id}/tasks")
def get_run_tasks_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get the per-asset task rows of a run."""
    try:
        tasks = get_run_tasks(db, run_id)
    except RunNotFoundError as e:
        raise _not_found(e) from None
    return [TaskOutcome.from_record(t).model_dump(mode="json") for t in tasks]
