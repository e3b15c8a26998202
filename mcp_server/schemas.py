"""Pydantic schemas for MCP tool responses.

These schemas define the structured output formats for MCP tools,
ensuring consistent JSON responses across all tools.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict


class AssetSummary(BaseModel):
    """Summary of a catalog asset."""

    model_config = ConfigDict(extra="forbid")

    name: str
    kind: str
    make_target: str
    excluded_stages: list[str]
    embedded_in_release: bool
    retained: bool | None = None


class ListAssetsResponse(BaseModel):
    """Response for list_assets tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    stage: str | None = None
    assets: list[AssetSummary]
    total: int
    error: dict[str, Any] | None = None


class PlannedTask(BaseModel):
    """One asset build a run would perform."""

    model_config = ConfigDict(extra="forbid")

    asset: str
    make_target: str
    retained: bool
    artifact_name: str | None = None


class PlanRunResponse(BaseModel):
    """Response for plan_run tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    stage: str | None = None
    arch: str | None = None
    release_flag: str | None = None
    push_flag: str | None = None
    tasks: list[PlannedTask] = []
    expected_assets: list[str] = []
    artifact_pattern: str | None = None
    tarball_artifact_name: str | None = None
    error: dict[str, Any] | None = None


class RunSummary(BaseModel):
    """Summary of a pipeline run."""

    model_config = ConfigDict(extra="forbid")

    id: int
    kind: str
    stage: str
    arch: str
    commit_ref: str | None = None
    status: str
    requested_at: str | None = None
    finished_at: str | None = None
    tarball_path: str | None = None
    error_type: str | None = None
    error_message: str | None = None


class ListRunsResponse(BaseModel):
    """Response for list_runs tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    runs: list[RunSummary]
    total: int
    error: dict[str, Any] | None = None


class GetRunResponse(BaseModel):
    """Response for get_run tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    run: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


__all__ = [
    "AssetSummary",
    "GetRunResponse",
    "ListAssetsResponse",
    "ListRunsResponse",
    "PlanRunResponse",
    "PlannedTask",
    "RunSummary",
]
