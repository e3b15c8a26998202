"""MCP server implementation.

This module creates the FastMCP server and registers all tools.
Tools are thin wrappers around core kata_static services; none of them
starts a build.
"""

from typing import Annotated, Any

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from kata_static.errors import KataStaticError
from mcp_server.errors import (
    INTERNAL_ERROR,
    from_exception,
    make_error,
    run_not_found,
    validation_error,
)
from mcp_server.schemas import (
    AssetSummary,
    GetRunResponse,
    ListAssetsResponse,
    ListRunsResponse,
    PlannedTask,
    PlanRunResponse,
    RunSummary,
)

# Create the FastMCP server instance
mcp = FastMCP(
    name="kata-static",
)


def _get_session_factory() -> Any:
    """Get the database session factory."""
    from kata_static.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


@mcp.tool()
def list_assets(
    stage: Annotated[
        str | None, Field(description="Only assets built in this stage (test/release)")
    ] = None,
) -> ListAssetsResponse:
    """List assets of the catalog.

    With a stage, only the assets built in that stage are returned, along
    with whether each one's artifact is retained as a deliverable.

    Returns:
        ListAssetsResponse with assets or error.
    """
    from kata_static.assets.io import get_catalog
    from kata_static.pipeline.collector import retention_predicate
    from kata_static.pipeline.stage import parse_stage

    try:
        catalog = get_catalog()
        stage_filter = parse_stage(stage) if stage else None
        assets = catalog.list_assets(stage_filter) if stage_filter else list(catalog)

        summaries = [
            AssetSummary(
                name=a.name,
                kind=a.kind.value,
                make_target=a.make_target,
                excluded_stages=sorted(s.value for s in a.excluded_stages),
                embedded_in_release=a.embedded_in_release,
                retained=retention_predicate(a.name, stage_filter, catalog)
                if stage_filter
                else None,
            )
            for a in assets
        ]
        return ListAssetsResponse(
            success=True,
            stage=stage_filter.value if stage_filter else None,
            assets=summaries,
            total=len(summaries),
        )

    except KataStaticError as e:
        return ListAssetsResponse(
            success=False, assets=[], total=0, error=from_exception(e).to_dict()
        )
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return ListAssetsResponse(success=False, assets=[], total=0, error=error.to_dict())


@mcp.tool()
def plan_run(
    stage: Annotated[str, Field(description="Build mode: test or release")] = "test",
    tarball_suffix: Annotated[
        str, Field(description="Suffix appended to stored artifact names")
    ] = "",
    push_to_registry: Annotated[
        str, Field(description="Whether build steps push (yes/no)")
    ] = "no",
    target_branch: Annotated[
        str, Field(description="Branch the source would be rebased onto")
    ] = "",
) -> PlanRunResponse:
    """Describe what a pipeline run with these inputs would do.

    Validates the inputs exactly like a real run and returns the per-asset
    builds, the retained set the merged tarball must contain, and the store
    names involved. Nothing is built.

    Returns:
        PlanRunResponse with the plan or a validation error.
    """
    from pydantic import ValidationError

    from kata_static.assets.io import get_catalog
    from kata_static.config import get_settings
    from kata_static.pipeline.collector import retention_predicate
    from kata_static.pipeline.merge import expected_assets
    from kata_static.pipeline.stage import RunInputs, build_run_config

    try:
        inputs = RunInputs(
            stage=stage,
            tarball_suffix=tarball_suffix,
            push_to_registry=push_to_registry,
            target_branch=target_branch,
        )
        settings = get_settings()
        config = build_run_config(inputs, settings, resolve_commit=False)
        catalog = get_catalog(settings)

        tasks: list[PlannedTask] = []
        for asset in catalog.list_assets(config.stage):
            retained = retention_predicate(asset.name, config.stage, catalog)
            tasks.append(
                PlannedTask(
                    asset=asset.name,
                    make_target=asset.make_target,
                    retained=retained,
                    artifact_name=config.artifact_name(asset.name) if retained else None,
                )
            )

        return PlanRunResponse(
            success=True,
            stage=config.stage.value,
            arch=config.arch,
            release_flag=config.release_flag,
            push_flag=config.push_flag,
            tasks=tasks,
            expected_assets=sorted(expected_assets(config.stage, catalog)),
            artifact_pattern=config.artifact_pattern,
            tarball_artifact_name=config.tarball_artifact_name,
        )

    except ValidationError as e:
        return PlanRunResponse(success=False, error=validation_error(str(e)).to_dict())
    except KataStaticError as e:
        return PlanRunResponse(success=False, error=from_exception(e).to_dict())
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return PlanRunResponse(success=False, error=error.to_dict())


@mcp.tool()
def list_runs(
    stage: Annotated[str | None, Field(description="Filter by stage")] = None,
    status: Annotated[
        str | None,
        Field(description="Filter by status (running/succeeded/partial/failed)"),
    ] = None,
    limit: Annotated[int, Field(description="Maximum results", ge=1, le=1000)] = 100,
) -> ListRunsResponse:
    """List pipeline runs, newest first.

    Returns:
        ListRunsResponse with runs or error.
    """
    from kata_static.pipeline.service import list_runs as svc_list_runs
    from kata_static.types import PipelineStatus, Stage

    try:
        try:
            stage_filter = Stage(stage) if stage else None
            status_filter = PipelineStatus(status) if status else None
        except ValueError as e:
            return ListRunsResponse(
                success=False,
                runs=[],
                total=0,
                error=validation_error(str(e)).to_dict(),
            )

        factory = _get_session_factory()
        with factory() as session:
            runs = svc_list_runs(
                session, stage=stage_filter, status=status_filter, limit=limit
            )
            summaries = [
                RunSummary(
                    id=r.id,
                    kind=r.kind,
                    stage=r.stage,
                    arch=r.arch,
                    commit_ref=r.commit_ref,
                    status=r.status,
                    requested_at=r.requested_at.isoformat() if r.requested_at else None,
                    finished_at=r.finished_at.isoformat() if r.finished_at else None,
                    tarball_path=r.tarball_path,
                    error_type=r.error_type,
                    error_message=r.error_message,
                )
                for r in runs
            ]
            return ListRunsResponse(success=True, runs=summaries, total=len(summaries))

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return ListRunsResponse(success=False, runs=[], total=0, error=error.to_dict())


@mcp.tool()
def get_run(
    run_id: Annotated[int, Field(description="Run ID to retrieve")],
) -> GetRunResponse:
    """Get a pipeline run with its per-asset outcomes.

    Returns:
        GetRunResponse with the run or error.
    """
    from kata_static.pipeline.service import PipelineResult, RunNotFoundError
    from kata_static.pipeline.service import get_run as svc_get_run

    try:
        factory = _get_session_factory()
        with factory() as session:
            try:
                run = svc_get_run(session, run_id)
            except RunNotFoundError:
                return GetRunResponse(
                    success=False, error=run_not_found(run_id).to_dict()
                )
            result = PipelineResult.from_run(run)
            return GetRunResponse(success=True, run=result.model_dump(mode="json"))

    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return GetRunResponse(success=False, error=error.to_dict())


def main() -> None:
    """Run the MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
