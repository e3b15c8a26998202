"""Asset catalog endpoints.

- GET /assets - List assets, optionally only those built in a stage
- GET /assets/expected - Assets a complete merged tarball contains
- GET /assets/{name} - Get one asset
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi import status as http_status

from kata_static.assets.catalog import AssetCatalog, AssetSpec
from kata_static.assets.io import get_catalog
from kata_static.errors import ConfigurationError, UnknownAssetError
from kata_static.pipeline.collector import retention_predicate
from kata_static.pipeline.merge import expected_assets
from kata_static.types import Stage

router = APIRouter()


def _catalog() -> AssetCatalog:
    try:
        return get_catalog()
    except ConfigurationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": e.code, "message": str(e)},
        ) from None


def _parse_stage(stage: str | None) -> Stage | None:
    if stage is None:
        return None
    try:
        return Stage(stage)
    except ValueError:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_stage",
                "message": f"Invalid stage: {stage}. Valid values: test, release",
            },
        ) from None


def _asset_to_dict(
    asset: AssetSpec, catalog: AssetCatalog, stage: Stage | None
) -> dict[str, Any]:
    """Convert an asset to a dictionary."""
    return {
        "name": asset.name,
        "kind": asset.kind.value,
        "make_target": asset.make_target,
        "output_glob": asset.output_glob,
        "excluded_stages": sorted(s.value for s in asset.excluded_stages),
        "embedded_in_release": asset.embedded_in_release,
        "retained": retention_predicate(asset.name, stage, catalog) if stage else None,
    }


@router.get("")
def list_assets_endpoint(
    stage: str | None = Query(None, description="Only assets built in this stage"),
) -> list[dict[str, Any]]:
    """List catalog assets."""
    stage_filter = _parse_stage(stage)
    catalog = _catalog()
    assets = catalog.list_assets(stage_filter) if stage_filter else list(catalog)
    return [_asset_to_dict(a, catalog, stage_filter) for a in assets]


@router.get("/expected")
def expected_assets_endpoint(
    stage: str = Query("test", description="Stage of the run"),
) -> dict[str, Any]:
    """Get the asset set a complete merged tarball contains for a stage."""
    stage_value = _parse_stage(stage) or Stage.TEST
    names = sorted(expected_assets(stage_value, _catalog()))
    return {"stage": stage_value.value, "count": len(names), "assets": names}


@router.get("/{name}")
def get_asset_endpoint(name: str) -> dict[str, Any]:
    """Get one asset by name."""
    catalog = _catalog()
    try:
        asset = catalog.get(name)
    except UnknownAssetError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None
    return _asset_to_dict(asset, catalog, None)
