"""Artifact store endpoints.

Serves the local artifact store over HTTP; HttpArtifactStore is the
matching client.

- GET /artifacts?pattern= - List live artifacts
- GET /artifacts/{name} - Get artifact metadata
- GET /artifacts/{name}/content - Download an artifact
- PUT /artifacts/{name}?filename=&retention_days= - Upload an artifact
- DELETE /artifacts/{name} - Delete an artifact
"""

import tempfile
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi import status as http_status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse

from kata_static.errors import ArtifactNotFoundError, StoreError
from kata_static.store.base import artifact_to_dict, validate_name
from kata_static.store.local import LocalArtifactStore
from web.deps import get_artifact_store

router = APIRouter()


def _not_found(e: ArtifactNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": e.code, "message": str(e)},
    )


def _bad_request(e: StoreError) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_400_BAD_REQUEST,
        detail={"code": e.code, "message": str(e)},
    )


@router.get("")
def list_artifacts_endpoint(
    pattern: str = Query("*", description="Glob pattern on artifact names"),
    store: LocalArtifactStore = Depends(get_artifact_store),
) -> list[dict[str, Any]]:
    """List live artifacts."""
    return [artifact_to_dict(a) for a in store.list(pattern)]


@router.get("/{name}")
def get_artifact_endpoint(
    name: str,
    store: LocalArtifactStore = Depends(get_artifact_store),
) -> dict[str, Any]:
    """Get artifact metadata."""
    try:
        return artifact_to_dict(store.describe(name))
    except ArtifactNotFoundError as e:
        raise _not_found(e) from None
    except StoreError as e:
        raise _bad_request(e) from None


@router.get("/{name}/content")
def download_artifact_endpoint(
    name: str,
    store: LocalArtifactStore = Depends(get_artifact_store),
) -> FileResponse:
    """Download an artifact's file."""
    try:
        path = store.blob_path(name)
    except ArtifactNotFoundError as e:
        raise _not_found(e) from None
    except StoreError as e:
        raise _bad_request(e) from None
    return FileResponse(path, filename=path.name, media_type="application/octet-stream")


@router.put("/{name}")
async def upload_artifact_endpoint(
    name: str,
    request: Request,
    filename: str = Query(..., description="Filename of the uploaded file"),
    retention_days: int | None = Query(None, ge=1, description="Retention in days"),
    store: LocalArtifactStore = Depends(get_artifact_store),
) -> dict[str, Any]:
    """Upload an artifact, replacing any previous one with the same name."""
    try:
        validate_name(name)
        validate_name(filename)
    except StoreError as e:
        raise _bad_request(e) from None

    # File I/O runs in the threadpool, off the event loop
    await run_in_threadpool(store.root.mkdir, parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=store.root, prefix=".upload-") as tmp:
        upload = Path(tmp) / filename
        with upload.open("wb") as f:
            async for chunk in request.stream():
                await run_in_threadpool(f.write, chunk)
        artifact = await run_in_threadpool(
            store.put, name, upload, retention_days=retention_days
        )
    return artifact_to_dict(artifact)


@router.delete("/{name}", status_code=http_status.HTTP_204_NO_CONTENT)
def delete_artifact_endpoint(
    name: str,
    store: LocalArtifactStore = Depends(get_artifact_store),
) -> Response:
    """Delete an artifact."""
    try:
        deleted = store.delete(name)
    except StoreError as e:
        raise _bad_request(e) from None
    if not deleted:
        raise _not_found(ArtifactNotFoundError(name))
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)
