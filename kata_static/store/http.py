"""HTTP-backed artifact store.

Talks to a remote artifact service over a small REST surface:

- ``PUT /artifacts/{name}?filename=...&retention_days=...`` uploads a blob
  and returns its metadata as JSON
- ``GET /artifacts/{name}`` returns the metadata
- ``GET /artifacts/{name}/content`` streams the blob
- ``GET /artifacts?pattern=...`` lists live blobs
- ``DELETE /artifacts/{name}`` removes a blob
"""

from __future__ import annotations

import builtins
import hashlib
import logging
from pathlib import Path
from typing import Any, NoReturn

import httpx

from kata_static.errors import ArtifactMissingError, ArtifactNotFoundError, StoreError
from kata_static.store.base import artifact_from_dict, validate_name
from kata_static.types import StoredArtifact

logger = logging.getLogger(__name__)

# Timeout for metadata requests (seconds)
REQUEST_TIMEOUT = 30

# Timeout for blob transfers (seconds)
TRANSFER_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


def _raise_for(e: httpx.HTTPError, action: str) -> NoReturn:
    if isinstance(e, httpx.HTTPStatusError):
        raise StoreError(
            f"HTTP error {action}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    if isinstance(e, httpx.TimeoutException):
        raise StoreError(f"Timeout {action}", code="timeout") from e
    raise StoreError(f"Network error {action}: {e}", code="network_error") from e


class HttpArtifactStore:
    """Artifact store adapter for a remote artifact service."""

    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def __repr__(self) -> str:
        return f"HttpArtifactStore(base_url={str(self.client.base_url)!r})"

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self.client.close()

    def _metadata(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(
                f"Invalid JSON from artifact service: {e}", code="invalid_metadata"
            ) from e

    def put(
        self, name: str, path: Path, retention_days: int | None = None
    ) -> StoredArtifact:
        """Upload a file under ``name``.

        Raises:
            ArtifactMissingError: If the file does not exist.
            StoreError: On HTTP or network failures.
        """
        validate_name(name)
        if not path.is_file():
            raise ArtifactMissingError(name, f"Cannot store {name}: {path} does not exist")

        params: dict[str, Any] = {"filename": path.name}
        if retention_days is not None:
            params["retention_days"] = retention_days

        logger.info("Uploading %s as %s", path, name)
        try:
            with path.open("rb") as f:
                response = self.client.put(
                    f"/artifacts/{name}",
                    params=params,
                    content=f,
                    timeout=TRANSFER_TIMEOUT,
                )
            response.raise_for_status()
        except httpx.HTTPError as e:
            _raise_for(e, f"uploading {name}")

        return artifact_from_dict(self._metadata(response))

    def _get_metadata(self, name: str) -> StoredArtifact:
        try:
            response = self.client.get(f"/artifacts/{name}", timeout=REQUEST_TIMEOUT)
            if response.status_code == 404:
                raise ArtifactNotFoundError(name)
            response.raise_for_status()
        except httpx.HTTPError as e:
            _raise_for(e, f"fetching metadata of {name}")
        return artifact_from_dict(self._metadata(response))

    def get(self, name: str, dest_dir: Path) -> Path:
        """Download a blob into ``dest_dir``, verifying its checksum.

        Raises:
            ArtifactNotFoundError: If the blob is unknown.
            StoreError: On HTTP failures or checksum mismatch.
        """
        validate_name(name)
        artifact = self._get_metadata(name)

        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / artifact.filename
        sha256 = hashlib.sha256()

        logger.info("Downloading %s to %s", name, dest)
        try:
            with self.client.stream(
                "GET", f"/artifacts/{name}/content", timeout=TRANSFER_TIMEOUT
            ) as response:
                if response.status_code == 404:
                    raise ArtifactNotFoundError(name)
                response.raise_for_status()
                with dest.open("wb") as f:
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
                        sha256.update(chunk)
        except httpx.HTTPError as e:
            dest.unlink(missing_ok=True)
            _raise_for(e, f"downloading {name}")

        checksum = sha256.hexdigest()
        if checksum != artifact.sha256:
            dest.unlink(missing_ok=True)
            raise StoreError(
                f"Checksum mismatch for {name}: expected {artifact.sha256}, "
                f"got {checksum}",
                code="checksum_mismatch",
            )
        return dest

    def list(self, pattern: str = "*") -> builtins.list[StoredArtifact]:
        """List live blobs matching a glob pattern."""
        try:
            response = self.client.get(
                "/artifacts", params={"pattern": pattern}, timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            _raise_for(e, f"listing {pattern}")

        data = self._metadata(response)
        if not isinstance(data, builtins.list):
            raise StoreError(
                "Artifact listing is not a JSON array", code="invalid_metadata"
            )
        return sorted((artifact_from_dict(item) for item in data), key=lambda a: a.name)

    def delete(self, name: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""
        validate_name(name)
        try:
            response = self.client.delete(f"/artifacts/{name}", timeout=REQUEST_TIMEOUT)
            if response.status_code == 404:
                return False
            response.raise_for_status()
        except httpx.HTTPError as e:
            _raise_for(e, f"deleting {name}")
        return True


__all__ = ["HttpArtifactStore"]
