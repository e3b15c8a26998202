"""Artifact store interface.

This module handles:
- The ArtifactStore protocol shared by all store adapters
- Blob name validation
- Checksums and metadata serialisation for stored artifacts
"""

from __future__ import annotations

import fnmatch
import hashlib
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from kata_static.errors import StoreError
from kata_static.types import StoredArtifact

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ArtifactStore(Protocol):
    """Generic put/get blob store keyed by name."""

    def put(
        self, name: str, path: Path, retention_days: int | None = None
    ) -> StoredArtifact:
        """Upload a file under a name, replacing any previous blob."""
        ...

    def get(self, name: str, dest_dir: Path) -> Path:
        """Download a blob into dest_dir and return the written file."""
        ...

    def list(self, pattern: str = "*") -> list[StoredArtifact]:
        """List live blobs whose names match a glob pattern."""
        ...

    def delete(self, name: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""
        ...


def validate_name(name: str) -> str:
    """Check that a blob name is a single safe path component.

    Raises:
        StoreError: If the name is empty or contains path separators.
    """
    if not _NAME_RE.match(name) or ".." in name:
        raise StoreError(f"Invalid artifact name: {name!r}", code="invalid_name")
    return name


def matches(name: str, pattern: str) -> bool:
    """Glob-match a blob name (case-sensitive)."""
    return fnmatch.fnmatchcase(name, pattern)


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def artifact_to_dict(artifact: StoredArtifact) -> dict[str, Any]:
    """Serialise stored artifact metadata to a JSON-compatible dict."""
    return {
        "name": artifact.name,
        "filename": artifact.filename,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "expires_at": artifact.expires_at.isoformat() if artifact.expires_at else None,
    }


def artifact_from_dict(data: dict[str, Any]) -> StoredArtifact:
    """Parse stored artifact metadata.

    Raises:
        StoreError: If required fields are missing or malformed.
    """
    try:
        expires_at = data.get("expires_at")
        return StoredArtifact(
            name=str(data["name"]),
            filename=str(data["filename"]),
            size_bytes=int(data["size_bytes"]),
            sha256=str(data["sha256"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise StoreError(
            f"Malformed artifact metadata: {e}", code="invalid_metadata"
        ) from e


__all__ = [
    "HASH_CHUNK_SIZE",
    "ArtifactStore",
    "artifact_from_dict",
    "artifact_to_dict",
    "compute_file_hash",
    "matches",
    "validate_name",
]
