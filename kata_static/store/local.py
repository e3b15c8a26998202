"""Filesystem-backed artifact store.

Each blob lives in its own directory under the store root::

    <root>/<name>/<filename>
    <root>/<name>/metadata.json

A blob directory is assembled under a temporary name and renamed into
place, so readers see either the previous blob or the complete new one.
"""

from __future__ import annotations

import builtins
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from kata_static.errors import ArtifactMissingError, ArtifactNotFoundError, StoreError
from kata_static.store.base import (
    artifact_from_dict,
    artifact_to_dict,
    compute_file_hash,
    matches,
    validate_name,
)
from kata_static.types import StoredArtifact

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"


class LocalArtifactStore:
    """Artifact store keeping blobs in a local directory tree."""

    def __init__(self, root: Path, default_retention_days: int | None = None) -> None:
        self.root = root
        self.default_retention_days = default_retention_days

    def __repr__(self) -> str:
        return f"LocalArtifactStore(root={self.root!r})"

    def _blob_dir(self, name: str) -> Path:
        return self.root / validate_name(name)

    def _read_metadata(self, name: str) -> StoredArtifact | None:
        meta_path = self._blob_dir(name) / METADATA_FILENAME
        try:
            data = json.loads(meta_path.read_text())
        except FileNotFoundError:
            return None
        except ValueError as e:
            raise StoreError(
                f"Corrupt metadata for {name}: {e}", code="invalid_metadata"
            ) from e
        return artifact_from_dict(data)

    def put(
        self, name: str, path: Path, retention_days: int | None = None
    ) -> StoredArtifact:
        """Copy a file into the store under ``name``.

        Args:
            name: Blob name.
            path: File to store.
            retention_days: Days until the blob expires (None = store default).

        Returns:
            Metadata of the stored blob.

        Raises:
            ArtifactMissingError: If the file does not exist.
        """
        blob_dir = self._blob_dir(name)
        if not path.is_file():
            raise ArtifactMissingError(name, f"Cannot store {name}: {path} does not exist")

        if retention_days is None:
            retention_days = self.default_retention_days
        expires_at = None
        if retention_days is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(days=retention_days)

        self.root.mkdir(parents=True, exist_ok=True)
        tmp_dir = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{name}."))
        try:
            shutil.copy2(path, tmp_dir / path.name)
            artifact = StoredArtifact(
                name=name,
                filename=path.name,
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(tmp_dir / path.name),
                expires_at=expires_at,
            )
            (tmp_dir / METADATA_FILENAME).write_text(
                json.dumps(artifact_to_dict(artifact), indent=2, sort_keys=True)
            )

            if blob_dir.exists():
                trash = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{name}.old."))
                os.replace(blob_dir, trash / "blob")
                os.replace(tmp_dir, blob_dir)
                shutil.rmtree(trash, ignore_errors=True)
            else:
                os.replace(tmp_dir, blob_dir)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        logger.debug("Stored %s (%d bytes) in %s", name, artifact.size_bytes, self.root)
        return artifact

    def describe(self, name: str) -> StoredArtifact:
        """Return metadata of a live blob.

        Raises:
            ArtifactNotFoundError: If the blob is unknown or expired.
        """
        artifact = self._read_metadata(name)
        if artifact is None or _is_expired(artifact, datetime.now(timezone.utc)):
            raise ArtifactNotFoundError(name)
        return artifact

    def blob_path(self, name: str) -> Path:
        """Return the on-disk path of a live blob."""
        artifact = self.describe(name)
        return self._blob_dir(name) / artifact.filename

    def get(self, name: str, dest_dir: Path) -> Path:
        """Copy a blob into ``dest_dir``.

        Raises:
            ArtifactNotFoundError: If the blob is unknown or expired.
            StoreError: If the stored file fails checksum verification.
        """
        artifact = self.describe(name)

        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / artifact.filename
        shutil.copy2(self._blob_dir(name) / artifact.filename, dest)

        checksum = compute_file_hash(dest)
        if checksum != artifact.sha256:
            dest.unlink(missing_ok=True)
            raise StoreError(
                f"Checksum mismatch for {name}: expected {artifact.sha256}, "
                f"got {checksum}",
                code="checksum_mismatch",
            )
        return dest

    def list(self, pattern: str = "*") -> list[StoredArtifact]:
        """List live blobs matching a glob pattern, sorted by name."""
        if not self.root.is_dir():
            return []
        now = datetime.now(timezone.utc)
        found: list[StoredArtifact] = []
        for entry in sorted(self.root.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            if not matches(entry.name, pattern):
                continue
            artifact = self._read_metadata(entry.name)
            if artifact is None or _is_expired(artifact, now):
                continue
            found.append(artifact)
        return found

    def delete(self, name: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""
        blob_dir = self._blob_dir(name)
        if not blob_dir.exists():
            return False
        shutil.rmtree(blob_dir)
        logger.debug("Deleted %s from %s", name, self.root)
        return True

    def prune_expired(self, now: datetime | None = None) -> builtins.list[str]:
        """Delete every blob whose retention has elapsed.

        Args:
            now: Reference time (defaults to the current UTC time).

        Returns:
            Names of deleted blobs.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if not self.root.is_dir():
            return []

        pruned: list[str] = []
        for entry in sorted(self.root.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            artifact = self._read_metadata(entry.name)
            if artifact is not None and _is_expired(artifact, now):
                self.delete(entry.name)
                pruned.append(entry.name)

        if pruned:
            logger.info("Pruned %d expired artifacts from %s", len(pruned), self.root)
        return pruned


def _is_expired(artifact: StoredArtifact, now: datetime) -> bool:
    return artifact.expires_at is not None and artifact.expires_at <= now


__all__ = ["METADATA_FILENAME", "LocalArtifactStore"]
