"""Artifact stores for per-asset artifacts and merged tarballs."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from kata_static.config import get_settings
from kata_static.store.base import ArtifactStore, compute_file_hash
from kata_static.store.http import HttpArtifactStore
from kata_static.store.local import LocalArtifactStore

if TYPE_CHECKING:
    from kata_static.config import Settings


def get_store(settings: Settings | None = None) -> ArtifactStore:
    """Return the configured artifact store.

    A remote store is used when ``store_url`` is set; otherwise blobs are
    kept under ``store_dir``.
    """
    if settings is None:
        settings = get_settings()
    if settings.store_url:
        client = httpx.Client(base_url=settings.store_url, follow_redirects=True)
        return HttpArtifactStore(client)
    return LocalArtifactStore(
        settings.store_dir, default_retention_days=settings.retention_days
    )


__all__ = [
    "ArtifactStore",
    "HttpArtifactStore",
    "LocalArtifactStore",
    "compute_file_hash",
    "get_store",
]
