"""Artifact collection.

This module handles:
- The stage-aware retention predicate
- Deriving ArtifactRecords from terminal build tasks
- Uploading retained artifacts to the artifact store
- Recording which stored artifacts belong to the latest run
- Fetching that run's artifacts back from the store for a standalone merge
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kata_static.assets.catalog import DEFAULT_CATALOG
from kata_static.errors import ArtifactMissingError, ManifestMismatchError, StoreError
from kata_static.types import Stage

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from kata_static.assets.catalog import AssetCatalog
    from kata_static.pipeline.executor import BuildTask
    from kata_static.pipeline.stage import RunConfig
    from kata_static.store.base import ArtifactStore
    from kata_static.types import StoredArtifact

logger = logging.getLogger(__name__)

# File name of the run index inside the run directory
INDEX_FILENAME = "kata-static-index.json"


@dataclass(frozen=True)
class ArtifactRecord:
    """A collected artifact of one succeeded build task.

    Attributes:
        asset_name: Asset the artifact belongs to.
        stage: Stage of the run.
        path: Primary artifact file in the staging area.
        retained: Whether the artifact is kept as a standalone deliverable.
    """

    asset_name: str
    stage: Stage
    path: Path
    retained: bool


def retention_predicate(
    asset_name: str,
    stage: Stage,
    catalog: AssetCatalog | None = None,
) -> bool:
    """Decide whether an asset's artifact is kept as a standalone deliverable.

    In release stage, artifacts of assets that ship embedded in other
    artifacts (agent, guest components, pause image) are not retained.

    Raises:
        UnknownAssetError: If the asset is not in the catalog.
    """
    if catalog is None:
        catalog = DEFAULT_CATALOG
    asset = catalog.get(asset_name)
    return not (stage is Stage.RELEASE and asset.embedded_in_release)


def collect(
    tasks: Iterable[BuildTask],
    catalog: AssetCatalog | None = None,
) -> list[ArtifactRecord]:
    """Collect artifact records from terminal build tasks.

    Only succeeded tasks contribute; a failed or abandoned task records
    nothing. Calling this twice on the same tasks yields the same records.

    Args:
        tasks: Build tasks after the barrier.
        catalog: Catalog used by the retention predicate.

    Returns:
        Records sorted by asset name.

    Raises:
        ArtifactMissingError: If a retained artifact is not on disk.
    """
    records: list[ArtifactRecord] = []
    for task in tasks:
        if not task.is_succeeded():
            continue
        if task.artifact_path is None:
            raise ArtifactMissingError(task.name)

        retained = retention_predicate(task.name, task.config.stage, catalog)
        if retained and not task.artifact_path.is_file():
            raise ArtifactMissingError(
                task.name,
                f"Artifact of {task.name} is absent at collection time: "
                f"{task.artifact_path}",
            )
        records.append(
            ArtifactRecord(
                asset_name=task.name,
                stage=task.config.stage,
                path=task.artifact_path,
                retained=retained,
            )
        )

    records.sort(key=lambda r: r.asset_name)
    logger.info(
        "Collected %d artifacts (%d retained)",
        len(records),
        sum(1 for r in records if r.retained),
    )
    return records


def store_artifacts(
    records: Iterable[ArtifactRecord],
    store: ArtifactStore,
    config: RunConfig,
    retention_days: int,
) -> list[StoredArtifact]:
    """Upload every retained artifact under its per-asset store name.

    Raises:
        ArtifactMissingError: If a retained artifact file is absent.
    """
    stored: list[StoredArtifact] = []
    for record in records:
        if not record.retained:
            logger.debug("Not storing %s: embedded in release", record.asset_name)
            continue
        if not record.path.is_file():
            raise ArtifactMissingError(record.asset_name)
        name = config.artifact_name(record.asset_name)
        stored.append(store.put(name, record.path, retention_days=retention_days))
        logger.info("Stored %s as %s", record.path.name, name)
    return stored


def asset_from_artifact_name(name: str, config: RunConfig) -> str | None:
    """Recover the asset name from a per-asset store name.

    Returns:
        Asset name, or None if the name does not belong to this run.
    """
    prefix = config.artifact_prefix
    suffix = config.tarball_suffix
    if not name.startswith(prefix):
        return None
    asset = name[len(prefix) :]
    if suffix:
        if not asset.endswith(suffix):
            return None
        asset = asset[: -len(suffix)]
    return asset or None


@dataclass(frozen=True)
class RunIndex:
    """The per-asset artifacts stored by one run.

    Per-asset blobs outlive the run that stored them, so a later merge
    uses the index to accept only the blobs of the latest run.

    Attributes:
        run_id: Ledger id of the run that stored the artifacts.
        stage: Stage of that run.
        commit_ref: Commit the run built.
        artifacts: Asset name to SHA-256 of its stored artifact.
    """

    run_id: int
    stage: Stage
    commit_ref: str | None
    artifacts: Mapping[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "commit_ref": self.commit_ref,
            "artifacts": dict(sorted(self.artifacts.items())),
        }

    @classmethod
    def from_dict(cls, data: Any) -> RunIndex:
        try:
            return cls(
                run_id=int(data["run_id"]),
                stage=Stage(data["stage"]),
                commit_ref=data.get("commit_ref"),
                artifacts={str(k): str(v) for k, v in data["artifacts"].items()},
            )
        except (TypeError, KeyError, ValueError, AttributeError) as e:
            raise StoreError(f"Invalid run index: {e}", code="invalid_metadata") from e


def store_run_index(
    stored: Iterable[StoredArtifact],
    store: ArtifactStore,
    config: RunConfig,
    run_id: int,
    index_dir: Path,
    retention_days: int,
) -> RunIndex:
    """Record which per-asset blobs belong to a run.

    Written after every run, including partial and failed ones, so that a
    later merge never picks up blobs an older run left behind.

    Returns:
        The stored index.
    """
    artifacts: dict[str, str] = {}
    for artifact in stored:
        asset = asset_from_artifact_name(artifact.name, config)
        if asset is not None:
            artifacts[asset] = artifact.sha256
    index = RunIndex(
        run_id=run_id,
        stage=config.stage,
        commit_ref=config.commit_ref or None,
        artifacts=artifacts,
    )

    index_dir.mkdir(parents=True, exist_ok=True)
    path = index_dir / INDEX_FILENAME
    path.write_text(json.dumps(index.to_dict(), indent=2, sort_keys=True))
    store.put(config.index_artifact_name, path, retention_days=retention_days)
    logger.info(
        "Stored index of run %d (%d artifacts) as %s",
        run_id,
        len(artifacts),
        config.index_artifact_name,
    )
    return index


def fetch_run_index(store: ArtifactStore, config: RunConfig, dest_dir: Path) -> RunIndex:
    """Download the index of the latest run that stored artifacts.

    Raises:
        ArtifactNotFoundError: If no run stored an index under this name.
        StoreError: If the index cannot be parsed.
    """
    path = store.get(config.index_artifact_name, dest_dir)
    try:
        data = json.loads(path.read_text())
    except ValueError as e:
        raise StoreError(
            f"Invalid run index {config.index_artifact_name}: {e}",
            code="invalid_metadata",
        ) from e
    return RunIndex.from_dict(data)


def fetch_artifacts(
    store: ArtifactStore,
    config: RunConfig,
    dest_dir: Path,
    index: RunIndex,
) -> list[ArtifactRecord]:
    """Download the per-asset artifacts a run's index lists.

    Each blob lands in its own ``dest_dir/<asset>/`` directory. Records are
    marked retained since only retained artifacts are ever stored. A blob
    the index does not list, or whose digest differs from the indexed one,
    was left by another run.

    Returns:
        Records sorted by asset name.

    Raises:
        ManifestMismatchError: If the stored blobs are not exactly the
            ones the index lists for this stage.
    """
    if index.stage is not config.stage:
        raise ManifestMismatchError(
            missing=[],
            unexpected=[f"{a} ({index.stage.value} run)" for a in index.artifacts],
        )

    listed: dict[str, StoredArtifact] = {}
    unexpected: list[str] = []
    for stored in store.list(config.artifact_pattern):
        asset = asset_from_artifact_name(stored.name, config)
        if asset is None:
            logger.warning("Ignoring foreign artifact %s", stored.name)
            continue
        if index.artifacts.get(asset) != stored.sha256:
            unexpected.append(asset)
            continue
        listed[asset] = stored
    missing = [a for a in index.artifacts if a not in listed and a not in unexpected]
    if missing or unexpected:
        raise ManifestMismatchError(missing=missing, unexpected=unexpected)

    records: list[ArtifactRecord] = []
    for asset, stored in listed.items():
        path = store.get(stored.name, dest_dir / asset)
        records.append(
            ArtifactRecord(
                asset_name=asset,
                stage=config.stage,
                path=path,
                retained=True,
            )
        )
    records.sort(key=lambda r: r.asset_name)
    logger.info(
        "Fetched %d artifacts of run %d matching %s",
        len(records),
        index.run_id,
        config.artifact_pattern,
    )
    return records


__all__ = [
    "INDEX_FILENAME",
    "ArtifactRecord",
    "RunIndex",
    "asset_from_artifact_name",
    "collect",
    "fetch_artifacts",
    "fetch_run_index",
    "retention_predicate",
    "store_artifacts",
    "store_run_index",
]
