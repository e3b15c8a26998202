"""Manifest-driven merge of per-asset artifacts.

This module handles:
- Loading the version manifest (versions.yaml)
- Verifying the collected artifact set against the expected asset set
- Overlaying every artifact's payload into one xz-compressed tarball
- Embedding version metadata at the top level of the tarball
- Atomic publication of the merged tarball

Given the same artifacts and manifest the output is byte-identical:
members are emitted in a fixed order, generated files carry a pinned
timestamp and ownership, and xz streams carry no timestamp.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import posixpath
import tarfile
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

import yaml

from kata_static.assets.catalog import DEFAULT_CATALOG
from kata_static.errors import ManifestMismatchError, MergeError
from kata_static.pipeline.collector import retention_predicate
from kata_static.store.base import HASH_CHUNK_SIZE, compute_file_hash

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from kata_static.assets.catalog import AssetCatalog
    from kata_static.pipeline.collector import ArtifactRecord
    from kata_static.types import Stage

logger = logging.getLogger(__name__)

MERGED_TARBALL_NAME = "kata-static.tar.xz"
VERSIONS_MEMBER = "versions.yaml"
METADATA_MEMBER = "kata-static-manifest.json"
METADATA_SCHEMA_VERSION = "1"

# File mode of the published tarball
PUBLISHED_MODE = 0o644

RESERVED_MEMBERS = frozenset({VERSIONS_MEMBER, METADATA_MEMBER})


@dataclass(frozen=True)
class VersionManifest:
    """Key to version mapping supplied at merge time.

    Attributes:
        entries: Flattened dotted keys to version strings.
        raw: Manifest file content, embedded verbatim in the tarball.
        source: Path the manifest was read from, if any.
    """

    entries: Mapping[str, str]
    raw: bytes
    source: Path | None = None
    sha256: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sha256", hashlib.sha256(self.raw).hexdigest())

    def get(self, key: str) -> str | None:
        """Return the version recorded under a dotted key."""
        return self.entries.get(key)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class MergedTarball:
    """The merged deliverable of a run.

    Attributes:
        path: Canonical output path.
        contained_assets: Assets whose payload is in the tarball.
        sha256: SHA-256 of the tarball.
        size_bytes: Size of the tarball.
    """

    path: Path
    contained_assets: frozenset[str]
    sha256: str
    size_bytes: int


def _flatten(data: Any, prefix: str = "") -> dict[str, str]:
    entries: dict[str, str] = {}
    if isinstance(data, Mapping):
        for key, value in data.items():
            child = f"{prefix}.{key}" if prefix else str(key)
            entries.update(_flatten(value, child))
    elif isinstance(data, list):
        for index, value in enumerate(data):
            entries.update(_flatten(value, f"{prefix}.{index}"))
    elif prefix:
        entries[prefix] = "" if data is None else str(data)
    return entries


def parse_version_manifest(raw: bytes, source: Path | None = None) -> VersionManifest:
    """Parse version manifest content.

    Raises:
        MergeError: If the content is not a non-empty YAML mapping.
    """
    label = str(source) if source else "<manifest>"
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise MergeError(
            f"Cannot parse version manifest {label}: {e}", code="invalid_manifest"
        ) from e
    if not isinstance(data, dict) or not data:
        raise MergeError(
            f"Version manifest {label} must be a non-empty mapping",
            code="invalid_manifest",
        )
    return VersionManifest(entries=_flatten(data), raw=raw, source=source)


def load_version_manifest(path: Path) -> VersionManifest:
    """Load the version manifest from a YAML file.

    Raises:
        MergeError: If the file is missing or invalid.
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        raise MergeError(
            f"Version manifest not found: {path}", code="manifest_not_found"
        ) from None
    manifest = parse_version_manifest(raw, source=path)
    logger.info("Loaded version manifest %s (%d entries)", path, len(manifest))
    return manifest


def expected_assets(stage: Stage, catalog: AssetCatalog | None = None) -> set[str]:
    """Return the assets a complete merged tarball must contain for a stage."""
    if catalog is None:
        catalog = DEFAULT_CATALOG
    return {
        a.name
        for a in catalog.list_assets(stage)
        if retention_predicate(a.name, stage, catalog)
    }


def verify_completeness(
    records: Iterable[ArtifactRecord],
    stage: Stage,
    catalog: AssetCatalog | None = None,
) -> list[ArtifactRecord]:
    """Check retained records against the expected asset set.

    Records from a different stage and duplicate records count as
    unexpected.

    Returns:
        Retained records sorted by asset name.

    Raises:
        ManifestMismatchError: Naming every missing and unexpected asset.
    """
    expected = expected_assets(stage, catalog)
    retained = sorted((r for r in records if r.retained), key=lambda r: r.asset_name)

    seen: set[str] = set()
    unexpected: set[str] = set()
    for record in retained:
        if record.stage != stage or record.asset_name in seen:
            unexpected.add(record.asset_name)
        seen.add(record.asset_name)
    unexpected |= seen - expected
    missing = expected - seen

    if missing or unexpected:
        raise ManifestMismatchError(missing=missing, unexpected=unexpected)
    return retained


def _member_key(asset: str, member: tarfile.TarInfo) -> str:
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        raise MergeError(
            f"Refusing to merge {member.name} from {asset}: path traversal detected",
            code="path_traversal",
        )
    if not (member.isfile() or member.isdir() or member.issym() or member.islnk()):
        raise MergeError(
            f"Unsupported member type in {asset}: {member.name}",
            code="unsupported_member",
        )
    return posixpath.normpath(member.name)


def _hash_member(tar: tarfile.TarFile, member: tarfile.TarInfo) -> str:
    sha256 = hashlib.sha256()
    extracted = tar.extractfile(member)
    if extracted is None:
        return sha256.hexdigest()
    with extracted:
        while chunk := extracted.read(HASH_CHUNK_SIZE):
            sha256.update(chunk)
    return sha256.hexdigest()


@dataclass
class _Owner:
    asset: str
    member: tarfile.TarInfo
    digest: str | None


def _identity(owner: _Owner) -> tuple[str, str | None]:
    member = owner.member
    if member.isdir():
        return ("dir", None)
    if member.issym() or member.islnk():
        return ("link", member.linkname)
    return ("file", owner.digest)


def plan_merge(records: Sequence[ArtifactRecord]) -> dict[str, set[str]]:
    """Index every member of every artifact and resolve overlaps.

    Directories shared between assets are emitted once; identical files
    and links are tolerated; differing files at the same path are a
    conflict.

    Returns:
        Mapping of asset name to the member names it contributes.

    Raises:
        MergeError: On unreadable archives, unsafe paths or conflicts.
    """
    owners: dict[str, _Owner] = {}
    plan: dict[str, set[str]] = {}

    for record in records:
        asset = record.asset_name
        emitted: set[str] = set()
        try:
            with tarfile.open(record.path, "r:*") as tar:
                for member in tar.getmembers():
                    key = _member_key(asset, member)
                    if key == ".":
                        continue
                    if key in RESERVED_MEMBERS:
                        raise MergeError(
                            f"{asset} ships reserved top-level file {key}",
                            code="reserved_member",
                        )
                    digest = _hash_member(tar, member) if member.isfile() else None
                    candidate = _Owner(asset, member, digest)
                    previous = owners.get(key)
                    if previous is None:
                        owners[key] = candidate
                        emitted.add(member.name)
                    elif _identity(previous) != _identity(candidate):
                        raise MergeError(
                            f"Conflicting content for {key} in "
                            f"{previous.asset} and {asset}",
                            code="merge_conflict",
                        )
        except (tarfile.TarError, OSError) as e:
            raise MergeError(
                f"Cannot read artifact of {asset} ({record.path}): {e}",
                code="invalid_artifact",
            ) from e
        plan[asset] = emitted
    return plan


def _generated_member(name: str, data: bytes, mtime: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = mtime
    info.mode = 0o644
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def build_metadata(
    records: Sequence[ArtifactRecord],
    manifest: VersionManifest,
    stage: Stage,
) -> dict[str, Any]:
    """Build the top-level metadata document describing the merged tarball."""
    return {
        "schema_version": METADATA_SCHEMA_VERSION,
        "stage": stage.value,
        "versions_sha256": manifest.sha256,
        "assets": {
            r.asset_name: {
                "artifact": r.path.name,
                "sha256": compute_file_hash(r.path),
            }
            for r in records
        },
    }


def _write_tarball(
    fileobj: Any,
    records: Sequence[ArtifactRecord],
    plan: dict[str, set[str]],
    manifest: VersionManifest,
    metadata: dict[str, Any],
    mtime: int,
) -> None:
    with tarfile.open(fileobj=fileobj, mode="w:xz", format=tarfile.PAX_FORMAT) as out:
        for record in records:
            wanted = plan[record.asset_name]
            with tarfile.open(record.path, "r:*") as tar:
                for member in tar.getmembers():
                    if member.name not in wanted:
                        continue
                    if member.isfile():
                        out.addfile(member, tar.extractfile(member))
                    else:
                        out.addfile(member)

        versions = _generated_member(VERSIONS_MEMBER, manifest.raw, mtime)
        out.addfile(versions, io.BytesIO(manifest.raw))

        payload = json.dumps(metadata, indent=2, sort_keys=True).encode() + b"\n"
        info = _generated_member(METADATA_MEMBER, payload, mtime)
        out.addfile(info, io.BytesIO(payload))


def merge(
    records: Iterable[ArtifactRecord],
    manifest: VersionManifest,
    output_path: Path,
    stage: Stage,
    catalog: AssetCatalog | None = None,
    source_date_epoch: int = 0,
) -> MergedTarball:
    """Merge collected artifacts into the canonical tarball.

    The tarball is written to a temporary file next to ``output_path`` and
    renamed into place, so the canonical path holds either the previous
    tarball or the complete new one.

    Args:
        records: Collected artifact records of the run.
        manifest: Version manifest embedded at the top level.
        output_path: Canonical output path.
        stage: Stage of the run.
        catalog: Catalog defining the expected asset set.
        source_date_epoch: Timestamp for generated members.

    Returns:
        MergedTarball describing the published file.

    Raises:
        ManifestMismatchError: If the retained set is not the expected set.
        MergeError: If the artifacts cannot be merged.
    """
    retained = verify_completeness(records, stage, catalog)
    plan = plan_merge(retained)
    metadata = build_metadata(retained, manifest, stage)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=output_path.parent,
        prefix=f".{output_path.name}.",
        suffix=".tmp",
        delete=False,
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)
        try:
            _write_tarball(tmp_file, retained, plan, manifest, metadata, source_date_epoch)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            # NamedTemporaryFile creates 0600; publish world-readable
            os.chmod(tmp_path, PUBLISHED_MODE)
        except BaseException:
            tmp_file.close()
            tmp_path.unlink(missing_ok=True)
            raise

    try:
        os.replace(tmp_path, output_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise MergeError(
            f"Cannot publish merged tarball to {output_path}: {e}",
            code="publish_error",
        ) from e

    contained = frozenset(plan)
    expected = expected_assets(stage, catalog)
    if contained != expected:
        # verify_completeness already guarantees this; keep the invariant explicit
        raise ManifestMismatchError(
            missing=expected - contained, unexpected=contained - expected
        )

    merged = MergedTarball(
        path=output_path,
        contained_assets=contained,
        sha256=compute_file_hash(output_path),
        size_bytes=output_path.stat().st_size,
    )
    logger.info(
        "Merged %d assets into %s (%d bytes)",
        len(contained),
        output_path,
        merged.size_bytes,
    )
    return merged


def read_contained_assets(path: Path) -> frozenset[str]:
    """Read the asset set recorded in a merged tarball's metadata.

    Raises:
        MergeError: If the tarball has no readable metadata.
    """
    try:
        with tarfile.open(path, "r:*") as tar:
            member = tar.getmember(METADATA_MEMBER)
            extracted = tar.extractfile(member)
            if extracted is None:
                raise MergeError(f"{METADATA_MEMBER} is not a file in {path}")
            metadata = json.load(extracted)
    except KeyError:
        raise MergeError(
            f"{path} has no {METADATA_MEMBER}", code="invalid_tarball"
        ) from None
    except (tarfile.TarError, OSError, ValueError) as e:
        raise MergeError(f"Cannot read {path}: {e}", code="invalid_tarball") from e
    return frozenset(metadata.get("assets", {}))


__all__ = [
    "MERGED_TARBALL_NAME",
    "METADATA_MEMBER",
    "VERSIONS_MEMBER",
    "MergedTarball",
    "VersionManifest",
    "build_metadata",
    "expected_assets",
    "load_version_manifest",
    "merge",
    "parse_version_manifest",
    "plan_merge",
    "read_contained_assets",
    "verify_completeness",
]
