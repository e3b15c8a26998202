"""Tests for the manifest-driven merger."""

import io
import json
import os
import stat
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from kata_static.assets.catalog import DEFAULT_CATALOG, AssetCatalog, AssetSpec
from kata_static.errors import ManifestMismatchError, MergeError
from kata_static.pipeline.collector import ArtifactRecord, retention_predicate
from kata_static.pipeline.merge import (
    METADATA_MEMBER,
    VERSIONS_MEMBER,
    build_metadata,
    expected_assets,
    load_version_manifest,
    merge,
    parse_version_manifest,
    read_contained_assets,
    verify_completeness,
)
from kata_static.store.base import compute_file_hash
from kata_static.types import AssetKind, Stage

from tests.conftest import VERSIONS_YAML, make_asset_tarball

SMALL_CATALOG = AssetCatalog(
    [
        AssetSpec(name="alpha", kind=AssetKind.TOOL),
        AssetSpec(name="beta", kind=AssetKind.HYPERVISOR),
        AssetSpec(name="gamma", kind=AssetKind.AGENT, embedded_in_release=True),
        AssetSpec(
            name="delta", kind=AssetKind.TOOL, excluded_stages=frozenset({Stage.RELEASE})
        ),
    ],
    version="test",
)


@pytest.fixture
def manifest():
    return parse_version_manifest(VERSIONS_YAML.encode())


def _record(
    tmp_path: Path,
    name: str,
    stage: Stage = Stage.TEST,
    catalog: AssetCatalog = SMALL_CATALOG,
    **kwargs,
) -> ArtifactRecord:
    path = make_asset_tarball(
        tmp_path / "staging" / name / f"kata-static-{name}.tar.xz", name, **kwargs
    )
    return ArtifactRecord(
        asset_name=name,
        stage=stage,
        path=path,
        retained=retention_predicate(name, stage, catalog),
    )


def _records(tmp_path: Path, stage: Stage, catalog: AssetCatalog = SMALL_CATALOG):
    return [_record(tmp_path, a.name, stage, catalog) for a in catalog.list_assets(stage)]


def _raw_tarball(path: Path, members: list[tarfile.TarInfo], data: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:xz", preset=1) as tar:
        for info in members:
            if info.isfile():
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            else:
                tar.addfile(info)
    return path


class TestVersionManifest:
    """Tests for version manifest loading."""

    def test_flattened_keys(self, manifest) -> None:
        assert manifest.get("assets.kernel.version") == "v6.1.62"
        assert manifest.get("assets.hypervisor.qemu.version") == "v8.1.0"
        assert manifest.get("externals.nydus.version") == "v2.2.3"
        assert manifest.get("assets.missing") is None
        assert len(manifest) == 3

    def test_raw_kept_verbatim(self, manifest) -> None:
        assert manifest.raw == VERSIONS_YAML.encode()
        assert len(manifest.sha256) == 64

    def test_lists_are_indexed(self) -> None:
        manifest = parse_version_manifest(b"mirrors:\n  - a\n  - b\n")
        assert manifest.get("mirrors.1") == "b"

    def test_load_from_file(self, versions_file: Path) -> None:
        manifest = load_version_manifest(versions_file)
        assert manifest.source == versions_file
        assert manifest.get("assets.kernel.version") == "v6.1.62"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(MergeError) as exc_info:
            load_version_manifest(tmp_path / "versions.yaml")
        assert exc_info.value.code == "manifest_not_found"

    @pytest.mark.parametrize("raw", [b"", b"- a\n", b"key: [unclosed\n"])
    def test_invalid_content(self, raw: bytes) -> None:
        with pytest.raises(MergeError) as exc_info:
            parse_version_manifest(raw)
        assert exc_info.value.code == "invalid_manifest"


class TestExpectedAssets:
    """Tests for the expected asset set."""

    def test_default_catalog_test_stage(self) -> None:
        assert len(expected_assets(Stage.TEST)) == 31

    def test_default_catalog_release_stage(self) -> None:
        expected = expected_assets(Stage.RELEASE)
        assert len(expected) == 27
        assert not expected & {"agent", "coco-guest-components", "pause-image"}
        assert "cloud-hypervisor-glibc" not in expected

    def test_small_catalog(self) -> None:
        assert expected_assets(Stage.TEST, SMALL_CATALOG) == {"alpha", "beta", "gamma", "delta"}
        assert expected_assets(Stage.RELEASE, SMALL_CATALOG) == {"alpha", "beta"}


class TestVerifyCompleteness:
    """Tests for the completeness check."""

    def test_complete_set(self, tmp_path: Path) -> None:
        records = _records(tmp_path, Stage.RELEASE)
        retained = verify_completeness(records, Stage.RELEASE, SMALL_CATALOG)
        assert [r.asset_name for r in retained] == ["alpha", "beta"]

    def test_missing_asset_is_named(self, tmp_path: Path) -> None:
        """Dropping one record of a full catalog names exactly that asset."""
        records = [
            ArtifactRecord(name, Stage.TEST, tmp_path / f"{name}.tar.xz", True)
            for name in DEFAULT_CATALOG.names()
            if name != "kernel-confidential"
        ]
        with pytest.raises(ManifestMismatchError) as exc_info:
            verify_completeness(records, Stage.TEST)

        assert exc_info.value.missing == ["kernel-confidential"]
        assert exc_info.value.unexpected == []
        assert exc_info.value.code == "manifest_mismatch"
        assert "kernel-confidential" in str(exc_info.value)

    def test_full_default_catalog(self, tmp_path: Path) -> None:
        records = [
            ArtifactRecord(name, Stage.TEST, tmp_path / f"{name}.tar.xz", True)
            for name in DEFAULT_CATALOG.names()
        ]
        assert len(verify_completeness(records, Stage.TEST)) == 31

    def test_unexpected_asset(self, tmp_path: Path) -> None:
        records = _records(tmp_path, Stage.RELEASE)
        records.append(ArtifactRecord("omega", Stage.RELEASE, tmp_path / "o.tar.xz", True))
        with pytest.raises(ManifestMismatchError) as exc_info:
            verify_completeness(records, Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.unexpected == ["omega"]

    def test_non_retained_records_ignored(self, tmp_path: Path) -> None:
        """Embedded release artifacts are neither required nor unexpected."""
        records = _records(tmp_path, Stage.RELEASE)
        records.append(
            ArtifactRecord("gamma", Stage.RELEASE, tmp_path / "g.tar.xz", retained=False)
        )
        assert len(verify_completeness(records, Stage.RELEASE, SMALL_CATALOG)) == 2

    def test_wrong_stage_is_unexpected(self, tmp_path: Path) -> None:
        records = [
            ArtifactRecord("alpha", Stage.RELEASE, tmp_path / "a.tar.xz", True),
            ArtifactRecord("beta", Stage.TEST, tmp_path / "b.tar.xz", True),
        ]
        with pytest.raises(ManifestMismatchError) as exc_info:
            verify_completeness(records, Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.unexpected == ["beta"]

    def test_duplicate_is_unexpected(self, tmp_path: Path) -> None:
        records = _records(tmp_path, Stage.RELEASE)
        records.append(records[0])
        with pytest.raises(ManifestMismatchError) as exc_info:
            verify_completeness(records, Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.unexpected == ["alpha"]


class TestMerge:
    """Tests for merging artifacts into the canonical tarball."""

    def test_merged_contents(self, tmp_path: Path, manifest) -> None:
        records = _records(tmp_path, Stage.TEST)
        output = tmp_path / "out" / "kata-static.tar.xz"

        merged = merge(records, manifest, output, Stage.TEST, catalog=SMALL_CATALOG)

        assert merged.path == output
        assert merged.contained_assets == frozenset({"alpha", "beta", "gamma", "delta"})
        assert merged.sha256 == compute_file_hash(output)
        assert merged.size_bytes == output.stat().st_size

        with tarfile.open(output, "r:xz") as tar:
            names = tar.getnames()
            assert len(names) == len(set(names))
            for asset in ("alpha", "beta", "gamma", "delta"):
                member = tar.extractfile(f"./opt/kata/share/{asset}/VERSION")
                assert member is not None
                assert member.read() == f"{asset}\n".encode()
            versions = tar.extractfile(VERSIONS_MEMBER)
            assert versions is not None
            assert versions.read() == VERSIONS_YAML.encode()
            metadata_file = tar.extractfile(METADATA_MEMBER)
            assert metadata_file is not None
            metadata = json.load(metadata_file)

        assert metadata["stage"] == "test"
        assert metadata["versions_sha256"] == manifest.sha256
        assert sorted(metadata["assets"]) == ["alpha", "beta", "delta", "gamma"]
        assert read_contained_assets(output) == merged.contained_assets

    def test_release_excludes_embedded(self, tmp_path: Path, manifest) -> None:
        records = [
            _record(tmp_path, name, Stage.RELEASE) for name in ("alpha", "beta", "gamma")
        ]
        output = tmp_path / "kata-static.tar.xz"

        merged = merge(records, manifest, output, Stage.RELEASE, catalog=SMALL_CATALOG)

        assert merged.contained_assets == frozenset({"alpha", "beta"})
        with tarfile.open(output, "r:xz") as tar:
            assert "./opt/kata/share/gamma/VERSION" not in tar.getnames()

    def test_reproducible(self, tmp_path: Path, manifest) -> None:
        """Identical inputs give a byte-identical tarball."""
        records = _records(tmp_path, Stage.TEST)

        first = merge(records, manifest, tmp_path / "a" / "k.tar.xz", Stage.TEST, SMALL_CATALOG)
        second = merge(
            list(reversed(records)),
            manifest,
            tmp_path / "b" / "k.tar.xz",
            Stage.TEST,
            SMALL_CATALOG,
        )

        assert first.sha256 == second.sha256

    def test_generated_members_pinned(self, tmp_path: Path, manifest) -> None:
        output = tmp_path / "k.tar.xz"
        merge(
            _records(tmp_path, Stage.TEST),
            manifest,
            output,
            Stage.TEST,
            SMALL_CATALOG,
            source_date_epoch=1700000000,
        )
        with tarfile.open(output, "r:xz") as tar:
            for name in (VERSIONS_MEMBER, METADATA_MEMBER):
                info = tar.getmember(name)
                assert info.mtime == 1700000000
                assert info.uid == 0
                assert info.uname == "root"

    def test_incomplete_set_leaves_output_untouched(self, tmp_path: Path, manifest) -> None:
        output = tmp_path / "kata-static.tar.xz"
        output.write_bytes(b"previous")
        records = _records(tmp_path, Stage.TEST)[:-1]

        with pytest.raises(ManifestMismatchError):
            merge(records, manifest, output, Stage.TEST, SMALL_CATALOG)

        assert output.read_bytes() == b"previous"

    def test_identical_shared_file_tolerated(self, tmp_path: Path, manifest) -> None:
        shared = {"./opt/kata/share/defaults/LICENSE": b"Apache-2.0\n"}
        records = [
            _record(tmp_path, "alpha", Stage.RELEASE, extra=shared),
            _record(tmp_path, "beta", Stage.RELEASE, extra=shared),
        ]
        output = tmp_path / "k.tar.xz"

        merge(records, manifest, output, Stage.RELEASE, SMALL_CATALOG)

        with tarfile.open(output, "r:xz") as tar:
            assert tar.getnames().count("./opt/kata/share/defaults/LICENSE") == 1

    def test_conflicting_file_rejected(self, tmp_path: Path, manifest) -> None:
        records = [
            _record(
                tmp_path, "alpha", Stage.RELEASE, extra={"./opt/kata/bin/tool": b"one"}
            ),
            _record(
                tmp_path, "beta", Stage.RELEASE, extra={"./opt/kata/bin/tool": b"two"}
            ),
        ]
        output = tmp_path / "k.tar.xz"

        with pytest.raises(MergeError) as exc_info:
            merge(records, manifest, output, Stage.RELEASE, SMALL_CATALOG)

        assert exc_info.value.code == "merge_conflict"
        assert "alpha" in str(exc_info.value)
        assert "beta" in str(exc_info.value)
        assert not output.exists()

    def test_path_traversal_rejected(self, tmp_path: Path, manifest) -> None:
        evil = _raw_tarball(
            tmp_path / "alpha.tar.xz", [tarfile.TarInfo("../../etc/passwd")]
        )
        records = [
            ArtifactRecord("alpha", Stage.RELEASE, evil, True),
            _record(tmp_path, "beta", Stage.RELEASE),
        ]
        with pytest.raises(MergeError) as exc_info:
            merge(records, manifest, tmp_path / "k.tar.xz", Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.code == "path_traversal"

    def test_absolute_path_rejected(self, tmp_path: Path, manifest) -> None:
        evil = _raw_tarball(tmp_path / "alpha.tar.xz", [tarfile.TarInfo("/etc/passwd")])
        records = [
            ArtifactRecord("alpha", Stage.RELEASE, evil, True),
            _record(tmp_path, "beta", Stage.RELEASE),
        ]
        with pytest.raises(MergeError) as exc_info:
            merge(records, manifest, tmp_path / "k.tar.xz", Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.code == "path_traversal"

    def test_reserved_member_rejected(self, tmp_path: Path, manifest) -> None:
        records = [
            _record(tmp_path, "alpha", Stage.RELEASE, extra={"./versions.yaml": b"x: 1\n"}),
            _record(tmp_path, "beta", Stage.RELEASE),
        ]
        with pytest.raises(MergeError) as exc_info:
            merge(records, manifest, tmp_path / "k.tar.xz", Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.code == "reserved_member"

    def test_device_member_rejected(self, tmp_path: Path, manifest) -> None:
        device = tarfile.TarInfo("./dev/null")
        device.type = tarfile.CHRTYPE
        records = [
            ArtifactRecord(
                "alpha", Stage.RELEASE, _raw_tarball(tmp_path / "a.tar.xz", [device]), True
            ),
            _record(tmp_path, "beta", Stage.RELEASE),
        ]
        with pytest.raises(MergeError) as exc_info:
            merge(records, manifest, tmp_path / "k.tar.xz", Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.code == "unsupported_member"

    def test_unreadable_artifact(self, tmp_path: Path, manifest) -> None:
        broken = tmp_path / "alpha.tar.xz"
        broken.write_bytes(b"not a tarball")
        records = [
            ArtifactRecord("alpha", Stage.RELEASE, broken, True),
            _record(tmp_path, "beta", Stage.RELEASE),
        ]
        with pytest.raises(MergeError) as exc_info:
            merge(records, manifest, tmp_path / "k.tar.xz", Stage.RELEASE, SMALL_CATALOG)
        assert exc_info.value.code == "invalid_artifact"


class TestMergeAtomicity:
    """The canonical path holds either the old tarball or the complete new one."""

    def test_crash_while_writing(self, tmp_path: Path, manifest) -> None:
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        output = out_dir / "kata-static.tar.xz"
        output.write_bytes(b"previous")

        with (
            patch(
                "kata_static.pipeline.merge._write_tarball",
                side_effect=RuntimeError("killed"),
            ),
            pytest.raises(RuntimeError),
        ):
            merge(_records(tmp_path, Stage.TEST), manifest, output, Stage.TEST, SMALL_CATALOG)

        assert output.read_bytes() == b"previous"
        assert sorted(os.listdir(out_dir)) == ["kata-static.tar.xz"]

    def test_publish_failure(self, tmp_path: Path, manifest) -> None:
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        output = out_dir / "kata-static.tar.xz"
        output.write_bytes(b"previous")

        with (
            patch(
                "kata_static.pipeline.merge.os.replace",
                side_effect=OSError("read-only file system"),
            ),
            pytest.raises(MergeError) as exc_info,
        ):
            merge(_records(tmp_path, Stage.TEST), manifest, output, Stage.TEST, SMALL_CATALOG)

        assert exc_info.value.code == "publish_error"
        assert output.read_bytes() == b"previous"
        assert sorted(os.listdir(out_dir)) == ["kata-static.tar.xz"]

    def test_replaces_previous_tarball(self, tmp_path: Path, manifest) -> None:
        output = tmp_path / "kata-static.tar.xz"
        output.write_bytes(b"previous")

        merged = merge(_records(tmp_path, Stage.TEST), manifest, output, Stage.TEST, SMALL_CATALOG)

        assert output.read_bytes() != b"previous"
        assert read_contained_assets(output) == merged.contained_assets

    def test_published_tarball_is_world_readable(self, tmp_path: Path, manifest) -> None:
        output = tmp_path / "out" / "kata-static.tar.xz"

        merge(_records(tmp_path, Stage.TEST), manifest, output, Stage.TEST, SMALL_CATALOG)

        assert stat.S_IMODE(output.stat().st_mode) == 0o644


class TestReadContainedAssets:
    """Tests for reading metadata back from a tarball."""

    def test_no_metadata(self, tmp_path: Path) -> None:
        path = make_asset_tarball(tmp_path / "plain.tar.xz", "alpha")
        with pytest.raises(MergeError) as exc_info:
            read_contained_assets(path)
        assert exc_info.value.code == "invalid_tarball"

    def test_not_a_tarball(self, tmp_path: Path) -> None:
        path = tmp_path / "junk.tar.xz"
        path.write_bytes(b"junk")
        with pytest.raises(MergeError):
            read_contained_assets(path)

    def test_build_metadata(self, tmp_path: Path, manifest) -> None:
        records = _records(tmp_path, Stage.RELEASE)[:2]
        metadata = build_metadata(records, manifest, Stage.RELEASE)
        assert metadata["schema_version"] == "1"
        assert metadata["assets"]["alpha"] == {
            "artifact": "kata-static-alpha.tar.xz",
            "sha256": compute_file_hash(records[0].path),
        }
