"""Tests for artifact collection."""

from pathlib import Path

import pytest

from kata_static.assets.catalog import DEFAULT_CATALOG
from kata_static.errors import (
    ArtifactMissingError,
    ArtifactNotFoundError,
    ManifestMismatchError,
    StoreError,
    UnknownAssetError,
)
from kata_static.pipeline.collector import (
    ArtifactRecord,
    asset_from_artifact_name,
    collect,
    RunIndex,
    fetch_artifacts,
    fetch_run_index,
    retention_predicate,
    store_artifacts,
    store_run_index,
)
from kata_static.pipeline.executor import BuildTask, execute_all
from kata_static.pipeline.stage import RunConfig
from kata_static.store.local import LocalArtifactStore
from kata_static.types import Stage

from tests.conftest import FakeBuildStep, make_asset_tarball

EMBEDDED = {"agent", "coco-guest-components", "pause-image"}


def _seed(
    store: LocalArtifactStore, config: RunConfig, tmp_path: Path, names: list[str]
) -> RunIndex:
    stored = []
    for name in names:
        path = make_asset_tarball(tmp_path / "src" / name / f"kata-static-{name}.tar.xz", name)
        stored.append(store.put(config.artifact_name(name), path))
    return store_run_index(stored, store, config, 7, tmp_path / "run", retention_days=1)


def _built(config: RunConfig, tmp_path: Path, names: list[str], **step_kwargs) -> list[BuildTask]:
    assets = [DEFAULT_CATALOG.get(n) for n in names]
    return execute_all(
        assets, config, FakeBuildStep(**step_kwargs), tmp_path / "w", tmp_path / "s"
    )


class TestRetentionPredicate:
    """Tests for the stage-aware retention rule."""

    def test_everything_retained_in_test(self) -> None:
        assert all(retention_predicate(n, Stage.TEST) for n in DEFAULT_CATALOG.names())

    def test_embedded_dropped_in_release(self) -> None:
        dropped = {
            a.name
            for a in DEFAULT_CATALOG.list_assets(Stage.RELEASE)
            if not retention_predicate(a.name, Stage.RELEASE)
        }
        assert dropped == EMBEDDED

    def test_release_retains_27(self) -> None:
        retained = [
            a.name
            for a in DEFAULT_CATALOG.list_assets(Stage.RELEASE)
            if retention_predicate(a.name, Stage.RELEASE)
        ]
        assert len(retained) == 27

    def test_unknown_asset(self) -> None:
        with pytest.raises(UnknownAssetError):
            retention_predicate("mystery", Stage.TEST)


class TestCollect:
    """Tests for collect."""

    def test_records_sorted_and_flagged(
        self, release_config: RunConfig, tmp_path: Path
    ) -> None:
        tasks = _built(release_config, tmp_path, ["qemu", "agent", "kernel"])

        records = collect(tasks)

        assert [r.asset_name for r in records] == ["agent", "kernel", "qemu"]
        assert {r.asset_name: r.retained for r in records} == {
            "agent": False,
            "kernel": True,
            "qemu": True,
        }
        assert all(r.stage is Stage.RELEASE for r in records)
        assert all(r.path.is_file() for r in records)

    def test_failed_tasks_contribute_nothing(
        self, test_config: RunConfig, tmp_path: Path
    ) -> None:
        tasks = _built(test_config, tmp_path, ["qemu", "kernel"], fail={"kernel"})

        records = collect(tasks)

        assert [r.asset_name for r in records] == ["qemu"]

    def test_idempotent(self, test_config: RunConfig, tmp_path: Path) -> None:
        """Collecting the same tasks twice yields the same records."""
        tasks = _built(test_config, tmp_path, ["qemu", "kernel", "nydus"])
        assert collect(tasks) == collect(tasks)

    def test_retained_artifact_vanished(
        self, test_config: RunConfig, tmp_path: Path
    ) -> None:
        tasks = _built(test_config, tmp_path, ["qemu"])
        assert tasks[0].artifact_path is not None
        tasks[0].artifact_path.unlink()

        with pytest.raises(ArtifactMissingError) as exc_info:
            collect(tasks)
        assert exc_info.value.asset == "qemu"


class TestStoreArtifacts:
    """Tests for uploading retained artifacts."""

    def test_only_retained_are_stored(
        self, release_config: RunConfig, tmp_path: Path
    ) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        records = collect(_built(release_config, tmp_path, ["agent", "kernel"]))

        stored = store_artifacts(records, store, release_config, retention_days=15)

        assert [s.name for s in stored] == ["kata-artifacts-amd64-kernel"]
        assert [a.name for a in store.list()] == ["kata-artifacts-amd64-kernel"]
        assert stored[0].expires_at is not None

    def test_suffix_applied(self, tmp_path: Path) -> None:
        config = RunConfig(commit_ref="abc", tarball_suffix="-pr7")
        store = LocalArtifactStore(tmp_path / "store")
        records = collect(_built(config, tmp_path, ["nydus"]))

        store_artifacts(records, store, config, retention_days=1)

        assert [a.name for a in store.list()] == ["kata-artifacts-amd64-nydus-pr7"]

    def test_missing_file(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        record = ArtifactRecord("qemu", Stage.TEST, tmp_path / "gone.tar.xz", True)
        with pytest.raises(ArtifactMissingError):
            store_artifacts([record], store, test_config, retention_days=1)


class TestFetchArtifacts:
    """Tests for fetching a run's artifacts back from the store."""

    def test_asset_from_artifact_name(self) -> None:
        config = RunConfig(commit_ref="abc", tarball_suffix="-rc1")
        assert asset_from_artifact_name("kata-artifacts-amd64-qemu-rc1", config) == "qemu"
        assert (
            asset_from_artifact_name("kata-artifacts-amd64-kernel-nvidia-gpu-rc1", config)
            == "kernel-nvidia-gpu"
        )
        assert asset_from_artifact_name("kata-artifacts-amd64-qemu", config) is None
        assert asset_from_artifact_name("kata-artifacts-arm64-qemu-rc1", config) is None

    def test_fetch_into_per_asset_dirs(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        index = _seed(store, test_config, tmp_path, ["qemu", "kernel"])
        other = make_asset_tarball(tmp_path / "src" / "merged.tar.xz", "merged")
        store.put("kata-static-tarball-amd64", other)

        records = fetch_artifacts(store, test_config, tmp_path / "fetched", index)

        assert [r.asset_name for r in records] == ["kernel", "qemu"]
        assert records[0].path == tmp_path / "fetched" / "kernel" / "kata-static-kernel.tar.xz"
        assert all(r.retained and r.stage is Stage.TEST for r in records)

    def test_blob_not_in_index(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        index = _seed(store, test_config, tmp_path, ["qemu"])
        stale = make_asset_tarball(tmp_path / "old" / "kata-static-kernel.tar.xz", "kernel")
        store.put(test_config.artifact_name("kernel"), stale)

        with pytest.raises(ManifestMismatchError) as exc_info:
            fetch_artifacts(store, test_config, tmp_path / "fetched", index)

        assert exc_info.value.unexpected == ["kernel"]
        assert exc_info.value.missing == []
        assert not (tmp_path / "fetched").exists()

    def test_blob_replaced_after_index(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        index = _seed(store, test_config, tmp_path, ["qemu", "kernel"])
        other = make_asset_tarball(
            tmp_path / "other" / "kata-static-qemu.tar.xz", "qemu", payload=b"other\n"
        )
        store.put(test_config.artifact_name("qemu"), other)

        with pytest.raises(ManifestMismatchError) as exc_info:
            fetch_artifacts(store, test_config, tmp_path / "fetched", index)

        assert exc_info.value.unexpected == ["qemu"]

    def test_indexed_blob_gone(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        index = _seed(store, test_config, tmp_path, ["qemu", "kernel"])
        store.delete(test_config.artifact_name("kernel"))

        with pytest.raises(ManifestMismatchError) as exc_info:
            fetch_artifacts(store, test_config, tmp_path / "fetched", index)

        assert exc_info.value.missing == ["kernel"]


class TestRunIndex:
    """Tests for the per-run artifact index."""

    def test_stored_and_fetched(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        stored = _seed(store, test_config, tmp_path, ["qemu", "kernel"])

        index = fetch_run_index(store, test_config, tmp_path / "fetched")

        assert index == stored
        assert index.run_id == 7
        assert index.stage is Stage.TEST
        assert index.commit_ref == "0123abcd"
        assert sorted(index.artifacts) == ["kernel", "qemu"]
        assert index.artifacts["qemu"] == store.describe("kata-artifacts-amd64-qemu").sha256
        assert (tmp_path / "run" / "kata-static-index.json").is_file()

    def test_index_name_follows_suffix(self, tmp_path: Path) -> None:
        config = RunConfig(commit_ref="abc", tarball_suffix="-rc1")
        store = LocalArtifactStore(tmp_path / "store")
        _seed(store, config, tmp_path, ["qemu"])

        assert [a.name for a in store.list("kata-static-index-*")] == [
            "kata-static-index-amd64-rc1"
        ]

    def test_no_index_stored(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        with pytest.raises(ArtifactNotFoundError):
            fetch_run_index(store, test_config, tmp_path / "fetched")

    def test_corrupt_index(self, test_config: RunConfig, tmp_path: Path) -> None:
        store = LocalArtifactStore(tmp_path / "store")
        bad = tmp_path / "kata-static-index.json"
        bad.write_text('{"run_id": 1}')
        store.put(test_config.index_artifact_name, bad)

        with pytest.raises(StoreError) as exc_info:
            fetch_run_index(store, test_config, tmp_path / "fetched")

        assert exc_info.value.code == "invalid_metadata"
