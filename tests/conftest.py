"""Shared fixtures for the kata_static test suite.

Build steps are replaced by FakeBuildStep, which writes a small
kata-static-<asset>.tar.xz archive instead of compiling anything.
"""

import io
import tarfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from kata_static.assets.catalog import AssetSpec
from kata_static.config import Settings
from kata_static.db import Base, create_all_tables
from kata_static.pipeline.runner import BuildResult
from kata_static.pipeline.stage import RunConfig
from kata_static.types import Stage

VERSIONS_YAML = """\
assets:
  kernel:
    version: "v6.1.62"
  hypervisor:
    qemu:
      version: "v8.1.0"
externals:
  nydus:
    version: "v2.2.3"
"""


def make_asset_tarball(
    path: Path,
    asset: str,
    payload: bytes | None = None,
    extra: dict[str, bytes] | None = None,
) -> Path:
    """Write a minimal kata-static style tarball for one asset.

    The archive holds ``./opt/kata/share/<asset>/VERSION`` plus any extra
    files (member name -> content).
    """
    data = payload if payload is not None else f"{asset}\n".encode()
    files = {f"./opt/kata/share/{asset}/VERSION": data}
    files.update(extra or {})

    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:xz", preset=1) as tar:
        for name in (".", "./opt", "./opt/kata", "./opt/kata/share", f"./opt/kata/share/{asset}"):
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return path


class FakeBuildStep:
    """In-process build step producing synthetic artifacts.

    Args:
        fail: Assets whose build reports a non-zero exit.
        no_output: Assets that succeed without producing any file.
        raise_for: Assets whose build raises an unexpected exception.
    """

    def __init__(
        self,
        fail: set[str] | None = None,
        no_output: set[str] | None = None,
        raise_for: set[str] | None = None,
    ) -> None:
        self.fail = fail or set()
        self.no_output = no_output or set()
        self.raise_for = raise_for or set()
        self.calls: list[str] = []
        self.envs: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def __call__(
        self,
        asset: AssetSpec,
        env: dict[str, str],
        output_dir: Path,
        log_path: Path,
    ) -> BuildResult:
        with self._lock:
            self.calls.append(asset.name)
            self.envs[asset.name] = dict(env)

        if asset.name in self.raise_for:
            raise RuntimeError(f"boom in {asset.name}")

        output_dir.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"building {asset.name}\n")
        now = datetime.now(timezone.utc)

        if asset.name in self.fail:
            return BuildResult(
                asset=asset.name,
                success=False,
                exit_code=2,
                output_dir=output_dir,
                log_path=log_path,
                started_at=now,
                finished_at=now,
                command="fake",
                error_message="Build failed with exit code 2",
            )

        if asset.name not in self.no_output:
            make_asset_tarball(output_dir / asset.primary_filename, asset.name)
        return BuildResult(
            asset=asset.name,
            success=True,
            exit_code=0,
            output_dir=output_dir,
            log_path=log_path,
            started_at=now,
            finished_at=now,
            command="fake",
        )


@pytest.fixture
def fake_step() -> FakeBuildStep:
    """A build step where every asset succeeds."""
    return FakeBuildStep()


@pytest.fixture
def test_config() -> RunConfig:
    """Run configuration for a test-stage run."""
    return RunConfig(stage=Stage.TEST, commit_ref="0123abcd")


@pytest.fixture
def release_config() -> RunConfig:
    """Run configuration for a release-stage run."""
    return RunConfig(stage=Stage.RELEASE, commit_ref="0123abcd")


@pytest.fixture
def versions_file(tmp_path: Path) -> Path:
    """A small version manifest."""
    path = tmp_path / "versions.yaml"
    path.write_text(VERSIONS_YAML)
    return path


@pytest.fixture
def settings(tmp_path: Path, versions_file: Path) -> Settings:
    """Settings pointing every directory into tmp_path."""
    source_dir = tmp_path / "src"
    source_dir.mkdir()
    return Settings(
        source_dir=source_dir,
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "out",
        store_dir=tmp_path / "store",
        db_url="sqlite:///:memory:",
        versions_file=versions_file,
        store_url=None,
        catalog_path=None,
        max_concurrent_builds=8,
    )


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    create_all_tables(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def commit_check():
    """Treat the source tree as checked out at whichever commit a run requests.

    tmp_path source trees are not git checkouts; tests of the check itself
    live in test_pipeline_source.py.
    """
    with patch(
        "kata_static.pipeline.service.verify_commit_ref",
        side_effect=lambda source_dir, commit_ref, timeout=60: commit_ref,
    ) as verify:
        yield verify
