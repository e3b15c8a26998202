"""Build pipeline: stage parameters, parallel builds, collection and merge."""

from kata_static.pipeline.collector import ArtifactRecord, collect, retention_predicate
from kata_static.pipeline.executor import BuildTask, execute_all
from kata_static.pipeline.merge import (
    MERGED_TARBALL_NAME,
    MergedTarball,
    VersionManifest,
    load_version_manifest,
    merge,
)
from kata_static.pipeline.stage import RunConfig, RunInputs, build_run_config

__all__ = [
    "MERGED_TARBALL_NAME",
    "ArtifactRecord",
    "BuildTask",
    "MergedTarball",
    "RunConfig",
    "RunInputs",
    "VersionManifest",
    "build_run_config",
    "collect",
    "execute_all",
    "load_version_manifest",
    "merge",
    "retention_predicate",
]
