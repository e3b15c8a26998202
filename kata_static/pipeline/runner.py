"""Per-asset build step execution.

This module handles:
- Materializing the environment of one asset build
- Composing the build command from the configured template
- Executing the opaque build step with subprocess
- Capturing stdout/stderr to a per-asset log file
- Enforcing build timeouts
- Relocating produced artifacts into the asset's staging directory
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from kata_static.errors import ArtifactMissingError, BuildFailure

if TYPE_CHECKING:
    from kata_static.assets.catalog import AssetSpec
    from kata_static.pipeline.stage import RunConfig

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = "make {target}"


@dataclass
class BuildResult:
    """Result of one asset build step.

    Attributes:
        asset: Asset name.
        success: Whether the build step reported success.
        exit_code: Process exit code.
        output_dir: Asset-scoped directory the step wrote its files to.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if the build failed.
    """

    asset: str
    success: bool
    exit_code: int
    output_dir: Path
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


class BuildStep(Protocol):
    """Callable running one asset's opaque build."""

    def __call__(
        self,
        asset: AssetSpec,
        env: dict[str, str],
        output_dir: Path,
        log_path: Path,
    ) -> BuildResult: ...


def build_environment(
    asset: AssetSpec,
    config: RunConfig,
    output_dir: Path,
) -> dict[str, str]:
    """Materialize the environment variables for one asset build.

    Registry credentials are only included when pushing is enabled.

    Args:
        asset: Asset being built.
        config: Run configuration.
        output_dir: Asset-scoped output directory.

    Returns:
        Environment overrides for the build step.
    """
    env = {
        "KATA_ASSET": asset.name,
        "TAR_OUTPUT": f"{asset.name}.tar.gz",
        "RELEASE": config.release_flag,
        "PUSH_TO_REGISTRY": config.push_flag,
        "TARGET_BRANCH": config.target_branch or "",
        "KATA_BUILD_DIR": str(output_dir),
    }
    if config.push_to_registry and config.registry_credentials is not None:
        creds = config.registry_credentials
        env["ARTEFACT_REGISTRY"] = creds.registry
        env["ARTEFACT_REGISTRY_USERNAME"] = creds.username
        env["ARTEFACT_REGISTRY_PASSWORD"] = creds.password.get_secret_value()
    return env


def compose_build_command(
    asset: AssetSpec,
    template: str = DEFAULT_COMMAND_TEMPLATE,
) -> list[str]:
    """Compose the build command for an asset.

    Args:
        asset: Asset being built.
        template: Command template; ``{asset}`` and ``{target}`` are expanded.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    expanded = template.format(asset=asset.name, target=asset.make_target)
    return shlex.split(expanded)


def run_asset_build(
    asset: AssetSpec,
    source_dir: Path,
    output_dir: Path,
    log_path: Path,
    env_override: dict[str, str] | None = None,
    command_template: str = DEFAULT_COMMAND_TEMPLATE,
    timeout: int | None = None,
) -> BuildResult:
    """Execute the build step of one asset.

    Args:
        asset: Asset to build.
        source_dir: Source tree the command runs in.
        output_dir: Asset-scoped output directory.
        log_path: Path of the build log.
        env_override: Environment variable overrides.
        command_template: Build command template.
        timeout: Build timeout in seconds (None = no timeout).

    Returns:
        BuildResult with execution details.

    Raises:
        BuildFailure: If the build times out or cannot be started.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = compose_build_command(asset, command_template)
    cmd_str = shlex.join(cmd)
    logger.info("[%s] Executing build: %s", asset.name, cmd_str)
    logger.debug("[%s] Output directory: %s", asset.name, output_dir)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Asset: {asset.name}\n")
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {source_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env: dict[str, str] | None = None
            if env_override:
                env = dict(os.environ)
                env.update(env_override)

            result = subprocess.run(
                cmd,
                cwd=source_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Build failed with exit code {exit_code}"
                logger.error(
                    "[%s] %s. See log: %s", asset.name, error_message, log_path
                )

    except subprocess.TimeoutExpired as e:
        error_message = f"Build timed out after {timeout} seconds"
        logger.error("[%s] %s. See log: %s", asset.name, error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise BuildFailure(
            asset.name,
            error_message,
            exit_code=-1,
            log_path=log_path,
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute build: {e}"
        logger.error("[%s] %s", asset.name, error_message)
        raise BuildFailure(
            asset.name,
            error_message,
            log_path=log_path,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return BuildResult(
        asset=asset.name,
        success=success,
        exit_code=exit_code,
        output_dir=output_dir,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


class MakeBuildStep:
    """Default build step: run the command template in the source tree."""

    def __init__(
        self,
        source_dir: Path,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        timeout: int | None = None,
    ) -> None:
        self.source_dir = source_dir
        self.command_template = command_template
        self.timeout = timeout

    def __call__(
        self,
        asset: AssetSpec,
        env: dict[str, str],
        output_dir: Path,
        log_path: Path,
    ) -> BuildResult:
        return run_asset_build(
            asset,
            source_dir=self.source_dir,
            output_dir=output_dir,
            log_path=log_path,
            env_override=env,
            command_template=self.command_template,
            timeout=self.timeout,
        )


def find_artifacts(output_dir: Path, asset: AssetSpec) -> list[Path]:
    """List files in an output directory matching the asset's naming convention.

    Args:
        output_dir: Directory the build step wrote to.
        asset: Asset whose output glob is applied.

    Returns:
        Matching files, sorted by name.
    """
    if not output_dir.is_dir():
        return []
    return sorted(p for p in output_dir.glob(asset.output_glob) if p.is_file())


def relocate_artifacts(output_dir: Path, staging_dir: Path, asset: AssetSpec) -> Path:
    """Move an asset's produced artifacts into its staging directory.

    Args:
        output_dir: Directory the build step wrote to.
        staging_dir: Asset-scoped staging directory.
        asset: Asset that was built.

    Returns:
        Path of the primary artifact in the staging directory: the canonical
        ``kata-static-<asset>.tar.xz`` when produced, otherwise the single match.

    Raises:
        ArtifactMissingError: If nothing matches, or several files match and
            none is the canonical one.
    """
    produced = find_artifacts(output_dir, asset)
    if not produced:
        raise ArtifactMissingError(
            asset.name,
            f"Build of {asset.name} reported success but produced no file "
            f"matching {asset.output_glob} in {output_dir}",
        )

    staging_dir.mkdir(parents=True, exist_ok=True)
    relocated: list[Path] = []
    for path in produced:
        dest = staging_dir / path.name
        # store-artifact does not work with symlinks; copy the resolved file
        if path.is_symlink():
            shutil.copy2(path.resolve(), dest)
            path.unlink()
        else:
            shutil.move(str(path), str(dest))
        relocated.append(dest)
        logger.debug("[%s] Relocated %s -> %s", asset.name, path.name, dest)

    primary = staging_dir / asset.primary_filename
    if primary in relocated:
        return primary
    if len(relocated) == 1:
        return relocated[0]
    raise ArtifactMissingError(
        asset.name,
        f"Build of {asset.name} produced {len(relocated)} files but no "
        f"{asset.primary_filename}",
    )


__all__ = [
    "DEFAULT_COMMAND_TEMPLATE",
    "BuildResult",
    "BuildStep",
    "MakeBuildStep",
    "build_environment",
    "compose_build_command",
    "find_artifacts",
    "relocate_artifacts",
    "run_asset_build",
]
