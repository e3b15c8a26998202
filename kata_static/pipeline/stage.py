"""Stage parameterizer.

This module handles:
- Raw pipeline inputs as received from a workflow call or CLI
- Yes/no token parsing
- Registry credential resolution
- Deriving the immutable RunConfig shared by every build task

All validation happens here so that a doomed run fails before any
build time is spent.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from kata_static.config import get_settings
from kata_static.errors import ConfigurationError, StoreError
from kata_static.pipeline.source import resolve_commit_ref
from kata_static.store.base import validate_name
from kata_static.types import Stage

if TYPE_CHECKING:
    from kata_static.config import Settings

logger = logging.getLogger(__name__)

TRUTHY_TOKENS = frozenset({"yes", "y", "true", "1", "on"})
FALSY_TOKENS = frozenset({"no", "n", "false", "0", "off", ""})


class RunInputs(BaseModel):
    """Raw top-level invocation parameters.

    Values are kept as received; interpretation happens in build_run_config.
    """

    model_config = ConfigDict(extra="forbid")

    stage: str = "test"
    tarball_suffix: str = ""
    push_to_registry: str = "no"
    commit_ref: str = ""
    target_branch: str = ""


class RegistryCredentials(BaseModel):
    """Username/password pair for the container registry."""

    model_config = ConfigDict(frozen=True)

    registry: str
    username: str
    password: SecretStr


class RunConfig(BaseModel):
    """Effective configuration of one pipeline run. Immutable."""

    model_config = ConfigDict(frozen=True)

    stage: Stage = Stage.TEST
    target_branch: str | None = None
    push_to_registry: bool = False
    tarball_suffix: str = ""
    commit_ref: str
    arch: str = "amd64"
    registry_credentials: RegistryCredentials | None = Field(
        default=None, exclude=True, repr=False
    )

    @property
    def release_flag(self) -> str:
        """Value of the RELEASE variable passed to build steps."""
        return "yes" if self.stage is Stage.RELEASE else "no"

    @property
    def push_flag(self) -> str:
        """Value of the PUSH_TO_REGISTRY variable passed to build steps."""
        return "yes" if self.push_to_registry else "no"

    @property
    def artifact_prefix(self) -> str:
        """Store-name prefix shared by all per-asset artifacts of this arch."""
        return f"kata-artifacts-{self.arch}-"

    def artifact_name(self, asset: str) -> str:
        """Store name of one asset's artifact."""
        return f"{self.artifact_prefix}{asset}{self.tarball_suffix}"

    @property
    def artifact_pattern(self) -> str:
        """Store pattern matching every per-asset artifact of this run."""
        return f"{self.artifact_prefix}*{self.tarball_suffix}"

    @property
    def tarball_artifact_name(self) -> str:
        """Store name of the merged tarball."""
        return f"kata-static-tarball-{self.arch}{self.tarball_suffix}"

    @property
    def index_artifact_name(self) -> str:
        """Store name of the index listing the artifacts of the latest run."""
        return f"kata-static-index-{self.arch}{self.tarball_suffix}"


def parse_flag(token: str | bool | None, name: str = "flag") -> bool:
    """Interpret a yes/no style input token.

    Args:
        token: Raw token; booleans pass through, None means false.
        name: Input name used in error messages.

    Returns:
        Parsed boolean.

    Raises:
        ConfigurationError: If the token is not a recognised yes/no value.
    """
    if token is None:
        return False
    if isinstance(token, bool):
        return token
    normalized = token.strip().lower()
    if normalized in TRUTHY_TOKENS:
        return True
    if normalized in FALSY_TOKENS:
        return False
    raise ConfigurationError(
        f"Invalid value for {name}: {token!r} (expected yes or no)",
        code="invalid_flag",
    )


def parse_stage(value: str | Stage | None) -> Stage:
    """Interpret the stage input, defaulting to test.

    Raises:
        ConfigurationError: If the stage is not test or release.
    """
    if value is None:
        return Stage.TEST
    if isinstance(value, Stage):
        return value
    normalized = value.strip().lower()
    if not normalized:
        return Stage.TEST
    try:
        return Stage(normalized)
    except ValueError:
        valid = ", ".join(s.value for s in Stage)
        raise ConfigurationError(
            f"Invalid stage: {value!r} (valid values: {valid})",
            code="invalid_stage",
        ) from None


def resolve_registry_credentials(
    settings: Settings | None = None,
) -> RegistryCredentials | None:
    """Resolve registry credentials from settings.

    Returns:
        Credentials, or None if either part is missing.
    """
    if settings is None:
        settings = get_settings()
    if not settings.registry_username or settings.registry_password is None:
        return None
    if not settings.registry_password.get_secret_value():
        return None
    return RegistryCredentials(
        registry=settings.registry,
        username=settings.registry_username,
        password=settings.registry_password,
    )


def _check_store_names(config: RunConfig) -> None:
    names = (
        config.artifact_name("asset"),
        config.tarball_artifact_name,
        config.index_artifact_name,
    )
    try:
        for name in names:
            validate_name(name)
    except StoreError as e:
        raise ConfigurationError(
            f"Invalid tarball suffix {config.tarball_suffix!r}: {e}",
            code="invalid_suffix",
        ) from e


def build_run_config(
    inputs: RunInputs,
    settings: Settings | None = None,
    resolve_commit: bool = True,
) -> RunConfig:
    """Derive the effective run configuration from raw inputs.

    Args:
        inputs: Raw invocation parameters.
        settings: Application settings.
        resolve_commit: Resolve an empty commit_ref from the source tree.

    Returns:
        Immutable RunConfig.

    Raises:
        ConfigurationError: On an invalid stage or flag, on missing registry
            credentials when pushing, or when the commit cannot be resolved.
    """
    if settings is None:
        settings = get_settings()

    stage = parse_stage(inputs.stage)
    push = parse_flag(inputs.push_to_registry, "push-to-registry")

    credentials: RegistryCredentials | None = None
    if push:
        credentials = resolve_registry_credentials(settings)
        if credentials is None:
            raise ConfigurationError(
                f"Pushing to {settings.registry} requested but registry "
                "credentials are not configured",
                code="missing_credentials",
            )

    commit_ref = inputs.commit_ref.strip()
    if not commit_ref and resolve_commit:
        commit_ref = resolve_commit_ref(settings.source_dir)

    config = RunConfig(
        stage=stage,
        target_branch=inputs.target_branch.strip() or None,
        push_to_registry=push,
        tarball_suffix=inputs.tarball_suffix.strip(),
        commit_ref=commit_ref,
        arch=settings.arch,
        registry_credentials=credentials,
    )
    _check_store_names(config)
    logger.info(
        "Run configuration: stage=%s arch=%s commit=%s push=%s suffix=%r branch=%s",
        config.stage.value,
        config.arch,
        config.commit_ref,
        config.push_flag,
        config.tarball_suffix,
        config.target_branch or "-",
    )
    return config


__all__ = [
    "FALSY_TOKENS",
    "TRUTHY_TOKENS",
    "RegistryCredentials",
    "RunConfig",
    "RunInputs",
    "build_run_config",
    "parse_flag",
    "parse_stage",
    "resolve_registry_credentials",
]
