"""Configuration settings for kata_static.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default per-run working directory."""
    return Path.home() / ".cache" / "kata-static" / "work"


def _default_store_dir() -> Path:
    """Return the default local artifact store directory."""
    return Path.home() / ".local" / "share" / "kata-static" / "store"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "kata-static" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KATA_STATIC_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="KATA_STATIC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    arch: str = Field(
        default="amd64",
        description="Architecture the tarball is built for",
    )

    # Paths
    source_dir: Path = Field(
        default_factory=Path.cwd,
        description="Kata Containers source tree the build steps run in",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root for per-asset build outputs, logs and staging",
    )
    output_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory receiving the merged kata-static tarball",
    )
    store_dir: Path = Field(
        default_factory=_default_store_dir,
        description="Root directory of the local artifact store",
    )
    store_url: str | None = Field(
        default=None,
        description="Base URL of a remote artifact store (overrides store_dir)",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    versions_file: Path = Field(
        default=Path("versions.yaml"),
        description="Version manifest, relative to source_dir unless absolute",
    )
    catalog_path: Path | None = Field(
        default=None,
        description="Optional YAML asset catalog replacing the built-in one",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Build step
    build_command: str = Field(
        default="make {target}",
        description="Per-asset build command template ({asset}, {target})",
    )
    rebase_command: str = Field(
        default="./tests/git-helper.sh rebase-atop-of-the-latest-target-branch",
        description="Helper run in source_dir when a target branch is requested",
    )

    # Concurrency
    max_concurrent_builds: int | None = Field(
        default=None,
        ge=1,
        description="Maximum concurrent asset builds (unset = one per asset)",
    )

    # Registry
    registry: str = Field(
        default="quay.io",
        description="Registry pushed to when push-to-registry is enabled",
    )
    registry_username: str | None = Field(
        default=None,
        description="Registry username (required when pushing)",
    )
    registry_password: SecretStr | None = Field(
        default=None,
        description="Registry password or token (required when pushing)",
    )

    # Artifact store
    retention_days: int = Field(
        default=15,
        ge=1,
        description="Retention for stored per-asset and merged artifacts",
    )

    # Reproducibility
    source_date_epoch: int = Field(
        default=0,
        ge=0,
        description="Timestamp applied to generated files in the merged tarball",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=14400,
        ge=60,
        description="Timeout for a single asset build",
    )
    sync_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for the source rebase helper",
    )

    def resolve_versions_file(self) -> Path:
        """Return the version manifest path, anchored at source_dir."""
        if self.versions_file.is_absolute():
            return self.versions_file
        return self.source_dir / self.versions_file


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Secrets are masked by pydantic's SecretStr serialisation.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
