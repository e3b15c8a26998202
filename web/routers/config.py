"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from kata_static.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Registry credentials are reported only as configured or not.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "arch": settings.arch,
        "source_dir": str(settings.source_dir),
        "work_dir": str(settings.work_dir),
        "output_dir": str(settings.output_dir),
        "store_dir": str(settings.store_dir),
        "store_url": settings.store_url,
        "db_url": settings.db_url,
        "versions_file": str(settings.resolve_versions_file()),
        "catalog_path": str(settings.catalog_path) if settings.catalog_path else None,
        "log_level": settings.log_level,
        "build_command": settings.build_command,
        "max_concurrent_builds": settings.max_concurrent_builds,
        "registry": settings.registry,
        "registry_credentials": settings.registry_username is not None,
        "retention_days": settings.retention_days,
        "source_date_epoch": settings.source_date_epoch,
        "build_timeout": settings.build_timeout,
        "sync_timeout": settings.sync_timeout,
    }
