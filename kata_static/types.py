"""Shared type definitions for kata_static.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Stage(str, Enum):
    """Build mode of a pipeline run."""

    TEST = "test"
    RELEASE = "release"


class TaskStatus(str, Enum):
    """Status of a single asset build task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineStatus(str, Enum):
    """Terminal (or in-flight) status of a pipeline run.

    ``partial`` means some assets built but at least one failed, so the
    merge was not attempted.
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


class AssetKind(str, Enum):
    """Tag for the family an asset belongs to."""

    AGENT = "agent"
    GUEST_COMPONENTS = "guest-components"
    HYPERVISOR = "hypervisor"
    FIRMWARE = "firmware"
    KERNEL = "kernel"
    ROOTFS = "rootfs"
    SHIM = "shim"
    TOOL = "tool"
    IMAGE = "image"


@dataclass(frozen=True)
class StoredArtifact:
    """Metadata of a blob held by an artifact store."""

    name: str
    filename: str
    size_bytes: int
    sha256: str
    expires_at: datetime | None = None


__all__ = [
    "AssetKind",
    "PipelineStatus",
    "Stage",
    "StoredArtifact",
    "TaskStatus",
]
