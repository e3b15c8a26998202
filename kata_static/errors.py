"""Error taxonomy for kata_static.

Every error carries a stable ``code`` so front ends (CLI, web, MCP) can
map failures without parsing messages.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path


class KataStaticError(Exception):
    """Base error for kata_static operations."""

    def __init__(self, message: str, code: str = "kata_static_error") -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(KataStaticError):
    """Raised for invalid run configuration, before any build starts."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message, code=code)


class UnknownAssetError(ConfigurationError):
    """Raised when an asset name is not part of the catalog."""

    def __init__(self, asset: str) -> None:
        super().__init__(f"Unknown asset: {asset}", code="unknown_asset")
        self.asset = asset


class SourceSyncError(ConfigurationError):
    """Raised when the source tree cannot be prepared for the run."""

    def __init__(self, message: str, code: str = "source_sync_error") -> None:
        super().__init__(message, code=code)


class BuildFailure(KataStaticError):
    """Raised when one asset's build step exits abnormally."""

    def __init__(
        self,
        asset: str,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
        code: str = "build_failed",
    ) -> None:
        super().__init__(f"{asset}: {message}", code=code)
        self.asset = asset
        self.exit_code = exit_code
        self.log_path = log_path


class ArtifactMissingError(KataStaticError):
    """Raised when a required artifact file is absent."""

    def __init__(self, asset: str, message: str | None = None) -> None:
        super().__init__(
            message or f"No artifact produced for asset: {asset}",
            code="artifact_missing",
        )
        self.asset = asset


class ArtifactNotFoundError(KataStaticError):
    """Raised when a named artifact is not present in the store."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Artifact not found in store: {name}", code="artifact_not_found")
        self.name = name


class StoreError(KataStaticError):
    """Raised when the artifact store cannot complete an operation."""

    def __init__(self, message: str, code: str = "store_error") -> None:
        super().__init__(message, code=code)


class ManifestMismatchError(KataStaticError):
    """Raised when collected artifacts do not match the expected asset set."""

    def __init__(self, missing: Iterable[str], unexpected: Iterable[str]) -> None:
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        parts: list[str] = []
        if self.missing:
            parts.append(f"missing assets: {', '.join(self.missing)}")
        if self.unexpected:
            parts.append(f"unexpected assets: {', '.join(self.unexpected)}")
        super().__init__(
            "Artifact set does not match the expected assets ("
            + "; ".join(parts)
            + ")",
            code="manifest_mismatch",
        )


class MergeError(KataStaticError):
    """Raised when artifacts cannot be assembled into the merged tarball."""

    def __init__(self, message: str, code: str = "merge_error") -> None:
        super().__init__(message, code=code)


__all__ = [
    "ArtifactMissingError",
    "ArtifactNotFoundError",
    "BuildFailure",
    "ConfigurationError",
    "KataStaticError",
    "ManifestMismatchError",
    "MergeError",
    "SourceSyncError",
    "StoreError",
    "UnknownAssetError",
]
