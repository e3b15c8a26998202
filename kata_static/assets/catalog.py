"""Asset identity registry.

This module handles:
- The immutable AssetSpec type and its build-step descriptor
- Exhaustive catalog validation at construction time
- The built-in amd64 catalog
- Stage-aware asset listing

The catalog is a versioned configuration table. Changing it is a code or
catalog-file edit, never a runtime mutation.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from kata_static.errors import ConfigurationError, UnknownAssetError
from kata_static.types import AssetKind, Stage

# Bump whenever the built-in asset table changes
CATALOG_VERSION = "1"

ARTIFACT_PREFIX = "kata-static-"


def default_make_target(name: str) -> str:
    """Return the make target building an asset tarball."""
    return f"{name}-tarball"


def default_output_glob(name: str) -> str:
    """Return the glob matching the files an asset build produces."""
    return f"{ARTIFACT_PREFIX}{name}*.tar.*"


@dataclass(frozen=True)
class AssetSpec:
    """One independently buildable asset.

    Attributes:
        name: Unique asset identifier (e.g. 'kernel-confidential').
        kind: Family tag of the asset.
        excluded_stages: Stages in which the asset is not built at all.
        embedded_in_release: In release stage the artifact ships inside other
            artifacts and is not kept as a standalone deliverable.
        make_target: Build target passed to the build command.
        output_glob: Pattern matching the produced artifact file(s).
    """

    name: str
    kind: AssetKind
    excluded_stages: frozenset[Stage] = field(default_factory=frozenset)
    embedded_in_release: bool = False
    make_target: str = ""
    output_glob: str = ""

    def __post_init__(self) -> None:
        # Fill in descriptor defaults derived from the name
        if not self.make_target:
            object.__setattr__(self, "make_target", default_make_target(self.name))
        if not self.output_glob:
            object.__setattr__(self, "output_glob", default_output_glob(self.name))

    @property
    def primary_filename(self) -> str:
        """Canonical filename of the asset's uploadable artifact."""
        return f"{ARTIFACT_PREFIX}{self.name}.tar.xz"

    def is_built_in(self, stage: Stage) -> bool:
        """Check if the asset is built for a stage."""
        return stage not in self.excluded_stages


def validate_catalog(assets: Iterable[AssetSpec]) -> None:
    """Validate a set of asset specs exhaustively.

    Args:
        assets: Asset specs to validate.

    Raises:
        ConfigurationError: On the first invalid entry.
    """
    seen: set[str] = set()
    for asset in assets:
        if not asset.name or asset.name.strip() != asset.name:
            raise ConfigurationError(f"Invalid asset name: {asset.name!r}")
        if "/" in asset.name:
            raise ConfigurationError(f"Asset name must not contain '/': {asset.name}")
        if asset.name in seen:
            raise ConfigurationError(f"Duplicate asset in catalog: {asset.name}")
        seen.add(asset.name)

        if not isinstance(asset.kind, AssetKind):
            raise ConfigurationError(f"Invalid kind for asset {asset.name}")
        for stage in asset.excluded_stages:
            if not isinstance(stage, Stage):
                raise ConfigurationError(
                    f"Invalid excluded stage for asset {asset.name}: {stage!r}"
                )
        if not asset.make_target.strip():
            raise ConfigurationError(f"Empty make target for asset {asset.name}")
        if asset.name not in asset.output_glob:
            raise ConfigurationError(
                f"Output glob for asset {asset.name} does not name the asset: "
                f"{asset.output_glob}"
            )


class AssetCatalog:
    """Immutable, versioned table of buildable assets."""

    def __init__(
        self, assets: Iterable[AssetSpec], version: str = CATALOG_VERSION
    ) -> None:
        entries = tuple(assets)
        validate_catalog(entries)
        self._assets = entries
        self._by_name = {a.name: a for a in entries}
        self.version = version

    @property
    def assets(self) -> tuple[AssetSpec, ...]:
        """All catalog entries in declaration order."""
        return self._assets

    def __iter__(self) -> Iterator[AssetSpec]:
        return iter(self._assets)

    def __len__(self) -> int:
        return len(self._assets)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return f"<AssetCatalog(version='{self.version}', assets={len(self)})>"

    def names(self) -> list[str]:
        """Return all asset names in catalog order."""
        return [a.name for a in self._assets]

    def get(self, name: str) -> AssetSpec:
        """Look up an asset by name.

        Raises:
            UnknownAssetError: If the name is not in the catalog.
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownAssetError(name) from None

    def list_assets(self, stage: Stage) -> list[AssetSpec]:
        """Return every asset built in the given stage, in catalog order."""
        return [a for a in self._assets if a.is_built_in(stage)]


def _asset(
    name: str,
    kind: AssetKind,
    *,
    excluded: Iterable[Stage] = (),
    embedded_in_release: bool = False,
) -> AssetSpec:
    return AssetSpec(
        name=name,
        kind=kind,
        excluded_stages=frozenset(excluded),
        embedded_in_release=embedded_in_release,
    )


DEFAULT_CATALOG = AssetCatalog(
    [
        _asset("agent", AssetKind.AGENT, embedded_in_release=True),
        _asset("agent-ctl", AssetKind.TOOL),
        _asset("cloud-hypervisor", AssetKind.HYPERVISOR),
        # glibc flavour is a test-only build
        _asset(
            "cloud-hypervisor-glibc", AssetKind.HYPERVISOR, excluded=[Stage.RELEASE]
        ),
        _asset(
            "coco-guest-components",
            AssetKind.GUEST_COMPONENTS,
            embedded_in_release=True,
        ),
        _asset("firecracker", AssetKind.HYPERVISOR),
        _asset("genpolicy", AssetKind.TOOL),
        _asset("kata-ctl", AssetKind.TOOL),
        _asset("kata-manager", AssetKind.TOOL),
        _asset("kernel", AssetKind.KERNEL),
        _asset("kernel-confidential", AssetKind.KERNEL),
        _asset("kernel-dragonball-experimental", AssetKind.KERNEL),
        _asset("kernel-nvidia-gpu", AssetKind.KERNEL),
        _asset("kernel-nvidia-gpu-confidential", AssetKind.KERNEL),
        _asset("nydus", AssetKind.TOOL),
        _asset("ovmf", AssetKind.FIRMWARE),
        _asset("ovmf-sev", AssetKind.FIRMWARE),
        _asset("pause-image", AssetKind.IMAGE, embedded_in_release=True),
        _asset("qemu", AssetKind.HYPERVISOR),
        _asset("qemu-snp-experimental", AssetKind.HYPERVISOR),
        _asset("stratovirt", AssetKind.HYPERVISOR),
        _asset("rootfs-image", AssetKind.ROOTFS),
        _asset("rootfs-image-confidential", AssetKind.ROOTFS),
        _asset("rootfs-image-mariner", AssetKind.ROOTFS),
        _asset("rootfs-initrd", AssetKind.ROOTFS),
        _asset("rootfs-initrd-confidential", AssetKind.ROOTFS),
        _asset("rootfs-initrd-mariner", AssetKind.ROOTFS),
        _asset("runk", AssetKind.SHIM),
        _asset("shim-v2", AssetKind.SHIM),
        _asset("trace-forwarder", AssetKind.TOOL),
        _asset("virtiofsd", AssetKind.TOOL),
    ]
)


def list_assets(stage: Stage, catalog: AssetCatalog | None = None) -> list[AssetSpec]:
    """Return every catalog asset not excluded from a stage.

    Args:
        stage: Build stage.
        catalog: Catalog to query; defaults to the built-in catalog.

    Returns:
        Assets in deterministic catalog order.
    """
    if catalog is None:
        catalog = DEFAULT_CATALOG
    return catalog.list_assets(stage)


__all__ = [
    "ARTIFACT_PREFIX",
    "CATALOG_VERSION",
    "DEFAULT_CATALOG",
    "AssetCatalog",
    "AssetSpec",
    "default_make_target",
    "default_output_glob",
    "list_assets",
    "validate_catalog",
]
