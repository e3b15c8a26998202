"""Asset identity registry.

This module handles:
- The fixed catalog of buildable assets and their build-step descriptors
- Stage exclusion rules
- Loading alternative catalogs from YAML
"""

from kata_static.assets.catalog import (
    DEFAULT_CATALOG,
    AssetCatalog,
    AssetSpec,
    list_assets,
    validate_catalog,
)
from kata_static.assets.io import get_catalog, load_catalog_file

__all__ = [
    "DEFAULT_CATALOG",
    "AssetCatalog",
    "AssetSpec",
    "get_catalog",
    "list_assets",
    "load_catalog_file",
    "validate_catalog",
]
