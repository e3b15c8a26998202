"""Asset catalog import from YAML files.

A catalog file replaces the built-in table for deployments that build a
different asset set. It is validated with Pydantic and then through the
same exhaustive checks as the built-in catalog.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kata_static.assets.catalog import DEFAULT_CATALOG, AssetCatalog, AssetSpec
from kata_static.config import Settings, get_settings
from kata_static.errors import ConfigurationError
from kata_static.types import AssetKind, Stage


class AssetSchema(BaseModel):
    """Schema for one catalog entry."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, description="Unique asset identifier")
    kind: AssetKind
    excluded_stages: list[Stage] = Field(default_factory=list)
    embedded_in_release: bool = False
    make_target: str | None = None
    output_glob: str | None = None

    def to_spec(self) -> AssetSpec:
        """Convert to an immutable AssetSpec."""
        return AssetSpec(
            name=self.name,
            kind=self.kind,
            excluded_stages=frozenset(self.excluded_stages),
            embedded_in_release=self.embedded_in_release,
            make_target=self.make_target or "",
            output_glob=self.output_glob or "",
        )


class CatalogSchema(BaseModel):
    """Schema for a catalog file."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(min_length=1)
    assets: list[AssetSchema] = Field(min_length=1)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_catalog_data(data: dict[str, Any]) -> AssetCatalog:
    """Validate catalog data and build an AssetCatalog.

    Raises:
        ConfigurationError: If the data does not describe a valid catalog.
    """
    try:
        schema = CatalogSchema.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid asset catalog: {e}") from e
    return AssetCatalog([a.to_spec() for a in schema.assets], version=schema.version)


def load_catalog_file(path: Path) -> AssetCatalog:
    """Load and validate an asset catalog from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    try:
        data = load_yaml(path)
    except FileNotFoundError:
        raise ConfigurationError(f"Asset catalog not found: {path}") from None
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(f"Cannot parse asset catalog {path}: {e}") from e
    return parse_catalog_data(data)


def catalog_to_yaml_string(catalog: AssetCatalog) -> str:
    """Render a catalog in the file format accepted by load_catalog_file."""
    data = {
        "version": catalog.version,
        "assets": [
            {
                "name": a.name,
                "kind": a.kind.value,
                "excluded_stages": sorted(s.value for s in a.excluded_stages),
                "embedded_in_release": a.embedded_in_release,
                "make_target": a.make_target,
                "output_glob": a.output_glob,
            }
            for a in catalog
        ],
    }
    return yaml.safe_dump(data, sort_keys=False)


def get_catalog(settings: Settings | None = None) -> AssetCatalog:
    """Return the catalog in effect for the given settings."""
    if settings is None:
        settings = get_settings()
    if settings.catalog_path is None:
        return DEFAULT_CATALOG
    return load_catalog_file(settings.catalog_path)


__all__ = [
    "AssetSchema",
    "CatalogSchema",
    "catalog_to_yaml_string",
    "get_catalog",
    "load_catalog_file",
    "load_yaml",
    "parse_catalog_data",
]
