"""Device catalog loading, validation, and lookup for YAML-based device tables."""

from __future__ import annotations

import functools
import json
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from ibootctl.core.errors import CatalogLoadError, CatalogValidationError
from ibootctl.core.model import AppleDevice, DeviceInfo

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise CatalogValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedCatalog:
    devices: tuple[AppleDevice, ...]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("ibootctl.schemas").joinpath("device_catalog.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _catalog_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "ibootctl/devices", xdg_data / "ibootctl/devices"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogLoadError(f"Could not read catalog file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise CatalogValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise CatalogValidationError(f"Catalog file {path} must contain a mapping at root")
    return loaded


def _build_devices(doc: dict[str, Any], source: Path | Traversable, validator: Any) -> list[AppleDevice]:
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise CatalogValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    return [
        AppleDevice(
            product_type=entry["product_type"],
            hardware_model=entry["hardware_model"],
            board_id=int(entry["board_id"]),
            chip_id=int(entry["chip_id"]),
            display_name=entry["display_name"],
        )
        for entry in doc["devices"]
    ]


def _iter_packaged_catalog_paths() -> list[Traversable]:
    catalog_root = resources.files("ibootctl.devices")
    return [item for item in catalog_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_catalog_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _catalog_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_catalog() -> LoadedCatalog:
    """Load packaged device tables, then let user tables add to or override them.

    Entries are keyed by hardware model, which is unique per device variant.
    """
    validator = _load_schema_validator()
    devices: dict[str, AppleDevice] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_catalog_paths(), key=lambda p: p.name):
        for device in _build_devices(_read_yaml(path), path, validator):
            if device.hardware_model in devices:
                raise CatalogValidationError(
                    f"Hardware model '{device.hardware_model}' is defined twice in packaged catalog ({path})"
                )
            devices[device.hardware_model] = device

    for path in _iter_user_catalog_paths():
        for device in _build_devices(_read_yaml(path), path, validator):
            if device.hardware_model in devices:
                warning = f"User catalog entry '{device.hardware_model}' overrides packaged entry"
                LOGGER.warning(warning)
                warnings.append(warning)
            devices[device.hardware_model] = device

    return LoadedCatalog(devices=tuple(devices.values()), warnings=tuple(warnings))


@functools.cache
def default_catalog() -> LoadedCatalog:
    return load_catalog()


def _devices(catalog: Iterable[AppleDevice] | None) -> Iterable[AppleDevice]:
    return default_catalog().devices if catalog is None else catalog


def devices_get_all(catalog: Iterable[AppleDevice] | None = None) -> tuple[AppleDevice, ...]:
    return tuple(_devices(catalog))


def get_device_by_product_type(
    product_type: str, catalog: Iterable[AppleDevice] | None = None
) -> AppleDevice | None:
    return next((d for d in _devices(catalog) if d.product_type == product_type), None)


def get_device_by_hardware_model(
    hardware_model: str, catalog: Iterable[AppleDevice] | None = None
) -> AppleDevice | None:
    return next((d for d in _devices(catalog) if d.hardware_model == hardware_model), None)


def get_device_by_ids(
    chip_id: int, board_id: int, catalog: Iterable[AppleDevice] | None = None
) -> AppleDevice | None:
    return next((d for d in _devices(catalog) if d.chip_id == chip_id and d.board_id == board_id), None)


def get_device_by_info(info: DeviceInfo, catalog: Iterable[AppleDevice] | None = None) -> AppleDevice | None:
    return get_device_by_ids(info.cpid, info.bdid, catalog)
