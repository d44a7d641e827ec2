"""TOML-based cloud configuration.

Loads ~/.stratus/defaults.toml (global) and stratus.toml (project), merges
them, and resolves named clouds into ``Cloud`` instances. ``save_config``
writes a cloud back, which is how a generated cloud instance id survives
restarts.

Layout::

    [logging]
    level = "INFO"

    [clouds.build]
    project_id = "my-project"
    instance_cap = 10

    [[clouds.build.configurations]]
    name_prefix = "linux"
    description = "Linux builders"
    region = "us-central1"
    zone = "us-central1-a"
    machine_type = "n1-standard-2"
    label_string = "linux docker"

    [clouds.build.configurations.boot_disk]
    source_image_name = "debian-12-bookworm-v20240709"
    source_image_project = "debian-cloud"

    [clouds.build.configurations.os]
    type = "posix"
    run_as_user = "stratus"
"""

from __future__ import annotations

import dataclasses
import tomllib
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import tomli_w
from loguru import logger

from stratus.cloud import Cloud
from stratus.configuration import (
    AcceleratorConfiguration,
    BootDisk,
    InstanceConfiguration,
    Mode,
    NetworkConfiguration,
    OsConfiguration,
    PosixConfiguration,
    WindowsConfiguration,
)
from stratus.core.exceptions import ConfigurationError
from stratus.observability.logging import LogConfig
from stratus.providers.gcp.client import resolve_project

if TYPE_CHECKING:
    from stratus.providers.gcp.client import ComputeClient

log = logger.bind(component="config")

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".stratus" / "defaults.toml"
PROJECT_CONFIG_NAME = "stratus.toml"

_OS_TYPES: dict[str, type[PosixConfiguration] | type[WindowsConfiguration]] = {
    "posix": PosixConfiguration,
    "windows": WindowsConfiguration,
}


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("clouds", {})
    merged.setdefault("logging", {})
    return merged


# =============================================================================
# Documents -> objects
# =============================================================================


def _build[T](cls: Callable[..., T], raw: RawConfig, what: str) -> T:
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid {what}: {e}") from e


def _build_os(raw: RawConfig | None) -> OsConfiguration:
    raw = dict(raw or {})
    os_type = raw.pop("type", "posix")
    cls = _OS_TYPES.get(os_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown os type '{os_type}'. Valid: {', '.join(_OS_TYPES)}"
        )
    return _build(cls, raw, f"{os_type} os settings")


def configuration_from_document(raw: RawConfig) -> InstanceConfiguration:
    raw = dict(raw)
    if "boot_disk" not in raw:
        raise ConfigurationError(
            f"Configuration '{raw.get('name_prefix', '?')}' missing 'boot_disk' table"
        )

    raw["boot_disk"] = _build(BootDisk, raw["boot_disk"], "boot_disk")
    if (accelerator := raw.pop("accelerator", None)) is not None:
        raw["accelerator"] = _build(AcceleratorConfiguration, accelerator, "accelerator")
    if (network := raw.pop("network", None)) is not None:
        network = dict(network)
        network["tags"] = tuple(network.get("tags", ()))
        raw["network"] = _build(NetworkConfiguration, network, "network")
    if "mode" in raw:
        try:
            raw["mode"] = Mode(str(raw["mode"]).upper())
        except ValueError as e:
            raise ConfigurationError(f"Unknown mode '{raw['mode']}'") from e
    raw["os"] = _build_os(raw.get("os"))

    return _build(InstanceConfiguration, raw, "instance configuration")


def cloud_from_document(
    name: str,
    raw: RawConfig,
    *,
    client_factory: Callable[[Cloud], ComputeClient] | None = None,
) -> Cloud:
    raw = dict(raw)
    # Only an absent project_id falls back to the environment and ADC.
    if "project_id" in raw and not str(raw["project_id"]).strip():
        raise ConfigurationError(f"Cloud '{name}' has a blank project_id")
    raw["project_id"] = resolve_project(raw.get("project_id"))
    raw["configurations"] = tuple(
        configuration_from_document(c) for c in raw.pop("configurations", [])
    )
    if client_factory is not None:
        raw["client_factory"] = client_factory
    return _build(Cloud, {"name": name, **raw}, f"cloud '{name}'")


def resolve_cloud(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    client_factory: Callable[[Cloud], ComputeClient] | None = None,
) -> Cloud:
    config = load_config(project_dir=project_dir, global_path=global_path)

    clouds = config["clouds"]
    if name not in clouds:
        raise ConfigurationError(
            f"Cloud '{name}' not found. Available: {', '.join(clouds) or 'none'}"
        )
    return cloud_from_document(name, clouds[name], client_factory=client_factory)


def resolve_logging(config: RawConfig) -> LogConfig:
    return _build(LogConfig, config.get("logging", {}), "logging settings")


# =============================================================================
# Objects -> documents
# =============================================================================


def _prune(raw: RawConfig) -> RawConfig:
    """Drop unset values; TOML has no null."""
    return {
        k: _prune(v) if isinstance(v, dict) else v
        for k, v in raw.items()
        if v is not None
    }


def configuration_to_document(config: InstanceConfiguration) -> RawConfig:
    raw: RawConfig = {
        f.name: getattr(config, f.name) for f in dataclasses.fields(config)
    }
    raw["boot_disk"] = dataclasses.asdict(config.boot_disk)
    raw["network"] = {
        **dataclasses.asdict(config.network),
        "tags": list(config.network.tags),
    }
    raw["accelerator"] = (
        dataclasses.asdict(config.accelerator) if config.accelerator is not None else None
    )
    raw["mode"] = config.mode.value
    raw["labels"] = dict(config.labels)
    raw["os"] = {
        "type": "windows" if config.is_windows else "posix",
        **dataclasses.asdict(config.os),
    }
    return _prune(raw)


def cloud_to_document(cloud: Cloud) -> RawConfig:
    return _prune({
        "project_id": cloud.project_id,
        "instance_cap": cloud.instance_cap,
        "instance_id": cloud.instance_id,
        "credentials_file": cloud.credentials_file,
        "configurations": [configuration_to_document(c) for c in cloud.configurations],
    })


def dump_config(document: RawConfig) -> str:
    return tomli_w.dumps(document)


def save_config(cloud: Cloud, *, project_dir: Path | None = None) -> Path:
    """Write ``cloud`` into the project's stratus.toml, keeping other clouds."""
    path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    document = _read_toml(path)
    document.setdefault("clouds", {})[cloud.name] = cloud_to_document(cloud)
    path.write_text(dump_config(document))
    log.info("Saved cloud {cloud} to {path}", cloud=cloud.name, path=path)
    return path
