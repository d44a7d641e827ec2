"""Configuration-time validation.

Two layers: synchronous field checks that run whenever a cloud or an
instance configuration is constructed, and catalog checks that ask the
Compute API whether the referenced region, zone, machine type, image and
network actually exist. Catalog checks report problems instead of raising
so an operator sees every mistake at once.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from google.api_core.exceptions import GoogleAPIError, NotFound
from loguru import logger

from stratus.core.exceptions import ConfigurationError
from stratus.providers.gcp.instances import resource_name, zone_to_region

if TYPE_CHECKING:
    from stratus.configuration import InstanceConfiguration
    from stratus.providers.gcp.client import ComputeClient

log = logger.bind(component="validation")

NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")
LABEL_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")
LABEL_VALUE_PATTERN = re.compile(r"^[a-z0-9_-]{0,63}$")

# Instance names are "<prefix>-<8 hex chars>" and capped at 63 characters.
MAX_PREFIX_LENGTH = 54


# =============================================================================
# Field checks
# =============================================================================


def cloud_problems(name: str, project_id: str, instance_cap: int) -> list[str]:
    problems: list[str] = []
    if not name.strip():
        problems.append("cloud name is required")
    if not project_id.strip():
        problems.append("project id is required")
    if instance_cap < 0:
        problems.append(f"instance cap must be non-negative, got {instance_cap}")
    return problems


def validate_cloud_fields(name: str, project_id: str, instance_cap: int) -> None:
    """Raise ``ConfigurationError`` listing every invalid cloud field."""
    if problems := cloud_problems(name, project_id, instance_cap):
        raise ConfigurationError(f"Invalid cloud '{name}': " + "; ".join(problems))


def configuration_problems(config: InstanceConfiguration) -> list[str]:
    problems: list[str] = []

    prefix = config.name_prefix
    if not NAME_PATTERN.match(prefix):
        problems.append(
            f"name prefix '{prefix}' must start with a lowercase letter and contain "
            "only lowercase letters, digits and hyphens"
        )
    elif len(prefix) > MAX_PREFIX_LENGTH:
        problems.append(f"name prefix '{prefix}' is longer than {MAX_PREFIX_LENGTH} characters")

    if not config.description.strip():
        problems.append("description is required")
    for field_name in ("region", "zone", "machine_type"):
        if not getattr(config, field_name).strip():
            problems.append(f"{field_name.replace('_', ' ')} is required")
    if config.region and config.zone and "/" not in config.zone:
        if zone_to_region(config.zone) != resource_name(config.region):
            problems.append(f"zone {config.zone} is not in region {config.region}")

    if not config.boot_disk.source_image_name.strip():
        problems.append("boot disk source image is required")
    if config.boot_disk.size_gb <= 0:
        problems.append(f"boot disk size must be positive, got {config.boot_disk.size_gb}")
    if config.accelerator is not None and config.accelerator.count < 0:
        problems.append(f"accelerator count must be non-negative, got {config.accelerator.count}")

    if config.num_executors < 1:
        problems.append(f"number of executors must be at least 1, got {config.num_executors}")
    if config.launch_timeout < 0:
        problems.append(f"launch timeout must be non-negative, got {config.launch_timeout}")
    if config.retention_time < 0:
        problems.append(f"retention time must be non-negative, got {config.retention_time}")

    for key, value in config.labels.items():
        if not LABEL_KEY_PATTERN.match(key):
            problems.append(f"label key '{key}' is not a valid Compute Engine label key")
        if not LABEL_VALUE_PATTERN.match(value):
            problems.append(f"label value '{value}' for '{key}' is not a valid label value")

    return problems


def validate_configuration(config: InstanceConfiguration) -> None:
    """Raise ``ConfigurationError`` listing every invalid configuration field."""
    if problems := configuration_problems(config):
        raise ConfigurationError(
            f"Invalid instance configuration '{config.name_prefix}': " + "; ".join(problems)
        )


# =============================================================================
# Catalog checks
# =============================================================================


def _names(items: list[Any]) -> set[str]:
    return {getattr(item, "name", "") for item in items}


async def _check_listed(
    problems: list[str],
    kind: str,
    value: str,
    listing: Callable[[], Awaitable[list[Any]]],
) -> None:
    if not value or "/" in value:
        return
    try:
        available = _names(await listing())
    except GoogleAPIError as e:
        problems.append(f"could not list {kind}s: {e}")
        return
    if value not in available:
        problems.append(f"{kind} '{value}' does not exist")


async def _check_image(
    problems: list[str],
    config: InstanceConfiguration,
    client: ComputeClient,
) -> None:
    boot = config.boot_disk
    name = boot.source_image_name
    if not name or "/" in name:
        return

    project = boot.source_image_project or client.project
    try:
        if name in _names(await client.get_images(project)):
            return
        # Deprecated images are hidden from listings but still bootable.
        await client.get_image(project, name)
    except NotFound:
        problems.append(f"image '{name}' does not exist in project {project}")
    except GoogleAPIError as e:
        problems.append(f"could not look up image '{name}': {e}")
    else:
        problems.append(f"image '{name}' in project {project} is deprecated")


async def check_against_catalog(
    config: InstanceConfiguration,
    client: ComputeClient,
) -> list[str]:
    """Check every catalog reference of ``config`` against the Compute API.

    Returns:
        Human-readable problems; empty when the configuration is usable.
    """
    problems: list[str] = []
    region = resource_name(config.region)
    zone = resource_name(config.zone)

    await _check_listed(problems, "region", region, client.get_regions)
    await _check_listed(problems, "zone", zone, lambda: client.get_zones(region))
    await _check_listed(problems, "machine type", config.machine_type, lambda: client.get_machine_types(zone))
    await _check_listed(problems, "disk type", config.boot_disk.type, lambda: client.get_disk_types(zone))
    await _check_image(problems, config, client)

    if config.accelerator is not None and config.accelerator.count > 0:
        await _check_listed(
            problems, "accelerator type", config.accelerator.name,
            lambda: client.get_accelerator_types(zone),
        )

    net = config.network
    await _check_listed(problems, "network", net.network, client.get_networks)
    if net.subnetwork:
        await _check_listed(
            problems, "subnetwork", net.subnetwork,
            lambda: client.get_subnetworks(net.network, region),
        )

    for problem in problems:
        log.warning("{config}: {problem}", config=config.name_prefix, problem=problem)
    return problems


async def check_credentials(client: ComputeClient) -> list[str]:
    """Verify the client can reach the project by listing its regions.

    Returns:
        The region names visible to the credentials.

    Raises:
        ConfigurationError: If the listing is rejected.
    """
    try:
        regions = await client.get_regions()
    except GoogleAPIError as e:
        raise ConfigurationError(
            f"Credentials cannot access project {client.project}: {e}"
        ) from e
    return sorted(_names(regions))
