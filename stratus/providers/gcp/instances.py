"""Compute Engine request helpers.

Resolves the names an operator writes in a configuration (``n1-standard-1``,
``debian-12``, ``default``) into the resource paths the Compute API expects,
picks the address a worker is reachable on, and builds the instance resource
for an insert call. Nothing here talks to the API.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from stratus.constants import NAT_NAME, NAT_TYPE

if TYPE_CHECKING:
    from stratus.configuration import InstanceConfiguration


def resource_name(ref: str) -> str:
    """Last path segment of a resource reference.

    >>> resource_name("https://www.googleapis.com/compute/v1/projects/p/zones/us-west1-a")
    'us-west1-a'
    """
    return ref.rstrip("/").rsplit("/", 1)[-1]


def zone_to_region(zone: str) -> str:
    """Extract region from zone (e.g., 'us-central1-a' -> 'us-central1')."""
    return resource_name(zone).rsplit("-", 1)[0]


def _is_path(ref: str) -> bool:
    return "/" in ref


def machine_type_path(zone: str, machine_type: str) -> str:
    if _is_path(machine_type):
        return machine_type
    return f"zones/{resource_name(zone)}/machineTypes/{machine_type}"


def disk_type_path(zone: str, disk_type: str) -> str:
    if _is_path(disk_type):
        return disk_type
    return f"zones/{resource_name(zone)}/diskTypes/{disk_type}"


def accelerator_type_path(zone: str, accelerator: str) -> str:
    if _is_path(accelerator):
        return accelerator
    return f"zones/{resource_name(zone)}/acceleratorTypes/{accelerator}"


def image_path(name: str, project: str = "") -> str:
    """Resolve a boot image reference.

    Absolute URLs and ``projects/...`` paths (including image families)
    pass through; bare names are looked up in ``project`` when given.
    """
    if name.startswith(("https://", "projects/", "global/")):
        return name
    if project:
        return f"projects/{project}/global/images/{name}"
    return f"global/images/{name}"


def network_path(network: str) -> str:
    if _is_path(network):
        return network
    return f"global/networks/{network}"


def subnetwork_path(subnetwork: str, region: str) -> str:
    if _is_path(subnetwork):
        return subnetwork
    return f"regions/{resource_name(region)}/subnetworks/{subnetwork}"


# =============================================================================
# Instance inspection
# =============================================================================


def internal_ip(instance: object) -> str | None:
    """Internal address of the first network interface."""
    interfaces = getattr(instance, "network_interfaces", None)
    if not interfaces:
        return None
    return getattr(interfaces[0], "network_i_p", None) or None


def external_ip(instance: object) -> str | None:
    """First NAT address on the first network interface."""
    interfaces = getattr(instance, "network_interfaces", None)
    if not interfaces:
        return None
    for config in getattr(interfaces[0], "access_configs", None) or []:
        if getattr(config, "type_", "") == NAT_TYPE and (ip := getattr(config, "nat_i_p", None)):
            return str(ip)
    return None


def select_address(instance: object, *, use_internal: bool) -> str | None:
    """Pick the address a worker is reached on.

    Internal when requested, else the NAT address, falling back to the
    internal one. ``None`` while the instance has no interface yet.
    """
    if use_internal:
        return internal_ip(instance)
    return external_ip(instance) or internal_ip(instance)


def instance_status(instance: object) -> str:
    return str(getattr(instance, "status", "") or "")


def instance_labels(instance: object) -> Mapping[str, str]:
    return dict(getattr(instance, "labels", None) or {})


# =============================================================================
# Insert request construction
# =============================================================================


def build_instance(
    config: InstanceConfiguration,
    *,
    name: str,
    labels: Mapping[str, str],
    metadata: Mapping[str, str],
) -> Any:
    """Build the ``compute_v1.Instance`` resource for one insert call."""
    from google.cloud import compute_v1  # type: ignore[reportMissingImports]

    zone = config.zone
    boot = config.boot_disk

    disk = compute_v1.AttachedDisk(
        boot=True,
        auto_delete=boot.auto_delete,
        initialize_params=compute_v1.AttachedDiskInitializeParams(
            source_image=image_path(boot.source_image_name, boot.source_image_project),
            disk_size_gb=boot.size_gb,
            disk_type=disk_type_path(zone, boot.type),
        ),
    )

    net = config.network
    network_interface = compute_v1.NetworkInterface(network=network_path(net.network))
    if net.subnetwork:
        network_interface.subnetwork = subnetwork_path(net.subnetwork, config.region)
    if net.external_address:
        network_interface.access_configs = [
            compute_v1.AccessConfig(name=NAT_NAME, type_=NAT_TYPE),
        ]

    has_accelerator = config.accelerator is not None and config.accelerator.count > 0
    if config.preemptible:
        scheduling = compute_v1.Scheduling(
            preemptible=True,
            automatic_restart=False,
            on_host_maintenance="TERMINATE",
        )
    elif has_accelerator:
        scheduling = compute_v1.Scheduling(
            automatic_restart=True,
            on_host_maintenance="TERMINATE",
        )
    else:
        scheduling = compute_v1.Scheduling(automatic_restart=True)

    instance = compute_v1.Instance(
        name=name,
        description=config.description,
        machine_type=machine_type_path(zone, config.machine_type),
        disks=[disk],
        network_interfaces=[network_interface],
        labels=dict(labels),
        metadata=compute_v1.Metadata(
            items=[compute_v1.Items(key=k, value=v) for k, v in metadata.items()],
        ),
        scheduling=scheduling,
        tags=compute_v1.Tags(items=list(net.tags)),
    )

    if has_accelerator:
        assert config.accelerator is not None
        instance.guest_accelerators = [
            compute_v1.AcceleratorConfig(
                accelerator_type=accelerator_type_path(zone, config.accelerator.name),
                accelerator_count=config.accelerator.count,
            ),
        ]

    if config.min_cpu_platform:
        instance.min_cpu_platform = config.min_cpu_platform

    if config.service_account_email:
        instance.service_accounts = [
            compute_v1.ServiceAccount(
                email=config.service_account_email,
                scopes=["https://www.googleapis.com/auth/cloud-platform"],
            ),
        ]

    return instance
