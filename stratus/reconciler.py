"""Live-instance accounting.

The cloud-id label is the only record of which instances belong to a
cloud, so capacity is always recomputed from the API rather than from
anything held in memory. That keeps the count correct across controller
restarts and instances created by other controllers sharing the cloud.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from google.api_core.exceptions import GoogleAPIError
from loguru import logger

from stratus.constants import ALIVE_STATES, StratusLabel
from stratus.core.exceptions import CapacityQueryError
from stratus.providers.gcp.instances import instance_labels, instance_status

if TYPE_CHECKING:
    from stratus.cloud import Cloud

log = logger.bind(component="reconciler")


async def live_instances(cloud: Cloud) -> list[Any]:
    """Instances carrying the cloud's id that are provisioning, staging or running.

    Raises:
        CapacityQueryError: If the instances cannot be listed.
    """
    try:
        instances = await cloud.client().list_instances_by_label(
            StratusLabel.CLOUD_ID.value, cloud.instance_id,
        )
    except GoogleAPIError as e:
        raise CapacityQueryError(f"Cannot list instances of cloud {cloud.name}: {e}") from e
    return [i for i in instances if instance_status(i) in ALIVE_STATES]


async def headroom(cloud: Cloud) -> int:
    """How many more instances the cloud may create; may be negative."""
    live = len(await live_instances(cloud))
    room = cloud.instance_cap - live
    log.debug(
        "Cloud {cloud}: {live} live of {cap}, headroom {room}",
        cloud=cloud.name, live=live, cap=cloud.instance_cap, room=room,
    )
    return room


async def instances_by_configuration(cloud: Cloud) -> dict[str, list[Any]]:
    """Live instances grouped by the name prefix of the configuration that made them."""
    grouped: dict[str, list[Any]] = defaultdict(list)
    for instance in await live_instances(cloud):
        name = instance_labels(instance).get(StratusLabel.CONFIG_NAME.value, "")
        grouped[name].append(instance)
    return dict(grouped)
