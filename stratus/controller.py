"""Provisioning controller.

Turns capacity demand from the scheduler into instances:

1. Pick the first configuration matching the demanded label.
2. Under the cloud's provisioning lock, recompute headroom from the API and
   insert one instance if there is room.
3. Register the new node with the scheduler and wait for it to attach in
   the background, bounded by the configuration's launch timeout.
4. Repeat until the demand is covered or the cloud is full.

Failures end the current call only; nodes already planned are returned.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from google.api_core.exceptions import GoogleAPIError
from loguru import logger

from stratus import reconciler
from stratus.core.exceptions import BootstrapError, NoMatchingConfigurationError, StratusError

if TYPE_CHECKING:
    from stratus.cloud import Cloud
    from stratus.configuration import InstanceConfiguration
    from stratus.node import WorkerNode
    from stratus.scheduler import JobScheduler

log = logger.bind(component="controller")


@dataclass(frozen=True, slots=True)
class PlannedNode:
    """A node being brought up; ``attached`` resolves to whether it made it."""

    node: WorkerNode
    attached: asyncio.Task[bool]

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def num_executors(self) -> int:
        return self.node.num_executors


class ProvisioningController:
    """Provision workers for one cloud on behalf of a scheduler.

    Args:
        cloud: The cloud instances are created in.
        scheduler: Receives new nodes and their attached channels.
        bootstrap_options: Extra ``BootstrapProtocol`` arguments for every
            node, e.g. a custom ``connect`` or ``sleep``.
    """

    def __init__(
        self,
        cloud: Cloud,
        scheduler: JobScheduler,
        *,
        bootstrap_options: Mapping[str, Any] | None = None,
    ) -> None:
        self.cloud = cloud
        self._scheduler = scheduler
        self._bootstrap_options = dict(bootstrap_options or {})
        self._pending: set[asyncio.Task[bool]] = set()
        self._log = log.bind(cloud=cloud.name)

    def can_provision(self, label: str | None) -> bool:
        return self.cloud.can_provision(label)

    async def provision(self, label: str | None, excess_workload: int) -> list[PlannedNode]:
        """Plan enough nodes to absorb ``excess_workload`` executors."""
        try:
            config = self.cloud.configuration_for(label)
        except NoMatchingConfigurationError as e:
            self._log.warning("{err}", err=e)
            return []

        planned: list[PlannedNode] = []
        remaining = excess_workload
        try:
            while remaining > 0:
                node = await self._create(config)
                if node is None:
                    break
                planned.append(self._plan(node))
                remaining -= config.num_executors
        except (StratusError, GoogleAPIError) as e:
            self._log.error(
                "Provisioning for label {label} stopped after {n} node(s): {err}",
                label=label, n=len(planned), err=e,
            )

        return planned

    async def provision_configuration(self, description: str) -> PlannedNode | None:
        """Provision one node from the configuration named ``description``.

        Raises:
            NoMatchingConfigurationError: If the cloud has no such configuration.
        """
        config = self.cloud.configuration_by_description(description)
        try:
            node = await self._create(config)
        except (StratusError, GoogleAPIError) as e:
            self._log.error(
                "Provisioning {config} failed: {err}", config=description, err=e,
            )
            return None
        return self._plan(node) if node is not None else None

    async def _create(self, config: InstanceConfiguration) -> WorkerNode | None:
        cloud = self.cloud
        async with cloud.provision_lock:
            room = await reconciler.headroom(cloud)
            if room <= 0:
                self._log.warning(
                    "Cloud {cloud} is at its instance cap of {cap}; not provisioning {config}",
                    cloud=cloud.name, cap=cloud.instance_cap, config=config.description,
                )
                return None
            return await config.provision(cloud)

    def _plan(self, node: WorkerNode) -> PlannedNode:
        self._scheduler.add_node(node)
        task = asyncio.create_task(self._await_attach(node), name=f"attach-{node.name}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return PlannedNode(node=node, attached=task)

    async def _await_attach(self, node: WorkerNode) -> bool:
        timeout = node.config.launch_timeout or None
        bootstrap = node.connect(self._scheduler.agent_payload(), **self._bootstrap_options)
        try:
            channel = await asyncio.wait_for(asyncio.shield(bootstrap), timeout)
        except TimeoutError:
            self._log.warning(
                "Instance {name} did not attach within {timeout}s; abandoning it",
                name=node.name, timeout=timeout,
            )
            node.abort_bootstrap()
            return False
        except BootstrapError as e:
            self._log.warning("Instance {name} failed to attach: {err}", name=node.name, err=e)
            return False

        self._scheduler.attach(node, channel)
        self._log.info("Instance {name} attached", name=node.name)
        return True

    async def wait_pending(self) -> None:
        """Wait for every attach currently in flight."""
        if self._pending:
            await asyncio.gather(*self._pending)
