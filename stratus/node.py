"""Worker nodes: one provisioned instance as the scheduler sees it."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from google.api_core.exceptions import NotFound
from loguru import logger

from stratus.bootstrap.auth import Authenticator, select_authenticator
from stratus.bootstrap.protocol import BootstrapProtocol, BootstrapState
from stratus.constants import ALIVE_STATES
from stratus.providers.gcp.instances import instance_status

if TYPE_CHECKING:
    from stratus.bootstrap.transport import AttachedChannel
    from stratus.cloud import Cloud
    from stratus.configuration import InstanceConfiguration
    from stratus.keys import KeyPair

log = logger.bind(component="node")


class WorkerNode:
    """An instance inserted by a cloud, plus its attach and idle bookkeeping.

    The instance's network interfaces are never cached: ``refresh`` reads
    them from the API each time. Bootstrap runs at most once per node.
    """

    __slots__ = (
        "name", "zone", "operation", "config", "cloud", "key_pair",
        "channel", "jobs_completed", "busy", "idle_since", "terminated",
        "_clock", "_protocol", "_bootstrap",
    )

    def __init__(
        self,
        name: str,
        zone: str,
        operation: str,
        config: InstanceConfiguration,
        cloud: Cloud,
        key_pair: KeyPair | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.zone = zone
        self.operation = operation
        self.config = config
        self.cloud = cloud
        self.key_pair = key_pair
        self.channel: AttachedChannel | None = None
        self.jobs_completed = 0
        self.busy = False
        self.idle_since: float | None = None
        self.terminated = False
        self._clock = clock
        self._protocol: BootstrapProtocol | None = None
        self._bootstrap: asyncio.Task[AttachedChannel] | None = None

    def __repr__(self) -> str:
        return f"WorkerNode({self.name!r}, zone={self.zone!r}, config={self.config.name_prefix!r})"

    @property
    def num_executors(self) -> int:
        return self.config.num_executors

    @property
    def bootstrap_state(self) -> BootstrapState | None:
        return self._protocol.state if self._protocol is not None else None

    async def refresh(self) -> Any:
        """Current instance resource, read from the API."""
        return await self.cloud.client().get_instance(self.zone, self.name)

    async def is_alive(self) -> bool:
        """Whether the instance still exists and is provisioning, staging or running."""
        try:
            instance = await self.refresh()
        except NotFound:
            return False
        return instance_status(instance) in ALIVE_STATES

    def authenticator(self) -> Authenticator:
        return select_authenticator(self.config.os, self.key_pair)

    # -------------------------------------------------------------------------
    # Bootstrap
    # -------------------------------------------------------------------------

    def connect(self, payload: bytes = b"", **options: Any) -> asyncio.Task[AttachedChannel]:
        """Start the bootstrap, or return the one already running.

        ``options`` are passed to ``BootstrapProtocol`` on the first call.
        """
        if self._bootstrap is None:
            self._protocol = BootstrapProtocol(self, payload, **options)
            self._bootstrap = asyncio.create_task(
                self._protocol.run(), name=f"bootstrap-{self.name}",
            )
            self._bootstrap.add_done_callback(self._bootstrap_done)
        return self._bootstrap

    def abort_bootstrap(self) -> None:
        if self._protocol is not None:
            self._protocol.abort()

    def _bootstrap_done(self, task: asyncio.Task[AttachedChannel]) -> None:
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            log.debug("Bootstrap of {name} ended: {err}", name=self.name, err=error)
            return
        self.channel = task.result()
        self.idle_since = self._clock()

    # -------------------------------------------------------------------------
    # Job accounting
    # -------------------------------------------------------------------------

    def job_started(self) -> None:
        self.busy = True

    def job_finished(self) -> None:
        self.busy = False
        self.jobs_completed += 1
        self.idle_since = self._clock()

    def idle_seconds(self, now: float | None = None) -> float | None:
        if self.busy or self.idle_since is None:
            return None
        return (self._clock() if now is None else now) - self.idle_since

    async def terminate(self) -> None:
        """Close the agent channel and delete the instance. Idempotent."""
        if self.terminated:
            return
        self.terminated = True
        self.abort_bootstrap()
        if self.channel is not None:
            self.channel.close()
        log.info("Terminating instance {name}", name=self.name)
        try:
            await self.cloud.client().delete_instance(self.zone, self.name)
        except NotFound:
            log.debug("Instance {name} was already gone", name=self.name)
