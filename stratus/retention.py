"""Retirement of idle and one-shot workers."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from google.api_core.exceptions import GoogleAPIError
from loguru import logger

if TYPE_CHECKING:
    from stratus.node import WorkerNode
    from stratus.scheduler import JobScheduler

log = logger.bind(component="retention")


class RetentionPolicy:
    """Decides when a worker has outlived its usefulness, and retires it.

    One-shot workers go after their first completed job. Others go once they
    have been idle for their configuration's retention time. An attached
    worker whose instance stopped or vanished (e.g. preempted) goes at once.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scheduler = scheduler
        self._clock = clock

    def should_retire(self, node: WorkerNode) -> bool:
        if node.terminated or node.busy:
            return False
        if node.config.one_shot:
            return node.jobs_completed > 0
        idle = node.idle_seconds(self._clock())
        return idle is not None and idle >= node.config.retention_time * 60

    async def check(self, node: WorkerNode) -> bool:
        """Retire ``node`` if due; return whether it was retired."""
        if self.should_retire(node):
            await self.retire(node)
            return True
        if node.channel is not None and not node.terminated and not await node.is_alive():
            await self.retire(node, reason="instance no longer running")
            return True
        return False

    async def check_all(self, nodes: Iterable[WorkerNode]) -> list[WorkerNode]:
        retired = []
        for node in list(nodes):
            try:
                if await self.check(node):
                    retired.append(node)
            except GoogleAPIError as e:
                log.warning("Could not retire {name}: {err}", name=node.name, err=e)
        return retired

    async def retire(self, node: WorkerNode, reason: str | None = None) -> None:
        if reason is None:
            reason = "one-shot job done" if node.config.one_shot else "idle"
        log.info("Retiring {name} ({reason})", name=node.name, reason=reason)
        self._scheduler.remove_node(node)
        await node.terminate()
