"""Clouds: one GCP project, its instance cap and its configurations.

A cloud owns exactly one ``ComputeClient``, built lazily the first time
it is needed and shared by every caller afterwards, and one provisioning
lock that keeps the headroom check and the instance insert atomic.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from stratus.constants import CLOUD_PREFIX, UNLIMITED_INSTANCE_CAP
from stratus.core.exceptions import NoMatchingConfigurationError
from stratus.providers.gcp.client import ComputeClient
from stratus.validation import validate_cloud_fields

if TYPE_CHECKING:
    from stratus.configuration import InstanceConfiguration

log = logger.bind(component="cloud")


def _create_client(cloud: Cloud) -> ComputeClient:
    return ComputeClient.create(cloud.project_id, cloud.credentials_file)


@dataclass(eq=False, slots=True)
class Cloud:
    """A named pool of GCE workers in one project.

    Args:
        name: Cloud name; the scheduler sees it as ``gce-<name>``.
        project_id: GCP project that hosts the instances.
        instance_cap: Maximum live instances carrying this cloud's id.
        configurations: Instance templates, matched in order.
        instance_id: Persistent identifier stamped on every instance as the
            ``stratus_cloud_id`` label. Generated once when absent.
        credentials_file: Service account key file; ADC when unset.
        client_factory: Builds the compute client. Called at most once.
    """

    name: str
    project_id: str
    instance_cap: int = UNLIMITED_INSTANCE_CAP
    configurations: Sequence[InstanceConfiguration] = ()
    instance_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    credentials_file: str | None = None
    client_factory: Callable[[Cloud], ComputeClient] = field(
        default=_create_client, repr=False,
    )
    provision_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _client: ComputeClient | None = field(default=None, init=False, repr=False)
    _client_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        validate_cloud_fields(self.name, self.project_id, self.instance_cap)
        self.configurations = tuple(self.configurations)
        if not self.instance_id:
            self.instance_id = str(uuid.uuid4())

    @property
    def display_name(self) -> str:
        return f"{CLOUD_PREFIX}{self.name}"

    def client(self) -> ComputeClient:
        """The cloud's compute client, created on first use."""
        if (client := self._client) is not None:
            return client
        with self._client_lock:
            if self._client is None:
                log.debug("Initializing compute client for {cloud}", cloud=self.name)
                self._client = self.client_factory(self)
            return self._client

    def configuration_for(self, label: str | None) -> InstanceConfiguration:
        """First configuration, in list order, that admits ``label``.

        Raises:
            NoMatchingConfigurationError: If none does.
        """
        for config in self.configurations:
            if config.matches(label):
                return config
        raise NoMatchingConfigurationError(
            self.name, f"has no configuration matching label {label!r}",
        )

    def configuration_by_description(self, description: str) -> InstanceConfiguration:
        for config in self.configurations:
            if config.description == description:
                return config
        raise NoMatchingConfigurationError(
            self.name, f"has no configuration named {description!r}",
        )

    def can_provision(self, label: str | None) -> bool:
        return any(config.matches(label) for config in self.configurations)

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
