"""Instance configurations.

An ``InstanceConfiguration`` is the immutable template a cloud provisions
workers from: where the VM runs, what it boots, how it is reached, and which
scheduler labels it serves. ``provision`` turns one into a live Compute
Engine instance and a ``WorkerNode`` bound to the insert operation.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING

from loguru import logger

from stratus.constants import (
    DEFAULT_LAUNCH_TIMEOUT,
    DEFAULT_RETENTION_MINUTES,
    POSIX_REMOTE_FS,
    WINDOWS_REMOTE_FS,
    StratusLabel,
)
from stratus.core.exceptions import ConfigurationError
from stratus.keys import KeyPair, generate_keypair, ssh_keys_metadata
from stratus.providers.gcp.instances import build_instance
from stratus.validation import validate_configuration

if TYPE_CHECKING:
    from stratus.cloud import Cloud
    from stratus.node import WorkerNode

log = logger.bind(component="configuration")

_LABEL_SEPARATORS = re.compile(r"[\s,]+")


def parse_labels(label_string: str | None) -> frozenset[str]:
    """Split a scheduler label string on whitespace and commas."""
    if not label_string:
        return frozenset()
    return frozenset(atom for atom in _LABEL_SEPARATORS.split(label_string) if atom)


class Mode(StrEnum):
    """How a configuration competes for demand.

    NORMAL serves unlabeled demand and any demand sharing one of its labels.
    EXCLUSIVE serves only demand that names one of its labels.
    """

    NORMAL = "NORMAL"
    EXCLUSIVE = "EXCLUSIVE"


@dataclass(frozen=True, slots=True)
class AcceleratorConfiguration:
    name: str
    count: int = 1


@dataclass(frozen=True, slots=True)
class BootDisk:
    """Boot disk template.

    ``source_image_name`` may be a bare image name (resolved in
    ``source_image_project``), a ``projects/...`` path, or a full URL.
    """

    source_image_name: str
    source_image_project: str = ""
    type: str = "pd-standard"
    size_gb: int = 10
    auto_delete: bool = True


@dataclass(frozen=True, slots=True)
class NetworkConfiguration:
    network: str = "default"
    subnetwork: str = ""
    tags: tuple[str, ...] = ()
    external_address: bool = True
    use_internal_address: bool = False


@dataclass(frozen=True, slots=True)
class PosixConfiguration:
    """Linux guest reached over SSH.

    Without ``private_key_path`` an ephemeral key pair is generated per
    instance and its public half is injected as ``ssh-keys`` metadata.
    """

    run_as_user: str = "stratus"
    private_key_path: str | None = None


@dataclass(frozen=True, slots=True)
class WindowsConfiguration:
    """Windows guest reached over OpenSSH with a password or a private key."""

    username: str
    password: str | None = None
    private_key_path: str | None = None

    def __post_init__(self) -> None:
        if not self.username:
            raise ConfigurationError("Windows configuration requires a username")
        if not self.password and not self.private_key_path:
            raise ConfigurationError(
                f"Windows user {self.username} needs a password or a private key"
            )


type OsConfiguration = PosixConfiguration | WindowsConfiguration


@dataclass(frozen=True, slots=True)
class InstanceConfiguration:
    """Template for the workers one cloud provisions.

    Args:
        name_prefix: Instance name prefix; also the ``stratus_config_name``
            label value that links instances back to this configuration.
        description: Unique human name, used for explicit provisioning.
        region: Region name or resource URL.
        zone: Zone name or resource URL.
        machine_type: Machine type name or resource URL.
        boot_disk: Boot disk template.
        accelerator: Optional guest accelerator.
        network: Network interface template.
        mode: Label matching mode.
        os: Guest OS flavor and login credentials.
        label_string: Scheduler labels, whitespace or comma separated.
        labels: Extra Compute Engine labels stamped on each instance.
        launch_timeout: Seconds to wait for a worker to attach; 0 waits forever.
        retention_time: Idle minutes before a worker is retired.
        num_executors: Executors each worker offers.
        one_shot: Retire a worker after its first job.
        remote_fs: Agent working directory; OS default when unset.
        startup_script: Script run by the guest at boot.
        preemptible: Use preemptible (spot) scheduling.
        min_cpu_platform: Minimum CPU platform, e.g. "Intel Skylake".
        template: Source instance template URL.
        service_account_email: Service account attached to the VM.
    """

    name_prefix: str
    description: str
    region: str
    zone: str
    machine_type: str
    boot_disk: BootDisk
    accelerator: AcceleratorConfiguration | None = None
    network: NetworkConfiguration = field(default_factory=NetworkConfiguration)
    mode: Mode = Mode.NORMAL
    os: OsConfiguration = field(default_factory=PosixConfiguration)
    label_string: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    launch_timeout: int = DEFAULT_LAUNCH_TIMEOUT
    retention_time: int = DEFAULT_RETENTION_MINUTES
    num_executors: int = 1
    one_shot: bool = False
    remote_fs: str | None = None
    startup_script: str = ""
    preemptible: bool = False
    min_cpu_platform: str = ""
    template: str = ""
    service_account_email: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))
        validate_configuration(self)

    @property
    def label_set(self) -> frozenset[str]:
        return parse_labels(self.label_string)

    @property
    def is_windows(self) -> bool:
        return isinstance(self.os, WindowsConfiguration)

    @property
    def agent_dir(self) -> str:
        if self.remote_fs:
            return self.remote_fs
        return WINDOWS_REMOTE_FS if self.is_windows else POSIX_REMOTE_FS

    def matches(self, label: str | None) -> bool:
        """Whether this configuration may serve demand for ``label``."""
        wanted = parse_labels(label)
        match self.mode:
            case Mode.EXCLUSIVE:
                return bool(wanted & self.label_set)
            case Mode.NORMAL:
                return not wanted or bool(wanted & self.label_set)

    def cloud_labels(self, cloud_id: str) -> dict[str, str]:
        """Configured labels plus the pair tying an instance to this config."""
        return {
            **self.labels,
            StratusLabel.CLOUD_ID.value: cloud_id,
            StratusLabel.CONFIG_NAME.value: self.name_prefix,
        }

    def instance_metadata(self, key_pair: KeyPair | None = None) -> dict[str, str]:
        metadata: dict[str, str] = {}
        if self.startup_script:
            key = "windows-startup-script-ps1" if self.is_windows else "startup-script"
            metadata[key] = self.startup_script
        if key_pair is not None and isinstance(self.os, PosixConfiguration):
            metadata["ssh-keys"] = ssh_keys_metadata(self.os.run_as_user, key_pair.public)
        return metadata

    def new_instance_name(self) -> str:
        return f"{self.name_prefix}-{uuid.uuid4().hex[:8]}"

    async def provision(self, cloud: Cloud) -> WorkerNode:
        """Insert one instance built from this template.

        Returns once the insert operation has completed; the worker is
        reachable only after its bootstrap completes.

        Raises:
            ProvisioningError: If the insert operation finished with an error.
        """
        from stratus.node import WorkerNode

        name = self.new_instance_name()
        key_pair: KeyPair | None = None
        if isinstance(self.os, PosixConfiguration) and not self.os.private_key_path:
            key_pair = generate_keypair(comment=self.os.run_as_user)
            log.debug(
                "Generated key {fp} for {name}", fp=key_pair.fingerprint, name=name,
            )

        instance = build_instance(
            self,
            name=name,
            labels=self.cloud_labels(cloud.instance_id),
            metadata=self.instance_metadata(key_pair),
        )

        client = cloud.client()
        log.info(
            "Inserting instance {name} in {zone} for {config}",
            name=name, zone=self.zone, config=self.description,
        )
        operation = await client.insert_instance(self.zone, instance, self.template)
        operation_name = str(getattr(operation, "name", "") or "")
        await client.wait_for_operation(operation)
        log.debug("Insert of {name} completed ({op})", name=name, op=operation_name)

        return WorkerNode(
            name=name,
            zone=self.zone,
            operation=operation_name,
            config=self,
            cloud=cloud,
            key_pair=key_pair,
        )
