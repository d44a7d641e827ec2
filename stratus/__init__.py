"""Stratus - elastic Compute Engine workers for a job scheduler.

Example:

    from stratus import NodeRegistry, ProvisioningController, resolve_cloud

    cloud = resolve_cloud("build")
    controller = ProvisioningController(cloud, NodeRegistry(payload=agent_jar))

    planned = await controller.provision("linux", excess_workload=4)
    attached = await asyncio.gather(*(p.attached for p in planned))
"""

# Logging stays disabled until setup_logging is called
from stratus.observability.logging import LogConfig, setup_logging, teardown_logging

# Bootstrap
from stratus.bootstrap import (
    AttachedChannel,
    BootstrapProtocol,
    BootstrapState,
    BootstrapTimings,
)

# Clouds and configurations
from stratus.cloud import Cloud
from stratus.config import load_config, resolve_cloud, save_config
from stratus.configuration import (
    AcceleratorConfiguration,
    BootDisk,
    InstanceConfiguration,
    Mode,
    NetworkConfiguration,
    PosixConfiguration,
    WindowsConfiguration,
)

# Provisioning
from stratus.controller import PlannedNode, ProvisioningController
from stratus.node import WorkerNode
from stratus.reconciler import headroom, instances_by_configuration, live_instances
from stratus.retention import RetentionPolicy
from stratus.scheduler import JobScheduler, NodeRegistry

# Errors
from stratus.core.exceptions import (
    AuthenticationError,
    BootstrapAborted,
    BootstrapError,
    CapacityQueryError,
    ConfigurationError,
    LaunchTimeoutError,
    NoMatchingConfigurationError,
    PayloadTransferError,
    ProvisioningError,
    RuntimeVerificationError,
    StratusError,
)

__version__ = "0.1.0"

__all__ = [
    "AcceleratorConfiguration",
    "AttachedChannel",
    "AuthenticationError",
    "BootDisk",
    "BootstrapAborted",
    "BootstrapError",
    "BootstrapProtocol",
    "BootstrapState",
    "BootstrapTimings",
    "CapacityQueryError",
    "Cloud",
    "ConfigurationError",
    "InstanceConfiguration",
    "JobScheduler",
    "LaunchTimeoutError",
    "LogConfig",
    "Mode",
    "NetworkConfiguration",
    "NoMatchingConfigurationError",
    "NodeRegistry",
    "PayloadTransferError",
    "PlannedNode",
    "PosixConfiguration",
    "ProvisioningController",
    "ProvisioningError",
    "RetentionPolicy",
    "RuntimeVerificationError",
    "StratusError",
    "WindowsConfiguration",
    "WorkerNode",
    "__version__",
    "headroom",
    "instances_by_configuration",
    "live_instances",
    "load_config",
    "resolve_cloud",
    "save_config",
    "setup_logging",
    "teardown_logging",
]
