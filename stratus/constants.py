"""Centralized constants and enums for Stratus.

All label keys, instance states and bootstrap defaults are defined here
so the controller, the reconciler and the bootstrap protocol agree on them.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Compute Engine Labels
# =============================================================================


class StratusLabel(StrEnum):
    """Compute Engine label keys stamped on every instance Stratus creates.

    The pair (CLOUD_ID, CONFIG_NAME) is the only link between a running
    instance and the configuration that produced it.
    """

    CLOUD_ID = "stratus_cloud_id"
    CONFIG_NAME = "stratus_config_name"


CLOUD_PREFIX: Final = "gce-"

# No cap configured; matches the largest 32-bit signed value.
UNLIMITED_INSTANCE_CAP: Final = 2**31 - 1


# =============================================================================
# Compute Engine Instance States
# =============================================================================


class InstanceState(StrEnum):
    """Compute Engine instance status values."""

    PROVISIONING = "PROVISIONING"
    STAGING = "STAGING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    SUSPENDING = "SUSPENDING"
    SUSPENDED = "SUSPENDED"
    REPAIRING = "REPAIRING"
    TERMINATED = "TERMINATED"


ALIVE_STATES: Final = frozenset({
    InstanceState.PROVISIONING,
    InstanceState.STAGING,
    InstanceState.RUNNING,
})


# =============================================================================
# Networking
# =============================================================================

NAT_TYPE: Final = "ONE_TO_ONE_NAT"
NAT_NAME: Final = "External NAT"
SSH_PORT: Final = 22


# =============================================================================
# Bootstrap Defaults
# =============================================================================

# Timeouts and delays (in seconds)
DEFAULT_LAUNCH_TIMEOUT: Final = 300
SSH_CONNECT_TIMEOUT: Final = 10.0
NETWORK_RETRY_DELAY: Final = 5.0
WINDOWS_AUTH_ATTEMPTS: Final = 30
WINDOWS_AUTH_DELAY: Final = 15.0

DEFAULT_RETENTION_MINUTES: Final = 6

AGENT_JAR: Final = "agent.jar"
JAVA_CHECK_COMMAND: Final = "java -fullversion"
POSIX_REMOTE_FS: Final = "/var/lib/stratus"
WINDOWS_REMOTE_FS: Final = "C:\\stratus"
