"""Custom exception hierarchy for Stratus.

All stratus-specific exceptions inherit from StratusError, enabling
callers to catch all stratus exceptions with a single except clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stratus.bootstrap.protocol import BootstrapState


class StratusError(Exception):
    """Base exception for all Stratus errors."""


class ConfigurationError(StratusError):
    """Raised for invalid configuration or missing required settings."""


class ProvisioningError(StratusError):
    """Raised when a provisioning call cannot continue."""


class NoMatchingConfigurationError(ProvisioningError):
    """Raised when no instance configuration admits the requested label."""

    def __init__(self, cloud: str, reason: str) -> None:
        self.cloud = cloud
        super().__init__(f"Cloud {cloud} {reason}")


class CapacityQueryError(ProvisioningError):
    """Raised when existing instances of a cloud cannot be counted."""


class BootstrapError(StratusError):
    """Raised when a bootstrap attempt ends in FAILED."""

    def __init__(self, state: BootstrapState, message: str) -> None:
        self.state = state
        super().__init__(f"Bootstrap failed in state {state}: {message}")


class LaunchTimeoutError(BootstrapError):
    """Raised when an instance is not reachable within its launch timeout."""


class AuthenticationError(BootstrapError):
    """Raised when the remote-control channel rejects every credential."""


class RuntimeVerificationError(BootstrapError):
    """Raised when the agent runtime check exits non-zero."""

    def __init__(self, state: BootstrapState, command: str, exit_code: int) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(state, f"'{command}' exited with {exit_code}")


class PayloadTransferError(BootstrapError):
    """Raised when the agent payload cannot be copied to the instance."""


class BootstrapAborted(BootstrapError):
    """Raised when an operator aborts a bootstrap run."""
