"""Worker bootstrap: from an inserted instance to an attached agent."""

from .auth import (
    Authenticator,
    PasswordAuthenticator,
    PrivateKeyAuthenticator,
    select_authenticator,
)
from .protocol import BootstrapProtocol, BootstrapState, BootstrapTimings
from .strategies import BootstrapStrategy, PosixStrategy, WindowsStrategy, strategy_for
from .transport import AttachedChannel, RemoteChannel

__all__ = [
    "AttachedChannel",
    "Authenticator",
    "BootstrapProtocol",
    "BootstrapState",
    "BootstrapStrategy",
    "BootstrapTimings",
    "PasswordAuthenticator",
    "PosixStrategy",
    "PrivateKeyAuthenticator",
    "RemoteChannel",
    "WindowsStrategy",
    "select_authenticator",
    "strategy_for",
]
