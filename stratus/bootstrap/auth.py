"""Credentials for the remote-control channel.

An authenticator is a capability: it knows how to prove one identity to an
already-negotiated SSH transport and nothing else. Which one a worker uses
depends on its OS flavor and on whether a key was generated for it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import paramiko

from stratus.configuration import OsConfiguration, PosixConfiguration, WindowsConfiguration
from stratus.core.exceptions import ConfigurationError
from stratus.keys import KeyPair, load_private_key


class Authenticator(Protocol):
    @property
    def kind(self) -> str: ...

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        """Authenticate ``username``; raise ``paramiko.AuthenticationException`` on rejection."""
        ...


@dataclass(frozen=True, slots=True)
class PrivateKeyAuthenticator:
    key: paramiko.PKey = field(repr=False)

    @property
    def kind(self) -> str:
        return f"publickey ({self.key.get_name()})"

    @classmethod
    def from_file(cls, path: str) -> PrivateKeyAuthenticator:
        return cls(load_private_key(path))

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        transport.auth_publickey(username, self.key)


@dataclass(frozen=True, slots=True)
class PasswordAuthenticator:
    password: str = field(repr=False)

    @property
    def kind(self) -> str:
        return "password"

    def authenticate(self, transport: paramiko.Transport, username: str) -> None:
        transport.auth_password(username, self.password)


def select_authenticator(os: OsConfiguration, key_pair: KeyPair | None = None) -> Authenticator:
    """Pick the credential a worker logs in with.

    A configured private key wins, then a generated key pair, then a
    Windows password.

    Raises:
        ConfigurationError: If the OS flavor leaves no usable credential.
    """
    if os.private_key_path:
        return PrivateKeyAuthenticator.from_file(os.private_key_path)
    if key_pair is not None:
        return PrivateKeyAuthenticator(key_pair.private)

    match os:
        case WindowsConfiguration(password=str(password)) if password:
            return PasswordAuthenticator(password)
        case WindowsConfiguration(username=username):
            raise ConfigurationError(f"Windows user {username} has no password or private key")
        case PosixConfiguration(run_as_user=user):
            raise ConfigurationError(f"No private key available for POSIX user {user}")
