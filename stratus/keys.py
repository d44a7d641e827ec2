"""SSH key utilities for worker instances.

POSIX configurations without an operator-supplied private key get an
ephemeral RSA key pair per instance; the public half travels to the VM as
``ssh-keys`` metadata and the private half stays on the worker node.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from pathlib import Path

import paramiko
from paramiko.pkey import UnknownKeyType

from stratus.core.exceptions import ConfigurationError

DEFAULT_KEY_BITS = 2048


@dataclass(frozen=True, slots=True)
class KeyPair:
    """Private key plus its OpenSSH public line."""

    private: paramiko.PKey
    public: str

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.public)


def compute_fingerprint(public_key: str) -> str:
    """Compute SSH key fingerprint (MD5 colon-separated format).

    Args:
        public_key: SSH public key content (e.g., "ssh-rsa AAAA... user@host")

    Returns:
        Fingerprint in format "aa:bb:cc:..." or empty string when the
        key is not in OpenSSH format.
    """
    parts = public_key.strip().split()
    if len(parts) < 2:
        return ""
    try:
        decoded = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        return ""
    digest = hashlib.md5(decoded).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def host_key_fingerprint(key: paramiko.PKey) -> str:
    return compute_fingerprint(f"{key.get_name()} {key.get_base64()}")


def generate_keypair(comment: str = "stratus", bits: int = DEFAULT_KEY_BITS) -> KeyPair:
    """Generate an RSA key pair for one instance."""
    key = paramiko.RSAKey.generate(bits)
    return KeyPair(private=key, public=f"{key.get_name()} {key.get_base64()} {comment}")


def load_private_key(path: str) -> paramiko.PKey:
    """Load an operator-supplied private key of any type paramiko knows.

    Raises:
        ConfigurationError: If the file is missing or cannot be parsed.
    """
    key_path = Path(path).expanduser()
    if not key_path.is_file():
        raise ConfigurationError(f"Private key not found: {path}")

    try:
        return paramiko.PKey.from_path(key_path)
    except (paramiko.SSHException, UnknownKeyType, ValueError) as e:
        raise ConfigurationError(f"Cannot read private key {path}: {e}") from e


def ssh_keys_metadata(user: str, public_key: str) -> str:
    """Value of the ``ssh-keys`` metadata entry granting ``user`` the key."""
    return f"{user}:{public_key.strip()}"
