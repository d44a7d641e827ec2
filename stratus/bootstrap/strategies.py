"""OS-specific bootstrap steps.

The protocol is the same for every guest; what differs is who logs in, how
patient authentication is, and the shell syntax of the commands run on the
way to attaching the agent.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass

from stratus.configuration import (
    InstanceConfiguration,
    PosixConfiguration,
    WindowsConfiguration,
)
from stratus.constants import (
    AGENT_JAR,
    JAVA_CHECK_COMMAND,
    WINDOWS_AUTH_ATTEMPTS,
    WINDOWS_AUTH_DELAY,
)


@dataclass(frozen=True, slots=True)
class PosixStrategy:
    """Linux guests: sshd is up once the network is, one login attempt decides."""

    username: str
    auth_attempts: int = 1
    auth_delay: float = 0.0
    verify_command: str = JAVA_CHECK_COMMAND

    def mkdir_command(self, directory: str) -> str:
        return f"mkdir -p {shlex.quote(directory)}"

    def launch_command(self, directory: str) -> str:
        jar = shlex.quote(f"{directory.rstrip('/')}/{AGENT_JAR}")
        return f"cd {shlex.quote(directory)} && java -jar {jar}"


@dataclass(frozen=True, slots=True)
class WindowsStrategy:
    """Windows guests: OpenSSH accepts logins well after boot, so keep trying."""

    username: str
    auth_attempts: int = WINDOWS_AUTH_ATTEMPTS
    auth_delay: float = WINDOWS_AUTH_DELAY
    verify_command: str = JAVA_CHECK_COMMAND

    def mkdir_command(self, directory: str) -> str:
        return f'if not exist "{directory}" mkdir "{directory}"'

    def launch_command(self, directory: str) -> str:
        jar = directory.rstrip("\\") + "\\" + AGENT_JAR
        return f'java -jar "{jar}"'


type BootstrapStrategy = PosixStrategy | WindowsStrategy


def strategy_for(config: InstanceConfiguration) -> BootstrapStrategy:
    match config.os:
        case WindowsConfiguration(username=username):
            return WindowsStrategy(username=username)
        case PosixConfiguration(run_as_user=user):
            return PosixStrategy(username=user)
