"""SSH remote-control channel for bootstrapping workers.

``RemoteChannel`` wraps one paramiko transport: it connects without
authenticating, so authentication can be retried on its own, and runs
commands and SFTP uploads over it. ``RemoteChannel.start`` turns the
transport into an ``AttachedChannel`` carrying the agent's stdin/stdout.
Closing the attached channel closes the session and the transport
together; a transport that drops closes the attached channel.

All paramiko calls block, so they run through ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import io
import socket
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import paramiko
from loguru import logger

from stratus.constants import SSH_CONNECT_TIMEOUT, SSH_PORT
from stratus.keys import host_key_fingerprint

if TYPE_CHECKING:
    from .auth import Authenticator

log = logger.bind(component="transport")

CHANNEL_WATCH_INTERVAL = 1.0


class _Closable(Protocol):
    @property
    def is_active(self) -> bool: ...

    def close(self) -> None: ...


def remote_path(remote_dir: str, name: str) -> str:
    """Join an SFTP path; Windows directories are sent with forward slashes.

    >>> remote_path("C:\\\\stratus", "agent.jar")
    'C:/stratus/agent.jar'
    """
    base = remote_dir.replace("\\", "/").rstrip("/")
    return f"{base}/{name}"


class RemoteChannel:
    """One SSH transport to a worker instance."""

    __slots__ = ("host", "port", "_transport")

    def __init__(self, host: str, port: int, transport: paramiko.Transport) -> None:
        self.host = host
        self.port = port
        self._transport = transport

    @classmethod
    async def open(
        cls,
        host: str,
        port: int = SSH_PORT,
        timeout: float = SSH_CONNECT_TIMEOUT,
    ) -> RemoteChannel:
        """Connect and negotiate keys, without authenticating.

        Raises:
            OSError: If the TCP connection fails or times out.
            paramiko.SSHException: If the SSH handshake fails.
        """
        return await asyncio.to_thread(cls._connect, host, port, timeout)

    @classmethod
    def _connect(cls, host: str, port: int, timeout: float) -> RemoteChannel:
        log.debug("SSH: connecting to {host}:{port}", host=host, port=port)
        sock = socket.create_connection((host, port), timeout=timeout)
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=timeout)
        except (paramiko.SSHException, OSError):
            transport.close()
            raise

        # Host keys are not pinned: workers are fresh VMs with new keys.
        server_key = transport.get_remote_server_key()
        log.info(
            "SSH: {host} presented {kind} host key {fp}",
            host=host, kind=server_key.get_name(), fp=host_key_fingerprint(server_key),
        )
        return cls(host, port, transport)

    @property
    def is_active(self) -> bool:
        return self._transport.is_active()

    @property
    def is_authenticated(self) -> bool:
        return self._transport.is_authenticated()

    async def authenticate(self, username: str, authenticator: Authenticator) -> None:
        """Authenticate as ``username``.

        Raises:
            paramiko.AuthenticationException: If the server rejects the credential.
        """
        log.debug(
            "SSH: authenticating {user}@{host} with {kind}",
            user=username, host=self.host, kind=authenticator.kind,
        )
        await asyncio.to_thread(authenticator.authenticate, self._transport, username)
        if not self._transport.is_authenticated():
            raise paramiko.AuthenticationException(f"{username}@{self.host} not authenticated")

    async def exec(self, command: str) -> int:
        """Run ``command`` to completion and return its exit code."""
        return await asyncio.to_thread(self._exec, command)

    def _exec(self, command: str) -> int:
        cmd_preview = command[:80] + "..." if len(command) > 80 else command
        log.debug("SSH exec on {host}: {cmd}", host=self.host, cmd=cmd_preview)
        session = self._transport.open_session()
        try:
            session.exec_command(command)
            code = session.recv_exit_status()
        finally:
            session.close()
        log.debug("SSH exec on {host}: exit_code={code}", host=self.host, code=code)
        return code

    async def put(self, data: bytes, name: str, remote_dir: str) -> None:
        """Upload ``data`` as ``remote_dir/name`` over SFTP."""
        await asyncio.to_thread(self._put, data, remote_path(remote_dir, name))

    def _put(self, data: bytes, path: str) -> None:
        log.debug("SFTP put {size} bytes to {host}:{path}", size=len(data), host=self.host, path=path)
        sftp = paramiko.SFTPClient.from_transport(self._transport)
        if sftp is None:
            raise paramiko.SSHException(f"Cannot open SFTP session to {self.host}")
        try:
            sftp.putfo(io.BytesIO(data), path)
        finally:
            sftp.close()

    async def start(self, command: str) -> AttachedChannel:
        """Launch ``command`` in a session and hand back its streams."""
        session = await asyncio.to_thread(self._start, command)
        channel = AttachedChannel(self, session)
        channel.watch()
        return channel

    def _start(self, command: str) -> paramiko.Channel:
        log.debug("SSH start on {host}: {cmd}", host=self.host, cmd=command)
        session = self._transport.open_session()
        session.exec_command(command)
        return session

    def close(self) -> None:
        self._transport.close()


class AttachedChannel:
    """The running agent's stdin/stdout, bound to its transport."""

    __slots__ = ("_remote", "_session", "_closed", "_lock", "_listeners", "_watcher")

    def __init__(self, remote: _Closable, session: Any) -> None:
        self._remote = remote
        self._session = session
        self._closed = False
        self._lock = threading.Lock()
        self._listeners: list[Callable[[AttachedChannel], None]] = []
        self._watcher: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_listener(self, listener: Callable[[AttachedChannel], None]) -> None:
        self._listeners.append(listener)

    async def read(self, size: int = 65536) -> bytes:
        """Bytes the agent wrote to stdout; empty once the agent exits."""
        return await asyncio.to_thread(self._session.recv, size)

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._session.sendall, data)

    def watch(self, interval: float = CHANNEL_WATCH_INTERVAL) -> asyncio.Task[None]:
        """Close this channel once the transport or the agent session ends."""
        if self._watcher is None:
            self._watcher = asyncio.create_task(self._watch(interval))
        return self._watcher

    async def _watch(self, interval: float) -> None:
        while not self._closed:
            if not self._remote.is_active or self._session.exit_status_ready():
                log.info("Agent channel lost its transport; closing")
                self.close()
                return
            await asyncio.sleep(interval)

    def close(self) -> None:
        """Close the session and the transport. Safe to call repeatedly."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._session.close()
        finally:
            self._remote.close()
        for listener in self._listeners:
            listener(self)
