"""Per-instance bootstrap state machine.

Drives one freshly inserted instance from ``CREATED`` to ``ATTACHED``:

    CREATED -> NETWORK_READY -> CHANNEL_CONNECTED -> AUTHENTICATED
            -> RUNTIME_VERIFIED -> PAYLOAD_TRANSFERRED -> ATTACHED

Any failure moves the run to ``FAILED`` and raises a ``BootstrapError``.
Waiting for the network and for sshd is bounded by the launch timeout,
measured from the start of the run; authentication is bounded by the
strategy's attempt count. Every retry boundary honours ``abort()``.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import paramiko
from google.api_core.exceptions import GoogleAPIError
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)
from tenacity.stop import stop_base

from stratus.constants import (
    AGENT_JAR,
    ALIVE_STATES,
    DEFAULT_LAUNCH_TIMEOUT,
    NETWORK_RETRY_DELAY,
    SSH_CONNECT_TIMEOUT,
    SSH_PORT,
)
from stratus.core.exceptions import (
    AuthenticationError,
    BootstrapAborted,
    BootstrapError,
    LaunchTimeoutError,
    PayloadTransferError,
    RuntimeVerificationError,
    StratusError,
)
from stratus.providers.gcp.instances import instance_status, select_address

from .strategies import BootstrapStrategy, strategy_for
from .transport import AttachedChannel, RemoteChannel

if TYPE_CHECKING:
    from stratus.configuration import InstanceConfiguration
    from stratus.node import WorkerNode

log = logger.bind(component="bootstrap")

type Connector = Callable[[str, int, float], Awaitable[RemoteChannel]]
type Sleep = Callable[[float], Awaitable[None]]

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    EOFError,
    paramiko.SSHException,
)


class BootstrapState(StrEnum):
    CREATED = "CREATED"
    NETWORK_READY = "NETWORK_READY"
    CHANNEL_CONNECTED = "CHANNEL_CONNECTED"
    AUTHENTICATED = "AUTHENTICATED"
    RUNTIME_VERIFIED = "RUNTIME_VERIFIED"
    PAYLOAD_TRANSFERRED = "PAYLOAD_TRANSFERRED"
    ATTACHED = "ATTACHED"
    FAILED = "FAILED"


_NEXT: dict[BootstrapState, BootstrapState] = {
    BootstrapState.CREATED: BootstrapState.NETWORK_READY,
    BootstrapState.NETWORK_READY: BootstrapState.CHANNEL_CONNECTED,
    BootstrapState.CHANNEL_CONNECTED: BootstrapState.AUTHENTICATED,
    BootstrapState.AUTHENTICATED: BootstrapState.RUNTIME_VERIFIED,
    BootstrapState.RUNTIME_VERIFIED: BootstrapState.PAYLOAD_TRANSFERRED,
    BootstrapState.PAYLOAD_TRANSFERRED: BootstrapState.ATTACHED,
}


@dataclass(frozen=True, slots=True)
class BootstrapTimings:
    """Timeouts and backoff for one bootstrap run, in seconds.

    ``launch_timeout`` of 0 waits forever. ``auth_attempts`` and
    ``auth_delay`` default to the OS strategy's values.
    """

    launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT
    network_retry_delay: float = NETWORK_RETRY_DELAY
    connect_timeout: float = SSH_CONNECT_TIMEOUT
    auth_attempts: int | None = None
    auth_delay: float | None = None

    @classmethod
    def for_configuration(
        cls, config: InstanceConfiguration, **overrides: float | int | None,
    ) -> BootstrapTimings:
        return cls(launch_timeout=config.launch_timeout, **overrides)  # type: ignore[arg-type]


class _AddressPending(Exception):
    """The instance has no reachable address yet."""


class stop_at_deadline(stop_base):
    """Stop once the run's launch timeout has elapsed."""

    def __init__(self, expired: Callable[[], bool]) -> None:
        self._expired = expired

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._expired()


class BootstrapProtocol:
    """Bootstrap one worker node.

    Args:
        node: The node being bootstrapped; polled for its address and asked
            for its credential.
        payload: Agent archive copied to the instance as ``agent.jar``.
        timings: Timeouts and backoff; derived from the node's configuration
            when omitted.
        strategy: OS-specific steps; derived from the configuration when omitted.
        connect: Opens a remote channel; ``RemoteChannel.open`` by default.
        sleep: Awaited between retries.
        clock: Monotonic clock the launch timeout is measured on.
    """

    def __init__(
        self,
        node: WorkerNode,
        payload: bytes,
        *,
        timings: BootstrapTimings | None = None,
        strategy: BootstrapStrategy | None = None,
        connect: Connector = RemoteChannel.open,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._node = node
        self._payload = payload
        self._timings = timings or BootstrapTimings.for_configuration(node.config)
        self._strategy = strategy or strategy_for(node.config)
        self._connect = connect
        self._sleep = sleep
        self._clock = clock
        self._abort = threading.Event()
        self._state = BootstrapState.CREATED
        self._started: float | None = None
        self._channel: RemoteChannel | None = None
        self._log = log.bind(instance=node.name)
        self.history: list[BootstrapState] = [BootstrapState.CREATED]
        self.auth_attempts = 0

    @property
    def state(self) -> BootstrapState:
        return self._state

    def abort(self) -> None:
        """Stop at the next retry boundary."""
        self._abort.set()

    async def run(self) -> AttachedChannel:
        """Run every stage in order and return the agent's channel.

        Raises:
            BootstrapError: The failing state and cause; the protocol is FAILED.
        """
        if self._state is not BootstrapState.CREATED:
            raise RuntimeError(f"Bootstrap of {self._node.name} already ran")
        self._started = self._clock()

        try:
            address = await self._await_network()
            self._advance(BootstrapState.NETWORK_READY)

            self._channel = await self._open_channel(address)
            self._advance(BootstrapState.CHANNEL_CONNECTED)

            await self._authenticate(address)
            self._advance(BootstrapState.AUTHENTICATED)

            await self._verify_runtime()
            self._advance(BootstrapState.RUNTIME_VERIFIED)

            await self._transfer_payload()
            self._advance(BootstrapState.PAYLOAD_TRANSFERRED)

            attached = await self._attach()
            self._advance(BootstrapState.ATTACHED)
        except BootstrapError as e:
            self._fail(e)
            raise
        except StratusError as e:
            error = BootstrapError(self._state, str(e))
            self._fail(error)
            raise error from e
        except asyncio.CancelledError:
            self._fail(None)
            raise
        except Exception as e:
            error = BootstrapError(self._state, f"unexpected {type(e).__name__}: {e}")
            self._fail(error)
            raise error from e

        return attached

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _await_network(self) -> str:
        self._check_abort()
        use_internal = self._node.config.network.use_internal_address
        address = ""
        try:
            async for attempt in self._retrying(
                retry_on=(GoogleAPIError, _AddressPending),
                delay=self._timings.network_retry_delay,
                stop=stop_at_deadline(self._deadline_expired),
            ):
                with attempt:
                    instance = await self._node.refresh()
                    status = instance_status(instance)
                    if status and status not in ALIVE_STATES:
                        raise BootstrapError(self._state, f"instance is {status}")
                    address = select_address(instance, use_internal=use_internal) or ""
                    if not address:
                        raise _AddressPending(f"{self._node.name} has no address yet ({status})")
        except (GoogleAPIError, _AddressPending) as e:
            raise self._stopped(e) from e

        self._log.info("Instance reachable at {address}", address=address)
        return address

    async def _open_channel(self, address: str) -> RemoteChannel:
        self._check_abort()
        channel: RemoteChannel | None = None
        try:
            async for attempt in self._retrying(
                retry_on=TRANSPORT_ERRORS,
                delay=self._timings.network_retry_delay,
                stop=stop_at_deadline(self._deadline_expired),
            ):
                with attempt:
                    channel = await self._connect(address, SSH_PORT, self._timings.connect_timeout)
        except TRANSPORT_ERRORS as e:
            raise self._stopped(e) from e

        assert channel is not None
        return channel

    async def _authenticate(self, address: str) -> None:
        self._check_abort()
        strategy = self._strategy
        attempts = self._timings.auth_attempts or strategy.auth_attempts
        delay = (
            self._timings.auth_delay
            if self._timings.auth_delay is not None
            else strategy.auth_delay
        )
        authenticator = self._node.authenticator()

        try:
            async for attempt in self._retrying(
                retry_on=TRANSPORT_ERRORS,
                delay=delay,
                stop=stop_after_attempt(attempts),
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self._close_channel()
                        self._channel = await self._open_channel(address)
                    assert self._channel is not None
                    self.auth_attempts += 1
                    await self._channel.authenticate(strategy.username, authenticator)
        except TRANSPORT_ERRORS as e:
            if self._abort.is_set():
                raise BootstrapAborted(self._state, "aborted during authentication") from e
            raise AuthenticationError(
                self._state,
                f"{strategy.username}@{address} not accepted after "
                f"{self.auth_attempts} attempt(s): {e}",
            ) from e

        self._log.info(
            "Authenticated as {user} with {kind}",
            user=strategy.username, kind=authenticator.kind,
        )

    async def _verify_runtime(self) -> None:
        self._check_abort()
        command = self._strategy.verify_command
        try:
            code = await self._require_channel().exec(command)
        except TRANSPORT_ERRORS as e:
            raise BootstrapError(self._state, f"'{command}' could not run: {e}") from e
        if code != 0:
            raise RuntimeVerificationError(self._state, command, code)

    async def _transfer_payload(self) -> None:
        self._check_abort()
        channel = self._require_channel()
        directory = self._node.config.agent_dir
        mkdir = self._strategy.mkdir_command(directory)
        try:
            code = await channel.exec(mkdir)
            if code != 0:
                raise PayloadTransferError(self._state, f"'{mkdir}' exited with {code}")
            await channel.put(self._payload, AGENT_JAR, directory)
        except TRANSPORT_ERRORS as e:
            raise PayloadTransferError(self._state, f"copy to {directory} failed: {e}") from e

        self._log.debug(
            "Copied {size} bytes of {jar} to {directory}",
            size=len(self._payload), jar=AGENT_JAR, directory=directory,
        )

    async def _attach(self) -> AttachedChannel:
        self._check_abort()
        command = self._strategy.launch_command(self._node.config.agent_dir)
        try:
            attached = await self._require_channel().start(command)
        except TRANSPORT_ERRORS as e:
            raise BootstrapError(self._state, f"agent did not start: {e}") from e
        # The attached channel owns the transport from here on.
        self._channel = None
        if self._abort.is_set():
            attached.close()
            raise BootstrapAborted(self._state, "aborted while the agent was starting")
        return attached

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _retrying(
        self,
        *,
        retry_on: type[BaseException] | tuple[type[BaseException], ...],
        delay: float,
        stop: stop_base,
    ) -> AsyncRetrying:
        return AsyncRetrying(
            sleep=self._sleep,
            wait=wait_fixed(delay),
            stop=stop | stop_when_event_set(self._abort),
            retry=retry_if_exception_type(retry_on),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        self._log.debug(
            "{state}: attempt {n} failed ({err}); retrying",
            state=self._state,
            n=retry_state.attempt_number,
            err=outcome.exception() if outcome else None,
        )

    def _deadline_expired(self) -> bool:
        timeout = self._timings.launch_timeout
        if timeout <= 0 or self._started is None:
            return False
        return self._clock() - self._started >= timeout

    def _stopped(self, cause: BaseException) -> BootstrapError:
        if self._abort.is_set():
            return BootstrapAborted(self._state, "aborted")
        return LaunchTimeoutError(
            self._state,
            f"not ready within {self._timings.launch_timeout:g}s: {cause}",
        )

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise BootstrapAborted(self._state, "aborted")

    def _require_channel(self) -> RemoteChannel:
        if self._channel is None:
            raise BootstrapError(self._state, "no remote channel")
        return self._channel

    def _advance(self, state: BootstrapState) -> None:
        expected = _NEXT.get(self._state)
        if state is not expected:
            raise RuntimeError(f"Illegal bootstrap transition {self._state} -> {state}")
        self._state = state
        self.history.append(state)
        self._log.debug("Bootstrap reached {state}", state=state)

    def _close_channel(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    def _fail(self, error: BootstrapError | None) -> None:
        self._log.warning(
            "Bootstrap failed in {state}: {err}",
            state=self._state, err=error if error is not None else "cancelled",
        )
        self._close_channel()
        self._state = BootstrapState.FAILED
        self.history.append(BootstrapState.FAILED)
