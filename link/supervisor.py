"""Connection lifecycle of one peer: connect, keep-alive, timeout, retry, teardown."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

from common.addressing import validate_peer_address
from common.config import SupervisorConfig
from common.exceptions import AddressValidationError, FailureReason, PeerSyncError, TransportError
from common.logging_config import get_logger
from common.observable import StateStream
from link.models import ConnectionInfo, ConnectionState, PeerConnection, PeerState
from link.transport import LinkTransport

logger = get_logger(__name__)

MSG_UNSUPPORTED = "Wi-Fi Direct is not supported on this device"
MSG_ERROR = "Connection failed due to an error"
MSG_BUSY = "System is busy"
MSG_FAILED = "Connection failed"
MSG_TIMED_OUT = "Connection timed out"
MSG_LOST = "Connection lost"

_FAILURE_MESSAGES = {
    FailureReason.UNSUPPORTED: MSG_UNSUPPORTED,
    FailureReason.ERROR: MSG_ERROR,
    FailureReason.BUSY: MSG_BUSY,
}


@dataclass
class _Event:
    kind: str
    attempt_id: Optional[int] = None
    payload: Any = None
    reply: Optional[asyncio.Future] = None


class ConnectionSupervisor:
    """
    State machine for the logical link to one peer.

    All transitions happen in a single consumer task reading an event queue.
    Transport calls, timers and keep-alive probes run as separate tasks and
    post their outcome back as events tagged with the attempt id they belong
    to, so results of a superseded attempt are recognised and dropped.

    Observers read `state` (ConnectionState) and `connection_info`
    (ConnectionInfo or None).
    """

    def __init__(
        self,
        transport: LinkTransport,
        config: Optional[SupervisorConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            transport: Platform link the supervisor drives
            config: Timing and retry policy
            clock: Monotonic time source used for debouncing and keep-alive spacing
        """
        self.transport = transport
        self.config = config or SupervisorConfig()
        self.clock = clock

        self.state: StateStream[ConnectionState] = StateStream(ConnectionState())
        self.connection_info: StateStream[Optional[ConnectionInfo]] = StateStream(None)

        self._peer: Optional[PeerConnection] = None
        self._attempt_counter = 0
        self._last_connect_request: Optional[float] = None
        self._probe_attempt: Optional[int] = None

        self._events: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._consumer: Optional[asyncio.Task] = None
        self._attempt_tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._discovery_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def peer(self) -> Optional[PeerConnection]:
        return self._peer

    async def start(self) -> None:
        """Start the event consumer. Starting twice is a no-op."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        logger.info("Connection supervisor started")

    async def stop(self) -> None:
        """Stop the consumer and cancel every timer and pending transport call."""
        if self._consumer is None:
            return
        consumer = self._consumer
        self._consumer = None
        consumer.cancel()

        tasks = [consumer, *self._attempt_tasks, *self._background]
        if self._discovery_task is not None:
            tasks.append(self._discovery_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._attempt_tasks.clear()
        self._background.clear()
        self._discovery_task = None

        while self._events is not None and not self._events.empty():
            event = self._events.get_nowait()
            if event.reply is not None and not event.reply.done():
                event.reply.cancel()
        logger.info("Connection supervisor stopped")

    # Public requests

    async def connect(self, peer_id: str) -> bool:
        """
        Start connecting to a peer.

        Returns:
            False if the request was debounced or the peer is already
            connecting/connected, True if a new attempt started
        """
        return await self._request("connect", peer_id)

    async def disconnect(self) -> None:
        """Tear the link down and return to idle. No-op when already idle."""
        await self._request("disconnect")

    async def cancel_invitation(self) -> bool:
        """
        Abort an attempt that is still connecting.

        Returns:
            True if an attempt was cancelled
        """
        return await self._request("cancel_invitation")

    def notify_connection_info(self, info: Optional[ConnectionInfo]) -> None:
        """
        Report connection info from the transport side. Safe from any thread.
        """
        if self._loop is None or self._events is None:
            logger.warning("Connection info received before the supervisor started")
            return
        self._loop.call_soon_threadsafe(
            self._events.put_nowait, _Event("connection_info", payload=info)
        )

    async def _request(self, kind: str, payload: Any = None) -> Any:
        if not self.running:
            raise PeerSyncError("Connection supervisor is not running")
        reply = self._loop.create_future()
        self._events.put_nowait(_Event(kind, payload=payload, reply=reply))
        return await reply

    # Event consumer

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            try:
                result = await self._dispatch(event)
            except asyncio.CancelledError:
                if event.reply is not None and not event.reply.done():
                    event.reply.cancel()
                raise
            except Exception as e:
                logger.error(f"Error handling {event.kind} event: {e}", exc_info=True)
                if event.reply is not None and not event.reply.done():
                    event.reply.set_exception(e)
                continue
            if event.reply is not None and not event.reply.done():
                event.reply.set_result(result)

    async def _dispatch(self, event: _Event) -> Any:
        if event.kind == "connect":
            return await self._handle_connect(event.payload)
        if event.kind == "disconnect":
            return await self._handle_disconnect()
        if event.kind == "cancel_invitation":
            return await self._handle_cancel_invitation()
        if event.kind == "connection_info":
            return self._handle_connection_info(event.attempt_id, event.payload)

        if not self._is_current(event.attempt_id):
            logger.debug(f"Ignoring stale {event.kind} event from attempt {event.attempt_id}")
            return None

        if event.kind == "connect_result":
            return self._handle_connect_result(event.payload)
        if event.kind == "timeout":
            return self._handle_timeout()
        if event.kind == "keep_alive_tick":
            return self._handle_keep_alive_tick()
        if event.kind == "keep_alive_result":
            return await self._handle_keep_alive_result(event.payload)
        logger.warning(f"Unknown supervisor event: {event.kind}")
        return None

    def _is_current(self, attempt_id: Optional[int]) -> bool:
        return self._peer is not None and attempt_id == self._peer.attempt_id

    # Handlers

    async def _handle_connect(self, peer_id: str) -> bool:
        peer = self._peer
        if peer is not None and peer.peer_id == peer_id and peer.state in (PeerState.CONNECTING, PeerState.CONNECTED):
            logger.warning(f"Already {peer.state.value} to {peer_id}, ignoring connect request")
            return False

        now = self.clock()
        if self._last_connect_request is not None and now - self._last_connect_request < self.config.min_action_interval:
            logger.warning(f"Connect to {peer_id} ignored: requests are less than "
                           f"{self.config.min_action_interval}s apart")
            return False
        self._last_connect_request = now

        if peer is not None:
            logger.info(f"Superseding attempt {peer.attempt_id} to {peer.peer_id}")
            self._cancel_attempt_tasks()

        self._attempt_counter += 1
        self._peer = PeerConnection(peer_id=peer_id, attempt_id=self._attempt_counter, state=PeerState.CONNECTING)
        self._publish(ConnectionState(connecting=True))
        self.connection_info.set(None)

        attempt = self._attempt_counter
        self._spawn_for_attempt(self._post_after(self.config.connection_timeout, _Event("timeout", attempt)))
        self._spawn_for_attempt(self._transport_connect(attempt, peer_id))
        logger.info(f"Connecting to {peer_id} (attempt {attempt})")
        return True

    def _handle_connect_result(self, error: Optional[BaseException]) -> None:
        peer = self._peer
        if peer.state != PeerState.CONNECTING:
            return

        if error is None:
            logger.info(f"Connect request to {peer.peer_id} accepted, waiting for connection info")
            self._spawn_for_attempt(self._fetch_connection_info(peer.attempt_id))
            return

        reason = error.reason if isinstance(error, TransportError) else FailureReason.UNKNOWN
        if reason == FailureReason.BUSY and peer.retry_count < self.config.max_connect_retries:
            peer.retry_count += 1
            delay = self.config.retry_base_delay * peer.retry_count
            logger.warning(f"Transport busy, retrying connect to {peer.peer_id} in {delay}s "
                           f"(retry {peer.retry_count}/{self.config.max_connect_retries})")
            self._spawn_for_attempt(self._retry_connect(peer.attempt_id, peer.peer_id, delay))
            return

        logger.error(f"Connect to {peer.peer_id} failed: {error}")
        self._fail(_FAILURE_MESSAGES.get(reason, MSG_FAILED))

    def _handle_connection_info(self, attempt_id: Optional[int], info: Optional[ConnectionInfo]) -> None:
        peer = self._peer
        if peer is None:
            logger.debug("Connection info without an active peer, ignoring")
            return
        if attempt_id is not None and attempt_id != peer.attempt_id:
            return

        if peer.state == PeerState.CONNECTING:
            if info is None or not info.usable:
                logger.debug(f"Group with {peer.peer_id} not formed yet")
                return
            try:
                address = validate_peer_address(info.remote_address)
            except AddressValidationError as e:
                logger.error(f"Peer {peer.peer_id} reported an unusable address: {e}")
                return
            self._become_connected(peer, info, address)
            return

        if peer.state == PeerState.CONNECTED:
            if info is not None and info.usable:
                self.connection_info.set(info)
            # Membership changed; verify it now rather than at the next tick.
            self._handle_keep_alive_tick()

    def _become_connected(self, peer: PeerConnection, info: ConnectionInfo, address: str) -> None:
        self._cancel_attempt_tasks()
        peer.state = PeerState.CONNECTED
        peer.remote_address = address
        peer.keep_alive_failures = 0
        peer.last_keep_alive_check = self.clock()

        self._publish(ConnectionState(connected=True))
        self.connection_info.set(info)
        self._spawn_for_attempt(self._keep_alive_loop(peer.attempt_id))
        logger.info(f"Connected to {peer.peer_id} at {address} "
                    f"({'group owner' if info.is_group_owner else 'client'})")

    def _handle_timeout(self) -> None:
        peer = self._peer
        if peer.state != PeerState.CONNECTING:
            return
        logger.warning(f"Connection to {peer.peer_id} timed out after {self.config.connection_timeout}s")
        self._fail(MSG_TIMED_OUT)
        self._spawn_background(self._best_effort("cancel pending connect", self.transport.cancel_connect))

    def _handle_keep_alive_tick(self) -> None:
        peer = self._peer
        if peer.state != PeerState.CONNECTED or self._probe_attempt == peer.attempt_id:
            return
        now = self.clock()
        if now - peer.last_keep_alive_check < self.config.keep_alive_min_check_interval:
            logger.debug("Skipping keep-alive check, previous one was too recent")
            return
        peer.last_keep_alive_check = now
        self._probe_attempt = peer.attempt_id
        self._spawn_for_attempt(self._probe_group(peer.attempt_id, peer.peer_id))

    async def _handle_keep_alive_result(self, alive: bool) -> None:
        peer = self._peer
        self._probe_attempt = None
        if peer.state != PeerState.CONNECTED:
            return

        if alive:
            if peer.keep_alive_failures:
                logger.info(f"Keep-alive to {peer.peer_id} recovered")
            peer.keep_alive_failures = 0
            return

        peer.keep_alive_failures += 1
        logger.warning(f"Keep-alive check failed for {peer.peer_id} "
                       f"({peer.keep_alive_failures}/{self.config.keep_alive_failure_threshold})")
        if peer.keep_alive_failures >= self.config.keep_alive_failure_threshold:
            logger.error(f"Lost connection to {peer.peer_id}")
            await self._teardown(MSG_LOST)

    async def _handle_disconnect(self) -> None:
        if self._peer is None and self.state.value == ConnectionState():
            logger.debug("Disconnect requested while idle, nothing to do")
            return
        await self._teardown(None)

    async def _handle_cancel_invitation(self) -> bool:
        peer = self._peer
        if peer is None or peer.state != PeerState.CONNECTING:
            logger.debug("No pending invitation to cancel")
            return False

        self._cancel_attempt_tasks()
        self._peer = None
        await self._best_effort("cancel pending connect", self.transport.cancel_connect)
        self._publish(ConnectionState())
        self.connection_info.set(None)
        logger.info(f"Invitation to {peer.peer_id} cancelled")
        return True

    # Transitions

    def _fail(self, message: str) -> None:
        self._cancel_attempt_tasks()
        if self._peer is not None:
            self._peer.state = PeerState.FAILED
        self._peer = None
        self._probe_attempt = None
        self._publish(ConnectionState(failed=True, error_message=message))
        self.connection_info.set(None)

    async def _teardown(self, error_message: Optional[str]) -> None:
        self._cancel_attempt_tasks()
        peer = self._peer
        if peer is not None:
            peer.state = PeerState.DISCONNECTING
        self._peer = None
        self._probe_attempt = None

        await self._best_effort("stop discovery", self.transport.stop_discovery)
        await self._best_effort("cancel pending connect", self.transport.cancel_connect)
        await self._best_effort("remove group", self.transport.remove_group)

        self._publish(ConnectionState(error_message=error_message))
        self.connection_info.set(None)
        self._schedule_discovery_restart()
        logger.info(f"Disconnected{f' from {peer.peer_id}' if peer else ''}")

    def _publish(self, state: ConnectionState) -> None:
        self.state.set(state)

    # Tasks

    def _spawn_for_attempt(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._attempt_tasks.add(task)
        task.add_done_callback(self._attempt_tasks.discard)

    def _spawn_background(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cancel_attempt_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._attempt_tasks):
            if task is not current:
                task.cancel()
        self._attempt_tasks.clear()

    async def _post_after(self, delay: float, event: _Event) -> None:
        await asyncio.sleep(delay)
        self._events.put_nowait(event)

    async def _transport_connect(self, attempt_id: int, peer_id: str) -> None:
        error: Optional[BaseException] = None
        try:
            await self.transport.connect(peer_id)
        except Exception as e:
            error = e
        self._events.put_nowait(_Event("connect_result", attempt_id, error))

    async def _retry_connect(self, attempt_id: int, peer_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._transport_connect(attempt_id, peer_id)

    async def _fetch_connection_info(self, attempt_id: int) -> None:
        try:
            info = await self.transport.request_connection_info()
        except Exception as e:
            logger.warning(f"Connection info request failed: {e}")
            return
        self._events.put_nowait(_Event("connection_info", attempt_id, info))

    async def _keep_alive_loop(self, attempt_id: int) -> None:
        while True:
            await asyncio.sleep(self.config.keep_alive_interval)
            self._events.put_nowait(_Event("keep_alive_tick", attempt_id))

    async def _probe_group(self, attempt_id: int, peer_id: str) -> None:
        try:
            group = await asyncio.wait_for(
                self.transport.request_group_info(),
                timeout=self.config.keep_alive_interval
            )
            alive = group is not None and group.contains(peer_id)
            if not alive:
                logger.debug(f"Peer {peer_id} is not in the current group")
        except Exception as e:
            logger.warning(f"Group info request failed: {e}")
            alive = False
        self._events.put_nowait(_Event("keep_alive_result", attempt_id, alive))

    async def _best_effort(self, step: str, operation: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.wait_for(operation(), timeout=self.config.teardown_step_timeout)
        except Exception as e:
            logger.error(f"Failed to {step}: {e}")

    def _schedule_discovery_restart(self) -> None:
        if self._discovery_task is not None:
            self._discovery_task.cancel()
        self._discovery_task = asyncio.create_task(self._restart_discovery())

    async def _restart_discovery(self) -> None:
        await asyncio.sleep(self.config.discovery_restart_delay)
        try:
            await self.transport.discover_peers()
            logger.debug("Peer discovery restarted")
        except Exception as e:
            logger.error(f"Failed to restart peer discovery: {e}")
