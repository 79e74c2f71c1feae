"""
Real-time transport session for the Sophi assistant.

Owns exactly one Socket.IO connection at a time and publishes everything that
happens on it (state changes, inbound frames, failures) onto a single ordered
asyncio queue. Reconnection is handled here with a bounded, fixed-delay retry
policy instead of the client library's own reconnection.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import socketio
from socketio import exceptions as socketio_exceptions

from sophi_chat.models import ConnectionState, SendResult

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "message"

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_LIVENESS_DELAY = 3.0


class TransportFailure(Exception):
    """A connection attempt failed or an established connection dropped."""


class TransportEventType(Enum):
    """Kinds of events published by a TransportSession."""

    STATE = "state"  # connection state changed
    CONNECTED = "connected"  # handshake acknowledged
    DISCONNECTED = "disconnected"  # established connection dropped
    CONNECT_ERROR = "connect_error"  # one attempt failed, retry may follow
    FAILED = "failed"  # retries exhausted
    LIVENESS_FAILED = "liveness_failed"  # connected but not confirmed in time
    FRAME = "frame"  # inbound message payload


@dataclass(frozen=True)
class TransportEvent:
    """One entry of the transport event channel."""

    type: TransportEventType
    payload: Any = None
    reason: str | None = None
    state: ConnectionState | None = None


class TransportSession:
    """
    Supervised Socket.IO connection.

    States: DISCONNECTED -> CONNECTING -> CONNECTED -> (DISCONNECTED | ERROR).
    ERROR re-enters CONNECTING until the attempts run out, after which a
    FAILED event is published and the session returns to DISCONNECTED.
    """

    def __init__(
        self,
        url: str,
        socketio_path: str = "socket.io",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        liveness_delay: float = DEFAULT_LIVENESS_DELAY,
        client_factory: Callable[[], Any] | None = None,
    ):
        """
        Initialize the transport session.

        Args:
            url: Socket.IO server URL
            socketio_path: Endpoint path of the Socket.IO server
            connect_timeout: Seconds allowed for one connection attempt
            max_attempts: Connection attempts before giving up
            retry_delay: Fixed delay between attempts in seconds
            liveness_delay: Seconds after connecting before the state is re-verified
            client_factory: Creates the underlying client (defaults to socketio.AsyncClient)
        """
        self.url = url
        self.socketio_path = socketio_path
        self.connect_timeout = connect_timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.liveness_delay = liveness_delay
        self._client_factory = client_factory

        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self.state = ConnectionState.DISCONNECTED

        self._client: Any = None
        self._token: str | None = None
        self._generation = 0
        self._connect_task: asyncio.Task | None = None
        self._liveness_task: asyncio.Task | None = None
        self._last_error: str | None = None

    def _create_client(self) -> Any:
        if self._client_factory is not None:
            return self._client_factory()
        return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)

    @property
    def sid(self) -> str | None:
        """Socket id assigned by the server, if connected."""
        return getattr(self._client, "sid", None) if self._client else None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _publish(self, event: TransportEvent) -> None:
        self.events.put_nowait(event)

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is state:
            return
        logger.debug(f"Transport state: {self.state.value} -> {state.value}")
        self.state = state
        self._publish(TransportEvent(TransportEventType.STATE, state=state))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, token: str) -> asyncio.Task:
        """
        Start connecting with the given bearer token.

        Any previous connection is torn down first. Returns the task running
        the attempt loop; awaiting it is optional.
        """
        await self._teardown()

        self._generation += 1
        self._token = token
        self._connect_task = asyncio.create_task(self._run_attempts(self._generation))
        return self._connect_task

    async def close(self) -> None:
        """Close the connection and cancel pending retries. Idempotent."""
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _teardown(self) -> None:
        """Invalidate callbacks of the current client and release it."""
        self._generation += 1

        current = asyncio.current_task()
        for task in (self._connect_task, self._liveness_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._connect_task = None
        self._liveness_task = None

        client, self._client = self._client, None
        if client is not None:
            await self._discard_client(client)

    async def _discard_client(self, client: Any) -> None:
        try:
            await client.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while releasing socket client: {e}")

    # =========================================================================
    # Attempt loop
    # =========================================================================

    async def _run_attempts(self, generation: int) -> None:
        """Try to connect up to max_attempts times with a fixed delay."""
        reason = "unknown error"

        for attempt in range(1, self.max_attempts + 1):
            if generation != self._generation:
                return

            self._set_state(ConnectionState.CONNECTING)
            self._last_error = None
            client = self._create_client()
            self._register_handlers(client, generation)
            self._client = client

            logger.info(f"Connecting to {self.url} (attempt {attempt}/{self.max_attempts})")
            try:
                await self._attempt(client)
            except TransportFailure as e:
                reason = str(e)
            else:
                if generation == self._generation:
                    self._liveness_task = asyncio.create_task(
                        self._liveness_check(generation, client)
                    )
                return

            if self._client is client:
                self._client = None
            await self._discard_client(client)
            if generation != self._generation:
                return

            logger.warning(f"Connection attempt {attempt} failed: {reason}")
            self._set_state(ConnectionState.ERROR)
            self._publish(
                TransportEvent(TransportEventType.CONNECT_ERROR, reason=reason, payload=attempt)
            )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay)

        if generation != self._generation:
            return

        logger.error(f"Giving up after {self.max_attempts} connection attempts")
        self._set_state(ConnectionState.DISCONNECTED)
        self._publish(
            TransportEvent(
                TransportEventType.FAILED,
                reason=f"Connection failed after {self.max_attempts} attempts: {reason}",
            )
        )

    async def _attempt(self, client: Any) -> None:
        """Run one handshake, translating library errors into TransportFailure."""
        try:
            await asyncio.wait_for(
                client.connect(
                    self.url,
                    auth={"token": self._token},
                    transports=["websocket"],
                    socketio_path=self.socketio_path,
                    wait_timeout=self.connect_timeout,
                ),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                f"Connection attempt timed out after {self.connect_timeout:g}s"
            ) from e
        except socketio_exceptions.ConnectionError as e:
            raise TransportFailure(self._last_error or str(e) or "Connection refused") from e
        except (OSError, ValueError) as e:
            raise TransportFailure(f"{type(e).__name__}: {e}") from e

    async def _liveness_check(self, generation: int, client: Any) -> None:
        """Re-verify after liveness_delay that the connection really is up."""
        await asyncio.sleep(self.liveness_delay)
        if generation != self._generation:
            return

        if getattr(client, "connected", False) and self.state is ConnectionState.CONNECTED:
            logger.debug("Liveness check passed")
            return

        logger.warning(
            f"Liveness check failed (client connected={getattr(client, 'connected', False)}, "
            f"state={self.state.value})"
        )
        self._publish(
            TransportEvent(TransportEventType.LIVENESS_FAILED, reason="problem connecting")
        )

    def _reconnect(self, generation: int) -> None:
        """Start a new attempt loop after an unexpected drop."""
        if generation != self._generation:
            return
        self._generation += 1
        stale, self._client = self._client, None
        self._connect_task = asyncio.create_task(
            self._reconnect_after_drop(self._generation, stale)
        )

    async def _reconnect_after_drop(self, generation: int, stale: Any) -> None:
        if stale is not None:
            await self._discard_client(stale)
        await self._run_attempts(generation)

    # =========================================================================
    # Socket.IO handlers
    # =========================================================================

    def _register_handlers(self, client: Any, generation: int) -> None:
        """Bind client callbacks to this connection generation."""

        async def on_connect() -> None:
            if generation != self._generation:
                return
            logger.info(f"Connected to {self.url} (sid={getattr(client, 'sid', None)})")
            self._set_state(ConnectionState.CONNECTED)
            self._publish(TransportEvent(TransportEventType.CONNECTED))

        async def on_connect_error(data: Any = None) -> None:
            if generation != self._generation:
                return
            if isinstance(data, dict):
                self._last_error = str(data.get("message") or data)
            elif data:
                self._last_error = str(data)
            logger.debug(f"connect_error: {self._last_error}")

        async def on_disconnect(reason: Any = None) -> None:
            if generation != self._generation:
                return
            if self.state is not ConnectionState.CONNECTED:
                return
            text = str(reason) if reason else "connection lost"
            logger.warning(f"Disconnected from {self.url}: {text}")
            if self._liveness_task is not None and not self._liveness_task.done():
                self._liveness_task.cancel()
            self._liveness_task = None
            self._set_state(ConnectionState.ERROR)
            self._publish(TransportEvent(TransportEventType.DISCONNECTED, reason=text))
            self._reconnect(generation)

        async def on_message(*args: Any) -> None:
            if generation != self._generation:
                return
            if not args:
                payload = None
            elif len(args) == 1:
                payload = args[0]
            else:
                payload = list(args)
            self._publish(TransportEvent(TransportEventType.FRAME, payload=payload))

        client.on("connect", on_connect)
        client.on("connect_error", on_connect_error)
        client.on("disconnect", on_disconnect)
        client.on(MESSAGE_EVENT, on_message)

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, envelope: dict[str, Any]) -> SendResult:
        """Emit an envelope. Never raises."""
        client = self._client
        if (
            self.state is not ConnectionState.CONNECTED
            or client is None
            or not getattr(client, "connected", False)
        ):
            logger.warning("Send attempted while not connected")
            return SendResult.NOT_CONNECTED

        try:
            await client.emit(MESSAGE_EVENT, envelope)
        except Exception as e:
            logger.error(f"Failed to send envelope: {type(e).__name__}: {e}")
            return SendResult.FAILED

        return SendResult.SENT
