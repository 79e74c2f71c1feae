"""
Main orchestrator for the Sophi Chat client.

Coordinates login, the real-time transport, message decoding and voice
recording, and publishes the resulting ordered stream of chat events to the
presentation layer.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from sophi_chat.audio_recorder import (
    AudioCaptureController,
    MicrophonePermissionError,
    RecorderBusyError,
    RecorderIdleError,
)
from sophi_chat.audio_store import AudioStore
from sophi_chat.auth_client import AuthClient, AuthFailure, SessionExpiredError
from sophi_chat.config import DEFAULT_GREETING, ClientConfig
from sophi_chat.credential_store import CredentialStore
from sophi_chat.decoder import MessageDecoder
from sophi_chat.models import (
    ChatEvent,
    ConnectionState,
    EventKind,
    Role,
    SendResult,
    text_envelope,
)
from sophi_chat.transport import TransportEvent, TransportEventType, TransportSession

logger = logging.getLogger(__name__)

AUTHENTICATED_MESSAGE = "Token obtained successfully"
LOGIN_REQUIRED_MESSAGE = "Please log in to start chatting"
SESSION_EXPIRED_MESSAGE = "Your session has expired, please log in again"
NOT_CONNECTED_MESSAGE = "Not connected to the server, message was not sent"
SEND_FAILED_MESSAGE = "Message could not be sent, please try again"
NO_AUDIO_MESSAGE = "No audio detected"
LIVENESS_MESSAGE = "There was a problem connecting to the server"

EventListener = Callable[[ChatEvent], None]
StateListener = Callable[[ConnectionState, bool], None]


async def _not_connected(envelope: dict[str, Any]) -> SendResult:
    return SendResult.NOT_CONNECTED


class SessionOrchestrator:
    """
    Session state machine.

    Manages:
    - Login, restore from a stored token, logout
    - The single live TransportSession
    - Decoding of inbound frames, in delivery order
    - Voice recording and transmission
    - The waiting-for-response flag
    """

    def __init__(
        self,
        config: ClientConfig,
        credential_store: CredentialStore | None = None,
        auth_client: AuthClient | None = None,
        transport_factory: Callable[[], TransportSession] | None = None,
        recorder: AudioCaptureController | None = None,
        audio_store: AudioStore | None = None,
        decoder: MessageDecoder | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Client configuration
            credential_store: Token storage (defaults to the config directory)
            auth_client: HTTP auth client (defaults to the configured server)
            transport_factory: Builds a fresh TransportSession per connection
            recorder: Voice capture controller
            audio_store: Registry for playable audio handles
            decoder: Inbound frame decoder
        """
        self.config = config
        self.credential_store = credential_store or CredentialStore()
        self.auth_client = auth_client or AuthClient(
            config.server_url, timeout=config.get("server", "timeout", default=30)
        )
        self.audio_store = audio_store if audio_store is not None else AudioStore()
        self.decoder = decoder or MessageDecoder(config.asset_base_url, self.audio_store)
        self._transport_factory = transport_factory or self._create_transport

        self.recorder = recorder or AudioCaptureController(
            sample_rate=config.get("recording", "sample_rate", default=16000),
            chunk_interval=config.get("recording", "chunk_interval", default=0.25),
            max_duration=config.get("recording", "max_duration", default=30),
            device_index=config.get("recording", "device_index"),
        )
        self.recorder.on_limit_reached = self._on_recording_limit

        # State
        self.history: list[ChatEvent] = []
        self.waiting = False
        self.user_profile: dict[str, Any] | None = None
        self.transport: TransportSession | None = None

        self._token: str | None = None
        self._epoch = 0  # bumped by login/logout; stale async results are dropped
        self._event_task: asyncio.Task | None = None
        self._background_tasks: set[asyncio.Task] = set()
        self._listeners: list[EventListener] = []
        self._state_listeners: list[StateListener] = []

    def _create_transport(self) -> TransportSession:
        return TransportSession(
            url=self.config.realtime_url,
            socketio_path=self.config.get("realtime", "socketio_path", default="socket.io"),
            connect_timeout=float(self.config.get("realtime", "connect_timeout", default=10)),
            max_attempts=int(self.config.get("realtime", "reconnect_attempts", default=5)),
            retry_delay=float(self.config.get("realtime", "reconnect_delay", default=1.0)),
            liveness_delay=float(self.config.get("realtime", "liveness_delay", default=3.0)),
        )

    # =========================================================================
    # Presentation boundary
    # =========================================================================

    @property
    def connection_state(self) -> ConnectionState:
        if self.transport is None:
            return ConnectionState.DISCONNECTED
        return self.transport.state

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    @property
    def is_recording(self) -> bool:
        return self.recorder.is_recording

    def add_listener(self, listener: EventListener) -> None:
        """Register a callback for every emitted ChatEvent."""
        self._listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback for (connection_state, waiting) changes."""
        self._state_listeners.append(listener)

    def _emit(self, event: ChatEvent) -> None:
        self.history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed: {type(e).__name__}: {e}")

    def _emit_inbound(self, event: ChatEvent) -> None:
        """Emit an event that came from the server side; it answers any pending send."""
        self._emit(event)
        self._set_waiting(False)

    def _emit_status(self, text: str) -> None:
        logger.info(f"Status: {text}")
        self._emit(ChatEvent.status(text))

    def _set_waiting(self, waiting: bool) -> None:
        if self.waiting == waiting:
            return
        self.waiting = waiting
        self._notify_state()

    def _notify_state(self) -> None:
        state = self.connection_state
        for listener in list(self._state_listeners):
            try:
                listener(state, self.waiting)
            except Exception as e:
                logger.error(f"State listener failed: {type(e).__name__}: {e}")

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """
        Restore a stored session, if any.

        Returns:
            True if a stored token was found and the session is still current
        """
        token = self.credential_store.get()
        if not token:
            self._emit_status(LOGIN_REQUIRED_MESSAGE)
            return False

        logger.info("Restoring saved session")
        self._epoch += 1
        epoch = self._epoch
        self._token = token
        self.user_profile = self.credential_store.get_profile()

        if not await self._open_transport(token, epoch):
            return False
        return await self._load_profile(token, epoch)

    async def login(self, username: str, password: str) -> bool:
        """
        Log in with username and password.

        Returns:
            True if the login succeeded and is still current
        """
        self._epoch += 1
        epoch = self._epoch

        try:
            token = await self.auth_client.login(username, password)
        except AuthFailure as e:
            if epoch != self._epoch:
                logger.info("Discarding failure of a superseded login")
                return False
            logger.warning(f"Login failed: {e}")
            self._emit_status(str(e))
            return False

        if epoch != self._epoch:
            logger.info("Discarding late response of a superseded login")
            return False

        self.credential_store.put(token)
        self._token = token

        if not await self._open_transport(token, epoch):
            return False
        if not await self._load_profile(token, epoch):
            return False

        self._emit_status(AUTHENTICATED_MESSAGE)
        return True

    async def logout(self) -> None:
        """Close the connection, forget the token and reset chat state. Never raises."""
        self._epoch += 1

        if self.recorder.is_recording:
            try:
                await self.recorder.cancel()
            except Exception as e:
                logger.warning(f"Error cancelling recording on logout: {e}")

        try:
            await self._close_transport()
        except Exception as e:
            logger.warning(f"Error closing transport on logout: {e}")

        try:
            self.credential_store.clear()
        except OSError as e:
            logger.error(f"Could not clear stored credentials: {e}")

        self._token = None
        self.user_profile = None
        self.history.clear()
        self.audio_store.release_all()
        self.waiting = False
        self._notify_state()
        logger.info("Logged out")

    async def shutdown(self) -> None:
        """Release all resources for process exit. The stored token is kept."""
        logger.info("Shutting down chat client...")
        self._epoch += 1

        if self.recorder.is_recording:
            try:
                await self.recorder.cancel()
            except Exception as e:
                logger.warning(f"Error cancelling recording: {e}")

        try:
            await self._close_transport()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")

        for task in list(self._background_tasks):
            task.cancel()

        await self.auth_client.close()
        self.audio_store.release_all()
        logger.info("Chat client shutdown complete")

    async def _load_profile(self, token: str, epoch: int) -> bool:
        """Fetch the user profile. Returns False if the session was ended."""
        try:
            profile = await self.auth_client.get_user_info(token)
        except SessionExpiredError:
            if epoch != self._epoch:
                return False
            logger.warning("Stored token rejected by the server, logging out")
            await self.logout()
            self._emit_status(SESSION_EXPIRED_MESSAGE)
            return False
        except AuthFailure as e:
            logger.warning(f"Could not fetch user profile: {e}")
            return epoch == self._epoch

        if epoch != self._epoch:
            return False

        self.user_profile = profile
        try:
            self.credential_store.put_profile(profile)
        except OSError as e:
            logger.warning(f"Could not persist user profile: {e}")
        return True

    # =========================================================================
    # Transport
    # =========================================================================

    async def _open_transport(self, token: str, epoch: int) -> bool:
        """
        Replace the live transport with a fresh one and start connecting.

        Returns False, leaving nothing open, when a logout or a newer login
        superseded this epoch while the previous transport was closing.
        """
        await self._close_transport()
        if epoch != self._epoch:
            logger.info("Not opening transport for a superseded session")
            return False

        transport = self._transport_factory()
        self.transport = transport
        self._event_task = asyncio.create_task(self._process_transport_events(transport))
        await transport.connect(token)

        if epoch != self._epoch and transport is not self.transport:
            # Superseded while connecting; whoever took over may have missed it
            await transport.close()
            return False
        return True

    async def _close_transport(self) -> None:
        transport, self.transport = self.transport, None
        event_task, self._event_task = self._event_task, None

        if transport is not None:
            await transport.close()
        if event_task is not None and not event_task.done():
            event_task.cancel()
        if transport is not None:
            self._notify_state()

    async def _process_transport_events(self, transport: TransportSession) -> None:
        """Single consumer of the transport channel; preserves delivery order."""
        while True:
            event = await transport.events.get()
            if transport is not self.transport:
                return
            try:
                self._handle_transport_event(event)
            except Exception:
                logger.exception(f"Failed to handle transport event {event.type.value}")

    def _handle_transport_event(self, event: TransportEvent) -> None:
        if event.type is TransportEventType.STATE:
            self._notify_state()

        elif event.type is TransportEventType.CONNECTED:
            greeting = self.config.get("chat", "greeting", default=DEFAULT_GREETING)
            self._emit_inbound(ChatEvent.create(Role.ASSISTANT, EventKind.TEXT, text=greeting))

        elif event.type is TransportEventType.DISCONNECTED:
            self._emit_inbound(ChatEvent.status(f"Disconnected: {event.reason}. Reconnecting..."))

        elif event.type is TransportEventType.CONNECT_ERROR:
            self._emit_inbound(ChatEvent.status(f"Connection error: {event.reason}"))

        elif event.type is TransportEventType.FAILED:
            self._emit_inbound(ChatEvent.status(event.reason or "Connection failed"))

        elif event.type is TransportEventType.LIVENESS_FAILED:
            self._emit_inbound(ChatEvent.status(LIVENESS_MESSAGE))

        elif event.type is TransportEventType.FRAME:
            chat_event = self.decoder.decode(event.payload)
            if chat_event is not None:
                self._emit_inbound(chat_event)

    # =========================================================================
    # Commands
    # =========================================================================

    async def send_text(self, text: str) -> bool:
        """
        Send a typed message.

        Returns:
            True if the message was handed to the transport. On False the
            caller keeps the input so the user can retry.
        """
        if not text or not text.strip():
            return False

        self._emit(ChatEvent.create(Role.USER, EventKind.TEXT, text=text))
        self._set_waiting(True)

        if self.transport is None:
            result = SendResult.NOT_CONNECTED
        else:
            result = await self.transport.send(text_envelope(text))

        if result is SendResult.SENT:
            return True

        self._set_waiting(False)
        self._emit_status(
            NOT_CONNECTED_MESSAGE if result is SendResult.NOT_CONNECTED else SEND_FAILED_MESSAGE
        )
        return False

    async def start_recording(self) -> bool:
        """Start capturing a voice message."""
        try:
            await self.recorder.start()
        except RecorderBusyError:
            logger.warning("Already recording")
            return False
        except MicrophonePermissionError as e:
            logger.error(f"Failed to start recording: {e}")
            self._emit_status(f"Microphone unavailable: {e}")
            return False
        return True

    async def stop_recording(self) -> bool:
        """Stop capturing and send the voice message."""
        try:
            clip = await self.recorder.stop()
        except RecorderIdleError:
            logger.debug("stop_recording called while idle")
            return False

        if clip.is_empty:
            self._emit_status(NO_AUDIO_MESSAGE)
            return False

        audio_ref = self.audio_store.register(clip.data, clip.mime_type)
        self._emit(
            ChatEvent.create(
                Role.USER,
                EventKind.AUDIO,
                text=f"Voice message ({clip.duration:.1f}s)",
                audio_ref=audio_ref,
            )
        )
        self._set_waiting(True)

        send = self.transport.send if self.transport is not None else _not_connected
        result = await self.recorder.transmit(clip, send)
        if result is SendResult.SENT:
            return True

        self._set_waiting(False)
        self._emit_status(
            NOT_CONNECTED_MESSAGE if result is SendResult.NOT_CONNECTED else SEND_FAILED_MESSAGE
        )
        return False

    def _on_recording_limit(self) -> None:
        """Recorder hit its ceiling; finish and send what was captured."""
        task = asyncio.get_running_loop().create_task(self.stop_recording())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
