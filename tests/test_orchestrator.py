"""Tests for the session orchestrator with in-memory collaborators."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

pytest.importorskip("socketio")

from sophi_chat.audio_recorder import AudioCaptureController, MicrophonePermissionError
from sophi_chat.audio_store import AudioStore
from sophi_chat.auth_client import AuthFailure, SessionExpiredError
from sophi_chat.config import DEFAULT_GREETING, ClientConfig
from sophi_chat.credential_store import CredentialStore
from sophi_chat.models import ConnectionState, EventKind, Role, SendResult
from sophi_chat.orchestrator import AUTHENTICATED_MESSAGE, SessionOrchestrator
from sophi_chat.transport import TransportEvent, TransportEventType


class _FakeAuth:
    def __init__(self) -> None:
        self.login_result: Any = "tok-1"
        self.profile: Any = {"username": "ana"}
        self.gate: asyncio.Event | None = None
        self.login_calls: list[tuple[str, str]] = []
        self.closed = False

    async def login(self, username: str, password: str) -> str:
        self.login_calls.append((username, password))
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.login_result, Exception):
            raise self.login_result
        return self.login_result

    async def get_user_info(self, token: str) -> dict[str, Any]:
        if isinstance(self.profile, Exception):
            raise self.profile
        return self.profile

    async def close(self) -> None:
        self.closed = True


class _FakeTransport:
    def __init__(self) -> None:
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self.state = ConnectionState.DISCONNECTED
        self.tokens: list[str] = []
        self.sent: list[dict[str, Any]] = []
        self.send_result = SendResult.SENT
        self.close_calls = 0
        self.connect_gate: asyncio.Event | None = None
        self.close_gate: asyncio.Event | None = None

    async def connect(self, token: str) -> None:
        self.tokens.append(token)
        self.state = ConnectionState.CONNECTING
        if self.connect_gate is not None:
            await self.connect_gate.wait()

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_gate is not None:
            await self.close_gate.wait()
        self.state = ConnectionState.DISCONNECTED

    async def send(self, envelope: dict[str, Any]) -> SendResult:
        self.sent.append(envelope)
        return self.send_result

    def push(self, event_type: TransportEventType, **kwargs: Any) -> None:
        self.events.put_nowait(TransportEvent(event_type, **kwargs))

    def accept(self) -> None:
        self.state = ConnectionState.CONNECTED
        self.push(TransportEventType.STATE, state=ConnectionState.CONNECTED)
        self.push(TransportEventType.CONNECTED)


class _FakeSource:
    instances: list["_FakeSource"] = []

    def __init__(self, sample_rate: int, chunk_frames: int, device_index: int | None) -> None:
        self.on_chunk: Any = None
        _FakeSource.instances.append(self)

    def open(self, on_chunk: Any) -> None:
        self.on_chunk = on_chunk

    def close(self) -> None:
        pass


class _DeniedSource(_FakeSource):
    def open(self, on_chunk: Any) -> None:
        raise MicrophonePermissionError("Permission denied")


class _Harness:
    def __init__(self, tmp_path: Path, source_factory: Any = _FakeSource) -> None:
        _FakeSource.instances.clear()
        self.store = CredentialStore(tmp_path / "session.yaml")
        self.auth = _FakeAuth()
        self.transports: list[_FakeTransport] = []
        self.audio_store = AudioStore(tmp_path / "audio")
        self.states: list[tuple[ConnectionState, bool]] = []
        self.orchestrator = SessionOrchestrator(
            ClientConfig(config_path=tmp_path / "client.yaml"),
            credential_store=self.store,
            auth_client=self.auth,
            transport_factory=self._make_transport,
            recorder=AudioCaptureController(source_factory=source_factory),
            audio_store=self.audio_store,
        )
        self.orchestrator.add_state_listener(lambda s, w: self.states.append((s, w)))

    def _make_transport(self) -> _FakeTransport:
        transport = _FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> _FakeTransport:
        return self.transports[-1]

    def statuses(self) -> list[str]:
        return [e.text for e in self.orchestrator.history if e.role is Role.SYSTEM]


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def harness(tmp_path: Path) -> _Harness:
    return _Harness(tmp_path)


def test_start_without_token_asks_for_login(harness: _Harness) -> None:
    started = asyncio.run(harness.orchestrator.start())

    assert started is False
    assert harness.statuses() == ["Please log in to start chatting"]
    assert harness.transports == []
    assert not harness.orchestrator.is_authenticated


def test_start_restores_stored_session(harness: _Harness) -> None:
    harness.store.put("saved-token")

    async def _run() -> None:
        assert await harness.orchestrator.start() is True
        await harness.orchestrator.shutdown()

    asyncio.run(_run())

    assert harness.auth.login_calls == []
    assert harness.transport.tokens == ["saved-token"]
    assert harness.orchestrator.user_profile == {"username": "ana"}
    # shutdown keeps the token for the next start
    assert harness.store.get() == "saved-token"
    assert harness.auth.closed is True


def test_login_success_connects_and_greets(harness: _Harness) -> None:
    async def _run() -> None:
        assert await harness.orchestrator.login("ana", "secret") is True
        harness.transport.accept()
        await _settle()

    asyncio.run(_run())

    orch = harness.orchestrator
    assert orch.is_authenticated
    assert harness.store.get() == "tok-1"
    assert harness.store.get_profile() == {"username": "ana"}
    assert harness.transport.tokens == ["tok-1"]
    assert orch.connection_state is ConnectionState.CONNECTED
    assert (ConnectionState.CONNECTED, False) in harness.states

    assert orch.history[0].text == "Token obtained successfully"
    greeting = orch.history[1]
    assert greeting.role is Role.ASSISTANT
    assert greeting.text == DEFAULT_GREETING


def test_login_failure_is_reported_verbatim(harness: _Harness) -> None:
    harness.auth.login_result = AuthFailure("Invalid username or password", status=401)

    assert asyncio.run(harness.orchestrator.login("ana", "wrong")) is False

    assert harness.statuses() == ["Invalid username or password"]
    assert harness.store.get() is None
    assert harness.transports == []
    assert harness.orchestrator.connection_state is ConnectionState.DISCONNECTED


def test_rejected_token_forces_logout(harness: _Harness) -> None:
    harness.auth.profile = SessionExpiredError("Session expired", status=401)

    assert asyncio.run(harness.orchestrator.login("ana", "secret")) is False

    orch = harness.orchestrator
    assert not orch.is_authenticated
    assert harness.store.get() is None
    assert harness.transport.close_calls == 1
    assert harness.statuses() == ["Your session has expired, please log in again"]


def test_profile_failure_keeps_session(harness: _Harness) -> None:
    harness.auth.profile = AuthFailure("Profile request failed (HTTP 500)", status=500)

    assert asyncio.run(harness.orchestrator.login("ana", "secret")) is True
    assert harness.store.get() == "tok-1"


def test_late_login_response_is_discarded(harness: _Harness) -> None:
    async def _run() -> bool:
        harness.auth.gate = asyncio.Event()
        login = asyncio.create_task(harness.orchestrator.login("ana", "secret"))
        await _settle()

        await harness.orchestrator.logout()
        harness.auth.gate.set()
        return await login

    assert asyncio.run(_run()) is False
    assert harness.store.get() is None
    assert harness.transports == []
    assert harness.orchestrator.history == []


def test_whitespace_message_is_a_no_op(harness: _Harness) -> None:
    async def _run() -> None:
        await harness.orchestrator.login("ana", "secret")
        before = list(harness.orchestrator.history)

        assert await harness.orchestrator.send_text("   \n\t") is False
        assert await harness.orchestrator.send_text("") is False
        assert harness.orchestrator.history == before

    asyncio.run(_run())
    assert harness.transport.sent == []
    assert harness.orchestrator.waiting is False


def test_send_while_disconnected_reports_and_clears_waiting(harness: _Harness) -> None:
    async def _run() -> bool:
        await harness.orchestrator.login("ana", "secret")
        harness.transport.send_result = SendResult.NOT_CONNECTED
        return await harness.orchestrator.send_text("hello")

    assert asyncio.run(_run()) is False

    history = harness.orchestrator.history
    assert history[-2].role is Role.USER
    assert history[-2].text == "hello"
    assert history[-1].role is Role.SYSTEM
    assert "not connected" in history[-1].text.lower()
    assert harness.orchestrator.waiting is False


def test_send_without_any_session(harness: _Harness) -> None:
    assert asyncio.run(harness.orchestrator.send_text("hello")) is False
    assert harness.orchestrator.history[-1].kind is EventKind.STATUS


def test_waiting_clears_on_next_shown_event(harness: _Harness) -> None:
    async def _run() -> None:
        orch = harness.orchestrator
        await orch.login("ana", "secret")
        harness.transport.accept()
        await _settle()

        assert await orch.send_text("what is the weather?") is True
        assert orch.waiting is True
        assert harness.transport.sent[-1]["message"] == "what is the weather?"

        harness.transport.push(
            TransportEventType.FRAME, payload={"status": "received", "messageType": "text"}
        )
        await _settle()
        assert orch.waiting is True

        harness.transport.push(TransportEventType.FRAME, payload={"content": "Sunny"})
        await _settle()
        assert orch.waiting is False

    asyncio.run(_run())

    last = harness.orchestrator.history[-1]
    assert last.role is Role.ASSISTANT
    assert last.text == "Sunny"
    assert (ConnectionState.CONNECTED, True) in harness.states


def test_transport_problems_become_status_events(harness: _Harness) -> None:
    async def _run() -> None:
        await harness.orchestrator.login("ana", "secret")
        transport = harness.transport
        transport.push(TransportEventType.CONNECT_ERROR, reason="unauthorized", payload=1)
        transport.push(TransportEventType.LIVENESS_FAILED, reason="problem connecting")
        transport.push(
            TransportEventType.FAILED, reason="Connection failed after 5 attempts: unauthorized"
        )
        await _settle()

    asyncio.run(_run())

    statuses = harness.statuses()
    assert "Connection error: unauthorized" in statuses
    assert sum("problem connecting" in s for s in statuses) == 1
    assert statuses[-1] == "Connection failed after 5 attempts: unauthorized"


def test_logout_twice_reaches_same_state(harness: _Harness) -> None:
    async def _run() -> None:
        orch = harness.orchestrator
        await orch.login("ana", "secret")
        await orch.send_text("hello")

        await orch.logout()
        first = (orch.history[:], orch.waiting, orch.is_authenticated, orch.connection_state)
        await orch.logout()
        second = (orch.history[:], orch.waiting, orch.is_authenticated, orch.connection_state)
        assert first == second

    asyncio.run(_run())

    orch = harness.orchestrator
    assert orch.history == []
    assert orch.user_profile is None
    assert orch.connection_state is ConnectionState.DISCONNECTED
    assert harness.store.get() is None
    assert harness.transport.close_calls == 1


def test_login_replaces_previous_transport(harness: _Harness) -> None:
    async def _run() -> None:
        await harness.orchestrator.login("ana", "secret")
        harness.auth.login_result = "tok-2"
        await harness.orchestrator.login("ana", "secret")

    asyncio.run(_run())

    first, second = harness.transports
    assert first.close_calls == 1
    assert second.tokens == ["tok-2"]
    assert harness.orchestrator.transport is second


def test_stop_recording_without_audio(harness: _Harness) -> None:
    async def _run() -> None:
        orch = harness.orchestrator
        await orch.login("ana", "secret")
        assert await orch.start_recording() is True
        assert await orch.stop_recording() is False

    asyncio.run(_run())

    assert harness.statuses().count("No audio detected") == 1
    assert harness.transport.sent == []
    assert harness.orchestrator.waiting is False


def test_recording_is_sent_as_audio(harness: _Harness) -> None:
    async def _run() -> None:
        orch = harness.orchestrator
        await orch.login("ana", "secret")
        await orch.start_recording()
        _FakeSource.instances[0].on_chunk(b"\x01\x00" * 4000)
        await _settle()
        assert await orch.stop_recording() is True

    asyncio.run(_run())

    audio_event = harness.orchestrator.history[-1]
    assert audio_event.role is Role.USER
    assert audio_event.kind is EventKind.AUDIO
    assert harness.audio_store.get(audio_event.audio_ref.ref_id) is not None

    envelope = harness.transport.sent[-1]
    assert envelope["type"] == "audio"
    assert envelope["metadata"]["mimeType"] == "audio/wav"
    assert harness.orchestrator.waiting is True


def test_microphone_denied_becomes_status(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, source_factory=_DeniedSource)

    assert asyncio.run(harness.orchestrator.start_recording()) is False
    assert harness.statuses() == ["Microphone unavailable: Permission denied"]
    assert not harness.orchestrator.is_recording


def test_failing_listener_does_not_break_history(harness: _Harness) -> None:
    def _broken(event: Any) -> None:
        raise RuntimeError("boom")

    harness.orchestrator.add_listener(_broken)
    asyncio.run(harness.orchestrator.start())

    assert len(harness.orchestrator.history) == 1


def test_logout_while_previous_transport_closes(harness: _Harness) -> None:
    async def _run() -> bool:
        orch = harness.orchestrator
        await orch.login("ana", "secret")
        first = harness.transport
        first.close_gate = asyncio.Event()

        harness.auth.login_result = "tok-2"
        relogin = asyncio.create_task(orch.login("ana", "secret"))
        await _settle()
        assert first.close_calls == 1

        await orch.logout()
        first.close_gate.set()
        return await relogin

    assert asyncio.run(_run()) is False

    orch = harness.orchestrator
    assert orch.transport is None
    assert len(harness.transports) == 1
    assert harness.store.get() is None
    assert not orch.is_authenticated
    assert orch.history == []


def test_logout_while_transport_connects(harness: _Harness) -> None:
    def _gated_transport() -> _FakeTransport:
        transport = _FakeTransport()
        transport.connect_gate = asyncio.Event()
        harness.transports.append(transport)
        return transport

    harness.orchestrator._transport_factory = _gated_transport

    async def _run() -> bool:
        orch = harness.orchestrator
        login = asyncio.create_task(orch.login("ana", "secret"))
        await _settle()

        await orch.logout()
        harness.transport.connect_gate.set()
        return await login

    assert asyncio.run(_run()) is False

    transport = harness.transport
    assert harness.orchestrator.transport is None
    assert transport.state is ConnectionState.DISCONNECTED
    assert transport.close_calls >= 1
    assert harness.store.get() is None
    assert AUTHENTICATED_MESSAGE not in harness.statuses()
