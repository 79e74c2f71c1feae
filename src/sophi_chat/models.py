"""
Shared data models for the Sophi Chat client.

Defines state enums, chat events and outbound envelope builders used across
all client components.
"""

import base64
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

_event_counter = itertools.count(1)


class Role(Enum):
    """Side of the conversation an event belongs to."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EventKind(Enum):
    """Type of content carried by a chat event."""

    TEXT = "text"
    TRANSCRIPTION = "transcription"
    AUDIO = "audio"
    IMAGE = "image"
    STATUS = "status"


class ConnectionState(Enum):
    """Real-time connection states."""

    DISCONNECTED = "disconnected"  # No connection and no attempt in progress
    CONNECTING = "connecting"  # Handshake in progress
    CONNECTED = "connected"  # Handshake acknowledged by the server
    ERROR = "error"  # Attempt failed or dropped, retry pending


class SendResult(Enum):
    """Outcome of handing an envelope to the transport."""

    SENT = "sent"
    NOT_CONNECTED = "not_connected"
    FAILED = "failed"


@dataclass(frozen=True)
class AudioRef:
    """Opaque handle to a playable audio clip kept on local disk."""

    ref_id: str
    path: Path
    mime_type: str
    size: int


def _next_event_id() -> str:
    return f"{time.time_ns() // 1_000_000}-{next(_event_counter)}"


@dataclass(frozen=True)
class ChatEvent:
    """
    One normalized entry of conversation history.

    Invariants:
    - audio_ref is set if and only if kind is AUDIO
    - attachments is non-empty if and only if kind is IMAGE
    """

    id: str
    role: Role
    kind: EventKind
    text: str | None = None
    audio_ref: AudioRef | None = None
    attachments: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if (self.audio_ref is not None) != (self.kind is EventKind.AUDIO):
            raise ValueError(
                f"audio_ref must be set exactly for audio events (kind={self.kind.value})"
            )
        if bool(self.attachments) != (self.kind is EventKind.IMAGE):
            raise ValueError(
                f"attachments must be non-empty exactly for image events (kind={self.kind.value})"
            )

    @classmethod
    def create(
        cls,
        role: Role,
        kind: EventKind,
        text: str | None = None,
        audio_ref: AudioRef | None = None,
        attachments: tuple[str, ...] | list[str] = (),
    ) -> "ChatEvent":
        """Create an event with a fresh id and the current timestamp."""
        return cls(
            id=_next_event_id(),
            role=role,
            kind=kind,
            text=text,
            audio_ref=audio_ref,
            attachments=tuple(attachments),
        )

    @classmethod
    def status(cls, text: str) -> "ChatEvent":
        """Create a system status event."""
        return cls.create(Role.SYSTEM, EventKind.STATUS, text=text)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging or a presentation layer."""
        return {
            "id": self.id,
            "role": self.role.value,
            "kind": self.kind.value,
            "text": self.text,
            "audioRef": self.audio_ref.ref_id if self.audio_ref else None,
            "attachments": list(self.attachments),
            "createdAt": self.created_at.isoformat(),
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def text_envelope(message: str) -> dict[str, Any]:
    """Build the outbound envelope for a typed message."""
    return {"message": message, "timestamp": _now_iso()}


def audio_envelope(data: bytes, mime_type: str) -> dict[str, Any]:
    """Build the outbound envelope for a recorded voice clip."""
    return {
        "type": "audio",
        "content": base64.b64encode(data).decode("ascii"),
        "metadata": {"mimeType": mime_type, "size": len(data)},
    }
