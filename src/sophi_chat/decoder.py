"""
Decoding of inbound real-time frames into chat events.

The assistant backend has grown its wire format one shape at a time without a
version tag: bare status pings, socket diagnostics, legacy numeric-prefixed
envelopes, JSON nested inside JSON, audio replies and graph attachments. The
decoder therefore runs an ordered table of rules and the first rule that
matches decides the outcome:

1. transcription_complete  -> user transcription event
2. technical status ack    -> skip
3. socket plumbing frame   -> skip
4. audioData payload       -> assistant audio event
5. everything else         -> assistant text or image event

A frame that fits no known shape is rendered as text rather than dropped.
"""

import base64
import binascii
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sophi_chat.audio_store import AudioStore
from sophi_chat.models import ChatEvent, EventKind, Role

logger = logging.getLogger(__name__)

TRANSCRIPTION_STATUS = "transcription_complete"
TECHNICAL_STATUSES = frozenset({"received", "processing", "processing_audio"})
DEFAULT_AUDIO_MIME = "audio/webm"
DEFAULT_AUDIO_TEXT = "Audio"

# 42["message","{\"content\":\"hi\"}"]
LEGACY_ENVELOPE_RE = re.compile(r'^\s*(\d+)(\["message",\s*"(.*)"\])\s*$', re.DOTALL)
DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(?:;[^,]*)?,", re.IGNORECASE)
ABSOLUTE_URL_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


class DecodeAnomaly(Exception):
    """A frame looked like a known shape but could not be decoded as one."""


@dataclass(frozen=True)
class ParsedFrame:
    """A raw frame after the parse attempt."""

    payload: Any  # Parsed structure; None when the frame was not JSON
    literal: str | None = None  # Raw text when the frame was not JSON

    @property
    def obj(self) -> dict[str, Any] | None:
        return self.payload if isinstance(self.payload, dict) else None


@dataclass(frozen=True)
class DecodeRule:
    """One predicate/builder pair of the rule table. build() returning None means skip."""

    name: str
    matches: Callable[[ParsedFrame], bool]
    build: Callable[[ParsedFrame], ChatEvent | None]


def parse_frame(frame: Any) -> ParsedFrame:
    """Turn a raw transport payload into a ParsedFrame."""
    if isinstance(frame, (bytes, bytearray)):
        frame = bytes(frame).decode("utf-8", errors="replace")

    if isinstance(frame, str):
        try:
            return ParsedFrame(payload=json.loads(frame))
        except ValueError:
            return ParsedFrame(payload=None, literal=frame)

    return ParsedFrame(payload=frame)


def stringify(value: Any) -> str:
    """Render any payload as display text."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _probe_nested(value: Any) -> str | None:
    """
    Extract text from a field that may itself carry a nested "content".

    Dicts and JSON-encoded strings with a "content" member resolve to that
    member. Empty values resolve to None so callers move on to the next field.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("{"):
            try:
                nested = json.loads(stripped)
            except ValueError:
                return value
            if isinstance(nested, dict) and nested.get("content"):
                return stringify(nested["content"])
        return value

    if isinstance(value, dict):
        for key in ("content", "text"):
            if value.get(key):
                return stringify(value[key])
        return stringify(value)

    return stringify(value)


def _first_text(payload: dict[str, Any], keys: tuple[str, ...], nested: tuple[str, ...] = ()) -> str | None:
    for key in keys:
        value = payload.get(key)
        if key in nested:
            text = _probe_nested(value)
        elif value is None or value == "":
            text = None
        else:
            text = stringify(value)
        if text is not None:
            return text
    return None


def unwrap_legacy_envelope(text: str) -> Any | None:
    """
    Unwrap a numeric-prefixed envelope such as 42["message","<json>"].

    Returns the inner structure (or inner string when it is not JSON), or None
    when text is not such an envelope.
    """
    match = LEGACY_ENVELOPE_RE.match(text)
    if not match:
        return None

    inner: Any = None
    try:
        envelope = json.loads(match.group(2))
        if isinstance(envelope, list) and len(envelope) >= 2:
            inner = envelope[1]
    except ValueError:
        pass

    if inner is None:
        inner = match.group(3).replace('\\"', '"')

    if isinstance(inner, str):
        try:
            return json.loads(inner)
        except ValueError:
            return inner
    return inner


def looks_like_socket_diagnostic(text: str) -> bool:
    """True for stringified socket frames that carry no conversation text."""
    return (
        text.startswith('{"socketId":')
        and "timestamp" in text
        and '"text"' not in text
    )


def _skip(frame: ParsedFrame) -> None:
    return None


def _always(frame: ParsedFrame) -> bool:
    return True


class MessageDecoder:
    """
    Classifies one inbound frame at a time into a ChatEvent or a skip.

    Decoding keeps no state between frames; only audio payloads touch the
    AudioStore, to obtain a playable handle.
    """

    def __init__(self, asset_base_url: str, audio_store: AudioStore | None = None):
        self.asset_base_url = asset_base_url.rstrip("/")
        self.audio_store = audio_store if audio_store is not None else AudioStore()
        self.rules: tuple[DecodeRule, ...] = (
            DecodeRule("transcription", self._is_transcription, self._build_transcription),
            DecodeRule("technical_status", self._is_technical_status, _skip),
            DecodeRule("socket_plumbing", self._is_socket_plumbing, _skip),
            DecodeRule("audio", self._has_audio, self._build_audio),
            DecodeRule("text", _always, self._build_text),
        )

    def decode(self, frame: Any) -> ChatEvent | None:
        """Decode one raw frame. Returns None when the frame should not be shown."""
        parsed = parse_frame(frame)

        for rule in self.rules:
            if not rule.matches(parsed):
                continue
            try:
                event = rule.build(parsed)
            except DecodeAnomaly as e:
                logger.warning(f"Decode anomaly in rule '{rule.name}': {e}")
                continue

            if event is None:
                logger.debug(f"Skipped frame ({rule.name})")
            return event

        return None

    def resolve_asset_url(self, path: str) -> str:
        """Make a graph path absolute against the asset host."""
        if ABSOLUTE_URL_RE.match(path):
            return path
        return f"{self.asset_base_url}/{path.lstrip('/')}"

    # Rule predicates

    def _is_transcription(self, frame: ParsedFrame) -> bool:
        obj = frame.obj
        return obj is not None and obj.get("status") == TRANSCRIPTION_STATUS

    def _is_technical_status(self, frame: ParsedFrame) -> bool:
        obj = frame.obj
        return (
            obj is not None
            and isinstance(obj.get("status"), str)
            and obj["status"] in TECHNICAL_STATUSES
            and "messageType" in obj
        )

    def _is_socket_plumbing(self, frame: ParsedFrame) -> bool:
        obj = frame.obj
        if obj is None or "socketId" not in obj or "timestamp" not in obj:
            return False
        return not (
            "text" in obj
            or "message" in obj
            or isinstance(obj.get("content"), str)
        )

    def _has_audio(self, frame: ParsedFrame) -> bool:
        obj = frame.obj
        return obj is not None and bool(obj.get("audioData"))

    # Rule builders

    def _build_transcription(self, frame: ParsedFrame) -> ChatEvent:
        obj = frame.obj or {}
        text = _first_text(obj, ("message", "text", "content"), nested=("message", "content"))
        return ChatEvent.create(Role.USER, EventKind.TRANSCRIPTION, text=text or "")

    def _build_audio(self, frame: ParsedFrame) -> ChatEvent:
        obj = frame.obj or {}
        encoded = obj["audioData"]
        if not isinstance(encoded, str):
            raise DecodeAnomaly(f"audioData is {type(encoded).__name__}, expected base64 text")

        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
        mime_type = obj.get("mimeType") or metadata.get("mimeType")

        data_url = DATA_URL_RE.match(encoded)
        if data_url:
            mime_type = mime_type or data_url.group("mime")
            encoded = encoded[data_url.end():]

        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeAnomaly(f"audioData is not valid base64: {e}") from e
        if not data:
            raise DecodeAnomaly("audioData decoded to zero bytes")

        try:
            audio_ref = self.audio_store.register(data, mime_type or DEFAULT_AUDIO_MIME)
        except OSError as e:
            raise DecodeAnomaly(f"could not store audio clip: {e}") from e
        text = _first_text(
            obj, ("content", "message", "text"), nested=("content", "message")
        )
        return ChatEvent.create(
            Role.ASSISTANT,
            EventKind.AUDIO,
            text=text or DEFAULT_AUDIO_TEXT,
            audio_ref=audio_ref,
        )

    def _build_text(self, frame: ParsedFrame) -> ChatEvent | None:
        structure = frame.payload if frame.literal is None else frame.literal

        if isinstance(structure, str):
            unwrapped = unwrap_legacy_envelope(structure)
            if unwrapped is not None:
                structure = unwrapped

        if isinstance(structure, dict):
            text = _first_text(
                structure,
                ("message", "content", "userMessage", "text"),
                nested=("message",),
            )
            if text is None:
                text = stringify(structure)
        else:
            text = stringify(structure)

        if looks_like_socket_diagnostic(text):
            logger.debug("Skipped frame (residual socket diagnostic)")
            return None

        attachments = self._graph_attachments(structure)
        kind = EventKind.IMAGE if attachments else EventKind.TEXT
        return ChatEvent.create(Role.ASSISTANT, kind, text=text, attachments=attachments)

    def _graph_attachments(self, structure: Any) -> list[str]:
        if not isinstance(structure, dict):
            return []
        quote_data = structure.get("quoteData")
        if not isinstance(quote_data, dict):
            return []
        graphs = quote_data.get("graphs")
        if not isinstance(graphs, list):
            return []
        return [self.resolve_asset_url(path) for path in graphs if isinstance(path, str) and path]
