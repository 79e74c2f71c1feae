"""
Microphone capture for voice messages.

Handles:
- Microphone input (PyAudio) read in a background thread
- 250 ms chunks marshalled onto the asyncio event loop
- A hard ceiling on recording length
- WAV output and the outbound audio envelope
"""

import asyncio
import io
import logging
import threading
import time
import wave
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

from sophi_chat.models import SendResult, audio_envelope

logger = logging.getLogger(__name__)

# Audio constants
SAMPLE_RATE = 16000
CHANNELS = 1
SAMPLE_WIDTH = 2  # 16-bit audio
CHUNK_INTERVAL = 0.25  # seconds of audio per chunk
MAX_DURATION = 30.0  # seconds
WAV_MIME_TYPE = "audio/wav"

# Try to import PyAudio
HAS_PYAUDIO = False
if TYPE_CHECKING:
    import pyaudio
else:
    try:
        import pyaudio

        HAS_PYAUDIO = True
    except ImportError:
        pyaudio = None


class MicrophonePermissionError(Exception):
    """Microphone access was denied or no input device could be opened."""


class RecorderBusyError(Exception):
    """start() was called while a recording is already running."""


class RecorderIdleError(Exception):
    """stop() was called while nothing is being recorded."""


class RecorderState(Enum):
    IDLE = "idle"
    RECORDING = "recording"


@dataclass(frozen=True)
class RecordedClip:
    """A finished recording, ready to be sent."""

    data: bytes
    mime_type: str
    duration: float
    stopped_by_limit: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.data


@dataclass
class RecordingSession:
    """Transient state of one capture."""

    started_at: float
    chunks: list[bytes] = field(default_factory=list)
    cutoff: asyncio.TimerHandle | None = None
    limit_reached: bool = False
    finalized: bool = False


def encode_wav(pcm: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Wrap mono 16-bit PCM in a WAV container."""
    wav_buffer = io.BytesIO()
    with wave.open(wav_buffer, "wb") as wav_file:
        wav_file.setnchannels(CHANNELS)
        wav_file.setsampwidth(SAMPLE_WIDTH)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm)
    return wav_buffer.getvalue()


def downmix_to_mono(pcm: bytes, channels: int) -> bytes:
    """Average interleaved int16 channels into one."""
    if channels == 1:
        return pcm
    samples = np.frombuffer(pcm, dtype=np.int16)
    usable = len(samples) - (len(samples) % channels)
    frames = samples[:usable].reshape(-1, channels).astype(np.int32)
    return frames.mean(axis=1).astype(np.int16).tobytes()


class MicrophoneSource:
    """
    Reads the microphone through PyAudio in a daemon thread.

    Each blocking read returns chunk_frames frames, so chunks arrive at the
    configured interval. Chunks are always delivered as mono int16 PCM.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        chunk_frames: int = int(SAMPLE_RATE * CHUNK_INTERVAL),
        device_index: int | None = None,
    ):
        self.sample_rate = sample_rate
        self.chunk_frames = chunk_frames
        self.device_index = device_index

        self._audio: Any = None
        self._stream: Any = None
        self._thread: threading.Thread | None = None
        self._running = False
        self._channels = CHANNELS

    def _supported_channels(self) -> int:
        """Prefer mono, fall back to stereo (downmixed later)."""
        for channels in (1, 2):
            try:
                if self._audio.is_format_supported(
                    self.sample_rate,
                    input_device=self.device_index,
                    input_channels=channels,
                    input_format=pyaudio.paInt16,
                ):
                    return channels
            except ValueError:
                logger.debug(f"{channels} channel(s) not supported at {self.sample_rate} Hz")
        return CHANNELS

    def open(self, on_chunk: Callable[[bytes], None]) -> None:
        """Open the input stream and start the reader thread."""
        if not HAS_PYAUDIO:
            raise MicrophonePermissionError(
                "PyAudio is required for audio recording. "
                "Install with: pip install pyaudio"
            )

        try:
            self._audio = pyaudio.PyAudio()
            self._channels = self._supported_channels()
            if self._channels != CHANNELS:
                logger.info("Using stereo recording (will convert to mono)")

            self._stream = self._audio.open(
                format=pyaudio.paInt16,
                channels=self._channels,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.chunk_frames,
                input_device_index=self.device_index,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to open audio stream: {e}")
            self._release()
            raise MicrophonePermissionError(f"Failed to open microphone: {e}") from e

        self._running = True
        self._thread = threading.Thread(target=self._read_loop, args=(on_chunk,), daemon=True)
        self._thread.start()
        logger.info(f"Microphone opened at {self.sample_rate} Hz")

    def _read_loop(self, on_chunk: Callable[[bytes], None]) -> None:
        """Recording loop running in background thread."""
        while self._running and self._stream:
            try:
                data = self._stream.read(self.chunk_frames, exception_on_overflow=False)
            except OSError as e:
                logger.error(f"Recording error: {e}")
                break
            on_chunk(downmix_to_mono(data, self._channels))

    def close(self) -> None:
        """Stop the reader thread and release the device."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None
        self._release()

    def _release(self) -> None:
        if self._stream:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.debug(f"Error closing audio stream: {e}")
            self._stream = None

        if self._audio:
            self._audio.terminate()
            self._audio = None

    @staticmethod
    def list_devices() -> list[dict]:
        """List available audio input devices."""
        if not HAS_PYAUDIO:
            return []

        audio = pyaudio.PyAudio()
        devices = []

        try:
            for i in range(audio.get_device_count()):
                info = audio.get_device_info_by_index(i)
                if info.get("maxInputChannels", 0) > 0:
                    devices.append(
                        {
                            "index": i,
                            "name": info.get("name", "Unknown"),
                            "channels": info.get("maxInputChannels", 0),
                            "sample_rate": int(info.get("defaultSampleRate", 0)),
                        }
                    )
        finally:
            audio.terminate()

        return devices


SourceFactory = Callable[[int, int, int | None], Any]


class AudioCaptureController:
    """
    Records one voice message at a time.

    States: IDLE -> RECORDING -> IDLE. The recording session is dropped as
    soon as stop() hands back the finished clip.
    """

    def __init__(
        self,
        source_factory: SourceFactory | None = None,
        sample_rate: int = SAMPLE_RATE,
        chunk_interval: float = CHUNK_INTERVAL,
        max_duration: float = MAX_DURATION,
        device_index: int | None = None,
        on_limit_reached: Callable[[], None] | None = None,
    ):
        """
        Initialize the controller.

        Args:
            source_factory: Builds an audio source from (sample_rate, chunk_frames,
                device_index); defaults to MicrophoneSource
            sample_rate: Capture sample rate
            chunk_interval: Seconds of audio per buffered chunk
            max_duration: Hard recording ceiling in seconds
            device_index: Input device index (None for default)
            on_limit_reached: Called on the event loop when the ceiling stops capture
        """
        self.source_factory = source_factory or MicrophoneSource
        self.sample_rate = sample_rate
        self.chunk_interval = chunk_interval
        self.max_duration = max_duration
        self.device_index = device_index
        self.on_limit_reached = on_limit_reached

        self._session: RecordingSession | None = None
        self._source: Any = None

    @property
    def state(self) -> RecorderState:
        return RecorderState.RECORDING if self._session is not None else RecorderState.IDLE

    @property
    def is_recording(self) -> bool:
        return self._session is not None

    def get_duration(self) -> float:
        """Seconds of audio buffered so far."""
        if self._session is None:
            return 0.0
        total_bytes = sum(len(c) for c in self._session.chunks)
        return total_bytes / (self.sample_rate * SAMPLE_WIDTH * CHANNELS)

    async def start(self) -> None:
        """
        Open the microphone and start buffering.

        Raises:
            RecorderBusyError: Already recording
            MicrophonePermissionError: Microphone could not be opened
        """
        if self._session is not None:
            raise RecorderBusyError("Already recording")

        loop = asyncio.get_running_loop()
        session = RecordingSession(started_at=time.monotonic())
        chunk_frames = max(1, int(self.sample_rate * self.chunk_interval))
        source = self.source_factory(self.sample_rate, chunk_frames, self.device_index)

        def on_chunk(data: bytes) -> None:
            loop.call_soon_threadsafe(self._append_chunk, session, data)

        source.open(on_chunk)

        session.cutoff = loop.call_later(self.max_duration, self._on_ceiling, session)
        self._session = session
        self._source = source
        logger.info(f"Recording started (limit {self.max_duration:g}s)")

    def _append_chunk(self, session: RecordingSession, data: bytes) -> None:
        if not session.finalized and not session.limit_reached and data:
            session.chunks.append(data)

    def _on_ceiling(self, session: RecordingSession) -> None:
        if session is not self._session:
            return
        session.limit_reached = True
        logger.info(f"Recording stopped automatically: reached {self.max_duration:g}s limit")

        source, self._source = self._source, None
        if source is not None:
            # Closing joins the reader thread, keep it off the loop
            asyncio.get_running_loop().run_in_executor(None, source.close)

        if self.on_limit_reached:
            self.on_limit_reached()

    async def stop(self) -> RecordedClip:
        """
        Finish the recording and return it as one WAV blob.

        An empty clip (zero bytes) is returned when nothing was captured.

        Raises:
            RecorderIdleError: Not recording
        """
        session = self._session
        if session is None:
            raise RecorderIdleError("Not recording")

        source, self._source = self._source, None
        self._session = None
        if session.cutoff is not None:
            session.cutoff.cancel()

        if source is not None:
            await asyncio.to_thread(source.close)
        # Let chunks queued by the reader thread land before finalizing
        await asyncio.sleep(0)
        session.finalized = True

        pcm = b"".join(session.chunks)
        duration = len(pcm) / (self.sample_rate * SAMPLE_WIDTH * CHANNELS)
        data = encode_wav(pcm, self.sample_rate) if pcm else b""

        if pcm:
            logger.info(f"Recording stopped: {duration:.1f}s")
        else:
            logger.warning("No audio recorded")

        return RecordedClip(
            data=data,
            mime_type=WAV_MIME_TYPE,
            duration=duration,
            stopped_by_limit=session.limit_reached,
        )

    async def cancel(self) -> None:
        """Stop and discard the current recording, if any."""
        if self._session is None:
            return
        await self.stop()
        logger.info("Recording cancelled")

    async def transmit(
        self,
        clip: RecordedClip,
        send: Callable[[dict[str, Any]], Awaitable[SendResult]],
    ) -> SendResult | None:
        """
        Send a finished clip as an audio envelope.

        Returns None without sending when the clip is empty.
        """
        if clip.is_empty:
            logger.warning("No audio detected, nothing sent")
            return None

        envelope = await asyncio.to_thread(audio_envelope, clip.data, clip.mime_type)
        result = await send(envelope)
        logger.info(f"Voice message of {len(clip.data)} bytes: {result.value}")
        return result
