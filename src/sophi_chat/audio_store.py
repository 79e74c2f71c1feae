"""
Playable handles for audio clips that appear in chat history.

Received voice replies and the user's own recordings are written to a
per-session temporary directory so a front-end can hand the file path to any
player. Handles are released together when chat state is reset.
"""

import logging
import mimetypes
import shutil
import tempfile
import threading
import uuid
from pathlib import Path

from sophi_chat.models import AudioRef

logger = logging.getLogger(__name__)

# mimetypes has no entry for these on many platforms
_EXTENSIONS = {
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
}


def _extension_for(mime_type: str) -> str:
    base_type = mime_type.split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base_type) or mimetypes.guess_extension(base_type) or ".bin"


class AudioStore:
    """Registry of audio clips backed by temporary files."""

    def __init__(self, root: Path | None = None):
        self._root = root
        self._owns_root = root is None
        self._refs: dict[str, AudioRef] = {}
        self._lock = threading.Lock()

    def _get_root(self) -> Path:
        if self._root is None:
            self._root = Path(tempfile.mkdtemp(prefix="sophi-audio-"))
            logger.debug(f"Audio store created at {self._root}")
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    def register(self, data: bytes, mime_type: str) -> AudioRef:
        """Store a clip and return a handle to it."""
        ref_id = uuid.uuid4().hex
        with self._lock:
            path = self._get_root() / f"{ref_id}{_extension_for(mime_type)}"
            path.write_bytes(data)
            ref = AudioRef(ref_id=ref_id, path=path, mime_type=mime_type, size=len(data))
            self._refs[ref_id] = ref
        logger.debug(f"Registered audio clip {ref_id} ({len(data)} bytes, {mime_type})")
        return ref

    def get(self, ref_id: str) -> AudioRef | None:
        with self._lock:
            return self._refs.get(ref_id)

    def read(self, ref: AudioRef) -> bytes:
        """Return the clip bytes behind a handle."""
        return ref.path.read_bytes()

    def release(self, ref: AudioRef) -> None:
        """Drop one handle and delete its file."""
        with self._lock:
            self._refs.pop(ref.ref_id, None)
        ref.path.unlink(missing_ok=True)

    def release_all(self) -> None:
        """Drop every handle. Files of a self-created directory are removed with it."""
        with self._lock:
            refs = list(self._refs.values())
            self._refs.clear()
            root = self._root
            if self._owns_root:
                self._root = None

        if self._owns_root and root is not None:
            shutil.rmtree(root, ignore_errors=True)
        else:
            for ref in refs:
                ref.path.unlink(missing_ok=True)

        if refs:
            logger.debug(f"Released {len(refs)} audio clip(s)")

    def __len__(self) -> int:
        with self._lock:
            return len(self._refs)
