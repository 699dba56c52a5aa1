"""
VoxNotes Backend — Audio Store
================================

What:  Blob storage collaborator: resolves a note's `audio_ref` to the raw
       bytes and the declared MIME type.
How:   Refs are paths relative to `audio_storage_root`. Reads go through
       aiofiles under the storage timeout. The MIME type comes from the file
       extension; when the extension is unknown, libmagic inspects the header
       bytes instead.

Security:
    Refs are stored data, not trusted input. A ref that resolves outside the
    storage root (`../`, absolute paths, symlinks) is rejected with a
    ValidationError and never read.

Failure Mapping:
    missing blob                → NotFoundError (not retried)
    OSError / read timeout      → StorageUnavailableError (retryable)
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Optional, Tuple

import aiofiles
import magic

from voxnotes.config import settings
from voxnotes.exceptions import NotFoundError, StorageUnavailableError, ValidationError

logger = logging.getLogger(__name__)

# Common recorder outputs that the platform mimetypes table may not know
AUDIO_MIME_TYPES = {
    ".webm": "audio/webm",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

# libmagic only needs the container header
MAGIC_HEADER_BYTES = 2048


class AudioStore:

    def __init__(self, storage_root: Optional[str] = None, timeout: Optional[float] = None):
        self.storage_root = Path(storage_root or settings.audio_storage_root).resolve()
        self.timeout = timeout or settings.storage_timeout

    def resolve(self, audio_ref: str) -> Path:
        if not audio_ref or not audio_ref.strip():
            raise ValidationError(message="Note has no audio reference", field="audio_ref")
        candidate = (self.storage_root / audio_ref.lstrip("/")).resolve()
        if not candidate.is_relative_to(self.storage_root):
            logger.warning("Rejected audio ref outside storage root: %s", audio_ref)
            raise ValidationError(message="Invalid audio reference", field="audio_ref")
        return candidate

    def detect_mime_type(self, path: Path, header: bytes) -> str:
        ext = path.suffix.lower()
        if ext in AUDIO_MIME_TYPES:
            return AUDIO_MIME_TYPES[ext]
        guessed, _ = mimetypes.guess_type(path.name)
        if guessed:
            return guessed
        detected = magic.from_buffer(header[:MAGIC_HEADER_BYTES], mime=True)
        return detected or DEFAULT_MIME_TYPE

    async def fetch_audio(self, audio_ref: str) -> Tuple[bytes, str]:
        """
        Read the recording behind `audio_ref`.

        Returns:
            (audio bytes, MIME type)

        Raises:
            ValidationError, NotFoundError, StorageUnavailableError
        """
        path = self.resolve(audio_ref)
        try:
            content = await asyncio.wait_for(self._read(path), timeout=self.timeout)
        except FileNotFoundError:
            raise NotFoundError(resource="Audio", resource_id=audio_ref)
        except asyncio.TimeoutError as e:
            raise StorageUnavailableError(
                message="Timed out reading audio from storage",
                context={"audio_ref": audio_ref, "timeout": self.timeout},
            ) from e
        except OSError as e:
            logger.error("Failed to read audio %s: %s", audio_ref, str(e))
            raise StorageUnavailableError(
                context={"audio_ref": audio_ref, "os_error": type(e).__name__},
            ) from e

        mime_type = self.detect_mime_type(path, content)
        logger.debug("Fetched %s (%d bytes, %s)", audio_ref, len(content), mime_type)
        return content, mime_type

    async def _read(self, path: Path) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
