"""
VoxNotes Backend — Transcription Stage
========================================

What:  Stateless adapter: audio bytes + MIME type in, transcription text out.
How:   Calls the transcription provider through the RetryExecutor under the
       `"transcription"` breaker key. Whitespace-only output is a failure
       (EmptyTranscriptionError), not an empty success.
"""

import logging
from dataclasses import dataclass

from voxnotes.config import settings
from voxnotes.exceptions import EmptyTranscriptionError, ValidationError
from voxnotes.services.llm_base import TranscriptionProvider
from voxnotes.services.retry_executor import RetryExecutor

logger = logging.getLogger(__name__)

SERVICE_KEY = "transcription"


@dataclass
class TranscriptionResult:
    text: str
    attempts: int
    total_tokens: int = 0


class TranscriptionStage:

    def __init__(
        self,
        provider: TranscriptionProvider,
        executor: RetryExecutor,
        timeout: float = settings.transcription_timeout,
    ):
        self.provider = provider
        self.executor = executor
        self.timeout = timeout

    async def run(self, audio: bytes, mime_type: str) -> TranscriptionResult:
        if not audio:
            raise ValidationError(message="Audio recording is empty", field="audio")

        outcome = await self.executor.execute(
            SERVICE_KEY,
            lambda: self.provider.transcribe(audio, mime_type, timeout=self.timeout),
        )
        text = outcome.value.text.strip()
        if not text:
            raise EmptyTranscriptionError(
                context={"mime_type": mime_type, "bytes": len(audio)},
            ).with_attempts(outcome.attempts)

        logger.info(
            "Transcribed %d bytes of %s into %d chars (%d attempt(s))",
            len(audio),
            mime_type,
            len(text),
            outcome.attempts,
        )
        return TranscriptionResult(
            text=text,
            attempts=outcome.attempts,
            total_tokens=outcome.value.total_tokens,
        )
