"""
VoxNotes Backend — Abstract Provider Interfaces
=================================================

What:  Abstract base classes for the speech-to-text and LLM providers.
Why:   The orchestrator treats providers as black-box RPCs. Keeping the
       contract here lets stages and tests swap Gemini for any other vendor
       (or an AsyncMock) without touching orchestration code.
How:   Concrete implementations inherit and implement the async methods.
       They translate vendor errors into the VoxNotes taxonomy and perform
       no retries of their own; retrying belongs to the RetryExecutor.

Design Decision:
    Providers return a `ProviderReply` (text + token count) instead of bare
    text so token usage can feed the daily quota without a second API call.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderReply:
    text: str
    total_tokens: int = 0


class TranscriptionProvider(ABC):
    """Speech-to-text: raw audio in, plain text out."""

    name = "transcription"

    @abstractmethod
    async def transcribe(self, audio: bytes, mime_type: str, *, timeout: float) -> ProviderReply:
        """
        Transcribe one recording.

        Args:
            audio:     Raw audio bytes as stored.
            mime_type: Declared MIME type (e.g. audio/webm, audio/mpeg).
            timeout:   Seconds before the call is abandoned.

        Raises:
            ProviderTimeoutError, RateLimitExceededError, ProviderAuthError,
            ExternalServiceError, ValidationError
        """
        ...

    async def health_check(self) -> bool:
        return True


class AnalysisProvider(ABC):
    """LLM completion: prompt in, raw text (expected to be JSON) out."""

    name = "analysis"

    @abstractmethod
    async def complete(self, prompt: str, *, timeout: float) -> ProviderReply:
        """
        Run one completion.

        Raises:
            Same contract as TranscriptionProvider.transcribe.
        """
        ...

    async def health_check(self) -> bool:
        return True
