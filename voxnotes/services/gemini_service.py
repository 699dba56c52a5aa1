"""
VoxNotes Backend — Google Gemini Providers
============================================

What:  Concrete transcription and analysis providers backed by Google Gemini.
Why:   Gemini accepts inline audio and can be asked for JSON output, so one
       SDK covers both provider roles.
How:   `generate_content_async` with inline audio bytes (transcription) or a
       text prompt in JSON response mode (analysis). Each call is bounded by
       its timeout, token usage is read from `usage_metadata`, and Google API
       errors are translated into the VoxNotes taxonomy.
Who:   Built by the orchestrator wiring at startup; called by the stages.

Error Translation:
    DeadlineExceeded / GatewayTimeout / asyncio timeout → ProviderTimeoutError
    ResourceExhausted / TooManyRequests                 → RateLimitExceededError
    Unauthenticated / PermissionDenied                  → ProviderAuthError
    InvalidArgument / BadRequest                        → ValidationError
    any other GoogleAPICallError                        → ExternalServiceError
"""

import asyncio
import logging
import time
from typing import Any, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from voxnotes.config import settings
from voxnotes.exceptions import (
    ExternalServiceError,
    ProviderAuthError,
    ProviderTimeoutError,
    RateLimitExceededError,
    ValidationError,
    VoxNotesError,
)
from voxnotes.services.llm_base import AnalysisProvider, ProviderReply, TranscriptionProvider

logger = logging.getLogger(__name__)

# Suggested wait surfaced to callers when Gemini rate-limits us
DEFAULT_RETRY_AFTER = 60

TRANSCRIBE_PROMPT = """Transcribe this voice note verbatim.

Instructions:
1. Return ONLY the spoken words, no commentary, timestamps or speaker labels
2. Keep the speaker's wording, including informal phrasing
3. Use punctuation and paragraph breaks where the speaker pauses
4. If a word is unintelligible, write [inaudible]
5. If the recording contains no speech, return an empty response"""


def configure_gemini() -> None:
    """The SDK keeps credentials in module-level state; configure it once."""
    if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
        genai.configure(api_key=settings.gemini_api_key)


def translate_google_error(exc: Exception, service: str, timeout: Optional[float] = None) -> VoxNotesError:
    if isinstance(exc, (asyncio.TimeoutError, google_exceptions.DeadlineExceeded,
                        google_exceptions.GatewayTimeout)):
        return ProviderTimeoutError(service=service, timeout=timeout)
    if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return RateLimitExceededError(retry_after=DEFAULT_RETRY_AFTER, service=service)
    if isinstance(exc, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return ProviderAuthError(service=service)
    if isinstance(exc, (google_exceptions.InvalidArgument, google_exceptions.BadRequest)):
        return ValidationError(
            message=f"The {service} provider rejected the request",
            context={"service": service, "provider_error": type(exc).__name__},
        )
    return ExternalServiceError(
        message=f"The {service} provider reported an error",
        service=service,
        context={"provider_error": type(exc).__name__},
    )


def _response_text(response: Any) -> str:
    # `.text` raises ValueError when the candidate was blocked or is empty
    try:
        return (response.text or "").strip()
    except ValueError:
        return ""


def _total_tokens(response: Any) -> int:
    usage = getattr(response, "usage_metadata", None)
    return int(getattr(usage, "total_token_count", 0) or 0)


class _GeminiProvider:
    service_name = "gemini"

    def __init__(self, model_name: str, generation_config: Optional[dict] = None):
        configure_gemini()
        self.model_name = model_name
        self.model = genai.GenerativeModel(model_name, generation_config=generation_config)

    async def _generate(self, contents: list, timeout: float) -> ProviderReply:
        start_time = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.model.generate_content_async(
                    contents,
                    request_options={"timeout": timeout},
                ),
                timeout=timeout,
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise translate_google_error(exc, self.service_name, timeout) from exc
        except asyncio.TimeoutError as exc:
            raise translate_google_error(exc, self.service_name, timeout) from exc

        reply = ProviderReply(text=_response_text(response), total_tokens=_total_tokens(response))
        logger.info(
            "%s call to %s completed in %.0fms, %d chars, %d tokens",
            self.service_name,
            self.model_name,
            (time.perf_counter() - start_time) * 1000,
            len(reply.text),
            reply.total_tokens,
        )
        return reply

    async def health_check(self) -> bool:
        """Lists models (no token cost) to verify key and connectivity."""
        try:
            models = await asyncio.to_thread(lambda: [m.name for m in genai.list_models()])
        except google_exceptions.GoogleAPICallError as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
        if f"models/{self.model_name}" not in models:
            logger.warning("Configured model %s not found in available models", self.model_name)
        return True


class GeminiTranscriptionProvider(_GeminiProvider, TranscriptionProvider):
    """Speech-to-text through Gemini's audio understanding."""

    service_name = "transcription"

    def __init__(self, model_name: Optional[str] = None):
        super().__init__(model_name or settings.gemini_transcription_model)

    async def transcribe(self, audio: bytes, mime_type: str, *, timeout: float) -> ProviderReply:
        return await self._generate(
            [TRANSCRIBE_PROMPT, {"mime_type": mime_type, "data": audio}],
            timeout,
        )


class GeminiAnalysisProvider(_GeminiProvider, AnalysisProvider):
    """JSON-mode completions for note analysis."""

    service_name = "analysis"

    def __init__(self, model_name: Optional[str] = None):
        super().__init__(
            model_name or settings.gemini_analysis_model,
            generation_config={
                "response_mime_type": "application/json",
                "temperature": settings.analysis_temperature,
            },
        )

    async def complete(self, prompt: str, *, timeout: float) -> ProviderReply:
        return await self._generate([prompt], timeout)
