"""
VoxNotes Backend — Analysis Stage
===================================

What:  Stateless adapter: transcription (+ prior knowledge, recording time)
       in, typed Analysis out.
How:   Builds the analysis prompt, calls the LLM provider through the
       RetryExecutor under the `"analysis"` breaker key, then hands the raw
       text to `parse_analysis` (fence stripping, JSON parse, schema
       validation, salvage). A salvaged result is returned with a warning;
       only empty, unparseable or unsalvageable output raises
       InvalidAnalysisError.

Parsing failures are not retried. The provider answered; asking again
with the same prompt is a cost, not a fix.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from voxnotes.config import settings
from voxnotes.exceptions import InvalidAnalysisError, ValidationError
from voxnotes.schemas.analysis import AnalysisOutcome, parse_analysis
from voxnotes.services.llm_base import AnalysisProvider
from voxnotes.services.retry_executor import RetryExecutor

logger = logging.getLogger(__name__)

SERVICE_KEY = "analysis"

ANALYSIS_PROMPT = """Analyze this voice note transcription and return structured insights.

Recording date/time: {recorded_at}
Resolve relative time references ("tomorrow", "next week") against the recording time.

Context from the speaker's earlier notes:
{knowledge}

Voice note transcription:
{transcription}

Return ONLY a JSON object with exactly this structure:
{{
  "summary": "Two or three sentence summary",
  "mood": "positive|neutral|negative",
  "topic": "Primary theme in one to three words",
  "theOneThing": "The single most important priority, or null",
  "tasks": [
    {{"title": "Task", "urgency": "NOW|SOON|LATER", "domain": "WORK|PERS|PROJ",
      "dueDate": "optional", "assignedTo": "optional", "context": "optional"}}
  ],
  "keyIdeas": ["idea"],
  "draftMessages": [{{"recipient": "name", "subject": "subject", "body": "message"}}],
  "people": [{{"name": "name", "context": "why mentioned", "relationship": "optional"}}],
  "crossReferences": {{"relatedNotes": [], "projectKnowledgeUpdates": []}},
  "recordedAt": "{recorded_at}"
}}

Use empty arrays for categories with no data. Use only the listed values for
mood, urgency and domain."""


def build_analysis_prompt(
    transcription: str,
    knowledge: Optional[List[str]] = None,
    recorded_at: Optional[str] = None,
) -> str:
    knowledge_text = "\n".join(f"- {line}" for line in knowledge) if knowledge else "(none)"
    return ANALYSIS_PROMPT.format(
        recorded_at=recorded_at or "unknown",
        knowledge=knowledge_text,
        transcription=transcription,
    )


@dataclass
class AnalysisResult:
    analysis: AnalysisOutcome
    attempts: int
    total_tokens: int = 0

    @property
    def warning(self) -> Optional[str]:
        return getattr(self.analysis, "warning", None)


class AnalysisStage:

    def __init__(
        self,
        provider: AnalysisProvider,
        executor: RetryExecutor,
        timeout: float = settings.analysis_timeout,
        required_fields: Optional[List[str]] = None,
    ):
        self.provider = provider
        self.executor = executor
        self.timeout = timeout
        self.required_fields = required_fields or list(settings.salvage_required_fields)

    async def run(
        self,
        transcription: str,
        knowledge: Optional[List[str]] = None,
        recorded_at: Optional[datetime] = None,
    ) -> AnalysisResult:
        if not transcription or not transcription.strip():
            raise ValidationError(message="Cannot analyze an empty transcription", field="transcription")

        stamp = recorded_at.isoformat() if recorded_at else None
        prompt = build_analysis_prompt(transcription, knowledge, stamp)
        outcome = await self.executor.execute(
            SERVICE_KEY,
            lambda: self.provider.complete(prompt, timeout=self.timeout),
        )

        try:
            analysis = parse_analysis(
                outcome.value.text,
                required_fields=self.required_fields,
                recorded_at=stamp,
            )
        except InvalidAnalysisError as exc:
            raise exc.with_attempts(outcome.attempts)

        if analysis.is_partial:
            logger.warning("Analysis salvaged with warning: %s", analysis.warning)
        return AnalysisResult(
            analysis=analysis,
            attempts=outcome.attempts,
            total_tokens=outcome.value.total_tokens,
        )
