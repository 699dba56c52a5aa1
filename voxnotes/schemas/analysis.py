"""
VoxNotes Backend — Analysis Schema and Parser
===============================================

What:  Typed shape of an AI analysis of a voice note, plus the parse step that
       turns raw LLM text into that shape.
Why:   LLM output is loosely-typed JSON. Nothing downstream of this module
       ever sees a raw dict: parsing yields a complete `Analysis`, a salvaged
       `PartialAnalysis` carrying a warning, or raises InvalidAnalysisError.
How:   1. strip markdown code fences
       2. json.loads (falling back to the outermost {...} block)
       3. validate against `Analysis`
       4. on validation failure, salvage field by field; the salvage succeeds
          only if every field in `required_fields` was recovered intact

Enumerated fields (mood, task urgency, task domain) are closed sets. A value
outside the set fails validation for that field: in a salvage the task is
dropped, and the mood falls back to neutral with the field listed in
`invalid_fields`.
"""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from voxnotes.exceptions import InvalidAnalysisError


# ══════════════════════════════════════════════════════════════════════════
# Closed value sets
# ══════════════════════════════════════════════════════════════════════════

class Mood(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class TaskUrgency(str, Enum):
    NOW = "NOW"
    SOON = "SOON"
    LATER = "LATER"


class TaskDomain(str, Enum):
    WORK = "WORK"
    PERS = "PERS"
    PROJ = "PROJ"


# ══════════════════════════════════════════════════════════════════════════
# Analysis shape
# ══════════════════════════════════════════════════════════════════════════

class _CamelModel(BaseModel):
    # The LLM speaks camelCase; Python code uses snake_case
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class AnalysisTask(_CamelModel):
    title: str = Field(min_length=1)
    urgency: TaskUrgency
    domain: TaskDomain
    due_date: Optional[str] = None
    assigned_to: Optional[str] = None
    context: Optional[str] = None


class DraftMessage(_CamelModel):
    recipient: str
    subject: str
    body: str


class MentionedPerson(_CamelModel):
    name: str
    context: str
    relationship: Optional[str] = None


class CrossReferences(_CamelModel):
    related_notes: List[str] = Field(default_factory=list)
    project_knowledge_updates: List[str] = Field(default_factory=list)


class Analysis(_CamelModel):
    """A fully valid analysis of one transcription."""

    kind: Literal["complete"] = "complete"
    summary: str = Field(min_length=1)
    mood: Mood
    topic: str = Field(min_length=1)
    the_one_thing: Optional[str] = None
    tasks: List[AnalysisTask] = Field(default_factory=list)
    key_ideas: List[str] = Field(default_factory=list)
    draft_messages: List[DraftMessage] = Field(default_factory=list)
    people: List[MentionedPerson] = Field(default_factory=list)
    cross_references: CrossReferences = Field(default_factory=CrossReferences)
    recorded_at: Optional[str] = None

    @field_validator("summary", "topic")
    @classmethod
    def strip_text(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @property
    def is_partial(self) -> bool:
        return False

    def to_storage(self) -> Dict[str, Any]:
        """JSON-ready dict persisted in `notes.analysis` (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)


class PartialAnalysis(Analysis):
    """
    An analysis recovered from schema-invalid output.

    `summary` may be absent when the configured salvage threshold does not
    require it; every other field still carries a usable default.
    """

    kind: Literal["partial"] = "partial"
    summary: Optional[str] = Field(default=None, min_length=1)
    warning: str
    invalid_fields: List[str] = Field(default_factory=list)

    @field_validator("summary", "topic")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @property
    def is_partial(self) -> bool:
        return True


AnalysisOutcome = Union[Analysis, PartialAnalysis]

ANALYSIS_FIELDS = (
    "summary", "mood", "topic", "the_one_thing", "tasks", "key_ideas",
    "draft_messages", "people", "cross_references", "recorded_at",
)

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


# ══════════════════════════════════════════════════════════════════════════
# Parsing
# ══════════════════════════════════════════════════════════════════════════

def strip_code_fences(raw: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    match = _FENCE_RE.match(raw)
    if match:
        return match.group(1).strip()
    return raw.strip()


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    # Models sometimes wrap the object in prose
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            pass
    raise InvalidAnalysisError(
        message="Analysis output was not valid JSON",
        context={"preview": text[:200]},
    )


def parse_analysis(
    raw: Optional[str],
    required_fields: Iterable[str] = ("summary",),
    recorded_at: Optional[str] = None,
) -> AnalysisOutcome:
    """
    Turn raw LLM output into an `Analysis` or `PartialAnalysis`.

    Args:
        raw: Text returned by the analysis provider.
        required_fields: Fields that must survive a salvage for it to count.
        recorded_at: ISO timestamp used when the model omitted `recordedAt`.

    Raises:
        InvalidAnalysisError: empty output, unparseable JSON, a non-object
            payload, or a salvage that lost a required field.
    """
    if raw is None or not raw.strip():
        raise InvalidAnalysisError(message="Analysis output was empty")

    payload = _load_json(strip_code_fences(raw))
    if not isinstance(payload, dict):
        raise InvalidAnalysisError(
            message="Analysis output was not a JSON object",
            context={"type": type(payload).__name__},
        )
    if recorded_at and not _pick(payload, "recorded_at"):
        payload = {**payload, "recordedAt": recorded_at}

    try:
        return Analysis.model_validate(payload)
    except PydanticValidationError as exc:
        return _salvage(payload, exc, list(required_fields), recorded_at)


def _pick(payload: Dict[str, Any], name: str) -> Any:
    alias = to_camel(name)
    if alias in payload:
        return payload[alias]
    return payload.get(name)


def _valid_items(model: type, values: Any) -> tuple:
    """Validate list items one by one. Returns (valid_items, was_a_list, dropped)."""
    if not isinstance(values, list):
        return [], False, 0
    items = []
    for value in values:
        try:
            items.append(model.model_validate(value))
        except PydanticValidationError:
            continue
    return items, True, len(values) - len(items)


def _salvage(
    payload: Dict[str, Any],
    error: PydanticValidationError,
    required_fields: List[str],
    recorded_at: Optional[str],
) -> PartialAnalysis:
    recovered: Dict[str, Any] = {}
    intact: set = set()

    summary = _pick(payload, "summary")
    if isinstance(summary, str) and summary.strip():
        recovered["summary"] = summary.strip()
        intact.add("summary")

    mood = _pick(payload, "mood")
    # Unhashable values (lists, objects) must not reach the set lookup
    if isinstance(mood, str) and mood in {m.value for m in Mood}:
        recovered["mood"] = Mood(mood)
        intact.add("mood")
    else:
        recovered["mood"] = Mood.NEUTRAL

    topic = _pick(payload, "topic")
    if isinstance(topic, str) and topic.strip():
        recovered["topic"] = topic.strip()
        intact.add("topic")
    else:
        recovered["topic"] = "General"

    one_thing = _pick(payload, "the_one_thing")
    if one_thing is None or isinstance(one_thing, str):
        recovered["the_one_thing"] = one_thing
        intact.add("the_one_thing")

    for name, model in (
        ("tasks", AnalysisTask),
        ("draft_messages", DraftMessage),
        ("people", MentionedPerson),
    ):
        items, was_list, dropped = _valid_items(model, _pick(payload, name))
        recovered[name] = items
        if was_list and not dropped:
            intact.add(name)

    ideas = _pick(payload, "key_ideas")
    if isinstance(ideas, list):
        recovered["key_ideas"] = [idea for idea in ideas if isinstance(idea, str)]
        if len(recovered["key_ideas"]) == len(ideas):
            intact.add("key_ideas")

    try:
        recovered["cross_references"] = CrossReferences.model_validate(
            _pick(payload, "cross_references") or {}
        )
        intact.add("cross_references")
    except PydanticValidationError:
        recovered["cross_references"] = CrossReferences()

    stamp = _pick(payload, "recorded_at")
    if isinstance(stamp, str):
        recovered["recorded_at"] = stamp
        intact.add("recorded_at")
    else:
        recovered["recorded_at"] = recorded_at or datetime.now(timezone.utc).isoformat()

    problems = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in error.errors()
    ]
    missing = [name for name in required_fields if name not in intact]
    if missing:
        raise InvalidAnalysisError(
            message="Analysis output is missing required fields: " + ", ".join(missing),
            context={"missing_fields": missing, "problems": problems[:10]},
        )

    invalid_fields = sorted(
        name for name in ANALYSIS_FIELDS
        if name not in intact and _pick(payload, name) is not None
    )
    try:
        return PartialAnalysis(
            **recovered,
            warning="Partial analysis: " + "; ".join(problems),
            invalid_fields=invalid_fields,
        )
    except PydanticValidationError as exc:
        raise InvalidAnalysisError(
            message="Analysis output could not be salvaged",
            context={"problems": problems[:10], "salvage_errors": exc.error_count()},
        ) from exc
