"""Shared test data: a realistic transcript, a fully valid analysis payload and a clock helper."""

from datetime import datetime, timedelta, timezone

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}

TRANSCRIPT = "Remind Sam to send the launch deck tomorrow. I feel good about the demo."

VALID_ANALYSIS = {
    "summary": "Launch prep is on track; Sam owes the deck.",
    "mood": "positive",
    "topic": "Product launch",
    "theOneThing": "Get the launch deck from Sam",
    "tasks": [
        {"title": "Send launch deck", "urgency": "SOON", "domain": "WORK", "assignedTo": "Sam"},
    ],
    "keyIdeas": ["Demo is ready"],
    "draftMessages": [
        {"recipient": "Sam", "subject": "Launch deck", "body": "Can you send the deck tomorrow?"},
    ],
    "people": [{"name": "Sam", "context": "Owns the launch deck", "relationship": "colleague"}],
    "crossReferences": {"relatedNotes": [], "projectKnowledgeUpdates": []},
    "recordedAt": "2026-10-01T09:00:00+00:00",
}


def utc(minutes_ago: float = 0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
