"""
Prompt text for transcript classification.

The system prompt describes the JSON schema and the tagging rules; the user
message carries the (length-capped) transcript.
"""

from __future__ import annotations

from triage.taxonomy import (
    APPROVED_TAGS,
    FALLBACK_TAG,
    MAX_TAGS,
    QUERY_TAG,
    RESOLUTION_STATUSES,
    SENTIMENTS,
)

MAX_REQUEST_CHARS = 12000
"""Upper bound on transcript characters sent in a single request."""

CLASSIFICATION_SYSTEM_PROMPT = (
    "You are a careful classifier of customer-support conversations. "
    "Output exactly one JSON object with four fields: "
    f'"sentiment" (one of {", ".join(SENTIMENTS)}, describing the customer), '
    f'"tags" (a JSON array of 1 to {MAX_TAGS} tags chosen only from this list: '
    f'{", ".join(APPROVED_TAGS)}), '
    '"summary" (one or two plain sentences describing the request and outcome), and '
    f'"solved" (one of {", ".join(RESOLUTION_STATUSES)}, whether the customer\'s '
    "issue was resolved in the conversation). "
    f'Use "{QUERY_TAG}" for general informational requests, combined with the most '
    f'specific topical tag when one applies. Use "{FALLBACK_TAG}" only when no other '
    "tag applies. "
    "Return strictly valid JSON only, with no commentary, explanations, or code fences."
)

TRANSCRIPT_TEMPLATE = """\
# Conversation transcript

{transcript}
"""


def build_user_prompt(transcript: str) -> str:
    """Return the user message for ``transcript`` capped at ``MAX_REQUEST_CHARS``."""

    return TRANSCRIPT_TEMPLATE.format(transcript=transcript[:MAX_REQUEST_CHARS])


def build_completion_messages(
    transcript: str, *, system_prompt: str = CLASSIFICATION_SYSTEM_PROMPT
) -> tuple[dict[str, str], dict[str, str]]:
    """Construct the chat messages sent to LiteLLM."""

    return (
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": build_user_prompt(transcript)},
    )
