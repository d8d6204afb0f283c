"""
LiteLLM helpers shared across the triage pipeline.
"""

from __future__ import annotations

from .client import (
    DEFAULT_CHAT_MODEL,
    JSON_OBJECT_FORMAT,
    LLMClientError,
    completion,
    disable_litellm_logging,
    extract_first_choice_fields,
)

__all__ = [
    "DEFAULT_CHAT_MODEL",
    "JSON_OBJECT_FORMAT",
    "LLMClientError",
    "completion",
    "disable_litellm_logging",
    "extract_first_choice_fields",
]
