"""Resumable LLM triage of customer-support conversations.

Submodules
----------
taxonomy
    Fixed tag vocabulary and enumerations.
normalize
    Total normalization of untrusted classification payloads.
classify
    Single-transcript LiteLLM classification with bounded retry.
source
    Source CSV reading, header aliasing, and conversation grouping.
engine
    Chunked, resumable batch engine.
rollup
    Tag and query-subcategory reports.
commands
    ``triage`` command-line interface.
"""

from __future__ import annotations

__all__ = [
    "checkpoint",
    "classify",
    "commands",
    "config",
    "engine",
    "locking",
    "normalize",
    "prompts",
    "rollup",
    "scheduler",
    "source",
    "store",
    "taxonomy",
]
