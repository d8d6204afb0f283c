"""Normalize untrusted classification payloads into validated records.

Everything the remote model returns is advisory. :func:`normalize_result`
is total: any input, including ``None`` and wrongly typed fields, yields a
:class:`NormalizedResult` whose sentiment, tags, and resolution come from the
fixed vocabulary in :mod:`triage.taxonomy`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Union

from triage.store import OutputRow
from triage.taxonomy import (
    APPROVED_TAG_SET,
    DEFAULT_RESOLUTION,
    DEFAULT_SENTIMENT,
    FALLBACK_TAG,
    MAX_TAGS,
    RESOLUTION_STATUSES,
    SENTIMENTS,
)

_WHITESPACE_PATTERN = re.compile(r"\s+")

FAILURE_SUMMARY_PREFIX = "Classification failed"


@dataclass(frozen=True)
class ClassificationResult:
    """Raw classification fields as returned by the remote model.

    Every field is untrusted: it may be missing (``None``), of the wrong
    type, or outside the fixed vocabulary.
    """

    sentiment: object = None
    tags: object = None
    summary: object = None
    solved: object = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> "ClassificationResult":
        """Build a result from a decoded JSON object, ignoring unknown keys."""

        return cls(
            sentiment=payload.get("sentiment"),
            tags=payload.get("tags"),
            summary=payload.get("summary"),
            solved=payload.get("solved"),
        )


@dataclass(frozen=True)
class NormalizedResult:
    """Validated classification for a single conversation.

    Parameters
    ----------
    sentiment:
        One of ``positive``, ``neutral`` or ``negative``.
    tags:
        One to six distinct approved taxonomy tags in model order.
    resolution:
        One of ``yes``, ``no`` or ``unclear``.
    summary:
        Summary text annotated with the resolution status.
    """

    sentiment: str
    tags: tuple[str, ...]
    resolution: str
    summary: str


RawResult = Union[ClassificationResult, Mapping[str, object], None]


def _field(raw: RawResult, name: str) -> object:
    """Return ``name`` from a result object or mapping, or ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def _clean_token(value: object) -> str:
    """Return a trimmed, lower-cased string form of ``value``."""

    if value is None:
        return ""
    return str(value).strip().lower()


def normalize_sentiment(value: object) -> str:
    """Return ``value`` when it is an allowed sentiment, else the default."""

    candidate = _clean_token(value)
    return candidate if candidate in SENTIMENTS else DEFAULT_SENTIMENT


def normalize_resolution(value: object) -> str:
    """Return ``value`` when it is an allowed resolution status, else ``unclear``."""

    candidate = _clean_token(value)
    return candidate if candidate in RESOLUTION_STATUSES else DEFAULT_RESOLUTION


def normalize_tag(value: object) -> str:
    """Return the canonical spelling of a single raw tag entry.

    The entry is stringified, trimmed, lower-cased, and internal whitespace
    runs are collapsed to a single underscore.
    """

    return _WHITESPACE_PATTERN.sub("_", _clean_token(value))


def _iter_raw_tags(value: object) -> Iterable[object]:
    """Yield raw tag entries from a list, tuple, or comma-separated string."""

    if isinstance(value, str):
        return value.split(",")
    if isinstance(value, (list, tuple)):
        return value
    return ()


def normalize_tags(value: object) -> tuple[str, ...]:
    """Return deduplicated approved tags, capped at ``MAX_TAGS``.

    Unrecognized entries are dropped rather than coerced. When nothing
    survives, the result is the single fallback tag.
    """

    accepted: List[str] = []
    for entry in _iter_raw_tags(value):
        if entry is None:
            continue
        tag = normalize_tag(entry)
        if tag not in APPROVED_TAG_SET or tag in accepted:
            continue
        accepted.append(tag)
        if len(accepted) >= MAX_TAGS:
            break
    if not accepted:
        return (FALLBACK_TAG,)
    return tuple(accepted)


def build_summary(summary: object, resolution: str, error: Optional[str]) -> str:
    """Return the summary text annotated with the resolution status."""

    text = summary.strip() if isinstance(summary, str) else ""
    if not text and error:
        text = f"{FAILURE_SUMMARY_PREFIX}: {error}"
    annotation = f"(Solved: {resolution})"
    return f"{text} {annotation}" if text else annotation


def normalize_result(raw: RawResult, error: Optional[str] = None) -> NormalizedResult:
    """Return a :class:`NormalizedResult` for an untrusted classification.

    Parameters
    ----------
    raw:
        Raw result, a decoded JSON mapping, or ``None`` after a total failure.
    error:
        Optional failure description substituted into the summary when the
        raw result carries no summary text.

    Returns
    -------
    NormalizedResult
        Record whose fields are always drawn from the fixed vocabulary.
    """

    resolution = normalize_resolution(_field(raw, "solved"))
    return NormalizedResult(
        sentiment=normalize_sentiment(_field(raw, "sentiment")),
        tags=normalize_tags(_field(raw, "tags")),
        resolution=resolution,
        summary=build_summary(_field(raw, "summary"), resolution, error),
    )


def to_output_row(key: str, result: NormalizedResult) -> OutputRow:
    """Project a normalized result onto the durable output row shape."""

    return OutputRow(
        key=key,
        sentiment=result.sentiment.capitalize(),
        tags=",".join(result.tags),
        summary=result.summary,
    )
