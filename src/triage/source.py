"""Read raw support messages and group them into conversations.

The source is a CSV export with a header row. The key and text columns are
located through alias lists so exports from different tools work without
renaming columns. Grouping is recomputed from the full source on every
invocation; it is never checkpointed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from triage.config import TriageError

KEY_ALIASES: tuple[str, ...] = (
    "conversation_id",
    "conversation id",
    "conversation",
    "channel_id",
    "channel",
    "chat_id",
    "ticket_id",
    "thread_id",
    "key",
    "id",
)
TEXT_ALIASES: tuple[str, ...] = (
    "text",
    "message",
    "message_text",
    "message body",
    "body",
    "chat body",
    "content",
    "transcript",
)

MESSAGE_SEPARATOR = "\n---\n"
MAX_TRANSCRIPT_CHARS = 12000

_NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]+")


class SourceError(TriageError):
    """Raised when the source table is missing, empty, or unusable."""


@dataclass(frozen=True)
class SourceTable:
    """Header row and data rows of the source, all cells as strings."""

    headers: List[str]
    rows: List[List[str]]


@dataclass(frozen=True)
class ColumnResolution:
    """Indices of the resolved key and text columns."""

    key_index: int
    text_index: int
    key_header: str
    text_header: str


@dataclass(frozen=True)
class ConversationRecord:
    """All message text for one conversation key, joined and truncated."""

    key: str
    transcript: str


def _alnum(value: str) -> str:
    return _NON_ALNUM_PATTERN.sub("", str(value).lower())


def find_column(headers: Sequence[str], aliases: Sequence[str]) -> Optional[int]:
    """Return the index of the first header matching one of ``aliases``.

    Exact case-insensitive matches are tried across every alias before the
    alphanumeric-normalized comparison.
    """

    lowered = [str(header).strip().lower() for header in headers]
    for alias in aliases:
        if alias in lowered:
            return lowered.index(alias)
    normalized = [_alnum(header) for header in headers]
    for alias in aliases:
        target = _alnum(alias)
        if target and target in normalized:
            return normalized.index(target)
    return None


def resolve_columns(headers: Sequence[str]) -> ColumnResolution:
    """Resolve the key and text columns from ``headers``.

    Raises
    ------
    SourceError
        If either column cannot be matched against its alias list.
    """

    key_index = find_column(headers, KEY_ALIASES)
    text_index = find_column(headers, TEXT_ALIASES)
    missing: List[str] = []
    if key_index is None:
        missing.append("conversation key (" + ", ".join(KEY_ALIASES) + ")")
    if text_index is None:
        missing.append("message text (" + ", ".join(TEXT_ALIASES) + ")")
    if missing:
        raise SourceError(
            "Could not find required column(s): "
            + "; ".join(missing)
            + ". Found headers: "
            + ", ".join(str(header) for header in headers)
        )
    assert key_index is not None and text_index is not None
    return ColumnResolution(
        key_index=key_index,
        text_index=text_index,
        key_header=str(headers[key_index]),
        text_header=str(headers[text_index]),
    )


def load_source_table(path: Path) -> SourceTable:
    """Read the CSV at ``path`` with every cell kept as a string.

    Raises
    ------
    SourceError
        If the file is missing or has no header row.
    """

    if not path.exists():
        raise SourceError(f"Source file not found: {path}")
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError as err:
        raise SourceError(f"Source file is empty: {path}") from err
    except (pd.errors.ParserError, UnicodeDecodeError) as err:
        raise SourceError(f"Failed to parse source file {path}: {err}") from err
    headers = [str(column) for column in frame.columns]
    rows = frame.values.tolist()
    return SourceTable(headers=headers, rows=[[str(cell) for cell in row] for row in rows])


def group_conversations(
    table: SourceTable,
    columns: ColumnResolution,
    *,
    max_chars: int = MAX_TRANSCRIPT_CHARS,
) -> List[ConversationRecord]:
    """Group data rows by key in first-occurrence order.

    Rows whose key or text is blank after trimming are skipped. Fragments
    for the same key are joined in row order with :data:`MESSAGE_SEPARATOR`
    and the joined text is truncated to ``max_chars``.
    """

    fragments: Dict[str, List[str]] = {}
    skipped = 0
    width = max(columns.key_index, columns.text_index) + 1
    for row in table.rows:
        if len(row) < width:
            skipped += 1
            continue
        key = row[columns.key_index].strip()
        text = row[columns.text_index].strip()
        if not key or not text:
            skipped += 1
            continue
        fragments.setdefault(key, []).append(text)
    if skipped:
        logging.debug("Skipped %s source rows with a blank key or text", skipped)
    return [
        ConversationRecord(key=key, transcript=MESSAGE_SEPARATOR.join(parts)[:max_chars])
        for key, parts in fragments.items()
    ]


def read_conversations(path: Path) -> List[ConversationRecord]:
    """Load, resolve, and group the source at ``path``.

    Raises
    ------
    SourceError
        If the source is unusable or contains no usable rows.
    """

    table = load_source_table(path)
    if not table.rows:
        raise SourceError(f"Source file has no data rows: {path}")
    columns = resolve_columns(table.headers)
    records = group_conversations(table, columns)
    if not records:
        raise SourceError(
            f"No rows in {path} have both a '{columns.key_header}' and a "
            f"'{columns.text_header}' value."
        )
    return records
