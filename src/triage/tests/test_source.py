"""
Tests for source reading, header resolution, and conversation grouping.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from triage.source import (
    KEY_ALIASES,
    MESSAGE_SEPARATOR,
    TEXT_ALIASES,
    SourceError,
    SourceTable,
    find_column,
    group_conversations,
    load_source_table,
    read_conversations,
    resolve_columns,
)


def _write_csv(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_resolve_columns_handles_case_and_punctuation() -> None:
    """Mixed-case and punctuated headers should resolve through aliases."""

    columns = resolve_columns(["Conversation_ID", "Chat Body"])

    assert columns.key_index == 0
    assert columns.text_index == 1

    punctuated = resolve_columns(["Sent At", "Conversation-ID", "chat-body!"])
    assert punctuated.key_header == "Conversation-ID"
    assert punctuated.text_header == "chat-body!"


def test_exact_match_is_preferred_over_normalized_match() -> None:
    """An exact alias anywhere should win over a normalized earlier alias."""

    headers = ["Conversation-ID", "channel"]

    assert find_column(headers, KEY_ALIASES) == 1


def test_resolve_columns_reports_missing_columns() -> None:
    """Unresolvable headers should raise a descriptive SourceError."""

    with pytest.raises(SourceError) as excinfo:
        resolve_columns(["Timestamp", "Author"])

    message = str(excinfo.value)
    assert "conversation key" in message
    assert "message text" in message
    assert "Timestamp" in message


def test_find_column_returns_none_without_match() -> None:
    """find_column should return None when no alias matches."""

    assert find_column(["foo", "bar"], TEXT_ALIASES) is None


def test_group_conversations_joins_in_row_order_and_skips_blanks() -> None:
    """Fragments should be grouped by key in first-occurrence order."""

    table = SourceTable(
        headers=["channel", "text"],
        rows=[
            ["b", "first b"],
            ["a", "first a"],
            ["b", "  "],
            ["", "orphan"],
            ["b", "second b"],
        ],
    )

    records = group_conversations(table, resolve_columns(table.headers))

    assert [record.key for record in records] == ["b", "a"]
    assert records[0].transcript == f"first b{MESSAGE_SEPARATOR}second b"
    assert records[1].transcript == "first a"


def test_group_conversations_truncates_transcripts() -> None:
    """Joined text should be capped at the requested length."""

    table = SourceTable(headers=["key", "message"], rows=[["k", "abcdef"], ["k", "ghi"]])

    records = group_conversations(table, resolve_columns(table.headers), max_chars=5)

    assert records[0].transcript == "abcde"


def test_load_source_table_keeps_cells_as_strings(tmp_path: Path) -> None:
    """Numeric-looking keys and blank cells should survive as strings."""

    path = _write_csv(tmp_path / "src.csv", "Channel ID,Message\n007,hello\n008,\n")

    table = load_source_table(path)

    assert table.headers == ["Channel ID", "Message"]
    assert table.rows == [["007", "hello"], ["008", ""]]


def test_read_conversations_errors(tmp_path: Path) -> None:
    """Missing, empty, and unusable sources should raise SourceError."""

    with pytest.raises(SourceError):
        read_conversations(tmp_path / "missing.csv")

    with pytest.raises(SourceError):
        read_conversations(_write_csv(tmp_path / "empty.csv", ""))

    with pytest.raises(SourceError):
        read_conversations(_write_csv(tmp_path / "header_only.csv", "key,text\n"))

    with pytest.raises(SourceError):
        read_conversations(_write_csv(tmp_path / "blank.csv", "key,text\n,hi\nk,\n"))


def test_read_conversations_groups_rows(tmp_path: Path) -> None:
    """read_conversations should return grouped records from a CSV file."""

    path = _write_csv(
        tmp_path / "src.csv",
        "conversation_id,text\nA,hi\nB,hello\nA,bye\n",
    )

    records = read_conversations(path)

    assert [record.key for record in records] == ["A", "B"]
    assert records[0].transcript == f"hi{MESSAGE_SEPARATOR}bye"
