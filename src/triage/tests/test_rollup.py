"""
Tests for the tag and query-subcategory rollup reports.
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from triage.rollup import (
    QUERY_ROLLUP_COLUMNS,
    TAG_ROLLUP_COLUMNS,
    build_query_subcategory_rollup,
    build_tag_rollup,
    parse_row_tags,
    query_subcategories,
    rebuild_rollups,
)
from triage.store import OutputRow, OutputStore
from triage.taxonomy import APPROVED_TAGS

ROWS = [
    OutputRow("A", "Positive", "query,billing_issue", "a (Solved: yes)"),
    OutputRow("B", "Negative", "query", "b (Solved: no)"),
]


def test_query_subcategory_rollup_fans_out_and_defaults_to_general() -> None:
    """Topical co-tags become buckets; bare query rows land in general."""

    records = build_query_subcategory_rollup(ROWS)

    assert [record.subcategory for record in records] == [
        "query:billing_issue",
        "query:general",
    ]
    billing, general = records
    assert (billing.channel_count, billing.positive_count, billing.negative_count) == (1, 1, 0)
    assert (general.channel_count, general.positive_count, general.negative_count) == (1, 0, 1)


def test_general_bucket_sorts_last() -> None:
    """Alphabetical order applies to every bucket except general."""

    rows = [
        OutputRow("A", "Neutral", "query", "s"),
        OutputRow("B", "Neutral", "query,shipping_delay,account_access", "s"),
        OutputRow("C", "Positive", "query,pricing", "s"),
    ]

    subcategories = [record.subcategory for record in build_query_subcategory_rollup(rows)]

    assert subcategories == [
        "query:account_access",
        "query:pricing",
        "query:shipping_delay",
        "query:general",
    ]


def test_tag_rollup_lists_every_taxonomy_tag() -> None:
    """Every tag appears in taxonomy order, with zeros where unused."""

    records = build_tag_rollup(ROWS)

    assert [record.tag for record in records] == list(APPROVED_TAGS)
    by_tag = {record.tag: record for record in records}
    assert by_tag["query"].channel_count == 2
    assert by_tag["query"].positive_count == 1
    assert by_tag["query"].negative_count == 1
    assert by_tag["billing_issue"].channel_count == 1
    assert by_tag["praise"].channel_count == 0


def test_duplicate_key_rows_count_once_per_channel() -> None:
    """Channel counts are distinct keys; sentiment counts are occurrences."""

    rows = [
        OutputRow("A", "Positive", "complaint", "s"),
        OutputRow("A", "Negative", "complaint", "s"),
    ]

    complaint = {record.tag: record for record in build_tag_rollup(rows)}["complaint"]

    assert complaint.channel_count == 1
    assert complaint.positive_count == 1
    assert complaint.negative_count == 1


def test_parse_row_tags_ignores_unknown_and_repeated_tags() -> None:
    assert parse_row_tags(" Query , not_a_tag, query,Billing Issue") == (
        "query",
        "billing_issue",
    )
    assert parse_row_tags("") == ()


def test_query_subcategories_require_query_tag() -> None:
    assert query_subcategories(("billing_issue",)) == ()
    assert query_subcategories(("query", "praise")) == ("query:general",)


def test_rebuild_rollups_rewrites_report_files(tmp_path: Path) -> None:
    """Rebuilding twice should produce the same reports, not accumulate."""

    store = OutputStore(tmp_path / "classified.csv")
    for row in ROWS:
        store.append_row(row)
    tag_path = tmp_path / "tag_rollup.csv"
    query_path = tmp_path / "query_rollup.csv"

    rebuild_rollups(store, tag_path, query_path)
    report = rebuild_rollups(store, tag_path, query_path)

    tags = pd.read_csv(tag_path)
    queries = pd.read_csv(query_path)
    assert list(tags.columns) == list(TAG_ROLLUP_COLUMNS)
    assert len(tags) == len(APPROVED_TAGS)
    assert list(queries.columns) == list(QUERY_ROLLUP_COLUMNS)
    assert queries["subcategory"].tolist() == ["query:billing_issue", "query:general"]
    assert len(report.queries) == 2
