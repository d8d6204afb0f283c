"""Aggregate tag and query-subcategory reports over the output store.

Both reports are pure reductions over the full set of output rows and are
rewritten from scratch on every build.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from triage.normalize import normalize_tag
from triage.store import OutputRow, OutputStore, write_report
from triage.taxonomy import (
    APPROVED_TAG_SET,
    APPROVED_TAGS,
    GENERAL_SUBCATEGORY,
    QUERY_SUBCATEGORY_PREFIX,
    QUERY_TAG,
    SENTIMENTS,
    TOPICAL_TAGS,
)

TAG_ROLLUP_COLUMNS = ("tag", "channel_count", "positive", "neutral", "negative")
QUERY_ROLLUP_COLUMNS = (
    "subcategory",
    "channel_count",
    "positive",
    "neutral",
    "negative",
)


@dataclass(frozen=True)
class TagRollupRecord:
    """Per-tag counts of distinct keys and sentiment occurrences."""

    tag: str
    channel_count: int
    positive_count: int
    neutral_count: int
    negative_count: int


@dataclass(frozen=True)
class QuerySubcategoryRecord:
    """Counts for one ``query:<topic>`` bucket."""

    subcategory: str
    channel_count: int
    positive_count: int
    neutral_count: int
    negative_count: int


@dataclass(frozen=True)
class RollupReport:
    tags: Tuple[TagRollupRecord, ...]
    queries: Tuple[QuerySubcategoryRecord, ...]


BucketCounts = Dict[str, Tuple[int, Counter]]


def parse_row_tags(tags: str) -> Tuple[str, ...]:
    """Return the distinct approved tags stored in a comma-joined tag cell."""

    seen: List[str] = []
    for part in str(tags or "").split(","):
        tag = normalize_tag(part)
        if tag in APPROVED_TAG_SET and tag not in seen:
            seen.append(tag)
    return tuple(seen)


def row_sentiment(row: OutputRow) -> Optional[str]:
    value = str(row.sentiment or "").strip().lower()
    return value if value in SENTIMENTS else None


def _reduce_buckets(entries: Iterable[Tuple[str, str, Optional[str]]]) -> BucketCounts:
    """Reduce ``(bucket, key, sentiment)`` entries to per-bucket counts."""

    keys: Dict[str, Set[str]] = {}
    sentiments: Dict[str, Counter] = {}
    for bucket, key, sentiment in entries:
        keys.setdefault(bucket, set()).add(key)
        counter = sentiments.setdefault(bucket, Counter())
        if sentiment is not None:
            counter[sentiment] += 1
    return {bucket: (len(keys[bucket]), sentiments[bucket]) for bucket in keys}


def _tag_entries(rows: Iterable[OutputRow]) -> Iterable[Tuple[str, str, Optional[str]]]:
    for row in rows:
        sentiment = row_sentiment(row)
        for tag in parse_row_tags(row.tags):
            yield tag, row.key, sentiment


def query_subcategories(tags: Sequence[str]) -> Tuple[str, ...]:
    """Return the ``query:*`` buckets for a row's tags, or ``()`` without ``query``."""

    if QUERY_TAG not in tags:
        return ()
    topical = [tag for tag in TOPICAL_TAGS if tag in tags]
    if not topical:
        return (QUERY_SUBCATEGORY_PREFIX + GENERAL_SUBCATEGORY,)
    return tuple(QUERY_SUBCATEGORY_PREFIX + tag for tag in topical)


def _query_entries(rows: Iterable[OutputRow]) -> Iterable[Tuple[str, str, Optional[str]]]:
    for row in rows:
        sentiment = row_sentiment(row)
        for bucket in query_subcategories(parse_row_tags(row.tags)):
            yield bucket, row.key, sentiment


def build_tag_rollup(rows: Iterable[OutputRow]) -> Tuple[TagRollupRecord, ...]:
    """Return one record per taxonomy tag, in taxonomy order.

    Tags with no occurrences are still listed with zero counts.
    """

    buckets = _reduce_buckets(_tag_entries(rows))
    records: List[TagRollupRecord] = []
    for tag in APPROVED_TAGS:
        channel_count, counter = buckets.get(tag, (0, Counter()))
        records.append(
            TagRollupRecord(
                tag=tag,
                channel_count=channel_count,
                positive_count=counter["positive"],
                neutral_count=counter["neutral"],
                negative_count=counter["negative"],
            )
        )
    return tuple(records)


def _subcategory_sort_key(subcategory: str) -> Tuple[int, str]:
    is_general = subcategory == QUERY_SUBCATEGORY_PREFIX + GENERAL_SUBCATEGORY
    return (1 if is_general else 0, subcategory)


def build_query_subcategory_rollup(
    rows: Iterable[OutputRow],
) -> Tuple[QuerySubcategoryRecord, ...]:
    """Return ``query:*`` bucket counts sorted alphabetically, general last."""

    buckets = _reduce_buckets(_query_entries(rows))
    return tuple(
        QuerySubcategoryRecord(
            subcategory=subcategory,
            channel_count=buckets[subcategory][0],
            positive_count=buckets[subcategory][1]["positive"],
            neutral_count=buckets[subcategory][1]["neutral"],
            negative_count=buckets[subcategory][1]["negative"],
        )
        for subcategory in sorted(buckets, key=_subcategory_sort_key)
    )


def build_rollups(rows: Sequence[OutputRow]) -> RollupReport:
    return RollupReport(
        tags=build_tag_rollup(rows),
        queries=build_query_subcategory_rollup(rows),
    )


def rebuild_rollups(
    output_store: OutputStore,
    tag_path: Path,
    query_path: Path,
) -> RollupReport:
    """Recompute both reports from ``output_store`` and rewrite their files.

    Parameters
    ----------
    output_store:
        Store whose rows are scanned in full.
    tag_path:
        Destination CSV for the tag rollup.
    query_path:
        Destination CSV for the query subcategory rollup.

    Returns
    -------
    RollupReport
        The report values that were written.
    """

    report = build_rollups(output_store.read_rows())
    write_report(
        tag_path,
        TAG_ROLLUP_COLUMNS,
        [
            (r.tag, r.channel_count, r.positive_count, r.neutral_count, r.negative_count)
            for r in report.tags
        ],
    )
    write_report(
        query_path,
        QUERY_ROLLUP_COLUMNS,
        [
            (
                r.subcategory,
                r.channel_count,
                r.positive_count,
                r.neutral_count,
                r.negative_count,
            )
            for r in report.queries
        ],
    )
    logging.info(
        "Rebuilt rollups: %s tags, %s query subcategories",
        len(report.tags),
        len(report.queries),
    )
    return report
