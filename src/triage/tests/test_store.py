"""
Tests for the output store, report writer, and property store.
"""

from __future__ import annotations

import csv
import threading
from pathlib import Path

import pandas as pd
import pytest

from triage.checkpoint import RunCheckpoint, load_checkpoint, save_checkpoint
from triage.locking import RunLock, RunLockTimeout
from triage.scheduler import TriggerScheduler
from triage.store import (
    OUTPUT_HEADER,
    OutputRow,
    OutputStore,
    PropertyStore,
    write_report,
)


def _read_csv_rows(path: Path) -> list[list[str]]:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return list(csv.reader(handle))


def test_append_row_creates_header_and_round_trips_keys(tmp_path: Path) -> None:
    """Appending to a missing file should write the header first."""

    store = OutputStore(tmp_path / "out" / "classified.csv")
    store.append_row(OutputRow("A", "Positive", "query", "ok (Solved: yes)"))
    store.append_row(OutputRow("B", "Neutral", "other,billing_issue", "x, y"))

    raw = _read_csv_rows(store.path)
    assert tuple(raw[0]) == OUTPUT_HEADER
    assert raw[2] == ["B", "Neutral", "other,billing_issue", "x, y"]
    assert store.read_keys() == {"A", "B"}
    assert [row.key for row in store.read_rows()] == ["A", "B"]


def test_ensure_header_repairs_mismatched_header(tmp_path: Path) -> None:
    """A differently-cased header should be rewritten without losing rows."""

    path = tmp_path / "classified.csv"
    path.write_text(
        "Key,Sentiment,Tags,Summary\nA,Negative,complaint,s\n", encoding="utf-8"
    )

    store = OutputStore(path)
    store.ensure_header()

    raw = _read_csv_rows(path)
    assert tuple(raw[0]) == OUTPUT_HEADER
    assert raw[1] == ["A", "Negative", "complaint", "s"]


def test_ensure_header_prepends_header_to_headerless_file(tmp_path: Path) -> None:
    """Data rows without a header should keep their content under a new header."""

    path = tmp_path / "classified.csv"
    path.write_text("A,Positive,praise,s\n", encoding="utf-8")

    OutputStore(path).ensure_header()

    raw = _read_csv_rows(path)
    assert tuple(raw[0]) == OUTPUT_HEADER
    assert raw[1] == ["A", "Positive", "praise", "s"]


def test_read_keys_ignores_blank_keys_and_short_rows(tmp_path: Path) -> None:
    """Rows missing cells should be padded and blank keys skipped."""

    path = tmp_path / "classified.csv"
    path.write_text(
        "key,sentiment,tags,summary\n  A ,Positive\n,Neutral,other,s\n",
        encoding="utf-8",
    )

    store = OutputStore(path)

    assert store.read_keys() == {"A"}
    assert store.read_rows()[0].summary == ""


def test_missing_output_store_reads_empty(tmp_path: Path) -> None:
    store = OutputStore(tmp_path / "nothing.csv")

    assert store.read_rows() == []
    assert store.read_keys() == set()


def test_write_report_replaces_previous_content(tmp_path: Path) -> None:
    """Reports should be cleared and rewritten on every call."""

    path = tmp_path / "reports" / "tag_rollup.csv"
    write_report(path, ("tag", "channel_count"), [("query", 3), ("praise", 1)])
    write_report(path, ("tag", "channel_count"), [("other", 0)])

    frame = pd.read_csv(path)
    assert list(frame.columns) == ["tag", "channel_count"]
    assert frame.to_dict(orient="records") == [{"tag": "other", "channel_count": 0}]


def test_property_store_set_get_delete(tmp_path: Path) -> None:
    """Properties should persist across store instances."""

    path = tmp_path / "state" / "properties.json"
    store = PropertyStore(path)
    store.set("checkpoint", {"offset": 3})
    store.set("api_key", "sk-test")

    reopened = PropertyStore(path)
    assert reopened.get("checkpoint") == {"offset": 3}
    assert reopened.get("missing", "default") == "default"

    reopened.delete("checkpoint")
    reopened.delete("checkpoint")
    assert PropertyStore(path).as_dict() == {"api_key": "sk-test"}


def test_property_store_tolerates_corrupt_file(tmp_path: Path) -> None:
    """Unreadable JSON should read as an empty bag and be replaced on write."""

    path = tmp_path / "properties.json"
    path.write_text("{not json", encoding="utf-8")
    store = PropertyStore(path)

    assert store.as_dict() == {}
    store.set("k", 1)
    assert store.get("k") == 1


def test_append_row_checks_header_once(monkeypatch, tmp_path: Path) -> None:
    """Appends after the first should not re-read the whole file."""

    store = OutputStore(tmp_path / "classified.csv")
    store.ensure_header()
    reads: list[int] = []
    original = store._read_raw_rows

    def _counting_read():
        reads.append(1)
        return original()

    monkeypatch.setattr(store, "_read_raw_rows", _counting_read)

    for key in ("A", "B", "C"):
        store.append_row(OutputRow(key, "Neutral", "other", "s"))

    assert reads == []
    assert store.read_keys() == {"A", "B", "C"}


def test_append_row_rewrites_header_after_file_removed(tmp_path: Path) -> None:
    store = OutputStore(tmp_path / "classified.csv")
    store.append_row(OutputRow("A", "Neutral", "other", "s"))
    store.path.unlink()

    store.append_row(OutputRow("B", "Neutral", "other", "s"))

    raw = _read_csv_rows(store.path)
    assert tuple(raw[0]) == OUTPUT_HEADER
    assert [row[0] for row in raw[1:]] == ["B"]


def test_checkpoint_survives_trigger_written_through_other_store(
    tmp_path: Path,
) -> None:
    """Writers holding separate store instances should not drop each other's keys."""

    path = tmp_path / "properties.json"
    engine_side = PropertyStore(path)
    watcher_side = PropertyStore(path)
    scheduler = TriggerScheduler(watcher_side, clock=lambda: 100.0)
    scheduler.schedule_once(30)

    save_checkpoint(engine_side, RunCheckpoint(offset=4, total=9))
    scheduler.schedule_once(30)
    scheduler.cancel_all()

    checkpoint = load_checkpoint(PropertyStore(path))
    assert checkpoint is not None
    assert (checkpoint.offset, checkpoint.total) == (4, 9)
    assert scheduler.pending() == []


def test_concurrent_property_updates_keep_every_name(tmp_path: Path) -> None:
    path = tmp_path / "properties.json"

    def _writer(index: int) -> None:
        store = PropertyStore(path)
        for round_number in range(5):
            store.set(f"name-{index}", round_number)

    threads = [threading.Thread(target=_writer, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert PropertyStore(path).as_dict() == {f"name-{index}": 4 for index in range(4)}


def test_property_write_times_out_while_locked(tmp_path: Path) -> None:
    """A write should give up rather than bypass another writer's lock."""

    path = tmp_path / "properties.json"
    store = PropertyStore(path, lock_timeout=0)

    with RunLock(store.lock_path, timeout=0):
        with pytest.raises(RunLockTimeout):
            store.set("k", 1)
        assert store.get("k") is None

    store.set("k", 1)
    assert store.get("k") == 1
