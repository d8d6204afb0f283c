"""File-backed stores for classification outputs, reports, and run properties.

The output store is an append-only CSV whose set of keys defines which
conversations are already done. Reports are rewritten from scratch on every
build. The property store is a small JSON bag that holds the checkpoint,
diagnostics, the pending trigger, and the API credential.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import astuple, dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Mapping, Optional, Sequence, Set

import pandas as pd

from triage.locking import RunLock

OUTPUT_HEADER: tuple[str, ...] = ("key", "sentiment", "tags", "summary")

PROPERTY_LOCK_TIMEOUT_SECONDS = 10.0
PROPERTY_LOCK_POLL_SECONDS = 0.01
PROPERTY_LOCK_STALE_SECONDS = 60.0


@dataclass(frozen=True)
class OutputRow:
    """Durable classification record for one conversation key."""

    key: str
    sentiment: str
    tags: str
    summary: str


def _normalize_header_cell(value: str) -> str:
    return str(value).strip().lower()


class OutputStore:
    """Append-only CSV of :class:`OutputRow` records.

    Parameters
    ----------
    path:
        CSV file that accumulates one row per classified key.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._header_verified = False

    def _read_raw_rows(self) -> List[List[str]]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8", newline="") as handle:
            return [row for row in csv.reader(handle) if any(cell.strip() for cell in row)]

    def ensure_header(self) -> None:
        """Create the file with a header row, or repair a missing/mismatched one."""

        rows = self._read_raw_rows()
        if rows and tuple(rows[0]) == OUTPUT_HEADER:
            self._header_verified = True
            return
        if rows and tuple(_normalize_header_cell(cell) for cell in rows[0][:4]) == OUTPUT_HEADER:
            body = rows[1:]
        else:
            body = rows
        if rows:
            logging.warning("Rewriting header row of output store %s", self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(OUTPUT_HEADER)
            writer.writerows(body)
        os.replace(tmp_path, self.path)
        self._header_verified = True

    def append_row(self, row: OutputRow) -> None:
        """Append ``row`` and force it to disk before returning.

        The header is checked on the first append only, or again if the file
        has been removed since.
        """

        if not self._header_verified or not self.path.exists():
            self.ensure_header()
        with self.path.open("a", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerow(astuple(row))
            handle.flush()
            os.fsync(handle.fileno())

    def iter_rows(self) -> Iterator[OutputRow]:
        """Yield stored rows in append order, skipping the header."""

        rows = self._read_raw_rows()
        if rows and tuple(_normalize_header_cell(cell) for cell in rows[0][:4]) == OUTPUT_HEADER:
            rows = rows[1:]
        for raw in rows:
            padded = (list(raw) + [""] * len(OUTPUT_HEADER))[: len(OUTPUT_HEADER)]
            yield OutputRow(*padded)

    def read_rows(self) -> List[OutputRow]:
        return list(self.iter_rows())

    def read_keys(self) -> Set[str]:
        """Return the set of keys that already have an output row."""

        return {row.key.strip() for row in self.iter_rows() if row.key.strip()}


def write_report(
    path: Path,
    columns: Sequence[str],
    records: Sequence[Sequence[object]],
) -> None:
    """Clear ``path`` and rewrite it with ``columns`` and ``records``.

    Parameters
    ----------
    path:
        Destination CSV path. Any previous content is discarded.
    columns:
        Header row for the report.
    records:
        Row tuples in the order they should appear.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame([list(record) for record in records], columns=list(columns))
    frame.to_csv(path, index=False)


class PropertyStore:
    """Persistent key-value bag stored as a single JSON object.

    Every change is a read-modify-write of the whole file performed under a
    short-lived lock beside it, so concurrent processes updating different
    names never overwrite each other's values. Writes replace the file
    atomically so a crash never leaves a partially written bag behind.

    Parameters
    ----------
    path:
        JSON file holding the bag.
    lock_timeout:
        Maximum seconds to wait for another writer to finish.
    """

    def __init__(
        self, path: Path, *, lock_timeout: float = PROPERTY_LOCK_TIMEOUT_SECONDS
    ) -> None:
        self.path = Path(path)
        self.lock_timeout = float(lock_timeout)

    @property
    def lock_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".lock")

    def _write_lock(self) -> RunLock:
        return RunLock(
            self.lock_path,
            timeout=self.lock_timeout,
            poll_interval=PROPERTY_LOCK_POLL_SECONDS,
            stale_after=PROPERTY_LOCK_STALE_SECONDS,
        )

    def as_dict(self) -> dict[str, object]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (json.JSONDecodeError, ValueError) as err:
            logging.warning("Ignoring unreadable property store %s: %s", self.path, err)
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def _write(self, payload: Mapping[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(dict(payload), handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, name: str, default: Optional[object] = None) -> Optional[object]:
        return self.as_dict().get(name, default)

    def update(
        self, name: str, change: Callable[[Optional[object]], Optional[object]]
    ) -> Optional[object]:
        """Atomically replace the value under ``name`` with ``change(current)``.

        ``change`` receives the current value (or ``None``) read while the
        write lock is held. Returning ``None`` removes the name.

        Returns
        -------
        Optional[object]
            The value that was stored, or ``None`` when the name was removed.

        Raises
        ------
        RunLockTimeout
            If another writer holds the lock for longer than ``lock_timeout``.
        """

        with self._write_lock():
            payload = self.as_dict()
            current = payload.get(name)
            updated = change(current)
            if updated is None:
                if name not in payload:
                    return None
                del payload[name]
            else:
                payload[name] = updated
            self._write(payload)
            return updated

    def set(self, name: str, value: object) -> None:
        self.update(name, lambda _current: value)

    def delete(self, name: str) -> None:
        self.update(name, lambda _current: None)


__all__ = [
    "OUTPUT_HEADER",
    "OutputRow",
    "OutputStore",
    "PropertyStore",
    "write_report",
]
