"""Run checkpoint and diagnostic slots kept in the property store."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Mapping, Optional

from triage.store import PropertyStore

CHECKPOINT_PROPERTY = "checkpoint"
LAST_ERROR_PROPERTY = "last_error"

UNINITIALIZED_TOTAL = -1


def _now_iso() -> str:
    """Return the current timestamp in ISO 8601 format."""

    return datetime.now().isoformat()


@dataclass(frozen=True)
class RunCheckpoint:
    """Durable cursor describing progress of the single active run.

    Parameters
    ----------
    offset:
        Cursor into the grouped key list; keys before it have been consumed.
    total:
        Distinct key count fixed when the run first reads the source, or
        ``-1`` until then.
    processed_count:
        Number of output rows written by this run.
    started_at:
        ISO timestamp of run creation.
    """

    offset: int = 0
    total: int = UNINITIALIZED_TOTAL
    processed_count: int = 0
    started_at: str = ""

    @classmethod
    def fresh(cls) -> "RunCheckpoint":
        return cls(started_at=_now_iso())

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> "RunCheckpoint":
        def _int(name: str, default: int) -> int:
            value = payload.get(name, default)
            try:
                return int(value)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                return default

        return cls(
            offset=max(0, _int("offset", 0)),
            total=_int("total", UNINITIALIZED_TOTAL),
            processed_count=max(0, _int("processed_count", 0)),
            started_at=str(payload.get("started_at") or ""),
        )

    @property
    def initialized(self) -> bool:
        return self.total != UNINITIALIZED_TOTAL

    def advance(self, offset: int, written: int) -> "RunCheckpoint":
        return replace(
            self, offset=offset, processed_count=self.processed_count + written
        )


def load_checkpoint(properties: PropertyStore) -> Optional[RunCheckpoint]:
    """Return the stored checkpoint, or ``None`` when no run is active."""

    payload = properties.get(CHECKPOINT_PROPERTY)
    if payload is None:
        return None
    if not isinstance(payload, dict):
        logging.warning("Discarding malformed checkpoint: %r", payload)
        return None
    return RunCheckpoint.from_mapping(payload)


def save_checkpoint(properties: PropertyStore, checkpoint: RunCheckpoint) -> None:
    properties.set(CHECKPOINT_PROPERTY, asdict(checkpoint))


def clear_checkpoint(properties: PropertyStore) -> None:
    properties.delete(CHECKPOINT_PROPERTY)


def record_last_error(properties: PropertyStore, message: str) -> None:
    """Store ``message`` with a timestamp in the diagnostic slot."""

    properties.set(
        LAST_ERROR_PROPERTY, {"message": str(message), "recorded_at": _now_iso()}
    )


def read_last_error(properties: PropertyStore) -> Optional[dict]:
    payload = properties.get(LAST_ERROR_PROPERTY)
    return payload if isinstance(payload, dict) else None
