"""Resumable, chunked batch engine for transcript classification.

One call to :func:`run_chunk` is one invocation: it takes the run lock,
works out which conversation keys still lack an output row, classifies a
bounded slice of them (writing each row as soon as it is produced), advances
the checkpoint, and returns a :class:`Continuation` telling the caller
whether another invocation is needed. When the context carries a trigger
scheduler, that continuation is registered before the lock is released, so
the checkpoint and the pending trigger always change together.

The output store, not the checkpoint, decides what is done: a key with an
existing output row is never classified again, even after the checkpoint is
reset.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

from tqdm import tqdm

from triage.checkpoint import (
    RunCheckpoint,
    clear_checkpoint,
    load_checkpoint,
    record_last_error,
    save_checkpoint,
)
from triage.classify import ClassificationAttempt, TranscriptClassifier
from triage.config import TriageError, TriageSettings, resolve_api_key
from triage.locking import RunLock, RunLockTimeout
from triage.normalize import normalize_result, to_output_row
from triage.rollup import RollupReport, rebuild_rollups
from triage.scheduler import TriggerScheduler
from triage.source import ConversationRecord, read_conversations
from triage.store import OutputStore, PropertyStore

Classifier = Callable[[str], ClassificationAttempt]


class ChunkStatus(str, Enum):
    """Outcome category of a single engine invocation."""

    LOCKED = "locked"
    FAILED = "failed"
    PROGRESSED = "progressed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Continuation:
    """Whether the caller should schedule another invocation, and when."""

    more_work: bool
    resume_after: Optional[float] = None

    @classmethod
    def done(cls) -> "Continuation":
        return cls(more_work=False)

    @classmethod
    def resume(cls, seconds: float) -> "Continuation":
        return cls(more_work=True, resume_after=float(seconds))


@dataclass(frozen=True)
class ChunkResult:
    """Summary of one invocation returned to the command shell."""

    status: ChunkStatus
    processed_keys: tuple[str, ...] = ()
    continuation: Continuation = field(default_factory=Continuation.done)
    message: Optional[str] = None
    remaining: int = 0


@dataclass(frozen=True)
class ChunkPlan:
    """Keys selected for one chunk and the cursor after them."""

    indices: tuple[int, ...]
    next_offset: int
    remaining_after: int


@dataclass
class RunContext:
    """Explicit collaborators for an engine invocation.

    Parameters
    ----------
    settings:
        Workspace paths and run constants.
    output_store:
        Append-only store of classified rows.
    properties:
        Property store holding the checkpoint and diagnostics.
    classifier_factory:
        Returns the per-transcript classifier. Called once per invocation
        before any batch work, so a missing credential fails early.
    source_reader:
        Loads grouped conversations from the source path.
    sleep:
        Pause function used for pacing between keys.
    scheduler:
        Registry for the deferred follow-up invocation. When set, the
        continuation of every run invocation is registered (or pending
        triggers cancelled) before the run lock is released.
    """

    settings: TriageSettings
    output_store: OutputStore
    properties: PropertyStore
    classifier_factory: Callable[[], Classifier]
    source_reader: Callable[[Path], List[ConversationRecord]] = read_conversations
    sleep: Callable[[float], None] = time.sleep
    scheduler: Optional[TriggerScheduler] = None

    @classmethod
    def from_settings(
        cls,
        settings: TriageSettings,
        *,
        classifier_factory: Optional[Callable[[], Classifier]] = None,
    ) -> "RunContext":
        properties = PropertyStore(settings.properties_path)

        def _default_factory() -> Classifier:
            return TranscriptClassifier(
                model=settings.model, api_key=resolve_api_key(properties)
            )

        return cls(
            settings=settings,
            output_store=OutputStore(settings.output_path),
            properties=properties,
            classifier_factory=classifier_factory or _default_factory,
            scheduler=TriggerScheduler(properties),
        )

    def run_lock(self) -> RunLock:
        return RunLock(
            self.settings.lock_path, timeout=self.settings.lock_timeout_seconds
        )

    def rebuild_rollups(self) -> RollupReport:
        return rebuild_rollups(
            self.output_store,
            self.settings.tag_rollup_path,
            self.settings.query_rollup_path,
        )


def plan_chunk(
    keys: Sequence[str],
    done: Set[str],
    offset: int,
    chunk_size: int,
) -> ChunkPlan:
    """Select up to ``chunk_size`` unfinished keys at or after ``offset``.

    ``keys`` is the grouped key list in first-occurrence order. When no
    unfinished key lies at or after the cursor but earlier ones exist (the
    source changed underneath the run), selection restarts from the top.

    Returns
    -------
    ChunkPlan
        Selected indices, the cursor just past the last selected key, and
        the number of unfinished keys left after this slice.
    """

    pending = [index for index, key in enumerate(keys) if key not in done]
    if not pending:
        return ChunkPlan(indices=(), next_offset=offset, remaining_after=0)
    ahead = [index for index in pending if index >= offset]
    if not ahead:
        logging.info(
            "Found %s unfinished keys before checkpoint offset %s; rescanning",
            len(pending),
            offset,
        )
        ahead = pending
    selected = tuple(ahead[: max(1, int(chunk_size))])
    return ChunkPlan(
        indices=selected,
        next_offset=selected[-1] + 1,
        remaining_after=len(pending) - len(selected),
    )


def _process_records(
    context: RunContext,
    classifier: Classifier,
    records: Sequence[ConversationRecord],
    lock: Optional[RunLock],
) -> List[str]:
    """Classify ``records`` one at a time, appending each row immediately."""

    written: List[str] = []
    pace = context.settings.pace_seconds
    if records:
        context.output_store.ensure_header()
    progress = tqdm(
        records,
        desc="Classifying",
        unit="conversation",
        leave=False,
        disable=not sys.stderr.isatty(),
    )
    for position, record in enumerate(progress):
        attempt = classifier(record.transcript)
        if attempt.failed:
            logging.error(
                "Failed to classify %s after %s attempts: %s",
                record.key,
                attempt.attempts,
                attempt.error,
            )
            record_last_error(context.properties, f"{record.key}: {attempt.error}")
        normalized = normalize_result(attempt.result, attempt.error)
        context.output_store.append_row(to_output_row(record.key, normalized))
        written.append(record.key)
        if lock is not None:
            lock.refresh()
        if pace > 0 and position < len(records) - 1:
            context.sleep(pace)
    return written


def _abort_run(context: RunContext, err: TriageError) -> ChunkResult:
    """Clear the checkpoint after an unrecoverable invocation error."""

    logging.error("Aborting run: %s", err)
    clear_checkpoint(context.properties)
    record_last_error(context.properties, str(err))
    return ChunkResult(status=ChunkStatus.FAILED, message=str(err))


def _finish_run(context: RunContext, written: Sequence[str]) -> ChunkResult:
    context.rebuild_rollups()
    clear_checkpoint(context.properties)
    logging.info("Run complete; no unfinished keys remain")
    return ChunkResult(
        status=ChunkStatus.COMPLETED,
        processed_keys=tuple(written),
        continuation=Continuation.done(),
        message="All conversations are classified.",
    )


def _run_chunk_locked(context: RunContext, lock: Optional[RunLock]) -> ChunkResult:
    try:
        classifier = context.classifier_factory()
        records = context.source_reader(context.settings.input_path)
    except TriageError as err:
        return _abort_run(context, err)

    checkpoint = load_checkpoint(context.properties) or RunCheckpoint.fresh()
    if not checkpoint.initialized:
        checkpoint = replace(checkpoint, total=len(records))

    done = context.output_store.read_keys()
    plan = plan_chunk(
        [record.key for record in records],
        done,
        checkpoint.offset,
        context.settings.chunk_size,
    )
    if not plan.indices:
        return _finish_run(context, ())

    written = _process_records(
        context, classifier, [records[index] for index in plan.indices], lock
    )
    checkpoint = checkpoint.advance(plan.next_offset, len(written))
    save_checkpoint(context.properties, checkpoint)
    logging.info(
        "Chunk wrote %s rows (%s/%s processed this run, %s remaining)",
        len(written),
        checkpoint.processed_count,
        checkpoint.total,
        plan.remaining_after,
    )

    if plan.remaining_after > 0:
        return ChunkResult(
            status=ChunkStatus.PROGRESSED,
            processed_keys=tuple(written),
            continuation=Continuation.resume(context.settings.resume_after_seconds),
            message=f"{plan.remaining_after} conversations remain.",
            remaining=plan.remaining_after,
        )
    return _finish_run(context, written)


def apply_continuation(scheduler: TriggerScheduler, result: ChunkResult) -> None:
    """Register or cancel the deferred invocation requested by ``result``."""

    if result.status == ChunkStatus.LOCKED:
        return
    if result.continuation.more_work:
        scheduler.schedule_once(result.continuation.resume_after or 0.0)
    else:
        scheduler.cancel_all()


def _with_run_lock(
    context: RunContext,
    body: Callable[[RunLock], ChunkResult],
    *,
    reschedule: bool = True,
) -> ChunkResult:
    """Run ``body`` while holding the run lock, skipping when it is busy.

    With ``reschedule`` the result's continuation is applied to the
    context scheduler while the lock is still held.
    """

    lock = context.run_lock()
    try:
        lock.acquire()
    except RunLockTimeout as err:
        logging.info("Skipping invocation: %s", err)
        return ChunkResult(status=ChunkStatus.LOCKED, message=str(err))
    try:
        result = body(lock)
        if reschedule and context.scheduler is not None:
            apply_continuation(context.scheduler, result)
        return result
    finally:
        lock.release()


def run_chunk(context: RunContext) -> ChunkResult:
    """Process one chunk of the active run, initialising a checkpoint if needed.

    Parameters
    ----------
    context:
        Collaborators and settings for this invocation.

    Returns
    -------
    ChunkResult
        ``LOCKED`` when another invocation holds the lock, ``FAILED`` after a
        configuration or source error (checkpoint cleared), ``PROGRESSED``
        with a resume continuation when keys remain, or ``COMPLETED`` once
        rollups are rebuilt and the checkpoint is cleared.
    """

    return _with_run_lock(context, lambda lock: _run_chunk_locked(context, lock))


def start_run(context: RunContext) -> ChunkResult:
    """Replace any existing checkpoint with a fresh one and run the first chunk."""

    def _start(lock: RunLock) -> ChunkResult:
        clear_checkpoint(context.properties)
        save_checkpoint(context.properties, RunCheckpoint.fresh())
        return _run_chunk_locked(context, lock)

    return _with_run_lock(context, _start)


def resume_run(context: RunContext) -> ChunkResult:
    """Run one chunk against the existing checkpoint."""

    if load_checkpoint(context.properties) is None:
        logging.info("No active run found; starting from the first unfinished key")
    return run_chunk(context)


def abandon_run(context: RunContext) -> ChunkResult:
    """Clear the checkpoint so the engine returns to idle."""

    def _abandon(_lock: RunLock) -> ChunkResult:
        clear_checkpoint(context.properties)
        return ChunkResult(status=ChunkStatus.COMPLETED, message="Run abandoned.")

    return _with_run_lock(context, _abandon)


def analyze_keys(
    context: RunContext,
    keys: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> ChunkResult:
    """Classify an ad-hoc subset of unfinished keys immediately.

    The checkpoint is neither read nor written. Keys that already have an
    output row are skipped, so the exactly-once guarantee still holds.

    Parameters
    ----------
    context:
        Collaborators and settings for this invocation.
    keys:
        Optional explicit keys to analyze; unknown keys are reported and
        ignored.
    limit:
        Optional cap on the number of keys analyzed.
    """

    def _analyze(lock: RunLock) -> ChunkResult:
        try:
            classifier = context.classifier_factory()
            records = context.source_reader(context.settings.input_path)
        except TriageError as err:
            logging.error("Analysis aborted: %s", err)
            record_last_error(context.properties, str(err))
            return ChunkResult(status=ChunkStatus.FAILED, message=str(err))

        done = context.output_store.read_keys()
        candidates = [record for record in records if record.key not in done]
        if keys:
            wanted = {str(key).strip() for key in keys}
            known = {record.key for record in records}
            for missing in sorted(wanted - known):
                logging.warning("Key %s not found in source", missing)
            candidates = [record for record in candidates if record.key in wanted]
        if limit is not None and limit > 0:
            candidates = candidates[:limit]
        if not candidates:
            return ChunkResult(
                status=ChunkStatus.COMPLETED,
                message="No unfinished conversations matched the request.",
            )

        written = _process_records(context, classifier, candidates, lock)
        context.rebuild_rollups()
        return ChunkResult(
            status=ChunkStatus.PROGRESSED,
            processed_keys=tuple(written),
            message=f"Analyzed {len(written)} conversations.",
        )

    return _with_run_lock(context, _analyze, reschedule=False)
