"""CLI entry points for resumable transcript triage.

Subcommands wrap the batch engine: ``start`` and ``resume`` run one chunk
(or keep going with ``--follow``) and register the next invocation with the
trigger scheduler; ``watch`` fires those registrations unattended. The
remaining subcommands are diagnostics and maintenance.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
import time
from dataclasses import asdict
from typing import Callable, Sequence

from llm_utils.client import DEFAULT_CHAT_MODEL, disable_litellm_logging
from triage.checkpoint import load_checkpoint, read_last_error
from triage.config import (
    API_KEY_PROPERTY,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PACE_SECONDS,
    DEFAULT_RESUME_AFTER_SECONDS,
    TriageSettings,
)
from triage.engine import (
    ChunkResult,
    ChunkStatus,
    RunContext,
    abandon_run,
    analyze_keys,
    resume_run,
    run_chunk,
    start_run,
)
from triage.locking import RunLockTimeout
from triage.scheduler import TriggerScheduler
from triage.source import (
    SourceError,
    group_conversations,
    load_source_table,
    resolve_columns,
)
from utils.cli import (
    Spinner,
    add_chunk_arguments,
    add_log_level_argument,
    add_model_argument,
    add_workspace_arguments,
)

DEFAULT_WATCH_POLL_SECONDS = 5.0

COMMANDS_NEEDING_INPUT = {"start", "resume", "analyze", "check-headers", "watch"}


def _build_parser() -> argparse.ArgumentParser:
    """Construct and return the CLI argument parser."""

    common = argparse.ArgumentParser(add_help=False)
    add_workspace_arguments(common, default_output_dir=DEFAULT_OUTPUT_DIR)
    add_model_argument(common, default_model=DEFAULT_CHAT_MODEL)
    add_chunk_arguments(
        common,
        default_chunk_size=DEFAULT_CHUNK_SIZE,
        default_pace=DEFAULT_PACE_SECONDS,
        default_resume_after=DEFAULT_RESUME_AFTER_SECONDS,
        default_lock_timeout=DEFAULT_LOCK_TIMEOUT_SECONDS,
    )
    add_log_level_argument(common)

    parser = argparse.ArgumentParser(
        prog="triage",
        description=(
            "Classify support conversations with an LLM in resumable chunks "
            "and build tag rollups."
        ),
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("start", "Start a fresh run from the first unfinished conversation."),
        ("resume", "Run the next chunk of the active run."),
    ):
        p_run = sub.add_parser(name, parents=[common], help=help_text)
        p_run.add_argument(
            "--follow",
            action="store_true",
            help=(
                "Keep processing chunks in this process instead of registering "
                "a deferred trigger."
            ),
        )

    p_analyze = sub.add_parser(
        "analyze",
        parents=[common],
        help="Classify a subset of unfinished conversations immediately.",
    )
    p_analyze.add_argument(
        "--key",
        action="append",
        dest="keys",
        default=None,
        help="Conversation key to analyze (repeatable).",
    )
    p_analyze.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Analyze at most this many unfinished conversations.",
    )

    sub.add_parser("rollup", parents=[common], help="Rebuild the rollup reports.")
    sub.add_parser(
        "check-headers",
        parents=[common],
        help="Show which source columns resolve to the key and text.",
    )
    sub.add_parser(
        "status",
        parents=[common],
        help="Show the checkpoint, last error, and pending triggers.",
    )
    sub.add_parser(
        "abandon",
        parents=[common],
        help="Clear the active run and any pending trigger.",
    )

    p_watch = sub.add_parser(
        "watch",
        parents=[common],
        help="Fire pending triggers as they come due (unattended).",
    )
    p_watch.add_argument(
        "--poll",
        type=float,
        default=DEFAULT_WATCH_POLL_SECONDS,
        help=f"Seconds between trigger checks (default: {DEFAULT_WATCH_POLL_SECONDS}).",
    )
    p_watch.add_argument(
        "--exit-when-idle",
        action="store_true",
        help="Exit once no trigger is pending.",
    )

    p_key = sub.add_parser(
        "set-key", parents=[common], help="Store the API key for this workspace."
    )
    p_key.add_argument(
        "--key",
        dest="api_key",
        default=None,
        help="API key value (prompted for when omitted).",
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""

    return _build_parser().parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> TriageSettings:
    """Return :class:`TriageSettings` built from parsed arguments."""

    return TriageSettings.for_paths(
        args.input if args.input is not None else "",
        args.output_dir,
        args.state_dir,
        model=args.model,
        chunk_size=max(1, int(args.chunk_size)),
        pace_seconds=max(0.0, float(args.pace)),
        resume_after_seconds=max(0.0, float(args.resume_after)),
        lock_timeout_seconds=max(0.0, float(args.lock_timeout)),
    )


def report_result(result: ChunkResult, *, unattended: bool = False) -> int:
    """Surface a chunk result and return a process status code.

    Unattended invocations only log; manual ones also print to the terminal.
    """

    if result.status == ChunkStatus.FAILED:
        logging.error("Invocation failed: %s", result.message)
        if not unattended:
            print(f"Error: {result.message}", file=sys.stderr)
        return 1
    if result.status == ChunkStatus.LOCKED:
        logging.info("Another invocation holds the run lock; nothing done.")
        if not unattended:
            print("Another run is in progress; try again shortly.")
        return 0
    if not unattended:
        print(
            f"Classified {len(result.processed_keys)} conversations. "
            f"{result.message or ''}".strip()
        )
    return 0


def follow_run(
    context: RunContext,
    result: ChunkResult,
    *,
    operation: Callable[[RunContext], ChunkResult] = run_chunk,
    sleep: Callable[[float], None] = time.sleep,
) -> ChunkResult:
    """Keep running chunks in-process until no continuation is requested.

    While the run lock stays busy the requested ``operation`` is retried, so
    a ``start`` that was skipped still resets the checkpoint. Once it has
    run, later chunks continue the run with :func:`run_chunk`.
    """

    while result.continuation.more_work or result.status == ChunkStatus.LOCKED:
        if result.status != ChunkStatus.LOCKED:
            operation = run_chunk
        report_result(result)
        delay = result.continuation.resume_after or context.settings.resume_after_seconds
        with Spinner(f"Waiting {delay:.0f}s before the next chunk"):
            sleep(delay)
        result = operation(context)
    return result


def run_chunked_command(args: argparse.Namespace, context: RunContext) -> int:
    """Handle ``start`` and ``resume``."""

    operation = start_run if args.cmd == "start" else resume_run
    result = operation(context)
    if getattr(args, "follow", False) and result.status != ChunkStatus.FAILED:
        result = follow_run(context, result, operation=operation)
    return report_result(result)


def run_watch(
    args: argparse.Namespace,
    context: RunContext,
    scheduler: TriggerScheduler,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Fire due triggers until interrupted (or idle with ``--exit-when-idle``).

    Chunks register their own follow-up trigger through the context
    scheduler. A trigger that fires while another invocation holds the run
    lock is registered again so it is not lost.
    """

    logging.info("Watching for scheduled chunks in %s", context.settings.state_dir)
    try:
        while True:
            trigger = scheduler.pop_due()
            if trigger is not None:
                logging.info("Firing trigger %s", trigger.trigger_id)
                result = run_chunk(context)
                report_result(result, unattended=True)
                if result.status == ChunkStatus.LOCKED:
                    scheduler.schedule_once(context.settings.resume_after_seconds)
                continue
            if args.exit_when_idle and not scheduler.pending():
                logging.info("No pending triggers; exiting.")
                return 0
            with Spinner("Waiting for the next scheduled chunk"):
                sleep(args.poll)
    except KeyboardInterrupt:
        logging.info("Watch interrupted.")
        return 0


def run_check_headers(context: RunContext) -> int:
    """Print the header resolution for the source without classifying."""

    try:
        table = load_source_table(context.settings.input_path)
        columns = resolve_columns(table.headers)
    except SourceError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    records = group_conversations(table, columns)
    print(f"Headers: {', '.join(table.headers)}")
    print(f"Key column:  '{columns.key_header}' (index {columns.key_index})")
    print(f"Text column: '{columns.text_header}' (index {columns.text_index})")
    print(f"Data rows: {len(table.rows)}; conversations: {len(records)}")
    return 0


def run_status(context: RunContext, scheduler: TriggerScheduler) -> int:
    """Print the checkpoint, last error, and pending triggers as JSON."""

    checkpoint = load_checkpoint(context.properties)
    payload = {
        "checkpoint": asdict(checkpoint) if checkpoint is not None else None,
        "last_error": read_last_error(context.properties),
        "pending_triggers": [
            {"trigger_id": trigger.trigger_id, "due_at": trigger.due_at_iso}
            for trigger in scheduler.pending()
        ],
        "classified_rows": len(context.output_store.read_keys()),
    }
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


def run_rollup(context: RunContext) -> int:
    """Rebuild both rollup reports while holding the run lock."""

    try:
        with context.run_lock():
            report = context.rebuild_rollups()
    except RunLockTimeout as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    print(
        f"Wrote {context.settings.tag_rollup_path} ({len(report.tags)} tags) and "
        f"{context.settings.query_rollup_path} ({len(report.queries)} subcategories)."
    )
    return 0


def run_set_key(args: argparse.Namespace, context: RunContext) -> int:
    api_key = args.api_key or getpass.getpass("API key: ")
    if not api_key.strip():
        print("Error: empty API key.", file=sys.stderr)
        return 2
    context.properties.set(API_KEY_PROPERTY, api_key.strip())
    print(f"Stored API key in {context.properties.path}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Script entry point."""

    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    disable_litellm_logging()

    if args.cmd in COMMANDS_NEEDING_INPUT and args.input is None:
        print(f"Error: '{args.cmd}' requires --input.", file=sys.stderr)
        return 2

    settings = settings_from_args(args)
    context = RunContext.from_settings(settings)
    scheduler = context.scheduler or TriggerScheduler(context.properties)

    if args.cmd in {"start", "resume"}:
        return run_chunked_command(args, context)
    if args.cmd == "analyze":
        return report_result(analyze_keys(context, keys=args.keys, limit=args.limit))
    if args.cmd == "watch":
        return run_watch(args, context, scheduler)
    if args.cmd == "abandon":
        return report_result(abandon_run(context))
    if args.cmd == "rollup":
        return run_rollup(context)
    if args.cmd == "check-headers":
        return run_check_headers(context)
    if args.cmd == "status":
        return run_status(context, scheduler)
    if args.cmd == "set-key":
        return run_set_key(args, context)
    return 2


if __name__ == "__main__":
    sys.exit(main())
