"""CLI helper utilities for shared argparse patterns.

This module centralizes the argument definitions shared by every ``triage``
subcommand so that workspace paths, model selection, and run pacing flags
stay consistent across commands.
"""

from __future__ import annotations

import argparse
import itertools
import sys
import threading
import time
from pathlib import Path


def add_model_argument(parser: argparse.ArgumentParser, *, default_model: str) -> None:
    """Add a ``--model/-m`` argument understood by LiteLLM-style tools.

    Parameters
    ----------
    parser:
        Target argument parser.
    default_model:
        Default model name to advertise in the help text.
    """

    parser.add_argument(
        "--model",
        "-m",
        default=default_model,
        help=("Model name understood by LiteLLM " f"(default: {default_model})."),
    )


def add_workspace_arguments(
    parser: argparse.ArgumentParser,
    *,
    default_output_dir: Path | str,
) -> None:
    """Add shared ``--input``, ``--output`` and ``--state-dir`` arguments.

    Parameters
    ----------
    parser:
        Target argument parser.
    default_output_dir:
        Default directory for classified rows and rollup reports.
    """

    parser.add_argument(
        "--input",
        "-i",
        type=Path,
        help="CSV export of support messages (one row per message).",
    )
    parser.add_argument(
        "--output",
        "-o",
        dest="output_dir",
        type=Path,
        default=Path(default_output_dir),
        help=(
            "Directory for classified rows and rollup reports "
            f"(default: {default_output_dir})."
        ),
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Directory for the run checkpoint and lock (default: OUTPUT/.triage).",
    )


def add_chunk_arguments(
    parser: argparse.ArgumentParser,
    *,
    default_chunk_size: int,
    default_pace: float,
    default_resume_after: float,
    default_lock_timeout: float,
) -> None:
    """Add shared chunk sizing, pacing, and locking arguments.

    Parameters
    ----------
    parser:
        Target argument parser.
    default_chunk_size:
        Default number of conversations classified per invocation.
    default_pace:
        Default delay in seconds between remote calls.
    default_resume_after:
        Default delay in seconds before the next scheduled chunk.
    default_lock_timeout:
        Default wait in seconds for the run lock.
    """

    parser.add_argument(
        "--chunk-size",
        type=int,
        default=default_chunk_size,
        help=f"Conversations per invocation (default: {default_chunk_size}).",
    )
    parser.add_argument(
        "--pace",
        type=float,
        default=default_pace,
        help=f"Seconds to wait between remote calls (default: {default_pace}).",
    )
    parser.add_argument(
        "--resume-after",
        type=float,
        default=default_resume_after,
        help=(
            "Seconds before the next chunk when work remains "
            f"(default: {default_resume_after})."
        ),
    )
    parser.add_argument(
        "--lock-timeout",
        type=float,
        default=default_lock_timeout,
        help=f"Seconds to wait for the run lock (default: {default_lock_timeout}).",
    )


def add_log_level_argument(parser: argparse.ArgumentParser) -> None:
    """Add a shared ``--log-level`` argument for logging verbosity.

    Parameters
    ----------
    parser:
        Target argument parser.
    """

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity.",
    )


class Spinner:
    """Lightweight terminal spinner for long-running waits.

    The spinner writes a single animated line to stderr when attached to a
    TTY. It is a no-op when stderr is not a TTY (for example, during tests
    or when output is redirected).
    """

    def __init__(self, message: str, interval: float = 0.2) -> None:
        """Initialise a spinner with a message and refresh interval."""

        self.message = message
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> "Spinner":
        """Start animating the spinner if stderr is a TTY."""

        if not sys.stderr.isatty():
            return self

        def _run() -> None:
            cycle = itertools.cycle("|/-\\")
            while not self._stop_event.is_set():
                frame = next(cycle)
                sys.stderr.write(f"\r{self.message} {frame}")
                sys.stderr.flush()
                time.sleep(self.interval)

        self._thread = threading.Thread(target=_run, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """Stop the spinner and clear the line."""

        if not sys.stderr.isatty():
            return
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
        clear_line = "\r" + " " * (len(self.message) + 2) + "\r"
        sys.stderr.write(clear_line)
        sys.stderr.flush()
