"""Run settings, workspace layout, and credential lookup for triage runs."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from llm_utils.client import DEFAULT_CHAT_MODEL
from triage.store import PropertyStore

DEFAULT_CHUNK_SIZE = 20
DEFAULT_PACE_SECONDS = 1.0
"""Delay between consecutive remote calls within a chunk."""
DEFAULT_RESUME_AFTER_SECONDS = 60.0
"""Delay before the next chunk when a run still has unfinished keys."""
DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0

DEFAULT_OUTPUT_DIR = "triage_outputs"
DEFAULT_STATE_DIRNAME = ".triage"

OUTPUT_FILENAME = "classified.csv"
TAG_ROLLUP_FILENAME = "tag_rollup.csv"
QUERY_ROLLUP_FILENAME = "query_rollup.csv"
PROPERTIES_FILENAME = "properties.json"
LOCK_FILENAME = "run.lock"

API_KEY_PROPERTY = "api_key"
API_KEY_ENV_VAR = "OPENAI_API_KEY"


class TriageError(RuntimeError):
    """Base class for errors that abort a triage invocation."""


class ConfigurationError(TriageError):
    """Raised when the run cannot start because configuration is missing."""


@dataclass(frozen=True)
class TriageSettings:
    """Resolved settings for one triage workspace.

    Parameters
    ----------
    input_path:
        CSV export of raw support messages.
    output_dir:
        Directory receiving the classified rows and rollup reports.
    state_dir:
        Directory holding the property store and the run lock. Defaults to
        ``output_dir / .triage`` when built through :meth:`for_paths`.
    model:
        LiteLLM model identifier used for classification.
    chunk_size:
        Maximum number of keys classified per invocation.
    pace_seconds:
        Pause between consecutive keys within a chunk.
    resume_after_seconds:
        Delay requested for the next chunk when work remains.
    lock_timeout_seconds:
        Bounded wait for the run lock before skipping an invocation.
    """

    input_path: Path
    output_dir: Path
    state_dir: Path
    model: str = DEFAULT_CHAT_MODEL
    chunk_size: int = DEFAULT_CHUNK_SIZE
    pace_seconds: float = DEFAULT_PACE_SECONDS
    resume_after_seconds: float = DEFAULT_RESUME_AFTER_SECONDS
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS

    @classmethod
    def for_paths(
        cls,
        input_path: Path | str,
        output_dir: Path | str = DEFAULT_OUTPUT_DIR,
        state_dir: Path | str | None = None,
        **overrides: object,
    ) -> "TriageSettings":
        """Return settings rooted at ``output_dir`` with optional overrides."""

        resolved_output = Path(output_dir).expanduser()
        resolved_state = (
            Path(state_dir).expanduser()
            if state_dir is not None
            else resolved_output / DEFAULT_STATE_DIRNAME
        )
        return cls(
            input_path=Path(input_path).expanduser(),
            output_dir=resolved_output,
            state_dir=resolved_state,
            **overrides,  # type: ignore[arg-type]
        )

    @property
    def output_path(self) -> Path:
        return self.output_dir / OUTPUT_FILENAME

    @property
    def tag_rollup_path(self) -> Path:
        return self.output_dir / TAG_ROLLUP_FILENAME

    @property
    def query_rollup_path(self) -> Path:
        return self.output_dir / QUERY_ROLLUP_FILENAME

    @property
    def properties_path(self) -> Path:
        return self.state_dir / PROPERTIES_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILENAME


def resolve_api_key(properties: PropertyStore) -> str:
    """Return the API credential from the property store or environment.

    Raises
    ------
    ConfigurationError
        If no credential is configured.
    """

    stored = properties.get(API_KEY_PROPERTY)
    if isinstance(stored, str) and stored.strip():
        return stored.strip()
    from_env = os.environ.get(API_KEY_ENV_VAR, "").strip()
    if from_env:
        return from_env
    raise ConfigurationError(
        "No API key configured. Run 'triage set-key' or set "
        f"{API_KEY_ENV_VAR} before starting a run."
    )
