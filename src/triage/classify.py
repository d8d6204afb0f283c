"""Classify a single conversation transcript through LiteLLM.

Each request is validated at the boundary into a tagged outcome
(:class:`ResponseSuccess`, :class:`ResponseMalformed` or
:class:`ResponseTransportError`). Only a success carries a
:class:`ClassificationResult`. :func:`classify_with_retry` applies a linear,
capped backoff and never raises: exhausting every attempt degrades to an
empty result plus the last observed error.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import json_repair

from llm_utils.client import (
    JSON_OBJECT_FORMAT,
    LLMClientError,
    completion,
    extract_first_choice_fields,
)
from triage.normalize import ClassificationResult
from triage.prompts import build_completion_messages

EXPECTED_FIELDS: tuple[str, ...] = ("sentiment", "tags", "summary", "solved")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_STEP_SECONDS = 2.0
DEFAULT_BACKOFF_CAP_SECONDS = 10.0


@dataclass(frozen=True)
class ResponseSuccess:
    """Response body decoded into a classification result."""

    result: ClassificationResult


@dataclass(frozen=True)
class ResponseMalformed:
    """Response arrived but was not a JSON object matching the schema."""

    message: str


@dataclass(frozen=True)
class ResponseTransportError:
    """Request failed before a usable response body was received."""

    message: str


ResponseOutcome = Union[ResponseSuccess, ResponseMalformed, ResponseTransportError]
CompletionFn = Callable[..., object]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linearly growing, capped backoff.

    Parameters
    ----------
    max_attempts:
        Total number of attempts per transcript, including the first.
    backoff_step_seconds:
        Wait after attempt ``n`` is ``n * backoff_step_seconds``.
    backoff_cap_seconds:
        Upper bound for a single wait.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_step_seconds: float = DEFAULT_BACKOFF_STEP_SECONDS
    backoff_cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Return the wait in seconds after failed attempt number ``attempt``."""

        return min(self.backoff_step_seconds * attempt, self.backoff_cap_seconds)


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class ClassificationAttempt:
    """Final result of classifying one transcript.

    ``error`` holds the last failure message when every attempt failed; in
    that case ``result`` is an empty :class:`ClassificationResult`.
    """

    result: ClassificationResult = field(default_factory=ClassificationResult)
    error: Optional[str] = None
    attempts: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None


def parse_response_content(content: object) -> ResponseOutcome:
    """Validate raw message content and decode it into a result.

    Parameters
    ----------
    content:
        Message content returned by the model, normally a JSON string.

    Returns
    -------
    ResponseOutcome
        :class:`ResponseSuccess` for a JSON object carrying every expected
        field, otherwise :class:`ResponseMalformed` describing the problem.
    """

    text = str(content or "").strip()
    if not text:
        return ResponseMalformed("Empty response from the classification model.")
    try:
        parsed = json_repair.loads(text)
    except (json.JSONDecodeError, ValueError, TypeError, IndexError) as err:
        return ResponseMalformed(f"Unable to parse model response as JSON: {err}")

    if not isinstance(parsed, dict):
        return ResponseMalformed(
            f"Model response must be a JSON object. Response: {text[:200]}"
        )
    missing = [name for name in EXPECTED_FIELDS if name not in parsed]
    if missing:
        return ResponseMalformed(
            "Model response is missing required fields: " + ", ".join(missing)
        )
    return ResponseSuccess(ClassificationResult.from_mapping(parsed))


def request_classification(
    transcript: str,
    *,
    model: str,
    api_key: Optional[str],
    completion_fn: CompletionFn = completion,
) -> ResponseOutcome:
    """Perform a single classification request for ``transcript``."""

    messages = build_completion_messages(transcript)
    try:
        response = completion_fn(
            model=model,
            messages=messages,
            api_key=api_key,
            temperature=0,
            response_format=JSON_OBJECT_FORMAT,
        )
    except LLMClientError as err:
        return ResponseTransportError(str(err))

    try:
        content, _finish_reason = extract_first_choice_fields(response)
    except ValueError as err:
        return ResponseMalformed(str(err))
    return parse_response_content(content)


def classify_with_retry(
    transcript: str,
    *,
    model: str,
    api_key: Optional[str],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    completion_fn: CompletionFn = completion,
    sleep: Callable[[float], None] = time.sleep,
) -> ClassificationAttempt:
    """Classify ``transcript`` with bounded retries.

    Returns
    -------
    ClassificationAttempt
        The successful result, or an empty result with the last error after
        every attempt failed.
    """

    last_error: Optional[str] = None
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        outcome = request_classification(
            transcript,
            model=model,
            api_key=api_key,
            completion_fn=completion_fn,
        )
        if isinstance(outcome, ResponseSuccess):
            return ClassificationAttempt(result=outcome.result, attempts=attempt)
        last_error = outcome.message
        if attempt < attempts:
            delay = policy.delay_for(attempt)
            logging.warning(
                "Classification attempt %s/%s failed (%s); retrying in %.1fs",
                attempt,
                attempts,
                last_error,
                delay,
            )
            sleep(delay)
    return ClassificationAttempt(error=last_error, attempts=attempts)


class TranscriptClassifier:
    """Callable binding model, credential, and retry policy for the engine."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        completion_fn: CompletionFn = completion,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.policy = policy
        self.completion_fn = completion_fn
        self.sleep = sleep

    def __call__(self, transcript: str) -> ClassificationAttempt:
        return classify_with_retry(
            transcript,
            model=self.model,
            api_key=self.api_key,
            policy=self.policy,
            completion_fn=self.completion_fn,
            sleep=self.sleep,
        )
