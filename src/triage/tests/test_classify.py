"""
Tests for the transcript classification client and its retry policy.
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import litellm

from llm_utils.client import JSON_OBJECT_FORMAT, LLMClientError
from triage.classify import (
    ClassificationAttempt,
    ResponseMalformed,
    ResponseSuccess,
    ResponseTransportError,
    RetryPolicy,
    TranscriptClassifier,
    classify_with_retry,
    parse_response_content,
    request_classification,
)
from triage.normalize import FAILURE_SUMMARY_PREFIX, normalize_result
from triage.prompts import MAX_REQUEST_CHARS
from triage.taxonomy import FALLBACK_TAG

VALID_PAYLOAD = {
    "sentiment": "positive",
    "tags": ["query"],
    "summary": "Asked about hours.",
    "solved": "yes",
}


def _response(content: object) -> SimpleNamespace:
    """Return a LiteLLM-shaped response object with ``content``."""

    message = SimpleNamespace(content=content)
    choice = SimpleNamespace(message=message, finish_reason="stop")
    return SimpleNamespace(choices=[choice])


class FakeCompletion:
    """Completion double returning queued responses or raising queued errors."""

    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, object]] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def test_parse_response_content_accepts_valid_object() -> None:
    """A JSON object with every field should decode into a result."""

    outcome = parse_response_content(json.dumps(VALID_PAYLOAD))

    assert isinstance(outcome, ResponseSuccess)
    assert outcome.result.sentiment == "positive"
    assert outcome.result.tags == ["query"]


def test_parse_response_content_rejects_non_objects() -> None:
    """Arrays, empty bodies, and plain text should be malformed."""

    assert isinstance(parse_response_content("[1, 2]"), ResponseMalformed)
    assert isinstance(parse_response_content(""), ResponseMalformed)
    assert isinstance(parse_response_content(None), ResponseMalformed)


def test_parse_response_content_rejects_missing_fields() -> None:
    """Objects missing schema fields should be malformed with the names listed."""

    outcome = parse_response_content(json.dumps({"sentiment": "neutral"}))

    assert isinstance(outcome, ResponseMalformed)
    assert "tags" in outcome.message
    assert "solved" in outcome.message


def test_request_classification_sends_deterministic_json_request() -> None:
    """Requests should use temperature zero, JSON mode, and the API key."""

    fake = FakeCompletion([_response(json.dumps(VALID_PAYLOAD))])
    transcript = "x" * (MAX_REQUEST_CHARS + 500)

    outcome = request_classification(
        transcript, model="gpt-test", api_key="sk-test", completion_fn=fake
    )

    assert isinstance(outcome, ResponseSuccess)
    call = fake.calls[0]
    assert call["model"] == "gpt-test"
    assert call["temperature"] == 0
    assert call["response_format"] == JSON_OBJECT_FORMAT
    assert call["api_key"] == "sk-test"
    system, user = call["messages"]
    assert system["role"] == "system"
    assert user["role"] == "user"
    assert user["content"].count("x") == MAX_REQUEST_CHARS


def test_request_classification_maps_client_errors_to_transport_errors() -> None:
    """LLMClientError should become a transport-error outcome."""

    fake = FakeCompletion([LLMClientError("connection reset")])

    outcome = request_classification(
        "hi", model="gpt-test", api_key="k", completion_fn=fake
    )

    assert isinstance(outcome, ResponseTransportError)
    assert "connection reset" in outcome.message


def test_request_classification_flags_missing_choices() -> None:
    """A response without choices should be malformed."""

    fake = FakeCompletion([SimpleNamespace(choices=[])])

    outcome = request_classification(
        "hi", model="gpt-test", api_key="k", completion_fn=fake
    )

    assert isinstance(outcome, ResponseMalformed)


def test_classify_with_retry_recovers_after_failures() -> None:
    """A success after failures should return the result and attempt count."""

    fake = FakeCompletion(
        [
            LLMClientError("rate limited"),
            _response("not json at all"),
            _response(json.dumps(VALID_PAYLOAD)),
        ]
    )
    waits: list[float] = []

    attempt = classify_with_retry(
        "hello",
        model="gpt-test",
        api_key="k",
        policy=RetryPolicy(max_attempts=3, backoff_step_seconds=2, backoff_cap_seconds=3),
        completion_fn=fake,
        sleep=waits.append,
    )

    assert attempt.error is None
    assert attempt.attempts == 3
    assert attempt.result.summary == "Asked about hours."
    assert waits == [2, 3]


def test_retry_exhaustion_degrades_to_fallback_record() -> None:
    """Failing every attempt should yield a degraded record, not an exception."""

    fake = FakeCompletion([LLMClientError("boom")])
    waits: list[float] = []

    attempt = classify_with_retry(
        "hello",
        model="gpt-test",
        api_key="k",
        policy=RetryPolicy(max_attempts=4, backoff_step_seconds=1, backoff_cap_seconds=10),
        completion_fn=fake,
        sleep=waits.append,
    )

    assert attempt.failed
    assert attempt.attempts == 4
    assert len(fake.calls) == 4
    assert waits == [1, 2, 3]
    assert "boom" in (attempt.error or "")

    normalized = normalize_result(attempt.result, attempt.error)
    assert normalized.tags == (FALLBACK_TAG,)
    assert FAILURE_SUMMARY_PREFIX in normalized.summary
    assert "boom" in normalized.summary


def test_retry_policy_delay_is_linear_and_capped() -> None:
    """Backoff should grow with the attempt number up to the cap."""

    policy = RetryPolicy(max_attempts=5, backoff_step_seconds=2, backoff_cap_seconds=5)

    assert [policy.delay_for(n) for n in range(1, 5)] == [2, 4, 5, 5]


def test_transcript_classifier_binds_settings() -> None:
    """The callable wrapper should forward model and credential."""

    fake = FakeCompletion([_response(json.dumps(VALID_PAYLOAD))])
    classifier = TranscriptClassifier(
        model="gpt-bound", api_key="sk-bound", completion_fn=fake, sleep=lambda _s: None
    )

    attempt = classifier("transcript")

    assert isinstance(attempt, ClassificationAttempt)
    assert fake.calls[0]["model"] == "gpt-bound"
    assert fake.calls[0]["api_key"] == "sk-bound"


def test_litellm_timeouts_and_outages_degrade_instead_of_raising(monkeypatch) -> None:
    """Timeouts and 503s from LiteLLM should be retried and then degrade."""

    errors = [
        litellm.Timeout(message="timed out", model="gpt-test", llm_provider="openai"),
        litellm.ServiceUnavailableError(
            message="503", llm_provider="openai", model="gpt-test"
        ),
    ]
    raised: list[BaseException] = []

    def _failing_completion(**_kwargs):
        error = errors[len(raised) % len(errors)]
        raised.append(error)
        raise error

    monkeypatch.setattr(litellm, "completion", _failing_completion)

    attempt = classify_with_retry(
        "hi",
        model="gpt-test",
        api_key="k",
        policy=RetryPolicy(max_attempts=2, backoff_step_seconds=0, backoff_cap_seconds=0),
        sleep=lambda _seconds: None,
    )

    assert attempt.failed
    assert attempt.attempts == 2
    assert len(raised) == 2
    assert "503" in (attempt.error or "")
