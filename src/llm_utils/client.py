"""
Shared LiteLLM client helpers.

This module centralizes error handling and request defaults for LiteLLM
calls so that every classification code path talks to the remote endpoint
the same way. Retries are owned by callers; the single-call helper here
disables LiteLLM's internal retry loop by default.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence, Tuple

import litellm
import openai
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    APIResponseValidationError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
    UnprocessableEntityError,
)

LITELLM_API_ERRORS = (
    APIConnectionError,
    APIError,
    APIResponseValidationError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
    UnprocessableEntityError,
    openai.APIError,
    TimeoutError,
)
"""Failures wrapped as :class:`LLMClientError`.

LiteLLM maps provider errors onto the OpenAI SDK hierarchy, so
``openai.APIError`` also covers status codes without a dedicated class.
"""

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
"""Default chat model identifier used for transcript classification."""

DEFAULT_TIMEOUT_SECONDS = 60
JSON_OBJECT_FORMAT = {"type": "json_object"}


class LLMClientError(RuntimeError):
    """Raised when a LiteLLM request fails.

    Parameters
    ----------
    message:
        High level description of the failure.
    inner:
        Optional underlying LiteLLM exception that triggered the failure.

    Attributes
    ----------
    inner:
        Saved underlying exception instance when available.
    """

    def __init__(self, message: str, *, inner: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.inner = inner


def disable_litellm_logging() -> None:
    """Silence the default LiteLLM logger for cleaner CLI output."""

    logger = logging.getLogger("LiteLLM")
    logger.disabled = True


def completion(
    *,
    model: str,
    messages: Sequence[Mapping[str, object]],
    api_key: Optional[str] = None,
    timeout: Optional[int] = DEFAULT_TIMEOUT_SECONDS,
    temperature: float = 0.0,
    response_format: Optional[Mapping[str, object]] = None,
    num_retries: int = 0,
) -> object:
    """Call :func:`litellm.completion` with shared error handling.

    Parameters
    ----------
    model:
        LiteLLM model identifier to use.
    messages:
        Chat messages payload in LiteLLM-compatible dict form.
    api_key:
        Bearer credential forwarded to the provider. When omitted LiteLLM
        falls back to its own environment lookup.
    timeout:
        Optional request timeout in seconds.
    temperature:
        Sampling temperature; classification always uses zero.
    response_format:
        Optional provider response format, for example
        :data:`JSON_OBJECT_FORMAT`.
    num_retries:
        Number of LiteLLM-internal retries. Defaults to zero because the
        classification client applies its own retry policy.

    Returns
    -------
    object
        The raw LiteLLM completion response.

    Raises
    ------
    LLMClientError
        If the LiteLLM request fails.
    """

    request_kwargs: dict[str, object] = {
        "model": model,
        "messages": [dict(message) for message in messages],
        "temperature": float(temperature),
        "num_retries": int(num_retries),
    }
    if api_key:
        request_kwargs["api_key"] = api_key
    if timeout is not None:
        request_kwargs["timeout"] = int(timeout)
    if response_format is not None:
        request_kwargs["response_format"] = dict(response_format)

    try:
        return litellm.completion(**request_kwargs)
    except LITELLM_API_ERRORS as err:
        raise LLMClientError(f"LiteLLM completion failed: {err}", inner=err) from err


def extract_first_choice_fields(
    response: object,
) -> Tuple[object, Optional[str]]:
    """Return ``(content_raw, finish_reason)`` from a LiteLLM response.

    Parameters
    ----------
    response:
        Response object or dictionary returned by LiteLLM.

    Returns
    -------
    Tuple[object, Optional[str]]
        Raw content payload (which may be any type) and the finish_reason
        string when present.

    Raises
    ------
    ValueError
        If the response does not contain a usable ``choices`` list.
    """

    if isinstance(response, dict):
        choices: Sequence[object] | None = response.get("choices")
    else:
        choices = getattr(response, "choices", None)

    if not choices:
        raise ValueError("No choices returned from the LiteLLM API.")

    first_choice = choices[0]
    if isinstance(first_choice, dict):
        message = first_choice.get("message", {})
        finish_reason = first_choice.get("finish_reason")
    else:
        message = getattr(first_choice, "message", {})
        finish_reason = getattr(first_choice, "finish_reason", None)

    if isinstance(message, dict):
        content_raw = message.get("content")
    else:
        content_raw = getattr(message, "content", None)

    return content_raw, str(finish_reason) if finish_reason is not None else None
