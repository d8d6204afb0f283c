"""Fixed classification vocabulary for support transcripts.

The tag list is closed: the normalizer drops anything outside it and the
rollup reports always list every member, even with zero occurrences.
"""

from __future__ import annotations

FALLBACK_TAG = "other"
"""Catch-all tag used when no approved tag survives normalization."""

QUERY_TAG = "query"
"""Tag for general informational requests; drives the subcategory rollup."""

APPROVED_TAGS: tuple[str, ...] = (
    QUERY_TAG,
    "billing_issue",
    "refund_request",
    "account_access",
    "technical_issue",
    "bug_report",
    "feature_request",
    "shipping_delay",
    "order_status",
    "cancellation",
    "pricing",
    "onboarding",
    "integration",
    "data_privacy",
    "complaint",
    "praise",
    "escalation",
    FALLBACK_TAG,
)

TOPICAL_TAGS: tuple[str, ...] = (
    "billing_issue",
    "refund_request",
    "account_access",
    "technical_issue",
    "shipping_delay",
    "order_status",
    "cancellation",
    "pricing",
    "onboarding",
    "integration",
    "data_privacy",
)
"""Tags eligible to co-occur with ``query`` in the subcategory rollup."""

APPROVED_TAG_SET = frozenset(APPROVED_TAGS)

SENTIMENTS: tuple[str, ...] = ("positive", "neutral", "negative")
DEFAULT_SENTIMENT = "neutral"

RESOLUTION_STATUSES: tuple[str, ...] = ("yes", "no", "unclear")
DEFAULT_RESOLUTION = "unclear"

MAX_TAGS = 6

QUERY_SUBCATEGORY_PREFIX = f"{QUERY_TAG}:"
GENERAL_SUBCATEGORY = "general"


__all__ = [
    "APPROVED_TAGS",
    "APPROVED_TAG_SET",
    "DEFAULT_RESOLUTION",
    "DEFAULT_SENTIMENT",
    "FALLBACK_TAG",
    "GENERAL_SUBCATEGORY",
    "MAX_TAGS",
    "QUERY_SUBCATEGORY_PREFIX",
    "QUERY_TAG",
    "RESOLUTION_STATUSES",
    "SENTIMENTS",
    "TOPICAL_TAGS",
]
