"""Deterministic classification of image backend failures."""

from __future__ import annotations

from dataclasses import dataclass

from product_shoot.orchestrator.models import ErrorCategory, FailureClass

GENERATION_FAILURE_CLASSIFIER_VERSION = 1

_CONTENT_BLOCKED_PATTERNS: tuple[str, ...] = (
    "safety",
    "blocked",
    "prohibited_content",
    "recitation",
)
_OVERSIZED_PATTERNS: tuple[str, ...] = (
    "payload too large",
    "request entity too large",
    "too large",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "resource_exhausted",
    "limit",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "failed to fetch",
    "network",
    "connection",
    "could not resolve host",
    "dns",
    "abort",
)
_SERVER_PATTERNS: tuple[str, ...] = (
    "internal error",
    "server error",
    "service unavailable",
    "overloaded",
    "bad gateway",
)
_NO_IMAGE_PATTERNS: tuple[str, ...] = (
    "no image",
    "missing image",
    "no inline",
)

USER_FACING_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.OVERSIZED_PAYLOAD: "Image is too large. Please use a smaller photo.",
    ErrorCategory.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    ErrorCategory.SERVER_ERROR: "The generation service is busy. Please try again shortly.",
    ErrorCategory.NETWORK_ERROR: "Network error. Check your connection and try again.",
    ErrorCategory.TIMEOUT: "Generation took too long. Please try again.",
    ErrorCategory.CONTENT_BLOCKED: "The image was blocked by the content filter.",
    ErrorCategory.NO_IMAGE: "The model returned no image. Please try again.",
    ErrorCategory.QUOTA_EXHAUSTED: "Not enough credits for this shoot.",
    ErrorCategory.UNKNOWN: "Generation failed. Please try again.",
}


@dataclass(slots=True)
class GenerationFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    category: ErrorCategory
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class == FailureClass.BACKEND_TRANSIENT

    def to_event_details(self, *, tier: str, model: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": GENERATION_FAILURE_CLASSIFIER_VERSION,
            "tier": tier,
            "model": model,
            "failure_class": self.failure_class.value,
            "category": self.category.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_generation_failure(
    *,
    message: str,
    status_code: int | None = None,
    timed_out: bool = False,
    malformed: bool = False,
    category_hint: ErrorCategory | None = None,
) -> GenerationFailureClassification:
    """Map one observed failure signal to an internal class and a user-facing category."""

    if timed_out:
        return _result(FailureClass.BACKEND_TRANSIENT, ErrorCategory.TIMEOUT, "timeout")

    if category_hint is not None:
        return _result(_class_for_category(category_hint, malformed), category_hint, "backend_hint")

    haystack = message.lower()

    if status_code is not None:
        if status_code == 413:
            return _result(
                FailureClass.BACKEND_TERMINAL,
                ErrorCategory.OVERSIZED_PAYLOAD,
                "status_413",
            )
        if status_code == 429:
            return _result(FailureClass.BACKEND_TRANSIENT, ErrorCategory.RATE_LIMITED, "status_429")
        if status_code in {408, 504}:
            return _result(FailureClass.BACKEND_TRANSIENT, ErrorCategory.TIMEOUT, "status_timeout")
        if status_code >= 500:
            return _result(
                FailureClass.BACKEND_TRANSIENT,
                ErrorCategory.SERVER_ERROR,
                "status_5xx",
            )

    pattern = _first_match(haystack, _CONTENT_BLOCKED_PATTERNS)
    if pattern is not None:
        return _result(
            FailureClass.BACKEND_TERMINAL,
            ErrorCategory.CONTENT_BLOCKED,
            "content_blocked",
            pattern,
        )

    pattern = _first_match(haystack, _OVERSIZED_PATTERNS)
    if pattern is not None:
        return _result(
            FailureClass.BACKEND_TERMINAL,
            ErrorCategory.OVERSIZED_PAYLOAD,
            "oversized_payload",
            pattern,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _result(FailureClass.BACKEND_TRANSIENT, ErrorCategory.TIMEOUT, "timeout", pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _result(
            FailureClass.BACKEND_TRANSIENT,
            ErrorCategory.RATE_LIMITED,
            "rate_limited",
            pattern,
        )

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return _result(
            FailureClass.BACKEND_TRANSIENT,
            ErrorCategory.NETWORK_ERROR,
            "network_error",
            pattern,
        )

    pattern = _first_match(haystack, _SERVER_PATTERNS)
    if pattern is not None:
        return _result(
            FailureClass.BACKEND_TRANSIENT,
            ErrorCategory.SERVER_ERROR,
            "server_error",
            pattern,
        )

    pattern = _first_match(haystack, _NO_IMAGE_PATTERNS)
    if pattern is not None or malformed:
        return _result(
            FailureClass.MALFORMED_RESPONSE,
            ErrorCategory.NO_IMAGE,
            "no_image" if pattern is not None else "malformed_response",
            pattern,
        )

    return _result(FailureClass.BACKEND_TERMINAL, ErrorCategory.UNKNOWN, "fallback_unknown")


def describe_category(category: ErrorCategory | None) -> str:
    """User-facing message for an error category."""

    return USER_FACING_MESSAGES[category or ErrorCategory.UNKNOWN]


def _class_for_category(category: ErrorCategory, malformed: bool) -> FailureClass:
    if malformed or category == ErrorCategory.NO_IMAGE:
        return FailureClass.MALFORMED_RESPONSE
    if category in {
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.TIMEOUT,
    }:
        return FailureClass.BACKEND_TRANSIENT
    return FailureClass.BACKEND_TERMINAL


def _result(
    failure_class: FailureClass,
    category: ErrorCategory,
    rule: str,
    pattern: str | None = None,
) -> GenerationFailureClassification:
    return GenerationFailureClassification(
        failure_class=failure_class,
        category=category,
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
