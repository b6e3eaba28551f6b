"""Deterministic engine failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from backlog_runner.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "quota exceeded",
    "overloaded",
    "capacity",
    "temporarily unavailable",
    "resource exhausted",
    "resource_exhausted",
)
_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network error",
    "network timeout",
    "etimedout",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "connection reset",
    "timed out",
    "service unavailable",
    "503",
)
_AUTH_OR_CONFIG_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "invalid_api_key",
    "unauthorized",
    "authentication",
    "not logged in",
    "please login",
    "please log in",
    "invalid credentials",
    "credentials",
    "401",
    "forbidden",
    "permission denied",
)
_ENGINE_MISSING_PATTERNS: tuple[str, ...] = (
    "command not found",
    "enoent",
    "not installed",
    "no such file or directory",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and observers."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(message: str | None) -> FailureClassification:
    """Classify an engine error message as retryable, fatal, or unknown."""

    haystack = (message or "").lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RETRYABLE,
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NETWORK_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RETRYABLE,
            matched_rule="network_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _AUTH_OR_CONFIG_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.FATAL,
            matched_rule="auth_or_config",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ENGINE_MISSING_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.FATAL,
            matched_rule="engine_missing",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def is_retryable_error(message: str | None) -> bool:
    return classify_failure(message).failure_class == FailureClass.RETRYABLE


def is_fatal_error(message: str | None) -> bool:
    return classify_failure(message).failure_class == FailureClass.FATAL


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
