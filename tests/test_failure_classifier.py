from __future__ import annotations

import allure
import pytest

from backlog_runner.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    is_fatal_error,
    is_retryable_error,
)
from backlog_runner.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Retry Policy"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("message", "rule"),
    [
        ("Error: 429 Too Many Requests", "rate_limit"),
        ("API is overloaded, please retry", "rate_limit"),
        ("RESOURCE_EXHAUSTED: quota", "rate_limit"),
        ("request failed: ECONNRESET", "network_transient"),
        ("socket hang up", "network_transient"),
    ],
)
def test_classifier_marks_rate_limits_and_network_errors_retryable(message: str, rule: str) -> None:
    classified = classify_failure(message)
    assert classified.failure_class == FailureClass.RETRYABLE
    assert classified.matched_rule == rule


def test_classifier_maps_auth_failures_to_fatal() -> None:
    classified = classify_failure("Invalid API key provided")
    assert classified.failure_class == FailureClass.FATAL
    assert classified.matched_rule == "auth_or_config"
    assert classified.matched_pattern == "invalid api key"


def test_classifier_maps_missing_binary_to_fatal() -> None:
    classified = classify_failure("Engine command not found: claude")
    assert classified.failure_class == FailureClass.FATAL
    assert classified.matched_rule == "engine_missing"


def test_classifier_checks_retryable_before_fatal() -> None:
    classified = classify_failure("401 unauthorized after rate limit exceeded")
    assert classified.failure_class == FailureClass.RETRYABLE


def test_classifier_falls_back_to_unknown() -> None:
    classified = classify_failure("segmentation fault")
    assert classified.failure_class == FailureClass.UNKNOWN
    assert classified.matched_rule == "fallback_unknown"
    assert classified.matched_pattern is None
    assert classified.to_details()["classifier_version"] == FAILURE_CLASSIFIER_VERSION


def test_predicates_handle_none() -> None:
    assert not is_retryable_error(None)
    assert not is_fatal_error(None)
    assert is_fatal_error("You are not logged in")
    assert is_retryable_error("Request timed out")
