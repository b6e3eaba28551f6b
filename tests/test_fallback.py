from __future__ import annotations

import allure

from backlog_runner.orchestrator.fallback import (
    DEFAULT_MODEL_CONFIG,
    ModelConfig,
    ModelFallbackManager,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Model Fallback"),
]

CONFIG = ModelConfig(primary="opus", fallback="gemini", retry_interval_seconds=300)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_first_rate_limit_switches_to_fallback_and_asks_for_retry() -> None:
    manager = ModelFallbackManager("claude", CONFIG, clock=FakeClock())

    decision = manager.handle_error("429 Too Many Requests")

    assert decision.should_retry
    assert decision.new_model == "gemini"
    assert manager.get_current_model() == "gemini"
    assert manager.state.in_fallback
    assert manager.state.rate_limit_count == 1


def test_repeated_rate_limits_transition_only_once() -> None:
    clock = FakeClock()
    manager = ModelFallbackManager("claude", CONFIG, clock=clock)

    manager.handle_error("rate limit")
    started_at = manager.state.fallback_started_at
    clock.now += 30
    second = manager.handle_error("rate limit")
    third = manager.handle_error("overloaded")

    assert not second.should_retry
    assert not third.should_retry
    assert manager.state.fallback_started_at == started_at
    assert manager.state.rate_limit_count == 3


def test_retry_in_fallback_asks_for_retry_on_fallback_model() -> None:
    manager = ModelFallbackManager("claude", CONFIG, retry_in_fallback=True, clock=FakeClock())

    manager.handle_error("rate limit")
    decision = manager.handle_error("rate limit")

    assert decision.should_retry
    assert decision.new_model == "gemini"


def test_primary_returns_after_interval_without_success() -> None:
    clock = FakeClock()
    manager = ModelFallbackManager("claude", CONFIG, clock=clock)
    manager.handle_error("quota exceeded")

    clock.now += 299
    assert manager.get_current_model() == "gemini"
    assert manager.status().minutes_until_retry == 1

    clock.now += 1
    assert manager.get_current_model() == "opus"
    assert not manager.state.in_fallback
    assert manager.state.rate_limit_count == 0


def test_success_on_primary_resets_fallback() -> None:
    manager = ModelFallbackManager("claude", CONFIG, clock=FakeClock())
    manager.handle_error("rate limit")

    manager.record_success("gemini")
    assert manager.state.in_fallback

    manager.record_success("opus")
    assert not manager.state.in_fallback
    assert manager.status().current_model == "opus"


def test_non_rate_limit_errors_do_not_change_state() -> None:
    manager = ModelFallbackManager("claude", CONFIG, clock=FakeClock())

    decision = manager.handle_error("Invalid API key")

    assert not decision.should_retry
    assert not manager.state.in_fallback
    assert manager.state.last_rate_limit_at is None


def test_unknown_engine_uses_generic_defaults() -> None:
    manager = ModelFallbackManager("something-else")
    assert manager.primary_model == DEFAULT_MODEL_CONFIG["opencode"].primary
    assert manager.fallback_model == DEFAULT_MODEL_CONFIG["opencode"].fallback
