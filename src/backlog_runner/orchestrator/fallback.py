"""Primary/fallback model selection driven by rate-limit signals."""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from backlog_runner.orchestrator.models import FallbackState

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SECONDS = 5 * 60

_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"429"),
    re.compile(r"quota exceeded", re.IGNORECASE),
    re.compile(r"overloaded", re.IGNORECASE),
    re.compile(r"capacity", re.IGNORECASE),
    re.compile(r"temporarily unavailable", re.IGNORECASE),
    re.compile(r"resource exhausted", re.IGNORECASE),
    re.compile(r"api_error.*overloaded", re.IGNORECASE),
)


@dataclass(frozen=True, slots=True)
class ModelConfig:
    """Primary/fallback pair for one engine."""

    primary: str
    fallback: str
    retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS


DEFAULT_MODEL_CONFIG: dict[str, ModelConfig] = {
    "opencode": ModelConfig(
        primary="anthropic/claude-opus-4-20250514",
        fallback="google/gemini-2.5-pro-preview-05-06",
    ),
    "claude": ModelConfig(
        primary="claude-opus-4-20250514",
        fallback="claude-sonnet-4-20250514",
    ),
    "gemini": ModelConfig(
        primary="gemini-2.5-pro",
        fallback="gemini-2.5-flash",
    ),
}


@dataclass(frozen=True, slots=True)
class FallbackDecision:
    """Whether the caller should retry, and with which model."""

    should_retry: bool
    new_model: str | None = None


@dataclass(frozen=True, slots=True)
class FallbackStatus:
    current_model: str
    in_fallback: bool
    minutes_until_retry: int | None


class ModelFallbackManager:
    """Two-state machine (primary, fallback) choosing the model to request.

    A rate-limit error on the primary model switches to the fallback model and
    asks for an immediate retry. The primary model is tried again once
    ``retry_interval_seconds`` have elapsed, or as soon as a call on the
    primary model succeeds. While already in fallback, a further rate-limit
    error only asks for a retry when ``retry_in_fallback`` is enabled.
    """

    def __init__(
        self,
        engine_name: str,
        config: ModelConfig | None = None,
        *,
        retry_in_fallback: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine_name = engine_name
        self.config = config or DEFAULT_MODEL_CONFIG.get(
            engine_name.lower(),
            DEFAULT_MODEL_CONFIG["opencode"],
        )
        self.retry_in_fallback = retry_in_fallback
        self.state = FallbackState()
        self._clock = clock

    @property
    def primary_model(self) -> str:
        return self.config.primary

    @property
    def fallback_model(self) -> str:
        return self.config.fallback

    def get_current_model(self) -> str:
        """Return the model to request now, reverting to primary after the interval."""

        if not self.state.in_fallback:
            return self.config.primary
        if self.state.fallback_started_at is None:
            return self.config.fallback

        elapsed = self._clock() - self.state.fallback_started_at
        if elapsed >= self.config.retry_interval_seconds:
            logger.info(
                "Retry interval passed (%dmin). Retrying primary model: %s",
                round(elapsed / 60),
                self.config.primary,
            )
            self._reset_to_primary()
            return self.config.primary
        return self.config.fallback

    def is_rate_limit_error(self, error: str) -> bool:
        return any(pattern.search(error) for pattern in _RATE_LIMIT_PATTERNS)

    def handle_error(self, error: str) -> FallbackDecision:
        """Record an engine error; switch to fallback on the first rate limit."""

        if not self.is_rate_limit_error(error):
            return FallbackDecision(should_retry=False)

        now = self._clock()
        self.state.rate_limit_count += 1
        self.state.last_rate_limit_at = now

        if not self.state.in_fallback:
            self.state.in_fallback = True
            self.state.fallback_started_at = now
            logger.warning(
                "Rate limit detected on %s. Switching to fallback: %s",
                self.config.primary,
                self.config.fallback,
            )
            logger.info(
                "Will retry primary model in %d minutes",
                round(self.config.retry_interval_seconds / 60),
            )
            return FallbackDecision(should_retry=True, new_model=self.config.fallback)

        logger.warning(
            "Rate limit error while using fallback model %s (count=%d)",
            self.config.fallback,
            self.state.rate_limit_count,
        )
        if self.retry_in_fallback:
            return FallbackDecision(should_retry=True, new_model=self.config.fallback)
        return FallbackDecision(should_retry=False)

    def record_success(self, model_used: str | None) -> None:
        if model_used == self.config.primary and self.state.in_fallback:
            logger.info("Primary model %s is working again", self.config.primary)
            self._reset_to_primary()
        self.state.rate_limit_count = 0

    def status(self) -> FallbackStatus:
        current_model = self.get_current_model()
        minutes_until_retry: int | None = None
        if self.state.in_fallback and self.state.fallback_started_at is not None:
            elapsed = self._clock() - self.state.fallback_started_at
            remaining = self.config.retry_interval_seconds - elapsed
            if remaining > 0:
                minutes_until_retry = math.ceil(remaining / 60)
        return FallbackStatus(
            current_model=current_model,
            in_fallback=self.state.in_fallback,
            minutes_until_retry=minutes_until_retry,
        )

    def _reset_to_primary(self) -> None:
        self.state.in_fallback = False
        self.state.fallback_started_at = None
        self.state.rate_limit_count = 0
