"""Latency and usage tracking across the lifetime of one request."""

from __future__ import annotations

import time
from typing import Callable

from .types import Usage, UsageMetrics

__all__ = ["MetricsTracker", "Clock"]

# Returns the current time in milliseconds.
Clock = Callable[[], float]


def _monotonic_ms() -> float:
    return time.perf_counter() * 1000.0


class MetricsTracker:
    """Latches request timestamps exactly once and aggregates usage.

    First-token and first-content timestamps belong to the whole request,
    so later tool-loop rounds never reset them. Thinking time is summed over
    every round that produced reasoning.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or _monotonic_ms
        self._started_at: float | None = None
        self._first_token_at: float | None = None
        self._first_content_at: float | None = None
        self._completed_at: float | None = None
        self._last_finish_at: float | None = None
        self._round_thinking_started_at: float | None = None
        self._thinking_ms = 0.0
        self._usage: Usage | None = None

    def now(self) -> float:
        return self._clock()

    def start(self) -> float:
        if self._started_at is None:
            self._started_at = self._clock()
        return self._started_at

    @property
    def started_at(self) -> float | None:
        return self._started_at

    @property
    def first_token_at(self) -> float | None:
        return self._first_token_at

    @property
    def first_content_at(self) -> float | None:
        return self._first_content_at

    @property
    def completed_at(self) -> float | None:
        return self._completed_at

    @property
    def usage(self) -> Usage | None:
        return self._usage

    def mark_token(self, at: float) -> None:
        """Record a reasoning or answer token."""
        if self._first_token_at is None:
            self._first_token_at = at

    def mark_content(self, at: float) -> None:
        """Record an answer token (first one after reasoning ended)."""
        self.mark_token(at)
        if self._first_content_at is None:
            self._first_content_at = at

    def begin_thinking(self, at: float) -> float:
        """Start the thinking clock of the current round if not running."""
        self.mark_token(at)
        if self._round_thinking_started_at is None:
            self._round_thinking_started_at = at
        return self._round_thinking_started_at

    def thinking_elapsed(self, at: float) -> float:
        if self._round_thinking_started_at is None:
            return 0.0
        return max(0.0, at - self._round_thinking_started_at)

    def end_thinking(self, at: float) -> float:
        """Stop the round's thinking clock and return its duration."""
        elapsed = self.thinking_elapsed(at)
        self._thinking_ms += elapsed
        self._round_thinking_started_at = None
        return elapsed

    def record_usage(self, usage: Usage | None) -> None:
        if usage is not None:
            self._usage = usage

    def mark_finish(self, at: float) -> None:
        """Note a finish signal; the last one becomes the completion time."""
        self._last_finish_at = at

    def complete(self) -> float:
        if self._completed_at is None:
            self._completed_at = self._last_finish_at if self._last_finish_at is not None else self._clock()
        return self._completed_at

    def snapshot(self) -> UsageMetrics:
        """Derive the metrics attached to the terminal block event."""
        started = self._started_at if self._started_at is not None else self.start()
        completed = self._completed_at if self._completed_at is not None else self.complete()
        usage = self._usage or Usage()

        def _since_start(value: float | None) -> float:
            if value is None:
                return 0.0
            return max(0.0, value - started)

        return UsageMetrics(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            time_first_token_ms=_since_start(self._first_token_at),
            time_first_content_ms=_since_start(self._first_content_at),
            time_completion_ms=_since_start(completed),
            time_thinking_ms=self._thinking_ms,
        )
