"""Simple in-process metrics registry for engine instrumentation."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List


@dataclass
class MetricsRegistry:
    """Holds counters and histograms exposed by the engine."""

    generation_attempts: int = 0
    generation_successes: int = 0
    generation_failures: int = 0
    generation_failure_reasons: Counter = field(default_factory=Counter)
    fallback_activations: int = 0
    generated_item_counts: List[int] = field(default_factory=list)
    answer_position_histogram: List[int] = field(default_factory=lambda: [0, 0, 0, 0])
    fsrs_outcomes: Counter = field(default_factory=Counter)
    fsrs_interval_buckets: Counter = field(default_factory=Counter)
    curveball_results: Counter = field(default_factory=Counter)
    mistakes_queued: int = 0

    def record_generation_attempt(self) -> None:
        self.generation_attempts += 1

    def record_generation_success(self, item_count: int) -> None:
        self.generation_successes += 1
        self.generated_item_counts.append(item_count)

    def record_generation_failure(self, reason: str) -> None:
        self.generation_failures += 1
        self.generation_failure_reasons[reason] += 1

    def record_fallback(self) -> None:
        self.fallback_activations += 1

    def record_answer_position(self, position: int) -> None:
        """Track where the correct option lands after shuffling."""

        histogram = self.answer_position_histogram
        if position >= len(histogram):
            histogram.extend([0] * (position - len(histogram) + 1))
        histogram[position] += 1

    def record_fsrs_outcome(self, grade: int, interval_days: float) -> None:
        self.fsrs_outcomes[grade] += 1
        self.fsrs_interval_buckets[(grade, _interval_bucket(interval_days))] += 1

    def record_curveball(self, passed: bool) -> None:
        self.curveball_results["passed" if passed else "failed"] += 1

    def record_mistakes(self, count: int) -> None:
        self.mistakes_queued += count

    @property
    def generation_success_rate(self) -> float:
        if self.generation_attempts == 0:
            return 0.0
        return self.generation_successes / self.generation_attempts

    @property
    def answer_position_bias_ratio(self) -> float:
        total = sum(self.answer_position_histogram)
        if not total:
            return 0.0
        return max(self.answer_position_histogram) / total


def _interval_bucket(interval_days: float) -> str:
    if interval_days < 1:
        return "<1d"
    if interval_days < 7:
        return "1-7d"
    if interval_days < 30:
        return "7-30d"
    if interval_days < 180:
        return "30-180d"
    return "180d+"


METRICS = MetricsRegistry()

__all__ = ["METRICS", "MetricsRegistry"]
