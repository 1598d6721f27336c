"""FSRS-style review scheduling. Pure functions over ``ReviewState``."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from .domain import ReviewState
from .models import Performance


@dataclass(frozen=True)
class SchedulerParameters:
    """Curve shape of the memory model; calibrate rather than hard-code elsewhere."""

    initial_stability: Dict[Performance, float] = field(
        default_factory=lambda: {
            Performance.AGAIN: 0.4,
            Performance.HARD: 1.0,
            Performance.GOOD: 2.5,
            Performance.EASY: 4.0,
        }
    )
    initial_difficulty: Dict[Performance, float] = field(
        default_factory=lambda: {
            Performance.AGAIN: 7.0,
            Performance.HARD: 6.0,
            Performance.GOOD: 5.0,
            Performance.EASY: 4.0,
        }
    )
    difficulty_delta: Dict[Performance, float] = field(
        default_factory=lambda: {
            Performance.AGAIN: 1.5,
            Performance.HARD: 0.5,
            Performance.GOOD: 0.0,
            Performance.EASY: -0.5,
        }
    )
    stability_growth: Dict[Performance, float] = field(
        default_factory=lambda: {
            Performance.HARD: 1.2,
            Performance.GOOD: 2.5,
            Performance.EASY: 3.5,
        }
    )
    lapse_stability_factor: float = 0.3
    min_stability: float = 0.1
    min_difficulty: float = 1.0
    max_difficulty: float = 10.0
    request_retention: float = 0.9
    min_interval_days: float = 1.0
    maximum_interval_days: float = 365.0


DEFAULT_PARAMETERS = SchedulerParameters()

# Retrievability equals this value once elapsed time reaches stability.
_STABILITY_RETENTION = 0.9


def performance_from_score(correct: int, total: int) -> Performance:
    """Map an accuracy ratio onto a discrete review grade."""

    if total <= 0:
        raise ValueError("total must be positive")
    if correct < 0 or correct > total:
        raise ValueError("correct must be within 0..total")
    ratio = correct / total
    if ratio < 0.5:
        return Performance.AGAIN
    if ratio < 0.75:
        return Performance.HARD
    if ratio < 1.0:
        return Performance.GOOD
    return Performance.EASY


def retrievability(state: ReviewState, now: datetime) -> float:
    """Probability of recall at ``now`` under exponential decay."""

    elapsed_days = max((now - state.last_review).total_seconds() / 86400, 0.0)
    stability = max(state.stability, 1e-6)
    value = math.exp(math.log(_STABILITY_RETENTION) * elapsed_days / stability)
    return max(0.0, min(1.0, value))


def is_review_due(state: ReviewState, now: datetime) -> bool:
    return now >= state.next_review


def interval_for_stability(stability: float, params: SchedulerParameters = DEFAULT_PARAMETERS) -> float:
    """Days until retrievability decays to the requested retention."""

    days = stability * math.log(params.request_retention) / math.log(_STABILITY_RETENTION)
    return max(params.min_interval_days, min(params.maximum_interval_days, days))


def _clamp_difficulty(value: float, params: SchedulerParameters) -> float:
    return max(params.min_difficulty, min(params.max_difficulty, value))


def next_review(
    state: Optional[ReviewState],
    performance: Performance,
    now: datetime,
    params: SchedulerParameters = DEFAULT_PARAMETERS,
) -> ReviewState:
    """Return the updated review state after a graded review at ``now``.

    ``state`` is ``None`` on first exposure; stability and difficulty are then
    seeded from ``params`` by grade.
    """

    performance = Performance(performance)

    if state is None:
        stability = max(params.min_stability, params.initial_stability[performance])
        difficulty = _clamp_difficulty(params.initial_difficulty[performance], params)
        repetitions = 0 if performance is Performance.AGAIN else 1
        updated = ReviewState(
            stability=stability,
            difficulty=difficulty,
            last_review=now,
            next_review=now + timedelta(days=interval_for_stability(stability, params)),
            repetition_count=repetitions,
            lapse_count=0,
            review_count=1,
        )
        return updated

    recall = retrievability(state, now)
    difficulty = _clamp_difficulty(state.difficulty + params.difficulty_delta[performance], params)

    if performance is Performance.AGAIN:
        stability = max(params.min_stability, state.stability * params.lapse_stability_factor)
        repetitions = 0
        lapses = state.lapse_count + (1 if state.repetition_count > 0 else 0)
    else:
        ease = (params.max_difficulty + 1 - difficulty) / params.max_difficulty
        growth = 1 + (params.stability_growth[performance] - 1) * ease * (1 + (1 - recall))
        stability = max(params.min_stability, state.stability * max(growth, 1.0))
        repetitions = state.repetition_count + 1
        lapses = state.lapse_count

    return ReviewState(
        stability=stability,
        difficulty=difficulty,
        last_review=now,
        next_review=now + timedelta(days=interval_for_stability(stability, params)),
        repetition_count=repetitions,
        lapse_count=lapses,
        review_count=state.review_count + 1,
    )


__all__ = [
    "DEFAULT_PARAMETERS",
    "SchedulerParameters",
    "interval_for_stability",
    "is_review_due",
    "next_review",
    "performance_from_score",
    "retrievability",
]
