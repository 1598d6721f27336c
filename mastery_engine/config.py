"""Environment-driven engine configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for queue caps, curveball timing, retries and grading."""

    db_path: Optional[str] = None
    openai_model: str = "gpt-4.1"
    openai_grader_model: str = "gpt-4.1-mini"
    log_level: str = "INFO"
    daily_choice_cap: int = 3
    daily_open_cap: int = 1
    retention_days: int = 30
    curveball_delay_days: int = 3
    curveball_recheck_days: int = 5
    batch_retries: int = 1
    partial_advance_threshold: float = 0.5
    open_ended_pass_ratio: float = 0.7

    def __post_init__(self) -> None:
        if self.daily_choice_cap < 0 or self.daily_open_cap < 0:
            raise ValueError("Daily caps must be non-negative")
        if self.retention_days < 0 or self.curveball_delay_days < 0 or self.curveball_recheck_days < 0:
            raise ValueError("Day windows must be non-negative")
        if self.batch_retries < 0:
            raise ValueError("batch_retries must be non-negative")
        if not 0.0 <= self.partial_advance_threshold <= 1.0:
            raise ValueError("partial_advance_threshold must be within 0-1")
        if not 0.0 < self.open_ended_pass_ratio <= 1.0:
            raise ValueError("open_ended_pass_ratio must be within (0, 1]")


def _env(name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return cast(raw)


def load_config() -> EngineConfig:
    """Build an ``EngineConfig`` from ``MASTERY_*`` environment variables."""

    try:
        return EngineConfig(
            db_path=os.getenv("MASTERY_DB_PATH") or None,
            openai_model=os.getenv("MASTERY_OPENAI_MODEL", "gpt-4.1"),
            openai_grader_model=os.getenv("MASTERY_OPENAI_GRADER_MODEL", "gpt-4.1-mini"),
            log_level=os.getenv("MASTERY_LOG_LEVEL", "INFO").upper(),
            daily_choice_cap=_env("MASTERY_DAILY_CHOICE_CAP", 3, int),
            daily_open_cap=_env("MASTERY_DAILY_OPEN_CAP", 1, int),
            retention_days=_env("MASTERY_RETENTION_DAYS", 30, int),
            curveball_delay_days=_env("MASTERY_CURVEBALL_DELAY_DAYS", 3, int),
            curveball_recheck_days=_env("MASTERY_CURVEBALL_RECHECK_DAYS", 5, int),
            batch_retries=_env("MASTERY_BATCH_RETRIES", 1, int),
            partial_advance_threshold=_env("MASTERY_PARTIAL_ADVANCE_THRESHOLD", 0.5, float),
            open_ended_pass_ratio=_env("MASTERY_OPEN_ENDED_PASS_RATIO", 0.7, float),
        )
    except ValueError as exc:
        raise RuntimeError(f"Invalid engine configuration: {exc}") from exc


__all__ = ["EngineConfig", "load_config"]
