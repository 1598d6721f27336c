"""Mutable per-(idea, book) projections shared across services and repositories."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .models import BloomCategory, MasteryLevel


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class ReviewState:
    """Persisted memory-decay parameters for one idea within one book."""

    stability: float
    difficulty: float
    last_review: datetime
    next_review: datetime
    repetition_count: int = 0
    lapse_count: int = 0
    review_count: int = 0

    @property
    def interval_days(self) -> float:
        return (self.next_review - self.last_review).total_seconds() / 86400

    def to_dict(self) -> dict:
        return {
            "stability": self.stability,
            "difficulty": self.difficulty,
            "last_review": self.last_review.isoformat(),
            "next_review": self.next_review.isoformat(),
            "repetition_count": self.repetition_count,
            "lapse_count": self.lapse_count,
            "review_count": self.review_count,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "ReviewState":
        return cls(
            stability=float(payload["stability"]),
            difficulty=float(payload["difficulty"]),
            last_review=datetime.fromisoformat(payload["last_review"]),
            next_review=datetime.fromisoformat(payload["next_review"]),
            repetition_count=int(payload.get("repetition_count", 0)),
            lapse_count=int(payload.get("lapse_count", 0)),
            review_count=int(payload.get("review_count", 0)),
        )


@dataclass
class MissedConcept:
    """A concept the learner got wrong at least once."""

    concept: str
    bloom_category: BloomCategory
    question_id: str
    question_text: str
    missed_at: datetime
    retry_count: int = 1
    is_corrected: bool = False
    corrected_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "concept": self.concept,
            "bloom_category": self.bloom_category.value,
            "question_id": self.question_id,
            "question_text": self.question_text,
            "missed_at": self.missed_at.isoformat(),
            "retry_count": self.retry_count,
            "is_corrected": self.is_corrected,
            "corrected_at": _format_dt(self.corrected_at),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "MissedConcept":
        return cls(
            concept=payload["concept"],
            bloom_category=BloomCategory(payload["bloom_category"]),
            question_id=payload["question_id"],
            question_text=payload["question_text"],
            missed_at=datetime.fromisoformat(payload["missed_at"]),
            retry_count=int(payload.get("retry_count", 1)),
            is_corrected=bool(payload.get("is_corrected", False)),
            corrected_at=_parse_dt(payload.get("corrected_at")),
        )


TOTAL_CATEGORIES = len(BloomCategory)


@dataclass
class CoverageRecord:
    """Mastery level, per-category tallies and review state for an idea in a book."""

    idea_id: str
    book_id: str
    mastery_level: MasteryLevel = MasteryLevel.UNSTARTED
    correct_by_category: Dict[str, int] = field(default_factory=dict)
    incorrect_by_category: Dict[str, int] = field(default_factory=dict)
    missed_concepts: List[MissedConcept] = field(default_factory=list)
    review_state: Optional[ReviewState] = None
    first_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    covered_at: Optional[datetime] = None
    mastered_at: Optional[datetime] = None
    curveball_due_at: Optional[datetime] = None
    curveball_passed_at: Optional[datetime] = None

    # region Derived tallies
    @property
    def total_correct(self) -> int:
        return sum(self.correct_by_category.values())

    @property
    def total_seen(self) -> int:
        return self.total_correct + sum(self.incorrect_by_category.values())

    @property
    def mistakes_count(self) -> int:
        return sum(self.incorrect_by_category.values())

    @property
    def mistakes_corrected(self) -> int:
        return sum(1 for missed in self.missed_concepts if missed.is_corrected)

    @property
    def covered_categories(self) -> List[BloomCategory]:
        return [category for category in BloomCategory if self.correct_by_category.get(category.value, 0) > 0]

    @property
    def coverage_percentage(self) -> float:
        return len(self.covered_categories) / TOTAL_CATEGORIES * 100.0

    @property
    def is_fully_covered(self) -> bool:
        return len(self.covered_categories) >= TOTAL_CATEGORIES

    @property
    def accuracy(self) -> float:
        if not self.total_seen:
            return 0.0
        return self.total_correct / self.total_seen

    # endregion

    def record_response(
        self,
        *,
        bloom_category: BloomCategory,
        concept: str,
        question_id: str,
        question_text: str,
        is_correct: bool,
        now: datetime,
    ) -> None:
        """Update the per-category tallies and missed-concept history."""

        key = bloom_category.value
        if is_correct:
            self.correct_by_category[key] = self.correct_by_category.get(key, 0) + 1
            for missed in self.missed_concepts:
                if not missed.is_corrected and (missed.question_id == question_id or missed.concept == concept):
                    missed.is_corrected = True
                    missed.corrected_at = now
                    break
        else:
            self.incorrect_by_category[key] = self.incorrect_by_category.get(key, 0) + 1
            existing = next((m for m in self.missed_concepts if m.concept == concept), None)
            if existing is not None:
                existing.retry_count += 1
                existing.is_corrected = False
                existing.corrected_at = None
                existing.question_text = question_text
                existing.missed_at = now
            else:
                self.missed_concepts.append(
                    MissedConcept(
                        concept=concept,
                        bloom_category=bloom_category,
                        question_id=question_id,
                        question_text=question_text,
                        missed_at=now,
                    )
                )

        if self.first_attempt_at is None:
            self.first_attempt_at = now
        self.last_attempt_at = now
        if self.is_fully_covered and self.covered_at is None:
            self.covered_at = now

    def most_retried_concept(self) -> Optional[MissedConcept]:
        if not self.missed_concepts:
            return None
        return max(self.missed_concepts, key=lambda missed: missed.retry_count)

    def latest_missed_text(self, bloom_category: BloomCategory) -> Optional[str]:
        for missed in sorted(self.missed_concepts, key=lambda m: m.missed_at, reverse=True):
            if missed.bloom_category is bloom_category:
                return missed.question_text
        return None

    def to_dict(self) -> dict:
        return {
            "idea_id": self.idea_id,
            "book_id": self.book_id,
            "mastery_level": int(self.mastery_level),
            "correct_by_category": dict(self.correct_by_category),
            "incorrect_by_category": dict(self.incorrect_by_category),
            "missed_concepts": [missed.to_dict() for missed in self.missed_concepts],
            "review_state": self.review_state.to_dict() if self.review_state else None,
            "first_attempt_at": _format_dt(self.first_attempt_at),
            "last_attempt_at": _format_dt(self.last_attempt_at),
            "covered_at": _format_dt(self.covered_at),
            "mastered_at": _format_dt(self.mastered_at),
            "curveball_due_at": _format_dt(self.curveball_due_at),
            "curveball_passed_at": _format_dt(self.curveball_passed_at),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "CoverageRecord":
        review_payload = payload.get("review_state")
        return cls(
            idea_id=payload["idea_id"],
            book_id=payload["book_id"],
            mastery_level=MasteryLevel(int(payload.get("mastery_level", 0))),
            correct_by_category=dict(payload.get("correct_by_category") or {}),
            incorrect_by_category=dict(payload.get("incorrect_by_category") or {}),
            missed_concepts=[MissedConcept.from_dict(m) for m in payload.get("missed_concepts") or []],
            review_state=ReviewState.from_dict(review_payload) if review_payload else None,
            first_attempt_at=_parse_dt(payload.get("first_attempt_at")),
            last_attempt_at=_parse_dt(payload.get("last_attempt_at")),
            covered_at=_parse_dt(payload.get("covered_at")),
            mastered_at=_parse_dt(payload.get("mastered_at")),
            curveball_due_at=_parse_dt(payload.get("curveball_due_at")),
            curveball_passed_at=_parse_dt(payload.get("curveball_passed_at")),
        )


__all__ = ["CoverageRecord", "MissedConcept", "ReviewState", "TOTAL_CATEGORIES"]
