"""Per-(idea, book) mastery and coverage state machine, including curveball re-checks."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .domain import CoverageRecord, ReviewState
from .metrics import METRICS
from .models import (
    BloomCategory,
    Difficulty,
    MasteryLevel,
    Question,
    QuestionType,
    Response,
    ReviewQueueItem,
    TestType,
    utcnow,
)
from .repositories import CoverageRepository, IdeaRepository, RecordNotFound
from .review_queue import ReviewQueueManager
from .scheduler import (
    DEFAULT_PARAMETERS,
    SchedulerParameters,
    is_review_due,
    next_review,
    performance_from_score,
)


logger = logging.getLogger(__name__)

POOR_SEED_PHRASES = (
    "all of the above",
    "none of the above",
    "both a and b",
    "option 1",
    "option one",
    "placeholder",
)
MIN_SEED_CHARS = 20


@dataclass(frozen=True)
class CurveballSpec:
    bloom: BloomCategory
    question_type: QuestionType
    difficulty: Difficulty
    seed_text: str


@dataclass
class MasteryUpdate:
    idea_id: str
    book_id: str
    previous_level: MasteryLevel
    level: MasteryLevel
    review_state: Optional[ReviewState]

    @property
    def advanced(self) -> bool:
        return self.level > self.previous_level


def is_poor_seed(text: str) -> bool:
    trimmed = text.strip()
    if len(trimmed) < MIN_SEED_CHARS:
        return True
    lowered = trimmed.lower()
    return any(phrase in lowered for phrase in POOR_SEED_PHRASES)


class CurveballPolicy:
    """Decides when a mastered idea is re-checked and what the check targets."""

    def __init__(self, delay_days: int = 3, recheck_days: int = 5) -> None:
        self.delay = timedelta(days=delay_days)
        self.recheck = timedelta(days=recheck_days)

    def due_at(self, record: CoverageRecord, now: datetime) -> Optional[datetime]:
        if record.mastery_level is not MasteryLevel.MASTERED:
            return None
        if record.curveball_due_at is None:
            record.curveball_due_at = (record.mastered_at or now) + self.delay
        return record.curveball_due_at

    def is_due(self, record: CoverageRecord, now: datetime) -> bool:
        due = self.due_at(record, now)
        return due is not None and due <= now

    def select_spec(self, record: CoverageRecord, idea_title: str) -> CurveballSpec:
        """No mistakes: a how-wield open-ended check. Otherwise the most retried category."""

        bloom, question_type = BloomCategory.HOW_WIELD, QuestionType.OPEN_ENDED
        if record.mistakes_count:
            missed = record.most_retried_concept()
            if missed is not None:
                bloom = missed.bloom_category
                if bloom in (BloomCategory.HOW_WIELD, BloomCategory.REFRAME):
                    question_type = QuestionType.OPEN_ENDED
                else:
                    question_type = QuestionType.SINGLE_CHOICE

        fallback = f"Curveball validation for {idea_title}"
        seed = record.latest_missed_text(bloom) or fallback
        if is_poor_seed(seed):
            seed = fallback
        return CurveballSpec(bloom, question_type, Difficulty.HARD, seed)


class MasteryTracker:
    """Owns ``CoverageRecord`` and ``ReviewState``; serialises updates per (idea, book)."""

    def __init__(
        self,
        coverage: CoverageRepository,
        ideas: IdeaRepository,
        queue: ReviewQueueManager,
        *,
        policy: Optional[CurveballPolicy] = None,
        partial_advance_threshold: float = 0.5,
        scheduler_parameters: SchedulerParameters = DEFAULT_PARAMETERS,
    ) -> None:
        self._coverage = coverage
        self._ideas = ideas
        self._queue = queue
        self._policy = policy or CurveballPolicy()
        self._partial_advance_threshold = partial_advance_threshold
        self._scheduler_parameters = scheduler_parameters
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock(self, idea_id: str, book_id: str) -> asyncio.Lock:
        key = (idea_id, book_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _load(self, idea_id: str, book_id: str) -> CoverageRecord:
        # A missing record is a first exposure.
        return self._coverage.load_coverage(idea_id, book_id) or CoverageRecord(idea_id=idea_id, book_id=book_id)

    async def coverage(self, idea_id: str, book_id: str) -> CoverageRecord:
        async with self._lock(idea_id, book_id):
            return self._load(idea_id, book_id)

    async def current_mastery(self, idea_id: str, book_id: str) -> MasteryLevel:
        async with self._lock(idea_id, book_id):
            return self._load(idea_id, book_id).mastery_level

    def _next_level(
        self, previous: MasteryLevel, correct: int, total: int, test_type: TestType, retry_count: int
    ) -> MasteryLevel:
        if correct == total:
            if test_type in (TestType.INITIAL, TestType.MIXED) and retry_count == 0:
                return MasteryLevel.MASTERED
            return MasteryLevel(min(previous + 1, MasteryLevel.MASTERED))
        if correct / total >= self._partial_advance_threshold and previous < MasteryLevel.INTERMEDIATE:
            return MasteryLevel(previous + 1)
        return previous

    async def update_from_responses(
        self,
        idea_id: str,
        book_id: str,
        questions: Sequence[Question],
        responses: Sequence[Response],
        *,
        test_type: TestType,
        retry_count: int = 0,
        now: Optional[datetime] = None,
    ) -> MasteryUpdate:
        """Apply graded responses: coverage tallies, one mastery transition and a scheduler step."""

        now = now or utcnow()
        by_id = {question.id: question for question in questions}
        graded = [(by_id[r.question_id], r) for r in responses if r.question_id in by_id]

        async with self._lock(idea_id, book_id):
            record = self._load(idea_id, book_id)
            previous = record.mastery_level
            if not graded:
                return MasteryUpdate(idea_id, book_id, previous, previous, record.review_state)

            for question, response in graded:
                record.record_response(
                    bloom_category=question.bloom_category,
                    concept=question.concept,
                    question_id=str(question.id),
                    question_text=question.text,
                    is_correct=response.is_correct,
                    now=now,
                )

            correct = sum(1 for _, response in graded if response.is_correct)
            total = len(graded)
            level = max(previous, self._next_level(previous, correct, total, test_type, retry_count))
            record.mastery_level = level
            if level is MasteryLevel.MASTERED and previous is not MasteryLevel.MASTERED:
                record.mastered_at = now
                record.curveball_due_at = now + self._policy.delay

            performance = performance_from_score(correct, total)
            record.review_state = next_review(record.review_state, performance, now, self._scheduler_parameters)
            METRICS.record_fsrs_outcome(int(performance), record.review_state.interval_days)

            self._coverage.save_coverage(record)
            self._sync_idea(idea_id, level, now)

        if level != previous:
            logger.info("Mastery for idea %s in book %s: %d -> %d", idea_id, book_id, previous, level)
        return MasteryUpdate(idea_id, book_id, previous, level, record.review_state)

    async def mark_curveball_result(
        self,
        idea_id: str,
        book_id: str,
        passed: bool,
        *,
        item: Optional[ReviewQueueItem] = None,
        question: Optional[Question] = None,
        now: Optional[datetime] = None,
    ) -> MasteryLevel:
        """Pass resets the re-check timer; failure demotes one step and requeues the item."""

        now = now or utcnow()
        async with self._lock(idea_id, book_id):
            record = self._load(idea_id, book_id)
            if question is not None:
                record.record_response(
                    bloom_category=question.bloom_category,
                    concept=question.concept,
                    question_id=str(question.id),
                    question_text=question.text,
                    is_correct=passed,
                    now=now,
                )
            if passed:
                record.curveball_passed_at = now
                record.curveball_due_at = now + self._policy.recheck
            else:
                record.mastery_level = MasteryLevel(max(record.mastery_level - 1, MasteryLevel.UNSTARTED))
                record.curveball_due_at = None
                record.mastered_at = None
            self._coverage.save_coverage(record)
            self._sync_idea(idea_id, record.mastery_level, now)
            level = record.mastery_level

        METRICS.record_curveball(passed)
        logger.info(
            "Curveball for idea %s in book %s %s; mastery now %d",
            idea_id,
            book_id,
            "passed" if passed else "failed",
            level,
        )
        if not passed and item is not None:
            self._queue.requeue_as_mistake(item, now=now)
        return level

    async def ensure_curveballs_queued(self, book_id: str, now: Optional[datetime] = None) -> List[ReviewQueueItem]:
        """Queue at most one pending curveball per mastered idea whose re-check is due."""

        now = now or utcnow()
        queued: List[ReviewQueueItem] = []
        for snapshot in self._coverage.list_coverage(book_id):
            if snapshot.mastery_level is not MasteryLevel.MASTERED:
                continue
            async with self._lock(snapshot.idea_id, book_id):
                record = self._load(snapshot.idea_id, book_id)
                scheduled = record.curveball_due_at
                if not self._policy.is_due(record, now):
                    if scheduled is None and record.curveball_due_at is not None:
                        self._coverage.save_coverage(record)
                    continue
                if self._queue.select_curveball_items(book_id, idea_id=record.idea_id):
                    continue
                try:
                    idea = self._ideas.get_idea(record.idea_id)
                except RecordNotFound:
                    logger.warning("Skipping curveball for unknown idea %s", record.idea_id)
                    continue
                spec = self._policy.select_spec(record, idea.title)
                item = self._queue.enqueue(
                    ReviewQueueItem(
                        idea_id=idea.id,
                        idea_title=idea.title,
                        book_id=book_id,
                        book_title=idea.book_title,
                        question_type=spec.question_type,
                        difficulty=spec.difficulty,
                        bloom_category=spec.bloom,
                        original_question_text=spec.seed_text,
                        added_at=now,
                        is_curveball=True,
                    )
                )
                self._coverage.save_coverage(record)
                queued.append(item)
        if queued:
            logger.info("Queued %d curveballs for book %s", len(queued), book_id)
        return queued

    async def ensure_due_reviews_queued(self, book_id: str, now: Optional[datetime] = None) -> List[ReviewQueueItem]:
        """Queue one follow-up per idea whose scheduled review is due, unless one is already pending.

        The follow-up is an open-ended hard check on the most retried category,
        or a reframe when the idea has no recorded mistakes.
        """

        now = now or utcnow()
        queued: List[ReviewQueueItem] = []
        for snapshot in self._coverage.list_coverage(book_id):
            if snapshot.review_state is None or not is_review_due(snapshot.review_state, now):
                continue
            async with self._lock(snapshot.idea_id, book_id):
                record = self._load(snapshot.idea_id, book_id)
                if record.review_state is None or not is_review_due(record.review_state, now):
                    continue
                if self._queue.select_due_review_items(book_id, idea_id=record.idea_id):
                    continue
                try:
                    idea = self._ideas.get_idea(record.idea_id)
                except RecordNotFound:
                    logger.warning("Skipping due review for unknown idea %s", record.idea_id)
                    continue
                missed = record.most_retried_concept() if record.mistakes_count else None
                bloom = missed.bloom_category if missed is not None else BloomCategory.REFRAME
                item = self._queue.enqueue(
                    ReviewQueueItem(
                        idea_id=idea.id,
                        idea_title=idea.title,
                        book_id=book_id,
                        book_title=idea.book_title,
                        question_type=QuestionType.OPEN_ENDED,
                        difficulty=Difficulty.HARD,
                        bloom_category=bloom,
                        original_question_text=f"Spaced follow-up for {idea.title}",
                        added_at=now,
                        is_due_review=True,
                    )
                )
                queued.append(item)
        if queued:
            logger.info("Queued %d due reviews for book %s", len(queued), book_id)
        return queued

    def _sync_idea(self, idea_id: str, level: MasteryLevel, now: datetime) -> None:
        try:
            idea = self._ideas.get_idea(idea_id)
        except RecordNotFound:
            return
        self._ideas.save_idea(idea.model_copy(update={"mastery_level": level, "last_practiced": now}))


__all__ = [
    "CurveballPolicy",
    "CurveballSpec",
    "MasteryTracker",
    "MasteryUpdate",
    "is_poor_seed",
]
