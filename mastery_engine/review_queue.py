"""Review queue manager: mistake capture, daily intake caps, completion and retention."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from .metrics import METRICS
from .models import Idea, Question, Response, ReviewQueueItem, utcnow
from .repositories import ReviewQueueRepository


logger = logging.getLogger(__name__)


@dataclass
class DailySelection:
    choice_items: List[ReviewQueueItem]
    open_ended_items: List[ReviewQueueItem]

    @property
    def items(self) -> List[ReviewQueueItem]:
        return self.choice_items + self.open_ended_items

    def __len__(self) -> int:
        return len(self.choice_items) + len(self.open_ended_items)


@dataclass
class QueueStatistics:
    total_choice: int
    total_open_ended: int
    total_curveball: int
    total_due_review: int = 0

    @property
    def has_pending(self) -> bool:
        return bool(self.total_choice or self.total_open_ended or self.total_curveball or self.total_due_review)


def _dedupe_key(item: ReviewQueueItem) -> Tuple[str, str]:
    return item.idea_id, item.concept


class ReviewQueueManager:
    """Owns the lifecycle of ``ReviewQueueItem`` records."""

    def __init__(
        self,
        repository: ReviewQueueRepository,
        *,
        choice_cap: int = 3,
        open_cap: int = 1,
        retention_days: int = 30,
    ) -> None:
        self._repository = repository
        self._choice_cap = choice_cap
        self._open_cap = open_cap
        self._retention = timedelta(days=retention_days)

    def record_mistakes(
        self,
        idea: Idea,
        questions: Sequence[Question],
        responses: Sequence[Response],
        now: Optional[datetime] = None,
    ) -> List[ReviewQueueItem]:
        """Queue one item per incorrect response; safe to call again for the same attempt."""

        now = now or utcnow()
        by_id = {question.id: question for question in questions}
        existing = self._repository.list_items(idea_id=idea.id, include_completed=True)
        seen_responses: Set[UUID] = {item.source_response_id for item in existing if item.source_response_id}

        created: List[ReviewQueueItem] = []
        for response in responses:
            if response.is_correct or response.id in seen_responses:
                continue
            question = by_id.get(response.question_id)
            if question is None:
                raise ValueError(f"Response {response.id} refers to unknown question {response.question_id}")
            created.append(
                ReviewQueueItem(
                    idea_id=idea.id,
                    idea_title=idea.title,
                    book_id=idea.book_id,
                    book_title=idea.book_title,
                    question_type=question.type,
                    difficulty=question.difficulty,
                    bloom_category=question.bloom_category,
                    original_question_text=question.text,
                    added_at=now,
                    source_response_id=response.id,
                )
            )
            seen_responses.add(response.id)

        if created:
            self._repository.add_items(created)
            METRICS.record_mistakes(len(created))
            logger.info("Queued %d mistakes for idea %s", len(created), idea.id)
        return created

    def select_daily_items(self, book_id: str) -> DailySelection:
        """Oldest pending mistakes, at most ``choice_cap`` choice and ``open_cap`` open-ended.

        Items sharing an (idea, concept) pair are collapsed to the oldest one.
        """

        pending = self._repository.list_items(book_id=book_id)
        used: Set[Tuple[str, str]] = set()
        choice: List[ReviewQueueItem] = []
        open_ended: List[ReviewQueueItem] = []
        for item in pending:
            if item.is_curveball or item.is_due_review or item.is_completed:
                continue
            key = _dedupe_key(item)
            if key in used:
                continue
            if item.question_type.is_choice:
                if len(choice) >= self._choice_cap:
                    continue
                choice.append(item)
            else:
                if len(open_ended) >= self._open_cap:
                    continue
                open_ended.append(item)
            used.add(key)
        logger.debug(
            "Daily review selection for book %s: %d choice, %d open-ended", book_id, len(choice), len(open_ended)
        )
        return DailySelection(choice, open_ended)

    def select_curveball_items(
        self, book_id: str, *, idea_id: Optional[str] = None, limit: int = 1
    ) -> List[ReviewQueueItem]:
        """Pending curveball items, oldest first; never part of the daily cap."""

        pending = self._repository.list_items(book_id=book_id, idea_id=idea_id)
        return [item for item in pending if item.is_curveball][:limit]

    def select_due_review_items(
        self, book_id: str, *, idea_id: Optional[str] = None, limit: int = 1
    ) -> List[ReviewQueueItem]:
        """Pending follow-ups for ideas whose scheduled review has come due."""

        pending = self._repository.list_items(book_id=book_id, idea_id=idea_id)
        return [item for item in pending if item.is_due_review][:limit]

    def enqueue(self, item: ReviewQueueItem) -> ReviewQueueItem:
        self._repository.add_items([item])
        return item

    def requeue_as_mistake(self, item: ReviewQueueItem, now: Optional[datetime] = None) -> ReviewQueueItem:
        """Turn a failed curveball into an ordinary pending mistake."""

        mistake = ReviewQueueItem(
            idea_id=item.idea_id,
            idea_title=item.idea_title,
            book_id=item.book_id,
            book_title=item.book_title,
            question_type=item.question_type,
            difficulty=item.difficulty,
            bloom_category=item.bloom_category,
            original_question_text=item.original_question_text,
            added_at=now or utcnow(),
        )
        self._repository.add_items([mistake])
        METRICS.record_mistakes(1)
        logger.info("Requeued failed curveball %s as mistake %s", item.id, mistake.id)
        return mistake

    def mark_completed(self, items: Iterable[ReviewQueueItem], now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        updated = [
            item.model_copy(update={"is_completed": True, "completed_at": now})
            for item in items
            if not item.is_completed
        ]
        if updated:
            self._repository.update_items(updated)
            logger.info("Marked %d review items as completed", len(updated))
        return len(updated)

    def purge_completed(self, now: Optional[datetime] = None) -> int:
        """Delete completed items whose retention window has elapsed."""

        cutoff = (now or utcnow()) - self._retention
        expired = [
            item.id
            for item in self._repository.list_items(include_completed=True)
            if item.is_completed and item.completed_at is not None and item.completed_at <= cutoff
        ]
        removed = self._repository.delete_items(expired) if expired else 0
        if removed:
            logger.info("Purged %d completed review items", removed)
        return removed

    def queue_statistics(self, book_id: str) -> QueueStatistics:
        pending = self._repository.list_items(book_id=book_id)
        curveballs = sum(1 for item in pending if item.is_curveball)
        due_reviews = sum(1 for item in pending if item.is_due_review)
        mistakes = [item for item in pending if not item.is_curveball and not item.is_due_review]
        choice = sum(1 for item in mistakes if item.question_type.is_choice)
        return QueueStatistics(choice, len(mistakes) - choice, curveballs, due_reviews)


__all__ = ["DailySelection", "QueueStatistics", "ReviewQueueManager"]
