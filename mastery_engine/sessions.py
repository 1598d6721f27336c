"""Session orchestrator: composes, persists, reuses and completes practice sessions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from .assembly import ContentAssembler
from .evaluation import Answer, EvaluationProvider, GradedAttempt, grade_attempt
from .mastery import MasteryTracker, MasteryUpdate
from .models import (
    Attempt,
    Idea,
    MasteryLevel,
    MasteryOutcome,
    PracticeSession,
    Question,
    QuestionType,
    ReviewQueueItem,
    SessionStatus,
    Test,
    TestType,
    utcnow,
)
from .repositories import RecordNotFound, StudyStore
from .review_queue import ReviewQueueManager


logger = logging.getLogger(__name__)


def presentation_key(question: Question) -> Tuple[int, int]:
    """Easy before medium before hard; open-ended last within its band."""

    return question.difficulty.rank, int(question.type is QuestionType.OPEN_ENDED)


def order_for_presentation(fresh: Sequence[Question], review: Sequence[Question]) -> List[Question]:
    ordered = sorted(fresh, key=presentation_key) + sorted(review, key=presentation_key)
    return [question.model_copy(update={"order_index": index}) for index, question in enumerate(ordered)]


@dataclass
class PreparedSession:
    session: PracticeSession
    test: Test
    questions: List[Question]
    reused: bool = False

    def is_review(self, question: Question) -> bool:
        return question.source_queue_item_id is not None


@dataclass
class SessionResult:
    attempt: Attempt
    graded: GradedAttempt
    mistakes_queued: int
    review_items_completed: int
    mastery_updates: Dict[str, MasteryUpdate] = field(default_factory=dict)
    curveball_levels: Dict[str, MasteryLevel] = field(default_factory=dict)

    @property
    def mastery_levels(self) -> Dict[str, MasteryLevel]:
        levels = {idea_id: update.level for idea_id, update in self.mastery_updates.items()}
        levels.update(self.curveball_levels)
        return levels


class SessionOrchestrator:
    """Assembles one day's practice from fresh, review and curveball material."""

    def __init__(
        self,
        store: StudyStore,
        assembler: ContentAssembler,
        evaluator: EvaluationProvider,
        queue: ReviewQueueManager,
        mastery: MasteryTracker,
        *,
        max_curveballs: int = 1,
        max_due_reviews: int = 1,
    ) -> None:
        self._store = store
        self._assembler = assembler
        self._evaluator = evaluator
        self._queue = queue
        self._mastery = mastery
        self._max_curveballs = max_curveballs
        self._max_due_reviews = max_due_reviews
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock(self, idea_id: str, book_id: str) -> asyncio.Lock:
        key = (idea_id, book_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _load(self, session: PracticeSession, reused: bool) -> PreparedSession:
        test = self._store.get_test(session.test_id)
        return PreparedSession(session, test, self._store.get_questions(test.id), reused=reused)

    def _idea_for_item(self, item: ReviewQueueItem) -> Idea:
        try:
            return self._store.get_idea(item.idea_id)
        except RecordNotFound:
            return Idea(id=item.idea_id, title=item.idea_title, book_id=item.book_id, book_title=item.book_title)

    def _idea_for_question(self, question: Question, items: Dict[UUID, ReviewQueueItem]) -> Idea:
        item = items.get(question.source_queue_item_id) if question.source_queue_item_id else None
        if item is not None:
            return self._idea_for_item(item)
        return self._store.get_idea(question.idea_id)

    async def prepare_session(
        self, idea_id: str, book_id: str, now: Optional[datetime] = None
    ) -> PreparedSession:
        """Return the ready session for the idea, composing and persisting one if needed."""

        now = now or utcnow()
        async with self._lock(idea_id, book_id):
            existing = self._store.find_ready_session(idea_id, book_id)
            if existing is not None:
                logger.info("Reusing ready session %s for idea %s", existing.id, idea_id)
                return self._load(existing, reused=True)

            idea = self._store.get_idea(idea_id)
            await self._mastery.ensure_curveballs_queued(book_id, now=now)
            await self._mastery.ensure_due_reviews_queued(book_id, now=now)

            fresh = await self._assembler.assemble_initial(idea)
            selection = self._queue.select_daily_items(book_id)
            due_reviews = self._queue.select_due_review_items(book_id, limit=self._max_due_reviews)
            curveballs = self._queue.select_curveball_items(book_id, limit=self._max_curveballs)
            review_items = selection.items + due_reviews + curveballs

            review: List[Question] = []
            for item in review_items:
                review.append(await self._assembler.regenerate_from_queue_item(self._idea_for_item(item), item))

            questions = order_for_presentation(fresh, review)
            test = Test(
                idea_id=idea.id,
                book_id=book_id,
                book_title=idea.book_title,
                test_type=TestType.MIXED if review else TestType.INITIAL,
                created_at=now,
                question_ids=[q.id for q in questions],
            )
            questions = [q.model_copy(update={"test_id": test.id}) for q in questions]
            self._store.save_test(test, questions)

            session = PracticeSession(
                idea_id=idea.id,
                book_id=book_id,
                test_id=test.id,
                fresh_question_count=len(fresh),
                review_item_ids=[item.id for item in review_items],
                created_at=now,
                updated_at=now,
            )
            self._store.save_session(session)
            logger.info(
                "Prepared session %s for idea %s: %d fresh, %d review, %d due, %d curveball",
                session.id,
                idea.id,
                len(fresh),
                len(selection),
                len(due_reviews),
                len(curveballs),
            )
            return PreparedSession(session, test, questions)

    async def refresh(self, session_id: UUID, now: Optional[datetime] = None) -> PreparedSession:
        """Discard a ready session and compose a new one."""

        now = now or utcnow()
        session = self._store.get_session(session_id)
        async with self._lock(session.idea_id, session.book_id):
            session = self._store.get_session(session_id)
            if session.status is not SessionStatus.READY:
                raise ValueError(f"Session {session_id} is {session.status.value}; only ready sessions can be refreshed")
            self._store.save_session(session.model_copy(update={"status": SessionStatus.EXPIRED, "updated_at": now}))
            self._store.delete_test(session.test_id)
        logger.info("Refreshed session %s for idea %s", session_id, session.idea_id)
        return await self.prepare_session(session.idea_id, session.book_id, now=now)

    async def prepare_retry(self, attempt_id: UUID, now: Optional[datetime] = None) -> PreparedSession:
        """Compose a retry test with one regenerated question per missed question."""

        now = now or utcnow()
        attempt = self._store.get_attempt(attempt_id)
        original = self._store.get_test(attempt.test_id)
        questions = {q.id: q for q in self._store.get_questions(original.id)}
        missed = [
            questions[r.question_id]
            for r in self._store.get_responses(attempt_id)
            if not r.is_correct and r.question_id in questions and questions[r.question_id].idea_id == original.idea_id
        ]
        if not missed:
            raise ValueError(f"Attempt {attempt_id} has no mistakes to retry")

        idea = self._store.get_idea(original.idea_id)
        regenerated = await self._assembler.generate_retry_questions(idea, missed)
        ordered = order_for_presentation(regenerated, [])
        test = Test(
            idea_id=idea.id,
            book_id=original.book_id,
            book_title=original.book_title,
            test_type=TestType.RETRY,
            created_at=now,
            question_ids=[q.id for q in ordered],
        )
        ordered = [q.model_copy(update={"test_id": test.id}) for q in ordered]
        async with self._lock(idea.id, original.book_id):
            self._store.save_test(test, ordered)
            session = PracticeSession(
                idea_id=idea.id,
                book_id=original.book_id,
                test_id=test.id,
                fresh_question_count=len(ordered),
                created_at=now,
                updated_at=now,
            )
            self._store.save_session(session)
        logger.info("Prepared retry session %s with %d questions for idea %s", session.id, len(ordered), idea.id)
        return PreparedSession(session, test, ordered)

    async def complete_session(
        self,
        session_id: UUID,
        answers: Dict[UUID, Answer],
        *,
        retry_count: int = 0,
        now: Optional[datetime] = None,
    ) -> SessionResult:
        """Grade the attempt and route outcomes to the queue and mastery components.

        The status check and the COMPLETED write happen under the session's
        (idea, book) lock, so a session is completed at most once. Grading
        failures leave the session ready.
        """

        now = now or utcnow()
        session = self._store.get_session(session_id)
        async with self._lock(session.idea_id, session.book_id):
            session = self._store.get_session(session_id)
            if session.status is not SessionStatus.READY:
                raise ValueError(f"Session {session_id} is {session.status.value} and cannot be completed")
            test = self._store.get_test(session.test_id)
            questions = self._store.get_questions(test.id)
            idea = self._store.get_idea(session.idea_id)

            attempt = Attempt(test_id=test.id, started_at=session.created_at, retry_count=retry_count)
            graded = await grade_attempt(idea, questions, answers, attempt.id, self._evaluator, now=now)
            attempt = attempt.model_copy(
                update={"score": graded.score, "is_complete": True, "completed_at": now}
            )
            self._store.save_attempt(attempt, graded.responses)
            self._store.save_session(session.model_copy(update={"status": SessionStatus.COMPLETED, "updated_at": now}))

            result = await self._route_outcomes(session, idea, test, questions, attempt, graded, retry_count, now)
        logger.info(
            "Completed session %s: %d/%d points, %d mistakes queued",
            session_id,
            graded.score,
            graded.max_score,
            result.mistakes_queued,
        )
        return result

    async def _route_outcomes(
        self,
        session: PracticeSession,
        idea: Idea,
        test: Test,
        questions: List[Question],
        attempt: Attempt,
        graded: GradedAttempt,
        retry_count: int,
        now: datetime,
    ) -> SessionResult:
        review_items = {item.id: item for item in self._store.get_items(session.review_item_ids)}
        completed = self._queue.mark_completed(review_items.values(), now=now)
        self._queue.purge_completed(now=now)

        responses = {r.question_id: r for r in graded.responses}
        groups: Dict[str, List[Question]] = {}
        curveball_questions: List[Question] = []
        for question in questions:
            if question.is_curveball:
                curveball_questions.append(question)
            else:
                groups.setdefault(question.idea_id, []).append(question)

        mistakes = 0
        updates: Dict[str, MasteryUpdate] = {}
        for group_idea_id, group in groups.items():
            group_responses = [responses[q.id] for q in group]
            group_idea = idea if group_idea_id == idea.id else self._idea_for_question(group[0], review_items)
            mistakes += len(self._queue.record_mistakes(group_idea, group, group_responses, now=now))
            test_type = test.test_type if group_idea_id == idea.id else TestType.REVIEW
            updates[group_idea_id] = await self._mastery.update_from_responses(
                group_idea_id,
                group_idea.book_id,
                group,
                group_responses,
                test_type=test_type,
                retry_count=retry_count,
                now=now,
            )

        curveball_levels: Dict[str, MasteryLevel] = {}
        for question in curveball_questions:
            item = review_items.get(question.source_queue_item_id)
            book_id = item.book_id if item else session.book_id
            passed = responses[question.id].is_correct
            curveball_levels[question.idea_id] = await self._mastery.mark_curveball_result(
                question.idea_id, book_id, passed, item=item, question=question, now=now
            )
            if not passed:
                mistakes += 1

        primary = updates.get(idea.id)
        if primary is not None and primary.level is MasteryLevel.MASTERED and graded.correct_count == len(questions):
            attempt = attempt.model_copy(update={"mastery_outcome": MasteryOutcome.ACHIEVED})
            self._store.save_attempt(attempt, graded.responses)

        return SessionResult(attempt, graded, mistakes, completed, updates, curveball_levels)


__all__ = [
    "PreparedSession",
    "SessionOrchestrator",
    "SessionResult",
    "order_for_presentation",
    "presentation_key",
]
