"""Repository interfaces for mastery engine persistent state."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from .domain import CoverageRecord
from .models import Attempt, Idea, PracticeSession, Question, Response, ReviewQueueItem, Test


class RecordNotFound(KeyError):
    """Raised when a requested entity does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Record not found"


class IdeaRepository(ABC):
    """Store the ideas extracted from books."""

    @abstractmethod
    def save_idea(self, idea: Idea) -> None:
        """Insert or replace an idea."""

    @abstractmethod
    def get_idea(self, idea_id: str) -> Idea:
        """Return the idea or raise ``RecordNotFound``."""


class TestRepository(ABC):
    """Persist tests together with their questions."""

    __test__ = False

    @abstractmethod
    def save_test(self, test: Test, questions: Sequence[Question]) -> None:
        """Write the test and every question atomically."""

    @abstractmethod
    def get_test(self, test_id: UUID) -> Test:
        """Return the test or raise ``RecordNotFound``."""

    @abstractmethod
    def get_questions(self, test_id: UUID) -> List[Question]:
        """Return the test's questions in presentation order."""

    @abstractmethod
    def delete_test(self, test_id: UUID) -> None:
        """Remove the test and its questions."""


class AttemptRepository(ABC):
    """Persist attempts and the responses recorded against them."""

    @abstractmethod
    def save_attempt(self, attempt: Attempt, responses: Sequence[Response]) -> None:
        """Write the attempt and its responses atomically."""

    @abstractmethod
    def get_attempt(self, attempt_id: UUID) -> Attempt:
        """Return the attempt or raise ``RecordNotFound``."""

    @abstractmethod
    def get_responses(self, attempt_id: UUID) -> List[Response]:
        """Return the responses of an attempt ordered by answer time."""


class ReviewQueueRepository(ABC):
    """Durable storage for review queue items."""

    @abstractmethod
    def add_items(self, items: Iterable[ReviewQueueItem]) -> None:
        """Insert new queue items."""

    @abstractmethod
    def update_items(self, items: Iterable[ReviewQueueItem]) -> None:
        """Replace stored items with the given versions."""

    @abstractmethod
    def get_items(self, item_ids: Iterable[UUID]) -> List[ReviewQueueItem]:
        """Return the items that exist among ``item_ids``."""

    @abstractmethod
    def list_items(
        self,
        *,
        book_id: Optional[str] = None,
        idea_id: Optional[str] = None,
        include_completed: bool = False,
    ) -> List[ReviewQueueItem]:
        """Return matching items ordered by ``added_at`` ascending."""

    @abstractmethod
    def delete_items(self, item_ids: Iterable[UUID]) -> int:
        """Physically delete items, returning how many were removed."""


class CoverageRepository(ABC):
    """Maintain the per-(idea, book) mastery and coverage record."""

    @abstractmethod
    def load_coverage(self, idea_id: str, book_id: str) -> Optional[CoverageRecord]:
        """Return the stored record, if present."""

    @abstractmethod
    def save_coverage(self, record: CoverageRecord) -> None:
        """Persist the record."""

    @abstractmethod
    def list_coverage(self, book_id: str) -> List[CoverageRecord]:
        """Return every record for a book."""


class SessionRepository(ABC):
    """Persist composed practice sessions for reuse."""

    @abstractmethod
    def save_session(self, session: PracticeSession) -> None:
        """Insert or replace a session."""

    @abstractmethod
    def get_session(self, session_id: UUID) -> PracticeSession:
        """Return the session or raise ``RecordNotFound``."""

    @abstractmethod
    def find_ready_session(self, idea_id: str, book_id: str) -> Optional[PracticeSession]:
        """Return the most recent ready session for the idea, if any."""


class StudyStore(
    IdeaRepository,
    TestRepository,
    AttemptRepository,
    ReviewQueueRepository,
    CoverageRepository,
    SessionRepository,
):
    """Every repository the engine needs, served by one backend."""


__all__ = [
    "AttemptRepository",
    "CoverageRepository",
    "IdeaRepository",
    "RecordNotFound",
    "ReviewQueueRepository",
    "SessionRepository",
    "StudyStore",
    "TestRepository",
]
