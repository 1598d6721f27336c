"""Pydantic models for the mastery engine."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestionType(str, Enum):
    """Answer format of a question."""

    SINGLE_CHOICE = "single-choice"
    MULTI_CHOICE = "multi-choice"
    OPEN_ENDED = "open-ended"

    @property
    def is_choice(self) -> bool:
        return self is not QuestionType.OPEN_ENDED


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

    @property
    def point_value(self) -> int:
        return _POINT_VALUES[self]

    @property
    def rank(self) -> int:
        return _DIFFICULTY_RANK[self]


_POINT_VALUES: Dict[Difficulty, int] = {
    Difficulty.EASY: 10,
    Difficulty.MEDIUM: 15,
    Difficulty.HARD: 25,
}
_DIFFICULTY_RANK: Dict[Difficulty, int] = {
    Difficulty.EASY: 0,
    Difficulty.MEDIUM: 1,
    Difficulty.HARD: 2,
}


class BloomCategory(str, Enum):
    """Cognitive skill a question targets."""

    RECALL = "recall"
    REFRAME = "reframe"
    APPLY = "apply"
    CONTRAST = "contrast"
    CRITIQUE = "critique"
    WHY_IMPORTANT = "whyImportant"
    WHEN_USE = "whenUse"
    HOW_WIELD = "howWield"

    @property
    def description(self) -> str:
        return _BLOOM_DESCRIPTIONS[self]


_BLOOM_DESCRIPTIONS: Dict[BloomCategory, str] = {
    BloomCategory.RECALL: "Recognize or identify key aspects of the idea",
    BloomCategory.REFRAME: "Explain the idea in your own words",
    BloomCategory.APPLY: "Use the idea in a real-life context or scenario",
    BloomCategory.CONTRAST: "Compare this idea with other related concepts",
    BloomCategory.CRITIQUE: "Evaluate the flaws, limitations, or edge cases",
    BloomCategory.WHY_IMPORTANT: "Understand why this idea matters and its significance",
    BloomCategory.WHEN_USE: "Identify when and where to apply this idea effectively",
    BloomCategory.HOW_WIELD: "Master how to use this idea skillfully and effectively",
}


class TestType(str, Enum):
    __test__ = False

    INITIAL = "initial"
    REVIEW = "review"
    RETRY = "retry"
    MIXED = "mixed"


class MasteryOutcome(str, Enum):
    NONE = "none"
    ACHIEVED = "achieved"


class MasteryLevel(IntEnum):
    UNSTARTED = 0
    BASIC = 1
    INTERMEDIATE = 2
    MASTERED = 3


class Performance(IntEnum):
    """Discrete review grade fed to the scheduler."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


class SessionStatus(str, Enum):
    READY = "ready"
    COMPLETED = "completed"
    EXPIRED = "expired"


def concept_key(bloom: BloomCategory, difficulty: Difficulty) -> str:
    """Key identifying the concept a question tests, e.g. ``critique-hard``."""

    return f"{bloom.value}-{difficulty.value}"


class Idea(BaseModel):
    """A single concept extracted from a book."""

    id: str
    title: str
    description: str = ""
    book_id: str
    book_title: str
    mastery_level: MasteryLevel = MasteryLevel.UNSTARTED
    last_practiced: Optional[datetime] = None
    current_level: Optional[int] = None


class Question(BaseModel):
    """A validated question; choice types always carry four options."""

    id: UUID = Field(default_factory=uuid4)
    idea_id: str
    test_id: Optional[UUID] = None
    type: QuestionType
    difficulty: Difficulty
    bloom_category: BloomCategory
    text: str
    options: Optional[List[str]] = None
    correct_indices: Optional[List[int]] = None
    order_index: int = 0
    is_curveball: bool = False
    source_queue_item_id: Optional[UUID] = None

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Question text must be non-empty")
        return value

    @model_validator(mode="after")
    def validate_shape(self) -> "Question":
        if self.type is QuestionType.OPEN_ENDED:
            if self.options is not None or self.correct_indices is not None:
                raise ValueError("Open-ended questions may not define options or correct answers")
            return self
        if not self.options or len(self.options) != 4:
            raise ValueError("Choice questions require exactly four options")
        correct = self.correct_indices or []
        if len(set(correct)) != len(correct) or any(i < 0 or i > 3 for i in correct):
            raise ValueError("Correct indices must be distinct and within 0-3")
        if self.type is QuestionType.SINGLE_CHOICE and len(correct) != 1:
            raise ValueError("Single-choice questions require exactly one correct index")
        if self.type is QuestionType.MULTI_CHOICE and not 2 <= len(correct) <= 3:
            raise ValueError("Multi-choice questions require two or three correct indices")
        return self

    @property
    def concept(self) -> str:
        return concept_key(self.bloom_category, self.difficulty)


class Test(BaseModel):
    """An ordered set of questions; questions are referenced by id only."""

    __test__ = False

    id: UUID = Field(default_factory=uuid4)
    idea_id: str
    book_id: str
    book_title: str
    test_type: TestType
    created_at: datetime = Field(default_factory=utcnow)
    question_ids: List[UUID] = Field(default_factory=list)


class Attempt(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    test_id: UUID
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    is_complete: bool = False
    score: int = 0
    retry_count: int = 0
    mastery_outcome: MasteryOutcome = MasteryOutcome.NONE


class Response(BaseModel):
    """A learner's answer; ``user_answer`` holds the JSON-serialised answer."""

    id: UUID = Field(default_factory=uuid4)
    attempt_id: UUID
    question_id: UUID
    user_answer: str
    is_correct: bool = False
    points_earned: int = 0
    answered_at: datetime = Field(default_factory=utcnow)
    feedback: Optional[str] = None


class ReviewQueueItem(BaseModel):
    """A missed concept waiting to be re-tested."""

    id: UUID = Field(default_factory=uuid4)
    idea_id: str
    idea_title: str
    book_id: str
    book_title: str
    question_type: QuestionType
    difficulty: Difficulty
    bloom_category: BloomCategory
    original_question_text: str
    added_at: datetime = Field(default_factory=utcnow)
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    is_curveball: bool = False
    is_due_review: bool = False
    source_response_id: Optional[UUID] = None

    @property
    def concept(self) -> str:
        return concept_key(self.bloom_category, self.difficulty)


class PracticeSession(BaseModel):
    """A persisted, reusable composition of one day's practice."""

    id: UUID = Field(default_factory=uuid4)
    idea_id: str
    book_id: str
    status: SessionStatus = SessionStatus.READY
    test_id: UUID
    fresh_question_count: int
    review_item_ids: List[UUID] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# region Content provider payloads
class BatchedQuestionItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_index: int = Field(alias="orderIndex")
    type: str
    bloom: str
    difficulty: str
    question: str
    options: Optional[List[str]] = None
    correct: Optional[List[int]] = None


class BatchedQuestionPayload(BaseModel):
    questions: List[BatchedQuestionItem]


class SingleQuestionPayload(BaseModel):
    question: str
    options: Optional[List[str]] = None
    correct: Optional[List[int]] = None


class OpenEndedGradePayload(BaseModel):
    score_percentage: int = Field(ge=0, le=100)
    feedback: str = ""


# endregion


# region HTTP bodies
class PrepareSessionRequest(BaseModel):
    idea_id: str
    book_id: str


class QuestionView(BaseModel):
    id: UUID
    type: QuestionType
    difficulty: Difficulty
    bloom_category: BloomCategory
    text: str
    options: Optional[List[str]] = None
    order_index: int
    is_review: bool = False


class SessionResponse(BaseModel):
    session_id: UUID
    status: SessionStatus
    test_id: UUID
    test_type: TestType
    questions: List[QuestionView]


class AnswerSubmission(BaseModel):
    question_id: UUID
    answer: Union[int, List[int], str]


class CompleteSessionRequest(BaseModel):
    answers: List[AnswerSubmission]
    retry_count: int = 0

    @field_validator("answers")
    @classmethod
    def validate_answers(cls, value: List[AnswerSubmission]) -> List[AnswerSubmission]:
        if not value:
            raise ValueError("At least one answer must be submitted")
        return value


class CompleteSessionResponse(BaseModel):
    attempt_id: UUID
    score: int
    max_score: int
    correct_count: int
    total_questions: int
    mastery_outcome: MasteryOutcome
    mistakes_queued: int
    review_items_completed: int
    mastery_levels: Dict[str, MasteryLevel]


class ReviewStatsResponse(BaseModel):
    book_id: str
    total_choice: int
    total_open_ended: int
    total_curveball: int
    total_due_review: int = 0


class MasteryResponse(BaseModel):
    idea_id: str
    book_id: str
    mastery_level: MasteryLevel
    coverage_percentage: float
    next_review_at: Optional[datetime] = None


# endregion


__all__ = [
    "Attempt",
    "BatchedQuestionItem",
    "BatchedQuestionPayload",
    "BloomCategory",
    "CompleteSessionRequest",
    "CompleteSessionResponse",
    "Difficulty",
    "Idea",
    "MasteryLevel",
    "MasteryOutcome",
    "MasteryResponse",
    "OpenEndedGradePayload",
    "Performance",
    "PracticeSession",
    "PrepareSessionRequest",
    "Question",
    "QuestionType",
    "QuestionView",
    "Response",
    "ReviewQueueItem",
    "ReviewStatsResponse",
    "SessionResponse",
    "SessionStatus",
    "SingleQuestionPayload",
    "Test",
    "TestType",
    "concept_key",
    "utcnow",
]
