"""Grading of responses: deterministic for choice types, LLM-backed for open-ended."""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from . import prompts
from .models import Idea, OpenEndedGradePayload, Question, QuestionType, Response, utcnow
from .providers import ContentProvider, ProviderUnavailable
from .validators import MalformedBatchShape, decode_json_object


logger = logging.getLogger(__name__)

Answer = Union[int, List[int], str]

PLACEHOLDER_ANSWERS = frozenset(
    ["answer", "n/a", "na", "idk", "i don't know", "dont know", "i do not know", "?", "???", "...", "test", "placeholder"]
)
META_PHRASES = (
    "correct answer",
    "this answer is correct",
    "this response is correct",
    "perfect score",
    "full marks",
    "100/100",
    "10/10",
    "grade me",
    "grade this",
    "evaluate my answer",
    "evaluate this",
    "give me points",
    "award points",
    "as an ai",
    "as a language model",
    "rubric",
)
EVAL_TERMS = ("score", "points", "grade", "grading", "evaluate", "evaluation")
INCENTIVE_TERMS = ("give", "award", "deserve", "full", "perfect", "maximum", "100", "marks")
META_PROXIMITY_CHARS = 40
MIN_ANSWER_WORDS = 6
MIN_ANSWER_CHARS = 20


@dataclass
class Evaluation:
    is_correct: bool
    points_earned: int
    feedback: str = ""


def is_low_content(text: str) -> bool:
    trimmed = text.strip()
    if not trimmed:
        return True
    lowered = trimmed.lower()
    if lowered in PLACEHOLDER_ANSWERS:
        return True
    words = [w for w in re.split(r"[^a-z0-9]+", lowered) if w]
    return len(words) < MIN_ANSWER_WORDS or len(trimmed) < MIN_ANSWER_CHARS


def is_meta_gaming(text: str) -> bool:
    """Detect answers that talk about being scored instead of about the idea."""

    lowered = text.lower()
    if any(phrase in lowered for phrase in META_PHRASES):
        return True
    eval_positions = [
        m.start() for term in EVAL_TERMS for m in re.finditer(rf"\b{re.escape(term)}\b", lowered)
    ]
    if not eval_positions:
        return False
    incentive_positions = [m.start() for term in INCENTIVE_TERMS for m in re.finditer(re.escape(term), lowered)]
    return any(
        abs(left - right) <= META_PROXIMITY_CHARS for left in eval_positions for right in incentive_positions
    )


def evaluate_choice(question: Question, answer: Answer) -> Evaluation:
    """Grade a single- or multi-choice answer against the stored correct indices."""

    correct = list(question.correct_indices or [])
    points = question.difficulty.point_value

    if question.type is QuestionType.SINGLE_CHOICE:
        selected = answer[0] if isinstance(answer, list) and len(answer) == 1 else answer
        if isinstance(selected, bool) or not isinstance(selected, int) or not correct:
            return Evaluation(False, 0, "Invalid answer format")
        if selected == correct[0]:
            return Evaluation(True, points, "Correct! Well done.")
        return Evaluation(False, 0, f"The correct answer was: {question.options[correct[0]]}")

    if not isinstance(answer, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in answer):
        return Evaluation(False, 0, "Invalid answer format")
    correct_set, user_set = set(correct), set(answer)
    if correct_set == user_set:
        return Evaluation(True, points, "Perfect! All correct options selected.")
    hits = len(correct_set & user_set)
    wrong = len(user_set - correct_set)
    missed = len(correct_set - user_set)
    earned = int(points * (hits / len(correct_set)) * 0.5) if hits and not wrong else 0
    parts = []
    if hits:
        parts.append(f"Correct selections: {hits}")
    if wrong:
        parts.append(f"Incorrect selections: {wrong}")
    if missed:
        parts.append(f"Missed selections: {missed}")
    return Evaluation(False, earned, ". ".join(parts))


class EvaluationProvider(ABC):
    """Grades one response to one question."""

    @abstractmethod
    async def evaluate(self, idea: Idea, question: Question, answer: Answer) -> Evaluation:
        """Return correctness, points earned and feedback."""


class LLMEvaluationProvider(EvaluationProvider):
    """Choice questions graded locally; open-ended answers graded by the content provider."""

    def __init__(
        self,
        provider: ContentProvider,
        *,
        grader_model: Optional[str] = None,
        pass_ratio: float = 0.7,
    ) -> None:
        self._provider = provider
        self._grader_model = grader_model
        self._pass_ratio = pass_ratio

    async def evaluate(self, idea: Idea, question: Question, answer: Answer) -> Evaluation:
        if question.type.is_choice:
            return evaluate_choice(question, answer)
        if not isinstance(answer, str):
            return Evaluation(False, 0, "Invalid answer format")
        if is_low_content(answer):
            return Evaluation(False, 0, "Write a few full sentences about the idea itself.")
        if is_meta_gaming(answer):
            return Evaluation(False, 0, "Talk about the idea, not about how the answer should be scored.")

        raw = await self._provider.complete_json(
            prompts.grading_system_prompt(idea),
            prompts.grading_user_prompt(idea, question.text, answer),
            temperature=0.3,
            max_tokens=400,
            model=self._grader_model,
        )
        try:
            grade = OpenEndedGradePayload.model_validate(decode_json_object(raw))
        except (MalformedBatchShape, PydanticValidationError) as exc:
            raise ProviderUnavailable(f"Grader returned an unusable payload: {exc}") from exc

        ratio = grade.score_percentage / 100.0
        points = int(question.difficulty.point_value * ratio)
        return Evaluation(ratio >= self._pass_ratio, points, grade.feedback)


@dataclass
class GradedAttempt:
    responses: List[Response]
    score: int
    max_score: int
    correct_count: int


async def grade_attempt(
    idea: Idea,
    questions: Sequence[Question],
    answers: Dict[UUID, Answer],
    attempt_id: UUID,
    evaluator: EvaluationProvider,
    now: Optional[datetime] = None,
) -> GradedAttempt:
    """Grade every answered question; unanswered questions are recorded as incorrect."""

    now = now or utcnow()
    by_id = {question.id: question for question in questions}
    unknown = [qid for qid in answers if qid not in by_id]
    if unknown:
        raise ValueError(f"Answer submitted for unknown question {unknown[0]}")

    responses: List[Response] = []
    for question in questions:
        if question.id in answers:
            answer = answers[question.id]
            result = await evaluator.evaluate(idea, question, answer)
        else:
            answer = ""
            result = Evaluation(False, 0, "No answer submitted")
        responses.append(
            Response(
                attempt_id=attempt_id,
                question_id=question.id,
                user_answer=json.dumps(answer),
                is_correct=result.is_correct,
                points_earned=result.points_earned,
                answered_at=now,
                feedback=result.feedback,
            )
        )

    score = sum(r.points_earned for r in responses)
    max_score = sum(q.difficulty.point_value for q in questions)
    correct_count = sum(1 for r in responses if r.is_correct)
    logger.debug("Graded attempt %s: %d/%d points", attempt_id, score, max_score)
    return GradedAttempt(responses, score, max_score, correct_count)


__all__ = [
    "Evaluation",
    "EvaluationProvider",
    "GradedAttempt",
    "LLMEvaluationProvider",
    "evaluate_choice",
    "grade_attempt",
    "is_low_content",
    "is_meta_gaming",
]
