"""Turn provider output into validated, slot-conformant questions."""
from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from . import prompts
from .metrics import METRICS
from .models import BloomCategory, Idea, Question, QuestionType, ReviewQueueItem
from .providers import ContentProvider, ProviderUnavailable
from .slots import SLOT_COUNT, Slot, blueprint
from .validators import ValidatedItem, ValidationError, validate_batch, validate_single


logger = logging.getLogger(__name__)


class ExhaustedRetries(RuntimeError):
    """Every retry and fallback failed; no partial result is returned."""

    def __init__(self, message: str, reasons: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.reasons: List[str] = list(reasons or [])


def shuffle_options(
    options: Sequence[str], correct: Sequence[int], rng: random.Random
) -> Tuple[List[str], List[int]]:
    """Fisher-Yates shuffle of options, remapping the correct indices."""

    order = list(range(len(options)))
    for i in range(len(order) - 1, 0, -1):
        j = rng.randint(0, i)
        order[i], order[j] = order[j], order[i]
    shuffled = [options[source] for source in order]
    remapped = sorted(order.index(index) for index in correct)
    return shuffled, remapped


def _reason(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class GenerationStrategy(ABC):
    """One way of filling a set of slots for an idea."""

    name = "strategy"

    @abstractmethod
    async def generate(self, idea: Idea, slots: Sequence[Slot]) -> List[ValidatedItem]:
        """Return one validated item per slot or raise ``ExhaustedRetries``."""


class BatchedStrategy(GenerationStrategy):
    """Requests every slot in a single call, retrying the whole batch on failure."""

    name = "batched"

    def __init__(
        self,
        provider: ContentProvider,
        retries: int = 1,
        temperature: float = 0.7,
        max_tokens: int = 2400,
    ) -> None:
        self._provider = provider
        self._retries = retries
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def generate(self, idea: Idea, slots: Sequence[Slot]) -> List[ValidatedItem]:
        reasons: List[str] = []
        for attempt in range(self._retries + 1):
            METRICS.record_generation_attempt()
            try:
                raw = await self._provider.complete_json(
                    prompts.batch_system_prompt(),
                    prompts.batch_user_prompt(idea, slots),
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                )
                items = validate_batch(raw, slots)
            except (ValidationError, ProviderUnavailable) as exc:
                reasons.append(_reason(exc))
                METRICS.record_generation_failure(type(exc).__name__)
                logger.warning(
                    "Batched generation attempt %d for idea %s failed: %s", attempt + 1, idea.id, exc
                )
                continue
            METRICS.record_generation_success(len(items))
            return items
        raise ExhaustedRetries(f"Batched generation failed for idea {idea.id}", reasons)


class SequentialFallbackStrategy(GenerationStrategy):
    """Requests each slot on its own; slower but more reliable."""

    name = "sequential"

    def __init__(self, provider: ContentProvider, temperature: float = 0.7, max_tokens: int = 500) -> None:
        self._provider = provider
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def generate(self, idea: Idea, slots: Sequence[Slot]) -> List[ValidatedItem]:
        items: List[ValidatedItem] = []
        for slot in slots:
            METRICS.record_generation_attempt()
            try:
                raw = await self._provider.complete_json(
                    prompts.single_system_prompt(slot),
                    prompts.single_user_prompt(idea),
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                )
                item = validate_single(raw, slot)
            except (ValidationError, ProviderUnavailable) as exc:
                METRICS.record_generation_failure(type(exc).__name__)
                logger.error("Sequential generation of slot %d for idea %s failed: %s", slot.index, idea.id, exc)
                raise ExhaustedRetries(
                    f"Sequential generation failed at slot {slot.index} for idea {idea.id}",
                    [_reason(exc)],
                ) from exc
            METRICS.record_generation_success(1)
            items.append(item)
        return items


class ContentAssembler:
    """Runs generation strategies in order and builds ``Question`` values."""

    def __init__(
        self,
        provider: ContentProvider,
        *,
        strategies: Optional[Sequence[GenerationStrategy]] = None,
        batch_retries: int = 1,
        regeneration_retries: int = 1,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._provider = provider
        self._strategies: List[GenerationStrategy] = list(
            strategies
            if strategies is not None
            else [BatchedStrategy(provider, retries=batch_retries), SequentialFallbackStrategy(provider)]
        )
        if not self._strategies:
            raise ValueError("At least one generation strategy is required")
        self._regeneration_retries = regeneration_retries
        self._rng = rng or random.Random()

    async def assemble_initial(self, idea: Idea) -> List[Question]:
        """Return exactly eight validated questions in slot order."""

        slots = blueprint()
        reasons: List[str] = []
        items: Optional[List[ValidatedItem]] = None
        for position, strategy in enumerate(self._strategies):
            try:
                items = await strategy.generate(idea, slots)
                break
            except ExhaustedRetries as exc:
                reasons.extend(exc.reasons)
                if position + 1 < len(self._strategies):
                    METRICS.record_fallback()
                    logger.warning(
                        "Strategy %s exhausted for idea %s; falling back to %s",
                        strategy.name,
                        idea.id,
                        self._strategies[position + 1].name,
                    )
        if items is None:
            logger.error("Content assembly exhausted for idea %s after %d failures", idea.id, len(reasons))
            raise ExhaustedRetries(f"Could not assemble a test for idea {idea.id}", reasons)

        questions = [self._build_question(idea, item) for item in items]
        self._assert_conformance(questions, slots)
        return questions

    async def regenerate_from_queue_item(
        self, idea: Idea, item: ReviewQueueItem, order_index: int = 0
    ) -> Question:
        """Produce a fresh question testing the same concept as a queued item."""

        target = Slot(order_index, item.bloom_category, item.difficulty, item.question_type)
        if item.question_type is QuestionType.OPEN_ENDED:
            system = prompts.retrieval_system_prompt(idea, item.bloom_category)
            user = prompts.retrieval_user_prompt(idea, item.original_question_text)
            temperature, max_tokens = 0.6, 200
        else:
            system = prompts.regeneration_system_prompt(item)
            user = prompts.regeneration_user_prompt(idea)
            temperature, max_tokens = 0.8, 500

        reasons: List[str] = []
        for attempt in range(self._regeneration_retries + 1):
            METRICS.record_generation_attempt()
            try:
                raw = await self._provider.complete_json(
                    system, user, temperature=temperature, max_tokens=max_tokens
                )
                validated = validate_single(raw, target)
            except (ValidationError, ProviderUnavailable) as exc:
                reasons.append(_reason(exc))
                METRICS.record_generation_failure(type(exc).__name__)
                logger.warning("Regeneration attempt %d for queue item %s failed: %s", attempt + 1, item.id, exc)
                continue
            METRICS.record_generation_success(1)
            question = self._build_question(idea, validated, reframe_shortcut=False)
            return question.model_copy(
                update={"is_curveball": item.is_curveball, "source_queue_item_id": item.id}
            )
        raise ExhaustedRetries(f"Could not regenerate queue item {item.id}", reasons)

    async def generate_retry_questions(self, idea: Idea, missed: Sequence[Question]) -> List[Question]:
        """One regenerated question per missed question, same bloom, difficulty and type."""

        regenerated: List[Question] = []
        for position, question in enumerate(missed):
            template = ReviewQueueItem(
                idea_id=idea.id,
                idea_title=idea.title,
                book_id=idea.book_id,
                book_title=idea.book_title,
                question_type=question.type,
                difficulty=question.difficulty,
                bloom_category=question.bloom_category,
                original_question_text=question.text,
            )
            fresh = await self.regenerate_from_queue_item(idea, template, order_index=position)
            regenerated.append(fresh.model_copy(update={"source_queue_item_id": None}))
        return regenerated

    def _build_question(self, idea: Idea, item: ValidatedItem, reframe_shortcut: bool = True) -> Question:
        text = item.text
        if (
            reframe_shortcut
            and item.bloom is BloomCategory.REFRAME
            and item.question_type is QuestionType.OPEN_ENDED
        ):
            text = prompts.reframe_text(idea)

        options = item.options
        correct = item.correct
        if options is not None and correct is not None:
            options, correct = shuffle_options(options, correct, self._rng)
            if item.question_type is QuestionType.SINGLE_CHOICE:
                METRICS.record_answer_position(correct[0])

        return Question(
            idea_id=idea.id,
            type=item.question_type,
            difficulty=item.difficulty,
            bloom_category=item.bloom,
            text=text,
            options=options,
            correct_indices=correct,
            order_index=item.order_index,
        )

    @staticmethod
    def _assert_conformance(questions: Sequence[Question], slots: Sequence[Slot]) -> None:
        if len(questions) != SLOT_COUNT:
            raise ExhaustedRetries(f"Assembled {len(questions)} questions instead of {SLOT_COUNT}")
        for question, slot in zip(questions, slots):
            if (question.order_index, question.type, question.bloom_category, question.difficulty) != (
                slot.index,
                slot.question_type,
                slot.bloom,
                slot.difficulty,
            ):
                raise ExhaustedRetries(f"Assembled question does not match slot {slot.index}")


__all__ = [
    "BatchedStrategy",
    "ContentAssembler",
    "ExhaustedRetries",
    "GenerationStrategy",
    "SequentialFallbackStrategy",
    "shuffle_options",
]
