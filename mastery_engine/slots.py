"""Fixed eight-slot blueprint every initial test must satisfy."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .models import BloomCategory, Difficulty, QuestionType


@dataclass(frozen=True)
class Slot:
    index: int
    bloom: BloomCategory
    difficulty: Difficulty
    question_type: QuestionType

    @property
    def is_open_ended(self) -> bool:
        return self.question_type is QuestionType.OPEN_ENDED

    def to_spec(self) -> dict:
        """Wire representation used in provider prompts."""

        return {
            "orderIndex": self.index,
            "type": self.question_type.value,
            "bloom": self.bloom.value,
            "difficulty": self.difficulty.value,
        }


# Open-ended items sit last within their difficulty band.
BLUEPRINT: Tuple[Slot, ...] = (
    Slot(0, BloomCategory.RECALL, Difficulty.EASY, QuestionType.SINGLE_CHOICE),
    Slot(1, BloomCategory.APPLY, Difficulty.EASY, QuestionType.SINGLE_CHOICE),
    Slot(2, BloomCategory.WHY_IMPORTANT, Difficulty.MEDIUM, QuestionType.SINGLE_CHOICE),
    Slot(3, BloomCategory.WHEN_USE, Difficulty.MEDIUM, QuestionType.SINGLE_CHOICE),
    Slot(4, BloomCategory.CONTRAST, Difficulty.MEDIUM, QuestionType.SINGLE_CHOICE),
    Slot(5, BloomCategory.REFRAME, Difficulty.MEDIUM, QuestionType.OPEN_ENDED),
    Slot(6, BloomCategory.CRITIQUE, Difficulty.HARD, QuestionType.SINGLE_CHOICE),
    Slot(7, BloomCategory.HOW_WIELD, Difficulty.HARD, QuestionType.OPEN_ENDED),
)

SLOT_COUNT = len(BLUEPRINT)
OPEN_ENDED_SLOTS = frozenset(slot.index for slot in BLUEPRINT if slot.is_open_ended)


def blueprint() -> Tuple[Slot, ...]:
    return BLUEPRINT


def slot_for(index: int) -> Slot:
    if not 0 <= index < SLOT_COUNT:
        raise IndexError(f"Slot index {index} outside 0-{SLOT_COUNT - 1}")
    return BLUEPRINT[index]


def is_open_ended_slot(index: int) -> bool:
    return slot_for(index).is_open_ended


__all__ = ["BLUEPRINT", "OPEN_ENDED_SLOTS", "SLOT_COUNT", "Slot", "blueprint", "is_open_ended_slot", "slot_for"]
