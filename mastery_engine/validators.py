"""Validation utilities for generated question content prior to assembly."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from .models import (
    BatchedQuestionPayload,
    BloomCategory,
    Difficulty,
    QuestionType,
    SingleQuestionPayload,
)
from .slots import SLOT_COUNT, Slot


BANNED_OPTION_PATTERNS = (
    re.compile(r"\ball of the above\b"),
    re.compile(r"\bnone of the above\b"),
    re.compile(r"^both\b.+\band\b"),
    re.compile(r"^neither\b"),
)
LABEL_PREFIX_PATTERNS = (
    re.compile(r"^\s*\(\s*([A-Da-d]|[1-4])\s*\)\s*"),
    re.compile(r"^\s*([A-Da-d]|[1-4])\s*[.:)\-]\s+"),
    re.compile(r"^\s*option\s*([A-Da-d]|[1-4])\s*[.:)\-]?\s+", re.IGNORECASE),
)
LABEL_ONLY_OPTIONS = frozenset(
    ["a", "b", "c", "d", "1", "2", "3", "4"]
    + [f"option {label}" for label in ("a", "b", "c", "d", "1", "2", "3", "4")]
)
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


class ValidationError(ValueError):
    """Raised when generated content fails validation."""


class MalformedBatchShape(ValidationError):
    """Provider output could not be decoded or has the wrong number or indices of items."""


class SlotMismatch(ValidationError):
    """An item's declared type, bloom or difficulty differs from its slot."""


class InvalidOptionSet(ValidationError):
    """Options or correct indices of a choice question are unusable."""


@dataclass
class ValidatedItem:
    order_index: int
    question_type: QuestionType
    bloom: BloomCategory
    difficulty: Difficulty
    text: str
    options: Optional[List[str]] = None
    correct: Optional[List[int]] = None


def sanitize_option(option: str) -> str:
    """Strip leading ``A.`` / ``(b)`` / ``Option 3:`` style labels."""

    output = option.strip()
    for _ in range(2):
        previous = output
        for pattern in LABEL_PREFIX_PATTERNS:
            stripped = pattern.sub("", output, count=1)
            if stripped != output:
                output = stripped.strip()
                break
        if output == previous:
            break
    return output


def normalize_option(option: str) -> str:
    lowered = re.sub(r"[^a-z0-9 ]", "", option.lower().strip())
    return re.sub(r"\s+", " ", lowered).strip()


def decode_json_object(raw: Union[str, dict]) -> dict:
    """Decode provider output, tolerating prose around a single JSON object."""

    if isinstance(raw, dict):
        return raw
    text = raw.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = JSON_OBJECT_PATTERN.search(text)
        if not match:
            raise MalformedBatchShape("Provider returned no JSON object") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise MalformedBatchShape(f"Provider returned malformed JSON: {exc}") from None
    if not isinstance(data, dict):
        raise MalformedBatchShape("Provider JSON must be an object")
    return data


def _assert_text(text: str, context: str) -> str:
    cleaned = text.strip()
    if not cleaned:
        raise MalformedBatchShape(f"Empty question text in {context}")
    return cleaned


def _assert_open_ended(options: Optional[Sequence[str]], correct: Optional[Sequence[int]], context: str) -> None:
    if options or correct:
        raise InvalidOptionSet(f"Open-ended item in {context} must not include options or correct answers")


def _assert_option_set(
    options: Optional[Sequence[str]],
    correct: Optional[Sequence[int]],
    question_type: QuestionType,
    context: str,
) -> List[str]:
    if options is None or len(options) != 4:
        raise InvalidOptionSet(f"{context} must have exactly 4 options")
    if not correct:
        raise InvalidOptionSet(f"{context} is missing correct answers")
    if question_type is QuestionType.SINGLE_CHOICE and len(correct) != 1:
        raise InvalidOptionSet(f"{context} must have exactly one correct index")
    if question_type is QuestionType.MULTI_CHOICE and not 2 <= len(correct) <= 3:
        raise InvalidOptionSet(f"{context} must have two or three correct indices")
    if len(set(correct)) != len(correct) or any(index < 0 or index > 3 for index in correct):
        raise InvalidOptionSet(f"{context} correct index out of range")

    sanitized = [sanitize_option(option) for option in options]
    normalized = [normalize_option(option) for option in sanitized]
    for original, norm in zip(options, normalized):
        if not norm:
            raise InvalidOptionSet(f"{context} has an empty option")
        if norm in LABEL_ONLY_OPTIONS:
            raise InvalidOptionSet(f"{context} has label-only option '{original}'")
        for pattern in BANNED_OPTION_PATTERNS:
            if pattern.search(norm):
                raise InvalidOptionSet(f"{context} has disallowed option '{original}'")
    if len(set(normalized)) != len(normalized):
        raise InvalidOptionSet(f"{context} has duplicate options")
    return sanitized


def _parse_enum(enum_cls: Any, value: str, context: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        raise SlotMismatch(f"Unknown {enum_cls.__name__} '{value}' in {context}") from None


def validate_batch(raw: Union[str, dict], slots: Sequence[Slot]) -> List[ValidatedItem]:
    """Validate a batched response against the full blueprint, ordered by slot index."""

    data = decode_json_object(raw)
    try:
        payload = BatchedQuestionPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise MalformedBatchShape(f"Batched payload does not match schema: {exc}") from None

    if len(payload.questions) != SLOT_COUNT:
        raise MalformedBatchShape(f"Expected {SLOT_COUNT} questions, got {len(payload.questions)}")
    indices = [item.order_index for item in payload.questions]
    expected = {slot.index for slot in slots}
    if len(set(indices)) != len(indices) or set(indices) != expected:
        raise MalformedBatchShape(f"Slot indices mismatch; expected {sorted(expected)}, got {sorted(indices)}")

    by_index = {slot.index: slot for slot in slots}
    validated: List[ValidatedItem] = []
    for item in sorted(payload.questions, key=lambda entry: entry.order_index):
        slot = by_index[item.order_index]
        context = f"slot {slot.index}"
        question_type = _parse_enum(QuestionType, item.type, context)
        bloom = _parse_enum(BloomCategory, item.bloom, context)
        difficulty = _parse_enum(Difficulty, item.difficulty, context)
        if (question_type, bloom, difficulty) != (slot.question_type, slot.bloom, slot.difficulty):
            raise SlotMismatch(f"{context} declared {item.type}/{item.bloom}/{item.difficulty}")
        validated.append(_validate_item_body(slot, item.question, item.options, item.correct, context))
    return validated


def validate_single(raw: Union[str, dict], target: Slot) -> ValidatedItem:
    """Validate a single-question response against one target shape."""

    data = decode_json_object(raw)
    try:
        payload = SingleQuestionPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise MalformedBatchShape(f"Single-question payload does not match schema: {exc}") from None
    return _validate_item_body(target, payload.question, payload.options, payload.correct, f"slot {target.index}")


def _validate_item_body(
    slot: Slot,
    text: str,
    options: Optional[Sequence[str]],
    correct: Optional[Sequence[int]],
    context: str,
) -> ValidatedItem:
    cleaned = _assert_text(text, context)
    if slot.is_open_ended:
        _assert_open_ended(options, correct, context)
        return ValidatedItem(slot.index, slot.question_type, slot.bloom, slot.difficulty, cleaned)
    sanitized = _assert_option_set(options, correct, slot.question_type, context)
    return ValidatedItem(
        slot.index,
        slot.question_type,
        slot.bloom,
        slot.difficulty,
        cleaned,
        options=sanitized,
        correct=list(correct or []),
    )


__all__ = [
    "InvalidOptionSet",
    "MalformedBatchShape",
    "SlotMismatch",
    "ValidatedItem",
    "ValidationError",
    "decode_json_object",
    "normalize_option",
    "sanitize_option",
    "validate_batch",
    "validate_single",
]
