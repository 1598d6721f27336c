import json

import pytest

from factories import OPTIONS, batch_payload
from mastery_engine.models import QuestionType
from mastery_engine.slots import BLUEPRINT, Slot, slot_for
from mastery_engine.validators import (
    InvalidOptionSet,
    MalformedBatchShape,
    SlotMismatch,
    decode_json_object,
    normalize_option,
    sanitize_option,
    validate_batch,
    validate_single,
)


def test_valid_batch_is_returned_in_slot_order():
    payload = batch_payload()
    payload["questions"].reverse()

    items = validate_batch(json.dumps(payload), BLUEPRINT)

    assert [item.order_index for item in items] == list(range(8))
    for item, slot in zip(items, BLUEPRINT):
        assert (item.question_type, item.bloom, item.difficulty) == (
            slot.question_type,
            slot.bloom,
            slot.difficulty,
        )
        if slot.is_open_ended:
            assert item.options is None and item.correct is None
        else:
            assert len(item.options) == 4 and item.correct == [0]


def test_missing_slot_is_malformed():
    with pytest.raises(MalformedBatchShape):
        validate_batch(batch_payload(drop=5), BLUEPRINT)


def test_duplicate_index_is_malformed():
    payload = batch_payload()
    payload["questions"][5]["orderIndex"] = 4
    with pytest.raises(MalformedBatchShape):
        validate_batch(payload, BLUEPRINT)


def test_extra_item_is_malformed():
    payload = batch_payload()
    payload["questions"].append(dict(payload["questions"][0]))
    with pytest.raises(MalformedBatchShape):
        validate_batch(payload, BLUEPRINT)


def test_declared_type_must_match_slot():
    payload = batch_payload(overrides={5: {"type": "single-choice", "options": list(OPTIONS), "correct": [0]}})
    with pytest.raises(SlotMismatch):
        validate_batch(payload, BLUEPRINT)


def test_declared_difficulty_must_match_slot():
    with pytest.raises(SlotMismatch):
        validate_batch(batch_payload(overrides={0: {"difficulty": "hard"}}), BLUEPRINT)


def test_unknown_bloom_is_slot_mismatch():
    with pytest.raises(SlotMismatch):
        validate_batch(batch_payload(overrides={0: {"bloom": "memorise"}}), BLUEPRINT)


def test_open_ended_item_must_not_carry_options():
    with pytest.raises(InvalidOptionSet):
        validate_batch(batch_payload(overrides={7: {"options": list(OPTIONS), "correct": [0]}}), BLUEPRINT)


def test_empty_question_text_is_rejected():
    with pytest.raises(MalformedBatchShape):
        validate_batch(batch_payload(overrides={3: {"question": "   "}}), BLUEPRINT)


@pytest.mark.parametrize(
    "options",
    [
        ["Spacing", "spacing.", "Cramming", "Rereading"],
        ["Spacing", "Cramming", "Rereading", "All of the above"],
        ["Spacing", "Cramming", "Rereading", "None of the above"],
        ["Spacing", "Cramming", "Rereading", "Both A and B"],
        ["Spacing", "Cramming", "Rereading", "Neither of these"],
        ["Spacing", "Cramming", "Rereading", "Option 4"],
        ["Spacing", "Cramming", "Rereading"],
    ],
)
def test_unusable_option_sets_are_rejected(options):
    with pytest.raises(InvalidOptionSet):
        validate_batch(batch_payload(overrides={0: {"options": options}}), BLUEPRINT)


@pytest.mark.parametrize("correct", [[], [4], [0, 1], [-1]])
def test_single_choice_needs_one_in_range_correct_index(correct):
    with pytest.raises(InvalidOptionSet):
        validate_batch(batch_payload(overrides={1: {"correct": correct}}), BLUEPRINT)


def test_label_prefixes_are_stripped_from_options():
    labelled = [f"{label} {text}" for label, text in zip(["A.", "(b)", "3)", "Option D:"], OPTIONS)]
    items = validate_batch(batch_payload(overrides={0: {"options": labelled}}), BLUEPRINT)
    assert items[0].options == OPTIONS


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("A. Spacing effect", "Spacing effect"),
        ("(c) Interleaving", "Interleaving"),
        ("option 2: Retrieval", "Retrieval"),
        ("A habit loop", "A habit loop"),
        ("Desirable difficulty", "Desirable difficulty"),
    ],
)
def test_sanitize_option(raw, expected):
    assert sanitize_option(raw) == expected


def test_normalize_option_ignores_case_and_punctuation():
    assert normalize_option("  Spaced   Practice! ") == normalize_option("spaced practice")


def test_decode_tolerates_prose_around_json():
    raw = 'Here you go:\n{"question": "What is spacing?"}\nHope that helps.'
    assert decode_json_object(raw) == {"question": "What is spacing?"}


@pytest.mark.parametrize("raw", ["not json at all", "[1, 2, 3]", '{"question": '])
def test_decode_rejects_non_objects(raw):
    with pytest.raises(MalformedBatchShape):
        decode_json_object(raw)


def test_validate_single_accepts_open_ended():
    item = validate_single('{"question": "Explain it in your own words."}', slot_for(5))
    assert item.question_type is QuestionType.OPEN_ENDED
    assert item.order_index == 5


def test_validate_single_multi_choice_needs_two_or_three_correct():
    target = Slot(0, slot_for(0).bloom, slot_for(0).difficulty, QuestionType.MULTI_CHOICE)
    good = validate_single({"question": "Which apply?", "options": list(OPTIONS), "correct": [0, 2]}, target)
    assert good.correct == [0, 2]
    with pytest.raises(InvalidOptionSet):
        validate_single({"question": "Which apply?", "options": list(OPTIONS), "correct": [1]}, target)
    with pytest.raises(InvalidOptionSet):
        validate_single({"question": "Which apply?", "options": list(OPTIONS), "correct": [0, 1, 2, 3]}, target)


def test_validate_single_missing_question_is_malformed():
    with pytest.raises(MalformedBatchShape):
        validate_single({"options": list(OPTIONS), "correct": [0]}, slot_for(0))
