import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from factories import blueprint_questions, question_for, queue_item, response_for
from mastery_engine.domain import CoverageRecord
from mastery_engine.mastery import CurveballPolicy, MasteryTracker, is_poor_seed
from mastery_engine.models import BloomCategory, Difficulty, MasteryLevel, QuestionType, TestType
from mastery_engine.slots import slot_for


def graded(questions, wrong=()):
    attempt_id = uuid4()
    return [response_for(q, attempt_id, correct=q.order_index not in wrong) for q in questions]


async def apply(mastery, idea, now, wrong=(), test_type=TestType.INITIAL, retry_count=0):
    questions = blueprint_questions(idea.id)
    return await mastery.update_from_responses(
        idea.id,
        idea.book_id,
        questions,
        graded(questions, wrong),
        test_type=test_type,
        retry_count=retry_count,
        now=now,
    )


@pytest.mark.asyncio
async def test_clean_first_attempt_masters_the_idea(idea, mastery, store, now):
    update = await apply(mastery, idea, now)

    assert update.previous_level is MasteryLevel.UNSTARTED
    assert update.level is MasteryLevel.MASTERED
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.mastered_at == now
    assert record.curveball_due_at == now + timedelta(days=3)
    assert record.coverage_percentage == 100.0
    assert store.get_idea(idea.id).mastery_level is MasteryLevel.MASTERED
    assert store.get_idea(idea.id).last_practiced == now


@pytest.mark.asyncio
async def test_two_mistakes_advance_at_most_one_step(idea, mastery, queue, now):
    questions = blueprint_questions(idea.id)
    responses = graded(questions, wrong=(2, 6))

    created = queue.record_mistakes(idea, questions, responses, now=now)
    update = await mastery.update_from_responses(
        idea.id, idea.book_id, questions, responses, test_type=TestType.INITIAL, now=now
    )

    assert len(created) == 2
    assert update.level is MasteryLevel.BASIC
    assert update.level - update.previous_level <= 1


@pytest.mark.asyncio
async def test_partial_credit_stops_at_intermediate(idea, mastery, now):
    levels = []
    for day in range(4):
        update = await apply(mastery, idea, now + timedelta(days=day), wrong=(0, 1))
        levels.append(update.level)

    assert levels == [
        MasteryLevel.BASIC,
        MasteryLevel.INTERMEDIATE,
        MasteryLevel.INTERMEDIATE,
        MasteryLevel.INTERMEDIATE,
    ]


@pytest.mark.asyncio
async def test_poor_attempts_never_regress_mastery(idea, mastery, now):
    await apply(mastery, idea, now, wrong=(0,))
    await apply(mastery, idea, now + timedelta(days=1), wrong=(0,))
    assert await mastery.current_mastery(idea.id, idea.book_id) is MasteryLevel.INTERMEDIATE

    update = await apply(mastery, idea, now + timedelta(days=2), wrong=tuple(range(8)))

    assert update.level is MasteryLevel.INTERMEDIATE
    assert not update.advanced


@pytest.mark.asyncio
async def test_clean_retry_advances_one_step(idea, mastery, now):
    await apply(mastery, idea, now, wrong=(3, 4, 5, 6, 7))

    update = await apply(mastery, idea, now + timedelta(hours=1), test_type=TestType.RETRY, retry_count=1)

    assert update.previous_level is MasteryLevel.UNSTARTED
    assert update.level is MasteryLevel.BASIC


@pytest.mark.asyncio
async def test_update_steps_the_review_state(idea, mastery, now):
    first = await apply(mastery, idea, now)
    second = await apply(mastery, idea, now + timedelta(days=3))

    assert first.review_state.repetition_count == 1
    assert second.review_state.repetition_count == 2
    assert second.review_state.next_review > first.review_state.next_review


@pytest.mark.asyncio
async def test_update_without_matching_responses_changes_nothing(idea, mastery, store, now):
    update = await mastery.update_from_responses(
        idea.id, idea.book_id, blueprint_questions(idea.id), [], test_type=TestType.INITIAL, now=now
    )

    assert update.level is MasteryLevel.UNSTARTED
    assert store.load_coverage(idea.id, idea.book_id) is None


@pytest.mark.asyncio
async def test_missed_concepts_are_tracked_and_corrected(idea, mastery, store, now):
    await apply(mastery, idea, now, wrong=(6,))
    record = store.load_coverage(idea.id, idea.book_id)
    assert [m.concept for m in record.missed_concepts] == ["critique-hard"]
    assert not record.missed_concepts[0].is_corrected

    await apply(mastery, idea, now + timedelta(days=1))
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.missed_concepts[0].is_corrected
    assert record.mistakes_corrected == 1


@pytest.mark.asyncio
async def test_failed_curveball_demotes_and_queues_a_mistake(idea, mastery, queue, store, now):
    await apply(mastery, idea, now)
    curveball = queue.enqueue(
        queue_item(
            idea,
            now + timedelta(days=3),
            question_type=QuestionType.OPEN_ENDED,
            bloom=BloomCategory.HOW_WIELD,
            difficulty=Difficulty.HARD,
            is_curveball=True,
        )
    )

    level = await mastery.mark_curveball_result(
        idea.id, idea.book_id, False, item=curveball, now=now + timedelta(days=3)
    )

    assert level is MasteryLevel.INTERMEDIATE
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.curveball_due_at is None and record.mastered_at is None
    pending = queue.select_daily_items(idea.book_id).items
    assert len(pending) == 1
    assert not pending[0].is_curveball
    assert pending[0].concept == curveball.concept


@pytest.mark.asyncio
async def test_passed_curveball_resets_the_recheck_timer(idea, mastery, store, now):
    await apply(mastery, idea, now)
    later = now + timedelta(days=3)
    question = question_for(slot_for(7), idea.id, difficulty=Difficulty.HARD, is_curveball=True)

    level = await mastery.mark_curveball_result(idea.id, idea.book_id, True, question=question, now=later)

    assert level is MasteryLevel.MASTERED
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.curveball_passed_at == later
    assert record.curveball_due_at == later + timedelta(days=5)
    assert record.correct_by_category[BloomCategory.HOW_WIELD.value] == 2


@pytest.mark.asyncio
async def test_curveball_is_queued_once_when_due(idea, mastery, queue, now):
    await apply(mastery, idea, now)

    assert await mastery.ensure_curveballs_queued(idea.book_id, now=now + timedelta(days=1)) == []
    queued = await mastery.ensure_curveballs_queued(idea.book_id, now=now + timedelta(days=3))
    again = await mastery.ensure_curveballs_queued(idea.book_id, now=now + timedelta(days=4))

    assert len(queued) == 1
    assert again == []
    item = queued[0]
    assert item.is_curveball
    assert item.question_type is QuestionType.OPEN_ENDED
    assert item.bloom_category is BloomCategory.HOW_WIELD
    assert item.difficulty is Difficulty.HARD
    assert item.original_question_text == "Curveball validation for Desirable difficulties"
    assert queue.select_daily_items(idea.book_id).items == []


@pytest.mark.asyncio
async def test_mastery_with_custom_policy(idea, store, queue, now):
    tracker = MasteryTracker(store, store, queue, policy=CurveballPolicy(delay_days=0))
    await apply(tracker, idea, now)

    queued = await tracker.ensure_curveballs_queued(idea.book_id, now=now)

    assert len(queued) == 1


@pytest.mark.asyncio
async def test_due_review_is_queued_once_when_the_schedule_comes_due(idea, mastery, queue, now):
    update = await apply(mastery, idea, now, wrong=(6,))
    due_at = update.review_state.next_review

    assert await mastery.ensure_due_reviews_queued(idea.book_id, now=due_at - timedelta(hours=1)) == []
    queued = await mastery.ensure_due_reviews_queued(idea.book_id, now=due_at)
    again = await mastery.ensure_due_reviews_queued(idea.book_id, now=due_at + timedelta(days=1))

    assert len(queued) == 1
    assert again == []
    item = queued[0]
    assert item.is_due_review and not item.is_curveball
    assert item.question_type is QuestionType.OPEN_ENDED
    assert item.bloom_category is BloomCategory.CRITIQUE
    assert item.difficulty is Difficulty.HARD
    assert item.original_question_text == "Spaced follow-up for Desirable difficulties"
    assert [i.id for i in queue.select_due_review_items(idea.book_id)] == [item.id]
    assert queue.select_daily_items(idea.book_id).items == []


@pytest.mark.asyncio
async def test_due_review_without_mistakes_is_a_reframe(idea, mastery, now):
    update = await apply(mastery, idea, now)

    queued = await mastery.ensure_due_reviews_queued(idea.book_id, now=update.review_state.next_review)

    assert [(i.idea_id, i.bloom_category) for i in queued] == [(idea.id, BloomCategory.REFRAME)]


@pytest.mark.asyncio
async def test_concurrent_updates_for_one_idea_are_serialised(idea, mastery, store, now):
    await asyncio.gather(
        apply(mastery, idea, now, wrong=(1,)),
        apply(mastery, idea, now + timedelta(minutes=1), wrong=(6,)),
    )

    record = store.load_coverage(idea.id, idea.book_id)
    assert record.total_seen == 16
    assert record.mistakes_count == 2
    assert record.review_state.review_count == 2


@pytest.mark.asyncio
async def test_concurrent_curveball_result_and_update_keep_both_writes(idea, mastery, store, now):
    await apply(mastery, idea, now)
    later = now + timedelta(days=3)
    curveball = question_for(slot_for(7), is_curveball=True)

    levels = await asyncio.gather(
        mastery.mark_curveball_result(idea.id, idea.book_id, False, question=curveball, now=later),
        apply(mastery, idea, later, wrong=(1,), test_type=TestType.REVIEW),
    )

    assert levels[0] is MasteryLevel.INTERMEDIATE
    assert levels[1].level is MasteryLevel.INTERMEDIATE
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.total_seen == 8 + 1 + 8
    assert record.mastery_level is MasteryLevel.INTERMEDIATE
    assert record.review_state.review_count == 2


def test_curveball_spec_targets_most_retried_category(now):
    record = CoverageRecord(idea_id="idea-1", book_id="book-1", mastery_level=MasteryLevel.MASTERED)
    for _ in range(2):
        record.record_response(
            bloom_category=BloomCategory.CONTRAST,
            concept="contrast-medium",
            question_id="q-1",
            question_text="How does desirable difficulty differ from plain struggle?",
            is_correct=False,
            now=now,
        )
    record.record_response(
        bloom_category=BloomCategory.REFRAME,
        concept="reframe-medium",
        question_id="q-2",
        question_text="Explain it simply.",
        is_correct=False,
        now=now,
    )

    spec = CurveballPolicy().select_spec(record, "Desirable difficulties")

    assert spec.bloom is BloomCategory.CONTRAST
    assert spec.question_type is QuestionType.SINGLE_CHOICE
    assert spec.difficulty is Difficulty.HARD
    assert spec.seed_text == "How does desirable difficulty differ from plain struggle?"


def test_curveball_spec_replaces_poor_seed(now):
    record = CoverageRecord(idea_id="idea-1", book_id="book-1", mastery_level=MasteryLevel.MASTERED)
    record.record_response(
        bloom_category=BloomCategory.HOW_WIELD,
        concept="howWield-hard",
        question_id="q-1",
        question_text="Option 1",
        is_correct=False,
        now=now,
    )

    spec = CurveballPolicy().select_spec(record, "Interleaving")

    assert spec.question_type is QuestionType.OPEN_ENDED
    assert spec.seed_text == "Curveball validation for Interleaving"


@pytest.mark.parametrize(
    "text, poor",
    [
        ("short", True),
        ("Which of these is true? All of the above", True),
        ("Pick the placeholder answer from the list", True),
        ("How would you apply spacing to learning a new language?", False),
    ],
)
def test_is_poor_seed(text, poor):
    assert is_poor_seed(text) is poor
