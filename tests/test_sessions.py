import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from factories import (
    ScriptedProvider,
    answers_for,
    batch_payload,
    blueprint_questions,
    question_for,
    queue_item,
    response_for,
)
from mastery_engine.assembly import ContentAssembler, ExhaustedRetries
from mastery_engine.evaluation import LLMEvaluationProvider
from mastery_engine.models import (
    BloomCategory,
    Difficulty,
    MasteryLevel,
    MasteryOutcome,
    QuestionType,
    SessionStatus,
    TestType,
)
from mastery_engine.providers import ProviderUnavailable
from mastery_engine.repositories import RecordNotFound
from mastery_engine.scheduler import is_review_due
from mastery_engine.sessions import SessionOrchestrator, SessionResult, order_for_presentation
from mastery_engine.slots import slot_for


async def master(mastery, idea, now):
    questions = blueprint_questions(idea.id)
    attempt_id = uuid4()
    await mastery.update_from_responses(
        idea.id,
        idea.book_id,
        questions,
        [response_for(q, attempt_id, correct=True) for q in questions],
        test_type=TestType.INITIAL,
        now=now,
    )


def test_order_for_presentation_puts_review_after_fresh():
    fresh = [question_for(slot_for(i)) for i in (7, 0, 5, 2)]
    review = [
        question_for(slot_for(6), "idea-2"),
        question_for(slot_for(1), "idea-2"),
    ]

    ordered = order_for_presentation(fresh, review)

    assert [(q.bloom_category, q.order_index) for q in ordered] == [
        (BloomCategory.RECALL, 0),
        (BloomCategory.WHY_IMPORTANT, 1),
        (BloomCategory.REFRAME, 2),
        (BloomCategory.HOW_WIELD, 3),
        (BloomCategory.APPLY, 4),
        (BloomCategory.CRITIQUE, 5),
    ]


@pytest.mark.asyncio
async def test_prepare_session_persists_an_initial_test(idea, orchestrator, store, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)

    assert not prepared.reused
    assert prepared.session.status is SessionStatus.READY
    assert prepared.test.test_type is TestType.INITIAL
    assert len(prepared.questions) == 8
    assert [q.order_index for q in prepared.questions] == list(range(8))
    assert [q.type for q in prepared.questions].count(QuestionType.OPEN_ENDED) == 2
    assert not any(prepared.is_review(q) for q in prepared.questions)
    stored = store.get_questions(prepared.test.id)
    assert [q.id for q in stored] == [q.id for q in prepared.questions]
    assert all(q.test_id == prepared.test.id for q in stored)


@pytest.mark.asyncio
async def test_ready_session_is_reused(idea, orchestrator, provider, now):
    first = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    calls = len(provider.calls)

    second = await orchestrator.prepare_session(idea.id, idea.book_id, now=now + timedelta(hours=2))

    assert second.reused
    assert second.session.id == first.session.id
    assert [q.id for q in second.questions] == [q.id for q in first.questions]
    assert len(provider.calls) == calls


@pytest.mark.asyncio
async def test_refresh_discards_the_ready_session(idea, orchestrator, store, now):
    first = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)

    refreshed = await orchestrator.refresh(first.session.id, now=now + timedelta(minutes=1))

    assert refreshed.session.id != first.session.id
    assert store.get_session(first.session.id).status is SessionStatus.EXPIRED
    with pytest.raises(RecordNotFound):
        store.get_test(first.test.id)
    assert store.find_ready_session(idea.id, idea.book_id).id == refreshed.session.id


@pytest.mark.asyncio
async def test_exhausted_generation_persists_nothing(idea, store, queue, mastery, now):
    provider = ScriptedProvider(["{}"] * 20)
    orchestrator = SessionOrchestrator(
        store, ContentAssembler(provider), LLMEvaluationProvider(provider), queue, mastery
    )

    with pytest.raises(ExhaustedRetries):
        await orchestrator.prepare_session(idea.id, idea.book_id, now=now)

    assert store.find_ready_session(idea.id, idea.book_id) is None


@pytest.mark.asyncio
async def test_prepare_session_for_unknown_idea(orchestrator, now):
    with pytest.raises(RecordNotFound):
        await orchestrator.prepare_session("missing", "book-1", now=now)


@pytest.mark.asyncio
async def test_complete_clean_initial_session_achieves_mastery(idea, orchestrator, store, provider, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)

    result = await orchestrator.complete_session(
        prepared.session.id, answers_for(prepared.questions), now=now + timedelta(minutes=10)
    )

    assert result.graded.correct_count == 8
    assert result.graded.max_score == 2 * 10 + 4 * 15 + 2 * 25
    # Open-ended answers graded at 80% earn int(15 * 0.8) and int(25 * 0.8).
    assert result.graded.score == result.graded.max_score - 3 - 5
    assert result.attempt.mastery_outcome is MasteryOutcome.ACHIEVED
    assert result.mastery_levels == {idea.id: MasteryLevel.MASTERED}
    assert result.mistakes_queued == 0
    assert provider.grading_calls == 2
    assert store.get_session(prepared.session.id).status is SessionStatus.COMPLETED
    assert store.get_attempt(result.attempt.id).mastery_outcome is MasteryOutcome.ACHIEVED
    assert len(store.get_responses(result.attempt.id)) == 8


@pytest.mark.asyncio
async def test_completed_session_cannot_be_completed_or_refreshed_again(idea, orchestrator, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    answers = answers_for(prepared.questions)
    await orchestrator.complete_session(prepared.session.id, answers, now=now)

    with pytest.raises(ValueError):
        await orchestrator.complete_session(prepared.session.id, answers, now=now)
    with pytest.raises(ValueError):
        await orchestrator.refresh(prepared.session.id, now=now)


@pytest.mark.asyncio
async def test_mistakes_are_queued_and_mastery_moves_one_step(idea, orchestrator, queue, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    wrong = [prepared.questions[1].id, prepared.questions[6].id]

    result = await orchestrator.complete_session(
        prepared.session.id, answers_for(prepared.questions, wrong=wrong), now=now
    )

    assert result.mistakes_queued == 2
    assert result.mastery_levels[idea.id] is MasteryLevel.BASIC
    assert result.attempt.mastery_outcome is MasteryOutcome.NONE
    assert len(queue.select_daily_items(idea.book_id)) == 2


@pytest.mark.asyncio
async def test_unanswered_questions_count_as_mistakes(idea, orchestrator, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    answers = answers_for(prepared.questions[:7])

    result = await orchestrator.complete_session(prepared.session.id, answers, now=now)

    assert result.graded.correct_count == 7
    assert result.mistakes_queued == 1


@pytest.mark.asyncio
async def test_mixed_session_includes_capped_review_items(idea, other_idea, orchestrator, store, now):
    oldest = queue_item(idea, now - timedelta(days=4))
    other_apply = queue_item(other_idea, now - timedelta(days=3), bloom=BloomCategory.APPLY)
    other_contrast = queue_item(
        other_idea, now - timedelta(days=2), bloom=BloomCategory.CONTRAST, difficulty=Difficulty.MEDIUM
    )
    over_cap = queue_item(idea, now - timedelta(days=1), bloom=BloomCategory.CRITIQUE, difficulty=Difficulty.HARD)
    open_item = queue_item(
        other_idea,
        now - timedelta(days=2),
        question_type=QuestionType.OPEN_ENDED,
        bloom=BloomCategory.HOW_WIELD,
        difficulty=Difficulty.HARD,
    )
    store.add_items([oldest, other_apply, other_contrast, over_cap, open_item])

    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)

    assert prepared.test.test_type is TestType.MIXED
    assert len(prepared.questions) == 12
    review = prepared.questions[8:]
    assert all(prepared.is_review(q) for q in review)
    assert [q.source_queue_item_id for q in review] == [oldest.id, other_apply.id, other_contrast.id, open_item.id]
    assert [q.idea_id for q in review] == [idea.id, other_idea.id, other_idea.id, other_idea.id]
    assert set(prepared.session.review_item_ids) == {oldest.id, other_apply.id, other_contrast.id, open_item.id}
    assert prepared.session.fresh_question_count == 8

    result = await orchestrator.complete_session(
        prepared.session.id, answers_for(prepared.questions), now=now + timedelta(minutes=15)
    )

    assert result.review_items_completed == 4
    assert result.mastery_levels == {idea.id: MasteryLevel.MASTERED, other_idea.id: MasteryLevel.BASIC}
    assert result.attempt.mastery_outcome is MasteryOutcome.ACHIEVED
    remaining = store.list_items(book_id=idea.book_id)
    assert [item.id for item in remaining] == [over_cap.id]


@pytest.mark.asyncio
async def test_failed_curveball_demotes_and_requeues(idea, orchestrator, mastery, queue, store, now):
    await master(mastery, idea, now)
    later = now + timedelta(days=3)

    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=later)
    curveballs = [q for q in prepared.questions if q.is_curveball]
    assert len(curveballs) == 1
    assert curveballs[0].type is QuestionType.OPEN_ENDED

    result = await orchestrator.complete_session(
        prepared.session.id,
        answers_for(prepared.questions, wrong=[curveballs[0].id]),
        now=later,
    )

    assert result.mastery_levels[idea.id] is MasteryLevel.INTERMEDIATE
    assert result.mistakes_queued == 1
    assert result.attempt.mastery_outcome is MasteryOutcome.NONE
    assert store.get_idea(idea.id).mastery_level is MasteryLevel.INTERMEDIATE
    stats = queue.queue_statistics(idea.book_id)
    assert (stats.total_choice, stats.total_open_ended, stats.total_curveball) == (0, 1, 0)


@pytest.mark.asyncio
async def test_passed_curveball_keeps_mastery(idea, orchestrator, mastery, store, now):
    await master(mastery, idea, now)
    later = now + timedelta(days=3)

    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=later)
    result = await orchestrator.complete_session(prepared.session.id, answers_for(prepared.questions), now=later)

    assert result.mastery_levels[idea.id] is MasteryLevel.MASTERED
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.curveball_passed_at == later
    assert record.curveball_due_at == later + timedelta(days=5)


@pytest.mark.asyncio
async def test_prepare_retry_regenerates_missed_questions(idea, orchestrator, store, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    missed = [prepared.questions[2], prepared.questions[7]]
    result = await orchestrator.complete_session(
        prepared.session.id, answers_for(prepared.questions, wrong=[q.id for q in missed]), now=now
    )

    retry = await orchestrator.prepare_retry(result.attempt.id, now=now + timedelta(minutes=1))

    assert retry.test.test_type is TestType.RETRY
    assert [(q.bloom_category, q.type) for q in retry.questions] == [(q.bloom_category, q.type) for q in missed]
    assert store.find_ready_session(idea.id, idea.book_id).id == retry.session.id

    outcome = await orchestrator.complete_session(
        retry.session.id, answers_for(retry.questions), retry_count=1, now=now + timedelta(minutes=5)
    )
    assert outcome.mastery_levels[idea.id] is MasteryLevel.INTERMEDIATE


@pytest.mark.asyncio
async def test_prepare_retry_without_mistakes_is_rejected(idea, orchestrator, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    result = await orchestrator.complete_session(prepared.session.id, answers_for(prepared.questions), now=now)

    with pytest.raises(ValueError):
        await orchestrator.prepare_retry(result.attempt.id, now=now)


@pytest.mark.asyncio
async def test_concurrent_completions_apply_outcomes_once(idea, orchestrator, store, now):
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    answers = answers_for(prepared.questions)

    results = await asyncio.gather(
        orchestrator.complete_session(prepared.session.id, answers, now=now),
        orchestrator.complete_session(prepared.session.id, answers, now=now),
        return_exceptions=True,
    )

    assert sum(isinstance(r, SessionResult) for r in results) == 1
    assert sum(isinstance(r, ValueError) for r in results) == 1
    record = store.load_coverage(idea.id, idea.book_id)
    assert record.total_seen == 8
    assert record.review_state.review_count == 1


@pytest.mark.asyncio
async def test_concurrent_prepares_share_one_session(idea, orchestrator, provider, now):
    first, second = await asyncio.gather(
        orchestrator.prepare_session(idea.id, idea.book_id, now=now),
        orchestrator.prepare_session(idea.id, idea.book_id, now=now),
    )

    assert first.session.id == second.session.id
    assert [first.reused, second.reused] == [False, True]
    assert provider.batch_calls == 1


@pytest.mark.asyncio
async def test_grading_failure_leaves_the_session_ready(idea, store, queue, mastery, now):
    provider = ScriptedProvider([batch_payload(), ProviderUnavailable("grader down")])
    orchestrator = SessionOrchestrator(
        store, ContentAssembler(provider), LLMEvaluationProvider(provider), queue, mastery
    )
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)
    answers = answers_for(prepared.questions)

    with pytest.raises(ProviderUnavailable):
        await orchestrator.complete_session(prepared.session.id, answers, now=now)

    assert store.get_session(prepared.session.id).status is SessionStatus.READY
    assert store.load_coverage(idea.id, idea.book_id) is None

    result = await orchestrator.complete_session(prepared.session.id, answers, now=now)
    assert result.graded.correct_count == 8


@pytest.mark.asyncio
async def test_overdue_idea_is_reviewed_in_a_later_session(idea, other_idea, orchestrator, mastery, queue, store, now):
    questions = blueprint_questions(other_idea.id)
    attempt_id = uuid4()
    await mastery.update_from_responses(
        other_idea.id,
        other_idea.book_id,
        questions,
        [response_for(q, attempt_id, correct=q.order_index < 4) for q in questions],
        test_type=TestType.INITIAL,
        now=now,
    )
    later = now + timedelta(days=30)

    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=later)

    assert prepared.test.test_type is TestType.MIXED
    review = [q for q in prepared.questions if prepared.is_review(q)]
    assert [(q.idea_id, q.type, q.is_curveball) for q in review] == [
        (other_idea.id, QuestionType.OPEN_ENDED, False)
    ]

    result = await orchestrator.complete_session(prepared.session.id, answers_for(prepared.questions), now=later)

    assert result.review_items_completed == 1
    assert result.mastery_levels[other_idea.id] is MasteryLevel.INTERMEDIATE
    record = store.load_coverage(other_idea.id, other_idea.book_id)
    assert record.review_state.review_count == 2
    assert not is_review_due(record.review_state, later)
    assert queue.select_due_review_items(idea.book_id) == []


@pytest.mark.asyncio
async def test_completing_a_session_purges_expired_review_items(idea, orchestrator, store, now):
    expired = queue_item(idea, now - timedelta(days=60), is_completed=True, completed_at=now - timedelta(days=31))
    recent = queue_item(
        idea, now - timedelta(days=5), bloom=BloomCategory.APPLY, is_completed=True, completed_at=now - timedelta(days=1)
    )
    store.add_items([expired, recent])
    prepared = await orchestrator.prepare_session(idea.id, idea.book_id, now=now)

    await orchestrator.complete_session(prepared.session.id, answers_for(prepared.questions), now=now)

    assert {item.id for item in store.list_items(include_completed=True)} == {recent.id}
