"""FastAPI application wiring for the mastery engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException

from .assembly import ContentAssembler, ExhaustedRetries
from .config import EngineConfig, load_config
from .evaluation import EvaluationProvider, LLMEvaluationProvider
from .logging_config import configure_logging
from .mastery import CurveballPolicy, MasteryTracker
from .models import (
    CompleteSessionRequest,
    CompleteSessionResponse,
    MasteryResponse,
    PrepareSessionRequest,
    QuestionView,
    ReviewStatsResponse,
    SessionResponse,
)
from .providers import ContentProvider, OpenAIContentProvider, ProviderUnavailable
from .repositories import RecordNotFound, StudyStore
from .review_queue import ReviewQueueManager
from .sessions import PreparedSession, SessionOrchestrator
from .storage import InMemoryStore, SqliteStore


@dataclass
class Engine:
    config: EngineConfig
    store: StudyStore
    queue: ReviewQueueManager
    mastery: MasteryTracker
    orchestrator: SessionOrchestrator


def build_engine(
    config: EngineConfig,
    provider: Optional[ContentProvider] = None,
    *,
    store: Optional[StudyStore] = None,
    evaluator: Optional[EvaluationProvider] = None,
) -> Engine:
    store = store or (SqliteStore(config.db_path) if config.db_path else InMemoryStore())
    provider = provider or OpenAIContentProvider(model=config.openai_model)
    queue = ReviewQueueManager(
        store,
        choice_cap=config.daily_choice_cap,
        open_cap=config.daily_open_cap,
        retention_days=config.retention_days,
    )
    mastery = MasteryTracker(
        store,
        store,
        queue,
        policy=CurveballPolicy(config.curveball_delay_days, config.curveball_recheck_days),
        partial_advance_threshold=config.partial_advance_threshold,
    )
    evaluator = evaluator or LLMEvaluationProvider(
        provider, grader_model=config.openai_grader_model, pass_ratio=config.open_ended_pass_ratio
    )
    assembler = ContentAssembler(provider, batch_retries=config.batch_retries)
    orchestrator = SessionOrchestrator(store, assembler, evaluator, queue, mastery)
    return Engine(config, store, queue, mastery, orchestrator)


app = FastAPI(title="Mastery Engine", version="0.1.0")


def get_engine() -> Engine:
    return app.state.engine


@app.on_event("startup")
def startup() -> None:
    if getattr(app.state, "engine", None) is not None:
        return
    config = load_config()
    configure_logging(config.log_level)
    app.state.engine = build_engine(config)


def _session_response(prepared: PreparedSession) -> SessionResponse:
    return SessionResponse(
        session_id=prepared.session.id,
        status=prepared.session.status,
        test_id=prepared.test.id,
        test_type=prepared.test.test_type,
        questions=[
            QuestionView(
                id=question.id,
                type=question.type,
                difficulty=question.difficulty,
                bloom_category=question.bloom_category,
                text=question.text,
                options=question.options,
                order_index=question.order_index,
                is_review=prepared.is_review(question),
            )
            for question in prepared.questions
        ],
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ExhaustedRetries, ProviderUnavailable)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.post("/v1/sessions", response_model=SessionResponse)
async def prepare_session(request: PrepareSessionRequest, engine: Engine = Depends(get_engine)) -> SessionResponse:
    try:
        prepared = await engine.orchestrator.prepare_session(request.idea_id, request.book_id)
    except (RecordNotFound, ExhaustedRetries, ProviderUnavailable, ValueError) as exc:
        raise _http_error(exc) from exc
    return _session_response(prepared)


@app.post("/v1/sessions/{session_id}/refresh", response_model=SessionResponse)
async def refresh_session(session_id: UUID, engine: Engine = Depends(get_engine)) -> SessionResponse:
    try:
        prepared = await engine.orchestrator.refresh(session_id)
    except (RecordNotFound, ExhaustedRetries, ProviderUnavailable, ValueError) as exc:
        raise _http_error(exc) from exc
    return _session_response(prepared)


@app.post("/v1/sessions/{session_id}/complete", response_model=CompleteSessionResponse)
async def complete_session(
    session_id: UUID, request: CompleteSessionRequest, engine: Engine = Depends(get_engine)
) -> CompleteSessionResponse:
    answers = {submission.question_id: submission.answer for submission in request.answers}
    try:
        result = await engine.orchestrator.complete_session(session_id, answers, retry_count=request.retry_count)
    except (RecordNotFound, ProviderUnavailable, ValueError) as exc:
        raise _http_error(exc) from exc
    return CompleteSessionResponse(
        attempt_id=result.attempt.id,
        score=result.graded.score,
        max_score=result.graded.max_score,
        correct_count=result.graded.correct_count,
        total_questions=len(result.graded.responses),
        mastery_outcome=result.attempt.mastery_outcome,
        mistakes_queued=result.mistakes_queued,
        review_items_completed=result.review_items_completed,
        mastery_levels=result.mastery_levels,
    )


@app.post("/v1/attempts/{attempt_id}/retry", response_model=SessionResponse)
async def prepare_retry(attempt_id: UUID, engine: Engine = Depends(get_engine)) -> SessionResponse:
    try:
        prepared = await engine.orchestrator.prepare_retry(attempt_id)
    except (RecordNotFound, ExhaustedRetries, ProviderUnavailable, ValueError) as exc:
        raise _http_error(exc) from exc
    return _session_response(prepared)


@app.get("/v1/review/stats", response_model=ReviewStatsResponse)
def review_stats(book_id: str, engine: Engine = Depends(get_engine)) -> ReviewStatsResponse:
    stats = engine.queue.queue_statistics(book_id)
    return ReviewStatsResponse(
        book_id=book_id,
        total_choice=stats.total_choice,
        total_open_ended=stats.total_open_ended,
        total_curveball=stats.total_curveball,
        total_due_review=stats.total_due_review,
    )


@app.get("/v1/mastery/{book_id}/{idea_id}", response_model=MasteryResponse)
async def mastery(book_id: str, idea_id: str, engine: Engine = Depends(get_engine)) -> MasteryResponse:
    record = await engine.mastery.coverage(idea_id, book_id)
    return MasteryResponse(
        idea_id=idea_id,
        book_id=book_id,
        mastery_level=record.mastery_level,
        coverage_percentage=record.coverage_percentage,
        next_review_at=record.review_state.next_review if record.review_state else None,
    )


__all__ = ["Engine", "app", "build_engine"]
