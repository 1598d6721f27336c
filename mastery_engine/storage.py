"""Concrete repository implementations backed by memory and SQLite."""
from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union
from uuid import UUID

from .domain import CoverageRecord
from .models import (
    Attempt,
    Idea,
    PracticeSession,
    Question,
    Response,
    ReviewQueueItem,
    SessionStatus,
    Test,
)
from .repositories import RecordNotFound, StudyStore


def _matches(
    item: ReviewQueueItem, book_id: Optional[str], idea_id: Optional[str], include_completed: bool
) -> bool:
    if book_id is not None and item.book_id != book_id:
        return False
    if idea_id is not None and item.idea_id != idea_id:
        return False
    return include_completed or not item.is_completed


class InMemoryStore(StudyStore):
    """Dictionary-backed store used by tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._ideas: Dict[str, Idea] = {}
        self._tests: Dict[UUID, Test] = {}
        self._questions: Dict[UUID, Question] = {}
        self._attempts: Dict[UUID, Attempt] = {}
        self._responses: Dict[UUID, List[Response]] = {}
        self._queue: Dict[UUID, ReviewQueueItem] = {}
        self._coverage: Dict[tuple, CoverageRecord] = {}
        self._sessions: Dict[UUID, PracticeSession] = {}
        self._lock = threading.Lock()

    # region Ideas
    def save_idea(self, idea: Idea) -> None:
        with self._lock:
            self._ideas[idea.id] = idea.model_copy(deep=True)

    def get_idea(self, idea_id: str) -> Idea:
        try:
            return self._ideas[idea_id].model_copy(deep=True)
        except KeyError as exc:
            raise RecordNotFound(f"Idea {idea_id} does not exist") from exc

    # endregion

    # region Tests
    def save_test(self, test: Test, questions: Sequence[Question]) -> None:
        staged_test = test.model_copy(update={"question_ids": [q.id for q in questions]}, deep=True)
        staged_questions = [q.model_copy(update={"test_id": test.id}, deep=True) for q in questions]
        with self._lock:
            self._tests[test.id] = staged_test
            for question in staged_questions:
                self._questions[question.id] = question

    def get_test(self, test_id: UUID) -> Test:
        try:
            return self._tests[test_id].model_copy(deep=True)
        except KeyError as exc:
            raise RecordNotFound(f"Test {test_id} does not exist") from exc

    def get_questions(self, test_id: UUID) -> List[Question]:
        test = self.get_test(test_id)
        return [self._questions[qid].model_copy(deep=True) for qid in test.question_ids]

    def delete_test(self, test_id: UUID) -> None:
        with self._lock:
            test = self._tests.pop(test_id, None)
            if test is None:
                return
            for question_id in test.question_ids:
                self._questions.pop(question_id, None)

    # endregion

    # region Attempts
    def save_attempt(self, attempt: Attempt, responses: Sequence[Response]) -> None:
        staged = [r.model_copy(deep=True) for r in responses]
        with self._lock:
            self._attempts[attempt.id] = attempt.model_copy(deep=True)
            self._responses[attempt.id] = staged

    def get_attempt(self, attempt_id: UUID) -> Attempt:
        try:
            return self._attempts[attempt_id].model_copy(deep=True)
        except KeyError as exc:
            raise RecordNotFound(f"Attempt {attempt_id} does not exist") from exc

    def get_responses(self, attempt_id: UUID) -> List[Response]:
        responses = self._responses.get(attempt_id, [])
        return sorted((r.model_copy(deep=True) for r in responses), key=lambda r: r.answered_at)

    # endregion

    # region Review queue
    def add_items(self, items: Iterable[ReviewQueueItem]) -> None:
        staged = [item.model_copy(deep=True) for item in items]
        with self._lock:
            for item in staged:
                self._queue[item.id] = item

    def update_items(self, items: Iterable[ReviewQueueItem]) -> None:
        staged = [item.model_copy(deep=True) for item in items]
        with self._lock:
            for item in staged:
                if item.id not in self._queue:
                    raise RecordNotFound(f"Review item {item.id} does not exist")
            for item in staged:
                self._queue[item.id] = item

    def get_items(self, item_ids: Iterable[UUID]) -> List[ReviewQueueItem]:
        return [self._queue[i].model_copy(deep=True) for i in item_ids if i in self._queue]

    def list_items(
        self,
        *,
        book_id: Optional[str] = None,
        idea_id: Optional[str] = None,
        include_completed: bool = False,
    ) -> List[ReviewQueueItem]:
        matched = [
            item.model_copy(deep=True)
            for item in self._queue.values()
            if _matches(item, book_id, idea_id, include_completed)
        ]
        return sorted(matched, key=lambda item: item.added_at)

    def delete_items(self, item_ids: Iterable[UUID]) -> int:
        removed = 0
        with self._lock:
            for item_id in item_ids:
                if self._queue.pop(item_id, None) is not None:
                    removed += 1
        return removed

    # endregion

    # region Coverage
    def load_coverage(self, idea_id: str, book_id: str) -> Optional[CoverageRecord]:
        record = self._coverage.get((idea_id, book_id))
        return CoverageRecord.from_dict(record.to_dict()) if record else None

    def save_coverage(self, record: CoverageRecord) -> None:
        with self._lock:
            self._coverage[(record.idea_id, record.book_id)] = CoverageRecord.from_dict(record.to_dict())

    def list_coverage(self, book_id: str) -> List[CoverageRecord]:
        return [
            CoverageRecord.from_dict(record.to_dict())
            for (_, record_book), record in self._coverage.items()
            if record_book == book_id
        ]

    # endregion

    # region Sessions
    def save_session(self, session: PracticeSession) -> None:
        with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)

    def get_session(self, session_id: UUID) -> PracticeSession:
        try:
            return self._sessions[session_id].model_copy(deep=True)
        except KeyError as exc:
            raise RecordNotFound(f"Session {session_id} does not exist") from exc

    def find_ready_session(self, idea_id: str, book_id: str) -> Optional[PracticeSession]:
        ready = [
            s
            for s in self._sessions.values()
            if s.idea_id == idea_id and s.book_id == book_id and s.status is SessionStatus.READY
        ]
        if not ready:
            return None
        return max(ready, key=lambda s: s.created_at).model_copy(deep=True)

    # endregion


class SqliteStore(StudyStore):
    """Stores every engine entity as JSON payloads in a SQLite database."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialise_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialise_schema(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS ideas (
                    idea_id TEXT PRIMARY KEY,
                    book_id TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tests (
                    test_id TEXT PRIMARY KEY,
                    idea_id TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS questions (
                    question_id TEXT PRIMARY KEY,
                    test_id TEXT NOT NULL,
                    order_index INTEGER NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS attempts (
                    attempt_id TEXT PRIMARY KEY,
                    test_id TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS responses (
                    response_id TEXT PRIMARY KEY,
                    attempt_id TEXT NOT NULL,
                    answered_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS review_queue (
                    item_id TEXT PRIMARY KEY,
                    idea_id TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    is_completed INTEGER NOT NULL,
                    added_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS coverage (
                    idea_id TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    PRIMARY KEY (idea_id, book_id)
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    idea_id TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def _write(self, statements: Sequence[tuple]) -> int:
        """Run ``(sql, params)`` pairs in one transaction, returning affected rows."""

        affected = 0
        with self._lock:
            cursor = self._conn.cursor()
            try:
                for sql, params in statements:
                    cursor.execute(sql, params)
                    affected += max(cursor.rowcount, 0)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()
        return affected

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.cursor().execute(sql, params).fetchall()

    # IdeaRepository -----------------------------------------------------
    def save_idea(self, idea: Idea) -> None:
        self._write(
            [
                (
                    "INSERT OR REPLACE INTO ideas (idea_id, book_id, payload_json) VALUES (?, ?, ?)",
                    (idea.id, idea.book_id, idea.model_dump_json()),
                )
            ]
        )

    def get_idea(self, idea_id: str) -> Idea:
        rows = self._fetch("SELECT payload_json FROM ideas WHERE idea_id = ?", (idea_id,))
        if not rows:
            raise RecordNotFound(f"Idea {idea_id} does not exist")
        return Idea.model_validate_json(rows[0]["payload_json"])

    # TestRepository -----------------------------------------------------
    def save_test(self, test: Test, questions: Sequence[Question]) -> None:
        stored = test.model_copy(update={"question_ids": [q.id for q in questions]})
        statements = [
            (
                "INSERT OR REPLACE INTO tests (test_id, idea_id, payload_json) VALUES (?, ?, ?)",
                (str(test.id), test.idea_id, stored.model_dump_json()),
            ),
            ("DELETE FROM questions WHERE test_id = ?", (str(test.id),)),
        ]
        for position, question in enumerate(questions):
            payload = question.model_copy(update={"test_id": test.id}).model_dump_json()
            statements.append(
                (
                    """
                    INSERT OR REPLACE INTO questions (question_id, test_id, order_index, payload_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (str(question.id), str(test.id), position, payload),
                )
            )
        self._write(statements)

    def get_test(self, test_id: UUID) -> Test:
        rows = self._fetch("SELECT payload_json FROM tests WHERE test_id = ?", (str(test_id),))
        if not rows:
            raise RecordNotFound(f"Test {test_id} does not exist")
        return Test.model_validate_json(rows[0]["payload_json"])

    def get_questions(self, test_id: UUID) -> List[Question]:
        self.get_test(test_id)
        rows = self._fetch(
            "SELECT payload_json FROM questions WHERE test_id = ? ORDER BY order_index",
            (str(test_id),),
        )
        return [Question.model_validate_json(row["payload_json"]) for row in rows]

    def delete_test(self, test_id: UUID) -> None:
        self._write(
            [
                ("DELETE FROM questions WHERE test_id = ?", (str(test_id),)),
                ("DELETE FROM tests WHERE test_id = ?", (str(test_id),)),
            ]
        )

    # AttemptRepository --------------------------------------------------
    def save_attempt(self, attempt: Attempt, responses: Sequence[Response]) -> None:
        statements = [
            (
                "INSERT OR REPLACE INTO attempts (attempt_id, test_id, payload_json) VALUES (?, ?, ?)",
                (str(attempt.id), str(attempt.test_id), attempt.model_dump_json()),
            ),
            ("DELETE FROM responses WHERE attempt_id = ?", (str(attempt.id),)),
        ]
        for response in responses:
            statements.append(
                (
                    """
                    INSERT OR REPLACE INTO responses (response_id, attempt_id, answered_at, payload_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        str(response.id),
                        str(attempt.id),
                        response.answered_at.isoformat(),
                        response.model_dump_json(),
                    ),
                )
            )
        self._write(statements)

    def get_attempt(self, attempt_id: UUID) -> Attempt:
        rows = self._fetch("SELECT payload_json FROM attempts WHERE attempt_id = ?", (str(attempt_id),))
        if not rows:
            raise RecordNotFound(f"Attempt {attempt_id} does not exist")
        return Attempt.model_validate_json(rows[0]["payload_json"])

    def get_responses(self, attempt_id: UUID) -> List[Response]:
        rows = self._fetch(
            "SELECT payload_json FROM responses WHERE attempt_id = ? ORDER BY answered_at",
            (str(attempt_id),),
        )
        return [Response.model_validate_json(row["payload_json"]) for row in rows]

    # ReviewQueueRepository ----------------------------------------------
    @staticmethod
    def _queue_row(item: ReviewQueueItem) -> tuple:
        return (
            str(item.id),
            item.idea_id,
            item.book_id,
            int(item.is_completed),
            item.added_at.isoformat(),
            item.model_dump_json(),
        )

    def add_items(self, items: Iterable[ReviewQueueItem]) -> None:
        statements = [
            (
                """
                INSERT INTO review_queue (item_id, idea_id, book_id, is_completed, added_at, payload_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                self._queue_row(item),
            )
            for item in items
        ]
        if statements:
            self._write(statements)

    def update_items(self, items: Iterable[ReviewQueueItem]) -> None:
        items = list(items)
        if not items:
            return
        existing = {item.id for item in self.get_items(item.id for item in items)}
        missing = [item.id for item in items if item.id not in existing]
        if missing:
            raise RecordNotFound(f"Review item {missing[0]} does not exist")
        self._write(
            [
                (
                    """
                    INSERT OR REPLACE INTO review_queue
                        (item_id, idea_id, book_id, is_completed, added_at, payload_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    self._queue_row(item),
                )
                for item in items
            ]
        )

    def get_items(self, item_ids: Iterable[UUID]) -> List[ReviewQueueItem]:
        ids = [str(item_id) for item_id in item_ids]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = self._fetch(
            f"SELECT item_id, payload_json FROM review_queue WHERE item_id IN ({placeholders})",
            tuple(ids),
        )
        by_id = {row["item_id"]: ReviewQueueItem.model_validate_json(row["payload_json"]) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def list_items(
        self,
        *,
        book_id: Optional[str] = None,
        idea_id: Optional[str] = None,
        include_completed: bool = False,
    ) -> List[ReviewQueueItem]:
        clauses: List[str] = []
        params: List[object] = []
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if idea_id is not None:
            clauses.append("idea_id = ?")
            params.append(idea_id)
        if not include_completed:
            clauses.append("is_completed = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch(
            f"SELECT payload_json FROM review_queue {where} ORDER BY added_at",
            tuple(params),
        )
        return [ReviewQueueItem.model_validate_json(row["payload_json"]) for row in rows]

    def delete_items(self, item_ids: Iterable[UUID]) -> int:
        statements = [("DELETE FROM review_queue WHERE item_id = ?", (str(item_id),)) for item_id in item_ids]
        if not statements:
            return 0
        return self._write(statements)

    # CoverageRepository -------------------------------------------------
    def load_coverage(self, idea_id: str, book_id: str) -> Optional[CoverageRecord]:
        rows = self._fetch(
            "SELECT state_json FROM coverage WHERE idea_id = ? AND book_id = ?",
            (idea_id, book_id),
        )
        if not rows:
            return None
        return CoverageRecord.from_dict(json.loads(rows[0]["state_json"]))

    def save_coverage(self, record: CoverageRecord) -> None:
        self._write(
            [
                (
                    """
                    INSERT OR REPLACE INTO coverage (idea_id, book_id, state_json)
                    VALUES (?, ?, ?)
                    """,
                    (record.idea_id, record.book_id, json.dumps(record.to_dict())),
                )
            ]
        )

    def list_coverage(self, book_id: str) -> List[CoverageRecord]:
        rows = self._fetch("SELECT state_json FROM coverage WHERE book_id = ?", (book_id,))
        return [CoverageRecord.from_dict(json.loads(row["state_json"])) for row in rows]

    # SessionRepository --------------------------------------------------
    def save_session(self, session: PracticeSession) -> None:
        self._write(
            [
                (
                    """
                    INSERT OR REPLACE INTO sessions
                        (session_id, idea_id, book_id, status, created_at, payload_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(session.id),
                        session.idea_id,
                        session.book_id,
                        session.status.value,
                        session.created_at.isoformat(),
                        session.model_dump_json(),
                    ),
                )
            ]
        )

    def get_session(self, session_id: UUID) -> PracticeSession:
        rows = self._fetch("SELECT payload_json FROM sessions WHERE session_id = ?", (str(session_id),))
        if not rows:
            raise RecordNotFound(f"Session {session_id} does not exist")
        return PracticeSession.model_validate_json(rows[0]["payload_json"])

    def find_ready_session(self, idea_id: str, book_id: str) -> Optional[PracticeSession]:
        rows = self._fetch(
            """
            SELECT payload_json FROM sessions
             WHERE idea_id = ? AND book_id = ? AND status = ?
             ORDER BY created_at DESC
             LIMIT 1
            """,
            (idea_id, book_id, SessionStatus.READY.value),
        )
        if not rows:
            return None
        return PracticeSession.model_validate_json(rows[0]["payload_json"])


__all__ = ["InMemoryStore", "SqliteStore"]
