import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Sequence, Type, TypeVar

from db_pool import ConnectionState, DatabaseUnavailableError, SQLiteConnectionPool, open_pool
from schemas import (
    ChatMessage,
    DataAnalytics,
    Quiz,
    QuizAnalytics,
    QuizAttempt,
    Recommendation,
    Record,
    Score,
    StudyMethod,
    Survey,
    SurveyResponse,
    SavedTestResult,
    User,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

_R = TypeVar("_R", bound=Record)

# Stays under SQLite's host-parameter limit.
_ID_BATCH = 500


class DuplicateRecordError(ValueError):
    """Raised when a unique key (e.g. a user's email) already exists."""


class AttemptLimitReachedError(ValueError):
    """Raised when a user has used up every attempt allowed for a quiz."""

    def __init__(self, max_attempts: int):
        super().__init__(f"maximum of {max_attempts} attempts reached")
        self.max_attempts = max_attempts


_SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
  id          TEXT PRIMARY KEY,
  email       TEXT NOT NULL UNIQUE,
  role        TEXT NOT NULL DEFAULT 'user',
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scores (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scores_user ON scores(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_scores_created ON scores(created_at);

CREATE TABLE IF NOT EXISTS quizzes (
  id          TEXT PRIMARY KEY,
  created_by  TEXT NOT NULL,
  is_active   INTEGER NOT NULL DEFAULT 1,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS quiz_attempts (
  id          TEXT PRIMARY KEY,
  quiz_id     TEXT NOT NULL,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_quiz_attempts_quiz_user ON quiz_attempts(quiz_id, user_id);
CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user ON quiz_attempts(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS surveys (
  id          TEXT PRIMARY KEY,
  created_by  TEXT NOT NULL,
  is_active   INTEGER NOT NULL DEFAULT 1,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS survey_responses (
  id          TEXT PRIMARY KEY,
  survey_id   TEXT NOT NULL,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_survey_responses_user ON survey_responses(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS recommendations (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_recommendations_user ON recommendations(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS study_methods (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_study_methods_user ON study_methods(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS chat_messages (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chat_messages_user ON chat_messages(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS data_analytics (
  id            TEXT PRIMARY KEY,
  user_id       TEXT NOT NULL,
  period        TEXT NOT NULL,
  period_start  TEXT NOT NULL,
  doc           TEXT NOT NULL,
  created_at    TEXT NOT NULL,
  updated_at    TEXT NOT NULL,
  UNIQUE(user_id, period, period_start)
);

CREATE TABLE IF NOT EXISTS test_results (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL,
  doc         TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);
"""


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so TEXT columns sort chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """Document store over SQLite.

    Each collection is a table with a JSON ``doc`` column plus the key columns
    needed for lookups. The client is created once per process and handed to
    request handlers; :meth:`connect` moves it through
    ``uninitialized -> connecting -> ready`` (or ``failed``, which is retried
    on the next call).
    """

    def __init__(self, path: Optional[str] = None, max_connections: int = 10):
        self.path = path or os.getenv("DB_PATH") or DB_PATH
        self.max_connections = max_connections
        self.state = ConnectionState.UNINITIALIZED
        self.last_error: Optional[BaseException] = None
        self._pool: Optional[SQLiteConnectionPool] = None
        self._lock = threading.Lock()

    # -------------- lifecycle --------------
    def connect(self) -> "Database":
        if self.state is ConnectionState.READY:
            return self
        # Concurrent callers block here until the in-flight attempt finishes.
        with self._lock:
            if self.state is ConnectionState.READY:
                return self
            self.state = ConnectionState.CONNECTING
            logger.info("Opening document store at %s", self.path)
            try:
                pool = open_pool(self.path, _SCHEMA, self.max_connections)
            except DatabaseUnavailableError as exc:
                self.state = ConnectionState.FAILED
                self.last_error = exc
                logger.error("Document store connection failed: %s", exc)
                raise
            self._pool = pool
            self.last_error = None
            self.state = ConnectionState.READY
            logger.info("Document store ready")
        return self

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.close_all()
            self._pool = None
            self.state = ConnectionState.UNINITIALIZED

    def _conn(self):
        """Return a context manager for acquiring a pooled SQLite connection."""
        if self.state is not ConnectionState.READY or self._pool is None:
            self.connect()
        return self._pool.get_connection()

    def _exec(self, sql: str, params: Iterable = ()):
        with self._conn() as con:
            cur = con.execute(sql, tuple(params))
            con.commit()
            return cur

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._conn() as con:
            cur = con.execute(sql, tuple(params))
            return cur.fetchall()

    # -------------- generic document helpers --------------
    def _insert(self, table: str, record: Record, **keys) -> None:
        columns = ["id", *keys.keys(), "doc", "created_at", "updated_at"]
        values = [
            record.id,
            *keys.values(),
            record.model_dump_json(),
            _ts(record.created_at),
            _ts(record.updated_at),
        ]
        placeholders = ",".join("?" for _ in columns)
        self._exec(
            f"INSERT INTO {table}({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )

    def _replace(self, table: str, record: Record, **keys) -> None:
        record.updated_at = _now()
        assignments = ", ".join(f"{name} = ?" for name in keys)
        prefix = f"{assignments}, " if assignments else ""
        self._exec(
            f"UPDATE {table} SET {prefix}doc = ?, updated_at = ? WHERE id = ?",
            [*keys.values(), record.model_dump_json(), _ts(record.updated_at), record.id],
        )

    def _get(self, table: str, model: Type[_R], record_id: str) -> Optional[_R]:
        rows = self._query(f"SELECT doc FROM {table} WHERE id = ?", (record_id,))
        if not rows:
            return None
        return model.model_validate_json(rows[0]["doc"])

    def _list(
        self,
        table: str,
        model: Type[_R],
        where: str = "",
        params: Sequence = (),
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[_R]:
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT doc FROM {table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY created_at {order}, rowid {order}"
        args = list(params)
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        return [model.model_validate_json(row["doc"]) for row in self._query(sql, args)]

    # -------------- users --------------
    def create_user(self, user: User) -> User:
        try:
            self._insert("users", user, email=user.email, role=user.role)
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError("email exists") from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get("users", User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        rows = self._query("SELECT doc FROM users WHERE email = ?", ((email or "").strip().lower(),))
        if not rows:
            return None
        return User.model_validate_json(rows[0]["doc"])

    def update_user(self, user: User) -> User:
        self._replace("users", user, email=user.email, role=user.role)
        return user

    def user_grades(self, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Map each known id in ``user_ids`` to its grade; credentials are never read."""
        ids = list(dict.fromkeys(user_ids))
        grades: Dict[str, Optional[str]] = {}
        for start in range(0, len(ids), _ID_BATCH):
            batch = ids[start : start + _ID_BATCH]
            placeholders = ",".join("?" for _ in batch)
            rows = self._query(
                f"SELECT id, json_extract(doc, '$.grade') AS grade FROM users WHERE id IN ({placeholders})",
                batch,
            )
            grades.update({row["id"]: row["grade"] for row in rows})
        return grades

    # -------------- scores --------------
    def add_score(self, score: Score) -> Score:
        self._insert("scores", score, user_id=score.user_id)
        return score

    def get_score(self, score_id: str) -> Optional[Score]:
        return self._get("scores", Score, score_id)

    def update_score(self, score: Score) -> Score:
        self._replace("scores", score)
        return score

    def delete_score(self, score_id: str, user_id: str) -> bool:
        cur = self._exec("DELETE FROM scores WHERE id = ? AND user_id = ?", (score_id, user_id))
        return cur.rowcount > 0

    def list_scores(
        self,
        user_id: str,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[Score]:
        return self._list("scores", Score, "user_id = ?", (user_id,), limit, newest_first)

    def list_scores_since(self, since: datetime, until: Optional[datetime] = None) -> list[Score]:
        """Scores of every user created in ``[since, until)``."""
        if until is None:
            return self._list("scores", Score, "created_at >= ?", (_ts(since),))
        return self._list(
            "scores", Score, "created_at >= ? AND created_at < ?", (_ts(since), _ts(until))
        )

    def list_all_scores(self, limit: int = 1000) -> list[Score]:
        return self._list("scores", Score, limit=limit)

    # -------------- quizzes --------------
    def create_quiz(self, quiz: Quiz) -> Quiz:
        self._insert("quizzes", quiz, created_by=quiz.created_by, is_active=int(quiz.is_active))
        return quiz

    def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        return self._get("quizzes", Quiz, quiz_id)

    def update_quiz_analytics(self, quiz_id: str, analytics: QuizAnalytics) -> None:
        """Rewrite only the analytics block of a stored quiz."""
        now = _now()
        self._exec(
            "UPDATE quizzes SET doc = json_set(doc, '$.analytics', json(?), '$.updated_at', ?), updated_at = ? WHERE id = ?",
            (analytics.model_dump_json(), now.isoformat(), _ts(now), quiz_id),
        )

    def list_active_quizzes(self) -> list[Quiz]:
        return self._list("quizzes", Quiz, "is_active = 1")

    def count_quiz_attempts(self, quiz_id: str, user_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS n FROM quiz_attempts WHERE quiz_id = ? AND user_id = ?",
            (quiz_id, user_id),
        )
        return int(rows[0]["n"]) if rows else 0

    def add_quiz_attempt(self, attempt: QuizAttempt, max_attempts: int) -> QuizAttempt:
        """Insert ``attempt`` unless the user already used ``max_attempts``.

        The count and the insert share one write transaction so two parallel
        submissions cannot both slip under the limit. ``attempt_number`` is
        assigned from the count taken inside that transaction.
        """
        with self._conn() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                row = con.execute(
                    "SELECT COUNT(*) AS n FROM quiz_attempts WHERE quiz_id = ? AND user_id = ?",
                    (attempt.quiz_id, attempt.user_id),
                ).fetchone()
                existing = int(row["n"]) if row else 0
                if existing >= max_attempts:
                    raise AttemptLimitReachedError(max_attempts)
                attempt.attempt_number = existing + 1
                con.execute(
                    """
                    INSERT INTO quiz_attempts(id, quiz_id, user_id, doc, created_at, updated_at)
                    VALUES (?,?,?,?,?,?)
                    """,
                    (
                        attempt.id,
                        attempt.quiz_id,
                        attempt.user_id,
                        attempt.model_dump_json(),
                        _ts(attempt.created_at),
                        _ts(attempt.updated_at),
                    ),
                )
                con.commit()
            except BaseException:
                con.rollback()
                raise
        return attempt

    def list_quiz_attempts(
        self,
        *,
        quiz_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[QuizAttempt]:
        clauses: list[str] = []
        params: list[str] = []
        if quiz_id:
            clauses.append("quiz_id = ?")
            params.append(quiz_id)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        return self._list("quiz_attempts", QuizAttempt, " AND ".join(clauses), params)

    # -------------- surveys --------------
    def create_survey(self, survey: Survey) -> Survey:
        self._insert("surveys", survey, created_by=survey.created_by, is_active=int(survey.is_active))
        return survey

    def get_survey(self, survey_id: str) -> Optional[Survey]:
        return self._get("surveys", Survey, survey_id)

    def update_survey(self, survey: Survey) -> Survey:
        self._replace("surveys", survey, is_active=int(survey.is_active))
        return survey

    def list_active_surveys(self) -> list[Survey]:
        return self._list("surveys", Survey, "is_active = 1")

    def add_survey_response(self, response: SurveyResponse) -> SurveyResponse:
        self._insert(
            "survey_responses",
            response,
            survey_id=response.survey_id,
            user_id=response.user_id,
        )
        return response

    def list_survey_responses(self, user_id: str) -> list[SurveyResponse]:
        return self._list("survey_responses", SurveyResponse, "user_id = ?", (user_id,))

    # -------------- recommendations --------------
    def add_recommendation(self, recommendation: Recommendation) -> Recommendation:
        self._insert("recommendations", recommendation, user_id=recommendation.user_id)
        return recommendation

    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        return self._get("recommendations", Recommendation, recommendation_id)

    def update_recommendation(self, recommendation: Recommendation) -> Recommendation:
        self._replace("recommendations", recommendation)
        return recommendation

    def list_recommendations(self, user_id: str) -> list[Recommendation]:
        return self._list("recommendations", Recommendation, "user_id = ?", (user_id,))

    # -------------- study methods --------------
    def add_study_method(self, study_method: StudyMethod) -> StudyMethod:
        self._insert("study_methods", study_method, user_id=study_method.user_id)
        return study_method

    def list_study_methods(self, user_id: str) -> list[StudyMethod]:
        return self._list("study_methods", StudyMethod, "user_id = ?", (user_id,))

    # -------------- chat --------------
    def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        self._insert("chat_messages", message, user_id=message.user_id)
        return message

    def list_chat_messages(self, user_id: str, limit: int = 50) -> list[ChatMessage]:
        return self._list("chat_messages", ChatMessage, "user_id = ?", (user_id,), limit)

    # -------------- analytics --------------
    def upsert_data_analytics(self, record: DataAnalytics) -> DataAnalytics:
        """Create or overwrite the record for (user, period, period_start).

        An existing record keeps its ``id`` and ``created_at``; every computed
        field is replaced.
        """
        period_start = _ts(record.period_start)
        with self._conn() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                row = con.execute(
                    """
                    SELECT doc FROM data_analytics
                    WHERE user_id = ? AND period = ? AND period_start = ?
                    """,
                    (record.user_id, record.period, period_start),
                ).fetchone()
                if row is not None:
                    existing = DataAnalytics.model_validate_json(row["doc"])
                    record = record.model_copy(
                        update={
                            "id": existing.id,
                            "created_at": existing.created_at,
                            "updated_at": _now(),
                        }
                    )
                    con.execute(
                        "UPDATE data_analytics SET doc = ?, updated_at = ? WHERE id = ?",
                        (record.model_dump_json(), _ts(record.updated_at), record.id),
                    )
                else:
                    con.execute(
                        """
                        INSERT INTO data_analytics(
                            id, user_id, period, period_start, doc, created_at, updated_at
                        ) VALUES (?,?,?,?,?,?,?)
                        """,
                        (
                            record.id,
                            record.user_id,
                            record.period,
                            period_start,
                            record.model_dump_json(),
                            _ts(record.created_at),
                            _ts(record.updated_at),
                        ),
                    )
                con.commit()
            except BaseException:
                con.rollback()
                raise
        return record

    def list_data_analytics(
        self,
        user_id: str,
        period: Optional[str] = None,
        limit: int = 12,
    ) -> list[DataAnalytics]:
        if period:
            return self._list(
                "data_analytics",
                DataAnalytics,
                "user_id = ? AND period = ?",
                (user_id, period),
                limit,
            )
        return self._list("data_analytics", DataAnalytics, "user_id = ?", (user_id,), limit)

    # -------------- legacy test results --------------
    def add_test_result(self, result: SavedTestResult) -> SavedTestResult:
        self._insert("test_results", result, user_id=result.user_id)
        return result

    def list_test_results(self, limit: int = 1000) -> list[SavedTestResult]:
        return self._list("test_results", SavedTestResult, limit=limit)
