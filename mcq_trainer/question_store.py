"""
SQLite persistence for the question bank and its answer statistics.
"""
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from .models import Question


class QuestionStoreError(Exception):
    """Base exception for question store failures."""
    pass


class PersistenceWriteFailure(QuestionStoreError):
    """Raised when an insert, update or delete could not be committed."""
    pass


_COLUMNS = [
    "category",
    "sub_category",
    "question_number",
    "text",
    "option_a",
    "option_b",
    "option_c",
    "option_d",
    "correct_answer",
    "image_name",
    "times_answered",
    "times_correct",
    "times_chosen_a",
    "times_chosen_b",
    "times_chosen_c",
    "times_chosen_d",
    "times_correct_recent",
]

_COUNTER_COLUMNS = _COLUMNS[10:]

_SELECT = "SELECT id, " + ", ".join(_COLUMNS) + " FROM questions"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS questions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    sub_category TEXT NOT NULL,
    question_number TEXT NOT NULL,
    text TEXT NOT NULL,
    option_a TEXT NOT NULL,
    option_b TEXT NOT NULL,
    option_c TEXT NOT NULL,
    option_d TEXT NOT NULL,
    correct_answer TEXT NOT NULL,
    image_name TEXT,
    times_answered INTEGER NOT NULL DEFAULT 0,
    times_correct INTEGER NOT NULL DEFAULT 0,
    times_chosen_a INTEGER NOT NULL DEFAULT 0,
    times_chosen_b INTEGER NOT NULL DEFAULT 0,
    times_chosen_c INTEGER NOT NULL DEFAULT 0,
    times_chosen_d INTEGER NOT NULL DEFAULT 0,
    times_correct_recent INTEGER NOT NULL DEFAULT 0
)
"""


class QuestionStore:
    """Durable keyed question records with the query shapes the engines need."""

    def __init__(self, db_path):
        """
        Initialize the store.

        Args:
            db_path: Path of the sqlite database file (":memory:" is not supported,
                since every operation opens its own connection)
        """
        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)

    def initialize(self) -> None:
        """Create the database file and the questions table if missing."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._transaction() as conn:
                conn.execute(_SCHEMA)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_questions_scope "
                    "ON questions(category, sub_category)"
                )
            self.logger.info(f"Question store ready at {self.db_path}")
        except (OSError, sqlite3.Error) as e:
            raise QuestionStoreError(f"Could not initialize question store at {self.db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @staticmethod
    def _row_to_question(row: sqlite3.Row) -> Question:
        return Question(id=row["id"], **{column: row[column] for column in _COLUMNS})

    @staticmethod
    def _question_values(question: Question) -> tuple:
        return tuple(getattr(question, column) for column in _COLUMNS)

    def _query(self, sql: str, params: tuple = ()) -> List[Question]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            self.logger.error(f"Question query failed: {e}")
            raise QuestionStoreError(f"Could not read questions: {e}") from e
        return [self._row_to_question(row) for row in rows]

    # Reads

    def get_question_by_id(self, question_id: int) -> Optional[Question]:
        result = self._query(f"{_SELECT} WHERE id = ?", (question_id,))
        return result[0] if result else None

    def get_all_questions(self) -> List[Question]:
        return self._query(f"{_SELECT} ORDER BY id")

    def get_random_questions(self, limit: int = 1000) -> List[Question]:
        """Random sample of the whole bank, capped at ``limit`` rows."""
        return self._query(f"{_SELECT} ORDER BY RANDOM() LIMIT ?", (limit,))

    def get_questions_by_category(self, category: str) -> List[Question]:
        return self._query(f"{_SELECT} WHERE category = ? ORDER BY RANDOM()", (category,))

    def get_questions_by_subcategory(self, category: str, sub_category: str) -> List[Question]:
        return self._query(
            f"{_SELECT} WHERE category = ? AND sub_category = ?",
            (category, sub_category),
        )

    def get_weak_questions(
        self,
        threshold: int,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
    ) -> List[Question]:
        """Questions whose current correct streak is below ``threshold``."""
        where, params = self._scope_clause(category, sub_category)
        where.append("times_correct_recent < ?")
        params.append(threshold)
        return self._query(f"{_SELECT} WHERE {' AND '.join(where)}", tuple(params))

    def get_unanswered_questions(
        self,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
    ) -> List[Question]:
        where, params = self._scope_clause(category, sub_category)
        where.append("times_answered = 0")
        return self._query(f"{_SELECT} WHERE {' AND '.join(where)}", tuple(params))

    def get_incorrectly_answered_questions(
        self,
        category: Optional[str] = None,
        sub_category: Optional[str] = None,
    ) -> List[Question]:
        """Answered questions with at least one wrong attempt on record."""
        where, params = self._scope_clause(category, sub_category)
        where.append("times_answered > 0 AND times_correct < times_answered")
        return self._query(f"{_SELECT} WHERE {' AND '.join(where)}", tuple(params))

    @staticmethod
    def _scope_clause(category: Optional[str], sub_category: Optional[str]):
        where = []
        params = []
        if category is not None:
            where.append("category = ?")
            params.append(category)
            if sub_category is not None:
                where.append("sub_category = ?")
                params.append(sub_category)
        return where, params

    def get_categories(self) -> List[str]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT DISTINCT category FROM questions ORDER BY category ASC"
                ).fetchall()
        except sqlite3.Error as e:
            raise QuestionStoreError(f"Could not read categories: {e}") from e
        return [row["category"] for row in rows]

    def get_subcategories(self, category: str) -> List[str]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT DISTINCT sub_category FROM questions WHERE category = ? "
                    "ORDER BY sub_category ASC",
                    (category,),
                ).fetchall()
        except sqlite3.Error as e:
            raise QuestionStoreError(f"Could not read sub-categories: {e}") from e
        return [row["sub_category"] for row in rows]

    def get_question_count(self) -> int:
        try:
            with self._transaction() as conn:
                return conn.execute("SELECT COUNT(*) FROM questions").fetchone()[0]
        except sqlite3.Error as e:
            raise QuestionStoreError(f"Could not count questions: {e}") from e

    # Writes

    def _insert(self, conn: sqlite3.Connection, questions: Iterable[Question]) -> int:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        cursor = conn.executemany(
            f"INSERT INTO questions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            [self._question_values(q) for q in questions],
        )
        return cursor.rowcount

    def insert_all(self, questions: List[Question]) -> int:
        """Insert questions as new records. Returns the number of rows written."""
        try:
            with self._transaction() as conn:
                inserted = self._insert(conn, questions)
        except sqlite3.Error as e:
            self.logger.error(f"Bulk insert failed: {e}")
            raise PersistenceWriteFailure(f"Could not insert questions: {e}") from e

        self.logger.info(f"Inserted {inserted} questions", extra={
            'event_type': 'questions_inserted',
            'count': inserted,
            'timestamp': time.time()
        })
        return inserted

    def replace_all(self, questions: List[Question]) -> int:
        """Clear the bank and insert ``questions`` in one transaction."""
        try:
            with self._transaction(immediate=True) as conn:
                conn.execute("DELETE FROM questions")
                inserted = self._insert(conn, questions)
        except sqlite3.Error as e:
            self.logger.error(f"Replacing question bank failed: {e}")
            raise PersistenceWriteFailure(f"Could not replace question bank: {e}") from e

        self.logger.info(f"Question bank replaced with {inserted} questions", extra={
            'event_type': 'questions_replaced',
            'count': inserted,
            'timestamp': time.time()
        })
        return inserted

    def update_question(self, question: Question) -> None:
        """Write every column of an existing record, keyed by id."""
        if not question.is_persisted:
            raise PersistenceWriteFailure("Cannot update a question that has not been persisted")

        assignments = ", ".join(f"{column} = ?" for column in _COLUMNS)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE questions SET {assignments} WHERE id = ?",
                    self._question_values(question) + (question.id,),
                )
                if cursor.rowcount == 0:
                    raise PersistenceWriteFailure(f"Question {question.id} no longer exists")
        except sqlite3.Error as e:
            self.logger.error(f"Update of question {question.id} failed: {e}")
            raise PersistenceWriteFailure(f"Could not update question {question.id}: {e}") from e

    def update_with(self, question_id: int, update: Callable[[Question], Question]) -> Question:
        """
        Read-modify-write a single record atomically.

        The record is re-read inside an immediate transaction so concurrent
        updates of the same question cannot lose counter increments.

        Args:
            question_id: Id of the record to update
            update: Function mapping the stored question to its new state

        Returns:
            The question as written

        Raises:
            PersistenceWriteFailure: If the record is missing or the write fails
        """
        assignments = ", ".join(f"{column} = ?" for column in _COUNTER_COLUMNS)
        try:
            with self._transaction(immediate=True) as conn:
                row = conn.execute(f"{_SELECT} WHERE id = ?", (question_id,)).fetchone()
                if row is None:
                    raise PersistenceWriteFailure(f"Question {question_id} no longer exists")
                updated = update(self._row_to_question(row))
                conn.execute(
                    f"UPDATE questions SET {assignments} WHERE id = ?",
                    tuple(getattr(updated, column) for column in _COUNTER_COLUMNS) + (question_id,),
                )
        except sqlite3.Error as e:
            self.logger.error(f"Statistics update of question {question_id} failed: {e}")
            raise PersistenceWriteFailure(f"Could not save answer for question {question_id}: {e}") from e
        return updated

    def reset_statistics_for_subcategory(self, category: str, sub_category: str) -> int:
        """Zero every counter in one (category, sub-category) pair. Returns rows touched."""
        assignments = ", ".join(f"{column} = 0" for column in _COUNTER_COLUMNS)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE questions SET {assignments} WHERE category = ? AND sub_category = ?",
                    (category, sub_category),
                )
                touched = cursor.rowcount
        except sqlite3.Error as e:
            self.logger.error(f"Statistics reset failed: {e}")
            raise PersistenceWriteFailure(f"Could not reset statistics: {e}") from e

        self.logger.info(f"Reset statistics of {touched} questions in {category}/{sub_category}", extra={
            'event_type': 'statistics_reset',
            'category': category,
            'sub_category': sub_category,
            'count': touched,
            'timestamp': time.time()
        })
        return touched

    def clear_all_questions(self) -> None:
        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM questions")
        except sqlite3.Error as e:
            raise PersistenceWriteFailure(f"Could not clear question bank: {e}") from e
        self.logger.info("Question bank cleared")

