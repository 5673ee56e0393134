"""
SQLite Document Store
=====================
Persists extracted tests and their question records.
The pipeline hands over an ordered CroppedQuestion batch; this module
assigns identifiers and tracks the answer key entered afterwards.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Optional

from .models import CroppedQuestion

logger = logging.getLogger(__name__)

VALID_OPTIONS = ("A", "B", "C", "D")

_DEFAULT_DB_NAME = "qextract.sqlite"

_QUESTION_FIELDS = {"correct_option", "question_image_url", "question_number"}
_TEST_FIELDS = {
    "name", "is_published", "total_questions", "conduct_date", "visibility_date"
}


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get(
        "QEXTRACT_DB_PATH", str(Path.cwd() / _DEFAULT_DB_NAME)
    )


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times; uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS tests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                group_id TEXT NOT NULL UNIQUE,
                is_published INTEGER DEFAULT 0,
                total_questions INTEGER DEFAULT 0,
                conduct_date TEXT DEFAULT NULL,
                visibility_date TEXT DEFAULT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                test_id INTEGER NOT NULL,
                question_number INTEGER NOT NULL,
                question_image_url TEXT NOT NULL,
                correct_option TEXT DEFAULT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(test_id) REFERENCES tests(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_questions_test_id
                ON questions(test_id);
            CREATE INDEX IF NOT EXISTS idx_questions_test_number
                ON questions(test_id, question_number);
        """)


# ─── Tests ────────────────────────────────────────────────────────────────────


def insert_test_with_questions(
    name: str,
    group_id: str,
    questions: Iterable[CroppedQuestion],
    db_path: str = None,
) -> tuple[int, list[int]]:
    """
    Store a test and its ordered question batch in one transaction.

    Returns:
        (test_id, question_ids) with ids in the same order as questions.
    """
    questions = list(questions)
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            "INSERT INTO tests (name, group_id, total_questions) VALUES (?, ?, ?)",
            (name, group_id, len(questions)),
        )
        test_id = cursor.lastrowid

        question_ids = []
        for q in questions:
            cursor = conn.execute(
                """INSERT INTO questions
                   (test_id, question_number, question_image_url, correct_option)
                   VALUES (?, ?, ?, ?)""",
                (test_id, q.question_number, q.question_image_url,
                 q.correct_option),
            )
            question_ids.append(cursor.lastrowid)

    logger.info(
        f"Stored test {test_id} ({name!r}) with {len(question_ids)} questions"
    )
    return test_id, question_ids


def get_test(test_id: int, db_path: str = None) -> Optional[dict]:
    """Get a test with its questions ordered by number."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM tests WHERE id = ?", (test_id,)
        ).fetchone()
        if not row:
            return None
        test = _hydrate_test(dict(row))
        test["questions"] = _fetch_questions(conn, test_id)
        return test


def list_tests(db_path: str = None) -> list[dict]:
    """List all tests, newest first, with question counts."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT t.*, COUNT(q.id) AS question_count,
                      SUM(CASE WHEN q.correct_option IS NULL THEN 1 ELSE 0 END)
                          AS unanswered_count
               FROM tests t LEFT JOIN questions q ON q.test_id = t.id
               GROUP BY t.id
               ORDER BY t.created_at DESC, t.id DESC"""
        ).fetchall()
    tests = []
    for row in rows:
        test = _hydrate_test(dict(row))
        test["unanswered_count"] = test["unanswered_count"] or 0
        tests.append(test)
    return tests


def update_test(test_id: int, db_path: str = None, **fields) -> bool:
    """Update test columns. Unknown fields are ignored."""
    fields = {k: v for k, v in fields.items() if k in _TEST_FIELDS}
    if not fields:
        return False
    assignments = ", ".join(f"{k} = ?" for k in fields)
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE tests SET {assignments} WHERE id = ?",
            (*fields.values(), test_id),
        )
        return cursor.rowcount > 0


def publish_test(
    test_id: int,
    conduct_date: str,
    visibility_date: str,
    db_path: str = None,
) -> int:
    """
    Publish a test once every question has a correct option.

    Returns:
        Number of questions still missing an answer. The test is published
        only when this is 0.
    """
    with get_connection(db_path) as conn:
        missing = conn.execute(
            """SELECT COUNT(*) FROM questions
               WHERE test_id = ? AND correct_option IS NULL""",
            (test_id,),
        ).fetchone()[0]
        if missing:
            return missing
        conn.execute(
            """UPDATE tests
               SET is_published = 1, conduct_date = ?, visibility_date = ?
               WHERE id = ?""",
            (conduct_date, visibility_date, test_id),
        )
    logger.info(f"Published test {test_id}")
    return 0


def delete_test(test_id: int, db_path: str = None) -> bool:
    """Delete a test and, by cascade, its questions."""
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM tests WHERE id = ?", (test_id,))
        return cursor.rowcount > 0


# ─── Questions ────────────────────────────────────────────────────────────────


def get_test_questions(test_id: int, db_path: str = None) -> list[dict]:
    with get_connection(db_path) as conn:
        return _fetch_questions(conn, test_id)


def get_question(question_id: int, db_path: str = None) -> Optional[dict]:
    """Get a question joined with its test's group id."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            """SELECT q.*, t.group_id FROM questions q
               JOIN tests t ON t.id = q.test_id
               WHERE q.id = ?""",
            (question_id,),
        ).fetchone()
        return dict(row) if row else None


def update_question(question_id: int, db_path: str = None, **fields) -> bool:
    """
    Update question columns. Unknown fields are ignored.

    Raises:
        ValueError: If correct_option is not one of A-D or None.
    """
    fields = {k: v for k, v in fields.items() if k in _QUESTION_FIELDS}
    if not fields:
        return False
    option = fields.get("correct_option")
    if option is not None and option not in VALID_OPTIONS:
        raise ValueError(f"Invalid option: {option!r}")

    assignments = ", ".join(f"{k} = ?" for k in fields)
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE questions SET {assignments} WHERE id = ?",
            (*fields.values(), question_id),
        )
        return cursor.rowcount > 0


def delete_question(question_id: int, db_path: str = None) -> Optional[str]:
    """
    Delete a question and keep the test's count in step.
    Returns the deleted question's image URL, or None if it didn't exist.
    """
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT test_id, question_image_url FROM questions WHERE id = ?",
            (question_id,),
        ).fetchone()
        if not row:
            return None
        conn.execute("DELETE FROM questions WHERE id = ?", (question_id,))
        conn.execute(
            """UPDATE tests SET total_questions =
                   (SELECT COUNT(*) FROM questions WHERE test_id = ?)
               WHERE id = ?""",
            (row["test_id"], row["test_id"]),
        )
        return row["question_image_url"]


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _fetch_questions(conn: sqlite3.Connection, test_id: int) -> list[dict]:
    rows = conn.execute(
        """SELECT * FROM questions WHERE test_id = ?
           ORDER BY question_number ASC, id ASC""",
        (test_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def _hydrate_test(test: dict) -> dict:
    test["is_published"] = bool(test.get("is_published"))
    return test
