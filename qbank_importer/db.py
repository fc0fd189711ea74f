from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from qbank_importer.models import PlannedQuestion

SCHEMA = """
CREATE TABLE IF NOT EXISTS levels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    ord INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS semesters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    ord INTEGER NOT NULL,
    level_id INTEGER NOT NULL REFERENCES levels(id),
    UNIQUE (level_id, ord)
);

CREATE TABLE IF NOT EXISTS specialties (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    level_id INTEGER REFERENCES levels(id),
    semester_id INTEGER REFERENCES semesters(id)
);

CREATE TABLE IF NOT EXISTS lectures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    specialty_id INTEGER NOT NULL REFERENCES specialties(id),
    UNIQUE (specialty_id, title)
);

CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    lecture_id INTEGER NOT NULL REFERENCES lectures(id),
    type TEXT NOT NULL,
    text TEXT NOT NULL,
    options_json TEXT NOT NULL DEFAULT '[]',
    correct_answers_json TEXT NOT NULL DEFAULT '[]',
    course_reminder TEXT,
    explanation TEXT,
    number INTEGER,
    session TEXT,
    media_url TEXT,
    media_type TEXT,
    case_number INTEGER,
    case_text TEXT,
    case_question_number INTEGER,
    ai_fixed INTEGER DEFAULT 0,
    import_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_questions_lecture_text ON questions (lecture_id, text);

CREATE TABLE IF NOT EXISTS ai_jobs (
    id TEXT PRIMARY KEY,
    file_name TEXT,
    instructions TEXT,
    status TEXT NOT NULL,
    progress INTEGER DEFAULT 0,
    message TEXT,
    stats_json TEXT DEFAULT '{}',
    logs_json TEXT DEFAULT '[]',
    error TEXT,
    result BLOB,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT
);
"""

QUESTION_COLUMNS = (
    "id", "lecture_id", "type", "text", "options_json", "correct_answers_json",
    "course_reminder", "explanation", "number", "session", "media_url",
    "media_type", "case_number", "case_text", "case_question_number",
    "ai_fixed", "import_id", "created_at",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def question_row(q: PlannedQuestion, lecture_id: int, import_id: str | None = None) -> tuple:
    """Column tuple for ``insert_questions`` (same order as QUESTION_COLUMNS)."""
    return (
        str(uuid.uuid4()),
        lecture_id,
        q.question_type,
        q.text,
        json.dumps(q.options, ensure_ascii=False),
        json.dumps(list(q.answer_key()), ensure_ascii=False),
        q.course_reminder,
        q.explanation,
        q.number,
        q.session,
        q.media_url,
        q.media_type,
        q.case_number,
        q.case_text,
        q.case_question_number,
        int(q.ai_fixed),
        import_id,
        _now(),
    )


class Database:
    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """One write transaction; rolled back on any exception.

        ``BEGIN IMMEDIATE`` takes the write lock up front, waiting at most
        the connection timeout for a concurrent writer.
        """
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # ── Hierarchy (call inside transaction()) ─────────────────────────────

    def resolve_level(self, name: str) -> tuple[int, bool]:
        """Return ``(level_id, created)``; a new level goes after the existing ones."""
        row = self.conn.execute(
            "SELECT id FROM levels WHERE UPPER(name) = UPPER(?)", (name,)
        ).fetchone()
        if row:
            return row["id"], False
        count = self.conn.execute("SELECT COUNT(*) FROM levels").fetchone()[0]
        cur = self.conn.execute(
            "INSERT INTO levels (name, ord) VALUES (?, ?)", (name, count + 1)
        )
        return cur.lastrowid, True

    def resolve_semester(self, level_id: int, name: str, order: int) -> tuple[int, bool]:
        row = self.conn.execute(
            "SELECT id FROM semesters WHERE level_id = ? AND ord = ?", (level_id, order)
        ).fetchone()
        if row:
            return row["id"], False
        cur = self.conn.execute(
            "INSERT INTO semesters (name, ord, level_id) VALUES (?, ?, ?)",
            (name, order, level_id),
        )
        return cur.lastrowid, True

    def resolve_specialty(
        self, name: str, level_id: int | None = None, semester_id: int | None = None,
    ) -> tuple[int, bool]:
        """Find or create a specialty; an existing one without placement gets linked."""
        row = self.conn.execute(
            "SELECT id, level_id, semester_id FROM specialties WHERE name = ?", (name,)
        ).fetchone()
        if row:
            if level_id is not None and row["level_id"] is None:
                self.conn.execute(
                    "UPDATE specialties SET level_id = ? WHERE id = ?", (level_id, row["id"])
                )
            if semester_id is not None and row["semester_id"] is None:
                self.conn.execute(
                    "UPDATE specialties SET semester_id = ? WHERE id = ?", (semester_id, row["id"])
                )
            return row["id"], False
        cur = self.conn.execute(
            "INSERT INTO specialties (name, level_id, semester_id) VALUES (?, ?, ?)",
            (name, level_id, semester_id),
        )
        return cur.lastrowid, True

    def resolve_lecture(self, specialty_id: int, title: str) -> tuple[int, bool]:
        row = self.conn.execute(
            "SELECT id FROM lectures WHERE specialty_id = ? AND title = ?", (specialty_id, title)
        ).fetchone()
        if row:
            return row["id"], False
        cur = self.conn.execute(
            "INSERT INTO lectures (title, specialty_id) VALUES (?, ?)", (title, specialty_id)
        )
        return cur.lastrowid, True

    def insert_questions(self, rows: list[tuple]) -> int:
        placeholders = ", ".join("?" for _ in QUESTION_COLUMNS)
        self.conn.executemany(
            f"INSERT INTO questions ({', '.join(QUESTION_COLUMNS)}) VALUES ({placeholders})",
            rows,
        )
        return len(rows)

    # ── Lookups ───────────────────────────────────────────────────────────

    def find_level(self, name: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM levels WHERE UPPER(name) = UPPER(?)", (name,)
        ).fetchone()
        return dict(row) if row else None

    def find_specialty(self, name: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM specialties WHERE name = ?", (name,)
        ).fetchone()
        return dict(row) if row else None

    def find_lecture(self, specialty_id: int, title: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM lectures WHERE specialty_id = ? AND title = ?", (specialty_id, title)
        ).fetchone()
        return dict(row) if row else None

    def find_questions_by_texts(
        self, lecture_id: int, texts: list[str], chunk_size: int = 500,
    ) -> list[dict]:
        """Questions of *lecture_id* whose text is in *texts*, fetched in chunks."""
        found: list[dict] = []
        for start in range(0, len(texts), chunk_size):
            chunk = texts[start:start + chunk_size]
            marks = ", ".join("?" for _ in chunk)
            rows = self.conn.execute(
                f"SELECT * FROM questions WHERE lecture_id = ? AND text IN ({marks})",
                (lecture_id, *chunk),
            ).fetchall()
            found.extend(dict(r) for r in rows)
        return found

    def get_questions_for_lecture(self, lecture_id: int) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM questions WHERE lecture_id = ? ORDER BY created_at, rowid",
            (lecture_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_question_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM questions").fetchone()[0]

    def get_stats(self) -> dict:
        def count(table: str) -> int:
            return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        return {
            "levels": count("levels"),
            "semesters": count("semesters"),
            "specialties": count("specialties"),
            "lectures": count("lectures"),
            "questions": count("questions"),
            "ai_jobs": count("ai_jobs"),
        }

    # ── AI jobs ───────────────────────────────────────────────────────────

    def save_ai_job(self, job: dict) -> None:
        """Upsert a durable job record, merging stats with what is stored."""
        existing = self.get_ai_job(job["id"])
        stats = dict(existing["stats"]) if existing else {}
        stats.update(job.get("stats") or {})
        now = _now()
        status = job["status"]
        started_at = existing["started_at"] if existing else None
        if started_at is None and status != "queued":
            started_at = now
        completed_at = existing["completed_at"] if existing else None
        if status in ("completed", "failed"):
            completed_at = completed_at or now
        self.conn.execute(
            "INSERT OR REPLACE INTO ai_jobs "
            "(id, file_name, instructions, status, progress, message, stats_json, "
            "logs_json, error, result, created_at, started_at, completed_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                job["id"],
                job.get("file_name"),
                job.get("instructions"),
                status,
                int(min(100, max(0, job.get("progress", 0)))),
                (job.get("message") or "")[:500] or None,
                json.dumps(stats, ensure_ascii=False),
                json.dumps(job.get("logs") or [], ensure_ascii=False),
                job.get("error"),
                job.get("result") if job.get("result") is not None
                else (existing["result"] if existing else None),
                existing["created_at"] if existing else now,
                started_at,
                completed_at,
                now,
            ),
        )
        self.conn.commit()

    def _ai_job_from_row(self, row: sqlite3.Row) -> dict:
        d = dict(row)
        d["stats"] = json.loads(d.pop("stats_json") or "{}")
        d["logs"] = json.loads(d.pop("logs_json") or "[]")
        return d

    def get_ai_job(self, job_id: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM ai_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return self._ai_job_from_row(row) if row else None

    def list_ai_jobs(self, status: str | None = None, limit: int = 10) -> list[dict]:
        limit = max(1, min(limit, 100))
        if status:
            rows = self.conn.execute(
                "SELECT * FROM ai_jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM ai_jobs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        jobs = [self._ai_job_from_row(r) for r in rows]
        for j in jobs:
            j.pop("result", None)
        return jobs

    def delete_ai_job(self, job_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM ai_jobs WHERE id = ?", (job_id,))
        self.conn.commit()
        return cur.rowcount > 0
