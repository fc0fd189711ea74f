"""All-or-nothing persistence of a validated import plan."""
from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from qbank_importer.db import question_row
from qbank_importer.errors import TransactionError
from qbank_importer.models import PlanResult
from qbank_importer.planning import semester_name

if TYPE_CHECKING:
    from qbank_importer.db import Database

log = logging.getLogger("qbank_importer.commit")


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def commit_plan(
    db: Database,
    plan: PlanResult,
    *,
    import_id: str | None = None,
    chunk_size: int = 1000,
    timeout: float = 600.0,
    on_progress: Callable[[int, int], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> dict:
    """Resolve the hierarchy and insert every planned question in one transaction.

    Order: levels, semesters, specialties, lectures, then questions grouped
    by lecture in chunks of *chunk_size*. ``on_progress(inserted, total)``
    runs after each chunk. Any failure, including running past *timeout*
    seconds, rolls the whole transaction back and raises TransactionError.
    """
    deadline = clock() + timeout
    total = len(plan.questions)
    stats = {
        "imported": 0,
        "createdLevels": 0,
        "createdSemesters": 0,
        "createdSpecialties": 0,
        "createdLectures": 0,
        "createdCases": 0,
        "questionsWithImages": 0,
    }

    def check_deadline(step: str) -> None:
        if clock() > deadline:
            raise TransactionError(f"Transaction timed out after {timeout:.0f}s ({step})")

    try:
        with db.transaction():
            level_ids: dict[str, int] = {}
            for name in plan.levels:
                level_ids[name], created = db.resolve_level(name)
                stats["createdLevels"] += created
            check_deadline("levels")

            semester_ids: dict[tuple[str, int], int] = {}
            for level_name, order in plan.semesters:
                semester_ids[(level_name, order)], created = db.resolve_semester(
                    level_ids[level_name], semester_name(level_name, order), order,
                )
                stats["createdSemesters"] += created
            check_deadline("semesters")

            specialty_ids: dict[str, int] = {}
            for name, (level_name, order) in plan.specialties.items():
                specialty_ids[name], created = db.resolve_specialty(
                    name,
                    level_ids.get(level_name) if level_name else None,
                    semester_ids.get((level_name, order)) if level_name else None,
                )
                stats["createdSpecialties"] += created
            check_deadline("specialties")

            lecture_ids: dict[tuple[str, str], int] = {}
            for specialty, titles in plan.lectures.items():
                for title in titles:
                    lecture_ids[(specialty, title)], created = db.resolve_lecture(
                        specialty_ids[specialty], title,
                    )
                    stats["createdLectures"] += created
            check_deadline("lectures")

            grouped: dict[int, list[tuple]] = {}
            cases: set[tuple[int, int]] = set()
            for q in plan.questions:
                lecture_id = lecture_ids[(q.specialty_name, q.lecture_title)]
                grouped.setdefault(lecture_id, []).append(question_row(q, lecture_id, import_id))
                if q.is_clinical and q.case_number is not None:
                    cases.add((lecture_id, q.case_number))
                if q.media_url:
                    stats["questionsWithImages"] += 1

            for lecture_id, rows in grouped.items():
                for chunk in _chunks(rows, chunk_size):
                    stats["imported"] += db.insert_questions(chunk)
                    log.info("Inserted %d/%d questions", stats["imported"], total)
                    if on_progress:
                        on_progress(stats["imported"], total)
                    check_deadline("questions")
            stats["createdCases"] = len(cases)
    except TransactionError:
        log.warning("Commit rolled back: deadline exceeded")
        raise
    except sqlite3.Error as e:
        log.warning("Commit rolled back: %s", e)
        raise TransactionError(str(e)) from e
    except Exception as e:
        log.warning("Commit rolled back: %s: %s", type(e).__name__, e)
        raise TransactionError(f"{type(e).__name__}: {e}") from e
    return stats
