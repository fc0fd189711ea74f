"""Intra-file and against-storage duplicate detection for planned questions."""
from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

from qbank_importer.models import PlannedQuestion
from qbank_importer.planning import row_label

if TYPE_CHECKING:
    from qbank_importer.db import Database


def normalize_text(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def content_key(
    question_type: str,
    text: str | None,
    answers: tuple[str, ...],
    number: int | None,
    session: str | None,
    course_reminder: str | None,
) -> tuple:
    return (
        question_type,
        normalize_text(text),
        tuple(sorted(answers)),
        number,
        normalize_text(session) or None,
        normalize_text(course_reminder) or None,
    )


def fingerprint(q: PlannedQuestion) -> tuple:
    """Stable identity of a planned row: where it goes plus what it says."""
    return (q.specialty_name, q.lecture_title) + content_key(
        q.question_type, q.text, q.answer_key(), q.number, q.session, q.course_reminder,
    )


def stored_key(row: dict) -> tuple:
    answers = tuple(str(a) for a in json.loads(row["correct_answers_json"] or "[]"))
    return content_key(
        row["type"], row["text"], answers, row["number"], row["session"], row["course_reminder"],
    )


def find_in_file_duplicates(questions: list[PlannedQuestion]) -> list[str]:
    """Flag every row whose fingerprint already occurred earlier in the file."""
    first_seen: dict[tuple, PlannedQuestion] = {}
    errors: list[str] = []
    for q in questions:
        fp = fingerprint(q)
        original = first_seen.get(fp)
        if original is None:
            first_seen[fp] = q
        else:
            errors.append(
                f"{row_label(q)}: Duplicate in file, identical to row {original.row} ({original.sheet})")
    return errors


def find_stored_duplicates(
    db: Database, questions: list[PlannedQuestion], chunk_size: int = 500,
) -> list[str]:
    """Compare planned rows with questions already stored under the same lecture.

    Lectures that do not exist yet cannot collide and are skipped.
    """
    by_pair: dict[tuple[str, str], list[PlannedQuestion]] = {}
    for q in questions:
        by_pair.setdefault((q.specialty_name, q.lecture_title), []).append(q)

    errors: list[tuple[int, str]] = []
    order = {id(q): i for i, q in enumerate(questions)}
    for (specialty_name, lecture_title), group in by_pair.items():
        specialty = db.find_specialty(specialty_name)
        if specialty is None:
            continue
        lecture = db.find_lecture(specialty["id"], lecture_title)
        if lecture is None:
            continue
        texts = sorted({q.text for q in group})
        existing = {
            stored_key(row)
            for row in db.find_questions_by_texts(lecture["id"], texts, chunk_size=chunk_size)
        }
        for q in group:
            key = content_key(
                q.question_type, q.text, q.answer_key(), q.number, q.session, q.course_reminder,
            )
            if key in existing:
                errors.append((
                    order[id(q)],
                    f"{row_label(q)}: Duplicate in database, identical question already exists",
                ))
    return [msg for _, msg in sorted(errors)]
