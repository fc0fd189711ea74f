"""Tests for in-file and stored duplicate detection."""
from __future__ import annotations

from qbank_importer.commit import commit_plan
from qbank_importer.duplicates import (
    find_in_file_duplicates,
    find_stored_duplicates,
    fingerprint,
)
from qbank_importer.models import PlannedQuestion
from qbank_importer.planning import Planner


def question(row=1, text="Quel est le signe ?", answers=(0,), **kw) -> PlannedQuestion:
    return PlannedQuestion(
        sheet=kw.pop("sheet", "qcm"),
        row=row,
        specialty_name=kw.pop("specialty", "Cardiologie"),
        lecture_title=kw.pop("lecture", "IC"),
        text=text,
        options=["Dyspnée", "Toux"],
        correct_answers=list(answers),
        **kw,
    )


def plan_of(*questions):
    planner = Planner()
    for q in questions:
        planner._register(q)
        planner.questions.append(q)
    return planner.result()


class TestInFile:
    def test_identical_rows_flagged_after_first(self):
        errors = find_in_file_duplicates([question(1), question(2), question(3)])
        assert errors == [
            "Row 2 (qcm): Duplicate in file, identical to row 1 (qcm)",
            "Row 3 (qcm): Duplicate in file, identical to row 1 (qcm)",
        ]

    def test_whitespace_insensitive(self):
        assert fingerprint(question(text="Quel  est le\nsigne ?")) == fingerprint(question())

    def test_answer_order_irrelevant(self):
        assert fingerprint(question(answers=(1, 0))) == fingerprint(question(answers=(0, 1)))

    def test_different_fields_not_duplicates(self):
        qs = [
            question(1),
            question(2, answers=(1,)),
            question(3, number=7),
            question(4, lecture="Autre cours"),
            question(5, session="Juin 2022"),
        ]
        assert find_in_file_duplicates(qs) == []


class TestStored:
    def test_detects_existing_question(self, tmp_db):
        commit_plan(tmp_db, plan_of(question(1)))
        errors = find_stored_duplicates(tmp_db, [question(5), question(6, text="Autre question")])
        assert errors == ["Row 5 (qcm): Duplicate in database, identical question already exists"]

    def test_same_text_different_answer_is_new(self, tmp_db):
        commit_plan(tmp_db, plan_of(question(1)))
        assert find_stored_duplicates(tmp_db, [question(2, answers=(1,))]) == []

    def test_unknown_lecture_skipped(self, tmp_db):
        commit_plan(tmp_db, plan_of(question(1)))
        assert find_stored_duplicates(tmp_db, [question(2, lecture="Nouveau")]) == []
        assert find_stored_duplicates(tmp_db, [question(3, specialty="Pneumologie")]) == []

    def test_chunked_lookup(self, tmp_db):
        stored = [question(i, text=f"Question {i}") for i in range(1, 8)]
        commit_plan(tmp_db, plan_of(*stored))
        incoming = [question(i, text=f"Question {i}") for i in range(1, 8)]
        errors = find_stored_duplicates(tmp_db, incoming, chunk_size=3)
        assert len(errors) == 7
        assert errors[0].startswith("Row 1 (qcm)")
