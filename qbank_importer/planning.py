"""Turn canonical rows into planned questions plus the hierarchy they need."""
from __future__ import annotations

import re
from collections.abc import Iterable

from qbank_importer.models import (
    CLINICAL_KINDS,
    PlannedQuestion,
    PlanResult,
    SheetRow,
)
from qbank_importer.text_repair import (
    clean_answer_text,
    extract_image_url,
    is_missing_answer,
    media_type_for,
    narrow_case_answer,
    parse_answer_letters,
    parse_int,
)

OPTION_LETTERS = "abcde"


def normalize_level_name(raw: str | None) -> str:
    """"pcem 1" -> "PCEM1"; other values are just uppercased."""
    s = (raw or "").strip()
    if not s:
        return ""
    compact = re.sub(r"\s+", "", s).upper()
    m = re.match(r"^(PCEM|DCEM)(\d)$", compact)
    if m:
        return f"{m.group(1)}{m.group(2)}"
    return s.upper()


def parse_semester_order(raw: str | None) -> int | None:
    s = (raw or "").upper()
    if not s.strip():
        return None
    if re.search(r"(^|\W)S?1(\W|$)", s):
        return 1
    if re.search(r"(^|\W)S?2(\W|$)", s):
        return 2
    return parse_int(s)


def semester_name(level_name: str, order: int) -> str:
    return f"{level_name} - S{order}"


def build_combined_explanation(values: dict[str, str]) -> str | None:
    base = values.get("explication", "").strip()
    per_option = [
        f"({letter.upper()}) {values[f'explication {letter}'].strip()}"
        for letter in OPTION_LETTERS
        if values.get(f"explication {letter}", "").strip()
    ]
    if not per_option:
        return base or None
    combined = base + "\n\n" if base else ""
    return combined + "Explications:\n" + "\n".join(per_option)


def row_label(row: SheetRow | PlannedQuestion) -> str:
    return f"Row {row.row} ({row.sheet})"


class Planner:
    """Accumulates planned questions row by row.

    Specialty and lecture columns are forward-filled within a sheet. A
    lecture is only carried over while the specialty stays the same.
    With ``ai_repair`` set, rows whose only problem is a missing or
    unparseable answer (or missing options) are queued for repair instead
    of rejected.
    """

    def __init__(
        self,
        *,
        ai_repair: bool = False,
        max_text_length: int = 1000,
        max_answer_length: int = 500,
    ):
        self.ai_repair = ai_repair
        self.max_text_length = max_text_length
        self.max_answer_length = max_answer_length
        self.questions: list[PlannedQuestion] = []
        self.errors: list[str] = []
        self._fill: dict[str, tuple[str, str]] = {}
        self._specialties: dict[str, tuple[str | None, int | None]] = {}
        self._lectures: dict[str, list[str]] = {}
        self._levels: list[str] = []
        self._semesters: list[tuple[str, int]] = []

    def _forward_fill(self, row: SheetRow) -> tuple[str, str]:
        prev_spec, prev_lect = self._fill.get(row.sheet, ("", ""))
        specialty = row.get("matiere")
        lecture = row.get("cours")
        if not specialty:
            specialty = prev_spec
            lecture = lecture or prev_lect
        elif not lecture and specialty == prev_spec:
            lecture = prev_lect
        self._fill[row.sheet] = (specialty, lecture)
        return specialty, lecture

    def add(self, row: SheetRow) -> PlannedQuestion | None:
        specialty, lecture = self._forward_fill(row)
        problems: list[str] = []
        if not specialty or not lecture:
            problems.append("Missing specialty or lecture information")

        raw_text = row.get("texte de la question")
        text, media_url, media_type = extract_image_url(raw_text)
        case_text = row.get("texte du cas")
        if media_url is None and row.get("image"):
            media_url = row.get("image")
            media_type = media_type_for(media_url)
        if not text and row.sheet in CLINICAL_KINDS and case_text:
            text = case_text
        if not text and not media_url:
            problems.append("Missing question text")
        elif len(text) > self.max_text_length:
            problems.append(
                f"Question text too long ({len(text)} characters, max {self.max_text_length})")

        question_number = parse_int(row.get("question n"))
        q = PlannedQuestion(
            sheet=row.sheet,
            row=row.row,
            specialty_name=specialty,
            lecture_title=lecture,
            text=text,
            level_name=normalize_level_name(row.get("niveau")) or None,
            semester_order=parse_semester_order(row.get("semestre")),
            course_reminder=row.get("rappel") or None,
            explanation=build_combined_explanation(row.values),
            number=question_number,
            session=row.get("source") or None,
            media_url=media_url,
            media_type=media_type,
        )
        if q.is_clinical:
            q.case_number = parse_int(row.get("cas n"))
            q.case_text = case_text or None
            q.case_question_number = question_number

        if q.is_mcq:
            q.options = [
                row.get(f"option {letter}")
                for letter in OPTION_LETTERS
                if row.get(f"option {letter}")
            ]
            raw_answer = row.get("reponse")
            if q.is_clinical:
                raw_answer = narrow_case_answer(raw_answer, question_number)
            q.correct_answers = parse_answer_letters(raw_answer, len(q.options))
            missing = []
            if not q.options:
                missing.append("Missing options")
            if not q.correct_answers:
                missing.append("Missing or invalid answer")
            if missing:
                if self.ai_repair:
                    q.needs_repair = True
                else:
                    problems.extend(missing)
        else:
            raw_answer = row.get("reponse")
            q.answer = "" if is_missing_answer(raw_answer) else clean_answer_text(raw_answer)
            if not q.answer:
                if self.ai_repair:
                    q.needs_repair = True
                else:
                    problems.append("Missing answer")
            elif len(q.answer) > self.max_answer_length:
                problems.append(
                    f"Answer too long ({len(q.answer)} characters, max {self.max_answer_length})")

        if problems:
            self.errors.extend(f"{row_label(row)}: {p}" for p in problems)
            return None
        self._register(q)
        self.questions.append(q)
        return q

    def _register(self, q: PlannedQuestion) -> None:
        if q.specialty_name not in self._specialties:
            self._specialties[q.specialty_name] = (q.level_name, q.semester_order)
            self._lectures[q.specialty_name] = []
        elif self._specialties[q.specialty_name][0] is None and q.level_name:
            # first row carrying a level hint decides the specialty's placement
            self._specialties[q.specialty_name] = (q.level_name, q.semester_order)
        if q.lecture_title not in self._lectures[q.specialty_name]:
            self._lectures[q.specialty_name].append(q.lecture_title)
        if q.level_name and q.level_name not in self._levels:
            self._levels.append(q.level_name)
        if q.level_name and q.semester_order is not None:
            key = (q.level_name, q.semester_order)
            if key not in self._semesters:
                self._semesters.append(key)

    def result(self) -> PlanResult:
        return PlanResult(
            questions=self.questions,
            errors=self.errors,
            specialties=dict(self._specialties),
            lectures={k: list(v) for k, v in self._lectures.items()},
            levels=list(self._levels),
            semesters=list(self._semesters),
        )


def plan_rows(rows: Iterable[SheetRow], **kwargs) -> PlanResult:
    planner = Planner(**kwargs)
    for row in rows:
        planner.add(row)
    return planner.result()
