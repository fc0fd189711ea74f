from __future__ import annotations

import time
from dataclasses import dataclass, field

# ordered canonical header -> trimmed cell text
CanonicalRow = dict[str, str]

MCQ_KINDS = ("qcm", "cas_qcm")
QROC_KINDS = ("qroc", "cas_qroc")
CLINICAL_KINDS = ("cas_qcm", "cas_qroc")

# sheet kind -> stored question type
QUESTION_TYPES = {
    "qcm": "mcq",
    "qroc": "qroc",
    "cas_qcm": "clinic_mcq",
    "cas_qroc": "clinic_croq",
}

IMPORT_PHASES = ("validating", "importing", "complete")
AI_PHASES = ("queued", "running", "complete", "error")

# volatile AI phase -> durable job status
AI_STATUS = {
    "queued": "queued",
    "running": "processing",
    "complete": "completed",
    "error": "failed",
}


@dataclass
class SheetRow:
    sheet: str  # qcm | qroc | cas_qcm | cas_qroc
    row: int  # 1-based data row index, header excluded
    values: CanonicalRow

    def get(self, key: str) -> str:
        return self.values.get(key, "")


@dataclass
class PlannedQuestion:
    sheet: str
    row: int
    specialty_name: str
    lecture_title: str
    text: str
    options: list[str] = field(default_factory=list)
    correct_answers: list[int] = field(default_factory=list)
    answer: str = ""  # qroc free-text answer
    level_name: str | None = None
    semester_order: int | None = None
    course_reminder: str | None = None
    explanation: str | None = None
    number: int | None = None
    session: str | None = None
    media_url: str | None = None
    media_type: str | None = None
    case_number: int | None = None
    case_text: str | None = None
    case_question_number: int | None = None
    needs_repair: bool = False
    ai_fixed: bool = False

    @property
    def question_type(self) -> str:
        return QUESTION_TYPES[self.sheet]

    @property
    def is_mcq(self) -> bool:
        return self.sheet in MCQ_KINDS

    @property
    def is_clinical(self) -> bool:
        return self.sheet in CLINICAL_KINDS

    def answer_key(self) -> tuple[str, ...]:
        """Stored form of the correct answers: option indices, or the free-text answer."""
        if self.is_mcq:
            return tuple(str(i) for i in sorted(set(self.correct_answers)))
        return (self.answer,) if self.answer else ()


@dataclass
class PlanResult:
    questions: list[PlannedQuestion]
    errors: list[str]
    specialties: dict[str, tuple[str | None, int | None]]  # name -> (level, semester)
    lectures: dict[str, list[str]]  # specialty -> lecture titles, first-seen order
    levels: list[str]
    semesters: list[tuple[str, int]]

    @property
    def repair_queue(self) -> list[PlannedQuestion]:
        return [q for q in self.questions if q.needs_repair]


@dataclass
class ImportSession:
    PHASES = IMPORT_PHASES

    id: str
    progress: float = 0
    phase: str = "validating"
    message: str = "Queued"
    logs: list[str] = field(default_factory=list)
    stats: dict = field(default_factory=dict)
    cancelled: bool = False
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        # a cancelled import still ends by moving to "complete"
        return self.phase == "complete"

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "progress": round(self.progress, 1),
            "phase": self.phase,
            "message": self.message,
            "logs": list(self.logs),
            "stats": dict(self.stats),
            "cancelled": self.cancelled,
            "error": self.error,
        }


@dataclass
class AiJob:
    PHASES = AI_PHASES

    id: str
    file_name: str = ""
    instructions: str | None = None
    progress: float = 0
    phase: str = "queued"
    message: str = "En attente"
    logs: list[str] = field(default_factory=list)
    stats: dict = field(default_factory=lambda: {
        "totalRows": 0,
        "mcqRows": 0,
        "processedBatches": 0,
        "totalBatches": 0,
        "fixedCount": 0,
        "errorCount": 0,
    })
    error: str | None = None
    result: bytes | None = None
    created_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.phase in ("complete", "error")

    @property
    def status(self) -> str:
        return AI_STATUS[self.phase]

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "progress": round(self.progress, 1),
            "phase": self.phase,
            "status": self.status,
            "message": self.message,
            "logs": list(self.logs),
            "stats": dict(self.stats),
            "error": self.error,
            "hasResult": self.result is not None,
        }


@dataclass
class BatchItem:
    id: str
    question_text: str
    options: list[str] = field(default_factory=list)
    provided_answer_raw: str | None = None
    case_text: str | None = None

    def to_payload(self) -> dict:
        """Wire shape sent to the completion service (texts capped)."""
        payload: dict = {"id": self.id, "questionText": self.question_text[:500]}
        if self.options:
            payload["options"] = [o[:140] for o in self.options]
        if self.provided_answer_raw:
            key = "providedAnswerRaw" if self.options else "answerText"
            payload[key] = self.provided_answer_raw
        if self.case_text:
            payload["caseText"] = self.case_text[:500]
        return payload


@dataclass
class CorrectionResult:
    id: str
    status: str  # ok | error
    fixed_text: str | None = None
    fixed_options: list[str] | None = None
    correct_answers: list[int] | None = None
    option_explanations: list[str] | None = None
    global_explanation: str | None = None
    answer: str | None = None  # qroc only
    no_answer: bool = False
    error: str | None = None
    source: str = "ai"  # ai | forced | fallback
