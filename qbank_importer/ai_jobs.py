"""Standalone AI correction job: workbook in, corrected workbook out."""
from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import uuid
from typing import TYPE_CHECKING

from openpyxl import Workbook

from qbank_importer.canonical import SHEET_KINDS
from qbank_importer.correction import (
    QROC_FALLBACK_ANSWER,
    CorrectionOrchestrator,
    RetryPolicy,
    apply_openers,
    fallback_explanation,
    fallback_rappel,
)
from qbank_importer.ingest import read_rows
from qbank_importer.models import MCQ_KINDS, BatchItem, CorrectionResult, SheetRow
from qbank_importer.text_repair import (
    clamp_sentences,
    clean_answer_text,
    clean_source,
    explanation_too_short,
    format_answer_letters,
    is_missing_answer,
    narrow_case_answer,
    parse_int,
    repair_option_text,
    repair_question_text,
    sanitize_subject,
)

if TYPE_CHECKING:
    from qbank_importer.config import Settings
    from qbank_importer.providers.base import LLMProvider
    from qbank_importer.registry import SessionStore

log = logging.getLogger("qbank_importer.ai")

LETTERS = "abcde"

IMPORT_HEADERS = (
    "matiere", "cours", "question n", "cas n", "source", "texte du cas",
    "texte de la question", "reponse",
    *(f"option {c}" for c in LETTERS),
    "rappel", "explication",
    *(f"explication {c}" for c in LETTERS),
    "image", "niveau", "semestre",
)
OUTPUT_HEADERS = IMPORT_HEADERS + ("ai_status", "ai_reason")

AI_REASONS = {
    "ai": "",
    "forced": "correction forcée",
    "fallback": "repli local (service IA indisponible)",
}

_LEVEL_IN_SOURCE_RE = re.compile(r"\b(PCEM\s*\d|DCEM\s*\d)\b", re.IGNORECASE)


def new_job_id() -> str:
    return f"ai_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _options(rec: dict[str, str]) -> list[str]:
    return [
        repair_option_text(rec[f"option {c}"])
        for c in LETTERS if rec.get(f"option {c}")
    ]


def _prepare(row: SheetRow) -> tuple[dict[str, str], BatchItem]:
    """Clean one input row in place and build the item sent for correction."""
    rec = dict(row.values)
    case_text = repair_question_text(rec.get("texte du cas", ""))
    text = repair_question_text(rec.get("texte de la question", ""))
    if not text and case_text:
        text = case_text
    rec["texte de la question"] = text
    combined = f"{case_text}\n\n{text}" if case_text and case_text != text else text
    raw = rec.get("reponse", "")
    if row.sheet in MCQ_KINDS:
        if row.sheet == "cas_qcm":
            raw = narrow_case_answer(raw, parse_int(rec.get("question n", "")))
        options = _options(rec)
        for i, opt in enumerate(options):
            rec[f"option {LETTERS[i]}"] = opt
        for c in LETTERS[len(options):]:
            rec[f"option {c}"] = ""
    else:
        options = []
        raw = clean_answer_text(raw)
    provided = None if is_missing_answer(raw) else raw
    item = BatchItem(
        id=f"{row.sheet}:{row.row}",
        question_text=combined,
        options=options,
        provided_answer_raw=provided,
        case_text=case_text or None,
    )
    return rec, item


def _is_blank(rec: dict[str, str]) -> bool:
    no_question = not rec.get("texte de la question") and not rec.get("texte du cas")
    no_options = not any(rec.get(f"option {c}") for c in LETTERS)
    return no_question and no_options and not rec.get("reponse")


def merge_mcq(rec: dict[str, str], item: BatchItem, result: CorrectionResult) -> bool:
    """Write an MCQ correction into *rec*; True if it should be enhanced."""
    options = result.fixed_options or item.options
    for i, c in enumerate(LETTERS):
        rec[f"option {c}"] = options[i] if i < len(options) else ""
    correct = list(result.correct_answers or [])
    rec["reponse"] = "?" if result.no_answer else format_answer_letters(correct)
    stem = rec.get("texte de la question") or rec.get("texte du cas")
    needs_enhance = result.source == "fallback"
    given = result.option_explanations or []
    explanations = []
    for i, opt in enumerate(options):
        text = clamp_sentences(given[i]) if i < len(given) and given[i] else ""
        if explanation_too_short(text):
            text = fallback_explanation(i in correct, opt, stem)
            needs_enhance = True
        explanations.append(text)
    for i, text in enumerate(apply_openers(explanations, correct, stem)):
        rec[f"explication {LETTERS[i]}"] = text
    rappel = clamp_sentences(result.global_explanation or "")
    if explanation_too_short(rappel):
        rappel = rec.get("rappel") or fallback_rappel(stem)
        needs_enhance = True
    rec["rappel"] = rappel
    return needs_enhance


def merge_qroc(rec: dict[str, str], result: CorrectionResult) -> None:
    answer = clean_answer_text(rec.get("reponse", ""))
    if is_missing_answer(answer):
        answer = clean_answer_text(result.answer or "") or QROC_FALLBACK_ANSWER
    rec["reponse"] = answer
    stem = rec.get("texte de la question") or rec.get("texte du cas")
    explanation = clamp_sentences(result.global_explanation or "")
    if result.source != "fallback" and not explanation_too_short(explanation):
        rec["rappel"] = explanation
    if not rec.get("rappel"):
        rec["rappel"] = fallback_rappel(stem)


class LevelBackfill:
    """Fills a missing ``niveau``/``matiere`` from the rest of the workbook."""

    def __init__(self, records: list[dict[str, str]]):
        self.by_course: dict[str, str] = {}
        self.by_subject: dict[str, str] = {}
        for rec in records:
            level = rec.get("niveau")
            if not level:
                continue
            if rec.get("cours"):
                self.by_course.setdefault(rec["cours"], level)
            if rec.get("matiere"):
                self.by_subject.setdefault(rec["matiere"], level)

    def apply(self, rec: dict[str, str]) -> None:
        level = rec.get("niveau", "")
        subject = rec.get("matiere", "")
        course = rec.get("cours", "")
        source = rec.get("source", "")
        if not level and course:
            level = self.by_course.get(course, "")
        if not level and subject:
            level = self.by_subject.get(subject, "")
        if not level and source:
            m = _LEVEL_IN_SOURCE_RE.search(source)
            if m:
                level = re.sub(r"\s+", "", m.group(1)).upper()
        if not subject and course:
            subject = course
        if not subject and "/" in source:
            parts = [p for p in re.split(r"[\\/]+", source) if p]
            if len(parts) >= 2 and re.match(r"^(PCEM|DCEM)\d$", parts[0], re.IGNORECASE):
                subject = parts[1]
                level = level or parts[0].upper()
        if not subject and level:
            subject = level
        rec["niveau"] = level
        rec["matiere"] = sanitize_subject(subject)
        rec["cours"] = course or rec["matiere"]
        rec["source"] = clean_source(source)


def build_output_workbook(rows_by_sheet: dict[str, list[dict[str, str]]]) -> bytes:
    wb = Workbook()
    wb.remove(wb.active)
    for kind in SHEET_KINDS:
        rows = rows_by_sheet.get(kind)
        if not rows:
            continue
        ws = wb.create_sheet(kind)
        ws.append(list(OUTPUT_HEADERS))
        for rec in rows:
            ws.append([rec.get(h, "") for h in OUTPUT_HEADERS])
    if not wb.sheetnames:
        wb.create_sheet("qcm").append(list(OUTPUT_HEADERS))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


class AiJobRun:
    def __init__(
        self,
        job_id: str,
        data: bytes,
        *,
        store: SessionStore,
        llm: LLMProvider | None,
        settings: Settings,
        instructions: str | None = None,
    ):
        self.job_id = job_id
        self.data = data
        self.store = store
        self.llm = llm
        self.settings = settings
        self.instructions = instructions

    def update(self, log_line: str | None = None, **patch) -> None:
        self.store.update(self.job_id, log_line, **patch)

    def bump_stats(self, **values) -> None:
        job = self.store.get(self.job_id)
        stats = dict(job.stats) if job else {}
        stats.update(values)
        self.update(stats=stats)

    def _orchestrator(self, on_progress) -> CorrectionOrchestrator:
        s = self.settings
        return CorrectionOrchestrator(
            self.llm,
            RetryPolicy(max_depth=s.ai_max_halving_depth, batch_attempts=s.ai_batch_attempts),
            batch_size=s.effective_batch_size,
            concurrency=s.effective_concurrency,
            instructions=self.instructions,
            on_progress=on_progress,
        )

    async def correct(self) -> dict[str, list[dict[str, str]]]:
        self.update("Lecture du fichier", phase="running", progress=5, message="Lecture du fichier…")
        rows = read_rows(self.data, loose=True)
        if not rows:
            raise ValueError("Aucune donnée trouvée dans les feuilles reconnues")

        self.update("Préparation des questions", progress=8, message="Préparation des questions…")
        prepared = [(row, *_prepare(row)) for row in rows]
        backfill = LevelBackfill([rec for _, rec, _ in prepared])
        mcq = [(rec, item) for row, rec, item in prepared if row.sheet in MCQ_KINDS]
        qroc = [(rec, item) for row, rec, item in prepared if row.sheet not in MCQ_KINDS]

        size = self.settings.effective_batch_size
        total_batches = -(-len(mcq) // size) + -(-len(qroc) // size)
        self.bump_stats(totalRows=len(rows), mcqRows=len(mcq), totalBatches=total_batches)
        self.update(
            f"Démarrage IA: {len(mcq)} QCM, {len(qroc)} QROC",
            progress=10,
            message="Traitement parallèle QCM + QROC…",
        )

        processed = 0

        def on_progress(done: int, total: int, message: str) -> None:
            nonlocal processed
            processed += 1
            self.bump_stats(processedBatches=processed)
            self.update(
                progress=10 + 80 * processed / max(1, total_batches),
                message=message,
            )

        mcq_results, qroc_results = await asyncio.gather(
            self._orchestrator(on_progress).correct([item for _, item in mcq], "mcq"),
            self._orchestrator(on_progress).correct([item for _, item in qroc], "qroc"),
        )

        self.update("Fusion des résultats", progress=90, message="Fusion des résultats…")
        by_sheet: dict[str, list[dict[str, str]]] = {k: [] for k in SHEET_KINDS}
        enhance: list[tuple[dict[str, str], BatchItem]] = []
        fixed = fallbacks = 0
        for row, rec, item in prepared:
            if _is_blank(rec):
                continue
            if row.sheet in MCQ_KINDS:
                result = mcq_results[item.id]
                if merge_mcq(rec, item, result):
                    enhance.append((rec, item))
            else:
                result = qroc_results[item.id]
                merge_qroc(rec, result)
            backfill.apply(rec)
            rec["ai_status"] = "fixed"
            rec["ai_reason"] = AI_REASONS[result.source]
            fallbacks += result.source == "fallback"
            fixed += 1
            by_sheet[row.sheet].append(rec)

        if enhance and not self.settings.ai_fast_mode:
            await self.enhance(enhance)

        self.bump_stats(fixedCount=fixed, errorCount=0, fallbackCount=fallbacks)
        return by_sheet

    async def enhance(self, targets: list[tuple[dict[str, str], BatchItem]]) -> None:
        self.update(
            f"Amélioration de {len(targets)} explication(s)",
            progress=92,
            message="Amélioration des explications…",
        )
        improved = await self._orchestrator(None).enhance([item for _, item in targets])
        for rec, item in targets:
            result = improved.get(item.id)
            if result is None:
                continue
            correct = [ord(c) - 65 for c in re.findall(r"[A-E]", rec.get("reponse", ""))]
            stem = rec.get("texte de la question") or rec.get("texte du cas")
            for i, text in enumerate(apply_openers(result.option_explanations or [], correct, stem)):
                rec[f"explication {LETTERS[i]}"] = text
            if result.global_explanation:
                rec["rappel"] = result.global_explanation
        self.update(f"{len(improved)}/{len(targets)} explication(s) améliorée(s)")

    async def run(self) -> None:
        log.info("AI job %s started (%d bytes)", self.job_id, len(self.data))
        try:
            by_sheet = await self.correct()
            result = await asyncio.to_thread(build_output_workbook, by_sheet)
        except Exception as e:
            log.warning("AI job %s failed: %s", self.job_id, e)
            self.update(f"Échec: {e}", phase="error", message=f"Échec: {e}", error=str(e))
            return
        job = self.store.get(self.job_id)
        fixed = job.stats.get("fixedCount", 0) if job else 0
        log.info("AI job %s complete: %d row(s)", self.job_id, fixed)
        self.update(
            f"IA terminée: {fixed} ligne(s) corrigée(s)",
            phase="complete",
            progress=100,
            message="IA terminée",
            result=result,
        )


async def run_ai_job(
    job_id: str,
    data: bytes,
    *,
    store: SessionStore,
    llm: LLMProvider | None,
    settings: Settings,
    instructions: str | None = None,
) -> None:
    await AiJobRun(
        job_id, data, store=store, llm=llm, settings=settings, instructions=instructions,
    ).run()
