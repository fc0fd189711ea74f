"""Background import pipeline: ingest, plan, repair, dedupe, commit."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING

from qbank_importer.commit import commit_plan
from qbank_importer.correction import QROC_FALLBACK_ANSWER, CorrectionOrchestrator, RetryPolicy
from qbank_importer.db import Database
from qbank_importer.duplicates import find_in_file_duplicates, find_stored_duplicates
from qbank_importer.errors import DuplicateError, ImportAbort, RowValidationError, TransactionError
from qbank_importer.ingest import SpreadsheetIngestor
from qbank_importer.models import BatchItem, CorrectionResult, PlannedQuestion, PlanResult
from qbank_importer.planning import Planner
from qbank_importer.text_repair import (
    format_answer_letters,
    repair_option_text,
    repair_question_text,
)

if TYPE_CHECKING:
    from qbank_importer.config import Settings
    from qbank_importer.providers.base import LLMProvider
    from qbank_importer.registry import SessionStore

log = logging.getLogger("qbank_importer.import")


class _Cancelled(Exception):
    pass


def new_import_id() -> str:
    return f"import_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def batch_item_for(q: PlannedQuestion, item_id: str) -> BatchItem:
    text = repair_question_text(q.text)
    case_text = repair_question_text(q.case_text) if q.case_text else None
    combined = f"{case_text}\n\n{text}" if case_text and case_text != text else text
    if q.is_mcq:
        raw = format_answer_letters(q.correct_answers)
    else:
        raw = q.answer
    return BatchItem(
        id=item_id,
        question_text=combined,
        options=[repair_option_text(o) for o in q.options],
        provided_answer_raw=raw or None,
        case_text=case_text,
    )


def apply_correction(q: PlannedQuestion, result: CorrectionResult, max_answer_length: int = 500) -> None:
    """Fill the gaps of a repair-queued question from its correction result."""
    if result.fixed_text and not q.text:
        q.text = result.fixed_text
    if q.is_mcq:
        if result.fixed_options and len(result.fixed_options) >= len(q.options):
            q.options = list(result.fixed_options)
        correct = [i for i in (result.correct_answers or []) if 0 <= i < len(q.options)]
        q.correct_answers = correct or [0]
        if not q.explanation and result.option_explanations:
            lines = [
                f"({chr(65 + i)}) {text}"
                for i, text in enumerate(result.option_explanations) if text
            ]
            if lines:
                q.explanation = "Explications:\n" + "\n".join(lines)
    elif not q.answer:
        q.answer = (result.answer or QROC_FALLBACK_ANSWER)[:max_answer_length]
    if not q.course_reminder and result.global_explanation:
        q.course_reminder = result.global_explanation
    q.needs_repair = False
    q.ai_fixed = True


class ImportRun:
    """Drives one import session from bytes to committed rows.

    The session store is the only thing written besides the database;
    every stage reports through it.
    """

    def __init__(
        self,
        session_id: str,
        data: bytes,
        *,
        db: Database,
        store: SessionStore,
        settings: Settings,
        llm: LLMProvider | None = None,
        ai_repair: bool = False,
    ):
        self.session_id = session_id
        self.data = data
        self.db = db
        self.store = store
        self.settings = settings
        self.llm = llm
        self.ai_repair = ai_repair

    def update(self, log_line: str | None = None, **patch) -> None:
        self.store.update(self.session_id, log_line, **patch)

    def check_cancelled(self) -> None:
        session = self.store.get(self.session_id)
        if session is None or session.cancelled:
            raise _Cancelled()

    # ── stages ──

    async def plan(self) -> PlanResult:
        planner = Planner(
            ai_repair=self.ai_repair,
            max_text_length=self.settings.max_text_length,
            max_answer_length=self.settings.max_answer_length,
        )
        every = max(1, self.settings.progress_every_rows)

        def on_rows(seen: int) -> None:
            self.update(message=f"Validating rows ({seen} read)")

        with SpreadsheetIngestor(self.data, progress_every=every, on_progress=on_rows) as ingestor:
            kinds = ingestor.kinds
            for title in ingestor.skipped_sheets:
                self.update(f"Sheet '{title}' not recognized, skipped")
            if not kinds:
                raise RowValidationError(["No recognized sheet (expected qcm, qroc, cas_qcm or cas_qroc)"])
            for index, kind in enumerate(kinds):
                self.check_cancelled()
                self.update(
                    f"Validating sheet {kind} ({ingestor.sheet_title(kind)})",
                    progress=5 + 35 * index / len(kinds),
                    message=f"Validating {kind}",
                )
                for n, row in enumerate(ingestor.rows(kind), start=1):
                    planner.add(row)
                    if n % every == 0:
                        self.check_cancelled()
                        await asyncio.sleep(0)
                await asyncio.sleep(0)
        plan = planner.result()
        self.update(
            f"Validated {len(plan.questions)} question(s), {len(plan.errors)} error(s)",
            progress=40,
        )
        return plan

    async def repair(self, plan: PlanResult) -> None:
        queue = plan.repair_queue
        if not queue:
            return
        self.update(
            f"AI repair: {len(queue)} row(s) queued",
            phase="validating",
            progress=40,
            message=f"AI repair ({len(queue)} rows)",
        )
        settings = self.settings
        policy = RetryPolicy(
            max_depth=settings.ai_max_halving_depth,
            batch_attempts=settings.ai_batch_attempts,
        )

        def on_progress(done: int, total: int, message: str) -> None:
            self.update(progress=40 + 20 * done / max(1, total), message=f"AI repair: {message}")

        orchestrator = CorrectionOrchestrator(
            self.llm,
            policy,
            batch_size=settings.effective_batch_size,
            concurrency=settings.effective_concurrency,
            require_answer=True,
            on_progress=on_progress,
        )
        for kind in ("mcq", "qroc"):
            group = [q for q in queue if q.is_mcq == (kind == "mcq")]
            if not group:
                continue
            items = [batch_item_for(q, str(i)) for i, q in enumerate(group)]
            results = await orchestrator.correct(items, kind)
            fallbacks = 0
            for item, q in zip(items, group):
                result = results[item.id]
                fallbacks += result.source == "fallback"
                apply_correction(q, result, settings.max_answer_length)
            self.update(f"AI repair ({kind}): {len(group)} row(s) fixed, {fallbacks} by local fallback")
            self.check_cancelled()

    def check_duplicates(self, plan: PlanResult) -> list[ImportAbort]:
        failures: list[ImportAbort] = []
        in_file = find_in_file_duplicates(plan.questions)
        if in_file:
            failures.append(DuplicateError(in_file, "file"))
        stored = find_stored_duplicates(self.db, plan.questions)
        if stored:
            failures.append(DuplicateError(stored, "database"))
        return failures

    async def commit(self, plan: PlanResult) -> dict:
        total = len(plan.questions)
        self.update(
            f"Importing {total} question(s)",
            phase="importing",
            progress=70,
            message=f"Importing 0/{total}",
        )

        def on_progress(inserted: int, total: int) -> None:
            self.update(progress=70 + 29 * inserted / max(1, total), message=f"Importing {inserted}/{total}")

        def work() -> dict:
            conn = Database(self.db.db_path, timeout=self.settings.transaction_max_wait_seconds)
            try:
                return commit_plan(
                    conn,
                    plan,
                    import_id=self.session_id,
                    chunk_size=self.settings.commit_chunk_size,
                    timeout=self.settings.transaction_timeout_seconds,
                    on_progress=on_progress,
                )
            finally:
                conn.close()

        return await asyncio.to_thread(work)

    # ── driver ──

    async def run(self) -> None:
        log.info("Import %s started (%d bytes, ai_repair=%s)", self.session_id, len(self.data), self.ai_repair)
        self.update("Import started", phase="validating", progress=1, message="Reading workbook")
        try:
            plan = await self.plan()
            failures: list[ImportAbort] = []
            if plan.errors:
                failures.append(RowValidationError(plan.errors))
            elif self.ai_repair:
                await self.repair(plan)
            self.check_cancelled()
            self.update("Checking duplicates", progress=60, message="Checking duplicates")
            failures.extend(self.check_duplicates(plan))
            if failures:
                self.fail(failures)
                return
            self.check_cancelled()
            stats = await self.commit(plan)
        except _Cancelled:
            log.info("Import %s cancelled before commit", self.session_id)
            self.update(
                "Import cancelled, nothing was written",
                phase="complete",
                progress=100,
                message="Cancelled by user",
            )
            return
        except ImportAbort as e:
            self.fail([e])
            return
        except TransactionError as e:
            log.warning("Import %s rolled back: %s", self.session_id, e)
            self.update(
                f"Transaction failed, all changes rolled back: {e}",
                phase="complete",
                progress=100,
                message=f"Import failed: transaction error: {e}",
                error=f"TransactionError: {e}",
                stats={"imported": 0, "errors": 1},
            )
            return
        except Exception as e:
            log.exception("Import %s crashed", self.session_id)
            self.update(
                f"Unexpected error: {e}",
                phase="complete",
                progress=100,
                message=f"Import failed: {e}",
                error=str(e),
            )
            return

        session = self.store.get(self.session_id)
        if session is not None and session.cancelled:
            self.update("Cancellation ignored: commit already started", cancelled=False)
        stats["errors"] = 0
        stats["total"] = len(plan.questions)
        stats["aiFixed"] = sum(1 for q in plan.questions if q.ai_fixed)
        log.info("Import %s committed %d question(s)", self.session_id, stats["imported"])
        self.update(
            f"Imported {stats['imported']} question(s)",
            phase="complete",
            progress=100,
            message=f"Import complete: {stats['imported']} question(s)",
            stats=stats,
        )

    def fail(self, failures: list[ImportAbort]) -> None:
        counts = {
            "validationErrors": 0,
            "fileDuplicates": 0,
            "databaseDuplicates": 0,
        }
        for failure in failures:
            self.update(f"{failure.label}:")
            for message in failure.messages:
                self.update(f"  {message}")
            if isinstance(failure, DuplicateError):
                key = "fileDuplicates" if failure.scope == "file" else "databaseDuplicates"
            else:
                key = "validationErrors"
            counts[key] += len(failure.messages)
        total = sum(counts.values())
        summary = "; ".join(f"{f.label} ({len(f.messages)})" for f in failures)
        log.info("Import %s aborted: %s", self.session_id, summary)
        self.update(
            "Nothing was written",
            phase="complete",
            progress=100,
            message=f"Import failed: {summary}",
            error=summary,
            stats={"imported": 0, "errors": total, **counts},
        )


async def run_import(
    session_id: str,
    data: bytes,
    *,
    db: Database,
    store: SessionStore,
    settings: Settings,
    llm: LLMProvider | None = None,
    ai_repair: bool = False,
) -> None:
    await ImportRun(
        session_id, data, db=db, store=store, settings=settings, llm=llm, ai_repair=ai_repair,
    ).run()
