"""Tests for the standalone AI correction job."""
from __future__ import annotations

import io
import json

import pytest
from conftest import QCM_HEADER, QROC_HEADER, FailingLLM, FakeLLM, make_workbook, qcm_row, qroc_row
from openpyxl import load_workbook

from qbank_importer.ai_jobs import (
    OUTPUT_HEADERS,
    LevelBackfill,
    build_output_workbook,
    merge_mcq,
    merge_qroc,
    new_job_id,
    run_ai_job,
)
from qbank_importer.correction import NEGATIVE_OPENERS, POSITIVE_OPENERS, QROC_FALLBACK_ANSWER
from qbank_importer.models import AiJob, BatchItem, CorrectionResult
from qbank_importer.registry import InMemorySessionStore

DETAILED = ("Cette proposition renvoie au mécanisme de congestion pulmonaire. "
            "Elle se retrouve chez la plupart des patients décompensés.")


class TaskLLM:
    """Replies per task: ``handlers[task](items)`` -> results list."""

    def __init__(self, handlers: dict):
        self.handlers = handlers
        self.tasks: list[str] = []

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        payload = json.loads(prompt)
        self.tasks.append(payload["task"])
        handler = self.handlers.get(payload["task"])
        if handler is None:
            raise ConnectionError("unreachable")
        return json.dumps({"results": handler(payload["items"])})

    def name(self) -> str:
        return "task-llm"


def read_output(data: bytes) -> dict[str, list[dict]]:
    wb = load_workbook(io.BytesIO(data))
    out = {}
    for ws in wb.worksheets:
        rows = list(ws.iter_rows(values_only=True))
        header = list(rows[0])
        out[ws.title] = [
            {h: (v if v is not None else "") for h, v in zip(header, r)} for r in rows[1:]
        ]
    return out


async def run_job(data, settings, llm, instructions=None) -> AiJob:
    store = InMemorySessionStore()
    job_id = new_job_id()
    store.create(AiJob(id=job_id, file_name="in.xlsx", instructions=instructions))
    await run_ai_job(job_id, data, store=store, llm=llm, settings=settings, instructions=instructions)
    return store.get(job_id)


@pytest.fixture
def correction_workbook():
    return make_workbook({
        "Questions QCM": [
            QCM_HEADER,
            qcm_row(number=1, answer="A", level="PCEM1"),
            qcm_row(number=2, text="Quel examen", answer=""),
        ],
        "QROC 2023": [
            QROC_HEADER,
            qroc_row(number=3),
        ],
    })


class TestAiJobRun:
    @pytest.mark.asyncio
    async def test_corrects_every_row(self, settings, correction_workbook):
        job = await run_job(correction_workbook, settings, FakeLLM())
        assert job.phase == "complete"
        assert job.status == "completed"
        assert job.progress == 100
        assert job.message == "IA terminée"
        assert job.stats["totalRows"] == 3
        assert job.stats["mcqRows"] == 2
        assert job.stats["fixedCount"] == 3
        assert job.stats["errorCount"] == 0
        assert job.stats["fallbackCount"] == 0
        assert job.stats["processedBatches"] == job.stats["totalBatches"] == 2

        out = read_output(job.result)
        assert set(out) == {"qcm", "qroc"}
        first, second = out["qcm"]
        assert first["reponse"] == "A"
        assert second["reponse"] == "A"
        assert second["texte de la question"] == "Quel examen ?"
        assert first["ai_status"] == "fixed"
        assert first["ai_reason"] == ""
        assert first["explication a"].split(":")[0] in POSITIVE_OPENERS
        assert first["explication b"].split(":")[0] in NEGATIVE_OPENERS
        assert first["rappel"].startswith("Le mécanisme central")
        assert first["niveau"] == "PCEM1"
        assert second["niveau"] == "PCEM1"
        (qroc,) = out["qroc"]
        assert qroc["reponse"] == "IEC"
        assert qroc["rappel"].startswith("Les diurétiques")

    @pytest.mark.asyncio
    async def test_unreachable_service_still_produces_workbook(self, settings, correction_workbook):
        job = await run_job(correction_workbook, settings, FailingLLM())
        assert job.phase == "complete"
        assert job.stats["fallbackCount"] == 3
        out = read_output(job.result)
        first, second = out["qcm"]
        assert first["reponse"] == "A"
        assert second["reponse"] == "?"
        assert first["ai_reason"].startswith("repli local")
        assert all(first[f"explication {c}"] for c in "abc")
        assert out["qroc"][0]["reponse"] == "IEC"

    @pytest.mark.asyncio
    async def test_no_answer_reported_as_question_mark(self, settings):
        data = make_workbook({"QCM": [QCM_HEADER, qcm_row(answer="")]})
        llm = TaskLLM({"analyze_mcq_batch": lambda items: [
            {"id": it["id"], "status": "ok", "correctAnswers": [], "noAnswer": True,
             "optionExplanations": [DETAILED] * 3, "globalExplanation": DETAILED}
            for it in items
        ]})
        job = await run_job(data, settings, llm)
        (row,) = read_output(job.result)["qcm"]
        assert row["reponse"] == "?"
        assert row["ai_reason"] == ""

    @pytest.mark.asyncio
    async def test_enhancement_replaces_short_explanations(self, settings):
        settings.ai_fast_mode = False
        data = make_workbook({"QCM": [QCM_HEADER, qcm_row()]})
        llm = TaskLLM({
            "analyze_mcq_batch": lambda items: [
                {"id": it["id"], "status": "ok", "correctAnswers": [0],
                 "optionExplanations": ["Oui.", "Non.", "Non."], "globalExplanation": "Bref."}
                for it in items
            ],
            "enhance_mcq_rows": lambda items: [
                {"id": it["id"], "optionExplanations": [DETAILED] * 3,
                 "globalExplanation": DETAILED + " " + DETAILED}
                for it in items
            ],
        })
        job = await run_job(data, settings, llm)
        assert "enhance_mcq_rows" in llm.tasks
        (row,) = read_output(job.result)["qcm"]
        assert "congestion pulmonaire" in row["explication a"]
        assert "congestion pulmonaire" in row["rappel"]

    @pytest.mark.asyncio
    async def test_fast_mode_skips_enhancement(self, settings):
        data = make_workbook({"QCM": [QCM_HEADER, qcm_row()]})
        llm = TaskLLM({"analyze_mcq_batch": lambda items: [
            {"id": it["id"], "status": "ok", "correctAnswers": [0],
             "optionExplanations": ["Oui.", "Non.", "Non."]}
            for it in items
        ]})
        job = await run_job(data, settings, llm)
        assert "enhance_mcq_rows" not in llm.tasks
        (row,) = read_output(job.result)["qcm"]
        assert "proposition correcte" in row["explication a"].lower()

    @pytest.mark.asyncio
    async def test_instructions_forwarded(self, settings):
        systems = []

        class Recorder(FakeLLM):
            async def generate(self, prompt, temperature=0.2, system=None):
                systems.append(system)
                return await super().generate(prompt, temperature, system)

        data = make_workbook({"QCM": [QCM_HEADER, qcm_row()]})
        await run_job(data, settings, Recorder(), instructions="Cite les recommandations HAS")
        assert all("Cite les recommandations HAS" in s for s in systems)

    @pytest.mark.asyncio
    async def test_no_usable_sheet_is_an_error(self, settings):
        data = make_workbook({"Notes": [["a"], ["b"]]})
        job = await run_job(data, settings, FakeLLM())
        assert job.phase == "error"
        assert job.status == "failed"
        assert job.message.startswith("Échec")
        assert job.result is None

    def test_job_id_format(self):
        assert new_job_id().startswith("ai_")


class TestMerge:
    def test_merge_mcq_pads_short_explanations(self):
        rec = {"texte de la question": "Quel signe ?", "rappel": ""}
        item = BatchItem(id="x", question_text="Quel signe ?", options=["A1", "B1"])
        result = CorrectionResult(id="x", status="ok", correct_answers=[1],
                                  option_explanations=["", DETAILED], global_explanation=DETAILED)
        needs_enhance = merge_mcq(rec, item, result)
        assert needs_enhance
        assert rec["reponse"] == "B"
        assert rec["option a"] == "A1" and rec["option c"] == ""
        assert "proposition incorrecte" in rec["explication a"].lower()
        assert rec["explication b"].endswith(DETAILED.split(". ")[1])
        assert rec["rappel"] == DETAILED

    def test_merge_qroc_fills_missing_answer(self):
        rec = {"texte de la question": "Citez.", "reponse": "?"}
        merge_qroc(rec, CorrectionResult(id="x", status="ok", answer=None, source="fallback"))
        assert rec["reponse"] == QROC_FALLBACK_ANSWER
        assert rec["rappel"].startswith("Point de départ")


class TestLevelBackfill:
    def test_level_from_course_and_source(self):
        records = [
            {"niveau": "DCEM2", "cours": "IC", "matiere": "Cardio"},
            {"niveau": "", "cours": "IC", "matiere": ""},
            {"niveau": "", "cours": "", "matiere": "", "source": "PCEM1/Anatomie"},
        ]
        backfill = LevelBackfill(records)
        for rec in records:
            backfill.apply(rec)
        assert records[1]["niveau"] == "DCEM2"
        assert records[1]["matiere"] == "IC"
        assert records[2]["niveau"] == "PCEM1"
        assert records[2]["matiere"] == "Anatomie"
        assert records[2]["cours"] == "Anatomie"
        assert "PCEM" not in records[2]["source"]


class TestOutputWorkbook:
    def test_empty_result_has_header_only_qcm_sheet(self):
        out = load_workbook(io.BytesIO(build_output_workbook({})))
        assert out.sheetnames == ["qcm"]
        header = next(out["qcm"].iter_rows(values_only=True))
        assert list(header) == list(OUTPUT_HEADERS)

    def test_sheets_in_kind_order(self):
        data = build_output_workbook({"qroc": [{"reponse": "x"}], "qcm": [{"reponse": "A"}]})
        assert load_workbook(io.BytesIO(data)).sheetnames == ["qcm", "qroc"]
