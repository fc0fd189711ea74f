"""Tests for prompt templates and payload formatting."""
from __future__ import annotations

import json

from qbank_importer.models import BatchItem
from qbank_importer.prompts import (
    BATCH_TASKS,
    FORCE_FIX_PROMPT,
    MCQ_SYSTEM_PROMPT,
    QROC_SYSTEM_PROMPT,
    build_batch_payload,
    with_instructions,
)


class TestPrompts:
    def test_json_contracts(self):
        for key in ("correctAnswers", "noAnswer", "fixedOptions", "optionExplanations", "globalExplanation"):
            assert key in MCQ_SYSTEM_PROMPT
        assert '"answer"' in QROC_SYSTEM_PROMPT
        assert 'status="ok"' in FORCE_FIX_PROMPT

    def test_tasks(self):
        assert BATCH_TASKS["mcq"] == "analyze_mcq_batch"
        assert BATCH_TASKS["force_qroc"] == "qroc_single_force_ok"


class TestWithInstructions:
    def test_appended_after_base(self):
        out = with_instructions("BASE", "  Utilise les recommandations 2023  ")
        assert out == "BASE\nINSTRUCTIONS ADMIN:\nUtilise les recommandations 2023\n"

    def test_empty_instructions(self):
        assert with_instructions("BASE", None) == "BASE"
        assert with_instructions("BASE", "   ") == "BASE"


class TestPayload:
    def test_batch_payload(self):
        item = BatchItem(id="q1", question_text="Quel signe ?", options=["Dyspnée"], provided_answer_raw="A")
        payload = json.loads(build_batch_payload("analyze_mcq_batch", [item.to_payload()]))
        assert payload["task"] == "analyze_mcq_batch"
        assert payload["items"] == [{
            "id": "q1", "questionText": "Quel signe ?", "options": ["Dyspnée"], "providedAnswerRaw": "A",
        }]

    def test_non_ascii_kept(self):
        assert "é" in build_batch_payload("t", [{"x": "é"}])

    def test_item_texts_capped(self):
        item = BatchItem(id="q", question_text="x" * 900, options=["o" * 300], case_text="c" * 900)
        payload = item.to_payload()
        assert len(payload["questionText"]) == 500
        assert len(payload["options"][0]) == 140
        assert len(payload["caseText"]) == 500

    def test_qroc_answer_key(self):
        payload = BatchItem(id="r", question_text="Q", provided_answer_raw="IEC").to_payload()
        assert payload["answerText"] == "IEC"
        assert "options" not in payload
