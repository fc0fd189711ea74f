"""Shared test fixtures."""
from __future__ import annotations

import io
import json

import pytest
from openpyxl import Workbook

from qbank_importer.config import Settings
from qbank_importer.db import Database

QCM_HEADER = [
    "Matière", "Cours", "Question N°", "Source", "Texte de la question",
    "Réponse", "Option A", "Option B", "Option C", "Option D", "Option E",
    "Rappel", "Explication", "Niveau", "Semestre",
]
QROC_HEADER = [
    "Matière", "Cours", "Question N°", "Source", "Texte de la question",
    "Réponse", "Rappel", "Explication", "Niveau", "Semestre",
]


def make_workbook(sheets: dict[str, list[list]]) -> bytes:
    """Build an .xlsx in memory: sheet title -> rows (first row is the header)."""
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def qcm_row(specialty="Cardiologie", lecture="Insuffisance cardiaque", number=1,
            text="Quel est le signe le plus fréquent ?", answer="A",
            options=("Dyspnée", "Toux", "Fièvre"), source="", rappel="", level="", semester=""):
    opts = list(options) + [""] * (5 - len(options))
    return [specialty, lecture, number, source, text, answer, *opts, rappel, "", level, semester]


def qroc_row(specialty="Cardiologie", lecture="Insuffisance cardiaque", number=1,
             text="Citez le traitement de première intention.", answer="IEC",
             rappel="", level="", semester=""):
    return [specialty, lecture, number, "", text, answer, rappel, "", level, semester]


class FakeLLM:
    """Answers every item of a batch with a well-formed result."""

    def __init__(self):
        self.calls: list[dict] = []

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        payload = json.loads(prompt)
        self.calls.append(payload)
        results = []
        for item in payload["items"]:
            if "options" in item:
                n = len(item["options"])
                results.append({
                    "id": item["id"],
                    "status": "ok",
                    "correctAnswers": [0],
                    "globalExplanation": "Le mécanisme central est la surcharge volémique. "
                                         "Le piège est de confondre avec une cause pulmonaire.",
                    "optionExplanations": [
                        f"Option {i} expliquée en détail avec son mécanisme. "
                        f"Elle illustre un critère clinique utile en pratique courante."
                        for i in range(n)
                    ],
                })
            else:
                results.append({
                    "id": item["id"],
                    "status": "ok",
                    "answer": "Diurétiques",
                    "explanation": "Les diurétiques réduisent la surcharge. "
                                   "Ils soulagent rapidement la dyspnée du patient.",
                })
        return json.dumps({"results": results})

    def name(self) -> str:
        return "fake-llm"


class FailingLLM:
    """A completion service that is never reachable."""

    def __init__(self, message: str = "connection refused"):
        self.message = message
        self.calls = 0

    async def generate(self, prompt: str, temperature: float = 0.2, system: str | None = None) -> str:
        self.calls += 1
        raise ConnectionError(self.message)

    def name(self) -> str:
        return "failing-llm"


@pytest.fixture
def tmp_db(tmp_path):
    """Create a fresh temporary database."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "test.db"),
        progress_every_rows=2,
        stream_interval_seconds=0.05,
    )


@pytest.fixture
def valid_workbook():
    return make_workbook({
        "QCM": [
            QCM_HEADER,
            qcm_row(number=1, level="PCEM 1", semester="S1"),
            qcm_row(number=2, text="Quel examen confirme le diagnostic ?", answer="B, C",
                    options=("ECG", "Échographie", "BNP")),
        ],
        "QROC": [
            QROC_HEADER,
            qroc_row(number=3),
        ],
    })
