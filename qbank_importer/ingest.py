"""Read workbook bytes into canonical rows, one sheet kind at a time."""
from __future__ import annotations

import io
import logging
from collections.abc import Callable, Iterator
from datetime import date, datetime

from openpyxl import load_workbook

from qbank_importer.canonical import (
    SHEET_KINDS,
    canonicalize_headers,
    resolve_sheet_kind,
    resolve_sheet_kind_loose,
)
from qbank_importer.models import SheetRow

log = logging.getLogger("qbank_importer.ingest")


def cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


class SpreadsheetIngestor:
    """Maps workbook sheets to canonical kinds and yields their non-blank rows.

    Sheets are visited in the fixed kind order (qcm, qroc, cas_qcm, cas_qroc)
    regardless of their position in the file. ``on_progress`` receives the
    running count of rows seen, every ``progress_every`` rows and once at the
    end of each sheet.
    """

    def __init__(
        self,
        data: bytes,
        *,
        loose: bool = False,
        progress_every: int = 25,
        on_progress: Callable[[int], None] | None = None,
    ):
        self.workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        self.progress_every = max(1, progress_every)
        self.on_progress = on_progress
        self.rows_seen = 0
        self.skipped_sheets: list[str] = []
        resolve = resolve_sheet_kind_loose if loose else resolve_sheet_kind
        self._by_kind: dict[str, str] = {}
        for title in self.workbook.sheetnames:
            kind = resolve(title)
            if kind is None:
                log.info("Sheet %r not recognized, skipping", title)
                self.skipped_sheets.append(title)
            elif kind in self._by_kind:
                log.info("Sheet %r duplicates kind %s (already %r), skipping",
                         title, kind, self._by_kind[kind])
                self.skipped_sheets.append(title)
            else:
                self._by_kind[kind] = title

    def close(self) -> None:
        self.workbook.close()

    def __enter__(self) -> SpreadsheetIngestor:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def kinds(self) -> list[str]:
        """Kinds present in the workbook, in processing order."""
        return [k for k in SHEET_KINDS if k in self._by_kind]

    def sheet_title(self, kind: str) -> str | None:
        return self._by_kind.get(kind)

    def rows(self, kind: str) -> Iterator[SheetRow]:
        title = self._by_kind.get(kind)
        if title is None:
            return
        it = self.workbook[title].iter_rows(values_only=True)
        header_cells = next(it, None)
        if header_cells is None:
            return
        header = canonicalize_headers([cell_text(h) for h in header_cells])
        for row_number, cells in enumerate(it, start=1):
            texts = [cell_text(c) for c in cells]
            if not any(texts):
                continue
            values: dict[str, str] = {}
            for key, text in zip(header, texts):
                # first non-blank wins when two columns share a canonical key
                if key and not values.get(key):
                    values[key] = text
            self.rows_seen += 1
            if self.on_progress and self.rows_seen % self.progress_every == 0:
                self.on_progress(self.rows_seen)
            yield SheetRow(sheet=kind, row=row_number, values=values)
        if self.on_progress:
            self.on_progress(self.rows_seen)

    def __iter__(self) -> Iterator[SheetRow]:
        for kind in self.kinds:
            yield from self.rows(kind)


def read_rows(data: bytes, loose: bool = False) -> list[SheetRow]:
    """Convenience: every canonical row in file order."""
    with SpreadsheetIngestor(data, loose=loose) as ingestor:
        return list(ingestor)
