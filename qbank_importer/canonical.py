"""Normalize spreadsheet headers and sheet names to a fixed vocabulary."""
from __future__ import annotations

import re
import unicodedata

SHEET_KINDS = ("qcm", "qroc", "cas_qcm", "cas_qroc")

# Canonical header keys. Every alias target below is one of these, and each
# maps to itself, so canonicalizing a canonical key is a no-op.
CANONICAL_HEADERS = (
    "matiere",
    "cours",
    "question n",
    "cas n",
    "source",
    "texte du cas",
    "texte de la question",
    "reponse",
    "option a",
    "option b",
    "option c",
    "option d",
    "option e",
    "rappel",
    "explication",
    "explication a",
    "explication b",
    "explication c",
    "explication d",
    "explication e",
    "image",
    "niveau",
    "semestre",
)

HEADER_ALIASES: dict[str, str] = {h: h for h in CANONICAL_HEADERS}
HEADER_ALIASES.update({
    "question no": "question n",
    "question num": "question n",
    "question numero": "question n",
    "texte question": "texte de la question",
    "texte de question": "texte de la question",
    "question": "texte de la question",
    "texte cas": "texte du cas",
    "reponse s": "reponse",
    "reponses": "reponse",
    "cas no": "cas n",
    "cas num": "cas n",
    "explication de la reponse": "explication",
    "explication reponse": "explication",
    "explanation": "explication",
    "correction": "explication",
    "level": "niveau",
    "semester": "semestre",
    "rappel du cours": "rappel",
    "rappel cours": "rappel",
    "course reminder": "rappel",
    "rappel_cours": "rappel",
    "image url": "image",
    "image_url": "image",
    "media": "image",
    "media url": "image",
    "media_url": "image",
    "illustration": "image",
    "illustration url": "image",
})

SHEET_ALIASES: dict[str, tuple[str, ...]] = {
    "qcm": ("qcm", "questions qcm"),
    "qroc": ("qroc", "croq", "questions qroc", "questions croq"),
    "cas_qcm": ("cas qcm", "cas-qcm", "cas_qcm", "cas clinique qcm", "cas clinic qcm"),
    "cas_qroc": (
        "cas qroc", "cas-qroc", "cas_qroc", "cas clinique qroc",
        "cas clinic qroc", "cas croq", "cas clinic croq",
    ),
}


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_header(raw: object) -> str:
    """Lowercase, drop diacritics, turn punctuation into spaces, collapse whitespace."""
    text = strip_accents(str(raw if raw is not None else "").lower())
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def canonicalize_header(raw: object) -> str:
    """Map a header cell to its canonical key.

    Unknown headers come back in normalized form so extra columns can
    still be read by name.
    """
    key = normalize_header(raw)
    return HEADER_ALIASES.get(key, key)


def canonicalize_headers(raw_headers: list) -> list[str]:
    return [canonicalize_header(h) for h in raw_headers]


def normalize_sheet_name(name: object) -> str:
    text = strip_accents(str(name if name is not None else "").lower())
    return re.sub(r"[^a-z0-9]+", " ", text).strip()


_SHEET_LOOKUP: dict[str, str] = {
    normalize_sheet_name(alias): kind
    for kind, aliases in SHEET_ALIASES.items()
    for alias in aliases
}


def resolve_sheet_kind(name: object) -> str | None:
    """Return the canonical sheet kind for *name*, or ``None`` if unrecognized."""
    return _SHEET_LOOKUP.get(normalize_sheet_name(name))


def resolve_sheet_kind_loose(name: object) -> str | None:
    """Looser matching used for correction workbooks ("Cas cliniques - QCM 2023")."""
    kind = resolve_sheet_kind(name)
    if kind:
        return kind
    norm = normalize_sheet_name(name)
    words = set(norm.split())
    is_case = "cas" in words or "clinique" in words or "clinic" in words
    if "qcm" in words or "mcq" in words:
        return "cas_qcm" if is_case else "qcm"
    if words & {"qroc", "croq"}:
        return "cas_qroc" if is_case else "qroc"
    return None
