"""Pure text clean-up helpers shared by planning and AI correction."""
from __future__ import annotations

import html
import re

IMAGE_URL_RE = re.compile(
    r"(https?://[^\s)]+?\.(?:jpg|jpeg|png|gif|webp|svg|bmp|tiff|ico))(?:[)\s.,;:!?]|$)",
    re.IGNORECASE,
)

MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "ico": "image/x-icon",
}

_ANSWER_PREFIX_RE = re.compile(
    r"^\s*(r[ée]ponse|answer|corrig[ée]|correction|bonne\s*r[ée]ponse)\s*[:\-–]\s*",
    re.IGNORECASE,
)
_INTERROGATIVE_RE = re.compile(
    r"\b(quel|quelle|quels|quelles|lequel|laquelle|lesquels|lesquelles|pourquoi|comment|quand|où|combien)\b",
    re.IGNORECASE,
)
_NO_ANSWER_RE = re.compile(r"^(pas\s*de\s*r[ée]ponse|\?+)?$", re.IGNORECASE)


def media_type_for(url: str) -> str:
    ext = url.rsplit(".", 1)[-1].lower()
    return MEDIA_TYPES.get(ext, "image")


def extract_image_url(text: str) -> tuple[str, str | None, str | None]:
    """Pull the first image URL out of *text*.

    Returns ``(cleaned_text, media_url, media_type)``; the URL (and the
    delimiter right after it) is replaced by a space.
    """
    m = IMAGE_URL_RE.search(text or "")
    if not m:
        return (text or "").strip(), None, None
    url = m.group(1)
    cleaned = (text[: m.start()] + " " + text[m.end():]).strip()
    cleaned = re.sub(r"\s{2,}", " ", cleaned)
    return cleaned, url, media_type_for(url)


def strip_html(text: str) -> str:
    return html.unescape(re.sub(r"<[^>]+>", " ", text or ""))


def normalize_whitespace(text: str) -> str:
    text = re.sub(r"[ \t\r\n]+", " ", text or "")
    return re.sub(r"\s{2,}", " ", text).strip()


def repair_question_text(text: str) -> str:
    s = strip_html(text).replace("“", '"').replace("”", '"').replace("’", "'")
    s = normalize_whitespace(s)
    if s and _INTERROGATIVE_RE.search(s) and not re.search(r"[?!.]$", s):
        s += " ?"
    return s


def repair_option_text(text: str) -> str:
    return normalize_whitespace(strip_html(text))


def clean_answer_text(text: str) -> str:
    """Drop boilerplate like "Réponse :" in front of a free-text answer."""
    s = _ANSWER_PREFIX_RE.sub("", strip_html(text))
    return normalize_whitespace(s)


def is_missing_answer(raw: str) -> bool:
    return bool(_NO_ANSWER_RE.match((raw or "").strip()))


def parse_answer_letters(raw: str, option_count: int) -> list[int]:
    """"A, c; E" -> [0, 2, 4]; letters beyond *option_count* are dropped."""
    indices: list[int] = []
    for token in re.split(r"[;,\s]+", (raw or "").upper()):
        if not token:
            continue
        idx = ord(token[0]) - 65
        if 0 <= idx < option_count and idx not in indices:
            indices.append(idx)
    return indices


def format_answer_letters(indices: list[int]) -> str:
    return ", ".join(chr(65 + i) for i in sorted(set(indices)))


def narrow_case_answer(raw: str, question_number: int | None) -> str:
    """Pick this question's letters out of a combined case answer.

    ``"1AB, 2E"`` with question 2 gives ``"E"``; anything else is returned as-is.
    """
    up = (raw or "").upper()
    if question_number is None or not re.search(r"\d\s*[A-E]+", up):
        return raw
    per_question: dict[int, str] = {}
    for part in re.split(r"[;,]+", up):
        m = re.match(r"^\s*(\d+)\s*([A-E]+)", part)
        if m:
            per_question[int(m.group(1))] = ", ".join(m.group(2))
    return per_question.get(question_number, raw)


def parse_int(raw: str) -> int | None:
    m = re.match(r"^\s*(-?\d+)", raw or "")
    return int(m.group(1)) if m else None


def split_sentences(text: str) -> list[str]:
    flat = re.sub(r"\s+", " ", text or "")
    return [s.strip() for s in re.split(r"(?<=[.!?])\s+", flat) if s.strip()]


def clamp_sentences(text: str, max_sentences: int = 4) -> str:
    """Keep at most *max_sentences* sentences, each ending with punctuation."""
    sentences = split_sentences(text)[:max_sentences]
    return " ".join(s if re.search(r"[.!?]$", s) else s + "." for s in sentences)


def explanation_too_short(text: str) -> bool:
    txt = (text or "").strip()
    if not txt:
        return True
    sentences = split_sentences(txt)
    if len(sentences) < 2:
        return True
    if len(sentences) > 4:
        return False
    return len(re.sub(r"\s+", " ", txt)) < 80


def clean_source(raw: str) -> str:
    """Strip bracketed notes and level tokens from a session/source label."""
    s = (raw or "").strip()
    if not s:
        return ""
    s = re.sub(r"\[[^\]]*\]", " ", s)
    s = re.sub(r"\([^)]*\)", " ", s)
    s = re.sub(r"^['\"]|['\"]$", "", s)
    s = re.sub(r"\b(?:PCEM|DCEM)\s*\d\b", " ", s, flags=re.IGNORECASE)
    s = re.sub(r"\bniveau\s*\d+\b", " ", s, flags=re.IGNORECASE)
    s = re.sub(r"[;,\s]+", " ", s).strip()
    if re.match(r"^(PCEM|DCEM)\s*\d*$", s, re.IGNORECASE) or re.match(r"^NIVEAU\s*\d+$", s, re.IGNORECASE):
        return ""
    return s


def sanitize_subject(name: str) -> str:
    s = re.sub(r"[^\w\s]", " ", name or "")
    return re.sub(r"\s+", " ", s.replace("_", " ")).strip()
