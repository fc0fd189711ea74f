"""AI correction orchestrator: batching, bounded dispatch and the fallback ladder.

Every item handed to :meth:`CorrectionOrchestrator.correct` comes back with
exactly one ``status="ok"`` :class:`CorrectionResult`. The ladder is:

1. the batch is sent up to ``batch_attempts`` times;
2. transient failures (timeouts, resets, oversized payloads) split the batch
   and retry each part, down to ``max_depth`` levels;
3. items still uncovered are sent alone with a stricter prompt;
4. anything left gets a deterministic local fallback built from its own text.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from qbank_importer.errors import AiDispatchError
from qbank_importer.models import BatchItem, CorrectionResult
from qbank_importer.prompts import (
    BATCH_TASKS,
    ENHANCE_PROMPT,
    FORCE_FIX_PROMPT,
    MCQ_SYSTEM_PROMPT,
    QROC_SYSTEM_PROMPT,
    build_batch_payload,
    with_instructions,
)
from qbank_importer.text_repair import (
    clamp_sentences,
    clean_answer_text,
    explanation_too_short,
    parse_answer_letters,
)

if TYPE_CHECKING:
    from qbank_importer.providers.base import LLMProvider

log = logging.getLogger("qbank_importer.ai")

POSITIVE_OPENERS = (
    "Exactement", "Effectivement", "Oui", "Tout à fait", "Précisément",
    "Bien vu", "Pertinent", "Juste", "Correct",
)
NEGATIVE_OPENERS = (
    "En réalité", "Au contraire", "Pas du tout", "Erreur fréquente", "Attention",
    "Faux", "Hélas non", "Contrairement", "Non, plutôt",
)

QROC_FALLBACK_ANSWER = "À préciser"
ENHANCE_SLICE = 50

_SHRINKABLE_RE = re.compile(
    r"fetch failed|\b413\b|payload too large|etimedout|aborterror|socket hang up"
    r"|econnreset|timed? ?out|connection reset",
    re.IGNORECASE,
)


# ── JSON salvage ─────────────────────────────────────────────────────────


def _find_json_objects(text: str) -> list[str]:
    """Find balanced top-level ``{…}`` substrings in *text*."""
    results: list[str] = []
    i = 0
    while i < len(text):
        if text[i] != "{":
            i += 1
            continue
        depth = 0
        in_str = False
        escape = False
        for j in range(i, len(text)):
            ch = text[j]
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = not in_str
            elif in_str:
                continue
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    results.append(text[i:j + 1])
                    i = j + 1
                    break
        else:
            i += 1
    return results


def extract_json(text: str) -> dict | list | None:
    """Parse a completion that should be JSON but may be wrapped in prose.

    Tries, in order: the whole text, a fenced code block, the span from the
    first ``{``/``[`` to the last ``}``/``]``, and finally each balanced
    ``{…}`` block (last first).
    """
    text = re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    m = re.search(r"```(?:json)?\s*\n?([\[{].*?[\]}])\s*\n?```", text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass

    starts = [p for p in (text.find("{"), text.find("[")) if p != -1]
    end = max(text.rfind("}"), text.rfind("]"))
    if starts and end > min(starts):
        try:
            return json.loads(text[min(starts):end + 1])
        except json.JSONDecodeError:
            pass

    for candidate in reversed(_find_json_objects(text)):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _result_entries(parsed: dict | list | None) -> list[dict] | None:
    if isinstance(parsed, dict):
        parsed = parsed.get("results")
    if not isinstance(parsed, list):
        return None
    return [e for e in parsed if isinstance(e, dict)]


def _answer_values(value) -> list:
    """``correctAnswers`` as a list; a lone scalar is wrapped."""
    if isinstance(value, list):
        return value
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return [value]
    return []


# ── Deterministic text ───────────────────────────────────────────────────


def str_seed(text: str | None) -> int:
    """31-multiplier string hash wrapped to a signed 32-bit int."""
    h = 0
    for ch in text or "":
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h - (1 << 32) if h & 0x80000000 else h


def choose_variant(seed: int, pool: tuple[str, ...] | list[str], used: set[str] | None = None) -> str:
    """Pick from *pool* starting at ``|seed| % len(pool)``, skipping *used*.

    The pick is added to *used*. Once every variant is used the seeded
    choice is returned again.
    """
    if not pool:
        raise ValueError("empty variant pool")
    start = abs(seed) % len(pool)
    choice = pool[start]
    if used is not None:
        for offset in range(len(pool)):
            candidate = pool[(start + offset) % len(pool)]
            if candidate not in used:
                choice = candidate
                break
        used.add(choice)
    return choice


def fallback_explanation(is_correct: bool, option_text: str | None, stem: str | None) -> str:
    seed = str_seed(f"{option_text or ''}|{stem or ''}")
    opener = choose_variant(seed, POSITIVE_OPENERS if is_correct else NEGATIVE_OPENERS)
    verdict = "proposition correcte" if is_correct else "proposition incorrecte"
    lead = (option_text or "").strip().rstrip(".") or "justification clinique"
    parts = [f"{opener}: {verdict} ({lead})."]
    if stem:
        parts.append(f"Contexte: {stem.strip().rstrip('.?!').rstrip()}.")
    if is_correct:
        parts.append("Argumentation clinique: critère diagnostique clé et élément différentiel.")
    else:
        parts.append("Correction ciblée: rectifier l'idée et repérer l'élément discriminant.")
    parts.append("Repère à retenir: seuil ou signe précis utile en pratique.")
    return clamp_sentences(" ".join(parts))


def fallback_rappel(stem: str | None) -> str:
    lines = []
    if stem:
        lines.append(f"Point de départ: {stem.strip().rstrip('.?!').rstrip()}.")
    lines.append("Notion centrale: synthèse courte du concept clé.")
    lines.append("Mécanisme: enchaînement logique à connaître.")
    lines.append("Piège: l'erreur fréquente et comment l'éviter.")
    lines.append("Exemple: vignette concrète pour fixer les idées.")
    return "\n".join(lines)


_KNOWN_OPENERS = sorted(POSITIVE_OPENERS + NEGATIVE_OPENERS + ("Exact", "Non, en fait", "Non"), key=len, reverse=True)
_OPENER_RE = re.compile(
    r"^\s*(?:" + "|".join(re.escape(o) for o in _KNOWN_OPENERS) + r")\b\s*[:,;–-]?\s*",
    re.IGNORECASE,
)


def strip_opener(text: str) -> str:
    return _OPENER_RE.sub("", text, count=1).strip()


def apply_openers(explanations: list[str], correct: set[int] | list[int], stem: str | None) -> list[str]:
    """Prefix each option explanation with a distinct, content-seeded connector."""
    correct = set(correct)
    seed = str_seed(stem)
    used: set[str] = set()
    out = []
    for i, text in enumerate(explanations):
        body = clamp_sentences((text or "").strip())
        if not body:
            out.append("")
            continue
        pool = POSITIVE_OPENERS if i in correct else NEGATIVE_OPENERS
        opener = choose_variant(seed + i, pool, used)
        body = strip_opener(body) or body
        out.append(f"{opener}: {body[0].upper()}{body[1:]}")
    return out


def mcq_fallback(item: BatchItem) -> CorrectionResult:
    options = list(item.options) or ["Option A"]
    correct = parse_answer_letters(item.provided_answer_raw or "", len(options))
    no_answer = not correct
    if no_answer:
        correct = [0]
    stem = item.question_text or item.case_text
    return CorrectionResult(
        id=item.id,
        status="ok",
        fixed_options=options,
        correct_answers=correct,
        option_explanations=[
            fallback_explanation(i in correct, opt, stem) for i, opt in enumerate(options)
        ],
        global_explanation=fallback_rappel(stem),
        no_answer=no_answer,
        source="fallback",
    )


def qroc_fallback(item: BatchItem) -> CorrectionResult:
    answer = clean_answer_text(item.provided_answer_raw or "")
    return CorrectionResult(
        id=item.id,
        status="ok",
        answer=answer or QROC_FALLBACK_ANSWER,
        global_explanation=fallback_rappel(item.question_text or item.case_text),
        no_answer=not answer,
        source="fallback",
    )


# ── Retry policy ─────────────────────────────────────────────────────────


@dataclass
class RetryPolicy:
    max_depth: int = 4
    shrink_factor: int = 2
    batch_attempts: int = 2

    def is_shrinkable(self, exc: BaseException) -> bool:
        """Transient transport failures that a smaller payload may avoid."""
        cause = exc.__cause__ or exc
        if isinstance(cause, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
            return True
        return bool(_SHRINKABLE_RE.search(str(exc)))

    def split(self, items: list) -> list[list]:
        parts = max(2, self.shrink_factor)
        size = max(1, -(-len(items) // parts))
        return [items[i:i + size] for i in range(0, len(items), size)]


Sender = Callable[[list[BatchItem]], Awaitable[dict[str, dict]]]


async def dispatch_with_halving(
    batch: list[BatchItem],
    send: Sender,
    policy: RetryPolicy,
    depth: int = 0,
) -> dict[str, dict]:
    """Send *batch*, splitting it on transient failures.

    Returns the raw result entries that came back, keyed by item id. Items
    that never got an entry are simply absent; callers handle them.
    """
    error: AiDispatchError | None = None
    for attempt in range(1, policy.batch_attempts + 1):
        try:
            return await send(batch)
        except AiDispatchError as e:
            error = e
            if len(batch) > 1 and depth < policy.max_depth and policy.is_shrinkable(e):
                break
            log.info("Batch of %d failed (attempt %d/%d): %s",
                     len(batch), attempt, policy.batch_attempts, e)

    if error is not None and len(batch) > 1 and depth < policy.max_depth and policy.is_shrinkable(error):
        parts = policy.split(batch)
        log.info("Splitting batch of %d into %d (depth %d): %s", len(batch), len(parts), depth + 1, error)
        merged: dict[str, dict] = {}
        for part in parts:
            merged.update(await dispatch_with_halving(part, send, policy, depth + 1))
        return merged

    log.warning("Giving up on batch of %d: %s", len(batch), error)
    return {}


# ── Orchestrator ─────────────────────────────────────────────────────────


ProgressCallback = Callable[[int, int, str], None]


class CorrectionOrchestrator:
    """Runs MCQ or QROC correction over a bounded pool of batch workers.

    With ``require_answer`` (import repair) a service reply only counts when
    it supplies usable answers; otherwise "no answer" replies are accepted
    as-is (the correction job reports them as ``?``).
    """

    def __init__(
        self,
        llm: LLMProvider | None,
        policy: RetryPolicy | None = None,
        batch_size: int = 5,
        concurrency: int = 10,
        instructions: str | None = None,
        require_answer: bool = False,
        on_progress: ProgressCallback | None = None,
    ):
        self.llm = llm
        self.policy = policy or RetryPolicy()
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.instructions = instructions
        self.require_answer = require_answer
        self.on_progress = on_progress

    # ── sending ──

    async def _call(self, system: str, task: str, items: list[dict]) -> list[dict]:
        if self.llm is None:
            raise AiDispatchError("No completion service configured")
        try:
            response = await self.llm.generate(build_batch_payload(task, items), system=system)
        except Exception as e:
            raise AiDispatchError(f"{type(e).__name__}: {e}") from e
        entries = _result_entries(extract_json(response))
        if entries is None:
            log.debug("Unparsable response: %.300s", response)
            raise AiDispatchError("Invalid JSON response from completion service")
        return entries

    def _sender(self, system: str, task: str) -> Sender:
        async def send(batch: list[BatchItem]) -> dict[str, dict]:
            by_id = {it.id: it for it in batch}
            entries = await self._call(system, task, [it.to_payload() for it in batch])
            return {
                str(e.get("id")): e for e in entries
                if str(e.get("id")) in by_id
            }
        return send

    # ── parsing ──

    def _parse_mcq(self, item: BatchItem, entry: dict) -> CorrectionResult | None:
        if entry.get("status", "ok") != "ok":
            return None
        options = item.options
        fixed_options = entry.get("fixedOptions")
        if isinstance(fixed_options, list) and len(fixed_options) == len(options) and all(
            isinstance(o, str) and o.strip() for o in fixed_options
        ):
            options = [o.strip() for o in fixed_options]
        else:
            fixed_options = None
        correct = []
        for n in _answer_values(entry.get("correctAnswers")):
            try:
                idx = int(n)
            except (TypeError, ValueError):
                continue
            if 0 <= idx < len(options) and idx not in correct:
                correct.append(idx)
        no_answer = bool(entry.get("noAnswer")) and not correct
        if not options or (not correct and (self.require_answer or not no_answer)):
            return None
        explanations = entry.get("optionExplanations")
        if isinstance(explanations, list):
            explanations = [str(e or "").strip() for e in explanations][:len(options)]
            explanations += [""] * (len(options) - len(explanations))
        else:
            explanations = None
        fixed_text = entry.get("fixedQuestionText")
        global_expl = entry.get("globalExplanation")
        return CorrectionResult(
            id=item.id,
            status="ok",
            fixed_text=fixed_text.strip() if isinstance(fixed_text, str) and fixed_text.strip() else None,
            fixed_options=fixed_options,
            correct_answers=sorted(correct),
            option_explanations=explanations,
            global_explanation=global_expl.strip() if isinstance(global_expl, str) and global_expl.strip() else None,
            no_answer=no_answer,
        )

    def _parse_qroc(self, item: BatchItem, entry: dict) -> CorrectionResult | None:
        if entry.get("status", "ok") != "ok":
            return None
        provided = clean_answer_text(item.provided_answer_raw or "")
        answer = clean_answer_text(str(entry.get("answer") or ""))
        explanation = str(entry.get("explanation") or "").strip()
        if not (answer or provided):
            return None
        if not explanation and not self.require_answer:
            return None
        fixed_text = entry.get("fixedQuestionText")
        return CorrectionResult(
            id=item.id,
            status="ok",
            fixed_text=fixed_text.strip() if isinstance(fixed_text, str) and fixed_text.strip() else None,
            answer=provided or answer,
            global_explanation=explanation or None,
        )

    def _try_parse(self, parse, item: BatchItem, entry: dict | None) -> CorrectionResult | None:
        if entry is None:
            return None
        try:
            return parse(item, entry)
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            log.warning("Discarding malformed result for %s: %s", item.id, e)
            return None

    # ── ladder ──

    async def correct(self, items: list[BatchItem], kind: str = "mcq") -> dict[str, CorrectionResult]:
        """Return one ``ok`` result per item, keyed by item id."""
        if kind not in ("mcq", "qroc"):
            raise ValueError(f"Unknown correction kind: {kind}")
        if not items:
            return {}
        base = MCQ_SYSTEM_PROMPT if kind == "mcq" else QROC_SYSTEM_PROMPT
        system = with_instructions(base, self.instructions)
        parse = self._parse_mcq if kind == "mcq" else self._parse_qroc
        fallback = mcq_fallback if kind == "mcq" else qroc_fallback
        send = self._sender(system, BATCH_TASKS[kind])

        batches = [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        total = len(batches)
        results: dict[str, CorrectionResult] = {}
        done = 0
        pending = iter(enumerate(batches, 1))

        async def worker() -> None:
            nonlocal done
            for index, batch in pending:
                entries = await dispatch_with_halving(batch, send, self.policy)
                for it in batch:
                    parsed = self._try_parse(parse, it, entries.get(it.id))
                    if parsed is not None:
                        results[it.id] = parsed
                done += 1
                log.info("%s batch %d/%d done (%d items)", kind.upper(), index, total, len(batch))
                if self.on_progress:
                    self.on_progress(done, total, f"{kind.upper()}: lot {done}/{total}")

        workers = min(self.concurrency, total)
        log.info("Correcting %d %s item(s): %d batch(es), %d worker(s)", len(items), kind, total, workers)
        await asyncio.gather(*(worker() for _ in range(workers)))

        uncovered = [it for it in items if it.id not in results]
        if uncovered:
            log.info("%d %s item(s) uncovered, trying single forced fixes", len(uncovered), kind)
            force_system = with_instructions(f"{base}\n{FORCE_FIX_PROMPT}", self.instructions)
            force_send = self._sender(force_system, BATCH_TASKS[f"force_{kind}"])
            single = RetryPolicy(max_depth=0, batch_attempts=1)
            gate = asyncio.Semaphore(self.concurrency)

            async def force(item: BatchItem) -> dict[str, dict]:
                async with gate:
                    return await dispatch_with_halving([item], force_send, single)

            forced = await asyncio.gather(*(force(it) for it in uncovered))
            for it, entries in zip(uncovered, forced):
                parsed = self._try_parse(parse, it, entries.get(it.id))
                if parsed is not None:
                    parsed.source = "forced"
                    results[it.id] = parsed
                else:
                    results[it.id] = fallback(it)
            fallbacks = sum(1 for it in uncovered if results[it.id].source == "fallback")
            if fallbacks:
                log.warning("%d %s item(s) fell back to local templates", fallbacks, kind)

        return {it.id: results[it.id] for it in items}

    async def enhance(self, items: list[BatchItem]) -> dict[str, CorrectionResult]:
        """Ask for longer explanations; only fully detailed replies are kept."""
        if not items or self.llm is None:
            return {}
        by_id = {it.id: it for it in items}
        out: dict[str, CorrectionResult] = {}
        for start in range(0, len(items), ENHANCE_SLICE):
            chunk = items[start:start + ENHANCE_SLICE]
            payload = [{"id": it.id, "questionText": it.question_text, "options": it.options} for it in chunk]
            try:
                entries = await self._call(ENHANCE_PROMPT, BATCH_TASKS["enhance"], payload)
            except AiDispatchError as e:
                log.warning("Enhancement slice %d failed: %s", start // ENHANCE_SLICE + 1, e)
                continue
            for entry in entries:
                item = by_id.get(str(entry.get("id")))
                explanations = entry.get("optionExplanations")
                if item is None or not isinstance(explanations, list) or len(explanations) < len(item.options):
                    continue
                explanations = [clamp_sentences(str(e or "")) for e in explanations[:len(item.options)]]
                if any(explanation_too_short(e) for e in explanations):
                    continue
                rappel = clamp_sentences(str(entry.get("globalExplanation") or ""), 5)
                out[item.id] = CorrectionResult(
                    id=item.id,
                    status="ok",
                    option_explanations=explanations,
                    global_explanation=rappel if not explanation_too_short(rappel) else None,
                )
        log.info("Enhanced %d/%d row(s)", len(out), len(items))
        return out
