"""FastAPI application with all routes."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

logging.basicConfig(level=logging.INFO, format="%(name)s | %(message)s")

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response, StreamingResponse

from qbank_importer.ai_jobs import new_job_id, run_ai_job
from qbank_importer.config import Settings, known_fields, load_settings, save_settings
from qbank_importer.db import Database
from qbank_importer.errors import SessionNotFoundError
from qbank_importer.importer import new_import_id, run_import
from qbank_importer.models import AiJob, ImportSession
from qbank_importer.providers.base import LLMProvider
from qbank_importer.registry import DurableJobStore, InMemorySessionStore, SessionStore, Sweeper

app = FastAPI(title="QBank Importer")

# Global state (initialized on startup, or injected by tests)
_db: Database | None = None
_settings: Settings | None = None
_imports: InMemorySessionStore | None = None
_ai_jobs: DurableJobStore | None = None
_sweeper: Sweeper | None = None

_log = logging.getLogger("qbank_importer.app")

# Background import/correction runs, kept referenced until they finish.
_bg_tasks: set[asyncio.Task] = set()


def get_db() -> Database:
    assert _db is not None
    return _db


def get_settings() -> Settings:
    assert _settings is not None
    return _settings


def get_imports() -> InMemorySessionStore:
    assert _imports is not None
    return _imports


def get_ai_jobs() -> DurableJobStore:
    assert _ai_jobs is not None
    return _ai_jobs


def build_llm(s: Settings) -> LLMProvider:
    if s.llm_provider == "azure":
        from qbank_importer.providers.llm_azure import AzureOpenAIProvider
        return AzureOpenAIProvider(
            endpoint=s.azure_endpoint,
            deployment=s.azure_deployment,
            api_version=s.azure_api_version,
        )
    elif s.llm_provider == "ollama":
        from qbank_importer.providers.llm_ollama import OllamaProvider
        return OllamaProvider(base_url=s.ollama_url, model=s.llm_model)
    elif s.llm_provider == "anthropic":
        from qbank_importer.providers.llm_anthropic import AnthropicProvider
        return AnthropicProvider(model=s.llm_model)
    elif s.llm_provider == "openai":
        from qbank_importer.providers.llm_openai import OpenAIProvider
        return OpenAIProvider(model=s.llm_model)
    raise ValueError(f"Unknown LLM provider: {s.llm_provider}")


def _get_llm() -> LLMProvider:
    return build_llm(get_settings())


def _try_get_llm() -> LLMProvider | None:
    """The configured provider, or None when it cannot be built (no SDK, no key)."""
    try:
        return _get_llm()
    except Exception as e:
        _log.warning("LLM provider unavailable, AI steps will use local fallbacks: %s", e)
        return None


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _bg_tasks.add(task)
    task.add_done_callback(_bg_tasks.discard)
    return task


@app.on_event("startup")
async def startup():
    global _db, _settings, _imports, _ai_jobs, _sweeper
    if _db is None:
        _settings = load_settings()
        _db = Database(_settings.db_full_path, timeout=_settings.transaction_max_wait_seconds)
    s = get_settings()
    if _imports is None:
        _imports = InMemorySessionStore(ttl=s.session_ttl_seconds)
    if _ai_jobs is None:
        _ai_jobs = DurableJobStore(_db, ttl=s.session_ttl_seconds)
    if _sweeper is None:
        _sweeper = Sweeper(
            [_imports, _ai_jobs],
            ttl=s.session_ttl_seconds,
            interval=s.sweep_interval_seconds,
        )
    _sweeper.start()


@app.on_event("shutdown")
async def shutdown():
    if _sweeper:
        await _sweeper.stop()
    for task in list(_bg_tasks):
        task.cancel()
    if _ai_jobs:
        await asyncio.to_thread(_ai_jobs.close)
    if _db:
        _db.close()


# ── Helpers ───────────────────────────────────────────────────────────────

async def _read_upload(file: UploadFile | None) -> bytes:
    if file is None or not file.filename:
        raise HTTPException(400, "No file uploaded")
    data = await file.read()
    if not data:
        raise HTTPException(400, "Uploaded file is empty")
    return data


def _snapshot(store: SessionStore, session_id: str) -> dict:
    try:
        return store.snapshot(session_id)
    except SessionNotFoundError:
        raise HTTPException(404, f"Session {session_id} not found")


def _event_stream(store: SessionStore, session_id: str) -> StreamingResponse:
    # 404 before the stream starts; afterwards the stream just ends
    _snapshot(store, session_id)
    interval = get_settings().stream_interval_seconds

    async def stream() -> AsyncIterator[str]:
        try:
            async for snap in store.watch(session_id, interval=interval):
                yield f"data: {json.dumps(snap)}\n\n"
        except SessionNotFoundError:
            yield f"data: {json.dumps({'error': 'Session not found'})}\n\n"

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── API: Import sessions ──────────────────────────────────────────────────

@app.post("/api/import")
async def api_import(
    file: UploadFile | None = File(None),
    ai_repair: bool = Form(False),
):
    data = await _read_upload(file)
    session_id = new_import_id()
    store = get_imports()
    store.create(ImportSession(id=session_id))
    store.update(session_id, f"Received {file.filename} ({len(data)} bytes)")
    _spawn(run_import(
        session_id,
        data,
        db=get_db(),
        store=store,
        settings=get_settings(),
        llm=_try_get_llm() if ai_repair else None,
        ai_repair=ai_repair,
    ))
    return {"sessionId": session_id}


@app.get("/api/import/{session_id}")
async def api_import_status(session_id: str):
    return _snapshot(get_imports(), session_id)


@app.get("/api/import/{session_id}/events")
async def api_import_events(session_id: str):
    return _event_stream(get_imports(), session_id)


@app.delete("/api/import/{session_id}")
async def api_import_cancel(session_id: str):
    try:
        cancelled = get_imports().cancel(session_id)
    except SessionNotFoundError:
        raise HTTPException(404, f"Session {session_id} not found")
    return {"ok": True, "cancelled": cancelled}


# ── API: AI correction jobs ───────────────────────────────────────────────

@app.post("/api/ai-jobs")
async def api_create_ai_job(
    file: UploadFile | None = File(None),
    instructions: str | None = Form(None),
):
    data = await _read_upload(file)
    job_id = new_job_id()
    store = get_ai_jobs()
    store.create(AiJob(
        id=job_id,
        file_name=file.filename,
        instructions=(instructions or "").strip() or None,
    ))
    _spawn(run_ai_job(
        job_id,
        data,
        store=store,
        llm=_try_get_llm(),
        settings=get_settings(),
        instructions=instructions,
    ))
    return {"sessionId": job_id}


@app.get("/api/ai-jobs")
async def api_list_ai_jobs(status: str | None = None, limit: int = 10):
    return {"jobs": get_ai_jobs().list_jobs(status=status, limit=limit)}


@app.get("/api/ai-jobs/{job_id}")
async def api_ai_job_status(job_id: str):
    return _snapshot(get_ai_jobs(), job_id)


@app.get("/api/ai-jobs/{job_id}/events")
async def api_ai_job_events(job_id: str):
    return _event_stream(get_ai_jobs(), job_id)


@app.get("/api/ai-jobs/{job_id}/download")
async def api_ai_job_download(job_id: str):
    job = get_ai_jobs().get(job_id)
    if job is None:
        raise HTTPException(404, f"Job {job_id} not found")
    if job.phase != "complete" or job.result is None:
        raise HTTPException(400, "Job is not complete")
    stem = (job.file_name or "questions").rsplit(".", 1)[0]
    return Response(
        content=job.result,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{stem}-corrige.xlsx"'},
    )


@app.delete("/api/ai-jobs/{job_id}")
async def api_delete_ai_job(job_id: str):
    store = get_ai_jobs()
    job = store.get(job_id)
    if job is None:
        raise HTTPException(404, f"Job {job_id} not found")
    if not job.terminal:
        raise HTTPException(409, "Job is still running")
    store.delete(job_id)
    return {"ok": True}


# ── API: Stats & settings ─────────────────────────────────────────────────

@app.get("/api/stats")
async def api_stats():
    stats = get_db().get_stats()
    stats["import_sessions"] = len(get_imports())
    return stats


@app.get("/api/settings")
async def api_get_settings():
    return get_settings().to_dict()


@app.put("/api/settings")
async def api_update_settings(request: Request):
    body = await request.json()
    s = get_settings()
    known = known_fields()
    for k, v in body.items():
        if k in known:
            setattr(s, k, v)
    save_settings(s)
    return s.to_dict()
