"""Session/job registry: progress state, change notifications, TTL sweeping."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import fields

from qbank_importer.db import Database
from qbank_importer.errors import SessionNotFoundError
from qbank_importer.models import AI_STATUS, AiJob, ImportSession

Session = ImportSession | AiJob

log = logging.getLogger("qbank_importer.registry")
_sweep_log = logging.getLogger("qbank_importer.sweeper")


class SessionStore(ABC):
    """Keyed session state with one writer per key and many readers."""

    @abstractmethod
    def create(self, session: Session) -> Session:
        ...

    @abstractmethod
    def get(self, session_id: str) -> Session | None:
        ...

    @abstractmethod
    def update(self, session_id: str, log_line: str | None = None, **patch) -> Session | None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def cancel(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def sweep(self, older_than: float) -> list[str]:
        ...

    @abstractmethod
    def watch(self, session_id: str, interval: float = 1.0) -> AsyncIterator[dict]:
        ...

    def snapshot(self, session_id: str) -> dict:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session.snapshot()


class InMemorySessionStore(SessionStore):
    """Process-local store.

    Updates can come from worker threads (the commit engine runs in one),
    so state is guarded by a lock and subscribers are woken through their
    own event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time, ttl: float | None = None):
        self.clock = clock
        self.ttl = ttl
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()
        self._subscribers: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(self, session: Session) -> Session:
        with self._lock:
            session.created_at = session.last_updated = self.clock()
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        """The live session; a terminal one idle for longer than *ttl* counts as gone."""
        with self._lock:
            session = self._sessions.get(session_id)
            if (
                session is not None and self.ttl is not None and session.terminal
                and session.last_updated < self.clock() - self.ttl
            ):
                del self._sessions[session_id]
                return None
            return session

    def update(self, session_id: str, log_line: str | None = None, **patch) -> Session | None:
        """Replace scalar fields, append *log_line*, refresh ``last_updated``.

        Unknown sessions (already swept) are ignored.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            known = {f.name for f in fields(session)}
            for key, value in patch.items():
                if key not in known or key in ("id", "logs"):
                    raise AttributeError(f"Cannot patch {key!r} on {type(session).__name__}")
                if key == "phase" and value not in session.PHASES:
                    raise ValueError(f"Unknown {type(session).__name__} phase: {value!r}")
                setattr(session, key, value)
            if log_line:
                session.logs.append(log_line)
            session.last_updated = self.clock()
            snap = (session.snapshot(), session.terminal)
        self._notify(session_id, snap)
        return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cancel(self, session_id: str) -> bool:
        """Flag a session for cancellation; ``False`` if it is already terminal."""
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not hasattr(session, "cancelled"):
            raise TypeError(f"{type(session).__name__} cannot be cancelled")
        if session.terminal or session.cancelled:
            return False
        self.update(session_id, "Cancellation requested", cancelled=True)
        return True

    def sweep(self, older_than: float) -> list[str]:
        """Drop terminal sessions last updated before *older_than*."""
        with self._lock:
            stale = [
                sid for sid, s in self._sessions.items()
                if s.terminal and s.last_updated < older_than
            ]
            for sid in stale:
                del self._sessions[sid]
        return stale

    def _notify(self, session_id: str, snap: tuple[dict, bool]) -> None:
        for loop, queue in list(self._subscribers.get(session_id, ())):
            try:
                loop.call_soon_threadsafe(queue.put_nowait, snap)
            except RuntimeError:
                pass  # subscriber's loop already closed

    async def watch(self, session_id: str, interval: float = 1.0) -> AsyncIterator[dict]:
        """Yield snapshots on every change, or every *interval* seconds if idle.

        Stops after the first terminal snapshot, or when the session is swept.
        """
        queue: asyncio.Queue = asyncio.Queue()
        entry = (asyncio.get_running_loop(), queue)
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(entry)
        try:
            session = self.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            snap, terminal = session.snapshot(), session.terminal
            while True:
                yield snap
                if terminal:
                    return
                try:
                    snap, terminal = await asyncio.wait_for(queue.get(), timeout=interval)
                    while not queue.empty():
                        snap, terminal = queue.get_nowait()
                except asyncio.TimeoutError:
                    session = self.get(session_id)
                    if session is None:
                        return
                    snap, terminal = session.snapshot(), session.terminal
        finally:
            with self._lock:
                subs = self._subscribers.get(session_id, [])
                if entry in subs:
                    subs.remove(entry)
                if not subs:
                    self._subscribers.pop(session_id, None)


_PHASE_FROM_STATUS = {status: phase for phase, status in AI_STATUS.items()}


def job_record(job: AiJob) -> dict:
    return {
        "id": job.id,
        "file_name": job.file_name,
        "instructions": job.instructions,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "stats": dict(job.stats),
        "logs": list(job.logs),
        "error": job.error,
        "result": job.result,
    }


def job_from_record(record: dict) -> AiJob:
    return AiJob(
        id=record["id"],
        file_name=record.get("file_name") or "",
        instructions=record.get("instructions"),
        progress=record.get("progress") or 0,
        phase=_PHASE_FROM_STATUS.get(record["status"], "running"),
        message=record.get("message") or "",
        logs=list(record.get("logs") or []),
        stats=dict(record.get("stats") or {}),
        error=record.get("error"),
        result=record.get("result"),
    )


class DurableJobStore(InMemorySessionStore):
    """AI job store mirrored to the ``ai_jobs`` table.

    Reads prefer the volatile entry; once it is gone (swept, or the process
    restarted) the job is rebuilt from its durable record.

    Mutations never write on the caller's thread. Each one replaces the job's
    pending record and a single writer thread saves the latest record on its
    own connection with a short busy timeout. A failed write is retried with
    whatever record is newest by then, so a terminal state is never lost to
    a concurrent import holding the write lock.
    """

    def __init__(
        self,
        db: Database,
        clock: Callable[[], float] = time.time,
        ttl: float | None = None,
        write_timeout: float = 2.0,
        retry_delay: float = 0.5,
    ):
        super().__init__(clock, ttl)
        self.db = db
        self.write_timeout = write_timeout
        self.retry_delay = retry_delay
        # job id -> latest unsaved record, None for a pending delete
        self._pending: dict[str, dict | None] = {}
        self._cond = threading.Condition()
        self._writer: threading.Thread | None = None
        self._closing = False

    def _enqueue(self, job_id: str, record: dict | None) -> None:
        with self._cond:
            self._pending[job_id] = record
            if self._writer is None or not self._writer.is_alive():
                self._closing = False
                self._writer = threading.Thread(
                    target=self._write_loop, name="ai-job-writer", daemon=True,
                )
                self._writer.start()
            self._cond.notify_all()

    def _write_loop(self) -> None:
        conn: Database | None = None
        try:
            while True:
                with self._cond:
                    while not self._pending and not self._closing:
                        self._cond.wait()
                    if not self._pending:
                        return
                    job_id, record = next(iter(self._pending.items()))
                try:
                    if conn is None:
                        conn = Database(self.db.db_path, timeout=self.write_timeout)
                    if record is None:
                        conn.delete_ai_job(job_id)
                    else:
                        conn.save_ai_job(record)
                except sqlite3.Error as e:
                    log.warning("Persisting job %s failed, retrying: %s", job_id, e)
                    if conn is not None:
                        conn.close()
                        conn = None
                    with self._cond:
                        if self._closing:
                            log.error("Writer stopped with %d unsaved job record(s)", len(self._pending))
                            return
                    time.sleep(self.retry_delay)
                    continue
                with self._cond:
                    if self._pending.get(job_id, _UNSET) is record:
                        del self._pending[job_id]
                    else:
                        # superseded while writing; move it behind the others
                        self._pending[job_id] = self._pending.pop(job_id)
                    self._cond.notify_all()
        finally:
            if conn is not None:
                conn.close()

    def flush(self, timeout: float | None = None) -> bool:
        """Block until every pending record is saved. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending, timeout)

    def close(self, timeout: float = 10.0) -> None:
        if not self.flush(timeout):
            log.error("Timed out saving AI jobs at shutdown")
        with self._cond:
            self._closing = True
            self._cond.notify_all()
        if self._writer is not None:
            self._writer.join(timeout=self.write_timeout + self.retry_delay)

    def create(self, session: AiJob) -> AiJob:
        super().create(session)
        self._enqueue(session.id, job_record(session))
        return session

    def update(self, session_id: str, log_line: str | None = None, **patch) -> AiJob | None:
        job = super().update(session_id, log_line, **patch)
        if job is not None:
            with self._lock:
                record = job_record(job)
            self._enqueue(job.id, record)
        return job

    def get(self, session_id: str) -> AiJob | None:
        job = super().get(session_id)
        if job is not None:
            return job
        with self._cond:
            if session_id in self._pending:
                record = self._pending[session_id]
                return job_from_record(record) if record else None
        record = self.db.get_ai_job(session_id)
        return job_from_record(record) if record else None

    def delete(self, session_id: str) -> bool:
        existed = self.get(session_id) is not None
        super().delete(session_id)
        if existed:
            self._enqueue(session_id, None)
        return existed

    def list_jobs(self, status: str | None = None, limit: int = 10) -> list[dict]:
        """Durable job listing, newest first, with unsaved changes applied."""
        limit = max(1, min(limit, 100))
        with self._cond:
            pending = dict(self._pending)
        if not pending:
            return self.db.list_ai_jobs(status=status, limit=limit)
        stored = self.db.list_ai_jobs(limit=100)
        known = {row["id"] for row in stored}
        jobs = [
            _listed(record) for job_id, record in reversed(pending.items())
            if record is not None and job_id not in known
        ]
        for row in stored:
            if row["id"] not in pending:
                jobs.append(row)
            elif pending[row["id"]] is not None:
                jobs.append(_listed(pending[row["id"]], row))
        if status:
            jobs = [j for j in jobs if j["status"] == status]
        return jobs[:limit]


_UNSET = object()


def _listed(record: dict, row: dict | None = None) -> dict:
    job = dict(row or {})
    job.update((k, v) for k, v in record.items() if k != "result")
    job["stats"] = {**(row or {}).get("stats", {}), **(record.get("stats") or {})}
    return job


class Sweeper:
    """Evicts terminal sessions once they have been idle for *ttl* seconds."""

    def __init__(
        self,
        stores: list[SessionStore],
        ttl: float = 1800,
        interval: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.stores = stores
        self.ttl = ttl
        self.interval = interval
        self.clock = clock
        self._task: asyncio.Task | None = None

    def sweep_once(self) -> list[str]:
        cutoff = self.clock() - self.ttl
        removed: list[str] = []
        for store in self.stores:
            removed.extend(store.sweep(cutoff))
        if removed:
            _sweep_log.info("Evicted %d session(s)", len(removed))
        return removed

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep_once()
            except Exception as e:
                _sweep_log.warning("Sweep failed: %s", e)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
