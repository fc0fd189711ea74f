"""Tests for session stores, streaming and the TTL sweeper."""
from __future__ import annotations

import asyncio
import threading
import time
from contextlib import contextmanager

import pytest

from qbank_importer.db import Database
from qbank_importer.errors import SessionNotFoundError
from qbank_importer.models import AiJob, ImportSession
from qbank_importer.registry import (
    DurableJobStore,
    InMemorySessionStore,
    Sweeper,
    job_from_record,
    job_record,
)


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemoryStore:
    def test_create_get_update(self):
        clock = Clock()
        store = InMemorySessionStore(clock)
        store.create(ImportSession(id="s1"))
        clock.now += 5
        store.update("s1", "step one", progress=10, message="Working")
        s = store.get("s1")
        assert s.progress == 10
        assert s.logs == ["step one"]
        assert s.last_updated == 1005.0
        assert "s1" in store and len(store) == 1

    def test_unknown_field_rejected(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))
        with pytest.raises(AttributeError):
            store.update("s1", bogus=1)

    def test_unknown_phase_rejected(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))
        with pytest.raises(ValueError, match="Unknown ImportSession phase"):
            store.update("s1", phase="running")
        store.create(AiJob(id="ai_1"))
        with pytest.raises(ValueError):
            store.update("ai_1", phase="validating")

    def test_update_unknown_session_ignored(self):
        assert InMemorySessionStore().update("nope", "x") is None

    def test_snapshot_not_found(self):
        with pytest.raises(SessionNotFoundError):
            InMemorySessionStore().snapshot("nope")

    def test_cancel(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))
        assert store.cancel("s1") is True
        assert store.get("s1").cancelled
        assert store.cancel("s1") is False
        with pytest.raises(SessionNotFoundError):
            store.cancel("nope")

    def test_ai_jobs_cannot_be_cancelled(self):
        store = InMemorySessionStore()
        store.create(AiJob(id="ai_1"))
        with pytest.raises(TypeError):
            store.cancel("ai_1")

    def test_cancel_terminal_is_noop(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1", phase="complete"))
        assert store.cancel("s1") is False
        assert not store.get("s1").cancelled

    def test_get_expires_idle_terminal_session(self):
        clock = Clock()
        store = InMemorySessionStore(clock, ttl=60)
        store.create(ImportSession(id="done", phase="complete"))
        store.create(ImportSession(id="live"))
        clock.now += 60
        assert store.get("done") is not None
        clock.now += 1
        assert store.get("done") is None
        assert "done" not in store
        assert store.get("live") is not None
        with pytest.raises(SessionNotFoundError):
            store.snapshot("done")

    def test_updates_from_threads(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))

        def work(n):
            for i in range(50):
                store.update("s1", f"{n}:{i}")

        threads = [threading.Thread(target=work, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.get("s1").logs) == 200


class TestWatch:
    @pytest.mark.asyncio
    async def test_streams_until_terminal(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))

        async def drive():
            await asyncio.sleep(0.01)
            store.update("s1", progress=50)
            await asyncio.sleep(0.01)
            store.update("s1", phase="complete", progress=100)

        task = asyncio.create_task(drive())
        snaps = [snap async for snap in store.watch("s1", interval=0.5)]
        await task
        assert snaps[0]["progress"] == 0
        assert snaps[-1]["phase"] == "complete"
        assert [s["progress"] for s in snaps] == sorted(s["progress"] for s in snaps)

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))
        snaps = []
        async for snap in store.watch("s1", interval=0.01):
            snaps.append(snap)
            if len(snaps) == 3:
                store.update("s1", phase="complete")
        assert len(snaps) == 4
        assert snaps[-1]["phase"] == "complete"

    @pytest.mark.asyncio
    async def test_update_from_worker_thread_wakes_watcher(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))

        def finish():
            store.update("s1", phase="complete", progress=100)

        async def later():
            await asyncio.sleep(0.01)
            await asyncio.to_thread(finish)

        task = asyncio.create_task(later())
        snaps = [snap async for snap in store.watch("s1", interval=5)]
        await task
        assert snaps[-1]["progress"] == 100

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        with pytest.raises(SessionNotFoundError):
            async for _ in InMemorySessionStore().watch("nope"):
                pass

    @pytest.mark.asyncio
    async def test_swept_session_ends_stream(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1"))
        snaps = []
        async for snap in store.watch("s1", interval=0.01):
            snaps.append(snap)
            store.delete("s1")
        assert len(snaps) == 1


class TestSweeper:
    def test_ttl_boundary(self):
        clock = Clock()
        store = InMemorySessionStore(clock)
        store.create(ImportSession(id="done", phase="complete"))
        store.create(ImportSession(id="running"))
        sweeper = Sweeper([store], ttl=60, clock=clock)

        clock.now += 60 - 0.001
        assert sweeper.sweep_once() == []
        clock.now += 0.002
        assert sweeper.sweep_once() == ["done"]
        assert "done" not in store
        assert "running" in store

    def test_update_refreshes_ttl(self):
        clock = Clock()
        store = InMemorySessionStore(clock)
        store.create(ImportSession(id="s1", phase="complete"))
        clock.now += 50
        store.update("s1", "late log line")
        clock.now += 50
        assert Sweeper([store], ttl=60, clock=clock).sweep_once() == []

    def test_error_jobs_are_terminal(self):
        clock = Clock()
        store = InMemorySessionStore(clock)
        store.create(AiJob(id="ai_1", phase="error"))
        clock.now += 100
        assert Sweeper([store], ttl=60, clock=clock).sweep_once() == ["ai_1"]

    @pytest.mark.asyncio
    async def test_start_stop(self):
        store = InMemorySessionStore()
        store.create(ImportSession(id="s1", phase="complete"))
        sweeper = Sweeper([store], ttl=0, interval=0.01)
        sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert "s1" not in store


@pytest.fixture
def job_store(tmp_db):
    store = DurableJobStore(tmp_db, write_timeout=0.1, retry_delay=0.05)
    yield store
    store.close()


@contextmanager
def write_locked(db):
    """Hold the database write lock from a second connection."""
    blocker = Database(db.db_path)
    blocker.conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    finally:
        blocker.conn.rollback()
        blocker.close()


class TestDurableJobStore:
    def test_record_roundtrip(self):
        job = AiJob(id="ai_1", file_name="f.xlsx", phase="running", progress=40)
        record = job_record(job)
        assert record["status"] == "processing"
        restored = job_from_record(record)
        assert restored.phase == "running"
        assert restored.progress == 40

    def test_record_is_a_copy(self):
        job = AiJob(id="ai_1")
        record = job_record(job)
        job.logs.append("later")
        job.stats["fixedCount"] = 1
        assert record["logs"] == []
        assert record["stats"] == {}

    def test_updates_persisted(self, tmp_db, job_store):
        job_store.create(AiJob(id="ai_1", file_name="f.xlsx"))
        job_store.update("ai_1", "Lecture", phase="running", progress=5)
        assert job_store.flush(timeout=5)
        row = tmp_db.get_ai_job("ai_1")
        assert row["status"] == "processing"
        assert row["logs"] == ["Lecture"]

    def test_get_falls_back_to_durable_record(self, tmp_db):
        clock = Clock()
        store = DurableJobStore(tmp_db, clock)
        store.create(AiJob(id="ai_1", file_name="f.xlsx"))
        store.update("ai_1", phase="complete", progress=100, result=b"xlsx")
        clock.now += 3600
        assert Sweeper([store], ttl=60, clock=clock).sweep_once() == ["ai_1"]
        assert "ai_1" not in store
        job = store.get("ai_1")
        assert job.phase == "complete"
        assert job.result == b"xlsx"
        assert store.snapshot("ai_1")["status"] == "completed"
        store.close()

    def test_expired_job_read_from_durable_record(self, tmp_db):
        clock = Clock()
        store = DurableJobStore(tmp_db, clock, ttl=60)
        store.create(AiJob(id="ai_1"))
        store.update("ai_1", phase="error", error="LLMError: boom")
        assert store.flush(timeout=5)
        clock.now += 61
        job = store.get("ai_1")
        assert "ai_1" not in store
        assert job.phase == "error"
        assert job.error == "LLMError: boom"
        store.close()

    def test_survives_new_store(self, tmp_db, job_store):
        job_store.create(AiJob(id="ai_1", file_name="f.xlsx"))
        assert job_store.flush(timeout=5)
        fresh = DurableJobStore(tmp_db)
        assert fresh.get("ai_1").file_name == "f.xlsx"

    def test_delete_removes_both(self, tmp_db, job_store):
        job_store.create(AiJob(id="ai_1"))
        assert job_store.delete("ai_1")
        assert job_store.get("ai_1") is None
        assert not job_store.delete("ai_1")
        assert job_store.flush(timeout=5)
        assert tmp_db.get_ai_job("ai_1") is None

    def test_locked_database_does_not_block_updates(self, tmp_db, job_store):
        job_store.create(AiJob(id="ai_1", file_name="f.xlsx"))
        assert job_store.flush(timeout=5)
        with write_locked(tmp_db):
            started = time.monotonic()
            job_store.update("ai_1", phase="running", progress=50)
            job_store.update("ai_1", "Terminé", phase="complete", progress=100, result=b"xlsx")
            assert time.monotonic() - started < 0.5
            assert job_store.get("ai_1").phase == "complete"
            assert not job_store.flush(timeout=0.3)
            assert tmp_db.get_ai_job("ai_1")["status"] == "queued"
        assert job_store.flush(timeout=5)
        row = tmp_db.get_ai_job("ai_1")
        assert row["status"] == "completed"
        assert row["result"] == b"xlsx"
        assert row["logs"] == ["Terminé"]

    def test_unsaved_terminal_state_survives_sweep(self, tmp_db, job_store):
        job_store.create(AiJob(id="ai_1"))
        assert job_store.flush(timeout=5)
        with write_locked(tmp_db):
            job_store.update("ai_1", phase="complete", progress=100, result=b"xlsx")
            job_store.sweep(older_than=time.time() + 1)
            assert "ai_1" not in job_store
            assert job_store.snapshot("ai_1")["status"] == "completed"
        assert job_store.flush(timeout=5)
        assert DurableJobStore(tmp_db).get("ai_1").result == b"xlsx"

    def test_listing_reflects_unsaved_changes(self, tmp_db, job_store):
        job_store.create(AiJob(id="ai_old"))
        assert job_store.flush(timeout=5)
        with write_locked(tmp_db):
            job_store.create(AiJob(id="ai_new", phase="error", file_name="f.xlsx"))
            job_store.delete("ai_old")
            jobs = job_store.list_jobs()
            assert [j["id"] for j in jobs] == ["ai_new"]
            assert jobs[0]["status"] == "failed"
            assert "result" not in jobs[0]
            assert job_store.list_jobs(status="completed") == []
        assert job_store.flush(timeout=5)
        assert [j["id"] for j in job_store.list_jobs(status="failed")] == ["ai_new"]
