"""CLI entry point for qbank-importer.

Usage:
  python -m qbank_importer serve [--port PORT] [--host HOST]
  python -m qbank_importer stop
  python -m qbank_importer restart [--port PORT]
  python -m qbank_importer status
  python -m qbank_importer import FILE [--ai-repair]
  python -m qbank_importer correct FILE OUT [--instructions TEXT]
  python -m qbank_importer stats
"""
from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from pathlib import Path

PID_FILE = Path(__file__).resolve().parent.parent / ".server.pid"


def main():
    args = sys.argv[1:]
    command, rest = (args[0], args[1:]) if args else ("serve", [])
    handler = COMMANDS.get(command)
    if handler is None:
        print(f"Unknown command: {command}")
        print("Commands: " + ", ".join(COMMANDS))
        sys.exit(1)
    handler(rest)


def _parse_flag(args: list[str], name: str, default: str | None) -> str | None:
    for i, a in enumerate(args):
        if a == name and i + 1 < len(args):
            return args[i + 1]
    return default


def _positional(args: list[str]) -> list[str]:
    out: list[str] = []
    skip = False
    for a in args:
        if skip:
            skip = False
        elif a == "--instructions":
            skip = True
        elif not a.startswith("--"):
            out.append(a)
    return out


def _live_pid() -> int | None:
    """PID of the running server; a stale PID file is removed."""
    try:
        pid = int(PID_FILE.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, PermissionError):
        PID_FILE.unlink(missing_ok=True)
        return None
    return pid


def _stop(args: list[str] | None = None) -> bool:
    pid = _live_pid()
    if pid is None:
        print("No server running.")
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    finally:
        PID_FILE.unlink(missing_ok=True)
    print(f"Sent SIGTERM to server (PID {pid}).")
    return True


def _status(args: list[str] | None = None):
    pid = _live_pid()
    print(f"Server running (PID {pid})." if pid else "No server running.")


def _restart(args: list[str]):
    if _stop():
        time.sleep(1)
    _serve(args)


def _serve(args: list[str]):
    import uvicorn

    running = _live_pid()
    if running is not None:
        print(f"A server is already running (PID {running}); stop it first or use 'restart'.")
        sys.exit(1)

    port = int(_parse_flag(args, "--port", "8765"))
    host = _parse_flag(args, "--host", "127.0.0.1")
    PID_FILE.write_text(str(os.getpid()))

    print(f"QBank Importer listening on http://{host}:{port} (Ctrl+C to stop)")
    try:
        uvicorn.run(
            "qbank_importer.app:app",
            host=host,
            port=port,
            reload=False,
            timeout_graceful_shutdown=5,
        )
    finally:
        PID_FILE.unlink(missing_ok=True)


def _read_input(path: str) -> bytes:
    p = Path(path)
    if not p.exists():
        print(f"File not found: {p}")
        sys.exit(1)
    return p.read_bytes()


def _import_file(args: list[str]):
    files = _positional(args)
    if not files:
        print("Usage: python -m qbank_importer import FILE [--ai-repair]")
        sys.exit(1)
    data = _read_input(files[0])
    ai_repair = "--ai-repair" in args

    from qbank_importer.app import build_llm
    from qbank_importer.config import load_settings
    from qbank_importer.db import Database
    from qbank_importer.importer import new_import_id, run_import
    from qbank_importer.models import ImportSession
    from qbank_importer.registry import InMemorySessionStore

    settings = load_settings()
    db = Database(settings.db_full_path, timeout=settings.transaction_max_wait_seconds)
    store = InMemorySessionStore()
    session_id = new_import_id()
    store.create(ImportSession(id=session_id))
    llm = build_llm(settings) if ai_repair else None

    print(f"Importing {files[0]}{' with AI repair' if ai_repair else ''}...")
    asyncio.run(run_import(
        session_id, data, db=db, store=store, settings=settings, llm=llm, ai_repair=ai_repair,
    ))
    snap = store.snapshot(session_id)
    for line in snap["logs"]:
        print(f"  {line}")
    print(f"\n{snap['message']}")
    db.close()
    if snap["error"]:
        sys.exit(1)


def _correct_file(args: list[str]):
    paths = _positional(args)
    if len(paths) < 2:
        print("Usage: python -m qbank_importer correct FILE OUT [--instructions TEXT]")
        sys.exit(1)
    data = _read_input(paths[0])
    instructions = _parse_flag(args, "--instructions", None)

    from qbank_importer.ai_jobs import new_job_id, run_ai_job
    from qbank_importer.app import build_llm
    from qbank_importer.config import load_settings
    from qbank_importer.models import AiJob
    from qbank_importer.registry import InMemorySessionStore

    settings = load_settings()
    store = InMemorySessionStore()
    job_id = new_job_id()
    store.create(AiJob(id=job_id, file_name=Path(paths[0]).name, instructions=instructions))

    print(f"Correcting {paths[0]} using {settings.llm_provider}...")
    asyncio.run(run_ai_job(
        job_id, data, store=store, llm=build_llm(settings), settings=settings,
        instructions=instructions,
    ))
    job = store.get(job_id)
    if job.result is None:
        print(f"Failed: {job.error}")
        sys.exit(1)
    Path(paths[1]).write_bytes(job.result)
    stats = job.stats
    print(f"\n{stats.get('fixedCount', 0)} rows corrected "
          f"({stats.get('fallbackCount', 0)} by local fallback) -> {paths[1]}")


def _stats(args: list[str]):
    from qbank_importer.config import load_settings
    from qbank_importer.db import Database

    settings = load_settings()
    db = Database(settings.db_full_path)
    stats = db.get_stats()

    print("QBank Stats")
    print("=" * 40)
    print(f"Levels:       {stats['levels']}")
    print(f"Semesters:    {stats['semesters']}")
    print(f"Specialties:  {stats['specialties']}")
    print(f"Lectures:     {stats['lectures']}")
    print(f"Questions:    {stats['questions']}")
    print(f"AI jobs:      {stats['ai_jobs']}")
    db.close()


COMMANDS = {
    "serve": _serve,
    "stop": _stop,
    "restart": _restart,
    "status": _status,
    "import": _import_file,
    "correct": _correct_file,
    "stats": _stats,
}


if __name__ == "__main__":
    main()
