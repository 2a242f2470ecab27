from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from clawhost.core.errors import StorageFailure

SCHEDULE_TYPES = ("cron", "interval", "once")
CONTEXT_MODES = ("group", "isolated")
STATUSES = ("active", "paused")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    destination TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_type TEXT NOT NULL CHECK (schedule_type IN ('cron', 'interval', 'once')),
    schedule_value TEXT NOT NULL,
    context_mode TEXT NOT NULL DEFAULT 'isolated' CHECK (context_mode IN ('group', 'isolated')),
    next_fire TEXT,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'paused')),
    created_at TEXT NOT NULL,
    last_run TEXT,
    last_result TEXT
);
CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_due ON scheduled_tasks (status, next_fire);
CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_tenant ON scheduled_tasks (tenant_id);
CREATE TABLE IF NOT EXISTS task_run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('success', 'error')),
    result TEXT,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_task_run_logs_task ON task_run_logs (task_id, run_at);
"""

_COLUMNS = (
    "id, tenant_id, destination, prompt, schedule_type, schedule_value, "
    "context_mode, next_fire, status, created_at, last_run, last_result"
)


@dataclass(frozen=True)
class Task:
    id: str
    tenant_id: str
    destination: str
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str
    next_fire: str | None
    status: str
    created_at: str
    last_run: str | None = None
    last_result: str | None = None

    def as_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass(frozen=True)
class TaskRun:
    task_id: str
    run_at: str
    duration_ms: int
    status: str
    result: str | None
    error: str | None


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(**{k: row[k] for k in row.keys()})


class TaskStore:
    """Durable table of scheduled tasks.

    All timestamps are fixed-width ISO-8601 UTC strings (see ``iso_z``), so the
    due query compares them as text.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise StorageFailure(code="TASK_STORE_ERROR", message=str(e)) from e

    def create(self, task: Task) -> None:
        with self._tx() as conn:
            conn.execute(
                f"INSERT INTO scheduled_tasks ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task.id,
                    task.tenant_id,
                    task.destination,
                    task.prompt,
                    task.schedule_type,
                    task.schedule_value,
                    task.context_mode,
                    task.next_fire,
                    task.status,
                    task.created_at,
                    task.last_run,
                    task.last_result,
                ),
            )

    def get(self, task_id: str) -> Task | None:
        with self._tx() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        return None if row is None else _row_to_task(row)

    def list_all(self) -> list[Task]:
        with self._tx() as conn:
            rows = conn.execute(f"SELECT {_COLUMNS} FROM scheduled_tasks ORDER BY created_at, id").fetchall()
        return [_row_to_task(r) for r in rows]

    def list_for_tenant(self, tenant_id: str) -> list[Task]:
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM scheduled_tasks WHERE tenant_id = ? ORDER BY created_at, id",
                (tenant_id,),
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def due(self, now_iso: str) -> list[Task]:
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM scheduled_tasks "
                "WHERE status = 'active' AND next_fire IS NOT NULL AND next_fire <= ? "
                "ORDER BY next_fire, id",
                (now_iso,),
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def set_status(self, task_id: str, status: str) -> bool:
        if status not in STATUSES:
            raise ValueError(f"unknown task status: {status}")
        with self._tx() as conn:
            cur = conn.execute("UPDATE scheduled_tasks SET status = ? WHERE id = ?", (status, task_id))
        return cur.rowcount > 0

    def advance(self, task_id: str, *, next_fire: str | None, last_run: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE scheduled_tasks SET next_fire = ?, last_run = ? WHERE id = ?",
                (next_fire, last_run, task_id),
            )
        return cur.rowcount > 0

    def record_result(self, task_id: str, last_result: str) -> None:
        with self._tx() as conn:
            conn.execute("UPDATE scheduled_tasks SET last_result = ? WHERE id = ?", (last_result, task_id))

    def delete(self, task_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        return cur.rowcount > 0

    def log_run(self, run: TaskRun) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (run.task_id, run.run_at, run.duration_ms, run.status, run.result, run.error),
            )

    def runs_for(self, task_id: str) -> list[TaskRun]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT task_id, run_at, duration_ms, status, result, error FROM task_run_logs "
                "WHERE task_id = ? ORDER BY run_at, id",
                (task_id,),
            ).fetchall()
        return [TaskRun(**{k: r[k] for k in r.keys()}) for r in rows]
