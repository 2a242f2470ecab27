from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse

from .storage import DataPaths, paginate, query_rows, read_json, read_jsonl, safe_listdir, sort_by_created_at_then_name

_TASK_COLUMNS = (
    "id, tenant_id, destination, prompt, schedule_type, schedule_value, "
    "context_mode, next_fire, status, created_at, last_run, last_result"
)


def _load_tenants(paths: DataPaths) -> dict[str, dict]:
    if not paths.registry.exists():
        return {}
    raw = read_json(paths.registry)
    return raw if isinstance(raw, dict) else {}


def _access_rows(paths: DataPaths, suffix: str) -> list[dict]:
    rows: list[dict] = []
    for channel, p in paths.access_files(suffix):
        raw = read_json(p)
        if not isinstance(raw, dict):
            continue
        for _, v in sorted(raw.items()):
            rows.append({"channel": channel, **v})
    return rows


def create_app(*, data_dir: Path) -> FastAPI:
    paths = DataPaths(data_dir=data_dir)
    app = FastAPI(title="clawhost Dashboard API", version="0.1.0")

    @app.get("/", response_class=HTMLResponse)
    def index() -> str:
        return """
<!doctype html>
<html>
  <head><meta charset="utf-8"/><title>clawhost</title></head>
  <body>
    <h1>clawhost</h1>
    <p>API: <a href="/api/tenants">/api/tenants</a> <a href="/api/tasks">/api/tasks</a></p>
  </body>
</html>
"""

    @app.get("/api/tenants")
    def list_tenants() -> list[dict[str, Any]]:
        tenants = _load_tenants(paths)
        return [{"id": tid, **v} for tid, v in sorted(tenants.items()) if isinstance(v, dict)]

    @app.get("/api/tenants/{tenant_id}")
    def get_tenant(tenant_id: str) -> dict:
        t = _load_tenants(paths).get(tenant_id)
        if not isinstance(t, dict):
            raise HTTPException(status_code=404, detail="tenant not found")
        return {"id": tenant_id, **t}

    @app.get("/api/tasks")
    def list_tasks(
        offset: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=500),
        tenant_id: str | None = None,
        status: str | None = None,
        schedule_type: str | None = None,
    ) -> dict:
        rows = query_rows(paths.db, f"SELECT {_TASK_COLUMNS} FROM scheduled_tasks ORDER BY created_at, id")
        if tenant_id:
            rows = [r for r in rows if r["tenant_id"] == tenant_id]
        if status:
            rows = [r for r in rows if r["status"] == status]
        if schedule_type:
            rows = [r for r in rows if r["schedule_type"] == schedule_type]
        return paginate(rows, offset=offset, limit=limit)

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: str) -> dict:
        rows = query_rows(paths.db, f"SELECT {_TASK_COLUMNS} FROM scheduled_tasks WHERE id = ?", (task_id,))
        if not rows:
            raise HTTPException(status_code=404, detail="task not found")
        return rows[0]

    @app.get("/api/tasks/{task_id}/runs")
    def get_task_runs(task_id: str, offset: int = Query(0, ge=0), limit: int = Query(50, ge=1, le=500)) -> dict:
        rows = query_rows(
            paths.db,
            "SELECT task_id, run_at, duration_ms, status, result, error FROM task_run_logs "
            "WHERE task_id = ? ORDER BY run_at DESC, id DESC",
            (task_id,),
        )
        return paginate(rows, offset=offset, limit=limit)

    @app.get("/api/access/pending")
    def list_pending() -> list[dict]:
        return _access_rows(paths, "pending_approvals.json")

    @app.get("/api/access/paired")
    def list_paired() -> list[dict]:
        return _access_rows(paths, "paired_users.json")

    @app.get("/api/quarantine")
    def list_quarantine(offset: int = Query(0, ge=0), limit: int = Query(50, ge=1, le=500)) -> dict:
        files = [p for p in safe_listdir(paths.quarantine) if p.is_file() and p.name.endswith(".reason")]
        items = []
        for p in sort_by_created_at_then_name(files):
            try:
                items.append(read_json(p))
            except (OSError, ValueError):
                continue
        return paginate(items, offset=offset, limit=limit)

    @app.get("/api/outbound")
    def list_outbound(
        offset: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=500),
        destination: str | None = None,
    ) -> dict:
        rows = read_jsonl(paths.spool)
        if destination:
            rows = [r for r in rows if r.get("destination") == destination]
        return paginate(rows, offset=offset, limit=limit)

    return app
