from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from clawhost.core.io import read_json, read_jsonl


def safe_listdir(dir_path: Path) -> list[Path]:
    if not dir_path.exists():
        return []
    return [p for p in dir_path.iterdir() if p.exists()]


def sort_by_created_at_then_name(items: Iterable[Path]) -> list[Path]:
    def key(p: Path) -> tuple[str, str]:
        try:
            obj = read_json(p)
            return (str(obj.get("created_at") or ""), p.name)
        except (OSError, ValueError, AttributeError):
            return ("", p.name)

    return sorted(list(items), key=key)


def paginate(items: list[Any], *, offset: int, limit: int) -> dict:
    total = len(items)
    offset = max(0, offset)
    limit = max(1, min(limit, 500))
    sliced = items[offset : offset + limit]
    return {"total": total, "offset": offset, "limit": limit, "items": sliced}


def query_rows(db_path: Path, sql: str, params: tuple = ()) -> list[dict]:
    """Run a SELECT; a missing database reads as empty."""
    if not db_path.exists():
        return []
    conn = sqlite3.connect(str(db_path))
    try:
        conn.row_factory = sqlite3.Row
        return [dict(r) for r in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()


@dataclass(frozen=True)
class DataPaths:
    data_dir: Path

    @property
    def db(self) -> Path:
        return self.data_dir / "clawhost.db"

    @property
    def registry(self) -> Path:
        return self.data_dir / "registered_tenants.json"

    @property
    def quarantine(self) -> Path:
        return self.data_dir / "quarantine"

    @property
    def spool(self) -> Path:
        return self.data_dir / "outbound.jsonl"

    def access_files(self, suffix: str) -> list[tuple[str, Path]]:
        """(channel, path) for every ``<channel>_<suffix>`` file."""
        out = []
        for p in sorted(safe_listdir(self.data_dir)):
            if p.is_file() and p.name.endswith(f"_{suffix}"):
                out.append((p.name[: -len(suffix) - 1], p))
        return out
