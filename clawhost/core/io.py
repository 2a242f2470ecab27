from __future__ import annotations

import json
import os
import re
from pathlib import Path

from .errors import StorageFailure, ValidationFailure

MAX_NAME_CHARS = 64
_SAFE_NAME = re.compile(rf"^[A-Za-z0-9][A-Za-z0-9_-]{{0,{MAX_NAME_CHARS - 1}}}$")


def is_tmp(path: Path) -> bool:
    return path.name.endswith(".tmp")


def safe_name(name: str) -> str:
    """Reject folder names that could escape their parent directory."""
    if not _SAFE_NAME.fullmatch(name):
        raise ValidationFailure(code="UNSAFE_NAME", message=f"not a safe folder name: {name!r}")
    return name


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


def atomic_write_json(path: Path, obj: object) -> None:
    atomic_write_bytes(path, json.dumps(obj, ensure_ascii=False, indent=2).encode("utf-8"))


def read_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def load_json_or(path: Path, default: dict) -> dict:
    if not path.exists():
        return dict(default)
    try:
        obj = read_json(path)
    except (OSError, ValueError) as e:
        raise StorageFailure(code="STATE_FILE_UNREADABLE", message=f"{path}: {e}") from e
    if not isinstance(obj, dict):
        raise StorageFailure(code="STATE_FILE_INVALID", message=f"{path}: expected a JSON object")
    return obj


def save_state_json(path: Path, obj: object) -> None:
    try:
        atomic_write_json(path, obj)
    except OSError as e:
        raise StorageFailure(code="STATE_WRITE_FAILED", message=f"{path}: {e}") from e


def atomic_move(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    src.replace(dst)


def read_jsonl(path: Path) -> list[dict]:
    if not path.exists():
        return []
    rows: list[dict] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            rows.append(json.loads(line))
        except ValueError:
            continue
    return rows
