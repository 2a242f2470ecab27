from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from clawhost.core.errors import ParseFailure
from clawhost.core.ids import IdGenerator
from clawhost.core.io import atomic_move, atomic_write_json, is_tmp
from clawhost.core.timeutil import iso_z

logger = logging.getLogger(__name__)

MESSAGES = "messages"
TASKS = "tasks"
ENTRY_KINDS = (MESSAGES, TASKS)


@dataclass(frozen=True)
class MailboxEntry:
    tenant_id: str
    kind: str
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


class Mailbox(Protocol):
    def list_tenants(self) -> list[str]: ...

    def list_entries(self, tenant_id: str) -> list[MailboxEntry]: ...

    def read(self, entry: MailboxEntry) -> Any | None: ...

    def remove(self, entry: MailboxEntry) -> None: ...

    def quarantine(self, entry: MailboxEntry, *, code: str, reason: str, now: datetime) -> Path | None: ...


@dataclass(frozen=True)
class MailboxPaths:
    ipc_root: Path
    quarantine_root: Path

    def tenant_dir(self, tenant_id: str) -> Path:
        return self.ipc_root / tenant_id

    def entries_dir(self, tenant_id: str, kind: str) -> Path:
        return self.tenant_dir(tenant_id) / kind

    def ensure_tenant(self, tenant_id: str) -> Path:
        for kind in ENTRY_KINDS:
            self.entries_dir(tenant_id, kind).mkdir(parents=True, exist_ok=True)
        return self.tenant_dir(tenant_id)


class FileMailbox:
    """Per-tenant directories of pending JSON files.

    The directory a file sits in is the only identity the host trusts: each
    tenant's worker can write only to its own ``ipc/<tenant>/`` mount.
    """

    def __init__(self, paths: MailboxPaths, *, ids: IdGenerator | None = None) -> None:
        self.paths = paths
        self.ids = ids or IdGenerator()

    def list_tenants(self) -> list[str]:
        root = self.paths.ipc_root
        if not root.exists():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def list_entries(self, tenant_id: str) -> list[MailboxEntry]:
        entries: list[MailboxEntry] = []
        for kind in ENTRY_KINDS:
            d = self.paths.entries_dir(tenant_id, kind)
            if not d.is_dir():
                continue
            files = [p for p in d.iterdir() if p.is_file() and p.name.endswith(".json") and not is_tmp(p)]
            entries.extend(MailboxEntry(tenant_id=tenant_id, kind=kind, path=p) for p in sorted(files, key=lambda p: p.name))
        return entries

    def read(self, entry: MailboxEntry) -> Any | None:
        try:
            text = entry.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise ParseFailure(code="ENTRY_UNREADABLE", message=str(e)) from e
        try:
            return json.loads(text)
        except ValueError as e:
            raise ParseFailure(code="ENTRY_PARSE_ERROR", message=str(e)) from e

    def remove(self, entry: MailboxEntry) -> None:
        entry.path.unlink(missing_ok=True)

    def quarantine(self, entry: MailboxEntry, *, code: str, reason: str, now: datetime) -> Path | None:
        if not entry.path.exists():
            return None
        dst = self.paths.quarantine_root / f"{entry.tenant_id}-{entry.kind}-{entry.name}"
        if dst.exists():
            dst = dst.with_name(f"{self.ids.new_quarantine_id(now)}-{dst.name}")
        atomic_move(entry.path, dst)
        payload: dict[str, Any] = {
            "schema_version": "1.0",
            "quarantine_id": self.ids.new_quarantine_id(now),
            "created_at": iso_z(now),
            "reason": {"code": code, "message": reason},
            "original": {"tenant_id": entry.tenant_id, "kind": entry.kind, "file_name": entry.name},
            "actions": {"retriable": False},
        }
        atomic_write_json(dst.with_name(dst.name + ".reason"), payload)
        return dst
