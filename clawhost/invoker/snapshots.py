from __future__ import annotations

from pathlib import Path

from clawhost.core.io import atomic_write_json
from clawhost.store.access import AccessControlStore
from clawhost.store.registry import TenantRegistry
from clawhost.store.tasks import TaskStore


def write_tasks_snapshot(ipc_dir: Path, *, tenant_id: str, is_main: bool, tasks: TaskStore) -> None:
    visible = tasks.list_all() if is_main else tasks.list_for_tenant(tenant_id)
    atomic_write_json(
        ipc_dir / "current_tasks.json",
        [
            {
                "id": t.id,
                "tenantId": t.tenant_id,
                "prompt": t.prompt,
                "schedule_type": t.schedule_type,
                "schedule_value": t.schedule_value,
                "status": t.status,
                "next_fire": t.next_fire,
            }
            for t in visible
        ],
    )


def write_tenants_snapshot(ipc_dir: Path, *, registry: TenantRegistry) -> None:
    atomic_write_json(ipc_dir / "registered_tenants.json", [t.as_dict() for t in registry.all()])


def write_pending_snapshot(ipc_dir: Path, *, access: AccessControlStore) -> None:
    atomic_write_json(ipc_dir / "pending_approvals.json", [p.__dict__ for p in access.list_pending()])
