from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from clawhost.ipc.mailbox import MailboxPaths
from clawhost.store.registry import Tenant, TenantRegistry
from clawhost.store.sessions import SessionStore
from clawhost.store.tasks import TaskStore

from .errors import InvokerFailure
from .snapshots import write_tasks_snapshot, write_tenants_snapshot
from .types import AgentRunner, InvokeRequest, InvokeResult, Mount, MountConfig

logger = logging.getLogger(__name__)


class TenantLocks:
    """One lock per tenant: a tenant has a single conversation at a time."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_tenant(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[tenant_id] = lock
            return lock


@dataclass
class WorkerInvoker:
    registry: TenantRegistry
    sessions: SessionStore
    mailbox_paths: MailboxPaths
    runner: AgentRunner
    timeout_seconds: float
    tasks: TaskStore | None = None
    locks: TenantLocks = field(default_factory=TenantLocks)

    def mount_config(self, tenant: Tenant) -> MountConfig:
        extra: list[Mount] = []
        if tenant.extra_mounts:
            if self.registry.is_main(tenant.id):
                for m in tenant.extra_mounts:
                    host_path = Path(str(m["hostPath"])).expanduser()
                    extra.append(
                        Mount(
                            host_path=host_path,
                            container_path=str(m.get("containerPath") or f"/workspace/extra/{host_path.name}"),
                            readonly=bool(m.get("readonly", True)),
                        )
                    )
            else:
                logger.warning("Ignoring extra mounts for non-elevated tenant %s", tenant.id)
        return MountConfig(
            tenant_folder=self.registry.tenant_dir(tenant.id),
            ipc_folder=self.mailbox_paths.ensure_tenant(tenant.id),
            extra=extra,
        )

    def invoke(self, tenant_id: str, prompt: str, *, use_session: bool, destination: str | None = None) -> InvokeResult:
        """Run the agent for one tenant; raises InvokerFailure instead of returning errors.

        ``use_session=False`` runs without memory: no token is passed and the
        token the runner returns is dropped.
        """
        tenant = self.registry.get(tenant_id)
        if tenant is None:
            raise InvokerFailure(code="TENANT_UNKNOWN", message=f"tenant not registered: {tenant_id}")
        is_main = self.registry.is_main(tenant_id)
        mounts = self.mount_config(tenant)
        mounts.tenant_folder.mkdir(parents=True, exist_ok=True)

        with self.locks.for_tenant(tenant_id):
            token = self.sessions.get(tenant_id) if use_session else None
            try:
                if self.tasks is not None:
                    write_tasks_snapshot(mounts.ipc_folder, tenant_id=tenant_id, is_main=is_main, tasks=self.tasks)
                if is_main:
                    write_tenants_snapshot(mounts.ipc_folder, registry=self.registry)
            except OSError as e:
                logger.warning("Could not write snapshots for %s: %s", tenant_id, e)
            request = InvokeRequest(
                tenant_id=tenant_id,
                prompt=prompt,
                continuity_token=token,
                mounts=mounts,
                is_main=is_main,
                destination=destination,
            )
            logger.info("Invoking agent for %s (session=%s)", tenant_id, "resume" if token else "new")
            result = self.runner.run(request, timeout_seconds=self.timeout_seconds)
            if use_session and result.new_continuity_token:
                self.sessions.set(tenant_id, result.new_continuity_token)
        return result
