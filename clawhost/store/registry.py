from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from clawhost.core.io import load_json_or, safe_name, save_state_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tenant:
    id: str
    name: str
    trigger: str
    created_at: str
    address: str | None = None
    extra_mounts: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "created_at": self.created_at,
            "address": self.address,
            "extra_mounts": list(self.extra_mounts),
        }


def _tenant_from_dict(tenant_id: str, raw: dict) -> Tenant:
    return Tenant(
        id=tenant_id,
        name=str(raw.get("name") or tenant_id),
        trigger=str(raw.get("trigger") or ""),
        created_at=str(raw.get("created_at") or ""),
        address=raw.get("address") if isinstance(raw.get("address"), str) else None,
        extra_mounts=[m for m in (raw.get("extra_mounts") or []) if isinstance(m, dict)],
    )


class TenantRegistry:
    """Durable map of tenant id -> Tenant.

    Reads are served from an in-memory cache that is reloaded after every
    write. Exactly one tenant, ``main_tenant``, is elevated.
    """

    def __init__(self, path: Path, *, groups_dir: Path, main_tenant: str) -> None:
        self.path = path
        self.groups_dir = groups_dir
        self.main_tenant = main_tenant
        self._lock = threading.Lock()
        self._cache: dict[str, Tenant] = {}
        self.reload()

    def reload(self) -> None:
        raw = load_json_or(self.path, {})
        self._cache = {tid: _tenant_from_dict(tid, v) for tid, v in raw.items() if isinstance(v, dict)}

    def is_main(self, tenant_id: str) -> bool:
        return tenant_id == self.main_tenant

    def get(self, tenant_id: str) -> Tenant | None:
        return self._cache.get(tenant_id)

    def all(self) -> list[Tenant]:
        return sorted(self._cache.values(), key=lambda t: t.id)

    def find_by_address(self, address: str) -> Tenant | None:
        for t in self._cache.values():
            if t.address == address:
                return t
        return None

    def tenant_dir(self, tenant_id: str) -> Path:
        return self.groups_dir / safe_name(tenant_id)

    def register(self, tenant: Tenant) -> Tenant:
        """Create or update a tenant and its folder; the id and creation time never change."""
        safe_name(tenant.id)
        with self._lock:
            raw = load_json_or(self.path, {})
            existing = raw.get(tenant.id)
            record = tenant.as_dict()
            record.pop("id")
            if isinstance(existing, dict) and existing.get("created_at"):
                record["created_at"] = existing["created_at"]
            raw[tenant.id] = record
            save_state_json(self.path, raw)
            (self.tenant_dir(tenant.id) / "logs").mkdir(parents=True, exist_ok=True)
            self.reload()
        logger.info("Tenant registered: %s (%s) address=%s", tenant.id, tenant.name, tenant.address)
        return self._cache[tenant.id]
