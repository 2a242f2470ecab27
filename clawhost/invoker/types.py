from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True)
class Mount:
    host_path: Path
    container_path: str
    readonly: bool = False

    def as_dict(self) -> dict:
        return {"hostPath": str(self.host_path), "containerPath": self.container_path, "readonly": self.readonly}


@dataclass(frozen=True)
class MountConfig:
    tenant_folder: Path
    ipc_folder: Path
    extra: list[Mount] = field(default_factory=list)

    def mounts(self) -> list[Mount]:
        return [
            Mount(host_path=self.tenant_folder, container_path="/workspace/group"),
            Mount(host_path=self.ipc_folder, container_path="/workspace/ipc"),
            *self.extra,
        ]


@dataclass(frozen=True)
class InvokeRequest:
    tenant_id: str
    prompt: str
    continuity_token: str | None
    mounts: MountConfig
    is_main: bool = False
    destination: str | None = None

    def as_payload(self) -> dict:
        return {
            "tenantId": self.tenant_id,
            "prompt": self.prompt,
            "sessionId": self.continuity_token,
            "isMain": self.is_main,
            "destination": self.destination,
            "mounts": [m.as_dict() for m in self.mounts.mounts()],
        }


@dataclass(frozen=True)
class InvokeResult:
    result_text: str | None
    new_continuity_token: str | None = None


class AgentRunner(Protocol):
    def run(self, request: InvokeRequest, *, timeout_seconds: float) -> InvokeResult: ...
