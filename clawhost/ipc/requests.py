from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from clawhost.core.errors import ParseFailure
from clawhost.core.schema import SchemaRegistry

from .mailbox import MESSAGES, TASKS


@dataclass(frozen=True)
class OutboundMessage:
    destination: str
    text: str


@dataclass(frozen=True)
class ScheduleTask:
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str = "isolated"
    target_tenant: str | None = None
    destination: str | None = None


@dataclass(frozen=True)
class PauseTask:
    task_id: str


@dataclass(frozen=True)
class ResumeTask:
    task_id: str


@dataclass(frozen=True)
class CancelTask:
    task_id: str


@dataclass(frozen=True)
class RegisterTenant:
    # tenantId names the chat address the new tenant answers on.
    address: str
    name: str
    folder: str
    trigger: str
    extra_mounts: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class ApproveUser:
    user_id: str


@dataclass(frozen=True)
class DenyUser:
    user_id: str


@dataclass(frozen=True)
class ListPending:
    pass


ControlRequest = Union[
    ScheduleTask,
    PauseTask,
    ResumeTask,
    CancelTask,
    RegisterTenant,
    ApproveUser,
    DenyUser,
    ListPending,
]
MailboxRequest = Union[OutboundMessage, ControlRequest]


def request_kind(request: MailboxRequest) -> str:
    return _KIND_BY_CLASS[type(request)]


def parse_request(obj: Any, *, entry_kind: str, schemas: SchemaRegistry) -> MailboxRequest:
    """Turn one decoded mailbox file into a request, or raise ParseFailure."""
    if not isinstance(obj, dict):
        raise ParseFailure(code="ENTRY_NOT_OBJECT", message=f"expected a JSON object, got {type(obj).__name__}")
    if entry_kind == MESSAGES:
        schemas.validate(obj, "message.schema.json")
        return OutboundMessage(destination=str(obj["destination"]), text=str(obj["text"]))
    if entry_kind != TASKS:
        raise ParseFailure(code="UNKNOWN_ENTRY_KIND", message=entry_kind)

    schemas.validate(obj, "control_request.schema.json")
    t = obj["type"]
    if t == "schedule_task":
        return ScheduleTask(
            prompt=str(obj["prompt"]),
            schedule_type=str(obj["schedule_type"]),
            schedule_value=str(obj["schedule_value"]),
            context_mode=str(obj.get("context_mode") or "isolated"),
            target_tenant=obj.get("targetTenant"),
            destination=obj.get("destination"),
        )
    if t == "pause_task":
        return PauseTask(task_id=str(obj["taskId"]))
    if t == "resume_task":
        return ResumeTask(task_id=str(obj["taskId"]))
    if t == "cancel_task":
        return CancelTask(task_id=str(obj["taskId"]))
    if t == "register_tenant":
        return RegisterTenant(
            address=str(obj["tenantId"]),
            name=str(obj["name"]),
            folder=str(obj["folderName"]),
            trigger=str(obj["trigger"]),
            extra_mounts=list(obj.get("extraMounts") or []),
        )
    if t == "approve_user":
        return ApproveUser(user_id=str(obj["userId"]))
    if t == "deny_user":
        return DenyUser(user_id=str(obj["userId"]))
    if t == "list_pending":
        return ListPending()
    raise ParseFailure(code="UNKNOWN_REQUEST_TYPE", message=str(t))


_KIND_BY_CLASS: dict[type, str] = {
    OutboundMessage: "message",
    ScheduleTask: "schedule_task",
    PauseTask: "pause_task",
    ResumeTask: "resume_task",
    CancelTask: "cancel_task",
    RegisterTenant: "register_tenant",
    ApproveUser: "approve_user",
    DenyUser: "deny_user",
    ListPending: "list_pending",
}
