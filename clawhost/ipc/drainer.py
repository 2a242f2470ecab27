from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from clawhost.channels.base import Channel, parse_destination
from clawhost.core.errors import AuthorizationFailure, ParseFailure, ValidationFailure
from clawhost.core.ids import IdGenerator
from clawhost.core.io import safe_name
from clawhost.core.schema import SchemaRegistry
from clawhost.core.timeutil import Clock, iso_z
from clawhost.invoker.snapshots import write_pending_snapshot
from clawhost.scheduler.schedule import initial_fire
from clawhost.store.access import AccessControlStore
from clawhost.store.registry import Tenant, TenantRegistry
from clawhost.store.tasks import Task, TaskStore

from .auth import require, require_destination
from .mailbox import Mailbox, MailboxEntry, MailboxPaths
from .requests import (
    ApproveUser,
    CancelTask,
    DenyUser,
    ListPending,
    MailboxRequest,
    OutboundMessage,
    PauseTask,
    RegisterTenant,
    ResumeTask,
    ScheduleTask,
    parse_request,
    request_kind,
)

logger = logging.getLogger(__name__)

APPLIED = "applied"
REJECTED = "rejected"
QUARANTINED = "quarantined"
MISSING = "missing"


@dataclass(frozen=True)
class DrainerConfig:
    elevated_tenant: str = "main"
    poll_interval_seconds: float = 1.0
    timezone: str = "UTC"
    assistant_name: str | None = None


@dataclass(frozen=True)
class DrainerContext:
    mailbox: Mailbox
    mailbox_paths: MailboxPaths
    schemas: SchemaRegistry
    tasks: TaskStore
    registry: TenantRegistry
    access: AccessControlStore
    channel: Channel
    clock: Clock
    ids: IdGenerator
    config: DrainerConfig


def _notify_user(ctx: DrainerContext, user_id: str, text: str) -> None:
    address = ctx.access.user_address(user_id)
    try:
        ctx.channel.send_message(address, text)
    except Exception as e:
        logger.debug("Could not notify %s: %s", address, e)


def _handle_message(ctx: DrainerContext, req: OutboundMessage, *, source: str) -> None:
    require(source, "message", None, elevated_tenant=ctx.config.elevated_tenant)
    parse_destination(req.destination)
    text = f"{ctx.config.assistant_name}: {req.text}" if ctx.config.assistant_name else req.text
    ctx.channel.send_message(req.destination, text)
    logger.info("Mailbox message sent: destination=%s source=%s", req.destination, source)


def _handle_schedule(ctx: DrainerContext, req: ScheduleTask, *, source: str) -> None:
    target = req.target_tenant or source
    require(source, "schedule_task", target, elevated_tenant=ctx.config.elevated_tenant)
    tenant = ctx.registry.get(target)
    if tenant is None:
        raise ValidationFailure(code="TARGET_TENANT_UNKNOWN", message=f"tenant not registered: {target}")

    destination = req.destination or tenant.address
    if not destination:
        raise ValidationFailure(code="NO_DESTINATION", message=f"no destination known for tenant {target}")
    parse_destination(destination)
    source_tenant = ctx.registry.get(source)
    require_destination(
        source,
        destination,
        own_address=source_tenant.address if source_tenant else None,
        elevated_tenant=ctx.config.elevated_tenant,
    )

    now = ctx.clock.now()
    first = initial_fire(req.schedule_type, req.schedule_value, now=now, tz=ZoneInfo(ctx.config.timezone))
    task = Task(
        id=ctx.ids.new_task_id(now),
        tenant_id=target,
        destination=destination,
        prompt=req.prompt,
        schedule_type=req.schedule_type,
        schedule_value=req.schedule_value,
        context_mode=req.context_mode,
        next_fire=iso_z(first),
        status="active",
        created_at=iso_z(now),
    )
    ctx.tasks.create(task)
    logger.info(
        "Task created: id=%s source=%s target=%s type=%s next_fire=%s",
        task.id,
        source,
        target,
        task.schedule_type,
        task.next_fire,
    )


def _owned_task(ctx: DrainerContext, task_id: str, *, source: str, kind: str) -> Task:
    task = ctx.tasks.get(task_id)
    if task is None:
        raise ValidationFailure(code="TASK_NOT_FOUND", message=f"task not found: {task_id}")
    require(source, kind, task.tenant_id, elevated_tenant=ctx.config.elevated_tenant)
    return task


def _handle_register(ctx: DrainerContext, req: RegisterTenant, *, source: str) -> None:
    require(source, "register_tenant", None, elevated_tenant=ctx.config.elevated_tenant)
    folder = safe_name(req.folder)
    parse_destination(req.address)
    bound = ctx.registry.find_by_address(req.address)
    if bound is not None and bound.id != folder:
        raise ValidationFailure(code="ADDRESS_IN_USE", message=f"{req.address} already bound to tenant {bound.id}")
    ctx.registry.register(
        Tenant(
            id=folder,
            name=req.name,
            trigger=req.trigger,
            created_at=iso_z(ctx.clock.now()),
            address=req.address,
            extra_mounts=list(req.extra_mounts),
        )
    )
    ctx.mailbox_paths.ensure_tenant(folder)


def _handle_approve(ctx: DrainerContext, req: ApproveUser, *, source: str) -> None:
    require(source, "approve_user", None, elevated_tenant=ctx.config.elevated_tenant)
    ctx.access.approve(req.user_id, approved_by=source, paired_at=iso_z(ctx.clock.now()))
    _notify_user(ctx, req.user_id, "Access approved! You can now chat with me.")


def _handle_deny(ctx: DrainerContext, req: DenyUser, *, source: str) -> None:
    require(source, "deny_user", None, elevated_tenant=ctx.config.elevated_tenant)
    if ctx.access.deny(req.user_id):
        _notify_user(ctx, req.user_id, "Access denied.")
    else:
        logger.info("deny_user: no pending request for %s", req.user_id)


def _handle_list_pending(ctx: DrainerContext, *, source: str) -> None:
    require(source, "list_pending", None, elevated_tenant=ctx.config.elevated_tenant)
    write_pending_snapshot(ctx.mailbox_paths.tenant_dir(source), access=ctx.access)
    logger.info("Pending approvals listed: %d", len(ctx.access.list_pending()))


def apply_request(ctx: DrainerContext, request: MailboxRequest, *, source: str) -> None:
    match request:
        case OutboundMessage():
            _handle_message(ctx, request, source=source)
        case ScheduleTask():
            _handle_schedule(ctx, request, source=source)
        case PauseTask(task_id=task_id):
            _owned_task(ctx, task_id, source=source, kind="pause_task")
            ctx.tasks.set_status(task_id, "paused")
            logger.info("Task paused: id=%s source=%s", task_id, source)
        case ResumeTask(task_id=task_id):
            _owned_task(ctx, task_id, source=source, kind="resume_task")
            ctx.tasks.set_status(task_id, "active")
            logger.info("Task resumed: id=%s source=%s", task_id, source)
        case CancelTask(task_id=task_id):
            _owned_task(ctx, task_id, source=source, kind="cancel_task")
            ctx.tasks.delete(task_id)
            logger.info("Task cancelled: id=%s source=%s", task_id, source)
        case RegisterTenant():
            _handle_register(ctx, request, source=source)
        case ApproveUser():
            _handle_approve(ctx, request, source=source)
        case DenyUser():
            _handle_deny(ctx, request, source=source)
        case ListPending():
            _handle_list_pending(ctx, source=source)
        case _:
            raise ParseFailure(code="UNSUPPORTED_REQUEST", message=type(request).__name__)


def _quarantine(ctx: DrainerContext, entry: MailboxEntry, *, code: str, reason: str) -> None:
    dst = ctx.mailbox.quarantine(entry, code=code, reason=reason, now=ctx.clock.now())
    logger.error("Mailbox entry quarantined: tenant=%s file=%s code=%s reason=%s", entry.tenant_id, entry.name, code, reason)
    if dst is None:
        logger.debug("Entry vanished before quarantine: %s", entry.path)


def process_entry(ctx: DrainerContext, entry: MailboxEntry) -> str:
    """Consume one mailbox file. The source tenant is the directory, not the body."""
    try:
        obj = ctx.mailbox.read(entry)
        if obj is None:
            return MISSING
        request = parse_request(obj, entry_kind=entry.kind, schemas=ctx.schemas)
    except ParseFailure as e:
        _quarantine(ctx, entry, code=e.code, reason=e.message)
        return QUARANTINED

    try:
        apply_request(ctx, request, source=entry.tenant_id)
    except (AuthorizationFailure, ValidationFailure) as e:
        logger.warning(
            "Mailbox request rejected: tenant=%s kind=%s file=%s %s",
            entry.tenant_id,
            request_kind(request),
            entry.name,
            e,
        )
        ctx.mailbox.remove(entry)
        return REJECTED
    except Exception as e:
        code = getattr(e, "code", "UNHANDLED_EXCEPTION")
        _quarantine(ctx, entry, code=code, reason=str(e))
        return QUARANTINED

    ctx.mailbox.remove(entry)
    return APPLIED


def tick(ctx: DrainerContext) -> Counter:
    outcomes: Counter = Counter()
    try:
        tenants = ctx.mailbox.list_tenants()
    except OSError as e:
        logger.error("Error reading mailbox root: %s", e)
        return outcomes
    for tenant_id in tenants:
        try:
            entries = ctx.mailbox.list_entries(tenant_id)
        except OSError as e:
            logger.error("Error reading mailbox of %s: %s", tenant_id, e)
            continue
        for entry in entries:
            outcomes[process_entry(ctx, entry)] += 1
    return outcomes


def run_forever(ctx: DrainerContext, *, stop: threading.Event) -> None:
    logger.info("Mailbox drainer started (poll every %ss)", ctx.config.poll_interval_seconds)
    while not stop.is_set():
        try:
            tick(ctx)
        except Exception:
            logger.exception("Mailbox drain tick failed")
        stop.wait(ctx.config.poll_interval_seconds)
