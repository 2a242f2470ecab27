from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from clawhost.core.errors import StorageFailure
from clawhost.core.ids import IdGenerator
from clawhost.core.schema import SchemaRegistry
from clawhost.core.timeutil import Clock
from clawhost.ipc.drainer import APPLIED, MISSING, QUARANTINED, REJECTED, DrainerConfig, DrainerContext, process_entry, tick
from clawhost.ipc.mailbox import FileMailbox, MailboxEntry, MailboxPaths
from clawhost.store.access import AccessControlStore
from clawhost.store.registry import Tenant, TenantRegistry
from clawhost.store.tasks import TaskStore


class FixedClock(Clock):
    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:  # type: ignore[override]
        return self._now


class RecordingChannel:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_message(self, destination: str, text: str) -> None:
        self.sent.append((destination, text))


class BrokenChannel:
    def send_message(self, destination: str, text: str) -> None:
        raise StorageFailure(code="SPOOL_WRITE_FAILED", message="disk full")


NOW = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


def make_ctx(tmp_path: Path, channel=None) -> DrainerContext:
    paths = MailboxPaths(ipc_root=tmp_path / "data" / "ipc", quarantine_root=tmp_path / "data" / "quarantine")
    registry = TenantRegistry(tmp_path / "data" / "registered_tenants.json", groups_dir=tmp_path / "groups", main_tenant="main")
    for tid, addr in (("main", "tg:1"), ("family", "tg:100"), ("work", "tg:200")):
        registry.register(Tenant(id=tid, name=tid.title(), trigger="@Andy", created_at="2026-01-01T00:00:00.000Z", address=addr))
        paths.ensure_tenant(tid)
    clock = FixedClock(NOW)
    return DrainerContext(
        mailbox=FileMailbox(paths),
        mailbox_paths=paths,
        schemas=SchemaRegistry(),
        tasks=TaskStore(tmp_path / "data" / "clawhost.db"),
        registry=registry,
        access=AccessControlStore(tmp_path / "data", channel="tg"),
        channel=channel if channel is not None else RecordingChannel(),
        clock=clock,
        ids=IdGenerator(),
        config=DrainerConfig(elevated_tenant="main", timezone="UTC", assistant_name="Andy"),
    )


def drop(ctx: DrainerContext, tenant: str, kind: str, name: str, body) -> Path:
    p = ctx.mailbox_paths.entries_dir(tenant, kind) / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(body if isinstance(body, str) else json.dumps(body), encoding="utf-8")
    return p


def quarantined(ctx: DrainerContext) -> list[Path]:
    root = ctx.mailbox_paths.quarantine_root
    if not root.exists():
        return []
    return sorted(p for p in root.iterdir() if not p.name.endswith(".reason"))


def schedule(prompt: str = "report", **extra) -> dict:
    body = {"type": "schedule_task", "prompt": prompt, "schedule_type": "cron", "schedule_value": "0 9 * * 1"}
    body.update(extra)
    return body


def test_unparseable_entry_is_quarantined_with_reason(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    p = drop(ctx, "family", "tasks", "001.json", "{not json")

    outcomes = tick(ctx)

    assert outcomes[QUARANTINED] == 1
    assert not p.exists()
    moved = quarantined(ctx)
    assert [q.name for q in moved] == ["family-tasks-001.json"]
    assert moved[0].read_text(encoding="utf-8") == "{not json"
    reason = json.loads((moved[0].parent / "family-tasks-001.json.reason").read_text(encoding="utf-8"))
    assert reason["reason"]["code"] == "ENTRY_PARSE_ERROR"
    assert reason["original"] == {"tenant_id": "family", "kind": "tasks", "file_name": "001.json"}


def test_schema_invalid_entries_are_quarantined(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "main", "messages", "001.json", {"type": "message", "destination": "tg:42"})
    drop(ctx, "main", "tasks", "002.json", {"type": "explode"})
    drop(ctx, "main", "tasks", "003.json", ["not", "an", "object"])

    outcomes = tick(ctx)

    assert outcomes[QUARANTINED] == 3
    assert len(quarantined(ctx)) == 3
    assert ctx.channel.sent == []


def test_main_message_is_sent_with_assistant_prefix(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    p = drop(ctx, "main", "messages", "001.json", {"type": "message", "destination": "tg:42", "text": "hello"})

    assert tick(ctx)[APPLIED] == 1
    assert ctx.channel.sent == [("tg:42", "Andy: hello")]
    assert not p.exists()


def test_message_from_ordinary_tenant_is_discarded(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    p = drop(ctx, "family", "messages", "001.json", {"type": "message", "destination": "tg:42", "text": "spoof"})

    assert tick(ctx)[REJECTED] == 1
    assert ctx.channel.sent == []
    assert not p.exists()
    assert quarantined(ctx) == []


def test_malformed_destination_is_discarded(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "main", "messages", "001.json", {"type": "message", "destination": "no colon here", "text": "x"})

    assert tick(ctx)[REJECTED] == 1
    assert ctx.channel.sent == []


def test_identity_comes_from_directory_not_body(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "family", "tasks", "001.json", {"type": "approve_user", "userId": 7, "sourceTenant": "main", "isMain": True})

    assert tick(ctx)[REJECTED] == 1
    assert ctx.access.is_paired("7") is False


def test_cross_tenant_requests_from_ordinary_tenant_have_no_effect(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "work", "tasks", "001.json", schedule("work report"))
    tick(ctx)
    (work_task,) = ctx.tasks.list_for_tenant("work")

    drop(ctx, "family", "tasks", "002.json", schedule("sneaky", targetTenant="work"))
    drop(ctx, "family", "tasks", "003.json", {"type": "pause_task", "taskId": work_task.id})
    drop(ctx, "family", "tasks", "004.json", {"type": "cancel_task", "taskId": work_task.id})

    outcomes = tick(ctx)

    assert outcomes[REJECTED] == 3
    assert [t.id for t in ctx.tasks.list_all()] == [work_task.id]
    assert ctx.tasks.get(work_task.id).status == "active"


def test_ordinary_tenant_cannot_route_output_elsewhere(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "family", "tasks", "001.json", schedule(destination="tg:200"))

    assert tick(ctx)[REJECTED] == 1
    assert ctx.tasks.list_all() == []


def test_schedule_defaults_to_own_tenant_and_address(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "family", "tasks", "001.json", schedule())

    assert tick(ctx)[APPLIED] == 1
    (task,) = ctx.tasks.list_all()
    assert task.tenant_id == "family"
    assert task.destination == "tg:100"
    assert task.context_mode == "isolated"
    assert task.status == "active"
    assert task.created_at == "2026-01-05T08:00:00.000Z"
    assert task.next_fire == "2026-01-05T09:00:00.000Z"


def test_elevated_tenant_schedules_for_others(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "main", "tasks", "001.json", schedule(targetTenant="work", context_mode="group"))
    drop(ctx, "main", "tasks", "002.json", schedule(targetTenant="ghost"))

    outcomes = tick(ctx)

    assert outcomes[APPLIED] == 1
    assert outcomes[REJECTED] == 1
    (task,) = ctx.tasks.list_all()
    assert (task.tenant_id, task.destination, task.context_mode) == ("work", "tg:200", "group")


def test_invalid_schedules_create_no_task(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "family", "tasks", "001.json", schedule(schedule_value="every tuesday"))
    drop(ctx, "family", "tasks", "002.json", schedule(schedule_type="interval", schedule_value="0"))
    drop(ctx, "family", "tasks", "003.json", schedule(schedule_type="interval", schedule_value="soon"))
    drop(ctx, "family", "tasks", "004.json", schedule(schedule_type="once", schedule_value="tomorrow-ish"))

    assert tick(ctx)[REJECTED] == 4
    assert ctx.tasks.list_all() == []


def test_interval_accepts_integer_value(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "family", "tasks", "001.json", schedule(schedule_type="interval", schedule_value=60000))

    tick(ctx)
    (task,) = ctx.tasks.list_all()
    assert task.schedule_value == "60000"
    assert task.next_fire == "2026-01-05T08:01:00.000Z"


def test_identical_cron_requests_give_independent_tasks(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "family", "tasks", "001.json", schedule())
    drop(ctx, "family", "tasks", "002.json", schedule())
    tick(ctx)

    first, second = ctx.tasks.list_all()
    assert first.id != second.id

    drop(ctx, "family", "tasks", "003.json", {"type": "pause_task", "taskId": first.id})
    tick(ctx)
    assert ctx.tasks.get(first.id).status == "paused"
    assert ctx.tasks.get(second.id).status == "active"

    drop(ctx, "family", "tasks", "004.json", {"type": "resume_task", "taskId": first.id})
    drop(ctx, "family", "tasks", "005.json", {"type": "cancel_task", "taskId": second.id})
    tick(ctx)
    assert ctx.tasks.get(first.id).status == "active"
    assert ctx.tasks.get(second.id) is None


def test_unknown_task_id_is_discarded(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "main", "tasks", "001.json", {"type": "cancel_task", "taskId": "task_missing"})
    assert tick(ctx)[REJECTED] == 1


def test_register_tenant(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(
        ctx,
        "main",
        "tasks",
        "001.json",
        {"type": "register_tenant", "tenantId": "tg:-300", "name": "Book Club", "folderName": "book-club", "trigger": "@Andy"},
    )
    drop(
        ctx,
        "family",
        "tasks",
        "002.json",
        {"type": "register_tenant", "tenantId": "tg:-400", "name": "Rogue", "folderName": "rogue", "trigger": "@Andy"},
    )
    drop(
        ctx,
        "main",
        "tasks",
        "003.json",
        {"type": "register_tenant", "tenantId": "tg:-500", "name": "Escape", "folderName": "../etc", "trigger": "@Andy"},
    )
    drop(ctx, "main", "tasks", "004.json", {"type": "register_tenant", "tenantId": "tg:-600", "name": "No folder", "trigger": "@Andy"})

    outcomes = tick(ctx)

    assert dict(outcomes) == {APPLIED: 1, REJECTED: 2, QUARANTINED: 1}
    tenant = ctx.registry.get("book-club")
    assert tenant is not None
    assert tenant.address == "tg:-300"
    assert tenant.created_at == "2026-01-05T08:00:00.000Z"
    assert (tmp_path / "groups" / "book-club" / "logs").is_dir()
    assert ctx.mailbox_paths.entries_dir("book-club", "tasks").is_dir()
    assert ctx.registry.get("rogue") is None


def test_address_cannot_be_bound_twice(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(
        ctx,
        "main",
        "tasks",
        "001.json",
        {"type": "register_tenant", "tenantId": "tg:100", "name": "Dup", "folderName": "dup", "trigger": "@Andy"},
    )
    assert tick(ctx)[REJECTED] == 1
    assert ctx.registry.get("dup") is None


def test_approve_from_ordinary_tenant_leaves_store_unchanged(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    ctx.access.request_approval("55", requested_at="2026-01-05T07:00:00.000Z", first_message="hi")
    before = ctx.access.pending_path.read_text(encoding="utf-8")

    drop(ctx, "family", "tasks", "001.json", {"type": "approve_user", "userId": "55"})
    assert tick(ctx)[REJECTED] == 1

    assert ctx.access.pending_path.read_text(encoding="utf-8") == before
    assert not ctx.access.paired_path.exists()
    assert ctx.channel.sent == []


def test_approve_and_deny_from_main_notify_users(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    ctx.access.request_approval("55", requested_at="2026-01-05T07:00:00.000Z", first_message="hi", username="ann")
    ctx.access.request_approval("66", requested_at="2026-01-05T07:00:00.000Z", first_message="yo")

    drop(ctx, "main", "tasks", "001.json", {"type": "approve_user", "userId": 55})
    drop(ctx, "main", "tasks", "002.json", {"type": "deny_user", "userId": "66"})
    assert tick(ctx)[APPLIED] == 2

    assert ctx.access.is_paired("55")
    (paired,) = ctx.access.list_paired()
    assert (paired.user_id, paired.approved_by, paired.username) == ("55", "main", "ann")
    assert not ctx.access.has_pending("55")
    assert not ctx.access.has_pending("66")
    assert not ctx.access.is_paired("66")
    assert ctx.channel.sent == [
        ("tg:55", "Access approved! You can now chat with me."),
        ("tg:66", "Access denied."),
    ]


def test_notification_failure_does_not_undo_approval(tmp_path: Path):
    ctx = make_ctx(tmp_path, channel=BrokenChannel())
    drop(ctx, "main", "tasks", "001.json", {"type": "approve_user", "userId": "77"})

    assert tick(ctx)[APPLIED] == 1
    assert ctx.access.is_paired("77")


def test_list_pending_writes_snapshot_for_main(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    ctx.access.request_approval("55", requested_at="2026-01-05T07:00:00.000Z", first_message="hi")
    drop(ctx, "main", "tasks", "001.json", {"type": "list_pending"})

    assert tick(ctx)[APPLIED] == 1
    snapshot = json.loads((ctx.mailbox_paths.tenant_dir("main") / "pending_approvals.json").read_text(encoding="utf-8"))
    assert [p["user_id"] for p in snapshot] == ["55"]


def test_handler_exception_quarantines(tmp_path: Path):
    ctx = make_ctx(tmp_path, channel=BrokenChannel())
    drop(ctx, "main", "messages", "001.json", {"type": "message", "destination": "tg:42", "text": "hello"})

    assert tick(ctx)[QUARANTINED] == 1
    (moved,) = quarantined(ctx)
    reason = json.loads(moved.with_name(moved.name + ".reason").read_text(encoding="utf-8"))
    assert reason["reason"]["code"] == "SPOOL_WRITE_FAILED"


def test_already_removed_entry_is_a_no_op(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    p = drop(ctx, "main", "messages", "001.json", {"type": "message", "destination": "tg:42", "text": "hello"})
    entry = MailboxEntry(tenant_id="main", kind="messages", path=p)
    p.unlink()

    assert process_entry(ctx, entry) == MISSING
    assert ctx.channel.sent == []
    assert quarantined(ctx) == []


def test_one_bad_entry_does_not_block_others(tmp_path: Path):
    ctx = make_ctx(tmp_path)
    drop(ctx, "main", "messages", "001.json", "garbage")
    drop(ctx, "main", "messages", "002.json", {"type": "message", "destination": "tg:42", "text": "after"})
    drop(ctx, "family", "tasks", "001.tmp", "partial write")

    outcomes = tick(ctx)

    assert dict(outcomes) == {QUARANTINED: 1, APPLIED: 1}
    assert ctx.channel.sent == [("tg:42", "Andy: after")]
    assert (ctx.mailbox_paths.entries_dir("family", "tasks") / "001.tmp").exists()
