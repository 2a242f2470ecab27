from __future__ import annotations

import json
import sys
import threading
import time
from pathlib import Path

import pytest

from clawhost.invoker.errors import InvokerFailure, InvokerTimeout, RunnerCrashed, RunnerReportedError
from clawhost.invoker.invoker import WorkerInvoker
from clawhost.invoker.subprocess_runner import SubprocessRunner
from clawhost.invoker.types import InvokeRequest, InvokeResult, MountConfig
from clawhost.ipc.mailbox import MailboxPaths
from clawhost.store.registry import Tenant, TenantRegistry
from clawhost.store.sessions import SessionStore
from clawhost.store.tasks import TaskStore

ECHO_RUNNER = """
import json, sys
req = json.load(sys.stdin)
print("starting up")
print(json.dumps({"status": "success", "result": "echo:" + req["prompt"], "newSessionId": "s-" + req["tenantId"]}))
"""


def python_runner(code: str) -> SubprocessRunner:
    return SubprocessRunner(command=[sys.executable, "-c", code])


def make_request(tmp_path: Path, prompt: str = "hi") -> InvokeRequest:
    return InvokeRequest(
        tenant_id="family",
        prompt=prompt,
        continuity_token=None,
        mounts=MountConfig(tenant_folder=tmp_path / "groups" / "family", ipc_folder=tmp_path / "ipc" / "family"),
    )


def test_subprocess_runner_success(tmp_path: Path):
    result = python_runner(ECHO_RUNNER).run(make_request(tmp_path, "ping"), timeout_seconds=30)
    assert result == InvokeResult(result_text="echo:ping", new_continuity_token="s-family")


def test_subprocess_runner_reported_error(tmp_path: Path):
    runner = python_runner('print(\'{"status": "error", "error": "quota exceeded"}\')')
    with pytest.raises(RunnerReportedError) as ei:
        runner.run(make_request(tmp_path), timeout_seconds=30)
    assert ei.value.code == "RUNNER_ERROR"
    assert ei.value.message == "quota exceeded"


def test_subprocess_runner_timeout_kills_child(tmp_path: Path):
    runner = python_runner("import time; time.sleep(30)")
    started = time.monotonic()
    with pytest.raises(InvokerTimeout) as ei:
        runner.run(make_request(tmp_path), timeout_seconds=0.5)
    assert ei.value.code == "RUNNER_TIMEOUT"
    assert time.monotonic() - started < 20


@pytest.mark.parametrize(
    "code, expected",
    [
        ("import sys; sys.exit(3)", "RUNNER_EXIT_NONZERO"),
        ("print('not json')", "RUNNER_BAD_OUTPUT"),
        ("pass", "RUNNER_NO_OUTPUT"),
        ("print('{\"status\": \"maybe\"}')", "RUNNER_BAD_OUTPUT"),
    ],
)
def test_subprocess_runner_crashes(tmp_path: Path, code: str, expected: str):
    with pytest.raises(RunnerCrashed) as ei:
        python_runner(code).run(make_request(tmp_path), timeout_seconds=30)
    assert ei.value.code == expected


def test_subprocess_runner_misconfigured(tmp_path: Path):
    with pytest.raises(RunnerCrashed) as ei:
        SubprocessRunner(command=[]).run(make_request(tmp_path), timeout_seconds=1)
    assert ei.value.code == "RUNNER_NOT_CONFIGURED"
    with pytest.raises(RunnerCrashed) as ei:
        SubprocessRunner(command=[str(tmp_path / "no-such-runner")]).run(make_request(tmp_path), timeout_seconds=1)
    assert ei.value.code == "RUNNER_NOT_FOUND"


class RecordingRunner:
    def __init__(self, run_fn=None) -> None:
        self.requests: list[InvokeRequest] = []
        self.run_fn = run_fn

    def run(self, request: InvokeRequest, *, timeout_seconds: float) -> InvokeResult:
        self.requests.append(request)
        if self.run_fn is not None:
            return self.run_fn(request)
        return InvokeResult(result_text="ok", new_continuity_token="tok-" + request.tenant_id)


def make_invoker(tmp_path: Path, runner) -> WorkerInvoker:
    registry = TenantRegistry(tmp_path / "data" / "registered_tenants.json", groups_dir=tmp_path / "groups", main_tenant="main")
    docs = tmp_path / "docs"
    docs.mkdir()
    mounts = [{"hostPath": str(docs), "containerPath": "/workspace/extra/docs", "readonly": True}]
    registry.register(Tenant(id="main", name="Main", trigger="@Andy", created_at="2026-01-01T00:00:00.000Z", address="tg:1", extra_mounts=mounts))
    registry.register(Tenant(id="family", name="Family", trigger="@Andy", created_at="2026-01-01T00:00:00.000Z", address="tg:100", extra_mounts=mounts))
    registry.register(Tenant(id="work", name="Work", trigger="@Andy", created_at="2026-01-01T00:00:00.000Z", address="tg:200"))
    return WorkerInvoker(
        registry=registry,
        sessions=SessionStore(tmp_path / "data" / "sessions.json"),
        mailbox_paths=MailboxPaths(ipc_root=tmp_path / "data" / "ipc", quarantine_root=tmp_path / "data" / "quarantine"),
        runner=runner,
        timeout_seconds=5,
        tasks=TaskStore(tmp_path / "data" / "clawhost.db"),
    )


def test_extra_mounts_only_for_main(tmp_path: Path):
    runner = RecordingRunner()
    invoker = make_invoker(tmp_path, runner)

    invoker.invoke("main", "a", use_session=True)
    invoker.invoke("family", "b", use_session=True)

    main_req, family_req = runner.requests
    assert main_req.is_main is True
    assert [m.container_path for m in main_req.mounts.mounts()] == ["/workspace/group", "/workspace/ipc", "/workspace/extra/docs"]
    assert main_req.mounts.extra[0].readonly is True
    assert [m.container_path for m in family_req.mounts.mounts()] == ["/workspace/group", "/workspace/ipc"]


def test_snapshots_written_before_run(tmp_path: Path):
    invoker = make_invoker(tmp_path, RecordingRunner())

    invoker.invoke("main", "a", use_session=False)
    invoker.invoke("family", "b", use_session=False)

    ipc = tmp_path / "data" / "ipc"
    tenants = json.loads((ipc / "main" / "registered_tenants.json").read_text(encoding="utf-8"))
    assert [t["id"] for t in tenants] == ["family", "main", "work"]
    assert (ipc / "main" / "current_tasks.json").exists()
    assert (ipc / "family" / "current_tasks.json").exists()
    assert not (ipc / "family" / "registered_tenants.json").exists()
    assert (ipc / "family" / "messages").is_dir()


def test_session_tokens(tmp_path: Path):
    runner = RecordingRunner()
    invoker = make_invoker(tmp_path, runner)

    invoker.invoke("family", "first", use_session=True)
    invoker.invoke("family", "second", use_session=True)
    invoker.invoke("family", "third", use_session=False)

    tokens = [r.continuity_token for r in runner.requests]
    assert tokens == [None, "tok-family", None]
    assert invoker.sessions.get("family") == "tok-family"


def test_unknown_tenant(tmp_path: Path):
    invoker = make_invoker(tmp_path, RecordingRunner())
    with pytest.raises(InvokerFailure) as ei:
        invoker.invoke("ghost", "x", use_session=True)
    assert ei.value.code == "TENANT_UNKNOWN"


def test_failures_propagate_and_leave_session_untouched(tmp_path: Path):
    def fail(_req):
        raise RunnerCrashed(code="RUNNER_EXIT_NONZERO", message="exit code 1")

    invoker = make_invoker(tmp_path, RecordingRunner(fail))
    invoker.sessions.set("family", "keep-me")
    with pytest.raises(RunnerCrashed):
        invoker.invoke("family", "x", use_session=True)
    assert invoker.sessions.get("family") == "keep-me"


def test_same_tenant_serialized_different_tenants_overlap(tmp_path: Path):
    barrier = threading.Barrier(2, timeout=5)
    guard = threading.Lock()
    active: dict[str, int] = {}
    peak: dict[str, int] = {}

    def run(req: InvokeRequest) -> InvokeResult:
        with guard:
            active[req.tenant_id] = active.get(req.tenant_id, 0) + 1
            peak[req.tenant_id] = max(peak.get(req.tenant_id, 0), active[req.tenant_id])
        try:
            if req.prompt == "meet":
                # both tenants must be inside the runner at once
                barrier.wait()
            else:
                time.sleep(0.05)
        finally:
            with guard:
                active[req.tenant_id] -= 1
        return InvokeResult(result_text=req.prompt)

    invoker = make_invoker(tmp_path, RecordingRunner(run))
    errors: list[BaseException] = []

    def call(tenant: str, prompt: str) -> None:
        try:
            invoker.invoke(tenant, prompt, use_session=False)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=call, args=("family", "meet")), threading.Thread(target=call, args=("work", "meet"))]
    threads += [threading.Thread(target=call, args=("main", f"serial-{i}")) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert peak["main"] == 1
    assert peak["family"] == 1 and peak["work"] == 1
