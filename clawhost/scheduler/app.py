from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol
from zoneinfo import ZoneInfo

from clawhost.channels.base import Channel
from clawhost.core.errors import HostError, ValidationFailure
from clawhost.core.timeutil import Clock, iso_z
from clawhost.invoker.errors import InvokerFailure
from clawhost.invoker.invoker import WorkerInvoker
from clawhost.store.tasks import Task, TaskRun, TaskStore

from .schedule import following_fire

logger = logging.getLogger(__name__)

RESULT_SUMMARY_CHARS = 200


class Executor(Protocol):
    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any: ...


@dataclass(frozen=True)
class SchedulerConfig:
    poll_interval_seconds: float = 60.0
    timezone: str = "UTC"


class RunningTenants:
    """Tenants that currently hold a scheduled run on the executor."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tenants: set[str] = set()

    def claim(self, tenant_id: str) -> bool:
        with self._lock:
            if tenant_id in self._tenants:
                return False
            self._tenants.add(tenant_id)
            return True

    def release(self, tenant_id: str) -> None:
        with self._lock:
            self._tenants.discard(tenant_id)

    def __contains__(self, tenant_id: object) -> bool:
        with self._lock:
            return tenant_id in self._tenants


@dataclass(frozen=True)
class SchedulerContext:
    tasks: TaskStore
    invoker: WorkerInvoker
    channel: Channel
    clock: Clock
    config: SchedulerConfig
    executor: Executor
    running: RunningTenants = field(default_factory=RunningTenants)


def _summarize(result_text: str | None, error: str | None) -> str:
    if error:
        return f"Error: {error}"
    if result_text:
        return result_text[:RESULT_SUMMARY_CHARS]
    return "Completed"


def run_task(ctx: SchedulerContext, task: Task) -> TaskRun:
    """Invoke the worker for one firing and deliver its output.

    Failures end up in the run log; they never propagate to the loop.
    Releases the tenant claimed by :func:`tick` when done.
    """
    try:
        return _run(ctx, task)
    finally:
        ctx.running.release(task.tenant_id)


def _run(ctx: SchedulerContext, task: Task) -> TaskRun:
    run_at = ctx.clock.now()
    started = time.monotonic()
    result_text: str | None = None
    error: str | None = None
    logger.info("Running scheduled task %s for %s (%s)", task.id, task.tenant_id, task.context_mode)
    try:
        result = ctx.invoker.invoke(
            task.tenant_id,
            task.prompt,
            use_session=task.context_mode == "group",
            destination=task.destination,
        )
        result_text = result.result_text
        if result_text:
            ctx.channel.send_message(task.destination, result_text)
    except InvokerFailure as e:
        error = str(e)
        logger.error("Scheduled task %s failed: %s", task.id, e)
    except HostError as e:
        error = str(e)
        logger.error("Scheduled task %s output not delivered to %s: %s", task.id, task.destination, e)

    run = TaskRun(
        task_id=task.id,
        run_at=iso_z(run_at),
        duration_ms=int((time.monotonic() - started) * 1000),
        status="error" if error else "success",
        result=result_text,
        error=error,
    )
    try:
        ctx.tasks.log_run(run)
        ctx.tasks.record_result(task.id, _summarize(result_text, error))
    except HostError as e:
        logger.error("Could not record run of task %s: %s", task.id, e)
    logger.info("Task %s completed in %dms (%s)", task.id, run.duration_ms, run.status)
    return run


def _advance(ctx: SchedulerContext, task: Task) -> bool:
    """Persist the post-fire schedule. Returns False when the task must not run."""
    now = ctx.clock.now()
    try:
        nxt = following_fire(task.schedule_type, task.schedule_value, now=now, tz=ZoneInfo(ctx.config.timezone))
    except ValidationFailure as e:
        logger.error("Pausing task %s with unusable schedule: %s", task.id, e)
        ctx.tasks.set_status(task.id, "paused")
        return False
    if nxt is None:
        return ctx.tasks.delete(task.id)
    return ctx.tasks.advance(task.id, next_fire=iso_z(nxt), last_run=iso_z(now))


def tick(ctx: SchedulerContext) -> list[str]:
    """Dispatch every due task once; returns the dispatched task ids in order.

    A task whose tenant still has a scheduled run in flight is left due,
    untouched, and picked up by a later tick.
    """
    dispatched: list[str] = []
    due = ctx.tasks.due(iso_z(ctx.clock.now()))
    if due:
        logger.info("Found %d due tasks", len(due))
    for candidate in due:
        # Paused or cancelled since the due query.
        task = ctx.tasks.get(candidate.id)
        if task is None or task.status != "active":
            continue
        if not ctx.running.claim(task.tenant_id):
            logger.debug("Deferring task %s: %s is busy", task.id, task.tenant_id)
            continue
        try:
            if not _advance(ctx, task):
                ctx.running.release(task.tenant_id)
                continue
            ctx.executor.submit(run_task, ctx, task)
        except HostError as e:
            ctx.running.release(task.tenant_id)
            logger.error("Could not reschedule task %s: %s", task.id, e)
            continue
        except RuntimeError:
            # executor shut down
            ctx.running.release(task.tenant_id)
            raise
        dispatched.append(task.id)
    return dispatched


def run_forever(ctx: SchedulerContext, *, stop: threading.Event) -> None:
    logger.info("Scheduler loop started (poll every %ss)", ctx.config.poll_interval_seconds)
    while not stop.is_set():
        try:
            tick(ctx)
        except Exception:
            logger.exception("Scheduler tick failed")
        stop.wait(ctx.config.poll_interval_seconds)
