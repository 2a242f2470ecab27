from __future__ import annotations

import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from clawhost.channels.base import Channel, ChannelRouter
from clawhost.channels.spool import SpoolChannel
from clawhost.core.ids import IdGenerator
from clawhost.core.schema import SchemaRegistry
from clawhost.core.timeutil import Clock, iso_z
from clawhost.invoker.invoker import WorkerInvoker
from clawhost.invoker.subprocess_runner import SubprocessRunner
from clawhost.invoker.types import AgentRunner
from clawhost.ipc import drainer
from clawhost.ipc.drainer import DrainerConfig, DrainerContext
from clawhost.ipc.mailbox import FileMailbox, MailboxPaths
from clawhost.router.app import RouterConfig, RouterContext
from clawhost.scheduler import app as scheduler
from clawhost.scheduler.app import Executor, SchedulerConfig, SchedulerContext
from clawhost.store.access import AccessControlStore
from clawhost.store.registry import Tenant, TenantRegistry
from clawhost.store.sessions import SessionStore
from clawhost.store.tasks import TaskStore

from .config import HostConfig, load_config
from .logging_setup import setup_logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostContext:
    config: HostConfig
    clock: Clock
    tasks: TaskStore
    registry: TenantRegistry
    access: AccessControlStore
    sessions: SessionStore
    mailbox_paths: MailboxPaths
    channel: Channel
    invoker: WorkerInvoker
    drainer: DrainerContext
    router: RouterContext

    def scheduler_context(self, executor: Executor) -> SchedulerContext:
        return SchedulerContext(
            tasks=self.tasks,
            invoker=self.invoker,
            channel=self.channel,
            clock=self.clock,
            config=SchedulerConfig(
                poll_interval_seconds=self.config.scheduler_poll_interval_seconds,
                timezone=self.config.timezone,
            ),
            executor=executor,
        )

    def close(self) -> None:
        self.tasks.close()


def ensure_main_tenant(cfg: HostConfig, registry: TenantRegistry, clock: Clock) -> Tenant:
    main = registry.get(cfg.main_tenant)
    if main is not None:
        return main
    logger.info("Bootstrapping main tenant %s", cfg.main_tenant)
    return registry.register(
        Tenant(
            id=cfg.main_tenant,
            name="Main",
            trigger=f"@{cfg.assistant_name}",
            created_at=iso_z(clock.now()),
            address=cfg.channels.admin_destination,
        )
    )


def build_host(
    cfg: HostConfig,
    *,
    runner: AgentRunner | None = None,
    channel: Channel | None = None,
    clock: Clock | None = None,
) -> HostContext:
    """Open every store and wire the loops. Storage errors here are fatal."""
    clock = clock or Clock()
    ids = IdGenerator()
    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    cfg.groups_dir.mkdir(parents=True, exist_ok=True)

    tasks = TaskStore(cfg.db_path)
    registry = TenantRegistry(cfg.registry_path, groups_dir=cfg.groups_dir, main_tenant=cfg.main_tenant)
    access = AccessControlStore(cfg.data_dir, channel=cfg.channels.pairing_channel)
    sessions = SessionStore(cfg.sessions_path)
    paths = MailboxPaths(ipc_root=cfg.ipc_dir, quarantine_root=cfg.quarantine_dir)
    if channel is None:
        channel = ChannelRouter(default=SpoolChannel(cfg.spool_path, clock=clock))

    ensure_main_tenant(cfg, registry, clock)
    for t in registry.all():
        paths.ensure_tenant(t.id)

    invoker = WorkerInvoker(
        registry=registry,
        sessions=sessions,
        mailbox_paths=paths,
        runner=runner or SubprocessRunner(command=list(cfg.runner.command)),
        timeout_seconds=cfg.runner.timeout_seconds,
        tasks=tasks,
    )
    drainer_ctx = DrainerContext(
        mailbox=FileMailbox(paths, ids=ids),
        mailbox_paths=paths,
        schemas=SchemaRegistry(),
        tasks=tasks,
        registry=registry,
        access=access,
        channel=channel,
        clock=clock,
        ids=ids,
        config=DrainerConfig(
            elevated_tenant=cfg.main_tenant,
            poll_interval_seconds=cfg.ipc_poll_interval_seconds,
            timezone=cfg.timezone,
            assistant_name=cfg.assistant_name,
        ),
    )
    router_ctx = RouterContext(
        registry=registry,
        access=access,
        invoker=invoker,
        channel=channel,
        clock=clock,
        config=RouterConfig(
            assistant_name=cfg.assistant_name,
            main_tenant=cfg.main_tenant,
            admin_destination=cfg.channels.admin_destination,
            private_chats_enabled=cfg.channels.private_chats_enabled,
            groups_enabled=cfg.channels.groups_enabled,
            unified_main_channel=cfg.channels.unified_main_channel,
        ),
    )
    return HostContext(
        config=cfg,
        clock=clock,
        tasks=tasks,
        registry=registry,
        access=access,
        sessions=sessions,
        mailbox_paths=paths,
        channel=channel,
        invoker=invoker,
        drainer=drainer_ctx,
        router=router_ctx,
    )


def serve(host: HostContext, *, stop: threading.Event) -> None:
    """Run the drainer and scheduler threads until ``stop`` is set."""
    cfg = host.config
    with ThreadPoolExecutor(max_workers=cfg.max_concurrent_runs, thread_name_prefix="clawhost-run") as pool:
        threads = [
            threading.Thread(
                target=drainer.run_forever,
                args=(host.drainer,),
                kwargs={"stop": stop},
                name="clawhost-drainer",
                daemon=True,
            ),
            threading.Thread(
                target=scheduler.run_forever,
                args=(host.scheduler_context(pool),),
                kwargs={"stop": stop},
                name="clawhost-scheduler",
                daemon=True,
            ),
        ]
        for t in threads:
            t.start()
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            stop.set()
            for t in threads:
                t.join()
    logger.info("Host stopped")


def run_forever(*, config_path: Path | None) -> None:
    cfg = load_config(config_path)
    setup_logging(cfg.logging.level, cfg.logging.file)
    host = build_host(cfg)
    logger.info(
        "Host started: data_dir=%s main=%s tenants=%d",
        cfg.data_dir,
        cfg.main_tenant,
        len(host.registry.all()),
    )
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        serve(host, stop=stop)
    finally:
        host.close()
