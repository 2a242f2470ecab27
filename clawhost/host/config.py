from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from clawhost.core.errors import ParseFailure, ValidationFailure
from clawhost.core.io import read_json
from clawhost.core.schema import SchemaRegistry

CONFIG_SCHEMA = "host_config.schema.json"


@dataclass(frozen=True)
class RunnerConfig:
    command: list[str] = field(default_factory=list)
    timeout_seconds: float = 1800.0


@dataclass(frozen=True)
class ChannelsConfig:
    pairing_channel: str = "tg"
    admin_destination: str | None = None
    private_chats_enabled: bool = True
    groups_enabled: bool = True
    unified_main_channel: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Path | None = None


@dataclass(frozen=True)
class HostConfig:
    data_dir: Path
    groups_dir: Path
    main_tenant: str = "main"
    assistant_name: str = "Andy"
    timezone: str = "UTC"
    ipc_poll_interval_seconds: float = 1.0
    scheduler_poll_interval_seconds: float = 60.0
    max_concurrent_runs: int = 4
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @property
    def quarantine_dir(self) -> Path:
        return self.data_dir / "quarantine"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "clawhost.db"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "registered_tenants.json"

    @property
    def sessions_path(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def spool_path(self) -> Path:
        return self.data_dir / "outbound.jsonl"


def _resolve(base: Path, value: str | None, default: str) -> Path:
    p = Path(value or default).expanduser()
    return p if p.is_absolute() else (base / p).resolve()


def load_config(config_path: Path | None, *, schemas: SchemaRegistry | None = None) -> HostConfig:
    """Read ``host_config.json``; without a file every default applies, relative to the cwd."""
    if config_path is None:
        raw: dict = {}
        base = Path.cwd()
    else:
        try:
            raw = read_json(config_path)
        except (OSError, ValueError) as e:
            raise ParseFailure(code="CONFIG_UNREADABLE", message=f"{config_path}: {e}") from e
        base = config_path.parent.resolve()
    (schemas or SchemaRegistry()).validate(raw, CONFIG_SCHEMA)

    tz = str(raw.get("timezone") or "UTC")
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailure(code="INVALID_TIMEZONE", message=f"unknown timezone: {tz}") from None

    runner = raw.get("runner") or {}
    channels = raw.get("channels") or {}
    log = raw.get("logging") or {}
    log_file = log.get("file")

    return HostConfig(
        data_dir=_resolve(base, raw.get("data_dir"), "data"),
        groups_dir=_resolve(base, raw.get("groups_dir"), "groups"),
        main_tenant=str(raw.get("main_tenant") or "main"),
        assistant_name=str(raw.get("assistant_name") or "Andy"),
        timezone=tz,
        ipc_poll_interval_seconds=float(raw.get("ipc_poll_interval_seconds", 1)),
        scheduler_poll_interval_seconds=float(raw.get("scheduler_poll_interval_seconds", 60)),
        max_concurrent_runs=int(raw.get("max_concurrent_runs", 4)),
        runner=RunnerConfig(
            command=[str(c) for c in runner.get("command") or []],
            timeout_seconds=float(runner.get("timeout_seconds", 1800)),
        ),
        channels=ChannelsConfig(
            pairing_channel=str(channels.get("pairing_channel") or "tg"),
            admin_destination=channels.get("admin_destination"),
            private_chats_enabled=bool(channels.get("private_chats_enabled", True)),
            groups_enabled=bool(channels.get("groups_enabled", True)),
            unified_main_channel=bool(channels.get("unified_main_channel", False)),
        ),
        logging=LoggingConfig(
            level=str(log.get("level") or "INFO"),
            file=_resolve(base, log_file, log_file) if log_file else None,
        ),
    )
