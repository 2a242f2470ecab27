from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from clawhost.channels.base import Channel
from clawhost.core.errors import HostError
from clawhost.core.io import MAX_NAME_CHARS
from clawhost.core.timeutil import Clock, iso_z
from clawhost.invoker.errors import InvokerFailure
from clawhost.invoker.invoker import WorkerInvoker
from clawhost.store.access import AccessControlStore
from clawhost.store.registry import Tenant, TenantRegistry

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 100
GROUP_FOLDER_CHARS = 50

PENDING_REPLY = "Your access request is pending approval. Please wait."
WELCOME_REPLY = (
    "Welcome! I've sent an access request to the administrator.\n\n"
    "You'll be notified when your request is approved."
)


@dataclass(frozen=True)
class InboundMessage:
    channel: str
    chat_id: str
    chat_type: str
    text: str
    user_id: str | None = None
    username: str | None = None
    first_name: str | None = None
    chat_title: str | None = None

    @property
    def address(self) -> str:
        return f"{self.channel}:{self.chat_id}"

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"


@dataclass(frozen=True)
class RouterConfig:
    assistant_name: str = "Andy"
    main_tenant: str = "main"
    admin_destination: str | None = None
    private_chats_enabled: bool = True
    groups_enabled: bool = True
    unified_main_channel: bool = False

    @property
    def trigger(self) -> str:
        return f"@{self.assistant_name}"

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        return re.compile(rf"^@{re.escape(self.assistant_name)}\b", re.IGNORECASE)


@dataclass(frozen=True)
class RouterContext:
    registry: TenantRegistry
    access: AccessControlStore
    invoker: WorkerInvoker
    channel: Channel
    clock: Clock
    config: RouterConfig


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def _reply(ctx: RouterContext, msg: InboundMessage, text: str) -> str:
    try:
        ctx.channel.send_message(msg.address, text)
    except HostError as e:
        logger.error("Reply to %s failed: %s", msg.address, e)
    return text


def _notify_admin(ctx: RouterContext, msg: InboundMessage) -> None:
    dest = ctx.config.admin_destination
    if not dest:
        logger.warning("Cannot notify admin of access request: no admin destination configured")
        return
    who = f"@{msg.username}" if msg.username else msg.first_name or f"User {msg.user_id}"
    preview = ""
    if msg.text:
        more = "..." if len(msg.text) > PREVIEW_CHARS else ""
        preview = f'\n\nFirst message: "{msg.text[:PREVIEW_CHARS]}{more}"'
    text = (
        f"Access request ({msg.channel})\n\n"
        f"{who} (ID: {msg.user_id}) wants to access the assistant.{preview}\n\n"
        "Reply:\n"
        f'- "approve {msg.channel} {msg.user_id}" to grant access\n'
        f'- "deny {msg.channel} {msg.user_id}" to reject'
    )
    try:
        ctx.channel.send_message(dest, text)
        logger.info("Admin notified of access request from %s", msg.user_id)
    except HostError as e:
        logger.error("Failed to notify admin of access request from %s: %s", msg.user_id, e)


def _gate(ctx: RouterContext, msg: InboundMessage) -> str | None:
    """Reply text when the sender is not paired yet, None when they may proceed."""
    if msg.user_id is None or ctx.access.is_paired(msg.user_id):
        return None
    if ctx.access.has_pending(msg.user_id):
        return _reply(ctx, msg, PENDING_REPLY)
    ctx.access.request_approval(
        msg.user_id,
        requested_at=iso_z(ctx.clock.now()),
        first_message=msg.text[:PREVIEW_CHARS],
        username=msg.username,
        first_name=msg.first_name,
    )
    _notify_admin(ctx, msg)
    return _reply(ctx, msg, WELCOME_REPLY)


def resolve_tenant(ctx: RouterContext, msg: InboundMessage) -> str | None:
    """Tenant bound to the chat, registering private chats and groups on first contact."""
    known = ctx.registry.find_by_address(msg.address)
    if known is not None:
        return known.id

    if msg.is_private:
        if ctx.config.unified_main_channel:
            return ctx.config.main_tenant
        folder = f"{msg.channel}-private-{_slug(msg.chat_id) or 'chat'}"
        name = msg.username or msg.chat_title or f"{msg.channel} {msg.chat_id}"
    elif msg.chat_type in ("group", "supergroup"):
        slug = _slug(msg.chat_title or f"group-{msg.chat_id}")
        title = slug[:GROUP_FOLDER_CHARS].strip("-")
        folder = f"{msg.channel}-{title or 'group'}"
        taken = ctx.registry.get(folder)
        if taken is not None and taken.address != msg.address:
            suffix = _slug(msg.chat_id) or "chat"
            # channel, two dashes and the suffix must fit in one folder name
            budget = MAX_NAME_CHARS - len(msg.channel) - 2 - len(suffix)
            title = slug[: max(budget, 0)].strip("-")
            folder = f"{msg.channel}-{title}-{suffix}" if title else f"{msg.channel}-{suffix}"
        name = msg.chat_title or f"{msg.channel} group {msg.chat_id}"
    else:
        return None

    ctx.registry.register(
        Tenant(
            id=folder,
            name=name,
            trigger=ctx.config.trigger,
            created_at=iso_z(ctx.clock.now()),
            address=msg.address,
        )
    )
    logger.info("Auto-registered %s chat %s as %s", msg.chat_type, msg.address, folder)
    return folder


def handle_inbound(ctx: RouterContext, msg: InboundMessage) -> str | None:
    """Route one chat message to its tenant's worker; returns the reply sent, if any."""
    logger.info("Inbound message: address=%s type=%s user=%s", msg.address, msg.chat_type, msg.user_id)

    gated = _gate(ctx, msg)
    if gated is not None:
        return gated

    if msg.is_private and not ctx.config.private_chats_enabled:
        logger.debug("Private chats disabled, ignoring %s", msg.address)
        return None
    if not msg.is_private and not ctx.config.groups_enabled:
        logger.debug("Groups disabled, ignoring %s", msg.address)
        return None

    pattern = ctx.config.trigger_pattern
    if not msg.is_private and not pattern.search(msg.text):
        logger.debug("Message from %s does not match trigger", msg.address)
        return None

    tenant_id = resolve_tenant(ctx, msg)
    if tenant_id is None:
        logger.warning("No tenant for chat %s, ignoring", msg.address)
        return None

    prompt = msg.text if msg.is_private else pattern.sub("", msg.text, count=1).strip()
    if not prompt:
        return None

    try:
        result = ctx.invoker.invoke(tenant_id, prompt, use_session=True, destination=msg.address)
    except InvokerFailure as e:
        logger.error("Agent run for %s failed: %s", tenant_id, e)
        return _reply(ctx, msg, f"Error: {e.message}")
    if not result.result_text:
        return None
    return _reply(ctx, msg, result.result_text)
