from __future__ import annotations

import re
from typing import Protocol

from clawhost.core.errors import ValidationFailure

MAX_MESSAGE_CHARS = 4000

_DESTINATION = re.compile(r"^(?P<channel>[a-z][a-z0-9]*):(?P<chat>-?[A-Za-z0-9_.@-]+)$")


def parse_destination(destination: str) -> tuple[str, str]:
    """Split ``<channel>:<chat id>``; anything else is rejected."""
    m = _DESTINATION.fullmatch(destination or "")
    if not m:
        raise ValidationFailure(code="INVALID_DESTINATION", message=f"malformed destination: {destination!r}")
    return m.group("channel"), m.group("chat")


def split_text(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> list[str]:
    if len(text) <= max_chars:
        return [text]
    return [text[i : i + max_chars] for i in range(0, len(text), max_chars)]


class Channel(Protocol):
    def send_message(self, destination: str, text: str) -> None: ...


class ChannelRouter:
    """Routes a destination to the channel registered for its prefix."""

    def __init__(self, channels: dict[str, Channel] | None = None, *, default: Channel | None = None) -> None:
        self._channels: dict[str, Channel] = dict(channels or {})
        self._default = default

    def register(self, prefix: str, channel: Channel) -> None:
        self._channels[prefix] = channel

    def send_message(self, destination: str, text: str) -> None:
        prefix, _ = parse_destination(destination)
        channel = self._channels.get(prefix, self._default)
        if channel is None:
            raise ValidationFailure(code="NO_CHANNEL", message=f"no channel for destination prefix: {prefix}")
        for chunk in split_text(text):
            channel.send_message(destination, chunk)
