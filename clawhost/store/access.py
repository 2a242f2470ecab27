from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from clawhost.core.io import load_json_or, save_state_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingApproval:
    user_id: str
    requested_at: str
    first_message: str
    username: str | None = None
    first_name: str | None = None


@dataclass(frozen=True)
class PairedUser:
    user_id: str
    approved_by: str | None
    paired_at: str
    username: str | None = None
    first_name: str | None = None


class AccessControlStore:
    """Pending and paired end users of one front-end channel.

    A user id is never both pending and paired; both files are rewritten
    under one lock and the cache is reloaded afterwards.
    """

    def __init__(self, base_dir: Path, *, channel: str) -> None:
        self.channel = channel
        self.pending_path = base_dir / f"{channel}_pending_approvals.json"
        self.paired_path = base_dir / f"{channel}_paired_users.json"
        self._lock = threading.Lock()
        self._pending: dict[str, dict] = {}
        self._paired: dict[str, dict] = {}
        self.reload()

    def reload(self) -> None:
        self._paired = load_json_or(self.paired_path, {})
        # approve() writes paired first; a crash before the pending write leaves both
        pending = load_json_or(self.pending_path, {})
        self._pending = {k: v for k, v in pending.items() if k not in self._paired}

    def user_address(self, user_id: str) -> str:
        return f"{self.channel}:{user_id}"

    def is_paired(self, user_id: str) -> bool:
        return str(user_id) in self._paired

    def has_pending(self, user_id: str) -> bool:
        return str(user_id) in self._pending

    def list_pending(self) -> list[PendingApproval]:
        return [PendingApproval(**v) for _, v in sorted(self._pending.items())]

    def list_paired(self) -> list[PairedUser]:
        return [PairedUser(**v) for _, v in sorted(self._paired.items())]

    def request_approval(
        self,
        user_id: str,
        *,
        requested_at: str,
        first_message: str,
        username: str | None = None,
        first_name: str | None = None,
    ) -> bool:
        user_id = str(user_id)
        with self._lock:
            if user_id in self._pending or user_id in self._paired:
                return False
            pending = load_json_or(self.pending_path, {})
            pending[user_id] = PendingApproval(
                user_id=user_id,
                requested_at=requested_at,
                first_message=first_message,
                username=username,
                first_name=first_name,
            ).__dict__
            save_state_json(self.pending_path, pending)
            self.reload()
        logger.info("Access requested: channel=%s user=%s", self.channel, user_id)
        return True

    def approve(self, user_id: str, *, approved_by: str, paired_at: str) -> PairedUser:
        """Pair a user, removing any pending request. Users not pending may be approved directly."""
        user_id = str(user_id)
        with self._lock:
            pending = load_json_or(self.pending_path, {})
            paired = load_json_or(self.paired_path, {})
            req = pending.pop(user_id, None) or {}
            paired[user_id] = PairedUser(
                user_id=user_id,
                approved_by=approved_by,
                paired_at=paired_at,
                username=req.get("username"),
                first_name=req.get("first_name"),
            ).__dict__
            save_state_json(self.paired_path, paired)
            save_state_json(self.pending_path, pending)
            self.reload()
        logger.info("User approved: channel=%s user=%s by=%s", self.channel, user_id, approved_by)
        return PairedUser(**self._paired[user_id])

    def deny(self, user_id: str) -> bool:
        user_id = str(user_id)
        with self._lock:
            pending = load_json_or(self.pending_path, {})
            if user_id not in pending:
                return False
            del pending[user_id]
            save_state_json(self.pending_path, pending)
            self.reload()
        logger.info("User denied: channel=%s user=%s", self.channel, user_id)
        return True

    def unpair(self, user_id: str) -> bool:
        user_id = str(user_id)
        with self._lock:
            paired = load_json_or(self.paired_path, {})
            if user_id not in paired:
                return False
            del paired[user_id]
            save_state_json(self.paired_path, paired)
            self.reload()
        logger.info("User unpaired: channel=%s user=%s", self.channel, user_id)
        return True
