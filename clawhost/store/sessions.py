from __future__ import annotations

import threading
from pathlib import Path

from clawhost.core.io import load_json_or, save_state_json


class SessionStore:
    """tenant id -> continuity token, mirrored to a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}
        self.reload()

    def reload(self) -> None:
        raw = load_json_or(self.path, {})
        self._tokens = {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}

    def get(self, tenant_id: str) -> str | None:
        return self._tokens.get(tenant_id)

    def set(self, tenant_id: str, token: str) -> None:
        with self._lock:
            tokens = dict(self._tokens)
            tokens[tenant_id] = token
            save_state_json(self.path, tokens)
            self._tokens = tokens

    def clear(self, tenant_id: str) -> None:
        with self._lock:
            if tenant_id not in self._tokens:
                return
            tokens = dict(self._tokens)
            del tokens[tenant_id]
            save_state_json(self.path, tokens)
            self._tokens = tokens
