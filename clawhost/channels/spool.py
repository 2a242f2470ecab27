from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from clawhost.core.errors import StorageFailure
from clawhost.core.io import atomic_write_bytes, read_jsonl
from clawhost.core.timeutil import Clock, iso_z

logger = logging.getLogger(__name__)


@dataclass
class SpoolChannel:
    """Appends outbound messages to a JSONL spool that a transport adapter forwards."""

    path: Path
    clock: Clock = field(default_factory=Clock)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def send_message(self, destination: str, text: str) -> None:
        now = self.clock.now()
        entry = {
            "schema_version": "1.0",
            "delivery_id": f"del_{now.strftime('%Y%m%dT%H%M%SZ')}_{uuid4().hex[:8]}",
            "destination": destination,
            "text": text,
            "queued_at": iso_z(now),
        }
        line = (json.dumps(entry, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            with self._lock:
                if not self.path.exists():
                    atomic_write_bytes(self.path, line)
                else:
                    with self.path.open("ab") as f:
                        f.write(line)
        except OSError as e:
            raise StorageFailure(code="SPOOL_WRITE_FAILED", message=str(e)) from e
        logger.info("Outbound message spooled: destination=%s length=%d", destination, len(text))

    def read_entries(self) -> list[dict]:
        return read_jsonl(self.path)
