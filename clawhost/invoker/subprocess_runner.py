"""Agent runner that executes an external command per invocation.

The request is written to the child's stdin as one JSON object. The child
prints its answer as a JSON object on the last non-empty line of stdout::

    {"status": "success", "result": "...", "newSessionId": "..."}
    {"status": "error", "error": "..."}
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field

from .errors import InvokerTimeout, RunnerCrashed, RunnerReportedError
from .types import InvokeRequest, InvokeResult

logger = logging.getLogger(__name__)


def _last_json_line(stdout: str) -> dict:
    lines = [line for line in stdout.splitlines() if line.strip()]
    if not lines:
        raise RunnerCrashed(code="RUNNER_NO_OUTPUT", message="runner produced no output")
    try:
        obj = json.loads(lines[-1])
    except ValueError as e:
        raise RunnerCrashed(code="RUNNER_BAD_OUTPUT", message=f"runner output is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise RunnerCrashed(code="RUNNER_BAD_OUTPUT", message="runner output is not a JSON object")
    return obj


@dataclass(frozen=True)
class SubprocessRunner:
    command: list[str]
    env: dict[str, str] | None = field(default=None)

    def run(self, request: InvokeRequest, *, timeout_seconds: float) -> InvokeResult:
        if not self.command:
            raise RunnerCrashed(code="RUNNER_NOT_CONFIGURED", message="runner command is empty")
        try:
            # subprocess.run kills the child when the timeout expires.
            proc = subprocess.run(
                self.command,
                input=json.dumps(request.as_payload(), ensure_ascii=False),
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                env=self.env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise InvokerTimeout(
                code="RUNNER_TIMEOUT",
                message=f"runner for {request.tenant_id} exceeded {timeout_seconds}s",
            ) from e
        except FileNotFoundError as e:
            raise RunnerCrashed(code="RUNNER_NOT_FOUND", message=f"runner command not found: {self.command[0]}") from e
        except OSError as e:
            raise RunnerCrashed(code="RUNNER_START_FAILED", message=str(e)) from e

        if proc.stderr:
            logger.debug("runner stderr (%s): %s", request.tenant_id, proc.stderr[-2000:])
        if proc.returncode != 0:
            tail = (proc.stderr or "").strip()[-500:]
            raise RunnerCrashed(code="RUNNER_EXIT_NONZERO", message=f"exit code {proc.returncode}: {tail}")

        out = _last_json_line(proc.stdout)
        status = out.get("status")
        if status == "error":
            raise RunnerReportedError(code="RUNNER_ERROR", message=str(out.get("error") or "unknown runner error"))
        if status != "success":
            raise RunnerCrashed(code="RUNNER_BAD_OUTPUT", message=f"unknown runner status: {status!r}")
        result = out.get("result")
        token = out.get("newSessionId")
        return InvokeResult(
            result_text=result if isinstance(result, str) else None,
            new_continuity_token=token if isinstance(token, str) and token else None,
        )
