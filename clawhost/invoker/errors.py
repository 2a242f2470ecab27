from __future__ import annotations

from clawhost.core.errors import HostError


class InvokerFailure(HostError):
    pass


class InvokerTimeout(InvokerFailure):
    pass


class RunnerCrashed(InvokerFailure):
    pass


class RunnerReportedError(InvokerFailure):
    pass
