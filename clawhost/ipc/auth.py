"""Authorization gate for mailbox requests.

Every decision is a pure function of the tenant the request came from (the
mailbox directory, never the file body), the request kind and the tenant the
request acts on.
"""

from __future__ import annotations

from dataclasses import dataclass

from clawhost.core.errors import AuthorizationFailure

ELEVATED_ONLY = frozenset({"message", "register_tenant", "approve_user", "deny_user", "list_pending"})
TENANT_SCOPED = frozenset({"schedule_task", "pause_task", "resume_task", "cancel_task"})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None


def authorize(source_tenant: str, kind: str, target_tenant: str | None, *, elevated_tenant: str) -> Decision:
    is_elevated = source_tenant == elevated_tenant
    if kind in ELEVATED_ONLY:
        if is_elevated:
            return Decision(True)
        return Decision(False, f"{kind} requires the elevated tenant")
    if kind in TENANT_SCOPED:
        if target_tenant is None or target_tenant == source_tenant or is_elevated:
            return Decision(True)
        return Decision(False, f"{kind} on tenant {target_tenant} not permitted from {source_tenant}")
    return Decision(False, f"unknown request kind: {kind}")


def require(source_tenant: str, kind: str, target_tenant: str | None, *, elevated_tenant: str) -> None:
    decision = authorize(source_tenant, kind, target_tenant, elevated_tenant=elevated_tenant)
    if not decision.allowed:
        raise AuthorizationFailure(code="NOT_AUTHORIZED", message=decision.reason or kind)


def require_destination(
    source_tenant: str,
    destination: str,
    *,
    own_address: str | None,
    elevated_tenant: str,
) -> None:
    """Ordinary tenants may only route scheduled output back to their own chat."""
    if source_tenant == elevated_tenant:
        return
    if own_address is None or destination != own_address:
        raise AuthorizationFailure(
            code="DESTINATION_NOT_OWNED",
            message=f"tenant {source_tenant} cannot address {destination}",
        )
