"""Tenant context propagation via Python contextvars.

The TenantContext is set by the intake route for the duration of a request
and by each tenant worker for the lifetime of its task. Metrics and LLM
instrumentation read it through get_current_tenant() so they can
label output with the owning tenant without threading the id through
every call. Request log lines read the tenant from request.state.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import structlog

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request or worker task."""

    tenant_id: str


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request or task.

    Raises RuntimeError if no tenant context has been set.
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- call is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context. Returns a token for reset."""
    return _tenant_context.set(ctx)


@contextmanager
def tenant_scope(tenant_id: str) -> Iterator[TenantContext]:
    """Bind a tenant to the current context and to structlog contextvars."""
    ctx = TenantContext(tenant_id=tenant_id)
    token = set_tenant_context(ctx)
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    try:
        yield ctx
    finally:
        structlog.contextvars.unbind_contextvars("tenant_id")
        _tenant_context.reset(token)
