"""Tenant context for log enrichment and tenant scoping.

Request handlers set the tenant once per request. Webhook batches carry
events for many tenants, so each event runs inside ``tenant_scope`` and the
previous tenant is restored afterwards.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

tenant_id_var: ContextVar[Optional[int]] = ContextVar("tenant_id", default=None)


def set_tenant_context(tenant_id: int | None) -> None:
    tenant_id_var.set(tenant_id)


def get_tenant_context() -> int | None:
    return tenant_id_var.get()


def clear_tenant_context() -> None:
    tenant_id_var.set(None)


@contextmanager
def tenant_scope(tenant_id: int | None = None) -> Iterator[None]:
    """Bind a tenant for the duration of the block.

    Calls to ``set_tenant_context`` inside the block are undone on exit.
    """
    token = tenant_id_var.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_var.reset(token)
