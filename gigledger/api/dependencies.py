"""
FastAPI dependencies.

The tenant comes from the X-Tenant-ID header; there is no authentication.
Publisher and object store are replaceable through dependency overrides.
"""
import uuid
from functools import lru_cache
from typing import Optional

from fastapi import Header

from gigledger.context import TenantContext
from gigledger.exceptions import ValidationError
from gigledger.messaging.publisher import CeleryMessagePublisher, MessagePublisher
from gigledger.middleware.logging import get_correlation_id
from gigledger.storage import LocalObjectStore, ObjectStore


def get_tenant_context(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
) -> TenantContext:
    """
    Resolve the tenant for the request.

    Raises:
        ValidationError: header missing or not a UUID.
    """
    if not x_tenant_id:
        raise ValidationError("X-Tenant-ID header is required")
    try:
        tenant_id = uuid.UUID(x_tenant_id.strip())
    except ValueError:
        raise ValidationError("X-Tenant-ID must be a UUID", details={"tenant_id": x_tenant_id})
    return TenantContext.create(tenant_id, correlation_id=get_correlation_id() or None, actor="api")


@lru_cache
def get_publisher() -> MessagePublisher:
    return CeleryMessagePublisher()


@lru_cache
def get_object_store() -> ObjectStore:
    return LocalObjectStore()
