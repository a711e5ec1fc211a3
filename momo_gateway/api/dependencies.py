"""
Request guards, composed as a FastAPI dependency chain:

    authenticate -> resolve_tenant -> authorize

Each step only sees what the previous one established.
"""
import hmac
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header, Request

from momo_gateway.core.errors import AuthError
from momo_gateway.core.idempotency import IdempotencyStore
from momo_gateway.services import Services

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TenantContext:
    """Authenticated caller."""

    tenant_id: str


def get_services(request: Request) -> Services:
    return request.app.state.services


async def authenticate(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    services: Services = Depends(get_services),
) -> str:
    """
    Resolve the tenant bound to the API key.

    Raises:
        AuthError: Missing or unknown API key
    """
    if not x_api_key:
        raise AuthError("X-API-Key header is required")
    for key, tenant_id in services.settings.get_api_keys().items():
        if hmac.compare_digest(key.encode(), x_api_key.encode()):
            return tenant_id
    logger.warning("api_key_rejected")
    raise AuthError("Invalid API key")


async def resolve_tenant(
    key_tenant_id: str = Depends(authenticate),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID"),
) -> str:
    """
    Pick the tenant for this request.

    An explicit X-Tenant-ID must match the key's tenant.
    """
    if x_tenant_id is not None and x_tenant_id != key_tenant_id:
        logger.warning("tenant_mismatch", key_tenant_id=key_tenant_id, tenant_id=x_tenant_id)
        raise AuthError(
            "X-Tenant-ID does not match the API key", error_code="tenant_mismatch", http_status=403
        )
    return key_tenant_id


async def authorize(tenant_id: str = Depends(resolve_tenant)) -> TenantContext:
    """Final guard; binds the tenant to the logging context."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    return TenantContext(tenant_id=tenant_id)


async def idempotency_key(
    key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Optional[str]:
    """
    Validated Idempotency-Key header, or None when the client sent none.

    A present but malformed key is still rejected.
    """
    if key is None:
        logger.warning("idempotency_key_missing")
        return None
    return IdempotencyStore.validate_key(key)
