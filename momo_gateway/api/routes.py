"""
API routes for the disbursement and collection gateway.
"""
from typing import Optional, Union

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from momo_gateway.services import Services

from .dependencies import TenantContext, authorize, get_services, idempotency_key
from .schemas import (
    BalanceResponse,
    CollectionResponse,
    CreateCollectionRequest,
    CreateDisbursementRequest,
    DisbursementListResponse,
    DisbursementResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

disbursement_router = APIRouter(prefix="/v1/disbursements", tags=["disbursements"])
collection_router = APIRouter(prefix="/v1/collections", tags=["collections"])
balance_router = APIRouter(prefix="/v1/balance", tags=["balance"])
webhook_router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

JSON = "application/json"


def _json_response(body: str, status_code: int, replayed: bool = False) -> Response:
    headers = {"Idempotent-Replayed": "true"} if replayed else None
    return Response(content=body, status_code=status_code, media_type=JSON, headers=headers)


async def _replay(
    services: Services, tenant_id: str, key: Optional[str], path: str
) -> Optional[Response]:
    if key is None:
        return None
    cached = await services.idempotency.lookup(tenant_id, key, "POST", path)
    if cached is None:
        return None
    return _json_response(cached.body, cached.status_code, replayed=True)


@disbursement_router.post("", status_code=status.HTTP_201_CREATED)
async def create_disbursement(
    payload: CreateDisbursementRequest,
    request: Request,
    ctx: TenantContext = Depends(authorize),
    key: Optional[str] = Depends(idempotency_key),
    services: Services = Depends(get_services),
) -> Response:
    """
    Create a disbursement and submit it to its provider.

    Retries with the same Idempotency-Key return the first response byte
    for byte. Without a key nothing is cached, but a repeated externalId
    with the same parameters still returns the existing record with 200.
    """
    path = request.url.path
    cached = await _replay(services, ctx.tenant_id, key, path)
    if cached is not None:
        logger.info("api_disbursement_replayed", idempotency_key=key)
        return cached

    logger.info(
        "api_create_disbursement",
        external_id=payload.external_id,
        provider=payload.provider,
        amount=str(payload.amount),
        currency=payload.currency,
    )
    disbursement, created = await services.disbursements.create(
        tenant_id=ctx.tenant_id,
        external_id=payload.external_id,
        amount=payload.amount,
        currency=payload.currency,
        payee_id=payload.payee.party_id,
        provider=payload.provider,
        payee_type=payload.payee.party_id_type,
        reference=payload.reference,
    )
    if created:
        disbursement = await services.disbursements.submit(disbursement.id)

    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    body = DisbursementResponse.from_model(disbursement).to_json()
    if key is not None:
        await services.idempotency.store(ctx.tenant_id, key, "POST", path, status_code, body)
    return _json_response(body, status_code)


@disbursement_router.get("", response_model=Union[DisbursementResponse, DisbursementListResponse])
async def find_disbursements(
    reference: Optional[str] = Query(default=None, description="Provider reference"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ctx: TenantContext = Depends(authorize),
    services: Services = Depends(get_services),
) -> Union[DisbursementResponse, DisbursementListResponse]:
    """Look up by provider reference, or list the tenant's disbursements."""
    if reference is not None:
        disbursement = await services.disbursements.get_status(
            ctx.tenant_id, reference=reference
        )
        return DisbursementResponse.from_model(disbursement)

    items = await services.disbursements.list(
        ctx.tenant_id, status=status_filter, limit=limit, offset=offset
    )
    return DisbursementListResponse(
        items=[DisbursementResponse.from_model(d) for d in items], limit=limit, offset=offset
    )


@disbursement_router.get("/{external_id}", response_model=DisbursementResponse)
async def get_disbursement(
    external_id: str,
    ctx: TenantContext = Depends(authorize),
    services: Services = Depends(get_services),
) -> DisbursementResponse:
    """Get a disbursement by the tenant's externalId."""
    disbursement = await services.disbursements.get_status(ctx.tenant_id, external_id=external_id)
    return DisbursementResponse.from_model(disbursement)


@disbursement_router.post("/{external_id}/refund")
async def refund_disbursement(
    external_id: str,
    request: Request,
    ctx: TenantContext = Depends(authorize),
    key: Optional[str] = Depends(idempotency_key),
    services: Services = Depends(get_services),
) -> Response:
    """Refund a successful disbursement."""
    path = request.url.path
    cached = await _replay(services, ctx.tenant_id, key, path)
    if cached is not None:
        return cached

    logger.info("api_refund_disbursement", external_id=external_id)
    disbursement = await services.disbursements.refund(ctx.tenant_id, external_id)
    body = DisbursementResponse.from_model(disbursement).to_json()
    if key is not None:
        await services.idempotency.store(
            ctx.tenant_id, key, "POST", path, status.HTTP_202_ACCEPTED, body
        )
    return _json_response(body, status.HTTP_202_ACCEPTED)


@collection_router.post("", status_code=status.HTTP_201_CREATED)
async def create_collection(
    payload: CreateCollectionRequest,
    request: Request,
    ctx: TenantContext = Depends(authorize),
    key: Optional[str] = Depends(idempotency_key),
    services: Services = Depends(get_services),
) -> Response:
    """
    Prompt the payer to approve a debit.

    The response reports PENDING until the payer answers; poll
    GET /v1/collections/{externalId} or wait for the callback.
    """
    path = request.url.path
    cached = await _replay(services, ctx.tenant_id, key, path)
    if cached is not None:
        logger.info("api_collection_replayed", idempotency_key=key)
        return cached

    logger.info(
        "api_create_collection",
        external_id=payload.external_id,
        provider=payload.provider,
        amount=str(payload.amount),
        currency=payload.currency,
    )
    collection, created = await services.collections.create(
        tenant_id=ctx.tenant_id,
        external_id=payload.external_id,
        amount=payload.amount,
        currency=payload.currency,
        payer_id=payload.payer.party_id,
        provider=payload.provider,
        payer_type=payload.payer.party_id_type,
        payer_message=payload.payer_message,
        payee_note=payload.payee_note,
    )
    if created:
        collection = await services.collections.request_payment(collection.id)

    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    body = CollectionResponse.from_model(collection).to_json()
    if key is not None:
        await services.idempotency.store(ctx.tenant_id, key, "POST", path, status_code, body)
    return _json_response(body, status_code)


@collection_router.get("/{external_id}", response_model=CollectionResponse)
async def get_collection(
    external_id: str,
    ctx: TenantContext = Depends(authorize),
    services: Services = Depends(get_services),
) -> CollectionResponse:
    """Get a collection by the tenant's externalId."""
    collection = await services.collections.get_status(ctx.tenant_id, external_id)
    return CollectionResponse.from_model(collection)


@balance_router.get("/{provider}", response_model=BalanceResponse)
async def get_balance(
    provider: str,
    ctx: TenantContext = Depends(authorize),
    services: Services = Depends(get_services),
) -> BalanceResponse:
    """Available balance of the tenant's provider account."""
    balance = await services.disbursements.get_balance(ctx.tenant_id, provider)
    return BalanceResponse(
        provider=provider.upper(), available=str(balance.available), currency=balance.currency
    )


@webhook_router.post("/{provider}/{tenant_id}", response_model=WebhookResponse)
async def receive_webhook(
    provider: str,
    tenant_id: str,
    request: Request,
    x_signature_256: Optional[str] = Header(default=None, alias="X-Signature-256"),
    services: Services = Depends(get_services),
) -> WebhookResponse:
    """
    Provider status callback.

    Authenticated by HMAC signature over the raw body, not by API key.
    Duplicates are acknowledged with 200 so the provider stops retrying.
    """
    raw_body = await request.body()
    outcome = await services.webhooks.handle(
        provider, raw_body, x_signature_256, tenant_id=tenant_id
    )
    return WebhookResponse.model_validate(outcome.to_dict())


@monitoring_router.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
