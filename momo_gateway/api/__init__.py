"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    BalanceResponse,
    CollectionResponse,
    CreateCollectionRequest,
    CreateDisbursementRequest,
    DisbursementListResponse,
    DisbursementResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "create_app",
    "BalanceResponse",
    "CollectionResponse",
    "CreateCollectionRequest",
    "CreateDisbursementRequest",
    "DisbursementListResponse",
    "DisbursementResponse",
    "WebhookResponse",
]
