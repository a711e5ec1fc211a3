"""Database package for the disbursement core."""
from .connection import close_db, create_session_factory, get_session_factory, init_db
from .models import (
    Base,
    Collection,
    Disbursement,
    DisbursementAttempt,
    IdempotencyRecord,
    ProviderCredential,
    ProviderToken,
    WebhookRecord,
)

__all__ = [
    "Base",
    "Collection",
    "Disbursement",
    "DisbursementAttempt",
    "IdempotencyRecord",
    "ProviderCredential",
    "ProviderToken",
    "WebhookRecord",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
