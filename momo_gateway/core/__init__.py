"""Core disbursement processing logic."""
from .errors import MomoGatewayError
from .state_machine import CollectionStatus, DisbursementStatus, Product, Provider, ProviderStatus
from .vault import CredentialVault, DecryptedCredentials
from .idempotency import CachedResult, IdempotencyStore
from .token_manager import ProviderTokenManager
from .disbursements import DisbursementService
from .collections import CollectionService
from .webhooks import WebhookOutcome, WebhookValidator

__all__ = [
    "CachedResult",
    "CollectionService",
    "CollectionStatus",
    "CredentialVault",
    "DecryptedCredentials",
    "DisbursementService",
    "DisbursementStatus",
    "IdempotencyStore",
    "MomoGatewayError",
    "Product",
    "Provider",
    "ProviderStatus",
    "ProviderTokenManager",
    "WebhookOutcome",
    "WebhookValidator",
]
