"""
Disbursement lifecycle graph.

    PENDING -> PROCESSING -> {SUCCESS, FAILED, TIMEOUT}
    FAILED / TIMEOUT -> PROCESSING          (retry, while attempts remain)
    TIMEOUT -> {SUCCESS, FAILED}            (reconciliation or late webhook)
    SUCCESS -> BOUNCED                      (late provider-side reversal)
    SUCCESS -> REFUND_PROCESSING -> {REFUNDED, REFUND_FAILED}

REFUNDED, REFUND_FAILED and BOUNCED have no outgoing edges. FAILED becomes
terminal once retries are exhausted; that is a property of the record, not
of the graph, and is checked by the retry scheduler.

Collections (request-to-pay) have a flat graph:

    PENDING -> {SUCCESSFUL, FAILED}
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional


class DisbursementStatus(str, Enum):
    """Internal disbursement status."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    BOUNCED = "BOUNCED"
    REFUND_PROCESSING = "REFUND_PROCESSING"
    REFUNDED = "REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"


class Provider(str, Enum):
    """Supported mobile-money providers."""

    MTN = "MTN"
    AIRTEL = "AIRTEL"


class Product(str, Enum):
    """Provider API product; each has its own token."""

    DISBURSEMENT = "DISBURSEMENT"
    COLLECTION = "COLLECTION"


class CollectionStatus(str, Enum):
    """Internal collection status."""

    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"


class ProviderStatus(str, Enum):
    """Status vocabulary shared by provider callbacks and status queries."""

    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


S = DisbursementStatus

TRANSITIONS: Dict[DisbursementStatus, FrozenSet[DisbursementStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING: frozenset({S.SUCCESS, S.FAILED, S.TIMEOUT}),
    S.FAILED: frozenset({S.PROCESSING}),
    S.TIMEOUT: frozenset({S.PROCESSING, S.SUCCESS, S.FAILED}),
    S.SUCCESS: frozenset({S.BOUNCED, S.REFUND_PROCESSING}),
    S.REFUND_PROCESSING: frozenset({S.REFUNDED, S.REFUND_FAILED}),
    S.BOUNCED: frozenset(),
    S.REFUNDED: frozenset(),
    S.REFUND_FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
RETRYABLE_STATES = frozenset({S.FAILED, S.TIMEOUT})

_PROVIDER_STATUS_MAP: Dict[ProviderStatus, Optional[DisbursementStatus]] = {
    ProviderStatus.SUCCESSFUL: S.SUCCESS,
    ProviderStatus.FAILED: S.FAILED,
    ProviderStatus.REJECTED: S.FAILED,
    ProviderStatus.EXPIRED: S.FAILED,
    ProviderStatus.PENDING: None,
}

# Provider vocabulary seen on refund callbacks/queries
_REFUND_STATUS_MAP: Dict[ProviderStatus, Optional[DisbursementStatus]] = {
    ProviderStatus.SUCCESSFUL: S.REFUNDED,
    ProviderStatus.FAILED: S.REFUND_FAILED,
    ProviderStatus.REJECTED: S.REFUND_FAILED,
    ProviderStatus.EXPIRED: S.REFUND_FAILED,
    ProviderStatus.PENDING: None,
}


def is_legal_transition(current: DisbursementStatus, target: DisbursementStatus) -> bool:
    """True if `target` is reachable from `current` in one step."""
    return DisbursementStatus(target) in TRANSITIONS[DisbursementStatus(current)]


def map_provider_status(
    status: str, current: Optional[DisbursementStatus] = None
) -> Optional[DisbursementStatus]:
    """
    Map a provider status string to the internal enum.

    While a refund is in flight the same vocabulary describes the refund,
    so SUCCESSFUL means REFUNDED rather than SUCCESS. PENDING maps to None
    (no transition).

    Raises:
        ValueError: If the status is outside the provider vocabulary
    """
    provider_status = ProviderStatus(status.upper())
    if current is not None and DisbursementStatus(current) == S.REFUND_PROCESSING:
        return _REFUND_STATUS_MAP[provider_status]
    return _PROVIDER_STATUS_MAP[provider_status]


def compute_backoff(
    retry_count: int, base_seconds: float, cap_seconds: float
) -> float:
    """
    Exponential backoff for the n-th retry (1-based): base * 2^(n-1), capped.

    >>> compute_backoff(1, 30, 600)
    30.0
    >>> compute_backoff(3, 30, 600)
    120.0
    """
    exponent = max(retry_count - 1, 0)
    return float(min(base_seconds * (2 ** exponent), cap_seconds))


_COLLECTION_STATUS_MAP: Dict[ProviderStatus, CollectionStatus] = {
    ProviderStatus.SUCCESSFUL: CollectionStatus.SUCCESSFUL,
    ProviderStatus.FAILED: CollectionStatus.FAILED,
    ProviderStatus.REJECTED: CollectionStatus.FAILED,
    ProviderStatus.EXPIRED: CollectionStatus.FAILED,
    ProviderStatus.PENDING: CollectionStatus.PENDING,
}


def map_collection_status(status: str) -> CollectionStatus:
    """
    Map a provider status string to the collection enum.

    Raises:
        ValueError: If the status is outside the provider vocabulary
    """
    return _COLLECTION_STATUS_MAP[ProviderStatus(status.upper())]
