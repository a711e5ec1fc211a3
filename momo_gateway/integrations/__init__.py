"""Mobile-money provider integrations."""
from typing import Optional

import httpx

from momo_gateway.config import Settings
from momo_gateway.core.state_machine import Provider
from momo_gateway.integrations.airtel import AirtelAdapter
from momo_gateway.integrations.base import (
    AdapterRegistry,
    BalanceResult,
    CircuitBreaker,
    CollectionRequest,
    ProviderAdapter,
    ProviderResult,
    TokenGrant,
    TransferRequest,
)
from momo_gateway.integrations.mtn import MTNAdapter


def build_registry(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AdapterRegistry:
    """Registry with one adapter per supported provider."""
    return AdapterRegistry(
        {
            Provider.MTN: MTNAdapter(settings, transport=transport),
            Provider.AIRTEL: AirtelAdapter(settings, transport=transport),
        }
    )


__all__ = [
    "AdapterRegistry",
    "AirtelAdapter",
    "BalanceResult",
    "CircuitBreaker",
    "CollectionRequest",
    "MTNAdapter",
    "ProviderAdapter",
    "ProviderResult",
    "TokenGrant",
    "TransferRequest",
    "build_registry",
]
