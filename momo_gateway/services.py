"""Wiring of the core components shared by the API and the background worker."""
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.collections import CollectionService
from momo_gateway.core.disbursements import DisbursementService
from momo_gateway.core.idempotency import IdempotencyStore
from momo_gateway.core.token_manager import ProviderTokenManager
from momo_gateway.core.vault import CredentialVault
from momo_gateway.core.webhooks import WebhookValidator
from momo_gateway.database.connection import get_session_factory
from momo_gateway.integrations import AdapterRegistry, build_registry


@dataclass
class Services:
    """One instance of each core component, built against one session factory."""

    settings: Settings
    vault: CredentialVault
    registry: AdapterRegistry
    tokens: ProviderTokenManager
    disbursements: DisbursementService
    collections: CollectionService
    idempotency: IdempotencyStore
    webhooks: WebhookValidator

    async def close(self) -> None:
        await self.registry.close()
        await self.idempotency.close()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis_client: Optional[aioredis.Redis] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    registry: Optional[AdapterRegistry] = None,
) -> Services:
    """
    Build the component graph.

    Args:
        settings: Application settings
        session_factory: Session factory (defaults to the global one)
        redis_client: Optional Redis client for the idempotency fast tier
        transport: Optional httpx transport for provider calls (tests)
        registry: Prebuilt adapter registry, overrides `transport`
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    registry = registry or build_registry(settings, transport=transport)
    vault = CredentialVault(session_factory, settings)
    tokens = ProviderTokenManager(vault, registry, session_factory, settings)
    disbursements = DisbursementService(tokens, vault, registry, session_factory, settings)
    collections = CollectionService(tokens, vault, registry, session_factory, settings)
    return Services(
        settings=settings,
        vault=vault,
        registry=registry,
        tokens=tokens,
        disbursements=disbursements,
        collections=collections,
        idempotency=IdempotencyStore(session_factory, redis_client, settings),
        webhooks=WebhookValidator(
            disbursements, vault, session_factory, settings, collections=collections
        ),
    )
