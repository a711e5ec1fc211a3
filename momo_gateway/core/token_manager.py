"""
Provider token manager.

Hands out a bearer token per (tenant, provider, product) that stays valid for
at least `token_refresh_margin_seconds`. Concurrent callers for the same key
share one in-flight refresh. Persisted rows are written with a version check so a
second process refreshing at the same time cannot clobber a newer token.
"""
import asyncio
from datetime import timedelta
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.errors import ProviderAuthError
from momo_gateway.core.state_machine import Product, Provider
from momo_gateway.core.vault import CredentialVault
from momo_gateway.database.connection import get_session_factory
from momo_gateway.database.models import ProviderToken, utcnow
from momo_gateway.integrations.base import AdapterRegistry, TokenGrant
from momo_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TokenKey = Tuple[str, str, str]


class ProviderTokenManager:
    """Caches provider tokens and refreshes them on demand."""

    def __init__(
        self,
        vault: CredentialVault,
        registry: AdapterRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.vault = vault
        self.registry = registry
        self.session_factory = session_factory or get_session_factory()
        self.refresh_margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        self._inflight: Dict[TokenKey, asyncio.Task] = {}

    def _is_usable(self, token: Optional[ProviderToken]) -> bool:
        return token is not None and token.expires_at - utcnow() > self.refresh_margin

    async def _load(
        self, tenant_id: str, provider: str, product: str
    ) -> Optional[ProviderToken]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderToken).where(
                    ProviderToken.tenant_id == tenant_id,
                    ProviderToken.provider == provider,
                    ProviderToken.product == product,
                )
            )
            return result.scalar_one_or_none()

    async def get_valid_token(
        self, tenant_id: str, provider: str, product: str = Product.DISBURSEMENT
    ) -> ProviderToken:
        """
        Return a token valid beyond the refresh margin, refreshing if needed.

        Raises:
            ProviderAuthError: Missing credentials or provider rejected them
        """
        provider = Provider(provider.upper()).value
        product = Product(product).value
        token = await self._load(tenant_id, provider, product)
        if self._is_usable(token):
            return token

        key = (tenant_id, provider, product)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(tenant_id, provider, product))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.debug(
                "token_refresh_joined", tenant_id=tenant_id, provider=provider, product=product
            )
        return await asyncio.shield(task)

    def _forget(self, key: TokenKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _refresh(self, tenant_id: str, provider: str, product: str) -> ProviderToken:
        # Another refresh may have landed since the caller looked
        current = await self._load(tenant_id, provider, product)
        if self._is_usable(current):
            return current

        credentials = await self.vault.get_credentials(tenant_id, provider)
        adapter = self.registry.get(provider)

        grant: Optional[TokenGrant] = None
        if current is not None and current.refresh_token:
            try:
                grant = await adapter.request_token(
                    credentials, refresh_token=current.refresh_token, product=product
                )
                metrics.record_token_refresh(provider, "refresh_token", "success")
            except ProviderAuthError:
                metrics.record_token_refresh(provider, "refresh_token", "rejected")
                logger.warning(
                    "token_refresh_grant_rejected",
                    tenant_id=tenant_id,
                    provider=provider,
                    product=product,
                )

        if grant is None:
            try:
                grant = await adapter.request_token(credentials, product=product)
            except ProviderAuthError:
                metrics.record_token_refresh(provider, "client_credentials", "rejected")
                logger.error(
                    "token_request_rejected",
                    tenant_id=tenant_id,
                    provider=provider,
                    product=product,
                )
                raise
            except Exception:
                metrics.record_token_refresh(provider, "client_credentials", "error")
                raise
            metrics.record_token_refresh(provider, "client_credentials", "success")

        token = await self._persist(
            tenant_id, provider, product, grant, current.version if current else None
        )
        logger.info(
            "provider_token_refreshed",
            tenant_id=tenant_id,
            provider=provider,
            product=product,
            expires_at=token.expires_at.isoformat(),
            version=token.version,
        )
        return token

    async def _persist(
        self,
        tenant_id: str,
        provider: str,
        product: str,
        grant: TokenGrant,
        expected_version: Optional[int],
    ) -> ProviderToken:
        """Conditional upsert keyed by (tenant, provider, product, expected version)."""
        expires_at = utcnow() + timedelta(seconds=grant.expires_in)
        async with self.session_factory() as session:
            if expected_version is None:
                session.add(
                    ProviderToken(
                        tenant_id=tenant_id,
                        provider=provider,
                        product=product,
                        access_token=grant.access_token,
                        refresh_token=grant.refresh_token,
                        expires_at=expires_at,
                        version=1,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info("token_write_conflict", tenant_id=tenant_id, provider=provider)
            else:
                result = await session.execute(
                    update(ProviderToken)
                    .where(
                        ProviderToken.tenant_id == tenant_id,
                        ProviderToken.provider == provider,
                        ProviderToken.product == product,
                        ProviderToken.version == expected_version,
                    )
                    .values(
                        access_token=grant.access_token,
                        refresh_token=grant.refresh_token,
                        expires_at=expires_at,
                        version=expected_version + 1,
                    )
                )
                await session.commit()
                if result.rowcount == 0:
                    logger.info("token_write_conflict", tenant_id=tenant_id, provider=provider)

        # On a lost race the winner's row is at least as fresh as ours
        token = await self._load(tenant_id, provider, product)
        if token is None:
            raise ProviderAuthError(
                f"Token for {tenant_id}/{provider}/{product} vanished after refresh"
            )
        return token

    async def invalidate(
        self, tenant_id: str, provider: str, product: str = Product.DISBURSEMENT
    ) -> None:
        """Force the next get_valid_token to refresh; the refresh token is kept."""
        provider = Provider(provider.upper()).value
        product = Product(product).value
        async with self.session_factory() as session:
            await session.execute(
                update(ProviderToken)
                .where(
                    ProviderToken.tenant_id == tenant_id,
                    ProviderToken.provider == provider,
                    ProviderToken.product == product,
                )
                .values(expires_at=utcnow(), version=ProviderToken.version + 1)
            )
            await session.commit()
        logger.info(
            "provider_token_invalidated", tenant_id=tenant_id, provider=provider, product=product
        )
