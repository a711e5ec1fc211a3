"""
Collection (request-to-pay) service.

A collection prompts the payer to approve a debit on their handset. The
provider only acknowledges the prompt; the outcome arrives by callback or is
picked up by the pending-collection poll. PENDING is the only state with
outgoing edges, and every write is a compare-and-swap on (id, version,
status), so a callback and the poll settling the same collection cannot
both win.

Collections are never resent automatically.
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.disbursements import (
    CENTS,
    MAX_CAS_ATTEMPTS,
    normalize_msisdn,
    validate_amount,
    validate_currency,
)
from momo_gateway.core.errors import (
    ConflictError,
    DuplicateExternalId,
    InvalidTransitionError,
    MomoGatewayError,
    NotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    ValidationError,
    VaultError,
)
from momo_gateway.core.state_machine import (
    CollectionStatus,
    Product,
    Provider,
    map_collection_status,
)
from momo_gateway.core.token_manager import ProviderTokenManager
from momo_gateway.core.vault import CredentialVault
from momo_gateway.database.connection import get_session_factory
from momo_gateway.database.models import Collection, utcnow
from momo_gateway.integrations.airtel import subscriber_msisdn
from momo_gateway.integrations.base import AdapterRegistry, CollectionRequest, ProviderResult
from momo_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

C = CollectionStatus


class CollectionService:
    """Creates request-to-pay prompts and settles them exactly once."""

    def __init__(
        self,
        token_manager: ProviderTokenManager,
        vault: CredentialVault,
        registry: AdapterRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.token_manager = token_manager
        self.vault = vault
        self.registry = registry
        self.session_factory = session_factory or get_session_factory()

    async def _get(self, collection_id: uuid.UUID) -> Collection:
        async with self.session_factory() as session:
            collection = await session.get(Collection, collection_id)
        if collection is None:
            raise NotFoundError(f"Collection {collection_id} not found")
        return collection

    async def _cas(self, c: Collection, values: Dict[str, Any]) -> Optional[Collection]:
        """Conditional write on (id, version, status); None if another writer got there first."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Collection)
                .where(
                    Collection.id == c.id,
                    Collection.version == c.version,
                    Collection.status == c.status,
                )
                .values(version=c.version + 1, updated_at=utcnow(), **values)
            )
            await session.commit()
        if result.rowcount == 0:
            return None
        return await self._get(c.id)

    async def _settle(
        self, c: Collection, target: CollectionStatus, source: str, **values: Any
    ) -> Collection:
        """
        Move a PENDING collection to `target`.

        Settling again with the same outcome returns the record unchanged.

        Raises:
            InvalidTransitionError: Already settled with the other outcome
            ConflictError: Lost the compare-and-swap too many times
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            current = C(c.status)
            if current != C.PENDING:
                if current == target:
                    return c
                raise InvalidTransitionError(
                    f"Cannot move collection {c.external_id} from {current.value} "
                    f"to {target.value}"
                )
            updated = await self._cas(c, {**values, "status": target.value})
            if updated is not None:
                metrics.record_collection_transition(c.provider, target.value, source)
                logger.info(
                    "collection_settled",
                    collection_id=str(c.id),
                    tenant_id=c.tenant_id,
                    external_id=c.external_id,
                    status=target.value,
                    source=source,
                )
                return updated
            logger.info("collection_cas_conflict", collection_id=str(c.id), source=source)
            c = await self._get(c.id)

        raise ConflictError(f"Collection {c.external_id} is being modified concurrently")

    async def _fail(
        self, c: Collection, code: str, message: str, source: str, retryable: bool = False
    ) -> Collection:
        return await self._settle(
            c,
            C.FAILED,
            source,
            completed_at=utcnow(),
            error_details={"code": code, "message": message, "retryable": retryable},
        )

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        external_id: str,
        amount: Any,
        currency: str,
        payer_id: str,
        provider: str,
        payer_type: str = "MSISDN",
        payer_message: Optional[str] = None,
        payee_note: Optional[str] = None,
    ) -> Tuple[Collection, bool]:
        """
        Create a PENDING collection.

        Returns:
            (collection, created). An existing (tenant, externalId) with the
            same parameters is returned unchanged with created=False.

        Raises:
            ValidationError: On malformed input
            DuplicateExternalId: If externalId exists with different parameters
        """
        if not external_id:
            raise ValidationError("externalId is required")
        value = validate_amount(amount)
        currency = validate_currency(currency)
        provider = self.registry.get(provider).provider.value
        payer_type = payer_type.upper()
        if payer_type == "MSISDN":
            payer_id = normalize_msisdn(payer_id, self.settings.msisdn_country_code)
            if provider == Provider.AIRTEL.value:
                subscriber_msisdn(payer_id)
        elif not payer_id:
            raise ValidationError("payer id is required")

        existing = await self._find_by_external_id(tenant_id, external_id)
        if existing is not None:
            return self._check_same_request(existing, value, currency, payer_id, provider), False

        now = utcnow()
        collection = Collection(
            tenant_id=tenant_id,
            external_id=external_id,
            provider=provider,
            amount=value,
            currency=currency,
            payer_type=payer_type,
            payer_id=payer_id,
            payer_message=payer_message,
            payee_note=payee_note,
            status=C.PENDING.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(collection)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await self._find_by_external_id(tenant_id, external_id)
                if winner is None:
                    raise
                return self._check_same_request(winner, value, currency, payer_id, provider), False

        logger.info(
            "collection_created",
            collection_id=str(collection.id),
            tenant_id=tenant_id,
            external_id=external_id,
            provider=provider,
            amount=str(value),
            currency=currency,
        )
        return collection, True

    @staticmethod
    def _check_same_request(
        existing: Collection, amount: Decimal, currency: str, payer_id: str, provider: str
    ) -> Collection:
        if (
            Decimal(existing.amount) != amount
            or existing.currency != currency
            or existing.payer_id != payer_id
            or existing.provider != provider
        ):
            raise DuplicateExternalId(
                f"externalId {existing.external_id} already used for a different collection",
                existing=existing,
            )
        return existing

    async def _find_by_external_id(
        self, tenant_id: str, external_id: str
    ) -> Optional[Collection]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Collection).where(
                    Collection.tenant_id == tenant_id,
                    Collection.external_id == external_id,
                )
            )
            return result.scalar_one_or_none()

    async def get_status(self, tenant_id: str, external_id: str) -> Collection:
        """
        Look up a tenant's collection by externalId.

        Raises:
            NotFoundError: If no record matches
        """
        collection = await self._find_by_external_id(tenant_id, external_id)
        if collection is None:
            raise NotFoundError(f"Collection {external_id} not found")
        return collection

    # ------------------------------------------------------------------
    # Request-to-pay
    # ------------------------------------------------------------------

    async def request_payment(self, collection_id: uuid.UUID) -> Collection:
        """
        Send the payment prompt for a PENDING collection.

        Provider failures are recorded on the record rather than raised. An
        unknown outcome leaves the record PENDING for the poll to resolve.

        Raises:
            InvalidTransitionError: The prompt was already sent
        """
        return await asyncio.shield(self._request_payment(collection_id))

    async def _request_payment(self, collection_id: uuid.UUID) -> Collection:
        c = await self._get(collection_id)
        if C(c.status) != C.PENDING or c.provider_reference is not None:
            raise InvalidTransitionError(
                f"Payment for collection {c.external_id} was already requested"
            )

        # Stored before the call; the poll queries by it
        reference_id = str(uuid.uuid4())
        updated = await self._cas(c, {"provider_reference": reference_id})
        if updated is None:
            raise ConflictError(f"Collection {c.external_id} is being requested concurrently")
        c = updated

        started = time.monotonic()
        try:
            credentials = await self.vault.get_credentials(c.tenant_id, c.provider)
            token = await self.token_manager.get_valid_token(
                c.tenant_id, c.provider, Product.COLLECTION
            )
        except (ProviderAuthError, VaultError) as e:
            code = "PROVIDER_AUTH" if isinstance(e, ProviderAuthError) else "VAULT_ERROR"
            return await self._fail(c, code, e.message, source="request")

        request = CollectionRequest(
            reference_id=reference_id,
            external_id=c.external_id,
            amount=Decimal(c.amount).quantize(CENTS),
            currency=c.currency,
            payer_type=c.payer_type,
            payer_id=c.payer_id,
            payer_message=c.payer_message,
            payee_note=c.payee_note,
        )
        try:
            result = await self.registry.get(c.provider).request_to_pay(
                token.access_token, credentials, request
            )
        except ProviderTimeoutError as e:
            logger.warning(
                "collection_request_outcome_unknown",
                collection_id=str(c.id),
                provider_reference=reference_id,
                error=e.message,
            )
            return c
        except ProviderAuthError as e:
            await self.token_manager.invalidate(c.tenant_id, c.provider, Product.COLLECTION)
            return await self._fail(c, "PROVIDER_AUTH", e.message, source="request")
        except ProviderError as e:
            return await self._fail(
                c, e.provider_code, e.message, source="request", retryable=e.retryable
            )

        logger.info(
            "collection_requested",
            collection_id=str(c.id),
            provider_reference=reference_id,
            provider_status=result.status.value,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return await self._apply_result(c, result, source="request")

    async def _apply_result(self, c: Collection, result: ProviderResult, source: str) -> Collection:
        target = map_collection_status(result.status.value)
        if target == C.PENDING:
            return c
        if target == C.SUCCESSFUL:
            return await self._settle(
                c,
                target,
                source,
                completed_at=utcnow(),
                provider_transaction_id=result.provider_transaction_id,
                error_details=None,
            )
        return await self._fail(
            c,
            result.error_code or result.status.value,
            result.message or f"Provider reported {result.status.value}",
            source=source,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def refresh_status(self, collection_id: uuid.UUID) -> Collection:
        """
        Ask the provider for the outcome of a PENDING collection.

        A provider with no record of the prompt fails the collection. Query
        errors leave it PENDING.
        """
        c = await self._get(collection_id)
        if C(c.status) != C.PENDING or c.provider_reference is None:
            return c

        credentials = await self.vault.get_credentials(c.tenant_id, c.provider)
        token = await self.token_manager.get_valid_token(
            c.tenant_id, c.provider, Product.COLLECTION
        )
        try:
            result = await self.registry.get(c.provider).get_collection_status(
                token.access_token, credentials, c.provider_reference
            )
        except ProviderNotFoundError:
            logger.info(
                "collection_no_provider_record",
                collection_id=str(c.id),
                provider_reference=c.provider_reference,
            )
            return await self._fail(
                c, "NOT_FOUND", "Provider has no record of the payment request", source="poll"
            )
        return await self._apply_result(c, result, source="poll")

    async def poll_pending(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Query the provider for requested collections still PENDING, oldest first.

        Collections still PENDING past collection_expiry_hours fail with
        code EXPIRED.

        Returns:
            Dict[str, int]: Counts per outcome
        """
        now = now or utcnow()
        limit = limit or self.settings.collection_poll_batch_size
        cutoff = now - timedelta(hours=self.settings.collection_expiry_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Collection.id)
                .where(
                    Collection.status == C.PENDING.value,
                    Collection.provider_reference.is_not(None),
                )
                .order_by(Collection.created_at)
                .limit(limit)
            )
            pending_ids = list(result.scalars().all())

        summary = {"successful": 0, "failed": 0, "pending": 0, "errors": 0}
        for collection_id in pending_ids:
            try:
                c = await asyncio.shield(self.refresh_status(collection_id))
                if C(c.status) == C.PENDING and c.created_at <= cutoff:
                    c = await self._fail(
                        c, "EXPIRED", "Payer did not approve in time", source="expiry"
                    )
            except MomoGatewayError as e:
                summary["errors"] += 1
                logger.warning(
                    "collection_poll_item_failed",
                    collection_id=str(collection_id),
                    error_code=e.error_code,
                    error=e.message,
                )
                continue
            summary[C(c.status).value.lower()] += 1

        logger.info("collection_poll_completed", pending=len(pending_ids), **summary)
        return summary

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def apply_webhook(
        self,
        transaction_id: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> Collection:
        """
        Apply a provider callback to the matching collection.

        transaction_id matches the provider reference or (tenant-scoped) the
        externalId.

        Raises:
            ValidationError: Unknown provider status
            NotFoundError: No matching collection
            InvalidTransitionError: Already settled with the other outcome
        """
        try:
            target = map_collection_status(status)
        except ValueError:
            raise ValidationError(f"Unknown provider status: {status}")

        c = await self._find_for_webhook(transaction_id, tenant_id)
        if target == C.PENDING:
            logger.info("webhook_pending_ignored", collection_id=str(c.id))
            return c
        if target == C.SUCCESSFUL:
            return await self._settle(
                c,
                target,
                "webhook",
                completed_at=utcnow(),
                provider_transaction_id=(details or {}).get("financialTransactionId"),
            )

        details = details or {}
        reason = details.get("reason") or {}
        if isinstance(reason, str):
            reason = {"code": reason}
        return await self._fail(
            c,
            reason.get("code") or details.get("code") or status.upper(),
            reason.get("message") or details.get("message") or f"Provider reported {status}",
            source="webhook",
        )

    async def _find_for_webhook(
        self, transaction_id: str, tenant_id: Optional[str]
    ) -> Collection:
        conditions = [Collection.provider_reference == transaction_id]
        if tenant_id is not None:
            conditions.append(Collection.external_id == transaction_id)
        stmt = select(Collection).where(or_(*conditions))
        if tenant_id is not None:
            stmt = stmt.where(Collection.tenant_id == tenant_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(1))
            collection = result.scalar_one_or_none()
        if collection is None:
            raise NotFoundError(f"No collection for transaction {transaction_id}")
        return collection
