"""
Provider webhook validation and processing.

Implements:
- HMAC-SHA256 signature verification (base64, constant-time compare)
- Payload structure validation
- Deduplication per (tenant, provider, transaction id)
- Application of the callback to the matching disbursement, else collection
"""
import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.collections import CollectionService
from momo_gateway.core.disbursements import DisbursementService
from momo_gateway.core.errors import (
    AuthError,
    DuplicateEventError,
    MomoGatewayError,
    NotFoundError,
    ProviderAuthError,
    ValidationError,
)
from momo_gateway.core.state_machine import Provider, ProviderStatus
from momo_gateway.core.vault import CredentialVault
from momo_gateway.database.connection import get_session_factory
from momo_gateway.database.models import WebhookRecord, utcnow
from momo_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSACTION_ID_FIELDS = ("referenceId", "transactionId", "externalId")
VALID_STATUSES = frozenset(s.value for s in ProviderStatus)


@dataclass
class WebhookOutcome:
    """Result of handling one webhook delivery."""

    transaction_id: str
    status: str  # PROCESSED, SKIPPED or FAILED
    disbursement_status: Optional[str] = None
    error: Optional[str] = None
    collection_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "status": self.status,
            "disbursementStatus": self.disbursement_status,
            "error": self.error,
            "collectionStatus": self.collection_status,
        }


@dataclass(frozen=True)
class WebhookKey:
    """Deduplication scope of a delivery. externalId is only unique per tenant."""

    tenant_id: str
    provider: str
    transaction_id: str

    def clauses(self) -> Tuple[Any, ...]:
        return (
            WebhookRecord.tenant_id == self.tenant_id,
            WebhookRecord.provider == self.provider,
            WebhookRecord.transaction_id == self.transaction_id,
        )


def extract_transaction_id(payload: Dict[str, Any]) -> Optional[str]:
    """First non-empty transaction identifier in the payload."""
    for name in TRANSACTION_ID_FIELDS:
        value = payload.get(name)
        if value:
            return str(value)
    return None


class WebhookValidator:
    """
    Validates provider callbacks and applies them at most once.

    Signature failures are rejected before anything is written.
    """

    def __init__(
        self,
        disbursements: DisbursementService,
        vault: CredentialVault,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        collections: Optional[CollectionService] = None,
    ):
        self.settings = settings or get_settings()
        self.disbursements = disbursements
        self.collections = collections
        self.vault = vault
        self.session_factory = session_factory or get_session_factory()

    @staticmethod
    def compute_signature(raw_body: bytes, secret: str) -> str:
        """Base64 HMAC-SHA256 of the raw body."""
        digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    @classmethod
    def verify_signature(
        cls, signature: Optional[str], raw_body: bytes, secret: Optional[str]
    ) -> bool:
        """
        Verify a webhook signature.

        Fails closed: a missing signature or secret is a mismatch.
        """
        if not signature or not secret:
            return False
        expected = cls.compute_signature(raw_body, secret)
        return hmac.compare_digest(expected.encode(), signature.strip().encode())

    @staticmethod
    def validate_structure(payload: Any) -> bool:
        """Require a transaction identifier and a known status."""
        if not isinstance(payload, dict):
            return False
        if extract_transaction_id(payload) is None:
            return False
        status = payload.get("status")
        return isinstance(status, str) and status.upper() in VALID_STATUSES

    async def dedupe(
        self, transaction_id: str, provider: str, tenant_id: Optional[str] = None
    ) -> bool:
        """True if this tenant has already received the transaction from this provider."""
        key = WebhookKey(tenant_id or "", provider.upper(), transaction_id)
        async with self.session_factory() as session:
            result = await session.execute(select(WebhookRecord.id).where(*key.clauses()))
            return result.scalar_one_or_none() is not None

    async def resolve_secret(self, tenant_id: str, provider: str) -> Optional[str]:
        """Webhook secret from the tenant's vault credentials, else the configured fallback."""
        try:
            credentials = await self.vault.get_credentials(tenant_id, provider)
            if credentials.webhook_secret:
                return credentials.webhook_secret
        except ProviderAuthError:
            pass
        return self.settings.get_webhook_secrets().get(provider.upper())

    async def handle(
        self,
        provider: str,
        raw_body: bytes,
        signature: Optional[str],
        secret: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Verify, dedupe and apply one webhook delivery.

        Args:
            provider: Provider the callback claims to come from
            raw_body: Request body exactly as received
            signature: X-Signature-256 header value
            secret: Signing secret; resolved from the vault when omitted
            tenant_id: Tenant from the callback URL

        Raises:
            AuthError: Signature missing or invalid
            ValidationError: Unknown provider or malformed payload
        """
        start = time.monotonic()
        try:
            provider = Provider(provider.upper()).value
        except ValueError:
            raise ValidationError(f"Unsupported provider: {provider}")

        if secret is None and tenant_id is not None:
            secret = await self.resolve_secret(tenant_id, provider)

        if not self.verify_signature(signature, raw_body, secret):
            metrics.record_webhook_event(provider, "rejected", time.monotonic() - start)
            logger.warning(
                "webhook_signature_rejected",
                provider=provider,
                tenant_id=tenant_id,
                has_signature=bool(signature),
                has_secret=bool(secret),
            )
            raise AuthError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not self.validate_structure(payload):
            raise ValidationError("Webhook payload missing transaction id or valid status")

        transaction_id = extract_transaction_id(payload)
        key = WebhookKey(tenant_id or "", provider, transaction_id)
        try:
            await self._claim(key, payload, signature)
        except DuplicateEventError:
            await self._mark_skipped(key)
            metrics.record_webhook_event(provider, "skipped", time.monotonic() - start)
            logger.info("webhook_duplicate_skipped", transaction_id=transaction_id)
            return WebhookOutcome(transaction_id, "SKIPPED")

        try:
            kind, record = await self._apply(transaction_id, payload, tenant_id)
        except MomoGatewayError as e:
            await self._finish(key, "FAILED", error=e.message)
            metrics.record_webhook_event(provider, "failed", time.monotonic() - start)
            logger.warning(
                "webhook_processing_failed",
                transaction_id=transaction_id,
                error_code=e.error_code,
                error=e.message,
            )
            return WebhookOutcome(transaction_id, "FAILED", error=e.message)
        except Exception as e:
            await self._finish(key, "FAILED", error=str(e))
            metrics.record_webhook_event(provider, "failed", time.monotonic() - start)
            logger.error("webhook_processing_error", transaction_id=transaction_id, error=str(e))
            raise

        await self._finish(
            key, "PROCESSED", result={f"{kind}_id": str(record.id), "status": record.status}
        )
        metrics.record_webhook_event(provider, "processed", time.monotonic() - start)
        logger.info(
            "webhook_processed",
            transaction_id=transaction_id,
            applied_to=kind,
            record_id=str(record.id),
            record_status=record.status,
        )
        if kind == "collection":
            return WebhookOutcome(transaction_id, "PROCESSED", collection_status=record.status)
        return WebhookOutcome(transaction_id, "PROCESSED", disbursement_status=record.status)

    async def _apply(
        self, transaction_id: str, payload: Dict[str, Any], tenant_id: Optional[str]
    ) -> Tuple[str, Any]:
        """Apply to the matching disbursement, falling back to collections."""
        try:
            disbursement = await self.disbursements.apply_webhook(
                transaction_id, payload["status"], details=payload, tenant_id=tenant_id
            )
        except NotFoundError:
            if self.collections is None:
                raise
        else:
            return "disbursement", disbursement
        try:
            collection = await self.collections.apply_webhook(
                transaction_id, payload["status"], details=payload, tenant_id=tenant_id
            )
        except NotFoundError:
            raise NotFoundError(
                f"No disbursement or collection for transaction {transaction_id}"
            )
        return "collection", collection

    async def _claim(
        self,
        key: WebhookKey,
        payload: Dict[str, Any],
        signature: Optional[str],
    ) -> None:
        """
        Insert the PENDING record for a first delivery.

        Raises:
            DuplicateEventError: The key already has a record
        """
        if await self.dedupe(key.transaction_id, key.provider, key.tenant_id):
            raise DuplicateEventError(f"Webhook {key.transaction_id} already received")
        async with self.session_factory() as session:
            session.add(
                WebhookRecord(
                    tenant_id=key.tenant_id,
                    transaction_id=key.transaction_id,
                    provider=key.provider,
                    payload=payload,
                    signature=signature or "",
                    status="PENDING",
                    delivery_count=1,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateEventError(f"Webhook {key.transaction_id} already received")

    async def _mark_skipped(self, key: WebhookKey) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookRecord)
                .where(*key.clauses())
                .values(status="SKIPPED", delivery_count=WebhookRecord.delivery_count + 1)
            )
            await session.commit()

    async def _finish(
        self,
        key: WebhookKey,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookRecord)
                .where(*key.clauses())
                .values(status=status, result=result, error=error, processed_at=utcnow())
            )
            await session.commit()

    async def get_record(
        self,
        transaction_id: str,
        provider: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[WebhookRecord]:
        """Stored delivery for a transaction id, optionally narrowed to provider and tenant."""
        stmt = select(WebhookRecord).where(WebhookRecord.transaction_id == transaction_id)
        if provider is not None:
            stmt = stmt.where(WebhookRecord.provider == provider.upper())
        if tenant_id is not None:
            stmt = stmt.where(WebhookRecord.tenant_id == tenant_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(WebhookRecord.created_at).limit(1))
            return result.scalar_one_or_none()

    async def cleanup_old(self, retention_days: Optional[int] = None) -> int:
        """
        Delete webhook records older than the retention window.

        Returns:
            int: Number of records deleted
        """
        days = retention_days if retention_days is not None else self.settings.webhook_retention_days
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(WebhookRecord).where(WebhookRecord.created_at < cutoff)
            )
            await session.commit()
        removed = result.rowcount or 0
        logger.info("webhook_records_cleaned", removed=removed, retention_days=days)
        return removed
