"""SQLAlchemy database models for the disbursement core."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC datetime.

    SQLite drops tzinfo on the way back; PostgreSQL keeps it.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class IdempotencyRecord(Base):
    """
    Cached responses keyed by (tenant, Idempotency-Key).

    Written once after the underlying operation completes and read-only
    afterward. Reaped by the maintenance sweep once expires_at passes.
    """

    __tablename__ = "idempotency_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_idempotency_tenant_key"),
    )

    def __repr__(self) -> str:
        """String representation of IdempotencyRecord."""
        return (
            f"<IdempotencyRecord(tenant_id={self.tenant_id}, key={self.idempotency_key}, "
            f"method={self.method}, path={self.path})>"
        )


class ProviderToken(Base):
    """
    Cached provider bearer token per (tenant, provider, product).

    Never authoritative: always revalidated against expires_at before use.
    Writes are conditional on version.
    """

    __tablename__ = "provider_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    product: Mapped[str] = mapped_column(String(20), nullable=False, default="DISBURSEMENT")
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "provider", "product", name="uq_provider_token_tenant_provider_product"
        ),
    )

    def __repr__(self) -> str:
        """String representation without the token material."""
        return (
            f"<ProviderToken(tenant_id={self.tenant_id}, provider={self.provider}, "
            f"product={self.product}, "
            f"expires_at={self.expires_at}, version={self.version})>"
        )


class ProviderCredential(Base):
    """
    Envelope-encrypted provider credentials per (tenant, provider).

    ciphertext is the JSON credential bundle sealed with a per-record data key;
    wrapped_data_key is that data key sealed with master key `key_version`.
    """

    __tablename__ = "provider_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    nonce: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    wrapped_data_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    data_key_nonce: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_credential_tenant_provider"),
        Index("idx_credentials_key_version", "key_version"),
    )

    def __repr__(self) -> str:
        """String representation without ciphertext."""
        return (
            f"<ProviderCredential(tenant_id={self.tenant_id}, provider={self.provider}, "
            f"key_version={self.key_version}, active={self.is_active})>"
        )


class Disbursement(Base):
    """
    Disbursement (money-out) record.

    (tenant_id, external_id) identifies one logical disbursement regardless of
    retries. Status moves only along the state machine graph; every write is a
    compare-and-swap on (status, version).
    """

    __tablename__ = "disbursements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZMW")
    payee_type: Mapped[str] = mapped_column(String(20), nullable=False, default="MSISDN")
    payee_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    refund_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    error_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_disbursement_tenant_external_id"),
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        CheckConstraint("retry_count >= 0", name="non_negative_retry_count"),
        Index("idx_disbursements_tenant_status", "tenant_id", "status"),
        Index("idx_disbursements_status_next_retry", "status", "next_retry_at"),
    )

    def __repr__(self) -> str:
        """String representation of Disbursement."""
        return (
            f"<Disbursement(id={self.id}, tenant_id={self.tenant_id}, "
            f"external_id={self.external_id}, status={self.status})>"
        )


class DisbursementAttempt(Base):
    """
    Append-only log of provider calls made for a disbursement.

    One row per call. Used for reconciliation and debugging, never as the
    source of current state.
    """

    __tablename__ = "disbursement_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    disbursement_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    http_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_attempts_disbursement_created", "disbursement_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of DisbursementAttempt."""
        return (
            f"<DisbursementAttempt(id={self.id}, disbursement_id={self.disbursement_id}, "
            f"operation={self.operation}, status={self.status})>"
        )


class Collection(Base):
    """
    Collection (request-to-pay) record.

    The payer approves the debit on their handset, so the outcome always
    arrives later, by callback or by the pending-collection poll.
    """

    __tablename__ = "collections"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZMW")
    payer_type: Mapped[str] = mapped_column(String(20), nullable=False, default="MSISDN")
    payer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payer_message: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payee_note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_collection_tenant_external_id"),
        CheckConstraint("amount > 0", name="positive_collection_amount"),
        CheckConstraint(
            "status IN ('PENDING', 'SUCCESSFUL', 'FAILED')", name="valid_collection_status"
        ),
        Index("idx_collections_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Collection."""
        return (
            f"<Collection(id={self.id}, tenant_id={self.tenant_id}, "
            f"external_id={self.external_id}, status={self.status})>"
        )


class WebhookRecord(Base):
    """
    Inbound provider callbacks, one row per (tenant, provider, transaction id).

    Used for deduplication (a transaction is applied at most once per
    tenant and provider), audit and debugging of failed processing.
    Callbacks that arrive without a tenant are stored with an empty tenant_id.
    """

    __tablename__ = "webhook_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    signature: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    result: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSED', 'FAILED', 'SKIPPED')",
            name="valid_webhook_status",
        ),
        UniqueConstraint(
            "tenant_id", "provider", "transaction_id", name="uq_webhook_tenant_provider_txn"
        ),
        Index("idx_webhook_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookRecord."""
        return (
            f"<WebhookRecord(transaction_id={self.transaction_id}, "
            f"status={self.status}, deliveries={self.delivery_count})>"
        )
