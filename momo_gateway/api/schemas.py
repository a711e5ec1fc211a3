"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from momo_gateway.database.models import Collection, Disbursement


class Payee(BaseModel):
    """Disbursement recipient."""

    model_config = ConfigDict(populate_by_name=True)

    party_id_type: str = Field(default="MSISDN", alias="partyIdType")
    party_id: str = Field(..., alias="partyId", min_length=1, description="Payee identifier")


class CreateDisbursementRequest(BaseModel):
    """Request schema for creating a disbursement."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "externalId": "INV-1",
                    "amount": "100.00",
                    "currency": "ZMW",
                    "provider": "MTN",
                    "payee": {"partyIdType": "MSISDN", "partyId": "260971234567"},
                    "reference": "Invoice 1 payout",
                }
            ]
        },
    )

    external_id: str = Field(..., alias="externalId", min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, description="Amount in major units, max 2 decimals")
    currency: str = Field(default="ZMW", min_length=3, max_length=3)
    provider: str = Field(..., description="MTN or AIRTEL")
    payee: Payee
    reference: Optional[str] = Field(default=None, max_length=255)

    @field_validator("currency", "provider")
    @classmethod
    def upper(cls, v: str) -> str:
        """Normalize codes to upper case."""
        return v.upper()


class DisbursementResponse(BaseModel):
    """Response schema for a disbursement."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    tenant_id: str = Field(..., alias="tenantId")
    external_id: str = Field(..., alias="externalId")
    provider: str
    amount: str
    currency: str
    payee: Payee
    reference: Optional[str] = None
    status: str
    provider_reference: Optional[str] = Field(default=None, alias="providerReference")
    refund_reference: Optional[str] = Field(default=None, alias="refundReference")
    error_details: Optional[Dict[str, Any]] = Field(default=None, alias="errorDetails")
    retry_count: int = Field(..., alias="retryCount")
    next_retry_at: Optional[str] = Field(default=None, alias="nextRetryAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    @classmethod
    def from_model(cls, d: Disbursement) -> "DisbursementResponse":
        return cls(
            id=str(d.id),
            tenant_id=d.tenant_id,
            external_id=d.external_id,
            provider=d.provider,
            amount=f"{Decimal(d.amount):.2f}",
            currency=d.currency,
            payee=Payee(party_id_type=d.payee_type, party_id=d.payee_id),
            reference=d.reference,
            status=d.status,
            provider_reference=d.provider_reference,
            refund_reference=d.refund_reference,
            error_details=d.error_details,
            retry_count=d.retry_count,
            next_retry_at=d.next_retry_at.isoformat() if d.next_retry_at else None,
            completed_at=d.completed_at.isoformat() if d.completed_at else None,
            created_at=d.created_at.isoformat(),
            updated_at=d.updated_at.isoformat(),
        )

    def to_json(self) -> str:
        """Serialized once for both the response and the idempotency cache."""
        return self.model_dump_json(by_alias=True)


class DisbursementListResponse(BaseModel):
    """Page of disbursements."""

    items: List[DisbursementResponse]
    limit: int
    offset: int


class Payer(BaseModel):
    """Collection payer."""

    model_config = ConfigDict(populate_by_name=True)

    party_id_type: str = Field(default="MSISDN", alias="partyIdType")
    party_id: str = Field(..., alias="partyId", min_length=1, description="Payer identifier")


class CreateCollectionRequest(BaseModel):
    """Request schema for a request-to-pay."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "externalId": "ORDER-1",
                    "amount": "25.00",
                    "currency": "ZMW",
                    "provider": "AIRTEL",
                    "payer": {"partyIdType": "MSISDN", "partyId": "260971234567"},
                    "payerMessage": "Order 1",
                }
            ]
        },
    )

    external_id: str = Field(..., alias="externalId", min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, description="Amount in major units, max 2 decimals")
    currency: str = Field(default="ZMW", min_length=3, max_length=3)
    provider: str = Field(..., description="MTN or AIRTEL")
    payer: Payer
    payer_message: Optional[str] = Field(default=None, alias="payerMessage", max_length=160)
    payee_note: Optional[str] = Field(default=None, alias="payeeNote", max_length=160)

    @field_validator("currency", "provider")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.upper()


class CollectionResponse(BaseModel):
    """Response schema for a collection."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    tenant_id: str = Field(..., alias="tenantId")
    external_id: str = Field(..., alias="externalId")
    provider: str
    amount: str
    currency: str
    payer: Payer
    status: str
    provider_reference: Optional[str] = Field(default=None, alias="providerReference")
    provider_transaction_id: Optional[str] = Field(default=None, alias="providerTransactionId")
    error_details: Optional[Dict[str, Any]] = Field(default=None, alias="errorDetails")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    @classmethod
    def from_model(cls, c: Collection) -> "CollectionResponse":
        return cls(
            id=str(c.id),
            tenant_id=c.tenant_id,
            external_id=c.external_id,
            provider=c.provider,
            amount=f"{Decimal(c.amount):.2f}",
            currency=c.currency,
            payer=Payer(party_id_type=c.payer_type, party_id=c.payer_id),
            status=c.status,
            provider_reference=c.provider_reference,
            provider_transaction_id=c.provider_transaction_id,
            error_details=c.error_details,
            completed_at=c.completed_at.isoformat() if c.completed_at else None,
            created_at=c.created_at.isoformat(),
            updated_at=c.updated_at.isoformat(),
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class BalanceResponse(BaseModel):
    """Provider account balance."""

    provider: str
    available: str
    currency: str


class WebhookResponse(BaseModel):
    """Response schema for webhook deliveries."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(..., alias="transactionId")
    status: str
    disbursement_status: Optional[str] = Field(default=None, alias="disbursementStatus")
    error: Optional[str] = None
    collection_status: Optional[str] = Field(default=None, alias="collectionStatus")
