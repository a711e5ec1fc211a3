"""
Airtel Money disbursement and collection API adapter.

- Token: POST /auth/oauth2/token (client credentials or refresh grant)
- Transfer: POST /standard/v3/disbursements
- Status: GET /standard/v3/disbursements/{id}
- Refund: POST /standard/v3/disbursements/refund
- Balance: GET /standard/v1/users/balance
- Request-to-pay: POST /merchant/v2/payments/
- Request-to-pay status: GET /standard/v1/payments/{id}

Transfers, refunds and payment requests are signed (x-signature, x-key); see
airtel_signing. One OAuth client serves both products.

Airtel answers most calls with HTTP 200 and reports the outcome in a
`status` block plus a transaction status code (TS, TF, TIP, TA).
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from momo_gateway.core.errors import ValidationError
from momo_gateway.core.state_machine import Product, Provider, ProviderStatus
from momo_gateway.core.vault import DecryptedCredentials
from momo_gateway.integrations.airtel_signing import AirtelSigner, canonical_body
from momo_gateway.integrations.base import (
    BalanceResult,
    CollectionRequest,
    ProviderAdapter,
    ProviderResult,
    TokenGrant,
    TransferRequest,
    retry_transient,
)

logger = structlog.get_logger(__name__)

TRANSACTION_STATUS_MAP: Dict[str, ProviderStatus] = {
    "TS": ProviderStatus.SUCCESSFUL,
    "TF": ProviderStatus.FAILED,
    "TIP": ProviderStatus.PENDING,
    "TA": ProviderStatus.PENDING,  # ambiguous, settle via callback or status query
    "SUCCESS": ProviderStatus.SUCCESSFUL,
    "FAILED": ProviderStatus.FAILED,
}

# Platform-side faults; business rejections are terminal
RETRYABLE_RESPONSE_CODES = frozenset({"ESB000001", "ESB000004", "ESB000039"})
MAX_MSISDN_DIGITS = 10


def subscriber_msisdn(party_id: str) -> str:
    """
    Airtel subscriber number: national, without the leading trunk zero.

    >>> subscriber_msisdn("0971234567")
    '971234567'

    Raises:
        ValidationError: If the number still carries a country code
    """
    msisdn = party_id[1:] if party_id.startswith("0") else party_id
    if msisdn.startswith("+") or len(msisdn) > MAX_MSISDN_DIGITS:
        raise ValidationError("Airtel MSISDN must not include the country code")
    return msisdn


class AirtelAdapter(ProviderAdapter):
    """Adapter for the Airtel Money disbursement and collection products."""

    provider = Provider.AIRTEL

    @property
    def base_url(self) -> str:
        return self.settings.airtel_base_url

    def _headers(self, token: str, currency: Optional[str] = None) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "X-Country": self.settings.airtel_country,
            "X-Currency": currency or self.settings.default_currency,
        }

    @retry_transient
    async def request_token(
        self,
        credentials: DecryptedCredentials,
        refresh_token: Optional[str] = None,
        product: str = Product.DISBURSEMENT,
    ) -> TokenGrant:
        """OAuth2 token exchange; uses the refresh grant when a refresh token is given."""
        body: Dict[str, Any] = {
            "client_id": credentials.require("client_id"),
            "client_secret": credentials.require("client_secret"),
        }
        if refresh_token:
            body.update(grant_type="refresh_token", refresh_token=refresh_token)
        else:
            body["grant_type"] = "client_credentials"

        response = await self._request("token", "POST", "/auth/oauth2/token", json=body)
        data = self._safe_json(response)
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
        )

    async def transfer(
        self, token: str, credentials: DecryptedCredentials, request: TransferRequest
    ) -> ProviderResult:
        signer = AirtelSigner.from_credentials(credentials)
        payload = {
            "reference": request.note or request.external_id,
            "subscriber": {
                "country": self.settings.airtel_country,
                "currency": request.currency,
                "msisdn": subscriber_msisdn(request.payee_id),
            },
            "transaction": {
                "id": request.reference_id,
                "amount": str(request.amount),
                "country": self.settings.airtel_country,
                "currency": request.currency,
                "type": "B2C",
            },
            "pin": self._pin(signer, credentials),
            "wallet_type": credentials.get("wallet_type", "NORMAL"),
        }
        body = canonical_body(payload)
        response = await self._request(
            "transfer",
            "POST",
            "/standard/v3/disbursements",
            content=body,
            headers={**self._headers(token, request.currency), **signer.headers(body)},
        )
        result = self._parse(request.reference_id, response)
        result.request = {**payload, "pin": "***"}
        logger.info(
            "airtel_transfer_submitted",
            reference_id=request.reference_id,
            external_id=request.external_id,
            status=result.status.value,
        )
        return result

    @retry_transient
    async def get_transfer_status(
        self, token: str, credentials: DecryptedCredentials, reference: str
    ) -> ProviderResult:
        response = await self._request(
            "status",
            "GET",
            f"/standard/v3/disbursements/{reference}",
            headers=self._headers(token),
        )
        return self._parse(reference, response)

    async def refund(
        self,
        token: str,
        credentials: DecryptedCredentials,
        original_reference: str,
        request: TransferRequest,
    ) -> ProviderResult:
        signer = AirtelSigner.from_credentials(credentials)
        payload = {"transaction": {"id": original_reference}}
        body = canonical_body(payload)
        response = await self._request(
            "refund",
            "POST",
            "/standard/v3/disbursements/refund",
            content=body,
            headers={**self._headers(token, request.currency), **signer.headers(body)},
        )
        result = self._parse(request.reference_id, response)
        result.request = payload
        return result

    async def request_to_pay(
        self, token: str, credentials: DecryptedCredentials, request: CollectionRequest
    ) -> ProviderResult:
        signer = AirtelSigner.from_credentials(credentials)
        payload = {
            "reference": request.payer_message or request.external_id,
            "subscriber": {
                "country": self.settings.airtel_country,
                "currency": request.currency,
                "msisdn": subscriber_msisdn(request.payer_id),
            },
            "transaction": {
                "amount": str(request.amount),
                "country": self.settings.airtel_country,
                "currency": request.currency,
                "id": request.reference_id,
            },
        }
        body = canonical_body(payload)
        response = await self._request(
            "request_to_pay",
            "POST",
            "/merchant/v2/payments/",
            content=body,
            headers={**self._headers(token, request.currency), **signer.headers(body)},
        )
        result = self._parse(request.reference_id, response)
        result.request = payload
        logger.info(
            "airtel_request_to_pay_submitted",
            reference_id=request.reference_id,
            external_id=request.external_id,
            status=result.status.value,
        )
        return result

    @retry_transient
    async def get_collection_status(
        self, token: str, credentials: DecryptedCredentials, reference: str
    ) -> ProviderResult:
        response = await self._request(
            "collection_status",
            "GET",
            f"/standard/v1/payments/{reference}",
            headers=self._headers(token),
        )
        return self._parse(reference, response)

    @staticmethod
    def _pin(signer: AirtelSigner, credentials: DecryptedCredentials) -> str:
        """Encrypt the stored PIN; a bundle may instead hold one Airtel pre-encrypted."""
        pin = credentials.get("pin")
        if pin is not None:
            return signer.encrypt_pin(pin)
        return credentials.require("encrypted_pin")

    @retry_transient
    async def get_balance(self, token: str, credentials: DecryptedCredentials) -> BalanceResult:
        response = await self._request(
            "balance", "GET", "/standard/v1/users/balance", headers=self._headers(token)
        )
        data = self._safe_json(response).get("data") or {}
        return BalanceResult(
            available=Decimal(str(data.get("balance", "0"))),
            currency=data.get("currency", self.settings.default_currency),
        )

    def _parse(self, reference: str, response: httpx.Response) -> ProviderResult:
        """Normalize Airtel's status block and transaction status code."""
        data = self._safe_json(response)
        status_block = data.get("status") or {}
        transaction = (data.get("data") or {}).get("transaction") or {}
        code = status_block.get("response_code") or status_block.get("code")

        if status_block.get("success") is False:
            return ProviderResult(
                status=ProviderStatus.FAILED,
                provider_reference=reference,
                http_status=response.status_code,
                response=data,
                error_code=code or "AIRTEL_ERROR",
                message=status_block.get("message"),
                retryable=code in RETRYABLE_RESPONSE_CODES,
            )

        status = TRANSACTION_STATUS_MAP.get(
            str(transaction.get("status", "")).upper(), ProviderStatus.PENDING
        )
        return ProviderResult(
            status=status,
            provider_reference=reference,
            http_status=response.status_code,
            provider_transaction_id=transaction.get("airtel_money_id"),
            response=data,
            error_code=code if status == ProviderStatus.FAILED else None,
            message=transaction.get("message") or status_block.get("message"),
        )
