"""
MTN MoMo disbursement and collection API adapter.

- Token: POST /{product}/token/ with basic auth (api_user:api_key)
- Transfer: POST /disbursement/v1_0/transfer, answered 202 Accepted
- Status: GET /disbursement/v1_0/transfer/{referenceId}
- Refund: POST /disbursement/v2_0/refund
- Balance: GET /disbursement/v1_0/account/balance
- Request-to-pay: POST /collection/v1_0/requesttopay, answered 202 Accepted
- Request-to-pay status: GET /collection/v1_0/requesttopay/{referenceId}

The collection product is a separate MTN subscription: its keys live in the
same vault bundle under a `collection_` prefix.

MTN identifies a transfer by the X-Reference-Id UUID we generate, so the
provider reference is known before the call returns.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from momo_gateway.core.errors import ProviderError
from momo_gateway.core.state_machine import Product, Provider, ProviderStatus
from momo_gateway.core.vault import DecryptedCredentials
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

# code -> (retryable, retry_after_seconds)
MTN_ERROR_MAP: Dict[str, tuple[bool, Optional[int]]] = {
    "PAYEE_NOT_FOUND": (False, None),
    "PAYER_NOT_FOUND": (False, None),
    "INSUFFICIENT_BALANCE": (False, None),
    "INVALID_CURRENCY": (False, None),
    "DUPLICATE_REFERENCE_ID": (False, None),
    "NOT_ALLOWED_TARGET_ENVIRONMENT": (False, None),
    "TRANSACTION_TIMED_OUT": (True, 30),
    "INTERNAL_SERVER_ERROR": (True, 60),
}

PRODUCT_PATHS: Dict[Product, str] = {
    Product.DISBURSEMENT: "disbursement",
    Product.COLLECTION: "collection",
}


def classify_mtn_code(code: Optional[str], status_code: Optional[int] = None) -> bool:
    """
    Return True if an MTN error code is retryable.

    Unknown codes are retryable on 5xx and terminal otherwise.
    """
    if code in MTN_ERROR_MAP:
        return MTN_ERROR_MAP[code][0]
    return status_code is not None and status_code >= 500


def credential_field(product: str, name: str) -> str:
    """
    Vault field holding `name` for an MTN product.

    >>> credential_field("COLLECTION", "api_key")
    'collection_api_key'
    """
    if Product(product) == Product.DISBURSEMENT:
        return name
    return f"{PRODUCT_PATHS[Product(product)]}_{name}"


class MTNAdapter(ProviderAdapter):
    """Adapter for the MTN MoMo disbursement and collection products."""

    provider = Provider.MTN

    @property
    def base_url(self) -> str:
        return self.settings.mtn_base_url

    def _headers(
        self,
        credentials: DecryptedCredentials,
        token: Optional[str] = None,
        product: str = Product.DISBURSEMENT,
    ) -> Dict[str, str]:
        headers = {
            "Ocp-Apim-Subscription-Key": credentials.require(
                credential_field(product, "subscription_key")
            ),
            "X-Target-Environment": self.settings.mtn_target_environment,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _classify_known(self, status_code: int, body: Dict[str, Any]) -> Optional[ProviderError]:
        code = body.get("code")
        if code not in MTN_ERROR_MAP:
            return None
        retryable, retry_after = MTN_ERROR_MAP[code]
        return ProviderError(
            str(body.get("message") or code),
            retryable=retryable,
            provider_code=code,
            status_code=status_code,
            response=body,
            retry_after_seconds=retry_after,
        )

    def _classify_error(self, status_code: int, body: Dict[str, Any]) -> ProviderError:
        code = str(body.get("code") or f"HTTP_{status_code}")
        return ProviderError(
            str(body.get("message") or f"MTN API error (HTTP {status_code})"),
            retryable=classify_mtn_code(code, status_code) or status_code == 429,
            provider_code=code,
            status_code=status_code,
            response=body,
        )

    @retry_transient
    async def request_token(
        self,
        credentials: DecryptedCredentials,
        refresh_token: Optional[str] = None,
        product: str = Product.DISBURSEMENT,
    ) -> TokenGrant:
        """
        Exchange the product's API user/key for a bearer token.

        MTN has no refresh grant; a stored refresh token is ignored.
        """
        response = await self._request(
            "token",
            "POST",
            f"/{PRODUCT_PATHS[Product(product)]}/token/",
            headers={
                "Ocp-Apim-Subscription-Key": credentials.require(
                    credential_field(product, "subscription_key")
                )
            },
            auth=httpx.BasicAuth(
                credentials.require(credential_field(product, "api_user")),
                credentials.require(credential_field(product, "api_key")),
            ),
        )
        data = self._safe_json(response)
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
        )

    async def transfer(
        self, token: str, credentials: DecryptedCredentials, request: TransferRequest
    ) -> ProviderResult:
        """Submit a transfer; 202 means accepted, outcome arrives by callback."""
        payload = {
            "amount": str(request.amount),
            "currency": request.currency,
            "externalId": request.external_id,
            "payee": {"partyIdType": request.payee_type, "partyId": request.payee_id},
            "payerMessage": request.note or request.external_id,
            "payeeNote": request.note or request.external_id,
        }
        headers = self._headers(credentials, token)
        headers["X-Reference-Id"] = request.reference_id
        if self.settings.mtn_callback_url:
            headers["X-Callback-Url"] = self.settings.mtn_callback_url

        response = await self._request(
            "transfer", "POST", "/disbursement/v1_0/transfer", json=payload, headers=headers
        )
        logger.info(
            "mtn_transfer_accepted",
            reference_id=request.reference_id,
            external_id=request.external_id,
            status_code=response.status_code,
        )
        return ProviderResult(
            status=ProviderStatus.PENDING,
            provider_reference=request.reference_id,
            http_status=response.status_code,
            request=payload,
            response=self._safe_json(response),
        )

    @retry_transient
    async def get_transfer_status(
        self, token: str, credentials: DecryptedCredentials, reference: str
    ) -> ProviderResult:
        """Query a transfer by X-Reference-Id."""
        response = await self._request(
            "status",
            "GET",
            f"/disbursement/v1_0/transfer/{reference}",
            headers=self._headers(credentials, token),
        )
        return self._parse_status(reference, response)

    def _parse_status(self, reference: str, response: httpx.Response) -> ProviderResult:
        data = self._safe_json(response)
        status = ProviderStatus(str(data.get("status", "PENDING")).upper())
        reason = data.get("reason") or {}
        if isinstance(reason, str):
            reason = {"code": reason}
        code = reason.get("code")
        return ProviderResult(
            status=status,
            provider_reference=reference,
            http_status=response.status_code,
            provider_transaction_id=data.get("financialTransactionId"),
            response=data,
            error_code=code,
            message=reason.get("message"),
            retryable=status != ProviderStatus.SUCCESSFUL and classify_mtn_code(code),
        )

    async def refund(
        self,
        token: str,
        credentials: DecryptedCredentials,
        original_reference: str,
        request: TransferRequest,
    ) -> ProviderResult:
        """Refund a completed transfer, referencing it by its X-Reference-Id."""
        payload = {
            "amount": str(request.amount),
            "currency": request.currency,
            "externalId": request.external_id,
            "payerMessage": request.note or f"Refund {request.external_id}",
            "payeeNote": request.note or f"Refund {request.external_id}",
            "referenceIdToRefund": original_reference,
        }
        headers = self._headers(credentials, token)
        headers["X-Reference-Id"] = request.reference_id
        if self.settings.mtn_callback_url:
            headers["X-Callback-Url"] = self.settings.mtn_callback_url

        response = await self._request(
            "refund", "POST", "/disbursement/v2_0/refund", json=payload, headers=headers
        )
        logger.info(
            "mtn_refund_accepted",
            reference_id=request.reference_id,
            original_reference=original_reference,
        )
        return ProviderResult(
            status=ProviderStatus.PENDING,
            provider_reference=request.reference_id,
            http_status=response.status_code,
            request=payload,
            response=self._safe_json(response),
        )

    @retry_transient
    async def get_balance(self, token: str, credentials: DecryptedCredentials) -> BalanceResult:
        response = await self._request(
            "balance",
            "GET",
            "/disbursement/v1_0/account/balance",
            headers=self._headers(credentials, token),
        )
        data = self._safe_json(response)
        return BalanceResult(
            available=Decimal(str(data.get("availableBalance", "0"))),
            currency=data.get("currency", self.settings.default_currency),
        )

    async def request_to_pay(
        self, token: str, credentials: DecryptedCredentials, request: CollectionRequest
    ) -> ProviderResult:
        """Prompt the payer; 202 means the prompt was sent."""
        payload = {
            "amount": str(request.amount),
            "currency": request.currency,
            "externalId": request.external_id,
            "payer": {"partyIdType": request.payer_type, "partyId": request.payer_id},
            "payerMessage": request.payer_message or request.external_id,
            "payeeNote": request.payee_note or request.external_id,
        }
        headers = self._headers(credentials, token, Product.COLLECTION)
        headers["X-Reference-Id"] = request.reference_id
        if self.settings.mtn_callback_url:
            headers["X-Callback-Url"] = self.settings.mtn_callback_url

        response = await self._request(
            "request_to_pay",
            "POST",
            "/collection/v1_0/requesttopay",
            json=payload,
            headers=headers,
        )
        logger.info(
            "mtn_request_to_pay_accepted",
            reference_id=request.reference_id,
            external_id=request.external_id,
        )
        return ProviderResult(
            status=ProviderStatus.PENDING,
            provider_reference=request.reference_id,
            http_status=response.status_code,
            request=payload,
            response=self._safe_json(response),
        )

    @retry_transient
    async def get_collection_status(
        self, token: str, credentials: DecryptedCredentials, reference: str
    ) -> ProviderResult:
        response = await self._request(
            "collection_status",
            "GET",
            f"/collection/v1_0/requesttopay/{reference}",
            headers=self._headers(credentials, token, Product.COLLECTION),
        )
        return self._parse_status(reference, response)
