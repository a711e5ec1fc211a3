"""
Provider adapter contract shared by the MTN and Airtel integrations.

Implements:
- One capability set per provider (token, transfer, status, refund, balance,
  request-to-pay and its status)
- Explicit per-call deadline; expiry surfaces as ProviderTimeoutError
- Error classification into retryable / terminal / auth
- Circuit breaker around outbound calls
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    ValidationError,
)
from momo_gateway.core.state_machine import Product, Provider, ProviderStatus
from momo_gateway.core.vault import DecryptedCredentials
from momo_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying on an idempotent call."""
    if isinstance(exc, ProviderTimeoutError):
        return True
    return isinstance(exc, ProviderError) and exc.retryable


# Token exchanges, status queries and balance reads only; never transfers.
retry_transient = retry(
    retry=retry_if_exception(is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
)


@dataclass
class TokenGrant:
    """Result of a token endpoint exchange."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


@dataclass
class TransferRequest:
    """Normalized money-out request handed to an adapter."""

    reference_id: str
    external_id: str
    amount: Decimal
    currency: str
    payee_type: str
    payee_id: str
    note: Optional[str] = None


@dataclass
class CollectionRequest:
    """Normalized request-to-pay handed to an adapter."""

    reference_id: str
    external_id: str
    amount: Decimal
    currency: str
    payer_type: str
    payer_id: str
    payer_message: Optional[str] = None
    payee_note: Optional[str] = None


@dataclass
class ProviderResult:
    """
    Normalized outcome of a provider call.

    status uses the provider callback vocabulary; PENDING means the provider
    accepted the request and will confirm asynchronously.
    """

    status: ProviderStatus
    provider_reference: Optional[str]
    http_status: Optional[int] = None
    provider_transaction_id: Optional[str] = None
    request: Dict[str, Any] = field(default_factory=dict)
    response: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False


@dataclass
class BalanceResult:
    """Available balance on the tenant's provider account."""

    available: Decimal
    currency: str


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when transient failures exceed threshold. Business rejections
    do not count as failures.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider name (metrics label)
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            ProviderError: Retryable error if circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise ProviderError(
                    f"Circuit breaker is open for {self.provider}",
                    retryable=True,
                    provider_code="CIRCUIT_OPEN",
                )

        try:
            result = await func(*args, **kwargs)
        except (ProviderTimeoutError, ProviderError) as e:
            if isinstance(e, ProviderTimeoutError) or (
                e.retryable and not isinstance(e, ProviderAuthError)
            ):
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider, state)
        logger.info("circuit_breaker_state_changed", provider=self.provider, state=state)


class ProviderAdapter(ABC):
    """
    Base class for provider adapters.

    Subclasses implement the provider wire format; this class owns the HTTP
    client, the deadline, error classification and metrics.
    """

    provider: Provider

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.timeout = self.settings.provider_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.circuit_breaker = CircuitBreaker(self.provider.value)

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Provider API base URL."""

    @abstractmethod
    async def request_token(
        self,
        credentials: DecryptedCredentials,
        refresh_token: Optional[str] = None,
        product: str = Product.DISBURSEMENT,
    ) -> TokenGrant:
        """Exchange credentials (or a refresh token) for a bearer token for `product`."""

    @abstractmethod
    async def transfer(
        self, token: str, credentials: DecryptedCredentials, request: TransferRequest
    ) -> ProviderResult:
        """Submit a disbursement."""

    @abstractmethod
    async def get_transfer_status(
        self, token: str, credentials: DecryptedCredentials, reference: str
    ) -> ProviderResult:
        """Query provider-side status of a disbursement by reference."""

    @abstractmethod
    async def refund(
        self,
        token: str,
        credentials: DecryptedCredentials,
        original_reference: str,
        request: TransferRequest,
    ) -> ProviderResult:
        """Reverse a completed disbursement."""

    @abstractmethod
    async def get_balance(self, token: str, credentials: DecryptedCredentials) -> BalanceResult:
        """Query available balance."""

    @abstractmethod
    async def request_to_pay(
        self, token: str, credentials: DecryptedCredentials, request: CollectionRequest
    ) -> ProviderResult:
        """Ask the payer to approve a debit; the outcome arrives later."""

    @abstractmethod
    async def get_collection_status(
        self, token: str, credentials: DecryptedCredentials, reference: str
    ) -> ProviderResult:
        """Query provider-side status of a request-to-pay by reference."""

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def _request(
        self, operation: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """
        Perform one provider HTTP call under the deadline.

        Returns the response for 2xx. Raises a classified error otherwise.
        """
        return await self.circuit_breaker.call(self._send, operation, method, url, **kwargs)

    async def _send(
        self, operation: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        client = self._ensure_client()
        provider = self.provider.value
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.request(method, url, **kwargs), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            duration = time.monotonic() - start
            metrics.record_provider_call(provider, operation, "timeout", duration)
            metrics.record_provider_error(provider, "timeout")
            logger.warning(
                "provider_call_timeout",
                provider=provider,
                operation=operation,
                timeout_seconds=self.timeout,
            )
            raise ProviderTimeoutError(
                f"{provider} {operation} did not respond within {self.timeout}s"
            ) from e
        except httpx.ConnectError as e:
            # The request never left this host
            duration = time.monotonic() - start
            metrics.record_provider_call(provider, operation, "network_error", duration)
            metrics.record_provider_error(provider, "retryable")
            logger.warning(
                "provider_call_connect_error",
                provider=provider,
                operation=operation,
                error=str(e),
            )
            raise ProviderError(
                f"{provider} {operation} network error: {e}",
                retryable=True,
                provider_code="NETWORK_ERROR",
            ) from e
        except httpx.TransportError as e:
            # Connection dropped after the request may have been delivered
            duration = time.monotonic() - start
            metrics.record_provider_call(provider, operation, "connection_lost", duration)
            metrics.record_provider_error(provider, "timeout")
            logger.warning(
                "provider_call_connection_lost",
                provider=provider,
                operation=operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ProviderTimeoutError(
                f"{provider} {operation} connection lost, outcome unknown: {e}"
            ) from e

        duration = time.monotonic() - start
        metrics.record_provider_call(provider, operation, str(response.status_code), duration)

        if response.is_success:
            return response

        body = self._safe_json(response)
        known = self._classify_known(response.status_code, body)
        if known is not None:
            metrics.record_provider_error(provider, "retryable" if known.retryable else "terminal")
            logger.error(
                "provider_api_error",
                provider=provider,
                operation=operation,
                status_code=response.status_code,
                provider_code=known.provider_code,
                retryable=known.retryable,
            )
            raise known
        if response.status_code in (401, 403):
            metrics.record_provider_error(provider, "auth")
            logger.error(
                "provider_auth_rejected",
                provider=provider,
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderAuthError(
                f"{provider} rejected credentials for {operation} (HTTP {response.status_code})"
            )
        if response.status_code == 404:
            raise ProviderNotFoundError(f"{provider} has no record for {operation}")

        error = self._classify_error(response.status_code, body)
        metrics.record_provider_error(provider, "retryable" if error.retryable else "terminal")
        logger.error(
            "provider_api_error",
            provider=provider,
            operation=operation,
            status_code=response.status_code,
            provider_code=error.provider_code,
            retryable=error.retryable,
        )
        raise error

    def _classify_known(self, status_code: int, body: Dict[str, Any]) -> Optional[ProviderError]:
        """Provider-specific error codes that override the HTTP status class."""
        return None

    def _classify_error(self, status_code: int, body: Dict[str, Any]) -> ProviderError:
        """
        Classify a non-2xx response for retry logic.

        429 and 5xx are transient; other 4xx are business rejections.
        """
        code = str(body.get("code") or body.get("error") or f"HTTP_{status_code}")
        message = str(body.get("message") or f"HTTP {status_code}")
        retryable = status_code == 429 or status_code >= 500
        return ProviderError(
            message,
            retryable=retryable,
            provider_code=code,
            status_code=status_code,
            response=body,
        )

    @staticmethod
    def _safe_json(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text[:500]}
        return data if isinstance(data, dict) else {"data": data}

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AdapterRegistry:
    """Selects the adapter for a disbursement's provider field."""

    def __init__(self, adapters: Dict[Provider, ProviderAdapter]):
        self._adapters = {Provider(k): v for k, v in adapters.items()}

    def get(self, provider: str | Provider) -> ProviderAdapter:
        """
        Return the adapter for `provider`.

        Raises:
            ValidationError: If the provider is not supported
        """
        name = provider.value if isinstance(provider, Provider) else str(provider).upper()
        try:
            return self._adapters[Provider(name)]
        except (KeyError, ValueError):
            raise ValidationError(f"Unsupported provider: {provider}")

    async def close(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.close()
