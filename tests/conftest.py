"""
Pytest configuration and fixtures.

Provider APIs are served by an in-process fake behind httpx.MockTransport;
each test gets its own SQLite database file.
"""
import asyncio
import base64
import json
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from momo_gateway.config import Settings
from momo_gateway.core.webhooks import WebhookValidator
from momo_gateway.database.connection import create_session_factory, init_db
from momo_gateway.services import Services, build_services

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
API_KEY = "key-tenant-a"
OTHER_API_KEY = "key-tenant-b"
WEBHOOK_SECRET = "whsec_tenant_a"

MASTER_KEY_V1 = base64.b64encode(b"\x01" * 32).decode()
MASTER_KEY_V2 = base64.b64encode(b"\x02" * 32).decode()

MTN_CREDENTIALS = {
    "api_user": "mtn-api-user",
    "api_key": "mtn-api-key",
    "subscription_key": "mtn-subscription-key",
    "collection_api_user": "mtn-collection-user",
    "collection_api_key": "mtn-collection-key",
    "collection_subscription_key": "mtn-collection-subscription-key",
    "webhook_secret": WEBHOOK_SECRET,
}
# Stands in for Airtel's published encryption key pair
AIRTEL_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
AIRTEL_PUBLIC_KEY_PEM = (
    AIRTEL_PRIVATE_KEY.public_key()
    .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
    .decode()
)
AIRTEL_SIGNING_SECRET = "airtel-signing-secret"

AIRTEL_CREDENTIALS = {
    "client_id": "airtel-client-id",
    "client_secret": "airtel-client-secret",
    "pin": "1234",
    "signing_secret": AIRTEL_SIGNING_SECRET,
    "encryption_public_key": AIRTEL_PUBLIC_KEY_PEM,
    "webhook_secret": WEBHOOK_SECRET,
}

Reply = Tuple[int, Optional[Dict[str, Any]]]


def airtel_body(transaction_status: str, success: bool = True, code: str = "DP00800001001") -> Dict[str, Any]:
    """Airtel envelope with a transaction status code (TS, TF, TIP, TA)."""
    return {
        "data": {"transaction": {"id": "airtel-txn", "status": transaction_status}},
        "status": {"code": "200", "response_code": code, "success": success, "message": "ok"},
    }


class FakeProviders:
    """
    Scriptable MTN and Airtel endpoints.

    Each reply attribute is (http_status, json_body or None). Set
    `transfer_error` or `collect_error` to an httpx exception to make
    transfers or payment requests fail at the transport level.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_calls = 0
        self.token_delay = 0.0
        self.token_reply: Optional[Reply] = None
        self.token_expires_in = 3600
        self.mtn_transfer: Reply = (202, None)
        self.airtel_transfer: Reply = (200, airtel_body("TIP"))
        self.mtn_status: Reply = (200, {"status": "SUCCESSFUL"})
        self.airtel_status: Reply = (200, airtel_body("TS"))
        self.refund_reply: Reply = (202, None)
        self.mtn_collect: Reply = (202, None)
        self.airtel_collect: Reply = (200, airtel_body("TIP"))
        self.mtn_collection_status: Reply = (
            200, {"status": "SUCCESSFUL", "financialTransactionId": "mtn-fin-1"}
        )
        self.airtel_collection_status: Reply = (200, airtel_body("TS"))
        self.transfer_error: Optional[Exception] = None
        self.collect_error: Optional[Exception] = None
        self.transport = httpx.MockTransport(self.handler)

    def calls(self, method: str, fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in r.url.path]

    @staticmethod
    def _reply(reply: Reply) -> httpx.Response:
        status, body = reply
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in ("/disbursement/token/", "/collection/token/", "/auth/oauth2/token"):
            self.token_calls += 1
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            if self.token_reply is not None:
                return self._reply(self.token_reply)
            body = {
                "access_token": f"token-{self.token_calls}",
                "token_type": "Bearer",
                "expires_in": self.token_expires_in,
            }
            if path == "/auth/oauth2/token":
                body["refresh_token"] = f"refresh-{self.token_calls}"
            return httpx.Response(200, json=body)

        if path.startswith(("/collection/v1_0/requesttopay", "/merchant/v2/payments")):
            if request.method == "GET":
                return self._reply(self.mtn_collection_status)
            if self.collect_error is not None:
                raise self.collect_error
            if path.startswith("/collection"):
                return self._reply(self.mtn_collect)
            return self._reply(self.airtel_collect)

        if path.startswith("/standard/v1/payments"):
            return self._reply(self.airtel_collection_status)

        if "refund" in path:
            return self._reply(self.refund_reply)

        if "balance" in path:
            if path.startswith("/disbursement"):
                return httpx.Response(200, json={"availableBalance": "1500.50", "currency": "ZMW"})
            return httpx.Response(
                200, json={"data": {"balance": "99.00", "currency": "ZMW"}, "status": {"success": True}}
            )

        if request.method == "POST":
            if self.transfer_error is not None:
                raise self.transfer_error
            if path.startswith("/disbursement"):
                return self._reply(self.mtn_transfer)
            return self._reply(self.airtel_transfer)

        if path.startswith("/disbursement"):
            return self._reply(self.mtn_status)
        return self._reply(self.airtel_status)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """X-Signature-256 value for a webhook body."""
    return WebhookValidator.compute_signature(body, secret)


def webhook_body(transaction_id: str, status: str, **extra: Any) -> bytes:
    return json.dumps({"referenceId": transaction_id, "status": status, **extra}).encode()


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'momo_test.db'}",
        redis_url=None,
        app_name="momo-gateway-test",
        app_env="test",
        log_level="DEBUG",
        api_keys=f"{API_KEY}:{TENANT},{OTHER_API_KEY}:{OTHER_TENANT}",
        vault_master_keys=f"1:{MASTER_KEY_V1}",
        vault_active_key_version=1,
        provider_timeout_seconds=2.0,
        disbursement_max_attempts=3,
        retry_base_delay_seconds=30.0,
        retry_max_delay_seconds=600.0,
        token_refresh_margin_seconds=60,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh schema in a per-test SQLite file."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    providers: FakeProviders,
) -> AsyncGenerator[Services, Any]:
    """Component graph wired to the fake providers, with tenant-a credentials stored."""
    services = build_services(
        test_settings, session_factory=session_factory, transport=providers.transport
    )
    await services.vault.put_credentials(TENANT, "MTN", MTN_CREDENTIALS)
    await services.vault.put_credentials(TENANT, "AIRTEL", AIRTEL_CREDENTIALS)
    yield services
    await services.close()


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, services: Services
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    from momo_gateway.api.main import create_app

    app = create_app(test_settings, services=services)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
def sample_disbursement() -> Dict[str, Any]:
    """Keyword arguments for DisbursementService.create."""
    return {
        "tenant_id": TENANT,
        "external_id": "INV-1001",
        "amount": "100.00",
        "currency": "ZMW",
        "payee_id": "260971234567",
        "provider": "MTN",
    }
