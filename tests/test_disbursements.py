"""
Tests for the disbursement lifecycle: submission, retries, reconciliation,
webhook application and refunds.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import update

from momo_gateway.core.errors import (
    DuplicateExternalId,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from momo_gateway.core.state_machine import DisbursementStatus as S
from momo_gateway.database.models import Disbursement, utcnow

from .conftest import OTHER_TENANT, TENANT, airtel_body


async def create_and_submit(services, **overrides):
    params = {
        "tenant_id": TENANT,
        "external_id": "INV-1001",
        "amount": "100.00",
        "currency": "ZMW",
        "payee_id": "260971234567",
        "provider": "MTN",
    }
    params.update(overrides)
    d, _ = await services.disbursements.create(**params)
    return await services.disbursements.submit(d.id)


def far_future():
    return utcnow() + timedelta(days=1)


class TestCreate:
    """Test suite for disbursement creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_pending(self, services, sample_disbursement) -> None:
        d, created = await services.disbursements.create(**sample_disbursement)

        assert created is True
        assert d.status == S.PENDING.value
        assert d.payee_id == "0971234567"
        assert d.provider == "MTN"
        assert d.retry_count == 0
        assert d.expires_at > utcnow() + timedelta(hours=23)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_external_id_same_request_returns_existing(
        self, services, sample_disbursement
    ) -> None:
        first, _ = await services.disbursements.create(**sample_disbursement)
        again, created = await services.disbursements.create(
            **{**sample_disbursement, "amount": "100", "payee_id": "0971234567"}
        )

        assert created is False
        assert again.id == first.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_external_id_different_request(self, services, sample_disbursement) -> None:
        await services.disbursements.create(**sample_disbursement)

        with pytest.raises(DuplicateExternalId):
            await services.disbursements.create(**{**sample_disbursement, "amount": "250.00"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_external_id_is_tenant_scoped(self, services, sample_disbursement) -> None:
        a, _ = await services.disbursements.create(**sample_disbursement)
        b, created = await services.disbursements.create(
            **{**sample_disbursement, "tenant_id": OTHER_TENANT}
        )

        assert created is True
        assert a.id != b.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("provider", "VODAFONE"),
            ("amount", "-5"),
            ("amount", "10.001"),
            ("currency", "ZK"),
            ("payee_id", "12345"),
            ("external_id", ""),
        ],
    )
    async def test_rejects_invalid_input(self, services, sample_disbursement, field, value) -> None:
        with pytest.raises(ValidationError):
            await services.disbursements.create(**{**sample_disbursement, field: value})

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_yield_one_record(self, services, sample_disbursement) -> None:
        results = await asyncio.gather(
            *(services.disbursements.create(**sample_disbursement) for _ in range(5))
        )

        assert len({d.id for d, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1


class TestSubmit:
    """Test suite for provider submission."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mtn_accepted_awaits_callback(self, services, providers) -> None:
        d = await create_and_submit(services)

        assert d.status == S.PROCESSING.value
        transfer = providers.calls("POST", "/disbursement/v1_0/transfer")[0]
        assert transfer.headers["X-Reference-Id"] == d.provider_reference
        assert transfer.headers["Authorization"] == "Bearer token-1"
        assert b'"amount": "100.00"' in transfer.content or b'"amount":"100.00"' in transfer.content

        attempts = await services.disbursements.get_attempts(d.id)
        assert [a.operation for a in attempts] == ["transfer"]
        assert attempts[0].status == "PENDING"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_airtel_immediate_success(self, services, providers) -> None:
        providers.airtel_transfer = (200, airtel_body("TS"))

        d = await create_and_submit(services, provider="AIRTEL")

        assert d.status == S.SUCCESS.value
        assert d.completed_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_rejection_fails_without_retry(self, services, providers) -> None:
        providers.mtn_transfer = (400, {"code": "PAYEE_NOT_FOUND", "message": "unknown payee"})

        d = await create_and_submit(services)

        assert d.status == S.FAILED.value
        assert d.next_retry_at is None
        assert d.error_details["code"] == "PAYEE_NOT_FOUND"
        assert d.error_details["retryable"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry(self, services, providers) -> None:
        providers.mtn_transfer = (500, {"code": "INTERNAL_SERVER_ERROR"})
        before = utcnow()

        d = await create_and_submit(services)

        assert d.status == S.FAILED.value
        assert d.retry_count == 1
        assert before + timedelta(seconds=29) <= d.next_retry_at <= utcnow() + timedelta(seconds=31)
        assert d.error_details["retryable"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_parks_for_reconciliation(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")

        d = await create_and_submit(services)

        assert d.status == S.TIMEOUT.value
        assert d.retry_count == 1
        assert d.next_retry_at is not None
        assert d.provider_reference is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials_fail_terminally(self, services, providers) -> None:
        d = await create_and_submit(services, tenant_id=OTHER_TENANT)

        assert d.status == S.FAILED.value
        assert d.error_details["code"] == "PROVIDER_AUTH"
        assert d.next_retry_at is None
        assert providers.calls("POST", "/disbursement/v1_0/transfer") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_token_is_invalidated(self, services, providers) -> None:
        providers.mtn_transfer = (401, {})

        d = await create_and_submit(services)

        assert d.status == S.FAILED.value
        assert d.error_details["code"] == "PROVIDER_AUTH"
        await services.tokens.get_valid_token(TENANT, "MTN")
        assert providers.token_calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_resubmit_in_flight(self, services) -> None:
        d = await create_and_submit(services)

        with pytest.raises(InvalidTransitionError):
            await services.disbursements.submit(d.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_submit_timeout_directly(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        d = await create_and_submit(services)

        with pytest.raises(InvalidTransitionError):
            await services.disbursements.submit(d.id)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_submits_call_provider_once(self, services, providers, sample_disbursement) -> None:
        d, _ = await services.disbursements.create(**sample_disbursement)

        results = await asyncio.gather(
            services.disbursements.submit(d.id),
            services.disbursements.submit(d.id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_version_write_is_refused(self, services, sample_disbursement) -> None:
        stale, _ = await services.disbursements.create(**sample_disbursement)
        await services.disbursements.submit(stale.id)

        assert await services.disbursements._cas(stale, {"reference": "late"}) is None


class TestRetries:
    """Test suite for retry scheduling and the retry sweep."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_resubmits_due_failures(self, services, providers) -> None:
        providers.mtn_transfer = (500, {"code": "INTERNAL_SERVER_ERROR"})
        d = await create_and_submit(services)
        first_reference = d.provider_reference

        assert await services.disbursements.run_retry_sweep() == {
            "resubmitted": 0,
            "reconciled": 0,
            "errors": 0,
        }

        providers.mtn_transfer = (202, None)
        summary = await services.disbursements.run_retry_sweep(now=far_future())

        assert summary["resubmitted"] == 1
        d = await services.disbursements.get_status(TENANT, external_id="INV-1001")
        assert d.status == S.PROCESSING.value
        assert d.provider_reference != first_reference
        assert d.next_retry_at is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_waits_for_backoff(self, services, providers, session_factory) -> None:
        providers.mtn_transfer = (500, {"code": "INTERNAL_SERVER_ERROR"})
        d = await create_and_submit(services)

        with pytest.raises(InvalidTransitionError):
            await services.disbursements.submit(d.id)
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 1

        async with session_factory() as session:
            await session.execute(
                update(Disbursement)
                .where(Disbursement.id == d.id)
                .values(next_retry_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()
        providers.mtn_transfer = (202, None)

        d = await services.disbursements.submit(d.id)

        assert d.status == S.PROCESSING.value
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhaust(self, services, providers) -> None:
        providers.mtn_transfer = (500, {"code": "INTERNAL_SERVER_ERROR"})
        d = await create_and_submit(services)

        for _ in range(3):
            await services.disbursements.run_retry_sweep(now=far_future())

        d = await services.disbursements.get_status(TENANT, external_id="INV-1001")
        assert d.status == S.FAILED.value
        assert d.retry_count == 3
        assert d.next_retry_at is None
        assert d.error_details["retries_exhausted"] is True
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 4

        summary = await services.disbursements.run_retry_sweep(now=far_future())
        assert summary["resubmitted"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backoff_grows(self, services, providers) -> None:
        providers.mtn_transfer = (500, {"code": "INTERNAL_SERVER_ERROR"})
        await create_and_submit(services)

        await services.disbursements.run_retry_sweep(now=far_future())
        d = await services.disbursements.get_status(TENANT, external_id="INV-1001")

        assert d.retry_count == 2
        delay = (d.next_retry_at - utcnow()).total_seconds()
        assert 55 <= delay <= 61

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schedule_retry_rejects_success(self, services, providers) -> None:
        providers.airtel_transfer = (200, airtel_body("TS"))
        d = await create_and_submit(services, provider="AIRTEL")

        with pytest.raises(InvalidTransitionError):
            await services.disbursements.schedule_retry(d.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_timeout_becomes_failed(self, services, providers, session_factory) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        d = await create_and_submit(services)
        async with session_factory() as session:
            await session.execute(update(Disbursement).values(retry_count=3))
            await session.commit()

        d = await services.disbursements.schedule_retry(d.id)

        assert d.status == S.FAILED.value
        assert d.error_details["retries_exhausted"] is True


class TestReconcile:
    """Test suite for TIMEOUT reconciliation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_reports_success(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        d = await create_and_submit(services)

        d = await services.disbursements.reconcile(d.id)

        assert d.status == S.SUCCESS.value
        status_call = providers.calls("GET", "/disbursement/v1_0/transfer/")[0]
        assert status_call.url.path.endswith(d.provider_reference)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_reports_failure(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        providers.mtn_status = (200, {"status": "FAILED", "reason": {"code": "PAYEE_NOT_FOUND"}})
        d = await create_and_submit(services)

        d = await services.disbursements.reconcile(d.id)

        assert d.status == S.FAILED.value
        assert d.error_details["code"] == "PAYEE_NOT_FOUND"
        assert d.next_retry_at is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_to_provider_is_resubmitted(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        providers.mtn_status = (404, {})
        d = await create_and_submit(services)
        timed_out_reference = d.provider_reference

        providers.transfer_error = None
        d = await services.disbursements.reconcile(d.id)

        assert d.status == S.PROCESSING.value
        assert d.provider_reference != timed_out_reference
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_still_pending_reschedules(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        providers.mtn_status = (200, {"status": "PENDING"})
        d = await create_and_submit(services)

        d = await services.disbursements.reconcile(d.id)

        assert d.status == S.TIMEOUT.value
        assert d.retry_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_reconciles_due_timeouts(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        await create_and_submit(services)

        summary = await services.disbursements.run_retry_sweep(now=far_future())

        assert summary["reconciled"] == 1
        d = await services.disbursements.get_status(TENANT, external_id="INV-1001")
        assert d.status == S.SUCCESS.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.ReadError("connection reset by peer"),
            httpx.RemoteProtocolError("server disconnected without sending a response"),
            httpx.WriteError("broken pipe"),
        ],
    )
    async def test_dropped_connection_is_reconciled_not_resent(
        self, services, providers, error
    ) -> None:
        providers.transfer_error = error
        d = await create_and_submit(services)
        sent_reference = d.provider_reference

        assert d.status == S.TIMEOUT.value
        assert d.error_details["code"] == "TIMEOUT"

        providers.transfer_error = None
        await services.disbursements.run_retry_sweep(now=far_future())

        d = await services.disbursements.get_status(TENANT, external_id="INV-1001")
        assert d.status == S.SUCCESS.value
        assert d.provider_reference == sent_reference
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 1
        assert len(providers.calls("GET", sent_reference)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_connection_is_resubmitted(self, services, providers) -> None:
        providers.transfer_error = httpx.ConnectError("connection refused")
        d = await create_and_submit(services)

        assert d.status == S.FAILED.value
        assert d.error_details["code"] == "NETWORK_ERROR"
        assert d.error_details["retryable"] is True

        providers.transfer_error = None
        summary = await services.disbursements.run_retry_sweep(now=far_future())

        assert summary["resubmitted"] == 1
        assert len(providers.calls("POST", "/disbursement/v1_0/transfer")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reconcile_ignores_settled_records(self, services, providers) -> None:
        providers.airtel_transfer = (200, airtel_body("TS"))
        d = await create_and_submit(services, provider="AIRTEL")

        again = await services.disbursements.reconcile(d.id)

        assert again.status == S.SUCCESS.value
        assert providers.calls("GET", "/standard/v3/disbursements/") == []


class TestWebhookApplication:
    """Test suite for applying provider callbacks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_callback(self, services) -> None:
        d = await create_and_submit(services)

        d = await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")

        assert d.status == S.SUCCESS.value
        assert d.completed_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failure_callback_schedules_retry(self, services) -> None:
        d = await create_and_submit(services)

        d = await services.disbursements.apply_webhook(
            d.provider_reference,
            "FAILED",
            details={"reason": {"code": "INTERNAL_SERVER_ERROR", "message": "try later"}},
        )

        assert d.status == S.FAILED.value
        assert d.next_retry_at is not None
        assert d.retry_count == 1
        assert d.error_details["message"] == "try later"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_failure_callback(self, services) -> None:
        d = await create_and_submit(services)

        d = await services.disbursements.apply_webhook(
            d.provider_reference, "FAILED", details={"reason": "PAYEE_NOT_FOUND"}
        )

        assert d.status == S.FAILED.value
        assert d.next_retry_at is None
        assert d.error_details["code"] == "PAYEE_NOT_FOUND"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_and_repeated_status_are_no_ops(self, services) -> None:
        d = await create_and_submit(services)

        same = await services.disbursements.apply_webhook(d.provider_reference, "PENDING")
        assert same.status == S.PROCESSING.value
        assert same.version == d.version

        done = await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")
        again = await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")
        assert again.version == done.version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_after_success_bounces(self, services) -> None:
        d = await create_and_submit(services)
        await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")

        d = await services.disbursements.apply_webhook(d.provider_reference, "FAILED")

        assert d.status == S.BOUNCED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_success_after_timeout(self, services, providers) -> None:
        providers.transfer_error = httpx.ReadTimeout("provider too slow")
        d = await create_and_submit(services)

        d = await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")

        assert d.status == S.SUCCESS.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_illegal_transition_is_rejected(self, services, providers) -> None:
        providers.mtn_transfer = (400, {"code": "PAYEE_NOT_FOUND"})
        d = await create_and_submit(services)

        with pytest.raises(InvalidTransitionError):
            await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")

        d = await services.disbursements.get_status(TENANT, external_id="INV-1001")
        assert d.status == S.FAILED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_match_by_external_id_within_tenant(self, services) -> None:
        await create_and_submit(services)

        d = await services.disbursements.apply_webhook("INV-1001", "SUCCESSFUL", tenant_id=TENANT)
        assert d.status == S.SUCCESS.value

        with pytest.raises(NotFoundError):
            await services.disbursements.apply_webhook("INV-1001", "SUCCESSFUL", tenant_id=OTHER_TENANT)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_and_reference(self, services) -> None:
        d = await create_and_submit(services)

        with pytest.raises(ValidationError):
            await services.disbursements.apply_webhook(d.provider_reference, "DONE")
        with pytest.raises(NotFoundError):
            await services.disbursements.apply_webhook("no-such-reference", "SUCCESSFUL")


class TestRefunds:
    """Test suite for refunds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_flow(self, services, providers) -> None:
        d = await create_and_submit(services)
        await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")

        d = await services.disbursements.refund(TENANT, "INV-1001")

        assert d.status == S.REFUND_PROCESSING.value
        assert d.refund_reference is not None
        refund_call = providers.calls("POST", "/disbursement/v2_0/refund")[0]
        assert refund_call.headers["X-Reference-Id"] == d.refund_reference

        d = await services.disbursements.apply_webhook(d.refund_reference, "SUCCESSFUL")
        assert d.status == S.REFUNDED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_rejected(self, services, providers) -> None:
        d = await create_and_submit(services)
        await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")
        providers.refund_reply = (400, {"code": "INSUFFICIENT_BALANCE"})

        d = await services.disbursements.refund(TENANT, "INV-1001")

        assert d.status == S.REFUND_FAILED.value
        assert d.error_details["code"] == "INSUFFICIENT_BALANCE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_failure_callback(self, services) -> None:
        d = await create_and_submit(services)
        await services.disbursements.apply_webhook(d.provider_reference, "SUCCESSFUL")
        d = await services.disbursements.refund(TENANT, "INV-1001")

        d = await services.disbursements.apply_webhook(d.refund_reference, "FAILED")

        assert d.status == S.REFUND_FAILED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_requires_success(self, services) -> None:
        await create_and_submit(services)

        with pytest.raises(InvalidTransitionError):
            await services.disbursements.refund(TENANT, "INV-1001")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_unknown(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.disbursements.refund(TENANT, "INV-404")


class TestQueries:
    """Test suite for lookups, balance and expiry."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_status_by_reference_and_tenant_scope(self, services) -> None:
        d = await create_and_submit(services)

        found = await services.disbursements.get_status(TENANT, reference=d.provider_reference)
        assert found.id == d.id

        with pytest.raises(NotFoundError):
            await services.disbursements.get_status(OTHER_TENANT, external_id="INV-1001")
        with pytest.raises(ValidationError):
            await services.disbursements.get_status(TENANT)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, services, providers) -> None:
        await create_and_submit(services, external_id="A")
        providers.mtn_transfer = (400, {"code": "PAYEE_NOT_FOUND"})
        await create_and_submit(services, external_id="B")

        everything = await services.disbursements.list(TENANT)
        failed = await services.disbursements.list(TENANT, status="failed")

        assert {d.external_id for d in everything} == {"A", "B"}
        assert [d.external_id for d in failed] == ["B"]
        assert await services.disbursements.list(OTHER_TENANT) == []
        with pytest.raises(ValidationError):
            await services.disbursements.list(TENANT, status="UNKNOWN")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balance(self, services) -> None:
        balance = await services.disbursements.get_balance(TENANT, "mtn")

        assert balance.available == Decimal("1500.50")
        assert balance.currency == "ZMW"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expire_stale(self, services, sample_disbursement) -> None:
        d, _ = await services.disbursements.create(**sample_disbursement)
        submitted = await create_and_submit(services, external_id="INV-2")

        assert await services.disbursements.expire_stale() == 0
        assert await services.disbursements.expire_stale(now=utcnow() + timedelta(hours=25)) == 1

        d = await services.disbursements.get_status(TENANT, external_id=d.external_id)
        assert d.status == S.FAILED.value
        assert d.error_details["code"] == "EXPIRED"
        submitted = await services.disbursements.get_status(TENANT, external_id="INV-2")
        assert submitted.status == S.PROCESSING.value
