"""
Disbursement service: lifecycle operations on top of the state machine graph.

Every mutation of a record:
1. Takes the in-process per-record lock
2. Re-reads the row
3. Validates the transition against the graph
4. Commits with UPDATE ... WHERE id AND version AND status
5. On a lost race (rowcount 0) re-reads and re-validates, up to 3 times

Provider calls run under asyncio.shield so a disconnecting client cannot
cancel a call whose outcome still has to be recorded.
"""
import asyncio
import re
import time
import uuid
import weakref
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
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
    RETRYABLE_STATES,
    DisbursementStatus,
    Provider,
    ProviderStatus,
    compute_backoff,
    is_legal_transition,
    map_provider_status,
)
from momo_gateway.core.token_manager import ProviderTokenManager
from momo_gateway.core.vault import CredentialVault
from momo_gateway.database.connection import get_session_factory
from momo_gateway.database.models import Disbursement, DisbursementAttempt, utcnow
from momo_gateway.integrations.base import (
    AdapterRegistry,
    BalanceResult,
    ProviderResult,
    TransferRequest,
)
from momo_gateway.integrations.airtel import subscriber_msisdn
from momo_gateway.integrations.mtn import MTN_ERROR_MAP
from momo_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

S = DisbursementStatus

MAX_CAS_ATTEMPTS = 3
MSISDN_PATTERN = re.compile(r"^0\d{9,14}$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
CENTS = Decimal("0.01")

# (target status or None for a same-status update, column values)
Mutation = Tuple[Optional[DisbursementStatus], Dict[str, Any]]


def normalize_msisdn(raw: str, country_code: str = "260") -> str:
    """
    Normalize a payee phone number to national format.

    >>> normalize_msisdn("+260 971-234-567")
    '0971234567'

    Raises:
        ValidationError: If the result is not a 10-15 digit national number
    """
    normalized = re.sub(r"[\s\-()]", "", raw or "").lstrip("+")
    if normalized.startswith(country_code):
        normalized = "0" + normalized[len(country_code):]
    if not MSISDN_PATTERN.match(normalized):
        raise ValidationError(f"Invalid MSISDN format after normalization: {normalized}")
    return normalized


def validate_amount(amount: Any) -> Decimal:
    """
    Parse a positive amount with at most two decimal places.

    Raises:
        ValidationError: If the amount is not a valid positive money value
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive")
    if value.as_tuple().exponent < -2:
        raise ValidationError("Amount must have at most two decimal places")
    return value


def validate_currency(currency: str) -> str:
    currency = (currency or "").upper()
    if not CURRENCY_PATTERN.match(currency):
        raise ValidationError(f"Invalid currency code: {currency}")
    return currency


def webhook_failure_retryable(code: Optional[str]) -> bool:
    """A provider-confirmed failure is retried unless its reason is a known business rejection."""
    if code in MTN_ERROR_MAP:
        return MTN_ERROR_MAP[code][0]
    return True


class DisbursementService:
    """
    Drives disbursements through the provider and the state machine.

    Handles creation, submission, webhook application, retry scheduling,
    timeout reconciliation and refunds.
    """

    def __init__(
        self,
        token_manager: ProviderTokenManager,
        vault: CredentialVault,
        registry: AdapterRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize disbursement service.

        Args:
            token_manager: Source of provider bearer tokens
            vault: Credential vault for per-tenant provider credentials
            registry: Provider adapters keyed by provider
            session_factory: Session factory (defaults to the global one)
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.token_manager = token_manager
        self.vault = vault
        self.registry = registry
        self.session_factory = session_factory or get_session_factory()
        self._locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _lock(self, disbursement_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(disbursement_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[disbursement_id] = lock
        return lock

    async def _get(self, disbursement_id: uuid.UUID) -> Disbursement:
        async with self.session_factory() as session:
            disbursement = await session.get(Disbursement, disbursement_id)
        if disbursement is None:
            raise NotFoundError(f"Disbursement {disbursement_id} not found")
        return disbursement

    async def _cas(self, d: Disbursement, values: Dict[str, Any]) -> Optional[Disbursement]:
        """Conditional write on (id, version, status); None if another writer got there first."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Disbursement)
                .where(
                    Disbursement.id == d.id,
                    Disbursement.version == d.version,
                    Disbursement.status == d.status,
                )
                .values(version=d.version + 1, updated_at=utcnow(), **values)
            )
            await session.commit()
        if result.rowcount == 0:
            return None
        return await self._get(d.id)

    async def _apply(
        self,
        d: Disbursement,
        source: str,
        build: Callable[[Disbursement], Mutation],
    ) -> Disbursement:
        """Validate and commit a mutation built from the current row, re-reading on conflict."""
        for _ in range(MAX_CAS_ATTEMPTS):
            target, values = build(d)
            current = S(d.status)
            if target is not None:
                if not is_legal_transition(current, target):
                    metrics.record_rejected_transition(source, current.value, target.value)
                    logger.warning(
                        "illegal_transition_rejected",
                        disbursement_id=str(d.id),
                        from_status=current.value,
                        to_status=target.value,
                        source=source,
                    )
                    raise InvalidTransitionError(
                        f"Cannot move disbursement {d.external_id} from {current.value} "
                        f"to {target.value}"
                    )
                values = {**values, "status": target.value}

            updated = await self._cas(d, values)
            if updated is not None:
                if target is not None:
                    metrics.record_transition(d.provider, current.value, target.value)
                    logger.info(
                        "disbursement_transitioned",
                        disbursement_id=str(d.id),
                        tenant_id=d.tenant_id,
                        external_id=d.external_id,
                        from_status=current.value,
                        to_status=target.value,
                        source=source,
                    )
                return updated

            logger.info("disbursement_cas_conflict", disbursement_id=str(d.id), source=source)
            d = await self._get(d.id)

        raise ConflictError(f"Disbursement {d.external_id} is being modified concurrently")

    async def _transition(
        self, d: Disbursement, target: DisbursementStatus, source: str, **values: Any
    ) -> Disbursement:
        return await self._apply(d, source, lambda _: (S(target), dict(values)))

    async def _record_attempt(
        self,
        d: Disbursement,
        operation: str,
        status: str,
        started: float,
        provider_reference: Optional[str] = None,
        http_status_code: Optional[int] = None,
        request_payload: Optional[Dict[str, Any]] = None,
        response_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self.session_factory() as session:
            session.add(
                DisbursementAttempt(
                    disbursement_id=d.id,
                    operation=operation,
                    status=status,
                    provider_reference=provider_reference,
                    http_status_code=http_status_code,
                    request_payload=request_payload,
                    response_payload=response_payload,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            )
            await session.commit()

    async def get_attempts(self, disbursement_id: uuid.UUID) -> List[DisbursementAttempt]:
        """Attempt log for a disbursement, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DisbursementAttempt)
                .where(DisbursementAttempt.disbursement_id == disbursement_id)
                .order_by(DisbursementAttempt.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        external_id: str,
        amount: Any,
        currency: str,
        payee_id: str,
        provider: str,
        payee_type: str = "MSISDN",
        reference: Optional[str] = None,
    ) -> Tuple[Disbursement, bool]:
        """
        Create a PENDING disbursement.

        Returns:
            (disbursement, created). An existing (tenant, externalId) is
            returned unchanged with created=False.

        Raises:
            ValidationError: On malformed input
            DuplicateExternalId: If externalId exists with different parameters
        """
        if not external_id:
            raise ValidationError("externalId is required")
        value = validate_amount(amount)
        currency = validate_currency(currency)
        provider = self.registry.get(provider).provider.value
        payee_type = payee_type.upper()
        if payee_type == "MSISDN":
            payee_id = normalize_msisdn(payee_id, self.settings.msisdn_country_code)
            if provider == Provider.AIRTEL.value:
                subscriber_msisdn(payee_id)
        elif not payee_id:
            raise ValidationError("payee id is required")

        existing = await self._find_by_external_id(tenant_id, external_id)
        if existing is not None:
            return self._check_same_request(existing, value, currency, payee_id, provider), False

        now = utcnow()
        disbursement = Disbursement(
            tenant_id=tenant_id,
            external_id=external_id,
            provider=provider,
            amount=value,
            currency=currency,
            payee_type=payee_type,
            payee_id=payee_id,
            reference=reference,
            status=S.PENDING.value,
            retry_count=0,
            version=1,
            expires_at=now + timedelta(hours=self.settings.disbursement_expiry_hours),
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(disbursement)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = await self._find_by_external_id(tenant_id, external_id)
                if winner is None:
                    raise
                logger.info(
                    "disbursement_create_race_lost",
                    tenant_id=tenant_id,
                    external_id=external_id,
                )
                return self._check_same_request(winner, value, currency, payee_id, provider), False

        logger.info(
            "disbursement_created",
            disbursement_id=str(disbursement.id),
            tenant_id=tenant_id,
            external_id=external_id,
            provider=provider,
            amount=str(value),
            currency=currency,
        )
        return disbursement, True

    def _check_same_request(
        self,
        existing: Disbursement,
        amount: Decimal,
        currency: str,
        payee_id: str,
        provider: str,
    ) -> Disbursement:
        if (
            Decimal(existing.amount) != amount
            or existing.currency != currency
            or existing.payee_id != payee_id
            or existing.provider != provider
        ):
            raise DuplicateExternalId(
                f"externalId {existing.external_id} already used for a different disbursement",
                existing=existing,
            )
        return existing

    async def _find_by_external_id(
        self, tenant_id: str, external_id: str
    ) -> Optional[Disbursement]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Disbursement).where(
                    Disbursement.tenant_id == tenant_id,
                    Disbursement.external_id == external_id,
                )
            )
            return result.scalar_one_or_none()

    async def get_status(
        self,
        tenant_id: str,
        external_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Disbursement:
        """
        Look up a tenant's disbursement by externalId or provider reference.

        Raises:
            ValidationError: If neither key is given
            NotFoundError: If no record matches
        """
        if external_id is None and reference is None:
            raise ValidationError("externalId or reference is required")

        stmt = select(Disbursement).where(Disbursement.tenant_id == tenant_id)
        if external_id is not None:
            stmt = stmt.where(Disbursement.external_id == external_id)
        else:
            stmt = stmt.where(
                or_(
                    Disbursement.provider_reference == reference,
                    Disbursement.refund_reference == reference,
                )
            )
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(1))
            disbursement = result.scalar_one_or_none()

        if disbursement is None:
            raise NotFoundError(f"Disbursement {external_id or reference} not found")
        return disbursement

    async def list(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Disbursement]:
        """Tenant-scoped page of disbursements, newest first."""
        stmt = select(Disbursement).where(Disbursement.tenant_id == tenant_id)
        if status is not None:
            try:
                stmt = stmt.where(Disbursement.status == S(status.upper()).value)
            except ValueError:
                raise ValidationError(f"Unknown status: {status}")
        stmt = stmt.order_by(Disbursement.created_at.desc()).limit(limit).offset(offset)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [d for d in result.scalars().all()]

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, disbursement_id: uuid.UUID) -> Disbursement:
        """
        Send a PENDING (or due, retryable FAILED) disbursement to its provider.

        Always returns the record with its resulting status; provider
        failures are recorded on the record rather than raised.

        Raises:
            InvalidTransitionError: If the record is not submittable
        """
        return await asyncio.shield(self._submit(disbursement_id))

    async def _submit(self, disbursement_id: uuid.UUID) -> Disbursement:
        async with self._lock(disbursement_id):
            d = await self._get(disbursement_id)
            status = S(d.status)
            if status == S.TIMEOUT:
                raise InvalidTransitionError(
                    f"Disbursement {d.external_id} timed out; reconcile before resubmitting"
                )
            if status == S.FAILED and d.next_retry_at is None:
                raise InvalidTransitionError(
                    f"Disbursement {d.external_id} failed with no retry scheduled"
                )
            if status == S.FAILED and d.next_retry_at > utcnow():
                raise InvalidTransitionError(
                    f"Disbursement {d.external_id} retry not due until "
                    f"{d.next_retry_at.isoformat()}"
                )
            return await self._submit_locked(d, source="submit")

    async def _submit_locked(self, d: Disbursement, source: str) -> Disbursement:
        """Move to PROCESSING, call the provider and apply the outcome. Lock must be held."""
        reference_id = str(uuid.uuid4())
        d = await self._transition(
            d,
            S.PROCESSING,
            source,
            provider_reference=reference_id,
            next_retry_at=None,
            error_details=None,
        )

        started = time.monotonic()
        try:
            credentials = await self.vault.get_credentials(d.tenant_id, d.provider)
            token = await self.token_manager.get_valid_token(d.tenant_id, d.provider)
        except (ProviderAuthError, VaultError) as e:
            code = "PROVIDER_AUTH" if isinstance(e, ProviderAuthError) else "VAULT_ERROR"
            await self._record_attempt(d, "transfer", S.FAILED.value, started, reference_id)
            return await self._fail(d, code, e.message, retryable=False, source=source)

        adapter = self.registry.get(d.provider)
        request = TransferRequest(
            reference_id=reference_id,
            external_id=d.external_id,
            amount=Decimal(d.amount).quantize(CENTS),
            currency=d.currency,
            payee_type=d.payee_type,
            payee_id=d.payee_id,
            note=d.reference,
        )

        try:
            result = await adapter.transfer(token.access_token, credentials, request)
        except ProviderTimeoutError as e:
            await self._record_attempt(d, "transfer", S.TIMEOUT.value, started, reference_id)
            d = await self._transition(
                d,
                S.TIMEOUT,
                source,
                error_details={"code": "TIMEOUT", "message": e.message, "retryable": True},
            )
            return await self._schedule_retry(d)
        except ProviderAuthError as e:
            await self._record_attempt(d, "transfer", S.FAILED.value, started, reference_id)
            await self.token_manager.invalidate(d.tenant_id, d.provider)
            return await self._fail(d, "PROVIDER_AUTH", e.message, retryable=False, source=source)
        except ProviderError as e:
            await self._record_attempt(
                d,
                "transfer",
                S.FAILED.value,
                started,
                reference_id,
                http_status_code=e.status_code,
                response_payload=e.response,
            )
            return await self._fail(
                d, e.provider_code, e.message, retryable=e.retryable, source=source
            )
        except Exception:
            # Outcome unknown: park it for reconciliation
            logger.exception("provider_transfer_unexpected_error", disbursement_id=str(d.id))
            await self._record_attempt(d, "transfer", S.TIMEOUT.value, started, reference_id)
            d = await self._transition(
                d,
                S.TIMEOUT,
                source,
                error_details={"code": "UNKNOWN", "message": "unexpected error", "retryable": True},
            )
            await self._schedule_retry(d)
            raise

        await self._record_attempt(
            d,
            "transfer",
            result.status.value,
            started,
            result.provider_reference,
            http_status_code=result.http_status,
            request_payload=result.request,
            response_payload=result.response,
        )
        return await self._apply_result(d, result, source)

    async def _apply_result(
        self, d: Disbursement, result: ProviderResult, source: str
    ) -> Disbursement:
        """Apply a transfer or status-query outcome to a PROCESSING/TIMEOUT record."""
        if result.status == ProviderStatus.SUCCESSFUL:
            return await self._transition(
                d, S.SUCCESS, source, completed_at=utcnow(), next_retry_at=None, error_details=None
            )
        if result.status == ProviderStatus.PENDING:
            logger.info(
                "disbursement_awaiting_callback",
                disbursement_id=str(d.id),
                provider_reference=d.provider_reference,
            )
            return d
        return await self._fail(
            d,
            result.error_code or result.status.value,
            result.message or f"Provider reported {result.status.value}",
            retryable=result.retryable,
            source=source,
        )

    async def _fail(
        self, d: Disbursement, code: str, message: str, retryable: bool, source: str
    ) -> Disbursement:
        d = await self._transition(
            d,
            S.FAILED,
            source,
            error_details={"code": code, "message": message, "retryable": retryable},
            next_retry_at=None,
        )
        if retryable:
            d = await self._schedule_retry(d)
        return d

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    async def schedule_retry(self, disbursement_id: uuid.UUID) -> Disbursement:
        """
        Schedule the next retry of a FAILED or TIMEOUT record.

        Once retry_count reaches the configured maximum the record stays (or
        becomes) FAILED and is flagged retries_exhausted.

        Raises:
            InvalidTransitionError: If the record is not in a retryable state
        """
        async with self._lock(disbursement_id):
            d = await self._get(disbursement_id)
            return await self._schedule_retry(d)

    async def _schedule_retry(self, d: Disbursement) -> Disbursement:
        max_attempts = self.settings.disbursement_max_attempts

        def build(current: Disbursement) -> Mutation:
            status = S(current.status)
            if status not in RETRYABLE_STATES:
                raise InvalidTransitionError(
                    f"Disbursement {current.external_id} in {status.value} cannot be retried"
                )
            if current.retry_count >= max_attempts:
                details = {**(current.error_details or {}), "retries_exhausted": True}
                target = S.FAILED if status == S.TIMEOUT else None
                return target, {"error_details": details, "next_retry_at": None}
            retry_count = current.retry_count + 1
            delay = compute_backoff(
                retry_count,
                self.settings.retry_base_delay_seconds,
                self.settings.retry_max_delay_seconds,
            )
            return None, {
                "retry_count": retry_count,
                "next_retry_at": utcnow() + timedelta(seconds=delay),
            }

        updated = await self._apply(d, "schedule_retry", build)
        if updated.next_retry_at is None:
            logger.warning(
                "disbursement_retries_exhausted",
                disbursement_id=str(updated.id),
                external_id=updated.external_id,
                retry_count=updated.retry_count,
            )
        else:
            metrics.record_retry_scheduled(updated.provider)
            logger.info(
                "disbursement_retry_scheduled",
                disbursement_id=str(updated.id),
                retry_count=updated.retry_count,
                next_retry_at=updated.next_retry_at.isoformat(),
            )
        return updated

    async def run_retry_sweep(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Resubmit due FAILED records and reconcile due TIMEOUT records.

        Returns:
            Dict[str, int]: Counts per outcome
        """
        now = now or utcnow()
        limit = limit or self.settings.retry_sweep_batch_size
        async with self.session_factory() as session:
            result = await session.execute(
                select(Disbursement.id)
                .where(
                    Disbursement.status.in_([s.value for s in RETRYABLE_STATES]),
                    Disbursement.next_retry_at.is_not(None),
                    Disbursement.next_retry_at <= now,
                )
                .order_by(Disbursement.next_retry_at)
                .limit(limit)
            )
            due_ids = list(result.scalars().all())

        summary = {"resubmitted": 0, "reconciled": 0, "errors": 0}
        for disbursement_id in due_ids:
            try:
                outcome = await asyncio.shield(self._retry_one(disbursement_id, now))
            except MomoGatewayError as e:
                summary["errors"] += 1
                logger.warning(
                    "retry_sweep_item_failed",
                    disbursement_id=str(disbursement_id),
                    error_code=e.error_code,
                    error=e.message,
                )
                continue
            if outcome is not None:
                summary[outcome] += 1

        logger.info("retry_sweep_completed", due=len(due_ids), **summary)
        return summary

    async def _retry_one(self, disbursement_id: uuid.UUID, now: datetime) -> Optional[str]:
        async with self._lock(disbursement_id):
            d = await self._get(disbursement_id)
            status = S(d.status)
            if status not in RETRYABLE_STATES or d.next_retry_at is None or d.next_retry_at > now:
                return None
            if status == S.TIMEOUT:
                await self._reconcile_locked(d)
                return "reconciled"
            await self._submit_locked(d, source="retry_sweep")
            return "resubmitted"

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, disbursement_id: uuid.UUID) -> Disbursement:
        """
        Resolve an unknown outcome by asking the provider.

        - provider reports success or failure: that outcome is applied
        - provider has no record (404): a fresh submission is made
        - the query itself fails: the record stays TIMEOUT, retry scheduled
        """
        return await asyncio.shield(self._reconcile(disbursement_id))

    async def _reconcile(self, disbursement_id: uuid.UUID) -> Disbursement:
        async with self._lock(disbursement_id):
            d = await self._get(disbursement_id)
            if S(d.status) not in (S.TIMEOUT, S.PROCESSING):
                return d
            return await self._reconcile_locked(d)

    async def _reconcile_locked(self, d: Disbursement) -> Disbursement:
        started = time.monotonic()
        status = S(d.status)
        try:
            credentials = await self.vault.get_credentials(d.tenant_id, d.provider)
            token = await self.token_manager.get_valid_token(d.tenant_id, d.provider)
            result = await self.registry.get(d.provider).get_transfer_status(
                token.access_token, credentials, d.provider_reference
            )
        except ProviderNotFoundError:
            await self._record_attempt(
                d, "status", "NOT_FOUND", started, d.provider_reference, http_status_code=404
            )
            logger.info(
                "reconcile_no_provider_record",
                disbursement_id=str(d.id),
                provider_reference=d.provider_reference,
            )
            if status == S.TIMEOUT:
                return await self._submit_locked(d, source="reconcile")
            return d
        except (ProviderTimeoutError, ProviderError, ProviderAuthError) as e:
            await self._record_attempt(d, "status", "ERROR", started, d.provider_reference)
            logger.warning(
                "reconcile_query_failed",
                disbursement_id=str(d.id),
                error_code=e.error_code,
                error=e.message,
            )
            if status == S.TIMEOUT:
                return await self._schedule_retry(d)
            return d

        await self._record_attempt(
            d,
            "status",
            result.status.value,
            started,
            d.provider_reference,
            http_status_code=result.http_status,
            response_payload=result.response,
        )
        logger.info(
            "reconcile_status_received",
            disbursement_id=str(d.id),
            provider_status=result.status.value,
        )
        if result.status == ProviderStatus.PENDING and status == S.TIMEOUT:
            return await self._schedule_retry(d)
        return await self._apply_result(d, result, source="reconcile")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def apply_webhook(
        self,
        transaction_id: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> Disbursement:
        """
        Apply a provider callback to the matching disbursement.

        transaction_id matches the provider reference, the refund reference or
        (tenant-scoped) the externalId.

        Raises:
            ValidationError: Unknown provider status
            NotFoundError: No matching disbursement
            InvalidTransitionError: Transition not legal from current state
        """
        try:
            map_provider_status(status)
        except ValueError:
            raise ValidationError(f"Unknown provider status: {status}")

        disbursement_id = await self._find_for_webhook(transaction_id, tenant_id)
        return await asyncio.shield(
            self._apply_webhook(disbursement_id, status.upper(), details or {})
        )

    async def _find_for_webhook(
        self, transaction_id: str, tenant_id: Optional[str]
    ) -> uuid.UUID:
        conditions = [
            Disbursement.provider_reference == transaction_id,
            Disbursement.refund_reference == transaction_id,
        ]
        if tenant_id is not None:
            conditions.append(Disbursement.external_id == transaction_id)
        stmt = select(Disbursement.id).where(or_(*conditions))
        if tenant_id is not None:
            stmt = stmt.where(Disbursement.tenant_id == tenant_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(1))
            disbursement_id = result.scalar_one_or_none()
        if disbursement_id is None:
            raise NotFoundError(f"No disbursement for transaction {transaction_id}")
        return disbursement_id

    async def _apply_webhook(
        self, disbursement_id: uuid.UUID, status: str, details: Dict[str, Any]
    ) -> Disbursement:
        async with self._lock(disbursement_id):
            d = await self._get(disbursement_id)
            current = S(d.status)
            target = map_provider_status(status, current)
            if target is None:
                logger.info("webhook_pending_ignored", disbursement_id=str(d.id))
                return d
            if target == current:
                logger.info(
                    "webhook_status_already_applied",
                    disbursement_id=str(d.id),
                    status=current.value,
                )
                return d
            if current == S.SUCCESS and target == S.FAILED:
                # Provider reversed a payout it had confirmed
                target = S.BOUNCED

            reason = details.get("reason") or {}
            if isinstance(reason, str):
                reason = {"code": reason}
            code = reason.get("code") or details.get("code") or status
            message = reason.get("message") or details.get("message") or f"Provider reported {status}"

            if target == S.SUCCESS:
                return await self._transition(
                    d,
                    target,
                    "webhook",
                    completed_at=utcnow(),
                    next_retry_at=None,
                    error_details=None,
                )
            if target == S.FAILED:
                retryable = webhook_failure_retryable(code)
                d = await self._transition(
                    d,
                    target,
                    "webhook",
                    error_details={"code": code, "message": message, "retryable": retryable},
                    next_retry_at=None,
                )
                if retryable:
                    d = await self._schedule_retry(d)
                return d
            if target in (S.REFUNDED, S.BOUNCED):
                return await self._transition(d, target, "webhook", completed_at=utcnow())
            return await self._transition(
                d,
                target,
                "webhook",
                error_details={"code": code, "message": message, "retryable": False},
            )

    # ------------------------------------------------------------------
    # Refunds, balance, expiry
    # ------------------------------------------------------------------

    async def refund(self, tenant_id: str, external_id: str) -> Disbursement:
        """
        Reverse a successful disbursement.

        Raises:
            NotFoundError: Unknown externalId
            InvalidTransitionError: Record is not in SUCCESS
        """
        d = await self.get_status(tenant_id, external_id=external_id)
        return await asyncio.shield(self._refund(d.id))

    async def _refund(self, disbursement_id: uuid.UUID) -> Disbursement:
        async with self._lock(disbursement_id):
            d = await self._get(disbursement_id)
            refund_reference = str(uuid.uuid4())
            original_reference = d.provider_reference
            d = await self._transition(
                d, S.REFUND_PROCESSING, "refund", refund_reference=refund_reference
            )

            started = time.monotonic()
            request = TransferRequest(
                reference_id=refund_reference,
                external_id=d.external_id,
                amount=Decimal(d.amount).quantize(CENTS),
                currency=d.currency,
                payee_type=d.payee_type,
                payee_id=d.payee_id,
            )
            try:
                credentials = await self.vault.get_credentials(d.tenant_id, d.provider)
                token = await self.token_manager.get_valid_token(d.tenant_id, d.provider)
                result = await self.registry.get(d.provider).refund(
                    token.access_token, credentials, original_reference, request
                )
            except ProviderTimeoutError:
                await self._record_attempt(d, "refund", S.TIMEOUT.value, started, refund_reference)
                logger.warning("refund_outcome_unknown", disbursement_id=str(d.id))
                return d
            except (ProviderError, ProviderAuthError) as e:
                retryable = isinstance(e, ProviderError) and e.retryable
                await self._record_attempt(
                    d,
                    "refund",
                    "ERROR",
                    started,
                    refund_reference,
                    http_status_code=getattr(e, "status_code", None),
                )
                details = {
                    "code": getattr(e, "provider_code", e.error_code),
                    "message": e.message,
                    "retryable": retryable,
                }
                if retryable:
                    # Left for the callback or an operator
                    return await self._apply(
                        d, "refund", lambda _: (None, {"error_details": details})
                    )
                return await self._transition(d, S.REFUND_FAILED, "refund", error_details=details)

            await self._record_attempt(
                d,
                "refund",
                result.status.value,
                started,
                refund_reference,
                http_status_code=result.http_status,
                request_payload=result.request,
                response_payload=result.response,
            )
            target = map_provider_status(result.status.value, S.REFUND_PROCESSING)
            if target is None:
                return d
            if target == S.REFUNDED:
                return await self._transition(d, target, "refund", completed_at=utcnow())
            return await self._transition(
                d,
                target,
                "refund",
                error_details={
                    "code": result.error_code or result.status.value,
                    "message": result.message,
                    "retryable": False,
                },
            )

    async def get_balance(self, tenant_id: str, provider: str) -> BalanceResult:
        """Query the tenant's available balance with the provider."""
        provider = self.registry.get(provider).provider.value
        credentials = await self.vault.get_credentials(tenant_id, provider)
        token = await self.token_manager.get_valid_token(tenant_id, provider)
        return await self.registry.get(provider).get_balance(token.access_token, credentials)

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """
        Fail PENDING disbursements past expires_at with code EXPIRED.

        Returns:
            int: Number of records expired
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Disbursement.id).where(
                    Disbursement.status == S.PENDING.value,
                    Disbursement.expires_at.is_not(None),
                    Disbursement.expires_at <= now,
                )
            )
            stale_ids = list(result.scalars().all())

        expired = 0
        for disbursement_id in stale_ids:
            async with self._lock(disbursement_id):
                d = await self._get(disbursement_id)
                if S(d.status) != S.PENDING:
                    continue
                await self._transition(
                    d,
                    S.FAILED,
                    "expiry",
                    error_details={
                        "code": "EXPIRED",
                        "message": "Disbursement was never submitted",
                        "retryable": False,
                    },
                )
                expired += 1

        if expired:
            logger.info("disbursements_expired", count=expired)
        return expired
