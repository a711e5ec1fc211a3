"""
Unit tests for the disbursement lifecycle graph and input normalization.
"""
from decimal import Decimal

import pytest

from momo_gateway.core.disbursements import (
    normalize_msisdn,
    validate_amount,
    validate_currency,
    webhook_failure_retryable,
)
from momo_gateway.core.errors import ValidationError
from momo_gateway.core.state_machine import (
    RETRYABLE_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    DisbursementStatus as S,
    compute_backoff,
    is_legal_transition,
    map_provider_status,
)


class TestTransitionGraph:
    """Test suite for the transition table."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.PROCESSING),
            (S.PROCESSING, S.SUCCESS),
            (S.PROCESSING, S.FAILED),
            (S.PROCESSING, S.TIMEOUT),
            (S.FAILED, S.PROCESSING),
            (S.TIMEOUT, S.PROCESSING),
            (S.TIMEOUT, S.SUCCESS),
            (S.TIMEOUT, S.FAILED),
            (S.SUCCESS, S.BOUNCED),
            (S.SUCCESS, S.REFUND_PROCESSING),
            (S.REFUND_PROCESSING, S.REFUNDED),
            (S.REFUND_PROCESSING, S.REFUND_FAILED),
        ],
    )
    def test_legal_edges(self, current: S, target: S) -> None:
        assert is_legal_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.SUCCESS),
            (S.SUCCESS, S.FAILED),
            (S.SUCCESS, S.PROCESSING),
            (S.FAILED, S.SUCCESS),
            (S.REFUNDED, S.SUCCESS),
            (S.BOUNCED, S.PROCESSING),
            (S.PROCESSING, S.PENDING),
        ],
    )
    def test_illegal_edges(self, current: S, target: S) -> None:
        assert not is_legal_transition(current, target)

    @pytest.mark.unit
    def test_terminal_states_have_no_exits(self) -> None:
        assert TERMINAL_STATES == {S.BOUNCED, S.REFUNDED, S.REFUND_FAILED}
        for state in TERMINAL_STATES:
            assert TRANSITIONS[state] == frozenset()

    @pytest.mark.unit
    def test_every_status_has_an_entry(self) -> None:
        assert set(TRANSITIONS) == set(S)

    @pytest.mark.unit
    def test_retryable_states(self) -> None:
        assert RETRYABLE_STATES == {S.FAILED, S.TIMEOUT}

    @pytest.mark.unit
    def test_accepts_plain_strings(self) -> None:
        assert is_legal_transition("PENDING", "PROCESSING")


class TestProviderStatusMapping:
    """Test suite for provider vocabulary mapping."""

    @pytest.mark.unit
    def test_disbursement_vocabulary(self) -> None:
        assert map_provider_status("SUCCESSFUL") == S.SUCCESS
        assert map_provider_status("failed") == S.FAILED
        assert map_provider_status("REJECTED") == S.FAILED
        assert map_provider_status("EXPIRED") == S.FAILED
        assert map_provider_status("PENDING") is None

    @pytest.mark.unit
    def test_refund_vocabulary_while_refund_in_flight(self) -> None:
        assert map_provider_status("SUCCESSFUL", S.REFUND_PROCESSING) == S.REFUNDED
        assert map_provider_status("FAILED", S.REFUND_PROCESSING) == S.REFUND_FAILED
        assert map_provider_status("PENDING", S.REFUND_PROCESSING) is None

    @pytest.mark.unit
    def test_unknown_status_raises(self) -> None:
        with pytest.raises(ValueError):
            map_provider_status("DONE")


class TestBackoff:
    """Test suite for retry backoff."""

    @pytest.mark.unit
    def test_doubles_per_retry(self) -> None:
        assert compute_backoff(1, 30, 600) == 30.0
        assert compute_backoff(2, 30, 600) == 60.0
        assert compute_backoff(3, 30, 600) == 120.0

    @pytest.mark.unit
    def test_capped(self) -> None:
        assert compute_backoff(10, 30, 600) == 600.0


class TestInputValidation:
    """Test suite for request normalization helpers."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("260971234567", "0971234567"),
            ("+260 971-234-567", "0971234567"),
            ("0971234567", "0971234567"),
            ("(097) 123 4567", "0971234567"),
        ],
    )
    def test_normalize_msisdn(self, raw: str, expected: str) -> None:
        assert normalize_msisdn(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "12345", "97123abc67", "+1 555 0100"])
    def test_normalize_msisdn_rejects(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            normalize_msisdn(raw)

    @pytest.mark.unit
    def test_validate_amount(self) -> None:
        assert validate_amount("100.50") == Decimal("100.50")
        assert validate_amount(5) == Decimal("5")

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", ["0", "-1", "1.005", "abc", "NaN"])
    def test_validate_amount_rejects(self, amount: str) -> None:
        with pytest.raises(ValidationError):
            validate_amount(amount)

    @pytest.mark.unit
    def test_validate_currency(self) -> None:
        assert validate_currency("zmw") == "ZMW"
        with pytest.raises(ValidationError):
            validate_currency("ZM")

    @pytest.mark.unit
    def test_webhook_failure_retryable(self) -> None:
        assert webhook_failure_retryable("INTERNAL_SERVER_ERROR")
        assert not webhook_failure_retryable("PAYEE_NOT_FOUND")
        assert webhook_failure_retryable(None)
