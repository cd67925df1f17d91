"""
Unit Tests for Deposit Settlement

Tests cover:
1. Deposit submission and tx hash uniqueness
2. Confirmation credits balance exactly once
3. Failure transitions
"""

import pytest
from decimal import Decimal
from uuid import UUID

from profit_ledger.errors import (
    AlreadySettledError,
    DuplicateTxHashError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from profit_ledger.models import DepositStatus, ReferenceType, TransactionType

# Test constants
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


class TestSubmitDeposit:
    """Tests for deposit submission."""

    def test_submit_creates_pending_deposit(self, service):
        """Test that a submitted deposit is pending and moves no funds."""
        deposit = service.submit_deposit(USER_ID, Decimal("250"), "TRC20", "tx-submit-001")

        assert deposit.status == DepositStatus.PENDING
        assert deposit.amount == Decimal("250")
        assert deposit.confirmed_at is None

        balance = service.get_balance(USER_ID)
        assert balance.balance == Decimal("0")
        assert balance.available_balance == Decimal("0")

    def test_duplicate_tx_hash_rejected(self, service):
        """Test that a tx hash cannot back two deposits."""
        service.submit_deposit(USER_ID, Decimal("100"), "TRC20", "tx-dup-001")

        with pytest.raises(DuplicateTxHashError):
            service.submit_deposit(USER_ID, Decimal("100"), "TRC20", "tx-dup-001")

    def test_non_positive_amount_rejected(self, service):
        with pytest.raises(InvalidRequestError):
            service.submit_deposit(USER_ID, Decimal("0"), "TRC20", "tx-zero-001")


class TestConfirmDeposit:
    """Tests for the confirm deposit flow."""

    def test_confirm_credits_balance(self, service):
        """Test the 250 USDT confirmation scenario."""
        deposit = service.submit_deposit(USER_ID, Decimal("250"), "TRC20", "tx-confirm-001")

        response = service.confirm_deposit(deposit.id)

        # Verify deposit settled
        assert response.deposit.status == DepositStatus.CONFIRMED
        assert response.deposit.confirmed_at is not None

        # Verify ledger entry
        entry = response.ledger_entry
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.amount == Decimal("250")
        assert entry.balance_after - entry.balance_before == Decimal("250")
        assert entry.reference_type == ReferenceType.DEPOSIT
        assert entry.reference_id == deposit.id

        # Verify both balance fields moved
        balance = service.get_balance(USER_ID)
        assert balance.balance == Decimal("250")
        assert balance.available_balance == Decimal("250")
        assert balance.invested_balance == Decimal("0")

    def test_confirm_twice_credits_once(self, service):
        """Test that re-delivery of the confirm trigger does not double credit."""
        deposit = service.submit_deposit(USER_ID, Decimal("250"), "TRC20", "tx-confirm-002")
        service.confirm_deposit(deposit.id)

        with pytest.raises(AlreadySettledError):
            service.confirm_deposit(deposit.id)

        balance = service.get_balance(USER_ID)
        assert balance.balance == Decimal("250")

        history = service.get_ledger_history(USER_ID)
        assert history.total_count == 1

    def test_confirm_accumulates_on_existing_balance(self, service):
        """Test before/after balances on a second deposit."""
        first = service.submit_deposit(USER_ID, Decimal("100"), "TRC20", "tx-acc-001")
        second = service.submit_deposit(USER_ID, Decimal("40.5"), "BEP20", "tx-acc-002")
        service.confirm_deposit(first.id)

        response = service.confirm_deposit(second.id)

        assert response.ledger_entry.balance_before == Decimal("100")
        assert response.ledger_entry.balance_after == Decimal("140.5")
        assert service.get_balance(USER_ID).balance == Decimal("140.5")

    def test_confirm_missing_deposit(self, service):
        with pytest.raises(NotFoundError):
            service.confirm_deposit(9999)


class TestFailDeposit:
    """Tests for marking deposits failed."""

    def test_failed_deposit_cannot_be_confirmed(self, service):
        """Test that only pending deposits may credit balance."""
        deposit = service.submit_deposit(USER_ID, Decimal("75"), "TRC20", "tx-fail-001")

        failed = service.fail_deposit(deposit.id, "Transfer not found on chain")
        assert failed.status == DepositStatus.FAILED
        assert failed.failure_reason == "Transfer not found on chain"

        with pytest.raises(AlreadySettledError):
            service.confirm_deposit(deposit.id)

        assert service.get_balance(USER_ID).balance == Decimal("0")

    def test_cannot_fail_confirmed_deposit(self, service):
        deposit = service.submit_deposit(USER_ID, Decimal("75"), "TRC20", "tx-fail-002")
        service.confirm_deposit(deposit.id)

        with pytest.raises(InvalidStateError):
            service.fail_deposit(deposit.id, "Too late")
