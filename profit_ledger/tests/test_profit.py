"""
Unit Tests for the Profit Distribution Engine

Tests cover:
1. Daily credit scenario and next_profit_date advancement
2. Run-level idempotency (double scheduler fire)
3. Non-compounding profit from the original principal
4. Per-investment, per-day uniqueness across partial runs
5. Partial-failure isolation
6. Run ledger history and stale-run reconciliation
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update

from profit_ledger import tables
from profit_ledger.database import managed_session
from profit_ledger.errors import AlreadyRunError
from profit_ledger.models import RunStatus, TransactionType

# Test constants
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


def profit_entries(session_factory, investment_id):
    with managed_session(session_factory) as session:
        return list(session.scalars(
            select(tables.JournalEntry).where(
                tables.JournalEntry.transaction_type == TransactionType.PROFIT,
                tables.JournalEntry.reference_id == investment_id,
            ).order_by(tables.JournalEntry.id)
        ))


class TestDailyDistribution:
    """Tests for a single day's distribution."""

    def test_credits_daily_profit(self, service, session_factory, clock, seed_investment):
        """Test principal 1000 at 0.5% due today credits 5.00."""
        investment_id = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        before = service.get_balance(USER_ID)

        result = service.run_daily_profit_distribution()

        # Verify run outcome
        assert result.status == RunStatus.COMPLETED
        assert result.total_investments == 1
        assert result.investments_credited == 1
        assert result.users_credited == 1
        assert result.total_profit_distributed == Decimal("5.00")
        assert result.errors == []

        # Verify balances
        after = service.get_balance(USER_ID)
        assert after.available_balance - before.available_balance == Decimal("5.00")
        assert after.balance - before.balance == Decimal("5.00")
        assert after.invested_balance == before.invested_balance

        # Verify journal
        entries = profit_entries(session_factory, investment_id)
        assert len(entries) == 1
        assert entries[0].amount == Decimal("5.00")
        assert entries[0].accrual_date == clock.today()
        assert entries[0].balance_after - entries[0].balance_before == Decimal("5.00")

        # Verify schedule advanced by one day
        investment = service.get_investment(investment_id)
        assert investment.next_profit_date == clock.today() + timedelta(days=1)
        assert investment.total_profit_earned == Decimal("5.00")
        assert investment.last_profit_date is not None

    def test_second_run_same_day_is_rejected(self, service, session_factory, clock, seed_investment):
        """Test that a duplicate scheduler fire credits nothing."""
        investment_id = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        service.run_daily_profit_distribution()
        balance = service.get_balance(USER_ID)

        with pytest.raises(AlreadyRunError):
            service.run_daily_profit_distribution()

        assert service.get_balance(USER_ID) == balance
        assert len(profit_entries(session_factory, investment_id)) == 1
        # The rejected fire leaves no run row behind
        assert len(service.get_run_history()) == 1

    def test_not_yet_due_investment_skipped(self, service, clock, fund):
        """Test that a freshly opened investment earns from tomorrow."""
        fund(USER_ID, Decimal("1000"))
        service.open_investment(USER_ID, Decimal("1000"))

        result = service.run_daily_profit_distribution()

        assert result.total_investments == 0
        assert result.total_profit_distributed == Decimal("0")

        clock.advance(days=1)
        result = service.run_daily_profit_distribution()

        # Starter plan: 1000 * 0.3% = 3
        assert result.investments_credited == 1
        assert result.total_profit_distributed == Decimal("3")

    def test_cancelled_investment_not_credited(self, service, clock, fund):
        fund(USER_ID, Decimal("1000"))
        investment = service.open_investment(USER_ID, Decimal("1000")).investment
        service.cancel_investment(investment.id)
        clock.advance(days=1)

        result = service.run_daily_profit_distribution()

        assert result.total_investments == 0
        assert service.get_balance(USER_ID).available_balance == Decimal("1000")

    def test_zero_profit_is_skipped_not_failed(self, service, clock, seed_investment):
        """Test that a zero-rate investment is skipped without an error."""
        investment_id = seed_investment(USER_ID, Decimal("1000"), Decimal("0"), clock.today())

        result = service.run_daily_profit_distribution()

        assert result.status == RunStatus.COMPLETED
        assert result.investments_skipped == 1
        assert result.investments_credited == 0
        assert service.get_investment(investment_id).next_profit_date == clock.today()


class TestNonCompounding:
    """Tests that profit is always computed from the original principal."""

    def test_same_profit_every_day(self, service, session_factory, clock, seed_investment):
        investment_id = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())

        for _ in range(3):
            service.run_daily_profit_distribution()
            clock.advance(days=1)

        entries = profit_entries(session_factory, investment_id)
        assert [e.amount for e in entries] == [Decimal("5.00")] * 3
        assert service.get_investment(investment_id).total_profit_earned == Decimal("15.00")

    def test_mutated_amount_column_is_ignored(self, service, session_factory, clock, seed_investment):
        """Test that touching investments.amount does not change profit."""
        investment_id = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        with managed_session(session_factory) as session:
            session.execute(
                update(tables.Investment)
                .where(tables.Investment.id == investment_id)
                .values(amount=Decimal("5000"))
            )

        result = service.run_daily_profit_distribution()

        assert result.total_profit_distributed == Decimal("5.00")


class TestMultipleInvestments:
    """Tests for batches spanning several investments and users."""

    def test_same_user_investments_credited_separately(self, service, session_factory, clock, seed_investment):
        """Test that two investments of one user get two entries."""
        first = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        second = seed_investment(USER_ID, Decimal("2000"), Decimal("0.4"), clock.today())

        result = service.run_daily_profit_distribution()

        assert result.investments_credited == 2
        assert result.users_credited == 1
        assert result.total_profit_distributed == Decimal("13.00")
        assert len(profit_entries(session_factory, first)) == 1
        assert len(profit_entries(session_factory, second)) == 1

    def test_processing_order_is_oldest_first(self, service, clock, seed_investment):
        older = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        clock.advance(minutes=5)
        newer = seed_investment(OTHER_USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())

        assert service.engine.eligible_investments(clock.today()) == [older, newer]

    def test_failing_investment_does_not_block_others(self, service, session_factory, clock, seed_investment):
        """Test partial-failure isolation."""
        broken = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today(), with_principal_entry=False)
        healthy = seed_investment(OTHER_USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())

        result = service.run_daily_profit_distribution()

        assert result.status == RunStatus.PARTIAL
        assert result.investments_credited == 1
        assert len(result.errors) == 1
        assert f"investment {broken}" in result.errors[0]
        assert len(profit_entries(session_factory, healthy)) == 1
        assert len(profit_entries(session_factory, broken)) == 0

        # The broken investment is untouched and stays due
        assert service.get_investment(broken).next_profit_date == clock.today()

        run = service.get_run_history()[0]
        assert run.status == RunStatus.PARTIAL
        assert run.errors_count == 1

    def test_partial_run_retry_does_not_double_credit(self, service, session_factory, clock, seed_investment):
        """Test per-day uniqueness when an overdue investment is re-evaluated."""
        seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today(), with_principal_entry=False)
        overdue = seed_investment(OTHER_USER_ID, Decimal("1000"), Decimal("0.5"), clock.today() - timedelta(days=3))

        first = service.run_daily_profit_distribution()
        assert first.status == RunStatus.PARTIAL

        # Partial runs do not close the day, so a retry is allowed
        retry = service.run_daily_profit_distribution()

        assert retry.status == RunStatus.PARTIAL
        assert retry.investments_credited == 0
        assert retry.investments_skipped == 1
        assert len(profit_entries(session_factory, overdue)) == 1
        assert service.get_investment(overdue).next_profit_date == clock.today() - timedelta(days=2)

    def test_overdue_investment_catches_up_one_day_per_run(self, service, session_factory, clock, seed_investment):
        overdue = seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today() - timedelta(days=1))

        service.run_daily_profit_distribution()
        clock.advance(days=1)
        service.run_daily_profit_distribution()

        entries = profit_entries(session_factory, overdue)
        assert len(entries) == 2
        assert len({e.accrual_date for e in entries}) == 2
        # The description names the same day the entry accrued for
        for entry in entries:
            assert entry.description.endswith(f"Accrued {entry.accrual_date.isoformat()}")
        assert service.get_investment(overdue).next_profit_date == clock.today()


class TestRunLedger:
    """Tests for run history and recovery."""

    def test_history_newest_first(self, service, clock, seed_investment):
        seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        first = service.run_daily_profit_distribution()
        clock.advance(days=1)
        second = service.run_daily_profit_distribution()

        history = service.get_run_history(limit=10)

        assert [r.id for r in history] == [second.run_id, first.run_id]
        assert history[0].total_profit_distributed == Decimal("5.00")
        assert history[0].total_users_credited == 1
        assert history[0].completed_at is not None

        assert [r.id for r in service.get_run_history(limit=1)] == [second.run_id]

    def test_stuck_running_row_does_not_block_or_count(self, service, clock, seed_investment):
        """Test that a crashed run is retryable and never counted as completed."""
        seed_investment(USER_ID, Decimal("1000"), Decimal("0.5"), clock.today())
        crashed_run = service.runs.open(clock.today())

        result = service.run_daily_profit_distribution()

        assert result.status == RunStatus.COMPLETED
        assert result.run_id != crashed_run
        statuses = {r.id: r.status for r in service.get_run_history()}
        assert statuses[crashed_run] == RunStatus.RUNNING

    def test_reconcile_marks_stale_runs_partial(self, service, clock):
        stale = service.runs.open(clock.today())
        clock.advance(hours=3)
        fresh = service.runs.open(clock.today())

        reconciled = service.reconcile_stale_runs(timedelta(hours=2))

        assert [r.id for r in reconciled] == [stale]
        assert reconciled[0].status == RunStatus.PARTIAL
        assert reconciled[0].errors_count == 1

        statuses = {r.id: r.status for r in service.get_run_history()}
        assert statuses[stale] == RunStatus.PARTIAL
        assert statuses[fresh] == RunStatus.RUNNING

    def test_concurrent_duplicate_finalizes_partial(self, service, clock):
        """Test that two overlapping fires cannot both finish completed."""
        first = service.runs.open(clock.today())
        second = service.runs.open(clock.today())

        winner = service.runs.finalize(first, 0, 0, Decimal("0"), [])
        loser = service.runs.finalize(second, 0, 0, Decimal("0"), [])

        assert winner.status == RunStatus.COMPLETED
        assert loser.status == RunStatus.PARTIAL
        assert f"Run {first} already completed" in loser.error_details[0]

        with pytest.raises(AlreadyRunError):
            service.run_daily_profit_distribution()
