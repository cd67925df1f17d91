"""
Shared fixtures for the ledger test suites.

Each test gets its own in-memory SQLite database and a frozen clock that
tests advance explicitly. Tests that run operations from several threads use
a database file instead.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import pytest

from profit_ledger import tables
from profit_ledger.accounts import AVAILABLE, INVESTED, AccountBalances
from profit_ledger.database import create_db_engine, create_session_factory, init_schema, managed_session
from profit_ledger.journal import JournalStore
from profit_ledger.models import InvestmentStatus, ReferenceType, TransactionType
from profit_ledger.service import LedgerService


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def today(self) -> date:
        return self.now.date()

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://", echo=False)
    init_schema(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def service(session_factory, clock):
    return LedgerService(session_factory, clock=clock)


@pytest.fixture
def file_session_factory(tmp_path):
    """A database file, so concurrent sessions get their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}", echo=False)
    init_schema(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def file_service(file_session_factory, clock):
    return LedgerService(file_session_factory, clock=clock)


@pytest.fixture
def fund(service):
    """Deposit and confirm an amount for a user."""
    def _fund(user_id: UUID, amount: Decimal):
        deposit = service.submit_deposit(user_id, amount, "TRC20", f"0x{uuid4().hex}")
        return service.confirm_deposit(deposit.id)
    return _fund


@pytest.fixture
def seed_investment(session_factory, clock, fund):
    """Create a funded active investment with an arbitrary rate and due date.

    Bypasses plan levels and the one-active-investment rule so profit tests
    can set up exact scenarios.
    """
    def _seed(
        user_id: UUID,
        principal: Decimal,
        rate: Decimal,
        next_profit_date: Optional[date] = None,
        with_principal_entry: bool = True,
    ) -> int:
        fund(user_id, principal)
        with managed_session(session_factory) as session:
            now = clock()
            balances = AccountBalances(session, clock)
            account = balances.lock(user_id)
            balance_before = account.available_balance
            balances.debit(account, principal, AVAILABLE)
            balances.credit(account, principal, INVESTED)

            investment = tables.Investment(
                user_id=user_id,
                amount=principal,
                level=1,
                profit_rate=rate,
                status=InvestmentStatus.ACTIVE,
                next_profit_date=next_profit_date or now.date(),
                total_profit_earned=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            session.add(investment)
            session.flush()

            if with_principal_entry:
                JournalStore(session).append(
                    user_id=user_id,
                    transaction_type=TransactionType.INVESTMENT,
                    amount=-principal,
                    balance_before=balance_before,
                    balance_after=account.available_balance,
                    reference_type=ReferenceType.INVESTMENT,
                    reference_id=investment.id,
                    description="Seeded investment",
                    created_at=now,
                )
            return investment.id
    return _seed
