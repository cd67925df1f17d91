from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from . import tables
from .accounts import AccountBalances
from .clock import Clock, utcnow
from .config import Config
from .database import create_db_engine, create_session_factory, init_schema, managed_session
from .deposits import DepositSettlement
from .investments import InvestmentBook
from .journal import JournalStore
from .models import (
    AccountBalance,
    Deposit,
    DepositResponse,
    Investment,
    InvestmentResponse,
    LedgerEntry,
    LedgerHistoryResponse,
    ProfitHistoryItem,
    ProfitRun,
    ReconciliationReport,
    ReferenceType,
    RunResult,
    TransactionType,
    Withdrawal,
    WithdrawalResponse,
)
from .profit import ProfitDistributionEngine
from .runs import RunLedger
from .withdrawals import WithdrawalSettlement

ZERO = Decimal("0")


class LedgerService:
    """Entry point for every ledger trigger and read-only projection.

    Built around an injected session factory; there is no process-wide
    instance.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow
        self.deposits = DepositSettlement(session_factory, self.clock)
        self.withdrawals = WithdrawalSettlement(session_factory, self.clock)
        self.investments = InvestmentBook(session_factory, self.clock)
        self.runs = RunLedger(session_factory, self.clock)
        self.engine = ProfitDistributionEngine(session_factory, self.runs, self.clock)

    @classmethod
    def from_config(cls, database_url: Optional[str] = None, create_schema: bool = True) -> "LedgerService":
        engine = create_db_engine(database_url)
        if create_schema:
            init_schema(engine)
        return cls(create_session_factory(engine))

    # Deposits

    def submit_deposit(self, user_id: UUID, amount: Decimal, chain: str, tx_hash: str) -> Deposit:
        return self.deposits.submit(user_id, amount, chain, tx_hash)

    def confirm_deposit(self, deposit_id: int) -> DepositResponse:
        return self.deposits.confirm(deposit_id)

    def fail_deposit(self, deposit_id: int, reason: str) -> Deposit:
        return self.deposits.fail(deposit_id, reason)

    def get_deposit(self, deposit_id: int) -> Deposit:
        return self.deposits.get(deposit_id)

    # Withdrawals

    def request_withdrawal(self, user_id: UUID, amount: Decimal, chain: str, wallet_address: str) -> WithdrawalResponse:
        return self.withdrawals.request(user_id, amount, chain, wallet_address)

    def approve_withdrawal(self, withdrawal_id: int, tx_hash: str, admin_notes: Optional[str] = None) -> WithdrawalResponse:
        return self.withdrawals.approve(withdrawal_id, tx_hash, admin_notes)

    def reject_withdrawal(self, withdrawal_id: int, reason: str) -> WithdrawalResponse:
        return self.withdrawals.reject(withdrawal_id, reason)

    def get_withdrawal(self, withdrawal_id: int) -> Withdrawal:
        return self.withdrawals.get(withdrawal_id)

    # Investments

    def open_investment(self, user_id: UUID, amount: Decimal) -> InvestmentResponse:
        return self.investments.open(user_id, amount)

    def cancel_investment(self, investment_id: int) -> InvestmentResponse:
        return self.investments.cancel(investment_id)

    def get_investment(self, investment_id: int) -> Investment:
        return self.investments.get(investment_id)

    # Profit runs

    def run_daily_profit_distribution(self, run_date: Optional[date] = None) -> RunResult:
        return self.engine.run_daily_profit_distribution(run_date)

    def reconcile_stale_runs(self, older_than: Optional[timedelta] = None) -> list[ProfitRun]:
        if older_than is None:
            older_than = timedelta(minutes=Config.PROFIT_RUN_STALE_AFTER_MINUTES)
        return self.runs.reconcile_stale(older_than)

    def get_run_history(self, limit: Optional[int] = None) -> list[ProfitRun]:
        return self.runs.history(limit or Config.DEFAULT_RUN_HISTORY_LIMIT)

    # Read-only projections

    def get_balance(self, user_id: UUID) -> AccountBalance:
        with managed_session(self.session_factory) as session:
            account = AccountBalances(session).get(user_id)
            if account is None:
                return AccountBalance(
                    user_id=user_id,
                    currency=Config.CURRENCY,
                    balance=ZERO,
                    available_balance=ZERO,
                    invested_balance=ZERO,
                )
            return AccountBalance(
                user_id=user_id,
                currency=Config.CURRENCY,
                balance=account.balance,
                available_balance=account.available_balance,
                invested_balance=account.invested_balance,
                updated_at=account.updated_at,
            )

    def get_ledger_history(self, user_id: UUID, limit: Optional[int] = None, offset: int = 0) -> LedgerHistoryResponse:
        limit = limit or Config.DEFAULT_HISTORY_LIMIT
        with managed_session(self.session_factory) as session:
            journal = JournalStore(session)
            entries = [LedgerEntry.model_validate(e) for e in journal.entries(user_id, limit=limit, offset=offset)]
            total_count = journal.count(user_id)

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=total_count,
            current_balance=self.get_balance(user_id).balance,
        )

    def get_profit_history(self, user_id: UUID, limit: Optional[int] = None) -> list[ProfitHistoryItem]:
        limit = limit or Config.DEFAULT_HISTORY_LIMIT
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(tables.JournalEntry, tables.Investment)
                .outerjoin(
                    tables.Investment,
                    (tables.JournalEntry.reference_id == tables.Investment.id)
                    & (tables.JournalEntry.reference_type == ReferenceType.INVESTMENT),
                )
                .where(
                    tables.JournalEntry.user_id == user_id,
                    tables.JournalEntry.transaction_type == TransactionType.PROFIT,
                )
                .order_by(tables.JournalEntry.created_at.desc(), tables.JournalEntry.id.desc())
                .limit(limit)
            ).all()

            return [
                ProfitHistoryItem(
                    entry_id=entry.id,
                    investment_id=entry.reference_id,
                    amount=entry.amount,
                    accrual_date=entry.accrual_date,
                    description=entry.description,
                    investment_amount=investment.amount if investment else None,
                    profit_rate=investment.profit_rate if investment else None,
                    created_at=entry.created_at,
                )
                for entry, investment in rows
            ]

    def reconcile_account(self, user_id: UUID) -> ReconciliationReport:
        """Compare the cached balances with what the journal implies.

        Journal amounts are signed movements of available_balance, so their
        sum must equal it; invested_balance must equal principal moved into
        investments minus principal refunded from cancelled ones.
        """
        with managed_session(self.session_factory) as session:
            journal = JournalStore(session)
            journal_total = journal.sum(user_id)
            invested_out = journal.sum(user_id, TransactionType.INVESTMENT)
            invested_back = journal.sum(user_id, TransactionType.REFUND, reference_type=ReferenceType.INVESTMENT)
            expected_invested = -invested_out - invested_back

            account = AccountBalances(session).get(user_id)
            balance = account.balance if account else ZERO
            available = account.available_balance if account else ZERO
            invested = account.invested_balance if account else ZERO

        return ReconciliationReport(
            user_id=user_id,
            journal_total=journal_total,
            expected_invested=expected_invested,
            balance=balance,
            available_balance=available,
            invested_balance=invested,
            consistent=(
                journal_total == available
                and expected_invested == invested
                and balance == available + invested
            ),
        )
