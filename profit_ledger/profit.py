"""
Daily profit distribution.

A run passes the idempotency gate, records itself as "running", then credits
each eligible investment in its own transaction so that one failing row
cannot roll back profit already credited to others. Exactly-once crediting
per investment and day rests on three checks made under the investment row
lock: the investment is still active, its next_profit_date is due, and no
profit entry exists yet for the run date. The due date then advances through
a compare-and-set UPDATE, so two overlapping runs cannot both claim it.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from . import tables
from .accounts import AVAILABLE, BALANCE, AccountBalances
from .clock import Clock, utcnow
from .database import managed_session
from .journal import JournalStore
from .levels import daily_profit
from .models import InvestmentStatus, ReferenceType, RunResult, RunType, TransactionType
from .runs import RunLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfitCredit:
    user_id: UUID
    amount: Decimal


class ProfitDistributionEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        run_ledger: Optional[RunLedger] = None,
        clock: Optional[Clock] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or utcnow
        self.run_ledger = run_ledger or RunLedger(session_factory, self.clock)

    def run_daily_profit_distribution(self, run_date: Optional[date] = None) -> RunResult:
        """Credit one day of profit to every due investment.

        Raises AlreadyRunError if a completed run already exists for the date.
        """
        today = run_date or self.clock().date()
        run_id = self.run_ledger.open(today, RunType.DAILY)

        eligible = self.eligible_investments(today)
        logger.info("Profit run %s: %s investments due on %s", run_id, len(eligible), today)

        credited_users: set[UUID] = set()
        total_profit = Decimal("0")
        credited = 0
        skipped = 0
        errors: list[str] = []

        for investment_id in eligible:
            try:
                credit = self.distribute(investment_id, today)
            except Exception as e:
                logger.exception("Profit distribution failed for investment %s", investment_id)
                errors.append(f"Failed to distribute profit for investment {investment_id}: {e}")
                continue

            if credit is None:
                skipped += 1
                continue

            credited += 1
            credited_users.add(credit.user_id)
            total_profit += credit.amount

        run = self.run_ledger.finalize(
            run_id,
            total_investments=len(eligible),
            users_credited=len(credited_users),
            total_profit=total_profit,
            errors=errors,
        )
        return RunResult(
            run_id=run.id,
            run_date=today,
            status=run.status,
            total_investments=len(eligible),
            investments_credited=credited,
            investments_skipped=skipped,
            users_credited=len(credited_users),
            total_profit_distributed=total_profit,
            errors=run.error_details,
        )

    def eligible_investments(self, today: date) -> list[int]:
        with managed_session(self.session_factory) as session:
            return list(session.scalars(
                select(tables.Investment.id)
                .where(
                    tables.Investment.status == InvestmentStatus.ACTIVE,
                    tables.Investment.next_profit_date <= today,
                )
                .order_by(tables.Investment.created_at.asc(), tables.Investment.id.asc())
            ))

    def distribute(self, investment_id: int, today: date) -> Optional[ProfitCredit]:
        """Credit one investment for today, or return None if nothing is due."""
        with managed_session(self.session_factory) as session:
            investment = session.scalars(
                select(tables.Investment)
                .where(tables.Investment.id == investment_id)
                .with_for_update()
            ).one_or_none()

            if (
                investment is None
                or investment.status != InvestmentStatus.ACTIVE
                or investment.next_profit_date > today
            ):
                return None

            journal = JournalStore(session)
            if journal.has_profit_for(investment.id, today):
                logger.info("Investment %s already credited for %s", investment.id, today)
                return None

            principal = journal.original_principal(investment.id)
            amount = daily_profit(principal, investment.profit_rate)
            if amount <= 0:
                return None

            now = self.clock()
            due_date = investment.next_profit_date
            # Compare-and-set on the due date: a concurrent run that already
            # advanced this investment leaves nothing to match
            advanced = session.execute(
                update(tables.Investment)
                .where(
                    tables.Investment.id == investment.id,
                    tables.Investment.status == InvestmentStatus.ACTIVE,
                    tables.Investment.next_profit_date == due_date,
                )
                .values(next_profit_date=due_date + timedelta(days=1), updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if advanced != 1:
                logger.info("Investment %s was advanced by another run", investment.id)
                return None

            balances = AccountBalances(session, self.clock)
            account = balances.lock(investment.user_id)
            balance_before = account.available_balance
            balances.credit(account, amount, BALANCE, AVAILABLE)

            journal.append(
                user_id=investment.user_id,
                transaction_type=TransactionType.PROFIT,
                amount=amount,
                balance_before=balance_before,
                balance_after=account.available_balance,
                reference_type=ReferenceType.INVESTMENT,
                reference_id=investment.id,
                accrual_date=today,
                description=(
                    f"Daily profit - Level {investment.level} ({investment.profit_rate}%) - "
                    f"Principal {principal} - Accrued {today.isoformat()}"
                ),
                details={"principal": str(principal), "profit_rate": str(investment.profit_rate)},
                created_at=now,
            )

            investment.next_profit_date = due_date + timedelta(days=1)
            investment.last_profit_date = now
            investment.total_profit_earned = investment.total_profit_earned + amount

            logger.debug("Investment %s credited %s to user %s", investment.id, amount, investment.user_id)
            return ProfitCredit(user_id=investment.user_id, amount=amount)
