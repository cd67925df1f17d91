import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from . import tables
from .accounts import AVAILABLE, INVESTED, AccountBalances
from .clock import Clock, utcnow
from .database import managed_session
from .errors import InvalidRequestError, InvalidStateError, NotFoundError
from .journal import JournalStore
from .levels import daily_profit, get_investment_level
from .models import (
    Investment,
    InvestmentResponse,
    InvestmentStatus,
    LedgerEntry,
    ReferenceType,
    TransactionType,
)

logger = logging.getLogger(__name__)


class InvestmentBook:
    """Opens and cancels investments.

    Opening writes the investment entry whose amount is the original
    principal; the profit engine reads that entry, never the mutable
    investments.amount column.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    def open(self, user_id: UUID, amount: Decimal) -> InvestmentResponse:
        level = get_investment_level(amount)
        if level is None:
            raise InvalidRequestError(f"Invalid investment amount for available plans: {amount}")

        with managed_session(self.session_factory) as session:
            balances = AccountBalances(session, self.clock)
            account = balances.lock(user_id)

            active = session.scalar(
                select(tables.Investment.id).where(
                    tables.Investment.user_id == user_id,
                    tables.Investment.status == InvestmentStatus.ACTIVE,
                )
            )
            if active is not None:
                raise InvalidStateError(
                    f"User {user_id} already has active investment {active}; only one is allowed at a time"
                )

            now = self.clock()
            balance_before = account.available_balance
            balances.debit(account, amount, AVAILABLE)
            balances.credit(account, amount, INVESTED)

            investment = tables.Investment(
                user_id=user_id,
                amount=amount,
                level=level.level,
                profit_rate=level.rate,
                status=InvestmentStatus.ACTIVE,
                next_profit_date=now.date() + timedelta(days=1),
                total_profit_earned=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            session.add(investment)
            session.flush()

            entry = JournalStore(session).append(
                user_id=user_id,
                transaction_type=TransactionType.INVESTMENT,
                amount=-amount,
                balance_before=balance_before,
                balance_after=account.available_balance,
                reference_type=ReferenceType.INVESTMENT,
                reference_id=investment.id,
                description=f"Investment created - Level {level.level} ({level.rate}% daily)",
                details={"level": level.level, "level_name": level.name, "profit_rate": str(level.rate)},
                created_at=now,
            )

            logger.info(
                "Investment %s opened for user %s: %s at level %s",
                investment.id, user_id, amount, level.level,
            )
            return InvestmentResponse(
                investment=Investment.model_validate(investment),
                ledger_entry=LedgerEntry.model_validate(entry),
                daily_profit=daily_profit(amount, level.rate),
                message="Investment created successfully. Profits will start from tomorrow.",
            )

    def cancel(self, investment_id: int) -> InvestmentResponse:
        with managed_session(self.session_factory) as session:
            now = self.clock()
            claimed = session.execute(
                update(tables.Investment)
                .where(
                    tables.Investment.id == investment_id,
                    tables.Investment.status == InvestmentStatus.ACTIVE,
                )
                .values(status=InvestmentStatus.CANCELLED, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount

            investment = session.get(tables.Investment, investment_id, populate_existing=True)
            if investment is None:
                raise NotFoundError(f"Investment {investment_id} not found")
            if claimed != 1:
                raise InvalidStateError(
                    f"Cannot cancel investment {investment_id} with status: {investment.status.value}"
                )

            journal = JournalStore(session)
            principal = journal.original_principal(investment.id)

            balances = AccountBalances(session, self.clock)
            account = balances.lock(investment.user_id)
            balance_before = account.available_balance
            balances.debit(account, principal, INVESTED)
            balances.credit(account, principal, AVAILABLE)

            entry = journal.append(
                user_id=investment.user_id,
                transaction_type=TransactionType.REFUND,
                amount=principal,
                balance_before=balance_before,
                balance_after=account.available_balance,
                reference_type=ReferenceType.INVESTMENT,
                reference_id=investment.id,
                description=f"Investment cancelled - Amount refunded: {principal}",
                created_at=now,
            )

            logger.info("Investment %s cancelled, %s returned to user %s", investment.id, principal, investment.user_id)
            return InvestmentResponse(
                investment=Investment.model_validate(investment),
                ledger_entry=LedgerEntry.model_validate(entry),
                daily_profit=Decimal("0"),
                message="Investment cancelled. Amount has been refunded to your available balance.",
            )

    def get(self, investment_id: int) -> Investment:
        with managed_session(self.session_factory) as session:
            investment = session.get(tables.Investment, investment_id)
            if investment is None:
                raise NotFoundError(f"Investment {investment_id} not found")
            return Investment.model_validate(investment)
