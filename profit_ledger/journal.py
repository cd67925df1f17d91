import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import tables
from .errors import NotFoundError
from .models import ReferenceType, TransactionType

logger = logging.getLogger(__name__)


class JournalStore:
    """Append-only access to ledger_entries within one transaction.

    There is no update or delete path. Every append must be made
    in the same session that changes the account row it describes.
    """

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        *,
        user_id: UUID,
        transaction_type: TransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        description: str,
        created_at: datetime,
        reference_type: Optional[ReferenceType] = None,
        reference_id: Optional[int] = None,
        accrual_date: Optional[date] = None,
        details: Optional[dict] = None,
    ) -> tables.JournalEntry:
        if balance_after - balance_before != amount:
            raise ValueError(
                f"Entry amount {amount} does not match balance movement "
                f"{balance_before} -> {balance_after}"
            )

        entry = tables.JournalEntry(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_type=reference_type,
            reference_id=reference_id,
            accrual_date=accrual_date,
            description=description,
            details=details or {},
            created_at=created_at,
        )
        self.session.add(entry)
        self.session.flush()

        logger.debug(
            "Journal %s entry %s for user %s: %s",
            transaction_type.value, entry.id, user_id, amount,
        )
        return entry

    def sum(
        self,
        user_id: UUID,
        transaction_type: Optional[TransactionType] = None,
        reference_id: Optional[int] = None,
        reference_type: Optional[ReferenceType] = None,
    ) -> Decimal:
        criteria = [tables.JournalEntry.user_id == user_id]
        if transaction_type is not None:
            criteria.append(tables.JournalEntry.transaction_type == transaction_type)
        if reference_type is not None:
            criteria.append(tables.JournalEntry.reference_type == reference_type)
        if reference_id is not None:
            criteria.append(tables.JournalEntry.reference_id == reference_id)

        if not self.session.get_bind().dialect.supports_native_decimal:
            # SQL SUM would go through floating point here
            amounts = self.session.scalars(select(tables.JournalEntry.amount).where(*criteria))
            return sum(amounts, Decimal("0"))

        total = self.session.scalar(
            select(func.coalesce(func.sum(tables.JournalEntry.amount), 0)).where(*criteria)
        )
        return Decimal(str(total))

    def original_principal(self, investment_id: int) -> Decimal:
        """Principal recorded by the first investment entry for an investment."""
        first_entry = self.session.scalars(
            select(tables.JournalEntry)
            .where(
                tables.JournalEntry.transaction_type == TransactionType.INVESTMENT,
                tables.JournalEntry.reference_type == ReferenceType.INVESTMENT,
                tables.JournalEntry.reference_id == investment_id,
            )
            .order_by(tables.JournalEntry.created_at.asc(), tables.JournalEntry.id.asc())
            .limit(1)
        ).first()

        if first_entry is None:
            raise NotFoundError(f"No principal entry recorded for investment {investment_id}")

        # Investment entries move funds out of available_balance, so they are negative
        return abs(first_entry.amount)

    def has_profit_for(self, investment_id: int, accrual_date: date) -> bool:
        existing = self.session.scalar(
            select(tables.JournalEntry.id).where(
                tables.JournalEntry.transaction_type == TransactionType.PROFIT,
                tables.JournalEntry.reference_type == ReferenceType.INVESTMENT,
                tables.JournalEntry.reference_id == investment_id,
                tables.JournalEntry.accrual_date == accrual_date,
            )
        )
        return existing is not None

    def entries(
        self,
        user_id: UUID,
        transaction_type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[tables.JournalEntry]:
        stmt = select(tables.JournalEntry).where(tables.JournalEntry.user_id == user_id)
        if transaction_type is not None:
            stmt = stmt.where(tables.JournalEntry.transaction_type == transaction_type)
        stmt = stmt.order_by(tables.JournalEntry.created_at.desc(), tables.JournalEntry.id.desc())
        return list(self.session.scalars(stmt.limit(limit).offset(offset)))

    def count(self, user_id: UUID, transaction_type: Optional[TransactionType] = None) -> int:
        stmt = select(func.count(tables.JournalEntry.id)).where(tables.JournalEntry.user_id == user_id)
        if transaction_type is not None:
            stmt = stmt.where(tables.JournalEntry.transaction_type == transaction_type)
        return self.session.scalar(stmt) or 0
