import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from . import tables
from .clock import Clock, utcnow
from .errors import InsufficientFundsError, InvalidRequestError

logger = logging.getLogger(__name__)

BALANCE = "balance"
AVAILABLE = "available_balance"
INVESTED = "invested_balance"
BALANCE_FIELDS = (BALANCE, AVAILABLE, INVESTED)

ZERO = Decimal("0")


class AccountBalances:
    """Row-locked mutations of the three balance aggregates.

    Callers lock the account first, then credit/debit the fields an event
    touches and append the matching journal entry in the same session.
    Locks are per account row, so different users never contend.
    """

    def __init__(self, session: Session, clock: Optional[Clock] = None):
        self.session = session
        self.clock = clock or utcnow

    def get(self, user_id: UUID) -> Optional[tables.Account]:
        return self.session.scalars(
            select(tables.Account).where(tables.Account.user_id == user_id)
        ).one_or_none()

    def lock(self, user_id: UUID) -> tables.Account:
        account = self._select_for_update(user_id)
        if account is None:
            self._insert_if_missing(user_id)
            account = self._select_for_update(user_id)
        return account

    def credit(self, account: tables.Account, amount: Decimal, *fields: str) -> tables.Account:
        self._check_amount(amount, fields)
        for field in fields:
            setattr(account, field, getattr(account, field) + amount)
        account.updated_at = self.clock()
        return account

    def debit(self, account: tables.Account, amount: Decimal, *fields: str) -> tables.Account:
        self._check_amount(amount, fields)
        for field in fields:
            current = getattr(account, field)
            if current - amount < ZERO:
                raise InsufficientFundsError(
                    f"Insufficient {field} for user {account.user_id}: "
                    f"has {current}, needs {amount}"
                )
        for field in fields:
            setattr(account, field, getattr(account, field) - amount)
        account.updated_at = self.clock()
        return account

    def _check_amount(self, amount: Decimal, fields: tuple) -> None:
        if amount <= ZERO:
            raise InvalidRequestError(f"Balance movements must be positive, got {amount}")
        unknown = set(fields) - set(BALANCE_FIELDS)
        if not fields or unknown:
            raise ValueError(f"Unknown balance fields: {sorted(unknown) or 'none given'}")

    def _select_for_update(self, user_id: UUID) -> Optional[tables.Account]:
        return self.session.scalars(
            select(tables.Account)
            .where(tables.Account.user_id == user_id)
            .with_for_update()
        ).one_or_none()

    def _insert_if_missing(self, user_id: UUID) -> None:
        now = self.clock()
        values = dict(
            user_id=user_id,
            balance=ZERO,
            available_balance=ZERO,
            invested_balance=ZERO,
            created_at=now,
            updated_at=now,
        )
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(tables.Account).values(**values).on_conflict_do_nothing(
                index_elements=["user_id"]
            )
        elif dialect == "sqlite":
            stmt = sqlite.insert(tables.Account).values(**values).on_conflict_do_nothing(
                index_elements=["user_id"]
            )
        else:
            stmt = insert(tables.Account).values(**values)
        self.session.execute(stmt)
        logger.info("Opened ledger account for user %s", user_id)
