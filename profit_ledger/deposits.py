import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import tables
from .accounts import AVAILABLE, BALANCE, AccountBalances
from .clock import Clock, utcnow
from .database import managed_session
from .errors import (
    AlreadySettledError,
    DuplicateTxHashError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from .journal import JournalStore
from .models import (
    Deposit,
    DepositResponse,
    DepositStatus,
    LedgerEntry,
    ReferenceType,
    TransactionType,
)

logger = logging.getLogger(__name__)


class DepositSettlement:
    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    def submit(self, user_id: UUID, amount: Decimal, chain: str, tx_hash: str) -> Deposit:
        if amount <= 0:
            raise InvalidRequestError(f"Deposit amount must be positive, got {amount}")
        if not tx_hash:
            raise InvalidRequestError("Deposit requires a transaction hash")

        with managed_session(self.session_factory) as session:
            if self._find_by_tx_hash(session, tx_hash) is not None:
                raise DuplicateTxHashError(f"Transaction hash {tx_hash} already submitted")

            deposit = tables.Deposit(
                user_id=user_id,
                amount=amount,
                chain=chain,
                tx_hash=tx_hash,
                status=DepositStatus.PENDING,
                created_at=self.clock(),
            )
            session.add(deposit)
            try:
                session.flush()
            except IntegrityError as e:
                # Lost a race against a concurrent submission of the same hash
                raise DuplicateTxHashError(f"Transaction hash {tx_hash} already submitted") from e

            logger.info("Deposit %s submitted by user %s: %s %s", deposit.id, user_id, amount, chain)
            return Deposit.model_validate(deposit)

    def confirm(self, deposit_id: int) -> DepositResponse:
        with managed_session(self.session_factory) as session:
            now = self.clock()
            deposit, claimed = self._claim_pending(
                session, deposit_id, status=DepositStatus.CONFIRMED, confirmed_at=now
            )
            if not claimed:
                raise AlreadySettledError(
                    f"Deposit {deposit_id} is already {deposit.status.value}"
                )

            balances = AccountBalances(session, self.clock)
            account = balances.lock(deposit.user_id)
            balance_before = account.available_balance
            balances.credit(account, deposit.amount, BALANCE, AVAILABLE)

            entry = JournalStore(session).append(
                user_id=deposit.user_id,
                transaction_type=TransactionType.DEPOSIT,
                amount=deposit.amount,
                balance_before=balance_before,
                balance_after=account.available_balance,
                reference_type=ReferenceType.DEPOSIT,
                reference_id=deposit.id,
                description=f"Deposit confirmed - {deposit.amount} {deposit.chain}",
                details={"tx_hash": deposit.tx_hash, "chain": deposit.chain},
                created_at=now,
            )

            logger.info("Deposit %s confirmed, user %s credited %s", deposit.id, deposit.user_id, deposit.amount)
            return DepositResponse(
                deposit=Deposit.model_validate(deposit),
                ledger_entry=LedgerEntry.model_validate(entry),
                message="Deposit confirmed successfully",
            )

    def fail(self, deposit_id: int, reason: str) -> Deposit:
        with managed_session(self.session_factory) as session:
            deposit, claimed = self._claim_pending(
                session, deposit_id, status=DepositStatus.FAILED, failure_reason=reason
            )
            if not claimed:
                raise InvalidStateError(
                    f"Cannot fail deposit {deposit_id} in {deposit.status.value} state"
                )

            logger.info("Deposit %s marked failed: %s", deposit.id, reason)
            return Deposit.model_validate(deposit)

    def get(self, deposit_id: int) -> Deposit:
        with managed_session(self.session_factory) as session:
            deposit = session.get(tables.Deposit, deposit_id)
            if deposit is None:
                raise NotFoundError(f"Deposit {deposit_id} not found")
            return Deposit.model_validate(deposit)

    def _claim_pending(self, session: Session, deposit_id: int, **values) -> tuple[tables.Deposit, bool]:
        """Apply a terminal transition only if the deposit is still pending.

        The conditional UPDATE is the settlement point: of two concurrent
        callers exactly one sees a matched row.
        """
        claimed = session.execute(
            update(tables.Deposit)
            .where(
                tables.Deposit.id == deposit_id,
                tables.Deposit.status == DepositStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount

        deposit = session.get(tables.Deposit, deposit_id, populate_existing=True)
        if deposit is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return deposit, claimed == 1

    def _find_by_tx_hash(self, session: Session, tx_hash: str) -> Optional[tables.Deposit]:
        return session.scalars(
            select(tables.Deposit).where(tables.Deposit.tx_hash == tx_hash)
        ).one_or_none()
