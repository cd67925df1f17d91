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
    DuplicateTxHashError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from .journal import JournalStore
from .models import (
    LedgerEntry,
    ReferenceType,
    TransactionType,
    Withdrawal,
    WithdrawalResponse,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)


class WithdrawalSettlement:
    """Reserves funds on request and finalizes or refunds on admin decision.

    Approval and rejection are mutually exclusive terminal transitions; both
    lock the withdrawal row and require it to still be pending.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    def request(self, user_id: UUID, amount: Decimal, chain: str, wallet_address: str) -> WithdrawalResponse:
        if amount <= 0:
            raise InvalidRequestError(f"Withdrawal amount must be positive, got {amount}")
        if not wallet_address:
            raise InvalidRequestError("Withdrawal requires a destination wallet address")

        with managed_session(self.session_factory) as session:
            now = self.clock()
            balances = AccountBalances(session, self.clock)
            account = balances.lock(user_id)
            balance_before = account.available_balance
            balances.debit(account, amount, BALANCE, AVAILABLE)

            withdrawal = tables.Withdrawal(
                user_id=user_id,
                amount=amount,
                chain=chain,
                wallet_address=wallet_address,
                status=WithdrawalStatus.PENDING,
                requested_at=now,
            )
            session.add(withdrawal)
            session.flush()

            entry = JournalStore(session).append(
                user_id=user_id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=-amount,
                balance_before=balance_before,
                balance_after=account.available_balance,
                reference_type=ReferenceType.WITHDRAWAL,
                reference_id=withdrawal.id,
                description=f"Withdrawal request: {amount} to {chain} address {wallet_address[:10]}...",
                details={"chain": chain, "wallet_address": wallet_address},
                created_at=now,
            )

            logger.info("Withdrawal %s requested by user %s: %s reserved", withdrawal.id, user_id, amount)
            return WithdrawalResponse(
                withdrawal=Withdrawal.model_validate(withdrawal),
                ledger_entry=LedgerEntry.model_validate(entry),
                message="Withdrawal request submitted",
            )

    def approve(self, withdrawal_id: int, tx_hash: str, admin_notes: Optional[str] = None) -> WithdrawalResponse:
        if not tx_hash:
            raise InvalidRequestError("Approving a withdrawal requires the payout transaction hash")

        with managed_session(self.session_factory) as session:
            now = self.clock()
            withdrawal = self._claim_pending(
                session, withdrawal_id, "approve",
                status=WithdrawalStatus.COMPLETED, admin_notes=admin_notes, processed_at=now,
            )

            duplicate = session.scalar(
                select(tables.Withdrawal.id).where(
                    tables.Withdrawal.tx_hash == tx_hash,
                    tables.Withdrawal.id != withdrawal_id,
                )
            )
            if duplicate is not None:
                logger.warning(
                    "Rejected approval of withdrawal %s: tx hash already settles withdrawal %s",
                    withdrawal_id, duplicate,
                )
                raise DuplicateTxHashError(f"Transaction hash {tx_hash} already used")

            # Funds left the account when the request was made; lock only to
            # record a consistent balance snapshot.
            account = AccountBalances(session, self.clock).lock(withdrawal.user_id)

            withdrawal.tx_hash = tx_hash
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateTxHashError(f"Transaction hash {tx_hash} already used") from e

            entry = JournalStore(session).append(
                user_id=withdrawal.user_id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=Decimal("0"),
                balance_before=account.available_balance,
                balance_after=account.available_balance,
                reference_type=ReferenceType.WITHDRAWAL,
                reference_id=withdrawal.id,
                description=f"Withdrawal completed - TX: {tx_hash[:12]}...",
                details={"withdrawn_amount": str(withdrawal.amount), "tx_hash": tx_hash},
                created_at=now,
            )

            logger.info("Withdrawal %s approved with tx %s", withdrawal.id, tx_hash)
            return WithdrawalResponse(
                withdrawal=Withdrawal.model_validate(withdrawal),
                ledger_entry=LedgerEntry.model_validate(entry),
                message="Withdrawal approved and processed",
            )

    def reject(self, withdrawal_id: int, reason: str) -> WithdrawalResponse:
        if not reason:
            raise InvalidRequestError("Rejecting a withdrawal requires a reason")

        with managed_session(self.session_factory) as session:
            now = self.clock()
            withdrawal = self._claim_pending(
                session, withdrawal_id, "reject",
                status=WithdrawalStatus.REJECTED, rejection_reason=reason, processed_at=now,
            )

            balances = AccountBalances(session, self.clock)
            account = balances.lock(withdrawal.user_id)
            balance_before = account.available_balance
            balances.credit(account, withdrawal.amount, BALANCE, AVAILABLE)

            entry = JournalStore(session).append(
                user_id=withdrawal.user_id,
                transaction_type=TransactionType.REFUND,
                amount=withdrawal.amount,
                balance_before=balance_before,
                balance_after=account.available_balance,
                reference_type=ReferenceType.WITHDRAWAL,
                reference_id=withdrawal.id,
                description=f"Withdrawal rejected: {reason}",
                details={"rejection_reason": reason},
                created_at=now,
            )

            logger.info("Withdrawal %s rejected, %s refunded to user %s", withdrawal.id, withdrawal.amount, withdrawal.user_id)
            return WithdrawalResponse(
                withdrawal=Withdrawal.model_validate(withdrawal),
                ledger_entry=LedgerEntry.model_validate(entry),
                message="Withdrawal rejected",
            )

    def get(self, withdrawal_id: int) -> Withdrawal:
        with managed_session(self.session_factory) as session:
            withdrawal = session.get(tables.Withdrawal, withdrawal_id)
            if withdrawal is None:
                raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
            return Withdrawal.model_validate(withdrawal)

    def _claim_pending(self, session: Session, withdrawal_id: int, action: str, **values) -> tables.Withdrawal:
        # Conditional UPDATE: only one of two racing decisions matches the row
        claimed = session.execute(
            update(tables.Withdrawal)
            .where(
                tables.Withdrawal.id == withdrawal_id,
                tables.Withdrawal.status == WithdrawalStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount

        withdrawal = session.get(tables.Withdrawal, withdrawal_id, populate_existing=True)
        if withdrawal is None:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        if claimed != 1:
            raise InvalidStateError(
                f"Cannot {action} withdrawal {withdrawal_id} with status: {withdrawal.status.value}"
            )
        return withdrawal
