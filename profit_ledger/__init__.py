"""
Custodial Balance Ledger & Profit Distribution Engine

This package provides:
- Append-only journal of every balance-affecting event
- Row-locked account aggregates (balance, available, invested)
- Exactly-once deposit confirmation and withdrawal settlement
- Idempotent daily profit distribution with a per-run audit ledger
"""

from .errors import (
    LedgerServiceError,
    NotFoundError,
    InvalidStateError,
    AlreadySettledError,
    DuplicateError,
    DuplicateTxHashError,
    AlreadyRunError,
    InsufficientFundsError,
    InvalidRequestError,
    PersistenceError,
)
from .models import (
    TransactionType,
    DepositStatus,
    WithdrawalStatus,
    InvestmentStatus,
    RunStatus,
    LedgerEntry,
    AccountBalance,
    RunResult,
)
from .service import LedgerService

__all__ = [
    "LedgerServiceError",
    "NotFoundError",
    "InvalidStateError",
    "AlreadySettledError",
    "DuplicateError",
    "DuplicateTxHashError",
    "AlreadyRunError",
    "InsufficientFundsError",
    "InvalidRequestError",
    "PersistenceError",
    "TransactionType",
    "DepositStatus",
    "WithdrawalStatus",
    "InvestmentStatus",
    "RunStatus",
    "LedgerEntry",
    "AccountBalance",
    "RunResult",
    "LedgerService",
]
