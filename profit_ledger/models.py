from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    INVESTMENT = "investment"
    PROFIT = "profit"


class ReferenceType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INVESTMENT = "investment"


class DepositStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class InvestmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RunType(str, Enum):
    DAILY = "daily"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"


class SubmitDepositRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    chain: str = Field(default="TRC20")
    tx_hash: str = Field(..., min_length=1, description="On-chain transaction hash, unique per deposit")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 250.00,
            "chain": "TRC20",
            "tx_hash": "9f2c4e1b7a...",
        }
    })


class FailDepositRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class WithdrawalRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    chain: str = Field(default="TRC20")
    wallet_address: str = Field(..., min_length=1)


class ApproveWithdrawalRequest(BaseModel):
    tx_hash: str = Field(..., min_length=1, description="Hash of the outgoing on-chain payment")
    admin_notes: Optional[str] = None


class RejectWithdrawalRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason shown to the user")


class OpenInvestmentRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)


class LedgerEntry(BaseModel):
    id: int
    user_id: UUID
    transaction_type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_type: Optional[ReferenceType] = None
    reference_id: Optional[int] = None
    accrual_date: Optional[date] = None
    description: str
    details: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AccountBalance(BaseModel):
    user_id: UUID
    currency: str
    balance: Decimal
    available_balance: Decimal
    invested_balance: Decimal
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Deposit(BaseModel):
    id: int
    user_id: UUID
    amount: Decimal
    chain: str
    tx_hash: str
    status: DepositStatus
    failure_reason: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Withdrawal(BaseModel):
    id: int
    user_id: UUID
    amount: Decimal
    chain: str
    wallet_address: str
    status: WithdrawalStatus
    tx_hash: Optional[str] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_settled(self) -> bool:
        return self.status != WithdrawalStatus.PENDING


class Investment(BaseModel):
    id: int
    user_id: UUID
    amount: Decimal
    level: int
    profit_rate: Decimal
    status: InvestmentStatus
    next_profit_date: date
    last_profit_date: Optional[datetime] = None
    total_profit_earned: Decimal
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProfitRun(BaseModel):
    id: int
    run_type: RunType
    run_date: date
    idempotency_key: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_investments_processed: int = 0
    total_users_credited: int = 0
    total_profit_distributed: Decimal = Decimal("0")
    errors_count: int = 0
    error_details: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class RunResult(BaseModel):
    run_id: int
    run_date: date
    status: RunStatus
    total_investments: int
    investments_credited: int
    investments_skipped: int
    users_credited: int
    total_profit_distributed: Decimal
    errors: list[str] = Field(default_factory=list)


class DepositResponse(BaseModel):
    deposit: Deposit
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class WithdrawalResponse(BaseModel):
    withdrawal: Withdrawal
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class InvestmentResponse(BaseModel):
    investment: Investment
    ledger_entry: Optional[LedgerEntry] = None
    daily_profit: Decimal
    message: str


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class ProfitHistoryItem(BaseModel):
    entry_id: int
    investment_id: Optional[int] = None
    amount: Decimal
    accrual_date: Optional[date] = None
    description: str
    investment_amount: Optional[Decimal] = None
    profit_rate: Optional[Decimal] = None
    created_at: datetime


class ReconciliationReport(BaseModel):
    user_id: UUID
    journal_total: Decimal
    expected_invested: Decimal
    balance: Decimal
    available_balance: Decimal
    invested_balance: Decimal
    consistent: bool
