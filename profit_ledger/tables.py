"""
Database schema for the custodial ledger.

accounts and ledger_entries are owned by the ledger core; investments,
deposits and withdrawals belong to adjacent flows but are read and written
inside the same transactions. profit_runs is the audit trail of daily
distribution batches.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    JSON, CheckConstraint, Date, DateTime, Enum as SAEnum, Index, Integer,
    Numeric, String, Text, TypeDecorator, UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .models import (
    DepositStatus,
    InvestmentStatus,
    ReferenceType,
    RunStatus,
    RunType,
    TransactionType,
    WithdrawalStatus,
)

class ExactNumeric(TypeDecorator):
    """Numeric column that round-trips Decimal values exactly on every backend.

    SQLite has no decimal storage and keeps NUMERIC values as REAL, so there
    the value is stored as fixed-point text instead.
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int, scale: int):
        super().__init__(precision, scale)
        self.precision = precision
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.supports_native_decimal:
            return dialect.type_descriptor(Numeric(self.precision, self.scale))
        return dialect.type_descriptor(String(self.precision + 2))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.supports_native_decimal:
            return value
        quantum = Decimal(1).scaleb(-self.scale)
        return format(Decimal(str(value)).quantize(quantum), "f")

    def process_result_value(self, value, dialect):
        if value is None or dialect.supports_native_decimal:
            return value
        return Decimal(value)


MONEY = ExactNumeric(20, 8)


def _enum(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class Account(Base):
    """Cached balance aggregates, one row per user."""
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True, index=True)

    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    available_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    invested_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_accounts_available_non_negative"),
        CheckConstraint("invested_balance >= 0", name="ck_accounts_invested_non_negative"),
    )


class JournalEntry(Base):
    """Append-only ledger row. Never updated or deleted."""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    transaction_type: Mapped[TransactionType] = mapped_column(_enum(TransactionType), nullable=False)

    # Signed effect on available_balance
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    reference_type: Mapped[Optional[ReferenceType]] = mapped_column(_enum(ReferenceType), nullable=True)
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Set only on profit entries: the day the profit accrued for
    accrual_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("reference_type", "reference_id", "accrual_date", name="uq_ledger_entries_accrual"),
        Index("ix_ledger_entries_user_type", "user_id", "transaction_type"),
        Index("ix_ledger_entries_reference", "reference_type", "reference_id"),
    )


class Investment(Base):
    __tablename__ = "investments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Display value only; profit math reads the principal from the journal
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    profit_rate: Mapped[Decimal] = mapped_column(ExactNumeric(6, 3), nullable=False)
    status: Mapped[InvestmentStatus] = mapped_column(_enum(InvestmentStatus), nullable=False)

    next_profit_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_profit_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_profit_earned: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_investments_due", "status", "next_profit_date"),
    )


class Deposit(Base):
    __tablename__ = "deposits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[DepositStatus] = mapped_column(_enum(DepositStatus), nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(_enum(WithdrawalStatus), nullable=False)

    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ProfitRun(Base):
    __tablename__ = "profit_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_type: Mapped[RunType] = mapped_column(_enum(RunType), nullable=False)
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[RunStatus] = mapped_column(_enum(RunStatus), nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    total_investments_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_users_credited: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_profit_distributed: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    errors_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_details: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        # At most one completed run per type and day
        Index(
            "uq_profit_runs_completed_per_day",
            "run_type",
            "run_date",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
        Index("ix_profit_runs_started_at", "started_at"),
    )
