import logging
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import configure_logging
from .errors import (
    AlreadyRunError,
    DuplicateError,
    InsufficientFundsError,
    InvalidRequestError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
    PersistenceError,
)
from .models import (
    AccountBalance,
    ApproveWithdrawalRequest,
    Deposit,
    DepositResponse,
    FailDepositRequest,
    InvestmentResponse,
    LedgerHistoryResponse,
    OpenInvestmentRequest,
    ProfitHistoryItem,
    ProfitRun,
    RejectWithdrawalRequest,
    RunResult,
    SubmitDepositRequest,
    WithdrawalRequest,
    WithdrawalResponse,
)
from .service import LedgerService

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (DuplicateError, status.HTTP_409_CONFLICT),
    (AlreadyRunError, status.HTTP_409_CONFLICT),
    (InsufficientFundsError, status.HTTP_400_BAD_REQUEST),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(error: LedgerServiceError) -> int:
    for error_cls, code in ERROR_STATUS:
        if isinstance(error, error_cls):
            return code
    return status.HTTP_400_BAD_REQUEST


def create_app(ledger_service: Optional[LedgerService] = None) -> FastAPI:
    ledger_service = ledger_service or LedgerService.from_config()

    app = FastAPI(
        title="Custodial Ledger API",
        description="Deposit and withdrawal settlement, daily profit distribution and balance projections",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={"status": "error", "error": type(exc).__name__, "message": str(exc)},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "profit-ledger"}

    @app.post("/deposits", response_model=Deposit, status_code=status.HTTP_201_CREATED, tags=["Deposits"])
    def submit_deposit(request: SubmitDepositRequest) -> Deposit:
        return ledger_service.submit_deposit(request.user_id, request.amount, request.chain, request.tx_hash)

    @app.post("/deposits/{deposit_id}/confirm", response_model=DepositResponse, tags=["Deposits"])
    def confirm_deposit(deposit_id: int) -> DepositResponse:
        return ledger_service.confirm_deposit(deposit_id)

    @app.post("/deposits/{deposit_id}/fail", response_model=Deposit, tags=["Deposits"])
    def fail_deposit(deposit_id: int, request: FailDepositRequest) -> Deposit:
        return ledger_service.fail_deposit(deposit_id, request.reason)

    @app.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def request_withdrawal(request: WithdrawalRequest) -> WithdrawalResponse:
        return ledger_service.request_withdrawal(request.user_id, request.amount, request.chain, request.wallet_address)

    @app.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def approve_withdrawal(withdrawal_id: int, request: ApproveWithdrawalRequest) -> WithdrawalResponse:
        return ledger_service.approve_withdrawal(withdrawal_id, request.tx_hash, request.admin_notes)

    @app.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def reject_withdrawal(withdrawal_id: int, request: RejectWithdrawalRequest) -> WithdrawalResponse:
        return ledger_service.reject_withdrawal(withdrawal_id, request.reason)

    @app.post("/investments", response_model=InvestmentResponse, status_code=status.HTTP_201_CREATED, tags=["Investments"])
    def open_investment(request: OpenInvestmentRequest) -> InvestmentResponse:
        return ledger_service.open_investment(request.user_id, request.amount)

    @app.post("/investments/{investment_id}/cancel", response_model=InvestmentResponse, tags=["Investments"])
    def cancel_investment(investment_id: int) -> InvestmentResponse:
        return ledger_service.cancel_investment(investment_id)

    @app.post("/profit-runs/daily", response_model=RunResult, tags=["Profit Runs"])
    def run_daily_profit() -> RunResult:
        return ledger_service.run_daily_profit_distribution()

    @app.get("/profit-runs", response_model=list[ProfitRun], tags=["Profit Runs"])
    def get_run_history(limit: int = 30) -> list[ProfitRun]:
        return ledger_service.get_run_history(limit)

    @app.post("/profit-runs/reconcile", response_model=list[ProfitRun], tags=["Profit Runs"])
    def reconcile_stale_runs() -> list[ProfitRun]:
        return ledger_service.reconcile_stale_runs()

    @app.get("/users/{user_id}/balance", response_model=AccountBalance, tags=["Users"])
    def get_user_balance(user_id: UUID) -> AccountBalance:
        return ledger_service.get_balance(user_id)

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return ledger_service.get_ledger_history(user_id, limit, offset)

    @app.get("/users/{user_id}/profits", response_model=list[ProfitHistoryItem], tags=["Users"])
    def get_user_profits(user_id: UUID, limit: int = 50) -> list[ProfitHistoryItem]:
        return ledger_service.get_profit_history(user_id, limit)

    return app


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
