from typing import Optional
from uuid import UUID
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, configure_logging, get_settings
from .errors import (
    AlreadyProcessedError,
    ConcurrencyConflictError,
    InsufficientFundsError,
    LedgerServiceError,
    NotFoundError,
    StoreUnavailableError,
)
from .models import (
    AffiliateBalance,
    BalanceSummary,
    CommissionEarnedRequest,
    CommissionRecord,
    CommissionResponse,
    CommissionStatus,
    CommissionStatusUpdate,
    CreateWithdrawalRequest,
    ProcessWithdrawalRequest,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .service import LedgerService


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (InsufficientFundsError, AlreadyProcessedError, ConcurrencyConflictError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, StoreUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(e))


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


def create_app(
    service: Optional[LedgerService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Affiliate commission ledger with reservation-based withdrawals",
        version=settings.APP_VERSION,
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger_service = service or LedgerService(settings=settings)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "commission-ledger"}

    @app.post("/commissions", response_model=CommissionResponse, status_code=status.HTTP_201_CREATED, tags=["Commissions"])
    def create_commission(
        request: CommissionEarnedRequest,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> CommissionResponse:
        try:
            return ledger.record_commission(request)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/commissions", response_model=list[CommissionRecord], tags=["Commissions"])
    def list_commissions(
        affiliate_id: Optional[str] = None,
        commission_status: Optional[CommissionStatus] = Query(None, alias="status"),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> list[CommissionRecord]:
        try:
            return ledger.list_commissions(affiliate_id, commission_status)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/commissions/{commission_id}", response_model=CommissionRecord, tags=["Commissions"])
    def get_commission(
        commission_id: UUID,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> CommissionRecord:
        try:
            return ledger.get_commission(commission_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.put("/commissions/{commission_id}/status", response_model=CommissionResponse, tags=["Commissions"])
    def update_commission_status(
        commission_id: UUID,
        request: CommissionStatusUpdate,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> CommissionResponse:
        try:
            return ledger.update_commission_status(commission_id, request.status)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def create_withdrawal(
        request: CreateWithdrawalRequest,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> WithdrawalResponse:
        try:
            return ledger.reserve(request.affiliate_id, request.amount, request.bank_details)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/withdrawals", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
    def list_withdrawals(
        affiliate_id: Optional[str] = None,
        withdrawal_status: Optional[WithdrawalStatus] = Query(None, alias="status"),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> list[WithdrawalRequest]:
        try:
            return ledger.list_withdrawals(affiliate_id, withdrawal_status)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
    def get_withdrawal(
        withdrawal_id: UUID,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> WithdrawalRequest:
        try:
            return ledger.get_withdrawal(withdrawal_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.put("/withdrawals/{withdrawal_id}", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def process_withdrawal(
        withdrawal_id: UUID,
        request: ProcessWithdrawalRequest,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> WithdrawalResponse:
        try:
            return ledger.process(withdrawal_id, request.status, request.rejection_reason)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/affiliates/{affiliate_id}/balance", response_model=AffiliateBalance, tags=["Affiliates"])
    def get_affiliate_balance(
        affiliate_id: str,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> AffiliateBalance:
        try:
            return ledger.get_balance(affiliate_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/affiliates/{affiliate_id}/summary", response_model=BalanceSummary, tags=["Affiliates"])
    def get_affiliate_summary(
        affiliate_id: str,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> BalanceSummary:
        try:
            return ledger.get_summary(affiliate_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
