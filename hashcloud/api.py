from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import configure_logging
from .errors import (
    AddressAlreadyRegisteredError,
    AlreadySettledError,
    ConflictingWriteError,
    HashCloudError,
    RecordDecodeError,
    TransactionNotFoundError,
    TransientWriteError,
    UnknownPlanError,
    UnknownUserError,
)
from .models import (
    BalanceResponse,
    Currency,
    DepositRequest,
    GlobalSettings,
    ManualWithdrawRequest,
    MiningPlan,
    PaymentAddressResponse,
    PendingTransaction,
    RegisterRequest,
    SettleRequest,
    Transaction,
    TransactionResponse,
    User,
    WithdrawRequest,
)
from .service import HashCloudService

ERROR_STATUS = {
    UnknownUserError: status.HTTP_404_NOT_FOUND,
    UnknownPlanError: status.HTTP_404_NOT_FOUND,
    TransactionNotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadySettledError: status.HTTP_409_CONFLICT,
    AddressAlreadyRegisteredError: status.HTTP_409_CONFLICT,
    ConflictingWriteError: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransientWriteError: status.HTTP_503_SERVICE_UNAVAILABLE,
    RecordDecodeError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _response(user: User, tx: Transaction, message: str) -> TransactionResponse:
    return TransactionResponse(
        user_id=user.id, transaction=tx, balance=user.balance,
        active_hash_rate=user.active_hash_rate, message=message,
    )


def create_app(service: Optional[HashCloudService] = None, root_path: str = "") -> FastAPI:
    service = service or HashCloudService()
    configure_logging(service.config)

    app = FastAPI(
        title="HashCloud API",
        description="Cloud hash-rate rental: accrual, withdrawals, plan purchases and admin settlement",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HashCloudError)
    async def handle_domain_error(request: Request, exc: HashCloudError) -> JSONResponse:
        code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
        if x_admin_token != service.config.admin_token:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "hashcloud"}

    @app.post("/users", response_model=User, tags=["Users"])
    def login_or_register(request: RegisterRequest) -> User:
        return service.login(request.login_address, request.referrer_id)

    @app.get("/users/{user_id}", response_model=User, tags=["Users"])
    def get_user(user_id: str) -> User:
        return service.sync_balance(user_id)

    @app.get("/users/{user_id}/balance", response_model=BalanceResponse, tags=["Users"])
    def get_balance(user_id: str) -> BalanceResponse:
        return service.get_balance(user_id)

    @app.get("/users/{user_id}/transactions", response_model=list[Transaction], tags=["Users"])
    def get_transactions(user_id: str) -> list[Transaction]:
        return service.get_transactions(user_id)

    @app.post("/users/{user_id}/withdrawals", response_model=TransactionResponse,
              status_code=status.HTTP_201_CREATED, tags=["Transactions"])
    def submit_withdraw(user_id: str, request: WithdrawRequest) -> TransactionResponse:
        user, tx = service.submit_withdraw(user_id, request.amount)
        return _response(user, tx, "Withdrawal request submitted")

    @app.post("/users/{user_id}/deposits", response_model=TransactionResponse,
              status_code=status.HTTP_201_CREATED, tags=["Transactions"])
    def submit_deposit(user_id: str, request: DepositRequest) -> TransactionResponse:
        user, tx = service.submit_deposit(user_id, request.plan_id, request.currency, request.tx_hash)
        return _response(user, tx, "Payment submitted; plan activates once the payment is confirmed")

    @app.get("/plans", response_model=list[MiningPlan], tags=["Catalog"])
    def get_plans() -> list[MiningPlan]:
        return service.get_plans()

    @app.get("/settings/payment-address/{currency}", response_model=PaymentAddressResponse, tags=["Catalog"])
    def get_payment_address(currency: Currency) -> PaymentAddressResponse:
        address = service.payment_address(currency)
        if not address:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                                detail=f"No payment address configured for {currency.value}")
        return PaymentAddressResponse(currency=currency, address=address)

    @app.get("/admin/users", response_model=list[User], tags=["Admin"], dependencies=[Depends(require_admin)])
    def list_users() -> list[User]:
        return service.list_users()

    @app.get("/admin/transactions/pending", response_model=list[PendingTransaction],
             tags=["Admin"], dependencies=[Depends(require_admin)])
    def list_pending() -> list[PendingTransaction]:
        return service.list_pending()

    @app.post("/admin/users/{user_id}/transactions/{tx_id}/settle", response_model=TransactionResponse,
              tags=["Admin"], dependencies=[Depends(require_admin)])
    def settle(user_id: str, tx_id: str, request: SettleRequest) -> TransactionResponse:
        user, tx = service.settle(user_id, tx_id, request.decision, request.performed_by)
        return _response(user, tx, f"Transaction {tx.status.value.lower()}")

    @app.post("/admin/users/{user_id}/manual-withdrawals", response_model=TransactionResponse,
              status_code=status.HTTP_201_CREATED, tags=["Admin"], dependencies=[Depends(require_admin)])
    def manual_withdraw(user_id: str, request: ManualWithdrawRequest) -> TransactionResponse:
        user, tx = service.manual_withdraw(request.performed_by, user_id, request.amount)
        return _response(user, tx, "Manual withdrawal processed")

    @app.get("/admin/settings", response_model=GlobalSettings, tags=["Admin"], dependencies=[Depends(require_admin)])
    def get_settings() -> GlobalSettings:
        return service.get_settings()

    @app.put("/admin/settings", response_model=GlobalSettings, tags=["Admin"], dependencies=[Depends(require_admin)])
    def update_settings(settings: GlobalSettings) -> GlobalSettings:
        return service.update_settings(settings, performed_by="admin")

    @app.put("/admin/plans", response_model=list[MiningPlan], tags=["Admin"], dependencies=[Depends(require_admin)])
    def update_plans(plans: list[MiningPlan]) -> list[MiningPlan]:
        try:
            return service.update_plans(plans, performed_by="admin")
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
