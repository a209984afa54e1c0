from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bootstrap import Services, build_services, configure_logging
from .errors import WalletError
from .models import (
    AccrualResult,
    AccrueRequest,
    ApprovalResult,
    CreateFundingRequest,
    CreateOrderRequest,
    ExchangeRequest,
    ExchangeResult,
    Failure,
    FundingKind,
    FundingRequest,
    FundingResult,
    Identity,
    MiningOrder,
    MiningPlan,
    OrderActionRequest,
    OrderResponse,
    PriceSnapshot,
    RegisterUserRequest,
    Role,
    SweepResult,
    TopupRecord,
    TopupRequest,
    TopupResult,
    UserAccess,
    UserProfile,
    WalletState,
)

STATUS_BY_KIND = {
    "InsufficientFunds": status.HTTP_400_BAD_REQUEST,
    "InvalidAmount": status.HTTP_400_BAD_REQUEST,
    "PlanBoundsViolation": status.HTTP_400_BAD_REQUEST,
    "InvalidTransition": status.HTTP_400_BAD_REQUEST,
    "NotFound": status.HTTP_404_NOT_FOUND,
    "Unauthorized": status.HTTP_403_FORBIDDEN,
    "Conflict": status.HTTP_409_CONFLICT,
    "PriceUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_identity(
    x_actor_id: Optional[UUID] = Header(default=None),
    x_actor_role: Optional[Role] = Header(default=None),
) -> Identity:
    """Identity claim forwarded by the upstream auth gateway."""
    if x_actor_id is None or x_actor_role is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing identity")
    return Identity(actor_id=x_actor_id, role=x_actor_role)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_app(services: Optional[Services] = None, root_path: str = "") -> FastAPI:
    services = services or build_services()
    configure_logging(services.settings)

    app = FastAPI(
        title="Mining Wallet API",
        description="Multi-asset wallet ledger with mining orders, admin topups and approvals",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WalletError)
    async def wallet_error_handler(request: Request, exc: WalletError) -> JSONResponse:
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST),
            content=Failure(error=exc.kind, message=str(exc)).model_dump(),
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "mining-wallet"}

    @app.get("/plans", response_model=list[MiningPlan], tags=["Catalog"])
    def list_plans() -> list[MiningPlan]:
        return services.storage.list_plans()

    @app.get("/prices", response_model=PriceSnapshot, tags=["Catalog"])
    def get_prices() -> PriceSnapshot:
        return services.prices.get()

    # -- user ---------------------------------------------------------------

    @app.get("/me/wallet", response_model=WalletState, tags=["Wallet"])
    def get_wallet(identity: Identity = Depends(get_identity)) -> WalletState:
        return services.ledger.get_wallet_state(identity.actor_id)

    @app.post("/me/exchange", response_model=ExchangeResult, tags=["Wallet"])
    def exchange(request: ExchangeRequest, identity: Identity = Depends(get_identity)) -> ExchangeResult:
        prices = services.prices.get()
        return services.ledger.exchange(
            identity.actor_id, request.from_asset, request.to_asset, request.amount, prices
        )

    @app.get("/me/orders", response_model=list[MiningOrder], tags=["Mining"])
    def list_my_orders(identity: Identity = Depends(get_identity)) -> list[MiningOrder]:
        return services.orders.list_orders(user_id=identity.actor_id)

    @app.post("/me/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED, tags=["Mining"])
    def create_order(request: CreateOrderRequest, identity: Identity = Depends(get_identity)) -> OrderResponse:
        return services.orders.create(identity.actor_id, request.plan_id, request.principal)

    @app.post("/me/orders/{order_id}/abort", response_model=OrderResponse, tags=["Mining"])
    def abort_order(order_id: UUID, identity: Identity = Depends(get_identity)) -> OrderResponse:
        return services.orders.abort(identity.actor_id, order_id)

    @app.post("/me/deposits", response_model=FundingRequest, status_code=status.HTTP_201_CREATED, tags=["Funding"])
    def request_deposit(request: CreateFundingRequest, identity: Identity = Depends(get_identity)) -> FundingRequest:
        return services.topups.request_funding(
            identity.actor_id, FundingKind.DEPOSIT, request.asset, request.amount, request.wallet_address, request.note
        )

    @app.post("/me/withdrawals", response_model=FundingRequest, status_code=status.HTTP_201_CREATED, tags=["Funding"])
    def request_withdrawal(request: CreateFundingRequest, identity: Identity = Depends(get_identity)) -> FundingRequest:
        return services.topups.request_funding(
            identity.actor_id, FundingKind.WITHDRAWAL, request.asset, request.amount, request.wallet_address, request.note
        )

    @app.get("/me/funding-requests", response_model=list[FundingRequest], tags=["Funding"])
    def list_my_funding_requests(identity: Identity = Depends(get_identity)) -> list[FundingRequest]:
        return services.topups.list_requests(user_id=identity.actor_id)

    # -- admin --------------------------------------------------------------

    @app.get("/admin/funding-requests/pending", response_model=list[FundingRequest], tags=["Admin"])
    def pending_funding_requests(
        kind: Optional[FundingKind] = None,
        identity: Identity = Depends(get_identity),
    ) -> list[FundingRequest]:
        return services.approvals.pending_requests(identity, kind)

    @app.post("/admin/deposits/{request_id}/approve", response_model=FundingResult, tags=["Admin"])
    def approve_deposit(
        request_id: UUID,
        request: Optional[OrderActionRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> FundingResult:
        return services.approvals.approve_topup(identity, request_id, request.note if request else None)

    @app.post("/admin/deposits/{request_id}/reject", response_model=FundingResult, tags=["Admin"])
    def reject_deposit(
        request_id: UUID,
        request: Optional[OrderActionRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> FundingResult:
        return services.approvals.reject_topup(identity, request_id, request.note if request else None)

    @app.post("/admin/withdrawals/{request_id}/approve", response_model=FundingResult, tags=["Admin"])
    def approve_withdrawal(
        request_id: UUID,
        request: Optional[OrderActionRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> FundingResult:
        return services.approvals.approve_withdrawal(identity, request_id, request.note if request else None)

    @app.post("/admin/withdrawals/{request_id}/reject", response_model=FundingResult, tags=["Admin"])
    def reject_withdrawal(
        request_id: UUID,
        request: Optional[OrderActionRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> FundingResult:
        return services.approvals.reject_withdrawal(identity, request_id, request.note if request else None)

    @app.get("/admin/orders/pending", response_model=list[MiningOrder], tags=["Admin"])
    def pending_orders(identity: Identity = Depends(get_identity)) -> list[MiningOrder]:
        return services.approvals.pending_orders(identity)

    @app.post("/admin/orders/{order_id}/approve", response_model=ApprovalResult, tags=["Admin"])
    def approve_order(
        order_id: UUID,
        request: Optional[OrderActionRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> ApprovalResult:
        return services.approvals.approve_order(identity, order_id, request.note if request else None)

    @app.post("/admin/orders/{order_id}/reject", response_model=ApprovalResult, tags=["Admin"])
    def reject_order(
        order_id: UUID,
        request: Optional[OrderActionRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> ApprovalResult:
        return services.approvals.reject_order(identity, order_id, request.note if request else None)

    @app.post("/admin/orders/{order_id}/accrue", response_model=AccrualResult, tags=["Admin"])
    def accrue_order(
        order_id: UUID,
        request: Optional[AccrueRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> AccrualResult:
        services.approvals.require_admin(identity)
        return services.orders.accrue(order_id, _as_utc(request.as_of) if request else None)

    @app.post("/admin/accruals/run", response_model=SweepResult, tags=["Admin"])
    def run_accruals(
        request: Optional[AccrueRequest] = None,
        identity: Identity = Depends(get_identity),
    ) -> SweepResult:
        return services.approvals.run_accruals(identity, _as_utc(request.as_of) if request else None)

    @app.post("/admin/topups", response_model=TopupResult, status_code=status.HTTP_201_CREATED, tags=["Admin"])
    def record_topup(
        request: TopupRequest,
        response: Response,
        identity: Identity = Depends(get_identity),
    ) -> TopupResult:
        result = services.approvals.record_topup(identity, request)
        if result.replayed:
            response.status_code = status.HTTP_200_OK
        return result

    @app.get("/admin/users/{user_id}/topups", response_model=list[TopupRecord], tags=["Admin"])
    def topup_history(user_id: UUID, identity: Identity = Depends(get_identity)) -> list[TopupRecord]:
        return services.approvals.topup_history(identity, user_id)

    @app.post("/admin/users", response_model=UserProfile, status_code=status.HTTP_201_CREATED, tags=["Admin"])
    def register_user(request: RegisterUserRequest, identity: Identity = Depends(get_identity)) -> UserProfile:
        return services.approvals.register_user(identity, request)

    @app.put("/admin/users/{user_id}/access", response_model=UserAccess, tags=["Admin"])
    def set_user_access(
        user_id: UUID, request: UserAccess, identity: Identity = Depends(get_identity)
    ) -> UserAccess:
        return services.approvals.set_user_access(identity, user_id, request)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
