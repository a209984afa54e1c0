from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Asset(str, Enum):
    USDT = "USDT"
    BTC = "BTC"
    ETH = "ETH"
    SOL = "SOL"
    XRP = "XRP"


# Unit of account; every price is quoted in it and its own price is always 1.
REFERENCE_ASSET = Asset.USDT


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    ABORTED = "ABORTED"
    COMPLETED = "COMPLETED"


TERMINAL_STATUSES = frozenset({OrderStatus.REJECTED, OrderStatus.ABORTED, OrderStatus.COMPLETED})


class TopupMode(str, Enum):
    ADD = "ADD"
    SUBTRACT = "SUBTRACT"


class FundingKind(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class Role(str, Enum):
    ADMIN = "admin"
    SUB_ADMIN = "sub-admin"
    USER = "user"


class Identity(BaseModel):
    """Resolved caller identity. Authentication happens upstream; the role is trusted as given."""

    actor_id: UUID
    role: Role

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def can_approve(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUB_ADMIN)


class WalletState(BaseModel):
    user_id: UUID
    balances: dict[Asset, Decimal]
    updated_at: datetime
    version: int

    model_config = ConfigDict(from_attributes=True)

    def balance(self, asset: Asset) -> Decimal:
        return self.balances.get(asset, Decimal("0"))


class MiningPlan(BaseModel):
    plan_id: str
    name: str
    cycle_days: int
    min_amount: Decimal
    max_amount: Decimal
    daily_rate: Decimal
    abort_fee_rate: Decimal = Decimal("0.05")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_terms(self) -> "MiningPlan":
        if self.cycle_days <= 0:
            raise ValueError("cycle_days must be positive")
        if self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")
        if not (Decimal("0") < self.daily_rate < Decimal("1")):
            raise ValueError("daily_rate must be between 0 and 1 (exclusive)")
        if not (Decimal("0") <= self.abort_fee_rate < Decimal("1")):
            raise ValueError("abort_fee_rate must be in [0, 1)")
        return self

    def admits(self, principal: Decimal) -> bool:
        return self.min_amount <= principal <= self.max_amount


class MiningOrder(BaseModel):
    order_id: UUID
    user_id: UUID
    plan_id: str
    principal: Decimal
    status: OrderStatus
    created_at: datetime
    activated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    accrued_days: int = 0
    accrued_total: Decimal = Decimal("0")
    note: Optional[str] = None
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_activate(self) -> bool:
        return self.status == OrderStatus.PENDING

    def can_reject(self) -> bool:
        return self.status == OrderStatus.PENDING


class TopupRecord(BaseModel):
    id: UUID
    user_id: UUID
    admin_id: UUID
    asset: Asset
    mode: TopupMode
    amount: Decimal
    balance_after: Decimal
    note: Optional[str] = None
    request_key: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FundingRequest(BaseModel):
    """User-submitted deposit or withdrawal waiting for an administrator.

    Confirming a deposit credits the wallet, confirming a withdrawal debits
    it; either way a journal row is written and linked through ``topup_id``.
    Rejecting moves no funds.
    """

    id: UUID
    user_id: UUID
    kind: FundingKind
    asset: Asset
    amount: Decimal
    wallet_address: str
    status: RequestStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UUID] = None
    topup_id: Optional[UUID] = None
    note: Optional[str] = None
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == RequestStatus.PENDING


class UserProfile(BaseModel):
    user_id: UUID
    managed_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserAccess(BaseModel):
    mining_restricted: bool = False
    trade_restricted: bool = False


class PriceSnapshot(BaseModel):
    prices: dict[Asset, Optional[Decimal]]
    stale: bool = False
    as_of: datetime
    source: str = "static"

    def price(self, asset: Asset) -> Optional[Decimal]:
        if asset == REFERENCE_ASSET:
            return Decimal("1")
        return self.prices.get(asset)


# ----------------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    plan_id: str
    principal: Decimal

    model_config = ConfigDict(json_schema_extra={
        "example": {"plan_id": "m4", "principal": "10000"}
    })


class ExchangeRequest(BaseModel):
    from_asset: Asset
    to_asset: Asset
    amount: Decimal

    model_config = ConfigDict(json_schema_extra={
        "example": {"from_asset": "USDT", "to_asset": "BTC", "amount": "1000"}
    })


class TopupRequest(BaseModel):
    user_id: UUID
    asset: Asset = REFERENCE_ASSET
    amount: Decimal
    mode: TopupMode = TopupMode.ADD
    note: Optional[str] = None
    request_key: Optional[str] = Field(default=None, description="Client-generated key; retries with the same key credit once")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "asset": "USDT",
            "amount": "500",
            "request_key": "topup-2024-06-01-0001"
        }
    })


class CreateFundingRequest(BaseModel):
    asset: Asset = REFERENCE_ASSET
    amount: Decimal
    wallet_address: str = Field(min_length=1)
    note: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"asset": "USDT", "amount": "250", "wallet_address": "TQ4x9fK2mWv8yR3..."}
    })


class OrderActionRequest(BaseModel):
    note: Optional[str] = None


class AccrueRequest(BaseModel):
    as_of: Optional[datetime] = None


class RegisterUserRequest(BaseModel):
    user_id: UUID
    managed_by: Optional[UUID] = None


# ----------------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------------

class ExchangeResult(BaseModel):
    wallet: WalletState
    from_asset: Asset
    to_asset: Asset
    spent_amount: Decimal
    received_amount: Decimal
    value_ref: Decimal
    stale: bool
    prices_as_of: datetime


class OrderResponse(BaseModel):
    order: MiningOrder
    wallet: Optional[WalletState] = None
    amount_credited: Optional[Decimal] = None
    message: str


class AccrualResult(BaseModel):
    order: MiningOrder
    days_credited: int
    amount_credited: Decimal
    completed: bool
    wallet: WalletState


class TopupResult(BaseModel):
    record: TopupRecord
    wallet: WalletState
    replayed: bool = False
    message: str


class ApprovalResult(BaseModel):
    order: MiningOrder
    changed: bool
    message: str


class FundingResult(BaseModel):
    request: FundingRequest
    record: Optional[TopupRecord] = None
    wallet: Optional[WalletState] = None
    changed: bool = True
    message: str


class SweepResult(BaseModel):
    accrued: int
    completed: int
    failed: list[UUID] = Field(default_factory=list)


class Failure(BaseModel):
    error: str
    message: str
