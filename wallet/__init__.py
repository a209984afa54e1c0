"""
Mining Wallet Ledger

This package provides:
- Per-user multi-asset balances with atomic debit, credit and exchange
- Mining order lifecycle: pending → active → completed / aborted, or rejected
- Daily accrual credited exactly once per elapsed day
- Append-only, idempotent administrator topups
- Deposit and withdrawal requests resolved by administrators
- Role-checked approval workflow for admins and sub-admins
"""

from .approvals import ApprovalWorkflow
from .bootstrap import Services, build_services
from .ledger import WalletLedger
from .models import (
    REFERENCE_ASSET,
    Asset,
    FundingKind,
    FundingRequest,
    Identity,
    MiningOrder,
    MiningPlan,
    OrderStatus,
    RequestStatus,
    Role,
    TopupMode,
    TopupRecord,
    WalletState,
)
from .orders import MiningOrderManager
from .prices import HttpPriceOracle, PriceOracle, StaticPriceOracle
from .storage import InMemoryStorage
from .topups import TopupJournal

__all__ = [
    "REFERENCE_ASSET",
    "Asset",
    "FundingKind",
    "FundingRequest",
    "Identity",
    "MiningOrder",
    "MiningPlan",
    "OrderStatus",
    "RequestStatus",
    "Role",
    "TopupMode",
    "TopupRecord",
    "WalletState",
    "ApprovalWorkflow",
    "InMemoryStorage",
    "MiningOrderManager",
    "PriceOracle",
    "HttpPriceOracle",
    "StaticPriceOracle",
    "Services",
    "TopupJournal",
    "WalletLedger",
    "build_services",
]
