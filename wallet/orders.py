"""
Mining order lifecycle.

    PENDING --activate--> ACTIVE --abort--> ABORTED
       |                     |
       +--reject--> REJECTED +--cycle elapsed--> COMPLETED

Creating an order debits the principal from the reference balance; reject
refunds it in full, abort refunds it minus the plan's abort fee, and
completion returns it together with any accrual not yet credited. Accrual
is recognized per full elapsed day and is credited exactly once per day.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    InvalidTransitionError,
    NotFoundError,
    PlanBoundsViolationError,
    UnauthorizedError,
    WalletError,
)
from .ledger import ZERO, WalletLedger
from .models import (
    REFERENCE_ASSET,
    AccrualResult,
    MiningOrder,
    MiningPlan,
    OrderResponse,
    OrderStatus,
    SweepResult,
)
from .storage import InMemoryStorage, UnitOfWork

logger = logging.getLogger(__name__)


class MiningOrderManager:
    def __init__(self, storage: InMemoryStorage, ledger: WalletLedger):
        self.storage = storage
        self.ledger = ledger
        self.clock = ledger.clock

    def create(self, user_id: UUID, plan_id: str, principal: Decimal) -> OrderResponse:
        plan = self.get_plan(plan_id)
        principal = self.ledger.to_amount(principal)
        if not plan.admits(principal):
            raise PlanBoundsViolationError(
                f"Amount must be between {plan.min_amount} and {plan.max_amount} for plan {plan.plan_id}"
            )
        self._check_mining_allowed(user_id)

        order_id = uuid4()

        def work(uow: UnitOfWork):
            self.ledger.apply_debit(uow, REFERENCE_ASSET, principal)
            order = {
                "order_id": order_id,
                "user_id": user_id,
                "plan_id": plan.plan_id,
                "principal": principal,
                "status": OrderStatus.PENDING,
                "created_at": self.clock(),
                "activated_at": None,
                "resolved_at": None,
                "accrued_days": 0,
                "accrued_total": ZERO,
                "note": None,
                "version": 0,
            }
            uow.add_order(order)
            return order, self.ledger.staged_state(uow)

        order, wallet = self.ledger.atomic(user_id, work)
        logger.info(f"Order {order_id} created for user {user_id}: {principal} on plan {plan.plan_id}")
        return OrderResponse(order=MiningOrder(**order), wallet=wallet, message="Order created, awaiting approval")

    def activate(self, order_id: UUID, note: Optional[str] = None) -> OrderResponse:
        order = self._order(order_id)

        def work(uow: UnitOfWork):
            staged = uow.load_order(order_id)
            self._require(staged, OrderStatus.PENDING, "activate")
            staged["status"] = OrderStatus.ACTIVE
            staged["activated_at"] = self.clock()
            staged["note"] = note or staged["note"]
            return staged

        staged = self.ledger.atomic(order["user_id"], work)
        logger.info(f"Order {order_id} activated")
        return OrderResponse(order=MiningOrder(**staged), message="Order activated")

    def reject(self, order_id: UUID, note: Optional[str] = None) -> OrderResponse:
        order = self._order(order_id)

        def work(uow: UnitOfWork):
            staged = uow.load_order(order_id)
            self._require(staged, OrderStatus.PENDING, "reject")
            self.ledger.apply_credit(uow, REFERENCE_ASSET, staged["principal"])
            staged["status"] = OrderStatus.REJECTED
            staged["resolved_at"] = self.clock()
            staged["note"] = note or staged["note"]
            return staged, self.ledger.staged_state(uow)

        staged, wallet = self.ledger.atomic(order["user_id"], work)
        logger.info(f"Order {order_id} rejected, refunded {staged['principal']}")
        return OrderResponse(
            order=MiningOrder(**staged),
            wallet=wallet,
            amount_credited=staged["principal"],
            message="Order rejected, principal refunded",
        )

    def accrue(self, order_id: UUID, as_of: Optional[datetime] = None) -> AccrualResult:
        """Credit every full day elapsed since activation that has not been credited yet.

        Safe to call repeatedly: days already credited are skipped. Once the
        plan's cycle has fully elapsed the order is completed in the same step.
        """
        order = self._order(order_id)
        plan = self.get_plan(order["plan_id"])
        as_of = as_of or self.clock()

        def work(uow: UnitOfWork):
            staged = uow.load_order(order_id)
            self._require(staged, OrderStatus.ACTIVE, "accrue")
            days, amount = self._recognize(uow, staged, plan, as_of)
            completed = False
            if staged["accrued_days"] >= plan.cycle_days:
                self._settle(uow, staged)
                completed = True
            return staged, days, amount, completed, self.ledger.staged_state(uow)

        staged, days, amount, completed, wallet = self.ledger.atomic(order["user_id"], work)
        if days:
            logger.info(f"Order {order_id} accrued {amount} for {days} day(s)")
        if completed:
            logger.info(f"Order {order_id} completed")
        return AccrualResult(
            order=MiningOrder(**staged),
            days_credited=days,
            amount_credited=amount,
            completed=completed,
            wallet=wallet,
        )

    def complete(self, order_id: UUID, as_of: Optional[datetime] = None) -> OrderResponse:
        order = self._order(order_id)
        plan = self.get_plan(order["plan_id"])
        as_of = as_of or self.clock()

        def work(uow: UnitOfWork):
            staged = uow.load_order(order_id)
            self._require(staged, OrderStatus.ACTIVE, "complete")
            elapsed = self._elapsed_days(staged, plan, as_of)
            if elapsed < plan.cycle_days:
                raise InvalidTransitionError(
                    f"Cannot complete order {order_id}: {elapsed} of {plan.cycle_days} days elapsed"
                )
            _, accrued = self._recognize(uow, staged, plan, as_of)
            self._settle(uow, staged)
            return staged, accrued, self.ledger.staged_state(uow)

        staged, accrued, wallet = self.ledger.atomic(order["user_id"], work)
        logger.info(f"Order {order_id} completed")
        return OrderResponse(
            order=MiningOrder(**staged),
            wallet=wallet,
            amount_credited=staged["principal"] + accrued,
            message="Order completed, principal returned",
        )

    def abort(self, user_id: UUID, order_id: UUID) -> OrderResponse:
        order = self._order(order_id)
        if order["user_id"] != user_id:
            raise NotFoundError(f"Order {order_id} not found")
        self._check_mining_allowed(user_id)
        plan = self.get_plan(order["plan_id"])
        refund = self.ledger.quantize(order["principal"] * (Decimal("1") - plan.abort_fee_rate))

        def work(uow: UnitOfWork):
            staged = uow.load_order(order_id)
            self._require(staged, OrderStatus.ACTIVE, "abort")
            self.ledger.apply_credit(uow, REFERENCE_ASSET, refund)
            staged["status"] = OrderStatus.ABORTED
            staged["resolved_at"] = self.clock()
            staged["note"] = "User aborted"
            return staged, self.ledger.staged_state(uow)

        staged, wallet = self.ledger.atomic(user_id, work)
        logger.info(f"Order {order_id} aborted by user {user_id}, refunded {refund}")
        return OrderResponse(
            order=MiningOrder(**staged),
            wallet=wallet,
            amount_credited=refund,
            message=f"Order aborted, refunded {refund} {REFERENCE_ASSET.value}",
        )

    def settle_due(self, as_of: Optional[datetime] = None) -> SweepResult:
        """Daily sweep: accrue every active order, completing those whose cycle ended."""
        as_of = as_of or self.clock()
        result = SweepResult(accrued=0, completed=0)
        for order in self.storage.orders_with_status(OrderStatus.ACTIVE):
            try:
                accrual = self.accrue(order["order_id"], as_of)
            except WalletError as e:
                logger.error(f"Accrual failed for order {order['order_id']}: {e.kind}: {e}")
                result.failed.append(order["order_id"])
                continue
            if accrual.days_credited:
                result.accrued += 1
            if accrual.completed:
                result.completed += 1
        return result

    def get_order(self, order_id: UUID) -> MiningOrder:
        return MiningOrder(**self._order(order_id))

    def list_orders(
        self,
        user_id: Optional[UUID] = None,
        status: Optional[OrderStatus] = None,
    ) -> list[MiningOrder]:
        rows = self.storage.orders_for(user_id) if user_id else list(self.storage.mining_orders.values())
        orders = [MiningOrder(**row) for row in rows if status is None or row["status"] == status]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def get_plan(self, plan_id: str) -> MiningPlan:
        plan = self.storage.get_plan(plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    def _order(self, order_id: UUID) -> dict:
        order = self.storage.get_order(order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def _check_mining_allowed(self, user_id: UUID) -> None:
        if self.storage.get_access(user_id)["mining_restricted"]:
            raise UnauthorizedError("Your account is restricted")

    @staticmethod
    def _require(staged: dict, status: OrderStatus, action: str) -> None:
        if staged["status"] != status:
            raise InvalidTransitionError(
                f"Cannot {action} order {staged['order_id']} in {staged['status'].value} state"
            )

    @staticmethod
    def _elapsed_days(staged: dict, plan: MiningPlan, as_of: datetime) -> int:
        days = (as_of - staged["activated_at"]).days
        return max(0, min(days, plan.cycle_days))

    def _recognize(self, uow: UnitOfWork, staged: dict, plan: MiningPlan, as_of: datetime) -> tuple[int, Decimal]:
        elapsed = self._elapsed_days(staged, plan, as_of)
        new_days = elapsed - staged["accrued_days"]
        if new_days <= 0:
            return 0, ZERO
        amount = self.ledger.quantize(staged["principal"] * plan.daily_rate) * new_days
        self.ledger.apply_credit(uow, REFERENCE_ASSET, amount)
        staged["accrued_days"] = elapsed
        staged["accrued_total"] = staged["accrued_total"] + amount
        return new_days, amount

    def _settle(self, uow: UnitOfWork, staged: dict) -> None:
        self.ledger.apply_credit(uow, REFERENCE_ASSET, staged["principal"])
        staged["status"] = OrderStatus.COMPLETED
        staged["resolved_at"] = self.clock()
