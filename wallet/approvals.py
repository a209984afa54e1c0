import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from .errors import InvalidTransitionError, NotFoundError, UnauthorizedError
from .models import (
    ApprovalResult,
    FundingKind,
    FundingRequest,
    FundingResult,
    Identity,
    MiningOrder,
    OrderStatus,
    RegisterUserRequest,
    RequestStatus,
    Role,
    SweepResult,
    TopupRecord,
    TopupRequest,
    TopupResult,
    UserAccess,
    UserProfile,
)
from .orders import MiningOrderManager
from .storage import InMemoryStorage
from .topups import TopupJournal

logger = logging.getLogger(__name__)


class ApprovalWorkflow:
    """Administrator entry point.

    Checks the caller's role claim, and for sub-admins that the target user
    is one they manage, before delegating to the order manager or the topup
    journal. Deposit and withdrawal requests follow the same approve/reject
    shape as orders. Approve and reject tolerate retries: a target that
    already left PENDING is reported back unchanged instead of failing.
    """

    def __init__(self, storage: InMemoryStorage, orders: MiningOrderManager, topups: TopupJournal):
        self.storage = storage
        self.orders = orders
        self.topups = topups

    def approve_order(self, identity: Identity, order_id: UUID, note: Optional[str] = None) -> ApprovalResult:
        order = self.orders.get_order(order_id)
        self._authorize(identity, order.user_id)
        if not order.can_activate():
            return self._unchanged(order)

        note = note or ("Approved by admin" if identity.is_admin else "Approved by subadmin")
        try:
            response = self.orders.activate(order_id, note)
        except InvalidTransitionError:
            # Lost the race to another approver
            return self._unchanged(self.orders.get_order(order_id))
        logger.info(f"Order {order_id} approved by {identity.role.value} {identity.actor_id}")
        return ApprovalResult(order=response.order, changed=True, message="Order approved")

    def reject_order(self, identity: Identity, order_id: UUID, note: Optional[str] = None) -> ApprovalResult:
        order = self.orders.get_order(order_id)
        self._authorize(identity, order.user_id)
        if not order.can_reject():
            return self._unchanged(order)

        note = note or ("Rejected by admin" if identity.is_admin else "Rejected by subadmin")
        try:
            response = self.orders.reject(order_id, note)
        except InvalidTransitionError:
            return self._unchanged(self.orders.get_order(order_id))
        logger.info(f"Order {order_id} rejected by {identity.role.value} {identity.actor_id}")
        return ApprovalResult(order=response.order, changed=True, message="Order rejected, principal refunded")

    def approve_topup(self, identity: Identity, request_id: UUID, note: Optional[str] = None) -> FundingResult:
        return self._resolve(identity, request_id, FundingKind.DEPOSIT, True, note)

    def reject_topup(self, identity: Identity, request_id: UUID, note: Optional[str] = None) -> FundingResult:
        return self._resolve(identity, request_id, FundingKind.DEPOSIT, False, note)

    def approve_withdrawal(self, identity: Identity, request_id: UUID, note: Optional[str] = None) -> FundingResult:
        return self._resolve(identity, request_id, FundingKind.WITHDRAWAL, True, note)

    def reject_withdrawal(self, identity: Identity, request_id: UUID, note: Optional[str] = None) -> FundingResult:
        return self._resolve(identity, request_id, FundingKind.WITHDRAWAL, False, note)

    def pending_requests(self, identity: Identity, kind: Optional[FundingKind] = None) -> list[FundingRequest]:
        self._require_role(identity)
        pending = self.topups.list_requests(status=RequestStatus.PENDING, kind=kind)
        if identity.is_admin:
            return pending
        managed = self.storage.managed_users(identity.actor_id)
        return [request for request in pending if request.user_id in managed]

    def record_topup(self, identity: Identity, request: TopupRequest) -> TopupResult:
        self._authorize(identity, request.user_id)
        return self.topups.record(
            admin_id=identity.actor_id,
            user_id=request.user_id,
            asset=request.asset,
            amount=request.amount,
            note=request.note,
            request_key=request.request_key,
            mode=request.mode,
        )

    def topup_history(self, identity: Identity, user_id: UUID) -> list[TopupRecord]:
        self._authorize(identity, user_id)
        return self.topups.history(user_id)

    def pending_orders(self, identity: Identity) -> list[MiningOrder]:
        self._require_role(identity)
        pending = self.orders.list_orders(status=OrderStatus.PENDING)
        if identity.is_admin:
            return pending
        managed = self.storage.managed_users(identity.actor_id)
        return [order for order in pending if order.user_id in managed]

    def set_user_access(self, identity: Identity, user_id: UUID, access: UserAccess) -> UserAccess:
        self._authorize(identity, user_id)
        stored = self.storage.set_access(user_id, access.model_dump())
        logger.info(f"Access for user {user_id} set to {stored} by {identity.actor_id}")
        return UserAccess(**stored)

    def register_user(self, identity: Identity, request: RegisterUserRequest) -> UserProfile:
        self.require_admin(identity)
        profile = self.storage.add_user(request.user_id, request.managed_by)
        logger.info(f"User {request.user_id} registered (managed by {profile['managed_by']})")
        return UserProfile(**profile)

    def run_accruals(self, identity: Identity, as_of: Optional[datetime] = None) -> SweepResult:
        self.require_admin(identity)
        return self.orders.settle_due(as_of)

    def require_admin(self, identity: Identity) -> None:
        if not identity.is_admin:
            raise UnauthorizedError("Admin role required")

    def _require_role(self, identity: Identity) -> None:
        if not identity.can_approve:
            raise UnauthorizedError(f"Role {identity.role.value} may not perform administrator actions")

    def _authorize(self, identity: Identity, user_id: UUID) -> None:
        self._require_role(identity)
        if identity.role != Role.SUB_ADMIN:
            return
        profile = self.storage.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"User {user_id} not found")
        if profile["managed_by"] != identity.actor_id:
            raise UnauthorizedError(f"Sub-admin {identity.actor_id} does not manage user {user_id}")

    def _resolve(
        self,
        identity: Identity,
        request_id: UUID,
        kind: FundingKind,
        approve: bool,
        note: Optional[str],
    ) -> FundingResult:
        request = self.topups.get_request(request_id)
        if request.kind != kind:
            raise NotFoundError(f"{kind.value.title()} request {request_id} not found")
        self._authorize(identity, request.user_id)
        if not request.can_resolve():
            return self._already_processed(request)

        try:
            if approve:
                result = self.topups.confirm_request(request_id, identity.actor_id, note)
            else:
                result = self.topups.reject_request(request_id, identity.actor_id, note)
        except InvalidTransitionError:
            return self._already_processed(self.topups.get_request(request_id))
        logger.info(
            f"{kind.value.title()} request {request_id} {result.request.status.value.lower()} "
            f"by {identity.role.value} {identity.actor_id}"
        )
        return result

    @staticmethod
    def _already_processed(request: FundingRequest) -> FundingResult:
        return FundingResult(
            request=request,
            changed=False,
            message=f"Request already {request.status.value}; nothing to do",
        )

    @staticmethod
    def _unchanged(order: MiningOrder) -> ApprovalResult:
        return ApprovalResult(
            order=order,
            changed=False,
            message=f"Order already {order.status.value}; nothing to do",
        )
