import copy
import threading
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .errors import NotFoundError, VersionConflict
from .models import Asset, MiningPlan, OrderStatus, utcnow


MINING_PLANS = [
    MiningPlan(plan_id="m1", name="AI Strategic Vault Prime", cycle_days=120,
               min_amount=Decimal("200000"), max_amount=Decimal("99999999"),
               daily_rate=Decimal("0.043"), abort_fee_rate=Decimal("0.05")),
    MiningPlan(plan_id="m2", name="AI Momentum Vault Pro", cycle_days=60,
               min_amount=Decimal("80000"), max_amount=Decimal("99999999"),
               daily_rate=Decimal("0.031"), abort_fee_rate=Decimal("0.05")),
    MiningPlan(plan_id="m3", name="AI Quant Core Vault", cycle_days=30,
               min_amount=Decimal("50000"), max_amount=Decimal("99999999"),
               daily_rate=Decimal("0.028"), abort_fee_rate=Decimal("0.05")),
    MiningPlan(plan_id="m4", name="AI Dynamic Yield Vault", cycle_days=10,
               min_amount=Decimal("10000"), max_amount=Decimal("999999"),
               daily_rate=Decimal("0.02"), abort_fee_rate=Decimal("0.05")),
    MiningPlan(plan_id="m5", name="AI Smart Start Vault", cycle_days=5,
               min_amount=Decimal("3000"), max_amount=Decimal("999999"),
               daily_rate=Decimal("0.015"), abort_fee_rate=Decimal("0.05")),
]


class UnitOfWork:
    """Staged changes for one user, applied by ``InMemoryStorage.commit`` or dropped.

    Nothing written here is visible to other callers until commit, so an
    abandoned or failed unit leaves no trace.
    """

    def __init__(self, storage: "InMemoryStorage", user_id: UUID, wallet: dict):
        self.storage = storage
        self.user_id = user_id
        self.wallet = wallet
        self.expected_version: int = wallet["version"]
        self.wallet_dirty = False
        self.orders: dict[UUID, dict] = {}
        self.expected_order_versions: dict[UUID, Optional[int]] = {}
        self.funding: dict[UUID, dict] = {}
        self.expected_funding_versions: dict[UUID, Optional[int]] = {}
        self.topups: list[dict] = []
        self.request_keys: dict[str, UUID] = {}

    def touch(self, now: datetime) -> None:
        self.wallet_dirty = True
        self.wallet["updated_at"] = now

    def load_order(self, order_id: UUID) -> dict:
        if order_id in self.orders:
            return self.orders[order_id]
        stored = self.storage.get_order(order_id)
        if not stored or stored["user_id"] != self.user_id:
            raise NotFoundError(f"Order {order_id} not found")
        self.orders[order_id] = stored
        self.expected_order_versions[order_id] = stored["version"]
        return stored

    def add_order(self, order: dict) -> None:
        self.orders[order["order_id"]] = order
        self.expected_order_versions[order["order_id"]] = None

    def load_funding_request(self, request_id: UUID) -> dict:
        if request_id in self.funding:
            return self.funding[request_id]
        stored = self.storage.get_funding_request(request_id)
        if not stored or stored["user_id"] != self.user_id:
            raise NotFoundError(f"Funding request {request_id} not found")
        self.funding[request_id] = stored
        self.expected_funding_versions[request_id] = stored["version"]
        return stored

    def add_funding_request(self, request: dict) -> None:
        self.funding[request["id"]] = request
        self.expected_funding_versions[request["id"]] = None

    def append_topup(self, record: dict) -> None:
        self.topups.append(record)
        if record.get("request_key"):
            self.request_keys[record["request_key"]] = record["id"]


class InMemoryStorage:
    """Process-local stand-in for the ledger tables plus profiles and access flags.

    Every mutation goes through ``commit`` with a compare-and-swap on the
    versions the unit of work read, guarded by a lock per user.
    """

    def __init__(self, plans: Optional[list[MiningPlan]] = None):
        self.wallet_balances: dict[UUID, dict] = {}
        self.mining_orders: dict[UUID, dict] = {}
        self.topup_records: dict[UUID, dict] = {}
        self.funding_requests: dict[UUID, dict] = {}
        self.mining_plans: dict[str, MiningPlan] = {}
        self.profiles: dict[UUID, dict] = {}
        self.user_access: dict[UUID, dict] = {}
        self.idempotency_keys: dict[str, UUID] = {}
        self._locks: dict[UUID, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._keys_lock = threading.Lock()
        self._seed_data(plans if plans is not None else MINING_PLANS)

    def _seed_data(self, plans: list[MiningPlan]):
        for plan in plans:
            self.mining_plans[plan.plan_id] = plan

    def lock_for(self, user_id: UUID) -> threading.RLock:
        lock = self._locks.get(user_id)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(user_id, threading.RLock())
        return lock

    # -- users ---------------------------------------------------------------

    def add_user(self, user_id: UUID, managed_by: Optional[UUID] = None) -> dict:
        with self.lock_for(user_id):
            if user_id in self.profiles:
                return dict(self.profiles[user_id])
            now = utcnow()
            self.profiles[user_id] = {"user_id": user_id, "managed_by": managed_by, "created_at": now}
            self.wallet_balances[user_id] = {
                "user_id": user_id,
                "balances": {asset: Decimal("0") for asset in Asset},
                "updated_at": now,
                "version": 0,
            }
            self.user_access[user_id] = {"mining_restricted": False, "trade_restricted": False}
            return dict(self.profiles[user_id])

    def get_profile(self, user_id: UUID) -> Optional[dict]:
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    def managed_users(self, admin_id: UUID) -> set[UUID]:
        return {uid for uid, p in list(self.profiles.items()) if p["managed_by"] == admin_id}

    def get_access(self, user_id: UUID) -> dict:
        access = self.user_access.get(user_id)
        if access is None:
            raise NotFoundError(f"User {user_id} not found")
        return dict(access)

    def set_access(self, user_id: UUID, access: dict) -> dict:
        with self.lock_for(user_id):
            if user_id not in self.user_access:
                raise NotFoundError(f"User {user_id} not found")
            self.user_access[user_id] = dict(access)
            return dict(access)

    # -- reads ---------------------------------------------------------------

    def snapshot_wallet(self, user_id: UUID) -> Optional[dict]:
        with self.lock_for(user_id):
            wallet = self.wallet_balances.get(user_id)
            return copy.deepcopy(wallet) if wallet else None

    def get_plan(self, plan_id: str) -> Optional[MiningPlan]:
        return self.mining_plans.get(plan_id)

    def list_plans(self) -> list[MiningPlan]:
        return list(self.mining_plans.values())

    def get_order(self, order_id: UUID) -> Optional[dict]:
        order = self.mining_orders.get(order_id)
        return dict(order) if order else None

    def orders_for(self, user_id: UUID) -> list[dict]:
        return [dict(o) for o in list(self.mining_orders.values()) if o["user_id"] == user_id]

    def orders_with_status(self, status: OrderStatus) -> list[dict]:
        return [dict(o) for o in list(self.mining_orders.values()) if o["status"] == status]

    def topups_for(self, user_id: UUID) -> list[dict]:
        return [dict(t) for t in list(self.topup_records.values()) if t["user_id"] == user_id]

    def get_funding_request(self, request_id: UUID) -> Optional[dict]:
        request = self.funding_requests.get(request_id)
        return dict(request) if request else None

    def funding_requests_for(self, user_id: Optional[UUID] = None) -> list[dict]:
        rows = list(self.funding_requests.values())
        return [dict(r) for r in rows if user_id is None or r["user_id"] == user_id]

    def lookup_request_key(self, request_key: str) -> Optional[dict]:
        record_id = self.idempotency_keys.get(request_key)
        if record_id is None:
            return None
        return dict(self.topup_records[record_id])

    # -- writes --------------------------------------------------------------

    def begin(self, user_id: UUID) -> UnitOfWork:
        wallet = self.snapshot_wallet(user_id)
        if wallet is None:
            raise NotFoundError(f"User {user_id} not found")
        return UnitOfWork(self, user_id, wallet)

    def commit(self, uow: UnitOfWork) -> None:
        with self.lock_for(uow.user_id):
            current = self.wallet_balances[uow.user_id]
            if uow.wallet_dirty and current["version"] != uow.expected_version:
                raise VersionConflict(f"wallet {uow.user_id} moved past version {uow.expected_version}")
            for order_id, expected in uow.expected_order_versions.items():
                stored = self.mining_orders.get(order_id)
                if (stored["version"] if stored else None) != expected:
                    raise VersionConflict(f"order {order_id} moved past version {expected}")
            for request_id, expected in uow.expected_funding_versions.items():
                stored = self.funding_requests.get(request_id)
                if (stored["version"] if stored else None) != expected:
                    raise VersionConflict(f"funding request {request_id} moved past version {expected}")

            with self._keys_lock:
                for key in uow.request_keys:
                    if key in self.idempotency_keys:
                        raise VersionConflict(f"request key {key!r} committed concurrently")

                if uow.wallet_dirty:
                    uow.wallet["version"] = uow.expected_version + 1
                    self.wallet_balances[uow.user_id] = uow.wallet
                for order_id, order in uow.orders.items():
                    order["version"] = (uow.expected_order_versions[order_id] or 0) + 1
                    self.mining_orders[order_id] = order
                for request_id, request in uow.funding.items():
                    request["version"] = (uow.expected_funding_versions[request_id] or 0) + 1
                    self.funding_requests[request_id] = request
                for record in uow.topups:
                    self.topup_records[record["id"]] = record
                self.idempotency_keys.update(uow.request_keys)
