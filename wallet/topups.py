import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import IdempotencyConflictError, InvalidTransitionError, NotFoundError
from .ledger import WalletLedger
from .models import (
    Asset,
    FundingKind,
    FundingRequest,
    FundingResult,
    RequestStatus,
    TopupMode,
    TopupRecord,
    TopupResult,
)
from .storage import InMemoryStorage, UnitOfWork

logger = logging.getLogger(__name__)


class TopupJournal:
    """Append-only journal of administrator credits and corrections.

    The journal row and the balance change commit together. A correction is
    a new SUBTRACT row; rows are never edited or removed. User deposit and
    withdrawal requests wait here as PENDING until an administrator confirms
    them (one journal row) or rejects them (nothing moves).
    """

    def __init__(self, storage: InMemoryStorage, ledger: WalletLedger):
        self.storage = storage
        self.ledger = ledger

    def record(
        self,
        admin_id: UUID,
        user_id: UUID,
        asset: Asset,
        amount: Decimal,
        note: Optional[str] = None,
        request_key: Optional[str] = None,
        mode: TopupMode = TopupMode.ADD,
    ) -> TopupResult:
        amount = self.ledger.to_amount(amount)
        signed_amount = -amount if mode == TopupMode.SUBTRACT else amount

        existing = self._check_idempotency(request_key, user_id, asset, signed_amount)
        if existing:
            return self._replay(existing)

        def work(uow: UnitOfWork):
            prior = self._check_idempotency(request_key, user_id, asset, signed_amount)
            if prior:
                return prior, True, None
            record = self._stage(uow, admin_id, asset, amount, mode, note, request_key)
            return record, False, self.ledger.staged_state(uow)

        record, replayed, wallet = self.ledger.atomic(user_id, work)
        if replayed:
            return self._replay(record)

        logger.info(
            f"Topup {record['id']} by admin {admin_id}: {signed_amount} {asset.value} for user {user_id}"
        )
        return TopupResult(
            record=TopupRecord(**record),
            wallet=wallet,
            message="Topup recorded",
        )

    def history(self, user_id: UUID) -> list[TopupRecord]:
        if not self.storage.get_profile(user_id):
            raise NotFoundError(f"User {user_id} not found")
        records = [TopupRecord(**row) for row in self.storage.topups_for(user_id)]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    # -- deposit / withdrawal requests ---------------------------------------

    def request_funding(
        self,
        user_id: UUID,
        kind: FundingKind,
        asset: Asset,
        amount: Decimal,
        wallet_address: str,
        note: Optional[str] = None,
    ) -> FundingRequest:
        """Queue a deposit or withdrawal for approval. No balance changes yet."""
        amount = self.ledger.to_amount(amount)

        def work(uow: UnitOfWork) -> dict:
            request = {
                "id": uuid4(),
                "user_id": user_id,
                "kind": kind,
                "asset": asset,
                "amount": amount,
                "wallet_address": wallet_address,
                "status": RequestStatus.PENDING,
                "created_at": self.ledger.clock(),
                "resolved_at": None,
                "resolved_by": None,
                "topup_id": None,
                "note": note or None,
                "version": 0,
            }
            uow.add_funding_request(request)
            return request

        request = self.ledger.atomic(user_id, work)
        logger.info(f"{kind.value.title()} request {request['id']} from user {user_id}: {amount} {asset.value}")
        return FundingRequest(**request)

    def confirm_request(self, request_id: UUID, admin_id: UUID, note: Optional[str] = None) -> FundingResult:
        """Confirm a PENDING request: credit a deposit or debit a withdrawal in one unit."""
        request = self._request(request_id)

        def work(uow: UnitOfWork):
            staged = uow.load_funding_request(request_id)
            self._require_pending(staged, "confirm")
            if staged["kind"] == FundingKind.WITHDRAWAL:
                mode = TopupMode.SUBTRACT
                default_note = f"Withdraw confirmed ({staged['asset'].value} {staged['amount']})"
            else:
                mode = TopupMode.ADD
                default_note = f"Approved deposit request {request_id}"
            record = self._stage(
                uow, admin_id, staged["asset"], staged["amount"], mode, note or default_note, None
            )
            staged["status"] = RequestStatus.CONFIRMED
            staged["resolved_at"] = self.ledger.clock()
            staged["resolved_by"] = admin_id
            staged["topup_id"] = record["id"]
            return staged, record, self.ledger.staged_state(uow)

        staged, record, wallet = self.ledger.atomic(request["user_id"], work)
        logger.info(f"Funding request {request_id} confirmed by {admin_id}, journal row {record['id']}")
        return FundingResult(
            request=FundingRequest(**staged),
            record=TopupRecord(**record),
            wallet=wallet,
            message=f"{staged['kind'].value.title()} confirmed",
        )

    def reject_request(self, request_id: UUID, admin_id: UUID, note: Optional[str] = None) -> FundingResult:
        request = self._request(request_id)

        def work(uow: UnitOfWork) -> dict:
            staged = uow.load_funding_request(request_id)
            self._require_pending(staged, "reject")
            staged["status"] = RequestStatus.REJECTED
            staged["resolved_at"] = self.ledger.clock()
            staged["resolved_by"] = admin_id
            staged["note"] = note or staged["note"]
            return staged

        staged = self.ledger.atomic(request["user_id"], work)
        logger.info(f"Funding request {request_id} rejected by {admin_id}")
        return FundingResult(
            request=FundingRequest(**staged),
            message=f"{staged['kind'].value.title()} rejected",
        )

    def get_request(self, request_id: UUID) -> FundingRequest:
        return FundingRequest(**self._request(request_id))

    def list_requests(
        self,
        user_id: Optional[UUID] = None,
        status: Optional[RequestStatus] = None,
        kind: Optional[FundingKind] = None,
    ) -> list[FundingRequest]:
        requests = [
            FundingRequest(**row)
            for row in self.storage.funding_requests_for(user_id)
            if (status is None or row["status"] == status) and (kind is None or row["kind"] == kind)
        ]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    # -- internals -----------------------------------------------------------

    def _stage(
        self,
        uow: UnitOfWork,
        admin_id: UUID,
        asset: Asset,
        amount: Decimal,
        mode: TopupMode,
        note: Optional[str],
        request_key: Optional[str],
    ) -> dict:
        if mode == TopupMode.SUBTRACT:
            balance_after = self.ledger.apply_debit(uow, asset, amount)
        else:
            balance_after = self.ledger.apply_credit(uow, asset, amount)
        record = {
            "id": uuid4(),
            "user_id": uow.user_id,
            "admin_id": admin_id,
            "asset": asset,
            "mode": mode,
            "amount": -amount if mode == TopupMode.SUBTRACT else amount,
            "balance_after": balance_after,
            "note": note or None,
            "request_key": request_key,
            "created_at": self.ledger.clock(),
        }
        uow.append_topup(record)
        return record

    def _request(self, request_id: UUID) -> dict:
        request = self.storage.get_funding_request(request_id)
        if not request:
            raise NotFoundError(f"Funding request {request_id} not found")
        return request

    @staticmethod
    def _require_pending(staged: dict, action: str) -> None:
        if staged["status"] != RequestStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot {action} request {staged['id']}: already {staged['status'].value}"
            )

    def _check_idempotency(
        self, request_key: Optional[str], user_id: UUID, asset: Asset, signed_amount: Decimal
    ) -> Optional[dict]:
        if not request_key:
            return None
        prior = self.storage.lookup_request_key(request_key)
        if not prior:
            return None
        if (prior["user_id"], prior["asset"], prior["amount"]) != (user_id, asset, signed_amount):
            raise IdempotencyConflictError(
                f"Request key {request_key!r} was already used for a different topup"
            )
        return prior

    def _replay(self, record: dict) -> TopupResult:
        return TopupResult(
            record=TopupRecord(**record),
            wallet=self.ledger.get_wallet_state(record["user_id"]),
            replayed=True,
            message="Topup already recorded (idempotent return)",
        )
