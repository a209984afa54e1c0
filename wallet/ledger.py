"""
Wallet ledger: per-user multi-asset balances.

Every mutation runs as one unit of work under the user's lock and is
committed with a version check, so a debit and its matching credit are
either both visible or neither is. Amounts are Decimals held to a fixed
quantum; computed amounts are truncated toward zero so rounding never
favours the house or the user by more than one quantum.
"""

import logging
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from typing import Callable, Optional, TypeVar, Union
from uuid import UUID

from .config import settings
from .errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    NotFoundError,
    PriceUnavailableError,
    UnauthorizedError,
    VersionConflict,
)
from .models import (
    REFERENCE_ASSET,
    Asset,
    ExchangeResult,
    PriceSnapshot,
    WalletState,
    utcnow,
)
from .storage import InMemoryStorage, UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")

# Digits carried while pricing an exchange, enough for max_amount times any quoted price
EXCHANGE_PRECISION = 60


class WalletLedger:
    def __init__(
        self,
        storage: InMemoryStorage,
        clock: Callable[[], datetime] = utcnow,
        amount_decimals: Optional[int] = None,
        max_conflict_retries: Optional[int] = None,
        max_amount: Optional[Decimal] = None,
    ):
        self.storage = storage
        self.clock = clock
        decimals = settings.amount_decimals if amount_decimals is None else amount_decimals
        self.quantum = Decimal(1).scaleb(-decimals)
        self.max_amount = settings.max_amount if max_amount is None else max_amount
        self.max_conflict_retries = (
            settings.max_conflict_retries if max_conflict_retries is None else max_conflict_retries
        )

    # -- amounts -------------------------------------------------------------

    def quantize(self, value: Decimal) -> Decimal:
        """Truncate to the ledger quantum."""
        try:
            return value.quantize(self.quantum, rounding=ROUND_DOWN)
        except InvalidOperation:
            raise InvalidAmountError(f"Amount {value} is too large to represent")

    def to_amount(self, value: Union[Decimal, int, str], allow_zero: bool = False) -> Decimal:
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation:
            raise InvalidAmountError(f"Invalid amount: {value!r}")
        if not amount.is_finite():
            raise InvalidAmountError(f"Amount must be finite, got {amount}")
        if amount < 0 or (amount == 0 and not allow_zero):
            raise InvalidAmountError(f"Amount must be greater than zero, got {amount}")
        if amount > self.max_amount:
            raise InvalidAmountError(f"Amount {amount} exceeds the maximum of {self.max_amount}")
        if amount != self.quantize(amount):
            raise InvalidAmountError(f"Amount {amount} has more precision than {self.quantum}")
        return amount

    # -- atomic units --------------------------------------------------------

    def atomic(self, user_id: UUID, work: Callable[[UnitOfWork], T]) -> T:
        """Run ``work`` against a fresh unit of work for ``user_id`` and commit it.

        The user's lock is held for the whole unit so operations on one
        wallet are serialized. A lost compare-and-swap re-runs the unit up
        to ``max_conflict_retries`` more times before raising ConflictError.
        Domain errors raised by ``work`` propagate and nothing is committed.
        """
        attempts = self.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            with self.storage.lock_for(user_id):
                uow = self.storage.begin(user_id)
                result = work(uow)
                try:
                    self.storage.commit(uow)
                except VersionConflict as e:
                    logger.warning(f"Commit conflict for user {user_id} (attempt {attempt}/{attempts}): {e}")
                    continue
                return result
        raise ConflictError(f"Wallet for user {user_id} is busy; gave up after {attempts} attempts")

    def apply_debit(self, uow: UnitOfWork, asset: Asset, amount: Decimal) -> Decimal:
        amount = self.to_amount(amount)
        balance = uow.wallet["balances"].get(asset, ZERO)
        if balance < amount:
            raise InsufficientFundsError(
                f"Insufficient {asset.value} balance. Required: {amount}, Available: {balance}"
            )
        uow.wallet["balances"][asset] = balance - amount
        uow.touch(self.clock())
        return uow.wallet["balances"][asset]

    def apply_credit(self, uow: UnitOfWork, asset: Asset, amount: Decimal) -> Decimal:
        amount = self.to_amount(amount, allow_zero=True)
        balance = uow.wallet["balances"].get(asset, ZERO)
        if balance + amount > self.max_amount:
            raise InvalidAmountError(
                f"Crediting {amount} {asset.value} would exceed the maximum balance of {self.max_amount}"
            )
        uow.wallet["balances"][asset] = balance + amount
        uow.touch(self.clock())
        return uow.wallet["balances"][asset]

    # -- public operations ---------------------------------------------------

    def debit(self, user_id: UUID, asset: Asset, amount: Decimal) -> WalletState:
        return self.atomic(user_id, lambda uow: self._run(uow, self.apply_debit, asset, amount))

    def credit(self, user_id: UUID, asset: Asset, amount: Decimal) -> WalletState:
        return self.atomic(user_id, lambda uow: self._run(uow, self.apply_credit, asset, amount))

    def exchange(
        self,
        user_id: UUID,
        from_asset: Asset,
        to_asset: Asset,
        amount_from: Decimal,
        prices: PriceSnapshot,
    ) -> ExchangeResult:
        if from_asset == to_asset:
            raise InvalidAmountError("From and to assets must be different")
        amount_from = self.to_amount(amount_from)

        price_from = prices.price(from_asset)
        price_to = prices.price(to_asset)
        for asset, price in ((from_asset, price_from), (to_asset, price_to)):
            if price is None or not price.is_finite() or price <= 0:
                raise PriceUnavailableError(f"Price unavailable for {asset.value}")

        with localcontext() as ctx:
            ctx.prec = EXCHANGE_PRECISION
            value_ref = amount_from if from_asset == REFERENCE_ASSET else amount_from * price_from
            amount_to = value_ref if to_asset == REFERENCE_ASSET else value_ref / price_to
            amount_to = self.quantize(amount_to)
            value_ref = self.quantize(value_ref)
        if amount_to <= 0:
            raise InvalidAmountError(f"{amount_from} {from_asset.value} is worth less than one unit of {to_asset.value}")
        if amount_to > self.max_amount:
            raise InvalidAmountError(f"{amount_to} {to_asset.value} exceeds the maximum of {self.max_amount}")

        if self.storage.get_access(user_id)["trade_restricted"]:
            raise UnauthorizedError("Your account is restricted")

        def work(uow: UnitOfWork) -> WalletState:
            self.apply_debit(uow, from_asset, amount_from)
            self.apply_credit(uow, to_asset, amount_to)
            return self.staged_state(uow)

        wallet = self.atomic(user_id, work)
        if prices.stale:
            logger.warning(f"Exchange for user {user_id} priced from stale snapshot ({prices.source}, {prices.as_of.isoformat()})")
        logger.info(f"Exchanged {amount_from} {from_asset.value} -> {amount_to} {to_asset.value} for user {user_id}")

        return ExchangeResult(
            wallet=wallet,
            from_asset=from_asset,
            to_asset=to_asset,
            spent_amount=amount_from,
            received_amount=amount_to,
            value_ref=value_ref,
            stale=prices.stale,
            prices_as_of=prices.as_of,
        )

    def get_wallet_state(self, user_id: UUID) -> WalletState:
        wallet = self.storage.snapshot_wallet(user_id)
        if wallet is None:
            raise NotFoundError(f"User {user_id} not found")
        return self._to_state(wallet)

    def _run(self, uow: UnitOfWork, op, asset: Asset, amount: Decimal) -> WalletState:
        op(uow, asset, amount)
        return self.staged_state(uow)

    def staged_state(self, uow: UnitOfWork) -> WalletState:
        """Wallet as it will read once ``uow`` commits."""
        wallet = dict(uow.wallet)
        if uow.wallet_dirty:
            wallet["version"] = uow.expected_version + 1
        return self._to_state(wallet)

    @staticmethod
    def _to_state(wallet: dict) -> WalletState:
        balances = {asset: wallet["balances"].get(asset, ZERO) for asset in Asset}
        return WalletState(
            user_id=wallet["user_id"],
            balances=balances,
            updated_at=wallet["updated_at"],
            version=wallet["version"],
        )
