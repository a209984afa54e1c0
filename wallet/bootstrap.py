"""
Process bootstrap: builds every component once and wires them together.

Components receive their collaborators explicitly; nothing is created
lazily on first access.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .approvals import ApprovalWorkflow
from .config import Settings, settings as default_settings
from .ledger import WalletLedger
from .models import Asset, utcnow
from .orders import MiningOrderManager
from .prices import HttpPriceOracle, PriceOracle, StaticPriceOracle
from .storage import InMemoryStorage
from .topups import TopupJournal


@dataclass
class Services:
    settings: Settings
    storage: InMemoryStorage
    prices: PriceOracle
    ledger: WalletLedger
    orders: MiningOrderManager
    topups: TopupJournal
    approvals: ApprovalWorkflow


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if config.debug else config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_price_oracle(config: Settings, clock: Callable[[], datetime]) -> PriceOracle:
    if config.price_source == "http":
        return HttpPriceOracle(
            coingecko_url=config.coingecko_url,
            binance_url=config.binance_url,
            timeout=config.price_timeout_seconds,
            cache_seconds=config.price_cache_seconds,
            max_stale_seconds=config.price_max_stale_seconds,
            clock=clock,
        )
    table = {Asset(symbol.upper()): price for symbol, price in config.static_prices.items()}
    return StaticPriceOracle(table, clock=clock)


def build_services(
    config: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    prices: Optional[PriceOracle] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    config = config or default_settings
    storage = storage or InMemoryStorage()
    prices = prices or build_price_oracle(config, clock)
    ledger = WalletLedger(
        storage,
        clock=clock,
        amount_decimals=config.amount_decimals,
        max_conflict_retries=config.max_conflict_retries,
        max_amount=config.max_amount,
    )
    orders = MiningOrderManager(storage, ledger)
    topups = TopupJournal(storage, ledger)
    approvals = ApprovalWorkflow(storage, orders, topups)
    return Services(
        settings=config,
        storage=storage,
        prices=prices,
        ledger=ledger,
        orders=orders,
        topups=topups,
        approvals=approvals,
    )
