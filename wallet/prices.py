"""
Price oracles quoting every asset in the reference asset.

HttpPriceOracle tries CoinGecko (vs USDT, then vs USD) and then Binance,
reuses a fresh snapshot for a few seconds, and when every source fails falls
back to the last good snapshot flagged stale. It never raises on network
trouble; an asset it cannot price comes back as None.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import requests

from .config import settings
from .models import REFERENCE_ASSET, Asset, PriceSnapshot, utcnow

logger = logging.getLogger(__name__)


def _empty_prices() -> dict[Asset, Optional[Decimal]]:
    return {asset: (Decimal("1") if asset == REFERENCE_ASSET else None) for asset in Asset}


def _to_price(value: Any) -> Optional[Decimal]:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class PriceOracle(ABC):
    @abstractmethod
    def get(self) -> PriceSnapshot:
        """Current snapshot; must not raise on feed failures."""


class StaticPriceOracle(PriceOracle):
    """Fixed price table. Used offline and in tests."""

    def __init__(
        self,
        prices: Optional[dict[Asset, Optional[Decimal]]] = None,
        stale: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.prices = _empty_prices()
        self.prices.update(prices or {})
        self.prices[REFERENCE_ASSET] = Decimal("1")
        self.stale = stale
        self.clock = clock

    def set_price(self, asset: Asset, price: Optional[Decimal]) -> None:
        if asset == REFERENCE_ASSET:
            return
        self.prices[asset] = price

    def get(self) -> PriceSnapshot:
        return PriceSnapshot(prices=dict(self.prices), stale=self.stale, as_of=self.clock(), source="static")


class HttpPriceOracle(PriceOracle):
    COIN_IDS = {
        Asset.BTC: "bitcoin",
        Asset.ETH: "ethereum",
        Asset.SOL: "solana",
        Asset.XRP: "ripple",
    }
    BINANCE_SYMBOLS = {
        Asset.BTC: "BTCUSDT",
        Asset.ETH: "ETHUSDT",
        Asset.SOL: "SOLUSDT",
        Asset.XRP: "XRPUSDT",
    }

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        coingecko_url: str = settings.coingecko_url,
        binance_url: str = settings.binance_url,
        timeout: float = settings.price_timeout_seconds,
        cache_seconds: float = settings.price_cache_seconds,
        max_stale_seconds: float = settings.price_max_stale_seconds,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session or requests.Session()
        self.session.headers.update({"accept": "application/json"})
        self.coingecko_url = coingecko_url
        self.binance_url = binance_url
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.max_stale_seconds = max_stale_seconds
        self.clock = clock
        self._cache: Optional[PriceSnapshot] = None

    def get(self) -> PriceSnapshot:
        now = self.clock()
        cached = self._cache
        if cached and (now - cached.as_of).total_seconds() <= self.cache_seconds:
            return cached.model_copy(update={"source": f"{cached.source}:cache"})

        sources = (
            ("coingecko-usdt", lambda: self._from_coingecko("usdt")),
            ("coingecko-usd", lambda: self._from_coingecko("usd")),
            ("binance", self._from_binance),
        )
        errors = []
        for source, fetch in sources:
            prices = fetch()
            if prices:
                snapshot = PriceSnapshot(prices=prices, stale=False, as_of=now, source=source)
                self._cache = snapshot
                return snapshot
            errors.append(source)

        logger.warning(f"Live price fetch failed ({', '.join(errors)})")
        if cached and (now - cached.as_of).total_seconds() <= self.max_stale_seconds:
            return cached.model_copy(update={"stale": True, "source": f"{cached.source}:stale-cache"})
        return PriceSnapshot(prices=_empty_prices(), stale=True, as_of=now, source="empty")

    def _fetch_json(self, url: str, params: dict) -> Any:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Price request to {url} failed: {e}")
            return None

    def _from_coingecko(self, vs: str) -> Optional[dict[Asset, Optional[Decimal]]]:
        data = self._fetch_json(
            self.coingecko_url,
            {"ids": ",".join(self.COIN_IDS.values()), "vs_currencies": vs},
        )
        if not isinstance(data, dict):
            return None
        prices = _empty_prices()
        for asset, coin_id in self.COIN_IDS.items():
            row = data.get(coin_id)
            prices[asset] = _to_price(row.get(vs)) if isinstance(row, dict) else None
        if all(prices[asset] is None for asset in self.COIN_IDS):
            return None
        return prices

    def _from_binance(self) -> Optional[dict[Asset, Optional[Decimal]]]:
        data = self._fetch_json(
            self.binance_url,
            {"symbols": json.dumps(list(self.BINANCE_SYMBOLS.values()), separators=(",", ":"))},
        )
        if not isinstance(data, list) or not data:
            return None
        by_symbol = {str(row.get("symbol", "")): _to_price(row.get("price")) for row in data if isinstance(row, dict)}
        prices = _empty_prices()
        for asset, symbol in self.BINANCE_SYMBOLS.items():
            prices[asset] = by_symbol.get(symbol)
        if all(prices[asset] is None for asset in self.BINANCE_SYMBOLS):
            return None
        return prices
