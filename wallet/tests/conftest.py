from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from wallet.bootstrap import build_services
from wallet.models import Asset
from wallet.prices import StaticPriceOracle
from wallet.storage import InMemoryStorage


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def prices(clock):
    return StaticPriceOracle(
        {
            Asset.BTC: Decimal("50000"),
            Asset.ETH: Decimal("2500"),
            Asset.SOL: Decimal("137.37"),
            Asset.XRP: Decimal("0.5"),
        },
        clock=clock,
    )


@pytest.fixture
def services(clock, prices):
    return build_services(storage=InMemoryStorage(), prices=prices, clock=clock)
