from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Sources live at the project root, one level above tests/
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core_perps import IndexPrice, OverridableMarketFields  # noqa: E402
from impl_pips import PIP_PRICE_MULTIPLIER  # noqa: E402
from services.perp_risk_config import PerpRiskConfig  # noqa: E402
from services.perp_risk_engine import PerpRiskEngine  # noqa: E402


P = PIP_PRICE_MULTIPLIER

# Hour-aligned so funding publishes at NOW_MS are valid
NOW_MS = 472_222 * 3_600_000

INSURANCE_FUND = "insurance-fund"
EXIT_FUND = "exit-fund"
FEE_WALLET = "fee-wallet"
TRADER_1 = "trader-1"
TRADER_2 = "trader-2"
TRADER_3 = "trader-3"


class FixedClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> int:
        self.now_ms += ms
        return self.now_ms


def eth_fields(**changes) -> OverridableMarketFields:
    """ETH market: IMF 5%, MMF 3%, +1% IMF per 28 ETH above 140 ETH."""
    values = dict(
        initial_margin_fraction=5_000_000,
        maintenance_margin_fraction=3_000_000,
        incremental_initial_margin_fraction=1_000_000,
        baseline_position_size=140 * P,
        incremental_position_size=28 * P,
        maximum_position_size=2820 * P,
        minimum_position_size=10_000_000,
    )
    values.update(changes)
    return OverridableMarketFields(**values)


class PerpScenario:
    """
    Engine with an active ETH market and helpers to drive it.

    Index prices are stamped one millisecond apart so successive publishes
    are never older than the last one.
    """

    def __init__(self, engine: PerpRiskEngine, clock: FixedClock):
        self.engine = engine
        self.clock = clock
        self._price_ts = clock.now_ms

    def index_price(self, price: int, symbol: str = "ETH") -> IndexPrice:
        self._price_ts += 1
        return IndexPrice(base_asset_symbol=symbol, price=price * P, timestamp_ms=self._price_ts)

    def set_price(self, price: int, symbol: str = "ETH") -> IndexPrice:
        index_price = self.index_price(price, symbol)
        self.engine.publish_index_prices([index_price])
        return index_price

    def open_eth_trade(self, insurance_fund_deposit: int = 0) -> None:
        """
        trader-1 sells 10 ETH @ 2000 to trader-2.

        trader-1 (maker) pays 20 and ends with quote 21980; trader-2 (taker)
        pays 40 and ends with quote -18040.
        """
        self.engine.deposit(TRADER_1, 2000 * P)
        self.engine.deposit(TRADER_2, 2000 * P)
        if insurance_fund_deposit:
            self.engine.deposit(INSURANCE_FUND, insurance_fund_deposit * P)
        self.set_price(2000)
        self.engine.execute_trade(
            buy_wallet=TRADER_2,
            sell_wallet=TRADER_1,
            base_asset_symbol="ETH",
            base_quantity=10 * P,
            quote_quantity=20000 * P,
            buy_fee=40 * P,
            sell_fee=20 * P,
        )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def config() -> PerpRiskConfig:
    return PerpRiskConfig()


@pytest.fixture
def engine(config, clock) -> PerpRiskEngine:
    """Engine with an active ETH market and no prices."""
    engine = PerpRiskEngine(config=config, clock=clock)
    engine.add_market("ETH", eth_fields())
    engine.activate_market("ETH")
    return engine


@pytest.fixture
def scenario(engine, clock) -> PerpScenario:
    return PerpScenario(engine, clock)
