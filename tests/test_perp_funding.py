# -*- coding: utf-8 -*-
"""
test_perp_funding.py
Tests for funding multiplier publishing and settlement.

Coverage:
- Multiplier sign convention (positive rate: longs pay)
- Period alignment, duplicates and gaps (strict and backfill)
- Quartet packing
- Lazy settlement: idempotence, sign linearity, zero-sum
"""

from __future__ import annotations

import pytest

from conftest import NOW_MS, TRADER_1, TRADER_2, P, PerpScenario, eth_fields
from core_errors import FundingPeriodError, InactiveMarket, PriceMismatch
from core_perps import NO_FUNDING_MULTIPLIER, IndexPrice
from services.perp_risk_config import PerpRiskConfig
from services.perp_risk_engine import PerpRiskEngine


HOUR_MS = 3_600_000
RATE_1BP = 10_000  # 0.01%


def _publish(engine, timestamp_ms, rate=RATE_1BP, price=2000):
    return engine.publish_funding_multiplier(
        "ETH", IndexPrice("ETH", price * P, timestamp_ms), rate, timestamp_ms
    )


# ============================================================================
# PUBLISHING
# ============================================================================

class TestFundingPublish:
    """Tests for FundingAccrual.publish."""

    def test_positive_rate_negative_multiplier(self, engine):
        """2000 * 0.01% = 0.2 quote per ETH paid by longs."""
        assert _publish(engine, NOW_MS) == -20_000_000

    def test_negative_rate_positive_multiplier(self, engine):
        assert _publish(engine, NOW_MS, rate=-RATE_1BP) == 20_000_000

    def test_first_publish_must_be_aligned(self, engine):
        with pytest.raises(FundingPeriodError, match="not aligned"):
            _publish(engine, NOW_MS + 1)

    def test_duplicate_period_rejected(self, engine):
        _publish(engine, NOW_MS)
        with pytest.raises(FundingPeriodError, match="already published"):
            _publish(engine, NOW_MS)

    def test_gap_rejected_in_strict_mode(self, engine):
        _publish(engine, NOW_MS)
        with pytest.raises(FundingPeriodError, match="gap"):
            _publish(engine, NOW_MS + 3 * HOUR_MS)

    def test_gap_backfilled(self, clock):
        config = PerpRiskConfig.from_dict({"funding": {"backfill_missing_periods": True}})
        engine = PerpRiskEngine(config=config, clock=clock)
        engine.add_market("ETH", eth_fields())
        engine.activate_market("ETH")

        _publish(engine, NOW_MS)
        _publish(engine, NOW_MS + 3 * HOUR_MS)

        assert engine.funding.multipliers("ETH") == {
            NOW_MS - HOUR_MS: 0,
            NOW_MS: -20_000_000,
            NOW_MS + HOUR_MS: 0,
            NOW_MS + 2 * HOUR_MS: 0,
            NOW_MS + 3 * HOUR_MS: -20_000_000,
        }

    def test_backfill_opens_with_zero_period(self, clock):
        config = PerpRiskConfig.from_dict({"funding": {"backfill_missing_periods": True}})
        engine = PerpRiskEngine(config=config, clock=clock)
        engine.add_market("ETH", eth_fields())
        engine.activate_market("ETH")

        _publish(engine, NOW_MS)

        series = engine.store.funding[engine.store.market_id("ETH")]
        assert series.count == 2
        assert series.quartets[0][:2] == [0, -20_000_000]
        assert series.first_timestamp_ms == NOW_MS - HOUR_MS
        assert engine.funding.last_publish_timestamp_ms("ETH") == NOW_MS

    def test_quartet_packing(self, engine):
        for i in range(5):
            _publish(engine, NOW_MS + i * HOUR_MS)
        sid = engine.store.market_id("ETH")
        series = engine.store.funding[sid]
        assert series.count == 5
        assert len(series.quartets) == 2
        assert series.quartets[1][1:] == [NO_FUNDING_MULTIPLIER] * 3
        assert engine.funding.last_publish_timestamp_ms("ETH") == NOW_MS + 4 * HOUR_MS

    def test_inactive_market(self, engine):
        engine.add_market("BTC", eth_fields())
        with pytest.raises(InactiveMarket):
            engine.publish_funding_multiplier("BTC", IndexPrice("BTC", P, NOW_MS), RATE_1BP, NOW_MS)

    def test_price_for_other_market(self, engine):
        with pytest.raises(PriceMismatch):
            engine.publish_funding_multiplier("ETH", IndexPrice("BTC", P, NOW_MS), RATE_1BP, NOW_MS)

    def test_newer_price_recorded(self, engine):
        _publish(engine, NOW_MS, price=2100)
        assert engine.markets.load_index_price("ETH") == 2100 * P


# ============================================================================
# SETTLEMENT
# ============================================================================

class TestFundingSettlement:
    """Tests for lazy settlement into quote balances."""

    def test_long_pays_short_receives(self, scenario: PerpScenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        long_before = engine.load_quote_balance(TRADER_2)
        short_before = engine.load_quote_balance(TRADER_1)

        _publish(engine, NOW_MS)

        assert engine.settle_funding(TRADER_2) == -2 * P
        assert engine.settle_funding(TRADER_1) == 2 * P
        assert engine.load_quote_balance(TRADER_2) == long_before - 2 * P
        assert engine.load_quote_balance(TRADER_1) == short_before + 2 * P

    def test_settle_is_idempotent(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        _publish(engine, NOW_MS)

        engine.settle_funding(TRADER_2)
        balance = engine.load_quote_balance(TRADER_2)
        assert engine.settle_funding(TRADER_2) == 0
        assert engine.load_quote_balance(TRADER_2) == balance
        assert engine.load_balance(TRADER_2, "ETH").last_funding_timestamp_ms == NOW_MS

    def test_sums_unsettled_periods(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        _publish(engine, NOW_MS)
        _publish(engine, NOW_MS + HOUR_MS, rate=3 * RATE_1BP)
        _publish(engine, NOW_MS + 2 * HOUR_MS, rate=-RATE_1BP)

        # 10 * (-0.2 - 0.6 + 0.2)
        assert engine.load_outstanding_wallet_funding(TRADER_2) == -6 * P
        assert engine.settle_funding(TRADER_2) == -6 * P

    def test_only_new_periods_after_settle(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        _publish(engine, NOW_MS)
        engine.settle_funding(TRADER_2)
        _publish(engine, NOW_MS + HOUR_MS, rate=2 * RATE_1BP)
        assert engine.settle_funding(TRADER_2) == -4 * P

    def test_sign_linearity(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        _publish(engine, NOW_MS, rate=12_345)
        long_payment = engine.funding.load_outstanding_funding(TRADER_2, "ETH")
        short_payment = engine.funding.load_outstanding_funding(TRADER_1, "ETH")
        assert long_payment == -short_payment

    def test_outstanding_is_read_only(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        _publish(engine, NOW_MS)
        before = engine.load_quote_balance(TRADER_2)
        engine.load_outstanding_wallet_funding(TRADER_2)
        assert engine.load_quote_balance(TRADER_2) == before

    def test_position_opened_after_publish_skips_history(self, scenario):
        engine = scenario.engine
        _publish(engine, NOW_MS)
        scenario.open_eth_trade()
        assert engine.load_balance(TRADER_2, "ETH").last_funding_timestamp_ms == NOW_MS
        assert engine.load_outstanding_wallet_funding(TRADER_2) == 0

    def test_no_position_no_payment(self, engine):
        _publish(engine, NOW_MS)
        assert engine.settle_funding("nobody") == 0
