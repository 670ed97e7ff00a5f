# -*- coding: utf-8 -*-
"""
impl_perp_funding.py
Funding multiplier publishing and lazy per-wallet settlement.

Each market carries one funding multiplier per period (default 1 hour),
packed four to a quartet. A multiplier is the quote amount received per
unit of long position for that period:

    multiplier = -(indexPrice * fundingRate / SCALE)

so a positive funding rate means longs pay shorts. Settling a position adds

    position * sum(multipliers in (lastSettled, lastPublished]) / SCALE

to the wallet's quote balance and advances its settlement timestamp.

Gap handling:
- strict (default): a publish must land exactly one period after the last
- backfill: missed periods are filled with zero multipliers, and the first
  publish is preceded by a zero for the period before it

References:
- Funding mechanics: https://www.binance.com/en/support/faq/360033525031
"""

from __future__ import annotations

from typing import Dict, Optional
import logging

from core_errors import FundingPeriodError, PriceMismatch
from core_perps import (
    FUNDING_MULTIPLIER_QUARTET_SIZE,
    NO_FUNDING_MULTIPLIER,
    Balance,
    IndexPrice,
)
from impl_ledger_store import FundingMultiplierSeries, LedgerStore
from impl_perp_markets import MarketRegistry
from impl_pips import PIP_PRICE_MULTIPLIER, multiply_pips_by_fraction, validate_int64
from impl_position_ledger import PositionLedger


logger = logging.getLogger(__name__)


DEFAULT_FUNDING_PERIOD_MS = 60 * 60 * 1000


class FundingAccrual:
    """
    Publishes funding multipliers and settles them into quote balances.

    Args:
        store: Shared engine state
        ledger: Position ledger used for settlement writes
        markets: Market registry (market existence, index price recording)
        period_ms: Funding period length
        backfill_missing_periods: Fill gaps with zero multipliers instead of
            rejecting the publish
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: PositionLedger,
        markets: MarketRegistry,
        period_ms: int = DEFAULT_FUNDING_PERIOD_MS,
        backfill_missing_periods: bool = False,
    ):
        if period_ms <= 0:
            raise ValueError("Funding period must be positive")
        self._store = store
        self._ledger = ledger
        self._markets = markets
        self._period_ms = period_ms
        self._backfill = backfill_missing_periods

    @property
    def period_ms(self) -> int:
        return self._period_ms

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(
        self,
        base_asset_symbol: str,
        index_price: IndexPrice,
        funding_rate: int,
        timestamp_ms: Optional[int] = None,
    ) -> int:
        """
        Append a funding multiplier for the next period.

        Args:
            base_asset_symbol: Active market
            index_price: Index price of the same market the rate applies to
            funding_rate: Signed rate in pips (10000 = 0.01%)
            timestamp_ms: Period timestamp; defaults to the price timestamp

        Returns:
            Multiplier appended

        Raises:
            InactiveMarket: No active market
            PriceMismatch: Price for another market, or non-positive
            FundingPeriodError: Misaligned timestamp or gap (strict mode)
        """
        if timestamp_ms is None:
            timestamp_ms = index_price.timestamp_ms

        with self._store.transaction():
            self._markets.load_active_market(base_asset_symbol)
            if index_price.base_asset_symbol != base_asset_symbol:
                raise PriceMismatch("Index price symbol mismatch")
            if index_price.price <= 0:
                raise PriceMismatch("Unexpected non-positive index price")

            sid = self._store.market_id(base_asset_symbol)
            series = self._store.funding.get(sid)
            missed = self._missed_periods(series, timestamp_ms)

            multiplier = validate_int64(
                -multiply_pips_by_fraction(index_price.price, funding_rate, PIP_PRICE_MULTIPLIER)
            )

            # Record the price first so a stale one rejects the whole publish
            market = self._markets.load_market(base_asset_symbol)
            if index_price.timestamp_ms >= market.last_index_price_timestamp_ms:
                self._markets.publish_index_prices([index_price])

            if series is None:
                series = FundingMultiplierSeries(first_timestamp_ms=timestamp_ms - missed * self._period_ms)
                self._store.funding[sid] = series
            for _ in range(missed):
                self._append(series, 0)
            self._append(series, multiplier)
            series.last_timestamp_ms = timestamp_ms

        logger.debug(
            f"Funding {base_asset_symbol} @ {timestamp_ms}: rate={funding_rate} "
            f"multiplier={multiplier} backfilled={missed}"
        )
        return multiplier

    def multipliers(self, base_asset_symbol: str) -> Dict[int, int]:
        """Published multipliers of a market keyed by period timestamp."""
        sid = self._store.market_id(base_asset_symbol)
        series = self._store.funding.get(sid) if sid is not None else None
        if series is None:
            return {}
        result = {}
        for i in range(series.count):
            result[series.first_timestamp_ms + i * self._period_ms] = self._slot(series, i)
        return result

    def last_publish_timestamp_ms(self, base_asset_symbol: str) -> int:
        sid = self._store.market_id(base_asset_symbol)
        series = self._store.funding.get(sid) if sid is not None else None
        return series.last_timestamp_ms if series else 0

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def load_outstanding_funding(self, wallet: str, base_asset_symbol: str) -> int:
        """Unsettled funding payment of one position (read-only)."""
        balance = self._ledger.load(wallet, base_asset_symbol)
        return self._outstanding(base_asset_symbol, balance)[0]

    def load_outstanding_wallet_funding(self, wallet: str) -> int:
        """Unsettled funding across every open position of a wallet (read-only)."""
        with self._store.transaction():
            total = 0
            for symbol in self._ledger.load_open_position_symbols(wallet):
                total += self.load_outstanding_funding(wallet, symbol)
            return validate_int64(total)

    def settle(self, wallet: str, base_asset_symbol: str) -> int:
        """
        Settle one position's outstanding funding into the quote balance.

        Idempotent: a second call with no intervening publish is a no-op.

        Returns:
            Funding payment credited (negative when paid)
        """
        with self._store.transaction():
            balance = self._ledger.load(wallet, base_asset_symbol)
            payment, latest_ms = self._outstanding(base_asset_symbol, balance)
            if latest_ms is None:
                return 0
            self._ledger.record_funding_settlement(wallet, base_asset_symbol, payment, latest_ms)

        if payment:
            logger.debug(f"Settled funding {wallet} {base_asset_symbol}: {payment}")
        return payment

    def settle_wallet(self, wallet: str) -> int:
        """Settle every open position of a wallet; returns the total payment."""
        with self._store.transaction():
            total = 0
            for symbol in self._ledger.load_open_position_symbols(wallet):
                total += self.settle(wallet, symbol)
            return total

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _outstanding(self, base_asset_symbol: str, balance: Balance):
        """(payment, latest publish timestamp or None when nothing to settle)"""
        if not balance.is_open:
            return 0, None
        sid = self._store.market_id(base_asset_symbol)
        series = self._store.funding.get(sid) if sid is not None else None
        if series is None or series.count == 0:
            return 0, None
        if balance.last_funding_timestamp_ms >= series.last_timestamp_ms:
            return 0, None

        if balance.last_funding_timestamp_ms < series.first_timestamp_ms:
            start = 0
        else:
            start = (balance.last_funding_timestamp_ms - series.first_timestamp_ms) // self._period_ms + 1

        aggregate = 0
        for i in range(start, series.count):
            multiplier = self._slot(series, i)
            if multiplier != NO_FUNDING_MULTIPLIER:
                aggregate += multiplier
        aggregate = validate_int64(aggregate)

        payment = multiply_pips_by_fraction(balance.quantity, aggregate, PIP_PRICE_MULTIPLIER)
        return payment, series.last_timestamp_ms

    def _missed_periods(self, series: Optional[FundingMultiplierSeries], timestamp_ms: int) -> int:
        if series is None or series.count == 0:
            if timestamp_ms % self._period_ms != 0:
                raise FundingPeriodError("Funding timestamp not aligned to period")
            # Backfill opens the series with a zero for the preceding period
            return 1 if self._backfill else 0

        expected = series.last_timestamp_ms + self._period_ms
        if timestamp_ms == expected:
            return 0
        if timestamp_ms < expected:
            raise FundingPeriodError("Funding multiplier already published for period")
        if not self._backfill:
            raise FundingPeriodError("Funding multiplier gap")
        if (timestamp_ms - series.last_timestamp_ms) % self._period_ms != 0:
            raise FundingPeriodError("Funding timestamp not aligned to period")
        return (timestamp_ms - expected) // self._period_ms

    @staticmethod
    def _append(series: FundingMultiplierSeries, multiplier: int) -> None:
        slot = series.count % FUNDING_MULTIPLIER_QUARTET_SIZE
        if slot == 0:
            series.quartets.append([NO_FUNDING_MULTIPLIER] * FUNDING_MULTIPLIER_QUARTET_SIZE)
        series.quartets[-1][slot] = multiplier
        series.count += 1

    @staticmethod
    def _slot(series: FundingMultiplierSeries, index: int) -> int:
        quartet, slot = divmod(index, FUNDING_MULTIPLIER_QUARTET_SIZE)
        return series.quartets[quartet][slot]
