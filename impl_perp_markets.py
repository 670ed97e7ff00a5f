# -*- coding: utf-8 -*-
"""
impl_perp_markets.py
Market registry: administration, override resolution and index prices.

Implements:
- Market lifecycle (add -> activate -> deactivate)
- Per-(market, wallet) overrides that fully replace the default risk fields
- Tiered initial margin fraction
- Index price ingestion with staleness and future-horizon checks

Key Formulas:
- IMF(size) = IMF                              if |size| <= baseline
- IMF(size) = IMF + incrementalIMF * floor((|size| - baseline) / incrementalSize)
- MMF has no tiering

Design Principles:
- Governance supplies market definitions; the registry only writes the
  engine-owned fields (latest index price, deactivation price)
- Every batch is validated in full before any record is written
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import time

from core_errors import ConfigError, InactiveMarket, PriceMismatch, StalePrice
from core_perps import IndexPrice, Market, MarketOverride, OverridableMarketFields
from impl_ledger_store import LedgerStore
from impl_pips import INT64_MAX, abs_pips, validate_int64


logger = logging.getLogger(__name__)


DEFAULT_MAX_MARKETS = 254
DEFAULT_MIN_INITIAL_MARGIN_FRACTION = 500000            # 0.5%
DEFAULT_MIN_MAINTENANCE_MARGIN_FRACTION = 300000        # 0.3%
DEFAULT_MIN_INCREMENTAL_INITIAL_MARGIN_FRACTION = 100000  # 0.1%
DEFAULT_MAX_FUTURE_TIMESTAMP_MS = 24 * 60 * 60 * 1000


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def tiered_initial_margin_fraction(fields: OverridableMarketFields, position_size: int) -> int:
    """
    Initial margin fraction for a position of the given signed size.

    Example (IMF 5%, incremental 1%, baseline 140, step 28):
        size 140 -> 5%, size 168 -> 6%, size 200 -> 7%
    """
    size = abs_pips(position_size)
    if size <= fields.baseline_position_size:
        return fields.initial_margin_fraction
    steps = (size - fields.baseline_position_size) // fields.incremental_position_size
    return validate_int64(
        fields.initial_margin_fraction + fields.incremental_initial_margin_fraction * steps
    )


class MarketRegistry:
    """
    Markets, overrides and index prices held in a LedgerStore.

    Args:
        store: Shared engine state
        max_markets: Upper bound on listed markets
        min_initial_margin_fraction: Lowest IMF a market or override may set
        min_maintenance_margin_fraction: Lowest MMF a market or override may set
        min_incremental_initial_margin_fraction: Lowest incremental IMF
        max_future_timestamp_ms: How far ahead of the clock an index price
            timestamp may be
        clock: Returns the current time in ms (injectable for tests)
    """

    def __init__(
        self,
        store: LedgerStore,
        max_markets: int = DEFAULT_MAX_MARKETS,
        min_initial_margin_fraction: int = DEFAULT_MIN_INITIAL_MARGIN_FRACTION,
        min_maintenance_margin_fraction: int = DEFAULT_MIN_MAINTENANCE_MARGIN_FRACTION,
        min_incremental_initial_margin_fraction: int = DEFAULT_MIN_INCREMENTAL_INITIAL_MARGIN_FRACTION,
        max_future_timestamp_ms: int = DEFAULT_MAX_FUTURE_TIMESTAMP_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._store = store
        self._max_markets = max_markets
        self._min_imf = min_initial_margin_fraction
        self._min_mmf = min_maintenance_margin_fraction
        self._min_incremental_imf = min_incremental_initial_margin_fraction
        self._max_future_timestamp_ms = max_future_timestamp_ms
        self._clock = clock or _wall_clock_ms

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def add_market(self, base_asset_symbol: str, fields: OverridableMarketFields) -> Market:
        """
        List a new, inactive market.

        Raises:
            ConfigError: Duplicate symbol, quote asset symbol, too many
                markets, or invalid risk fields
        """
        with self._store.transaction():
            if self._store.market_id(base_asset_symbol) is not None:
                raise ConfigError("Market already exists")
            if base_asset_symbol == self._store.quote_asset_symbol:
                raise ConfigError("Base asset symbol cannot be same as quote")
            if len(self._store.markets) >= self._max_markets:
                raise ConfigError("Max market count reached")
            self.validate_fields(fields)

            sid = self._store.symbols.intern(base_asset_symbol)
            market = Market(base_asset_symbol=base_asset_symbol, overridable_fields=fields)
            self._store.markets[sid] = market

        logger.info(f"Added market {base_asset_symbol}: {fields.to_dict()}")
        return market

    def activate_market(self, base_asset_symbol: str) -> Market:
        with self._store.transaction():
            market = self.load_inactive_market(base_asset_symbol)
            market = replace(market, is_active=True, index_price_at_deactivation=0)
            self._store.markets[self._store.market_id(base_asset_symbol)] = market

        logger.info(f"Activated market {base_asset_symbol}")
        return market

    def deactivate_market(self, base_asset_symbol: str, index_price: Optional[IndexPrice] = None) -> Market:
        """
        Deactivate a market and freeze its settlement price.

        Args:
            base_asset_symbol: Market to deactivate
            index_price: Optional final price, ingested before freezing

        Raises:
            InactiveMarket: No active market with that symbol
            StalePrice: Market never received an index price
        """
        with self._store.transaction():
            self.load_active_market(base_asset_symbol)
            if index_price is not None:
                if index_price.base_asset_symbol != base_asset_symbol:
                    raise PriceMismatch("Index price symbol mismatch")
                self.publish_index_prices([index_price])

            market = self.load_market(base_asset_symbol)
            if market.last_index_price <= 0:
                raise StalePrice("Market has no index price")
            market = replace(
                market,
                is_active=False,
                index_price_at_deactivation=market.last_index_price,
            )
            self._store.markets[self._store.market_id(base_asset_symbol)] = market

        logger.info(
            f"Deactivated market {base_asset_symbol} at {market.index_price_at_deactivation}"
        )
        return market

    def set_market_override(
        self,
        base_asset_symbol: str,
        wallet: str,
        fields: OverridableMarketFields,
    ) -> MarketOverride:
        with self._store.transaction():
            sid = self._require_market_id(base_asset_symbol)
            self.validate_fields(fields)
            override = MarketOverride(
                base_asset_symbol=base_asset_symbol,
                wallet=wallet,
                overridable_fields=fields,
            )
            self._store.market_overrides[(sid, wallet)] = override

        logger.info(f"Set {base_asset_symbol} override for {wallet}: {fields.to_dict()}")
        return override

    def remove_market_override(self, base_asset_symbol: str, wallet: str) -> None:
        with self._store.transaction():
            sid = self._require_market_id(base_asset_symbol)
            if self._store.market_overrides.pop((sid, wallet), None) is None:
                raise ConfigError("No override for wallet")

        logger.info(f"Removed {base_asset_symbol} override for {wallet}")

    def validate_fields(self, fields: OverridableMarketFields) -> None:
        if fields.initial_margin_fraction < self._min_imf:
            raise ConfigError("Initial margin fraction below min")
        if fields.maintenance_margin_fraction < self._min_mmf:
            raise ConfigError("Maintenance margin fraction below min")
        if fields.incremental_initial_margin_fraction < self._min_incremental_imf:
            raise ConfigError("Incremental initial margin fraction below min")
        if fields.incremental_position_size <= 0:
            raise ConfigError("Incremental position size cannot be zero")
        if not 0 <= fields.baseline_position_size <= INT64_MAX:
            raise ConfigError("Baseline position size exceeds max")
        if not 0 <= fields.maximum_position_size <= INT64_MAX:
            raise ConfigError("Maximum position size exceeds max")
        if not 0 <= fields.minimum_position_size < INT64_MAX:
            raise ConfigError("Minimum position size exceeds max")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def load_market(self, base_asset_symbol: str) -> Market:
        """
        Raises:
            InactiveMarket: No market with that symbol
        """
        sid = self._store.market_id(base_asset_symbol)
        if sid is None:
            raise InactiveMarket("No market found")
        return self._store.markets[sid]

    def load_active_market(self, base_asset_symbol: str) -> Market:
        sid = self._store.market_id(base_asset_symbol)
        if sid is None or not self._store.markets[sid].is_active:
            raise InactiveMarket("No active market found")
        return self._store.markets[sid]

    def load_inactive_market(self, base_asset_symbol: str) -> Market:
        sid = self._store.market_id(base_asset_symbol)
        if sid is None or self._store.markets[sid].is_active:
            raise InactiveMarket("No inactive market found")
        return self._store.markets[sid]

    def symbols(self) -> List[str]:
        return [market.base_asset_symbol for market in self._store.markets.values()]

    def load_override(self, base_asset_symbol: str, wallet: str) -> Optional[MarketOverride]:
        sid = self._store.market_id(base_asset_symbol)
        if sid is None:
            return None
        return self._store.market_overrides.get((sid, wallet))

    def resolve(self, base_asset_symbol: str, wallet: str) -> OverridableMarketFields:
        """Risk fields in force for a wallet: its override if present, else the market's."""
        override = self.load_override(base_asset_symbol, wallet)
        if override is not None and override.exists:
            return override.overridable_fields
        return self.load_market(base_asset_symbol).overridable_fields

    def default_fields(self, base_asset_symbol: str) -> OverridableMarketFields:
        return self.load_market(base_asset_symbol).overridable_fields

    def initial_margin_fraction(self, base_asset_symbol: str, wallet: str, position_size: int) -> int:
        return tiered_initial_margin_fraction(self.resolve(base_asset_symbol, wallet), position_size)

    def maintenance_margin_fraction(self, base_asset_symbol: str, wallet: str) -> int:
        return self.resolve(base_asset_symbol, wallet).maintenance_margin_fraction

    def maximum_position_size(self, base_asset_symbol: str, wallet: str) -> int:
        return self.resolve(base_asset_symbol, wallet).maximum_position_size

    def minimum_position_size(self, base_asset_symbol: str, wallet: str) -> int:
        return self.resolve(base_asset_symbol, wallet).minimum_position_size

    # ------------------------------------------------------------------
    # Index prices
    # ------------------------------------------------------------------

    def publish_index_prices(self, index_prices: Sequence[IndexPrice]) -> None:
        """
        Record already-validated index prices.

        An equal timestamp overwrites the recorded price; an older one is
        rejected. Nothing is written unless every record is accepted.
        A deactivated market keeps the price frozen at deactivation.

        Raises:
            InactiveMarket: No active market for a record's symbol
            PriceMismatch: Non-positive price
            StalePrice: Timestamp older than recorded, or too far ahead
        """
        with self._store.transaction():
            now_ms = self._clock()
            pending: Dict[int, Tuple[Market, IndexPrice]] = {}
            for index_price in index_prices:
                market = self.load_active_market(index_price.base_asset_symbol)
                sid = self._store.market_id(index_price.base_asset_symbol)
                if sid in pending:
                    market = pending[sid][0]
                self._validate_index_price(market, index_price, now_ms)
                pending[sid] = (
                    replace(
                        market,
                        last_index_price=index_price.price,
                        last_index_price_timestamp_ms=index_price.timestamp_ms,
                    ),
                    index_price,
                )

            for sid, (market, index_price) in pending.items():
                self._store.markets[sid] = market
                logger.debug(
                    f"Index price {index_price.base_asset_symbol} {index_price.price} "
                    f"@ {index_price.timestamp_ms}"
                )

    def load_index_price(self, base_asset_symbol: str) -> int:
        """
        Raises:
            StalePrice: No price published for the market yet
        """
        price = self.load_market(base_asset_symbol).last_index_price
        if price <= 0:
            raise StalePrice("Missing index price")
        return price

    def _validate_index_price(self, market: Market, index_price: IndexPrice, now_ms: int) -> None:
        if index_price.price <= 0:
            raise PriceMismatch("Unexpected non-positive index price")
        if index_price.timestamp_ms < market.last_index_price_timestamp_ms:
            raise StalePrice("Outdated index price")
        if index_price.timestamp_ms > now_ms + self._max_future_timestamp_ms:
            raise StalePrice("Index price timestamp too high")

    def _require_market_id(self, base_asset_symbol: str) -> int:
        sid = self._store.market_id(base_asset_symbol)
        if sid is None:
            raise InactiveMarket("No market found")
        return sid
