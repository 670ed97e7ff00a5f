# -*- coding: utf-8 -*-
"""
impl_perp_margin.py
Cross-margin account value and margin requirements.

Key Formulas (per open position, all integer pips):
- Value = position * price / SCALE
- Initial Margin Requirement (IMR) = |Value * IMF(position) / SCALE|
- Maintenance Margin Requirement (MMR) = |Value * MMF / SCALE|
- Total Account Value (TAV) = quote balance + sum(Value)

A wallet meets initial margin iff TAV >= IMR and is liquidatable iff
TAV < MMR.

Pricing:
- IndexPriceSource: the market's latest recorded index price
- OraclePriceSource: a live feed read at call time

The exit fund always uses the market's default risk fields, never an
override, since it is the backstop with no leverage limit.

Design Principles:
- Every calculation runs over an AccountView, so the same code scores
  the live ledger and hypothetical post-trade / post-acquisition states
"""

from __future__ import annotations

from typing import Callable, Iterator, Optional, Protocol, Tuple
import logging

from core_errors import MarginNotMet, MarginStillDeficient, PriceMismatch
from core_perps import AccountView, MarginSnapshot, OverridableMarketFields, Wallet
from impl_ledger_store import LedgerStore
from impl_perp_markets import MarketRegistry, tiered_initial_margin_fraction
from impl_pips import (
    PIP_PRICE_MULTIPLIER,
    abs_pips,
    max_unsigned,
    min_signed,
    multiply_pips_by_fraction,
    validate_int64,
)
from impl_position_ledger import PositionLedger


logger = logging.getLogger(__name__)


# ============================================================================
# PRICE SOURCES
# ============================================================================

class PriceSource(Protocol):
    """
    Protocol for mark price providers.

    Implementations:
    - IndexPriceSource: latest validated index price
    - OraclePriceSource: on-chain style feed read per call
    """

    def price(self, base_asset_symbol: str) -> int:
        """
        Mark price of a market.

        Args:
            base_asset_symbol: Market symbol

        Returns:
            Positive price in pips
        """
        ...


class IndexPriceSource:
    """Marks positions at the market's latest published index price."""

    def __init__(self, markets: MarketRegistry):
        self._markets = markets

    def price(self, base_asset_symbol: str) -> int:
        return self._markets.load_index_price(base_asset_symbol)


class OraclePriceSource:
    """
    Marks positions at a live feed price.

    Args:
        feed: Callable returning the current price in pips for a symbol
    """

    def __init__(self, feed: Callable[[str], int]):
        self._feed = feed

    def price(self, base_asset_symbol: str) -> int:
        price = int(self._feed(base_asset_symbol))
        if price <= 0:
            raise PriceMismatch("Unexpected non-positive feed price")
        return price


def create_price_source(
    kind: str = "index",
    markets: Optional[MarketRegistry] = None,
    feed: Optional[Callable[[str], int]] = None,
) -> PriceSource:
    """
    Factory function for price sources.

    Args:
        kind: "index" or "oracle"
        markets: Registry, required for "index"
        feed: Price callable, required for "oracle"
    """
    if kind == "index":
        if markets is None:
            raise ValueError("Index price source needs a market registry")
        return IndexPriceSource(markets)
    if kind == "oracle":
        if feed is None:
            raise ValueError("Oracle price source needs a feed")
        return OraclePriceSource(feed)
    raise ValueError(f"Unknown price source: {kind}")


# ============================================================================
# EXIT PRICING
# ============================================================================

def exit_quote_quantity(
    cost_basis: int,
    position_size: int,
    index_price: int,
    base_quantity: Optional[int] = None,
) -> int:
    """
    Unsigned quote quantity an exiting wallet's position settles at.

    The worse of cost basis and index mark value for the wallet: the lower
    for a long, the larger magnitude for a short. For a partial quantity
    the cost basis is pro-rated.

    Args:
        cost_basis: Signed cost basis of the whole position
        position_size: Signed position
        index_price: Mark price
        base_quantity: Unsigned part of the position (default: all of it)
    """
    if base_quantity is None:
        base_quantity = abs_pips(position_size)
    signed_base = base_quantity if position_size > 0 else -base_quantity
    basis = multiply_pips_by_fraction(cost_basis, base_quantity, abs_pips(position_size))
    mark = multiply_pips_by_fraction(signed_base, index_price, PIP_PRICE_MULTIPLIER)
    if position_size > 0:
        return abs_pips(min_signed(basis, mark))
    return max_unsigned(abs_pips(basis), abs_pips(mark))


# ============================================================================
# MARGIN CALCULATOR
# ============================================================================

class MarginCalculator:
    """
    Account value and margin requirements of wallets and account views.

    Args:
        store: Shared engine state
        ledger: Position ledger
        markets: Market registry for risk field resolution
        price_source: Mark price provider (default: index prices)
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: PositionLedger,
        markets: MarketRegistry,
        price_source: Optional[PriceSource] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._markets = markets
        self._price_source = price_source or IndexPriceSource(markets)

    @property
    def price_source(self) -> PriceSource:
        return self._price_source

    def price(self, base_asset_symbol: str) -> int:
        return self._price_source.price(base_asset_symbol)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def fields_for(self, base_asset_symbol: str, wallet: Wallet) -> OverridableMarketFields:
        """Risk fields applied to a wallet's position; the exit fund ignores overrides."""
        if wallet.is_exit_fund:
            return self._markets.default_fields(base_asset_symbol)
        return self._markets.resolve(base_asset_symbol, wallet.address)

    def _position_terms(self, view: AccountView) -> Iterator[Tuple[int, int, int]]:
        """Yield (value, IMR, MMR) per open position of a view."""
        for symbol, position in view.positions:
            if position == 0:
                continue
            fields = self.fields_for(symbol, view.wallet)
            value = multiply_pips_by_fraction(position, self.price(symbol), PIP_PRICE_MULTIPLIER)
            imf = tiered_initial_margin_fraction(fields, position)
            imr = abs_pips(multiply_pips_by_fraction(value, imf, PIP_PRICE_MULTIPLIER))
            mmr = abs_pips(
                multiply_pips_by_fraction(value, fields.maintenance_margin_fraction, PIP_PRICE_MULTIPLIER)
            )
            yield value, imr, mmr

    def snapshot_for(self, view: AccountView) -> MarginSnapshot:
        total_account_value = view.quote_balance
        initial = 0
        maintenance = 0
        for value, imr, mmr in self._position_terms(view):
            total_account_value += value
            initial += imr
            maintenance += mmr
        return MarginSnapshot(
            total_account_value=validate_int64(total_account_value),
            initial_margin_requirement=validate_int64(initial),
            maintenance_margin_requirement=validate_int64(maintenance),
        )

    def total_account_value_for(self, view: AccountView) -> int:
        return self.snapshot_for(view).total_account_value

    def initial_margin_requirement_for(self, view: AccountView) -> int:
        return self.snapshot_for(view).initial_margin_requirement

    def maintenance_margin_requirement_for(self, view: AccountView) -> int:
        return self.snapshot_for(view).maintenance_margin_requirement

    def validate_initial_margin_for(self, view: AccountView) -> MarginSnapshot:
        """
        Raises:
            MarginNotMet: TAV < IMR
        """
        snapshot = self.snapshot_for(view)
        if not snapshot.meets_initial_margin:
            raise MarginNotMet("Initial margin requirement not met")
        return snapshot

    def validate_maintenance_margin_for(self, view: AccountView) -> MarginSnapshot:
        """
        Raises:
            MarginStillDeficient: TAV < MMR
        """
        snapshot = self.snapshot_for(view)
        if snapshot.is_in_maintenance:
            raise MarginStillDeficient("Maintenance margin requirement not met")
        return snapshot

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def snapshot(self, wallet: str) -> MarginSnapshot:
        with self._store.transaction():
            return self.snapshot_for(self._ledger.load_account_view(wallet))

    def total_account_value(self, wallet: str) -> int:
        return self.snapshot(wallet).total_account_value

    def initial_margin_requirement(self, wallet: str) -> int:
        return self.snapshot(wallet).initial_margin_requirement

    def maintenance_margin_requirement(self, wallet: str) -> int:
        return self.snapshot(wallet).maintenance_margin_requirement

    def is_initial_margin_met(self, wallet: str) -> bool:
        return self.snapshot(wallet).meets_initial_margin

    def is_maintenance_margin_met(self, wallet: str) -> bool:
        return not self.snapshot(wallet).is_in_maintenance

    def validate_initial_margin(self, wallet: str) -> MarginSnapshot:
        with self._store.transaction():
            return self.validate_initial_margin_for(self._ledger.load_account_view(wallet))

    def exit_account_value(self, wallet: str) -> int:
        """
        Quote balance plus the signed exit quote quantity of every position.

        Non-negative means an exiting wallet can be closed at exit prices;
        negative means it is closed at bankruptcy prices instead.
        """
        with self._store.transaction():
            total = self._ledger.load_quote_balance(wallet)
            for symbol in self._ledger.load_open_position_symbols(wallet):
                balance = self._ledger.load(wallet, symbol)
                quote = exit_quote_quantity(balance.cost_basis, balance.quantity, self.price(symbol))
                total += quote if balance.is_long else -quote
            return validate_int64(total)
