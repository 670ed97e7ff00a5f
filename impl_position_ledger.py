# -*- coding: utf-8 -*-
"""
impl_position_ledger.py
Per-wallet, per-asset balances and the open-position index.

Every write goes through this module. A balance write that moves a
position to or from zero updates the wallet's open-position set inside
the same store transaction, so the invariant

    symbol in open_positions[wallet]  <=>  balance(wallet, symbol) != 0

is never observably broken.

Cost basis (signed quote value paid at entry, positive for longs):
- open / increase: cost basis += traded quote value
- reduce: cost basis scaled by new_quantity / old_quantity
- flip: cost basis = share of the trade's quote that opened the new side
- close to zero: cost basis reset to 0
"""

from __future__ import annotations

from typing import Tuple
import logging

from core_errors import NoOpenPosition
from core_perps import AccountView, Balance
from impl_ledger_store import LedgerStore
from impl_pips import multiply_pips_by_fraction, validate_int64
from impl_symbol_set import SymbolId, insert_sorted, remove


logger = logging.getLogger(__name__)


class PositionLedger:
    """
    Balance reads and writes over a LedgerStore.

    Args:
        store: Shared engine state
    """

    def __init__(self, store: LedgerStore):
        self._store = store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, wallet: str, symbol: str) -> Balance:
        """
        Load a balance; a missing entry reads as zero and is not persisted.
        """
        sid = self._store.symbols.lookup(symbol)
        if sid < 0:
            return Balance()
        return self._store.balances.get((wallet, sid), Balance())

    def load_position(self, wallet: str, symbol: str) -> int:
        return self.load(wallet, symbol).quantity

    def load_quote_balance(self, wallet: str) -> int:
        return self._load_by_id(wallet, self._store.quote_asset_id).quantity

    def load_open_position_ids(self, wallet: str) -> Tuple[SymbolId, ...]:
        return self._store.open_positions.get(wallet, ())

    def load_open_position_symbols(self, wallet: str) -> Tuple[str, ...]:
        """Symbols of the wallet's open positions, in index order."""
        return self._store.symbols.names(self.load_open_position_ids(wallet))

    def load_account_view(self, wallet: str) -> AccountView:
        """Detached snapshot of quote balance and open positions."""
        with self._store.transaction():
            positions = tuple(
                (self._store.symbols.name(sid), self._load_by_id(wallet, sid).quantity)
                for sid in self.load_open_position_ids(wallet)
            )
            return AccountView(
                wallet=self._store.wallet(wallet),
                quote_balance=self.load_quote_balance(wallet),
                positions=positions,
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def adjust_quote(self, wallet: str, quote_delta: int) -> int:
        """
        Add a signed amount to the wallet's quote balance.

        Returns:
            New quote balance
        """
        with self._store.transaction():
            sid = self._store.quote_asset_id
            balance = self._load_by_id(wallet, sid)
            new_quantity = validate_int64(balance.quantity + quote_delta)
            self._write(wallet, sid, Balance(quantity=new_quantity))
            return new_quantity

    def apply_delta(self, wallet: str, symbol: str, quantity_delta: int, quote_delta: int) -> Balance:
        """
        Apply a trade fill to a position and the quote balance.

        Args:
            wallet: Wallet address
            symbol: Base asset symbol
            quantity_delta: Signed base quantity change (+ buy, - sell)
            quote_delta: Signed quote balance change (- buy, + sell)

        Returns:
            New position balance
        """
        with self._store.transaction():
            sid = self._store.symbols.intern(symbol)
            position = self._update_position(wallet, sid, quantity_delta, quote_delta)
            self.adjust_quote(wallet, quote_delta)
            return position

    def set_for_liquidation(
        self,
        liquidating_wallet: str,
        counterparty_wallet: str,
        symbol: str,
        new_quantity: int,
        quote_quantity: int,
    ) -> int:
        """
        Move part or all of a position to a counterparty for a quote amount.

        The liquidating wallet's position becomes new_quantity (zero for a
        full close); the counterparty's position moves by the same signed
        quantity and the quote amount changes hands in the opposite
        direction. Zero-sum: nothing is minted or burned.

        Args:
            liquidating_wallet: Wallet giving up the position
            counterparty_wallet: Wallet taking it (or reducing an offset)
            symbol: Base asset symbol
            new_quantity: Liquidating wallet's remaining position
            quote_quantity: Unsigned quote amount for the moved quantity

        Returns:
            Signed quantity moved, from the liquidating wallet's side

        Raises:
            NoOpenPosition: Liquidating wallet holds no position
            ValueError: new_quantity does not move the position toward zero
        """
        with self._store.transaction():
            sid = self._store.symbols.intern(symbol)
            old_quantity = self._load_by_id(liquidating_wallet, sid).quantity
            if old_quantity == 0:
                raise NoOpenPosition("No open position in market")
            if (old_quantity > 0 and not 0 <= new_quantity < old_quantity) or (
                old_quantity < 0 and not old_quantity < new_quantity <= 0
            ):
                raise ValueError("Position must move toward zero")
            if quote_quantity < 0:
                raise ValueError("Quote quantity must be unsigned")

            moved = old_quantity - new_quantity
            # A long is sold (wallet receives quote), a short is bought back
            liquidating_quote_delta = quote_quantity if old_quantity > 0 else -quote_quantity

            self._update_position(liquidating_wallet, sid, -moved, liquidating_quote_delta)
            self.adjust_quote(liquidating_wallet, liquidating_quote_delta)
            self._update_position(counterparty_wallet, sid, moved, -liquidating_quote_delta)
            self.adjust_quote(counterparty_wallet, -liquidating_quote_delta)
            return moved

    def close_position_in_deactivated_market(
        self,
        wallet: str,
        symbol: str,
        quote_quantity: int,
        fee_quantity: int,
    ) -> int:
        """
        Zero a position against the venue at the deactivation price.

        Every position in a deactivated market closes at the same price, so
        the quote legs net out across the market. The fee is moved to the
        fee wallet.

        Returns:
            Signed quantity closed
        """
        with self._store.transaction():
            sid = self._store.symbols.intern(symbol)
            quantity = self._load_by_id(wallet, sid).quantity
            if quantity == 0:
                raise NoOpenPosition("No open position in market")
            quote_delta = quote_quantity if quantity > 0 else -quote_quantity
            self._update_position(wallet, sid, -quantity, quote_delta)
            self.adjust_quote(wallet, quote_delta - fee_quantity)
            if fee_quantity:
                self.adjust_quote(self._store.wallets.fee_wallet, fee_quantity)
            return quantity

    def transfer_remaining_quote(self, from_wallet: str, to_wallet: str) -> int:
        """
        Move the whole quote balance (positive or negative) to another wallet.

        Returns:
            Amount moved
        """
        with self._store.transaction():
            remaining = self.load_quote_balance(from_wallet)
            if remaining:
                self.adjust_quote(from_wallet, -remaining)
                self.adjust_quote(to_wallet, remaining)
            return remaining

    def record_funding_settlement(
        self,
        wallet: str,
        symbol: str,
        funding_payment: int,
        timestamp_ms: int,
    ) -> None:
        """Credit a funding payment and advance the settlement timestamp together."""
        with self._store.transaction():
            sid = self._store.symbols.intern(symbol)
            balance = self._load_by_id(wallet, sid)
            self._write(
                wallet,
                sid,
                Balance(
                    quantity=balance.quantity,
                    cost_basis=balance.cost_basis,
                    last_funding_timestamp_ms=timestamp_ms,
                ),
            )
            if funding_payment:
                self.adjust_quote(wallet, funding_payment)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_by_id(self, wallet: str, sid: SymbolId) -> Balance:
        return self._store.balances.get((wallet, sid), Balance())

    def _update_position(self, wallet: str, sid: SymbolId, quantity_delta: int, quote_delta: int) -> Balance:
        balance = self._load_by_id(wallet, sid)
        old_quantity = balance.quantity
        new_quantity = validate_int64(old_quantity + quantity_delta)
        traded_quote = -quote_delta

        if new_quantity == 0:
            cost_basis = 0
        elif old_quantity == 0 or (old_quantity > 0) == (quantity_delta > 0):
            cost_basis = validate_int64(balance.cost_basis + traded_quote)
        elif (old_quantity > 0) == (new_quantity > 0):
            cost_basis = multiply_pips_by_fraction(balance.cost_basis, new_quantity, old_quantity)
        else:
            cost_basis = multiply_pips_by_fraction(traded_quote, new_quantity, quantity_delta)

        last_funding = balance.last_funding_timestamp_ms
        if old_quantity == 0 and new_quantity != 0:
            series = self._store.funding.get(sid)
            last_funding = series.last_timestamp_ms if series else 0

        updated = Balance(
            quantity=new_quantity,
            cost_basis=cost_basis,
            last_funding_timestamp_ms=last_funding,
        )
        self._write(wallet, sid, updated)
        return updated

    def _write(self, wallet: str, sid: SymbolId, balance: Balance) -> None:
        # Caller holds the store transaction
        previous = self._store.balances.get((wallet, sid), Balance())
        symbols = None
        if sid != self._store.quote_asset_id and previous.is_open != balance.is_open:
            current = self._store.open_positions.get(wallet, ())
            if balance.is_open:
                symbols = insert_sorted(current, sid, self._store.key)
            else:
                symbols = remove(current, sid, self._store.key)

        self._store.balances[(wallet, sid)] = balance
        if symbols is not None:
            self._store.open_positions[wallet] = symbols
            logger.debug(
                f"Open positions of {wallet}: {self._store.symbols.names(symbols)}"
            )
