# -*- coding: utf-8 -*-
"""
impl_ledger_store.py
Explicit state store of the risk engine.

Holds every piece of mutable engine state (balances, open-position sets,
markets, overrides, funding multipliers, wallet exits) and is passed by
reference into each component. There are no module-level singletons.

Concurrency:
- transaction(): store-wide re-entrant lock; a balance write and the
  matching open-position set update always happen inside one transaction
- wallet_locks(): per-wallet re-entrant locks, acquired in address order so
  concurrent operations touching overlapping wallets cannot deadlock
"""

from __future__ import annotations

from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple
import threading

from core_perps import (
    Balance,
    Market,
    MarketOverride,
    Wallet,
    WalletRole,
)
from impl_symbol_set import SymbolId, SymbolTable


@dataclass(frozen=True)
class WalletDirectory:
    """
    Addresses of the venue-owned wallets.

    Attributes:
        insurance_fund_wallet: Counterparty of first resort
        exit_fund_wallet: Counterparty of last resort
        fee_wallet: Receives trade and liquidation fees
    """
    insurance_fund_wallet: str
    exit_fund_wallet: str
    fee_wallet: str

    def role_of(self, address: str) -> WalletRole:
        if address == self.insurance_fund_wallet:
            return WalletRole.INSURANCE_FUND
        if address == self.exit_fund_wallet:
            return WalletRole.EXIT_FUND
        return WalletRole.TRADER


@dataclass
class FundingMultiplierSeries:
    """
    Funding multipliers of one market, packed in quartets.

    Attributes:
        quartets: Append-only list of 4-slot lists; unused slots hold
            NO_FUNDING_MULTIPLIER
        count: Number of multipliers published
        first_timestamp_ms: Timestamp of multiplier 0
        last_timestamp_ms: Timestamp of the latest multiplier
    """
    quartets: List[List[int]] = field(default_factory=list)
    count: int = 0
    first_timestamp_ms: int = 0
    last_timestamp_ms: int = 0


class LedgerStore:
    """
    In-memory store of all engine state.

    Args:
        wallets: Venue-owned wallet addresses
        quote_asset_symbol: Collateral asset symbol
    """

    def __init__(self, wallets: WalletDirectory, quote_asset_symbol: str = "USD"):
        self.wallets = wallets
        self.quote_asset_symbol = quote_asset_symbol
        self.symbols = SymbolTable()
        self.quote_asset_id: SymbolId = self.symbols.intern(quote_asset_symbol)

        self.balances: Dict[Tuple[str, SymbolId], Balance] = {}
        self.open_positions: Dict[str, Tuple[SymbolId, ...]] = {}
        self.markets: Dict[SymbolId, Market] = {}
        self.market_overrides: Dict[Tuple[SymbolId, str], MarketOverride] = {}
        self.funding: Dict[SymbolId, FundingMultiplierSeries] = {}
        self.exited_wallets: Dict[str, int] = {}

        self._lock = threading.RLock()
        self._wallet_locks: Dict[str, threading.RLock] = {}
        self._wallet_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def wallet(self, address: str) -> Wallet:
        """Tag an address with its role."""
        return Wallet(address=address, role=self.wallets.role_of(address))

    @property
    def insurance_fund(self) -> Wallet:
        return self.wallet(self.wallets.insurance_fund_wallet)

    @property
    def exit_fund(self) -> Wallet:
        return self.wallet(self.wallets.exit_fund_wallet)

    def is_wallet_exited(self, address: str) -> bool:
        return address in self.exited_wallets

    # ------------------------------------------------------------------
    # Symbols / markets
    # ------------------------------------------------------------------

    def market_id(self, symbol: str) -> Optional[SymbolId]:
        """Id of a symbol with a market, or None."""
        sid = self.symbols.lookup(symbol)
        if sid < 0 or sid not in self.markets:
            return None
        return sid

    def key(self, sid: SymbolId) -> bytes:
        return self.symbols.sort_key(sid)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Store-wide critical section."""
        with self._lock:
            yield

    def _wallet_lock(self, address: str) -> threading.RLock:
        with self._wallet_locks_guard:
            lock = self._wallet_locks.get(address)
            if lock is None:
                lock = threading.RLock()
                self._wallet_locks[address] = lock
            return lock

    @contextmanager
    def wallet_locks(self, *addresses: str) -> Iterator[None]:
        """Hold the locks of every given wallet (duplicates ignored)."""
        with ExitStack() as stack:
            for address in sorted(set(addresses)):
                stack.enter_context(self._wallet_lock(address))
            yield
