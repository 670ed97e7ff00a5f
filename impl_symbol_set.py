# -*- coding: utf-8 -*-
"""
impl_symbol_set.py
Symbol interning and hash-ordered symbol sets.

Base-asset symbols are interned to small integer ids. Sets of symbols
(a wallet's open positions, the union of two wallets' positions) are kept
as tuples of ids ordered by the SHA3-256 digest of the symbol, never by
the symbol text, so insert / remove / merge are a single linear scan and
the ordering is identical on every host.
"""

from __future__ import annotations

import hashlib
import threading
from typing import Callable, Dict, List, Sequence, Tuple


SymbolId = int

# Returned by index_of when the symbol is absent
NOT_FOUND = -1


class SymbolTable:
    """
    Interns symbols to ids and keeps the side table used for display.

    Thread-safe; ids are assigned in first-seen order and never reused.
    """

    def __init__(self) -> None:
        self._ids: Dict[str, SymbolId] = {}
        self._names: List[str] = []
        self._keys: List[bytes] = []
        self._lock = threading.Lock()

    def intern(self, symbol: str) -> SymbolId:
        """Return the id of symbol, assigning one on first use."""
        sid = self._ids.get(symbol)
        if sid is not None:
            return sid
        with self._lock:
            sid = self._ids.get(symbol)
            if sid is None:
                sid = len(self._names)
                self._names.append(symbol)
                self._keys.append(symbol_sort_key(symbol))
                self._ids[symbol] = sid
            return sid

    def lookup(self, symbol: str) -> SymbolId:
        """Return the id of an already interned symbol, or NOT_FOUND."""
        return self._ids.get(symbol, NOT_FOUND)

    def name(self, sid: SymbolId) -> str:
        return self._names[sid]

    def sort_key(self, sid: SymbolId) -> bytes:
        return self._keys[sid]

    def names(self, sids: Sequence[SymbolId]) -> Tuple[str, ...]:
        return tuple(self._names[sid] for sid in sids)

    def __len__(self) -> int:
        return len(self._names)


def symbol_sort_key(symbol: str) -> bytes:
    """Stable ordering key of a symbol: its SHA3-256 digest."""
    return hashlib.sha3_256(symbol.encode("utf-8")).digest()


# ============================================================================
# SORTED SET OPERATIONS
# ============================================================================

def index_of(
    symbols: Sequence[SymbolId],
    symbol: SymbolId,
    key: Callable[[SymbolId], bytes],
) -> int:
    """Position of symbol in a sorted set, or NOT_FOUND."""
    target = key(symbol)
    for i, sid in enumerate(symbols):
        k = key(sid)
        if k == target:
            return i
        if k > target:
            break
    return NOT_FOUND


def insert_sorted(
    symbols: Sequence[SymbolId],
    symbol: SymbolId,
    key: Callable[[SymbolId], bytes],
) -> Tuple[SymbolId, ...]:
    """Insert symbol keeping digest order; a present symbol is not duplicated."""
    target = key(symbol)
    result: List[SymbolId] = []
    inserted = False
    for sid in symbols:
        k = key(sid)
        if not inserted:
            if k == target:
                return tuple(symbols)
            if k > target:
                result.append(symbol)
                inserted = True
        result.append(sid)
    if not inserted:
        result.append(symbol)
    return tuple(result)


def remove(
    symbols: Sequence[SymbolId],
    symbol: SymbolId,
    key: Callable[[SymbolId], bytes],
) -> Tuple[SymbolId, ...]:
    """
    Remove symbol from a sorted set.

    Raises:
        KeyError: Symbol not in the set
    """
    i = index_of(symbols, symbol, key)
    if i == NOT_FOUND:
        raise KeyError("Element to remove not found")
    return tuple(symbols[:i]) + tuple(symbols[i + 1:])


def merge(
    a: Sequence[SymbolId],
    b: Sequence[SymbolId],
    key: Callable[[SymbolId], bytes],
) -> Tuple[SymbolId, ...]:
    """Union of two sorted sets in one pass, without duplicates."""
    result: List[SymbolId] = []
    i = j = 0
    while i < len(a) and j < len(b):
        ka, kb = key(a[i]), key(b[j])
        if ka == kb:
            result.append(a[i])
            i += 1
            j += 1
        elif ka < kb:
            result.append(a[i])
            i += 1
        else:
            result.append(b[j])
            j += 1
    result.extend(a[i:])
    result.extend(b[j:])
    return tuple(result)
