# -*- coding: utf-8 -*-
"""
test_perp_symbol_set.py
Tests for symbol interning and hash-ordered symbol sets.
"""

from __future__ import annotations

import pytest

from impl_symbol_set import (
    NOT_FOUND,
    SymbolTable,
    index_of,
    insert_sorted,
    merge,
    remove,
    symbol_sort_key,
)


SYMBOLS = ["BTC", "ETH", "SOL", "DOGE", "AVAX", "LINK"]


@pytest.fixture
def table() -> SymbolTable:
    table = SymbolTable()
    for symbol in SYMBOLS:
        table.intern(symbol)
    return table


def _digest_sorted(table: SymbolTable, symbols):
    return tuple(sorted((table.intern(s) for s in symbols), key=table.sort_key))


class TestSymbolTable:
    """Tests for SymbolTable."""

    def test_intern_is_stable(self, table):
        assert table.intern("ETH") == table.intern("ETH")
        assert table.name(table.intern("ETH")) == "ETH"

    def test_lookup_missing(self, table):
        assert table.lookup("XRP") == NOT_FOUND

    def test_sort_key_is_sha3(self, table):
        assert table.sort_key(table.intern("BTC")) == symbol_sort_key("BTC")
        assert len(symbol_sort_key("BTC")) == 32


class TestSortedSet:
    """Tests for insert / remove / merge on digest-ordered tuples."""

    def test_insert_keeps_digest_order(self, table):
        result = ()
        for symbol in SYMBOLS:
            result = insert_sorted(result, table.intern(symbol), table.sort_key)
        assert result == _digest_sorted(table, SYMBOLS)

    def test_order_is_not_alphabetical_by_construction(self, table):
        """Ordering follows the digest, whatever the symbol text."""
        result = ()
        for symbol in reversed(SYMBOLS):
            result = insert_sorted(result, table.intern(symbol), table.sort_key)
        keys = [table.sort_key(sid) for sid in result]
        assert keys == sorted(keys)

    def test_insert_present_is_noop(self, table):
        current = _digest_sorted(table, ["BTC", "ETH"])
        assert insert_sorted(current, table.intern("ETH"), table.sort_key) == current

    def test_insert_then_remove_round_trip(self, table):
        current = _digest_sorted(table, ["BTC", "SOL", "LINK"])
        sid = table.intern("DOGE")
        inserted = insert_sorted(current, sid, table.sort_key)
        assert len(inserted) == 4
        assert remove(inserted, sid, table.sort_key) == current

    def test_remove_missing_raises(self, table):
        current = _digest_sorted(table, ["BTC"])
        with pytest.raises(KeyError, match="Element to remove not found"):
            remove(current, table.intern("ETH"), table.sort_key)

    def test_index_of(self, table):
        current = _digest_sorted(table, SYMBOLS)
        for i, sid in enumerate(current):
            assert index_of(current, sid, table.sort_key) == i
        assert index_of((), table.intern("ETH"), table.sort_key) == NOT_FOUND

    def test_merge_is_sorted_union(self, table):
        a = _digest_sorted(table, ["BTC", "ETH", "SOL"])
        b = _digest_sorted(table, ["ETH", "DOGE"])
        assert merge(a, b, table.sort_key) == _digest_sorted(table, ["BTC", "ETH", "SOL", "DOGE"])

    def test_merge_with_empty(self, table):
        a = _digest_sorted(table, ["BTC", "ETH"])
        assert merge(a, (), table.sort_key) == a
        assert merge((), a, table.sort_key) == a
