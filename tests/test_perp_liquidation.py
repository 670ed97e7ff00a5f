# -*- coding: utf-8 -*-
"""
test_perp_liquidation.py
Tests for the liquidation engine.

Coverage:
- Bankruptcy quote formula
- WALLET_IN_MAINTENANCE against the insurance fund (capacity, tolerance)
- WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY against the exit fund
- WALLET_EXITED at exit and bankruptcy prices
- POSITION_IN_DEACTIVATED_MARKET with fees
- POSITION_BELOW_MINIMUM sweeps
- Role validation and funding settlement before checks
"""

from __future__ import annotations

import pytest

from conftest import (
    EXIT_FUND,
    FEE_WALLET,
    INSURANCE_FUND,
    NOW_MS,
    TRADER_1,
    TRADER_2,
    P,
    eth_fields,
)
from core_errors import (
    InactiveMarket,
    InsuranceFundCannotAcquire,
    InvalidLiquidationPrice,
    MaintenanceMarginMet,
    NoOpenPosition,
    PositionAboveMinimum,
    WalletExitError,
    WalletRoleError,
)
from core_perps import (
    IndexPrice,
    LiquidationType,
    PositionLiquidationArguments,
    WalletLiquidationArguments,
)
from impl_perp_liquidation import (
    bankruptcy_quote_quantity,
    validate_liquidation_fee,
    validate_quote_quantity,
)


def _wallet_args(liquidation_type, wallet, counterparty, quotes):
    return WalletLiquidationArguments(
        liquidation_type=liquidation_type,
        liquidating_wallet=wallet,
        counterparty_wallet=counterparty,
        liquidation_quote_quantities=tuple(quotes),
    )


def _in_maintenance(wallet=TRADER_1, counterparty=INSURANCE_FUND, quote=21980 * P):
    return _wallet_args(LiquidationType.WALLET_IN_MAINTENANCE, wallet, counterparty, [quote])


# ============================================================================
# FORMULAS
# ============================================================================

class TestBankruptcyQuoteQuantity:
    """Tests for bankruptcy_quote_quantity."""

    def test_short_in_maintenance(self):
        """Short 10 @ 2150, MMF 3%, TAV 480, MMR 645 -> 21980."""
        assert bankruptcy_quote_quantity(-10 * P, 2150 * P, 3_000_000, 480 * P, 645 * P) == 21980 * P

    def test_long_with_negative_equity(self):
        """Long 10 @ 1700, TAV -1040, MMR 510 -> 18040."""
        assert bankruptcy_quote_quantity(10 * P, 1700 * P, 3_000_000, -1040 * P, 510 * P) == 18040 * P

    def test_zero_mmr_is_mark_value(self):
        assert bankruptcy_quote_quantity(-10 * P, 2150 * P, 3_000_000, 480 * P, 0) == 21500 * P

    def test_linear_in_position(self):
        whole = bankruptcy_quote_quantity(-10 * P, 2150 * P, 3_000_000, 480 * P, 645 * P)
        part = bankruptcy_quote_quantity(-5 * P, 2150 * P, 3_000_000, 480 * P, 645 * P)
        assert abs(whole - 2 * part) <= 1


class TestQuoteValidation:
    """Tests for tolerance and fee checks."""

    def test_within_tolerance(self):
        validate_quote_quantity(100, 101, tolerance=1)
        validate_quote_quantity(100, 99, tolerance=1)

    def test_outside_tolerance(self):
        with pytest.raises(InvalidLiquidationPrice) as exc:
            validate_quote_quantity(100, 102, tolerance=1)
        assert exc.value.expected == 100
        assert exc.value.actual == 102

    def test_fee_cap(self):
        validate_liquidation_fee(1000 * P, 200 * P)
        with pytest.raises(InvalidLiquidationPrice, match="Excessive liquidation fee"):
            validate_liquidation_fee(1000 * P, 200 * P + 1)


# ============================================================================
# WALLET IN MAINTENANCE
# ============================================================================

class TestWalletInMaintenance:
    """trader-1 short 10 ETH, marked at 2150 (TAV 480 < MMR 645)."""

    def test_insurance_fund_acquires(self, scenario):
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        scenario.set_price(2150)
        engine = scenario.engine

        result = engine.liquidate_wallet(_in_maintenance())

        assert engine.load_balance(TRADER_1, "ETH").quantity == 0
        assert engine.load_quote_balance(TRADER_1) == 0
        assert engine.load_balance(INSURANCE_FUND, "ETH").quantity == -10 * P
        assert engine.load_quote_balance(INSURANCE_FUND) == 23980 * P
        assert result.counterparty_wallet == INSURANCE_FUND
        assert result.settlements[0].base_quantity == -10 * P
        assert result.remaining_quote_transferred == 0

    def test_insurance_fund_without_capacity(self, scenario):
        """Empty IF: simulated TAV 480 < IMR 1075."""
        scenario.open_eth_trade()
        scenario.set_price(2150)
        engine = scenario.engine

        with pytest.raises(InsuranceFundCannotAcquire):
            engine.liquidate_wallet(_in_maintenance())
        assert engine.load_balance(TRADER_1, "ETH").quantity == -10 * P
        assert engine.load_quote_balance(TRADER_1) == 21980 * P
        assert not engine.liquidation.insurance_fund_can_acquire(
            TRADER_1,
            engine.liquidation.validate_wallet_quote_quantities(
                TRADER_1, False, engine.margin_snapshot(TRADER_1), [21980 * P]
            ),
            True,
        )

    def test_insurance_fund_max_position_size(self, scenario):
        """A position above the IF's max size blocks acquisition whatever its equity."""
        scenario.open_eth_trade(insurance_fund_deposit=1_000_000)
        engine = scenario.engine
        engine.set_market_override("ETH", INSURANCE_FUND, eth_fields(maximum_position_size=5 * P))
        scenario.set_price(2150)

        with pytest.raises(InsuranceFundCannotAcquire):
            engine.liquidate_wallet(_in_maintenance())

    def test_solvent_wallet_rejected(self, scenario):
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        with pytest.raises(MaintenanceMarginMet, match="Maintenance margin requirement met"):
            scenario.engine.liquidate_wallet(_in_maintenance(quote=20000 * P))

    def test_solvency_boundary_market(self, scenario):
        """One unit at 100, MMF 5%: rejected at TAV 10040000000, accepted at 400000000."""
        engine = scenario.engine
        engine.add_market("M", eth_fields(initial_margin_fraction=10_000_000, maintenance_margin_fraction=5_000_000))
        engine.activate_market("M")
        scenario.set_price(100, "M")
        engine.deposit(INSURANCE_FUND, 1000 * P)
        engine.ledger.apply_delta("w", "M", 1 * P, 0)
        engine.ledger.adjust_quote("w", 40_000_000)

        args = _wallet_args(LiquidationType.WALLET_IN_MAINTENANCE, "w", INSURANCE_FUND, [10_000_000_000])
        with pytest.raises(MaintenanceMarginMet):
            engine.liquidate_wallet(args)

        engine.ledger.adjust_quote("w", -40_000_000 - 9_600_000_000)
        args = _wallet_args(LiquidationType.WALLET_IN_MAINTENANCE, "w", INSURANCE_FUND, [9_600_000_000])
        engine.liquidate_wallet(args)
        assert engine.load_balance("w", "M").quantity == 0
        assert engine.load_quote_balance("w") == 0

    def test_tolerance(self, scenario):
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        scenario.set_price(2150)
        engine = scenario.engine
        with pytest.raises(InvalidLiquidationPrice):
            engine.liquidate_wallet(_in_maintenance(quote=21980 * P + 2))
        result = engine.liquidate_wallet(_in_maintenance(quote=21980 * P + 1))
        # Overpaying by a pip leaves the wallet at -1, swept into the IF
        assert result.remaining_quote_transferred == -1
        assert engine.load_quote_balance(TRADER_1) == 0

    def test_quote_count_mismatch(self, scenario):
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        scenario.set_price(2150)
        args = _wallet_args(LiquidationType.WALLET_IN_MAINTENANCE, TRADER_1, INSURANCE_FUND, [])
        with pytest.raises(InvalidLiquidationPrice, match="count mismatch"):
            scenario.engine.liquidate_wallet(args)

    def test_counterparty_must_be_insurance_fund(self, scenario):
        scenario.open_eth_trade()
        scenario.set_price(2150)
        with pytest.raises(WalletRoleError, match="Counterparty wallet must be IF"):
            scenario.engine.liquidate_wallet(_in_maintenance(counterparty=TRADER_2))

    def test_funds_cannot_be_liquidated(self, scenario):
        with pytest.raises(WalletRoleError, match="Cannot liquidate IF"):
            scenario.engine.liquidate_wallet(_in_maintenance(wallet=INSURANCE_FUND, counterparty=EXIT_FUND))
        with pytest.raises(WalletRoleError, match="Cannot liquidate EF"):
            scenario.engine.liquidate_wallet(_in_maintenance(wallet=EXIT_FUND))

    def test_self_liquidation(self, scenario):
        with pytest.raises(WalletRoleError, match="against itself"):
            scenario.engine.liquidate_wallet(_in_maintenance(counterparty=TRADER_1))

    def test_funding_settled_before_margin_check(self, scenario):
        """A funding payment alone pushes trader-1 from TAV 1980 to 580 < MMR 600."""
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        engine = scenario.engine
        engine.publish_funding_multiplier("ETH", IndexPrice("ETH", 2000 * P, NOW_MS), -7_000_000, NOW_MS)

        result = engine.liquidate_wallet(_in_maintenance(quote=20580 * P))

        assert result.settlements[0].quote_quantity == 20580 * P
        assert engine.load_quote_balance(TRADER_1) == 0


# ============================================================================
# SYSTEM RECOVERY
# ============================================================================

class TestSystemRecovery:
    """Liquidation against the exit fund while it holds positions."""

    def test_exit_fund_needs_positions(self, scenario):
        scenario.open_eth_trade()
        scenario.set_price(2150)
        args = _wallet_args(
            LiquidationType.WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY, TRADER_1, EXIT_FUND, [21980 * P]
        )
        with pytest.raises(WalletRoleError, match="Exit fund has no positions"):
            scenario.engine.liquidate_wallet(args)

    def test_exit_fund_takes_position(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.add_market("BTC", eth_fields())
        engine.activate_market("BTC")
        scenario.set_price(30000, "BTC")
        engine.ledger.apply_delta(EXIT_FUND, "BTC", 1 * P, -30000 * P)
        scenario.set_price(2150)

        args = _wallet_args(
            LiquidationType.WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY, TRADER_1, EXIT_FUND, [21980 * P]
        )
        engine.liquidate_wallet(args)
        assert engine.load_balance(EXIT_FUND, "ETH").quantity == -10 * P

    def test_counterparty_must_be_exit_fund(self, scenario):
        args = _wallet_args(
            LiquidationType.WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY, TRADER_1, INSURANCE_FUND, [21980 * P]
        )
        with pytest.raises(WalletRoleError, match="Counterparty wallet must be EF"):
            scenario.engine.liquidate_wallet(args)


# ============================================================================
# WALLET EXITED
# ============================================================================

class TestWalletExited:
    """trader-2 long 10 ETH entered at 2000 with quote -18040."""

    def test_exit_price_when_solvent(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.exit_wallet(TRADER_2)

        args = _wallet_args(LiquidationType.WALLET_EXITED, TRADER_2, EXIT_FUND, [20000 * P])
        result = engine.liquidate_wallet(args)

        assert engine.load_balance(TRADER_2, "ETH").quantity == 0
        assert engine.load_quote_balance(TRADER_2) == 1960 * P
        assert engine.load_balance(EXIT_FUND, "ETH").quantity == 10 * P
        assert engine.load_quote_balance(EXIT_FUND) == -20000 * P
        assert result.remaining_quote_transferred == 0

    def test_bankruptcy_price_when_underwater(self, scenario):
        """At 1700 the exit account value is -1040, so bankruptcy pricing applies."""
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.exit_wallet(TRADER_2)
        scenario.set_price(1700)
        assert engine.exit_account_value(TRADER_2) == -1040 * P

        args = _wallet_args(LiquidationType.WALLET_EXITED, TRADER_2, EXIT_FUND, [18040 * P - 1])
        result = engine.liquidate_wallet(args)

        assert result.remaining_quote_transferred == -1
        assert engine.load_quote_balance(TRADER_2) == 0
        assert engine.load_quote_balance(EXIT_FUND) == -18040 * P

    def test_wallet_must_be_exited(self, scenario):
        scenario.open_eth_trade()
        args = _wallet_args(LiquidationType.WALLET_EXITED, TRADER_2, EXIT_FUND, [20000 * P])
        with pytest.raises(WalletExitError, match="Wallet not exited"):
            scenario.engine.liquidate_wallet(args)

    def test_counterparty_must_be_fund(self, scenario):
        scenario.open_eth_trade()
        scenario.engine.exit_wallet(TRADER_2)
        args = _wallet_args(LiquidationType.WALLET_EXITED, TRADER_2, TRADER_1, [20000 * P])
        with pytest.raises(WalletRoleError, match="IF or EF"):
            scenario.engine.liquidate_wallet(args)


# ============================================================================
# DEACTIVATED MARKET
# ============================================================================

class TestDeactivatedMarket:
    """Positions closed at the frozen deactivation price."""

    @staticmethod
    def _args(quote, fee=0, wallet=TRADER_1):
        return PositionLiquidationArguments(
            liquidation_type=LiquidationType.POSITION_IN_DEACTIVATED_MARKET,
            base_asset_symbol="ETH",
            liquidating_wallet=wallet,
            liquidation_quote_quantity=quote,
            fee_quantity=fee,
        )

    def test_close_with_fee(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.deactivate_market("ETH", scenario.index_price(2100))

        result = engine.liquidate_position_in_deactivated_market(self._args(21000 * P, fee=10 * P))

        assert result.counterparty_wallet is None
        assert engine.load_balance(TRADER_1, "ETH").quantity == 0
        assert engine.load_quote_balance(TRADER_1) == 970 * P
        # 60 in trade fees plus the liquidation fee
        assert engine.load_quote_balance(FEE_WALLET) == 70 * P

    def test_both_sides_close_at_same_price(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.deactivate_market("ETH", scenario.index_price(2100))
        engine.liquidate_position_in_deactivated_market(self._args(21000 * P))
        engine.liquidate_position_in_deactivated_market(self._args(21000 * P, wallet=TRADER_2))
        assert engine.load_quote_balance(TRADER_1) == 980 * P
        assert engine.load_quote_balance(TRADER_2) == 2960 * P

    def test_excessive_fee(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.deactivate_market("ETH", scenario.index_price(2100))
        with pytest.raises(InvalidLiquidationPrice, match="Excessive liquidation fee"):
            engine.liquidate_position_in_deactivated_market(self._args(21000 * P, fee=4200 * P + 1))

    def test_wrong_quote(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.deactivate_market("ETH", scenario.index_price(2100))
        with pytest.raises(InvalidLiquidationPrice):
            engine.liquidate_position_in_deactivated_market(self._args(21500 * P))

    def test_active_market_rejected(self, scenario):
        scenario.open_eth_trade()
        with pytest.raises(InactiveMarket):
            scenario.engine.liquidate_position_in_deactivated_market(self._args(20000 * P))

    def test_no_position(self, scenario):
        scenario.open_eth_trade()
        engine = scenario.engine
        engine.deactivate_market("ETH", scenario.index_price(2100))
        with pytest.raises(NoOpenPosition):
            engine.liquidate_position_in_deactivated_market(self._args(0, wallet="nobody"))

    def test_wallet_liquidation_rejected(self, scenario):
        """Frozen at 2150 trader-1 is in maintenance, but only the frozen-price close applies."""
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        engine = scenario.engine
        engine.deactivate_market("ETH", scenario.index_price(2150))
        assert engine.margin_snapshot(TRADER_1).is_in_maintenance

        with pytest.raises(InactiveMarket, match="Position in deactivated market"):
            engine.liquidate_wallet(_in_maintenance())
        assert engine.load_balance(TRADER_1, "ETH").quantity == -10 * P
        assert engine.load_balance(INSURANCE_FUND, "ETH").quantity == 0
        assert engine.load_quote_balance(INSURANCE_FUND) == 2000 * P

        engine.liquidate_position_in_deactivated_market(self._args(21500 * P))
        assert engine.load_quote_balance(TRADER_1) == 480 * P
        assert engine.load_open_position_symbols(TRADER_1) == ()


# ============================================================================
# BELOW MINIMUM
# ============================================================================

class TestBelowMinimum:
    """Dust positions swept into the insurance fund at the index mark."""

    @staticmethod
    def _args(quote):
        return PositionLiquidationArguments(
            liquidation_type=LiquidationType.POSITION_BELOW_MINIMUM,
            base_asset_symbol="ETH",
            liquidating_wallet=TRADER_1,
            liquidation_quote_quantity=quote,
        )

    def test_sweep(self, scenario):
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        engine = scenario.engine
        engine.set_market_override("ETH", TRADER_1, eth_fields(minimum_position_size=20 * P))

        result = engine.liquidate_position_below_minimum(self._args(20000 * P))

        assert result.counterparty_wallet == INSURANCE_FUND
        assert engine.load_balance(TRADER_1, "ETH").quantity == 0
        assert engine.load_quote_balance(TRADER_1) == 1980 * P
        assert engine.load_balance(INSURANCE_FUND, "ETH").quantity == -10 * P

    def test_position_above_minimum(self, scenario):
        scenario.open_eth_trade(insurance_fund_deposit=2000)
        with pytest.raises(PositionAboveMinimum):
            scenario.engine.liquidate_position_below_minimum(self._args(20000 * P))
