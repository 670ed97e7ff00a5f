# -*- coding: utf-8 -*-
"""
impl_perp_deleveraging.py
Auto-deleveraging (ADL) of positions the insurance fund cannot absorb.

Modes:
- WALLET_IN_MAINTENANCE (acquisition): a wallet in maintenance hands part or
  all of a position to a trader holding an offsetting position, at its
  bankruptcy price
- WALLET_EXITED (acquisition): same for an exited wallet, at exit or
  bankruptcy price
- INSURANCE_FUND_CLOSURE: the IF winds down its own position at cost basis
- EXIT_FUND_CLOSURE: the EF winds down its own position at its bankruptcy
  price computed with default (never overridden) risk fields

Acquisition modes first prove the insurance fund cannot take the whole
wallet: after the simulated acquisition some IF position exceeds its
maximum size, or the IF's TAV falls below its IMR. Otherwise the call is
rejected with InsuranceFundCanAcquire.

In every mode the deleveraged counterparty is scored on its simulated
post-deleverage account before anything is written, against initial
margin (default) or maintenance margin.
"""

from __future__ import annotations

from typing import Optional, Sequence
import logging

from core_errors import (
    InsuranceFundCanAcquire,
    MaintenanceMarginMet,
    NoOpenPosition,
    WalletExitError,
    WalletRoleError,
)
from core_perps import (
    AcquisitionDeleverageArguments,
    ClosureDeleverageArguments,
    DeleverageResult,
    DeleverageType,
    MarginCheck,
    MarginSnapshot,
    PositionSettlement,
    Wallet,
)
from impl_ledger_store import LedgerStore
from impl_perp_funding import FundingAccrual
from impl_perp_liquidation import LiquidationEngine, validate_quote_quantity
from impl_perp_margin import MarginCalculator
from impl_perp_markets import MarketRegistry
from impl_pips import abs_pips, multiply_pips_by_fraction
from impl_position_ledger import PositionLedger


logger = logging.getLogger(__name__)


class DeleveragingEngine:
    """
    Validates and executes ADL.

    Args:
        store: Shared engine state
        ledger: Position ledger
        funding: Funding accrual
        markets: Market registry
        margin: Margin calculator
        liquidation: Liquidation engine (pricing and IF simulation)
        counterparty_margin_check: Requirement the deleveraged counterparty
            must still meet afterwards
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: PositionLedger,
        funding: FundingAccrual,
        markets: MarketRegistry,
        margin: MarginCalculator,
        liquidation: LiquidationEngine,
        counterparty_margin_check: MarginCheck = MarginCheck.INITIAL,
    ):
        self._store = store
        self._ledger = ledger
        self._funding = funding
        self._markets = markets
        self._margin = margin
        self._liquidation = liquidation
        self._counterparty_margin_check = MarginCheck(counterparty_margin_check)

    # ------------------------------------------------------------------
    # Insurance fund
    # ------------------------------------------------------------------

    def validate_insurance_fund_cannot_acquire(
        self,
        wallet: str,
        exit_price: bool,
        snapshot: MarginSnapshot,
        quote_quantities: Sequence[int],
    ) -> None:
        """
        Raises:
            InvalidLiquidationPrice: A quote quantity is off the formula
            InsuranceFundCanAcquire: IF could take every position
        """
        settlements = self._liquidation.validate_wallet_quote_quantities(
            wallet, exit_price, snapshot, quote_quantities
        )
        if self._liquidation.insurance_fund_can_acquire(wallet, settlements, not exit_price):
            raise InsuranceFundCanAcquire("Insurance fund can acquire")

    # ------------------------------------------------------------------
    # Acquisition modes
    # ------------------------------------------------------------------

    def deleverage(self, arguments) -> DeleverageResult:
        """Dispatch on the arguments' deleverage type."""
        deleverage_type = arguments.deleverage_type
        if deleverage_type == DeleverageType.WALLET_IN_MAINTENANCE:
            return self.deleverage_in_maintenance_acquisition(arguments)
        if deleverage_type == DeleverageType.WALLET_EXITED:
            return self.deleverage_exit_acquisition(arguments)
        if deleverage_type == DeleverageType.INSURANCE_FUND_CLOSURE:
            return self.deleverage_insurance_fund_closure(arguments)
        if deleverage_type == DeleverageType.EXIT_FUND_CLOSURE:
            return self.deleverage_exit_fund_closure(arguments)
        raise ValueError(f"Unsupported deleverage type: {deleverage_type}")

    def deleverage_in_maintenance_acquisition(self, arguments: AcquisitionDeleverageArguments) -> DeleverageResult:
        """
        Raises:
            WalletRoleError: Fund on either side, or self-deleverage
            MaintenanceMarginMet: Liquidating wallet is solvent
            InsuranceFundCanAcquire: IF must be used first
            InvalidLiquidationPrice: Quote quantity off the bankruptcy formula
            NoOpenPosition: Missing or non-offsetting positions
            MarginNotMet: Counterparty would fall below its requirement
        """
        self._require_type(arguments, DeleverageType.WALLET_IN_MAINTENANCE)
        liquidating, counterparty = self._acquisition_wallets(arguments)

        with self._store.wallet_locks(*self._acquisition_lock_set(liquidating, counterparty)), self._store.transaction():
            self._markets.load_active_market(arguments.base_asset_symbol)
            self._settle_for_acquisition(liquidating, counterparty)

            snapshot = self._margin.snapshot(liquidating.address)
            if not snapshot.is_in_maintenance:
                raise MaintenanceMarginMet("Maintenance margin requirement met")
            self.validate_insurance_fund_cannot_acquire(
                liquidating.address,
                False,
                snapshot,
                arguments.validate_insurance_fund_cannot_liquidate_wallet_quote_quantities,
            )
            expected = self._liquidation.expected_quote_quantity(
                liquidating.address,
                arguments.base_asset_symbol,
                False,
                snapshot,
                self._bounded_base_quantity(liquidating.address, arguments.base_asset_symbol, arguments.liquidation_base_quantity),
            )
            return self._execute(arguments, liquidating, counterparty, expected)

    def deleverage_exit_acquisition(self, arguments: AcquisitionDeleverageArguments) -> DeleverageResult:
        """
        Raises:
            WalletRoleError: Fund on either side, or self-deleverage
            WalletExitError: Liquidating wallet has not exited
            InsuranceFundCanAcquire: IF must be used first
            InvalidLiquidationPrice: Quote quantity off the exit / bankruptcy formula
            NoOpenPosition: Missing or non-offsetting positions
            MarginNotMet: Counterparty would fall below its requirement
        """
        self._require_type(arguments, DeleverageType.WALLET_EXITED)
        liquidating, counterparty = self._acquisition_wallets(arguments)

        with self._store.wallet_locks(*self._acquisition_lock_set(liquidating, counterparty)), self._store.transaction():
            if not self._store.is_wallet_exited(liquidating.address):
                raise WalletExitError("Wallet not exited")
            self._markets.load_active_market(arguments.base_asset_symbol)
            self._settle_for_acquisition(liquidating, counterparty)

            snapshot = self._margin.snapshot(liquidating.address)
            exit_price = self._liquidation.uses_exit_price(liquidating.address)
            self.validate_insurance_fund_cannot_acquire(
                liquidating.address,
                exit_price,
                snapshot,
                arguments.validate_insurance_fund_cannot_liquidate_wallet_quote_quantities,
            )
            expected = self._liquidation.expected_quote_quantity(
                liquidating.address,
                arguments.base_asset_symbol,
                exit_price,
                snapshot,
                self._bounded_base_quantity(liquidating.address, arguments.base_asset_symbol, arguments.liquidation_base_quantity),
            )
            return self._execute(arguments, liquidating, counterparty, expected)

    # ------------------------------------------------------------------
    # Closure modes
    # ------------------------------------------------------------------

    def deleverage_insurance_fund_closure(self, arguments: ClosureDeleverageArguments) -> DeleverageResult:
        """
        Wind down an IF position at its pro-rated cost basis.

        Raises:
            WalletRoleError: Liquidating wallet is not the IF, or bad counterparty
            NoOpenPosition: Missing or non-offsetting positions
            InvalidLiquidationPrice: Quote quantity off the cost basis
            MarginNotMet: Counterparty would fall below its requirement
        """
        self._require_type(arguments, DeleverageType.INSURANCE_FUND_CLOSURE)
        liquidating, counterparty = self._counterparty_wallets(arguments)
        if not liquidating.is_insurance_fund:
            raise WalletRoleError("Liquidating wallet must be IF")

        with self._store.wallet_locks(liquidating.address, counterparty.address), self._store.transaction():
            self._markets.load_active_market(arguments.base_asset_symbol)
            self._settle(liquidating, counterparty)

            base_quantity = self._bounded_base_quantity(
                liquidating.address, arguments.base_asset_symbol, arguments.liquidation_base_quantity
            )
            balance = self._ledger.load(liquidating.address, arguments.base_asset_symbol)
            expected = abs_pips(
                multiply_pips_by_fraction(balance.cost_basis, base_quantity, abs_pips(balance.quantity))
            )
            return self._execute(arguments, liquidating, counterparty, expected)

    def deleverage_exit_fund_closure(self, arguments: ClosureDeleverageArguments) -> DeleverageResult:
        """
        Wind down an EF position at the EF's bankruptcy price.

        Raises:
            WalletRoleError: Liquidating wallet is not the EF, or bad counterparty
            NoOpenPosition: Missing or non-offsetting positions
            InvalidLiquidationPrice: Quote quantity off the bankruptcy formula
            MarginNotMet: Counterparty would fall below its requirement
        """
        self._require_type(arguments, DeleverageType.EXIT_FUND_CLOSURE)
        liquidating, counterparty = self._counterparty_wallets(arguments)
        if not liquidating.is_exit_fund:
            raise WalletRoleError("Liquidating wallet must be EF")

        with self._store.wallet_locks(liquidating.address, counterparty.address), self._store.transaction():
            self._markets.load_active_market(arguments.base_asset_symbol)
            self._settle(liquidating, counterparty)

            # Exit fund margin always resolves to the market defaults
            snapshot = self._margin.snapshot(liquidating.address)
            expected = self._liquidation.expected_quote_quantity(
                liquidating.address,
                arguments.base_asset_symbol,
                False,
                snapshot,
                self._bounded_base_quantity(liquidating.address, arguments.base_asset_symbol, arguments.liquidation_base_quantity),
            )
            return self._execute(arguments, liquidating, counterparty, expected)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _execute(
        self,
        arguments,
        liquidating: Wallet,
        counterparty: Wallet,
        expected_quote_quantity: int,
    ) -> DeleverageResult:
        symbol = arguments.base_asset_symbol
        base_quantity = arguments.liquidation_base_quantity
        quote_quantity = arguments.liquidation_quote_quantity
        validate_quote_quantity(expected_quote_quantity, quote_quantity, self._liquidation.tolerance)

        position = self._ledger.load_position(liquidating.address, symbol)
        moved = base_quantity if position > 0 else -base_quantity
        counterparty_position = self._ledger.load_position(counterparty.address, symbol)
        if counterparty_position == 0 or (counterparty_position > 0) == (position > 0) \
                or abs_pips(counterparty_position) < base_quantity:
            raise NoOpenPosition("Counterparty has no offsetting position")

        liquidating_quote_delta = quote_quantity if position > 0 else -quote_quantity
        counterparty_view = self._ledger.load_account_view(counterparty.address).with_changes(
            symbol, moved, -liquidating_quote_delta
        )
        self._validate_counterparty_margin(counterparty_view)

        self._ledger.set_for_liquidation(
            liquidating.address,
            counterparty.address,
            symbol,
            position - moved,
            quote_quantity,
        )
        counterparty_margin = self._margin.snapshot(counterparty.address)

        logger.info(
            f"Deleveraged {liquidating} ({arguments.deleverage_type.value}) against "
            f"{counterparty}: {symbol} {moved} for {quote_quantity}"
        )
        return DeleverageResult(
            deleverage_type=arguments.deleverage_type,
            liquidating_wallet=liquidating.address,
            counterparty_wallet=counterparty.address,
            settlement=PositionSettlement(
                base_asset_symbol=symbol,
                base_quantity=moved,
                quote_quantity=quote_quantity,
            ),
            counterparty_margin=counterparty_margin,
        )

    def _validate_counterparty_margin(self, view) -> None:
        if self._counterparty_margin_check == MarginCheck.MAINTENANCE:
            self._margin.validate_maintenance_margin_for(view)
        else:
            self._margin.validate_initial_margin_for(view)

    def _bounded_base_quantity(self, wallet: str, base_asset_symbol: str, base_quantity: Optional[int]) -> int:
        position = self._ledger.load_position(wallet, base_asset_symbol)
        if position == 0:
            raise NoOpenPosition("No open position in market")
        if base_quantity is None or not 0 < base_quantity <= abs_pips(position):
            raise ValueError("Invalid liquidation base quantity")
        return base_quantity

    def _settle(self, liquidating: Wallet, counterparty: Wallet) -> None:
        self._funding.settle_wallet(liquidating.address)
        self._funding.settle_wallet(counterparty.address)

    def _acquisition_lock_set(self, liquidating: Wallet, counterparty: Wallet):
        return liquidating.address, counterparty.address, self._store.wallets.insurance_fund_wallet

    def _settle_for_acquisition(self, liquidating: Wallet, counterparty: Wallet) -> None:
        # The IF capacity check reads its margin too
        self._settle(liquidating, counterparty)
        self._funding.settle_wallet(self._store.wallets.insurance_fund_wallet)

    @staticmethod
    def _require_type(arguments, deleverage_type: DeleverageType) -> None:
        if arguments.deleverage_type != deleverage_type:
            raise ValueError(f"Unexpected deleverage type: {arguments.deleverage_type}")

    def _counterparty_wallets(self, arguments):
        liquidating = self._store.wallet(arguments.liquidating_wallet)
        counterparty = self._store.wallet(arguments.counterparty_wallet)
        if liquidating.address == counterparty.address:
            raise WalletRoleError("Cannot liquidate wallet against itself")
        if counterparty.is_exit_fund:
            raise WalletRoleError("Cannot deleverage EF")
        if counterparty.is_insurance_fund:
            raise WalletRoleError("Cannot deleverage IF")
        return liquidating, counterparty

    def _acquisition_wallets(self, arguments):
        liquidating, counterparty = self._counterparty_wallets(arguments)
        if liquidating.is_exit_fund:
            raise WalletRoleError("Cannot liquidate EF")
        if liquidating.is_insurance_fund:
            raise WalletRoleError("Cannot liquidate IF")
        return liquidating, counterparty
