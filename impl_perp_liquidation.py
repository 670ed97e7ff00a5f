# -*- coding: utf-8 -*-
"""
impl_perp_liquidation.py
Liquidation engine for cross-margined perpetual positions.

Liquidation types:
- WALLET_IN_MAINTENANCE: TAV < MMR, every position closed against the IF
  at its bankruptcy price
- WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY: same, against the EF, only
  while the EF holds an open position
- WALLET_EXITED: exited wallet closed against the IF or EF at exit prices
  (exit account value >= 0) or bankruptcy prices (otherwise)
- POSITION_IN_DEACTIVATED_MARKET: one position closed against the venue at
  the frozen deactivation price, with a bounded fee
- POSITION_BELOW_MINIMUM: one dust position closed against the IF at its
  index mark value

Key Formulas:
- Bankruptcy quote (per position, exact integers truncated toward zero):
      qDP     = position * indexPrice
      penalty = sgn * qDP * MMF * TAV / MMR / SCALE     (sgn: +1 short, -1 long)
      quote   = |(qDP + penalty) / SCALE|
  i.e. each position absorbs its MMR-weighted share of the wallet's equity,
  so closing every position at these prices exactly exhausts it
- Exit quote: worse of cost basis and index mark value for the wallet

The caller supplies the quote quantities; the engine recomputes them and
accepts anything within the configured tolerance (default 1 pip).

References:
- Binance Liquidation Protocols: https://www.binance.com/en/support/faq/360033525271
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple
import logging

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
    AccountView,
    LiquidationResult,
    LiquidationType,
    MarginSnapshot,
    PositionLiquidationArguments,
    PositionSettlement,
    Wallet,
    WalletLiquidationArguments,
)
from impl_ledger_store import LedgerStore
from impl_perp_funding import FundingAccrual
from impl_perp_margin import MarginCalculator, exit_quote_quantity
from impl_perp_markets import MarketRegistry
from impl_pips import (
    PIP_PRICE_MULTIPLIER,
    abs_pips,
    divide_toward_zero,
    multiply_pips_by_fraction,
    multiply_pips_by_fraction_unsigned,
    validate_int64,
)
from impl_position_ledger import PositionLedger
from impl_symbol_set import merge


logger = logging.getLogger(__name__)


DEFAULT_QUOTE_QUANTITY_TOLERANCE_PIPS = 1
DEFAULT_MAX_FEE_FRACTION = 20000000  # 20%

WALLET_LIQUIDATION_TYPES = (
    LiquidationType.WALLET_IN_MAINTENANCE,
    LiquidationType.WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY,
    LiquidationType.WALLET_EXITED,
)


# ============================================================================
# FORMULAS
# ============================================================================

def bankruptcy_quote_quantity(
    position_size: int,
    index_price: int,
    maintenance_margin_fraction: int,
    total_account_value: int,
    total_maintenance_margin_requirement: int,
) -> int:
    """
    Unsigned quote quantity that closes a position at its bankruptcy price.

    Linear in position_size, so a partial close passes the signed part.

    Example (short 10 @ 2150, MMF 3%, TAV 480, MMR 645):
        21500 + 21500 * 0.03 * 480 / 645 = 21980
    """
    quote_double_pips = position_size * index_price
    penalty_double_pips = 0
    if total_maintenance_margin_requirement != 0:
        sign = 1 if position_size < 0 else -1
        penalty_double_pips = divide_toward_zero(
            divide_toward_zero(
                sign * quote_double_pips * maintenance_margin_fraction * total_account_value,
                total_maintenance_margin_requirement,
            ),
            PIP_PRICE_MULTIPLIER,
        )
    quote = divide_toward_zero(quote_double_pips + penalty_double_pips, PIP_PRICE_MULTIPLIER)
    return abs_pips(validate_int64(quote))


def validate_quote_quantity(expected: int, actual: int, tolerance: int = DEFAULT_QUOTE_QUANTITY_TOLERANCE_PIPS) -> None:
    """
    Raises:
        InvalidLiquidationPrice: actual negative or further than tolerance
            from expected
    """
    if actual < 0 or abs(expected - actual) > tolerance:
        raise InvalidLiquidationPrice("Invalid quote quantity", expected=expected, actual=actual)


def validate_liquidation_fee(quote_quantity: int, fee_quantity: int, max_fee_fraction: int = DEFAULT_MAX_FEE_FRACTION) -> None:
    """
    Raises:
        InvalidLiquidationPrice: Negative fee, or above the max fraction of
            the quote quantity
    """
    max_fee = multiply_pips_by_fraction_unsigned(quote_quantity, max_fee_fraction, PIP_PRICE_MULTIPLIER)
    if fee_quantity < 0 or fee_quantity > max_fee:
        raise InvalidLiquidationPrice("Excessive liquidation fee", expected=max_fee, actual=fee_quantity)


# ============================================================================
# ENGINE
# ============================================================================

class LiquidationEngine:
    """
    Validates and executes liquidations.

    Every check (roles, margin, quote quantities, insurance fund capacity)
    runs after funding is settled and before any balance is written.

    Args:
        store: Shared engine state
        ledger: Position ledger
        funding: Funding accrual, settled for every touched wallet
        markets: Market registry
        margin: Margin calculator
        quote_quantity_tolerance_pips: Accepted distance from the formula
        max_fee_fraction: Max fee on a deactivated-market close, in pips
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: PositionLedger,
        funding: FundingAccrual,
        markets: MarketRegistry,
        margin: MarginCalculator,
        quote_quantity_tolerance_pips: int = DEFAULT_QUOTE_QUANTITY_TOLERANCE_PIPS,
        max_fee_fraction: int = DEFAULT_MAX_FEE_FRACTION,
    ):
        self._store = store
        self._ledger = ledger
        self._funding = funding
        self._markets = markets
        self._margin = margin
        self._tolerance = quote_quantity_tolerance_pips
        self._max_fee_fraction = max_fee_fraction

    @property
    def tolerance(self) -> int:
        return self._tolerance

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def uses_exit_price(self, wallet: str) -> bool:
        """Whether an exited wallet is closed at exit prices rather than bankruptcy."""
        return self._margin.exit_account_value(wallet) >= 0

    def expected_quote_quantity(
        self,
        wallet: str,
        base_asset_symbol: str,
        exit_price: bool,
        snapshot: MarginSnapshot,
        base_quantity: Optional[int] = None,
    ) -> int:
        """
        Formula quote quantity for all or part of one position.

        Args:
            wallet: Position holder
            base_asset_symbol: Market
            exit_price: Exit price instead of bankruptcy price
            snapshot: Holder's margin snapshot (TAV / MMR of bankruptcy price)
            base_quantity: Unsigned part of the position (default: all)

        Raises:
            NoOpenPosition: No position in the market
        """
        balance = self._ledger.load(wallet, base_asset_symbol)
        if not balance.is_open:
            raise NoOpenPosition("No open position in market")
        if base_quantity is None:
            base_quantity = abs_pips(balance.quantity)
        price = self._margin.price(base_asset_symbol)

        if exit_price:
            return exit_quote_quantity(balance.cost_basis, balance.quantity, price, base_quantity)

        signed_base = base_quantity if balance.is_long else -base_quantity
        fields = self._margin.fields_for(base_asset_symbol, self._store.wallet(wallet))
        return bankruptcy_quote_quantity(
            signed_base,
            price,
            fields.maintenance_margin_fraction,
            snapshot.total_account_value,
            snapshot.maintenance_margin_requirement,
        )

    def validate_wallet_quote_quantities(
        self,
        wallet: str,
        exit_price: bool,
        snapshot: MarginSnapshot,
        quote_quantities: Sequence[int],
    ) -> Tuple[PositionSettlement, ...]:
        """
        Check one caller-supplied quote quantity per open position, in the
        wallet's open-position order.

        Positions in deactivated markets close only at their frozen price,
        so a wallet holding any is rejected until they are closed.

        Returns:
            Settlements pairing each position with its accepted quote
        """
        symbols = self._ledger.load_open_position_symbols(wallet)
        for symbol in symbols:
            if not self._markets.load_market(symbol).is_active:
                raise InactiveMarket("Position in deactivated market")
        if len(symbols) != len(quote_quantities):
            raise InvalidLiquidationPrice(
                "Quote quantity count mismatch",
                expected=len(symbols),
                actual=len(quote_quantities),
            )
        settlements = []
        for symbol, quote in zip(symbols, quote_quantities):
            expected = self.expected_quote_quantity(wallet, symbol, exit_price, snapshot)
            validate_quote_quantity(expected, quote, self._tolerance)
            settlements.append(
                PositionSettlement(
                    base_asset_symbol=symbol,
                    base_quantity=self._ledger.load_position(wallet, symbol),
                    quote_quantity=quote,
                )
            )
        return tuple(settlements)

    # ------------------------------------------------------------------
    # Insurance fund capacity
    # ------------------------------------------------------------------

    def simulate_insurance_fund_acquisition(
        self,
        wallet: str,
        settlements: Sequence[PositionSettlement],
        transfer_residual_quote: bool,
    ) -> Tuple[AccountView, bool]:
        """
        Insurance fund's account view after absorbing the given positions.

        Returns:
            (simulated view, whether any position exceeds the IF's maximum
            position size)
        """
        insurance_fund = self._store.wallets.insurance_fund_wallet
        view = self._ledger.load_account_view(insurance_fund)
        wallet_quote_total = 0
        for settlement in settlements:
            wallet_quote_delta = (
                settlement.quote_quantity if settlement.base_quantity > 0 else -settlement.quote_quantity
            )
            wallet_quote_total += wallet_quote_delta
            view = view.with_changes(settlement.base_asset_symbol, settlement.base_quantity, -wallet_quote_delta)
        if transfer_residual_quote:
            residual = self._ledger.load_quote_balance(wallet) + wallet_quote_total
            view = view.with_changes(self._store.quote_asset_symbol, 0, residual)

        merged = merge(
            self._ledger.load_open_position_ids(insurance_fund),
            self._ledger.load_open_position_ids(wallet),
            self._store.key,
        )
        exceeds_max = False
        for symbol in self._store.symbols.names(merged):
            position = view.position(symbol)
            if abs_pips(position) > self._markets.maximum_position_size(symbol, insurance_fund):
                exceeds_max = True
                break
        return view, exceeds_max

    def insurance_fund_can_acquire(
        self,
        wallet: str,
        settlements: Sequence[PositionSettlement],
        transfer_residual_quote: bool,
    ) -> bool:
        view, exceeds_max = self.simulate_insurance_fund_acquisition(
            wallet, settlements, transfer_residual_quote
        )
        if exceeds_max:
            return False
        return self._margin.snapshot_for(view).meets_initial_margin

    def _require_insurance_fund_can_acquire(
        self,
        wallet: str,
        settlements: Sequence[PositionSettlement],
        transfer_residual_quote: bool,
    ) -> None:
        if not self.insurance_fund_can_acquire(wallet, settlements, transfer_residual_quote):
            logger.warning(f"Insurance fund cannot acquire positions of {wallet}")
            raise InsuranceFundCannotAcquire("Insurance fund cannot acquire")

    # ------------------------------------------------------------------
    # Wallet liquidation
    # ------------------------------------------------------------------

    def liquidate(self, arguments) -> LiquidationResult:
        """Dispatch on the arguments' liquidation type."""
        if isinstance(arguments, WalletLiquidationArguments):
            return self.liquidate_wallet(arguments)
        if arguments.liquidation_type == LiquidationType.POSITION_IN_DEACTIVATED_MARKET:
            return self.liquidate_position_in_deactivated_market(arguments)
        if arguments.liquidation_type == LiquidationType.POSITION_BELOW_MINIMUM:
            return self.liquidate_position_below_minimum(arguments)
        raise ValueError(f"Unsupported liquidation type: {arguments.liquidation_type}")

    def liquidate_wallet(self, arguments: WalletLiquidationArguments) -> LiquidationResult:
        """
        Close every open position of a wallet against a fund.

        Raises:
            WalletRoleError: Fund liquidated, self-liquidation, wrong counterparty
            WalletExitError: WALLET_EXITED on a wallet that has not exited
            MaintenanceMarginMet: In-maintenance types on a solvent wallet
            InactiveMarket: Wallet holds a position in a deactivated market
            InvalidLiquidationPrice: Quote quantity off the formula
            InsuranceFundCannotAcquire: IF counterparty lacks capacity
        """
        liquidation_type = arguments.liquidation_type
        if liquidation_type not in WALLET_LIQUIDATION_TYPES:
            raise ValueError(f"Not a wallet liquidation type: {liquidation_type}")

        liquidating = self._store.wallet(arguments.liquidating_wallet)
        counterparty = self._store.wallet(arguments.counterparty_wallet)
        self._validate_liquidating_wallet(liquidating)
        if liquidating.address == counterparty.address:
            raise WalletRoleError("Cannot liquidate wallet against itself")

        with self._store.wallet_locks(liquidating.address, counterparty.address), self._store.transaction():
            self._validate_counterparty(liquidation_type, liquidating, counterparty)

            self._funding.settle_wallet(liquidating.address)
            self._funding.settle_wallet(counterparty.address)

            snapshot = self._margin.snapshot(liquidating.address)
            if liquidation_type == LiquidationType.WALLET_EXITED:
                exit_price = self.uses_exit_price(liquidating.address)
            else:
                if not snapshot.is_in_maintenance:
                    raise MaintenanceMarginMet("Maintenance margin requirement met")
                exit_price = False

            settlements = self.validate_wallet_quote_quantities(
                liquidating.address,
                exit_price,
                snapshot,
                arguments.liquidation_quote_quantities,
            )
            transfer_residual = not exit_price
            if counterparty.is_insurance_fund:
                self._require_insurance_fund_can_acquire(liquidating.address, settlements, transfer_residual)

            for settlement in settlements:
                self._ledger.set_for_liquidation(
                    liquidating.address,
                    counterparty.address,
                    settlement.base_asset_symbol,
                    0,
                    settlement.quote_quantity,
                )
            residual = 0
            if transfer_residual:
                residual = self._ledger.transfer_remaining_quote(liquidating.address, counterparty.address)

        logger.info(
            f"Liquidated {liquidating} ({liquidation_type.value}) against {counterparty}: "
            f"{len(settlements)} positions, residual quote {residual}"
        )
        return LiquidationResult(
            liquidation_type=liquidation_type,
            liquidating_wallet=liquidating.address,
            counterparty_wallet=counterparty.address,
            settlements=settlements,
            remaining_quote_transferred=residual,
        )

    # ------------------------------------------------------------------
    # Single position liquidation
    # ------------------------------------------------------------------

    def liquidate_position_in_deactivated_market(self, arguments: PositionLiquidationArguments) -> LiquidationResult:
        """
        Close one position of a deactivated market at its frozen price.

        No margin precondition; the fee goes to the fee wallet.

        Raises:
            InactiveMarket: Market missing or still active
            NoOpenPosition: Wallet holds no position there
            InvalidLiquidationPrice: Quote off |position * deactivation price|
                or fee above the max fraction
        """
        if arguments.liquidation_type != LiquidationType.POSITION_IN_DEACTIVATED_MARKET:
            raise ValueError(f"Unexpected liquidation type: {arguments.liquidation_type}")

        liquidating = self._store.wallet(arguments.liquidating_wallet)
        self._validate_liquidating_wallet(liquidating)
        symbol = arguments.base_asset_symbol
        fee_wallet = self._store.wallets.fee_wallet

        with self._store.wallet_locks(liquidating.address, fee_wallet), self._store.transaction():
            market = self._markets.load_inactive_market(symbol)
            self._funding.settle_wallet(liquidating.address)

            position = self._ledger.load_position(liquidating.address, symbol)
            if position == 0:
                raise NoOpenPosition("No open position in market")
            expected = abs_pips(
                multiply_pips_by_fraction(position, market.index_price_at_deactivation, PIP_PRICE_MULTIPLIER)
            )
            validate_quote_quantity(expected, arguments.liquidation_quote_quantity, self._tolerance)
            validate_liquidation_fee(
                arguments.liquidation_quote_quantity,
                arguments.fee_quantity,
                self._max_fee_fraction,
            )

            self._ledger.close_position_in_deactivated_market(
                liquidating.address,
                symbol,
                arguments.liquidation_quote_quantity,
                arguments.fee_quantity,
            )

        logger.info(
            f"Closed {liquidating} {symbol} position {position} in deactivated market "
            f"for {arguments.liquidation_quote_quantity}, fee {arguments.fee_quantity}"
        )
        return LiquidationResult(
            liquidation_type=arguments.liquidation_type,
            liquidating_wallet=liquidating.address,
            counterparty_wallet=None,
            settlements=(
                PositionSettlement(
                    base_asset_symbol=symbol,
                    base_quantity=position,
                    quote_quantity=arguments.liquidation_quote_quantity,
                ),
            ),
            fee_quantity=arguments.fee_quantity,
        )

    def liquidate_position_below_minimum(self, arguments: PositionLiquidationArguments) -> LiquidationResult:
        """
        Sweep a position smaller than the minimum size into the IF at its
        index mark value.

        Raises:
            InactiveMarket: No active market
            NoOpenPosition: Wallet holds no position there
            PositionAboveMinimum: Position is not below the minimum
            InvalidLiquidationPrice: Quote off |position * index price|
            InsuranceFundCannotAcquire: IF limits would be breached
        """
        if arguments.liquidation_type != LiquidationType.POSITION_BELOW_MINIMUM:
            raise ValueError(f"Unexpected liquidation type: {arguments.liquidation_type}")

        liquidating = self._store.wallet(arguments.liquidating_wallet)
        self._validate_liquidating_wallet(liquidating)
        insurance_fund = self._store.wallets.insurance_fund_wallet
        symbol = arguments.base_asset_symbol

        with self._store.wallet_locks(liquidating.address, insurance_fund), self._store.transaction():
            self._markets.load_active_market(symbol)
            self._funding.settle_wallet(liquidating.address)
            self._funding.settle_wallet(insurance_fund)

            position = self._ledger.load_position(liquidating.address, symbol)
            if position == 0:
                raise NoOpenPosition("No open position in market")
            if abs_pips(position) >= self._markets.minimum_position_size(symbol, liquidating.address):
                raise PositionAboveMinimum("Position not below minimum")

            expected = abs_pips(
                multiply_pips_by_fraction(position, self._margin.price(symbol), PIP_PRICE_MULTIPLIER)
            )
            validate_quote_quantity(expected, arguments.liquidation_quote_quantity, self._tolerance)
            settlement = PositionSettlement(
                base_asset_symbol=symbol,
                base_quantity=position,
                quote_quantity=arguments.liquidation_quote_quantity,
            )
            self._require_insurance_fund_can_acquire(liquidating.address, (settlement,), False)

            self._ledger.set_for_liquidation(
                liquidating.address,
                insurance_fund,
                symbol,
                0,
                arguments.liquidation_quote_quantity,
            )

        logger.info(f"Swept {liquidating} {symbol} position {position} below minimum into IF")
        return LiquidationResult(
            liquidation_type=arguments.liquidation_type,
            liquidating_wallet=liquidating.address,
            counterparty_wallet=insurance_fund,
            settlements=(settlement,),
        )

    # ------------------------------------------------------------------
    # Role checks
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_liquidating_wallet(wallet: Wallet) -> None:
        if wallet.is_insurance_fund:
            raise WalletRoleError("Cannot liquidate IF")
        if wallet.is_exit_fund:
            raise WalletRoleError("Cannot liquidate EF")

    def _validate_counterparty(
        self,
        liquidation_type: LiquidationType,
        liquidating: Wallet,
        counterparty: Wallet,
    ) -> None:
        if liquidation_type == LiquidationType.WALLET_IN_MAINTENANCE:
            if not counterparty.is_insurance_fund:
                raise WalletRoleError("Counterparty wallet must be IF")
        elif liquidation_type == LiquidationType.WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY:
            if not counterparty.is_exit_fund:
                raise WalletRoleError("Counterparty wallet must be EF")
            if not self._ledger.load_open_position_symbols(counterparty.address):
                raise WalletRoleError("Exit fund has no positions")
        else:
            if not self._store.is_wallet_exited(liquidating.address):
                raise WalletExitError("Wallet not exited")
            if not counterparty.role.is_fund:
                raise WalletRoleError("Counterparty wallet must be IF or EF")
