# -*- coding: utf-8 -*-
"""
services/perp_risk_engine.py
Perpetuals Risk Engine Facade

Wires the ledger, market registry, funding, margin, liquidation and
deleveraging components around one explicit LedgerStore and exposes the
operations of the venue's external collaborators:

- Governance: markets, overrides, activation / deactivation
- Price feed: index prices, funding multipliers
- Trade settlement: executeTrade with post-trade margin checks
- Transfers, deposits and wallet exits
- Liquidation / deleverage callers

Concurrency:
    Each public operation takes the per-wallet locks of every wallet it
    touches (in address order), then the store-wide transaction, so
    concurrent operations on the same wallet are serialized and no caller
    observes a partially applied operation.

Usage:
    from services.perp_risk_config import load_perp_risk_config
    from services.perp_risk_engine import PerpRiskEngine

    engine = PerpRiskEngine.from_config(load_perp_risk_config())
    engine.add_market("ETH", fields)
    engine.activate_market("ETH")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from core_errors import MaximumPositionSizeExceeded, WalletExitError, WalletRoleError
from core_perps import (
    AccountView,
    AcquisitionDeleverageArguments,
    Balance,
    ClosureDeleverageArguments,
    DeleverageResult,
    IndexPrice,
    LiquidationResult,
    MarginSnapshot,
    Market,
    MarketOverride,
    OverridableMarketFields,
    PositionLiquidationArguments,
    WalletLiquidationArguments,
)
from impl_ledger_store import LedgerStore, WalletDirectory
from impl_perp_deleveraging import DeleveragingEngine
from impl_perp_funding import FundingAccrual
from impl_perp_liquidation import LiquidationEngine
from impl_perp_margin import MarginCalculator, create_price_source
from impl_perp_markets import MarketRegistry, _wall_clock_ms
from impl_pips import abs_pips
from impl_position_ledger import PositionLedger
from services.perp_risk_config import PerpRiskConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class TradeResult:
    """Outcome of a settled trade."""

    base_asset_symbol: str
    buy_wallet: str
    sell_wallet: str
    base_quantity: int
    quote_quantity: int
    buy_position: Balance
    sell_position: Balance
    buy_margin: MarginSnapshot
    sell_margin: MarginSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_asset_symbol": self.base_asset_symbol,
            "buy_wallet": self.buy_wallet,
            "sell_wallet": self.sell_wallet,
            "base_quantity": self.base_quantity,
            "quote_quantity": self.quote_quantity,
            "buy_position": self.buy_position.to_dict(),
            "sell_position": self.sell_position.to_dict(),
            "buy_margin": self.buy_margin.to_dict(),
            "sell_margin": self.sell_margin.to_dict(),
        }


# =============================================================================
# Engine
# =============================================================================


class PerpRiskEngine:
    """
    Cross-margined perpetuals risk engine.

    Args:
        config: Engine configuration (defaults created if None)
        clock: Returns the current time in ms (injectable for tests)
        oracle_feed: When given, margin is marked at this live feed instead
            of the latest index prices
    """

    def __init__(
        self,
        config: Optional[PerpRiskConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        oracle_feed: Optional[Callable[[str], int]] = None,
    ):
        self._config = config or PerpRiskConfig()
        self._clock = clock or _wall_clock_ms
        cfg = self._config

        self.store = LedgerStore(
            WalletDirectory(
                insurance_fund_wallet=cfg.wallets.insurance_fund_wallet,
                exit_fund_wallet=cfg.wallets.exit_fund_wallet,
                fee_wallet=cfg.wallets.fee_wallet,
            ),
            quote_asset_symbol=cfg.quote_asset_symbol,
        )
        self.ledger = PositionLedger(self.store)
        self.markets = MarketRegistry(
            self.store,
            max_markets=cfg.markets.max_markets,
            min_initial_margin_fraction=cfg.markets.min_initial_margin_fraction,
            min_maintenance_margin_fraction=cfg.markets.min_maintenance_margin_fraction,
            min_incremental_initial_margin_fraction=cfg.markets.min_incremental_initial_margin_fraction,
            max_future_timestamp_ms=cfg.index_prices.max_future_timestamp_ms,
            clock=self._clock,
        )
        self.funding = FundingAccrual(
            self.store,
            self.ledger,
            self.markets,
            period_ms=cfg.funding.period_ms,
            backfill_missing_periods=cfg.funding.backfill_missing_periods,
        )
        if oracle_feed is not None:
            price_source = create_price_source("oracle", feed=oracle_feed)
        else:
            price_source = create_price_source("index", markets=self.markets)
        self.margin = MarginCalculator(self.store, self.ledger, self.markets, price_source)
        self.liquidation = LiquidationEngine(
            self.store,
            self.ledger,
            self.funding,
            self.markets,
            self.margin,
            quote_quantity_tolerance_pips=cfg.liquidation.quote_quantity_tolerance_pips,
            max_fee_fraction=cfg.liquidation.max_fee_fraction,
        )
        self.deleveraging = DeleveragingEngine(
            self.store,
            self.ledger,
            self.funding,
            self.markets,
            self.margin,
            self.liquidation,
            counterparty_margin_check=cfg.deleveraging.counterparty_margin_check,
        )

        for listing in cfg.markets.listings:
            self.markets.add_market(listing.base_asset_symbol, listing.to_fields())
            if listing.active:
                self.markets.activate_market(listing.base_asset_symbol)

        logger.info(
            f"PerpRiskEngine initialized (quote={cfg.quote_asset_symbol}, "
            f"markets={len(cfg.markets.listings)})"
        )

    @classmethod
    def from_config(cls, config: PerpRiskConfig, **kwargs: Any) -> "PerpRiskEngine":
        return cls(config=config, **kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **kwargs: Any) -> "PerpRiskEngine":
        return cls(config=PerpRiskConfig.from_yaml(path), **kwargs)

    @property
    def config(self) -> PerpRiskConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Governance
    # -------------------------------------------------------------------------

    def add_market(self, base_asset_symbol: str, fields: OverridableMarketFields) -> Market:
        return self.markets.add_market(base_asset_symbol, fields)

    def activate_market(self, base_asset_symbol: str) -> Market:
        return self.markets.activate_market(base_asset_symbol)

    def deactivate_market(self, base_asset_symbol: str, index_price: Optional[IndexPrice] = None) -> Market:
        return self.markets.deactivate_market(base_asset_symbol, index_price)

    def set_market_override(
        self,
        base_asset_symbol: str,
        wallet: str,
        fields: OverridableMarketFields,
    ) -> MarketOverride:
        return self.markets.set_market_override(base_asset_symbol, wallet, fields)

    def remove_market_override(self, base_asset_symbol: str, wallet: str) -> None:
        self.markets.remove_market_override(base_asset_symbol, wallet)

    def load_market(self, base_asset_symbol: str) -> Market:
        return self.markets.load_market(base_asset_symbol)

    # -------------------------------------------------------------------------
    # Prices and funding
    # -------------------------------------------------------------------------

    def publish_index_prices(self, index_prices: Sequence[IndexPrice]) -> None:
        self.markets.publish_index_prices(index_prices)

    def publish_funding_multiplier(
        self,
        base_asset_symbol: str,
        index_price: IndexPrice,
        funding_rate: int,
        timestamp_ms: Optional[int] = None,
    ) -> int:
        return self.funding.publish(base_asset_symbol, index_price, funding_rate, timestamp_ms)

    def settle_funding(self, wallet: str) -> int:
        with self.store.wallet_locks(wallet), self.store.transaction():
            return self.funding.settle_wallet(wallet)

    def load_outstanding_wallet_funding(self, wallet: str) -> int:
        return self.funding.load_outstanding_wallet_funding(wallet)

    # -------------------------------------------------------------------------
    # Balances and margin
    # -------------------------------------------------------------------------

    def load_balance(self, wallet: str, base_asset_symbol: str) -> Balance:
        return self.ledger.load(wallet, base_asset_symbol)

    def load_quote_balance(self, wallet: str) -> int:
        return self.ledger.load_quote_balance(wallet)

    def load_open_position_symbols(self, wallet: str) -> Tuple[str, ...]:
        return self.ledger.load_open_position_symbols(wallet)

    def load_account_view(self, wallet: str) -> AccountView:
        return self.ledger.load_account_view(wallet)

    def margin_snapshot(self, wallet: str) -> MarginSnapshot:
        return self.margin.snapshot(wallet)

    def total_account_value(self, wallet: str) -> int:
        return self.margin.total_account_value(wallet)

    def initial_margin_requirement(self, wallet: str) -> int:
        return self.margin.initial_margin_requirement(wallet)

    def maintenance_margin_requirement(self, wallet: str) -> int:
        return self.margin.maintenance_margin_requirement(wallet)

    def exit_account_value(self, wallet: str) -> int:
        return self.margin.exit_account_value(wallet)

    # -------------------------------------------------------------------------
    # Deposits and transfers
    # -------------------------------------------------------------------------

    def deposit(self, wallet: str, quantity: int) -> int:
        """
        Credit collateral already taken into custody.

        Returns:
            New quote balance
        """
        if quantity <= 0:
            raise ValueError("Deposit quantity must be positive")
        with self.store.wallet_locks(wallet), self.store.transaction():
            if self.store.is_wallet_exited(wallet):
                raise WalletExitError("Wallet exited")
            balance = self.ledger.adjust_quote(wallet, quantity)
        logger.debug(f"Deposit {wallet}: {quantity}")
        return balance

    def transfer(self, source_wallet: str, destination_wallet: str, quantity: int) -> None:
        """
        Move collateral between wallets.

        Raises:
            WalletRoleError: Self-transfer or exit fund involved
            WalletExitError: Either wallet exited
            MarginNotMet: Source would fall below initial margin
        """
        if quantity <= 0:
            raise ValueError("Transfer quantity must be positive")
        if source_wallet == destination_wallet:
            raise WalletRoleError("Cannot self-transfer")
        source = self.store.wallet(source_wallet)
        destination = self.store.wallet(destination_wallet)
        if source.is_exit_fund or destination.is_exit_fund:
            raise WalletRoleError("Cannot transfer to or from EF")

        with self.store.wallet_locks(source_wallet, destination_wallet), self.store.transaction():
            if self.store.is_wallet_exited(source_wallet):
                raise WalletExitError("Source wallet exited")
            if self.store.is_wallet_exited(destination_wallet):
                raise WalletExitError("Destination wallet exited")
            self.funding.settle_wallet(source_wallet)
            self.funding.settle_wallet(destination_wallet)

            view = self.ledger.load_account_view(source_wallet)
            self.margin.validate_initial_margin_for(
                AccountView(
                    wallet=view.wallet,
                    quote_balance=view.quote_balance - quantity,
                    positions=view.positions,
                )
            )
            self.ledger.adjust_quote(source_wallet, -quantity)
            self.ledger.adjust_quote(destination_wallet, quantity)

        logger.info(f"Transferred {quantity} from {source_wallet} to {destination_wallet}")

    # -------------------------------------------------------------------------
    # Trade settlement
    # -------------------------------------------------------------------------

    def execute_trade(
        self,
        buy_wallet: str,
        sell_wallet: str,
        base_asset_symbol: str,
        base_quantity: int,
        quote_quantity: int,
        buy_fee: int = 0,
        sell_fee: int = 0,
    ) -> TradeResult:
        """
        Settle a matched trade and enforce post-trade margin for both sides.

        A side whose position grows (or flips) must meet initial margin; a
        side that only reduces its position must meet maintenance margin.

        Raises:
            InactiveMarket: No active market
            WalletRoleError: Self-trade, or the exit fund trading
            WalletExitError: An exited wallet trading
            MaximumPositionSizeExceeded: Position above the wallet's maximum
            MarginNotMet: Increasing side below initial margin
            MarginStillDeficient: Reducing side still below maintenance
        """
        if base_quantity <= 0 or quote_quantity <= 0:
            raise ValueError("Trade quantities must be positive")
        if buy_fee < 0 or sell_fee < 0:
            raise ValueError("Trade fees must be non-negative")
        if buy_wallet == sell_wallet:
            raise WalletRoleError("Self-trading not allowed")
        if self.store.wallet(buy_wallet).is_exit_fund or self.store.wallet(sell_wallet).is_exit_fund:
            raise WalletRoleError("EF cannot trade")

        fee_wallet = self.store.wallets.fee_wallet
        with self.store.wallet_locks(buy_wallet, sell_wallet, fee_wallet), self.store.transaction():
            self.markets.load_active_market(base_asset_symbol)
            for wallet in (buy_wallet, sell_wallet):
                if self.store.is_wallet_exited(wallet):
                    raise WalletExitError("Wallet exited")
                self.funding.settle_wallet(wallet)

            self._validate_trade_side(buy_wallet, base_asset_symbol, base_quantity, -quote_quantity - buy_fee)
            self._validate_trade_side(sell_wallet, base_asset_symbol, -base_quantity, quote_quantity - sell_fee)

            buy_position = self.ledger.apply_delta(buy_wallet, base_asset_symbol, base_quantity, -quote_quantity)
            sell_position = self.ledger.apply_delta(sell_wallet, base_asset_symbol, -base_quantity, quote_quantity)
            if buy_fee:
                self.ledger.adjust_quote(buy_wallet, -buy_fee)
            if sell_fee:
                self.ledger.adjust_quote(sell_wallet, -sell_fee)
            if buy_fee + sell_fee:
                self.ledger.adjust_quote(fee_wallet, buy_fee + sell_fee)

            result = TradeResult(
                base_asset_symbol=base_asset_symbol,
                buy_wallet=buy_wallet,
                sell_wallet=sell_wallet,
                base_quantity=base_quantity,
                quote_quantity=quote_quantity,
                buy_position=buy_position,
                sell_position=sell_position,
                buy_margin=self.margin.snapshot(buy_wallet),
                sell_margin=self.margin.snapshot(sell_wallet),
            )

        logger.debug(
            f"Trade {base_asset_symbol} {base_quantity} for {quote_quantity}: "
            f"{buy_wallet} buys from {sell_wallet}"
        )
        return result

    def _validate_trade_side(self, wallet: str, base_asset_symbol: str, position_delta: int, quote_delta: int) -> None:
        view = self.ledger.load_account_view(wallet)
        old_position = view.position(base_asset_symbol)
        new_view = view.with_changes(base_asset_symbol, position_delta, quote_delta)
        new_position = new_view.position(base_asset_symbol)

        flipped = old_position != 0 and new_position != 0 and (old_position > 0) != (new_position > 0)
        increasing = abs_pips(new_position) > abs_pips(old_position) or flipped
        if increasing:
            if abs_pips(new_position) > self.markets.maximum_position_size(base_asset_symbol, wallet):
                raise MaximumPositionSizeExceeded("Max position size exceeded")
            self.margin.validate_initial_margin_for(new_view)
        else:
            self.margin.validate_maintenance_margin_for(new_view)

    # -------------------------------------------------------------------------
    # Wallet exits
    # -------------------------------------------------------------------------

    def exit_wallet(self, wallet: str) -> int:
        """
        Freeze a wallet for trading so it can be closed out at exit prices.

        Returns:
            Exit timestamp (ms)
        """
        role = self.store.wallet(wallet)
        if role.is_exit_fund:
            raise WalletRoleError("Cannot exit EF")
        if role.is_insurance_fund:
            raise WalletRoleError("Cannot exit IF")
        with self.store.wallet_locks(wallet), self.store.transaction():
            if self.store.is_wallet_exited(wallet):
                raise WalletExitError("Wallet already exited")
            timestamp_ms = self._clock()
            self.store.exited_wallets[wallet] = timestamp_ms

        logger.info(f"Wallet {wallet} exited at {timestamp_ms}")
        return timestamp_ms

    def clear_wallet_exit(self, wallet: str) -> None:
        with self.store.wallet_locks(wallet), self.store.transaction():
            if not self.store.is_wallet_exited(wallet):
                raise WalletExitError("Wallet not exited")
            del self.store.exited_wallets[wallet]

        logger.info(f"Wallet {wallet} exit cleared")

    def is_wallet_exited(self, wallet: str) -> bool:
        return self.store.is_wallet_exited(wallet)

    # -------------------------------------------------------------------------
    # Liquidation and deleveraging
    # -------------------------------------------------------------------------

    def liquidate_wallet(self, arguments: WalletLiquidationArguments) -> LiquidationResult:
        return self.liquidation.liquidate_wallet(arguments)

    def liquidate_position_in_deactivated_market(self, arguments: PositionLiquidationArguments) -> LiquidationResult:
        return self.liquidation.liquidate_position_in_deactivated_market(arguments)

    def liquidate_position_below_minimum(self, arguments: PositionLiquidationArguments) -> LiquidationResult:
        return self.liquidation.liquidate_position_below_minimum(arguments)

    def deleverage_in_maintenance_acquisition(self, arguments: AcquisitionDeleverageArguments) -> DeleverageResult:
        return self.deleveraging.deleverage_in_maintenance_acquisition(arguments)

    def deleverage_exit_acquisition(self, arguments: AcquisitionDeleverageArguments) -> DeleverageResult:
        return self.deleveraging.deleverage_exit_acquisition(arguments)

    def deleverage_insurance_fund_closure(self, arguments: ClosureDeleverageArguments) -> DeleverageResult:
        return self.deleveraging.deleverage_insurance_fund_closure(arguments)

    def deleverage_exit_fund_closure(self, arguments: ClosureDeleverageArguments) -> DeleverageResult:
        return self.deleveraging.deleverage_exit_fund_closure(arguments)
