# -*- coding: utf-8 -*-
"""
core_perps.py
Data model of the cross-margined perpetuals risk engine.

Covers:
- Wallet roles (trader, insurance fund, exit fund)
- Per-(wallet, symbol) balances with cost basis and funding timestamp
- Markets and their overridable risk fields
- Index price records
- Liquidation / deleverage arguments and results

Design Principles:
- Immutable dataclasses; the ledger swaps whole records instead of mutating
- int pips (10^-8) for every price, quantity and fraction
- int milliseconds UTC for timestamps
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from impl_pips import INT64_MIN


# Placeholder stored in unused quartet slots; never a valid multiplier
NO_FUNDING_MULTIPLIER = INT64_MIN

FUNDING_MULTIPLIER_QUARTET_SIZE = 4


# ============================================================================
# ENUMS
# ============================================================================

class WalletRole(str, Enum):
    """
    Role a wallet plays in liquidation and deleveraging.

    INSURANCE_FUND absorbs liquidated positions within its margin limits.
    EXIT_FUND is the counterparty of last resort with no position limit.
    """
    TRADER = "TRADER"
    INSURANCE_FUND = "INSURANCE_FUND"
    EXIT_FUND = "EXIT_FUND"

    @property
    def is_fund(self) -> bool:
        return self != WalletRole.TRADER


class LiquidationType(str, Enum):
    """Kind of liquidation; selects counterparty rules and settlement price."""
    WALLET_IN_MAINTENANCE = "WALLET_IN_MAINTENANCE"
    WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY = "WALLET_IN_MAINTENANCE_DURING_SYSTEM_RECOVERY"
    WALLET_EXITED = "WALLET_EXITED"
    POSITION_IN_DEACTIVATED_MARKET = "POSITION_IN_DEACTIVATED_MARKET"
    POSITION_BELOW_MINIMUM = "POSITION_BELOW_MINIMUM"


class DeleverageType(str, Enum):
    """Kind of auto-deleveraging."""
    WALLET_IN_MAINTENANCE = "WALLET_IN_MAINTENANCE"    # acquisition
    WALLET_EXITED = "WALLET_EXITED"                    # acquisition
    INSURANCE_FUND_CLOSURE = "INSURANCE_FUND_CLOSURE"
    EXIT_FUND_CLOSURE = "EXIT_FUND_CLOSURE"

    @property
    def is_acquisition(self) -> bool:
        return self in (DeleverageType.WALLET_IN_MAINTENANCE, DeleverageType.WALLET_EXITED)


class MarginCheck(str, Enum):
    """Margin requirement a wallet is validated against."""
    INITIAL = "initial"
    MAINTENANCE = "maintenance"


# ============================================================================
# WALLET
# ============================================================================

@dataclass(frozen=True)
class Wallet:
    """
    Wallet identifier tagged with its role.

    Attributes:
        address: Wallet address
        role: Role resolved from the configured fund wallets
    """
    address: str
    role: WalletRole = WalletRole.TRADER

    @property
    def is_insurance_fund(self) -> bool:
        return self.role == WalletRole.INSURANCE_FUND

    @property
    def is_exit_fund(self) -> bool:
        return self.role == WalletRole.EXIT_FUND

    def __str__(self) -> str:
        return self.address


# ============================================================================
# BALANCE
# ============================================================================

@dataclass(frozen=True)
class Balance:
    """
    Balance of one asset held by one wallet.

    Attributes:
        quantity: Signed quantity in pips (position size for base assets)
        cost_basis: Signed quote value paid at entry; positive for longs,
            negative for shorts, zero when quantity is zero
        last_funding_timestamp_ms: Funding publish timestamp the position
            was last settled against
    """
    quantity: int = 0
    cost_basis: int = 0
    last_funding_timestamp_ms: int = 0

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    @property
    def is_long(self) -> bool:
        return self.quantity > 0

    @property
    def is_short(self) -> bool:
        return self.quantity < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quantity": self.quantity,
            "cost_basis": self.cost_basis,
            "last_funding_timestamp_ms": self.last_funding_timestamp_ms,
        }


# ============================================================================
# MARKET
# ============================================================================

@dataclass(frozen=True)
class OverridableMarketFields:
    """
    Risk parameters of a market, replaceable per wallet by an override.

    All fractions are pips (5000000 = 5%), all sizes are base-asset pips.

    Attributes:
        initial_margin_fraction: Flat IMF up to the baseline position size
        maintenance_margin_fraction: Flat MMF, no tiering
        incremental_initial_margin_fraction: IMF added per incremental step
        baseline_position_size: Size up to which the flat IMF applies
        incremental_position_size: Step width above the baseline
        maximum_position_size: Largest absolute position allowed
        minimum_position_size: Positions below this may be liquidated
    """
    initial_margin_fraction: int
    maintenance_margin_fraction: int
    incremental_initial_margin_fraction: int
    baseline_position_size: int
    incremental_position_size: int
    maximum_position_size: int
    minimum_position_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_margin_fraction": self.initial_margin_fraction,
            "maintenance_margin_fraction": self.maintenance_margin_fraction,
            "incremental_initial_margin_fraction": self.incremental_initial_margin_fraction,
            "baseline_position_size": self.baseline_position_size,
            "incremental_position_size": self.incremental_position_size,
            "maximum_position_size": self.maximum_position_size,
            "minimum_position_size": self.minimum_position_size,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OverridableMarketFields":
        return cls(
            initial_margin_fraction=int(d["initial_margin_fraction"]),
            maintenance_margin_fraction=int(d["maintenance_margin_fraction"]),
            incremental_initial_margin_fraction=int(d["incremental_initial_margin_fraction"]),
            baseline_position_size=int(d["baseline_position_size"]),
            incremental_position_size=int(d["incremental_position_size"]),
            maximum_position_size=int(d["maximum_position_size"]),
            minimum_position_size=int(d["minimum_position_size"]),
        )


@dataclass(frozen=True)
class Market:
    """
    Perpetual market for one base asset, quoted in the venue's quote asset.

    The engine owns last_index_price, last_index_price_timestamp_ms and
    index_price_at_deactivation; everything else comes from governance.
    """
    base_asset_symbol: str
    overridable_fields: OverridableMarketFields
    exists: bool = True
    is_active: bool = False
    last_index_price: int = 0
    last_index_price_timestamp_ms: int = 0
    index_price_at_deactivation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_asset_symbol": self.base_asset_symbol,
            "exists": self.exists,
            "is_active": self.is_active,
            "last_index_price": self.last_index_price,
            "last_index_price_timestamp_ms": self.last_index_price_timestamp_ms,
            "index_price_at_deactivation": self.index_price_at_deactivation,
            "overridable_fields": self.overridable_fields.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Market":
        return cls(
            base_asset_symbol=str(d["base_asset_symbol"]),
            overridable_fields=OverridableMarketFields.from_dict(d["overridable_fields"]),
            exists=bool(d.get("exists", True)),
            is_active=bool(d.get("is_active", False)),
            last_index_price=int(d.get("last_index_price", 0)),
            last_index_price_timestamp_ms=int(d.get("last_index_price_timestamp_ms", 0)),
            index_price_at_deactivation=int(d.get("index_price_at_deactivation", 0)),
        )


@dataclass(frozen=True)
class MarketOverride:
    """Per-wallet replacement of a market's risk fields (no field-level merge)."""
    base_asset_symbol: str
    wallet: str
    overridable_fields: OverridableMarketFields
    exists: bool = True


@dataclass(frozen=True)
class IndexPrice:
    """
    Signature-validated index price record.

    Attributes:
        base_asset_symbol: Market the price belongs to
        price: Price in pips
        timestamp_ms: Attestation timestamp
    """
    base_asset_symbol: str
    price: int
    timestamp_ms: int


# ============================================================================
# ACCOUNT VIEW
# ============================================================================

@dataclass(frozen=True)
class AccountView:
    """
    Quote balance and open positions of a wallet, detached from the ledger.

    Used for hypothetical margin calculations (insurance fund acquisition
    simulation, validation of a trade or deleverage before it is written).
    """
    wallet: Wallet
    quote_balance: int
    positions: Tuple[Tuple[str, int], ...] = ()

    def position(self, symbol: str) -> int:
        for s, quantity in self.positions:
            if s == symbol:
                return quantity
        return 0

    def with_changes(self, symbol: str, position_delta: int, quote_delta: int) -> "AccountView":
        """Return a view with one position and the quote balance adjusted."""
        updated = []
        found = False
        for s, quantity in self.positions:
            if s == symbol:
                found = True
                quantity += position_delta
            if quantity != 0:
                updated.append((s, quantity))
        if not found and position_delta != 0:
            updated.append((symbol, position_delta))
        return AccountView(
            wallet=self.wallet,
            quote_balance=self.quote_balance + quote_delta,
            positions=tuple(updated),
        )


@dataclass(frozen=True)
class MarginSnapshot:
    """Account value and margin requirements of a wallet at one instant."""
    total_account_value: int
    initial_margin_requirement: int
    maintenance_margin_requirement: int

    @property
    def meets_initial_margin(self) -> bool:
        return self.total_account_value >= self.initial_margin_requirement

    @property
    def is_in_maintenance(self) -> bool:
        return self.total_account_value < self.maintenance_margin_requirement

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_account_value": self.total_account_value,
            "initial_margin_requirement": self.initial_margin_requirement,
            "maintenance_margin_requirement": self.maintenance_margin_requirement,
        }


# ============================================================================
# LIQUIDATION / DELEVERAGE ARGUMENTS
# ============================================================================

@dataclass(frozen=True)
class WalletLiquidationArguments:
    """
    Arguments for liquidating every open position of a wallet.

    Attributes:
        liquidation_type: WALLET_IN_MAINTENANCE, ..._DURING_SYSTEM_RECOVERY
            or WALLET_EXITED
        liquidating_wallet: Wallet being liquidated
        counterparty_wallet: Insurance fund or exit fund
        liquidation_quote_quantities: Unsigned quote quantity per open
            position, in the wallet's open-position order
    """
    liquidation_type: LiquidationType
    liquidating_wallet: str
    counterparty_wallet: str
    liquidation_quote_quantities: Tuple[int, ...]


@dataclass(frozen=True)
class PositionLiquidationArguments:
    """
    Arguments for liquidating a single position.

    fee_quantity is only honored for POSITION_IN_DEACTIVATED_MARKET.
    """
    liquidation_type: LiquidationType
    base_asset_symbol: str
    liquidating_wallet: str
    liquidation_quote_quantity: int
    fee_quantity: int = 0


@dataclass(frozen=True)
class AcquisitionDeleverageArguments:
    """
    Arguments for deleveraging a liquidating wallet's position against a
    counterparty holding an offsetting position.

    Attributes:
        deleverage_type: WALLET_IN_MAINTENANCE or WALLET_EXITED
        base_asset_symbol: Market being deleveraged
        liquidating_wallet: Wallet in maintenance or exited
        counterparty_wallet: Trader whose offsetting position is reduced
        validate_insurance_fund_cannot_liquidate_wallet_quote_quantities:
            Quote quantity per open position of the liquidating wallet,
            used to simulate the insurance fund acquiring them all
        liquidation_base_quantity: Unsigned base quantity to deleverage
        liquidation_quote_quantity: Unsigned quote quantity for that base
    """
    deleverage_type: DeleverageType
    base_asset_symbol: str
    liquidating_wallet: str
    counterparty_wallet: str
    validate_insurance_fund_cannot_liquidate_wallet_quote_quantities: Tuple[int, ...]
    liquidation_base_quantity: int
    liquidation_quote_quantity: int


@dataclass(frozen=True)
class ClosureDeleverageArguments:
    """Arguments for winding down a fund's own position against a trader."""
    deleverage_type: DeleverageType
    base_asset_symbol: str
    liquidating_wallet: str
    counterparty_wallet: str
    liquidation_base_quantity: int
    liquidation_quote_quantity: int


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class PositionSettlement:
    """One position moved between wallets (or closed against the venue)."""
    base_asset_symbol: str
    base_quantity: int      # signed, from the liquidating wallet's side
    quote_quantity: int     # unsigned

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_asset_symbol": self.base_asset_symbol,
            "base_quantity": self.base_quantity,
            "quote_quantity": self.quote_quantity,
        }


@dataclass(frozen=True)
class LiquidationResult:
    """Outcome of an accepted liquidation."""
    liquidation_type: LiquidationType
    liquidating_wallet: str
    counterparty_wallet: Optional[str]
    settlements: Tuple[PositionSettlement, ...] = ()
    remaining_quote_transferred: int = 0
    fee_quantity: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "liquidation_type": self.liquidation_type.value,
            "liquidating_wallet": self.liquidating_wallet,
            "counterparty_wallet": self.counterparty_wallet,
            "settlements": [s.to_dict() for s in self.settlements],
            "remaining_quote_transferred": self.remaining_quote_transferred,
            "fee_quantity": self.fee_quantity,
        }


@dataclass(frozen=True)
class DeleverageResult:
    """Outcome of an accepted deleverage."""
    deleverage_type: DeleverageType
    liquidating_wallet: str
    counterparty_wallet: str
    settlement: PositionSettlement
    counterparty_margin: Optional[MarginSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleverage_type": self.deleverage_type.value,
            "liquidating_wallet": self.liquidating_wallet,
            "counterparty_wallet": self.counterparty_wallet,
            "settlement": self.settlement.to_dict(),
            "counterparty_margin": (
                self.counterparty_margin.to_dict() if self.counterparty_margin else None
            ),
        }
