# -*- coding: utf-8 -*-
"""
core_errors.py
Exceptions shared by the perpetuals risk engine.

Every rejection raised by the engine happens before any balance is written,
so callers can treat each exception as "nothing changed" and branch on it.
"""


class RiskEngineError(Exception):
    """ Base error of the risk engine. """


class ConfigError(RiskEngineError):
    """ Invalid configuration or market parameters. """


class ArithmeticOverflow(RiskEngineError):
    """
    Fixed-point result does not fit its target width.

    Fatal for the operation in progress: financial values are never
    silently truncated.
    """


# =============================================================================
# Price errors (recoverable by resubmitting a fresh price)
# =============================================================================

class StalePrice(RiskEngineError):
    """ Price older than the market's last recorded one, or missing. """


class PriceMismatch(RiskEngineError):
    """ Price record for the wrong market, or a non-positive price. """


# =============================================================================
# Margin errors (expected outcomes of precondition checks)
# =============================================================================

class MarginNotMet(RiskEngineError):
    """ Wallet does not satisfy the margin requirement an operation needs. """


class MarginStillDeficient(MarginNotMet):
    """ Position-reducing trade leaves the wallet below maintenance margin. """


class MaintenanceMarginMet(RiskEngineError):
    """ Wallet is solvent, so it cannot be liquidated or deleveraged. """


class MaximumPositionSizeExceeded(RiskEngineError):
    """ Resulting position exceeds the wallet's maximum position size. """


class InsuranceFundCannotAcquire(MarginNotMet):
    """
    Insurance fund cannot act as sole counterparty.

    Raised by liquidation so the caller falls through to deleveraging.
    """


class InsuranceFundCanAcquire(RiskEngineError):
    """ Deleveraging attempted while the insurance fund could still acquire. """


# =============================================================================
# Liquidation / caller errors
# =============================================================================

class InvalidLiquidationPrice(RiskEngineError):
    """
    Caller supplied a quote quantity outside the tolerance of the
    bankruptcy, exit or deactivation formula.
    """

    def __init__(
        self,
        message: str = "Invalid quote quantity",
        expected: int = 0,
        actual: int = 0,
    ):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NoOpenPosition(RiskEngineError):
    """ Wallet has no open position in the market. """


class PositionAboveMinimum(RiskEngineError):
    """ Position is not below the minimum size, so it cannot be swept. """


class InactiveMarket(RiskEngineError):
    """ Market missing, or in the wrong activation state for the operation. """


class WalletRoleError(RiskEngineError):
    """ Insurance fund / exit fund / self-liquidation role violation. """


class WalletExitError(RiskEngineError):
    """ Wallet exit state does not allow the operation. """


class FundingPeriodError(RiskEngineError):
    """ Funding multiplier publish is misaligned or leaves a gap. """
