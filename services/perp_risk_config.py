# -*- coding: utf-8 -*-
"""
services/perp_risk_config.py
Perpetuals Risk Engine Configuration

This module provides:
1. PerpRiskConfig - Pydantic model tree for the risk engine
2. PerpRiskConfigLoader - Load and merge configuration from YAML files
3. load_perp_risk_config - Convenience loader

Usage:
    from services.perp_risk_config import load_perp_risk_config

    config = load_perp_risk_config("configs/perp_risk_engine.yaml")
    engine = PerpRiskEngine.from_config(config)

Units:
    All fractions are pips (10^-8): 5000000 = 5%.
    All durations are milliseconds.

References:
    - Pydantic v2 docs: https://docs.pydantic.dev/
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from core_errors import ConfigError
from core_perps import MarginCheck, OverridableMarketFields

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_PERP_RISK_CONFIG_PATH = str(
    Path(__file__).resolve().parent.parent / "configs" / "perp_risk_engine.yaml"
)

# Environment variable prefix for overrides
ENV_PREFIX = "PERP_RISK_"


# =============================================================================
# Configuration Models
# =============================================================================


class WalletsConfig(BaseModel):
    """Venue-owned wallet addresses."""

    insurance_fund_wallet: str = Field(default="insurance-fund", min_length=1)
    exit_fund_wallet: str = Field(default="exit-fund", min_length=1)
    fee_wallet: str = Field(default="fee-wallet", min_length=1)

    @model_validator(mode="after")
    def _distinct_funds(self) -> "WalletsConfig":
        if self.insurance_fund_wallet == self.exit_fund_wallet:
            raise ValueError("Insurance fund and exit fund must be distinct wallets")
        return self


class FundingConfig(BaseModel):
    """Funding multiplier publishing."""

    period_ms: int = Field(default=3_600_000, gt=0)
    backfill_missing_periods: bool = Field(default=False)


class IndexPriceConfig(BaseModel):
    """Index price ingestion."""

    max_future_timestamp_ms: int = Field(default=86_400_000, ge=0)


class MarketListingConfig(BaseModel):
    """A market to list at startup (risk fields in pips)."""

    base_asset_symbol: str = Field(min_length=1)
    initial_margin_fraction: int = Field(ge=0)
    maintenance_margin_fraction: int = Field(ge=0)
    incremental_initial_margin_fraction: int = Field(ge=0)
    baseline_position_size: int = Field(ge=0)
    incremental_position_size: int = Field(gt=0)
    maximum_position_size: int = Field(ge=0)
    minimum_position_size: int = Field(ge=0)
    active: bool = Field(default=True)

    def to_fields(self) -> OverridableMarketFields:
        return OverridableMarketFields(
            initial_margin_fraction=self.initial_margin_fraction,
            maintenance_margin_fraction=self.maintenance_margin_fraction,
            incremental_initial_margin_fraction=self.incremental_initial_margin_fraction,
            baseline_position_size=self.baseline_position_size,
            incremental_position_size=self.incremental_position_size,
            maximum_position_size=self.maximum_position_size,
            minimum_position_size=self.minimum_position_size,
        )


class MarketsConfig(BaseModel):
    """Market administration limits and optional startup listings."""

    max_markets: int = Field(default=254, ge=1)
    min_initial_margin_fraction: int = Field(default=500_000, ge=0)
    min_maintenance_margin_fraction: int = Field(default=300_000, ge=0)
    min_incremental_initial_margin_fraction: int = Field(default=100_000, ge=0)
    listings: List[MarketListingConfig] = Field(default_factory=list)


class LiquidationConfig(BaseModel):
    """Liquidation quote validation."""

    quote_quantity_tolerance_pips: int = Field(default=1, ge=0)
    max_fee_fraction: int = Field(default=20_000_000, ge=0, le=100_000_000)


class DeleveragingConfig(BaseModel):
    """Auto-deleveraging."""

    counterparty_margin_check: MarginCheck = Field(default=MarginCheck.INITIAL)


class PerpRiskConfig(BaseModel):
    """Complete risk engine configuration."""

    wallets: WalletsConfig = Field(default_factory=WalletsConfig)
    quote_asset_symbol: str = Field(default="USD", min_length=1)
    funding: FundingConfig = Field(default_factory=FundingConfig)
    index_prices: IndexPriceConfig = Field(default_factory=IndexPriceConfig)
    markets: MarketsConfig = Field(default_factory=MarketsConfig)
    liquidation: LiquidationConfig = Field(default_factory=LiquidationConfig)
    deleveraging: DeleveragingConfig = Field(default_factory=DeleveragingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PerpRiskConfig":
        """
        Create from dictionary.

        Raises:
            ConfigError: If validation fails
        """
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigError(f"Invalid perp risk configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PerpRiskConfig":
        """
        Load configuration from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigError: If the file is invalid YAML or fails validation
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")


# =============================================================================
# Loader
# =============================================================================


class PerpRiskConfigLoader:
    """
    Loads and merges risk engine configuration from multiple sources.

    Priority (highest to lowest):
    1. Environment variables (PERP_RISK_*)
    2. Explicit overrides
    3. User config file (if provided)
    4. Default config file (configs/perp_risk_engine.yaml)
    """

    def __init__(self, default_path: str = DEFAULT_PERP_RISK_CONFIG_PATH):
        self.default_path = Path(default_path)

    def load(
        self,
        user_config_path: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> PerpRiskConfig:
        """
        Load configuration with optional overrides.

        Raises:
            FileNotFoundError: If the user config file is missing
            ConfigError: If the merged configuration is invalid
        """
        config_data: Dict[str, Any] = {}
        if self.default_path.exists():
            config_data = self._read_yaml(self.default_path)

        if user_config_path:
            user_path = Path(user_config_path)
            if not user_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {user_path}")
            config_data = self._deep_merge(config_data, self._read_yaml(user_path))

        if overrides:
            config_data = self._deep_merge(config_data, overrides)

        config_data = self._apply_env_overrides(config_data)

        config = PerpRiskConfig.from_dict(config_data)
        logger.debug(f"Loaded perp risk config: {config.to_dict()}")
        return config

    @staticmethod
    def _read_yaml(path: Path) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            try:
                return yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        env_mappings = {
            f"{ENV_PREFIX}INSURANCE_FUND_WALLET": ("wallets", "insurance_fund_wallet"),
            f"{ENV_PREFIX}EXIT_FUND_WALLET": ("wallets", "exit_fund_wallet"),
            f"{ENV_PREFIX}FEE_WALLET": ("wallets", "fee_wallet"),
            f"{ENV_PREFIX}FUNDING_BACKFILL": ("funding", "backfill_missing_periods"),
            f"{ENV_PREFIX}COUNTERPARTY_MARGIN_CHECK": ("deleveraging", "counterparty_margin_check"),
        }

        for env_var, path in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                self._set_nested(config, path, self._parse_env_value(value))

        return config

    def _set_nested(self, d: Dict, path: Tuple[str, ...], value: Any) -> None:
        """Set a nested dictionary value by path."""
        for key in path[:-1]:
            d = d.setdefault(key, {})
        d[path[-1]] = value

    def _parse_env_value(self, value: str) -> Any:
        """Booleans are parsed; everything else stays a string for pydantic to coerce."""
        lower = value.lower()
        if lower in ("true", "yes"):
            return True
        if lower in ("false", "no"):
            return False
        return value


def load_perp_risk_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> PerpRiskConfig:
    """
    Load risk engine configuration.

    Args:
        path: Optional path to a configuration file merged over the defaults
        overrides: Optional dictionary of override values

    Returns:
        PerpRiskConfig instance
    """
    loader = PerpRiskConfigLoader()
    return loader.load(user_config_path=path, overrides=overrides)
