# setup.py
"""
Perpetuals Risk Engine - Build System

Installs the cross-margined perpetual futures risk engine: fixed-point
arithmetic, ledger store, market registry, funding accrual, margin,
liquidation and auto-deleveraging, plus the configuration and facade
services.

Usage:
    pip install -e .            # Development install
    pip install -e ".[test]"    # With test dependencies

Requirements:
    - Python 3.12+
"""
from __future__ import annotations

from setuptools import setup

# ============================================================================
# Modules
# ============================================================================

py_modules = [
    "core_errors",
    "core_perps",
    "impl_pips",
    "impl_symbol_set",
    "impl_ledger_store",
    "impl_position_ledger",
    "impl_perp_markets",
    "impl_perp_funding",
    "impl_perp_margin",
    "impl_perp_liquidation",
    "impl_perp_deleveraging",
]


# ============================================================================
# Setup Configuration
# ============================================================================

setup(
    name="perp-risk-engine",
    version="1.0.0",
    description="Cross-margined perpetual futures risk engine",
    author="TradingBot2 Team",
    python_requires=">=3.11",
    py_modules=py_modules,
    packages=["services"],
    install_requires=[
        "pydantic>=2.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
)
