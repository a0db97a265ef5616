"""Synthetic data generation utilities.

This package simulates BG/BB customer populations to exercise the CLV
pipeline without accessing production data.
"""

from .generator import (
    DEFAULT_SPEND_PARAMS,
    SyntheticCustomer,
    generate_bgbb_population,
    generate_bgbb_transactions,
)

__all__ = [
    "DEFAULT_SPEND_PARAMS",
    "SyntheticCustomer",
    "generate_bgbb_population",
    "generate_bgbb_transactions",
]
