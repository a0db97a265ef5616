"""Foundational building blocks: transactions and their period discretization."""

from .periods import (
    DEFAULT_PERIOD_LENGTH,
    CustomerPeriodRecord,
    PeriodDiscretization,
    Transaction,
    discretize_transactions,
)

__all__ = [
    "DEFAULT_PERIOD_LENGTH",
    "CustomerPeriodRecord",
    "PeriodDiscretization",
    "Transaction",
    "discretize_transactions",
]
