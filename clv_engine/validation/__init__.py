"""Model validation and diagnostics tools.

This package provides utilities for validating fitted CLV models, including:
- Holdout performance metrics (MAE, MAPE, RMSE, ARPE, R²)
- Predicted vs actual holdout activity per customer
- Chi-square check of the repeat-frequency distribution
"""

from clv_engine.validation.diagnostics import FrequencyFitCheck, frequency_fit_check
from clv_engine.validation.validation import (
    ValidationMetrics,
    calculate_holdout_metrics,
    evaluate_holdout,
)

__all__ = [
    # Diagnostics
    "FrequencyFitCheck",
    "frequency_fit_check",
    # Validation
    "ValidationMetrics",
    "calculate_holdout_metrics",
    "evaluate_holdout",
]
