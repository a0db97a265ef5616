"""Holdout validation of BG/BB predictions.

A calibration/holdout split is made at discretization time
(``discretize_transactions(..., calibration_end=..., holdout_end=...)``). The
model is fitted on the calibration statistics and its conditional expectation
of active holdout periods is compared against what customers actually did:

- Per-customer accuracy (MAE, MAPE, RMSE, R²)
- Aggregate accuracy (ARPE on the total number of active holdout periods)

Target Performance:
- MAPE < 20% (individual customer level)
- ARPE < 10% (aggregate level)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

import numpy as np
import pandas as pd

from clv_engine.errors import ValidationError
from clv_engine.models.bg_bb import BGBBParams, CBSData, as_cbs_frame
from clv_engine.models.bg_bb_expectations import expected_transactions_array
from clv_engine.models.model_prep import HOLDOUT_COLUMNS

logger = logging.getLogger(__name__)

# Small epsilon for floating point comparisons to avoid division by zero
_EPSILON = 1e-10


@dataclass(frozen=True)
class ValidationMetrics:
    """Model validation performance metrics.

    Attributes
    ----------
    mae:
        Mean Absolute Error - average absolute difference between actual and predicted
    mape:
        Mean Absolute Percentage Error (%), over customers with non-zero actuals
    rmse:
        Root Mean Squared Error - square root of average squared errors
    arpe:
        Aggregate Percent Error - error of the summed prediction (%)
    r_squared:
        R² coefficient of determination. Can be negative when the model
        performs worse than predicting the mean.
    sample_size:
        Number of samples used in validation
    """

    mae: Decimal
    mape: Decimal
    rmse: Decimal
    arpe: Decimal
    r_squared: Decimal
    sample_size: int

    def __post_init__(self) -> None:
        """Validate metrics are in reasonable ranges (R² is unbounded below)."""
        if self.sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {self.sample_size}")
        if self.mae < 0:
            raise ValueError(f"mae must be non-negative, got {self.mae}")
        if self.mape < 0:
            raise ValueError(f"mape must be non-negative, got {self.mape}")
        if self.rmse < 0:
            raise ValueError(f"rmse must be non-negative, got {self.rmse}")
        if self.arpe < 0:
            raise ValueError(f"arpe must be non-negative, got {self.arpe}")


def calculate_holdout_metrics(
    actual: pd.Series, predicted: pd.Series
) -> ValidationMetrics:
    """Calculate validation metrics comparing actual vs predicted values.

    MAPE excludes customers with zero actuals (most customers are inactive in
    any given holdout window); if all actuals are zero MAPE is reported as 0.

    Raises
    ------
    ValueError:
        If the series differ in length, are empty, or contain NaN/inf

    Examples
    --------
    >>> import pandas as pd
    >>> actual = pd.Series([4.0, 0.0, 2.0, 1.0])
    >>> predicted = pd.Series([3.5, 0.5, 2.0, 1.0])
    >>> calculate_holdout_metrics(actual, predicted).mae
    Decimal('0.25')
    """
    if len(actual) != len(predicted):
        raise ValueError(
            f"actual and predicted must have same length: "
            f"{len(actual)} != {len(predicted)}"
        )
    if len(actual) == 0:
        raise ValueError("actual and predicted cannot be empty")

    actual_values = np.asarray(actual, dtype=float)
    predicted_values = np.asarray(predicted, dtype=float)
    if not np.all(np.isfinite(actual_values)):
        raise ValueError("actual contains NaN or inf values")
    if not np.all(np.isfinite(predicted_values)):
        raise ValueError("predicted contains NaN or inf values")

    absolute_errors = np.abs(actual_values - predicted_values)
    mae = Decimal(str(np.mean(absolute_errors)))

    nonzero_mask = np.abs(actual_values) > _EPSILON
    if nonzero_mask.any():
        mape = Decimal(
            str(
                np.mean(
                    absolute_errors[nonzero_mask] / np.abs(actual_values[nonzero_mask])
                )
                * 100
            )
        )
    else:
        mape = Decimal("0.0")

    squared_errors = (actual_values - predicted_values) ** 2
    rmse = Decimal(str(np.sqrt(np.mean(squared_errors))))

    total_actual = np.sum(actual_values)
    total_predicted = np.sum(predicted_values)
    if abs(total_actual) > _EPSILON:
        arpe = Decimal(str(abs(total_actual - total_predicted) / total_actual * 100))
    else:
        arpe = Decimal("0.0")

    ss_res = np.sum(squared_errors)
    ss_tot = np.sum((actual_values - np.mean(actual_values)) ** 2)
    if ss_tot > _EPSILON:
        r_squared = Decimal(str(1 - ss_res / ss_tot))
    else:
        r_squared = Decimal("0.0")

    return ValidationMetrics(
        mae=mae.quantize(Decimal("0.01")),
        mape=mape.quantize(Decimal("0.01")),
        rmse=rmse.quantize(Decimal("0.01")),
        arpe=arpe.quantize(Decimal("0.01")),
        r_squared=r_squared.quantize(Decimal("0.001")),
        sample_size=len(actual_values),
    )


def evaluate_holdout(
    cbs: CBSData, holdout: pd.DataFrame, params: BGBBParams
) -> tuple[pd.DataFrame, ValidationMetrics]:
    """Compare predicted and actual active holdout periods per customer.

    Parameters
    ----------
    cbs:
        Calibration statistics (customer_id, x, t_x, T)
    holdout:
        Output of :func:`~clv_engine.models.model_prep.prepare_holdout_counts`
        (customer_id, x_star, n_star)
    params:
        BG/BB parameters fitted on ``cbs``

    Returns
    -------
    tuple[pd.DataFrame, ValidationMetrics]
        Per-customer frame with columns customer_id, x, t_x, T, n_star,
        actual, predicted; and the metrics over all its rows.

    Raises
    ------
    ValidationError:
        If the holdout frame is malformed or shares no customers with ``cbs``
    """
    frame = as_cbs_frame(cbs)
    required = set(HOLDOUT_COLUMNS)
    if not required.issubset(holdout.columns):
        missing = required - set(holdout.columns)
        raise ValidationError(
            f"holdout missing required columns: {missing}. "
            f"Expected columns: {required}"
        )
    if (holdout["x_star"] < 0).any() or (holdout["x_star"] > holdout["n_star"]).any():
        raise ValidationError("x_star must be between 0 and n_star")

    comparison = frame[["customer_id", "x", "t_x", "T"]].merge(
        holdout[HOLDOUT_COLUMNS], on="customer_id", how="inner"
    )
    if comparison.empty:
        raise ValidationError("No overlapping customers between cbs and holdout")
    dropped = len(frame) - len(comparison)
    if dropped:
        logger.warning("%d calibration customers have no holdout record", dropped)

    predicted = np.empty(len(comparison))
    for n_star, index in comparison.groupby("n_star").groups.items():
        rows = comparison.loc[index]
        positions = comparison.index.get_indexer(index)
        predicted[positions] = expected_transactions_array(
            params, rows["x"], rows["t_x"], rows["T"], int(n_star)
        )

    comparison["actual"] = comparison["x_star"].astype(float)
    comparison["predicted"] = predicted
    result = comparison[
        ["customer_id", "x", "t_x", "T", "n_star", "actual", "predicted"]
    ].reset_index(drop=True)

    metrics = calculate_holdout_metrics(result["actual"], result["predicted"])
    logger.info(
        "Holdout validation on %d customers: MAE=%s ARPE=%s%%",
        metrics.sample_size,
        metrics.mae,
        metrics.arpe,
    )
    return result, metrics
