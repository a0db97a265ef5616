"""Sufficient-statistics preparation for the BG/BB and Gamma-Gamma models.

This module turns a :class:`~clv_engine.foundation.periods.PeriodDiscretization`
into the compact inputs the probabilistic models need.

- **BG/BB** works on the "customer-by-sufficient-statistic" (CBS) triple per
  customer:

  - ``x``: number of active periods after the first opportunity (active
    periods - 1 when the first opportunity is the first purchase)
  - ``t_x``: period of the last transaction, relative to the first opportunity
  - ``T``: number of transaction opportunities, i.e. periods between the first
    opportunity and the end of the calibration window

  The invariant ``0 <= x <= t_x <= T`` is enforced at construction time. A
  violation always indicates an upstream discretization bug, so it raises
  :class:`~clv_engine.errors.ValidationError` instead of being capped.

- **Gamma-Gamma** works on ``(mean_value, count)`` per customer, where ``count``
  is the number of active calibration periods and ``mean_value`` the average
  spend per active period.

Example Workflow
----------------
>>> from datetime import datetime, timedelta
>>> from clv_engine.foundation import Transaction
>>> from clv_engine.models.model_prep import build_statistics
>>> start = datetime(2024, 1, 1)
>>> txns = [
...     Transaction("C1", start, 10),
...     Transaction("C1", start + timedelta(days=15), 12),
...     Transaction("C2", start + timedelta(days=3), 8),
... ]
>>> cbs = build_statistics(txns, timedelta(days=7), calibration_end=start + timedelta(weeks=4))
>>> cbs[["customer_id", "x", "t_x", "T"]].values.tolist()
[['C1', 1, 2, 3], ['C2', 0, 0, 3]]
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional

import pandas as pd

from clv_engine.errors import ValidationError
from clv_engine.foundation.periods import (
    DEFAULT_PERIOD_LENGTH,
    PeriodDiscretization,
    TransactionLike,
    discretize_transactions,
)

logger = logging.getLogger(__name__)

CBS_COLUMNS = ["customer_id", "x", "t_x", "T"]
SPEND_COLUMNS = ["customer_id", "mean_value", "count"]
HOLDOUT_COLUMNS = ["customer_id", "x_star", "n_star"]


def _format_ids(ids: list) -> str:
    return f"{ids[:5]}{'...' if len(ids) > 5 else ''}"


@dataclass(frozen=True)
class CBSRow:
    """Sufficient statistics of one customer for the BG/BB model.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    x:
        Number of repeat transaction periods (distinct active periods - 1)
    t_x:
        Period index of the last transaction, relative to the first opportunity
    T:
        Number of transaction opportunities observed after the first period
    """

    customer_id: str
    x: int
    t_x: int
    T: int

    def __post_init__(self) -> None:
        """Validate ``0 <= x <= t_x <= T`` and that ``x = 0`` implies ``t_x = 0``."""
        for name in ("x", "t_x", "T"):
            value = getattr(self, name)
            if isinstance(value, bool) or int(value) != value:
                raise ValidationError(
                    f"{name} must be integer-valued: {value} (customer_id={self.customer_id})",
                    customer_id=self.customer_id,
                )
            if value < 0:
                raise ValidationError(
                    f"{name} cannot be negative: {value} (customer_id={self.customer_id})",
                    customer_id=self.customer_id,
                )
            object.__setattr__(self, name, int(value))
        if self.x > self.t_x:
            raise ValidationError(
                f"x ({self.x}) cannot exceed t_x ({self.t_x}) "
                f"(customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )
        if self.t_x > self.T:
            raise ValidationError(
                f"t_x ({self.t_x}) cannot exceed T ({self.T}) "
                f"(customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )
        if self.x == 0 and self.t_x > 0:
            raise ValidationError(
                f"t_x ({self.t_x}) must be 0 when x is 0 "
                f"(customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )


@dataclass(frozen=True)
class SpendInput:
    """Spend statistics of one customer for the Gamma-Gamma model.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    mean_value:
        Average spend per active period (must be positive)
    count:
        Number of active periods the mean was computed over (must be >= 1)
    """

    customer_id: str
    mean_value: float
    count: int

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValidationError(
                f"count must be >= 1: {self.count} (customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )
        if not math.isfinite(self.mean_value) or self.mean_value <= 0:
            raise ValidationError(
                f"mean_value must be positive and finite: {self.mean_value} "
                f"(customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )


def build_statistics_from_periods(
    discretization: PeriodDiscretization,
    first_periods: Optional[Mapping[str, int]] = None,
) -> pd.DataFrame:
    """Convert a period discretization into BG/BB sufficient statistics.

    Parameters
    ----------
    discretization:
        Output of :func:`~clv_engine.foundation.periods.discretize_transactions`
    first_periods:
        Optional per-customer first opportunity period (e.g. derived from an
        install or sign-up date). Customers not present use their first active
        period. With an earlier first opportunity every active period
        after it counts towards ``x``.

    Returns
    -------
    pd.DataFrame
        Columns ``customer_id``, ``x``, ``t_x``, ``T`` (int64), one row per
        customer, sorted by customer_id.

    Raises
    ------
    ValidationError:
        If a first opportunity period lies after the customer's first
        transaction or after the calibration window, or if any resulting row
        violates ``0 <= x <= t_x <= T``
    """
    first_periods = first_periods or {}
    end_period = discretization.calibration_end_period

    rows: list[CBSRow] = []
    for record in discretization.records:
        first = int(first_periods.get(record.customer_id, record.first_period))
        if first > record.first_period:
            raise ValidationError(
                f"First opportunity period ({first}) is after the first transaction "
                f"period ({record.first_period}) for customer {record.customer_id}",
                customer_id=record.customer_id,
            )
        if first > end_period:
            raise ValidationError(
                f"First opportunity period ({first}) is after the calibration window "
                f"end period ({end_period}) for customer {record.customer_id}",
                customer_id=record.customer_id,
            )
        rows.append(
            CBSRow(
                customer_id=record.customer_id,
                x=sum(1 for period in record.periods if period > first),
                t_x=record.last_period - first,
                T=end_period - first,
            )
        )

    if not rows:
        return pd.DataFrame(
            {
                "customer_id": pd.Series(dtype=str),
                "x": pd.Series(dtype="int64"),
                "t_x": pd.Series(dtype="int64"),
                "T": pd.Series(dtype="int64"),
            }
        )

    df = pd.DataFrame(
        {
            "customer_id": [row.customer_id for row in rows],
            "x": [row.x for row in rows],
            "t_x": [row.t_x for row in rows],
            "T": [row.T for row in rows],
        }
    ).astype({"x": "int64", "t_x": "int64", "T": "int64"})
    return df.sort_values("customer_id").reset_index(drop=True)


def build_statistics(
    transactions: Iterable[TransactionLike],
    period_length: timedelta = DEFAULT_PERIOD_LENGTH,
    origin: Optional[datetime] = None,
    calibration_end: Optional[datetime] = None,
    first_periods: Optional[Mapping[str, int]] = None,
) -> pd.DataFrame:
    """Build BG/BB sufficient statistics straight from a transaction log.

    Convenience wrapper around :func:`discretize_transactions` followed by
    :func:`build_statistics_from_periods`. Transactions at or after
    ``calibration_end`` are ignored here; use the two-step API to also obtain
    holdout counts.

    Examples
    --------
    Transactions in periods 0, 2, 2 and 5 observed through period 6:

    >>> from datetime import datetime, timedelta
    >>> start = datetime(2024, 1, 1)
    >>> txns = [
    ...     {"customer_id": "C1", "event_ts": start + timedelta(weeks=w), "amount": 5}
    ...     for w in (0, 2, 2, 5)
    ... ]
    >>> row = build_statistics(txns, timedelta(weeks=1),
    ...                        calibration_end=start + timedelta(weeks=7)).iloc[0]
    >>> int(row["x"]), int(row["t_x"]), int(row["T"])
    (2, 5, 6)
    """
    discretization = discretize_transactions(
        transactions,
        period_length=period_length,
        origin=origin,
        calibration_end=calibration_end,
    )
    return build_statistics_from_periods(discretization, first_periods=first_periods)


def validate_cbs_frame(data: pd.DataFrame, allow_empty: bool = False) -> None:
    """Validate an externally supplied CBS DataFrame.

    Raises
    ------
    ValidationError:
        If columns are missing, customer ids are duplicated, values are not
        finite non-negative integers, or ``x <= t_x <= T`` is violated
    """
    required = set(CBS_COLUMNS)
    if not required.issubset(data.columns):
        missing = required - set(data.columns)
        raise ValidationError(
            f"Input data missing required columns: {missing}. "
            f"Expected columns: {required}"
        )

    if data.empty:
        if not allow_empty:
            raise ValidationError(
                "Empty sufficient statistics. Provide at least one customer."
            )
        return

    if data["customer_id"].duplicated().any():
        duplicates = data[data["customer_id"].duplicated()]["customer_id"].tolist()
        raise ValidationError(
            f"Duplicate customer_ids found: {_format_ids(duplicates)}. "
            "Each customer should appear only once."
        )

    for col in ("x", "t_x", "T"):
        if not pd.api.types.is_numeric_dtype(data[col]):
            raise ValidationError(f"{col} column must be numeric type, got {data[col].dtype}")
        values = data[col].astype(float)
        bad = data[~values.apply(math.isfinite)]
        if not bad.empty:
            raise ValidationError(
                f"{col} contains NaN or infinite values. "
                f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
            )
        bad = data[(values % 1 != 0) | (values < 0)]
        if not bad.empty:
            raise ValidationError(
                f"{col} must be a non-negative integer. "
                f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
            )

    bad = data[data["x"] > data["t_x"]]
    if not bad.empty:
        raise ValidationError(
            "x must be <= t_x (repeat periods cannot exceed the last active period). "
            f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
        )
    bad = data[data["t_x"] > data["T"]]
    if not bad.empty:
        raise ValidationError(
            "t_x must be <= T (last transaction cannot be after observation end). "
            f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
        )
    bad = data[(data["x"] == 0) & (data["t_x"] > 0)]
    if not bad.empty:
        raise ValidationError(
            "t_x must be 0 when x is 0 (a repeat period is needed for t_x > 0). "
            f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
        )


def validate_spend_frame(data: pd.DataFrame, allow_empty: bool = False) -> None:
    """Validate a Gamma-Gamma input DataFrame.

    Raises
    ------
    ValidationError:
        If columns are missing, ids are duplicated, counts are below 1 or mean
        values are not positive finite numbers
    """
    required = set(SPEND_COLUMNS)
    if not required.issubset(data.columns):
        missing = required - set(data.columns)
        raise ValidationError(
            f"Input data missing required columns: {missing}. "
            f"Expected columns: {required}"
        )
    if data.empty:
        if not allow_empty:
            raise ValidationError(
                "Empty spend statistics. Provide at least one customer."
            )
        return

    if data["customer_id"].duplicated().any():
        duplicates = data[data["customer_id"].duplicated()]["customer_id"].tolist()
        raise ValidationError(
            f"Duplicate customer_ids found: {_format_ids(duplicates)}. "
            "Each customer should appear only once."
        )
    for col in ("mean_value", "count"):
        if not pd.api.types.is_numeric_dtype(data[col]):
            raise ValidationError(f"{col} column must be numeric type, got {data[col].dtype}")

    counts = data["count"].astype(float)
    bad = data[~counts.apply(math.isfinite) | (counts % 1 != 0) | (counts < 1)]
    if not bad.empty:
        raise ValidationError(
            "count must be an integer >= 1. "
            f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
        )
    means = data["mean_value"].astype(float)
    bad = data[~means.apply(math.isfinite) | (means <= 0)]
    if not bad.empty:
        raise ValidationError(
            "mean_value must be positive and finite. "
            f"Found {len(bad)} customers: {_format_ids(bad['customer_id'].tolist())}."
        )


def prepare_spend_inputs(
    discretization: PeriodDiscretization,
    min_count: int = 1,
) -> pd.DataFrame:
    """Convert a period discretization into Gamma-Gamma inputs.

    ``count`` is the number of active calibration periods (``x + 1``) and
    ``mean_value`` the calibration spend divided by ``count``. Customers whose
    mean is zero (free transactions only) cannot be modelled by a Gamma
    distribution and are excluded with a warning.

    Parameters
    ----------
    discretization:
        Output of :func:`~clv_engine.foundation.periods.discretize_transactions`
    min_count:
        Minimum number of active periods required (default: 1)

    Returns
    -------
    pd.DataFrame
        Columns ``customer_id``, ``mean_value`` (float64), ``count`` (int64),
        sorted by customer_id.
    """
    if min_count < 1:
        raise ValidationError(f"min_count must be >= 1, got {min_count}")

    rows: list[SpendInput] = []
    non_positive: list[str] = []
    for record in discretization.records:
        count = len(record.periods)
        if count < min_count:
            continue
        mean_value = float(record.total_spend / count)
        if mean_value <= 0:
            non_positive.append(record.customer_id)
            continue
        rows.append(
            SpendInput(
                customer_id=record.customer_id, mean_value=mean_value, count=count
            )
        )

    if non_positive:
        logger.warning(
            "Excluded %d customers with non-positive mean spend from spend inputs: %s",
            len(non_positive),
            _format_ids(non_positive),
        )

    df = pd.DataFrame(
        {
            "customer_id": pd.Series([r.customer_id for r in rows], dtype=str),
            "mean_value": pd.Series([r.mean_value for r in rows], dtype="float64"),
            "count": pd.Series([r.count for r in rows], dtype="int64"),
        }
    )
    return df.sort_values("customer_id").reset_index(drop=True)


def prepare_holdout_counts(discretization: PeriodDiscretization) -> pd.DataFrame:
    """Count each customer's active holdout periods.

    Returns
    -------
    pd.DataFrame
        Columns ``customer_id``, ``x_star`` (active holdout periods) and
        ``n_star`` (holdout length in periods), sorted by customer_id.

    Raises
    ------
    ValidationError:
        If the discretization has no holdout window
    """
    if discretization.holdout_end_period is None:
        raise ValidationError(
            "Discretization has no holdout window. Pass calibration_end to "
            "discretize_transactions()."
        )
    n_star = discretization.holdout_length
    df = pd.DataFrame(
        {
            "customer_id": pd.Series(
                [r.customer_id for r in discretization.records], dtype=str
            ),
            "x_star": pd.Series(
                [len(r.holdout_periods) for r in discretization.records], dtype="int64"
            ),
            "n_star": pd.Series([n_star] * len(discretization.records), dtype="int64"),
        }
    )
    return df.sort_values("customer_id").reset_index(drop=True)
