"""LTV composer combining the BG/BB and Gamma-Gamma models.

Key formula:
    LTV = DERT × Expected Spend

Where:
    - DERT: discounted expected residual transactions (BG/BB), i.e. expected
      future active periods weighted by exp(-discount_rate · t)
    - Expected Spend: expected spend per active period (Gamma-Gamma)

``discount_rate`` is a continuously compounded rate per period; an annual
rate r with weekly periods corresponds to ln(1 + r) / 52.

Because BG/BB expectations only depend on ``(x, t_x, T)``, every distinct
pattern is evaluated once. Large populations are split across worker processes
by pattern.
"""

from __future__ import annotations

import logging
import math
import multiprocessing
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import numpy as np
import pandas as pd

from clv_engine.models.bg_bb import BGBBModelWrapper, BGBBParams, CBSData, as_cbs_frame
from clv_engine.models.bg_bb_expectations import (
    DEFAULT_TOLERANCE,
    dert,
    dert_array,
    p_alive_array,
)
from clv_engine.models.gamma_gamma import (
    GammaGammaModelWrapper,
    SpendData,
    SpendParams,
    as_spend_frame,
    expected_spend_array,
)

logger = logging.getLogger(__name__)

LTV_COLUMNS = [
    "customer_id",
    "x",
    "t_x",
    "T",
    "p_alive",
    "dert",
    "expected_spend",
    "ltv",
]


@dataclass(frozen=True)
class LTVScore:
    """LTV prediction for a single customer.

    :func:`compute_ltv` returns a DataFrame for performance; LTVScore documents
    the expected structure of one row and can be used to validate it.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    x, t_x, T:
        Calibration sufficient statistics
    p_alive:
        Probability the customer is alive after the calibration window, [0, 1]
    dert:
        Discounted expected residual transactions
    expected_spend:
        Expected spend per active period
    ltv:
        dert × expected_spend

    Examples
    --------
    >>> score = LTVScore("C1", 3, 8, 10, p_alive=0.61, dert=2.5,
    ...                  expected_spend=10.0, ltv=25.0)
    >>> score.ltv
    25.0
    """

    customer_id: str
    x: int
    t_x: int
    T: int
    p_alive: float
    dert: float
    expected_spend: float
    ltv: float

    def __post_init__(self) -> None:
        """Validate LTV score values."""
        if not (0 <= self.p_alive <= 1):
            raise ValueError(
                f"p_alive must be between 0 and 1: {self.p_alive} "
                f"(customer_id={self.customer_id})"
            )
        if self.dert < 0:
            raise ValueError(
                f"dert cannot be negative: {self.dert} (customer_id={self.customer_id})"
            )
        if self.expected_spend < 0:
            raise ValueError(
                f"expected_spend cannot be negative: {self.expected_spend} "
                f"(customer_id={self.customer_id})"
            )
        if not math.isclose(
            self.ltv, self.dert * self.expected_spend, rel_tol=1e-9, abs_tol=1e-12
        ):
            raise ValueError(
                f"ltv ({self.ltv}) must equal dert × expected_spend "
                f"({self.dert * self.expected_spend}) (customer_id={self.customer_id})"
            )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LTVScore":
        """Build a score from one row of :func:`compute_ltv` output."""
        return cls(
            customer_id=str(row["customer_id"]),
            x=int(row["x"]),
            t_x=int(row["t_x"]),
            T=int(row["T"]),
            p_alive=float(row["p_alive"]),
            dert=float(row["dert"]),
            expected_spend=float(row["expected_spend"]),
            ltv=float(row["ltv"]),
        )


def _evaluate_patterns(
    params: BGBBParams,
    x: np.ndarray,
    t_x: np.ndarray,
    T: np.ndarray,
    discount_rate: float,
    tolerance: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Compute P(alive) and DERT for a chunk of patterns.

    Top-level function so it can be pickled for multiprocessing.
    """
    return (
        p_alive_array(params, x, t_x, T),
        dert_array(params, x, t_x, T, discount_rate, tolerance),
    )


def compute_ltv(
    cbs: CBSData,
    bgbb_params: BGBBParams,
    spend: Optional[SpendData],
    spend_params: SpendParams,
    discount_rate: float,
    parallel: bool = True,
    parallel_threshold: int = 100_000,
    n_workers: Optional[int] = None,
    tolerance: float = DEFAULT_TOLERANCE,
) -> pd.DataFrame:
    """Compute per-customer LTV = DERT × expected spend.

    Parameters
    ----------
    cbs:
        Sufficient statistics (customer_id, x, t_x, T) for every customer
    bgbb_params:
        Fitted BG/BB parameters
    spend:
        Spend inputs as a DataFrame (customer_id, mean_value, count) or a
        sequence of :class:`SpendInput`. Customers of ``cbs``
        missing here, or ``spend=None``, are valued at the population mean
        spend (count 0).
    spend_params:
        Fitted Gamma-Gamma parameters (q must exceed 1)
    discount_rate:
        Continuously compounded discount rate per period (>= 0)
    parallel:
        Enable multiprocessing for populations above ``parallel_threshold``
    parallel_threshold:
        Number of distinct (x, t_x, T) patterns above which work is split
        across processes (default: 100,000)
    n_workers:
        Worker processes; None uses the CPU count. Ignored if parallel=False.
    tolerance:
        Relative truncation tolerance of the DERT series

    Returns
    -------
    pd.DataFrame
        Columns customer_id, x, t_x, T, p_alive, dert, expected_spend, ltv,
        sorted by ltv descending (ties by customer_id).

    Raises
    ------
    ValidationError:
        If the statistics or spend inputs are malformed
    DomainError:
        If ``spend_params.q <= 1``
    ValueError:
        If ``discount_rate`` is negative or not finite
    """
    frame = as_cbs_frame(cbs)
    if spend is not None:
        spend = as_spend_frame(spend, allow_empty=True)
    if frame.empty:
        return pd.DataFrame(columns=LTV_COLUMNS)

    patterns = frame[["x", "t_x", "T"]].drop_duplicates().reset_index(drop=True)
    num_patterns = len(patterns)
    x = patterns["x"].to_numpy(dtype=float)
    t_x = patterns["t_x"].to_numpy(dtype=float)
    T = patterns["T"].to_numpy(dtype=float)

    use_parallel = parallel and num_patterns >= parallel_threshold
    if use_parallel:
        if n_workers is None:
            workers = os.cpu_count() or 1
        else:
            workers = max(1, n_workers)
        chunk_size = max(1, math.ceil(num_patterns / workers))
        chunks = [
            (
                bgbb_params,
                x[i : i + chunk_size],
                t_x[i : i + chunk_size],
                T[i : i + chunk_size],
                discount_rate,
                tolerance,
            )
            for i in range(0, num_patterns, chunk_size)
        ]
        logger.info(
            "Evaluating %d patterns in %d chunks on %d workers",
            num_patterns,
            len(chunks),
            workers,
        )
        with multiprocessing.Pool(processes=workers) as pool:
            chunk_results = pool.starmap(_evaluate_patterns, chunks)
        alive = np.concatenate([result[0] for result in chunk_results])
        residual = np.concatenate([result[1] for result in chunk_results])
    else:
        alive, residual = _evaluate_patterns(
            bgbb_params, x, t_x, T, discount_rate, tolerance
        )

    patterns["p_alive"] = alive
    patterns["dert"] = residual
    result = frame[["customer_id", "x", "t_x", "T"]].merge(
        patterns, on=["x", "t_x", "T"], how="left"
    )

    if spend is not None and not spend.empty:
        result = result.merge(
            spend[["customer_id", "mean_value", "count"]], on="customer_id", how="left"
        )
        missing = int(result["count"].isna().sum())
        if missing:
            logger.info(
                "%d customers without spend inputs valued at the population mean",
                missing,
            )
        mean_value = result["mean_value"].fillna(0.0).to_numpy(dtype=float)
        count = result["count"].fillna(0).to_numpy(dtype=float)
    else:
        mean_value = np.zeros(len(result))
        count = np.zeros(len(result))

    result["expected_spend"] = expected_spend_array(spend_params, mean_value, count)
    result["ltv"] = result["dert"].to_numpy(dtype=float) * result[
        "expected_spend"
    ].to_numpy(dtype=float)

    result = result[LTV_COLUMNS]
    return result.sort_values(
        ["ltv", "customer_id"], ascending=[False, True], kind="mergesort"
    ).reset_index(drop=True)


def acquisition_ltv(
    bgbb_params: BGBBParams,
    spend_params: SpendParams,
    discount_rate: float,
    tolerance: float = DEFAULT_TOLERANCE,
) -> float:
    """LTV of a newly acquired customer, DERT(0, 0, 0) × population mean spend.

    Benchmark for acquisition spend decisions.
    """
    return dert(bgbb_params, 0, 0, 0, discount_rate, tolerance) * (
        spend_params.population_mean
    )


class LTVCalculator:
    """Calculate LTV from fitted BG/BB and Gamma-Gamma wrappers.

    Examples
    --------
    >>> from clv_engine.models.bg_bb import BGBBModelWrapper
    >>> from clv_engine.models.gamma_gamma import GammaGammaModelWrapper
    >>> from clv_engine.models.clv_calculator import LTVCalculator
    >>> bgbb_model = BGBBModelWrapper()
    >>> bgbb_model.fit(cbs)
    >>> spend_model = GammaGammaModelWrapper()
    >>> spend_model.fit(spend)
    >>> calculator = LTVCalculator(bgbb_model, spend_model, discount_rate=0.002)
    >>> scores = calculator.calculate_ltv(cbs, spend)
    >>> top_customers = scores.head(10)
    """

    def __init__(
        self,
        bgbb_model: BGBBModelWrapper,
        spend_model: GammaGammaModelWrapper,
        discount_rate: float,
        parallel: bool = True,
        parallel_threshold: int = 100_000,
        n_workers: Optional[int] = None,
    ) -> None:
        """Initialize the calculator.

        Raises
        ------
        RuntimeError:
            If either model has not been fitted yet
        ValueError:
            If discount_rate is negative or not finite
        """
        if bgbb_model.params is None:
            raise RuntimeError(
                "BG/BB model has not been fitted. Call fit() before creating LTVCalculator."
            )
        if spend_model.params is None:
            raise RuntimeError(
                "Gamma-Gamma model has not been fitted. Call fit() before creating LTVCalculator."
            )
        if not math.isfinite(discount_rate) or discount_rate < 0:
            raise ValueError(
                f"discount_rate must be finite and >= 0, got {discount_rate}"
            )

        self.bgbb_model = bgbb_model
        self.spend_model = spend_model
        self.discount_rate = discount_rate
        self.parallel = parallel
        self.parallel_threshold = parallel_threshold
        self.n_workers = n_workers

    def calculate_ltv(
        self, cbs: CBSData, spend: Optional[SpendData] = None
    ) -> pd.DataFrame:
        """Per-customer LTV table, see :func:`compute_ltv`."""
        return compute_ltv(
            cbs,
            self.bgbb_model.params,
            spend,
            self.spend_model.params,
            self.discount_rate,
            parallel=self.parallel,
            parallel_threshold=self.parallel_threshold,
            n_workers=self.n_workers,
        )

    def acquisition_ltv(self) -> float:
        """LTV of a newly acquired customer under the fitted models."""
        return acquisition_ltv(
            self.bgbb_model.params, self.spend_model.params, self.discount_rate
        )
