"""Goodness-of-fit diagnostics for a fitted BG/BB model.

The BG/BB model implies a full distribution of repeat frequencies for
customers observed over n periods, P(X(n) = x). Comparing the observed
number of customers in each (T, x) cell against the expected number is the
standard fit check for the model (Fader, Hardie & Shang, 2010).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.stats import chi2

from clv_engine.models.bg_bb import PARAMETER_NAMES, BGBBParams, CBSData, as_cbs_frame
from clv_engine.models.bg_bb_expectations import probability_of_frequency_array


@dataclass(frozen=True)
class FrequencyFitCheck:
    """Observed vs expected repeat-frequency distribution.

    Attributes
    ----------
    table:
        One row per (T, x) cell with columns T, x, observed, expected
    statistic:
        Pearson chi-square statistic over the pooled cells
    degrees_of_freedom:
        Pooled cells minus one per stratum minus the four fitted parameters
        (at least 1)
    p_value:
        Upper-tail probability of ``statistic``
    """

    table: pd.DataFrame
    statistic: float
    degrees_of_freedom: int
    p_value: float


def _pooled_cells(observed: np.ndarray, expected: np.ndarray, min_expected: float):
    """Merge cells with small expectations into their right neighbour."""
    pooled_obs: list[float] = []
    pooled_exp: list[float] = []
    acc_obs = 0.0
    acc_exp = 0.0
    for obs, exp in zip(observed, expected):
        acc_obs += obs
        acc_exp += exp
        if acc_exp >= min_expected:
            pooled_obs.append(acc_obs)
            pooled_exp.append(acc_exp)
            acc_obs = acc_exp = 0.0
    if acc_exp > 0 or acc_obs > 0:
        if pooled_exp:
            pooled_obs[-1] += acc_obs
            pooled_exp[-1] += acc_exp
        else:
            pooled_obs.append(acc_obs)
            pooled_exp.append(acc_exp)
    return np.array(pooled_obs), np.array(pooled_exp)


def frequency_fit_check(
    cbs: CBSData, params: BGBBParams, min_expected: float = 5.0
) -> FrequencyFitCheck:
    """Chi-square check of observed vs model-implied repeat frequencies.

    Customers are grouped by T. Within each stratum the model expects
    ``n_T · P(X(T) = x)`` customers with x repeat periods, x = 0..T. Adjacent
    cells with fewer than ``min_expected`` expected customers are pooled before
    computing the statistic.
    """
    if min_expected <= 0:
        raise ValueError(f"min_expected must be positive, got {min_expected}")
    frame = as_cbs_frame(cbs)

    tables: list[pd.DataFrame] = []
    statistic = 0.0
    n_cells = 0
    n_strata = 0
    for T, group in frame.groupby("T", sort=True):
        T = int(T)
        x_values = np.arange(T + 1)
        observed = (
            group["x"].value_counts().reindex(x_values, fill_value=0).to_numpy(float)
        )
        expected = len(group) * probability_of_frequency_array(params, T)
        tables.append(
            pd.DataFrame(
                {"T": T, "x": x_values, "observed": observed, "expected": expected}
            )
        )
        if T == 0:
            continue
        pooled_obs, pooled_exp = _pooled_cells(observed, expected, min_expected)
        statistic += float(np.sum((pooled_obs - pooled_exp) ** 2 / pooled_exp))
        n_cells += len(pooled_exp)
        n_strata += 1

    degrees_of_freedom = max(1, n_cells - n_strata - len(PARAMETER_NAMES))
    return FrequencyFitCheck(
        table=pd.concat(tables, ignore_index=True),
        statistic=statistic,
        degrees_of_freedom=degrees_of_freedom,
        p_value=float(chi2.sf(statistic, degrees_of_freedom)),
    )
