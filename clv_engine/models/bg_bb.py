"""BG/BB model for discrete-time repeat transactions.

The Beta-Geometric/Beta-Binomial (BG/BB) model describes customers who have a
transaction opportunity once per period (Fader, Hardie & Shang, 2010):

1. **While-alive transaction process**: in every period an alive customer
   transacts with probability θ, constant over time
2. **Dropout process**: after every period the customer becomes inactive
   ("dies") with probability p, independent of transacting

Key assumptions:
- Heterogeneity in θ across customers follows Beta(α, β)
- Heterogeneity in p across customers follows Beta(γ, δ)
- θ and p are independent
- Customers can't return after becoming inactive (no reactivation)

The model only needs each customer's sufficient statistics ``(x, t_x, T)``,
see :mod:`clv_engine.models.model_prep`. Parameters are estimated by maximum
likelihood with all per-customer terms combined in log space, because the
likelihood of different customers can differ by hundreds of orders of
magnitude.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.special import betaln, logsumexp

from clv_engine.errors import DomainError
from clv_engine.models.model_prep import CBS_COLUMNS, CBSRow, validate_cbs_frame
from clv_engine.models.optimizer import maximize_log_likelihood

logger = logging.getLogger(__name__)

PARAMETER_NAMES = ("alpha", "beta", "gamma", "delta")

# Fitted values beyond these bounds mean the optimum sits on the edge of the
# parameter space (e.g. α → 0 when nobody repeats).
BOUNDARY_LOW = 1e-6
BOUNDARY_HIGH = 1e6

# Upper bound on the size of one (patterns × dropout periods) block.
_MAX_BLOCK_CELLS = 2_000_000

CBSData = Union[pd.DataFrame, Sequence[CBSRow]]


@dataclass(frozen=True)
class BGBBParams:
    """Fitted BG/BB shape parameters.

    Attributes
    ----------
    alpha, beta:
        Beta distribution of the per-period transaction probability θ
    gamma, delta:
        Beta distribution of the per-period dropout probability p
    """

    alpha: float
    beta: float
    gamma: float
    delta: float

    def __post_init__(self) -> None:
        for name in PARAMETER_NAMES:
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise DomainError(
                    f"BG/BB parameter {name} must be positive and finite, got {value}",
                    parameter=name,
                    value=value,
                )

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.alpha, self.beta, self.gamma, self.delta)

    def as_dict(self) -> dict[str, float]:
        return dict(zip(PARAMETER_NAMES, self.as_tuple()))

    @property
    def mean_transaction_probability(self) -> float:
        """Population mean of θ, α / (α + β)."""
        return self.alpha / (self.alpha + self.beta)

    @property
    def mean_dropout_probability(self) -> float:
        """Population mean of p, γ / (γ + δ)."""
        return self.gamma / (self.gamma + self.delta)


@dataclass
class BGBBConfig:
    """Configuration for BG/BB maximum-likelihood estimation.

    Attributes
    ----------
    method:
        ``scipy.optimize.minimize`` method used on the log-parameters
    max_iterations:
        Iteration cap; reaching it raises ConvergenceError
    tolerance:
        Optimizer convergence tolerance
    initial_value:
        Starting value for all four parameters
    penalizer_coef:
        L2 penalty on the parameters (0 for plain maximum likelihood)
    time_budget_seconds:
        Optional wall-clock budget for one fit
    """

    method: str = "Nelder-Mead"
    max_iterations: int = 10_000
    tolerance: float = 1e-6
    initial_value: float = 1.0
    penalizer_coef: float = 0.0
    time_budget_seconds: Optional[float] = None


@dataclass(frozen=True)
class BGBBDiagnostics:
    """Diagnostics of a BG/BB fit.

    Attributes
    ----------
    log_likelihood:
        Total log-likelihood at the fitted parameters
    iterations:
        Optimizer iterations
    function_evaluations:
        Likelihood evaluations
    n_customers:
        Number of customers in the fit
    n_patterns:
        Number of distinct (x, t_x, T) patterns
    degenerate_strata:
        Observation lengths T (> 0) whose customers all have x = 0 or all
        have x = T
    degenerate_population:
        True if the whole population has no variance in x relative to T
        (every customer at x = 0, or every customer at x = T)
    boundary_parameters:
        Names of fitted parameters outside [1e-6, 1e6]
    """

    log_likelihood: float
    iterations: int
    function_evaluations: int
    n_customers: int
    n_patterns: int
    degenerate_strata: tuple[int, ...]
    degenerate_population: bool
    boundary_parameters: tuple[str, ...]

    @property
    def is_degenerate(self) -> bool:
        return self.degenerate_population or bool(self.boundary_parameters)


def as_cbs_frame(data: CBSData) -> pd.DataFrame:
    """Return validated CBS statistics as a DataFrame."""
    if isinstance(data, pd.DataFrame):
        validate_cbs_frame(data)
        return data
    rows = list(data)
    frame = pd.DataFrame(
        {
            "customer_id": [row.customer_id for row in rows],
            "x": [row.x for row in rows],
            "t_x": [row.t_x for row in rows],
            "T": [row.T for row in rows],
        },
        columns=CBS_COLUMNS,
    )
    validate_cbs_frame(frame)
    return frame


def _pattern_counts(cbs: pd.DataFrame) -> pd.DataFrame:
    """Collapse customers to unique (x, t_x, T) patterns with weights."""
    return (
        cbs.groupby(["x", "t_x", "T"], sort=True)
        .size()
        .reset_index(name="weight")
    )


def log_likelihood_array(
    params: BGBBParams,
    x: np.ndarray,
    t_x: np.ndarray,
    T: np.ndarray,
) -> np.ndarray:
    """Per-row log-likelihood ln L(α, β, γ, δ | x, t_x, T).

    ``L`` is the probability of being alive through period T with the observed
    pattern, plus the probability of having died in each period between t_x
    and T - 1 with the same pattern. The finite sum over dropout periods is
    evaluated with ``logsumexp``.
    """
    alpha, beta, gamma, delta = params.as_tuple()
    x = np.atleast_1d(np.asarray(x, dtype=float))
    t_x = np.atleast_1d(np.asarray(t_x, dtype=float))
    T = np.atleast_1d(np.asarray(T, dtype=float))

    log_norm = betaln(alpha, beta) + betaln(gamma, delta)
    log_alive = betaln(alpha + x, beta + T - x) + betaln(gamma, delta + T) - log_norm

    gaps = (T - t_x).astype(int)
    max_gap = int(gaps.max()) if gaps.size else 0
    if max_gap == 0:
        return log_alive

    out = np.empty_like(log_alive)
    block = max(1, _MAX_BLOCK_CELLS // max_gap)
    offsets = np.arange(max_gap, dtype=float)[None, :]
    for start in range(0, len(x), block):
        sl = slice(start, start + block)
        xs = x[sl, None]
        txs = t_x[sl, None]
        log_died = (
            betaln(alpha + xs, beta + txs - xs + offsets)
            + betaln(gamma + 1.0, delta + txs + offsets)
            - log_norm
        )
        log_died = np.where(offsets < gaps[sl, None], log_died, -np.inf)
        out[sl] = logsumexp(
            np.concatenate([log_alive[sl, None], log_died], axis=1), axis=1
        )
    return out


def bgbb_log_likelihood(params: BGBBParams, cbs: CBSData) -> float:
    """Total log-likelihood of a population under ``params``.

    Useful for comparing fits across discretization choices.
    """
    frame = as_cbs_frame(cbs)
    patterns = _pattern_counts(frame)
    ll = log_likelihood_array(
        params,
        patterns["x"].to_numpy(),
        patterns["t_x"].to_numpy(),
        patterns["T"].to_numpy(),
    )
    return float(np.dot(patterns["weight"].to_numpy(dtype=float), ll))


def find_degenerate_strata(cbs: pd.DataFrame) -> tuple[int, ...]:
    """Observation lengths whose customers carry no frequency information.

    A stratum (all customers sharing the same T > 0) is degenerate when every
    customer has x = 0 or every customer has x = T.
    """
    strata: list[int] = []
    for T, group in cbs.groupby("T", sort=True):
        if T == 0:
            continue
        if (group["x"] == 0).all() or (group["x"] == T).all():
            strata.append(int(T))
    return tuple(strata)


def fit_bgbb(
    cbs: CBSData, config: Optional[BGBBConfig] = None
) -> tuple[BGBBParams, BGBBDiagnostics]:
    """Fit the BG/BB model by maximum likelihood.

    Parameters
    ----------
    cbs:
        DataFrame with columns customer_id, x, t_x, T (or a sequence of
        :class:`CBSRow`). Include every customer, in particular those with
        x = 0.
    config:
        Optimizer settings (default: :class:`BGBBConfig`)

    Returns
    -------
    tuple[BGBBParams, BGBBDiagnostics]

    Raises
    ------
    ValidationError:
        If the statistics are malformed or empty
    ConvergenceError:
        If the optimizer fails, returns a non-finite likelihood or runs out of
        budget. The error carries the degenerate strata of the input.
    """
    config = config or BGBBConfig()
    frame = as_cbs_frame(cbs)
    patterns = _pattern_counts(frame)
    x = patterns["x"].to_numpy(dtype=float)
    t_x = patterns["t_x"].to_numpy(dtype=float)
    T = patterns["T"].to_numpy(dtype=float)
    weights = patterns["weight"].to_numpy(dtype=float)

    strata = find_degenerate_strata(frame)
    informative = frame[frame["T"] > 0]
    degenerate_population = informative.empty or bool(
        (informative["x"] == 0).all() or (informative["x"] == informative["T"]).all()
    )
    if degenerate_population:
        logger.warning(
            "BG/BB statistics carry no frequency variance (%d customers); the "
            "fit will sit on the parameter boundary",
            len(frame),
        )
    elif strata:
        logger.warning(
            "BG/BB strata with degenerate frequencies (all x=0 or all x=T): T=%s",
            list(strata),
        )

    def total_log_likelihood(values: np.ndarray) -> float:
        if not np.all(np.isfinite(values)) or np.any(values <= 0):
            return -np.inf
        alpha, beta, gamma, delta = values
        params = BGBBParams(float(alpha), float(beta), float(gamma), float(delta))
        return float(np.dot(weights, log_likelihood_array(params, x, t_x, T)))

    logger.info(
        "Fitting BG/BB model on %d customers (%d patterns) with %s",
        len(frame),
        len(patterns),
        config.method,
    )
    result = maximize_log_likelihood(
        total_log_likelihood,
        [config.initial_value] * 4,
        parameter_names=PARAMETER_NAMES,
        method=config.method,
        max_iterations=config.max_iterations,
        tolerance=config.tolerance,
        penalizer_coef=config.penalizer_coef,
        time_budget_seconds=config.time_budget_seconds,
        degenerate_strata=strata,
    )

    params = BGBBParams(*result.parameters)
    boundary = tuple(
        name
        for name, value in params.as_dict().items()
        if value < BOUNDARY_LOW or value > BOUNDARY_HIGH
    )
    if boundary:
        logger.warning(
            "BG/BB fit reached the parameter boundary for %s: %s",
            list(boundary),
            params.as_dict(),
        )

    diagnostics = BGBBDiagnostics(
        log_likelihood=result.log_likelihood,
        iterations=result.iterations,
        function_evaluations=result.function_evaluations,
        n_customers=len(frame),
        n_patterns=len(patterns),
        degenerate_strata=strata,
        degenerate_population=degenerate_population,
        boundary_parameters=boundary,
    )
    logger.info(
        "BG/BB fit: alpha=%.4f beta=%.4f gamma=%.4f delta=%.4f log-likelihood=%.4f",
        params.alpha,
        params.beta,
        params.gamma,
        params.delta,
        result.log_likelihood,
    )
    return params, diagnostics


class BGBBModelWrapper:
    """Stateful convenience wrapper around :func:`fit_bgbb`.

    Examples
    --------
    >>> import pandas as pd
    >>> from clv_engine.models.bg_bb import BGBBModelWrapper
    >>> data = pd.DataFrame({
    ...     'customer_id': ['C1', 'C2', 'C3', 'C4'],
    ...     'x': [2, 5, 0, 1],
    ...     't_x': [4, 6, 0, 2],
    ...     'T': [6, 6, 6, 6],
    ... })
    >>> wrapper = BGBBModelWrapper()
    >>> wrapper.fit(data)
    >>> wrapper.calculate_probability_alive(data).columns
    Index(['customer_id', 'prob_alive'], dtype='object')
    """

    def __init__(self, config: Optional[BGBBConfig] = None) -> None:
        self.config = config or BGBBConfig()
        self.params: Optional[BGBBParams] = None
        self.diagnostics: Optional[BGBBDiagnostics] = None

    def fit(self, data: pd.DataFrame) -> None:
        """Fit the model to a CBS DataFrame (customer_id, x, t_x, T)."""
        self.params, self.diagnostics = fit_bgbb(data, self.config)

    def _require_fitted(self, operation: str) -> BGBBParams:
        if self.params is None:
            raise RuntimeError(
                f"Model has not been fitted. Call fit() before {operation}()."
            )
        return self.params

    def calculate_probability_alive(self, data: pd.DataFrame) -> pd.DataFrame:
        """Return ``customer_id`` and ``prob_alive`` for every row of ``data``."""
        from clv_engine.models.bg_bb_expectations import p_alive_array

        params = self._require_fitted("calculate_probability_alive")
        validate_cbs_frame(data, allow_empty=True)
        if data.empty:
            return pd.DataFrame(columns=["customer_id", "prob_alive"])
        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "prob_alive": p_alive_array(params, data["x"], data["t_x"], data["T"]),
            }
        )

    def predict_dert(self, data: pd.DataFrame, discount_rate: float) -> pd.DataFrame:
        """Return ``customer_id`` and ``dert`` for every row of ``data``."""
        from clv_engine.models.bg_bb_expectations import dert_array

        params = self._require_fitted("predict_dert")
        validate_cbs_frame(data, allow_empty=True)
        if data.empty:
            return pd.DataFrame(columns=["customer_id", "dert"])
        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "dert": dert_array(
                    params, data["x"], data["t_x"], data["T"], discount_rate
                ),
            }
        )

    def predict_transactions(self, data: pd.DataFrame, n_periods: int) -> pd.DataFrame:
        """Return expected active periods in the next ``n_periods`` per customer."""
        from clv_engine.models.bg_bb_expectations import expected_transactions_array

        params = self._require_fitted("predict_transactions")
        validate_cbs_frame(data, allow_empty=True)
        if data.empty:
            return pd.DataFrame(columns=["customer_id", "predicted_transactions"])
        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "predicted_transactions": expected_transactions_array(
                    params, data["x"], data["t_x"], data["T"], n_periods
                ),
            }
        )
