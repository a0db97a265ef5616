"""Gamma-Gamma model for the expected value of a transaction period.

The Gamma-Gamma model (Fader, Hardie & Lee, 2005) assumes each customer has a
latent mean spend ζ, with individual period spends varying randomly around it:

- Period spend z ~ Gamma(p, ν) for a customer with scale parameter ν
- ν across customers ~ Gamma(q, γ)
- The mean of ``count`` periods therefore has a closed-form marginal likelihood

Key assumptions:
- Spend is independent of the transaction process (BG/BB)
- Customer mean spend follows an inverse-gamma shaped distribution with
  population mean p·γ / (q - 1), which only exists for q > 1

Inputs are ``(mean_value, count)`` per customer as produced by
:func:`~clv_engine.models.model_prep.prepare_spend_inputs`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.special import gammaln

from clv_engine.errors import DomainError, ValidationError
from clv_engine.models.model_prep import SPEND_COLUMNS, SpendInput, validate_spend_frame
from clv_engine.models.optimizer import maximize_log_likelihood

logger = logging.getLogger(__name__)

PARAMETER_NAMES = ("p", "q", "gamma")

# Shape used for the closed-form fit of a population without spend variance.
DEGENERATE_SHAPE = 1e6

SpendData = Union[pd.DataFrame, Sequence[SpendInput]]


@dataclass(frozen=True)
class SpendParams:
    """Fitted Gamma-Gamma parameters.

    Attributes
    ----------
    p:
        Shape of the per-period spend distribution
    q:
        Shape of the across-customer scale distribution
    gamma:
        Scale of the across-customer scale distribution
    """

    p: float
    q: float
    gamma: float

    def __post_init__(self) -> None:
        for name in PARAMETER_NAMES:
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise DomainError(
                    f"Gamma-Gamma parameter {name} must be positive and finite, got {value}",
                    parameter=name,
                    value=value,
                )

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.p, self.q, self.gamma)

    def as_dict(self) -> dict[str, float]:
        return dict(zip(PARAMETER_NAMES, self.as_tuple()))

    @property
    def population_mean(self) -> float:
        """Expected spend of an arbitrary customer, p·γ / (q - 1).

        Raises
        ------
        DomainError:
            If q <= 1, where the population mean does not exist
        """
        if self.q <= 1:
            raise DomainError(
                f"Population mean spend requires q > 1, got q={self.q}",
                parameter="q",
                value=self.q,
            )
        return self.p * self.gamma / (self.q - 1.0)


@dataclass
class GammaGammaConfig:
    """Configuration for Gamma-Gamma maximum-likelihood estimation.

    Attributes
    ----------
    method:
        ``scipy.optimize.minimize`` method used on the log-parameters
    max_iterations:
        Iteration cap; reaching it raises ConvergenceError
    tolerance:
        Optimizer convergence tolerance
    initial_value:
        Starting value for p, q and γ
    penalizer_coef:
        L2 penalty on the parameters (0 for plain maximum likelihood)
    time_budget_seconds:
        Optional wall-clock budget for one fit
    min_count:
        Customers with fewer active periods are left out of the fit
    """

    method: str = "Nelder-Mead"
    max_iterations: int = 10_000
    tolerance: float = 1e-6
    initial_value: float = 1.0
    penalizer_coef: float = 0.0
    time_budget_seconds: Optional[float] = None
    min_count: int = 1


@dataclass(frozen=True)
class SpendDiagnostics:
    """Diagnostics of a Gamma-Gamma fit.

    ``degenerate`` is True when all mean values were identical and the
    closed-form boundary solution was returned instead of an optimizer run.
    ``population_mean_defined`` is False when the fit ended with q <= 1, in
    which case :func:`expected_spend` raises :class:`DomainError`.
    """

    log_likelihood: float
    iterations: int
    function_evaluations: int
    n_customers: int
    n_excluded: int
    degenerate: bool
    population_mean_defined: bool = True


def as_spend_frame(data: SpendData, allow_empty: bool = False) -> pd.DataFrame:
    """Return validated spend inputs as a DataFrame."""
    if isinstance(data, pd.DataFrame):
        validate_spend_frame(data, allow_empty=allow_empty)
        return data
    rows = list(data)
    frame = pd.DataFrame(
        {
            "customer_id": [row.customer_id for row in rows],
            "mean_value": [float(row.mean_value) for row in rows],
            "count": [int(row.count) for row in rows],
        },
        columns=SPEND_COLUMNS,
    )
    validate_spend_frame(frame, allow_empty=allow_empty)
    return frame


def spend_log_likelihood_array(
    params: SpendParams, mean_value: np.ndarray, count: np.ndarray
) -> np.ndarray:
    """Per-customer log-likelihood of an observed mean over ``count`` periods."""
    p, q, gamma = params.as_tuple()
    m = np.asarray(mean_value, dtype=float)
    x = np.asarray(count, dtype=float)
    px = p * x
    return (
        gammaln(px + q)
        - gammaln(px)
        - gammaln(q)
        + q * np.log(gamma)
        + (px - 1.0) * np.log(m)
        + px * np.log(x)
        - (px + q) * np.log(x * m + gamma)
    )


def spend_log_likelihood(params: SpendParams, spend: SpendData) -> float:
    """Total log-likelihood of a spend population under ``params``."""
    frame = as_spend_frame(spend)
    return float(
        np.sum(
            spend_log_likelihood_array(
                params,
                frame["mean_value"].to_numpy(dtype=float),
                frame["count"].to_numpy(dtype=float),
            )
        )
    )


def fit_spend(
    spend: SpendData, config: Optional[GammaGammaConfig] = None
) -> tuple[SpendParams, SpendDiagnostics]:
    """Fit the Gamma-Gamma model by maximum likelihood.

    When every customer has the same mean value there is no spread to estimate
    and the likelihood increases without bound as p grows. In that case the
    limit is returned in closed form (p = 1e6, q = p + 1, γ = m), which puts
    the population mean exactly on the common value, and the diagnostics flag
    the fit as degenerate.

    Raises
    ------
    ValidationError:
        If the inputs are malformed, or no customer reaches ``min_count``
    ConvergenceError:
        If the optimizer fails
    """
    config = config or GammaGammaConfig()
    if config.min_count < 1:
        raise ValidationError(f"min_count must be >= 1, got {config.min_count}")
    frame = as_spend_frame(spend)

    included = frame[frame["count"] >= config.min_count]
    n_excluded = len(frame) - len(included)
    if n_excluded:
        logger.warning(
            "Excluded %d customers with count < %d from the spend fit",
            n_excluded,
            config.min_count,
        )
    if included.empty:
        raise ValidationError(
            f"No customers with count >= {config.min_count} to fit the spend model"
        )

    m = included["mean_value"].to_numpy(dtype=float)
    x = included["count"].to_numpy(dtype=float)

    if np.all(m == m[0]):
        params = SpendParams(
            p=DEGENERATE_SHAPE, q=DEGENERATE_SHAPE + 1.0, gamma=float(m[0])
        )
        logger.warning(
            "All %d spend means equal %.4f; returning the degenerate closed-form fit",
            len(included),
            m[0],
        )
        diagnostics = SpendDiagnostics(
            log_likelihood=float(np.sum(spend_log_likelihood_array(params, m, x))),
            iterations=0,
            function_evaluations=0,
            n_customers=len(included),
            n_excluded=n_excluded,
            degenerate=True,
            population_mean_defined=True,
        )
        return params, diagnostics

    def total_log_likelihood(values: np.ndarray) -> float:
        if not np.all(np.isfinite(values)) or np.any(values <= 0):
            return -np.inf
        p, q, gamma = values
        params = SpendParams(float(p), float(q), float(gamma))
        return float(np.sum(spend_log_likelihood_array(params, m, x)))

    logger.info(
        "Fitting Gamma-Gamma model on %d customers with %s",
        len(included),
        config.method,
    )
    result = maximize_log_likelihood(
        total_log_likelihood,
        [config.initial_value] * 3,
        parameter_names=PARAMETER_NAMES,
        method=config.method,
        max_iterations=config.max_iterations,
        tolerance=config.tolerance,
        penalizer_coef=config.penalizer_coef,
        time_budget_seconds=config.time_budget_seconds,
    )
    params = SpendParams(*result.parameters)
    if params.q <= 1:
        logger.warning(
            "Gamma-Gamma fit has q=%.4f <= 1; expected spend is undefined", params.q
        )
    logger.info(
        "Gamma-Gamma fit: p=%.4f q=%.4f gamma=%.4f log-likelihood=%.4f",
        params.p,
        params.q,
        params.gamma,
        result.log_likelihood,
    )
    diagnostics = SpendDiagnostics(
        log_likelihood=result.log_likelihood,
        iterations=result.iterations,
        function_evaluations=result.function_evaluations,
        n_customers=len(included),
        n_excluded=n_excluded,
        degenerate=False,
        population_mean_defined=params.q > 1,
    )
    return params, diagnostics


def expected_spend_array(
    params: SpendParams, mean_value: np.ndarray, count: np.ndarray
) -> np.ndarray:
    """Vectorized :func:`expected_spend`."""
    population_mean = params.population_mean
    m = np.atleast_1d(np.asarray(mean_value, dtype=float))
    x = np.atleast_1d(np.asarray(count, dtype=float))
    if np.isnan(m).any() or np.isnan(x).any():
        raise ValueError("mean_value and count cannot be NaN")
    if (m < 0).any() or (x < 0).any():
        raise ValueError("mean_value and count cannot be negative")

    p, q, gamma = params.as_tuple()
    # p(γ + x·m) / (p·x + q - 1) is w·E[value] + (1 - w)·m with
    # w = (q - 1) / (p·x + q - 1); at x = 0 it is the population mean.
    observed = np.where(x > 0, m, 0.0)
    values = p * (gamma + x * observed) / (p * x + q - 1.0)
    return np.where(x > 0, values, population_mean)


def expected_spend(params: SpendParams, mean_value: float, count: int) -> float:
    """Expected spend per active period for one customer.

    Shrinks the observed ``mean_value`` towards the population mean p·γ/(q-1);
    customers with more active periods keep more of their own mean. ``count``
    of 0 returns the population mean. Customers with a single active period
    are not special-cased: they get the largest weight on the population mean,
    (q-1)/(p+q-1), which is the Gamma-Gamma conditional expectation given one
    observation.

    Raises
    ------
    DomainError:
        If q <= 1 (``parameter`` is ``"q"``)
    ValueError:
        For NaN or negative inputs
    """
    return float(expected_spend_array(params, mean_value, count)[0])


class GammaGammaModelWrapper:
    """Stateful convenience wrapper around :func:`fit_spend`.

    Examples
    --------
    >>> import pandas as pd
    >>> from clv_engine.models.gamma_gamma import GammaGammaModelWrapper
    >>> data = pd.DataFrame({
    ...     'customer_id': ['C1', 'C2', 'C3'],
    ...     'mean_value': [50.0, 75.0, 30.0],
    ...     'count': [3, 5, 2],
    ... })
    >>> wrapper = GammaGammaModelWrapper()
    >>> wrapper.fit(data)
    >>> wrapper.predict_spend(data).columns
    Index(['customer_id', 'predicted_spend'], dtype='object')
    """

    def __init__(self, config: Optional[GammaGammaConfig] = None) -> None:
        self.config = config or GammaGammaConfig()
        self.params: Optional[SpendParams] = None
        self.diagnostics: Optional[SpendDiagnostics] = None

    def fit(self, data: pd.DataFrame) -> None:
        """Fit the model to spend inputs (customer_id, mean_value, count)."""
        self.params, self.diagnostics = fit_spend(data, self.config)

    def predict_spend(self, data: pd.DataFrame) -> pd.DataFrame:
        """Predict expected spend per active period for every row of ``data``.

        Raises
        ------
        RuntimeError:
            If the model has not been fitted yet
        DomainError:
            If the fitted q <= 1
        """
        if self.params is None:
            raise RuntimeError(
                "Model has not been fitted. Call fit() before predict_spend()."
            )
        validate_spend_frame(data, allow_empty=True)
        if data.empty:
            return pd.DataFrame(columns=["customer_id", "predicted_spend"])
        return pd.DataFrame(
            {
                "customer_id": data["customer_id"].values,
                "predicted_spend": expected_spend_array(
                    self.params, data["mean_value"], data["count"]
                ),
            }
        )
