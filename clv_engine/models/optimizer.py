"""Maximum-likelihood optimizer shared by the BG/BB and Gamma-Gamma fits.

Both models have strictly positive parameters. The optimizer therefore works
on the log-transformed parameters, which turns the problem into an
unconstrained minimisation of the negative log-likelihood that
``scipy.optimize.minimize`` can handle with any of its general-purpose methods.

Failures are never swallowed: a non-converged run, a non-finite optimum, or an
exhausted time budget raise :class:`~clv_engine.errors.ConvergenceError`
carrying the last likelihood value, the iteration count and the last
parameters visited.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np
from scipy.optimize import minimize

from clv_engine.errors import ConvergenceError

logger = logging.getLogger(__name__)

LogLikelihood = Callable[[np.ndarray], float]


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of a successful maximum-likelihood run.

    Attributes
    ----------
    parameters:
        Optimal parameters on the natural (positive) scale
    log_likelihood:
        Log-likelihood at the optimum, without the penalty term
    iterations:
        Optimizer iterations used
    function_evaluations:
        Objective evaluations used
    message:
        Termination message reported by scipy
    """

    parameters: tuple[float, ...]
    log_likelihood: float
    iterations: int
    function_evaluations: int
    message: str


class _BudgetExceeded(Exception):
    pass


def maximize_log_likelihood(
    log_likelihood: LogLikelihood,
    initial_parameters: Sequence[float],
    *,
    parameter_names: Sequence[str],
    method: str = "Nelder-Mead",
    max_iterations: int = 10_000,
    tolerance: float = 1e-6,
    penalizer_coef: float = 0.0,
    time_budget_seconds: Optional[float] = None,
    degenerate_strata: Sequence[int] = (),
) -> OptimizationResult:
    """Maximise ``log_likelihood`` over strictly positive parameters.

    Parameters
    ----------
    log_likelihood:
        Function of the natural-scale parameter vector returning the total
        log-likelihood
    initial_parameters:
        Positive starting values
    parameter_names:
        Names used in error messages and diagnostics
    method:
        Any ``scipy.optimize.minimize`` method (default: Nelder-Mead)
    max_iterations:
        Iteration cap; reaching it is a convergence failure
    tolerance:
        Convergence tolerance passed to scipy as ``tol``
    penalizer_coef:
        L2 penalty on the natural-scale parameters (0 disables it)
    time_budget_seconds:
        Optional wall-clock budget; exceeding it is a convergence failure
    degenerate_strata:
        Passed through to :class:`ConvergenceError` for caller diagnostics

    Raises
    ------
    ConvergenceError:
        If the optimizer does not converge, the optimum is non-finite, or the
        time budget is exhausted
    ValueError:
        If the initial parameters are not strictly positive
    """
    x0 = np.asarray(initial_parameters, dtype=float)
    if x0.shape != (len(parameter_names),):
        raise ValueError(
            f"Expected {len(parameter_names)} initial parameters, got {x0.shape}"
        )
    if not np.all(np.isfinite(x0)) or np.any(x0 <= 0):
        raise ValueError(f"Initial parameters must be positive and finite: {x0}")

    deadline = (
        time.monotonic() + time_budget_seconds
        if time_budget_seconds is not None
        else None
    )
    state = {
        "iterations": 0,
        "evaluations": 0,
        "log_likelihood": float("nan"),
        "theta": np.log(x0),
    }

    def objective(theta: np.ndarray) -> float:
        if deadline is not None and time.monotonic() > deadline:
            raise _BudgetExceeded()
        state["evaluations"] += 1
        state["theta"] = theta
        # Simplex steps can wander far out in log space; overflow there just
        # means the point is rejected.
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            params = np.exp(theta)
            value = float(log_likelihood(params))
        state["log_likelihood"] = value
        if not np.isfinite(value):
            return np.inf
        if penalizer_coef:
            return -value + penalizer_coef * float(np.sum(params**2))
        return -value

    def count_iteration(theta: np.ndarray) -> None:
        state["iterations"] += 1

    def named(theta: np.ndarray) -> dict[str, float]:
        return dict(zip(parameter_names, np.exp(theta).tolist()))

    try:
        result = minimize(
            objective,
            np.log(x0),
            method=method,
            tol=tolerance,
            options={"maxiter": max_iterations},
            callback=count_iteration,
        )
    except _BudgetExceeded:
        raise ConvergenceError(
            f"Optimization exceeded time budget of {time_budget_seconds}s "
            f"after {state['evaluations']} likelihood evaluations",
            log_likelihood=state["log_likelihood"],
            iterations=state["iterations"],
            parameters=named(state["theta"]),
            degenerate_strata=degenerate_strata,
        ) from None

    iterations = int(getattr(result, "nit", 0) or state["iterations"])
    evaluations = int(getattr(result, "nfev", state["evaluations"]) or 0)
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        best_params = np.exp(result.x)
        best_ll = float(log_likelihood(best_params))

    if not np.isfinite(best_ll):
        raise ConvergenceError(
            "Optimization produced a non-finite log-likelihood",
            log_likelihood=best_ll,
            iterations=iterations,
            parameters=named(result.x),
            degenerate_strata=degenerate_strata,
        )
    if not result.success:
        raise ConvergenceError(
            f"Optimization did not converge ({method}): {result.message}",
            log_likelihood=best_ll,
            iterations=iterations,
            parameters=named(result.x),
            degenerate_strata=degenerate_strata,
        )

    logger.debug(
        "%s converged after %d iterations (%d evaluations), log-likelihood=%.6f",
        method,
        iterations,
        evaluations,
        best_ll,
    )
    return OptimizationResult(
        parameters=tuple(float(v) for v in best_params),
        log_likelihood=best_ll,
        iterations=iterations,
        function_evaluations=evaluations,
        message=str(result.message),
    )
