"""Per-customer expectations under a fitted BG/BB model.

All functions are pure functions of the model parameters and a customer's
sufficient statistics ``(x, t_x, T)``. Each comes in a scalar form and an
``*_array`` form that evaluates whole populations, computing every distinct
pattern only once.

Quantities
----------
- ``p_alive``: probability the customer is alive at the start of period T + 1
- ``dert``: discounted expected residual transactions,
  Σ_{t≥1} e^{-rate·t} · P(transaction in period T + t)
- ``expected_transactions``: expected active periods in the next n periods
- ``probability_of_frequency``: P(X(n) = x) for a customer observed n periods

Everything is computed in log space (``betaln``/``logsumexp``) and converted
back to the probability scale at the very end.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence, Union

import numpy as np
from scipy.special import betaln, gammaln, hyp2f1, logsumexp

from clv_engine.errors import ValidationError
from clv_engine.models.bg_bb import BGBBParams, log_likelihood_array

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-12
DEFAULT_MAX_TERMS = 1_000_000
_CHUNK_SIZE = 4096

ArrayLike = Union[np.ndarray, Sequence[float], int, float]


def _validate_statistics(
    x: ArrayLike, t_x: ArrayLike, T: ArrayLike
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return float arrays after checking the caller contract."""
    arrays = []
    for name, values in (("x", x), ("t_x", t_x), ("T", T)):
        arr = np.atleast_1d(np.asarray(values, dtype=float))
        if np.isnan(arr).any():
            raise ValueError(f"{name} contains NaN values")
        if np.isinf(arr).any():
            raise ValueError(f"{name} contains infinite values")
        if (arr < 0).any():
            raise ValueError(f"{name} cannot be negative")
        if (arr % 1 != 0).any():
            raise ValidationError(f"{name} must be integer-valued")
        arrays.append(arr)
    x_arr, t_x_arr, T_arr = arrays
    if not (len(x_arr) == len(t_x_arr) == len(T_arr)):
        raise ValueError(
            f"x, t_x and T must have the same length: "
            f"{len(x_arr)}, {len(t_x_arr)}, {len(T_arr)}"
        )
    if (x_arr > t_x_arr).any():
        raise ValidationError("x cannot exceed t_x")
    if (t_x_arr > T_arr).any():
        raise ValidationError("t_x cannot exceed T")
    return x_arr, t_x_arr, T_arr


def _validate_discount_rate(discount_rate: float) -> float:
    rate = float(discount_rate)
    if math.isnan(rate) or math.isinf(rate) or rate < 0:
        raise ValueError(f"discount_rate must be finite and >= 0, got {discount_rate}")
    return rate


def _unique_patterns(
    x: np.ndarray, t_x: np.ndarray, T: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    stacked = np.stack([x, t_x, T], axis=1)
    patterns, inverse = np.unique(stacked, axis=0, return_inverse=True)
    return patterns, inverse.reshape(-1)


def _log_residual_prefactor(
    params: BGBBParams, x: np.ndarray, T: np.ndarray, log_l: np.ndarray
) -> np.ndarray:
    """ln of B(α+x+1, β+T-x)/B(α,β) / B(γ,δ) / L.

    Multiplied by B(γ, δ+T+t) this is the probability of a transaction in
    period T + t given the customer's history.
    """
    alpha, beta, gamma, delta = params.as_tuple()
    return (
        betaln(alpha + x + 1.0, beta + T - x)
        - betaln(alpha, beta)
        - betaln(gamma, delta)
        - log_l
    )


def p_alive_array(
    params: BGBBParams, x: ArrayLike, t_x: ArrayLike, T: ArrayLike
) -> np.ndarray:
    """Vectorized :func:`p_alive`."""
    x_arr, t_x_arr, T_arr = _validate_statistics(x, t_x, T)
    if x_arr.size == 0:
        return np.empty(0)
    alpha, beta, gamma, delta = params.as_tuple()
    patterns, inverse = _unique_patterns(x_arr, t_x_arr, T_arr)
    px, ptx, pT = patterns.T
    log_l = log_likelihood_array(params, px, ptx, pT)
    log_alive = (
        betaln(alpha + px, beta + pT - px)
        - betaln(alpha, beta)
        + betaln(gamma, delta + pT + 1.0)
        - betaln(gamma, delta)
    )
    values = np.clip(np.exp(log_alive - log_l), 0.0, 1.0)
    return values[inverse]


def p_alive(params: BGBBParams, x: int, t_x: int, T: int) -> float:
    """Probability that a customer is alive at the start of period T + 1.

    For a customer active in every period (x = t_x = T) this reduces exactly
    to (δ + T) / (γ + δ + T).

    Examples
    --------
    >>> params = BGBBParams(1.204, 0.750, 0.657, 2.783)
    >>> round(p_alive(params, 6, 6, 6), 2)
    0.93
    """
    return float(p_alive_array(params, x, t_x, T)[0])


def _log_dert_pattern(
    params: BGBBParams,
    T: float,
    log_prefactor: float,
    rate: float,
    tolerance: float,
    max_terms: int,
) -> float:
    _, _, gamma, delta = params.as_tuple()
    log_first = betaln(gamma, delta + T + 1.0)

    if rate == 0.0:
        # Σ_{t≥1} B(γ, δ+T+t) = B(γ, δ+T+1)·(γ+δ+T)/(γ-1), finite only for γ > 1
        if gamma <= 1.0:
            return math.inf
        return log_prefactor + log_first + math.log((gamma + delta + T) / (gamma - 1.0))

    # Consecutive terms shrink by at least e^{-rate}, so the tail after a term
    # is bounded by term·z/(1-z).
    log_tail_factor = -rate - math.log(-math.expm1(-rate))
    log_tolerance = math.log(tolerance)
    log_total = -math.inf
    start = 1
    while start <= max_terms:
        t = np.arange(start, min(start + _CHUNK_SIZE, max_terms + 1), dtype=float)
        log_terms = betaln(gamma, delta + T + t) - rate * t
        log_total = float(np.logaddexp(log_total, logsumexp(log_terms)))
        if log_terms[-1] + log_tail_factor < log_total + log_tolerance:
            return log_prefactor + log_total
        start += len(t)

    logger.debug(
        "DERT series did not reach tolerance within %d terms (rate=%g); "
        "using hypergeometric closed form",
        max_terms,
        rate,
    )
    z = math.exp(-rate)
    series = hyp2f1(1.0, delta + T + 1.0, gamma + delta + T + 1.0, z)
    return log_prefactor + log_first - rate + math.log(series)


def dert_array(
    params: BGBBParams,
    x: ArrayLike,
    t_x: ArrayLike,
    T: ArrayLike,
    discount_rate: float,
    tolerance: float = DEFAULT_TOLERANCE,
    max_terms: int = DEFAULT_MAX_TERMS,
) -> np.ndarray:
    """Vectorized :func:`dert`."""
    rate = _validate_discount_rate(discount_rate)
    if not 0 < tolerance < 1:
        raise ValueError(f"tolerance must be in (0, 1), got {tolerance}")
    if max_terms < 1:
        raise ValueError(f"max_terms must be >= 1, got {max_terms}")
    x_arr, t_x_arr, T_arr = _validate_statistics(x, t_x, T)
    if x_arr.size == 0:
        return np.empty(0)

    patterns, inverse = _unique_patterns(x_arr, t_x_arr, T_arr)
    px, ptx, pT = patterns.T
    log_l = log_likelihood_array(params, px, ptx, pT)
    log_prefactor = _log_residual_prefactor(params, px, pT, log_l)

    values = np.array(
        [
            math.exp(
                _log_dert_pattern(params, T_i, pre_i, rate, tolerance, max_terms)
            )
            if math.isfinite(pre_i)
            else 0.0
            for T_i, pre_i in zip(pT, log_prefactor)
        ]
    )
    return values[inverse]


def dert(
    params: BGBBParams,
    x: int,
    t_x: int,
    T: int,
    discount_rate: float,
    tolerance: float = DEFAULT_TOLERANCE,
    max_terms: int = DEFAULT_MAX_TERMS,
) -> float:
    """Discounted expected residual transactions of one customer.

    Future period T + t is weighted by exp(-discount_rate · t). The infinite
    series is summed in chunks until the remaining tail is provably below
    ``tolerance`` relative to the running total.

    With ``discount_rate == 0`` the undiscounted expectation is returned in
    closed form; it is infinite when γ <= 1 (dropout probabilities too close
    to zero for the expected lifetime to exist).

    ``x = t_x = T = 0`` gives the DERT of a newly acquired customer.

    Raises
    ------
    ValueError:
        For NaN or negative inputs or a negative discount rate
    ValidationError:
        For statistics violating ``x <= t_x <= T``
    """
    return float(
        dert_array(params, x, t_x, T, discount_rate, tolerance, max_terms)[0]
    )


def expected_transactions_array(
    params: BGBBParams,
    x: ArrayLike,
    t_x: ArrayLike,
    T: ArrayLike,
    n_periods: int,
) -> np.ndarray:
    """Vectorized :func:`expected_transactions`."""
    if int(n_periods) != n_periods or n_periods < 0:
        raise ValueError(f"n_periods must be a non-negative integer, got {n_periods}")
    x_arr, t_x_arr, T_arr = _validate_statistics(x, t_x, T)
    if x_arr.size == 0:
        return np.empty(0)
    if n_periods == 0:
        return np.zeros(x_arr.size)

    _, _, gamma, delta = params.as_tuple()
    patterns, inverse = _unique_patterns(x_arr, t_x_arr, T_arr)
    px, ptx, pT = patterns.T
    log_l = log_likelihood_array(params, px, ptx, pT)
    log_prefactor = _log_residual_prefactor(params, px, pT, log_l)

    t = np.arange(1, int(n_periods) + 1, dtype=float)[None, :]
    log_terms = betaln(gamma, delta + pT[:, None] + t)
    values = np.exp(log_prefactor + logsumexp(log_terms, axis=1))
    return values[inverse]


def expected_transactions(
    params: BGBBParams, x: int, t_x: int, T: int, n_periods: int
) -> float:
    """Expected number of active periods among periods T+1 .. T+n_periods.

    With ``x = t_x = T = 0`` this is the unconditional expectation E[X(n)] for
    a newly acquired customer.
    """
    return float(expected_transactions_array(params, x, t_x, T, n_periods)[0])


def _log_comb(n: np.ndarray, k: np.ndarray) -> np.ndarray:
    return gammaln(n + 1.0) - gammaln(k + 1.0) - gammaln(n - k + 1.0)


def probability_of_frequency_array(params: BGBBParams, n: int) -> np.ndarray:
    """P(X(n) = k) for k = 0..n, as an array of length n + 1."""
    if int(n) != n or n < 0:
        raise ValueError(f"n must be a non-negative integer, got {n}")
    n = int(n)
    alpha, beta, gamma, delta = params.as_tuple()
    k = np.arange(n + 1, dtype=float)
    log_norm = betaln(alpha, beta) + betaln(gamma, delta)

    log_alive = (
        _log_comb(float(n), k)
        + betaln(alpha + k, beta + n - k)
        + betaln(gamma, delta + n)
        - log_norm
    )
    if n == 0:
        return np.exp(log_alive)

    # Dropout after period i (k <= i <= n - 1) with k transactions in i periods.
    i = np.arange(n, dtype=float)[None, :]
    kk = k[:, None]
    valid = i >= kk
    safe_i = np.where(valid, i, kk)
    log_died = (
        _log_comb(safe_i, kk)
        + betaln(alpha + kk, beta + safe_i - kk)
        + betaln(gamma + 1.0, delta + safe_i)
        - log_norm
    )
    log_died = np.where(valid, log_died, -np.inf)
    combined = np.concatenate([log_alive[:, None], log_died], axis=1)
    return np.exp(logsumexp(combined, axis=1))


def probability_of_frequency(params: BGBBParams, x: int, n: int) -> float:
    """Probability that a customer observed for ``n`` periods repeats ``x`` times."""
    if int(x) != x or x < 0:
        raise ValueError(f"x must be a non-negative integer, got {x}")
    if x > n:
        return 0.0
    return float(probability_of_frequency_array(params, n)[int(x)])
