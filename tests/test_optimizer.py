"""Tests for the shared maximum-likelihood optimizer."""

import time

import numpy as np
import pytest

from clv_engine.errors import ConvergenceError
from clv_engine.models.optimizer import maximize_log_likelihood


def gaussian_log_likelihood(center):
    """Concave log-likelihood with its maximum at ``center``."""
    center = np.asarray(center, dtype=float)

    def ll(params):
        return -float(np.sum((np.log(params) - np.log(center)) ** 2))

    return ll


class TestMaximizeLogLikelihood:
    """Test maximize_log_likelihood()."""

    def test_finds_maximum(self):
        result = maximize_log_likelihood(
            gaussian_log_likelihood([2.0, 0.5]),
            [1.0, 1.0],
            parameter_names=("a", "b"),
            tolerance=1e-10,
        )
        assert result.parameters == pytest.approx((2.0, 0.5), rel=1e-3)
        assert result.log_likelihood == pytest.approx(0.0, abs=1e-6)
        assert result.iterations > 0
        assert result.function_evaluations >= result.iterations

    def test_gradient_method(self):
        result = maximize_log_likelihood(
            gaussian_log_likelihood([3.0]),
            [1.0],
            parameter_names=("a",),
            method="L-BFGS-B",
        )
        assert result.parameters[0] == pytest.approx(3.0, rel=1e-3)

    def test_penalizer_shrinks_parameters(self):
        plain = maximize_log_likelihood(
            gaussian_log_likelihood([5.0]), [1.0], parameter_names=("a",)
        )
        penalized = maximize_log_likelihood(
            gaussian_log_likelihood([5.0]),
            [1.0],
            parameter_names=("a",),
            penalizer_coef=1.0,
        )
        assert penalized.parameters[0] < plain.parameters[0]

    def test_iteration_cap_raises_convergence_error(self):
        """Hitting the iteration cap is a failure, not a silent result."""
        with pytest.raises(ConvergenceError) as exc_info:
            maximize_log_likelihood(
                gaussian_log_likelihood([50.0, 0.01, 7.0]),
                [1.0, 1.0, 1.0],
                parameter_names=("a", "b", "c"),
                max_iterations=2,
            )
        error = exc_info.value
        assert set(error.parameters) == {"a", "b", "c"}
        assert error.iterations <= 2

    def test_non_finite_likelihood_raises(self):
        with pytest.raises(ConvergenceError, match="non-finite"):
            maximize_log_likelihood(
                lambda params: float("nan"),
                [1.0],
                parameter_names=("a",),
                max_iterations=50,
            )

    def test_time_budget_raises(self):
        def slow_log_likelihood(params):
            time.sleep(0.01)
            return -float(np.sum(np.log(params) ** 2))

        with pytest.raises(ConvergenceError, match="time budget") as exc_info:
            maximize_log_likelihood(
                slow_log_likelihood,
                [1.0],
                parameter_names=("a",),
                time_budget_seconds=0.001,
                degenerate_strata=(3, 5),
            )
        assert exc_info.value.degenerate_strata == (3, 5)

    def test_invalid_initial_parameters(self):
        with pytest.raises(ValueError, match="positive"):
            maximize_log_likelihood(
                gaussian_log_likelihood([2.0]), [0.0], parameter_names=("a",)
            )
        with pytest.raises(ValueError, match="Expected 2"):
            maximize_log_likelihood(
                gaussian_log_likelihood([2.0, 1.0]), [1.0], parameter_names=("a", "b")
            )

    def test_time_budget_reports_iterations_not_evaluations(self):
        calls = {"n": 0}

        def slows_down(params):
            calls["n"] += 1
            if calls["n"] > 30:
                time.sleep(0.05)
            return -float(np.sum((np.log(params) - np.log(50.0)) ** 2))

        with pytest.raises(ConvergenceError, match="likelihood evaluations") as exc_info:
            maximize_log_likelihood(
                slows_down,
                [1.0],
                parameter_names=("a",),
                tolerance=1e-14,
                time_budget_seconds=0.5,
            )
        assert 0 < exc_info.value.iterations < calls["n"]
