"""Tests for the Gamma-Gamma spend model."""

import logging
import random

import numpy as np
import pandas as pd
import pytest

from clv_engine.errors import DomainError, ValidationError
from clv_engine.models.gamma_gamma import (
    GammaGammaConfig,
    GammaGammaModelWrapper,
    SpendParams,
    expected_spend,
    expected_spend_array,
    fit_spend,
    spend_log_likelihood,
)
from clv_engine.models.model_prep import SpendInput

TRUE_PARAMS = SpendParams(p=6.0, q=4.0, gamma=15.0)


def spend_frame(rows):
    return pd.DataFrame(rows, columns=["customer_id", "mean_value", "count"])


@pytest.fixture(scope="module")
def simulated_spend():
    """Means of 1-6 period spends drawn from the Gamma-Gamma model."""
    rng = random.Random(11)
    rows = []
    for i in range(1500):
        nu = rng.gammavariate(TRUE_PARAMS.q, 1.0 / TRUE_PARAMS.gamma)
        count = 1 + rng.randrange(6)
        total = sum(rng.gammavariate(TRUE_PARAMS.p, 1.0 / nu) for _ in range(count))
        rows.append([f"C{i}", total / count, count])
    return spend_frame(rows)


class TestSpendParams:
    """Test SpendParams value object."""

    def test_population_mean(self):
        assert TRUE_PARAMS.population_mean == pytest.approx(6.0 * 15.0 / 3.0)

    @pytest.mark.parametrize("q", [1.0, 0.5])
    def test_population_mean_requires_q_above_one(self, q):
        params = SpendParams(p=2.0, q=q, gamma=3.0)
        with pytest.raises(DomainError) as exc_info:
            params.population_mean
        assert exc_info.value.parameter == "q"
        assert exc_info.value.value == q

    def test_non_positive_parameter_raises(self):
        with pytest.raises(DomainError, match="gamma"):
            SpendParams(p=1.0, q=2.0, gamma=0.0)


class TestGammaGammaConfig:
    """Test GammaGammaConfig dataclass."""

    def test_default_config(self):
        config = GammaGammaConfig()
        assert config.method == "Nelder-Mead"
        assert config.min_count == 1
        assert config.max_iterations == 10_000


class TestExpectedSpend:
    """Test expected_spend()."""

    def test_weighted_average_form(self):
        """Expected spend = w·E[value] + (1-w)·mean with w = (q-1)/(p·x+q-1)."""
        p, q, gamma = TRUE_PARAMS.as_tuple()
        mean_value, count = 42.0, 3
        w = (q - 1) / (p * count + q - 1)
        expected = w * TRUE_PARAMS.population_mean + (1 - w) * mean_value
        assert expected_spend(TRUE_PARAMS, mean_value, count) == pytest.approx(expected)

    def test_single_period_leans_on_population_mean(self):
        """count = 1 is the conditional expectation with weight (q-1)/(p+q-1)."""
        p, q, _ = TRUE_PARAMS.as_tuple()
        w = (q - 1) / (p + q - 1)
        value = expected_spend(TRUE_PARAMS, 80.0, 1)
        assert value == pytest.approx(w * 30.0 + (1 - w) * 80.0)
        assert abs(value - 30.0) < abs(expected_spend(TRUE_PARAMS, 80.0, 2) - 30.0)

    def test_zero_count_falls_back_to_population_mean(self):
        assert expected_spend(TRUE_PARAMS, 0.0, 0) == pytest.approx(30.0)

    def test_more_periods_trust_own_mean_more(self):
        low = expected_spend(TRUE_PARAMS, 80.0, 1)
        high = expected_spend(TRUE_PARAMS, 80.0, 20)
        assert 30.0 < low < high < 80.0

    def test_q_at_most_one_raises_domain_error(self):
        with pytest.raises(DomainError) as exc_info:
            expected_spend(SpendParams(p=2.0, q=0.9, gamma=3.0), 10.0, 2)
        assert exc_info.value.parameter == "q"

    def test_negative_inputs_raise(self):
        with pytest.raises(ValueError, match="negative"):
            expected_spend(TRUE_PARAMS, -1.0, 2)

    def test_array(self):
        values = expected_spend_array(TRUE_PARAMS, [10.0, 0.0], [2, 0])
        assert values[0] == pytest.approx(expected_spend(TRUE_PARAMS, 10.0, 2))
        assert values[1] == pytest.approx(30.0)


class TestFitSpend:
    """Test fit_spend()."""

    def test_fit_reaches_at_least_true_likelihood(self, simulated_spend):
        params, diagnostics = fit_spend(simulated_spend)
        true_ll = spend_log_likelihood(TRUE_PARAMS, simulated_spend)
        assert diagnostics.log_likelihood >= true_ll - 1e-6
        assert not diagnostics.degenerate
        assert diagnostics.n_customers == len(simulated_spend)
        assert diagnostics.population_mean_defined

    def test_fit_recovers_population_mean(self, simulated_spend):
        params, _ = fit_spend(simulated_spend)
        observed = float(
            np.average(simulated_spend["mean_value"], weights=simulated_spend["count"])
        )
        assert params.population_mean == pytest.approx(observed, rel=0.15)

    def test_identical_rows_population_mean_equals_common_mean(self, caplog):
        """No spread in means gives the closed-form degenerate fit."""
        frame = spend_frame([[f"C{i}", 25.0, 1 + i % 4] for i in range(50)])
        with caplog.at_level(logging.WARNING, logger="clv_engine.models.gamma_gamma"):
            params, diagnostics = fit_spend(frame)
        assert params.population_mean == pytest.approx(25.0, rel=1e-12)
        assert expected_spend(params, 25.0, 3) == pytest.approx(25.0, rel=1e-12)
        assert diagnostics.degenerate
        assert "degenerate" in caplog.text
        assert diagnostics.population_mean_defined

    def test_heavy_tailed_spend_flags_undefined_population_mean(self, caplog):
        """q below 1 has no population mean; the diagnostics say so up front."""
        heavy = SpendParams(p=4.0, q=0.6, gamma=10.0)
        rng = random.Random(5)
        rows = []
        for i in range(2000):
            nu = rng.gammavariate(heavy.q, 1.0 / heavy.gamma)
            count = 1 + rng.randrange(6)
            total = sum(rng.gammavariate(heavy.p, 1.0 / nu) for _ in range(count))
            rows.append([f"C{i}", total / count, count])
        with caplog.at_level(logging.WARNING, logger="clv_engine.models.gamma_gamma"):
            params, diagnostics = fit_spend(spend_frame(rows))
        assert params.q <= 1
        assert not diagnostics.population_mean_defined
        assert "expected spend is undefined" in caplog.text
        with pytest.raises(DomainError):
            expected_spend(params, 10.0, 2)

    def test_min_count_excludes_customers(self, simulated_spend, caplog):
        with caplog.at_level(logging.WARNING, logger="clv_engine.models.gamma_gamma"):
            _, diagnostics = fit_spend(simulated_spend, GammaGammaConfig(min_count=2))
        excluded = int((simulated_spend["count"] < 2).sum())
        assert diagnostics.n_excluded == excluded
        assert diagnostics.n_customers == len(simulated_spend) - excluded
        assert "Excluded" in caplog.text

    def test_no_customer_reaches_min_count(self):
        frame = spend_frame([["C1", 10.0, 1], ["C2", 12.0, 1]])
        with pytest.raises(ValidationError, match="No customers"):
            fit_spend(frame, GammaGammaConfig(min_count=3))

    def test_non_positive_mean_raises(self):
        with pytest.raises(ValidationError, match="mean_value"):
            fit_spend(spend_frame([["C1", 0.0, 2], ["C2", 12.0, 1]]))

    def test_accepts_spend_inputs(self):
        rows = [SpendInput("C1", 20.0, 2), SpendInput("C2", 20.0, 1)]
        params, diagnostics = fit_spend(rows)
        assert diagnostics.degenerate
        assert params.population_mean == pytest.approx(20.0)


class TestGammaGammaModelWrapper:
    """Test GammaGammaModelWrapper class."""

    def test_initialization(self):
        wrapper = GammaGammaModelWrapper()
        assert wrapper.config == GammaGammaConfig()
        assert wrapper.params is None

    def test_predict_before_fit_raises(self):
        wrapper = GammaGammaModelWrapper()
        with pytest.raises(RuntimeError, match="not been fitted"):
            wrapper.predict_spend(spend_frame([["C1", 10.0, 2]]))

    def test_fit_missing_columns_raises(self):
        wrapper = GammaGammaModelWrapper()
        with pytest.raises(ValidationError, match="missing required columns"):
            wrapper.fit(pd.DataFrame({"customer_id": ["C1"]}))

    def test_fit_and_predict(self, simulated_spend):
        wrapper = GammaGammaModelWrapper()
        wrapper.fit(simulated_spend)
        predictions = wrapper.predict_spend(simulated_spend.head(10))
        assert list(predictions.columns) == ["customer_id", "predicted_spend"]
        assert predictions["customer_id"].tolist() == (
            simulated_spend["customer_id"].head(10).tolist()
        )
        assert (predictions["predicted_spend"] > 0).all()

    def test_predict_empty(self):
        wrapper = GammaGammaModelWrapper()
        wrapper.params = TRUE_PARAMS
        assert wrapper.predict_spend(spend_frame([])).empty
