"""Tests for BG/BB goodness-of-fit diagnostics."""

from datetime import datetime, timedelta

import numpy as np
import pandas as pd
import pytest

from clv_engine.models.bg_bb import BGBBParams
from clv_engine.models.bg_bb_expectations import probability_of_frequency_array
from clv_engine.models.model_prep import build_statistics
from clv_engine.synthetic import generate_bgbb_transactions
from clv_engine.validation.diagnostics import FrequencyFitCheck, frequency_fit_check

PARAMS = BGBBParams(alpha=1.204, beta=0.750, gamma=0.657, delta=2.783)
START = datetime(2024, 1, 1)
WEEK = timedelta(weeks=1)


@pytest.fixture(scope="module")
def synthetic_cbs():
    transactions = generate_bgbb_transactions(
        PARAMS, 2000, 10, START, acquisition_periods=3, seed=13
    )
    return build_statistics(
        transactions, period_length=WEEK, origin=START, calibration_end=START + 10 * WEEK
    )


class TestFrequencyFitCheck:
    """Tests for frequency_fit_check()."""

    def test_table_structure(self, synthetic_cbs):
        check = frequency_fit_check(synthetic_cbs, PARAMS)
        assert isinstance(check, FrequencyFitCheck)
        assert list(check.table.columns) == ["T", "x", "observed", "expected"]
        assert set(check.table["T"]) == set(synthetic_cbs["T"])
        for T, group in check.table.groupby("T"):
            assert group["x"].tolist() == list(range(T + 1))

    def test_observed_and_expected_totals_match_per_stratum(self, synthetic_cbs):
        check = frequency_fit_check(synthetic_cbs, PARAMS)
        sizes = synthetic_cbs.groupby("T").size()
        totals = check.table.groupby("T")[["observed", "expected"]].sum()
        np.testing.assert_allclose(totals["observed"], sizes.loc[totals.index])
        np.testing.assert_allclose(totals["expected"], sizes.loc[totals.index])

    def test_expected_counts_follow_frequency_distribution(self, synthetic_cbs):
        check = frequency_fit_check(synthetic_cbs, PARAMS)
        T = int(synthetic_cbs["T"].max())
        n = int((synthetic_cbs["T"] == T).sum())
        expected = check.table.loc[check.table["T"] == T, "expected"].to_numpy()
        np.testing.assert_allclose(expected, n * probability_of_frequency_array(PARAMS, T))

    def test_statistic_and_p_value(self, synthetic_cbs):
        check = frequency_fit_check(synthetic_cbs, PARAMS)
        assert check.statistic >= 0
        assert check.degrees_of_freedom >= 1
        assert 0.0 <= check.p_value <= 1.0

    def test_wrong_parameters_fit_worse(self, synthetic_cbs):
        """Parameters implying rare purchases and fast churn are rejected."""
        true_check = frequency_fit_check(synthetic_cbs, PARAMS)
        wrong = BGBBParams(alpha=0.2, beta=5.0, gamma=5.0, delta=0.5)
        wrong_check = frequency_fit_check(synthetic_cbs, wrong)
        assert wrong_check.statistic > true_check.statistic
        assert wrong_check.p_value < 1e-6

    def test_new_customers_are_tabulated_but_not_tested(self):
        cbs = pd.DataFrame(
            {
                "customer_id": ["C1", "C2", "C3"],
                "x": [0, 1, 2],
                "t_x": [0, 2, 2],
                "T": [0, 2, 2],
            }
        )
        check = frequency_fit_check(cbs, PARAMS)
        new = check.table[check.table["T"] == 0]
        assert new["observed"].tolist() == [1.0]
        assert new["expected"].tolist() == pytest.approx([1.0])

    def test_invalid_min_expected(self, synthetic_cbs):
        with pytest.raises(ValueError, match="min_expected"):
            frequency_fit_check(synthetic_cbs, PARAMS, min_expected=0)
