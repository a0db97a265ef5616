"""Tests for period discretization of transaction logs."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from clv_engine.errors import ValidationError
from clv_engine.foundation.periods import (
    CustomerPeriodRecord,
    Transaction,
    discretize_transactions,
)

UTC = timezone.utc
START = datetime(2024, 1, 1, tzinfo=UTC)
WEEK = timedelta(weeks=1)


def txn(customer_id, weeks, amount="10.00", days=0):
    return Transaction(customer_id, START + weeks * WEEK + timedelta(days=days), amount)


class TestTransaction:
    """Test Transaction value object."""

    def test_amount_coerced_to_decimal(self):
        """Numeric amounts are stored as Decimal."""
        t = Transaction("C1", START, 12.5)
        assert t.amount == Decimal("12.5")

    def test_customer_id_coerced_to_string(self):
        t = Transaction(42, START, 1)
        assert t.customer_id == "42"

    def test_negative_amount_raises(self):
        """Negative amounts are rejected."""
        with pytest.raises(ValidationError, match="negative"):
            Transaction("C1", START, -1)

    def test_non_finite_amount_raises(self):
        with pytest.raises(ValidationError, match="finite"):
            Transaction("C1", START, float("nan"))

    def test_timestamp_must_be_datetime(self):
        with pytest.raises(ValidationError, match="datetime"):
            Transaction("C1", "2024-01-01", 1)

    def test_immutable(self):
        t = Transaction("C1", START, 1)
        with pytest.raises(AttributeError):
            t.amount = Decimal("2")


class TestCustomerPeriodRecord:
    """Test CustomerPeriodRecord invariants."""

    def test_properties(self):
        record = CustomerPeriodRecord(
            "C1", (0, 2, 5), (Decimal("5"), Decimal("10"), Decimal("5"))
        )
        assert record.first_period == 0
        assert record.last_period == 5
        assert record.total_spend == Decimal("20")

    def test_unsorted_periods_raise(self):
        with pytest.raises(ValidationError, match="sorted and distinct"):
            CustomerPeriodRecord("C1", (2, 0), (Decimal("1"), Decimal("1")))

    def test_empty_periods_raise(self):
        with pytest.raises(ValidationError, match="no calibration periods"):
            CustomerPeriodRecord("C1", (), ())


class TestDiscretizeTransactions:
    """Test discretize_transactions()."""

    def test_same_period_transactions_merge(self):
        """Transactions in periods 0, 2, 2, 5 give three active periods."""
        result = discretize_transactions(
            [txn("C1", 0, "5"), txn("C1", 2, "5"), txn("C1", 2, "5", days=3), txn("C1", 5, "5")],
            period_length=WEEK,
        )
        record = result.records[0]
        assert record.periods == (0, 2, 5)
        assert record.period_spend == (Decimal("5"), Decimal("10"), Decimal("5"))
        assert result.calibration_end_period == 5

    def test_origin_defaults_to_population_minimum(self):
        """Periods are aligned to the earliest timestamp of any customer."""
        result = discretize_transactions(
            [txn("C1", 1, days=3), txn("C2", 0)], period_length=WEEK
        )
        assert result.origin == START
        by_id = {r.customer_id: r for r in result.records}
        assert by_id["C1"].periods == (1,)
        assert by_id["C2"].periods == (0,)

    def test_explicit_origin(self):
        result = discretize_transactions(
            [txn("C1", 3)], period_length=WEEK, origin=START
        )
        assert result.records[0].periods == (3,)
        assert result.period_of(START + 3 * WEEK + timedelta(days=6)) == 3

    def test_records_sorted_by_customer(self):
        result = discretize_transactions(
            [txn("C2", 0), txn("C1", 1), txn("C3", 0)], period_length=WEEK
        )
        assert [r.customer_id for r in result.records] == ["C1", "C2", "C3"]

    def test_single_transaction_customer_retained(self):
        result = discretize_transactions([txn("C1", 0), txn("C2", 4)], period_length=WEEK)
        assert len(result.records) == 2

    def test_mapping_input(self):
        """Mappings with event_ts or timestamp keys are accepted."""
        result = discretize_transactions(
            [
                {"customer_id": "C1", "event_ts": START, "amount": 3},
                {"customer_id": "C1", "timestamp": START + 2 * WEEK, "amount": 4},
            ],
            period_length=WEEK,
        )
        assert result.records[0].periods == (0, 2)

    def test_mapping_missing_key_raises(self):
        with pytest.raises(ValidationError, match="missing key"):
            discretize_transactions([{"customer_id": "C1", "event_ts": START}])

    def test_empty_input_raises(self):
        with pytest.raises(ValidationError, match="empty"):
            discretize_transactions([])

    def test_non_positive_period_length_raises(self):
        with pytest.raises(ValidationError, match="period_length"):
            discretize_transactions([txn("C1", 0)], period_length=timedelta(0))

    def test_mixed_timezones_raise(self):
        naive = Transaction("C2", datetime(2024, 1, 2), 1)
        with pytest.raises(ValidationError, match="timezone"):
            discretize_transactions([txn("C1", 0), naive])

    def test_transaction_before_origin_raises(self):
        with pytest.raises(ValidationError, match="precedes origin"):
            discretize_transactions(
                [txn("C1", 0), txn("C1", 2)], period_length=WEEK, origin=START + WEEK
            )

    def test_holdout_end_requires_calibration_end(self):
        with pytest.raises(ValidationError, match="requires calibration_end"):
            discretize_transactions([txn("C1", 0)], holdout_end=START + WEEK)


class TestCalibrationHoldoutSplit:
    """Test the calibration/holdout cutoff."""

    def test_aligned_cutoff(self):
        """Transactions at or after the cutoff become holdout activity."""
        result = discretize_transactions(
            [txn("C1", 0), txn("C1", 2), txn("C1", 4), txn("C1", 6)],
            period_length=WEEK,
            origin=START,
            calibration_end=START + 4 * WEEK,
            holdout_end=START + 8 * WEEK,
        )
        record = result.records[0]
        assert result.calibration_end_period == 3
        assert result.holdout_end_period == 7
        assert result.holdout_length == 4
        assert record.periods == (0, 2)
        assert record.holdout_periods == (4, 6)

    def test_transactions_after_holdout_end_dropped(self):
        result = discretize_transactions(
            [txn("C1", 0), txn("C1", 5), txn("C1", 9)],
            period_length=WEEK,
            origin=START,
            calibration_end=START + 4 * WEEK,
            holdout_end=START + 8 * WEEK,
        )
        assert result.records[0].holdout_periods == (5,)

    def test_calibration_end_period_without_activity(self):
        """T counts up to the cutoff even if nobody transacted near it."""
        result = discretize_transactions(
            [txn("C1", 0)],
            period_length=WEEK,
            origin=START,
            calibration_end=START + 10 * WEEK,
        )
        assert result.calibration_end_period == 9

    def test_misaligned_cutoff_warns_and_skips_straddling_period(self, caplog):
        """Holdout activity inside the cutoff period is not counted."""
        with caplog.at_level(logging.WARNING, logger="clv_engine.foundation.periods"):
            result = discretize_transactions(
                [
                    txn("C1", 0),
                    txn("C1", 3, days=1),
                    txn("C1", 3, days=5),
                    txn("C1", 5),
                ],
                period_length=WEEK,
                origin=START,
                calibration_end=START + 3 * WEEK + timedelta(days=3),
            )
        assert "not aligned" in caplog.text
        record = result.records[0]
        assert result.calibration_end_period == 3
        assert record.periods == (0, 3)
        assert record.holdout_periods == (5,)

    def test_holdout_only_customers_ignored(self):
        """Customers first seen in the holdout window have no calibration record."""
        result = discretize_transactions(
            [txn("C1", 0), txn("C2", 5)],
            period_length=WEEK,
            origin=START,
            calibration_end=START + 4 * WEEK,
        )
        assert [r.customer_id for r in result.records] == ["C1"]

    def test_no_cutoff_has_no_holdout(self):
        result = discretize_transactions([txn("C1", 0), txn("C1", 3)], period_length=WEEK)
        assert result.holdout_end_period is None
        assert result.holdout_length == 0
