"""Period discretization of raw transaction logs.

The BG/BB model works on discrete transaction opportunities. This module maps
timestamped transactions onto globally aligned period indices
(``floor((timestamp - origin) / period_length)``) and merges every customer's
transactions that fall into the same period into a single active period,
summing their amounts.

An optional calibration cutoff splits the log into a calibration window (used
to build sufficient statistics and fit models) and a holdout window (used to
validate predictions).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Union

from clv_engine.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_LENGTH = timedelta(days=7)


@dataclass(frozen=True)
class Transaction:
    """A single immutable transaction event.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    timestamp:
        When the transaction happened. All transactions of one analysis run
        must be either timezone-aware or timezone-naive.
    amount:
        Monetary value of the transaction (must be non-negative)
    """

    customer_id: str
    timestamp: datetime
    amount: Decimal

    def __post_init__(self) -> None:
        """Normalise identifier and amount types."""
        if not isinstance(self.timestamp, datetime):
            raise ValidationError(
                f"Transaction timestamp must be a datetime, got {type(self.timestamp).__name__}",
                customer_id=str(self.customer_id),
            )
        object.__setattr__(self, "customer_id", str(self.customer_id))
        amount = Decimal(str(self.amount))
        if not amount.is_finite():
            raise ValidationError(
                f"Transaction amount must be finite: {self.amount} "
                f"(customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )
        if amount < 0:
            raise ValidationError(
                f"Transaction amount cannot be negative: {self.amount} "
                f"(customer_id={self.customer_id})",
                customer_id=self.customer_id,
            )
        object.__setattr__(self, "amount", amount)


TransactionLike = Union[Transaction, Mapping[str, object]]


@dataclass(frozen=True)
class CustomerPeriodRecord:
    """Active periods of one customer.

    Attributes
    ----------
    customer_id:
        Unique customer identifier
    periods:
        Sorted distinct calibration period indices with at least one transaction
    period_spend:
        Summed transaction amount for each entry of ``periods``
    holdout_periods:
        Sorted distinct holdout period indices with at least one transaction
    holdout_spend:
        Summed transaction amount for each entry of ``holdout_periods``
    """

    customer_id: str
    periods: tuple[int, ...]
    period_spend: tuple[Decimal, ...]
    holdout_periods: tuple[int, ...] = ()
    holdout_spend: tuple[Decimal, ...] = ()

    def __post_init__(self) -> None:
        if not self.periods:
            raise ValidationError(
                f"Customer {self.customer_id} has no calibration periods",
                customer_id=self.customer_id,
            )
        if len(self.periods) != len(self.period_spend):
            raise ValidationError(
                f"periods and period_spend lengths differ for customer {self.customer_id}",
                customer_id=self.customer_id,
            )
        if len(self.holdout_periods) != len(self.holdout_spend):
            raise ValidationError(
                f"holdout_periods and holdout_spend lengths differ for customer {self.customer_id}",
                customer_id=self.customer_id,
            )
        if list(self.periods) != sorted(set(self.periods)):
            raise ValidationError(
                f"periods must be sorted and distinct for customer {self.customer_id}: "
                f"{list(self.periods)}",
                customer_id=self.customer_id,
            )

    @property
    def first_period(self) -> int:
        return self.periods[0]

    @property
    def last_period(self) -> int:
        return self.periods[-1]

    @property
    def total_spend(self) -> Decimal:
        return sum(self.period_spend, Decimal("0"))


@dataclass(frozen=True)
class PeriodDiscretization:
    """Output of :func:`discretize_transactions`.

    Attributes
    ----------
    origin:
        Start of period 0 (minimum timestamp of the population by default)
    period_length:
        Length of one period
    calibration_end_period:
        Index of the last period belonging to the calibration window
    holdout_end_period:
        Index of the last holdout period, or None when no cutoff was given
    records:
        One record per customer active in the calibration window, sorted by
        customer_id
    """

    origin: datetime
    period_length: timedelta
    calibration_end_period: int
    holdout_end_period: Optional[int]
    records: tuple[CustomerPeriodRecord, ...]

    @property
    def holdout_length(self) -> int:
        """Number of holdout periods (0 without a calibration cutoff)."""
        if self.holdout_end_period is None:
            return 0
        return self.holdout_end_period - self.calibration_end_period

    def period_of(self, timestamp: datetime) -> int:
        """Return the period index containing ``timestamp``."""
        return (timestamp - self.origin) // self.period_length


def _coerce_transaction(idx: int, txn: TransactionLike) -> Transaction:
    if isinstance(txn, Transaction):
        return txn
    try:
        customer_id = txn["customer_id"]
        amount = txn["amount"]
    except KeyError as exc:
        raise ValidationError(
            f"Transaction at index {idx} missing key {exc.args[0]}"
        ) from exc
    timestamp = txn.get("event_ts") or txn.get("timestamp")
    if not isinstance(timestamp, datetime):
        raise ValidationError(
            f"Transaction at index {idx} must provide an event_ts/timestamp datetime, "
            f"got {timestamp!r}",
            customer_id=str(customer_id),
        )
    return Transaction(customer_id=customer_id, timestamp=timestamp, amount=amount)


def _last_period_before(
    cutoff: datetime, origin: datetime, period_length: timedelta
) -> int:
    """Index of the last period that starts strictly before ``cutoff``."""
    whole, remainder = divmod(cutoff - origin, period_length)
    if remainder:
        whole += 1
    return whole - 1


def discretize_transactions(
    transactions: Iterable[TransactionLike],
    period_length: timedelta = DEFAULT_PERIOD_LENGTH,
    origin: Optional[datetime] = None,
    calibration_end: Optional[datetime] = None,
    holdout_end: Optional[datetime] = None,
) -> PeriodDiscretization:
    """Map transactions to per-customer active periods.

    Parameters
    ----------
    transactions:
        Transaction objects or mappings with ``customer_id``, ``event_ts``
        (or ``timestamp``) and ``amount`` keys
    period_length:
        Length of one period (default: 7 days)
    origin:
        Start of period 0. Defaults to the minimum timestamp across the whole
        population so that all customers share the same period grid.
    calibration_end:
        Exclusive end of the calibration window. Transactions at or after it
        are holdout transactions. Defaults to no holdout.
    holdout_end:
        Exclusive end of the holdout window (requires ``calibration_end``).
        Transactions at or after it are ignored.

    Returns
    -------
    PeriodDiscretization

    Raises
    ------
    ValidationError:
        If the period length is not positive, timestamps mix naive and aware
        datetimes, a transaction precedes ``origin``, or the cutoffs are
        inconsistent
    """
    if period_length <= timedelta(0):
        raise ValidationError(f"period_length must be positive, got {period_length}")
    if holdout_end is not None and calibration_end is None:
        raise ValidationError("holdout_end requires calibration_end")
    if (
        holdout_end is not None
        and calibration_end is not None
        and holdout_end <= calibration_end
    ):
        raise ValidationError(
            f"holdout_end ({holdout_end}) must be after calibration_end ({calibration_end})"
        )

    coerced = [_coerce_transaction(idx, txn) for idx, txn in enumerate(transactions)]
    if not coerced:
        raise ValidationError("Cannot discretize an empty transaction log")

    aware = coerced[0].timestamp.tzinfo is not None
    for txn in coerced:
        if (txn.timestamp.tzinfo is not None) != aware:
            raise ValidationError(
                "Transactions mix timezone-aware and timezone-naive timestamps "
                f"(customer {txn.customer_id}, {txn.timestamp.isoformat()})",
                customer_id=txn.customer_id,
            )

    if origin is None:
        origin = min(txn.timestamp for txn in coerced)
    elif (origin.tzinfo is not None) != aware:
        raise ValidationError("origin timezone-awareness must match the transactions")

    if calibration_end is not None:
        if calibration_end <= origin:
            raise ValidationError(
                f"calibration_end ({calibration_end}) must be after origin ({origin})"
            )
        if (calibration_end - origin) % period_length:
            logger.warning(
                "calibration_end %s is not aligned to a period boundary; the last "
                "calibration period is only partially observed",
                calibration_end.isoformat(),
            )

    calibration: dict[str, dict[int, Decimal]] = {}
    holdout: dict[str, dict[int, Decimal]] = {}
    max_calibration_period = 0
    max_holdout_period: Optional[int] = None

    for txn in coerced:
        if txn.timestamp < origin:
            raise ValidationError(
                f"Transaction at {txn.timestamp.isoformat()} precedes origin "
                f"{origin.isoformat()} (customer {txn.customer_id})",
                customer_id=txn.customer_id,
            )
        if holdout_end is not None and txn.timestamp >= holdout_end:
            continue
        period = (txn.timestamp - origin) // period_length
        if calibration_end is not None and txn.timestamp >= calibration_end:
            buckets = holdout.setdefault(txn.customer_id, {})
            if max_holdout_period is None or period > max_holdout_period:
                max_holdout_period = period
        else:
            buckets = calibration.setdefault(txn.customer_id, {})
            max_calibration_period = max(max_calibration_period, period)
        buckets[period] = buckets.get(period, Decimal("0")) + txn.amount

    if calibration_end is not None:
        calibration_end_period = _last_period_before(
            calibration_end, origin, period_length
        )
        if holdout_end is not None:
            holdout_end_period: Optional[int] = _last_period_before(
                holdout_end, origin, period_length
            )
        else:
            holdout_end_period = max(
                calibration_end_period,
                max_holdout_period if max_holdout_period is not None else 0,
            )
    else:
        calibration_end_period = max_calibration_period
        holdout_end_period = None

    late_joiners = set(holdout) - set(calibration)
    if late_joiners:
        logger.info(
            "Ignoring %d customers whose first transaction falls in the holdout window",
            len(late_joiners),
        )

    records: list[CustomerPeriodRecord] = []
    for customer_id in sorted(calibration):
        buckets = calibration[customer_id]
        periods = tuple(sorted(buckets))
        # Holdout activity inside the partially observed cutoff period is not
        # counted as a holdout transaction opportunity.
        holdout_buckets = {
            period: spend
            for period, spend in holdout.get(customer_id, {}).items()
            if period > calibration_end_period
        }
        holdout_periods = tuple(sorted(holdout_buckets))
        records.append(
            CustomerPeriodRecord(
                customer_id=customer_id,
                periods=periods,
                period_spend=tuple(buckets[p] for p in periods),
                holdout_periods=holdout_periods,
                holdout_spend=tuple(holdout_buckets[p] for p in holdout_periods),
            )
        )

    logger.debug(
        "Discretized %d transactions into %d customer records (period_length=%s)",
        len(coerced),
        len(records),
        period_length,
    )
    return PeriodDiscretization(
        origin=origin,
        period_length=period_length,
        calibration_end_period=calibration_end_period,
        holdout_end_period=holdout_end_period,
        records=tuple(records),
    )
