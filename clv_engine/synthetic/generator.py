from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import random
from typing import List, Optional, Tuple

from clv_engine.foundation.periods import DEFAULT_PERIOD_LENGTH, Transaction
from clv_engine.models.bg_bb import BGBBParams
from clv_engine.models.gamma_gamma import SpendParams

DEFAULT_SPEND_PARAMS = SpendParams(p=6.0, q=4.0, gamma=15.0)


@dataclass(frozen=True)
class SyntheticCustomer:
    """Latent traits drawn for one simulated customer.

    Attributes
    ----------
    customer_id: Identifier used on the customer's transactions.
    acquisition_period: Period of the customer's first transaction.
    theta: Per-period transaction probability while alive.
    dropout: Per-period probability of dying after a period.
    death_period: First period the customer is no longer alive, or None if
        still alive at the end of the simulation.
    """

    customer_id: str
    acquisition_period: int
    theta: float
    dropout: float
    death_period: Optional[int]


def _period_timestamp(
    rng: random.Random, start: datetime, period_length: timedelta, period: int
) -> datetime:
    offset_seconds = rng.randrange(max(1, int(period_length.total_seconds())))
    return start + period_length * period + timedelta(seconds=offset_seconds)


def _sample_amount(rng: random.Random, spend_params: SpendParams, nu: float) -> Decimal:
    amount = rng.gammavariate(spend_params.p, 1.0 / nu)
    return max(Decimal(str(round(amount, 2))), Decimal("0.01"))


def generate_bgbb_population(
    params: BGBBParams,
    n_customers: int,
    n_periods: int,
    start: datetime,
    *,
    period_length: timedelta = DEFAULT_PERIOD_LENGTH,
    spend_params: Optional[SpendParams] = None,
    acquisition_periods: int = 1,
    seed: Optional[int] = None,
) -> Tuple[List[SyntheticCustomer], List[Transaction]]:
    """Simulate a BG/BB population and its transactions.

    Each customer draws θ ~ Beta(α, β) and p ~ Beta(γ, δ), transacts in the
    acquisition period, and afterwards survives each period with probability
    1 - p and, while alive, transacts with probability θ. Spend per active
    period follows the Gamma-Gamma model.

    Acquisition periods are uniform over the first ``acquisition_periods``
    periods, so customers end up with different T. Period t spans
    [start + t·period_length, start + (t + 1)·period_length); discretize with
    ``origin=start`` to recover the simulated periods.
    """
    if n_customers < 0:
        raise ValueError(f"n_customers must be >= 0, got {n_customers}")
    if n_periods < 1:
        raise ValueError(f"n_periods must be >= 1, got {n_periods}")
    if not 1 <= acquisition_periods <= n_periods:
        raise ValueError(
            f"acquisition_periods must be between 1 and n_periods, got {acquisition_periods}"
        )
    if period_length <= timedelta(0):
        raise ValueError("period_length must be positive")

    spend_params = spend_params or DEFAULT_SPEND_PARAMS
    rng = random.Random(seed)

    customers: List[SyntheticCustomer] = []
    transactions: List[Transaction] = []
    for i in range(n_customers):
        customer_id = f"C-{i + 1}"
        acquisition = rng.randrange(acquisition_periods)
        theta = rng.betavariate(params.alpha, params.beta)
        dropout = rng.betavariate(params.gamma, params.delta)
        # Latent spend rate ν ~ Gamma(q, rate γ)
        nu = rng.gammavariate(spend_params.q, 1.0 / spend_params.gamma)

        active_periods = [acquisition]
        death_period: Optional[int] = None
        for period in range(acquisition + 1, n_periods):
            if rng.random() < dropout:
                death_period = period
                break
            if rng.random() < theta:
                active_periods.append(period)

        for period in active_periods:
            transactions.append(
                Transaction(
                    customer_id=customer_id,
                    timestamp=_period_timestamp(rng, start, period_length, period),
                    amount=_sample_amount(rng, spend_params, nu),
                )
            )
        customers.append(
            SyntheticCustomer(
                customer_id=customer_id,
                acquisition_period=acquisition,
                theta=theta,
                dropout=dropout,
                death_period=death_period,
            )
        )

    transactions.sort(key=lambda t: (t.customer_id, t.timestamp))
    return customers, transactions


def generate_bgbb_transactions(
    params: BGBBParams,
    n_customers: int,
    n_periods: int,
    start: datetime,
    *,
    period_length: timedelta = DEFAULT_PERIOD_LENGTH,
    spend_params: Optional[SpendParams] = None,
    acquisition_periods: int = 1,
    seed: Optional[int] = None,
) -> List[Transaction]:
    """Generate transactions only, see :func:`generate_bgbb_population`."""
    _, transactions = generate_bgbb_population(
        params,
        n_customers,
        n_periods,
        start,
        period_length=period_length,
        spend_params=spend_params,
        acquisition_periods=acquisition_periods,
        seed=seed,
    )
    return transactions
