"""CLV models and model preparation utilities."""

from clv_engine.models.bg_bb import (
    BGBBConfig,
    BGBBDiagnostics,
    BGBBModelWrapper,
    BGBBParams,
    bgbb_log_likelihood,
    fit_bgbb,
)
from clv_engine.models.bg_bb_expectations import (
    dert,
    expected_transactions,
    p_alive,
    probability_of_frequency,
)
from clv_engine.models.clv_calculator import (
    LTVCalculator,
    LTVScore,
    acquisition_ltv,
    compute_ltv,
)
from clv_engine.models.gamma_gamma import (
    GammaGammaConfig,
    GammaGammaModelWrapper,
    SpendDiagnostics,
    SpendParams,
    expected_spend,
    fit_spend,
)
from clv_engine.models.model_prep import (
    CBSRow,
    SpendInput,
    build_statistics,
    build_statistics_from_periods,
    prepare_holdout_counts,
    prepare_spend_inputs,
)

__all__ = [
    "BGBBConfig",
    "BGBBDiagnostics",
    "BGBBModelWrapper",
    "BGBBParams",
    "CBSRow",
    "GammaGammaConfig",
    "GammaGammaModelWrapper",
    "LTVCalculator",
    "LTVScore",
    "SpendDiagnostics",
    "SpendInput",
    "SpendParams",
    "acquisition_ltv",
    "bgbb_log_likelihood",
    "build_statistics",
    "build_statistics_from_periods",
    "compute_ltv",
    "dert",
    "expected_spend",
    "expected_transactions",
    "fit_bgbb",
    "fit_spend",
    "p_alive",
    "prepare_holdout_counts",
    "prepare_spend_inputs",
    "probability_of_frequency",
]
