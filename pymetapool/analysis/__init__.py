from ._adapters import InverseVarianceAdapter, MetaAnalysisAdapter, detect_model_input
from ._bayesian import PYMC_AVAILABLE, BayesianAdapter
from ._cache import CacheKey, InMemoryCache, ParquetCache, ResultCache, table_fingerprint
from ._results import GROUP_EFFECTS_SCHEMA, Heterogeneity, MetaAnalysisResult, PooledEffect
from .analysis import (
    SUMMARY_SCHEMA,
    OutcomeRun,
    run_meta_analysis,
    run_outcomes,
    summarise_outcomes,
)
from .cross_validation import leave_one_trial_out, total_elpd
from .pooling_comparison import compare_pooling, fit_pooling_modes, heterogeneity_table

__all__ = [
    "MetaAnalysisAdapter",
    "InverseVarianceAdapter",
    "BayesianAdapter",
    "PYMC_AVAILABLE",
    "detect_model_input",
    "MetaAnalysisResult",
    "PooledEffect",
    "Heterogeneity",
    "GROUP_EFFECTS_SCHEMA",
    "ResultCache",
    "CacheKey",
    "InMemoryCache",
    "ParquetCache",
    "table_fingerprint",
    "OutcomeRun",
    "run_meta_analysis",
    "run_outcomes",
    "summarise_outcomes",
    "SUMMARY_SCHEMA",
    "fit_pooling_modes",
    "compare_pooling",
    "heterogeneity_table",
    "leave_one_trial_out",
    "total_elpd",
]
