"""
Comparison of no, full and partial pooling for one outcome.
"""

import warnings

import numpy as np
import pyarrow as pa

from ..core.config import POOLING_MODES, MetaAnalysisConfig, validate_pooling
from ..preprocessing.model_inputs import ModelInput, ModelInputSpec
from ._adapters import MetaAnalysisAdapter
from ._cache import ResultCache
from ._results import MetaAnalysisResult
from .analysis import run_meta_analysis

POOLING_COMPARISON_SCHEMA = pa.schema(
    [
        ("pooling", pa.string()),
        ("level", pa.string()),
        ("group", pa.string()),
        ("estimate", pa.float64()),
        ("lower", pa.float64()),
        ("upper", pa.float64()),
        ("pooling_factor", pa.float64()),
    ]
)

HETEROGENEITY_SCHEMA = pa.schema(
    [
        ("pooling", pa.string()),
        ("n_trials", pa.int64()),
        ("tau", pa.float64()),
        ("i2", pa.float64()),
        ("i2_lower", pa.float64()),
        ("i2_upper", pa.float64()),
    ]
)

OVERALL_LABEL = "Overall"


def fit_pooling_modes(
    raw: pa.Table,
    spec: ModelInputSpec,
    poolings: tuple[str, ...] = POOLING_MODES,
    model_input: str | ModelInput = "aggregate",
    adapter: MetaAnalysisAdapter | None = None,
    config: MetaAnalysisConfig | None = None,
    cache: ResultCache | None = None,
    verbosity: int = 0,
) -> dict[str, MetaAnalysisResult]:
    """Fits the same outcome under each pooling mode; returns results keyed by mode."""
    results = {}
    for pooling in poolings:
        validate_pooling(pooling)
        results[pooling] = run_meta_analysis(
            raw,
            spec,
            model_input=model_input,
            adapter=adapter,
            config=config,
            pooling=pooling,
            cache=cache,
            verbosity=verbosity,
        )
    return results


def _as_result_list(results) -> list[MetaAnalysisResult]:
    if isinstance(results, dict):
        results = list(results.values())
    if not isinstance(results, list | tuple) or not results:
        raise ValueError("results must be a non-empty list or dict of MetaAnalysisResult.")
    for result in results:
        if not isinstance(result, MetaAnalysisResult):
            raise TypeError(f"Expected MetaAnalysisResult, got {type(result).__name__}")
    outcomes = {r.outcome for r in results}
    if len(outcomes) > 1:
        raise ValueError(f"Results must all be for the same outcome, found {sorted(outcomes)}.")
    return list(results)


def compare_pooling(results, verbosity: int = 0) -> pa.Table:
    """
    Long-format table of per-trial and overall estimates for each pooling mode.

    Args:
        results: Results for one outcome, as a list or a dict keyed by pooling mode.
        verbosity: Controls warning verbosity. 0 shows warnings, >0 suppresses them.

    Returns:
        PyArrow Table with columns pooling, level ('trial' or 'overall'), group,
        estimate, lower, upper, pooling_factor. The overall row (group
        'Overall') is omitted for 'none' pooling.

    Raises:
        ValueError: If results are empty or mix outcomes.
        TypeError: If an item is not a MetaAnalysisResult.
    """
    results = _as_result_list(results)

    reference = results[0].groups
    for result in results[1:]:
        if result.groups != reference and verbosity <= 0:
            warnings.warn(
                f"Trials differ between pooling modes: '{results[0].pooling}' has {reference}, "
                f"'{result.pooling}' has {result.groups}.",
                UserWarning,
                stacklevel=2,
            )

    rows = []
    for result in results:
        effects = result.group_effects.to_pylist()
        for row in effects:
            rows.append(
                {
                    "pooling": result.pooling,
                    "level": "trial",
                    "group": row["group"],
                    "estimate": row["mean"],
                    "lower": row["lower"],
                    "upper": row["upper"],
                    "pooling_factor": row["pooling_factor"],
                }
            )
        if np.isfinite(result.pooled.mean):
            rows.append(
                {
                    "pooling": result.pooling,
                    "level": "overall",
                    "group": OVERALL_LABEL,
                    "estimate": result.pooled.mean,
                    "lower": result.pooled.lower,
                    "upper": result.pooled.upper,
                    "pooling_factor": None,
                }
            )
    return pa.Table.from_pylist(rows, schema=POOLING_COMPARISON_SCHEMA)


def heterogeneity_table(results) -> pa.Table:
    """One row of heterogeneity statistics per pooling mode."""
    results = _as_result_list(results)
    rows = [
        {
            "pooling": r.pooling,
            "n_trials": int(r.n_groups),
            "tau": r.heterogeneity.tau,
            "i2": r.heterogeneity.i2,
            "i2_lower": r.heterogeneity.i2_lower,
            "i2_upper": r.heterogeneity.i2_upper,
        }
        for r in results
    ]
    return pa.Table.from_pylist(rows, schema=HETEROGENEITY_SCHEMA)
