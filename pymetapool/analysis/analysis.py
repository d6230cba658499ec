"""
Running meta-analyses for one or many outcomes and summarising them.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pyarrow as pa

from ..core.config import MetaAnalysisConfig, validate_pooling
from ..io.io import read_trial_roles
from ..preprocessing.model_inputs import ModelInput, ModelInputSpec, get_model_input
from ._adapters import InverseVarianceAdapter, MetaAnalysisAdapter
from ._cache import CacheKey, ResultCache
from ._results import MetaAnalysisResult

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NOT_CONVERGED = "not_converged"
STATUS_FAILED = "failed"

SUMMARY_SCHEMA = pa.schema(
    [
        ("row", pa.int64()),
        ("outcome", pa.string()),
        ("label", pa.string()),
        ("pooling", pa.string()),
        ("effect", pa.string()),
        ("n_trials", pa.int64()),
        ("estimate", pa.float64()),
        ("lower", pa.float64()),
        ("upper", pa.float64()),
        ("i2", pa.float64()),
        ("i2_lower", pa.float64()),
        ("i2_upper", pa.float64()),
        ("converged", pa.bool_()),
        ("status", pa.string()),
        ("error", pa.string()),
    ]
)


@dataclass
class OutcomeRun:
    """Outcome of one pipeline run; `result` is None when the run failed."""

    outcome: str
    pooling: str
    result: MetaAnalysisResult | None = None
    status: str = STATUS_OK
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None


def run_meta_analysis(
    raw: pa.Table,
    spec: ModelInputSpec,
    model_input: str | ModelInput = "aggregate",
    adapter: MetaAnalysisAdapter | None = None,
    config: MetaAnalysisConfig | None = None,
    pooling: str = "partial",
    cache: ResultCache | None = None,
    verbosity: int = 0,
) -> MetaAnalysisResult:
    """
    Runs filter -> builder -> aggregator -> engine for one outcome.

    Args:
        raw: Raw per-farmer table (e.g. from `load_trial_data`).
        spec: Column roles, including the outcome to fit.
        model_input: Model-input strategy or its name.
        adapter: Engine to fit with. Defaults to `InverseVarianceAdapter`.
        config: Run configuration. Defaults to `MetaAnalysisConfig()`.
        pooling: 'none', 'full' or 'partial'.
        cache: Optional result cache; a result is served only for an exactly
               matching key.
        verbosity: <= -1 INFO logs, 0 warnings, >= 1 errors only.

    Returns:
        The fitted `MetaAnalysisResult`.

    Raises:
        MissingColumnError: If a role column is absent.
        ValueError: If the engine does not support the model input.
        AdapterError: If the engine fails.
    """
    config = config or MetaAnalysisConfig()
    validate_pooling(pooling)
    model_input = get_model_input(model_input)
    adapter = adapter or InverseVarianceAdapter()
    if not adapter.supports(model_input.name):
        raise ValueError(
            f"Engine '{adapter.name}' does not support the '{model_input.name}' model input."
        )

    data = model_input.build(raw, spec, config, verbosity=verbosity)

    key = None
    if cache is not None:
        key = CacheKey.build(
            data,
            outcome=spec.outcome_key,
            pooling=pooling,
            model_input=model_input.name,
            adapter=adapter.name,
            config=config,
            group_key=spec.group_key,
            covariates=spec.covariates if model_input.name == "coefficient" else (),
            group_order=spec.group_order or (),
        )
        cached = cache.get(key)
        if cached is not None:
            if verbosity <= -1:
                logger.info(f"Outcome '{spec.outcome_key}' ({pooling}): served from cache.")
            return cached

    result = adapter.fit(data, pooling, config, outcome=spec.outcome_key, verbosity=verbosity)
    if cache is not None:
        cache.put(key, result)
    return result


def run_outcomes(
    raw: pa.Table,
    outcomes: list[str] | None = None,
    spec: ModelInputSpec | None = None,
    model_input: str | ModelInput = "aggregate",
    adapter: MetaAnalysisAdapter | None = None,
    config: MetaAnalysisConfig | None = None,
    pooling: str = "partial",
    cache: ResultCache | None = None,
    verbosity: int = 0,
) -> list[OutcomeRun]:
    """
    Runs `run_meta_analysis` independently for each outcome.

    A failure for one outcome (missing column, engine error, numerical error)
    is logged and recorded in its `OutcomeRun`; the other outcomes still run.

    Args:
        raw: Raw per-farmer table.
        outcomes: Outcome columns. Defaults to those recorded by `load_trial_data`.
        spec: Column roles shared by all outcomes (its outcome is replaced per
              run). Defaults to the roles recorded by `load_trial_data`.
        Other arguments as in `run_meta_analysis`.

    Returns:
        One `OutcomeRun` per outcome, in order.
    """
    config = config or MetaAnalysisConfig()
    validate_pooling(pooling)
    if outcomes is None:
        outcomes = read_trial_roles(raw)["outcome_cols"]
    if not outcomes:
        raise ValueError("No outcomes given and none recorded in the table metadata.")
    if spec is None:
        spec = ModelInputSpec.from_table(raw, outcomes[0])

    runs = []
    for outcome in outcomes:
        try:
            result = run_meta_analysis(
                raw,
                spec.with_outcome(outcome),
                model_input=model_input,
                adapter=adapter,
                config=config,
                pooling=pooling,
                cache=cache,
                verbosity=verbosity,
            )
        except Exception as e:
            logger.error(f"Outcome '{outcome}' ({pooling} pooling) failed: {type(e).__name__}: {e}")
            runs.append(
                OutcomeRun(
                    outcome=outcome,
                    pooling=pooling,
                    status=STATUS_FAILED,
                    error=f"{type(e).__name__}: {e}",
                )
            )
            continue
        status = STATUS_OK if result.converged else STATUS_NOT_CONVERGED
        runs.append(OutcomeRun(outcome=outcome, pooling=pooling, result=result, status=status))
    return runs


def summarise_outcomes(
    runs: list[OutcomeRun],
    outcome_labels: dict[str, str] | None = None,
) -> pa.Table:
    """
    One summary row per outcome run.

    Args:
        runs: Output of `run_outcomes`.
        outcome_labels: Optional display labels keyed by outcome name.

    Returns:
        PyArrow Table with SUMMARY_SCHEMA. Failed runs keep their row with
        null estimates and the error message.
    """
    if not isinstance(runs, list | tuple):
        raise TypeError("runs must be a list of OutcomeRun objects.")
    outcome_labels = outcome_labels or {}

    rows = []
    for index, run in enumerate(runs, start=1):
        if not isinstance(run, OutcomeRun):
            raise TypeError(f"Expected OutcomeRun, got {type(run).__name__}")
        row = {
            "row": index,
            "outcome": run.outcome,
            "label": outcome_labels.get(run.outcome, run.outcome),
            "pooling": run.pooling,
            "effect": "logOR",
            "n_trials": None,
            "estimate": None,
            "lower": None,
            "upper": None,
            "i2": None,
            "i2_lower": None,
            "i2_upper": None,
            "converged": None,
            "status": run.status,
            "error": run.error,
        }
        result = run.result
        if result is not None:
            values = {
                "estimate": result.pooled.mean,
                "lower": result.pooled.lower,
                "upper": result.pooled.upper,
                "i2": result.heterogeneity.i2,
                "i2_lower": result.heterogeneity.i2_lower,
                "i2_upper": result.heterogeneity.i2_upper,
            }
            row.update({k: (None if np.isnan(v) else float(v)) for k, v in values.items()})
            row["effect"] = result.effect
            row["n_trials"] = int(result.n_groups)
            row["converged"] = bool(result.converged)
        rows.append(row)

    return pa.Table.from_pylist(rows, schema=SUMMARY_SCHEMA)
