"""
Leave-one-trial-out cross-validation of the pooled treatment effect.
"""

import logging

import numpy as np
import pyarrow as pa
import pyarrow.compute as pc
from scipy.stats import norm

from ..core.config import MetaAnalysisConfig, validate_pooling
from ..core.exceptions import AdapterError, MissingColumnError
from ..io._io_utils import _read_metadata, _update_metadata
from ..preprocessing.model_inputs import META_KEY_MODEL_INPUT
from ..preprocessing.preprocessing import (
    META_KEY_GROUP_ORDER,
    META_KEY_OUTCOME,
    aggregate,
    log_odds_ratios,
)
from ._adapters import InverseVarianceAdapter, MetaAnalysisAdapter

logger = logging.getLogger(__name__)

META_KEY_CV_ELPD = "pymetapool.cv.elpd"
META_KEY_CV_POOLING = "pymetapool.cv.pooling"

CV_SCHEMA = pa.schema(
    [
        ("group", pa.string()),
        ("n_train", pa.int64()),
        ("n_test", pa.int64()),
        ("held_out_effect", pa.float64()),
        ("held_out_variance", pa.float64()),
        ("predicted_mean", pa.float64()),
        ("predictive_sd", pa.float64()),
        ("log_predictive_density", pa.float64()),
        ("status", pa.string()),
    ]
)


def leave_one_trial_out(
    individual: pa.Table,
    adapter: MetaAnalysisAdapter | None = None,
    config: MetaAnalysisConfig | None = None,
    pooling: str = "partial",
    outcome: str | None = None,
    verbosity: int = 0,
) -> pa.Table:
    """
    Scores how well the pooled effect of the other trials predicts each trial.

    For every trial, the model is fitted on the training rows (``is_test == 0``)
    of all other trials, and the held-out trial's test rows (``is_test == 1``)
    are scored by the normal log predictive density of their log odds ratio:
    N(y | mu, sqrt(sd_mu² + tau² + v)).

    Args:
        individual: Individual table from `build_individual` (with ``is_test``).
        adapter: Engine supporting aggregate input. Defaults to `InverseVarianceAdapter`.
        config: Run configuration.
        pooling: 'full' or 'partial'; 'none' has no pooled prediction.
        outcome: Name used in results and logs. Defaults to the table metadata.
        verbosity: <= -1 INFO logs, 0 warnings, >= 1 errors only.

    Returns:
        PyArrow Table with CV_SCHEMA, one row per trial. The total ELPD over
        scored trials is stored under the ``pymetapool.cv.elpd`` metadata key.

    Raises:
        ValueError: If pooling is 'none' or the adapter lacks aggregate support.
        MissingColumnError: If the individual table lacks required columns.
    """
    config = config or MetaAnalysisConfig()
    adapter = adapter or InverseVarianceAdapter()
    validate_pooling(pooling)
    if pooling == "none":
        raise ValueError("Leave-one-trial-out needs a pooled prediction; use 'full' or 'partial'.")
    if not adapter.supports("aggregate"):
        raise ValueError(f"Engine '{adapter.name}' does not support the aggregate model input.")
    if not isinstance(individual, pa.Table):
        raise TypeError("Input 'individual' must be a PyArrow Table.")
    missing = {"group", "treatment", "outcome", "is_test"} - set(individual.column_names)
    if missing:
        raise MissingColumnError(missing, context="individual table")

    outcome = outcome or _read_metadata(individual, META_KEY_OUTCOME) or "outcome"
    order = _read_metadata(individual, META_KEY_GROUP_ORDER)
    if order is None:
        order = sorted(set(individual.column("group").cast(pa.string()).to_pylist()))

    groups = individual.column("group").cast(pa.string())
    is_test = pc.equal(individual.column("is_test"), 1)

    rows = []
    for held_out in order:
        in_group = pc.equal(groups, held_out)
        train = individual.filter(pc.and_(pc.invert(in_group), pc.invert(is_test)))
        test = individual.filter(pc.and_(in_group, is_test))
        others = [g for g in order if g != held_out]
        row = {
            "group": held_out,
            "n_train": train.num_rows,
            "n_test": test.num_rows,
            "held_out_effect": None,
            "held_out_variance": None,
            "predicted_mean": None,
            "predictive_sd": None,
            "log_predictive_density": None,
            "status": "ok",
        }

        held = log_odds_ratios(
            aggregate(test, group_order=[held_out], verbosity=1),
            correction=config.continuity_correction,
        ).to_pylist()[0]
        if not (np.isfinite(held["log_or"]) and np.isfinite(held["variance"])):
            row["status"] = "no_test_contrast"
            rows.append(row)
            continue
        row["held_out_effect"] = held["log_or"]
        row["held_out_variance"] = held["variance"]

        train_counts = _update_metadata(
            aggregate(train, group_order=others, verbosity=1), {META_KEY_MODEL_INPUT: "aggregate"}
        )
        try:
            fit = adapter.fit(train_counts, pooling, config, outcome=outcome, verbosity=verbosity)
        except AdapterError as e:
            logger.error(f"Leave-out '{held_out}': fit failed: {e}")
            row["status"] = "failed"
            rows.append(row)
            continue

        tau = fit.heterogeneity.tau if np.isfinite(fit.heterogeneity.tau) else 0.0
        predictive_sd = float(np.sqrt(fit.pooled.sd**2 + tau**2 + held["variance"]))
        row["predicted_mean"] = fit.pooled.mean
        row["predictive_sd"] = predictive_sd
        row["log_predictive_density"] = float(
            norm.logpdf(held["log_or"], loc=fit.pooled.mean, scale=predictive_sd)
        )
        if verbosity <= -1:
            logger.info(
                f"Leave-out '{held_out}': observed {held['log_or']:.3f}, "
                f"predicted {fit.pooled.mean:.3f} ± {predictive_sd:.3f}"
            )
        rows.append(row)

    table = pa.Table.from_pylist(rows, schema=CV_SCHEMA)
    scored = [r["log_predictive_density"] for r in rows if r["log_predictive_density"] is not None]
    elpd = float(np.sum(scored)) if scored else None
    return _update_metadata(table, {META_KEY_CV_ELPD: elpd, META_KEY_CV_POOLING: pooling})


def total_elpd(cv_table: pa.Table) -> float:
    """Total expected log predictive density stored by `leave_one_trial_out` (NaN if none)."""
    value = _read_metadata(cv_table, META_KEY_CV_ELPD)
    return float("nan") if value is None else float(value)
