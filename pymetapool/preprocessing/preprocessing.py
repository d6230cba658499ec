"""
Pipeline stages that turn raw per-farmer trial records into model inputs:
column filtering, individual-record building and 2x2 aggregation.
"""

import hashlib
import logging
import warnings

import numpy as np
import pandas as pd
import pyarrow as pa

from ..core.exceptions import (
    DegenerateColumnError,
    EmptyArmError,
    EmptyArmWarning,
    MissingColumnError,
)
from ..io._io_utils import _read_metadata, _update_metadata
from ._column_utils import check_column_usable

logger = logging.getLogger(__name__)

META_KEY_OUTCOME = "pymetapool.individual.outcome"
META_KEY_GROUP_ORDER = "pymetapool.individual.group_order"
META_KEY_COVARIATES = "pymetapool.individual.covariates"
META_KEY_SEED = "pymetapool.individual.seed"
META_KEY_TEST_FRACTION = "pymetapool.individual.test_fraction"
META_KEY_FLAGGED_GROUPS = "pymetapool.aggregate.flagged_groups"

CANONICAL_COLUMNS = ("group", "treatment", "outcome", "is_test")
AGGREGATE_SCHEMA = pa.schema(
    [("group", pa.string())]
    + [(name, pa.int64()) for name in ("a", "b", "c", "d", "n1", "n2")]
    + [("empty_arm", pa.bool_())]
)


def select_usable_columns(
    table: pa.Table,
    group_key: str,
    columns: list[str] | None = None,
    verbosity: int = 0,
) -> set[str]:
    """
    Returns the columns usable as covariates or outcomes.

    A column is retained only if it has no missing value anywhere in the table
    AND more than one distinct value within every trial. Columns failing the
    missingness test are excluded regardless of their variation.

    Args:
        table: Raw per-farmer PyArrow Table.
        group_key: Name of the trial column.
        columns: Candidate columns. Defaults to every column except `group_key`.
        verbosity: Controls logging: <= -1 logs each excluded column at INFO.

    Returns:
        The set of retained column names.

    Raises:
        TypeError: If `table` is not a PyArrow Table.
        MissingColumnError: If `group_key` or a candidate column is absent.
    """
    if not isinstance(table, pa.Table):
        raise TypeError("Input 'table' must be a PyArrow Table.")
    if group_key not in table.column_names:
        raise MissingColumnError([group_key], context="raw table")

    if columns is None:
        candidates = [c for c in table.column_names if c != group_key]
    else:
        candidates = [c for c in columns if c != group_key]
        missing = set(candidates) - set(table.column_names)
        if missing:
            raise MissingColumnError(missing, context="raw table")

    retained = set()
    for column in candidates:
        try:
            check_column_usable(table, column, group_key)
        except DegenerateColumnError as e:
            if verbosity <= -1:
                logger.info(f"Excluding column: {e}")
            continue
        retained.add(column)
    return retained


def _coerce_binary(values: pd.Series, name: str, verbosity: int) -> pd.Series:
    """Coerces a column to 0/1 int8; non-binary values become (value != 0)."""
    try:
        numeric = values.astype(float)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Column '{name}' must be numeric or boolean: {e}") from e

    non_binary = ~numeric.isin([0.0, 1.0])
    if non_binary.any():
        if verbosity <= 0:
            warnings.warn(
                f"Column '{name}' contains {int(non_binary.sum())} non-binary values "
                f"({sorted(numeric[non_binary].unique().tolist())[:5]}). "
                "Converting to binary using (value != 0).",
                UserWarning,
                stacklevel=3,
            )
        numeric = (numeric != 0).astype(float)
    return numeric.astype("int8")


def _resolve_group_order(observed: list[str], group_order) -> list[str]:
    if group_order is None:
        return sorted(observed)
    order = [str(g) for g in group_order]
    if len(set(order)) != len(order):
        raise ValueError(f"group_order contains duplicate trial labels: {order}")
    unknown = sorted(set(observed) - set(order))
    if unknown:
        raise ValueError(f"Trials {unknown} are present in the data but not in group_order.")
    return order


def _trial_seed(root: np.random.SeedSequence, label: str) -> np.random.SeedSequence:
    """Child seed of `root` for one trial, stable across processes and trial sets."""
    key = int.from_bytes(hashlib.sha256(label.encode("utf-8")).digest()[:8], "little")
    return np.random.SeedSequence(root.entropy, spawn_key=(key,))


def build_individual(
    table: pa.Table,
    group_key: str,
    treatment_key: str,
    outcome_key: str,
    covariates: list[str] | None = None,
    test_fraction: float = 0.0,
    seed: int | None = None,
    group_order: list[str] | None = None,
    verbosity: int = 0,
) -> pa.Table:
    """
    Builds the individual-level table for one outcome.

    Renames the trial, treatment and outcome columns to ``group``,
    ``treatment`` and ``outcome``, keeps only those and `covariates`, drops
    rows with a missing outcome and adds a per-row ``is_test`` label.

    ``is_test`` is a Bernoulli(`test_fraction`) draw per row, stratified by
    trial: each trial gets its own generator, a child of
    ``numpy.random.SeedSequence(seed)`` keyed by the trial label. A fixed seed
    and row order reproduce the labels exactly, and a trial's labels do not
    depend on which other trials are present or on `group_order`.

    Labels are drawn after rows with a missing outcome are dropped, so the
    same farmer can be held out for one outcome and not for another. Compare
    cross-validation scores across outcomes with that in mind.

    Rows with a missing treatment are dropped with a warning, so the row
    count can fall below the number of observed outcomes for tables that did
    not pass through `load_trial_data` (which rejects missing treatments).

    Args:
        table: Raw per-farmer PyArrow Table.
        group_key: Name of the trial column.
        treatment_key: Name of the binary treatment column.
        outcome_key: Name of the binary outcome column.
        covariates: Covariate columns to keep (normally the Column Filter output).
        test_fraction: Probability that a row is labelled as held-out test data.
        seed: Seed for the ``is_test`` draws. None draws fresh entropy.
        group_order: Trial labels in reporting order. Defaults to sorted labels.
        verbosity: <= -1 INFO logs, 0 warnings, >= 1 errors only.

    Returns:
        PyArrow Table with columns ``group`` (string), ``treatment``,
        ``outcome`` (int8 0/1), covariates and ``is_test`` (int8 0/1).

    Raises:
        TypeError: If `table` is not a PyArrow Table.
        MissingColumnError: If a key or covariate column is absent.
        ValueError: If `test_fraction` is outside [0, 1], a covariate clashes with a
                    canonical column name, the trial column has missing values, or
                    a trial in the data is missing from `group_order`.
    """
    ####################
    # Input Validation #
    ####################
    if not isinstance(table, pa.Table):
        raise TypeError("Input 'table' must be a PyArrow Table.")
    covariates = list(covariates) if covariates else []
    required = [group_key, treatment_key, outcome_key, *covariates]
    missing = set(required) - set(table.column_names)
    if missing:
        raise MissingColumnError(missing, context="raw table")

    if not isinstance(test_fraction, int | float) or not 0.0 <= test_fraction <= 1.0:
        raise ValueError("test_fraction must be a number between 0 and 1 (inclusive).")
    if len({group_key, treatment_key, outcome_key}) != 3:
        raise ValueError("group_key, treatment_key and outcome_key must be distinct columns.")
    clashing = [
        c for c in covariates if c in CANONICAL_COLUMNS or c in (group_key, treatment_key, outcome_key)
    ]
    if clashing:
        raise ValueError(
            f"Covariates {clashing} clash with the trial/treatment/outcome columns "
            f"or the reserved names {list(CANONICAL_COLUMNS)}."
        )
    if len(set(covariates)) != len(covariates):
        raise ValueError(f"Duplicate covariates: {covariates}")

    ###########################
    # Rename & Filter Rows    #
    ###########################
    df = table.select(required).to_pandas()
    df = df.rename(columns={group_key: "group", treatment_key: "treatment", outcome_key: "outcome"})

    n_raw = len(df)
    df = df[df["outcome"].notna()]
    if verbosity <= -1:
        logger.info(
            f"Outcome '{outcome_key}': kept {len(df)} of {n_raw} rows with an observed outcome."
        )

    if df["group"].isna().any():
        raise ValueError(
            f"Trial column '{group_key}' contains missing values; every record must belong to a trial."
        )

    missing_treatment = df["treatment"].isna()
    if missing_treatment.any():
        if verbosity <= 0:
            warnings.warn(
                f"Dropping {int(missing_treatment.sum())} rows with missing treatment "
                f"in column '{treatment_key}'.",
                UserWarning,
                stacklevel=2,
            )
        df = df[~missing_treatment]

    df = df.reset_index(drop=True)
    df["group"] = df["group"].astype(str)
    df["treatment"] = _coerce_binary(df["treatment"], treatment_key, verbosity)
    df["outcome"] = _coerce_binary(df["outcome"], outcome_key, verbosity)

    order = _resolve_group_order(df["group"].unique().tolist(), group_order)

    ##########################
    # Assign Test Labels     #
    ##########################
    is_test = np.zeros(len(df), dtype="int8")
    root = np.random.SeedSequence(seed)
    group_values = df["group"].to_numpy()
    for label in order:
        positions = np.flatnonzero(group_values == label)
        if positions.size == 0:
            continue
        rng = np.random.default_rng(_trial_seed(root, label))
        is_test[positions] = (rng.random(positions.size) < test_fraction).astype("int8")
    df["is_test"] = is_test

    df = df[["group", "treatment", "outcome", *covariates, "is_test"]]
    result = pa.Table.from_pandas(df, preserve_index=False)
    if not pa.types.is_string(result.schema.field("group").type):
        result = result.set_column(0, "group", result["group"].cast(pa.string()))
    return _update_metadata(
        result.replace_schema_metadata(None),
        {
            META_KEY_OUTCOME: outcome_key,
            META_KEY_GROUP_ORDER: order,
            META_KEY_COVARIATES: covariates,
            META_KEY_SEED: seed,
            META_KEY_TEST_FRACTION: test_fraction,
        },
    )


def aggregate(
    individual: pa.Table,
    group_order: list[str] | None = None,
    strict: bool = False,
    verbosity: int = 0,
) -> pa.Table:
    """
    Aggregates an individual table into one 2x2 contingency row per trial.

    Columns ``a``/``b`` are events/non-events under treatment, ``c``/``d``
    under control, ``n1 = a + b`` and ``n2 = c + d``. Arms without records
    count as 0. Trials with ``n1 == 0`` or ``n2 == 0`` are marked with
    ``empty_arm = True`` since no log odds ratio exists for them.

    Args:
        individual: Table produced by `build_individual`.
        group_order: Output row order. Defaults to the order stored in the
                     individual table's metadata, else sorted trial labels.
                     Trials listed here but absent from the data get all-zero rows.
        strict: Raise `EmptyArmError` instead of warning about empty arms.
        verbosity: <= -1 INFO logs, 0 warnings, >= 1 errors only.

    Returns:
        PyArrow Table with columns group, a, b, c, d, n1, n2 (int64) and
        empty_arm (bool), in group order.

    Raises:
        TypeError: If `individual` is not a PyArrow Table.
        MissingColumnError: If group, treatment or outcome columns are absent.
        ValueError: If treatment/outcome are not 0/1 or a trial is missing from
                    the group order.
        EmptyArmError: If `strict` and any trial has an empty arm.
    """
    if not isinstance(individual, pa.Table):
        raise TypeError("Input 'individual' must be a PyArrow Table.")
    missing = {"group", "treatment", "outcome"} - set(individual.column_names)
    if missing:
        raise MissingColumnError(missing, context="individual table")

    df = individual.select(["group", "treatment", "outcome"]).to_pandas()
    for name in ("treatment", "outcome"):
        if df[name].isna().any() or not df[name].isin([0, 1]).all():
            raise ValueError(f"Column '{name}' of the individual table must contain only 0/1 values.")
    df["group"] = df["group"].astype(str)
    df["treatment"] = df["treatment"].astype("int64")
    df["outcome"] = df["outcome"].astype("int64")

    if group_order is None:
        group_order = _read_metadata(individual, META_KEY_GROUP_ORDER)
    order = _resolve_group_order(df["group"].unique().tolist(), group_order)

    counts = df.groupby(["group", "treatment"])["outcome"].agg(event="sum", total="size")
    counts["nonevent"] = counts["total"] - counts["event"]
    full_index = pd.MultiIndex.from_product([order, [1, 0]], names=["group", "treatment"])
    counts = counts.reindex(full_index, fill_value=0)

    # Rows are (group, 1), (group, 0) in group order
    events = counts["event"].to_numpy().reshape(len(order), 2)
    nonevents = counts["nonevent"].to_numpy().reshape(len(order), 2)

    wide = pd.DataFrame(
        {
            "group": pd.Series(order, dtype=object),
            "a": events[:, 0],
            "b": nonevents[:, 0],
            "c": events[:, 1],
            "d": nonevents[:, 1],
        }
    )
    for name in ("a", "b", "c", "d"):
        wide[name] = wide[name].astype("int64")
    wide["n1"] = wide["a"] + wide["b"]
    wide["n2"] = wide["c"] + wide["d"]
    wide["empty_arm"] = (wide["n1"] == 0) | (wide["n2"] == 0)

    flagged = wide.loc[wide["empty_arm"], "group"].tolist()
    if flagged:
        if strict:
            raise EmptyArmError(flagged)
        logger.debug(f"Trials with an empty arm: {flagged}")
        if verbosity <= 0:
            warnings.warn(
                f"Trials {flagged} have no subjects in the treatment or control arm "
                "and cannot contribute a treatment-control contrast.",
                EmptyArmWarning,
                stacklevel=2,
            )
    if verbosity <= -1:
        logger.info(f"Aggregated {len(df)} records into {len(order)} trials.")

    result = pa.Table.from_pandas(wide, schema=AGGREGATE_SCHEMA, preserve_index=False)
    carried = {
        key: _read_metadata(individual, key)
        for key in (META_KEY_OUTCOME, META_KEY_COVARIATES)
        if _read_metadata(individual, key) is not None
    }
    carried[META_KEY_GROUP_ORDER] = order
    carried[META_KEY_FLAGGED_GROUPS] = flagged
    return _update_metadata(result.replace_schema_metadata(None), carried)


def log_odds_ratios(aggregate_table: pa.Table, correction: float = 0.5) -> pa.Table:
    """
    Per-trial log odds ratio (treatment vs control) and its variance.

    When any cell of a trial's 2x2 table is zero, `correction` is added to all
    four cells (Haldane-Anscombe). Trials with an empty arm get NaN and are
    never divided by zero.

    Returns:
        PyArrow Table with columns group, log_or, variance, corrected, empty_arm.
    """
    if not isinstance(aggregate_table, pa.Table):
        raise TypeError("Input 'aggregate_table' must be a PyArrow Table.")
    missing = {"group", "a", "b", "c", "d"} - set(aggregate_table.column_names)
    if missing:
        raise MissingColumnError(missing, context="aggregate table")
    if correction < 0:
        raise ValueError("correction cannot be negative.")

    df = aggregate_table.to_pandas()
    # Writable copy: the continuity correction is applied in place
    cells = df[["a", "b", "c", "d"]].to_numpy(dtype=float, copy=True)
    n1 = cells[:, 0] + cells[:, 1]
    n2 = cells[:, 2] + cells[:, 3]
    empty_arm = (n1 == 0) | (n2 == 0)

    corrected = (cells == 0).any(axis=1) & ~empty_arm & (correction > 0)
    cells[corrected] += correction

    log_or = np.full(len(df), np.nan)
    variance = np.full(len(df), np.nan)
    valid = ~empty_arm & (cells > 0).all(axis=1)
    a, b, c, d = (cells[valid, i] for i in range(4))
    log_or[valid] = np.log(a) + np.log(d) - np.log(b) - np.log(c)
    variance[valid] = 1.0 / a + 1.0 / b + 1.0 / c + 1.0 / d

    return pa.table(
        {
            "group": pa.array(df["group"].astype(str).tolist(), type=pa.string()),
            "log_or": pa.array(log_or, type=pa.float64()),
            "variance": pa.array(variance, type=pa.float64()),
            "corrected": pa.array(corrected, type=pa.bool_()),
            "empty_arm": pa.array(empty_arm, type=pa.bool_()),
        }
    )
