from typing import Any

import pandas as pd
import pyarrow as pa
import pyarrow.csv as pv
import pyarrow.parquet as pq
from pandas.io.formats.style import Styler

from ._io_core import _assign_single_trial, _read_trial_source
from ._io_utils import _read_metadata, _update_metadata, _validate_columns

META_KEY_GROUP_COL = "pymetapool.io.group_col"
META_KEY_TREATMENT_COL = "pymetapool.io.treatment_col"
META_KEY_OUTCOME_COLS = "pymetapool.io.outcome_cols"
META_KEY_COVARIATE_COLS = "pymetapool.io.covariate_cols"
META_KEY_SOURCE_TYPE = "pymetapool.io.source_type"


def load_trial_data(
    source: str | pd.DataFrame | pa.Table,
    group_col: str | None,
    treatment_col: str,
    outcome_cols: str | list[str],
    covariate_cols: list[str] | None = None,
    assign_group_name: str | None = None,
    source_type: str | None = None,  # 'csv', 'parquet', 'pandas', 'arrow'; inferred if None
    read_options: dict[str, Any] | None = None,  # e.g. {'csv': {'parse_options': ...}}
) -> pa.Table:
    """
    Loads and validates pooled per-farmer trial data into a PyArrow Table.

    The role of each column (trial, treatment, outcomes, covariates) is recorded
    in the schema metadata so later stages can default to it.

    Args:
        source: Path to a CSV/Parquet file, a Pandas DataFrame or a PyArrow Table.
        group_col: Name of the column identifying the trial of each record.
                   Cannot be used together with `assign_group_name`.
        treatment_col: Name of the binary treatment indicator column.
        outcome_cols: Name(s) of the binary outcome column(s). Missing values are
                      allowed and mean the outcome was not recorded.
        covariate_cols: Optional names of covariate columns to validate and record.
        assign_group_name: Optional trial identifier for a file holding a single
                           trial. A new column named 'trial' is added with this
                           constant value. Raises ValueError if 'trial' already
                           exists or if `group_col` is also provided.
        source_type: Optional hint for the source type. If None, inferred from the
                     source path extension or object type.
        read_options: Optional dictionary of pyarrow reader options keyed by
                      source type ('csv', 'parquet').

    Returns:
        A validated PyArrow Table with ``pymetapool.io.*`` metadata attached.

    Raises:
        FileNotFoundError: If the source path does not exist.
        MissingColumnError: If a named column is absent.
        ValueError: If column types are incorrect, outcomes are not binary, the trial
                    column has missing values or arguments conflict.
        TypeError: If the source type is unsupported or cannot be inferred.
    """
    if read_options is None:
        read_options = {}
    if isinstance(outcome_cols, str):
        outcome_cols = [outcome_cols]
    outcome_cols = list(outcome_cols)
    if not outcome_cols:
        raise ValueError("At least one outcome column must be provided.")
    covariate_cols = list(covariate_cols) if covariate_cols else []

    ###############
    # 1. Read     #
    ###############
    table, resolved_source_type = _read_trial_source(source, source_type, read_options)

    ###################
    # 2. Trial column #
    ###################
    table, group_col = _assign_single_trial(table, group_col, assign_group_name)

    overlap = {group_col, treatment_col} & set(outcome_cols + covariate_cols)
    if overlap:
        raise ValueError(
            f"Columns {sorted(overlap)} are used both as trial/treatment and as outcome/covariate."
        )

    #######################
    # 3. Validate Columns #
    #######################
    _validate_columns(
        table=table,
        group_col=group_col,
        treatment_col=treatment_col,
        outcome_cols=outcome_cols,
        covariate_cols=covariate_cols,
    )

    ###########################
    # 4. Record column roles  #
    ###########################
    try:
        table = _update_metadata(
            table,
            {
                META_KEY_GROUP_COL: group_col,
                META_KEY_TREATMENT_COL: treatment_col,
                META_KEY_OUTCOME_COLS: outcome_cols,
                META_KEY_COVARIATE_COLS: covariate_cols,
                META_KEY_SOURCE_TYPE: resolved_source_type,
            },
        )
    except Exception as e:
        raise RuntimeError(f"Could not record column roles in the schema metadata: {e}") from e

    return table


def read_trial_roles(table: pa.Table) -> dict[str, Any]:
    """
    Reads the column roles recorded by `load_trial_data`.

    Returns:
        Dictionary with keys 'group_col', 'treatment_col', 'outcome_cols' and
        'covariate_cols'. Values are None (or empty lists) when the table was not
        produced by `load_trial_data`.
    """
    if not isinstance(table, pa.Table):
        raise TypeError(f"Expected a pyarrow.Table, got {type(table).__name__}")
    return {
        "group_col": _read_metadata(table, META_KEY_GROUP_COL),
        "treatment_col": _read_metadata(table, META_KEY_TREATMENT_COL),
        "outcome_cols": _read_metadata(table, META_KEY_OUTCOME_COLS, []),
        "covariate_cols": _read_metadata(table, META_KEY_COVARIATE_COLS, []),
    }


EXPORT_FORMATS = ("dataframe", "csv", "parquet")


def _check_export_args(format: str, output_path: str | None) -> None:
    if format not in EXPORT_FORMATS:
        raise ValueError(f"Invalid format '{format}'. Must be one of {list(EXPORT_FORMATS)}")
    if format != "dataframe" and output_path is None:
        raise ValueError(f"output_path must be provided for format '{format}'")


def _write_arrow_csv(table: pa.Table, output_path: str, write_options=None, **kwargs) -> None:
    pv.write_csv(table, output_path, write_options=pv.WriteOptions(**(write_options or {})), **kwargs)


_ARROW_WRITERS = {"csv": _write_arrow_csv, "parquet": pq.write_table}


def export_results(
    results_table: pa.Table,
    output_path: str | None = None,
    format: str = "dataframe",
    **kwargs: Any,
) -> pd.DataFrame | None:
    """
    Writes a results table (summary, pooling comparison, cross-validation)
    with the PyArrow writers, or hands it back as a DataFrame.

    Args:
        results_table: Any PyArrow Table produced by `pymetapool.analysis`.
        output_path: Destination file; required unless `format` is 'dataframe'.
        format: 'dataframe' (default), 'csv' or 'parquet'.
        **kwargs: Passed to the writer: a ``write_options`` dict for
            pyarrow.csv.WriteOptions, pyarrow.parquet.write_table options such
            as ``compression``, or pyarrow.Table.to_pandas options.

    Returns:
        The DataFrame for 'dataframe', otherwise None.

    Raises:
        TypeError: If `results_table` is not a PyArrow Table.
        ValueError: If `format` is unknown or `output_path` is missing.
    """
    if not isinstance(results_table, pa.Table):
        raise TypeError(f"Expected a pyarrow.Table of results, got {type(results_table).__name__}")
    _check_export_args(format, output_path)

    if format == "dataframe":
        return results_table.to_pandas(**kwargs)
    _ARROW_WRITERS[format](results_table, output_path, **kwargs)
    return None


def export_formatted_results(
    styler: Styler,
    output_path: str | None = None,
    format: str = "dataframe",
    **kwargs: Any,
) -> pd.DataFrame | None:
    """
    Exports the data behind a `format_summary_table` Styler.

    Styling is lost in CSV and Parquet output; the formatted strings are kept.
    `kwargs` go to ``DataFrame.to_csv`` / ``DataFrame.to_parquet``.
    """
    if not isinstance(styler, Styler):
        raise TypeError(f"Expected a pandas Styler, got {type(styler).__name__}")
    _check_export_args(format, output_path)

    df = styler.data
    if format == "csv":
        df.to_csv(output_path, **kwargs)
    elif format == "parquet":
        df.to_parquet(output_path, **kwargs)
    else:
        return df
    return None
