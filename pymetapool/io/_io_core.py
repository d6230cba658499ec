"""
Internal core IO operations: reading trial sources and single-trial files.
"""

import os
from typing import Any

import pandas as pd
import pyarrow as pa
import pyarrow.csv as pv
import pyarrow.parquet as pq

# File extension -> (source type, pyarrow reader)
_FILE_READERS = {
    ".csv": ("csv", pv.read_csv),
    ".parquet": ("parquet", pq.read_table),
    ".pq": ("parquet", pq.read_table),
}
_READERS_BY_TYPE = {kind: reader for kind, reader in _FILE_READERS.values()}

SINGLE_TRIAL_COLUMN = "trial"


def _infer_source_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext not in _FILE_READERS:
        raise TypeError(
            f"Cannot infer source type of '{path}' (extension '{ext}'). "
            f"Known extensions: {sorted(_FILE_READERS)}; otherwise pass source_type."
        )
    return _FILE_READERS[ext][0]


def _read_file(path: str, source_type: str, read_options: dict[str, Any]) -> pa.Table:
    reader = _READERS_BY_TYPE.get(source_type)
    if reader is None:
        raise TypeError(
            f"Unsupported source_type '{source_type}' for a file; "
            f"expected one of {sorted(_READERS_BY_TYPE)}."
        )
    try:
        return reader(path, **read_options.get(source_type, {}))
    except (pa.ArrowException, OSError, TypeError) as e:
        raise ValueError(f"Could not read {source_type} trial file '{path}': {e}") from e


def _read_trial_source(
    source: str | os.PathLike | pd.DataFrame | pa.Table,
    source_type: str | None,
    read_options: dict[str, Any],
) -> tuple[pa.Table, str]:
    """
    Reads per-farmer trial records into a PyArrow Table.

    Args:
        source: CSV/Parquet path, Pandas DataFrame or PyArrow Table.
        source_type: 'csv', 'parquet', 'pandas' or 'arrow'; inferred when None
            (from the object type, or the file extension for paths).
        read_options: Per-type keyword arguments for the PyArrow readers,
            e.g. ``{"csv": {"parse_options": ...}}``.

    Returns:
        The table and the source type that was used.

    Raises:
        FileNotFoundError: If a path does not exist.
        ValueError: If `source_type` contradicts the source or reading fails.
        TypeError: If the source kind is unsupported or cannot be inferred.
    """
    in_memory = {pa.Table: "arrow", pd.DataFrame: "pandas"}
    for cls, kind in in_memory.items():
        if not isinstance(source, cls):
            continue
        if source_type not in (None, kind):
            raise ValueError(f"A {cls.__name__} source cannot be read as '{source_type}'.")
        if kind == "arrow":
            return source, kind
        try:
            return pa.Table.from_pandas(source, preserve_index=False), kind
        except (pa.ArrowException, TypeError, ValueError) as e:
            raise ValueError(f"DataFrame could not be converted to Arrow: {e}") from e

    if not isinstance(source, str | os.PathLike):
        raise TypeError(
            f"Unsupported source type: {type(source).__name__}. Expected a file path, "
            "a Pandas DataFrame or a PyArrow Table."
        )

    path = os.fspath(source)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Trial data file not found: {path}")
    kind = source_type if source_type is not None else _infer_source_type(path)
    return _read_file(path, kind, read_options), kind


def _assign_single_trial(
    table: pa.Table,
    group_col: str | None,
    assign_group_name: str | None,
) -> tuple[pa.Table, str]:
    """
    Resolves the trial column, adding a constant one for single-trial files.

    Exactly one of `group_col` and `assign_group_name` must be given. With
    `assign_group_name`, a string column named ``trial`` holding that name is
    appended.

    Returns:
        The (possibly extended) table and the trial column name.
    """
    if (group_col is None) == (assign_group_name is None):
        if group_col is not None:
            raise ValueError(
                f"Cannot provide both `group_col` ('{group_col}') and "
                f"`assign_group_name` ('{assign_group_name}')."
            )
        raise ValueError("One of `group_col` or `assign_group_name` must be provided.")

    if group_col is not None:
        return table, group_col

    if SINGLE_TRIAL_COLUMN in table.column_names:
        raise ValueError(
            f"Cannot assign trial name: column '{SINGLE_TRIAL_COLUMN}' already exists in the data."
        )
    names = pa.array([assign_group_name] * table.num_rows, type=pa.string())
    return table.append_column(pa.field(SINGLE_TRIAL_COLUMN, pa.string()), names), SINGLE_TRIAL_COLUMN
