"""
Internal utilities for IO operations, like validation and metadata handling.
"""

import json
from typing import Any

import pyarrow as pa
import pyarrow.compute as pc

from ..core.exceptions import MissingColumnError

METADATA_PREFIX = "pymetapool."


def _is_binary_like(field_type: pa.DataType) -> bool:
    return (
        pa.types.is_integer(field_type)
        or pa.types.is_floating(field_type)
        or pa.types.is_boolean(field_type)
    )


def _validate_columns(
    table: pa.Table,
    group_col: str,
    treatment_col: str,
    outcome_cols: list[str],
    covariate_cols: list[str],
) -> None:
    """
    Validates the existence and basic types of the trial columns.

    Args:
        table: The PyArrow Table to validate.
        group_col: Name of the trial identifier column.
        treatment_col: Name of the treatment indicator column.
        outcome_cols: Names of the binary outcome columns.
        covariate_cols: Names of the covariate columns.

    Raises:
        MissingColumnError: If any named column is absent.
        ValueError: If a column has a fundamentally incorrect type, or the trial
                    column contains missing values.
    """
    required_cols = {group_col, treatment_col, *outcome_cols, *covariate_cols}
    missing_cols = required_cols - set(table.column_names)
    if missing_cols:
        raise MissingColumnError(missing_cols, context="loaded data")

    # --- Type Validations ---
    group_type = table.schema.field(group_col).type
    if not (
        pa.types.is_string(group_type)
        or pa.types.is_large_string(group_type)
        or pa.types.is_integer(group_type)
        or pa.types.is_dictionary(group_type)
    ):
        raise ValueError(
            f"Trial column '{group_col}' must be a string, integer or dictionary type, "
            f"but found {group_type}."
        )
    if table[group_col].null_count > 0:
        raise ValueError(
            f"Trial column '{group_col}' contains {table[group_col].null_count} missing values; "
            "every record must belong to exactly one trial."
        )

    treatment_type = table.schema.field(treatment_col).type
    if not _is_binary_like(treatment_type):
        raise ValueError(
            f"Treatment column '{treatment_col}' must be a numeric (integer/float) or boolean type, "
            f"but found {treatment_type}."
        )
    n_missing = table[treatment_col].null_count
    if pa.types.is_floating(treatment_type):
        n_missing += pc.sum(pc.is_nan(table[treatment_col])).as_py() or 0
    if n_missing > 0:
        raise ValueError(
            f"Treatment column '{treatment_col}' contains {n_missing} missing values; "
            "every record must have a known arm."
        )

    for outcome_col in outcome_cols:
        outcome_type = table.schema.field(outcome_col).type
        if not _is_binary_like(outcome_type):
            raise ValueError(
                f"Outcome column '{outcome_col}' must be a numeric (integer/float) or boolean type, "
                f"but found {outcome_type}."
            )
        # Nulls are allowed; they mark farmers for whom the outcome was not measured.
        observed = pc.drop_null(table[outcome_col])
        if len(observed) > 0 and not pa.types.is_boolean(outcome_type):
            values = pc.unique(observed).to_pylist()
            if any(v == v and v not in (0, 1) for v in values):
                raise ValueError(
                    f"Outcome column '{outcome_col}' must be binary (0/1), "
                    f"but found values {sorted(v for v in values if v == v)}."
                )


def _update_metadata(table: pa.Table, entries: dict[str, Any]) -> pa.Table:
    """
    Attaches JSON-encoded ``pymetapool.*`` metadata keys to the table schema.

    Existing metadata is preserved; given keys are added or overwritten.
    """
    metadata = dict(table.schema.metadata or {})
    for key, value in entries.items():
        metadata[key.encode("utf-8")] = json.dumps(value).encode("utf-8")
    return table.replace_schema_metadata(metadata)


def _read_metadata(table: pa.Table, key: str, default: Any = None) -> Any:
    """Reads one JSON-encoded metadata key, returning `default` if absent."""
    metadata = table.schema.metadata or {}
    raw = metadata.get(key.encode("utf-8"))
    if raw is None:
        return default
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Error reading metadata key '{key}': {e}") from e


def get_table_metadata(table: pa.Table) -> dict[str, Any]:
    """
    Returns all ``pymetapool.*`` metadata of a table as decoded Python values.

    Args:
        table: A PyArrow Table produced by pymetapool.

    Returns:
        Dictionary mapping metadata keys (str) to decoded values.
    """
    if not isinstance(table, pa.Table):
        raise TypeError("Input 'table' must be a PyArrow Table.")
    result = {}
    for raw_key in (table.schema.metadata or {}):
        key = raw_key.decode("utf-8")
        if key.startswith(METADATA_PREFIX):
            result[key] = _read_metadata(table, key)
    return result
