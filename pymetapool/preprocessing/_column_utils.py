"""
Internal helpers for profiling candidate covariate/outcome columns.
"""

from dataclasses import dataclass, field

import pandas as pd
import pyarrow as pa

from ..core.exceptions import DegenerateColumnError, MissingColumnError


@dataclass(frozen=True)
class ColumnProfile:
    """
    Missingness and within-trial variation of one column.

    Attributes:
        column: Column name.
        missing_fraction: Share of rows with a null or NaN value (0 if fully observed).
        distinct_count_per_group: Trial label -> number of distinct non-missing values.
    """

    column: str
    missing_fraction: float
    distinct_count_per_group: dict[str, int] = field(default_factory=dict)

    @property
    def constant_groups(self) -> list[str]:
        """Trials in which the column takes at most one distinct value."""
        return [g for g, n in self.distinct_count_per_group.items() if n <= 1]

    @property
    def is_usable(self) -> bool:
        return (
            self.missing_fraction == 0
            and len(self.distinct_count_per_group) > 0
            and not self.constant_groups
        )


def profile_column(table: pa.Table, column: str, group_key: str) -> ColumnProfile:
    """
    Computes the `ColumnProfile` of `column` with trials defined by `group_key`.

    Raises:
        MissingColumnError: If `column` or `group_key` is absent.
    """
    missing = {column, group_key} - set(table.column_names)
    if missing:
        raise MissingColumnError(missing)

    df = table.select([group_key, column]).to_pandas()
    values = df[column]
    n_rows = len(df)
    missing_fraction = float(values.isna().sum()) / n_rows if n_rows else 0.0

    # dropna=False keeps trials whose values are all missing (count 0)
    distinct = df.groupby(group_key, sort=True, dropna=False, observed=True)[column].nunique()
    distinct_count_per_group = {
        str(g): int(n) for g, n in distinct.items() if not pd.isna(g)
    }
    return ColumnProfile(
        column=column,
        missing_fraction=missing_fraction,
        distinct_count_per_group=distinct_count_per_group,
    )


def check_column_usable(table: pa.Table, column: str, group_key: str) -> ColumnProfile:
    """
    Profiles `column` and raises if it cannot be used as a covariate or outcome.

    Returns:
        The column's profile when it is usable.

    Raises:
        DegenerateColumnError: If the column has any missing value, or is
                               constant within at least one trial.
        MissingColumnError: If `column` or `group_key` is absent.
    """
    profile = profile_column(table, column, group_key)
    if profile.missing_fraction > 0:
        raise DegenerateColumnError(
            column, f"{profile.missing_fraction:.1%} of values are missing"
        )
    if not profile.distinct_count_per_group:
        raise DegenerateColumnError(column, "table has no rows")
    if profile.constant_groups:
        raise DegenerateColumnError(
            column, f"constant within trial(s) {profile.constant_groups}"
        )
    return profile
