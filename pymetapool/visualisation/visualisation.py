"""
Visualisation and display helpers
"""

from typing import Any

import numpy as np
import pandas as pd
import pyarrow as pa
from pandas.io.formats.style import Styler

# Interval columns combined into "value [lower - upper]" strings
INTERVAL_COLUMNS = {
    "estimate": ("lower", "upper"),
    "i2": ("i2_lower", "i2_upper"),
}

DEFAULT_FLOAT_COLS = ["estimate", "lower", "upper", "i2", "i2_lower", "i2_upper", "tau"]


def format_summary_table(
    table: pa.Table,
    decimal_places: int | None = 2,
    exponentiate: bool = False,
    ci_column: bool = False,
    order_by: str | list[str] | None = "row",
) -> Styler:
    """
    Converts a summary table (from `summarise_outcomes`) to a styled Pandas
    DataFrame for display.

    Args:
        table: The summary PyArrow Table.
        decimal_places: Number of decimal places for float columns. If None, no
                        formatting is applied. Defaults to 2.
        exponentiate: If True, report odds ratios (exp of the log odds ratio
                      estimate and bounds) and rename 'estimate' to 'odds_ratio'.
        ci_column: If True, show intervals in separate '{column} CI' columns.
                   If False (default), integrate them into the value column as a
                   string like 'value [lower - upper]'.
        order_by: Column name(s) to sort by before styling. None keeps row order.

    Returns:
        A pandas Styler object ready for display in environments like Jupyter.

    Raises:
        TypeError: If 'table' is not a PyArrow Table or 'order_by' has a wrong type.
        ValueError: If 'decimal_places' is invalid or 'order_by' columns are missing.
    """
    if not isinstance(table, pa.Table):
        raise TypeError("Input 'table' must be a PyArrow Table.")
    if decimal_places is not None and (not isinstance(decimal_places, int) or decimal_places < 0):
        raise ValueError("'decimal_places' must be a non-negative integer or None.")

    df = table.to_pandas()

    if order_by is not None:
        if isinstance(order_by, str):
            order_by = [order_by]
        if not isinstance(order_by, list):
            raise TypeError("'order_by' must be a string, list of strings, or None.")
        missing_cols = [col for col in order_by if col not in df.columns]
        if missing_cols:
            raise ValueError(
                f"Columns {missing_cols} not found in table. Available columns: {df.columns.tolist()}"
            )
        df = df.sort_values(by=order_by).reset_index(drop=True)

    if exponentiate:
        for col in ("estimate", "lower", "upper"):
            if col in df.columns:
                df[col] = np.exp(df[col].astype(float))

    if decimal_places is None:
        return df.rename(columns={"estimate": "odds_ratio"} if exponentiate else {}).style

    format_str = f"{{:,.{decimal_places}f}}"

    def format_value(value):
        if pd.isnull(value):
            return "nan"
        return format_str.format(value)

    cols_to_drop = []
    string_cols = set()
    for value_col, (lower_col, upper_col) in INTERVAL_COLUMNS.items():
        if not {value_col, lower_col, upper_col} <= set(df.columns):
            continue
        intervals = [
            f"[{format_value(lo)} - {format_value(hi)}]" if pd.notnull(lo) and pd.notnull(hi) else ""
            for lo, hi in zip(df[lower_col], df[upper_col], strict=True)
        ]
        if ci_column:
            position = df.columns.get_loc(value_col) + 1
            df.insert(position, f"{value_col} CI", intervals)
        else:
            df[value_col] = [
                f"{format_value(v)} {ci}".rstrip() for v, ci in zip(df[value_col], intervals, strict=True)
            ]
            string_cols.add(value_col)
        cols_to_drop.extend([lower_col, upper_col])

    df = df.drop(columns=cols_to_drop)
    if exponentiate:
        df = df.rename(columns={"estimate": "odds_ratio", "estimate CI": "odds_ratio CI"})

    format_dict = {
        col: format_str
        for col in df.columns
        if col in DEFAULT_FLOAT_COLS and col not in string_cols
    }
    if "odds_ratio" in df.columns and "estimate" not in string_cols:
        format_dict["odds_ratio"] = format_str
    return df.style.format(format_dict, na_rep="nan")


# --- Plotting Functions ---

# Guard imports for plotting libraries
try:
    import matplotlib.pyplot as plt
    from matplotlib.axes import Axes

    _MATPLOTLIB_AVAILABLE = True
except ImportError:
    plt = None
    Axes = None  # type: ignore
    _MATPLOTLIB_AVAILABLE = False


def _get_axes(ax, figsize):
    if not _MATPLOTLIB_AVAILABLE:
        raise ImportError("matplotlib is required for plotting. Please install it.")
    if ax is None:
        _, ax = plt.subplots(figsize=figsize)
    return ax


def plot_forest(
    result: Any,
    ax: Any | None = None,
    exponentiate: bool = False,
    title: str | None = None,
    **kwargs,
):
    """
    Forest plot of per-trial effects with the pooled estimate as a diamond.

    Args:
        result: A `MetaAnalysisResult`.
        ax: Optional Matplotlib Axes object to plot on.
        exponentiate: Plot odds ratios on a log axis instead of log odds ratios.
        title: Plot title. Defaults to the outcome and pooling mode.
        **kwargs: Additional keyword arguments passed to the per-trial `ax.plot()`.

    Returns:
        matplotlib.axes.Axes: The Axes object with the forest plot.

    Raises:
        ImportError: If matplotlib is not installed.
    """
    effects = result.group_effects.to_pandas()
    n = len(effects)
    has_pooled = bool(np.isfinite(result.pooled.mean))
    ax = _get_axes(ax, (8, max(3, (n + has_pooled) * 0.45 + 1.5)))

    transform = np.exp if exponentiate else (lambda x: x)
    y_positions = np.arange(n + has_pooled)[::-1]
    marker_kwargs = {"color": "navy"} | kwargs

    for i, row in effects.iterrows():
        y = y_positions[i]
        if not np.isfinite(row["mean"]):
            continue
        ax.plot(transform(row["mean"]), y, "s", markersize=6, zorder=3, **marker_kwargs)
        ax.plot(
            [transform(row["lower"]), transform(row["upper"])],
            [y, y],
            "-",
            linewidth=1.5,
            zorder=2,
            **marker_kwargs,
        )

    labels = effects["group"].tolist()
    if has_pooled:
        pooled = result.pooled
        y = y_positions[-1]
        ax.fill(
            [transform(pooled.lower), transform(pooled.mean), transform(pooled.upper), transform(pooled.mean)],
            [y, y + 0.2, y, y - 0.2],
            color="firebrick",
            zorder=3,
        )
        ax.axvline(transform(pooled.mean), color="gray", linestyle=":", linewidth=0.8, zorder=1)
        labels.append("Overall")

    ax.axvline(1.0 if exponentiate else 0.0, color="black", linewidth=0.8, zorder=1)
    if exponentiate:
        ax.set_xscale("log")
    ax.set_yticks(y_positions)
    ax.set_yticklabels(labels)
    ax.set_xlabel("Odds ratio" if exponentiate else "Log odds ratio")
    ax.set_title(title or f"{result.outcome} ({result.pooling} pooling)")

    het = result.heterogeneity
    if np.isfinite(het.i2):
        text = f"I² = {het.i2:.0%}"
        if np.isfinite(het.i2_lower) and np.isfinite(het.i2_upper):
            text += f" [{het.i2_lower:.0%} - {het.i2_upper:.0%}]"
        if np.isfinite(het.tau):
            text += f", tau = {het.tau:.3f}"
        ax.text(0.02, -0.12, text, transform=ax.transAxes, fontsize=8, style="italic")

    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    return ax


def plot_pooling_comparison(
    comparison: pa.Table,
    ax: Any | None = None,
    exponentiate: bool = False,
):
    """
    Per-trial estimates under each pooling mode, side by side.

    Args:
        comparison: Table from `compare_pooling`.
        ax: Optional Matplotlib Axes object to plot on.
        exponentiate: Plot odds ratios on a log axis.

    Returns:
        matplotlib.axes.Axes: The Axes object with the comparison plotted.
    """
    if not isinstance(comparison, pa.Table):
        raise TypeError("Input 'comparison' must be a PyArrow Table.")
    df = comparison.to_pandas()
    missing = {"pooling", "group", "estimate", "lower", "upper"} - set(df.columns)
    if missing:
        raise ValueError(f"Comparison table is missing columns {sorted(missing)}.")

    groups = list(dict.fromkeys(df["group"]))
    modes = list(dict.fromkeys(df["pooling"]))
    ax = _get_axes(ax, (8, max(3, len(groups) * 0.6 + 1.5)))

    transform = np.exp if exponentiate else (lambda x: x)
    base = np.arange(len(groups))[::-1].astype(float)
    offsets = np.linspace(-0.25, 0.25, len(modes)) if len(modes) > 1 else np.zeros(1)
    for mode, offset in zip(modes, offsets, strict=True):
        sub = df[df["pooling"] == mode].set_index("group").reindex(groups)
        finite = np.isfinite(sub["estimate"].to_numpy(dtype=float))
        y = base[finite] + offset
        est = transform(sub["estimate"].to_numpy(dtype=float)[finite])
        lower = transform(sub["lower"].to_numpy(dtype=float)[finite])
        upper = transform(sub["upper"].to_numpy(dtype=float)[finite])
        ax.errorbar(
            est,
            y,
            xerr=[est - lower, upper - est],
            fmt="o",
            markersize=4,
            capsize=2,
            label=mode,
        )

    ax.axvline(1.0 if exponentiate else 0.0, color="black", linewidth=0.8)
    if exponentiate:
        ax.set_xscale("log")
    ax.set_yticks(base)
    ax.set_yticklabels(groups)
    ax.set_xlabel("Odds ratio" if exponentiate else "Log odds ratio")
    ax.set_title("Pooling comparison")
    ax.legend(title="Pooling", fontsize=8)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    return ax


def plot_heterogeneity(
    table: pa.Table,
    label_col: str | None = None,
    ax: Any | None = None,
):
    """
    I² point estimates with intervals, one row per outcome or pooling mode.

    Args:
        table: Table with 'i2', 'i2_lower', 'i2_upper' columns, e.g. from
               `summarise_outcomes` or `heterogeneity_table`.
        label_col: Column used for row labels. Defaults to 'label' if present,
                   else 'pooling'.
        ax: Optional Matplotlib Axes object to plot on.

    Returns:
        matplotlib.axes.Axes: The Axes object with the heterogeneity plot.
    """
    if not isinstance(table, pa.Table):
        raise TypeError("Input 'table' must be a PyArrow Table.")
    df = table.to_pandas()
    if label_col is None:
        label_col = "label" if "label" in df.columns else "pooling"
    missing = {label_col, "i2", "i2_lower", "i2_upper"} - set(df.columns)
    if missing:
        raise ValueError(f"Table is missing columns {sorted(missing)}.")

    ax = _get_axes(ax, (7, max(3, len(df) * 0.45 + 1.5)))
    y = np.arange(len(df))[::-1]
    i2 = df["i2"].to_numpy(dtype=float)
    lower = df["i2_lower"].to_numpy(dtype=float)
    upper = df["i2_upper"].to_numpy(dtype=float)
    has_interval = np.isfinite(lower) & np.isfinite(upper) & np.isfinite(i2)

    ax.errorbar(
        i2[has_interval],
        y[has_interval],
        xerr=[i2[has_interval] - lower[has_interval], upper[has_interval] - i2[has_interval]],
        fmt="o",
        color="navy",
        capsize=2,
    )
    point_only = np.isfinite(i2) & ~has_interval
    ax.plot(i2[point_only], y[point_only], "o", color="navy")

    ax.set_xlim(0.0, 1.0)
    ax.set_yticks(y)
    ax.set_yticklabels(df[label_col].astype(str).tolist())
    ax.set_xlabel("I²")
    ax.set_title("Between-trial heterogeneity")
    ax.grid(True, axis="x", alpha=0.3)
    return ax
