from .visualisation import (
    _MATPLOTLIB_AVAILABLE,
    Axes,
    format_summary_table,
    plot_forest,
    plot_heterogeneity,
    plot_pooling_comparison,
    plt,
)

__all__ = [
    "format_summary_table",
    "plot_forest",
    "plot_pooling_comparison",
    "plot_heterogeneity",
    "_MATPLOTLIB_AVAILABLE",
    "plt",
    "Axes",
]
