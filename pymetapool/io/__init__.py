from ._io_utils import get_table_metadata
from .io import (
    META_KEY_COVARIATE_COLS,
    META_KEY_GROUP_COL,
    META_KEY_OUTCOME_COLS,
    META_KEY_TREATMENT_COL,
    export_formatted_results,
    export_results,
    load_trial_data,
    read_trial_roles,
)

__all__ = [
    "load_trial_data",
    "read_trial_roles",
    "get_table_metadata",
    "export_results",
    "export_formatted_results",
    "META_KEY_GROUP_COL",
    "META_KEY_TREATMENT_COL",
    "META_KEY_OUTCOME_COLS",
    "META_KEY_COVARIATE_COLS",
]
