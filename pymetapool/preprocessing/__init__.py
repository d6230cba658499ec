from ._column_utils import ColumnProfile, check_column_usable, profile_column
from .model_inputs import (
    AggregateInput,
    CoefficientInput,
    IndividualInput,
    ModelInput,
    ModelInputSpec,
    get_model_input,
)
from .preprocessing import (
    aggregate,
    build_individual,
    log_odds_ratios,
    select_usable_columns,
)

__all__ = [
    "select_usable_columns",
    "profile_column",
    "check_column_usable",
    "ColumnProfile",
    "build_individual",
    "aggregate",
    "log_odds_ratios",
    "ModelInput",
    "ModelInputSpec",
    "AggregateInput",
    "IndividualInput",
    "CoefficientInput",
    "get_model_input",
]
