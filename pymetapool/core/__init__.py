from .config import (
    ENV_PREFIX,
    POOLING_MODES,
    TAU_ESTIMATORS,
    MetaAnalysisConfig,
    validate_pooling,
)
from .exceptions import (
    AdapterError,
    ConvergenceWarning,
    DegenerateColumnError,
    EmptyArmError,
    EmptyArmWarning,
    MissingColumnError,
    PyMetaPoolError,
)

__all__ = [
    "MetaAnalysisConfig",
    "validate_pooling",
    "ENV_PREFIX",
    "POOLING_MODES",
    "TAU_ESTIMATORS",
    "PyMetaPoolError",
    "MissingColumnError",
    "DegenerateColumnError",
    "EmptyArmError",
    "EmptyArmWarning",
    "AdapterError",
    "ConvergenceWarning",
]
