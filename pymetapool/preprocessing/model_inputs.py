"""
Model-input strategies: one object per way of feeding trial data to a
meta-analysis engine (aggregate 2x2 counts, individual records, individual
records with covariate coefficients).
"""

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass

import pyarrow as pa
import pyarrow.compute as pc

from ..core.config import MetaAnalysisConfig
from ..core.exceptions import MissingColumnError
from ..io._io_utils import _update_metadata
from ..io.io import read_trial_roles
from .preprocessing import aggregate, build_individual, select_usable_columns

logger = logging.getLogger(__name__)

META_KEY_MODEL_INPUT = "pymetapool.model_input"


@dataclass(frozen=True)
class ModelInputSpec:
    """Column roles for one outcome's model input."""

    group_key: str
    treatment_key: str
    outcome_key: str
    covariates: tuple[str, ...] = ()
    group_order: tuple[str, ...] | None = None

    def __post_init__(self):
        object.__setattr__(self, "covariates", tuple(self.covariates or ()))
        if self.group_order is not None:
            object.__setattr__(self, "group_order", tuple(str(g) for g in self.group_order))

    @classmethod
    def from_table(cls, table: pa.Table, outcome_key: str, **overrides):
        """Builds a spec from the column roles recorded by `load_trial_data`."""
        roles = read_trial_roles(table)
        values = {
            "group_key": roles["group_col"],
            "treatment_key": roles["treatment_col"],
            "covariates": tuple(roles["covariate_cols"] or ()),
        }
        values.update(overrides)
        if values["group_key"] is None or values["treatment_key"] is None:
            raise ValueError(
                "Table has no recorded trial/treatment columns; pass group_key and treatment_key."
            )
        return cls(outcome_key=outcome_key, **values)

    def with_outcome(self, outcome_key: str) -> "ModelInputSpec":
        return ModelInputSpec(
            group_key=self.group_key,
            treatment_key=self.treatment_key,
            outcome_key=outcome_key,
            covariates=self.covariates,
            group_order=self.group_order,
        )


class ModelInput(ABC):
    """
    Strategy that builds and validates the table an engine fits.

    Subclasses define `name`, `required_columns` and `build`.
    """

    name: str = ""
    required_columns: tuple[str, ...] = ()

    @abstractmethod
    def build(
        self,
        raw: pa.Table,
        spec: ModelInputSpec,
        config: MetaAnalysisConfig | None = None,
        verbosity: int = 0,
    ) -> pa.Table:
        """Builds the model input table for `spec.outcome_key` from raw records."""

    def validate(self, table: pa.Table) -> None:
        """
        Raises:
            TypeError: If `table` is not a PyArrow Table.
            MissingColumnError: If a required column is absent.
        """
        if not isinstance(table, pa.Table):
            raise TypeError("Model input must be a PyArrow Table.")
        missing = set(self.required_columns) - set(table.column_names)
        if missing:
            raise MissingColumnError(missing, context=f"{self.name} model input")

    def _individual(self, raw, spec, config, covariates, verbosity) -> pa.Table:
        return build_individual(
            raw,
            group_key=spec.group_key,
            treatment_key=spec.treatment_key,
            outcome_key=spec.outcome_key,
            covariates=covariates,
            test_fraction=config.test_fraction,
            seed=config.seed,
            group_order=list(spec.group_order) if spec.group_order is not None else None,
            verbosity=verbosity,
        )

    def _tag(self, table: pa.Table) -> pa.Table:
        return _update_metadata(table, {META_KEY_MODEL_INPUT: self.name})

    def __repr__(self):
        return f"{type(self).__name__}()"


class AggregateInput(ModelInput):
    """One 2x2 row per trial; covariates are ignored."""

    name = "aggregate"
    required_columns = ("group", "a", "b", "c", "d", "n1", "n2", "empty_arm")

    def build(self, raw, spec, config=None, verbosity=0):
        config = config or MetaAnalysisConfig()
        individual = self._individual(raw, spec, config, None, verbosity)
        table = aggregate(individual, verbosity=verbosity)
        self.validate(table)
        return self._tag(table)


class IndividualInput(ModelInput):
    """One row per farmer, without covariates."""

    name = "individual"
    required_columns = ("group", "treatment", "outcome", "is_test")

    def build(self, raw, spec, config=None, verbosity=0):
        config = config or MetaAnalysisConfig()
        table = self._individual(raw, spec, config, None, verbosity)
        self.validate(table)
        return self._tag(table)


class CoefficientInput(ModelInput):
    """
    One row per farmer with covariates for a coefficient (meta-regression)
    model. Candidate covariates that fail the Column Filter on the rows with an
    observed outcome, or that are not numeric/boolean, are dropped.
    """

    name = "coefficient"
    required_columns = ("group", "treatment", "outcome", "is_test")

    def build(self, raw, spec, config=None, verbosity=0):
        config = config or MetaAnalysisConfig()
        if not isinstance(raw, pa.Table):
            raise TypeError("Input 'raw' must be a PyArrow Table.")
        candidates = list(spec.covariates)
        if not candidates:
            raise ValueError("The coefficient model input needs at least one candidate covariate.")
        missing = {spec.outcome_key, spec.group_key, *candidates} - set(raw.column_names)
        if missing:
            raise MissingColumnError(missing, context="raw table")

        observed = raw.filter(pc.invert(pc.is_null(raw[spec.outcome_key], nan_is_null=True)))
        usable = select_usable_columns(observed, spec.group_key, candidates, verbosity=verbosity)
        numeric = {
            c
            for c in usable
            if pa.types.is_integer(raw.schema.field(c).type)
            or pa.types.is_floating(raw.schema.field(c).type)
            or pa.types.is_boolean(raw.schema.field(c).type)
        }
        covariates = [c for c in candidates if c in numeric]
        dropped = [c for c in candidates if c not in numeric]
        if dropped and verbosity <= 0:
            warnings.warn(
                f"Outcome '{spec.outcome_key}': dropping covariates {dropped} that are "
                "missing, constant within a trial or not numeric.",
                UserWarning,
                stacklevel=2,
            )
        if not covariates:
            raise ValueError(
                f"Outcome '{spec.outcome_key}': no usable covariate among {candidates}."
            )
        if verbosity <= -1:
            logger.info(f"Outcome '{spec.outcome_key}': using covariates {covariates}.")

        table = self._individual(raw, spec, config, covariates, verbosity)
        self.validate(table)
        return self._tag(table)

    def validate(self, table):
        super().validate(table)
        extra = [c for c in table.column_names if c not in self.required_columns]
        if not extra:
            raise ValueError("The coefficient model input must carry at least one covariate column.")


MODEL_INPUTS = {
    "aggregate": AggregateInput,
    "individual": IndividualInput,
    "coefficient": CoefficientInput,
}


def get_model_input(name: str | ModelInput) -> ModelInput:
    """Resolves 'aggregate', 'individual' or 'coefficient' to a strategy instance."""
    if isinstance(name, ModelInput):
        return name
    try:
        return MODEL_INPUTS[name]()
    except (KeyError, TypeError):
        raise ValueError(
            f"Unknown model input '{name}'. Supported inputs are: {list(MODEL_INPUTS)}"
        ) from None
