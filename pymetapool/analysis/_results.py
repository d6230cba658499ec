"""
Result container returned by every meta-analysis engine.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np
import pyarrow as pa

from ..io._io_utils import _read_metadata, _update_metadata

META_KEY_RESULT = "pymetapool.result"

GROUP_EFFECTS_SCHEMA = pa.schema(
    [
        ("group", pa.string()),
        ("mean", pa.float64()),
        ("sd", pa.float64()),
        ("lower", pa.float64()),
        ("upper", pa.float64()),
        ("pooling_factor", pa.float64()),
    ]
)


def _to_json_value(value: Any) -> Any:
    """Converts NumPy scalars and NaN so a value survives a JSON round trip."""
    if isinstance(value, dict):
        return {str(k): _to_json_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_to_json_value(v) for v in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _from_json_float(value: Any) -> float:
    return float("nan") if value is None else float(value)


@dataclass(frozen=True)
class PooledEffect:
    """Overall (hyper-mean) log odds ratio. NaN when there is no pooling."""

    mean: float = float("nan")
    sd: float = float("nan")
    lower: float = float("nan")
    upper: float = float("nan")


@dataclass(frozen=True)
class Heterogeneity:
    """Between-trial SD and I² with its interval bounds."""

    tau: float = float("nan")
    i2: float = float("nan")
    i2_lower: float = float("nan")
    i2_upper: float = float("nan")


@dataclass
class MetaAnalysisResult:
    """
    Posterior (or analytical) summaries for one outcome and pooling mode.

    Attributes:
        outcome: Outcome column the model was fitted to.
        pooling: 'none', 'full' or 'partial'.
        group_effects: Table with GROUP_EFFECTS_SCHEMA, one row per trial in
                       group order. Flagged trials carry NaN.
        pooled: Overall effect.
        heterogeneity: Between-trial heterogeneity.
        n_groups: Number of trials that contributed to the fit.
        converged: False when the engine reports a convergence problem.
        effect: Effect measure, always 'logOR'.
        adapter: Name of the engine that produced the result.
        model_input: Name of the model-input strategy used.
        flagged_groups: Trials excluded from the fit (e.g. an empty arm).
        diagnostics: Engine-specific diagnostics (JSON-serialisable).
    """

    outcome: str
    pooling: str
    group_effects: pa.Table
    pooled: PooledEffect
    heterogeneity: Heterogeneity
    n_groups: int
    converged: bool = True
    effect: str = "logOR"
    adapter: str = ""
    model_input: str = ""
    flagged_groups: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.group_effects, pa.Table):
            raise TypeError("group_effects must be a PyArrow Table.")
        if not self.group_effects.schema.equals(GROUP_EFFECTS_SCHEMA, check_metadata=False):
            self.group_effects = self.group_effects.select(GROUP_EFFECTS_SCHEMA.names).cast(
                GROUP_EFFECTS_SCHEMA
            )

    @property
    def groups(self) -> list[str]:
        return self.group_effects.column("group").to_pylist()

    def to_table(self) -> pa.Table:
        """Serialises the result into one table: group effects plus JSON metadata."""
        payload = {
            "outcome": self.outcome,
            "pooling": self.pooling,
            "effect": self.effect,
            "pooled": asdict(self.pooled),
            "heterogeneity": asdict(self.heterogeneity),
            "n_groups": int(self.n_groups),
            "converged": bool(self.converged),
            "adapter": self.adapter,
            "model_input": self.model_input,
            "flagged_groups": list(self.flagged_groups),
            "diagnostics": self.diagnostics,
        }
        table = self.group_effects.replace_schema_metadata(None)
        return _update_metadata(table, {META_KEY_RESULT: _to_json_value(payload)})

    @classmethod
    def from_table(cls, table: pa.Table) -> "MetaAnalysisResult":
        """
        Rebuilds a result written by `to_table`.

        Raises:
            ValueError: If the table carries no result metadata.
        """
        payload = _read_metadata(table, META_KEY_RESULT)
        if payload is None:
            raise ValueError(f"Table has no '{META_KEY_RESULT}' metadata.")
        pooled = {k: _from_json_float(v) for k, v in payload["pooled"].items()}
        heterogeneity = {k: _from_json_float(v) for k, v in payload["heterogeneity"].items()}
        return cls(
            outcome=payload["outcome"],
            pooling=payload["pooling"],
            group_effects=table.replace_schema_metadata(None),
            pooled=PooledEffect(**pooled),
            heterogeneity=Heterogeneity(**heterogeneity),
            n_groups=payload["n_groups"],
            converged=payload["converged"],
            effect=payload.get("effect", "logOR"),
            adapter=payload.get("adapter", ""),
            model_input=payload.get("model_input", ""),
            flagged_groups=list(payload.get("flagged_groups", [])),
            diagnostics=payload.get("diagnostics", {}),
        )
