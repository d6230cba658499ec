"""
Run configuration shared by every pipeline stage.
"""

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

ENV_PREFIX = "PYMETAPOOL_"

POOLING_MODES = ("none", "full", "partial")
TAU_ESTIMATORS = ("dl", "pm")

# Fields that change the fitted result. `cores` and `test_fraction` are
# excluded: the first only schedules chains, the second is captured by the
# input table fingerprint.
_RESULT_FIELDS = (
    "seed",
    "num_iters",
    "num_warmup",
    "num_chains",
    "target_accept",
    "max_treedepth",
    "ci_level",
    "rhat_threshold",
    "prior_effect_sd",
    "prior_tau_sd",
    "prior_baseline_sd",
    "prior_coef_sd",
    "tau_estimator",
    "use_hksj",
    "continuity_correction",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Cannot interpret '{value}' as a boolean.")


def _parse_optional_int(value: Any) -> int | None:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none")):
        return None
    return int(value)


_FIELD_PARSERS = {
    "seed": _parse_optional_int,
    "num_iters": int,
    "num_warmup": _parse_optional_int,
    "num_chains": int,
    "cores": _parse_optional_int,
    "target_accept": float,
    "max_treedepth": int,
    "test_fraction": float,
    "ci_level": float,
    "rhat_threshold": float,
    "prior_effect_sd": float,
    "prior_tau_sd": float,
    "prior_baseline_sd": float,
    "prior_coef_sd": float,
    "tau_estimator": str,
    "use_hksj": _parse_bool,
    "continuity_correction": float,
}


@dataclass(frozen=True)
class MetaAnalysisConfig:
    """
    Immutable configuration passed explicitly to every stage.

    Attributes:
        seed: Seed for the test-split draws and the sampler. None draws fresh
              entropy and makes runs non-reproducible.
        num_iters: Posterior draws per chain. This single value is used both
                   for sampling and for naming cache files.
        num_warmup: Warm-up (tuning) iterations per chain. None uses
                    ``num_iters // 2``.
        num_chains: Number of sampling chains.
        cores: Chains run in parallel by the sampler. None uses ``num_chains``.
        target_accept: NUTS target acceptance rate.
        max_treedepth: NUTS maximum tree depth.
        test_fraction: Probability that an individual record is labelled as
                       held-out test data.
        ci_level: Width of the reported credible/confidence intervals.
        rhat_threshold: Largest R-hat accepted as converged.
        prior_effect_sd: Normal prior scale for the (hyper)mean log odds ratio
                         and for unpooled per-trial effects.
        prior_tau_sd: Half-normal prior scale for between-trial SD.
        prior_baseline_sd: Normal prior scale for per-trial control log-odds.
        prior_coef_sd: Normal prior scale for covariate coefficients.
        tau_estimator: Between-trial variance estimator for the
                       inverse-variance engine ('dl' or 'pm').
        use_hksj: Apply the Hartung-Knapp-Sidik-Jonkman adjustment to the
                  random-effects interval.
        continuity_correction: Added to every cell of a 2x2 table that has a
                               zero cell before computing log odds ratios.
    """

    seed: int | None = 1990
    num_iters: int = 10000
    num_warmup: int | None = None
    num_chains: int = 4
    cores: int | None = None
    target_accept: float = 0.95
    max_treedepth: int = 10
    test_fraction: float = 0.1
    ci_level: float = 0.95
    rhat_threshold: float = 1.05
    prior_effect_sd: float = 2.5
    prior_tau_sd: float = 1.0
    prior_baseline_sd: float = 5.0
    prior_coef_sd: float = 2.5
    tau_estimator: str = "dl"
    use_hksj: bool = False
    continuity_correction: float = 0.5

    def __post_init__(self):
        if self.seed is not None and (not isinstance(self.seed, int) or self.seed < 0):
            raise ValueError("seed must be a non-negative integer or None.")
        for name in ("num_iters", "num_chains", "max_treedepth"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer.")
        if self.num_warmup is not None and (
            not isinstance(self.num_warmup, int) or self.num_warmup < 0
        ):
            raise ValueError("num_warmup must be a non-negative integer or None.")
        if self.cores is not None and (not isinstance(self.cores, int) or self.cores <= 0):
            raise ValueError("cores must be a positive integer or None.")
        if not 0 < self.target_accept < 1:
            raise ValueError("target_accept must be between 0 and 1 (exclusive).")
        if not 0.0 <= self.test_fraction <= 1.0:
            raise ValueError("test_fraction must be between 0 and 1 (inclusive).")
        if not 0 < self.ci_level < 1:
            raise ValueError("ci_level must be between 0 and 1 (exclusive).")
        if self.rhat_threshold < 1.0:
            raise ValueError("rhat_threshold must be at least 1.0.")
        for name in ("prior_effect_sd", "prior_tau_sd", "prior_baseline_sd", "prior_coef_sd"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive.")
        if self.tau_estimator not in TAU_ESTIMATORS:
            raise ValueError(
                f"Unsupported tau_estimator '{self.tau_estimator}'. "
                f"Supported estimators are: {list(TAU_ESTIMATORS)}"
            )
        if self.continuity_correction < 0:
            raise ValueError("continuity_correction cannot be negative.")

    @property
    def warmup(self) -> int:
        """Warm-up iterations actually used by the sampler."""
        return self.num_warmup if self.num_warmup is not None else self.num_iters // 2

    @property
    def alpha(self) -> float:
        return 1.0 - self.ci_level

    def replace(self, **changes: Any) -> "MetaAnalysisConfig":
        """Returns a copy with the given fields changed (validated again)."""
        return dataclasses.replace(self, **changes)

    def result_fields(self) -> dict[str, Any]:
        """Fields that determine a fitted result, used to key the result cache."""
        fields = {name: getattr(self, name) for name in _RESULT_FIELDS}
        fields["num_warmup"] = self.warmup
        return fields

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], base: "MetaAnalysisConfig | None" = None):
        """
        Builds a config from a mapping of field names to values.

        Values may be strings (e.g. read from a file or the environment); they
        are parsed to the field's type.

        Raises:
            ValueError: If the mapping has unknown keys or unparsable values.
        """
        unknown = set(mapping) - set(_FIELD_PARSERS)
        if unknown:
            raise ValueError(f"Unknown configuration fields: {sorted(unknown)}")
        parsed = {}
        for name, value in mapping.items():
            try:
                parsed[name] = _FIELD_PARSERS[name](value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for '{name}': {value!r} ({e})") from e
        return dataclasses.replace(base or cls(), **parsed)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        prefix: str = ENV_PREFIX,
        base: "MetaAnalysisConfig | None" = None,
    ):
        """
        Builds a config from ``PYMETAPOOL_<FIELD>`` environment variables.

        Variables that are not set keep the value from `base` (or the defaults).
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in _FIELD_PARSERS:
            env_name = f"{prefix}{name.upper()}"
            if env_name in environ:
                overrides[name] = environ[env_name]
        return cls.from_mapping(overrides, base=base)


def validate_pooling(pooling: str) -> str:
    """Checks a pooling mode name and returns it."""
    if pooling not in POOLING_MODES:
        raise ValueError(
            f"Unsupported pooling '{pooling}'. Supported modes are: {list(POOLING_MODES)}"
        )
    return pooling
