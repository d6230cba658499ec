"""
Meta-analysis engine interface and the inverse-variance (statsmodels) engine.
"""

import logging
import warnings
from abc import ABC, abstractmethod

import numpy as np
import pyarrow as pa
from scipy.stats import norm

try:
    from statsmodels.stats.meta_analysis import combine_effects
except ImportError:
    combine_effects = None

from ..core.config import MetaAnalysisConfig, validate_pooling
from ..core.exceptions import AdapterError
from ..io._io_utils import _read_metadata
from ..preprocessing.model_inputs import META_KEY_MODEL_INPUT
from ..preprocessing.preprocessing import log_odds_ratios
from ._heterogeneity_utils import (
    cochran_q,
    higgins_thompson_interval,
    hksj_adjustment,
    shrink_group_effects,
)
from ._results import GROUP_EFFECTS_SCHEMA, Heterogeneity, MetaAnalysisResult, PooledEffect

logger = logging.getLogger(__name__)


def detect_model_input(data: pa.Table) -> str:
    """Model-input name from table metadata, else inferred from its columns."""
    name = _read_metadata(data, META_KEY_MODEL_INPUT)
    if name is not None:
        return name
    columns = set(data.column_names)
    if {"a", "b", "c", "d"} <= columns:
        return "aggregate"
    if {"group", "treatment", "outcome"} <= columns:
        extra = columns - {"group", "treatment", "outcome", "is_test"}
        return "coefficient" if extra else "individual"
    raise ValueError(
        "Cannot tell the model input of a table with columns "
        f"{sorted(columns)}; build it with a ModelInput strategy."
    )


class MetaAnalysisAdapter(ABC):
    """
    Black-box engine that fits one outcome under one pooling mode.

    Engines receive every sampler/estimator setting through the config and
    must not assume anything about how chains are scheduled.
    """

    name: str = ""
    supported_inputs: tuple[str, ...] = ()

    def supports(self, model_input_name: str) -> bool:
        return model_input_name in self.supported_inputs

    @abstractmethod
    def fit(
        self,
        data: pa.Table,
        pooling: str,
        config: MetaAnalysisConfig,
        outcome: str,
        verbosity: int = 0,
    ) -> MetaAnalysisResult:
        """
        Fits the model and returns its summaries.

        Raises:
            ValueError: If `pooling` is unknown or the input is unsupported.
            AdapterError: If the engine fails.
        """

    def _check_input(self, data: pa.Table, pooling: str) -> str:
        if not isinstance(data, pa.Table):
            raise TypeError("Input 'data' must be a PyArrow Table.")
        validate_pooling(pooling)
        kind = detect_model_input(data)
        if not self.supports(kind):
            raise ValueError(
                f"{type(self).__name__} does not support the '{kind}' model input. "
                f"Supported inputs: {list(self.supported_inputs)}"
            )
        return kind

    def __repr__(self):
        return f"{type(self).__name__}()"


def _group_effects_table(groups, mean, sd, lower, upper, pooling_factor) -> pa.Table:
    return pa.table(
        {
            "group": pa.array(list(groups), type=pa.string()),
            "mean": pa.array(mean, type=pa.float64()),
            "sd": pa.array(sd, type=pa.float64()),
            "lower": pa.array(lower, type=pa.float64()),
            "upper": pa.array(upper, type=pa.float64()),
            "pooling_factor": pa.array(pooling_factor, type=pa.float64()),
        },
        schema=GROUP_EFFECTS_SCHEMA,
    )


class InverseVarianceAdapter(MetaAnalysisAdapter):
    """
    Analytical engine on per-trial log odds ratios using statsmodels'
    ``combine_effects``.

    - none: each trial's own log odds ratio with a Wald interval.
    - full: fixed-effect (common) estimate, tau = 0.
    - partial: random-effects estimate with the configured tau² estimator
      ('dl' DerSimonian-Laird, 'pm' Paule-Mandel) and empirical-Bayes
      shrinkage of the per-trial effects; optional HKSJ interval.
    """

    name = "inverse_variance"
    supported_inputs = ("aggregate",)

    def fit(self, data, pooling, config, outcome, verbosity=0):
        self._check_input(data, pooling)
        if combine_effects is None:
            raise ImportError(
                "statsmodels is required for InverseVarianceAdapter. "
                "Please install it (`pip install statsmodels`)."
            )

        lor = log_odds_ratios(data, correction=config.continuity_correction).to_pandas()
        groups = lor["group"].tolist()
        usable = np.isfinite(lor["log_or"].to_numpy()) & np.isfinite(lor["variance"].to_numpy())
        flagged = [g for g, ok in zip(groups, usable, strict=True) if not ok]
        if flagged and verbosity <= 0:
            warnings.warn(
                f"Outcome '{outcome}': excluding trials {flagged} without a finite log odds ratio.",
                UserWarning,
                stacklevel=2,
            )

        y = lor.loc[usable, "log_or"].to_numpy(dtype=float)
        v = lor.loc[usable, "variance"].to_numpy(dtype=float)
        used_groups = [g for g, ok in zip(groups, usable, strict=True) if ok]
        k = y.shape[0]
        if k == 0:
            raise AdapterError(f"Outcome '{outcome}': no trial has both arms; nothing to pool.")

        z = norm.ppf(1 - config.alpha / 2)
        q, q_df, q_pvalue = cochran_q(y, v)
        i2_q, i2_q_lower, i2_q_upper = higgins_thompson_interval(q, k, config.alpha)
        diagnostics = {
            "q": q,
            "q_df": q_df,
            "q_pvalue": q_pvalue,
            "i2_q": i2_q,
            "i2_q_lower": i2_q_lower,
            "i2_q_upper": i2_q_upper,
            "tau_estimator": config.tau_estimator,
            "hksj": False,
        }

        try:
            if pooling == "none":
                theta, theta_var = y, v
                factor = np.zeros(k)
                pooled = PooledEffect()
                heterogeneity = Heterogeneity()
            else:
                mu, sd_mu, tau2 = self._pool(y, v, used_groups, pooling, config)
                lower, upper = mu - z * sd_mu, mu + z * sd_mu
                if pooling == "partial" and config.use_hksj and k >= 3:
                    se_hksj, t_crit = hksj_adjustment(y, v, mu, tau2, config.alpha)
                    sd_mu = se_hksj
                    lower, upper = mu - t_crit * se_hksj, mu + t_crit * se_hksj
                    diagnostics["hksj"] = True
                pooled = PooledEffect(mean=mu, sd=sd_mu, lower=lower, upper=upper)

                if pooling == "full":
                    theta, theta_var = np.full(k, mu), np.full(k, sd_mu**2)
                    factor = np.ones(k)
                    heterogeneity = Heterogeneity(tau=0.0, i2=0.0, i2_lower=0.0, i2_upper=0.0)
                else:
                    theta, theta_var, factor = shrink_group_effects(y, v, mu, sd_mu, tau2)
                    heterogeneity = Heterogeneity(
                        tau=float(np.sqrt(tau2)),
                        i2=i2_q,
                        i2_lower=i2_q_lower,
                        i2_upper=i2_q_upper,
                    )
                diagnostics["tau2"] = tau2
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
            raise AdapterError(f"Outcome '{outcome}': inverse-variance pooling failed: {e}") from e

        # Flagged trials keep their row with NaN summaries
        n = len(groups)
        mean = np.full(n, np.nan)
        sd = np.full(n, np.nan)
        pf = np.full(n, np.nan)
        mean[usable] = theta
        sd[usable] = np.sqrt(theta_var)
        pf[usable] = factor

        if verbosity <= -1:
            logger.info(
                f"Outcome '{outcome}' ({pooling} pooling): {k} trials, "
                f"pooled logOR {pooled.mean:.3f}, I² {heterogeneity.i2:.3f}"
            )

        return MetaAnalysisResult(
            outcome=outcome,
            pooling=pooling,
            group_effects=_group_effects_table(groups, mean, sd, mean - z * sd, mean + z * sd, pf),
            pooled=pooled,
            heterogeneity=heterogeneity,
            n_groups=k,
            converged=True,
            adapter=self.name,
            model_input="aggregate",
            flagged_groups=flagged,
            diagnostics=diagnostics,
        )

    @staticmethod
    def _pool(y, v, groups, pooling, config) -> tuple[float, float, float]:
        """Returns (mean, sd, tau²) for full or partial pooling."""
        if y.shape[0] == 1:
            return float(y[0]), float(np.sqrt(v[0])), 0.0
        res = combine_effects(y, v, method_re=config.tau_estimator, row_names=list(groups))
        if pooling == "full":
            return float(res.mean_effect_fe), float(res.sd_eff_w_fe), 0.0
        return float(res.mean_effect_re), float(res.sd_eff_w_re), float(max(res.tau2, 0.0))
