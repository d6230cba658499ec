"""
Bayesian hierarchical engine (PyMC) for aggregate and individual trial data.
"""

import logging
import warnings
from typing import Any

import numpy as np
import pandas as pd

from ..core.exceptions import AdapterError, ConvergenceWarning
from ..preprocessing.preprocessing import aggregate, log_odds_ratios
from ._adapters import MetaAnalysisAdapter, _group_effects_table
from ._heterogeneity_utils import typical_within_variance
from ._results import Heterogeneity, MetaAnalysisResult, PooledEffect

logger = logging.getLogger(__name__)

# Attempt to import PyMC and ArviZ; the engine raises an informative error if missing.
try:
    import arviz as az
    import pymc as pm
    import pytensor.tensor as pt
except ImportError:
    az = None
    pm = None
    pt = None
    PYMC_AVAILABLE = False
else:
    PYMC_AVAILABLE = True


def _stack_draws(posterior, var_name: str) -> np.ndarray:
    """Draws of a variable with chains and draws flattened into the last axis."""
    return np.asarray(posterior[var_name].stack(sample=("chain", "draw")).values)


def _interval(draws: np.ndarray, alpha: float, axis: int = -1) -> tuple[np.ndarray, np.ndarray]:
    lower, upper = np.quantile(draws, [alpha / 2, 1 - alpha / 2], axis=axis)
    return lower, upper


class BayesianAdapter(MetaAnalysisAdapter):
    """
    Hierarchical logistic model fitted with NUTS.

    Every trial has its own control log-odds (``baseline``) and treatment log
    odds ratio (``theta``):

    - none: independent ``theta`` per trial.
    - full: one shared ``mu`` for all trials.
    - partial: ``theta = mu + tau * z`` (non-centred), ``tau`` half-normal.

    Aggregate input uses two binomial likelihoods per trial; individual and
    coefficient input use a Bernoulli likelihood, the latter with
    standardised covariate coefficients ``beta``.

    Args:
        **sample_kwargs: Extra keyword arguments for ``pymc.sample``.
    """

    name = "bayesian"
    supported_inputs = ("aggregate", "individual", "coefficient")

    def __init__(self, **sample_kwargs: Any):
        self.sample_kwargs = sample_kwargs

    def fit(self, data, pooling, config, outcome, verbosity=0):
        kind = self._check_input(data, pooling)
        if not PYMC_AVAILABLE:
            raise ImportError(
                "PyMC and ArviZ are required for BayesianAdapter. "
                "Please install them (`pip install pymetapool[bayes]`)."
            )

        #########################
        # 1. Prepare trial data #
        #########################
        if kind == "aggregate":
            counts = data
        else:
            counts = aggregate(data, verbosity=1)
        counts_df = counts.to_pandas()
        flagged = counts_df.loc[counts_df["empty_arm"], "group"].astype(str).tolist()
        used = counts_df.loc[~counts_df["empty_arm"]].reset_index(drop=True)
        groups = counts_df["group"].astype(str).tolist()
        used_groups = used["group"].astype(str).tolist()
        k = len(used_groups)
        if flagged and verbosity <= 0:
            warnings.warn(
                f"Outcome '{outcome}': excluding trials {flagged} with an empty arm.",
                UserWarning,
                stacklevel=2,
            )
        if k == 0:
            raise AdapterError(f"Outcome '{outcome}': no trial has both arms; nothing to fit.")

        within = log_odds_ratios(counts, correction=max(config.continuity_correction, 0.5))
        within_var = within.to_pandas().set_index("group").loc[used_groups, "variance"].to_numpy()
        s2 = typical_within_variance(within_var)

        ######################
        # 2. Build & sample  #
        ######################
        try:
            if kind == "aggregate":
                model = self._aggregate_model(used, pooling, config)
            else:
                model = self._individual_model(data, used_groups, pooling, config)
            with model:
                idata = pm.sample(
                    draws=config.num_iters,
                    tune=config.warmup,
                    chains=config.num_chains,
                    cores=config.cores or config.num_chains,
                    random_seed=config.seed,
                    nuts={
                        "target_accept": config.target_accept,
                        "max_treedepth": config.max_treedepth,
                    },
                    progressbar=verbosity <= -1,
                    return_inferencedata=True,
                    **self.sample_kwargs,
                )
        except Exception as e:
            raise AdapterError(f"Outcome '{outcome}': PyMC sampling failed: {e}") from e

        #############################
        # 3. Summarise the posterior #
        #############################
        posterior = idata.posterior
        alpha = config.alpha
        theta = _stack_draws(posterior, "theta")
        theta_lower, theta_upper = _interval(theta, alpha)

        if pooling == "none":
            pooled = PooledEffect()
            heterogeneity = Heterogeneity()
            factor = np.zeros(k)
        else:
            mu = _stack_draws(posterior, "mu")
            mu_lower, mu_upper = _interval(mu, alpha)
            pooled = PooledEffect(
                mean=float(mu.mean()),
                sd=float(mu.std(ddof=1)) if mu.size > 1 else 0.0,
                lower=float(mu_lower),
                upper=float(mu_upper),
            )
            if pooling == "full":
                heterogeneity = Heterogeneity(tau=0.0, i2=0.0, i2_lower=0.0, i2_upper=0.0)
                factor = np.ones(k)
            else:
                tau = _stack_draws(posterior, "tau")
                i2 = tau**2 / (tau**2 + s2)
                i2_lower, i2_upper = _interval(i2, alpha)
                heterogeneity = Heterogeneity(
                    tau=float(tau.mean()),
                    i2=float(i2.mean()),
                    i2_lower=float(i2_lower),
                    i2_upper=float(i2_upper),
                )
                tau2 = float(np.mean(tau**2))
                factor = within_var / (within_var + tau2)

        diagnostics = self._diagnostics(idata, config)
        diagnostics["within_variance"] = s2
        converged = bool(
            np.isfinite(diagnostics["r_hat_max"])
            and diagnostics["r_hat_max"] <= config.rhat_threshold
        )
        if (not converged or diagnostics["divergences"] > 0) and verbosity <= 0:
            warnings.warn(
                f"Outcome '{outcome}' ({pooling} pooling): max R-hat "
                f"{diagnostics['r_hat_max']:.3f} (threshold {config.rhat_threshold}), "
                f"{diagnostics['divergences']} divergent transitions.",
                ConvergenceWarning,
                stacklevel=2,
            )

        # Map fitted trials back onto the full group order
        position = {g: i for i, g in enumerate(used_groups)}
        n = len(groups)
        cols = {name: np.full(n, np.nan) for name in ("mean", "sd", "lower", "upper", "pf")}
        for i, g in enumerate(groups):
            j = position.get(g)
            if j is None:
                continue
            cols["mean"][i] = theta[j].mean()
            cols["sd"][i] = theta[j].std(ddof=1) if theta.shape[-1] > 1 else 0.0
            cols["lower"][i] = theta_lower[j]
            cols["upper"][i] = theta_upper[j]
            cols["pf"][i] = factor[j]

        if verbosity <= -1:
            logger.info(
                f"Outcome '{outcome}' ({pooling} pooling, {kind} input): {k} trials, "
                f"pooled logOR {pooled.mean:.3f}, max R-hat {diagnostics['r_hat_max']:.3f}"
            )

        return MetaAnalysisResult(
            outcome=outcome,
            pooling=pooling,
            group_effects=_group_effects_table(
                groups, cols["mean"], cols["sd"], cols["lower"], cols["upper"], cols["pf"]
            ),
            pooled=pooled,
            heterogeneity=heterogeneity,
            n_groups=k,
            converged=converged,
            adapter=self.name,
            model_input=kind,
            flagged_groups=flagged,
            diagnostics=diagnostics,
        )

    @staticmethod
    def _treatment_effect(pooling: str, k: int, config):
        """Declares ``theta`` (and ``mu``/``tau``) inside the active model."""
        if pooling == "none":
            return pm.Normal("theta", mu=0.0, sigma=config.prior_effect_sd, dims="group")
        mu = pm.Normal("mu", mu=0.0, sigma=config.prior_effect_sd)
        if pooling == "full":
            return pm.Deterministic("theta", mu * pt.ones(k), dims="group")
        tau = pm.HalfNormal("tau", sigma=config.prior_tau_sd)
        z = pm.Normal("z", mu=0.0, sigma=1.0, dims="group")
        return pm.Deterministic("theta", mu + tau * z, dims="group")

    def _aggregate_model(self, counts: pd.DataFrame, pooling: str, config):
        coords = {"group": counts["group"].astype(str).tolist()}
        with pm.Model(coords=coords) as model:
            baseline = pm.Normal("baseline", mu=0.0, sigma=config.prior_baseline_sd, dims="group")
            theta = self._treatment_effect(pooling, len(counts), config)
            pm.Binomial(
                "control_events",
                n=counts["n2"].to_numpy(),
                logit_p=baseline,
                observed=counts["c"].to_numpy(),
                dims="group",
            )
            pm.Binomial(
                "treated_events",
                n=counts["n1"].to_numpy(),
                logit_p=baseline + theta,
                observed=counts["a"].to_numpy(),
                dims="group",
            )
        return model

    def _individual_model(self, data, used_groups: list[str], pooling: str, config):
        df = data.to_pandas()
        df["group"] = df["group"].astype(str)
        df = df[df["group"].isin(used_groups)].reset_index(drop=True)
        covariates = [
            c for c in df.columns if c not in ("group", "treatment", "outcome", "is_test")
        ]

        group_idx = pd.Categorical(df["group"], categories=used_groups).codes
        treatment = df["treatment"].to_numpy(dtype=float)
        coords = {"group": used_groups, "obs_id": np.arange(len(df))}
        if covariates:
            x = df[covariates].to_numpy(dtype=float)
            x_sd = x.std(axis=0)
            x_sd[x_sd == 0] = 1.0
            x = (x - x.mean(axis=0)) / x_sd
            coords["covariate"] = covariates

        with pm.Model(coords=coords) as model:
            baseline = pm.Normal("baseline", mu=0.0, sigma=config.prior_baseline_sd, dims="group")
            theta = self._treatment_effect(pooling, len(used_groups), config)
            eta = baseline[group_idx] + theta[group_idx] * treatment
            if covariates:
                beta = pm.Normal("beta", mu=0.0, sigma=config.prior_coef_sd, dims="covariate")
                eta = eta + pm.math.dot(x, beta)
            pm.Bernoulli(
                "obs",
                logit_p=eta,
                observed=df["outcome"].to_numpy(dtype="int64"),
                dims="obs_id",
            )
        return model

    @staticmethod
    def _diagnostics(idata, config) -> dict[str, Any]:
        var_names = [v for v in ("mu", "tau", "theta", "baseline", "beta") if v in idata.posterior]
        rhat = az.rhat(idata, var_names=var_names)
        ess = az.ess(idata, var_names=var_names)
        r_hat_values = np.concatenate([np.ravel(rhat[v].values) for v in var_names])
        ess_values = np.concatenate([np.ravel(ess[v].values) for v in var_names])
        r_hat_values = r_hat_values[np.isfinite(r_hat_values)]
        ess_values = ess_values[np.isfinite(ess_values)]
        return {
            "r_hat_max": float(r_hat_values.max()) if r_hat_values.size else float("nan"),
            "ess_bulk_min": float(ess_values.min()) if ess_values.size else float("nan"),
            "divergences": int(idata.sample_stats["diverging"].sum().values),
            "num_iters": config.num_iters,
            "num_warmup": config.warmup,
            "num_chains": config.num_chains,
            "target_accept": config.target_accept,
            "max_treedepth": config.max_treedepth,
            "seed": config.seed,
        }
