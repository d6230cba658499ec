"""
Internal utility functions for heterogeneity statistics and random-effects
adjustments on per-trial log odds ratios.
"""

import numpy as np
from scipy.stats import chi2, norm
from scipy.stats import t as t_dist


def _validate_effect_inputs(effects: np.ndarray, variances: np.ndarray):
    """Validates inputs common to the heterogeneity functions."""
    if not isinstance(effects, np.ndarray) or not isinstance(variances, np.ndarray):
        raise TypeError("effects and variances must be NumPy arrays.")
    if effects.shape != variances.shape or effects.ndim != 1:
        raise ValueError("effects and variances must be 1-D arrays of the same length.")
    if not (np.isfinite(effects).all() and np.isfinite(variances).all()):
        raise ValueError("effects and variances must be finite.")
    if (variances <= 0).any():
        raise ValueError("variances must be positive.")


def cochran_q(effects: np.ndarray, variances: np.ndarray) -> tuple[float, int, float]:
    """
    Cochran's Q statistic around the fixed-effect mean.

    Returns:
        A tuple of (Q, degrees of freedom, p-value). Q and the p-value are NaN
        for fewer than two trials.
    """
    _validate_effect_inputs(effects, variances)
    k = effects.shape[0]
    if k < 2:
        return np.nan, max(k - 1, 0), np.nan
    w = 1.0 / variances
    fixed = np.sum(w * effects) / np.sum(w)
    q = float(np.sum(w * (effects - fixed) ** 2))
    return q, k - 1, float(chi2.sf(q, k - 1))


def _i2_from_h2(h2: float) -> float:
    if not h2 > 0:
        return 0.0
    return float(max(0.0, (h2 - 1.0) / h2))


def higgins_thompson_interval(q: float, k: int, alpha: float = 0.05) -> tuple[float, float, float]:
    """
    I² = max(0, (Q - df) / Q) with the Higgins-Thompson interval built on ln(H),
    H = sqrt(Q / df).

    Returns:
        (i2, lower, upper). All NaN for fewer than two trials; bounds NaN for
        exactly two trials, where the standard error of ln(H) is undefined.
    """
    if not 0 < alpha < 1:
        raise ValueError("alpha must be between 0 and 1 (exclusive).")
    if k < 2 or not np.isfinite(q):
        return np.nan, np.nan, np.nan
    df = k - 1
    i2 = _i2_from_h2(q / df)
    if k < 3:
        return i2, np.nan, np.nan
    if q <= 0:
        return 0.0, 0.0, 0.0

    if q > k:
        se_ln_h = 0.5 * (np.log(q) - np.log(df)) / (np.sqrt(2.0 * q) - np.sqrt(2.0 * k - 3.0))
    else:
        se_ln_h = np.sqrt(1.0 / (2.0 * (k - 2)) * (1.0 - 1.0 / (3.0 * (k - 2) ** 2)))

    ln_h = 0.5 * np.log(q / df)
    z = norm.ppf(1 - alpha / 2)
    lower = _i2_from_h2(np.exp(2.0 * (ln_h - z * se_ln_h)))
    upper = _i2_from_h2(np.exp(2.0 * (ln_h + z * se_ln_h)))
    return i2, lower, upper


def typical_within_variance(variances: np.ndarray) -> float:
    """
    Higgins-Thompson "typical" within-trial variance
    s² = (k - 1) Σw / ((Σw)² - Σw²), with w = 1 / v.
    """
    variances = np.asarray(variances, dtype=float)
    if variances.size == 0:
        return np.nan
    if variances.size == 1:
        return float(variances[0])
    w = 1.0 / variances
    return float((variances.size - 1) * w.sum() / (w.sum() ** 2 - np.sum(w**2)))


def hksj_adjustment(
    effects: np.ndarray,
    variances: np.ndarray,
    pooled: float,
    tau2: float,
    alpha: float = 0.05,
) -> tuple[float, float]:
    """
    Hartung-Knapp-Sidik-Jonkman standard error and t critical value.

    The variance correction factor is floored at 1 so the adjusted interval is
    never narrower than the unadjusted one.

    Returns:
        (se_hksj, t_crit) for the interval pooled ± t_crit * se_hksj.
    """
    _validate_effect_inputs(effects, variances)
    k = effects.shape[0]
    if k < 2:
        raise ValueError("The HKSJ adjustment requires at least two trials.")
    w = 1.0 / (variances + tau2)
    q_hksj = max(float(np.sum(w * (effects - pooled) ** 2) / (k - 1)), 1.0)
    se_hksj = np.sqrt(1.0 / np.sum(w)) * np.sqrt(q_hksj)
    return float(se_hksj), float(t_dist.ppf(1 - alpha / 2, df=k - 1))


def shrink_group_effects(
    effects: np.ndarray,
    variances: np.ndarray,
    pooled: float,
    pooled_sd: float,
    tau2: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Empirical-Bayes shrinkage of per-trial effects toward the pooled mean.

    With B = v / (v + tau²), theta = B * mu + (1 - B) * y and
    Var(theta) = (1 - B) * v + B² * Var(mu).

    Returns:
        (theta, variance, B) arrays.
    """
    _validate_effect_inputs(effects, variances)
    shrinkage = variances / (variances + tau2)
    theta = shrinkage * pooled + (1.0 - shrinkage) * effects
    variance = (1.0 - shrinkage) * variances + shrinkage**2 * pooled_sd**2
    return theta, variance, shrinkage
