import os
import sys

sys.path.insert(0, "..")

import numpy as np
import pandas as pd

from pymetapool import io as io
from pymetapool import visualisation as vis
from pymetapool.analysis import (
    PYMC_AVAILABLE,
    BayesianAdapter,
    ParquetCache,
    compare_pooling,
    fit_pooling_modes,
    heterogeneity_table,
    leave_one_trial_out,
    run_outcomes,
    summarise_outcomes,
    total_elpd,
)
from pymetapool.core import MetaAnalysisConfig
from pymetapool.preprocessing import ModelInputSpec, build_individual, select_usable_columns

# Simulated farmer records for six village trials
rng = np.random.default_rng(2024)
frames = []
for i, village in enumerate(["Bungoma", "Kakamega", "Kisii", "Migori", "Siaya", "Vihiga"]):
    n = rng.integers(80, 160)
    treated = rng.integers(0, 2, size=n)
    effect = rng.normal(0.6, 0.3)
    logit = -0.4 + effect * treated
    yield_up = rng.random(n) < 1 / (1 + np.exp(-logit))
    adopted = (rng.random(n) < 0.3 + 0.2 * treated).astype(float)
    adopted[rng.random(n) < 0.1] = np.nan
    frames.append(
        pd.DataFrame(
            {
                "village": village,
                "treated": treated,
                "yield_up": yield_up.astype(int),
                "adopted": adopted,
                "farm_size": rng.gamma(2.0, 1.2, size=n),
                "female_head": rng.integers(0, 2, size=n),
                "district": i // 2,
            }
        )
    )
df = pd.concat(frames, ignore_index=True)
print(f"Number of rows: {len(df)}")
print(df.head(5))

table = io.load_trial_data(
    df,
    group_col="village",
    treatment_col="treated",
    outcome_cols=["yield_up", "adopted"],
    covariate_cols=["farm_size", "female_head", "district"],
)
print(io.get_table_metadata(table))

# Covariates that are fully observed and vary within every village
print("Usable columns:", sorted(select_usable_columns(table, "village")))

config = MetaAnalysisConfig(num_iters=1000, num_chains=4, seed=1990)

# Inverse-variance meta-analysis of every outcome
runs = run_outcomes(table, config=config, verbosity=-1)
summary = summarise_outcomes(runs, outcome_labels={"yield_up": "Yield increased"})
print(vis.format_summary_table(summary, exponentiate=True).data)
io.export_results(summary, "summary.csv", format="csv")

# No, full and partial pooling side by side
spec = ModelInputSpec.from_table(table, "yield_up")
results = fit_pooling_modes(table, spec)
comparison = compare_pooling(results)
print(comparison.to_pandas())
print(heterogeneity_table(results).to_pandas())

# Bayesian hierarchical model, cached between runs
if PYMC_AVAILABLE:
    cache_dir = os.path.join("cache", "yield_up")
    bayes = fit_pooling_modes(
        table,
        spec,
        model_input="aggregate",
        adapter=BayesianAdapter(),
        config=config,
        cache=ParquetCache(cache_dir),
    )
    print(compare_pooling(bayes).to_pandas())
    for pooling, result in bayes.items():
        print(pooling, result.converged, result.diagnostics["r_hat_max"])

# Leave-one-village-out predictive check on held-out farmers
individual = build_individual(
    table, "village", "treated", "yield_up", test_fraction=0.3, seed=config.seed
)
cv = leave_one_trial_out(individual, config=config)
print(cv.to_pandas())
print(f"Total ELPD: {total_elpd(cv):.2f}")

if vis._MATPLOTLIB_AVAILABLE:
    ax = vis.plot_forest(results["partial"], exponentiate=True)
    ax.figure.savefig("forest_yield_up.png", bbox_inches="tight")
    ax = vis.plot_pooling_comparison(comparison)
    ax.figure.savefig("pooling_yield_up.png", bbox_inches="tight")
    ax = vis.plot_heterogeneity(summary)
    ax.figure.savefig("heterogeneity.png", bbox_inches="tight")
