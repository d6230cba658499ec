"""
Pytest configuration and shared fixtures for pymetapool tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest

# Add the project root to Python path so tests can import pymetapool without installation
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pymetapool.analysis import MetaAnalysisAdapter, MetaAnalysisResult  # noqa: E402
from pymetapool.analysis._adapters import _group_effects_table  # noqa: E402
from pymetapool.analysis._results import Heterogeneity, PooledEffect  # noqa: E402
from pymetapool.core import MetaAnalysisConfig  # noqa: E402
from tests.trial_data import make_trial_frame  # noqa: E402


@pytest.fixture(scope="module")
def trial_frame():
    return make_trial_frame()


@pytest.fixture(scope="module")
def raw_table(trial_frame):
    """Raw trial table loaded with recorded column roles."""
    from pymetapool.io import load_trial_data

    return load_trial_data(
        trial_frame,
        group_col="trial",
        treatment_col="treated",
        outcome_cols=["yield_up", "adopted"],
        covariate_cols=["farm_size", "household", "all_missing", "site_code"],
    )


@pytest.fixture(scope="module")
def fast_config():
    """Small sampler settings for quick engine runs."""
    return MetaAnalysisConfig(num_iters=200, num_warmup=200, num_chains=2, cores=1, seed=7)


class CountingAdapter(MetaAnalysisAdapter):
    """Engine stand-in that records calls and returns one row per trial."""

    name = "counting"
    supported_inputs = ("aggregate", "individual", "coefficient")

    def __init__(self, fail_on=None, converged=True, fail_with=RuntimeError):
        self.calls = []
        self.fail_on = set(fail_on or ())
        self.converged = converged
        self.fail_with = fail_with

    def fit(self, data, pooling, config, outcome, verbosity=0):
        kind = self._check_input(data, pooling)
        self.calls.append((outcome, pooling, kind))
        if outcome in self.fail_on:
            raise self.fail_with(f"boom on {outcome}")
        groups = sorted(set(data.column("group").to_pylist()))
        k = len(groups)
        effects = _group_effects_table(
            groups, np.zeros(k), np.ones(k), -np.ones(k), np.ones(k), np.full(k, 0.5)
        )
        return MetaAnalysisResult(
            outcome=outcome,
            pooling=pooling,
            group_effects=effects,
            pooled=PooledEffect(0.1, 0.2, -0.3, 0.5) if pooling != "none" else PooledEffect(),
            heterogeneity=Heterogeneity(0.1, 0.2, 0.0, 0.6),
            n_groups=k,
            converged=self.converged,
            adapter=self.name,
            model_input=kind,
        )


@pytest.fixture
def counting_adapter():
    return CountingAdapter()


@pytest.fixture
def counting_adapter_cls():
    return CountingAdapter
