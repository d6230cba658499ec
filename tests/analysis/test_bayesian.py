import math

import numpy as np
import pyarrow as pa
import pytest

from pymetapool.analysis import PYMC_AVAILABLE, BayesianAdapter
from pymetapool.core import AdapterError, ConvergenceWarning, MetaAnalysisConfig
from pymetapool.preprocessing import (
    AggregateInput,
    CoefficientInput,
    IndividualInput,
    ModelInputSpec,
    aggregate,
    build_individual,
)
from tests.trial_data import counts_frame

if not PYMC_AVAILABLE:
    pytest.skip("PyMC and ArviZ are required for these tests", allow_module_level=True)


@pytest.fixture(scope="module")
def spec(raw_table):
    return ModelInputSpec.from_table(raw_table, "yield_up")


@pytest.fixture(scope="module")
def aggregate_input(raw_table, spec, fast_config):
    return AggregateInput().build(raw_table, spec, fast_config)


@pytest.fixture(scope="module")
def partial_result(aggregate_input, fast_config):
    return BayesianAdapter().fit(aggregate_input, "partial", fast_config, outcome="yield_up", verbosity=1)


class TestAggregateModel:
    def test_partial_summaries(self, partial_result):
        result = partial_result
        assert result.adapter == "bayesian"
        assert result.model_input == "aggregate"
        assert result.groups == ["T1", "T2", "T3"]
        assert result.n_groups == 3
        assert result.pooled.lower < result.pooled.mean < result.pooled.upper
        # Observed log odds ratios lie between 0.44 and 0.85
        assert 0.0 < result.pooled.mean < 1.5
        het = result.heterogeneity
        assert het.tau > 0
        assert 0.0 <= het.i2_lower <= het.i2 <= het.i2_upper <= 1.0
        factors = result.group_effects.column("pooling_factor").to_numpy()
        assert np.all((factors > 0) & (factors < 1))

    def test_diagnostics(self, partial_result, fast_config):
        diagnostics = partial_result.diagnostics
        assert diagnostics["num_iters"] == fast_config.num_iters
        assert diagnostics["num_chains"] == 2
        assert diagnostics["target_accept"] == fast_config.target_accept
        assert diagnostics["r_hat_max"] >= 0.99
        assert diagnostics["ess_bulk_min"] > 0
        assert diagnostics["divergences"] >= 0
        assert diagnostics["within_variance"] > 0

    def test_full_pooling_shares_one_effect(self, aggregate_input, fast_config):
        result = BayesianAdapter().fit(aggregate_input, "full", fast_config, outcome="yield_up", verbosity=1)
        means = result.group_effects.column("mean").to_numpy()
        np.testing.assert_allclose(means, result.pooled.mean)
        assert result.heterogeneity.tau == 0.0
        assert result.heterogeneity.i2 == 0.0

    def test_no_pooling_has_no_pooled_effect(self, aggregate_input, fast_config):
        result = BayesianAdapter().fit(aggregate_input, "none", fast_config, outcome="yield_up", verbosity=1)
        assert math.isnan(result.pooled.mean)
        assert math.isnan(result.heterogeneity.i2)
        assert result.group_effects.column("pooling_factor").to_pylist() == [0.0, 0.0, 0.0]

    def test_empty_arm_flagged(self, fast_config):
        df = counts_frame([("K1", 30, 10, 0, 0), ("K2", 12, 8, 9, 11), ("K3", 20, 20, 10, 30)])
        table = pa.Table.from_pandas(df, preserve_index=False)
        counts = aggregate(build_individual(table, "trial", "treated", "outcome"), verbosity=1)
        with pytest.warns(UserWarning, match="K1"):
            result = BayesianAdapter().fit(counts, "partial", fast_config, outcome="y")
        assert result.flagged_groups == ["K1"]
        assert result.n_groups == 2
        assert math.isnan(result.group_effects.column("mean").to_pylist()[0])


class TestIndividualModels:
    def test_individual_input(self, raw_table, spec, fast_config):
        data = IndividualInput().build(raw_table, spec, fast_config)
        result = BayesianAdapter().fit(data, "partial", fast_config, outcome="yield_up", verbosity=1)
        assert result.model_input == "individual"
        assert result.groups == ["T1", "T2", "T3"]
        assert np.isfinite(result.pooled.mean)

    def test_coefficient_input(self, raw_table, spec, fast_config):
        data = CoefficientInput().build(raw_table, spec, fast_config, verbosity=1)
        result = BayesianAdapter().fit(data, "partial", fast_config, outcome="yield_up", verbosity=1)
        assert result.model_input == "coefficient"
        assert np.isfinite(result.pooled.mean)


class TestConvergence:
    def test_single_chain_is_not_converged(self, aggregate_input):
        config = MetaAnalysisConfig(num_iters=100, num_warmup=100, num_chains=1, cores=1, seed=3)
        with pytest.warns(ConvergenceWarning):
            result = BayesianAdapter().fit(aggregate_input, "full", config, outcome="yield_up")
        assert result.converged is False
        assert math.isnan(result.diagnostics["r_hat_max"])

    def test_sampler_failure_is_wrapped(self, aggregate_input, fast_config):
        adapter = BayesianAdapter(not_a_sampler_option=True)
        with pytest.raises(AdapterError, match="PyMC sampling failed"):
            adapter.fit(aggregate_input, "partial", fast_config, outcome="yield_up", verbosity=1)
