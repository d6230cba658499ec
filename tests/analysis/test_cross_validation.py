import math

import numpy as np
import pytest
from scipy.stats import norm

from pymetapool.analysis import leave_one_trial_out, total_elpd
from pymetapool.analysis.cross_validation import CV_SCHEMA
from pymetapool.core import AdapterError, MissingColumnError
from pymetapool.preprocessing import build_individual


@pytest.fixture(scope="module")
def individual(raw_table):
    return build_individual(raw_table, "trial", "treated", "yield_up", test_fraction=0.5, seed=2)


@pytest.fixture(scope="module")
def cv_table(individual):
    return leave_one_trial_out(individual)


class TestLeaveOneTrialOut:
    def test_one_row_per_trial(self, cv_table):
        assert cv_table.schema.equals(CV_SCHEMA)
        rows = cv_table.to_pylist()
        assert [r["group"] for r in rows] == ["T1", "T2", "T3"]
        assert all(r["status"] == "ok" for r in rows)

    def test_training_excludes_held_out_and_test_rows(self, cv_table, individual):
        df = individual.to_pandas()
        for row in cv_table.to_pylist():
            others = df[(df["group"] != row["group"]) & (df["is_test"] == 0)]
            held = df[(df["group"] == row["group"]) & (df["is_test"] == 1)]
            assert row["n_train"] == len(others)
            assert row["n_test"] == len(held)

    def test_log_predictive_density(self, cv_table):
        for row in cv_table.to_pylist():
            assert row["predictive_sd"] >= math.sqrt(row["held_out_variance"])
            expected = norm.logpdf(
                row["held_out_effect"], loc=row["predicted_mean"], scale=row["predictive_sd"]
            )
            assert row["log_predictive_density"] == pytest.approx(expected)

    def test_total_elpd(self, cv_table):
        densities = cv_table.column("log_predictive_density").to_pylist()
        assert total_elpd(cv_table) == pytest.approx(np.sum(densities))

    def test_full_pooling(self, individual):
        table = leave_one_trial_out(individual, pooling="full")
        assert all(s == "ok" for s in table.column("status").to_pylist())

    def test_no_test_rows(self, raw_table):
        individual = build_individual(raw_table, "trial", "treated", "yield_up", test_fraction=0.0)
        table = leave_one_trial_out(individual)
        assert set(table.column("status").to_pylist()) == {"no_test_contrast"}
        assert table.column("log_predictive_density").null_count == 3
        assert math.isnan(total_elpd(table))

    def test_failed_fit_recorded(self, individual, counting_adapter_cls):
        adapter = counting_adapter_cls(fail_on=["yield_up"], fail_with=AdapterError)
        table = leave_one_trial_out(individual, adapter=adapter)
        assert set(table.column("status").to_pylist()) == {"failed"}
        assert len(adapter.calls) == 3

    def test_other_errors_propagate(self, individual, counting_adapter_cls):
        adapter = counting_adapter_cls(fail_on=["yield_up"])
        with pytest.raises(RuntimeError, match="boom"):
            leave_one_trial_out(individual, adapter=adapter)

    def test_invalid_arguments(self, individual):
        with pytest.raises(ValueError, match="pooled prediction"):
            leave_one_trial_out(individual, pooling="none")
        with pytest.raises(MissingColumnError):
            leave_one_trial_out(individual.select(["group", "treatment", "outcome"]))
