import logging
import math

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pytest

from pymetapool.core import (
    DegenerateColumnError,
    EmptyArmError,
    EmptyArmWarning,
    MissingColumnError,
)
from pymetapool.io import get_table_metadata
from pymetapool.preprocessing import (
    aggregate,
    build_individual,
    check_column_usable,
    log_odds_ratios,
    profile_column,
    select_usable_columns,
)
from tests.trial_data import counts_frame, make_trial_frame


def _table(df):
    return pa.Table.from_pandas(df, preserve_index=False)


##########################
# Column profiling       #
##########################


class TestColumnFilter:
    def test_default_candidates(self, raw_table):
        assert select_usable_columns(raw_table, "trial") == {"treated", "yield_up", "farm_size"}

    def test_explicit_candidates(self, raw_table):
        retained = select_usable_columns(raw_table, "trial", ["farm_size", "site_code", "trial"])
        assert retained == {"farm_size"}

    def test_missingness_beats_variation(self, raw_table):
        # 'household' varies in every trial but has one missing value
        assert "household" not in select_usable_columns(raw_table, "trial", ["household"])

    def test_logs_exclusions(self, raw_table, caplog):
        with caplog.at_level(logging.INFO, logger="pymetapool.preprocessing.preprocessing"):
            select_usable_columns(raw_table, "trial", ["site_code"], verbosity=-1)
        assert "site_code" in caplog.text
        assert "constant within trial" in caplog.text

    def test_missing_columns(self, raw_table):
        with pytest.raises(MissingColumnError):
            select_usable_columns(raw_table, "village")
        with pytest.raises(MissingColumnError):
            select_usable_columns(raw_table, "trial", ["income"])
        with pytest.raises(TypeError):
            select_usable_columns(raw_table.to_pandas(), "trial")

    def test_profile(self, raw_table):
        profile = profile_column(raw_table, "site_code", "trial")
        assert profile.missing_fraction == 0.0
        assert profile.distinct_count_per_group == {"T1": 1, "T2": 1, "T3": 1}
        assert profile.constant_groups == ["T1", "T2", "T3"]
        assert not profile.is_usable

        profile = profile_column(raw_table, "household", "trial")
        assert profile.missing_fraction == pytest.approx(1 / 300)
        assert not profile.is_usable
        assert profile_column(raw_table, "farm_size", "trial").is_usable

    def test_check_column_usable_reasons(self, raw_table):
        with pytest.raises(DegenerateColumnError, match="missing"):
            check_column_usable(raw_table, "all_missing", "trial")
        with pytest.raises(DegenerateColumnError, match="constant"):
            check_column_usable(raw_table, "site_code", "trial")
        empty = raw_table.slice(0, 0)
        with pytest.raises(DegenerateColumnError, match="no rows"):
            check_column_usable(empty, "farm_size", "trial")

    def test_constant_in_one_trial_only(self):
        df = pd.DataFrame({"trial": ["A", "A", "B", "B"], "x": [1.0, 2.0, 3.0, 3.0]})
        assert select_usable_columns(_table(df), "trial") == set()


##########################
# Individual table       #
##########################


class TestBuildIndividual:
    def test_basic(self, raw_table):
        individual = build_individual(raw_table, "trial", "treated", "adopted", ["farm_size"])
        assert individual.column_names == ["group", "treatment", "outcome", "farm_size", "is_test"]
        assert individual.num_rows == 270  # 10 missing outcomes per trial dropped
        assert pa.types.is_string(individual.schema.field("group").type)
        assert individual.column("is_test").to_pylist() == [0] * 270

        metadata = get_table_metadata(individual)
        assert metadata["pymetapool.individual.outcome"] == "adopted"
        assert metadata["pymetapool.individual.group_order"] == ["T1", "T2", "T3"]
        assert metadata["pymetapool.individual.covariates"] == ["farm_size"]

    def test_all_test_rows(self, raw_table):
        individual = build_individual(raw_table, "trial", "treated", "yield_up", test_fraction=1.0)
        assert set(individual.column("is_test").to_pylist()) == {1}

    def test_is_test_reproducible_and_seed_dependent(self, raw_table):
        kwargs = dict(test_fraction=0.5, verbosity=1)
        first = build_individual(raw_table, "trial", "treated", "yield_up", seed=11, **kwargs)
        again = build_individual(raw_table, "trial", "treated", "yield_up", seed=11, **kwargs)
        other = build_individual(raw_table, "trial", "treated", "yield_up", seed=12, **kwargs)
        assert first.column("is_test").equals(again.column("is_test"))
        assert not first.column("is_test").equals(other.column("is_test"))
        share = np.mean(first.column("is_test").to_numpy())
        assert 0.35 < share < 0.65

    def test_is_test_stratified_by_trial(self):
        events = {"T1": (30, 20), "T2": (25, 15)}
        base = _table(make_trial_frame(events))
        extended = _table(make_trial_frame({**events, "T9": (10, 10)}))
        kwargs = dict(test_fraction=0.3, seed=5, verbosity=1)
        small = build_individual(base, "trial", "treated", "yield_up", **kwargs)
        large = build_individual(extended, "trial", "treated", "yield_up", **kwargs)
        # Adding a trial leaves the other trials' labels unchanged
        assert small.column("is_test").to_pylist() == large.column("is_test").to_pylist()[:200]

    def test_is_test_independent_of_group_order(self, raw_table):
        kwargs = dict(test_fraction=0.3, seed=1, verbosity=1)
        base = build_individual(raw_table, "trial", "treated", "yield_up", **kwargs)
        padded = build_individual(
            raw_table, "trial", "treated", "yield_up", group_order=["T0", "T1", "T2", "T3"], **kwargs
        )
        reordered = build_individual(
            raw_table, "trial", "treated", "yield_up", group_order=["T3", "T2", "T1"], **kwargs
        )
        assert base.column("is_test").equals(padded.column("is_test"))
        assert base.column("is_test").equals(reordered.column("is_test"))

    def test_is_test_drawn_over_rows_with_observed_outcome(self, raw_table):
        kwargs = dict(test_fraction=0.5, seed=3, verbosity=1)
        observed = raw_table.filter(pc.is_valid(raw_table["adopted"]))
        from_raw = build_individual(raw_table, "trial", "treated", "adopted", **kwargs)
        from_observed = build_individual(observed, "trial", "treated", "adopted", **kwargs)
        assert from_raw.column("is_test").equals(from_observed.column("is_test"))

    def test_rows_match_observed_outcomes_for_loaded_tables(self, raw_table):
        for outcome in ("yield_up", "adopted"):
            individual = build_individual(raw_table, "trial", "treated", outcome, verbosity=1)
            assert individual.num_rows == raw_table.num_rows - raw_table[outcome].null_count

    def test_group_order(self, raw_table):
        individual = build_individual(
            raw_table, "trial", "treated", "yield_up", group_order=["T3", "T1", "T2"]
        )
        assert get_table_metadata(individual)["pymetapool.individual.group_order"] == [
            "T3",
            "T1",
            "T2",
        ]
        with pytest.raises(ValueError, match="not in group_order"):
            build_individual(raw_table, "trial", "treated", "yield_up", group_order=["T1", "T2"])
        with pytest.raises(ValueError, match="duplicate"):
            build_individual(
                raw_table, "trial", "treated", "yield_up", group_order=["T1", "T1", "T2", "T3"]
            )

    def test_integer_trial_labels_become_strings(self):
        df = pd.DataFrame({"site": [7, 7, 8, 8], "t": [1, 0, 1, 0], "y": [1, 0, 0, 1]})
        individual = build_individual(_table(df), "site", "t", "y")
        assert individual.column("group").to_pylist() == ["7", "7", "8", "8"]

    def test_missing_treatment_dropped_outside_loader(self):
        df = pd.DataFrame({"trial": ["A"] * 4, "t": [1, None, 0, 1], "y": [1, 0, 0, 1]})
        with pytest.warns(UserWarning, match="missing treatment"):
            individual = build_individual(_table(df), "trial", "t", "y")
        assert individual.num_rows == 3

    def test_non_binary_treatment_coerced(self):
        df = pd.DataFrame({"trial": ["A"] * 4, "t": [2, 0, 0, 1], "y": [1, 0, 0, 1]})
        with pytest.warns(UserWarning, match="non-binary"):
            individual = build_individual(_table(df), "trial", "t", "y")
        assert individual.column("treatment").to_pylist() == [1, 0, 0, 1]

    def test_invalid_arguments(self, raw_table):
        with pytest.raises(MissingColumnError):
            build_individual(raw_table, "trial", "treated", "income")
        with pytest.raises(ValueError, match="test_fraction"):
            build_individual(raw_table, "trial", "treated", "yield_up", test_fraction=2)
        with pytest.raises(ValueError, match="clash"):
            build_individual(raw_table, "trial", "treated", "yield_up", covariates=["treated"])
        with pytest.raises(ValueError, match="distinct"):
            build_individual(raw_table, "trial", "yield_up", "yield_up")
        with pytest.raises(TypeError):
            build_individual(raw_table.to_pandas(), "trial", "treated", "yield_up")


##########################
# Aggregation            #
##########################


class TestAggregate:
    def test_counts(self, raw_table):
        counts = aggregate(build_individual(raw_table, "trial", "treated", "yield_up"))
        assert counts.to_pylist() == [
            {"group": "T1", "a": 30, "b": 20, "c": 20, "d": 30, "n1": 50, "n2": 50, "empty_arm": False},
            {"group": "T2", "a": 25, "b": 25, "c": 15, "d": 35, "n1": 50, "n2": 50, "empty_arm": False},
            {"group": "T3", "a": 35, "b": 15, "c": 30, "d": 20, "n1": 50, "n2": 50, "empty_arm": False},
        ]
        metadata = get_table_metadata(counts)
        assert metadata["pymetapool.aggregate.flagged_groups"] == []
        assert metadata["pymetapool.individual.outcome"] == "yield_up"

    def test_empty_control_arm(self):
        df = counts_frame([("K1", 30, 10, 0, 0), ("K2", 12, 8, 9, 11)])
        individual = build_individual(_table(df), "trial", "treated", "outcome")
        with pytest.warns(EmptyArmWarning, match="K1"):
            counts = aggregate(individual)
        row = counts.to_pylist()[0]
        assert row == {
            "group": "K1", "a": 30, "b": 10, "c": 0, "d": 0, "n1": 40, "n2": 0, "empty_arm": True
        }
        assert get_table_metadata(counts)["pymetapool.aggregate.flagged_groups"] == ["K1"]

        with pytest.raises(EmptyArmError) as excinfo:
            aggregate(individual, strict=True)
        assert excinfo.value.groups == ["K1"]

    def test_quiet_verbosity_suppresses_warning(self, recwarn):
        df = counts_frame([("K1", 3, 1, 0, 0)])
        aggregate(build_individual(_table(df), "trial", "treated", "outcome"), verbosity=1)
        assert not [w for w in recwarn if issubclass(w.category, EmptyArmWarning)]

    def test_group_order_with_absent_trial(self, raw_table):
        individual = build_individual(raw_table, "trial", "treated", "yield_up")
        with pytest.warns(EmptyArmWarning):
            counts = aggregate(individual, group_order=["T2", "T1", "T3", "T4"])
        assert counts.column("group").to_pylist() == ["T2", "T1", "T3", "T4"]
        assert counts.to_pylist()[-1]["n1"] == 0
        assert counts.column("empty_arm").to_pylist() == [False, False, False, True]

    def test_no_trials(self):
        empty = pa.table(
            {
                "group": pa.array([], type=pa.string()),
                "treatment": pa.array([], type=pa.int8()),
                "outcome": pa.array([], type=pa.int8()),
            }
        )
        counts = aggregate(empty)
        assert counts.num_rows == 0
        assert counts.column_names == ["group", "a", "b", "c", "d", "n1", "n2", "empty_arm"]

    def test_rejects_non_binary(self):
        table = pa.table({"group": ["A"], "treatment": [1], "outcome": [3]})
        with pytest.raises(ValueError, match="0/1"):
            aggregate(table)
        with pytest.raises(MissingColumnError):
            aggregate(table.select(["group", "treatment"]))


class TestLogOddsRatios:
    def test_values(self, raw_table):
        counts = aggregate(build_individual(raw_table, "trial", "treated", "yield_up"))
        lor = log_odds_ratios(counts).to_pandas().set_index("group")
        assert lor.loc["T1", "log_or"] == pytest.approx(math.log(2.25))
        assert lor.loc["T1", "variance"] == pytest.approx(1 / 30 + 1 / 20 + 1 / 20 + 1 / 30)
        assert lor.loc["T2", "log_or"] == pytest.approx(math.log(25 * 35 / (25 * 15)))
        assert not lor["corrected"].any()

    def test_zero_cell_correction(self):
        table = pa.table(
            {"group": ["Z"], "a": [0], "b": [10], "c": [5], "d": [5]}
        )
        row = log_odds_ratios(table).to_pylist()[0]
        assert row["corrected"]
        assert row["log_or"] == pytest.approx(math.log(0.5 * 5.5 / (10.5 * 5.5)))
        assert row["variance"] == pytest.approx(1 / 0.5 + 1 / 10.5 + 2 / 5.5)

        uncorrected = log_odds_ratios(table, correction=0.0).to_pylist()[0]
        assert not uncorrected["corrected"]
        assert uncorrected["log_or"] is None or math.isnan(uncorrected["log_or"])

    def test_mixed_zero_and_full_cells(self):
        table = pa.table(
            {"group": ["Z", "F"], "a": [0, 30], "b": [10, 20], "c": [5, 20], "d": [5, 30]}
        )
        rows = log_odds_ratios(table).to_pylist()
        assert [r["corrected"] for r in rows] == [True, False]
        assert rows[1]["log_or"] == pytest.approx(math.log(2.25))
        assert table.column("a").to_pylist() == [0, 30]

    def test_no_zero_cells_from_pandas(self):
        df = pd.DataFrame({"group": ["A", "B"], "a": [3, 4], "b": [5, 6], "c": [7, 8], "d": [9, 10]})
        lor = log_odds_ratios(_table(df)).to_pandas()
        assert not lor["corrected"].any()
        assert lor["log_or"].tolist() == pytest.approx(
            [math.log(3 * 9 / (5 * 7)), math.log(4 * 10 / (6 * 8))]
        )

    def test_empty_arm_is_nan(self):
        table = pa.table({"group": ["E"], "a": [30], "b": [10], "c": [0], "d": [0]})
        row = log_odds_ratios(table).to_pandas().iloc[0]
        assert row["empty_arm"]
        assert not row["corrected"]
        assert np.isnan(row["log_or"])
        assert np.isnan(row["variance"])

    def test_negative_correction(self):
        table = pa.table({"group": ["E"], "a": [1], "b": [1], "c": [1], "d": [1]})
        with pytest.raises(ValueError):
            log_odds_ratios(table, correction=-1.0)
