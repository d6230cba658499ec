import pytest

from pymetapool.core import (
    ENV_PREFIX,
    AdapterError,
    DegenerateColumnError,
    EmptyArmError,
    MetaAnalysisConfig,
    MissingColumnError,
    PyMetaPoolError,
    validate_pooling,
)


class TestMetaAnalysisConfig:
    def test_defaults(self):
        config = MetaAnalysisConfig()
        assert config.seed == 1990
        assert config.num_iters == 10000
        assert config.num_chains == 4
        assert config.target_accept == 0.95
        assert config.test_fraction == 0.1
        assert config.warmup == 5000
        assert config.alpha == pytest.approx(0.05)

    def test_explicit_warmup(self):
        assert MetaAnalysisConfig(num_iters=100, num_warmup=30).warmup == 30

    def test_frozen(self):
        config = MetaAnalysisConfig()
        with pytest.raises(AttributeError):
            config.num_iters = 5

    @pytest.mark.parametrize(
        "changes",
        [
            {"num_iters": 0},
            {"num_chains": -1},
            {"seed": -3},
            {"target_accept": 1.0},
            {"test_fraction": 1.5},
            {"ci_level": 0.0},
            {"rhat_threshold": 0.9},
            {"prior_tau_sd": 0.0},
            {"tau_estimator": "reml"},
            {"continuity_correction": -0.5},
            {"cores": 0},
        ],
    )
    def test_invalid_values_rejected(self, changes):
        with pytest.raises(ValueError):
            MetaAnalysisConfig(**changes)

    def test_replace_validates_again(self):
        config = MetaAnalysisConfig()
        assert config.replace(num_iters=50).num_iters == 50
        with pytest.raises(ValueError):
            config.replace(num_iters=0)

    def test_result_fields_exclude_scheduling(self):
        fields = MetaAnalysisConfig(cores=2, num_iters=100).result_fields()
        assert "cores" not in fields
        assert "test_fraction" not in fields
        assert fields["num_iters"] == 100
        assert fields["num_warmup"] == 50

    def test_from_mapping_parses_strings(self):
        config = MetaAnalysisConfig.from_mapping(
            {"num_iters": "500", "use_hksj": "yes", "seed": "none", "ci_level": "0.9"}
        )
        assert config.num_iters == 500
        assert config.use_hksj is True
        assert config.seed is None
        assert config.ci_level == pytest.approx(0.9)

    def test_from_mapping_rejects_unknown_and_bad_values(self):
        with pytest.raises(ValueError, match="Unknown configuration fields"):
            MetaAnalysisConfig.from_mapping({"iterations": 10})
        with pytest.raises(ValueError, match="Invalid value for 'use_hksj'"):
            MetaAnalysisConfig.from_mapping({"use_hksj": "maybe"})

    def test_from_env(self):
        environ = {
            f"{ENV_PREFIX}NUM_CHAINS": "2",
            f"{ENV_PREFIX}TAU_ESTIMATOR": "pm",
            "UNRELATED": "1",
        }
        base = MetaAnalysisConfig(num_iters=300)
        config = MetaAnalysisConfig.from_env(environ, base=base)
        assert config.num_chains == 2
        assert config.tau_estimator == "pm"
        assert config.num_iters == 300


def test_validate_pooling():
    for mode in ("none", "full", "partial"):
        assert validate_pooling(mode) == mode
    with pytest.raises(ValueError, match="Unsupported pooling"):
        validate_pooling("complete")


class TestExceptions:
    def test_hierarchy(self):
        for exc in (MissingColumnError(["x"]), DegenerateColumnError("x", "r"), EmptyArmError(["T1"])):
            assert isinstance(exc, PyMetaPoolError)
            assert isinstance(exc, ValueError)
        assert isinstance(AdapterError("x"), RuntimeError)

    def test_messages_carry_details(self):
        err = MissingColumnError({"b", "a"}, context="raw table")
        assert err.columns == ["a", "b"]
        assert "raw table" in str(err)
        err = EmptyArmError(["T2"])
        assert err.groups == ["T2"]
        assert "T2" in str(err)
        err = DegenerateColumnError("site", "constant within trial(s) ['T1']")
        assert err.column == "site"
        assert "constant" in str(err)
