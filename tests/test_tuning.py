"""
Tests for the permutation tuning loop.
"""

import numpy as np
import pandas as pd
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tehtuner import (
    ConfigurationError,
    EstimatorFitError,
    make_example,
    permute_null,
    tune_theta,
)
from tehtuner import tuning
from tehtuner.tuning import null_quantile, permutation_pvalue
from tehtuner.validation import marginal_effect


def generate_trial(n=120, seed=42):
    data = make_example(n=n, random_state=seed)
    return data, marginal_effect(data)


def failing_fit_step1(fail_on, exc=None):
    """Wrap fit_step1 so that the given (1-based) calls fail."""
    real = tuning.fit_step1
    calls = {"n": 0}

    def fake(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] in fail_on:
            raise exc or EstimatorFitError("Step 1", "lasso", ValueError("boom"))
        return real(*args, **kwargs)

    return fake


class TestPermuteNull:
    """The null resampling scheme."""

    def test_preserves_arm_sizes(self):
        data, zbar = generate_trial()
        permuted = permute_null(data, "Y", "Trt", zbar, np.random.default_rng(0))

        assert permuted["Trt"].sum() == data["Trt"].sum()
        assert len(permuted) == len(data)

    def test_null_residual_unchanged(self):
        """Y - zbar * Trt is the same for every subject before and after."""
        data, zbar = generate_trial()
        permuted = permute_null(data, "Y", "Trt", zbar, np.random.default_rng(1))

        np.testing.assert_allclose(
            permuted["Y"] - zbar * permuted["Trt"],
            data["Y"] - zbar * data["Trt"],
        )

    def test_does_not_modify_data(self):
        data, zbar = generate_trial()
        before = data.copy()
        permute_null(data, "Y", "Trt", zbar, np.random.default_rng(2))

        pd.testing.assert_frame_equal(data, before)

    def test_covariates_untouched(self):
        data, zbar = generate_trial()
        permuted = permute_null(data, "Y", "Trt", zbar, np.random.default_rng(3))

        pd.testing.assert_frame_equal(
            permuted.drop(columns=["Y", "Trt"]), data.drop(columns=["Y", "Trt"])
        )


class TestQuantileAndPvalue:
    """Reduction of the null distribution."""

    def test_alpha0_boundaries(self):
        grid = np.arange(1.0, 11.0)

        assert null_quantile(grid, 1e-12) == pytest.approx(10.0)
        assert null_quantile(grid, 1 - 1e-12) == pytest.approx(1.0)

    def test_linear_interpolation(self):
        grid = np.array([0.0, 1.0, 2.0, 3.0, 4.0])

        assert null_quantile(grid, 0.2) == pytest.approx(3.2)

    def test_missing_values_ignored(self):
        grid = np.array([1.0, np.nan, 2.0, 3.0])

        assert null_quantile(grid, 0.5) == pytest.approx(2.0)
        assert permutation_pvalue(grid, 1.5) == pytest.approx(2 / 3)

    def test_pvalue_strictly_greater(self):
        assert permutation_pvalue([1.0, 2.0, 3.0], 2.0) == pytest.approx(1 / 3)

    def test_pvalue_order_invariant(self):
        rng = np.random.default_rng(0)
        grid = rng.exponential(size=50)

        p = permutation_pvalue(grid, 0.7)
        for _ in range(5):
            assert permutation_pvalue(rng.permutation(grid), 0.7) == p


class TestTuneTheta:
    """The permutation loop."""

    def test_distribution_length(self):
        data, zbar = generate_trial()
        result = tune_theta(data, "Y", "Trt", zbar, "lasso", "rtree",
                            alpha0=0.2, p_reps=5, random_state=0)

        assert result.theta_grid.shape == (5,)
        assert result.n_dropped == 0
        assert result.theta == pytest.approx(null_quantile(result.theta_grid, 0.2))

    def test_reproducible(self):
        data, zbar = generate_trial()
        kwargs = dict(alpha0=0.2, p_reps=5, random_state=11)
        r1 = tune_theta(data, "Y", "Trt", zbar, "lasso", "lasso", **kwargs)
        r2 = tune_theta(data, "Y", "Trt", zbar, "lasso", "lasso", **kwargs)

        np.testing.assert_array_equal(r1.theta_grid, r2.theta_grid)

    def test_parallel_matches_sequential(self):
        """Same seed: parallel and sequential give the same multiset."""
        data, zbar = generate_trial()
        kwargs = dict(alpha0=0.2, p_reps=6, random_state=7)
        seq = tune_theta(data, "Y", "Trt", zbar, "lasso", "lasso", **kwargs)
        par = tune_theta(data, "Y", "Trt", zbar, "lasso", "lasso",
                         parallel=True, n_workers=2, **kwargs)

        np.testing.assert_allclose(np.sort(par.theta_grid), np.sort(seq.theta_grid))

    def test_failed_replicate_dropped(self, monkeypatch, caplog):
        """Both attempts of the first replicate fail: one NaN, one drop."""
        monkeypatch.setattr(tuning, "fit_step1", failing_fit_step1({1, 2}))
        data, zbar = generate_trial()

        result = tune_theta(data, "Y", "Trt", zbar, "lasso", "rtree",
                            alpha0=0.5, p_reps=4, random_state=0)

        assert result.n_dropped == 1
        assert np.isnan(result.theta_grid[0])
        assert np.sum(~np.isnan(result.theta_grid)) == 3
        assert "dropped" in caplog.text

    def test_failed_attempt_retried(self, monkeypatch):
        monkeypatch.setattr(tuning, "fit_step1", failing_fit_step1({1}))
        data, zbar = generate_trial()

        result = tune_theta(data, "Y", "Trt", zbar, "lasso", "rtree",
                            alpha0=0.5, p_reps=3, random_state=0)

        assert result.n_dropped == 0
        assert not np.any(np.isnan(result.theta_grid))

    def test_all_replicates_failed(self, monkeypatch):
        monkeypatch.setattr(tuning, "fit_step1", failing_fit_step1(set(range(1, 100))))
        data, zbar = generate_trial()

        with pytest.raises(EstimatorFitError):
            tune_theta(data, "Y", "Trt", zbar, "lasso", "rtree",
                       alpha0=0.5, p_reps=3, random_state=0)

    def test_configuration_error_aborts(self, monkeypatch):
        """Configuration errors are not absorbed by a replicate."""
        monkeypatch.setattr(
            tuning, "fit_step1",
            failing_fit_step1({1}, exc=ConfigurationError("bad option")),
        )
        data, zbar = generate_trial()

        with pytest.raises(ConfigurationError):
            tune_theta(data, "Y", "Trt", zbar, "lasso", "rtree",
                       alpha0=0.5, p_reps=3, random_state=0)

    def test_few_replicates_warns(self):
        data, zbar = generate_trial()
        with pytest.warns(UserWarning, match="p_reps"):
            tune_theta(data, "Y", "Trt", zbar, "lasso", "rtree",
                       alpha0=0.05, p_reps=3, random_state=0)


class TestSeedSequence:
    """Seeds accepted by the replicate seed sequence."""

    def test_int_is_reproducible(self):
        a = tuning.seed_sequence(5).spawn(2)[1]
        b = tuning.seed_sequence(5).spawn(2)[1]

        assert a.generate_state(1)[0] == b.generate_state(1)[0]

    def test_seed_sequence_passed_through(self):
        seq = np.random.SeedSequence(3)

        assert tuning.seed_sequence(seq) is seq

    def test_generator_draws_a_seed(self):
        rng = np.random.default_rng(0)

        assert isinstance(tuning.seed_sequence(rng), np.random.SeedSequence)

    @pytest.mark.parametrize("random_state", ["abc", -1, 2.5])
    def test_invalid_seed(self, random_state):
        with pytest.raises(ConfigurationError, match="random_state"):
            tuning.seed_sequence(random_state)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
