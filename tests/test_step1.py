"""
Tests for the Step 1 CATE models.
"""

import numpy as np
import pandas as pd
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tehtuner import ConfigurationError, EstimatorFitError, fit_step1, get_vt1, make_example


FAST_OPTIONS = {
    "lasso": {},
    "mars": {"n_knots": 4},
    "randomforest": {"n_estimators": 50},
    "superlearner": {"n_estimators": 20, "cv": 3},
}


class TestStep1Models:
    """Shape, purity and reproducibility of every Step 1 model."""

    @pytest.mark.parametrize("step1", sorted(FAST_OPTIONS))
    def test_returns_one_cate_per_subject(self, step1):
        """Every model returns a finite CATE for each row."""
        data = make_example(n=150, random_state=0)
        z = fit_step1(step1, data, random_state=0, **FAST_OPTIONS[step1])

        assert z.shape == (150,)
        assert np.all(np.isfinite(z))

    @pytest.mark.parametrize("step1", ["lasso", "randomforest"])
    def test_does_not_modify_data(self, step1):
        """The input frame is left untouched."""
        data = make_example(n=120, random_state=1)
        before = data.copy()

        fit_step1(step1, data, random_state=0, **FAST_OPTIONS[step1])

        pd.testing.assert_frame_equal(data, before)

    def test_randomforest_reproducible(self):
        """Same seed, same CATEs."""
        data = make_example(n=120, random_state=2)
        z1 = fit_step1("randomforest", data, random_state=5, n_estimators=30)
        z2 = fit_step1("randomforest", data, random_state=5, n_estimators=30)

        np.testing.assert_array_equal(z1, z2)

    def test_lasso_recovers_interaction(self):
        """Lasso CATEs track the covariate that modifies the effect."""
        data = make_example(n=400, heterogeneous=True, interaction=3.0, random_state=3)
        z = fit_step1("lasso", data)

        corr = np.corrcoef(z, data["X1"] > 0)[0, 1]
        assert corr > 0.5, f"CATE does not track X1: {corr}"

    def test_custom_column_names(self):
        """Response and treatment columns can be renamed."""
        data = make_example(n=100, random_state=4).rename(
            columns={"Y": "outcome", "Trt": "arm"}
        )
        z = fit_step1("lasso", data, Y="outcome", Trt="arm")

        assert len(z) == 100

    def test_categorical_covariate(self):
        """String covariates are expanded to indicators."""
        data = make_example(n=100, random_state=5)
        data["site"] = np.where(data["X3"] > 0, "north", "south")
        z = fit_step1("lasso", data)

        assert len(z) == 100


class TestStep1Errors:
    """Configuration and fitting errors."""

    def test_unknown_model(self):
        with pytest.raises(ConfigurationError):
            get_vt1("xgboost")

    def test_unknown_option(self):
        data = make_example(n=60, random_state=0)
        with pytest.raises(ConfigurationError, match="n_trees"):
            fit_step1("randomforest", data, n_trees=10)

    def test_estimator_failure_is_wrapped(self):
        """Errors from scikit-learn surface as EstimatorFitError."""
        data = make_example(n=40, random_state=0)
        with pytest.raises(EstimatorFitError) as info:
            fit_step1("lasso", data, cv=500)

        assert info.value.model == "lasso"
        assert info.value.stage == "Step 1"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
