"""
Step 2 models: interpretable models of the Step 1 CATE estimates.

Each Step 2 model is indexed by a complexity parameter theta; larger theta
gives a simpler model. Besides fitting at a given theta, every model can
report the minimal null penalty parameter (MNPP): the smallest theta at
which the fitted model has no covariate effects.

=========  ==================================  =============================
step2      model of                            theta
=========  ==================================  =============================
lasso      z ~ X (standardized X)              lasso penalty ``alpha``
rtree      z ~ X, regression tree              cp: pruning penalty / root MSE
classtree  1{z > threshold} ~ X, Gini tree     cp: pruning penalty / root Gini
ctree      z ~ X, conditional inference tree   -log(adjusted p-value)
=========  ==================================  =============================

The tree complexity parameter follows rpart's ``cp``: it is scale free, so
null distributions built from different permutations are comparable.
The ctree parameter is the Bonferroni-adjusted p-value on a -log scale;
``ctree.mincriterion_from_score`` converts it to party's ``mincriterion``.
"""

import logging

import numpy as np
import pandas as pd
from sklearn.linear_model import Lasso
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor, export_text

from .ctree import DEFAULT_MIN_SCORE, ConditionalInferenceTree
from .exceptions import ConfigurationError, EstimatorFitError
from .validation import (
    covariate_frame,
    covariate_levels,
    covariate_matrix,
    validate_step2,
    validate_threshold,
)

logger = logging.getLogger(__name__)

# rpart defaults
MINSPLIT = 20
MINBUCKET = 7


class Step2Fit:
    """
    A fitted Step 2 model.

    Attributes
    ----------
    step2 : str
        Step 2 model name.
    model : estimator
        The fitted scikit-learn pipeline, tree, or ConditionalInferenceTree.
    theta : float
        Complexity parameter the model was fitted at.
    feature_names : list of str
    n_effects : int
        Number of covariate effects: non-zero lasso coefficients or tree
        splits.
    threshold : float or None
        Threshold of the 'classtree' label.
    levels : dict
        Levels of each non-numeric covariate in the fitted data; new data
        is coded against them.
    """

    def __init__(self, step2, model, theta, feature_names, n_effects, Y, Trt,
                 threshold=None, levels=None):
        self.step2 = step2
        self.model = model
        self.theta = theta
        self.feature_names = feature_names
        self.n_effects = n_effects
        self.threshold = threshold
        self.levels = levels or {}
        self._Y = Y
        self._Trt = Trt

    @property
    def has_effects(self) -> bool:
        return self.n_effects > 0

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        """
        Predict on new data with the same covariate columns.

        Returns the predicted CATE, or for 'classtree' the probability that
        the CATE exceeds the threshold.

        Raises
        ------
        ConfigurationError
            If a covariate is missing or holds a level the model never saw.
        """
        covariates = covariate_frame(data, self._Y, self._Trt, levels=self.levels)
        missing = [c for c in self.feature_names if c not in covariates.columns]
        if missing:
            raise ConfigurationError(f"Covariate columns missing from data: {missing}")
        X = covariates[self.feature_names].to_numpy(dtype=float)
        if self.step2 == "classtree":
            proba = self.model.predict_proba(X)
            classes = list(self.model.classes_)
            if 1 not in classes:
                return np.zeros(len(X))
            return proba[:, classes.index(1)]
        return self.model.predict(X)

    def coefficients(self) -> pd.Series:
        """Lasso coefficients on the original covariate scale."""
        if self.step2 != "lasso":
            raise AttributeError("coefficients are only available for step2 = 'lasso'")
        scaler, lasso = self.model[0], self.model[-1]
        beta = lasso.coef_ / scaler.scale_
        intercept = lasso.intercept_ - np.sum(beta * scaler.mean_)
        return pd.Series(
            np.concatenate([[intercept], beta]),
            index=["(Intercept)"] + list(self.feature_names),
        )

    def describe(self, digits: int = 4) -> str:
        if self.step2 == "lasso":
            coef = self.coefficients()
            coef = coef[(coef != 0) | (coef.index == "(Intercept)")]
            width = max(len(name) for name in coef.index)
            return "\n".join(
                f"{name:<{width}}  {value:.{digits}g}" for name, value in coef.items()
            )
        if self.step2 == "ctree":
            return self.model.export_text(digits=digits)
        return export_text(self.model, feature_names=self.feature_names, decimals=digits)

    def __repr__(self):
        return (
            f"Step2Fit(step2={self.step2!r}, theta={self.theta:.4g}, "
            f"n_effects={self.n_effects})"
        )

    def __str__(self):
        return self.describe()


class Step2Model:
    """
    Common interface of the Step 2 models.

    Subclasses implement ``_target``, ``_fit``, ``_n_effects`` and ``_mnpp``
    on the numeric covariate matrix.
    """

    name = None

    def _prepare(self, z, data, Y, Trt, threshold):
        validate_threshold(self.name, threshold)
        z = np.asarray(z, dtype=float)
        if z.ndim != 1 or len(z) != len(data):
            raise ConfigurationError(
                f"z must have one value per row of data ({len(data)}), got shape {z.shape}"
            )
        levels = covariate_levels(data, Y, Trt)
        X, names = covariate_matrix(data, Y, Trt, levels=levels)
        return X, self._target(z, threshold), names, levels

    def _target(self, z, threshold):
        return z

    def fit(self, z, data, Y="Y", Trt="Trt", theta=0.0, threshold=None) -> Step2Fit:
        """Fit the Step 2 model at complexity ``theta``."""
        if theta is None or not np.isfinite(theta) or theta < 0:
            raise ConfigurationError(f"theta must be a non-negative number, got {theta!r}")
        X, target, names, levels = self._prepare(z, data, Y, Trt, threshold)
        try:
            model = self._fit(X, target, float(theta), names)
        except Exception as exc:
            raise EstimatorFitError("Step 2", self.name, exc) from exc
        return Step2Fit(
            self.name, model, float(theta), names, self._n_effects(model), Y, Trt,
            threshold=threshold, levels=levels,
        )

    def has_no_effects(self, z, data, Y="Y", Trt="Trt", theta=0.0, threshold=None) -> bool:
        """True if the model fitted at ``theta`` has no covariate effects."""
        return not self.fit(z, data, Y=Y, Trt=Trt, theta=theta, threshold=threshold).has_effects

    def mnpp(self, z, data, Y="Y", Trt="Trt", threshold=None) -> float:
        """Smallest theta at which the model has no covariate effects."""
        X, target, _, _ = self._prepare(z, data, Y, Trt, threshold)
        try:
            value = self._mnpp(X, target)
        except Exception as exc:
            raise EstimatorFitError("Step 2", self.name, exc) from exc
        logger.debug("Step 2 %s MNPP: %.4g", self.name, value)
        return float(max(value, 0.0))

    def _fit(self, X, target, theta, feature_names):
        raise NotImplementedError

    def _n_effects(self, model) -> int:
        raise NotImplementedError

    def _mnpp(self, X, target) -> float:
        raise NotImplementedError


class LassoStep2(Step2Model):
    """Lasso regression of z on standardized covariates."""

    name = "lasso"

    def _fit(self, X, z, theta, feature_names):
        model = make_pipeline(
            StandardScaler(),
            Lasso(alpha=theta, max_iter=100000, tol=1e-8),
        )
        return model.fit(X, z)

    def _n_effects(self, model):
        return int(np.count_nonzero(model[-1].coef_))

    def _mnpp(self, X, z):
        # first value of the descending lasso_path grid
        if X.shape[1] == 0:
            return 0.0
        Xs = StandardScaler().fit_transform(X)
        zc = z - z.mean()
        return float(np.max(np.abs(Xs.T @ zc)) / len(z))


class _PrunedTreeStep2(Step2Model):
    """Cost-complexity pruned CART tree with an rpart-style cp."""

    def _make_tree(self, ccp_alpha=0.0):
        raise NotImplementedError

    @staticmethod
    def _root_impurity(target) -> float:
        raise NotImplementedError

    def _fit(self, X, target, theta, feature_names):
        tree = self._make_tree(ccp_alpha=theta * self._root_impurity(target))
        return tree.fit(X, target)

    def _n_effects(self, model):
        return int(model.tree_.node_count - model.tree_.n_leaves)

    def _mnpp(self, X, target):
        root = self._root_impurity(target)
        if root <= 0:
            return 0.0
        path = self._make_tree().cost_complexity_pruning_path(X, target)
        # the last alpha on the path prunes the tree back to its root
        return float(path.ccp_alphas[-1] / root)


class RegressionTreeStep2(_PrunedTreeStep2):
    """Regression tree of z on the covariates."""

    name = "rtree"

    def _make_tree(self, ccp_alpha=0.0):
        return DecisionTreeRegressor(
            min_samples_split=MINSPLIT,
            min_samples_leaf=MINBUCKET,
            ccp_alpha=ccp_alpha,
            random_state=0,
        )

    @staticmethod
    def _root_impurity(target):
        return float(np.var(target))


class ClassificationTreeStep2(_PrunedTreeStep2):
    """Classification tree of 1{z > threshold} on the covariates."""

    name = "classtree"

    def _target(self, z, threshold):
        return (z > threshold).astype(int)

    def _make_tree(self, ccp_alpha=0.0):
        return DecisionTreeClassifier(
            criterion="gini",
            min_samples_split=MINSPLIT,
            min_samples_leaf=MINBUCKET,
            ccp_alpha=ccp_alpha,
            random_state=0,
        )

    @staticmethod
    def _root_impurity(target):
        p = float(np.mean(target))
        return 1.0 - p**2 - (1.0 - p) ** 2


class CTreeStep2(Step2Model):
    """Conditional inference tree of z on the covariates."""

    name = "ctree"

    @staticmethod
    def _make_tree(min_score=DEFAULT_MIN_SCORE):
        return ConditionalInferenceTree(
            min_score=min_score, minsplit=MINSPLIT, minbucket=MINBUCKET
        )

    def _fit(self, X, z, theta, feature_names):
        return self._make_tree(min_score=theta).fit(X, z, feature_names=feature_names)

    def _n_effects(self, model):
        return model.n_splits_

    def _mnpp(self, X, z):
        return self._make_tree().node_criterion(X, z)


_STEP2 = {
    "lasso": LassoStep2,
    "rtree": RegressionTreeStep2,
    "classtree": ClassificationTreeStep2,
    "ctree": CTreeStep2,
}


def get_vt2(step2: str) -> Step2Model:
    """Return the Step 2 model for a model name."""
    validate_step2(step2)
    return _STEP2[step2]()


def fit_step2(step2, z, data, Y="Y", Trt="Trt", theta=0.0, threshold=None) -> Step2Fit:
    return get_vt2(step2).fit(z, data, Y=Y, Trt=Trt, theta=theta, threshold=threshold)


def get_mnpp(z, data, step2, Y="Y", Trt="Trt", threshold=None) -> float:
    """
    Minimal null penalty parameter of the Step 2 model for a CATE vector.

    The MNPP is the infimum of the complexity parameters at which the
    Step 2 model fitted to (z, data) has no covariate effects. It is
    deterministic: no resampling or random tie-breaking is involved.

    When no covariate effect can be selected at any theta (constant z, a
    single class, or no admissible split) the MNPP is 0, the most
    permissive value.

    Parameters
    ----------
    z : array-like of shape (n_samples,)
        Step 1 CATE estimates.
    data : DataFrame
        Data the CATEs were estimated on.
    step2 : {"lasso", "rtree", "classtree", "ctree"}
    Y, Trt : str
        Response and treatment columns, excluded from the covariates.
    threshold : float, optional
        Required for 'classtree' only.

    Returns
    -------
    mnpp : float
    """
    return get_vt2(step2).mnpp(z, data, Y=Y, Trt=Trt, threshold=threshold)
