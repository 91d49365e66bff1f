"""
Step 1 models: estimate each subject's conditional average treatment effect.

Every Step 1 model takes the full data frame and returns a CATE vector
z of shape (n_samples,), ordered like the rows of the data. The models are
scikit-learn estimators used as black boxes:

- lasso:        one lasso on (X, T, X*T); z = f(x, 1) - f(x, 0)
- mars:         per arm, a piecewise-linear additive spline with lasso
                knot selection; z = mu1(x) - mu0(x)
- randomforest: per arm, a random forest; each subject's own-arm prediction
                is out-of-bag (the original Virtual Twins construction)
- superlearner: per arm, a stacked ensemble of lasso, random forest and
                gradient boosting; z = mu1(x) - mu0(x)
"""

import inspect
import logging

import numpy as np
import pandas as pd
from sklearn.ensemble import (
    GradientBoostingRegressor,
    RandomForestRegressor,
    StackingRegressor,
)
from sklearn.linear_model import LassoCV, LinearRegression
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import SplineTransformer, StandardScaler

from .exceptions import ConfigurationError, EstimatorFitError
from .validation import covariate_matrix, validate_step1

logger = logging.getLogger(__name__)


def sklearn_seed(random_state):
    """Turn a numpy Generator into an integer seed scikit-learn accepts."""
    if isinstance(random_state, np.random.Generator):
        return int(random_state.integers(0, 2**31 - 1))
    return random_state


def _split_arms(data: pd.DataFrame, Y: str, Trt: str):
    X, _ = covariate_matrix(data, Y, Trt)
    T = data[Trt].to_numpy(dtype=float)
    y = data[Y].to_numpy(dtype=float)
    treated = T == 1
    return X, T, y, treated


def _per_arm_effect(data, Y, Trt, make_model):
    """Fit make_model() on each arm and return mu1(x) - mu0(x) for everyone."""
    X, _, y, treated = _split_arms(data, Y, Trt)
    model_1 = make_model().fit(X[treated], y[treated])
    model_0 = make_model().fit(X[~treated], y[~treated])
    return model_1.predict(X) - model_0.predict(X)


def vt1_lasso(data, Y="Y", Trt="Trt", cv=5, random_state=None):
    """
    Lasso with treatment interactions.

    Fits ``Y ~ X + T + X:T`` on standardized columns with the penalty
    chosen by cross-validation, then predicts every subject under both
    treatment values.
    """
    X, T, y, _ = _split_arms(data, Y, Trt)

    def design(t):
        return np.column_stack([X, t, X * t[:, None]])

    model = make_pipeline(
        StandardScaler(),
        LassoCV(cv=cv, max_iter=10000, random_state=sklearn_seed(random_state)),
    )
    model.fit(design(T), y)

    ones = np.ones(len(y))
    return model.predict(design(ones)) - model.predict(design(1 - ones))


def vt1_mars(data, Y="Y", Trt="Trt", n_knots=5, cv=5, random_state=None):
    """
    Additive piecewise-linear regression splines, one model per arm.

    Degree-one B-splines span the same hinge basis as an additive MARS
    model; the lasso then selects which knots carry an effect.
    """
    seed = sklearn_seed(random_state)

    def make_model():
        return make_pipeline(
            SplineTransformer(degree=1, n_knots=n_knots, extrapolation="linear"),
            LassoCV(cv=cv, max_iter=10000, random_state=seed),
        )

    return _per_arm_effect(data, Y, Trt, make_model)


def vt1_randomforest(
    data,
    Y="Y",
    Trt="Trt",
    n_estimators=500,
    min_samples_leaf=5,
    max_features=1.0 / 3,
    n_jobs=None,
    random_state=None,
):
    """
    Random forest Virtual Twins.

    A forest is grown in each arm. A subject's prediction from the forest of
    its own arm is its out-of-bag prediction; the prediction from the other
    arm's forest is the usual ensemble prediction.
    """
    X, _, y, treated = _split_arms(data, Y, Trt)
    seed = sklearn_seed(random_state)
    rng = np.random.RandomState(seed)

    forests = {}
    for arm, mask in ((1, treated), (0, ~treated)):
        forest = RandomForestRegressor(
            n_estimators=n_estimators,
            min_samples_leaf=min_samples_leaf,
            max_features=max_features,
            oob_score=True,
            n_jobs=n_jobs,
            random_state=rng.randint(0, 2**31 - 1),
        )
        forest.fit(X[mask], y[mask])
        forests[arm] = forest

    mu1 = forests[1].predict(X)
    mu0 = forests[0].predict(X)
    mu1[treated] = forests[1].oob_prediction_
    mu0[~treated] = forests[0].oob_prediction_
    return mu1 - mu0


def vt1_superlearner(
    data, Y="Y", Trt="Trt", cv=5, n_estimators=200, random_state=None
):
    """
    Stacked ensemble of lasso, random forest and gradient boosting per arm.

    The base learners are combined by non-negative least squares on their
    cross-validated predictions.
    """
    seed = sklearn_seed(random_state)

    def make_model():
        return StackingRegressor(
            estimators=[
                ("lasso", LassoCV(cv=cv, max_iter=10000, random_state=seed)),
                (
                    "rf",
                    RandomForestRegressor(
                        n_estimators=n_estimators,
                        min_samples_leaf=5,
                        random_state=seed,
                    ),
                ),
                (
                    "gbm",
                    GradientBoostingRegressor(
                        n_estimators=100,
                        max_depth=3,
                        learning_rate=0.1,
                        random_state=seed,
                    ),
                ),
            ],
            final_estimator=LinearRegression(positive=True),
            cv=cv,
        )

    return _per_arm_effect(data, Y, Trt, make_model)


_STEP1 = {
    "lasso": vt1_lasso,
    "mars": vt1_mars,
    "randomforest": vt1_randomforest,
    "superlearner": vt1_superlearner,
}


def get_vt1(step1: str):
    """Return the Step 1 fitting function for a model name."""
    validate_step1(step1)
    return _STEP1[step1]


def validate_step1_options(step1: str, options: dict) -> None:
    """Reject options the chosen Step 1 model does not take."""
    params = inspect.signature(get_vt1(step1)).parameters
    accepted = [name for name in params if name not in ("data", "Y", "Trt")]
    unknown = sorted(set(options) - set(accepted))
    if unknown:
        raise ConfigurationError(
            f"Unknown options for step1 = {step1!r}: {unknown}. "
            f"Accepted: {accepted}"
        )


def fit_step1(step1: str, data: pd.DataFrame, Y: str = "Y", Trt: str = "Trt", **options):
    """
    Estimate the CATE of every subject with the named Step 1 model.

    Parameters
    ----------
    step1 : {"lasso", "mars", "randomforest", "superlearner"}
        Step 1 model.
    data : DataFrame
        Response, treatment indicator and covariates. Not modified.
    Y, Trt : str
        Names of the response and treatment columns.
    **options
        Passed to the model, e.g. ``random_state`` or ``n_estimators``.

    Returns
    -------
    z : ndarray of shape (n_samples,)
        Estimated conditional average treatment effects.

    Raises
    ------
    ConfigurationError
        Unknown model name or option.
    EstimatorFitError
        The underlying estimator failed.
    """
    vt1 = get_vt1(step1)
    validate_step1_options(step1, options)
    try:
        z = vt1(data, Y=Y, Trt=Trt, **options)
    except ConfigurationError:
        raise
    except Exception as exc:
        raise EstimatorFitError("Step 1", step1, exc) from exc

    z = np.asarray(z, dtype=float)
    if not np.all(np.isfinite(z)):
        raise EstimatorFitError(
            "Step 1", step1, ValueError("non-finite CATE estimates")
        )
    logger.debug("Step 1 %s: mean CATE %.4f, sd %.4f", step1, z.mean(), z.std())
    return z
