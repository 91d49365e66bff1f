"""
Input validation and data helpers shared by the Step 1 and Step 2 models.
"""

import numbers

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, DegenerateInputError


STEP1_MODELS = ("lasso", "mars", "randomforest", "superlearner")
STEP2_MODELS = ("lasso", "rtree", "classtree", "ctree")


def validate_data(data) -> None:
    if not isinstance(data, pd.DataFrame):
        raise ConfigurationError(
            f"data must be a pandas DataFrame, got {type(data).__name__}"
        )
    if len(data) == 0:
        raise ConfigurationError("data has no rows")


def validate_Y(data: pd.DataFrame, Y: str) -> None:
    """Check that the response column exists, is numeric and complete."""
    if not isinstance(Y, str) or Y not in data.columns:
        raise ConfigurationError(f"Response column '{Y}' not found in data")
    if not pd.api.types.is_numeric_dtype(data[Y]) or pd.api.types.is_bool_dtype(data[Y]):
        raise ConfigurationError(f"Response column '{Y}' must be numeric")
    if data[Y].isna().any():
        raise ConfigurationError(f"Response column '{Y}' has missing values")


def validate_Trt(data: pd.DataFrame, Trt: str) -> None:
    """Check that the treatment column holds exactly the values 0 and 1."""
    if not isinstance(Trt, str) or Trt not in data.columns:
        raise ConfigurationError(f"Treatment column '{Trt}' not found in data")
    if data[Trt].isna().any():
        raise ConfigurationError(f"Treatment column '{Trt}' has missing values")
    values = set(pd.unique(data[Trt]).tolist())
    if values != {0, 1}:
        raise ConfigurationError(
            f"Treatment column '{Trt}' must take exactly the values 0 and 1, "
            f"got {sorted(values, key=str)}"
        )


def validate_covariates(data: pd.DataFrame, Y: str, Trt: str) -> None:
    covariates = [c for c in data.columns if c not in (Y, Trt)]
    if not covariates:
        raise ConfigurationError("data has no covariate columns")
    missing = [c for c in covariates if data[c].isna().any()]
    if missing:
        raise ConfigurationError(f"Covariates with missing values: {missing}")


def validate_alpha0(alpha0) -> None:
    if (
        isinstance(alpha0, bool)
        or not isinstance(alpha0, numbers.Real)
        or not 0 < alpha0 < 1
    ):
        raise ConfigurationError(f"alpha0 must be a number in (0, 1), got {alpha0!r}")


def validate_p_reps(p_reps) -> None:
    if (
        isinstance(p_reps, bool)
        or not isinstance(p_reps, numbers.Integral)
        or p_reps < 1
    ):
        raise ConfigurationError(f"p_reps must be a positive integer, got {p_reps!r}")


def validate_random_state(random_state) -> None:
    """Check that random_state can seed a numpy SeedSequence."""
    if random_state is None or isinstance(
        random_state, (np.random.SeedSequence, np.random.Generator)
    ):
        return
    if (
        isinstance(random_state, bool)
        or not isinstance(random_state, numbers.Integral)
        or random_state < 0
    ):
        raise ConfigurationError(
            "random_state must be None, a non-negative integer, a SeedSequence "
            f"or a Generator, got {random_state!r}"
        )


def validate_step1(step1) -> None:
    if step1 not in STEP1_MODELS:
        raise ConfigurationError(
            f"Unknown step1 model: {step1!r}. Choose from: {', '.join(STEP1_MODELS)}"
        )


def validate_step2(step2) -> None:
    if step2 not in STEP2_MODELS:
        raise ConfigurationError(
            f"Unknown step2 model: {step2!r}. Choose from: {', '.join(STEP2_MODELS)}"
        )


def validate_threshold(step2: str, threshold) -> None:
    """A numeric threshold is required for 'classtree' and rejected otherwise."""
    if step2 == "classtree":
        if (
            threshold is None
            or isinstance(threshold, bool)
            or not isinstance(threshold, numbers.Real)
            or not np.isfinite(threshold)
        ):
            raise ConfigurationError(
                "step2 = 'classtree' requires a finite numeric threshold, "
                f"got {threshold!r}"
            )
    elif threshold is not None:
        raise ConfigurationError(
            f"threshold is only used with step2 = 'classtree', not {step2!r}"
        )


def validate_arms(data: pd.DataFrame, Y: str, Trt: str) -> None:
    """Each arm needs at least two subjects and a non-constant response."""
    for value in (0, 1):
        arm = data.loc[data[Trt] == value, Y].to_numpy(dtype=float)
        if len(arm) < 2:
            raise DegenerateInputError(
                f"Treatment arm {Trt} = {value} has fewer than two subjects"
            )
        if np.ptp(arm) == 0:
            raise DegenerateInputError(
                f"Response '{Y}' is constant within arm {Trt} = {value}"
            )


def subset_trt(data: pd.DataFrame, value: int, Trt: str = "Trt") -> pd.DataFrame:
    """Rows of data with the given treatment value."""
    return data.loc[data[Trt] == value]


def marginal_effect(data: pd.DataFrame, Y: str = "Y", Trt: str = "Trt") -> float:
    """Difference in mean response between the treated and control arms."""
    y1 = subset_trt(data, 1, Trt)[Y].to_numpy(dtype=float)
    y0 = subset_trt(data, 0, Trt)[Y].to_numpy(dtype=float)
    return float(y1.mean() - y0.mean())


def covariate_levels(data: pd.DataFrame, Y: str, Trt: str) -> dict:
    """Levels of every non-numeric covariate, in indicator-column order."""
    levels = {}
    for name in data.columns.drop([Y, Trt], errors="ignore"):
        column = data[name]
        if isinstance(column.dtype, pd.CategoricalDtype):
            levels[name] = list(column.cat.categories)
        elif pd.api.types.is_object_dtype(column) or pd.api.types.is_string_dtype(column):
            levels[name] = sorted(column.dropna().unique())
    return levels


def covariate_frame(data: pd.DataFrame, Y: str, Trt: str, levels=None) -> pd.DataFrame:
    """
    Numeric covariate frame of every column other than Y and Trt.

    Non-numeric columns are expanded into indicator columns with the first
    level dropped. ``levels`` fixes the categories of each non-numeric
    column, so that new data with fewer levels is coded like the data the
    levels came from.

    Raises
    ------
    ConfigurationError
        If a column in ``levels`` is missing or holds a level not in
        ``levels``.
    """
    covariates = data.drop(columns=[Y, Trt], errors="ignore")
    if levels is None:
        levels = covariate_levels(covariates, Y, Trt)
    covariates = covariates.copy()
    for name, categories in levels.items():
        if name not in covariates.columns:
            raise ConfigurationError(f"Covariate column '{name}' not found in data")
        unseen = set(covariates[name].dropna().unique()) - set(categories)
        if unseen:
            raise ConfigurationError(
                f"Covariate '{name}' has levels not seen in the fitted data: "
                f"{sorted(map(str, unseen))}"
            )
        covariates[name] = pd.Categorical(covariates[name], categories=categories)
    covariates = pd.get_dummies(covariates, drop_first=True, dtype=float)
    covariates.columns = [str(c) for c in covariates.columns]
    return covariates


def covariate_matrix(data: pd.DataFrame, Y: str, Trt: str, levels=None):
    """
    Numeric covariate matrix of every column other than Y and Trt.

    Returns
    -------
    X : ndarray of shape (n_samples, n_features)
    feature_names : list of str
    """
    covariates = covariate_frame(data, Y, Trt, levels=levels)
    return covariates.to_numpy(dtype=float), list(covariates.columns)
