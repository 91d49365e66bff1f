"""
Permutation tuning of the Step 2 complexity parameter.

Under the null hypothesis of a constant treatment effect zbar, subjects are
exchangeable between arms once zbar is removed from the treated responses.
Each replicate:

1. subtracts zbar from the responses of the treated subjects,
2. permutes the treatment labels,
3. adds zbar to the responses of the newly treated subjects,
4. refits Step 1 on the permuted data and computes the Step 2 MNPP.

The (1 - alpha0) quantile of the replicate MNPPs is the tuned parameter.
Replicates run sequentially or through joblib; each replicate draws from its
own child of one SeedSequence, so both modes give the same set of values.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .exceptions import EstimatorFitError
from .step1 import fit_step1
from .step2 import get_mnpp
from .validation import (
    validate_alpha0,
    validate_p_reps,
    validate_random_state,
    validate_step1,
    validate_step2,
    validate_threshold,
)

logger = logging.getLogger(__name__)

# numpy's default quantile definition (R type 7)
QUANTILE_METHOD = "linear"

MAX_ATTEMPTS = 2


@dataclass(frozen=True, eq=False)
class ThetaTuning:
    """
    Result of the permutation loop.

    Attributes
    ----------
    theta : float
        The (1 - alpha0) quantile of the null MNPP distribution.
    theta_grid : ndarray of shape (p_reps,)
        MNPP of every replicate; NaN marks a dropped replicate.
    n_dropped : int
        Number of replicates whose fits failed twice.
    """
    theta: float
    theta_grid: np.ndarray
    n_dropped: int


def permute_null(
    data: pd.DataFrame,
    Y: str,
    Trt: str,
    zbar: float,
    rng: np.random.Generator,
) -> pd.DataFrame:
    """
    Permuted copy of the data under a constant treatment effect ``zbar``.

    Arm sizes are preserved. ``data`` is not modified.
    """
    permuted = data.copy()
    trt = data[Trt].to_numpy()
    y = data[Y].to_numpy(dtype=float) - zbar * (trt == 1)

    trt_perm = rng.permutation(trt)
    permuted[Trt] = trt_perm
    permuted[Y] = y + zbar * (trt_perm == 1)
    return permuted


def null_quantile(theta_grid, alpha0: float) -> float:
    """The (1 - alpha0) quantile of the non-missing null MNPPs."""
    values = np.asarray(theta_grid, dtype=float)
    values = values[~np.isnan(values)]
    if len(values) == 0:
        return np.nan
    return float(np.quantile(values, 1 - alpha0, method=QUANTILE_METHOD))


def permutation_pvalue(theta_grid, mnpp: float) -> float:
    """
    Share of non-missing null MNPPs strictly greater than the observed MNPP.

    With no dropped replicates this is the count divided by p_reps.
    """
    values = np.asarray(theta_grid, dtype=float)
    values = values[~np.isnan(values)]
    if len(values) == 0:
        return np.nan
    return float(np.mean(values > mnpp))


def seed_sequence(random_state) -> np.random.SeedSequence:
    """
    SeedSequence for an int, SeedSequence, Generator or None.

    A Generator is consumed for one draw, so the same Generator gives a new
    sequence on each call.
    """
    validate_random_state(random_state)
    if isinstance(random_state, np.random.SeedSequence):
        return random_state
    if isinstance(random_state, np.random.Generator):
        return np.random.SeedSequence(int(random_state.integers(0, 2**63 - 1)))
    return np.random.SeedSequence(random_state)


def run_replicate(
    data: pd.DataFrame,
    Y: str,
    Trt: str,
    zbar: float,
    step1: str,
    step2: str,
    threshold: Optional[float],
    seed: np.random.SeedSequence,
    step1_options: dict,
) -> float:
    """
    MNPP of one permutation replicate.

    A failed fit is retried once on a fresh permutation; a second failure
    returns NaN. Configuration errors propagate.
    """
    rng = np.random.default_rng(seed)
    for attempt in range(1, MAX_ATTEMPTS + 1):
        permuted = permute_null(data, Y, Trt, zbar, rng)
        try:
            z = fit_step1(step1, permuted, Y=Y, Trt=Trt, random_state=rng, **step1_options)
            return get_mnpp(z, permuted, step2, Y=Y, Trt=Trt, threshold=threshold)
        except EstimatorFitError as exc:
            logger.debug("Replicate attempt %d failed: %s", attempt, exc)
    return np.nan


def tune_theta(
    data: pd.DataFrame,
    Y: str,
    Trt: str,
    zbar: float,
    step1: str,
    step2: str,
    alpha0: float,
    p_reps: int,
    threshold: Optional[float] = None,
    parallel: bool = False,
    n_workers: Optional[int] = None,
    random_state=None,
    **step1_options,
) -> ThetaTuning:
    """
    Build the permutation null distribution of the MNPP and tune theta.

    Parameters
    ----------
    data : DataFrame
        Observed data; never modified.
    Y, Trt : str
        Response and treatment columns.
    zbar : float
        Estimated marginal treatment effect on the observed data.
    step1, step2 : str
        Step 1 and Step 2 model names.
    alpha0 : float
        Nominal Type I error rate.
    p_reps : int
        Number of permutation replicates.
    threshold : float, optional
        Threshold for step2 = 'classtree'.
    parallel : bool, default=False
        Run replicates through ``joblib.Parallel``. With ``n_workers=None`` the
        backend and worker count registered with ``joblib.parallel_config``
        are used.
    n_workers : int, optional
        Number of joblib workers when ``parallel=True``.
    random_state : int, SeedSequence, Generator or None
        Seed of the replicate seed sequence.
    **step1_options
        Passed to the Step 1 model.

    Returns
    -------
    ThetaTuning

    Raises
    ------
    EstimatorFitError
        If every replicate failed.
    """
    validate_alpha0(alpha0)
    validate_p_reps(p_reps)
    validate_step1(step1)
    validate_step2(step2)
    validate_threshold(step2, threshold)

    seeds = seed_sequence(random_state).spawn(p_reps)
    args = (data, Y, Trt, zbar, step1, step2, threshold)

    if parallel:
        logger.debug("Running %d replicates with joblib (n_workers=%s)", p_reps, n_workers)
        results = Parallel(n_jobs=n_workers)(
            delayed(run_replicate)(*args, seed, step1_options) for seed in seeds
        )
    else:
        results = [run_replicate(*args, seed, step1_options) for seed in seeds]

    theta_grid = np.asarray(results, dtype=float)
    dropped = np.isnan(theta_grid)
    n_dropped = int(dropped.sum())
    n_valid = p_reps - n_dropped

    if n_valid == 0:
        raise EstimatorFitError(
            "Permutation", f"{step1}/{step2}",
            RuntimeError(f"all {p_reps} replicates failed"),
        )
    if n_dropped:
        logger.warning("%d of %d permutation replicates failed and were dropped",
                       n_dropped, p_reps)
    if n_valid * alpha0 < 1:
        warnings.warn(
            f"Only {n_valid} replicates for alpha0 = {alpha0}; the tuned theta "
            "is the largest null MNPP. Increase p_reps.",
            UserWarning,
        )

    theta = null_quantile(theta_grid, alpha0)
    logger.info("Tuned theta %.4g from %d/%d replicates", theta, n_valid, p_reps)
    return ThetaTuning(theta=theta, theta_grid=theta_grid, n_dropped=n_dropped)
