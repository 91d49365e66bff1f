"""
Tuned Virtual Twins: core implementation.

Virtual Twins is a two-step approach to detecting differential treatment
effects. Subjects' conditional average treatment effects (CATEs) are first
estimated in Step 1 with a flexible model. A simple, interpretable model of
the estimated CATEs is then fit in Step 2: their expected value for
'lasso', 'rtree' and 'ctree', or the probability that the CATE exceeds a
threshold for 'classtree'.

The Step 2 model depends on a complexity parameter. It is chosen to control
the Type I error of detecting heterogeneity when the treatment effect is
uniform: the data are permuted under the null hypothesis of a constant
treatment effect, the minimal null penalty parameter (MNPP) of each
permutation is recorded, and the (1 - alpha0) quantile of these MNPPs is
used to fit the Step 2 model on the original data.

References
----------
Foster, Taylor and Ruberg (2011). Subgroup identification from randomized
clinical trial data. Statistics in Medicine 30(24).

Wolf, Ames, Deng, Saha, Chen (2022). A permutation procedure to detect
heterogeneous treatment effects in randomized clinical trials while
controlling the type I error rate. Clinical Trials 19(6).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from .step1 import fit_step1, validate_step1_options
from .step2 import Step2Fit, fit_step2, get_mnpp
from .tuning import permutation_pvalue, seed_sequence, tune_theta
from .validation import (
    marginal_effect,
    validate_alpha0,
    validate_arms,
    validate_covariates,
    validate_data,
    validate_p_reps,
    validate_random_state,
    validate_step1,
    validate_step2,
    validate_threshold,
    validate_Trt,
    validate_Y,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class TunevtResult:
    """
    Fitted tuned Virtual Twins model.

    Attributes
    ----------
    vtmod : Step2Fit
        Step 2 model fit on the original data at the tuned theta.
    theta : float
        Tuned theta, the (1 - alpha0) quantile of ``theta_null``.
    theta_null : ndarray of shape (p_reps,)
        MNPP of each permutation under the null; NaN for dropped replicates.
    mnpp : float
        MNPP of the Step 1 CATEs on the original data.
    pvalue : float
        Share of null MNPPs strictly greater than ``mnpp``.
    n_dropped : int
        Number of permutation replicates dropped after failed fits.
    zbar : float
        Estimated marginal treatment effect.
    call : dict
        Arguments of the call that produced this result.
    z : ndarray or None
        Step 1 CATEs on the original data when ``keepz=True``.
    """
    vtmod: Step2Fit
    theta: float
    theta_null: np.ndarray
    mnpp: float
    pvalue: float
    n_dropped: int
    zbar: float
    call: Dict[str, Any] = field(default_factory=dict)
    z: Optional[np.ndarray] = None

    def __post_init__(self):
        self.theta_null.setflags(write=False)
        if self.z is not None:
            self.z.setflags(write=False)

    @property
    def alpha0(self) -> float:
        return self.call["alpha0"]

    @property
    def p_reps(self) -> int:
        return self.call["p_reps"]

    def to_dict(self) -> Dict[str, Any]:
        """Summary values (excluding the model and arrays)."""
        return {
            "step1": self.call["step1"],
            "step2": self.call["step2"],
            "alpha0": self.alpha0,
            "p_reps": self.p_reps,
            "theta": self.theta,
            "mnpp": self.mnpp,
            "pvalue": self.pvalue,
            "n_dropped": self.n_dropped,
            "n_effects": self.vtmod.n_effects,
            "zbar": self.zbar,
        }

    def __str__(self):
        from .reporting import format_tunevt
        return format_tunevt(self)


class TuneVT:
    """
    Virtual Twins with a permutation-tuned Step 2 model.

    Parameters
    ----------
    Y : str, default="Y"
        Name of the response column.
    Trt : str, default="Trt"
        Name of the treatment indicator column (values 0 and 1).
    step1 : {"lasso", "mars", "randomforest", "superlearner"}, default="randomforest"
        Step 1 model for the CATEs.
    step2 : {"lasso", "rtree", "classtree", "ctree"}, default="rtree"
        Step 2 model.
    alpha0 : float
        Nominal Type I error rate, in (0, 1). Required.
    p_reps : int
        Number of permutations. Required.
    threshold : float, optional
        For step2="classtree" only: the value the estimated CATE is
        compared against.
    keepz : bool, default=False
        Keep the Step 1 CATEs in the result.
    parallel : bool, default=False
        Run the permutations through joblib. Register a backend with
        ``joblib.parallel_config`` or set ``n_workers``.
    n_workers : int, optional
        joblib workers when ``parallel=True``. Distinct from the
        ``n_jobs`` option of the random forest Step 1 model.
    random_state : int, SeedSequence, Generator or None, default=None
        Seed for the permutations and the Step 1 models.
    **step1_options
        Additional arguments to the Step 1 model, e.g. ``n_estimators``.

    Attributes
    ----------
    result_ : TunevtResult
        The fitted result.
    zbar_ : float
        Estimated marginal treatment effect.

    Examples
    --------
    >>> from tehtuner import TuneVT, make_example
    >>> data = make_example(n=200, random_state=1)
    >>> vt = TuneVT(step1="lasso", step2="rtree", alpha0=0.2, p_reps=5)
    >>> print(vt.fit(data).result_)
    """

    def __init__(
        self,
        Y: str = "Y",
        Trt: str = "Trt",
        step1: str = "randomforest",
        step2: str = "rtree",
        alpha0: float = None,
        p_reps: int = None,
        threshold: Optional[float] = None,
        keepz: bool = False,
        parallel: bool = False,
        n_workers: Optional[int] = None,
        random_state: Optional[int] = None,
        **step1_options,
    ):
        self.Y = Y
        self.Trt = Trt
        self.step1 = step1
        self.step2 = step2
        self.alpha0 = alpha0
        self.p_reps = p_reps
        self.threshold = threshold
        self.keepz = keepz
        self.parallel = parallel
        self.n_workers = n_workers
        self.random_state = random_state
        self.step1_options = step1_options

        # Fitted attributes
        self.result_ = None
        self.zbar_ = None

    def _validate(self, data: pd.DataFrame) -> None:
        validate_data(data)
        validate_Y(data, self.Y)
        validate_Trt(data, self.Trt)
        validate_covariates(data, self.Y, self.Trt)
        validate_alpha0(self.alpha0)
        validate_p_reps(self.p_reps)
        validate_step1(self.step1)
        validate_step2(self.step2)
        validate_threshold(self.step2, self.threshold)
        validate_step1_options(self.step1, self.step1_options)
        validate_random_state(self.random_state)
        validate_arms(data, self.Y, self.Trt)

    def _call(self) -> Dict[str, Any]:
        call = {
            "Y": self.Y,
            "Trt": self.Trt,
            "step1": self.step1,
            "step2": self.step2,
            "alpha0": self.alpha0,
            "p_reps": self.p_reps,
            "threshold": self.threshold,
            "keepz": self.keepz,
            "parallel": self.parallel,
            "random_state": self.random_state,
        }
        call.update(self.step1_options)
        return call

    def fit(self, data: pd.DataFrame) -> "TuneVT":
        """
        Tune theta by permutation and fit Virtual Twins on ``data``.

        Raises
        ------
        ConfigurationError
            Invalid arguments, raised before any model is fit.
        DegenerateInputError
            A treatment arm cannot support a CATE estimate.
        EstimatorFitError
            The final Step 1 or Step 2 fit failed, or every permutation did.
        """
        self._validate(data)

        # the tuning loop and the final fit draw from independent streams
        tune_seed, final_seed = seed_sequence(self.random_state).spawn(2)
        final_rng = np.random.default_rng(final_seed)

        # Estimate marginal average treatment effect
        zbar = marginal_effect(data, Y=self.Y, Trt=self.Trt)
        self.zbar_ = zbar
        logger.info("Marginal treatment effect: %.4f", zbar)

        # Permutation to get the null distribution of the MNPP
        tuning = tune_theta(
            data, self.Y, self.Trt, zbar,
            step1=self.step1,
            step2=self.step2,
            alpha0=self.alpha0,
            p_reps=self.p_reps,
            threshold=self.threshold,
            parallel=self.parallel,
            n_workers=self.n_workers,
            random_state=tune_seed,
            **self.step1_options,
        )

        # Step 1 on the original data
        z = fit_step1(
            self.step1, data, Y=self.Y, Trt=self.Trt,
            random_state=final_rng, **self.step1_options,
        )

        # Step 2 at the tuned theta
        vtmod = fit_step2(
            self.step2, z, data, Y=self.Y, Trt=self.Trt,
            theta=tuning.theta, threshold=self.threshold,
        )

        # MNPP for the original data
        mnpp = get_mnpp(z, data, self.step2, Y=self.Y, Trt=self.Trt,
                        threshold=self.threshold)
        pvalue = permutation_pvalue(tuning.theta_grid, mnpp)
        logger.info("Observed MNPP %.4g, p-value %.4g", mnpp, pvalue)

        self.result_ = TunevtResult(
            vtmod=vtmod,
            theta=tuning.theta,
            theta_null=tuning.theta_grid,
            mnpp=mnpp,
            pvalue=pvalue,
            n_dropped=tuning.n_dropped,
            zbar=zbar,
            call=self._call(),
            z=z if self.keepz else None,
        )
        return self

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        """Predictions of the tuned Step 2 model on new data."""
        if self.result_ is None:
            raise ValueError("Model must be fitted first")
        return self.result_.vtmod.predict(data)


def tunevt(
    data: pd.DataFrame,
    Y: str = "Y",
    Trt: str = "Trt",
    step1: str = "randomforest",
    step2: str = "rtree",
    alpha0: float = None,
    p_reps: int = None,
    threshold: Optional[float] = None,
    keepz: bool = False,
    parallel: bool = False,
    n_workers: Optional[int] = None,
    random_state: Optional[int] = None,
    **step1_options,
) -> TunevtResult:
    """
    Fit a tuned Virtual Twins model.

    Functional form of :class:`TuneVT`; see it for the parameters.

    Returns
    -------
    TunevtResult

    Examples
    --------
    >>> from tehtuner import make_example, tunevt
    >>> data = make_example(n=200, random_state=1)
    >>> # Low p_reps for example use only
    >>> result = tunevt(data, step1="lasso", step2="rtree", alpha0=0.2, p_reps=5)
    """
    return TuneVT(
        Y=Y,
        Trt=Trt,
        step1=step1,
        step2=step2,
        alpha0=alpha0,
        p_reps=p_reps,
        threshold=threshold,
        keepz=keepz,
        parallel=parallel,
        n_workers=n_workers,
        random_state=random_state,
        **step1_options,
    ).fit(data).result_
