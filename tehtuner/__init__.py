"""
tehtuner: Tuned Virtual Twins for Treatment Effect Heterogeneity

Virtual Twins finds subgroups with differential treatment effects in
randomized trials in two steps: a flexible model estimates each subject's
conditional average treatment effect (Step 1), and a simple model of those
estimates against covariates describes the subgroups (Step 2). The Step 2
complexity parameter is tuned by permutation so that the Type I error of
detecting heterogeneity under a uniform treatment effect is controlled.

Key Components:
- tunevt / TuneVT: Fit a tuned Virtual Twins model
- get_mnpp: Minimal null penalty parameter of a Step 2 model
- tune_theta: Permutation null distribution of the MNPP
- print_tunevt: Text summary of a fitted model
"""

from .core import TuneVT, TunevtResult, tunevt
from .datasets import make_example
from .exceptions import (
    ConfigurationError,
    DegenerateInputError,
    EstimatorFitError,
    TehtunerError,
)
from .reporting import format_tunevt, print_tunevt
from .step1 import fit_step1, get_vt1
from .step2 import Step2Fit, fit_step2, get_mnpp, get_vt2
from .tuning import ThetaTuning, permute_null, tune_theta

__version__ = "1.0.0"
__all__ = [
    "TuneVT",
    "TunevtResult",
    "tunevt",
    "make_example",
    "ConfigurationError",
    "DegenerateInputError",
    "EstimatorFitError",
    "TehtunerError",
    "format_tunevt",
    "print_tunevt",
    "fit_step1",
    "get_vt1",
    "Step2Fit",
    "fit_step2",
    "get_mnpp",
    "get_vt2",
    "ThetaTuning",
    "permute_null",
    "tune_theta",
]
