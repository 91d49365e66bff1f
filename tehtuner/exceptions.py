"""
Exceptions raised by tehtuner.

Configuration problems are raised before any model is fitted. Estimator
failures are raised as EstimatorFitError so the permutation loop can tell a
failed replicate apart from a broken call.
"""


class TehtunerError(Exception):
    """Base class for all tehtuner errors."""


class ConfigurationError(TehtunerError, ValueError):
    """Invalid arguments: columns, model names, alpha0, p_reps or threshold."""


class DegenerateInputError(ConfigurationError):
    """The data cannot support a CATE estimate (e.g. a constant arm)."""


class EstimatorFitError(TehtunerError, RuntimeError):
    """An underlying Step 1 or Step 2 estimator failed to fit."""

    def __init__(self, stage: str, model: str, cause: BaseException = None):
        self.stage = stage
        self.model = model
        self.cause = cause
        message = f"{stage} model '{model}' failed to fit"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)
