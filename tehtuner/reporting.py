"""
Text output for fitted tuned Virtual Twins models.
"""

import sys

import numpy as np

from .ctree import mincriterion_from_score


def format_pvalue(pvalue: float, n: int, digits: int = 4) -> str:
    """Format a permutation p-value; zero is reported as below 1/n."""
    if np.isnan(pvalue):
        return "NA"
    if pvalue == 0:
        return f"< {1.0 / n:.{digits}g}"
    return f"{pvalue:.{digits}g}"


def format_call(call: dict) -> str:
    args = ", ".join(f"{k}={v!r}" for k, v in call.items() if v is not None)
    return f"tunevt({args})"


def format_tunevt(result, digits: int = 4) -> str:
    """
    Human-readable summary of a TunevtResult.

    Parameters
    ----------
    result : TunevtResult
    digits : int, default=4
        Significant digits for numbers.

    Returns
    -------
    str
    """
    step2 = result.call["step2"]
    quant = 1 - result.alpha0
    n_valid = int(np.sum(~np.isnan(result.theta_null)))

    lines = [
        "Call:",
        format_call(result.call),
        "",
        f'Step 2 "{step2}" model:',
        result.vtmod.describe(digits=digits),
        "",
        f"Approximate {quant:.{digits}g} quantile of the MNPP null distribution: "
        f"{result.theta:.{digits}g}",
        f"Observed MNPP: {result.mnpp:.{digits}g},\t"
        f"p-value: {format_pvalue(result.pvalue, max(n_valid, 1), digits)}",
    ]
    if step2 == "ctree" and np.isfinite(result.theta):
        lines.insert(
            -1,
            "Tuned mincriterion (1 - adjusted p-value): "
            f"{mincriterion_from_score(result.theta):.{digits}g}",
        )
    if result.n_dropped:
        lines.append(
            f"Permutations dropped after failed fits: {result.n_dropped} of {result.p_reps}"
        )
    return "\n".join(lines)


def print_tunevt(result, digits: int = 4, file=None):
    """Print a TunevtResult and return it."""
    print(format_tunevt(result, digits=digits), file=file or sys.stdout)
    return result
