"""
Simulated randomized trial data for examples and tests.
"""

import numpy as np
import pandas as pd


def make_example(
    n: int = 200,
    heterogeneous: bool = False,
    effect: float = 1.0,
    interaction: float = 2.0,
    n_covariates: int = 5,
    noise: float = 1.0,
    random_state=None,
) -> pd.DataFrame:
    """
    Generate a randomized trial with a constant or subgroup treatment effect.

    Data generating process:
    - X1..Xp: independent standard normal covariates
    - Trt: Bernoulli(0.5) treatment assignment
    - tau: ``effect``, plus ``interaction`` when X1 > 0 if heterogeneous
    - Y = 0.5 * X1 - 0.5 * X2 + Trt * tau + N(0, noise**2)

    Parameters
    ----------
    n : int, default=200
        Number of subjects.
    heterogeneous : bool, default=False
        Whether the treatment effect depends on X1.
    effect : float, default=1.0
        Treatment effect (in the X1 <= 0 subgroup when heterogeneous).
    interaction : float, default=2.0
        Extra treatment effect for X1 > 0 when heterogeneous.
    n_covariates : int, default=5
        Number of covariates, at least 2.
    noise : float, default=1.0
        Standard deviation of the outcome noise.
    random_state : int, Generator or None

    Returns
    -------
    data : DataFrame
        Columns ``Y``, ``Trt``, ``X1``, ..., ``Xp``.
    """
    if n_covariates < 2:
        raise ValueError("n_covariates must be at least 2")
    rng = np.random.default_rng(random_state)

    X = rng.standard_normal((n, n_covariates))
    trt = rng.binomial(1, 0.5, n)

    tau = np.full(n, float(effect))
    if heterogeneous:
        tau = tau + interaction * (X[:, 0] > 0)

    y = 0.5 * X[:, 0] - 0.5 * X[:, 1] + trt * tau + rng.normal(0, noise, n)

    data = pd.DataFrame(X, columns=[f"X{j + 1}" for j in range(n_covariates)])
    data.insert(0, "Trt", trt)
    data.insert(0, "Y", y)
    return data
