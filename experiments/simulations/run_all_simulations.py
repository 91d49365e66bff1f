"""
Tuned Virtual Twins Simulations: Type I Error and Power

This script checks the two operating characteristics of tunevt:
1. Simulation 1: Type I error under a constant treatment effect
2. Simulation 2: Power under a sharp subgroup effect

Each simulated trial has 200 subjects with Trt ~ Bernoulli(0.5). Heterogeneity
is declared when the permutation p-value is at most alpha0.

Run with: python run_all_simulations.py [n_sims]
"""

import logging
import numpy as np
import sys
import os

# Add parent directories to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from joblib import Parallel, delayed

from tehtuner import make_example, tunevt

ALPHA0 = 0.2
P_REPS = 50
N_SUBJECTS = 200


def run_single_trial(seed, heterogeneous, step1="randomforest", step2="rtree"):
    """Simulate one trial and return its tunevt summary."""
    data = make_example(n=N_SUBJECTS, heterogeneous=heterogeneous, random_state=seed)
    result = tunevt(
        data, step1=step1, step2=step2, alpha0=ALPHA0, p_reps=P_REPS,
        random_state=seed, n_estimators=100,
    )
    summary = result.to_dict()
    summary["seed"] = seed
    summary["reject"] = result.pvalue <= ALPHA0
    return summary


def run_scenario(heterogeneous, n_sims, n_jobs=-1, verbose=True):
    results = Parallel(n_jobs=n_jobs)(
        delayed(run_single_trial)(seed, heterogeneous) for seed in range(n_sims)
    )
    pvalues = np.array([r["pvalue"] for r in results])
    rejection_rate = np.mean([r["reject"] for r in results])
    se = np.sqrt(rejection_rate * (1 - rejection_rate) / n_sims)

    if verbose:
        print(f"Trials: {n_sims}, alpha0 = {ALPHA0}, p_reps = {P_REPS}")
        print(f"Rejection rate: {rejection_rate:.3f} (SE {se:.3f})")
        print("p-value deciles: " + ", ".join(
            f"{q:.2f}" for q in np.quantile(pvalues, np.linspace(0.1, 0.9, 9))
        ))
    return {"rejection_rate": rejection_rate, "se": se, "pvalues": pvalues}


def simulation_1_type1_error(n_sims=100, verbose=True):
    """
    Simulation 1: Type I Error

    Constant treatment effect; the rejection rate should not exceed alpha0
    beyond Monte Carlo error.
    """
    if verbose:
        print("\n" + "=" * 80)
        print("SIMULATION 1: TYPE I ERROR (constant effect)")
        print("=" * 80)
    return run_scenario(heterogeneous=False, n_sims=n_sims, verbose=verbose)


def simulation_2_power(n_sims=100, verbose=True):
    """
    Simulation 2: Power

    The treatment effect is larger when X1 > 0; the rejection rate should be
    well above alpha0.
    """
    if verbose:
        print("\n" + "=" * 80)
        print("SIMULATION 2: POWER (subgroup effect on X1)")
        print("=" * 80)
    return run_scenario(heterogeneous=True, n_sims=n_sims, verbose=verbose)


def main():
    """Run all simulations."""
    logging.basicConfig(level=logging.WARNING)
    n_sims = int(sys.argv[1]) if len(sys.argv) > 1 else 100

    results = {}
    results["type1"] = simulation_1_type1_error(n_sims)
    results["power"] = simulation_2_power(n_sims)

    print("\n" + "=" * 80)
    print("ALL SIMULATIONS COMPLETED")
    print("=" * 80)
    return results


if __name__ == "__main__":
    main()
