#!/usr/bin/env python
"""
Cohort Analysis Example for ctmsm

This example demonstrates:
1. Simulating a cardiovascular cohort examined every two years
2. Loading it from a delimited file and inspecting the state table
3. Fitting null, covariate and piecewise-constant models
4. Comparing nested models with likelihood-ratio tests
5. Reporting transition probabilities, hazard ratios, sojourn times,
   prevalence and survival

The script uses a four-state model:
- State 1: No hypertension
- State 2: Hypertension
- State 3: Cardiovascular disease
- State 4: Death (absorbing state)

Subjects whose last visit only tells us they were alive are recorded with
code 99, standing for "in state 1, 2 or 3".
"""

import logging
import os
import tempfile

import numpy as np

from ctmsm import (
    ModelConfig,
    OptimConfig,
    compare_models,
    fit_many,
    load_panel_data,
    lrtest,
    statetable,
)
from ctmsm.utils import (
    empirical_survival,
    expected_survival,
    hazard_ratios,
    pmatrix_ci,
    prevalence,
    simulate_panel_data,
    sojourn_times,
)

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

N_SUBJECTS = 1500
MAX_TIME = 20.0  # years
CENSOR_CODE = 99

STATES = [1, 2, 3, 4]
STATE_TRANSITIONS = {
    1: [2, 4],     # Normotensive -> Hypertension or Death
    2: [1, 3, 4],  # Hypertension -> Normotensive, CVD or Death
    3: [4],        # CVD -> Death
    4: []          # Death (absorbing state)
}

TRUE_Q = np.array([
    [-0.09, 0.08, 0.00, 0.01],
    [0.02, -0.09, 0.05, 0.02],
    [0.00, 0.00, -0.12, 0.12],
    [0.00, 0.00, 0.00, 0.00],
])

# Males progress faster to hypertension and CVD
LOG_HAZARD_RATIOS = {
    "sex": np.array([
        [0.0, 0.4, 0.0, 0.0],
        [0.0, 0.0, 0.5, 0.0],
        [0.0, 0.0, 0.0, 0.0],
        [0.0, 0.0, 0.0, 0.0],
    ]),
}


def simulate_cohort(path: str) -> None:
    """Write a simulated cohort to ``path``."""
    rng = np.random.default_rng(2024)
    sex = rng.integers(0, 2, size=N_SUBJECTS).astype(float)
    df = simulate_panel_data(
        TRUE_Q,
        STATES,
        n_subjects=N_SUBJECTS,
        max_time=MAX_TIME,
        obs_interval=2.0,
        jitter=0.25,
        covariates={"sex": sex},
        log_hazard_ratios=LOG_HAZARD_RATIOS,
        censoring_rate=0.3,
        censor_code=CENSOR_CODE,
        exact_death=True,
        seed=2024,
    )
    df.rename(columns={"id": "ptid", "time": "years"}).to_csv(path, index=False)


def main():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "cohort.csv")
        simulate_cohort(path)
        data = load_panel_data(
            path,
            states=STATES,
            subject_col="ptid",
            time_col="years",
            covariates=["sex"],
            censoring={CENSOR_CODE: [1, 2, 3]},
        )
    print(data)
    print("\nState table:")
    print(statetable(data))

    configs = {
        "null": ModelConfig(state_transitions=STATE_TRANSITIONS, exact_death_states=[4]),
        "sex": ModelConfig(state_transitions=STATE_TRANSITIONS, exact_death_states=[4], covariates=["sex"]),
        "piecewise": ModelConfig(state_transitions=STATE_TRANSITIONS, exact_death_states=[4],
                                 breakpoints=[10.0]),
    }
    fitted = fit_many(data, configs, OptimConfig(maxiter=1000), n_jobs=len(configs))

    for name, model in fitted.items():
        print(f"\nModel: {name}")
        model.summary()

    print("\nModel comparison:")
    print(compare_models(fitted))
    print("\nSex effect:", lrtest(fitted["null"], fitted["sex"]))
    print("Time effect:", lrtest(fitted["null"], fitted["piecewise"]))

    print("\nFive-year transition probabilities for males:")
    ci = pmatrix_ci(fitted["sex"], t=5.0, covariates={"sex": 1.0}, n_samples=500, seed=1)
    print(ci["estimate"].round(3))
    print("Lower limits:")
    print(ci["lower"].round(3))
    print("Upper limits:")
    print(ci["upper"].round(3))

    print("\nHazard ratios:")
    print(hazard_ratios(fitted["sex"]).round(3))

    print("\nMean sojourn times (years):")
    print(sojourn_times(fitted["null"]).round(2))

    print("\nObserved and expected prevalence:")
    print(prevalence(fitted["null"], np.arange(0.0, MAX_TIME + 1, 5.0)).round(1))

    km = empirical_survival(data, absorbing_state=4)
    model_surv = expected_survival(fitted["null"], [5.0, 10.0, 15.0, 20.0], from_state=1, absorbing_state=4)
    print("\nSurvival (Kaplan-Meier vs model):")
    for _, row in model_surv.iterrows():
        km_value = km.loc[km["time"] <= row["time"], "survival"].iloc[-1]
        print(f"  t={row['time']:>4.0f}: {km_value:.3f} vs {row['survival']:.3f}")


if __name__ == "__main__":
    main()
