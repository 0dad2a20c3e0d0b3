"""Utility functions for ctmsm fitted models."""

from .simulation import (
    generate_censoring_times,
    covariate_intensity_matrix,
    simulate_ctmc_path,
    simulate_panel_data,
)

from .derived import (
    pmatrix_ci,
    qmatrix_ci,
    hazard_ratios,
    sojourn_times,
    pnext,
)

from .prevalence import (
    prevalence,
    empirical_survival,
    expected_survival,
)

__all__ = [
    # Simulation utilities
    "generate_censoring_times",
    "covariate_intensity_matrix",
    "simulate_ctmc_path",
    "simulate_panel_data",

    # Derived quantities
    "pmatrix_ci",
    "qmatrix_ci",
    "hazard_ratios",
    "sojourn_times",
    "pnext",

    # Prevalence and survival
    "prevalence",
    "empirical_survival",
    "expected_survival",
]
