"""ctmsm: Continuous-time multi-state Markov models for panel data."""

# Import exceptions and warnings
from .exceptions import (
    StructuralError,
    InitializationError,
    NotNestedError,
    DataQualityWarning,
    ConvergenceWarning,
    HessianWarning,
)

# Import data handling
from .data import PanelData, load_panel_data, statetable

# Import transition structure helpers
from .qmatrix import (
    build_qmask,
    check_connectivity,
    crude_intensities,
    transition_graph,
    validate_intensity_matrix,
)

# Import core models
from .models import MultiStateModel, FittedMultiStateModel
from .likelihood import PanelDesign, PanelLikelihood

# Import estimation
from .estimation import (
    fit,
    fit_many,
    fit_model,
    prepare_data,
    ModelConfig,
    OptimConfig,
)

# Import model comparison
from .comparison import LRTestResult, lrtest, compare_models

# Import utility functions from utils package
from .utils import (
    # Simulation utilities
    simulate_ctmc_path,
    simulate_panel_data,

    # Derived quantities
    pmatrix_ci,
    qmatrix_ci,
    hazard_ratios,
    sojourn_times,
    pnext,

    # Prevalence and survival
    prevalence,
    empirical_survival,
    expected_survival,
)

# fit is the primary interface for estimating models

__version__ = "0.1.0"

# Define exports
__all__ = [
    # Exceptions and warnings
    "StructuralError",
    "InitializationError",
    "NotNestedError",
    "DataQualityWarning",
    "ConvergenceWarning",
    "HessianWarning",

    # Data
    "PanelData",
    "load_panel_data",
    "statetable",

    # Transition structure
    "build_qmask",
    "check_connectivity",
    "crude_intensities",
    "transition_graph",
    "validate_intensity_matrix",

    # Core models
    "MultiStateModel",
    "FittedMultiStateModel",
    "PanelDesign",
    "PanelLikelihood",

    # Estimation
    "fit",
    "fit_many",
    "fit_model",
    "prepare_data",
    "ModelConfig",
    "OptimConfig",

    # Model comparison
    "LRTestResult",
    "lrtest",
    "compare_models",

    # Simulation
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
