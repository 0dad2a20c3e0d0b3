"""Exceptions and warnings raised by ctmsm."""

from typing import List, Optional

__all__ = [
    "StructuralError",
    "InitializationError",
    "NotNestedError",
    "DataQualityWarning",
    "ConvergenceWarning",
    "HessianWarning",
]


class StructuralError(ValueError):
    """Model structure is inconsistent with the data (fatal, raised before fitting)."""
    pass


class InitializationError(ValueError):
    """Crude initial intensities cannot be formed from the observed transitions."""
    pass


class NotNestedError(ValueError):
    """Two fitted models cannot be compared with a likelihood-ratio test."""

    def __init__(self, violations: List[str], message: Optional[str] = None) -> None:
        self.violations = list(violations)
        if message is None:
            message = "Models are not nested: " + "; ".join(self.violations)
        super().__init__(message)


class DataQualityWarning(UserWarning):
    """Rows or subjects were excluded while loading panel data."""
    pass


class ConvergenceWarning(UserWarning):
    """The optimiser stopped before reaching its convergence criterion."""
    pass


class HessianWarning(UserWarning):
    """The Hessian at the estimate is not positive definite; standard errors are unavailable."""
    pass
