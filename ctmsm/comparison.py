"""Likelihood-ratio tests and information criteria for fitted models."""

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Union

import numpy as np
import pandas as pd
from scipy import stats

from .exceptions import NotNestedError
from .models import FittedMultiStateModel

__all__ = [
    "LRTestResult",
    "lrtest",
    "compare_models",
]

logger = logging.getLogger(__name__)


@dataclass
class LRTestResult:
    """Outcome of a likelihood-ratio test.

    Parameters
    ----------
    statistic : float
        ``2 * (loglik_full - loglik_restricted)``
    df : int
        Difference in the number of free parameters
    p_value : float
        Upper tail probability of the chi-square distribution with ``df``
        degrees of freedom
    """
    statistic: float
    df: int
    p_value: float

    def __str__(self) -> str:
        return f"LR statistic = {self.statistic:.3f} on {self.df} df, p = {self.p_value:.4g}"


def _exact_death_states(fitted: FittedMultiStateModel) -> set:
    if fitted.config is None:
        return set()
    return set(fitted.config.exact_death_states)


def _nesting_violations(restricted: FittedMultiStateModel, full: FittedMultiStateModel) -> List[str]:
    violations = []
    if restricted.data_signature != full.data_signature:
        violations.append("models were fitted to different data")
    if restricted.states != full.states:
        violations.append(f"state sets differ: {restricted.states} vs {full.states}")
    elif not np.array_equal(restricted.model.qmask, full.model.qmask):
        violations.append("allowed transitions differ")
    restricted_death = _exact_death_states(restricted)
    full_death = _exact_death_states(full)
    if restricted_death != full_death:
        violations.append(
            f"exactly observed absorbing states differ: {sorted(restricted_death)} vs {sorted(full_death)}"
        )
    missing = [p for p in restricted.parameter_names if p not in set(full.parameter_names)]
    if missing:
        violations.append(f"restricted parameters absent from the full model: {missing}")
    df = full.n_params - restricted.n_params
    if df <= 0:
        violations.append(f"full model must have more parameters than the restricted one (difference {df})")
    return violations


def lrtest(restricted: FittedMultiStateModel, full: FittedMultiStateModel) -> LRTestResult:
    """Likelihood-ratio test of a restricted model against a model it is nested in.

    Parameters
    ----------
    restricted : FittedMultiStateModel
        Model with fewer free parameters
    full : FittedMultiStateModel
        Model containing every parameter of ``restricted``, fitted to the same data

    Returns
    -------
    LRTestResult
        Test statistic, degrees of freedom and p-value

    Raises
    ------
    NotNestedError
        Listing every reason the models cannot be compared
    """
    violations = _nesting_violations(restricted, full)
    if violations:
        raise NotNestedError(violations)

    statistic = 2.0 * (full.loglik - restricted.loglik)
    df = full.n_params - restricted.n_params
    if statistic < 0:
        warnings.warn(
            f"Negative likelihood-ratio statistic ({statistic:.4g}): the full model "
            "probably did not reach its maximum",
            RuntimeWarning,
        )
    p_value = float(stats.chi2.sf(max(statistic, 0.0), df))
    logger.info("LR test: statistic=%.4f, df=%d, p=%.4g", statistic, df, p_value)
    return LRTestResult(statistic=float(statistic), df=int(df), p_value=p_value)


def compare_models(
    models: Union[Dict[str, FittedMultiStateModel], List[FittedMultiStateModel]],
) -> pd.DataFrame:
    """Tabulate -2 log-likelihood, parameter count and AIC, sorted by AIC.

    Parameters
    ----------
    models : Union[Dict[str, FittedMultiStateModel], List[FittedMultiStateModel]]
        Fitted models, named by their keys or by position

    Returns
    -------
    pd.DataFrame
        Indexed by model name with columns ``minus2loglik``, ``n_params``,
        ``aic``, ``delta_aic``, ``converged``
    """
    if not isinstance(models, dict):
        models = {f"model_{i}": m for i, m in enumerate(models)}
    if not models:
        raise ValueError("No models to compare")
    signatures = {m.data_signature for m in models.values()}
    if len(signatures) > 1:
        warnings.warn("Models were fitted to different data; AIC values are not comparable", UserWarning)
    table = pd.DataFrame({
        "minus2loglik": [m.minus2loglik for m in models.values()],
        "n_params": [m.n_params for m in models.values()],
        "aic": [m.aic for m in models.values()],
        "converged": [m.converged for m in models.values()],
    }, index=pd.Index(list(models), name="model"))
    table.insert(3, "delta_aic", table["aic"] - table["aic"].min())
    return table.sort_values("aic")
