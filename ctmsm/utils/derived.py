"""Quantities derived from fitted multi-state models."""

import dataclasses
import logging
import warnings
from typing import Callable, Dict, Optional

import numpy as np
import pandas as pd
import torch
from scipy import stats
from tqdm.auto import tqdm

from ..exceptions import ConvergenceWarning
from ..models import DTYPE, FittedMultiStateModel

__all__ = [
    "pmatrix_ci",
    "qmatrix_ci",
    "hazard_ratios",
    "sojourn_times",
    "pnext",
]

logger = logging.getLogger(__name__)


def _z_value(cl: float) -> float:
    if not 0 < cl < 1:
        raise ValueError(f"Confidence level must be in (0, 1), got {cl}")
    return float(stats.norm.ppf(0.5 + cl / 2))


def _normal_draws(fitted: FittedMultiStateModel, n_samples: int, seed: Optional[int]) -> np.ndarray:
    """Parameter vectors drawn from the asymptotic normal distribution of the estimates."""
    if fitted.covariance is None:
        raise ValueError("Fitted model has no covariance matrix; parametric intervals are unavailable")
    rng = np.random.default_rng(seed)
    return rng.multivariate_normal(fitted.estimates, fitted.covariance, size=n_samples)


def _quantiles(samples: np.ndarray, cl: float):
    alpha = (1 - cl) / 2
    return np.quantile(samples, alpha, axis=0), np.quantile(samples, 1 - alpha, axis=0)


def _evaluate_draws(fn: Callable[[torch.Tensor], torch.Tensor], draws: np.ndarray) -> np.ndarray:
    with torch.no_grad():
        return np.stack([fn(torch.as_tensor(theta, dtype=DTYPE)).numpy() for theta in draws])


def _bootstrap_estimates(
    fitted: FittedMultiStateModel,
    n_samples: int,
    seed: Optional[int],
    progress: bool,
) -> np.ndarray:
    """Refit the model to subject-level bootstrap resamples of its data."""
    from ..estimation import OptimConfig, fit

    if fitted.data is None:
        raise ValueError("Fitted model does not hold its panel data; bootstrap intervals are unavailable")
    rng = np.random.default_rng(seed)
    optim_config = dataclasses.replace(fitted.optim_config or OptimConfig(), compute_hessian=False)
    means = fitted.model.covariate_means.numpy()

    estimates = []
    n_failed = 0
    for _ in tqdm(range(n_samples), desc="Bootstrap refits", disable=not progress):
        resampled = fitted.data.resample(rng)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            refit = fit(
                resampled,
                fitted.config,
                optim_config,
                initial_theta=fitted.estimates,
                covariate_means=means,
            )
        if refit.converged:
            estimates.append(refit.estimates)
        else:
            n_failed += 1
    if n_failed:
        logger.warning("%d of %d bootstrap refits did not converge and were discarded", n_failed, n_samples)
    if len(estimates) < 2:
        raise RuntimeError(f"Only {len(estimates)} bootstrap refits converged")
    return np.stack(estimates)


def pmatrix_ci(
    fitted: FittedMultiStateModel,
    t: float,
    t_start: float = 0.0,
    covariates: Optional[Dict[str, float]] = None,
    ci: str = "normal",
    n_samples: int = 1000,
    cl: float = 0.95,
    seed: Optional[int] = None,
    progress: bool = True,
) -> Dict[str, pd.DataFrame]:
    """Transition probability matrix with confidence limits.

    Parameters
    ----------
    fitted : FittedMultiStateModel
        Fitted model
    t : float
        Length of the interval
    t_start : float
        Start of the interval (matters for piecewise-constant models)
    covariates : Optional[Dict[str, float]]
        Raw covariate values; omitted covariates take their centring value
    ci : str
        ``"normal"`` draws parameters from their asymptotic normal
        distribution; ``"bootstrap"`` refits the model to resampled subjects
        (slower, does not rely on the Hessian)
    n_samples : int
        Number of parameter draws or bootstrap refits
    cl : float
        Confidence level
    seed : Optional[int]
        Random seed for reproducibility
    progress : bool
        Show a progress bar for bootstrap refits

    Returns
    -------
    Dict[str, pd.DataFrame]
        ``estimate``, ``lower`` and ``upper`` matrices labelled by state
    """
    _z_value(cl)
    z = fitted.covariate_vector(covariates)
    model = fitted.model

    def fn(theta: torch.Tensor) -> torch.Tensor:
        return model.transition_matrix(t, t_start, z, theta)

    if ci == "normal":
        draws = _normal_draws(fitted, n_samples, seed)
    elif ci == "bootstrap":
        draws = _bootstrap_estimates(fitted, n_samples, seed, progress)
    else:
        raise ValueError(f"Unknown confidence interval method: {ci}")

    samples = _evaluate_draws(fn, draws)
    lower, upper = _quantiles(samples, cl)
    return {
        "estimate": fitted.pmatrix(t, t_start, covariates),
        "lower": fitted._labelled(lower),
        "upper": fitted._labelled(upper),
    }


def qmatrix_ci(
    fitted: FittedMultiStateModel,
    covariates: Optional[Dict[str, float]] = None,
    period: int = 0,
    n_samples: int = 1000,
    cl: float = 0.95,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Intensities with confidence limits from normal parameter draws.

    Returns
    -------
    pd.DataFrame
        One row per allowed transition and per diagonal entry of a transient
        state, with columns ``from``, ``to``, ``estimate``, ``lower``, ``upper``
    """
    z = fitted.covariate_vector(covariates)
    model = fitted.model
    Q_hat = fitted.qmatrix(covariates, period).to_numpy()
    draws = _normal_draws(fitted, n_samples, seed)
    samples = _evaluate_draws(lambda theta: model.intensity_matrix(z, period, theta), draws)
    lower, upper = _quantiles(samples, cl)

    rows = []
    for i, r in enumerate(fitted.states):
        if not model.qmask[i].any():
            continue
        for j, s in enumerate(fitted.states):
            if i == j or model.qmask[i, j]:
                rows.append({"from": r, "to": s, "estimate": Q_hat[i, j],
                             "lower": lower[i, j], "upper": upper[i, j]})
    return pd.DataFrame(rows, columns=["from", "to", "estimate", "lower", "upper"])


def hazard_ratios(fitted: FittedMultiStateModel, cl: float = 0.95) -> pd.DataFrame:
    """Hazard ratios for covariate and time-period effects with Wald limits.

    Returns
    -------
    pd.DataFrame
        Columns ``term``, ``transition``, ``hazard_ratio``, ``lower``, ``upper``
    """
    z = _z_value(cl)
    params = fitted.params
    effects = params[params["kind"] != "log_intensity"]
    if effects.empty:
        raise ValueError("Model has no covariate or time-period effects")
    return pd.DataFrame({
        "term": effects["term"].values,
        "transition": effects["transition"].values,
        "hazard_ratio": np.exp(effects["estimate"].values),
        "lower": np.exp(effects["estimate"].values - z * effects["se"].values),
        "upper": np.exp(effects["estimate"].values + z * effects["se"].values),
    })


def sojourn_times(
    fitted: FittedMultiStateModel,
    covariates: Optional[Dict[str, float]] = None,
    period: int = 0,
    cl: float = 0.95,
) -> pd.DataFrame:
    """Mean sojourn time ``-1 / q_rr`` in each transient state.

    Standard errors use the delta method; limits are symmetric on the log scale.

    Returns
    -------
    pd.DataFrame
        Indexed by state with columns ``estimate``, ``se``, ``lower``, ``upper``
    """
    zq = _z_value(cl)
    z = fitted.covariate_vector(covariates)
    model = fitted.model
    transient = [i for i in range(model.num_states) if model.qmask[i].any()]
    index = torch.as_tensor(transient, dtype=torch.long)

    def fn(theta: torch.Tensor) -> torch.Tensor:
        Q = model.intensity_matrix(z, period, theta)
        return -1.0 / torch.diagonal(Q)[index]

    theta_hat = torch.as_tensor(fitted.estimates, dtype=DTYPE)
    with torch.no_grad():
        estimate = fn(theta_hat).numpy()
    if fitted.covariance is not None:
        J = torch.autograd.functional.jacobian(fn, theta_hat).numpy()
        se = np.sqrt(np.clip(np.einsum("ij,jk,ik->i", J, fitted.covariance, J), 0.0, None))
    else:
        se = np.full(len(transient), np.nan)
    log_se = se / estimate
    return pd.DataFrame({
        "estimate": estimate,
        "se": se,
        "lower": estimate * np.exp(-zq * log_se),
        "upper": estimate * np.exp(zq * log_se),
    }, index=pd.Index([fitted.states[i] for i in transient], name="state"))


def pnext(
    fitted: FittedMultiStateModel,
    covariates: Optional[Dict[str, float]] = None,
    period: int = 0,
    n_samples: int = 1000,
    cl: float = 0.95,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Probability that each allowed transition is the next one out of its state.

    Returns
    -------
    pd.DataFrame
        Columns ``from``, ``to``, ``estimate``, ``lower``, ``upper``
    """
    z = fitted.covariate_vector(covariates)
    model = fitted.model

    def fn(theta: torch.Tensor) -> torch.Tensor:
        Q = model.intensity_matrix(z, period, theta)
        exit_rate = -torch.diagonal(Q)
        safe = torch.where(exit_rate > 0, exit_rate, torch.ones_like(exit_rate))
        off = Q - torch.diag_embed(torch.diagonal(Q))
        return off / safe.unsqueeze(1)

    with torch.no_grad():
        estimate = fn(torch.as_tensor(fitted.estimates, dtype=DTYPE)).numpy()
    if fitted.covariance is not None:
        lower, upper = _quantiles(_evaluate_draws(fn, _normal_draws(fitted, n_samples, seed)), cl)
    else:
        lower = upper = np.full_like(estimate, np.nan)

    rows = []
    for i, j in zip(*np.nonzero(model.qmask)):
        rows.append({"from": fitted.states[i], "to": fitted.states[j], "estimate": estimate[i, j],
                     "lower": lower[i, j], "upper": upper[i, j]})
    return pd.DataFrame(rows, columns=["from", "to", "estimate", "lower", "upper"])
