"""Maximum-likelihood fitting of continuous-time multi-state models."""

from __future__ import annotations

import logging
import time
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import torch
from scipy.optimize import minimize
from tqdm.auto import tqdm

from .data import PanelData
from .exceptions import ConvergenceWarning, HessianWarning, StructuralError
from .likelihood import PanelDesign, PanelLikelihood
from .models import DTYPE, FittedMultiStateModel, MultiStateModel
from .qmatrix import build_qmask, check_connectivity, crude_intensities

__all__ = [
    "ModelConfig",
    "OptimConfig",
    "prepare_data",
    "fit_model",
    "fit",
    "fit_many",
]

logger = logging.getLogger(__name__)

GRADIENT_FREE_METHODS = {"NELDER-MEAD", "POWELL", "COBYLA"}
GTOL_METHODS = {"BFGS", "CG", "L-BFGS-B"}


@dataclass
class ModelConfig:
    """Configuration of a multi-state model.

    Parameters
    ----------
    state_transitions : Dict[int, List[int]]
        Dictionary mapping source states to possible target states
    covariates : Optional[List[str]]
        Covariates acting proportionally on every allowed transition
    breakpoints : Optional[List[float]]
        Times at which intensities change (piecewise-constant model)
    exact_death_states : Optional[List[int]]
        Absorbing states whose entry time is known exactly
    center_covariates : bool
        Centre covariates on their means so baseline intensities refer to the
        average covariate values
    initial_q : Optional[np.ndarray]
        Starting intensity matrix; crude estimates are used when omitted
    init_fallback : Optional[float]
        Rate used for allowed transitions never observed when forming crude
        estimates
    """
    state_transitions: Dict[int, List[int]]
    covariates: Optional[List[str]] = None
    breakpoints: Optional[List[float]] = None
    exact_death_states: Optional[List[int]] = None
    center_covariates: bool = True
    initial_q: Optional[np.ndarray] = None
    init_fallback: Optional[float] = None

    def __post_init__(self):
        if self.covariates is None:
            self.covariates = []
        if self.exact_death_states is None:
            self.exact_death_states = []
        if self.breakpoints:
            self.breakpoints = [float(b) for b in self.breakpoints]
            if any(b2 <= b1 for b1, b2 in zip(self.breakpoints, self.breakpoints[1:])):
                raise ValueError(f"Breakpoints must be strictly increasing, got {self.breakpoints}")
        else:
            self.breakpoints = []
        if self.covariates and self.breakpoints:
            raise ValueError(
                "Covariate effects and piecewise-constant intensities cannot be combined in one model"
            )


@dataclass
class OptimConfig:
    """Configuration of the likelihood maximisation.

    Parameters
    ----------
    method : str
        Method passed to ``scipy.optimize.minimize``
    maxiter : int
        Iteration cap
    gtol : float
        Gradient tolerance for gradient-based methods
    fnscale : Optional[float]
        The -2 log-likelihood is divided by this value during optimisation;
        ``None`` uses its magnitude at the starting values
    timeout : Optional[float]
        Wall-clock limit in seconds, checked after every iteration
    compute_hessian : bool
        Compute standard errors from the Hessian at the estimate
    options : Optional[Dict[str, Any]]
        Additional options for the optimiser
    """
    method: str = "BFGS"
    maxiter: int = 500
    gtol: float = 1e-5
    fnscale: Optional[float] = None
    timeout: Optional[float] = None
    compute_hessian: bool = True
    options: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.options is None:
            self.options = {}
        if self.fnscale is not None and self.fnscale <= 0:
            raise ValueError(f"fnscale must be positive, got {self.fnscale}")
        if self.maxiter < 1:
            raise ValueError(f"maxiter must be at least 1, got {self.maxiter}")


def _validate_config(data: PanelData, config: ModelConfig, qmask: np.ndarray) -> None:
    missing = [c for c in config.covariates if c not in data.covariates]
    if missing:
        raise StructuralError(f"Covariate columns absent from panel data: {missing}")
    index = data.state_index
    for d in config.exact_death_states:
        if d not in index:
            raise StructuralError(f"Exact-death state {d} is not a model state")
        if qmask[index[d]].any():
            raise StructuralError(f"Exact-death state {d} must be absorbing")
        if not qmask[:, index[d]].any():
            raise StructuralError(f"Exact-death state {d} cannot be entered from any state")


def prepare_data(
    data: PanelData,
    config: ModelConfig,
    covariate_means: Optional[Sequence[float]] = None,
) -> Tuple[PanelDesign, np.ndarray]:
    """Convert panel data into padded tensors for the likelihood.

    Parameters
    ----------
    data : PanelData
        Cleaned panel data
    config : ModelConfig
        Model configuration
    covariate_means : Optional[Sequence[float]]
        Centring values; computed from the data when omitted and
        ``config.center_covariates`` is set

    Returns
    -------
    Tuple[PanelDesign, np.ndarray]
        Tensorised data and the centring values used
    """
    missing = [c for c in config.covariates if c not in data.covariates]
    if missing:
        raise StructuralError(f"Covariate columns absent from panel data: {missing}")

    df = data.df
    S = data.n_states
    subject_codes, subjects = pd.factorize(df["subject"], sort=False)
    position = df.groupby("subject", sort=False).cumcount().to_numpy()
    N = len(subjects)
    K = int(position.max()) + 1 if len(df) else 1

    time_arr = np.zeros((N, K))
    time_arr[subject_codes, position] = df["time"].to_numpy(dtype=float)
    observed = np.zeros((N, K), dtype=bool)
    observed[subject_codes, position] = True

    # One emission vector per distinct code
    index = data.state_index
    codes = df["state"].to_numpy()
    lookup = {}
    for code in np.unique(codes):
        vec = np.zeros(S)
        for s in data.candidate_states(int(code)):
            vec[index[s]] = 1.0
        lookup[int(code)] = vec
    emission = np.zeros((N, K, S))
    emission[subject_codes, position] = np.stack([lookup[int(c)] for c in codes]) if len(codes) else 0.0

    exact_death = np.zeros((N, K), dtype=bool)
    death_index = np.zeros((N, K), dtype=np.int64)
    if config.exact_death_states:
        is_death = np.isin(codes, config.exact_death_states) & (position > 0)
        exact_death[subject_codes[is_death], position[is_death]] = True
        death_index[subject_codes[is_death], position[is_death]] = [index[int(c)] for c in codes[is_death]]

    z = None
    C = len(config.covariates)
    if covariate_means is None:
        if config.center_covariates and C:
            covariate_means = df[config.covariates].mean().to_numpy(dtype=float)
        else:
            covariate_means = np.zeros(C)
    covariate_means = np.asarray(covariate_means, dtype=float)
    if C:
        z_arr = np.zeros((N, K, C))
        z_arr[subject_codes, position] = df[config.covariates].to_numpy(dtype=float) - covariate_means
        z = torch.as_tensor(z_arr, dtype=DTYPE)

    design = PanelDesign(
        time=torch.as_tensor(time_arr, dtype=DTYPE),
        observed=torch.as_tensor(observed),
        emission=torch.as_tensor(emission, dtype=DTYPE),
        exact_death=torch.as_tensor(exact_death),
        death_index=torch.as_tensor(death_index),
        z=z,
        subjects=np.asarray(subjects),
    )
    return design, covariate_means


def _covariance(model: MultiStateModel, design: PanelDesign, theta_hat: torch.Tensor) -> Optional[np.ndarray]:
    """Inverse observed information, or ``None`` when it is not positive definite."""
    likelihood = PanelLikelihood()
    H = torch.autograd.functional.hessian(lambda th: -likelihood(model, design, th), theta_hat)
    H = 0.5 * (H + H.T)
    if not bool(torch.isfinite(H).all()):
        warnings.warn("Hessian contains non-finite values; standard errors unavailable", HessianWarning)
        return None
    eigvals = torch.linalg.eigvalsh(H)
    if eigvals.min().item() <= 1e-10 * max(1.0, eigvals.abs().max().item()):
        warnings.warn(
            f"Hessian is not positive definite (smallest eigenvalue {eigvals.min().item():.3e}); "
            "standard errors unavailable",
            HessianWarning,
        )
        return None
    return torch.linalg.inv(H).numpy()


def fit_model(
    model: MultiStateModel,
    design: PanelDesign,
    optim_config: Optional[OptimConfig] = None,
) -> Dict[str, Any]:
    """Maximise the likelihood in place, starting from the model's current parameters.

    Returns
    -------
    Dict[str, Any]
        ``loglik``, ``converged``, ``message``, ``n_iter`` and ``covariance``
    """
    if optim_config is None:
        optim_config = OptimConfig()
    likelihood = PanelLikelihood()
    method = optim_config.method

    def minus2ll(x: np.ndarray, with_grad: bool):
        theta = torch.tensor(x, dtype=DTYPE, requires_grad=with_grad)
        value = -2.0 * likelihood(model, design, theta)
        if not with_grad:
            return value.item(), None
        if value.requires_grad:
            (grad,) = torch.autograd.grad(value, theta)
        else:
            grad = torch.zeros_like(theta)
        return value.item(), grad.numpy()

    x0 = model.theta.detach().numpy().copy()
    scale = optim_config.fnscale
    if scale is None:
        start_value, _ = minus2ll(x0, with_grad=False)
        scale = abs(start_value) if np.isfinite(start_value) and start_value != 0 else 1.0

    if method.upper() in GRADIENT_FREE_METHODS:
        def objective(x):
            return minus2ll(x, with_grad=False)[0] / scale
        jac = None
    else:
        def objective(x):
            value, grad = minus2ll(x, with_grad=True)
            return value / scale, grad / scale
        jac = True

    options = {"maxiter": optim_config.maxiter}
    if method.upper() in GTOL_METHODS:
        options["gtol"] = optim_config.gtol
    options.update(optim_config.options)

    started = time.monotonic()
    n_iter = 0

    def callback(xk):
        nonlocal n_iter
        n_iter += 1
        if optim_config.timeout is not None and time.monotonic() - started > optim_config.timeout:
            raise StopIteration

    logger.info("Fitting %d parameters with %s (fnscale=%.4g)", model.n_params, method, scale)
    result = minimize(objective, x0, jac=jac, method=method, callback=callback, options=options)
    n_iter = int(getattr(result, "nit", n_iter))

    theta_hat = torch.as_tensor(result.x, dtype=DTYPE)
    with torch.no_grad():
        model.theta.copy_(theta_hat)
        loglik = likelihood(model, design).item()

    converged = bool(result.success)
    message = str(result.message)
    if not converged:
        warnings.warn(f"Optimisation did not converge after {n_iter} iterations: {message}", ConvergenceWarning)

    covariance = None
    if optim_config.compute_hessian:
        covariance = _covariance(model, design, theta_hat)

    logger.info("Finished after %d iterations: -2LL=%.4f, converged=%s", n_iter, -2.0 * loglik, converged)
    return {
        "loglik": loglik,
        "converged": converged,
        "message": message,
        "n_iter": n_iter,
        "covariance": covariance,
    }


def fit(
    data: PanelData,
    model_config: ModelConfig,
    optim_config: Optional[OptimConfig] = None,
    initial_theta: Optional[np.ndarray] = None,
    covariate_means: Optional[Sequence[float]] = None,
) -> FittedMultiStateModel:
    """Fit a multi-state Markov model to panel data by maximum likelihood.

    Structural problems (covariate columns absent, observed transitions the
    transition structure cannot produce) raise before any optimisation.
    Non-convergence and a singular Hessian only warn; the fitted model records
    them in ``converged`` and ``covariance``.

    Parameters
    ----------
    data : PanelData
        Cleaned panel data
    model_config : ModelConfig
        Model configuration
    optim_config : Optional[OptimConfig]
        Optimiser configuration, defaults to BFGS
    initial_theta : Optional[np.ndarray]
        Full starting parameter vector, overriding the initial intensities
    covariate_means : Optional[Sequence[float]]
        Centring values to reuse instead of the data means

    Returns
    -------
    FittedMultiStateModel
        Fitted model
    """
    if optim_config is None:
        optim_config = OptimConfig()

    qmask = build_qmask(data.states, model_config.state_transitions)
    _validate_config(data, model_config, qmask)
    check_connectivity(data, qmask)

    design, means = prepare_data(data, model_config, covariate_means)

    if model_config.initial_q is not None:
        initial_q = np.asarray(model_config.initial_q, dtype=float)
    elif initial_theta is None:
        initial_q = crude_intensities(data, qmask, fallback=model_config.init_fallback)
    else:
        initial_q = None

    model = MultiStateModel(
        states=data.states,
        qmask=qmask,
        covariates=model_config.covariates,
        breakpoints=model_config.breakpoints,
        initial_q=initial_q,
        covariate_means=means,
    )
    if initial_theta is not None:
        initial_theta = np.asarray(initial_theta, dtype=float)
        if initial_theta.shape != (model.n_params,):
            raise ValueError(f"initial_theta must have {model.n_params} entries, got {initial_theta.shape}")
        with torch.no_grad():
            model.theta.copy_(torch.as_tensor(initial_theta, dtype=DTYPE))

    result = fit_model(model, design, optim_config)
    return FittedMultiStateModel(
        model=model,
        n_obs=design.n_obs,
        n_subjects=design.n_subjects,
        data_signature=data.signature(),
        config=model_config,
        optim_config=optim_config,
        data=data,
        **result,
    )


def fit_many(
    data: PanelData,
    configs: Dict[str, ModelConfig],
    optim_config: Optional[OptimConfig] = None,
    n_jobs: int = 1,
) -> Dict[str, FittedMultiStateModel]:
    """Fit several model variants to the same data.

    Fits are independent; with ``n_jobs > 1`` they run in separate processes.

    Returns
    -------
    Dict[str, FittedMultiStateModel]
        Fitted models keyed like ``configs``
    """
    if n_jobs <= 1:
        return {
            name: fit(data, config, optim_config)
            for name, config in tqdm(configs.items(), desc="Fitting models")
        }
    with ProcessPoolExecutor(max_workers=n_jobs) as pool:
        futures = {name: pool.submit(fit, data, config, optim_config) for name, config in configs.items()}
        return {name: future.result() for name, future in tqdm(futures.items(), desc="Fitting models")}
