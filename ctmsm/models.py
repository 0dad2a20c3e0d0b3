"""Core continuous-time multi-state model definitions."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import torch
import torch.nn as nn
from scipy import stats

from .qmatrix import absorbing_states, qmask_to_transitions, transition_indices, validate_intensity_matrix

__all__ = [
    "DTYPE",
    "MultiStateModel",
    "FittedMultiStateModel",
]

DTYPE = torch.float64


def _as_tensor(value: Union[float, Sequence[float], np.ndarray, torch.Tensor]) -> torch.Tensor:
    return torch.as_tensor(value, dtype=DTYPE)


class MultiStateModel(nn.Module):
    """Continuous-time Markov multi-state model with proportional intensities.

    Off-diagonal intensities take the form
    ``q_rs(z, p) = exp(log_q_rs + beta_rs . z + gamma_{p,rs})`` for centred
    covariates ``z`` and time period ``p`` (``gamma_0 = 0``). All free
    parameters live in one flat vector ``theta`` so that the likelihood,
    its gradient and its Hessian are functions of a single tensor.

    Parameters
    ----------
    states : Sequence[int]
        State codes in matrix order
    qmask : np.ndarray
        Boolean mask of allowed direct transitions
    covariates : Optional[Sequence[str]]
        Names of covariates acting on every allowed transition
    breakpoints : Optional[Sequence[float]]
        Times at which piecewise-constant intensities change
    initial_q : Optional[np.ndarray]
        Starting intensity matrix; allowed entries must be positive
    covariate_means : Optional[Sequence[float]]
        Values subtracted from raw covariates before they enter the model
    """

    def __init__(
        self,
        states: Sequence[int],
        qmask: np.ndarray,
        covariates: Optional[Sequence[str]] = None,
        breakpoints: Optional[Sequence[float]] = None,
        initial_q: Optional[np.ndarray] = None,
        covariate_means: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__()
        self.states = [int(s) for s in states]
        self.num_states = len(self.states)
        self.qmask = np.array(qmask, dtype=bool)
        if self.qmask.shape != (self.num_states, self.num_states):
            raise ValueError(f"Mask shape {self.qmask.shape} does not match {self.num_states} states")
        np.fill_diagonal(self.qmask, False)
        self.covariates = list(covariates or [])
        self.breakpoints = [float(b) for b in (breakpoints or [])]
        if any(b2 <= b1 for b1, b2 in zip(self.breakpoints, self.breakpoints[1:])):
            raise ValueError(f"Breakpoints must be strictly increasing, got {self.breakpoints}")

        rows, cols = transition_indices(self.qmask)
        self.n_transitions = len(rows)
        self.n_covariates = len(self.covariates)
        self.n_periods = len(self.breakpoints) + 1
        self.register_buffer("_flat_index", torch.as_tensor(rows * self.num_states + cols, dtype=torch.long))
        self.register_buffer("_breakpoints", _as_tensor(self.breakpoints))

        if covariate_means is None:
            covariate_means = np.zeros(self.n_covariates)
        if len(covariate_means) != self.n_covariates:
            raise ValueError(f"Expected {self.n_covariates} covariate means, got {len(covariate_means)}")
        self.register_buffer("covariate_means", _as_tensor(np.asarray(covariate_means, dtype=float)))

        if initial_q is None:
            initial_q = np.where(self.qmask, 0.1, 0.0)
            np.fill_diagonal(initial_q, -initial_q.sum(axis=1))
        initial_q = np.asarray(initial_q, dtype=float)
        validate_intensity_matrix(initial_q, self.qmask)
        if np.any(initial_q[rows, cols] <= 0):
            raise ValueError("Initial intensities must be positive for every allowed transition")

        theta = np.concatenate([
            np.log(initial_q[rows, cols]),
            np.zeros(self.n_covariates * self.n_transitions),
            np.zeros((self.n_periods - 1) * self.n_transitions),
        ])
        self.theta = nn.Parameter(_as_tensor(theta))

    @property
    def n_params(self) -> int:
        return int(self.theta.numel())

    @property
    def state_transitions(self) -> Dict[int, List[int]]:
        return qmask_to_transitions(self.states, self.qmask)

    @property
    def absorbing_states(self) -> List[int]:
        return absorbing_states(self.states, self.qmask)

    def transition_labels(self) -> List[str]:
        rows, cols = transition_indices(self.qmask)
        return [f"{self.states[i]}-{self.states[j]}" for i, j in zip(rows, cols)]

    def period_labels(self) -> List[str]:
        bounds = [-np.inf] + self.breakpoints + [np.inf]
        return [f"[{lo:g},{hi:g})" for lo, hi in zip(bounds[:-1], bounds[1:])]

    @property
    def parameter_names(self) -> List[str]:
        trans = self.transition_labels()
        names = [f"log(q[{t}])" for t in trans]
        for cov in self.covariates:
            names.extend(f"{cov}[{t}]" for t in trans)
        for period in self.period_labels()[1:]:
            names.extend(f"period{period}[{t}]" for t in trans)
        return names

    def unpack(self, theta: Optional[torch.Tensor] = None):
        """Split ``theta`` into log baseline intensities, covariate effects and period effects."""
        theta = self.theta if theta is None else theta
        T, C, P = self.n_transitions, self.n_covariates, self.n_periods
        log_q = theta[:T]
        beta = theta[T:T + C * T].reshape(C, T)
        gamma = theta[T + C * T:].reshape(P - 1, T)
        return log_q, beta, gamma

    def _rates(
        self,
        theta: Optional[torch.Tensor] = None,
        z: Optional[torch.Tensor] = None,
        period: Union[int, torch.Tensor] = 0,
    ) -> torch.Tensor:
        log_q, beta, gamma = self.unpack(theta)
        log_rate = log_q
        if z is not None and self.n_covariates:
            log_rate = log_rate + z @ beta
        if self.n_periods > 1:
            gamma_full = torch.cat([torch.zeros_like(gamma[:1]), gamma], dim=0)
            log_rate = log_rate + gamma_full[period]
        return torch.exp(log_rate)

    def _assemble(self, rates: torch.Tensor) -> torch.Tensor:
        S = self.num_states
        flat = torch.zeros(rates.shape[:-1] + (S * S,), dtype=rates.dtype, device=rates.device)
        A = flat.index_add(-1, self._flat_index, rates).reshape(rates.shape[:-1] + (S, S))
        # Diagonal makes every row sum to zero
        return A + torch.diag_embed(-A.sum(dim=-1))

    def intensity_matrix(
        self,
        z: Optional[torch.Tensor] = None,
        period: Union[int, torch.Tensor] = 0,
        theta: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Intensity matrix for centred covariates ``z`` in time period ``period``.

        Parameters
        ----------
        z : Optional[torch.Tensor]
            Centred covariates, shape [n_covariates] or [batch_size, n_covariates]
        period : Union[int, torch.Tensor]
            Period index, scalar or shape [batch_size]
        theta : Optional[torch.Tensor]
            Parameter vector, defaults to the model's own

        Returns
        -------
        torch.Tensor
            Intensity matrix, shape [num_states, num_states] or
            [batch_size, num_states, num_states]
        """
        return self._assemble(self._rates(theta, z, period))

    def period_of(self, t: torch.Tensor, right: bool = True) -> torch.Tensor:
        """Index of the period containing ``t``.

        With ``right=False`` a time equal to a breakpoint belongs to the earlier
        period, which is the intensity in force just before ``t``.
        """
        t = _as_tensor(t)
        if self.n_periods == 1:
            return torch.zeros(t.shape, dtype=torch.long)
        return torch.searchsorted(self._breakpoints, t.contiguous(), right=right)

    def interval_matrices(
        self,
        time_start: torch.Tensor,
        time_end: torch.Tensor,
        z: Optional[torch.Tensor] = None,
        theta: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Transition probability matrices for a batch of intervals.

        Within a period ``P = expm(Q * dt)``; an interval spanning several periods
        multiplies the matrices of the pieces in time order.

        Returns
        -------
        torch.Tensor
            Shape [batch_size, num_states, num_states]
        """
        time_start = _as_tensor(time_start)
        time_end = _as_tensor(time_end)
        if self.n_periods == 1:
            Q = self.intensity_matrix(z, 0, theta)
            dt = (time_end - time_start).reshape(-1, 1, 1)
            return torch.linalg.matrix_exp(Q * dt)

        bounds = [-np.inf] + self.breakpoints + [np.inf]
        n = time_start.shape[0]
        P = torch.eye(self.num_states, dtype=DTYPE).expand(n, -1, -1)
        for p in range(self.n_periods):
            lo = torch.full_like(time_start, bounds[p])
            hi = torch.full_like(time_end, bounds[p + 1])
            overlap = torch.clamp(torch.minimum(time_end, hi) - torch.maximum(time_start, lo), min=0.0)
            if not bool((overlap > 0).any()):
                continue
            Q = self.intensity_matrix(z, p, theta)
            P = P @ torch.linalg.matrix_exp(Q * overlap.reshape(-1, 1, 1))
        return P

    def transition_matrix(
        self,
        t: float,
        t_start: float = 0.0,
        z: Optional[torch.Tensor] = None,
        theta: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Transition probability matrix ``P(t_start, t_start + t)``."""
        if t < 0:
            raise ValueError(f"Time horizon must be non-negative, got {t}")
        z_batch = None if z is None else _as_tensor(z).reshape(1, -1)
        P = self.interval_matrices(
            _as_tensor([t_start]), _as_tensor([t_start + t]), z_batch, theta,
        )
        return P[0]

    def forward(
        self,
        time_start: torch.Tensor,
        time_end: torch.Tensor,
        z: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        return self.interval_matrices(time_start, time_end, z)


class FittedMultiStateModel:
    """Result of fitting a :class:`MultiStateModel` by maximum likelihood.

    Holds the estimates, their covariance (``None`` when the Hessian was not
    positive definite), the maximised log-likelihood and convergence
    information. The panel data are kept for resampling and prevalence
    calculations but are never modified.
    """

    def __init__(
        self,
        model: MultiStateModel,
        loglik: float,
        converged: bool,
        message: str,
        n_iter: int,
        covariance: Optional[np.ndarray],
        n_obs: int,
        n_subjects: int,
        data_signature: str,
        config: Any = None,
        optim_config: Any = None,
        data: Any = None,
    ) -> None:
        self.model = model
        self.loglik = float(loglik)
        self.converged = bool(converged)
        self.message = message
        self.n_iter = int(n_iter)
        self.covariance = covariance
        self.n_obs = int(n_obs)
        self.n_subjects = int(n_subjects)
        self.data_signature = data_signature
        self.config = config
        self.optim_config = optim_config
        self.data = data

    @property
    def states(self) -> List[int]:
        return self.model.states

    @property
    def covariates(self) -> List[str]:
        return self.model.covariates

    @property
    def estimates(self) -> np.ndarray:
        return self.model.theta.detach().cpu().numpy().copy()

    @property
    def std_errors(self) -> Optional[np.ndarray]:
        if self.covariance is None:
            return None
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    @property
    def parameter_names(self) -> List[str]:
        return self.model.parameter_names

    @property
    def n_params(self) -> int:
        return self.model.n_params

    @property
    def minus2loglik(self) -> float:
        return -2.0 * self.loglik

    @property
    def aic(self) -> float:
        return self.minus2loglik + 2.0 * self.n_params

    @property
    def hessian_ok(self) -> bool:
        return self.covariance is not None

    @property
    def params(self) -> pd.DataFrame:
        """Parameter table with estimates and standard errors."""
        trans = self.model.transition_labels()
        rows = []
        for t in trans:
            rows.append(("log_intensity", "baseline", t))
        for cov in self.covariates:
            rows.extend(("covariate", cov, t) for t in trans)
        for period in self.model.period_labels()[1:]:
            rows.extend(("period", period, t) for t in trans)
        se = self.std_errors
        return pd.DataFrame({
            "name": self.parameter_names,
            "kind": [r[0] for r in rows],
            "term": [r[1] for r in rows],
            "transition": [r[2] for r in rows],
            "estimate": self.estimates,
            "se": se if se is not None else np.full(self.n_params, np.nan),
        })

    def covariate_vector(self, covariates: Optional[Dict[str, float]] = None) -> Optional[torch.Tensor]:
        """Centred covariate tensor for raw values; omitted covariates take their centring value."""
        if not self.covariates:
            if covariates:
                raise ValueError("Model has no covariates")
            return None
        covariates = covariates or {}
        unknown = set(covariates) - set(self.covariates)
        if unknown:
            raise ValueError(f"Unknown covariates: {sorted(unknown)}")
        means = self.model.covariate_means
        raw = torch.stack([
            _as_tensor(covariates[c]) if c in covariates else means[i]
            for i, c in enumerate(self.covariates)
        ])
        return raw - means

    def _labelled(self, matrix: np.ndarray) -> pd.DataFrame:
        return pd.DataFrame(matrix, index=pd.Index(self.states, name="from"),
                            columns=pd.Index(self.states, name="to"))

    def qmatrix(
        self,
        covariates: Optional[Dict[str, float]] = None,
        period: int = 0,
    ) -> pd.DataFrame:
        """Estimated intensity matrix, labelled by state codes."""
        if not 0 <= period < self.model.n_periods:
            raise ValueError(f"Period must be in [0, {self.model.n_periods}), got {period}")
        with torch.no_grad():
            Q = self.model.intensity_matrix(self.covariate_vector(covariates), period)
        return self._labelled(Q.cpu().numpy())

    def pmatrix(
        self,
        t: float,
        t_start: float = 0.0,
        covariates: Optional[Dict[str, float]] = None,
    ) -> pd.DataFrame:
        """Estimated transition probability matrix over ``[t_start, t_start + t]``."""
        with torch.no_grad():
            P = self.model.transition_matrix(t, t_start, self.covariate_vector(covariates))
        return self._labelled(P.cpu().numpy())

    def summary(self, print_fn=print, cl: float = 0.95) -> Dict[str, Any]:
        """Print and return a summary of the fit.

        Intensities are shown at the centring covariate values with confidence
        limits from the standard errors of the log-intensities; covariate and
        period effects are shown as hazard ratios.

        Parameters
        ----------
        print_fn : callable
            Function used for printing the summary (default: print)
        cl : float
            Confidence level for the intervals

        Returns
        -------
        Dict[str, Any]
            Dictionary containing model summary information
        """
        title = "==== Multi-state Markov model ===="
        print_fn(title)
        print_fn(f"States: {self.states}")
        for from_state, to_states in self.model.state_transitions.items():
            if to_states:
                print_fn(f"  State {from_state} → States {to_states}")
            else:
                print_fn(f"  State {from_state} (absorbing state)")
        print_fn(f"Subjects: {self.n_subjects}, observations: {self.n_obs}")
        print_fn(f"-2 log-likelihood: {self.minus2loglik:.3f}, AIC: {self.aic:.3f}")
        print_fn(f"Converged: {self.converged} ({self.message}) after {self.n_iter} iterations")
        if not self.hessian_ok:
            print_fn("Hessian not positive definite: confidence intervals unavailable")

        z = stats.norm.ppf(0.5 + cl / 2)
        params = self.params
        params["lower"] = params["estimate"] - z * params["se"]
        params["upper"] = params["estimate"] + z * params["se"]

        baseline = params[params["kind"] == "log_intensity"]
        print_fn(f"\nTransition intensities ({cl:.0%} CI):")
        for _, row in baseline.iterrows():
            print_fn(f"  {row['transition']}: {np.exp(row['estimate']):.4f} "
                     f"({np.exp(row['lower']):.4f}, {np.exp(row['upper']):.4f})")

        effects = params[params["kind"] != "log_intensity"]
        if len(effects):
            print_fn(f"\nHazard ratios ({cl:.0%} CI):")
            for _, row in effects.iterrows():
                print_fn(f"  {row['term']} {row['transition']}: {np.exp(row['estimate']):.4f} "
                         f"({np.exp(row['lower']):.4f}, {np.exp(row['upper']):.4f})")
        print_fn("=" * len(title))

        return {
            "states": list(self.states),
            "state_transitions": self.model.state_transitions,
            "covariates": list(self.covariates),
            "breakpoints": list(self.model.breakpoints),
            "n_subjects": self.n_subjects,
            "n_obs": self.n_obs,
            "loglik": self.loglik,
            "minus2loglik": self.minus2loglik,
            "aic": self.aic,
            "n_params": self.n_params,
            "converged": self.converged,
            "hessian_ok": self.hessian_ok,
        }

    def save(self, directory: str, filename: str = "model") -> str:
        """Save the fitted model to disk.

        The configuration and fit statistics go to a JSON file and the tensors
        (estimates, covariance) to a torch file. The panel data are not saved.

        Returns
        -------
        str
            Path to the tensor file
        """
        os.makedirs(directory, exist_ok=True)

        config = {
            "model_type": self.__class__.__name__,
            "states": self.states,
            "state_transitions": {str(k): v for k, v in self.model.state_transitions.items()},
            "covariates": self.covariates,
            "breakpoints": self.model.breakpoints,
            "loglik": self.loglik,
            "converged": self.converged,
            "message": self.message,
            "n_iter": self.n_iter,
            "n_obs": self.n_obs,
            "n_subjects": self.n_subjects,
            "data_signature": self.data_signature,
        }
        if self.config is not None:
            config["exact_death_states"] = list(self.config.exact_death_states)
            config["center_covariates"] = bool(self.config.center_covariates)

        config_path = os.path.join(directory, f"{filename}_config.json")
        with open(config_path, "w") as f:
            json.dump(config, f, indent=2)

        state_dict_path = os.path.join(directory, f"{filename}_state_dict.pt")
        torch.save({
            "model": self.model.state_dict(),
            "covariance": None if self.covariance is None else torch.as_tensor(self.covariance),
        }, state_dict_path)
        return state_dict_path

    @classmethod
    def load(cls, directory: str, filename: str = "model") -> "FittedMultiStateModel":
        """Load a fitted model saved with :meth:`save`.

        Raises
        ------
        FileNotFoundError
            If the configuration file is not found
        ValueError
            If the saved object is of a different type
        """
        config_path = os.path.join(directory, f"{filename}_config.json")
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Model configuration file not found at {config_path}")
        with open(config_path, "r") as f:
            config = json.load(f)
        if config["model_type"] != cls.__name__:
            raise ValueError(f"Saved model is of type {config['model_type']}, not {cls.__name__}")

        from .estimation import ModelConfig
        from .qmatrix import build_qmask

        state_transitions = {int(k): v for k, v in config["state_transitions"].items()}
        qmask = build_qmask(config["states"], state_transitions)
        model = MultiStateModel(
            states=config["states"],
            qmask=qmask,
            covariates=config["covariates"],
            breakpoints=config["breakpoints"],
        )
        saved = torch.load(os.path.join(directory, f"{filename}_state_dict.pt"), map_location="cpu")
        model.load_state_dict(saved["model"])
        covariance = saved["covariance"]

        model_config = ModelConfig(
            state_transitions=state_transitions,
            covariates=config["covariates"],
            breakpoints=config["breakpoints"] or None,
            exact_death_states=config.get("exact_death_states"),
            center_covariates=config.get("center_covariates", True),
        )
        return cls(
            model=model,
            loglik=config["loglik"],
            converged=config["converged"],
            message=config["message"],
            n_iter=config["n_iter"],
            covariance=None if covariance is None else covariance.numpy(),
            n_obs=config["n_obs"],
            n_subjects=config["n_subjects"],
            data_signature=config["data_signature"],
            config=model_config,
        )

    def __repr__(self) -> str:
        return (f"FittedMultiStateModel(states={self.states}, covariates={self.covariates}, "
                f"n_params={self.n_params}, loglik={self.loglik:.3f}, converged={self.converged})")
