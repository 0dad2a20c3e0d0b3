"""Simulation of continuous-time multi-state processes and panel observations."""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..qmatrix import validate_intensity_matrix

__all__ = [
    "generate_censoring_times",
    "covariate_intensity_matrix",
    "simulate_ctmc_path",
    "simulate_panel_data",
]


def generate_censoring_times(
    n_samples: int,
    censoring_rate: float = 0.3,
    max_time: float = 10.0,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Generate random drop-out times.

    Parameters
    ----------
    n_samples : int
        Number of samples to generate
    censoring_rate : float, optional
        Target proportion of subjects dropping out before ``max_time`` (0-1)
    max_time : float, optional
        End of administrative follow-up
    rng : Optional[np.random.Generator], optional
        Random generator

    Returns
    -------
    np.ndarray
        Array of censoring times (infinite when ``censoring_rate`` is 0)
    """
    if rng is None:
        rng = np.random.default_rng()
    if censoring_rate <= 0:
        return np.full(n_samples, np.inf)
    if censoring_rate >= 1:
        raise ValueError(f"censoring_rate must be below 1, got {censoring_rate}")
    # Exponential drop-out with P(C < max_time) = censoring_rate
    rate = -np.log(1 - censoring_rate) / max_time
    return rng.exponential(scale=1 / rate, size=n_samples)


def covariate_intensity_matrix(
    Q: np.ndarray,
    log_hazard_ratios: Optional[Dict[str, np.ndarray]] = None,
    covariates: Optional[Dict[str, float]] = None,
) -> np.ndarray:
    """Scale the off-diagonal intensities of ``Q`` by ``exp(sum_c beta_c * x_c)``."""
    Q = np.asarray(Q, dtype=float)
    off = Q - np.diag(np.diag(Q))
    if log_hazard_ratios and covariates:
        linear = np.zeros_like(Q)
        for name, beta in log_hazard_ratios.items():
            linear += np.asarray(beta, dtype=float) * covariates[name]
        off = off * np.exp(linear)
    np.fill_diagonal(off, -off.sum(axis=1))
    return off


def simulate_ctmc_path(
    Q: np.ndarray,
    start_state: int,
    max_time: float,
    rng: np.random.Generator,
    start_time: float = 0.0,
) -> Tuple[List[float], List[int]]:
    """Simulate one realisation of a continuous-time Markov chain.

    Parameters
    ----------
    Q : np.ndarray
        Intensity matrix
    start_state : int
        Index of the initial state
    max_time : float
        Time at which the simulation stops
    rng : np.random.Generator
        Random generator
    start_time : float, optional
        Time of the initial state

    Returns
    -------
    Tuple[List[float], List[int]]
        Jump times (starting with ``start_time``) and state indices entered at them
    """
    times = [start_time]
    states = [start_state]
    current_state = start_state
    current_time = start_time
    while current_time < max_time:
        rate_row = Q[current_state].copy()
        rate_row[current_state] = 0.0
        total_rate = rate_row.sum()
        if total_rate <= 0:
            break
        current_time = current_time + rng.exponential(scale=1.0 / total_rate)
        if current_time > max_time:
            break
        current_state = int(rng.choice(len(rate_row), p=rate_row / total_rate))
        times.append(current_time)
        states.append(current_state)
    return times, states


def _state_at(times: Sequence[float], states: Sequence[int], t: float) -> int:
    idx = np.searchsorted(times, t, side="right") - 1
    return states[idx]


def simulate_panel_data(
    Q: np.ndarray,
    states: Sequence[int],
    n_subjects: int,
    max_time: float,
    obs_interval: float = 1.0,
    jitter: float = 0.0,
    start_state: Optional[int] = None,
    covariates: Optional[Dict[str, np.ndarray]] = None,
    log_hazard_ratios: Optional[Dict[str, np.ndarray]] = None,
    censoring_rate: float = 0.0,
    censor_code: Optional[int] = None,
    exact_death: bool = False,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Simulate a cohort observed at scheduled visits.

    Each subject follows a continuous-time Markov chain from ``start_state`` and
    is examined every ``obs_interval`` time units until ``max_time`` or an
    independent drop-out time. Once an absorbing state is entered the subject
    is recorded there once, at the next visit or, with ``exact_death``, at the
    exact entry time, and then leaves the study.

    Parameters
    ----------
    Q : np.ndarray
        Baseline intensity matrix
    states : Sequence[int]
        State codes in matrix order
    n_subjects : int
        Number of subjects
    max_time : float
        End of follow-up
    obs_interval : float, optional
        Time between scheduled visits
    jitter : float, optional
        Visits after the first move uniformly by up to ``jitter * obs_interval``
        (must be below 0.5)
    start_state : Optional[int], optional
        Initial state code, defaults to the first state
    covariates : Optional[Dict[str, np.ndarray]], optional
        Subject-level covariate values, one array of length ``n_subjects`` each
    log_hazard_ratios : Optional[Dict[str, np.ndarray]], optional
        Per-covariate matrices of log hazard ratios for each transition
    censoring_rate : float, optional
        Target proportion of subjects dropping out before ``max_time``
    censor_code : Optional[int], optional
        When given, a subject still alive when follow-up ends gets a final
        observation with this code at the end time
    exact_death : bool, optional
        Record entry into absorbing states at the exact time
    seed : Optional[int], optional
        Random seed for reproducibility

    Returns
    -------
    pd.DataFrame
        Columns ``id``, ``time``, ``state`` and one column per covariate
    """
    Q = np.asarray(Q, dtype=float)
    validate_intensity_matrix(Q)
    if not 0 <= jitter < 0.5:
        raise ValueError(f"jitter must be in [0, 0.5), got {jitter}")
    rng = np.random.default_rng(seed)
    states = list(states)
    start_idx = 0 if start_state is None else states.index(start_state)
    absorbing = {i for i in range(len(states)) if np.all(np.delete(Q[i], i) == 0)}
    covariates = covariates or {}
    for name, values in covariates.items():
        if len(values) != n_subjects:
            raise ValueError(f"Covariate {name} has {len(values)} values, expected {n_subjects}")

    schedule = np.arange(0.0, max_time + 1e-9, obs_interval)
    dropout = generate_censoring_times(n_subjects, censoring_rate, max_time, rng)

    records = []
    for subject in range(n_subjects):
        x = {name: float(values[subject]) for name, values in covariates.items()}
        Q_i = covariate_intensity_matrix(Q, log_hazard_ratios, x)
        end = min(max_time, dropout[subject])

        visits = schedule.copy()
        if jitter > 0 and len(visits) > 1:
            visits[1:] += rng.uniform(-jitter, jitter, size=len(visits) - 1) * obs_interval
        visits = visits[visits <= end]

        times, path = simulate_ctmc_path(Q_i, start_idx, end, rng)
        absorbed_at = next((t for t, s in zip(times, path) if s in absorbing and t > 0), None)

        obs: List[Tuple[float, int]] = []
        for t in visits:
            if absorbed_at is not None and t >= absorbed_at:
                if exact_death:
                    obs.append((absorbed_at, states[path[-1]]))
                else:
                    obs.append((float(t), states[path[-1]]))
                break
            obs.append((float(t), states[_state_at(times, path, t)]))
        else:
            if absorbed_at is not None:
                # Absorbed after the last visit: only seen when the time is known exactly
                if exact_death:
                    obs.append((absorbed_at, states[path[-1]]))
            elif censor_code is not None and end > obs[-1][0]:
                obs.append((float(end), censor_code))

        for t, s in obs:
            rec = {"id": subject, "time": t, "state": s}
            rec.update(x)
            records.append(rec)

    return pd.DataFrame(records, columns=["id", "time", "state"] + list(covariates))
