"""Observed and expected prevalence and survival."""

from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import torch
from lifelines import KaplanMeierFitter

from ..data import PanelData
from ..models import DTYPE, FittedMultiStateModel

__all__ = [
    "prevalence",
    "empirical_survival",
    "expected_survival",
]

PREVALENCE_COLUMNS = [
    "time", "state", "n_at_risk", "observed_n", "observed_pct", "expected_n", "expected_pct",
]


def prevalence(
    fitted: FittedMultiStateModel,
    times: Sequence[float],
    data: Optional[PanelData] = None,
) -> pd.DataFrame:
    """Observed and expected numbers of subjects in each state over time.

    A subject counts at time ``t`` in the last state it was observed in at or
    before ``t``. It stays in the risk set until its last observation, or
    indefinitely once it has been seen in an absorbing state. Censoring codes
    do not fix a state and are skipped.

    The expected numbers propagate each at-risk subject from its first
    observed state, with its first recorded covariates, through the fitted
    transition probabilities.

    Parameters
    ----------
    fitted : FittedMultiStateModel
        Fitted model
    times : Sequence[float]
        Times at which to tabulate
    data : Optional[PanelData]
        Panel data, defaults to the data the model was fitted to

    Returns
    -------
    pd.DataFrame
        One row per time and state with columns ``time``, ``state``,
        ``n_at_risk``, ``observed_n``, ``observed_pct``, ``expected_n``,
        ``expected_pct``
    """
    data = fitted.data if data is None else data
    if data is None:
        raise ValueError("No panel data available; pass data explicitly for a loaded model")

    model = fitted.model
    states = fitted.states
    index = data.state_index
    absorbing = set(model.absorbing_states)

    df = data.df
    exact = df.loc[~df["state"].isin(list(data.censoring))]
    last_time = df.groupby("subject", sort=False)["time"].max()
    first = exact.groupby("subject", sort=False).first()

    rows = []
    for t in times:
        t = float(t)
        seen = exact.loc[exact["time"] <= t].groupby("subject", sort=False).last()
        at_risk = (last_time.reindex(seen.index) >= t) | seen["state"].isin(absorbing)
        current = seen.loc[at_risk, "state"]
        n_at_risk = len(current)
        observed = current.value_counts().reindex(states, fill_value=0).to_numpy(dtype=float)

        expected = np.zeros(len(states))
        if n_at_risk:
            start = first.loc[current.index]
            t0 = torch.as_tensor(start["time"].to_numpy(dtype=float), dtype=DTYPE)
            t1 = torch.full_like(t0, t)
            z = None
            if model.covariates:
                raw = torch.as_tensor(start[model.covariates].to_numpy(dtype=float), dtype=DTYPE)
                z = raw - model.covariate_means
            with torch.no_grad():
                P = model.interval_matrices(t0, t1, z)
            from_idx = torch.as_tensor(start["state"].map(index).to_numpy(), dtype=torch.long)
            expected = P[torch.arange(n_at_risk), from_idx].sum(dim=0).numpy()

        denom = max(n_at_risk, 1)
        for j, s in enumerate(states):
            rows.append({
                "time": t,
                "state": s,
                "n_at_risk": n_at_risk,
                "observed_n": observed[j],
                "observed_pct": 100.0 * observed[j] / denom,
                "expected_n": expected[j],
                "expected_pct": 100.0 * expected[j] / denom,
            })
    return pd.DataFrame(rows, columns=PREVALENCE_COLUMNS)


def empirical_survival(data: PanelData, absorbing_state: int, cl: float = 0.95) -> pd.DataFrame:
    """Kaplan-Meier estimate of the time to first observation in ``absorbing_state``.

    Time is measured from each subject's first observation. Subjects never
    seen in the absorbing state are censored at their last observation.

    Returns
    -------
    pd.DataFrame
        Columns ``time``, ``n_at_risk``, ``n_events``, ``survival``, ``lower``, ``upper``
    """
    if absorbing_state not in data.states:
        raise ValueError(f"Unknown state {absorbing_state}")
    df = data.df
    grouped = df.groupby("subject", sort=False)["time"]
    start = grouped.min()
    end = grouped.max()
    event_time = df.loc[df["state"] == absorbing_state].groupby("subject", sort=False)["time"].min()

    observed = start.index.isin(event_time.index)
    durations = np.where(observed, event_time.reindex(start.index).to_numpy(), end.to_numpy()) - start.to_numpy()

    kmf = KaplanMeierFitter(alpha=1 - cl)
    kmf.fit(durations, event_observed=observed)
    timeline = kmf.survival_function_.index
    events = kmf.event_table.reindex(timeline)
    return pd.DataFrame({
        "time": timeline.to_numpy(dtype=float),
        "n_at_risk": events["at_risk"].to_numpy(),
        "n_events": events["observed"].to_numpy(),
        "survival": kmf.survival_function_.iloc[:, 0].to_numpy(),
        "lower": kmf.confidence_interval_.iloc[:, 0].to_numpy(),
        "upper": kmf.confidence_interval_.iloc[:, 1].to_numpy(),
    })


def expected_survival(
    fitted: FittedMultiStateModel,
    times: Sequence[float],
    from_state: int,
    absorbing_state: int,
    covariates: Optional[Dict[str, float]] = None,
) -> pd.DataFrame:
    """Model survival ``1 - P(0, t)[from_state, absorbing_state]``.

    Returns
    -------
    pd.DataFrame
        Columns ``time`` and ``survival``
    """
    states = fitted.states
    if from_state not in states or absorbing_state not in states:
        raise ValueError(f"States must be among {states}")
    if absorbing_state not in fitted.model.absorbing_states:
        raise ValueError(f"State {absorbing_state} is not absorbing")
    i, j = states.index(from_state), states.index(absorbing_state)
    survival = [1.0 - fitted.pmatrix(float(t), 0.0, covariates).iat[i, j] for t in times]
    return pd.DataFrame({"time": [float(t) for t in times], "survival": survival})
