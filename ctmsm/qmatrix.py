"""Transition structures and crude initial intensity matrices."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np
import pandas as pd

from .data import PanelData
from .exceptions import InitializationError, StructuralError

__all__ = [
    "build_qmask",
    "qmask_to_transitions",
    "transition_indices",
    "absorbing_states",
    "validate_intensity_matrix",
    "transition_graph",
    "check_connectivity",
    "crude_intensities",
]


def build_qmask(states: Sequence[int], state_transitions: Dict[int, List[int]]) -> np.ndarray:
    """Boolean mask of allowed direct transitions.

    Parameters
    ----------
    states : Sequence[int]
        State codes in matrix order
    state_transitions : Dict[int, List[int]]
        Dictionary mapping source states to possible target states

    Returns
    -------
    np.ndarray
        Square boolean array with ``mask[i, j]`` true when ``states[i] -> states[j]``
        is allowed. The diagonal is always false.
    """
    index = {s: i for i, s in enumerate(states)}
    mask = np.zeros((len(states), len(states)), dtype=bool)
    for from_state, to_states in state_transitions.items():
        if from_state not in index:
            raise ValueError(f"Unknown source state {from_state} in state_transitions")
        for to_state in to_states:
            if to_state not in index:
                raise ValueError(f"Unknown target state {to_state} in state_transitions")
            if to_state == from_state:
                raise ValueError(f"Self-transition {from_state} -> {to_state} is implied by the diagonal")
            mask[index[from_state], index[to_state]] = True
    return mask


def qmask_to_transitions(states: Sequence[int], qmask: np.ndarray) -> Dict[int, List[int]]:
    return {s: [states[j] for j in np.flatnonzero(qmask[i])] for i, s in enumerate(states)}


def transition_indices(qmask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Row and column indices of allowed transitions, in row-major order."""
    rows, cols = np.nonzero(qmask)
    return rows, cols


def absorbing_states(states: Sequence[int], qmask: np.ndarray) -> List[int]:
    return [s for i, s in enumerate(states) if not qmask[i].any()]


def validate_intensity_matrix(
    Q: np.ndarray,
    qmask: Optional[np.ndarray] = None,
    atol: float = 1e-8,
) -> None:
    """Raise ``ValueError`` unless ``Q`` is a valid intensity matrix.

    Off-diagonal entries must be non-negative, rows must sum to zero and,
    when ``qmask`` is given, forbidden entries must be zero.
    """
    Q = np.asarray(Q, dtype=float)
    if Q.ndim != 2 or Q.shape[0] != Q.shape[1]:
        raise ValueError(f"Intensity matrix must be square, got shape {Q.shape}")
    if not np.all(np.isfinite(Q)):
        raise ValueError("Intensity matrix contains non-finite values")
    off = Q - np.diag(np.diag(Q))
    if np.any(off < 0):
        raise ValueError("Intensity matrix has negative off-diagonal entries")
    row_sums = Q.sum(axis=1)
    if not np.allclose(row_sums, 0.0, atol=atol):
        raise ValueError(f"Intensity matrix rows must sum to zero (max error: {np.abs(row_sums).max():.2e})")
    if qmask is not None:
        if qmask.shape != Q.shape:
            raise ValueError(f"Mask shape {qmask.shape} does not match intensity matrix {Q.shape}")
        if np.any(off[~qmask] != 0):
            raise ValueError("Intensity matrix has non-zero entries for forbidden transitions")


def transition_graph(states: Sequence[int], qmask: np.ndarray) -> nx.DiGraph:
    """Directed graph of allowed transitions between state codes."""
    G = nx.DiGraph()
    G.add_nodes_from(states)
    for i, j in zip(*transition_indices(qmask)):
        G.add_edge(states[i], states[j])
    return G


def check_connectivity(data: PanelData, qmask: np.ndarray) -> None:
    """Check every observed transition can be produced by the transition structure.

    A pair ``r -> s`` of consecutive observations is consistent when ``s`` is
    reachable from ``r`` through allowed transitions. Censoring codes are
    consistent when any of their candidate states fits.

    Raises
    ------
    StructuralError
        Listing each inconsistent pair and how often it was observed
    """
    G = transition_graph(data.states, qmask)
    reach = {s: nx.descendants(G, s) | {s} for s in data.states}

    pairs = data.transitions()
    counts = pairs.groupby(["from_state", "to_state"]).size()
    violations = []
    for (from_code, to_code), n in counts.items():
        if data.is_censored(from_code) and data.is_censored(to_code):
            continue
        from_set = data.candidate_states(from_code)
        to_set = data.candidate_states(to_code)
        if not any(t in reach[f] for f in from_set for t in to_set):
            violations.append(f"{from_code} -> {to_code} (observed {n} times)")
    if violations:
        raise StructuralError(
            "Observed transitions are impossible under the transition structure: "
            + ", ".join(violations)
        )


def crude_intensities(
    data: PanelData,
    qmask: np.ndarray,
    fallback: Optional[float] = None,
) -> np.ndarray:
    """Crude intensity matrix from observed transition counts.

    Treats each observed pair as if at most one transition happened in the
    interval: ``q[r, s] = n[r, s] / T[r]`` where ``T[r]`` is the total length
    of intervals starting in ``r``. Pairs involving censoring codes are ignored.

    Parameters
    ----------
    data : PanelData
        Cleaned panel data
    qmask : np.ndarray
        Allowed transitions
    fallback : Optional[float]
        Rate used for allowed transitions that were never observed. Without
        it such transitions raise.

    Returns
    -------
    np.ndarray
        Intensity matrix with rows summing to zero

    Raises
    ------
    InitializationError
        If an allowed transition has no support and no fallback is given
    """
    if fallback is not None and not fallback > 0:
        raise ValueError(f"fallback must be positive, got {fallback}")
    n = data.n_states
    index = data.state_index
    pairs = data.transitions()
    exact = ~(pairs["from_state"].isin(list(data.censoring)) | pairs["to_state"].isin(list(data.censoring)))
    pairs = pairs.loc[exact]

    counts = np.zeros((n, n))
    time_at_risk = np.zeros(n)
    if len(pairs):
        from_idx = pairs["from_state"].map(index).to_numpy()
        to_idx = pairs["to_state"].map(index).to_numpy()
        np.add.at(counts, (from_idx, to_idx), 1.0)
        np.add.at(time_at_risk, from_idx, (pairs["time_end"] - pairs["time_start"]).to_numpy())

    Q = np.zeros((n, n))
    unsupported = []
    for i, j in zip(*transition_indices(qmask)):
        if counts[i, j] > 0 and time_at_risk[i] > 0:
            Q[i, j] = counts[i, j] / time_at_risk[i]
        elif fallback is not None:
            Q[i, j] = fallback
        else:
            unsupported.append(f"{data.states[i]} -> {data.states[j]}")
    if unsupported:
        raise InitializationError(
            "No observed support for allowed transition(s) " + ", ".join(unsupported)
            + "; supply a positive fallback rate or explicit initial intensities"
        )
    np.fill_diagonal(Q, -Q.sum(axis=1))
    return Q
