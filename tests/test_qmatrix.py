"""Tests for transition structures, state tables and crude intensities."""

import pytest
import numpy as np
import pandas as pd
import networkx as nx

from ctmsm import PanelData, statetable
from ctmsm.exceptions import InitializationError, StructuralError
from ctmsm.qmatrix import (
    absorbing_states,
    build_qmask,
    check_connectivity,
    crude_intensities,
    qmask_to_transitions,
    transition_graph,
    validate_intensity_matrix,
)


def get_test_state_transitions():
    """Get a standard illness-death structure."""
    return {
        1: [2, 3],  # Healthy can fall ill or die
        2: [3],     # Ill can die
        3: []       # Dead is absorbing
    }


@pytest.fixture
def panel():
    """Small hand-written panel with known transition counts."""
    df = pd.DataFrame({
        "id":    [1, 1, 1, 2, 2, 3, 3, 3],
        "time":  [0.0, 1.0, 2.0, 0.0, 2.0, 0.0, 1.0, 3.0],
        "state": [1, 1, 2, 1, 3, 1, 2, 3],
    })
    return PanelData(df, states=[1, 2, 3])


def test_build_qmask():
    """Test the mask reflects the allowed transitions and has a false diagonal."""
    qmask = build_qmask([1, 2, 3], get_test_state_transitions())
    expected = np.array([
        [False, True, True],
        [False, False, True],
        [False, False, False],
    ])
    np.testing.assert_array_equal(qmask, expected)
    assert qmask_to_transitions([1, 2, 3], qmask) == get_test_state_transitions()
    assert absorbing_states([1, 2, 3], qmask) == [3]


def test_build_qmask_rejects_bad_structures():
    """Test unknown states and self-transitions are rejected."""
    with pytest.raises(ValueError, match="Unknown target state"):
        build_qmask([1, 2], {1: [5]})
    with pytest.raises(ValueError, match="Unknown source state"):
        build_qmask([1, 2], {7: [1]})
    with pytest.raises(ValueError, match="Self-transition"):
        build_qmask([1, 2], {1: [1]})


def test_validate_intensity_matrix():
    """Test valid intensity matrices pass and invalid ones raise."""
    Q = np.array([
        [-0.3, 0.1, 0.2],
        [0.0, -0.2, 0.2],
        [0.0, 0.0, 0.0],
    ])
    validate_intensity_matrix(Q, build_qmask([1, 2, 3], get_test_state_transitions()))

    with pytest.raises(ValueError, match="sum to zero"):
        validate_intensity_matrix(np.array([[-0.1, 0.2], [0.0, 0.0]]))
    with pytest.raises(ValueError, match="negative off-diagonal"):
        validate_intensity_matrix(np.array([[0.1, -0.1], [0.0, 0.0]]))
    with pytest.raises(ValueError, match="forbidden"):
        validate_intensity_matrix(
            np.array([[-0.1, 0.1], [0.1, -0.1]]),
            np.array([[False, True], [False, False]]),
        )


def test_transition_graph():
    """Test the transition graph has one edge per allowed transition."""
    G = transition_graph([1, 2, 3], build_qmask([1, 2, 3], get_test_state_transitions()))
    assert isinstance(G, nx.DiGraph)
    assert set(G.edges()) == {(1, 2), (1, 3), (2, 3)}


def test_statetable_counts(panel):
    """Test the state table counts consecutive observation pairs."""
    table = statetable(panel)
    assert table.index.name == "from"
    assert table.columns.name == "to"
    assert table.loc[1, 1] == 1
    assert table.loc[1, 2] == 2
    assert table.loc[1, 3] == 1
    assert table.loc[2, 3] == 1
    assert table.to_numpy().sum() == 5


def test_statetable_single_censored_observation():
    """Test a subject seen once, with a censoring code, contributes no transitions."""
    df = pd.DataFrame({
        "id":    [1, 1, 2],
        "time":  [0.0, 1.0, 0.0],
        "state": [1, 2, 99],
    })
    data = PanelData(df, states=[1, 2, 3], censoring={99: [1, 2]})
    table = statetable(data)
    assert table.to_numpy().sum() == 1
    assert 99 not in table.index


def test_crude_intensities(panel):
    """Test crude intensities divide transition counts by time at risk."""
    qmask = build_qmask(panel.states, get_test_state_transitions())
    Q = crude_intensities(panel, qmask)

    # Intervals starting in state 1 have total length 1 + 1 + 2 + 1 = 5
    assert Q[0, 1] == pytest.approx(2 / 5)
    assert Q[0, 2] == pytest.approx(1 / 5)
    # The single interval starting in state 2 has length 2
    assert Q[1, 2] == pytest.approx(1 / 2)
    np.testing.assert_allclose(Q.sum(axis=1), 0.0, atol=1e-12)
    validate_intensity_matrix(Q, qmask)


def test_crude_intensities_zero_support(panel):
    """Test an allowed but never observed transition needs a fallback rate."""
    qmask = build_qmask(panel.states, {1: [2, 3], 2: [1, 3], 3: []})
    with pytest.raises(InitializationError, match="2 -> 1"):
        crude_intensities(panel, qmask)

    Q = crude_intensities(panel, qmask, fallback=0.05)
    assert Q[1, 0] == pytest.approx(0.05)
    np.testing.assert_allclose(Q.sum(axis=1), 0.0, atol=1e-12)


def test_check_connectivity_disconnected(panel):
    """Test observed transitions the structure cannot produce are reported."""
    qmask = build_qmask(panel.states, {1: [2], 2: [], 3: []})
    with pytest.raises(StructuralError) as excinfo:
        check_connectivity(panel, qmask)
    message = str(excinfo.value)
    assert "1 -> 3 (observed 1 times)" in message
    assert "2 -> 3 (observed 1 times)" in message


def test_check_connectivity_indirect_paths(panel):
    """Test transitions reachable through intermediate states are accepted."""
    qmask = build_qmask(panel.states, {1: [2], 2: [3], 3: []})
    check_connectivity(panel, qmask)


def test_check_connectivity_censoring_codes():
    """Test a censoring code is consistent when any candidate state is reachable."""
    df = pd.DataFrame({
        "id":    [1, 1, 1],
        "time":  [0.0, 1.0, 2.0],
        "state": [2, 99, 3],
    })
    data = PanelData(df, states=[1, 2, 3], censoring={99: [1, 2]})
    check_connectivity(data, build_qmask([1, 2, 3], get_test_state_transitions()))
