"""Tests for panel data loading and validation."""

import pytest
import numpy as np
import pandas as pd

from ctmsm import PanelData, load_panel_data
from ctmsm.exceptions import DataQualityWarning, StructuralError


@pytest.fixture
def raw_panel():
    """Panel with one clean subject and several kinds of bad rows."""
    return pd.DataFrame({
        "id":    [1, 1, 1, 2, 2, 2, 3, 3, 4, 4],
        "time":  [0.0, 1.0, 2.0, 0.0, "abc", 2.0, 0.0, 1.0, 0.0, 1.0],
        "state": [1, 2, 2, 1, 1, 7, 1, 2, 1, 2],
        "age":   [60, 60, 60, 55, 55, 55, 70, 70, np.nan, 65],
    })


def test_clean_panel_has_no_issues():
    """Test a clean panel loads without warnings or issues."""
    df = pd.DataFrame({
        "id": [1, 1, 2, 2],
        "time": [0.0, 1.5, 0.0, 2.0],
        "state": [1, 2, 1, 1],
    })
    data = PanelData(df, states=[1, 2])
    assert data.n_obs == 4
    assert data.n_subjects == 2
    assert data.issues.empty
    assert list(data.df.columns) == ["row", "subject", "time", "state"]


def test_bad_rows_are_excluded_and_reported(raw_panel):
    """Test malformed values, unknown codes and missing covariates drop single rows."""
    with pytest.warns(DataQualityWarning, match="Excluded 3 observation"):
        data = PanelData(raw_panel, states=[1, 2, 3], covariates=["age"])

    assert data.n_obs == len(raw_panel) - 3
    reasons = dict(zip(data.issues["row"], data.issues["reason"]))
    assert reasons[4] == "missing or non-numeric observation time"
    assert reasons[5] == "unknown state code 7"
    assert reasons[8] == "missing or non-numeric covariate 'age'"
    assert set(data.issues.columns) == {"row", "subject", "reason"}


def test_non_monotonic_subject_is_excluded():
    """Test a subject with repeated or decreasing times is dropped entirely."""
    df = pd.DataFrame({
        "id":    [1, 1, 1, 2, 2, 2],
        "time":  [0.0, 2.0, 1.0, 0.0, 1.0, 1.0],
        "state": [1, 1, 2, 1, 1, 2],
    })
    with pytest.warns(DataQualityWarning):
        data = PanelData(df, states=[1, 2])
    assert data.n_obs == 0
    assert (data.issues["reason"] == "non-increasing observation times for subject").sum() == 6


def test_rows_sorted_within_subject():
    """Test observations are ordered by subject and time after cleaning."""
    df = pd.DataFrame({
        "id":    [2, 1, 2, 1],
        "time":  [0.0, 0.0, 1.0, 3.0],
        "state": [1, 1, 2, 2],
    })
    data = PanelData(df, states=[1, 2])
    assert data.df["subject"].tolist() == [1, 1, 2, 2]
    assert data.df["time"].tolist() == [0.0, 3.0, 0.0, 1.0]


def test_missing_columns_raise():
    """Test absent required columns are structural errors."""
    df = pd.DataFrame({"id": [1], "time": [0.0], "state": [1]})
    with pytest.raises(StructuralError, match="age"):
        PanelData(df, states=[1, 2], covariates=["age"])
    with pytest.raises(StructuralError, match="visit"):
        PanelData(df, states=[1, 2], time_col="visit")


def test_censoring_codes():
    """Test censoring codes are accepted and map to candidate states."""
    df = pd.DataFrame({
        "id": [1, 1, 1],
        "time": [0.0, 1.0, 2.0],
        "state": [1, 2, 99],
    })
    data = PanelData(df, states=[1, 2, 3], censoring={99: [1, 2]})
    assert data.issues.empty
    assert data.is_censored(99)
    assert not data.is_censored(2)
    assert data.candidate_states(99) == [1, 2]
    assert data.candidate_states(3) == [3]

    with pytest.raises(ValueError, match="clashes"):
        PanelData(df, states=[1, 2, 99], censoring={99: [1]})
    with pytest.raises(ValueError, match="known states"):
        PanelData(df, states=[1, 2, 3], censoring={99: [4]})


def test_transitions_pairs():
    """Test consecutive observations form transition pairs."""
    df = pd.DataFrame({
        "id": [1, 1, 1, 2],
        "time": [0.0, 1.0, 2.5, 0.0],
        "state": [1, 1, 2, 1],
    })
    pairs = PanelData(df, states=[1, 2]).transitions()
    assert len(pairs) == 2
    assert pairs["from_state"].tolist() == [1, 1]
    assert pairs["to_state"].tolist() == [1, 2]
    assert pairs["time_end"].tolist() == [1.0, 2.5]


def test_resample_and_signature():
    """Test resampling keeps whole subjects and changes the data signature."""
    df = pd.DataFrame({
        "id": np.repeat(np.arange(20), 3),
        "time": np.tile([0.0, 1.0, 2.0], 20),
        "state": np.tile([1, 1, 2], 20),
    })
    data = PanelData(df, states=[1, 2])
    assert data.signature() == PanelData(df, states=[1, 2]).signature()
    assert data.signature() != PanelData(df, states=[1, 2], censoring={99: [1, 2]}).signature()
    assert (PanelData(df, states=[1, 2], censoring={99: [1]}).signature()
            != PanelData(df, states=[1, 2], censoring={99: [1, 2]}).signature())

    resampled = data.resample(np.random.default_rng(0))
    assert resampled.n_subjects == 20
    assert resampled.n_obs == 60
    assert resampled.df.groupby("subject").size().eq(3).all()

    fewer = data.exclude_subjects([0, 1])
    assert fewer.n_subjects == 18
    assert fewer.signature() != data.signature()


def test_load_panel_data(tmp_path):
    """Test loading a delimited file."""
    path = tmp_path / "panel.csv"
    path.write_text("ptid;years;stage;sex\n1;0;1;0\n1;1.5;2;0\n2;0;1;1\n2;2;3;1\n")
    data = load_panel_data(
        str(path),
        states=[1, 2, 3],
        subject_col="ptid",
        time_col="years",
        state_col="stage",
        covariates=["sex"],
        sep=";",
    )
    assert data.n_subjects == 2
    assert data.n_obs == 4
    assert data.covariates == ["sex"]
    assert data.df["sex"].tolist() == [0.0, 0.0, 1.0, 1.0]
