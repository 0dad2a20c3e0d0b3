"""Panel data loading, validation and state tables."""

from __future__ import annotations

import logging
import warnings
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .exceptions import DataQualityWarning, StructuralError

__all__ = [
    "PanelData",
    "load_panel_data",
    "statetable",
]

logger = logging.getLogger(__name__)

ISSUE_COLUMNS = ["row", "subject", "reason"]


class PanelData:
    """Subjects observed in discrete states at irregular times.

    Rows that cannot be used are excluded and recorded in ``issues`` rather
    than aborting the load: malformed values and unknown state codes drop the
    row, non-increasing observation times drop the whole subject. Missing
    required columns are structural and raise immediately.

    Parameters
    ----------
    df : pd.DataFrame
        Long-format observations, one row per subject and observation time
    states : Sequence[int]
        State codes of the model, in the order used for matrix indices
    subject_col, time_col, state_col : str
        Column names of the subject identifier, observation time and state code
    covariates : Optional[Sequence[str]]
        Covariate columns to carry along; rows with missing values are excluded
    censoring : Optional[Dict[int, Sequence[int]]]
        Mapping from censoring code to the states it may stand for,
        e.g. ``{99: [1, 2]}`` for "alive, stage unknown"
    """

    def __init__(
        self,
        df: pd.DataFrame,
        states: Sequence[int],
        subject_col: str = "id",
        time_col: str = "time",
        state_col: str = "state",
        covariates: Optional[Sequence[str]] = None,
        censoring: Optional[Dict[int, Sequence[int]]] = None,
    ) -> None:
        self.states = [int(s) for s in states]
        if len(set(self.states)) != len(self.states):
            raise ValueError(f"State codes must be unique, got {self.states}")
        self.censoring = {int(k): [int(s) for s in v] for k, v in (censoring or {}).items()}
        for code, candidates in self.censoring.items():
            if code in self.states:
                raise ValueError(f"Censoring code {code} clashes with a state code")
            unknown = [s for s in candidates if s not in self.states]
            if unknown or not candidates:
                raise ValueError(f"Censoring code {code} must map to known states, got {candidates}")
        self.covariates = list(covariates or [])

        required = [subject_col, time_col, state_col] + self.covariates
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise StructuralError(f"Required columns missing from panel data: {missing}")

        self.df, self.issues = self._clean(df, subject_col, time_col, state_col)
        if len(self.issues):
            n_rows = len(self.issues)
            n_subjects = self.issues["subject"].nunique()
            warnings.warn(
                f"Excluded {n_rows} observation(s) from {n_subjects} subject(s); "
                f"see PanelData.issues for details",
                DataQualityWarning,
            )
        logger.info("Loaded %d observations from %d subjects", self.n_obs, self.n_subjects)

    def _clean(self, raw: pd.DataFrame, subject_col: str, time_col: str, state_col: str):
        df = pd.DataFrame({
            "row": np.arange(len(raw)),
            "subject": raw[subject_col].values,
            "time": pd.to_numeric(raw[time_col], errors="coerce").values,
            "state": pd.to_numeric(raw[state_col], errors="coerce").values,
        })
        for col in self.covariates:
            df[col] = pd.to_numeric(raw[col], errors="coerce").values

        issues: List[Dict[str, object]] = []

        def _drop(mask: pd.Series, reason) -> None:
            for _, rec in df.loc[mask].iterrows():
                text = reason(rec) if callable(reason) else reason
                issues.append({"row": int(rec["row"]), "subject": rec["subject"], "reason": text})
                logger.debug("Excluding row %d (subject %s): %s", rec["row"], rec["subject"], text)

        bad = df["subject"].isna()
        _drop(bad, "missing subject identifier")
        df = df.loc[~bad]

        bad = ~np.isfinite(df["time"].astype(float))
        _drop(bad, "missing or non-numeric observation time")
        df = df.loc[~bad]

        bad = df["state"].isna()
        _drop(bad, "missing or non-numeric state code")
        df = df.loc[~bad]

        valid_codes = set(self.states) | set(self.censoring)
        state_vals = df["state"].astype(float)
        bad = ~(np.equal(np.mod(state_vals, 1), 0) & state_vals.isin(valid_codes))
        _drop(bad, lambda rec: f"unknown state code {rec['state']:g}")
        df = df.loc[~bad]

        for col in self.covariates:
            bad = df[col].isna()
            _drop(bad, f"missing or non-numeric covariate '{col}'")
            df = df.loc[~bad]

        # Times must increase strictly within each subject, in file order
        step = df.groupby("subject", sort=False)["time"].diff()
        bad_subjects = df.loc[step <= 0, "subject"].unique()
        bad = df["subject"].isin(bad_subjects)
        _drop(bad, "non-increasing observation times for subject")
        df = df.loc[~bad]

        df = df.astype({"state": int})
        df = df.sort_values(["subject", "time"], kind="mergesort").reset_index(drop=True)
        return df, pd.DataFrame(issues, columns=ISSUE_COLUMNS)

    @classmethod
    def _from_clean(cls, df: pd.DataFrame, template: "PanelData") -> "PanelData":
        """Build a PanelData around an already validated frame."""
        obj = cls.__new__(cls)
        obj.states = list(template.states)
        obj.censoring = {k: list(v) for k, v in template.censoring.items()}
        obj.covariates = list(template.covariates)
        obj.df = df.reset_index(drop=True)
        obj.issues = pd.DataFrame(columns=ISSUE_COLUMNS)
        return obj

    @property
    def n_obs(self) -> int:
        return len(self.df)

    @property
    def n_subjects(self) -> int:
        return int(self.df["subject"].nunique())

    @property
    def n_states(self) -> int:
        return len(self.states)

    @property
    def subjects(self) -> np.ndarray:
        return self.df["subject"].unique()

    @property
    def state_index(self) -> Dict[int, int]:
        """Map state code to matrix index."""
        return {s: i for i, s in enumerate(self.states)}

    def is_censored(self, code: int) -> bool:
        return code in self.censoring

    def candidate_states(self, code: int) -> List[int]:
        """States consistent with an observed code."""
        if code in self.censoring:
            return list(self.censoring[code])
        return [code]

    def signature(self) -> str:
        """Content hash of the cleaned observations, states and censoring codes.

        Two fits share data only if all three agree, since the censoring map
        changes which states an observation can stand for.
        """
        hashed = pd.util.hash_pandas_object(self.df.drop(columns="row"), index=False)
        codes = ";".join(f"{k}={sorted(v)}" for k, v in sorted(self.censoring.items()))
        return f"{self.n_subjects}:{self.n_obs}:{int(hashed.sum())}:{self.states}:{codes}"

    def transitions(self) -> pd.DataFrame:
        """Consecutive observation pairs for every subject.

        Returns
        -------
        pd.DataFrame
            Columns ``subject``, ``from_state``, ``to_state``, ``time_start``,
            ``time_end``. A subject's last observation starts no pair.
        """
        nxt = self.df.groupby("subject", sort=False)[["state", "time"]].shift(-1)
        pairs = pd.DataFrame({
            "subject": self.df["subject"],
            "from_state": self.df["state"],
            "to_state": nxt["state"],
            "time_start": self.df["time"],
            "time_end": nxt["time"],
        })
        pairs = pairs.dropna(subset=["to_state"]).astype({"to_state": int})
        return pairs.reset_index(drop=True)

    def resample(self, rng: np.random.Generator) -> "PanelData":
        """Draw subjects with replacement; repeated subjects get fresh identifiers."""
        subjects = self.subjects
        drawn = rng.choice(len(subjects), size=len(subjects), replace=True)
        groups = dict(tuple(self.df.groupby("subject", sort=False)))
        parts = []
        for new_id, idx in enumerate(drawn):
            part = groups[subjects[idx]].copy()
            part["subject"] = new_id
            parts.append(part)
        return PanelData._from_clean(pd.concat(parts, ignore_index=True), self)

    def exclude_subjects(self, subjects: Sequence) -> "PanelData":
        """Return a copy without the given subjects."""
        keep = ~self.df["subject"].isin(list(subjects))
        return PanelData._from_clean(self.df.loc[keep].copy(), self)

    def __repr__(self) -> str:
        return (f"PanelData(n_subjects={self.n_subjects}, n_obs={self.n_obs}, "
                f"states={self.states}, censoring={self.censoring}, covariates={self.covariates})")


def load_panel_data(
    path: str,
    states: Sequence[int],
    subject_col: str = "id",
    time_col: str = "time",
    state_col: str = "state",
    covariates: Optional[Sequence[str]] = None,
    censoring: Optional[Dict[int, Sequence[int]]] = None,
    sep: str = ",",
    **read_kwargs,
) -> PanelData:
    """Read a delimited panel file into :class:`PanelData`.

    Only column presence is enforced; everything else is validated row by row.
    """
    df = pd.read_csv(path, sep=sep, **read_kwargs)
    return PanelData(
        df,
        states=states,
        subject_col=subject_col,
        time_col=time_col,
        state_col=state_col,
        covariates=covariates,
        censoring=censoring,
    )


def statetable(data: PanelData) -> pd.DataFrame:
    """Count transitions between consecutive observations.

    Censoring codes are kept as ordinary codes, except that pairs where both
    observations are censored carry no information and are dropped.

    Parameters
    ----------
    data : PanelData
        Cleaned panel data

    Returns
    -------
    pd.DataFrame
        Integer counts with from-codes as the index and to-codes as columns
    """
    pairs = data.transitions()
    both_censored = pairs["from_state"].isin(list(data.censoring)) & pairs["to_state"].isin(list(data.censoring))
    pairs = pairs.loc[~both_censored]
    if pairs.empty:
        return pd.DataFrame(dtype=int).rename_axis(index="from", columns="to")
    table = pd.crosstab(pairs["from_state"], pairs["to_state"])
    return table.rename_axis(index="from", columns="to").astype(int)
