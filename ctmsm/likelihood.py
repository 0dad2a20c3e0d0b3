"""Likelihood of panel-observed multi-state data."""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .models import DTYPE, MultiStateModel

__all__ = [
    "PanelDesign",
    "PanelLikelihood",
]


@dataclass
class PanelDesign:
    """Panel data as padded tensors, one row per subject.

    Parameters
    ----------
    time : torch.Tensor
        Observation times, shape [n_subjects, max_obs]
    observed : torch.Tensor
        True where a real observation exists, shape [n_subjects, max_obs]
    emission : torch.Tensor
        Indicator of the states consistent with each observation,
        shape [n_subjects, max_obs, num_states]
    exact_death : torch.Tensor
        True where the observation is entry into an absorbing state at a known time
    death_index : torch.Tensor
        State index of that absorbing state (0 elsewhere)
    z : Optional[torch.Tensor]
        Centred covariates, shape [n_subjects, max_obs, n_covariates]
    subjects : np.ndarray
        Subject identifiers in row order
    """
    time: torch.Tensor
    observed: torch.Tensor
    emission: torch.Tensor
    exact_death: torch.Tensor
    death_index: torch.Tensor
    z: Optional[torch.Tensor]
    subjects: np.ndarray

    @property
    def n_subjects(self) -> int:
        return int(self.time.shape[0])

    @property
    def n_obs(self) -> int:
        return int(self.observed.sum().item())


class PanelLikelihood(nn.Module):
    """Log-likelihood of a continuous-time Markov model observed at panel times.

    Each subject's likelihood is conditional on the first observation. When
    that observation is a censoring code, the starting distribution is uniform
    over its candidate states. The likelihood is accumulated with a scaled
    forward recursion
    ``alpha_k = (alpha_{k-1} P_k) * e_k`` where ``P_k`` is the transition
    matrix over the k-th interval and ``e_k`` the indicator of states
    consistent with the k-th observation. Censored observations therefore sum
    over their candidate states. Entry into an absorbing state ``d`` at an
    exactly known time replaces ``P_k`` by ``P_k Q[:, d]`` (off-diagonal part),
    i.e. the chain was alive just before and jumped at that instant.
    """

    def forward(
        self,
        model: MultiStateModel,
        design: PanelDesign,
        theta: Optional[torch.Tensor] = None,
        per_subject: bool = False,
    ) -> torch.Tensor:
        """Compute the log-likelihood.

        Parameters
        ----------
        model : MultiStateModel
            Model supplying intensity and transition matrices
        design : PanelDesign
            Tensorised panel data
        theta : Optional[torch.Tensor]
            Parameter vector, defaults to the model's own
        per_subject : bool
            Return one contribution per subject instead of the total

        Returns
        -------
        torch.Tensor
            Scalar log-likelihood, or shape [n_subjects] with ``per_subject``
        """
        S = model.num_states
        N, K = design.time.shape
        tiny = torch.finfo(DTYPE).tiny

        alpha = design.emission[:, 0]
        alpha = alpha / alpha.sum(dim=-1, keepdim=True)
        loglik = torch.zeros(N, dtype=DTYPE)

        for k in range(1, K):
            active = design.observed[:, k]
            if not bool(active.any()):
                break
            idx = active.nonzero().squeeze(1)
            t0 = design.time[idx, k - 1]
            t1 = design.time[idx, k]
            # Covariates in force over an interval are those recorded at its start
            z = None if design.z is None else design.z[idx, k - 1]

            P = model.interval_matrices(t0, t1, z, theta)
            step = torch.bmm(alpha[idx].unsqueeze(1), P).squeeze(1)

            death = design.exact_death[idx, k]
            if bool(death.any()):
                d = design.death_index[idx, k]
                period = model.period_of(t1, right=False)
                Q = model.intensity_matrix(z, period, theta)
                if Q.dim() == 2:
                    Q = Q.expand(len(idx), S, S)
                d_hot = F.one_hot(d, S).to(DTYPE)
                q_to_d = torch.gather(Q, 2, d.view(-1, 1, 1).expand(-1, S, 1)).squeeze(2) * (1.0 - d_hot)
                death_step = d_hot * (step * q_to_d).sum(dim=-1, keepdim=True)
                step = torch.where(death.unsqueeze(1), death_step, step)

            new = step * design.emission[idx, k]
            norm = torch.clamp(new.sum(dim=-1), min=tiny)
            loglik = loglik.index_add(0, idx, torch.log(norm))
            alpha = alpha.index_copy(0, idx, new / norm.unsqueeze(1))

        if per_subject:
            return loglik
        return loglik.sum()
