"""Tests for maximum-likelihood fitting."""

import warnings

import pytest
import torch
import numpy as np
import pandas as pd
from scipy import stats

from ctmsm import (
    PanelData,
    ModelConfig,
    OptimConfig,
    fit,
    fit_many,
    prepare_data,
    hazard_ratios,
)
from ctmsm.exceptions import ConvergenceWarning, StructuralError
from ctmsm.likelihood import PanelLikelihood
from ctmsm.utils.simulation import simulate_panel_data

STATES = [1, 2, 3]
TRUE_Q = np.array([
    [-0.1, 0.1, 0.0],
    [0.0, -0.2, 0.2],
    [0.0, 0.0, 0.0],
])


def get_test_state_transitions():
    """Get the progressive three-state structure."""
    return {
        1: [2],  # Healthy to ill
        2: [3],  # Ill to dead
        3: []    # Dead is absorbing
    }


@pytest.fixture(scope="module")
def large_panel():
    """Five thousand subjects observed yearly for ten years."""
    df = simulate_panel_data(TRUE_Q, STATES, n_subjects=5000, max_time=10.0, seed=42)
    return PanelData(df, states=STATES)


@pytest.fixture(scope="module")
def small_panel():
    """A few hundred subjects with a binary covariate."""
    rng = np.random.default_rng(7)
    sex = rng.integers(0, 2, size=300).astype(float)
    df = simulate_panel_data(
        TRUE_Q, STATES, n_subjects=300, max_time=8.0, jitter=0.2,
        covariates={"sex": sex}, seed=7,
    )
    return PanelData(df, states=STATES, covariates=["sex"])


def test_recovers_true_intensities(large_panel):
    """Test a three-state model recovers q12 = 0.1 and q23 = 0.2 within 10%."""
    fitted = fit(large_panel, ModelConfig(state_transitions=get_test_state_transitions()))

    assert fitted.converged
    assert fitted.hessian_ok
    Q = fitted.qmatrix().to_numpy()
    assert Q[0, 1] == pytest.approx(0.1, rel=0.1)
    assert Q[1, 2] == pytest.approx(0.2, rel=0.1)
    assert Q[0, 2] == 0.0
    np.testing.assert_allclose(Q.sum(axis=1), 0.0, atol=1e-12)

    assert fitted.n_subjects == 5000
    assert fitted.minus2loglik == pytest.approx(-2.0 * fitted.loglik)
    assert fitted.aic == pytest.approx(fitted.minus2loglik + 2 * fitted.n_params)


def test_likelihood_matches_fitted_loglik(large_panel):
    """Test the stored log-likelihood equals the likelihood at the estimates."""
    config = ModelConfig(state_transitions=get_test_state_transitions())
    fitted = fit(large_panel, config, OptimConfig(compute_hessian=False))
    design, _ = prepare_data(large_panel, config)
    with torch.no_grad():
        loglik = PanelLikelihood()(fitted.model, design).item()
        per_subject = PanelLikelihood()(fitted.model, design, per_subject=True)
    assert loglik == pytest.approx(fitted.loglik)
    assert per_subject.shape == (design.n_subjects,)
    assert torch.all(per_subject <= 1e-12)
    assert fitted.covariance is None


def test_covariate_hazard_ratio_coverage():
    """Test the hazard ratio interval covers exp(0.5) in repeated simulations.

    The number of covering intervals is Binomial(n_reps, 0.95) when the
    nominal level holds, so the count is checked against its 0.1% quantile.
    """
    n_reps = 40
    min_covered = int(stats.binom.ppf(0.001, n_reps, 0.95))
    covered = 0
    log_hr = {"x": np.array([
        [0.0, 0.5, 0.0],
        [0.0, 0.0, 0.0],
        [0.0, 0.0, 0.0],
    ])}
    config = ModelConfig(state_transitions=get_test_state_transitions(), covariates=["x"])
    for rep in range(n_reps):
        rng = np.random.default_rng(1000 + rep)
        x = rng.normal(size=400)
        df = simulate_panel_data(
            TRUE_Q, STATES, n_subjects=400, max_time=8.0,
            covariates={"x": x}, log_hazard_ratios=log_hr, seed=1000 + rep,
        )
        fitted = fit(PanelData(df, states=STATES, covariates=["x"]), config)
        hr = hazard_ratios(fitted)
        row = hr[(hr["term"] == "x") & (hr["transition"] == "1-2")].iloc[0]
        if row["lower"] <= np.exp(0.5) <= row["upper"]:
            covered += 1
    assert covered >= min_covered


def test_single_censored_observation_subject():
    """Test a subject seen only once, with a censoring code, leaves estimates and standard errors unchanged."""
    df = simulate_panel_data(TRUE_Q, STATES, n_subjects=400, max_time=8.0, seed=3)
    censoring = {99: [1, 2]}
    config = ModelConfig(state_transitions=get_test_state_transitions())

    without = fit(PanelData(df, states=STATES, censoring=censoring), config)
    extra = pd.DataFrame({"id": [10_000], "time": [0.0], "state": [99]})
    with_extra = fit(PanelData(pd.concat([df, extra], ignore_index=True), states=STATES,
                               censoring=censoring), config)

    assert with_extra.n_subjects == without.n_subjects + 1
    np.testing.assert_allclose(with_extra.estimates, without.estimates, rtol=1e-6)
    assert with_extra.loglik == pytest.approx(without.loglik)
    assert without.hessian_ok and with_extra.hessian_ok
    np.testing.assert_allclose(with_extra.std_errors, without.std_errors, rtol=1e-6)


def test_censored_final_observations():
    """Test censoring codes marking 'alive, state unknown' are handled."""
    df = simulate_panel_data(
        TRUE_Q, STATES, n_subjects=3000, max_time=8.0,
        censoring_rate=0.3, censor_code=99, seed=11,
    )
    assert (df["state"] == 99).any()
    data = PanelData(df, states=STATES, censoring={99: [1, 2]})
    fitted = fit(data, ModelConfig(state_transitions=get_test_state_transitions()))
    Q = fitted.qmatrix().to_numpy()
    assert Q[0, 1] == pytest.approx(0.1, rel=0.15)
    assert Q[1, 2] == pytest.approx(0.2, rel=0.15)


def test_exact_death_times():
    """Test exactly observed death times are used."""
    df = simulate_panel_data(
        TRUE_Q, STATES, n_subjects=3000, max_time=8.0, exact_death=True, seed=5,
    )
    data = PanelData(df, states=STATES)
    config = ModelConfig(state_transitions=get_test_state_transitions(), exact_death_states=[3])
    fitted = fit(data, config)
    Q = fitted.qmatrix().to_numpy()
    assert Q[0, 1] == pytest.approx(0.1, rel=0.1)
    assert Q[1, 2] == pytest.approx(0.2, rel=0.1)


def test_piecewise_constant_model(small_panel):
    """Test period effects are estimated near one when intensities are constant."""
    config = ModelConfig(state_transitions=get_test_state_transitions(), breakpoints=[4.0])
    fitted = fit(small_panel, config)

    assert fitted.n_params == 4
    assert fitted.model.n_periods == 2
    hr = hazard_ratios(fitted)
    assert set(hr["term"]) == {"[4,inf)"}
    assert np.all(hr["lower"] < hr["hazard_ratio"]) and np.all(hr["hazard_ratio"] < hr["upper"])
    assert np.all((hr["hazard_ratio"] > 0.5) & (hr["hazard_ratio"] < 2.0))

    Q_late = fitted.qmatrix(period=1).to_numpy()
    np.testing.assert_allclose(Q_late.sum(axis=1), 0.0, atol=1e-12)
    with pytest.raises(ValueError, match="Period"):
        fitted.qmatrix(period=2)


def test_covariates_with_breakpoints_rejected():
    """Test covariate effects cannot be combined with piecewise intensities."""
    with pytest.raises(ValueError, match="cannot be combined"):
        ModelConfig(state_transitions=get_test_state_transitions(), covariates=["sex"], breakpoints=[2.0])


def test_structural_errors(small_panel):
    """Test structural problems raise before optimisation."""
    with pytest.raises(StructuralError, match="age"):
        fit(small_panel, ModelConfig(state_transitions=get_test_state_transitions(), covariates=["age"]))

    with pytest.raises(StructuralError, match="impossible"):
        fit(small_panel, ModelConfig(state_transitions={1: [2], 2: [], 3: []}))

    with pytest.raises(StructuralError, match="absorbing"):
        fit(small_panel, ModelConfig(state_transitions=get_test_state_transitions(), exact_death_states=[2]))


def test_iteration_cap_warns(small_panel):
    """Test hitting the iteration cap returns a degraded result with a warning."""
    config = ModelConfig(state_transitions=get_test_state_transitions())
    with pytest.warns(ConvergenceWarning):
        fitted = fit(small_panel, config, OptimConfig(maxiter=1, compute_hessian=False))
    assert not fitted.converged
    assert np.all(np.isfinite(fitted.estimates))


def test_timeout_stops_optimiser(small_panel):
    """Test a zero timeout stops after the first iteration."""
    config = ModelConfig(state_transitions=get_test_state_transitions())
    with pytest.warns(ConvergenceWarning):
        fitted = fit(small_panel, config, OptimConfig(timeout=0.0, compute_hessian=False))
    assert not fitted.converged
    assert fitted.n_iter <= 2


def test_gradient_free_method(small_panel):
    """Test a gradient-free optimiser reaches the same maximum."""
    config = ModelConfig(state_transitions=get_test_state_transitions())
    bfgs = fit(small_panel, config, OptimConfig(compute_hessian=False))
    nelder = fit(small_panel, config, OptimConfig(
        method="Nelder-Mead", maxiter=2000, compute_hessian=False,
        options={"xatol": 1e-8, "fatol": 1e-12},
    ))
    assert nelder.loglik == pytest.approx(bfgs.loglik, abs=1e-3)


def test_covariate_centring(small_panel):
    """Test baseline intensities refer to the mean covariate value when centred."""
    config = ModelConfig(state_transitions=get_test_state_transitions(), covariates=["sex"])
    fitted = fit(small_panel, config)
    mean_sex = small_panel.df["sex"].mean()
    assert fitted.model.covariate_means.item() == pytest.approx(mean_sex)

    Q_default = fitted.qmatrix().to_numpy()
    Q_at_mean = fitted.qmatrix({"sex": mean_sex}).to_numpy()
    np.testing.assert_allclose(Q_default, Q_at_mean)
    with pytest.raises(ValueError, match="Unknown covariates"):
        fitted.qmatrix({"age": 50})


def test_warm_start_from_estimates(small_panel):
    """Test refitting from the estimates returns them unchanged."""
    config = ModelConfig(state_transitions=get_test_state_transitions())
    fitted = fit(small_panel, config)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        refit = fit(small_panel, config, initial_theta=fitted.estimates)
    np.testing.assert_allclose(refit.estimates, fitted.estimates, atol=1e-4)
    with pytest.raises(ValueError, match="initial_theta"):
        fit(small_panel, config, initial_theta=np.zeros(5))


def test_fit_many(small_panel):
    """Test several variants fit independently, serially and in worker processes."""
    configs = {
        "null": ModelConfig(state_transitions=get_test_state_transitions()),
        "sex": ModelConfig(state_transitions=get_test_state_transitions(), covariates=["sex"]),
    }
    optim_config = OptimConfig(compute_hessian=False)
    serial = fit_many(small_panel, configs, optim_config)
    parallel = fit_many(small_panel, configs, optim_config, n_jobs=2)

    assert set(serial) == set(parallel) == {"null", "sex"}
    assert serial["sex"].n_params == 4
    for name in configs:
        np.testing.assert_allclose(parallel[name].estimates, serial[name].estimates, rtol=1e-6)
