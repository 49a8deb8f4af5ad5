"""Tests for the Kalman filter / RTS smoother and the free energy.

Tests core functionality:
1. Predict and update steps (symmetry, missing observations)
2. Exact reproduction of noiseless trajectories
3. Free energy equals the brute-force joint Gaussian likelihood
4. Missing-data handling
5. Error kinds
6. End-to-end accuracy on the reference scenario
"""

from unittest.mock import patch

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from helpers import brute_force_free_energy

from greybox_thermal.models.errors import DimensionMismatch, SingularCovariance
from greybox_thermal.models.ssm.base import Hyperparams
from greybox_thermal.models.ssm.discretization import build_state_space
from greybox_thermal.models.ssm.simulate import (
    NaturalConvectionResidual,
    simulate_continuous,
    simulate_discrete,
    time_grid,
)
from greybox_thermal.models.ssm.smoother import (
    free_energy,
    kalman_filter,
    kalman_predict,
    kalman_update,
    smooth,
)


class TestSteps:
    """Single predict / update steps."""

    def test_predict_is_symmetric(self, rng):
        A = jnp.asarray(rng.normal(size=(4, 4)))
        B = jnp.asarray(rng.normal(size=(4, 2)))
        L = jnp.asarray(rng.normal(size=(4, 4)))
        mean, cov = kalman_predict(jnp.ones(4), L @ L.T, A, B, jnp.ones(2), 0.1 * jnp.eye(4))
        assert jnp.allclose(mean, A @ jnp.ones(4) + B @ jnp.ones(2))
        assert jnp.array_equal(cov, cov.T)

    def test_update_reduces_variance(self):
        C = jnp.eye(2)
        mean, cov, ll = kalman_update(
            jnp.zeros(2), jnp.eye(2), jnp.array([1.0, -1.0]), jnp.ones(2), C, jnp.eye(2)
        )
        assert jnp.allclose(mean, jnp.array([0.5, -0.5]))
        assert jnp.allclose(cov, 0.5 * jnp.eye(2))
        # N(y; 0, 2 I) at y = (1, -1)
        expected = -jnp.log(2 * jnp.pi * 2.0) - 0.5 * (1.0 + 1.0) / 2.0
        assert jnp.allclose(ll, expected)

    def test_fully_missing_update_is_noop(self):
        pred_mean = jnp.array([1.0, 2.0])
        pred_cov = jnp.array([[2.0, 0.3], [0.3, 1.0]])
        mean, cov, ll = kalman_update(
            pred_mean, pred_cov, jnp.zeros(2), jnp.zeros(2), jnp.eye(2), 0.01 * jnp.eye(2)
        )
        assert jnp.allclose(mean, pred_mean)
        assert jnp.allclose(cov, pred_cov, atol=1e-8)
        assert ll == 0.0


class TestSmoother:
    """Forward-backward smoothing on the augmented thermal model."""

    def test_noiseless_trajectory_is_reproduced(self, physical_params, hyper, heater_inputs):
        """Zero injected noise and m0 = x0: the smoothed means equal the truth."""
        ss = build_state_space(physical_params, 1.0, hyper, obs_cov=1e-3)
        times = time_grid(300, 1.0)
        inputs = heater_inputs.sample(times[1:])
        states = simulate_discrete(ss, inputs)
        observations = states[1:, :3]

        result = smooth(ss, observations, inputs)

        scale = float(jnp.max(jnp.abs(states)))
        assert jnp.max(jnp.abs(result.means - states)) <= 1e-6 * scale

    def test_free_energy_matches_brute_force(self, physical_params, hyper, rng):
        ss = build_state_space(physical_params, 1.0, hyper, obs_cov=1e-3)
        inputs = jnp.asarray(np.column_stack([np.full(5, 21.0), rng.uniform(0, 100, (5, 3))]))
        observations = 21.0 + rng.normal(scale=0.5, size=(5, 3))

        result = smooth(ss, observations, inputs)
        expected = brute_force_free_energy(ss, observations, inputs)

        assert np.isclose(float(result.free_energy), expected, rtol=1e-8, atol=1e-8)
        assert np.isclose(float(free_energy(ss, observations, inputs)), expected, rtol=1e-8)

    def test_free_energy_with_process_noise(self, uneven_params, rng):
        ss = build_state_space(
            uneven_params, 2.0, Hyperparams(8.0, 4.0), obs_cov=2e-3, process_var=0.05
        )
        inputs = jnp.asarray(rng.uniform(0, 50, (5, 4)))
        observations = 18.0 + rng.normal(size=(5, 3))
        expected = brute_force_free_energy(ss, observations, inputs)
        assert np.isclose(float(smooth(ss, observations, inputs).free_energy), expected, rtol=1e-8)

    def test_missing_observations_marginalized(self, physical_params, hyper, rng):
        ss = build_state_space(physical_params, 1.0, hyper, obs_cov=1e-3)
        inputs = jnp.asarray(np.column_stack([np.full(5, 21.0), rng.uniform(0, 100, (5, 3))]))
        observations = 21.0 + rng.normal(scale=0.5, size=(5, 3))
        observations[1, 2] = np.nan
        observations[3, :] = np.nan

        result = smooth(ss, observations, inputs)

        assert jnp.all(jnp.isfinite(result.means))
        assert np.isclose(
            float(result.free_energy),
            brute_force_free_energy(ss, observations, inputs),
            rtol=1e-8,
        )

    def test_explicit_mask_matches_nan(self, augmented_data):
        ss = augmented_data["ss"]
        observations = np.array(augmented_data["observations"])
        mask = np.ones(observations.shape, dtype=bool)
        mask[10:20, 0] = False
        with_nan = observations.copy()
        with_nan[~mask] = np.nan

        by_mask = smooth(ss, observations, augmented_data["inputs"], obs_mask=jnp.asarray(mask))
        by_nan = smooth(ss, with_nan, augmented_data["inputs"])

        assert jnp.allclose(by_mask.means, by_nan.means)
        assert jnp.allclose(by_mask.free_energy, by_nan.free_energy)

    def test_covariances_symmetric_psd(self, augmented_data):
        result = smooth(augmented_data["ss"], augmented_data["observations"], augmented_data["inputs"])
        covs = result.covs
        assert covs.shape == (201, 6, 6)
        assert jnp.allclose(covs, jnp.swapaxes(covs, 1, 2))
        assert jnp.all(jnp.linalg.eigvalsh(covs) > -1e-10)

    def test_smoothing_does_not_increase_variance(self, augmented_data):
        result = smooth(augmented_data["ss"], augmented_data["observations"], augmented_data["inputs"])
        smoothed_var = jnp.diagonal(result.covs, axis1=1, axis2=2)
        filtered_var = jnp.diagonal(result.filtered_covs, axis1=1, axis2=2)
        assert jnp.all(smoothed_var <= filtered_var + 1e-10)

    def test_last_step_smoothed_equals_filtered(self, augmented_data):
        result = smooth(augmented_data["ss"], augmented_data["observations"], augmented_data["inputs"])
        assert jnp.allclose(result.means[-1], result.filtered_means[-1])
        assert jnp.allclose(result.covs[-1], result.filtered_covs[-1])

    def test_filter_log_likelihood_is_negative_free_energy(self, augmented_data):
        ss = augmented_data["ss"]
        filt = kalman_filter(ss, augmented_data["observations"], augmented_data["inputs"])
        result = smooth(ss, augmented_data["observations"], augmented_data["inputs"])
        assert jnp.allclose(-filt.log_likelihood, result.free_energy)
        assert filt.filtered_means.shape == (201, 6)
        assert filt.predicted_means.shape == (200, 6)

    def test_rank_deficient_prior_on_plain_model(self, physical_params, heater_inputs):
        """Q = 0 and a singular S0 leave every predicted covariance singular."""
        ss = build_state_space(physical_params, 1.0, obs_cov=1e-3, S0=jnp.array([1.0, 1.0, 0.0]))
        times = time_grid(20, 1.0)
        inputs = heater_inputs.sample(times[1:])
        states = simulate_discrete(ss, inputs)

        result = smooth(ss, states[1:], inputs)

        assert jnp.all(jnp.isfinite(result.means))
        assert jnp.all(jnp.isfinite(result.covs))
        scale = float(jnp.max(jnp.abs(states)))
        assert jnp.max(jnp.abs(result.means - states)) <= 1e-6 * scale
        assert jnp.allclose(result.free_energy, free_energy(ss, states[1:], inputs))
        assert jnp.all(jnp.linalg.eigvalsh(result.covs) > -1e-8)

    def test_free_energy_is_differentiable(self, physical_params, augmented_data):
        def fe(log_gamma):
            ss = build_state_space(
                physical_params, 1.0, Hyperparams(30.0, jnp.exp(log_gamma)), obs_cov=1e-3
            )
            return free_energy(ss, augmented_data["observations"], augmented_data["inputs"])

        grad = jax.grad(fe)(jnp.log(2.0))
        assert jnp.isfinite(grad)


class TestErrors:
    """Error kinds raised by smooth()."""

    def test_non_positive_definite_measurement_noise(self, augmented_data):
        ss = augmented_data["ss"]._replace(R=-1e-3 * jnp.eye(3))
        with pytest.raises(SingularCovariance):
            smooth(ss, augmented_data["observations"], augmented_data["inputs"])

    def test_failing_filter_is_named_in_message(self, augmented_data):
        ss = augmented_data["ss"]._replace(Q=jnp.full((6, 6), jnp.nan))
        with pytest.raises(SingularCovariance, match="Forward filter"):
            smooth(ss, augmented_data["observations"], augmented_data["inputs"])

    def test_failing_backward_pass_is_named_in_message(self, augmented_data):
        ss = augmented_data["ss"]
        obs, inputs = augmented_data["observations"], augmented_data["inputs"]
        result = smooth(ss, obs, inputs)
        broken = result._replace(means=result.means.at[0, 0].set(jnp.nan))
        with patch("greybox_thermal.models.ssm.smoother._smooth", return_value=broken):
            with pytest.raises(SingularCovariance, match="backward pass"):
                smooth(ss, obs, inputs)

    def test_observation_width(self, augmented_data):
        with pytest.raises(DimensionMismatch):
            smooth(
                augmented_data["ss"],
                augmented_data["observations"][:, :2],
                augmented_data["inputs"],
            )

    def test_input_length(self, augmented_data):
        with pytest.raises(DimensionMismatch):
            smooth(
                augmented_data["ss"],
                augmented_data["observations"],
                augmented_data["inputs"][:-1],
            )

    def test_mask_shape(self, augmented_data):
        with pytest.raises(DimensionMismatch):
            smooth(
                augmented_data["ss"],
                augmented_data["observations"],
                augmented_data["inputs"],
                obs_mask=jnp.ones((5, 3), dtype=bool),
            )

    def test_system_matrix_shape(self, augmented_data):
        ss = augmented_data["ss"]._replace(Q=jnp.eye(5))
        with pytest.raises(DimensionMismatch):
            smooth(ss, augmented_data["observations"], augmented_data["inputs"])


class TestEndToEnd:
    """Reference scenario: T=1000, dt=1, R=1e-3 I, x0=[21, 21, 21]."""

    @pytest.mark.slow
    @pytest.mark.timeout(300)
    def test_smoothed_trajectory_mse(self, physical_params):
        def inputs_at(t):
            q1 = 150.0 if 50.0 <= t < 600.0 else 0.0
            q2 = 80.0 if (t >= 100.0 and (t - 100.0) % 200.0 < 100.0) else 0.0
            return np.array([21.0, q1, q2, 0.0])

        times = time_grid(1000, 1.0)
        truth = simulate_continuous(
            physical_params,
            inputs_at,
            times,
            [21.0, 21.0, 21.0],
            residual=NaturalConvectionResidual(h_nl=0.5, tau_a=21.0, area=[1.0, 1.0, 1.0]),
            max_step=1.0,
        )
        rng = np.random.default_rng(7)
        observations = truth[1:] + rng.normal(scale=np.sqrt(1e-3), size=(1000, 3))
        inputs = np.stack([inputs_at(t) for t in times[1:]])

        ss = build_state_space(
            physical_params,
            1.0,
            Hyperparams(50.0, 10.0),
            obs_cov=1e-3,
            m0=jnp.array([21.0, 21.0, 21.0, 0.0, 0.0, 0.0]),
        )
        result = smooth(ss, observations, inputs)

        mse = float(jnp.mean((result.means[:, :3] - truth) ** 2))
        assert mse < 0.05
