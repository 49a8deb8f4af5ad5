"""Tests for the pipeline stages (task bodies called through .fn)."""

import dataclasses

import numpy as np
import pytest

from greybox_thermal.flows.stages import (
    fit_residuals,
    load_measurements_task,
    optimize_hyperparameters_task,
    simulate_measurements,
    smooth_states,
    validate_estimates,
)
from greybox_thermal.models.errors import InvalidParameters
from greybox_thermal.utils.config import IdentificationConfig, parse_config
from greybox_thermal.utils.data import measurement_frame


@pytest.fixture
def small_config() -> IdentificationConfig:
    config = parse_config(
        {
            "simulation": {"n_steps": 150, "dt": 1.0},
            "hyperparams": {"max_iter": 5, "deadline": 120.0},
            "inputs": {
                "ambient": {"kind": "constant", "base": 21.0},
                "heaters": [
                    {"kind": "sigmoid", "amplitude": 200.0, "onset": 10.0, "offset": 100.0, "steepness": 0.5},
                    {"kind": "pulse", "amplitude": 100.0, "onset": 5.0, "period": 50.0},
                    {"kind": "constant"},
                ],
            },
        }
    )
    return config


@pytest.fixture
def measurements(small_config):
    return simulate_measurements.fn(small_config, seed=1)


class TestSimulateStage:
    def test_shapes(self, measurements):
        assert measurements["times"].shape == (151,)
        assert measurements["truth"].shape == (151, 3)
        assert measurements["observations"].shape == (150, 3)
        assert measurements["inputs"].shape == (150, 4)

    def test_heating_raises_temperature(self, measurements):
        assert measurements["truth"][:, 0].max() > 22.0

    def test_seed_controls_noise(self, small_config, measurements):
        again = simulate_measurements.fn(small_config, seed=1)
        other = simulate_measurements.fn(small_config, seed=2)
        assert np.array_equal(again["observations"], measurements["observations"])
        assert not np.allclose(other["observations"], measurements["observations"])


class TestSmoothStage:
    def test_tracks_truth(self, small_config, measurements):
        result = smooth_states.fn(measurements, small_config)
        assert result.means.shape == (151, 6)
        mse = np.mean((np.asarray(result.means[:, :3]) - measurements["truth"]) ** 2)
        assert mse < 0.05



class TestRecordedMeasurements:
    @pytest.fixture
    def csv_path(self, tmp_path, measurements):
        path = tmp_path / "measurements.csv"
        observations = measurements["observations"].copy()
        observations[40:45, 1] = np.nan
        measurement_frame(measurements["times"][1:], observations, measurements["inputs"]).write_csv(path)
        return str(path)

    def test_load_matches_simulated_layout(self, small_config, measurements, csv_path):
        data = load_measurements_task.fn(csv_path, small_config)
        assert data["truth"] is None
        assert np.allclose(data["times"], measurements["times"])
        assert np.allclose(data["inputs"], measurements["inputs"])
        assert np.isnan(data["observations"][40, 1])
        assert np.allclose(data["input_fn"].sample(data["times"][1:]), measurements["inputs"])

    def test_validates_against_observations(self, small_config, csv_path):
        data = load_measurements_task.fn(csv_path, small_config)
        smoothed, posteriors = fit_residuals.fn(data, small_config, small_config.hyperparams.initial)
        report = validate_estimates.fn(data, small_config, smoothed, posteriors)

        assert report["reference"] == "observations"
        assert report["smoother_mse"] < 0.05
        assert np.isfinite(report["resimulation_mse"])
        assert report["resimulated"].shape == (151, 3)

    def test_irregular_spacing_rejected(self, tmp_path, small_config):
        path = tmp_path / "irregular.csv"
        times = np.array([1.0, 2.0, 4.0])
        measurement_frame(times, np.full((3, 3), 21.0), np.zeros((3, 4))).write_csv(path)
        with pytest.raises(InvalidParameters):
            load_measurements_task.fn(str(path), small_config)


@pytest.mark.slow
@pytest.mark.timeout(900)
class TestDownstreamStages:
    def test_optimize_fit_validate(self, small_config, measurements):
        hyper_result = optimize_hyperparameters_task.fn(measurements, small_config)
        assert hyper_result.lengthscale > 0 and hyper_result.output_scale > 0
        assert hyper_result.n_iter <= small_config.hyperparams.max_iter

        smoothed, posteriors = fit_residuals.fn(measurements, small_config, hyper_result.hyperparams)
        assert len(posteriors) == 3
        assert all(post.degree == small_config.residual.degree for post in posteriors)
        assert all(post.shift == small_config.physical.tau_a for post in posteriors)

        report = validate_estimates.fn(measurements, small_config, smoothed, posteriors)
        assert report["reference"] == "truth"
        assert report["smoother_mse"] < 0.05
        assert np.isfinite(report["resimulation_mse"])
        assert report["resimulated"].shape == (151, 3)
        assert len(report["resimulation_mse_per_block"]) == 3

    def test_strict_budget_propagates(self, small_config, measurements):
        from greybox_thermal.models.errors import NonConvergence

        hp = dataclasses.replace(small_config.hyperparams, max_iter=1, tol=1e-12, strict=True)
        config = dataclasses.replace(small_config, hyperparams=hp)
        with pytest.raises(NonConvergence):
            optimize_hyperparameters_task.fn(measurements, config)
