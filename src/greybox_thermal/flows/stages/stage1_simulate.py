"""Stage 1: Ground-truth simulation and noisy measurements.

The true system carries the nonlinear natural-convection remainder; it is
integrated with solve_ivp and observed through the three temperature sensors.
Recorded measurements can be loaded from a CSV instead.
"""

import logging

import jax.numpy as jnp
import jax.random as random
import numpy as np
from prefect import task

from greybox_thermal.models.errors import InvalidParameters
from greybox_thermal.models.inputs import SampledInputs
from greybox_thermal.models.ssm.base import N_BLOCKS
from greybox_thermal.models.ssm.simulate import (
    NaturalConvectionResidual,
    observation_matrix,
    observe,
    simulate_continuous,
    time_grid,
)
from greybox_thermal.utils.config import IdentificationConfig
from greybox_thermal.utils.data import load_measurements

logger = logging.getLogger(__name__)


@task(task_run_name="simulate-measurements")
def simulate_measurements(config: IdentificationConfig, seed: int = 0) -> dict:
    """Simulate the nonlinear system and draw noisy measurements.

    Args:
        config: pipeline configuration
        seed: PRNG seed for the measurement noise

    Returns:
        Dict with times (T+1,), truth (T+1, 3), observations (T, 3) for
        k = 1..T, inputs (T, 4) u_1..u_T, the true residual callable and
        the continuous input function u(t)
    """
    sim = config.simulation
    params = config.physical.to_params()
    generator = config.inputs.to_generator()

    times = time_grid(sim.n_steps, sim.dt, sim.t0)
    residual = NaturalConvectionResidual(
        h_nl=sim.h_nl,
        tau_a=config.physical.tau_a,
        area=config.physical.area,
        exponent=sim.exponent,
    )
    truth = simulate_continuous(
        params,
        lambda t: np.asarray(generator(t)),
        times,
        sim.x0,
        residual=residual,
        rtol=sim.rtol,
        atol=sim.atol,
        max_step=sim.dt,
    )

    R = config.noise.obs_var * jnp.eye(N_BLOCKS)
    observations = observe(jnp.asarray(truth), observation_matrix(N_BLOCKS), R, random.PRNGKey(seed))
    inputs = generator.sample(times[1:])

    logger.info(
        "Simulated %d steps (dt=%g); temperature range %.2f..%.2f",
        sim.n_steps,
        sim.dt,
        float(truth.min()),
        float(truth.max()),
    )
    return {
        "times": times,
        "truth": truth,
        "observations": np.asarray(observations),
        "inputs": np.asarray(inputs),
        "residual": residual,
        "input_fn": lambda t: np.asarray(generator(t)),
    }


@task(task_run_name="load-measurements")
def load_measurements_task(path: str, config: IdentificationConfig) -> dict:
    """Read measured temperatures and inputs in place of the simulation.

    Samples must be spaced by the configured dt; x_0 sits one step before the
    first sample. There is no ground truth, so `truth` and `residual` are None
    and validation falls back to the measurements.
    """
    sim = config.simulation
    times, observations, inputs = load_measurements(path)
    steps = np.diff(times)
    if times.shape[0] < 2 or not np.allclose(steps, sim.dt, rtol=1e-6):
        raise InvalidParameters(f"{path}: samples must be uniformly spaced by dt={sim.dt}")

    logger.info("Loaded %d measurements from %s", times.shape[0], path)
    return {
        "times": np.concatenate([[times[0] - sim.dt], times]),
        "truth": None,
        "observations": observations,
        "inputs": inputs,
        "residual": None,
        "input_fn": SampledInputs(times, inputs),
    }
