"""Shared fixtures for the identification tests.

This module provides reusable fixtures to reduce duplication across test files:
- Physical parameter sets (the reference three-block system)
- Input profiles and synthetic data drawn from the discrete model

For non-fixture helpers (brute-force likelihoods), see helpers.py.
"""

import jax.numpy as jnp
import jax.random as random
import numpy as np
import pytest

from greybox_thermal.models.inputs import InputGenerator, Profile, ProfileKind
from greybox_thermal.models.ssm.base import Hyperparams, PhysicalParams
from greybox_thermal.models.ssm.discretization import build_state_space
from greybox_thermal.models.ssm.simulate import observe, simulate_discrete, time_grid

# ══════════════════════════════════════════════════════════════════════════════
# PHYSICAL SYSTEMS
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def physical_params():
    """Reference system: mcp=1000, a=1, k12=k23=10, h_a=2, tau_a=21."""
    return PhysicalParams(
        mcp=jnp.array([1000.0, 1000.0, 1000.0]),
        area=jnp.array([1.0, 1.0, 1.0]),
        k12=10.0,
        k23=10.0,
        h_a=2.0,
        tau_a=21.0,
    )


@pytest.fixture
def uneven_params():
    """Unequal heat capacities and areas (M^-1 F is not symmetric)."""
    return PhysicalParams(
        mcp=jnp.array([500.0, 1200.0, 2500.0]),
        area=jnp.array([0.6, 1.0, 1.8]),
        k12=7.0,
        k23=15.0,
        h_a=3.0,
        tau_a=18.0,
    )


@pytest.fixture
def hyper():
    return Hyperparams(lengthscale=50.0, output_scale=1.0)


# ══════════════════════════════════════════════════════════════════════════════
# INPUTS AND SYNTHETIC DATA
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def heater_inputs():
    """Ambient at 21 degC, one sigmoid heater and one square-wave heater."""
    return InputGenerator(
        ambient=Profile(base=21.0),
        heaters=(
            Profile(ProfileKind.SIGMOID, amplitude=150.0, onset=20.0, offset=120.0, steepness=0.5),
            Profile(ProfileKind.PULSE, amplitude=80.0, onset=10.0, period=40.0, duty=0.5),
            Profile(),
        ),
    )


@pytest.fixture
def augmented_data(physical_params, heater_inputs):
    """Noisy measurements drawn from the augmented discrete model.

    Returns dict with ss, states (T+1, 6), observations (T, 3), inputs (T, 4),
    and the hyperparameters used to generate them.
    """
    true_hyper = Hyperparams(lengthscale=30.0, output_scale=2.0)
    n_steps = 200
    ss = build_state_space(physical_params, 1.0, true_hyper, obs_cov=1e-3)
    times = time_grid(n_steps, 1.0)
    inputs = heater_inputs.sample(times[1:])

    key_w, key_v = random.split(random.PRNGKey(0))
    states = simulate_discrete(ss, inputs, rng_key=key_w)
    observations = observe(states, ss.C, ss.R, rng_key=key_v)
    return {
        "ss": ss,
        "hyper": true_hyper,
        "states": states,
        "observations": observations,
        "inputs": inputs,
        "times": times,
    }


@pytest.fixture
def rng():
    return np.random.default_rng(42)
