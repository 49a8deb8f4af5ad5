"""Parameter types for the grey-box thermal state-space model.

The physical system is three lumped thermal masses in a chain:

    mcp_i dT_i/dt = sum_j k_ij (T_j - T_i) + h_a a_i (tau_a - T_i) + r_i(T_i) + q_i(t)

where r_i is the nonlinear convective remainder. The grey-box model keeps the
linear part exact and tracks r_i as a latent Matern-1/2 channel h_i:

    d[T; h] = [[F, M^-1], [0, -lambda I]] [T; h] dt + [G; 0] u dt + [0; I] dW

with u = [tau_a, q_1, q_2, q_3] and observations y = T + noise.
"""

from typing import NamedTuple

import jax.numpy as jnp

N_BLOCKS = 3  # Dt = Dy: one measured temperature per block
N_INPUTS = N_BLOCKS + 1  # ambient temperature + one heater per block
MISSING_DATA_LARGE_VAR = 1e10


class PhysicalParams(NamedTuple):
    """Physical constants of the three-block system.

    mcp: (3,) mass x specific heat products [J/K]
    area: (3,) convective surface areas [m^2]
    k12, k23: conduction coefficients between neighbouring blocks [W/K]
    h_a: linear convection coefficient to ambient [W/(m^2 K)]
    tau_a: nominal ambient temperature [degC]
    """

    mcp: jnp.ndarray
    area: jnp.ndarray
    k12: float
    k23: float
    h_a: float
    tau_a: float


class Hyperparams(NamedTuple):
    """Matern-1/2 hyperparameters of the latent residual channels."""

    lengthscale: float  # l > 0, time units
    output_scale: float  # gamma > 0, W

    @property
    def decay(self):
        """lambda = sqrt(3) / l."""
        return jnp.sqrt(3.0) / self.lengthscale

    @property
    def spectral_density(self):
        """Qc = 2 lambda gamma^2."""
        return 2.0 * self.decay * self.output_scale**2


class StateSpace(NamedTuple):
    """Discrete linear-Gaussian system.

        x_k = A x_{k-1} + B u_k + w_k,   w_k ~ N(0, Q)
        y_k = C x_k + v_k,               v_k ~ N(0, R)
        x_0 ~ N(m0, S0)
    """

    A: jnp.ndarray  # (Dx, Dx)
    B: jnp.ndarray  # (Dx, Du)
    Q: jnp.ndarray  # (Dx, Dx)
    C: jnp.ndarray  # (Dy, Dx)
    R: jnp.ndarray  # (Dy, Dy)
    m0: jnp.ndarray  # (Dx,)
    S0: jnp.ndarray  # (Dx, Dx)

    @property
    def n_state(self) -> int:
        return self.A.shape[0]

    @property
    def n_obs(self) -> int:
        return self.C.shape[0]

    @property
    def n_input(self) -> int:
        return self.B.shape[1]


def preprocess_missing_data(
    observations: jnp.ndarray,
    obs_mask: jnp.ndarray | None,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Replace missing observations with 0 and return a float mask.

    Args:
        observations: (T, Dy) raw observations (may contain NaN)
        obs_mask: (T, Dy) boolean mask (True = observed), or None

    Returns:
        clean_obs: (T, Dy) observations with NaN replaced by 0
        mask: (T, Dy) float mask, 1.0 where observed
    """
    if obs_mask is None:
        obs_mask = ~jnp.isnan(observations)
    clean_obs = jnp.where(obs_mask, jnp.nan_to_num(observations, nan=0.0), 0.0)
    return clean_obs, obs_mask.astype(clean_obs.dtype)
