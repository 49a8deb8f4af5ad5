"""Forward simulation of the thermal system.

Two simulators:
- simulate_continuous: the governing (possibly nonlinear) ODE integrated with
  scipy's solve_ivp. Used for ground-truth data and for re-simulating with
  estimated parameters.
- simulate_discrete: the discrete linear-Gaussian model rolled forward with
  lax.scan. Used for synthetic data that matches the smoother's model exactly.

Time convention: t_k = t_0 + k dt for k = 0..T; u_k = u(t_k) and y_k is
measured at t_k for k = 1..T.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass

import jax.numpy as jnp
import jax.random as random
import numpy as np
from jax import lax
from scipy.integrate import solve_ivp

from greybox_thermal.models.ssm.base import N_BLOCKS, PhysicalParams, StateSpace
from greybox_thermal.models.ssm.discretization import (
    input_gain,
    physical_generator,
    validate_physical_params,
)

ResidualFn = Callable[[np.ndarray], np.ndarray]
InputFn = Callable[[float], np.ndarray]


@dataclass(frozen=True)
class NaturalConvectionResidual:
    """Nonlinear convective remainder r_i(T) = -h_nl a_i |T_i - tau_a|^(e-1) (T_i - tau_a).

    The default exponent 4/3 is the laminar natural-convection law
    (h proportional to dT^(1/3)).
    """

    h_nl: float
    tau_a: float
    area: Sequence[float]
    exponent: float = 4.0 / 3.0

    def __call__(self, temps):
        delta = jnp.asarray(temps) - self.tau_a
        return -self.h_nl * jnp.asarray(self.area) * jnp.abs(delta) ** (self.exponent - 1.0) * delta


@dataclass(frozen=True)
class PolynomialResidual:
    """Residual built from one fitted polynomial posterior per block."""

    posteriors: Sequence  # Sequence[PolynomialPosterior]

    def __call__(self, temps):
        temps = jnp.atleast_1d(jnp.asarray(temps))
        return jnp.stack(
            [post.predict(temps[i : i + 1])[0][0] for i, post in enumerate(self.posteriors)]
        )


def time_grid(n_steps: int, dt: float, t0: float = 0.0) -> np.ndarray:
    """(n_steps + 1,) sample times t_0..t_T."""
    return t0 + dt * np.arange(n_steps + 1)


def thermal_derivative(
    t: float,
    temps: np.ndarray,
    F: np.ndarray,
    G: np.ndarray,
    mcp: np.ndarray,
    inputs: InputFn,
    residual: ResidualFn | None = None,
) -> np.ndarray:
    """dT/dt = F T + G u(t) + M^-1 r(T)."""
    dT = F @ temps + G @ np.asarray(inputs(t), dtype=float)
    if residual is not None:
        dT = dT + np.asarray(residual(temps), dtype=float) / mcp
    return dT


def simulate_continuous(
    params: PhysicalParams,
    inputs: InputFn,
    t_eval: np.ndarray,
    x0: Sequence[float],
    residual: ResidualFn | None = None,
    method: str = "RK45",
    rtol: float = 1e-8,
    atol: float = 1e-8,
    max_step: float = np.inf,
) -> np.ndarray:
    """Integrate the governing ODE and sample it at t_eval.

    Args:
        params: physical constants
        inputs: callable t -> (4,) input vector [tau_a, q_1, q_2, q_3]
        t_eval: (N,) increasing sample times; integration starts at t_eval[0]
        x0: (3,) temperatures at t_eval[0]
        residual: callable T -> (3,) nonlinear heat flows, or None for the linear model
        method, rtol, atol, max_step: forwarded to scipy.integrate.solve_ivp

    Returns:
        (N, 3) temperatures
    """
    validate_physical_params(params)
    F = np.asarray(physical_generator(params))
    G = np.asarray(input_gain(params))
    mcp = np.asarray(params.mcp, dtype=float)
    t_eval = np.asarray(t_eval, dtype=float)

    sol = solve_ivp(
        thermal_derivative,
        (t_eval[0], t_eval[-1]),
        np.asarray(x0, dtype=float),
        method=method,
        t_eval=t_eval,
        args=(F, G, mcp, inputs, residual),
        rtol=rtol,
        atol=atol,
        max_step=max_step,
    )
    if not sol.success:
        raise RuntimeError(f"ODE integration failed: {sol.message}")
    return sol.y.T


def simulate_discrete(
    ss: StateSpace,
    inputs: jnp.ndarray,
    x0: jnp.ndarray | None = None,
    rng_key: jnp.ndarray | None = None,
) -> jnp.ndarray:
    """Roll the discrete model x_k = A x_{k-1} + B u_k + w_k forward.

    Args:
        ss: discrete system
        inputs: (T, Du) u_1..u_T
        x0: (Dx,) initial state; defaults to ss.m0
        rng_key: JAX PRNG key for process noise; None gives the noiseless path

    Returns:
        (T+1, Dx) states x_0..x_T
    """
    n_state = ss.n_state
    x0 = ss.m0 if x0 is None else jnp.asarray(x0, dtype=float)
    inputs = jnp.asarray(inputs, dtype=float)

    if rng_key is None:
        noise = jnp.zeros((inputs.shape[0], n_state))
    else:
        Q_chol = jnp.linalg.cholesky(ss.Q + jnp.eye(n_state) * 1e-12)
        noise = random.normal(rng_key, (inputs.shape[0], n_state)) @ Q_chol.T

    def scan_fn(x_prev, step_inputs):
        u, w = step_inputs
        x = ss.A @ x_prev + ss.B @ u + w
        return x, x

    _, states = lax.scan(scan_fn, x0, (inputs, noise))
    return jnp.concatenate([x0[None], states], axis=0)


def observe(
    states: jnp.ndarray,
    C: jnp.ndarray,
    R: jnp.ndarray,
    rng_key: jnp.ndarray | None = None,
) -> jnp.ndarray:
    """Measurements y_k = C x_k + v_k for k = 1..T.

    Args:
        states: (T+1, Dx) x_0..x_T
        C: (Dy, Dx) observation matrix
        R: (Dy, Dy) measurement covariance
        rng_key: PRNG key; None gives noiseless measurements

    Returns:
        (T, Dy) observations
    """
    y = jnp.asarray(states)[1:] @ C.T
    if rng_key is None:
        return y
    R_chol = jnp.linalg.cholesky(R)
    return y + random.normal(rng_key, y.shape) @ R_chol.T


def observation_matrix(n_state: int) -> jnp.ndarray:
    """C = [I_3 | 0] picking the temperatures out of an n_state vector."""
    return jnp.eye(N_BLOCKS, n_state)
