"""CT->DT discretization of the grey-box thermal model.

Implements the operations needed to turn physical constants into the discrete
linear-Gaussian system used by the smoother:

1. Physical generator: F = M^-1 (K - h_a diag(a)), K conduction (zero row sums)
2. Augmented generator: [[F, M^-1], [0, -lambda I]] for the latent residual
3. Matrix exponential: A = exp(G_aug * dt)
4. Closed-form process noise of the Matern-1/2 block (analytic_q)
5. Van Loan matrix fraction for generic white-noise intensities (van_loan_q)
6. Input matrix: B = [G; 0] * dt, or exact zero-order hold

Everything below validate_physical_params is pure and traceable, so the
hyperparameter optimizer can differentiate through it.
"""

from typing import Literal

import jax.numpy as jnp
import jax.scipy.linalg as jla
import numpy as np

from greybox_thermal.models.errors import DimensionMismatch, InvalidParameters
from greybox_thermal.models.ssm.base import (
    N_BLOCKS,
    N_INPUTS,
    Hyperparams,
    PhysicalParams,
    StateSpace,
)

# Minimum |mu_i + lambda| * dt before a resonant mode is nudged off resonance
RESONANCE_TOL = 1e-5


def validate_physical_params(params: PhysicalParams, dt: float | None = None) -> None:
    """Raise InvalidParameters / DimensionMismatch for non-physical inputs."""
    mcp = np.asarray(params.mcp, dtype=float)
    area = np.asarray(params.area, dtype=float)
    if mcp.shape != (N_BLOCKS,) or area.shape != (N_BLOCKS,):
        raise DimensionMismatch(
            f"mcp and area must have shape ({N_BLOCKS},), got {mcp.shape} and {area.shape}"
        )
    if np.any(mcp <= 0) or not np.all(np.isfinite(mcp)):
        raise InvalidParameters(f"mcp must be finite and positive, got {mcp.tolist()}")
    if np.any(area <= 0) or not np.all(np.isfinite(area)):
        raise InvalidParameters(f"area must be finite and positive, got {area.tolist()}")
    for name in ("k12", "k23", "h_a"):
        value = float(getattr(params, name))
        if value < 0 or not np.isfinite(value):
            raise InvalidParameters(f"{name} must be finite and non-negative, got {value}")
    if not np.isfinite(float(params.tau_a)):
        raise InvalidParameters(f"tau_a must be finite, got {params.tau_a}")
    if dt is not None and not float(dt) > 0:
        raise InvalidParameters(f"dt must be positive, got {dt}")


def conduction_matrix(k12: float, k23: float) -> jnp.ndarray:
    """Symmetric tridiagonal conduction coupling with zero row sums.

    K[i, j] = k_ij for neighbours and K[i, i] = -sum_j k_ij, so conduction
    only moves heat between blocks and never creates it.
    """
    return jnp.array(
        [
            [-k12, k12, 0.0],
            [k12, -(k12 + k23), k23],
            [0.0, k23, -k23],
        ]
    )


def physical_generator(params: PhysicalParams) -> jnp.ndarray:
    """Continuous-time state matrix F = M^-1 (K - h_a diag(a))."""
    mcp = jnp.asarray(params.mcp, dtype=float)
    area = jnp.asarray(params.area, dtype=float)
    K = conduction_matrix(params.k12, params.k23)
    return (K - params.h_a * jnp.diag(area)) / mcp[:, None]


def input_gain(params: PhysicalParams) -> jnp.ndarray:
    """G = M^-1 [h_a a | I] mapping (ambient, heater inputs) to dT/dt."""
    mcp = jnp.asarray(params.mcp, dtype=float)
    area = jnp.asarray(params.area, dtype=float)
    gain = jnp.concatenate([(params.h_a * area)[:, None], jnp.eye(N_BLOCKS)], axis=1)
    return gain / mcp[:, None]


def augmented_generator(F: jnp.ndarray, Minv: jnp.ndarray, decay) -> jnp.ndarray:
    """Block generator [[F, M^-1], [0, -lambda I]] of temperatures + residual channels."""
    n = F.shape[0]
    top = jnp.concatenate([F, Minv], axis=1)
    bottom = jnp.concatenate([jnp.zeros((n, n)), -decay * jnp.eye(n)], axis=1)
    return jnp.concatenate([top, bottom], axis=0)


def _exprel(z):
    """(exp(z) - 1) / z with its series near 0."""
    small = jnp.abs(z) < 1e-5
    z_safe = jnp.where(small, 1.0, z)
    return jnp.where(small, 1.0 + z / 2.0 + z**2 / 6.0, jnp.expm1(z_safe) / z_safe)


def _integrated_exp(c, dt):
    """E(c) = int_0^dt exp(c t) dt."""
    return dt * _exprel(c * dt)


def analytic_q(
    F: jnp.ndarray,
    Minv: jnp.ndarray,
    decay,
    output_scale,
    dt: float,
) -> jnp.ndarray:
    """Closed-form process noise of the augmented Matern-1/2 system.

    Q = int_0^dt exp(G t) [0; I] Qc [0; I]' exp(G t)' dt,   Qc = 2 lambda gamma^2

    with G = [[F, M^-1], [0, -lambda I]]. F is similar to the symmetric matrix
    S = M^(1/2) F M^(-1/2), so with S = U diag(mu) U', V = M^(-1/2) U and
    W = U' M^(-1/2) the top-right block of exp(G t) is

        Phi12(t) = V diag((exp(mu_i t) - exp(-lambda t)) / (mu_i + lambda)) W

    and every block of Q is a combination of E(c) = int_0^dt exp(c t) dt:

        Q22 = Qc E(-2 lambda) I
        Q12 = Qc V diag([E(mu_i - lambda) - E(-2 lambda)] / (mu_i + lambda)) W
        Q11 = Qc V (Gamma o W W') V'
        Gamma_ij = [E(mu_i + mu_j) - E(mu_i - lambda) - E(mu_j - lambda) + E(-2 lambda)]
                   / ((mu_i + lambda)(mu_j + lambda))

    Args:
        F: (n, n) physical generator
        Minv: (n, n) diagonal inverse heat capacities
        decay: lambda = sqrt(3) / l
        output_scale: gamma
        dt: sample interval

    Returns:
        Q: (2n, 2n) symmetric PSD process-noise covariance
    """
    n = F.shape[0]
    spectral_density = 2.0 * decay * output_scale**2

    inv_sqrt_m = jnp.sqrt(jnp.diag(Minv))  # M^(-1/2)
    sqrt_m = 1.0 / inv_sqrt_m  # M^(1/2)
    S = sqrt_m[:, None] * F * inv_sqrt_m[None, :]
    S = 0.5 * (S + S.T)
    mu, U = jnp.linalg.eigh(S)
    V = inv_sqrt_m[:, None] * U
    W = U.T * inv_sqrt_m[None, :]

    # Nudge modes sitting on the resonance mu_i = -lambda
    tol = RESONANCE_TOL / dt
    gap = mu + decay
    gap = jnp.where(jnp.abs(gap) < tol, jnp.where(gap < 0, -tol, tol), gap)
    mu = gap - decay

    e_2l = _integrated_exp(-2.0 * decay, dt)
    e_ml = _integrated_exp(mu - decay, dt)
    e_mm = _integrated_exp(mu[:, None] + mu[None, :], dt)

    cross = (e_ml - e_2l) / gap
    gamma_mat = (e_mm - e_ml[:, None] - e_ml[None, :] + e_2l) / (gap[:, None] * gap[None, :])

    Q11 = V @ (gamma_mat * (W @ W.T)) @ V.T
    Q12 = V @ (cross[:, None] * W)
    Q22 = e_2l * jnp.eye(n)

    Q = spectral_density * jnp.block([[Q11, Q12], [Q12.T, Q22]])
    return 0.5 * (Q + Q.T)


def van_loan_q(
    generator: jnp.ndarray,
    noise_gain: jnp.ndarray,
    spectral_density,
    dt: float,
) -> jnp.ndarray:
    """Discrete process noise via the matrix fraction decomposition.

    Augmented system:
    [A  L Qc L']          [exp(A dt)  X           ]
    [0  -A'    ] * dt --> [0          exp(-A' dt) ]

    Q_dt = X exp(A dt)'.

    Args:
        generator: (n, n) continuous generator A
        noise_gain: (n, m) noise input matrix L
        spectral_density: scalar or (m, m) white-noise spectral density Qc
        dt: time interval

    Returns:
        Q_dt: (n, n) discrete process-noise covariance
    """
    n = generator.shape[0]
    spectral_density = jnp.asarray(spectral_density, dtype=float)
    if spectral_density.ndim == 0:
        noise_cov = spectral_density * noise_gain @ noise_gain.T
    else:
        noise_cov = noise_gain @ spectral_density @ noise_gain.T

    aug = jnp.zeros((2 * n, 2 * n))
    aug = aug.at[:n, :n].set(generator)
    aug = aug.at[:n, n:].set(noise_cov)
    aug = aug.at[n:, n:].set(-generator.T)

    aug_exp = jla.expm(aug * dt)
    discrete_drift = aug_exp[:n, :n]
    Q = aug_exp[:n, n:] @ discrete_drift.T
    return 0.5 * (Q + Q.T)


def zoh_input_matrix(generator: jnp.ndarray, gain: jnp.ndarray, dt: float) -> jnp.ndarray:
    """Exact zero-order-hold input matrix int_0^dt exp(A s) ds Bc.

    Read off the top-right block of exp([[A, Bc], [0, 0]] dt).
    """
    n, m = gain.shape
    aug = jnp.zeros((n + m, n + m))
    aug = aug.at[:n, :n].set(generator)
    aug = aug.at[:n, n:].set(gain)
    return jla.expm(aug * dt)[:n, n:]


def _as_covariance(value, n: int, name: str) -> jnp.ndarray:
    """Accept a scalar variance, a (n,) diagonal or a full (n, n) covariance."""
    arr = jnp.asarray(value, dtype=float)
    if arr.ndim == 0:
        return arr * jnp.eye(n)
    if arr.shape == (n,):
        return jnp.diag(arr)
    if arr.shape == (n, n):
        return arr
    raise DimensionMismatch(f"{name} must be scalar, ({n},) or ({n}, {n}); got {arr.shape}")


def build_state_space(
    params: PhysicalParams,
    dt: float,
    hyper: Hyperparams | None = None,
    obs_cov=1e-3,
    m0: jnp.ndarray | None = None,
    S0=None,
    process_var=0.0,
    input_method: Literal["euler", "zoh"] = "euler",
) -> StateSpace:
    """Build the discrete transition tuple (A, B, Q, C, R, m0, S0).

    With hyper=None the plain model (Dx = 3) is built; otherwise the state is
    augmented with one Matern-1/2 residual channel per block (Dx = 6).

    Args:
        params: physical constants
        dt: sample interval
        hyper: Matern hyperparameters of the residual channels, or None
        obs_cov: measurement noise (scalar, (3,) or (3, 3))
        m0: prior mean of x_0. Default: tau_a for temperatures, 0 for residuals
        S0: prior covariance of x_0. Default: unit variance for temperatures and
            the stationary variance gamma^2 for residual channels
        process_var: white-noise intensity on the temperature states
            (discretized with van_loan_q); 0 disables it
        input_method: "euler" for B = [G; 0] dt, "zoh" for the exact hold

    Returns:
        StateSpace
    """
    validate_physical_params(params, dt)

    F = physical_generator(params)
    Minv = jnp.diag(1.0 / jnp.asarray(params.mcp, dtype=float))
    gain = input_gain(params)

    if hyper is None:
        n_latent = 0
        generator = F
        cont_gain = gain
        Q = jnp.zeros((N_BLOCKS, N_BLOCKS))
    else:
        n_latent = N_BLOCKS
        generator = augmented_generator(F, Minv, hyper.decay)
        cont_gain = jnp.concatenate([gain, jnp.zeros((n_latent, N_INPUTS))], axis=0)
        Q = analytic_q(F, Minv, hyper.decay, hyper.output_scale, dt)

    n_state = N_BLOCKS + n_latent
    if process_var:
        temp_gain = jnp.concatenate([jnp.eye(N_BLOCKS), jnp.zeros((n_latent, N_BLOCKS))], axis=0)
        Q = Q + van_loan_q(generator, temp_gain, process_var, dt)

    A = jla.expm(generator * dt)
    if input_method == "euler":
        B = cont_gain * dt
    elif input_method == "zoh":
        B = zoh_input_matrix(generator, cont_gain, dt)
    else:
        raise ValueError(f"Unknown input_method: {input_method}")

    C = jnp.concatenate([jnp.eye(N_BLOCKS), jnp.zeros((N_BLOCKS, n_latent))], axis=1)
    R = _as_covariance(obs_cov, N_BLOCKS, "obs_cov")

    if m0 is None:
        m0 = jnp.concatenate([jnp.full(N_BLOCKS, float(params.tau_a)), jnp.zeros(n_latent)])
    m0 = jnp.asarray(m0, dtype=float)
    if m0.shape != (n_state,):
        raise DimensionMismatch(f"m0 must have shape ({n_state},), got {m0.shape}")

    if S0 is None:
        latent_var = jnp.ones(n_latent) * (hyper.output_scale**2 if hyper is not None else 1.0)
        S0 = jnp.diag(jnp.concatenate([jnp.ones(N_BLOCKS), latent_var]))
    S0 = _as_covariance(S0, n_state, "S0")

    return StateSpace(A=A, B=B, Q=Q, C=C, R=R, m0=m0, S0=S0)
