"""Hyperparameter optimization over the free-energy surface.

Minimizes

    J(l, gamma) = FreeEnergy(l, gamma) - log p(l) - log p(gamma)

with independent Gamma priors, using L-BFGS (optax) on unconstrained
coordinates z = T^-1(theta) where T is the numpyro bijection onto the box
bounds. Gradients flow through the full transition builder -> analytic Q ->
Kalman filter pipeline via jax.value_and_grad.

After optimization a Laplace approximation gives the posterior covariance of
(l, gamma) as the inverse Hessian of J at the minimizer.

The surface is not convex; the optimizer returns a local minimum that
depends on the starting point.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import NamedTuple

import jax
import jax.numpy as jnp
import numpyro.distributions as dist
import optax
from numpyro.distributions import constraints
from numpyro.distributions.transforms import biject_to

from greybox_thermal.models.errors import InvalidParameters, NonConvergence
from greybox_thermal.models.ssm.base import Hyperparams, PhysicalParams
from greybox_thermal.models.ssm.discretization import build_state_space
from greybox_thermal.models.ssm.smoother import free_energy

logger = logging.getLogger(__name__)

Objective = Callable[[jnp.ndarray], jnp.ndarray]


class GammaPrior(NamedTuple):
    """Gamma(shape, rate) prior on a positive hyperparameter."""

    shape: float
    rate: float

    def log_prob(self, x):
        return dist.Gamma(self.shape, self.rate).log_prob(x)


class HyperPriors(NamedTuple):
    """Independent priors on (l, gamma)."""

    lengthscale: GammaPrior
    output_scale: GammaPrior

    def log_prob(self, theta: jnp.ndarray):
        return self.lengthscale.log_prob(theta[0]) + self.output_scale.log_prob(theta[1])


class Bounds(NamedTuple):
    """Box (lower, upper) for one hyperparameter; lower >= 0, upper may be inf."""

    lower: float = 0.0
    upper: float = math.inf

    def constraint(self):
        if math.isfinite(self.upper):
            return constraints.interval(self.lower, self.upper)
        if self.lower > 0:
            return constraints.greater_than(self.lower)
        return constraints.positive


class HyperBounds(NamedTuple):
    lengthscale: Bounds = Bounds()
    output_scale: Bounds = Bounds()


@dataclass
class HyperparamResult:
    """Outcome of optimize_hyperparameters."""

    lengthscale: float
    output_scale: float
    laplace_cov: jnp.ndarray  # (2, 2) covariance of (l, gamma)
    objective: float
    n_iter: int
    converged: bool
    grad_norm: float
    laplace_projected: bool = False
    history: list[float] = field(default_factory=list)
    message: str = ""

    @property
    def hyperparams(self) -> Hyperparams:
        return Hyperparams(self.lengthscale, self.output_scale)

    @property
    def std(self) -> jnp.ndarray:
        """Laplace standard deviations of (l, gamma)."""
        return jnp.sqrt(jnp.diag(self.laplace_cov))


def check_hyperparams(hyper: Hyperparams, bounds: HyperBounds | None = None) -> None:
    """Raise InvalidParameters unless l and gamma lie strictly inside their bounds."""
    bounds = bounds or HyperBounds()
    for name, value, box in (
        ("lengthscale", hyper.lengthscale, bounds.lengthscale),
        ("output_scale", hyper.output_scale, bounds.output_scale),
    ):
        value = float(value)
        if not (box.lower < value < box.upper) or value <= 0:
            raise InvalidParameters(
                f"{name}={value} must be positive and inside ({box.lower}, {box.upper})"
            )


def hyperparameter_objective(
    params: PhysicalParams,
    dt: float,
    observations: jnp.ndarray,
    inputs: jnp.ndarray,
    priors: HyperPriors,
    obs_cov=1e-3,
    m0: jnp.ndarray | None = None,
    S0=None,
    process_var=0.0,
    input_method: str = "euler",
    obs_mask: jnp.ndarray | None = None,
) -> Objective:
    """Build J(theta), theta = [l, gamma], as a traceable function.

    Args:
        params: physical constants (fixed during hyperparameter search)
        dt: sample interval
        observations: (T, 3) measurements
        inputs: (T, 4) inputs
        priors: Gamma priors on l and gamma
        obs_cov, m0, S0, process_var, input_method: forwarded to build_state_space
        obs_mask: (T, 3) observation mask, or None to derive it from NaNs

    Returns:
        objective: theta -> free energy minus log prior
    """
    observations = jnp.asarray(observations, dtype=float)
    inputs = jnp.asarray(inputs, dtype=float)
    if obs_mask is None:
        obs_mask = ~jnp.isnan(observations)

    def objective(theta):
        hyper = Hyperparams(theta[0], theta[1])
        ss = build_state_space(
            params,
            dt,
            hyper,
            obs_cov=obs_cov,
            m0=m0,
            S0=S0,
            process_var=process_var,
            input_method=input_method,
        )
        return free_energy(ss, observations, inputs, obs_mask) - priors.log_prob(theta)

    return objective


def laplace_covariance(objective: Objective, theta: jnp.ndarray) -> tuple[jnp.ndarray, bool]:
    """Inverse Hessian of the objective at theta.

    The Hessian is symmetrized and eigendecomposed; if any eigenvalue is not
    strictly positive (a saddle or a flat direction) the eigenvalues are
    clipped to a floor before inverting, so the covariance is always finite
    symmetric positive definite, and the projection is reported.

    Returns:
        cov: (2, 2) covariance
        projected: True if eigenvalues had to be clipped
    """
    hess = jax.hessian(objective)(jnp.asarray(theta, dtype=float))
    hess = 0.5 * (hess + hess.T)
    finite = bool(jnp.all(jnp.isfinite(hess)))
    hess = jnp.nan_to_num(hess, nan=0.0, posinf=0.0, neginf=0.0)

    eigvals, eigvecs = jnp.linalg.eigh(hess)
    projected = not (finite and bool(jnp.all(eigvals > 0)))
    if projected:
        logger.warning(
            "Laplace covariance is not positive definite (Hessian eigenvalues %s); projecting",
            [float(v) for v in eigvals],
        )
        floor = 1e-8 * jnp.maximum(jnp.max(jnp.abs(eigvals)), 1.0)
        eigvals = jnp.maximum(eigvals, floor)

    cov = eigvecs @ jnp.diag(1.0 / eigvals) @ eigvecs.T
    return 0.5 * (cov + cov.T), projected


def _make_transform(bounds: HyperBounds):
    t_l = biject_to(bounds.lengthscale.constraint())
    t_g = biject_to(bounds.output_scale.constraint())

    def to_theta(z):
        return jnp.stack([t_l(z[0]), t_g(z[1])])

    def to_z(theta):
        return jnp.stack([t_l.inv(theta[0]), t_g.inv(theta[1])])

    return to_theta, to_z


def optimize_hyperparameters(
    objective: Objective,
    initial: Hyperparams,
    bounds: HyperBounds | None = None,
    max_iter: int = 100,
    tol: float = 1e-4,
    deadline: float | None = None,
    strict: bool = False,
    memory_size: int = 10,
) -> HyperparamResult:
    """Minimize J(l, gamma) with L-BFGS under box constraints.

    Args:
        objective: theta -> J(theta), e.g. from hyperparameter_objective
        initial: starting point (must lie inside the bounds)
        bounds: box constraints; default (0, inf) for both
        max_iter: iteration budget
        tol: gradient-norm tolerance in unconstrained coordinates
        deadline: wall-clock budget in seconds, or None
        strict: raise NonConvergence instead of returning an unconverged result
        memory_size: L-BFGS history length

    Returns:
        HyperparamResult at the best point found

    Raises:
        InvalidParameters: if the starting point is outside the bounds
        NonConvergence: only with strict=True, when the budget runs out
    """
    bounds = bounds or HyperBounds()
    check_hyperparams(initial, bounds)
    to_theta, to_z = _make_transform(bounds)

    def objective_z(z):
        val = objective(to_theta(z))
        return jnp.where(jnp.isfinite(val), val, jnp.array(1e10))

    solver = optax.lbfgs(memory_size=memory_size)
    value_and_grad = optax.value_and_grad_from_state(objective_z)

    @jax.jit
    def step(z, state):
        value, grad = value_and_grad(z, state=state)
        updates, state = solver.update(
            grad, state, z, value=value, grad=grad, value_fn=objective_z
        )
        return optax.apply_updates(z, updates), state, value, grad

    z = to_z(jnp.array([initial.lengthscale, initial.output_scale], dtype=float))
    state = solver.init(z)
    start = time.monotonic()

    history: list[float] = []
    converged = False
    best_z, best_value = z, math.inf
    grad_norm = math.inf
    message = "iteration budget exhausted"
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        z_new, state, value, grad = step(z, state)
        value = float(value)
        grad_norm = float(jnp.linalg.norm(grad))
        history.append(value)
        if value < best_value:
            best_z, best_value = z, value
        logger.debug("iter %d: J=%.6f |grad|=%.3e theta=%s", n_iter, value, grad_norm, to_theta(z))

        if grad_norm < tol:
            converged = True
            message = "gradient tolerance reached"
            break
        z = z_new
        if deadline is not None and time.monotonic() - start > deadline:
            message = "deadline exceeded"
            break
    else:
        final_value = float(objective_z(z))
        if final_value < best_value:
            best_z, best_value = z, final_value

    theta = to_theta(best_z)
    laplace_cov, projected = laplace_covariance(objective, theta)

    result = HyperparamResult(
        lengthscale=float(theta[0]),
        output_scale=float(theta[1]),
        laplace_cov=laplace_cov,
        objective=best_value,
        n_iter=n_iter,
        converged=converged,
        grad_norm=grad_norm,
        laplace_projected=projected,
        history=history,
        message=message,
    )

    if converged:
        logger.info(
            "Hyperparameters converged after %d iterations: l=%.4g gamma=%.4g J=%.6f",
            n_iter,
            result.lengthscale,
            result.output_scale,
            best_value,
        )
    else:
        logger.warning(
            "Hyperparameter optimization did not converge (%s) after %d iterations; "
            "|grad|=%.3e, returning best point l=%.4g gamma=%.4g",
            message,
            n_iter,
            grad_norm,
            result.lengthscale,
            result.output_scale,
        )
        if strict:
            raise NonConvergence(message, result=result)
    return result


def free_energy_surface(
    objective: Objective,
    lengthscales: jnp.ndarray,
    output_scales: jnp.ndarray,
) -> jnp.ndarray:
    """Evaluate J on the grid lengthscales x output_scales.

    Each grid point is an independent pure evaluation, vectorized with
    jax.vmap.

    Returns:
        (len(lengthscales), len(output_scales)) objective values
    """
    ls = jnp.asarray(lengthscales, dtype=float)
    gs = jnp.asarray(output_scales, dtype=float)
    L, G = jnp.meshgrid(ls, gs, indexing="ij")
    thetas = jnp.stack([L.ravel(), G.ravel()], axis=-1)
    values = jax.vmap(objective)(thetas)
    return values.reshape(L.shape)
