"""Closed-form Bayesian polynomial regression of the convective residual.

Given smoothed (temperature, residual-channel) pairs for one block, fit

    h = phi(T)' w + e,   phi(T) = [1, T, ..., T^d],   e ~ N(0, sigma_k^2)

with prior w ~ N(mu0, Sigma0). The posterior is Gaussian:

    Sigma^-1 = Sigma0^-1 + sum_k sigma_k^-2 phi(T_k) phi(T_k)'
    mu = Sigma (Sigma0^-1 mu0 + sum_k sigma_k^-2 phi(T_k) h_k)

One pass over the data, O(T (d+1)^2). Channels are fitted independently,
one polynomial per block (no cross-block coupling).
"""

from typing import NamedTuple

import jax.numpy as jnp
import jax.scipy.linalg as jla

from greybox_thermal.models.errors import DimensionMismatch, SingularCovariance
from greybox_thermal.models.ssm.base import N_BLOCKS


def polynomial_features(x, degree: int) -> jnp.ndarray:
    """(N, degree + 1) Vandermonde rows [1, x, ..., x^d]."""
    x = jnp.atleast_1d(jnp.asarray(x, dtype=float))
    return x[:, None] ** jnp.arange(degree + 1)


class PolynomialPosterior(NamedTuple):
    """Gaussian posterior over polynomial coefficients (lowest order first)."""

    mean: jnp.ndarray  # (d+1,)
    cov: jnp.ndarray  # (d+1, d+1)
    shift: float = 0.0  # basis is phi(x - shift)

    @property
    def degree(self) -> int:
        return self.mean.shape[0] - 1

    def predict(self, x, noise_var=None) -> tuple[jnp.ndarray, jnp.ndarray]:
        """Predictive mean and variance at query points.

        Args:
            x: scalar or (N,) query points
            noise_var: optional observation variance added to the predictive variance

        Returns:
            mean: (N,)
            var: (N,) variance of phi(x)' w (plus noise_var if given)
        """
        phi = polynomial_features(jnp.asarray(x, dtype=float) - self.shift, self.degree)
        mean = phi @ self.mean
        var = jnp.einsum("ni,ij,nj->n", phi, self.cov, phi)
        if noise_var is not None:
            var = var + noise_var
        return mean, var


def fit_polynomial(
    x,
    y,
    degree: int,
    noise_var=1.0,
    prior_mean=None,
    prior_cov=None,
    shift: float = 0.0,
) -> PolynomialPosterior:
    """Bayesian linear regression on a polynomial basis.

    Args:
        x: (N,) inputs (temperatures)
        y: (N,) targets (residual-channel means)
        degree: polynomial degree d
        noise_var: scalar or (N,) per-sample variance sigma_k^2
        prior_mean: (d+1,) prior mean, default zeros
        prior_cov: scalar or (d+1, d+1) prior covariance, default 1e6 I
        shift: basis offset, phi(x - shift); keeps the normal equations well
            conditioned when x sits far from 0 (e.g. temperatures in degC)

    Returns:
        PolynomialPosterior

    Raises:
        DimensionMismatch: if x, y, noise_var or prior shapes disagree
        SingularCovariance: if the posterior precision is not positive definite
    """
    x = jnp.atleast_1d(jnp.asarray(x, dtype=float))
    y = jnp.atleast_1d(jnp.asarray(y, dtype=float))
    n_coef = degree + 1
    if degree < 0:
        raise ValueError(f"degree must be non-negative, got {degree}")
    if x.shape != y.shape or x.ndim != 1:
        raise DimensionMismatch(f"x and y must be 1-D of equal length, got {x.shape} and {y.shape}")

    noise_var = jnp.asarray(noise_var, dtype=float)
    if noise_var.ndim == 0:
        noise_var = jnp.full(x.shape, noise_var)
    if noise_var.shape != x.shape:
        raise DimensionMismatch(f"noise_var must be scalar or {x.shape}, got {noise_var.shape}")

    prior_mean = jnp.zeros(n_coef) if prior_mean is None else jnp.asarray(prior_mean, dtype=float)
    prior_cov = 1e6 if prior_cov is None else prior_cov
    prior_cov = jnp.asarray(prior_cov, dtype=float)
    if prior_cov.ndim == 0:
        prior_cov = prior_cov * jnp.eye(n_coef)
    if prior_mean.shape != (n_coef,) or prior_cov.shape != (n_coef, n_coef):
        raise DimensionMismatch(
            f"prior must be ({n_coef},) and ({n_coef}, {n_coef}), "
            f"got {prior_mean.shape} and {prior_cov.shape}"
        )

    phi = polynomial_features(x - shift, degree)
    weights = 1.0 / noise_var

    prior_precision = jnp.linalg.inv(prior_cov)
    precision = prior_precision + (phi * weights[:, None]).T @ phi
    precision = 0.5 * (precision + precision.T)
    rhs = prior_precision @ prior_mean + phi.T @ (weights * y)

    chol = jnp.linalg.cholesky(precision)
    if not bool(jnp.all(jnp.isfinite(chol))):
        raise SingularCovariance("Posterior precision of polynomial coefficients is not positive definite")

    mean = jla.cho_solve((chol, True), rhs)
    cov = jla.cho_solve((chol, True), jnp.eye(n_coef))
    cov = 0.5 * (cov + cov.T)
    return PolynomialPosterior(mean=mean, cov=cov, shift=float(shift))


def fit_residual_channels(
    means: jnp.ndarray,
    covs: jnp.ndarray | None,
    degree: int,
    noise_var=None,
    prior_mean=None,
    prior_cov=None,
    shift: float = 0.0,
) -> list[PolynomialPosterior]:
    """Fit one polynomial per block from smoothed augmented-state marginals.

    Pairs (T_i[k], h_i[k]) for k = 1..T are taken from the smoothed means;
    the prior sample k = 0 is skipped.

    Args:
        means: (T+1, 6) smoothed means [T_1..T_3, h_1..h_3]
        covs: (T+1, 6, 6) smoothed covariances; used for per-sample noise
            variances when noise_var is None
        degree: polynomial degree
        noise_var: scalar variance shared by all samples, or None
        prior_mean, prior_cov: coefficient prior shared by all channels
        shift: basis offset shared by all channels

    Returns:
        list of N_BLOCKS PolynomialPosterior
    """
    means = jnp.asarray(means, dtype=float)
    if means.ndim != 2 or means.shape[1] != 2 * N_BLOCKS:
        raise DimensionMismatch(
            f"means must be (T+1, {2 * N_BLOCKS}) augmented states, got {means.shape}"
        )
    if noise_var is None and covs is None:
        raise ValueError("Either noise_var or covs must be given")

    posteriors = []
    for i in range(N_BLOCKS):
        x = means[1:, i]
        y = means[1:, N_BLOCKS + i]
        if noise_var is None:
            var = jnp.asarray(covs)[1:, N_BLOCKS + i, N_BLOCKS + i]
        else:
            var = noise_var
        posteriors.append(fit_polynomial(x, y, degree, var, prior_mean, prior_cov, shift))
    return posteriors
