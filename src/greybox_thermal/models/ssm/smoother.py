"""Exact Bayesian smoothing for the discrete linear-Gaussian thermal model.

Implements:
- Kalman filter (forward predict/update scan over k = 1..T)
- Rauch-Tung-Striebel smoother (backward scan over k = T-1..0)
- Free energy F = -log p(y_1:T), the exact negative log marginal likelihood
- Missing data handling via masking

The model is jointly Gaussian, so the filter/smoother pair gives the exact
posterior marginals q(x_k) = N(mean_k, cov_k) for k = 0..T.
"""

from typing import NamedTuple

import jax
import jax.numpy as jnp
import jax.scipy.linalg as jla
from jax import lax

from greybox_thermal.models.errors import DimensionMismatch, SingularCovariance
from greybox_thermal.models.ssm.base import (
    MISSING_DATA_LARGE_VAR,
    StateSpace,
    preprocess_missing_data,
)


# Relative diagonal loading of P_{k+1|k} in the smoother gain; a PSD prior
# with Q = 0 leaves the predicted covariance singular.
SMOOTHER_JITTER = 1e-9


class FilterResult(NamedTuple):
    """Forward pass output.

    filtered_* include k = 0 (the prior, no observation at k = 0);
    predicted_* are the one-step predictions for k = 1..T.
    """

    filtered_means: jnp.ndarray  # (T+1, Dx)
    filtered_covs: jnp.ndarray  # (T+1, Dx, Dx)
    predicted_means: jnp.ndarray  # (T, Dx)
    predicted_covs: jnp.ndarray  # (T, Dx, Dx)
    log_likelihood: float


class SmootherResult(NamedTuple):
    """Posterior marginals q(x_k) for k = 0..T plus the free energy."""

    means: jnp.ndarray  # (T+1, Dx)
    covs: jnp.ndarray  # (T+1, Dx, Dx)
    filtered_means: jnp.ndarray  # (T+1, Dx)
    filtered_covs: jnp.ndarray  # (T+1, Dx, Dx)
    free_energy: float

    @property
    def stds(self) -> jnp.ndarray:
        """(T+1, Dx) marginal standard deviations."""
        return jnp.sqrt(jnp.clip(jnp.diagonal(self.covs, axis1=1, axis2=2), 0.0))


def kalman_predict(
    state_mean: jnp.ndarray,
    state_cov: jnp.ndarray,
    A: jnp.ndarray,
    B: jnp.ndarray,
    u: jnp.ndarray,
    Q: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Prediction step.

        mean_{k|k-1} = A mean_{k-1|k-1} + B u_k
        cov_{k|k-1} = A cov_{k-1|k-1} A' + Q
    """
    predicted_mean = A @ state_mean + B @ u
    predicted_cov = A @ state_cov @ A.T + Q
    predicted_cov = 0.5 * (predicted_cov + predicted_cov.T)
    return predicted_mean, predicted_cov


def kalman_update(
    predicted_mean: jnp.ndarray,
    predicted_cov: jnp.ndarray,
    observation: jnp.ndarray,
    obs_mask: jnp.ndarray,
    C: jnp.ndarray,
    R: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray, float]:
    """Update step with missing entries masked out.

    Missing observations get a large measurement variance so they carry no
    information; their contribution to the log-determinant is subtracted so
    the log-likelihood covers the observed subset only.

    Args:
        predicted_mean: (Dx,)
        predicted_cov: (Dx, Dx)
        observation: (Dy,) with missing entries set to 0
        obs_mask: (Dy,) float mask, 1.0 where observed
        C: (Dy, Dx) observation matrix
        R: (Dy, Dy) measurement noise covariance

    Returns:
        Tuple of (updated_mean, updated_cov, log_likelihood_contribution)
    """
    n_obs = jnp.sum(obs_mask)
    n_missing = observation.shape[0] - n_obs

    R_adj = R + jnp.diag((1.0 - obs_mask) * MISSING_DATA_LARGE_VAR)
    innovation = (observation - C @ predicted_mean) * obs_mask

    S = C @ predicted_cov @ C.T + R_adj
    S = 0.5 * (S + S.T)
    chol_S = jnp.linalg.cholesky(S)

    # K = P C' S^-1
    K = jla.cho_solve((chol_S, True), C @ predicted_cov).T

    updated_mean = predicted_mean + K @ innovation
    updated_cov = predicted_cov - K @ C @ predicted_cov
    updated_cov = 0.5 * (updated_cov + updated_cov.T)

    logdet = 2.0 * jnp.sum(jnp.log(jnp.diag(chol_S))) - n_missing * jnp.log(MISSING_DATA_LARGE_VAR)
    mahal = innovation @ jla.cho_solve((chol_S, True), innovation)
    ll = -0.5 * (n_obs * jnp.log(2 * jnp.pi) + logdet + mahal)
    ll = jnp.where(n_obs > 0, ll, 0.0)

    return updated_mean, updated_cov, ll


def kalman_filter(
    ss: StateSpace,
    observations: jnp.ndarray,
    inputs: jnp.ndarray,
    obs_mask: jnp.ndarray | None = None,
) -> FilterResult:
    """Run the forward pass over k = 1..T.

    Args:
        ss: discrete system (A, B, Q, C, R, m0, S0)
        observations: (T, Dy) y_1..y_T, NaN for missing entries
        inputs: (T, Du) u_1..u_T
        obs_mask: (T, Dy) boolean mask, or None to derive it from NaNs

    Returns:
        FilterResult
    """
    clean_obs, mask = preprocess_missing_data(observations, obs_mask)

    def scan_fn(carry, step_inputs):
        mean, cov, total_ll = carry
        y, u, m = step_inputs
        pred_mean, pred_cov = kalman_predict(mean, cov, ss.A, ss.B, u, ss.Q)
        upd_mean, upd_cov, ll = kalman_update(pred_mean, pred_cov, y, m, ss.C, ss.R)
        return (upd_mean, upd_cov, total_ll + ll), (pred_mean, pred_cov, upd_mean, upd_cov)

    (_, _, total_ll), outputs = lax.scan(
        scan_fn, (ss.m0, ss.S0, jnp.zeros(())), (clean_obs, inputs, mask)
    )
    pred_means, pred_covs, filt_means, filt_covs = outputs

    return FilterResult(
        filtered_means=jnp.concatenate([ss.m0[None], filt_means], axis=0),
        filtered_covs=jnp.concatenate([ss.S0[None], filt_covs], axis=0),
        predicted_means=pred_means,
        predicted_covs=pred_covs,
        log_likelihood=total_ll,
    )


def rts_smoother(ss: StateSpace, filt: FilterResult) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Backward Rauch-Tung-Striebel pass.

    For k = T-1..0:
        G_k = P_{k|k} A' P_{k+1|k}^-1
        m_k = m_{k|k} + G_k (m_{k+1} - m_{k+1|k})
        P_k = P_{k|k} + G_k (P_{k+1} - P_{k+1|k}) G_k'

    Returns:
        means: (T+1, Dx) smoothed means
        covs: (T+1, Dx, Dx) smoothed covariances
    """

    def _backward_step(carry, step_inputs):
        m_next, P_next = carry
        m_f, P_f, m_pred, P_pred = step_inputs

        n = P_pred.shape[0]
        scale = jnp.maximum(jnp.max(jnp.abs(jnp.diag(P_pred))), 1e-300)
        P_reg = 0.5 * (P_pred + P_pred.T) + SMOOTHER_JITTER * scale * jnp.eye(n)
        G = jla.solve(P_reg, ss.A @ P_f, assume_a="pos").T
        m_s = m_f + G @ (m_next - m_pred)
        P_s = P_f + G @ (P_next - P_pred) @ G.T
        P_s = 0.5 * (P_s + P_s.T)
        return (m_s, P_s), (m_s, P_s)

    bwd_inputs_rev = (
        filt.filtered_means[:-1][::-1],
        filt.filtered_covs[:-1][::-1],
        filt.predicted_means[::-1],
        filt.predicted_covs[::-1],
    )
    _, (means_rev, covs_rev) = lax.scan(
        _backward_step,
        (filt.filtered_means[-1], filt.filtered_covs[-1]),
        bwd_inputs_rev,
    )
    means = jnp.concatenate([means_rev[::-1], filt.filtered_means[-1][None]], axis=0)
    covs = jnp.concatenate([covs_rev[::-1], filt.filtered_covs[-1][None]], axis=0)
    return means, covs


def free_energy(
    ss: StateSpace,
    observations: jnp.ndarray,
    inputs: jnp.ndarray,
    obs_mask: jnp.ndarray | None = None,
) -> float:
    """Negative log marginal likelihood -log p(y_1:T) (forward pass only).

    Traceable: no validation, suitable for jax.grad / jax.vmap.
    """
    return -kalman_filter(ss, observations, inputs, obs_mask).log_likelihood


@jax.jit
def _smooth(ss, observations, inputs, obs_mask):
    filt = kalman_filter(ss, observations, inputs, obs_mask)
    means, covs = rts_smoother(ss, filt)
    return SmootherResult(
        means=means,
        covs=covs,
        filtered_means=filt.filtered_means,
        filtered_covs=filt.filtered_covs,
        free_energy=-filt.log_likelihood,
    )


def check_dimensions(
    ss: StateSpace,
    observations: jnp.ndarray,
    inputs: jnp.ndarray,
    obs_mask: jnp.ndarray | None = None,
) -> None:
    """Raise DimensionMismatch if the system and data sizes disagree."""
    n_state, n_obs, n_input = ss.n_state, ss.n_obs, ss.n_input
    expected = {
        "A": (ss.A.shape, (n_state, n_state)),
        "B": (ss.B.shape, (n_state, n_input)),
        "Q": (ss.Q.shape, (n_state, n_state)),
        "C": (ss.C.shape, (n_obs, n_state)),
        "R": (ss.R.shape, (n_obs, n_obs)),
        "m0": (ss.m0.shape, (n_state,)),
        "S0": (ss.S0.shape, (n_state, n_state)),
    }
    for name, (got, want) in expected.items():
        if tuple(got) != want:
            raise DimensionMismatch(f"{name} has shape {tuple(got)}, expected {want}")

    if observations.ndim != 2 or observations.shape[1] != n_obs:
        raise DimensionMismatch(f"observations must be (T, {n_obs}), got {observations.shape}")
    if inputs.shape != (observations.shape[0], n_input):
        raise DimensionMismatch(
            f"inputs must be ({observations.shape[0]}, {n_input}), got {inputs.shape}"
        )
    if obs_mask is not None and obs_mask.shape != observations.shape:
        raise DimensionMismatch(
            f"obs_mask must match observations {observations.shape}, got {obs_mask.shape}"
        )


def smooth(
    ss: StateSpace,
    observations: jnp.ndarray,
    inputs: jnp.ndarray,
    obs_mask: jnp.ndarray | None = None,
) -> SmootherResult:
    """Posterior marginals q(x_k), k = 0..T, and the free energy.

    Args:
        ss: discrete system (A, B, Q, C, R, m0, S0)
        observations: (T, Dy) y_1..y_T, NaN for missing entries
        inputs: (T, Du) u_1..u_T
        obs_mask: (T, Dy) boolean mask, or None to derive it from NaNs

    Returns:
        SmootherResult

    Raises:
        DimensionMismatch: if shapes disagree
        SingularCovariance: if R or an innovation covariance is not positive definite,
            or the backward pass produced non-finite moments
    """
    observations = jnp.asarray(observations, dtype=float)
    inputs = jnp.asarray(inputs, dtype=float)
    check_dimensions(ss, observations, inputs, obs_mask)

    if not bool(jnp.all(jnp.isfinite(jnp.linalg.cholesky(ss.R)))):
        raise SingularCovariance("Measurement covariance R is not positive definite")

    if obs_mask is None:
        obs_mask = ~jnp.isnan(observations)
    result = _smooth(ss, observations, inputs, jnp.asarray(obs_mask, dtype=bool))

    if not (
        bool(jnp.isfinite(result.free_energy))
        and bool(jnp.all(jnp.isfinite(result.filtered_means)))
    ):
        raise SingularCovariance(
            "Forward filter produced non-finite moments: an innovation covariance is not "
            "positive definite"
        )
    if not (bool(jnp.all(jnp.isfinite(result.means))) and bool(jnp.all(jnp.isfinite(result.covs)))):
        raise SingularCovariance(
            "RTS backward pass produced non-finite moments: the predicted covariance could "
            "not be inverted for the smoother gain"
        )
    return result
