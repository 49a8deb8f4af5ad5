"""Shared test helpers (non-fixtures).

These are utilities that can be imported directly into test modules.
For fixtures, see conftest.py.
"""

import numpy as np
from scipy.stats import multivariate_normal


def joint_observation_moments(ss, inputs):
    """Mean and covariance of the stacked observations y_1..y_T.

    Builds the full joint Gaussian directly from the model equations:
        E[x_k] = A E[x_{k-1}] + B u_k
        Cov(x_k, x_k) = A Cov(x_{k-1}, x_{k-1}) A' + Q
        Cov(x_k, x_l) = A^(k-l) Cov(x_l, x_l),  k > l

    Returns:
        mean: (T * Dy,)
        cov: (T * Dy, T * Dy)
    """
    A, B, Q, C, R = (np.asarray(m, dtype=float) for m in (ss.A, ss.B, ss.Q, ss.C, ss.R))
    inputs = np.asarray(inputs, dtype=float)
    n_steps = inputs.shape[0]
    n_obs, n_state = C.shape

    means = []
    marginal_covs = []
    m = np.asarray(ss.m0, dtype=float)
    P = np.asarray(ss.S0, dtype=float)
    for k in range(n_steps):
        m = A @ m + B @ inputs[k]
        P = A @ P @ A.T + Q
        means.append(m)
        marginal_covs.append(P)

    state_cov = np.zeros((n_steps * n_state, n_steps * n_state))
    for k in range(n_steps):
        for l in range(k + 1):
            block = np.linalg.matrix_power(A, k - l) @ marginal_covs[l]
            state_cov[k * n_state : (k + 1) * n_state, l * n_state : (l + 1) * n_state] = block
            state_cov[l * n_state : (l + 1) * n_state, k * n_state : (k + 1) * n_state] = block.T

    C_big = np.kron(np.eye(n_steps), C)
    mean = C_big @ np.concatenate(means)
    cov = C_big @ state_cov @ C_big.T + np.kron(np.eye(n_steps), R)
    return mean, 0.5 * (cov + cov.T)


def brute_force_free_energy(ss, observations, inputs):
    """-log p(y_1:T) from the full joint Gaussian; NaN entries are marginalized out."""
    mean, cov = joint_observation_moments(ss, inputs)
    y = np.asarray(observations, dtype=float).ravel()
    observed = ~np.isnan(y)
    return -multivariate_normal.logpdf(
        y[observed], mean=mean[observed], cov=cov[np.ix_(observed, observed)]
    )
