"""Identification core: state-space model, hyperparameters, residual fit."""

from .errors import (
    DimensionMismatch,
    IdentificationError,
    InvalidParameters,
    NonConvergence,
    SingularCovariance,
)
from .hyperparams import (
    GammaPrior,
    HyperparamResult,
    HyperPriors,
    free_energy_surface,
    hyperparameter_objective,
    optimize_hyperparameters,
)
from .residual import PolynomialPosterior, fit_polynomial, fit_residual_channels

__all__ = [
    "IdentificationError",
    "InvalidParameters",
    "DimensionMismatch",
    "SingularCovariance",
    "NonConvergence",
    "GammaPrior",
    "HyperPriors",
    "HyperparamResult",
    "hyperparameter_objective",
    "optimize_hyperparameters",
    "free_energy_surface",
    "PolynomialPosterior",
    "fit_polynomial",
    "fit_residual_channels",
]
