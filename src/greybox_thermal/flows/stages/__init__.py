"""Pipeline stages."""

from .stage1_simulate import (
    load_measurements_task,
    simulate_measurements,
)
from .stage2_smooth import (
    smooth_states,
)
from .stage3_hyperparams import (
    optimize_hyperparameters_task,
)
from .stage4_residual import (
    fit_residuals,
)
from .stage5_validate import (
    validate_estimates,
)

__all__ = [
    # Stage 1: Simulate or load
    "simulate_measurements",
    "load_measurements_task",
    # Stage 2: Smooth
    "smooth_states",
    # Stage 3: Hyperparameters
    "optimize_hyperparameters_task",
    # Stage 4: Residual
    "fit_residuals",
    # Stage 5: Validate
    "validate_estimates",
]
