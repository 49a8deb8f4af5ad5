"""Linear-Gaussian state-space model of the thermal system.

This module implements:
- Physical -> continuous-time generator with an augmented Matern-1/2 residual
- Exact CT->DT discretization (matrix exponential, closed-form process noise)
- Kalman filter / RTS smoother with the free energy -log p(y)
- Forward simulators (ODE ground truth and discrete model)
"""

from greybox_thermal.models.ssm.base import (
    N_BLOCKS,
    N_INPUTS,
    Hyperparams,
    PhysicalParams,
    StateSpace,
)
from greybox_thermal.models.ssm.discretization import (
    analytic_q,
    augmented_generator,
    build_state_space,
    conduction_matrix,
    input_gain,
    physical_generator,
    validate_physical_params,
    van_loan_q,
    zoh_input_matrix,
)
from greybox_thermal.models.ssm.simulate import (
    NaturalConvectionResidual,
    PolynomialResidual,
    observe,
    simulate_continuous,
    simulate_discrete,
    time_grid,
)
from greybox_thermal.models.ssm.smoother import (
    FilterResult,
    SmootherResult,
    free_energy,
    kalman_filter,
    rts_smoother,
    smooth,
)

__all__ = [
    # Types
    "N_BLOCKS",
    "N_INPUTS",
    "PhysicalParams",
    "Hyperparams",
    "StateSpace",
    # Discretization
    "conduction_matrix",
    "physical_generator",
    "input_gain",
    "augmented_generator",
    "analytic_q",
    "van_loan_q",
    "zoh_input_matrix",
    "build_state_space",
    "validate_physical_params",
    # Smoothing
    "FilterResult",
    "SmootherResult",
    "kalman_filter",
    "rts_smoother",
    "smooth",
    "free_energy",
    # Simulation
    "NaturalConvectionResidual",
    "PolynomialResidual",
    "simulate_continuous",
    "simulate_discrete",
    "observe",
    "time_grid",
]
