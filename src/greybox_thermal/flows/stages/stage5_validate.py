"""Stage 5: Validation by re-simulation.

Integrates the governing ODE again with the fitted polynomial residual and
compares it (and the smoothed temperatures) against the ground truth, or
against the measurements when the data were recorded rather than simulated.
"""

import logging

import numpy as np
from prefect import task

from greybox_thermal.models.residual import PolynomialPosterior
from greybox_thermal.models.ssm.base import N_BLOCKS
from greybox_thermal.models.ssm.simulate import PolynomialResidual, simulate_continuous
from greybox_thermal.models.ssm.smoother import SmootherResult
from greybox_thermal.utils.config import IdentificationConfig

logger = logging.getLogger(__name__)


def mean_squared_error(estimate, reference) -> float:
    """MSE over the entries where the reference is present (NaN = missing)."""
    return float(np.nanmean((np.asarray(estimate) - np.asarray(reference)) ** 2))


@task(task_run_name="validate-estimates")
def validate_estimates(
    data: dict,
    config: IdentificationConfig,
    smoothed: SmootherResult,
    posteriors: list[PolynomialPosterior],
) -> dict:
    """Compare smoothed and re-simulated trajectories with a reference.

    The reference is the (T+1, 3) ground truth when `data["truth"]` is set,
    otherwise the (T, 3) measurements y_1..y_T.

    Returns:
        Dict with reference ("truth" or "observations"), smoother_mse,
        resimulation_mse (per block and overall) and the re-simulated
        (T+1, 3) trajectory
    """
    sim = config.simulation

    resimulated = simulate_continuous(
        config.physical.to_params(),
        data["input_fn"],
        data["times"],
        sim.x0,
        residual=PolynomialResidual(posteriors),
        rtol=sim.rtol,
        atol=sim.atol,
        max_step=sim.dt,
    )
    smoothed_temps = np.asarray(smoothed.means[:, :N_BLOCKS])

    if data.get("truth") is not None:
        reference_name, reference = "truth", np.asarray(data["truth"])
        estimate, smoothed_est = resimulated, smoothed_temps
    else:
        reference_name, reference = "observations", np.asarray(data["observations"])
        estimate, smoothed_est = resimulated[1:], smoothed_temps[1:]

    report = {
        "reference": reference_name,
        "smoother_mse": mean_squared_error(smoothed_est, reference),
        "resimulation_mse": mean_squared_error(estimate, reference),
        "resimulation_mse_per_block": [
            mean_squared_error(estimate[:, i], reference[:, i]) for i in range(N_BLOCKS)
        ],
        "resimulated": resimulated,
    }
    logger.info(
        "Smoother MSE %.3e, re-simulation MSE %.3e (against %s)",
        report["smoother_mse"],
        report["resimulation_mse"],
        reference_name,
    )
    return report
