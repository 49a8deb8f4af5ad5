"""Stage 4: Polynomial fit of the convective residual.

Re-smooths at the optimized hyperparameters and regresses each block's
residual channel on its temperature. The basis is centred on the ambient
temperature, where the residual vanishes.
"""

import logging

from prefect import task

from greybox_thermal.models.residual import PolynomialPosterior, fit_residual_channels
from greybox_thermal.models.ssm.base import Hyperparams
from greybox_thermal.models.ssm.smoother import SmootherResult
from greybox_thermal.utils.config import IdentificationConfig

from .stage2_smooth import smooth_states

logger = logging.getLogger(__name__)


@task(task_run_name="fit-residuals")
def fit_residuals(
    data: dict,
    config: IdentificationConfig,
    hyper: Hyperparams,
) -> tuple[SmootherResult, list[PolynomialPosterior]]:
    """Smooth at (l*, gamma*) and fit one polynomial per block.

    Returns:
        (smoothed result at hyper, list of 3 PolynomialPosterior)
    """
    smoothed = smooth_states.fn(data, config, hyper)
    rc = config.residual
    posteriors = fit_residual_channels(
        smoothed.means,
        smoothed.covs,
        rc.degree,
        noise_var=rc.noise_var,
        prior_cov=rc.prior_var,
        shift=config.physical.tau_a,
    )
    for i, post in enumerate(posteriors):
        logger.info("Block %d residual coefficients: %s", i + 1, [round(float(c), 6) for c in post.mean])
    return smoothed, posteriors
