"""Stage 3: Hyperparameter optimization over the free-energy surface."""

import logging

from prefect import task

from greybox_thermal.models.hyperparams import (
    HyperparamResult,
    hyperparameter_objective,
    optimize_hyperparameters,
)
from greybox_thermal.utils.config import IdentificationConfig

from .stage2_smooth import augmented_prior_mean

logger = logging.getLogger(__name__)


@task(task_run_name="optimize-hyperparameters")
def optimize_hyperparameters_task(data: dict, config: IdentificationConfig) -> HyperparamResult:
    """Find (l*, gamma*) minimizing free energy minus log prior.

    Budget and strictness come from the hyperparams section of the config.
    With strict=False an unconverged result is returned with a warning.
    """
    hp = config.hyperparams
    objective = hyperparameter_objective(
        config.physical.to_params(),
        config.simulation.dt,
        data["observations"],
        data["inputs"],
        hp.priors,
        obs_cov=config.noise.obs_var,
        m0=augmented_prior_mean(config),
        process_var=config.noise.process_var,
        input_method=config.noise.input_method,
    )
    result = optimize_hyperparameters(
        objective,
        hp.initial,
        bounds=hp.bounds,
        max_iter=hp.max_iter,
        tol=hp.tol,
        deadline=hp.deadline,
        strict=hp.strict,
    )
    logger.info(
        "l*=%.4g (sd %.3g), gamma*=%.4g (sd %.3g), converged=%s",
        result.lengthscale,
        float(result.std[0]),
        result.output_scale,
        float(result.std[1]),
        result.converged,
    )
    return result
