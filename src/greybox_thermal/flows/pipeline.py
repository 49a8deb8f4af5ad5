"""Main identification pipeline.

Orchestrates all stages from ground-truth simulation to validation:
- Stage 1: Simulate the nonlinear system and draw noisy measurements (or
  load recorded measurements from a CSV)
- Stage 2: Smooth the augmented state at the initial hyperparameters
- Stage 3: Optimize the Matern hyperparameters over the free-energy surface
- Stage 4: Re-smooth at the optimum and fit the residual polynomials
- Stage 5: Re-simulate with the fitted residual and compare with the truth
"""

from prefect import flow

from greybox_thermal.models.ssm.base import N_BLOCKS
from greybox_thermal.utils.config import load_config
from greybox_thermal.utils.data import trajectory_frame

from .stages import (
    # Stage 1
    load_measurements_task,
    simulate_measurements,
    # Stage 2
    smooth_states,
    # Stage 3
    optimize_hyperparameters_task,
    # Stage 4
    fit_residuals,
    # Stage 5
    validate_estimates,
)


@flow(log_prints=True)
def identification_pipeline(
    config_path: str | None = None,
    seed: int = 0,
    measurements_path: str | None = None,
) -> dict:
    """
    Grey-box identification of the three-block thermal system.

    Args:
        config_path: YAML configuration file (default: nearest config.yaml)
        seed: PRNG seed for the measurement noise
        measurements_path: CSV of recorded measurements (time, T1..T3, tau_a,
            q1..q3); when given, stage 1 loads it instead of simulating

    Returns:
        Dict bundle with the hyperparameter result, residual posteriors,
        validation report and polars frames of the trajectories. Persisting
        it is left to the caller.
    """
    config = load_config(config_path)
    sim = config.simulation

    # ══════════════════════════════════════════════════════════════════════════
    # Stage 1: Ground truth and measurements
    # ══════════════════════════════════════════════════════════════════════════
    if measurements_path is None:
        print("\n=== Stage 1: Simulation ===")
        print(f"Simulating {sim.n_steps} steps at dt={sim.dt} (seed={seed})")
        data = simulate_measurements(config, seed)
    else:
        print("\n=== Stage 1: Load Measurements ===")
        print(f"Reading {measurements_path}")
        data = load_measurements_task(measurements_path, config)
    n_missing = int((data["observations"] != data["observations"]).sum())
    print(f"Using {data['observations'].shape[0]} measurements ({n_missing} missing entries)")

    # ══════════════════════════════════════════════════════════════════════════
    # Stage 2: Smoothing at the initial hyperparameters
    # ══════════════════════════════════════════════════════════════════════════
    print("\n=== Stage 2: Initial Smoothing ===")
    initial = smooth_states(data, config)
    print(f"Free energy at initial hyperparameters: {float(initial.free_energy):.4f}")

    # ══════════════════════════════════════════════════════════════════════════
    # Stage 3: Hyperparameter optimization
    # ══════════════════════════════════════════════════════════════════════════
    print("\n=== Stage 3: Hyperparameter Optimization ===")
    hyper_result = optimize_hyperparameters_task(data, config)
    print(
        f"l* = {hyper_result.lengthscale:.4g} ± {float(hyper_result.std[0]):.3g}, "
        f"gamma* = {hyper_result.output_scale:.4g} ± {float(hyper_result.std[1]):.3g} "
        f"after {hyper_result.n_iter} iterations"
    )
    if not hyper_result.converged:
        print(f"⚠️  Optimizer did not converge ({hyper_result.message}); using best point found")

    # ══════════════════════════════════════════════════════════════════════════
    # Stage 4: Residual fit
    # ══════════════════════════════════════════════════════════════════════════
    print("\n=== Stage 4: Residual Fit ===")
    smoothed, posteriors = fit_residuals(data, config, hyper_result.hyperparams)
    for i, post in enumerate(posteriors):
        coefs = ", ".join(f"{float(c):.4g}" for c in post.mean)
        print(f"  Block {i + 1}: [{coefs}]")

    # ══════════════════════════════════════════════════════════════════════════
    # Stage 5: Validation
    # ══════════════════════════════════════════════════════════════════════════
    print("\n=== Stage 5: Validation ===")
    report = validate_estimates(data, config, smoothed, posteriors)
    print(f"Smoother MSE vs {report['reference']}: {report['smoother_mse']:.3e}")
    print(f"Re-simulation MSE vs {report['reference']}: {report['resimulation_mse']:.3e}")

    times = data["times"]
    return {
        "hyperparams": hyper_result,
        "posteriors": posteriors,
        "report": report,
        "truth": None if data["truth"] is None else trajectory_frame(times, data["truth"]),
        "smoothed": trajectory_frame(
            times, smoothed.means[:, :N_BLOCKS], stds=smoothed.stds[:, :N_BLOCKS]
        ),
        "residual_channels": trajectory_frame(
            times, smoothed.means[:, N_BLOCKS:], prefix="h", stds=smoothed.stds[:, N_BLOCKS:]
        ),
        "resimulated": trajectory_frame(times, report["resimulated"]),
    }


if __name__ == "__main__":
    identification_pipeline()
