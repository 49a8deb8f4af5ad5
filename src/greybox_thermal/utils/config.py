"""Configuration loader for the identification pipeline."""

import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import jax.numpy as jnp
import yaml

from greybox_thermal.models.hyperparams import Bounds, GammaPrior, HyperBounds, HyperPriors
from greybox_thermal.models.inputs import InputGenerator
from greybox_thermal.models.ssm.base import N_BLOCKS, Hyperparams, PhysicalParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhysicalConfig:
    """Physical constants of the three blocks."""

    mcp: tuple[float, ...] = (1000.0,) * N_BLOCKS
    area: tuple[float, ...] = (1.0,) * N_BLOCKS
    k12: float = 10.0
    k23: float = 10.0
    h_a: float = 2.0
    tau_a: float = 21.0

    def to_params(self) -> PhysicalParams:
        return PhysicalParams(
            mcp=jnp.asarray(self.mcp, dtype=float),
            area=jnp.asarray(self.area, dtype=float),
            k12=self.k12,
            k23=self.k23,
            h_a=self.h_a,
            tau_a=self.tau_a,
        )


@dataclass(frozen=True)
class SimulationConfig:
    """Ground-truth simulation settings."""

    n_steps: int = 1000
    dt: float = 1.0
    t0: float = 0.0
    x0: tuple[float, ...] = (21.0,) * N_BLOCKS
    h_nl: float = 0.5  # nonlinear convection coefficient of the true residual
    exponent: float = 4.0 / 3.0
    rtol: float = 1e-8
    atol: float = 1e-8


@dataclass(frozen=True)
class NoiseConfig:
    """Measurement and process noise."""

    obs_var: float = 1e-3
    process_var: float = 0.0
    input_method: str = "euler"


@dataclass(frozen=True)
class HyperparamConfig:
    """Matern-1/2 hyperparameter search."""

    initial_lengthscale: float = 50.0
    initial_output_scale: float = 10.0
    lengthscale_prior: tuple[float, float] = (2.0, 0.02)  # Gamma(shape, rate)
    output_scale_prior: tuple[float, float] = (2.0, 0.1)
    lengthscale_bounds: tuple[float, float] = (1e-2, math.inf)
    output_scale_bounds: tuple[float, float] = (1e-4, math.inf)
    max_iter: int = 100
    tol: float = 1e-4
    deadline: float | None = None  # seconds
    strict: bool = False

    @property
    def initial(self) -> Hyperparams:
        return Hyperparams(self.initial_lengthscale, self.initial_output_scale)

    @property
    def priors(self) -> HyperPriors:
        return HyperPriors(
            lengthscale=GammaPrior(*self.lengthscale_prior),
            output_scale=GammaPrior(*self.output_scale_prior),
        )

    @property
    def bounds(self) -> HyperBounds:
        return HyperBounds(
            lengthscale=Bounds(*self.lengthscale_bounds),
            output_scale=Bounds(*self.output_scale_bounds),
        )


@dataclass(frozen=True)
class ResidualConfig:
    """Polynomial residual estimator."""

    degree: int = 3
    prior_var: float = 1e6
    noise_var: float | None = None  # None: use smoothed channel variances


@dataclass(frozen=True)
class InputsConfig:
    """Exogenous input profiles (raw dicts, see Profile.from_dict)."""

    ambient: dict = field(default_factory=lambda: {"kind": "constant", "base": 21.0})
    heaters: tuple[dict, ...] = ({"kind": "constant"},) * N_BLOCKS

    def to_generator(self) -> InputGenerator:
        return InputGenerator.from_dict({"ambient": self.ambient, "heaters": list(self.heaters)})


@dataclass(frozen=True)
class IdentificationConfig:
    """Full pipeline configuration."""

    physical: PhysicalConfig = PhysicalConfig()
    simulation: SimulationConfig = SimulationConfig()
    noise: NoiseConfig = NoiseConfig()
    hyperparams: HyperparamConfig = HyperparamConfig()
    residual: ResidualConfig = ResidualConfig()
    inputs: InputsConfig = InputsConfig()


def _find_config_path() -> Path:
    """Find config.yaml by walking up from this file to the project root."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        config_path = parent / "config.yaml"
        if config_path.exists():
            return config_path
    raise FileNotFoundError("config.yaml not found in any parent directory")


def _tuples(raw: dict, *keys: str) -> dict:
    """Convert YAML lists to tuples of floats."""
    raw = dict(raw)
    for key in keys:
        if key in raw and raw[key] is not None:
            raw[key] = tuple(float(v) for v in raw[key])
    return raw


def _bounds(raw: dict, *keys: str) -> dict:
    """Read (lower, upper) pairs; a null upper bound means unbounded."""
    raw = dict(raw)
    for key in keys:
        if key in raw:
            lo, hi = raw[key]
            raw[key] = (float(lo), math.inf if hi is None else float(hi))
    return raw


def parse_config(raw: dict) -> IdentificationConfig:
    """Build an IdentificationConfig from a parsed YAML mapping.

    Every section is optional; missing sections fall back to defaults.
    """
    physical_raw = _tuples(raw.get("physical", {}), "mcp", "area")
    simulation_raw = _tuples(raw.get("simulation", {}), "x0")
    hyper_raw = _bounds(
        _tuples(raw.get("hyperparams", {}), "lengthscale_prior", "output_scale_prior"),
        "lengthscale_bounds",
        "output_scale_bounds",
    )
    inputs_raw = dict(raw.get("inputs", {}))
    if "heaters" in inputs_raw:
        inputs_raw["heaters"] = tuple(inputs_raw["heaters"])

    return IdentificationConfig(
        physical=PhysicalConfig(**physical_raw),
        simulation=SimulationConfig(**simulation_raw),
        noise=NoiseConfig(**raw.get("noise", {})),
        hyperparams=HyperparamConfig(**hyper_raw),
        residual=ResidualConfig(**raw.get("residual", {})),
        inputs=InputsConfig(**inputs_raw),
    )


@lru_cache(maxsize=4)
def load_config(path: str | None = None) -> IdentificationConfig:
    """Load and parse the pipeline configuration.

    Args:
        path: explicit config file; default is the nearest config.yaml above
            this package

    Returns cached config on subsequent calls.
    """
    config_path = Path(path) if path is not None else _find_config_path()
    logger.info("Loading configuration from %s", config_path)

    with config_path.open() as f:
        raw = yaml.safe_load(f) or {}

    return parse_config(raw)


def get_config() -> IdentificationConfig:
    """Get the pipeline configuration."""
    return load_config()
