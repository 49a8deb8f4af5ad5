"""Exogenous input profiles.

The input vector is u(t) = [tau_a(t), q_1(t), q_2(t), q_3(t)]: ambient
temperature followed by one heater power per block. Each component is a
Profile whose shape is selected by an explicit ProfileKind.
"""

from dataclasses import dataclass, field
from enum import StrEnum

import jax
import jax.numpy as jnp
import numpy as np

from greybox_thermal.models.ssm.base import N_BLOCKS


class ProfileKind(StrEnum):
    """Supported time profiles."""

    CONSTANT = "constant"  # base
    SIGMOID = "sigmoid"  # base + amplitude between a smooth onset and offset
    PULSE = "pulse"  # base + amplitude during the first `duty` fraction of each period


@dataclass(frozen=True)
class Profile:
    """Scalar time profile.

    SIGMOID: base + amplitude * (s(k (t - onset)) - s(k (t - offset))), s = logistic.
    PULSE: base + amplitude while ((t - onset) mod period) < duty * period, t >= onset.
    """

    kind: ProfileKind = ProfileKind.CONSTANT
    base: float = 0.0
    amplitude: float = 0.0
    onset: float = 0.0
    offset: float = float("inf")
    steepness: float = 1.0
    period: float = 1.0
    duty: float = 0.5

    def __call__(self, t):
        t = jnp.asarray(t, dtype=float)
        if self.kind == ProfileKind.CONSTANT:
            return jnp.full_like(t, self.base)
        if self.kind == ProfileKind.SIGMOID:
            window = jax.nn.sigmoid(self.steepness * (t - self.onset))
            if np.isfinite(self.offset):
                window = window - jax.nn.sigmoid(self.steepness * (t - self.offset))
            return self.base + self.amplitude * window
        if self.kind == ProfileKind.PULSE:
            phase = jnp.mod(t - self.onset, self.period)
            on = (t >= self.onset) & (t < self.offset) & (phase < self.duty * self.period)
            return self.base + self.amplitude * on.astype(t.dtype)
        raise ValueError(f"Unknown profile kind: {self.kind}")

    @classmethod
    def from_dict(cls, raw: dict) -> "Profile":
        raw = dict(raw)
        kind = ProfileKind(raw.pop("kind", ProfileKind.CONSTANT))
        return cls(kind=kind, **{k: float(v) for k, v in raw.items()})


@dataclass(frozen=True)
class InputGenerator:
    """u(t) = [ambient(t), heater_1(t), heater_2(t), heater_3(t)]."""

    ambient: Profile = field(default_factory=lambda: Profile(base=21.0))
    heaters: tuple[Profile, ...] = field(default_factory=lambda: (Profile(),) * N_BLOCKS)

    def __post_init__(self):
        if len(self.heaters) != N_BLOCKS:
            raise ValueError(f"Expected {N_BLOCKS} heater profiles, got {len(self.heaters)}")

    def __call__(self, t) -> jnp.ndarray:
        """(4,) input vector at a scalar time t."""
        return jnp.stack([self.ambient(t)] + [h(t) for h in self.heaters])

    def sample(self, times) -> jnp.ndarray:
        """(T, 4) inputs at each time in `times`."""
        times = jnp.asarray(times, dtype=float)
        return jnp.stack([self.ambient(times)] + [h(times) for h in self.heaters], axis=-1)

    @classmethod
    def from_dict(cls, raw: dict) -> "InputGenerator":
        heaters = tuple(Profile.from_dict(h) for h in raw.get("heaters", [{}] * N_BLOCKS))
        return cls(ambient=Profile.from_dict(raw.get("ambient", {})), heaters=heaters)


@dataclass(frozen=True)
class SampledInputs:
    """Zero-order hold of measured inputs u_1..u_T sampled at t_1..t_T.

    u(t) = u_k for t in (t_{k-1}, t_k], matching x_k = A x_{k-1} + B u_k;
    times outside the record are clamped to the first/last sample.
    """

    times: np.ndarray  # (T,)
    values: np.ndarray  # (T, 4)

    def __post_init__(self):
        if self.values.ndim != 2 or self.values.shape[0] != self.times.shape[0]:
            raise ValueError(
                f"values must be ({self.times.shape[0]}, n), got {self.values.shape}"
            )

    def __call__(self, t) -> np.ndarray:
        idx = np.clip(np.searchsorted(self.times, t, side="left"), 0, len(self.times) - 1)
        return self.values[idx]

    def sample(self, times) -> np.ndarray:
        return self(np.asarray(times, dtype=float))
