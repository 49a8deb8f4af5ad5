"""Tabular views of trajectories and measurement CSV loading."""

from pathlib import Path

import numpy as np
import polars as pl

from greybox_thermal.models.errors import DimensionMismatch
from greybox_thermal.models.ssm.base import N_BLOCKS, N_INPUTS

TEMPERATURE_COLUMNS = [f"T{i + 1}" for i in range(N_BLOCKS)]
INPUT_COLUMNS = ["tau_a"] + [f"q{i + 1}" for i in range(N_BLOCKS)]


def trajectory_frame(
    times,
    values,
    prefix: str = "T",
    stds=None,
) -> pl.DataFrame:
    """One row per time point: `time`, `{prefix}1..n` and optionally `{prefix}1_std..`.

    Args:
        times: (N,) sample times
        values: (N, n) trajectory (temperatures, smoothed means, ...)
        prefix: column prefix
        stds: optional (N, n) standard deviations

    Returns:
        polars DataFrame
    """
    values = np.asarray(values, dtype=float)
    times = np.asarray(times, dtype=float)
    if values.ndim != 2 or values.shape[0] != times.shape[0]:
        raise DimensionMismatch(
            f"values must be ({times.shape[0]}, n) to match times, got {values.shape}"
        )

    columns = {"time": times}
    for i in range(values.shape[1]):
        columns[f"{prefix}{i + 1}"] = values[:, i]
    if stds is not None:
        stds = np.asarray(stds, dtype=float)
        if stds.shape != values.shape:
            raise DimensionMismatch(f"stds must match values {values.shape}, got {stds.shape}")
        for i in range(stds.shape[1]):
            columns[f"{prefix}{i + 1}_std"] = stds[:, i]
    return pl.DataFrame(columns)


def measurement_frame(times, observations, inputs) -> pl.DataFrame:
    """Measurements and inputs for k = 1..T in one frame (nulls for missing readings)."""
    observations = np.asarray(observations, dtype=float)
    inputs = np.asarray(inputs, dtype=float)
    if observations.shape != (len(times), N_BLOCKS) or inputs.shape != (len(times), N_INPUTS):
        raise DimensionMismatch(
            f"expected observations ({len(times)}, {N_BLOCKS}) and inputs "
            f"({len(times)}, {N_INPUTS}), got {observations.shape} and {inputs.shape}"
        )
    frame = pl.DataFrame(
        {
            "time": np.asarray(times, dtype=float),
            **{name: observations[:, i] for i, name in enumerate(TEMPERATURE_COLUMNS)},
            **{name: inputs[:, i] for i, name in enumerate(INPUT_COLUMNS)},
        }
    )
    return frame.with_columns(pl.col(TEMPERATURE_COLUMNS).fill_nan(None))


def load_measurements(path: Path | str) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Read a measurement CSV with columns time, T1..T3, tau_a, q1..q3.

    Empty cells become NaN observations (handled by the smoother as missing).

    Returns:
        times: (T,)
        observations: (T, 3)
        inputs: (T, 4)
    """
    frame = pl.read_csv(path)
    missing = [c for c in ["time", *TEMPERATURE_COLUMNS, *INPUT_COLUMNS] if c not in frame.columns]
    if missing:
        raise DimensionMismatch(f"{path}: missing columns {missing}")

    frame = frame.sort("time").with_columns(
        pl.col(["time", *TEMPERATURE_COLUMNS, *INPUT_COLUMNS]).cast(pl.Float64, strict=False)
    )
    if frame.select(pl.col(INPUT_COLUMNS).is_null().any()).to_numpy().any():
        raise ValueError(f"{path}: inputs must be complete")

    times = frame["time"].to_numpy()
    observations = frame.select(TEMPERATURE_COLUMNS).fill_null(float("nan")).to_numpy()
    inputs = frame.select(INPUT_COLUMNS).to_numpy()
    return times, observations, inputs
