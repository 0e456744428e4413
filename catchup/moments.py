"""Summary statistics ("moments") of the particle population.

A moment record is the 5-tuple (min, mean, median, max, growth) of the
particle values at one save time, where growth is the finite-difference
rate of the mean between consecutive save times (0 at the first record).

Two interfaces are provided:

- compute_moments: vectorised over a whole trajectory (jit/vmap friendly)
- MomentAggregator: an observer fed once per save time by a stateful
  simulation loop; one instance per trajectory, reset at trajectory start
"""

from __future__ import annotations

import dataclasses
from typing import Iterator, List, NamedTuple, Optional, Sequence

import jax
import jax.numpy as jnp
import numpy as np


MOMENT_CHANNELS = ('min', 'mean', 'median', 'max', 'growth')


class MomentRecord(NamedTuple):
    """Population summary at one save time."""
    min: float
    mean: float
    median: float
    max: float
    growth: float


def moment_record(
    u,
    previous_mean: Optional[float] = None,
    spacing: Optional[float] = None,
) -> MomentRecord:
    """Summarise one particle state.

    Args:
        u: Particle values
        previous_mean: Mean at the previous save time (None for the first record)
        spacing: Time since the previous save time

    Returns:
        MomentRecord with growth 0 when there is no previous record
    """
    values = np.asarray(u, dtype=float)
    mean = float(np.mean(values))
    if previous_mean is None:
        growth = 0.0
    else:
        growth = (mean - previous_mean) / spacing
    return MomentRecord(
        min=float(np.min(values)),
        mean=mean,
        median=float(np.median(values)),
        max=float(np.max(values)),
        growth=float(growth),
    )


def compute_moments(times: jax.Array, states: jax.Array) -> jax.Array:
    """Moments of every saved state of a trajectory.

    Args:
        times: Save times, shape (S,)
        states: Particle values at the save times, shape (S, N)

    Returns:
        Array of shape (S, 5) with columns ordered as MOMENT_CHANNELS
    """
    times = jnp.asarray(times, dtype=states.dtype)
    means = jnp.mean(states, axis=-1)
    growth = jnp.concatenate([
        jnp.zeros((1,), dtype=states.dtype),
        jnp.diff(means) / jnp.diff(times),
    ])
    return jnp.stack([
        jnp.min(states, axis=-1),
        means,
        jnp.median(states, axis=-1),
        jnp.max(states, axis=-1),
        growth,
    ], axis=-1)


@dataclasses.dataclass
class MomentLog:
    """Append-only, time-ordered sequence of moment records."""

    times: List[float] = dataclasses.field(default_factory=list)
    records: List[MomentRecord] = dataclasses.field(default_factory=list)

    def append(self, t: float, record: MomentRecord) -> None:
        if self.times and t <= self.times[-1]:
            raise ValueError(
                f"Moment log is time-ordered; got t={t} after t={self.times[-1]}"
            )
        self.times.append(float(t))
        self.records.append(record)

    def clear(self) -> None:
        self.times.clear()
        self.records.clear()

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[MomentRecord]:
        return iter(self.records)

    def as_array(self) -> np.ndarray:
        """Records as an array of shape (len, 5)."""
        if not self.records:
            return np.zeros((0, len(MOMENT_CHANNELS)))
        return np.asarray(self.records, dtype=float)

    @classmethod
    def from_array(cls, times: Sequence[float], values: np.ndarray) -> MomentLog:
        """Rebuild a log from an (S, 5) moment array."""
        log = cls()
        for t, row in zip(times, np.asarray(values, dtype=float)):
            log.append(float(t), MomentRecord(*row.tolist()))
        return log


class MomentAggregator:
    """Observer that records one MomentRecord per save time.

    The aggregator must see every save time exactly once and in order;
    skipped or repeated points raise ValueError. Call reset() at the start
    of each trajectory so no record leaks between runs.

    Example:
        >>> aggregator = MomentAggregator(config.save_time_values)
        >>> result = ParticleAdapter(config).simulate(observer=aggregator)
        >>> aggregator.log.as_array().shape
        (len(config.save_time_values), 5)

    Args:
        save_times: Save-time grid the observer expects
        rtol: Relative tolerance when matching observed times to the grid

    Attributes:
        save_times: The expected grid
        log: MomentLog of the current trajectory
    """

    def __init__(self, save_times: Sequence[float], *, rtol: float = 1e-5):
        self.save_times = np.asarray(save_times, dtype=float)
        if self.save_times.ndim != 1 or self.save_times.size == 0:
            raise ValueError("save_times must be a non-empty 1-D sequence")
        scale = max(float(np.max(np.abs(self.save_times))), 1.0)
        self.atol = rtol * scale
        if self.save_times.size > 1:
            self.atol = min(self.atol, 0.25 * float(np.min(np.diff(self.save_times))))
        self.log = MomentLog()

    def reset(self) -> None:
        """Clear the log before a new trajectory."""
        self.log.clear()

    @property
    def complete(self) -> bool:
        """True once every save time has been observed."""
        return len(self.log) == len(self.save_times)

    def observe(self, t: float, u) -> MomentRecord:
        """Record the moments of state u at save time t.

        Args:
            t: Current simulation time; must match the next grid point
            u: Particle values at t

        Returns:
            The appended MomentRecord

        Raises:
            ValueError: If t is not the next expected save time
        """
        k = len(self.log)
        if k >= len(self.save_times):
            raise ValueError(
                f"All {len(self.save_times)} save times already observed; got t={t}"
            )

        expected = float(self.save_times[k])
        if abs(float(t) - expected) > self.atol:
            raise ValueError(
                f"Observer expected save time {expected} (point {k}), got t={t}"
            )

        if k == 0:
            record = moment_record(u)
        else:
            previous_t = float(self.save_times[k - 1])
            record = moment_record(u, self.log.records[-1].mean, expected - previous_t)

        self.log.append(expected, record)
        return record
