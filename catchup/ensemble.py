"""Ensembles of independent catch-up trajectories.

Every trajectory gets its own PRNG key derived from (seed, index,
attempt), its own state and, in moment mode, its own summary log; the
only object shared between trajectories is the read-only runtime. Runs
can therefore be distributed freely:

- default: ``jax.jit(jax.vmap(simulate))`` over batches of indices
- executor: any ``map``-like callable (``map``,
  ``ThreadPoolExecutor().map``, ...) applied to ``run_one``

Stalled trajectories are retried with a fresh key; trajectories that
still fail, or that miss the deadline, are reported next to the
successful ones instead of being dropped.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import time
import warnings
from typing import Callable, Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union

import jax
import jax.numpy as jnp
import numpy as np

from .adapters import ParticleAdapter, TrajectoryResult, trajectory_key
from .errors import SchedulerStallError, TrajectoryAborted
from .moments import MOMENT_CHANNELS, MomentAggregator, MomentLog, compute_moments
from .particles.config import CatchUpConfig
from .particles.kernel import simulate


__all__ = [
    'TrajectoryFailure',
    'EnsembleSummary',
    'EnsembleResult',
    'EnsembleRunner',
    'reduce_samples',
    'run_ensemble',
]

logger = logging.getLogger(__name__)

Mode = Literal['moments', 'trajectories']
Executor = Callable[[Callable, Iterable], Iterable]

DEFAULT_BATCH_SIZE = 256
# Default batch when a deadline is set, so one batch cannot overrun it by much
DEADLINE_BATCH_SIZE = 16


@dataclasses.dataclass(frozen=True)
class TrajectoryFailure:
    """A trajectory that produced no result.

    Attributes:
        index: Ensemble index
        attempt: Last attempt made
        reason: 'stall' or 'deadline'
        message: Error message of the last attempt
        time: Simulated time reached, when known
    """
    index: int
    attempt: int
    reason: str
    message: str = ""
    time: Optional[float] = None


@dataclasses.dataclass
class EnsembleSummary:
    """Cross-trajectory statistics per save time and channel.

    The variance is the Bessel-corrected sample variance (ddof=1); it is
    0 when fewer than two trajectories contributed.

    Attributes:
        times: Save times, shape (S,)
        channels: Channel names, length C
        mean: Cross-trajectory mean, shape (S, C)
        variance: Cross-trajectory sample variance, shape (S, C)
        n_trajectories: Number of trajectories reduced
    """
    times: np.ndarray
    channels: Tuple[str, ...]
    mean: np.ndarray
    variance: np.ndarray
    n_trajectories: int

    def channel(self, name: str) -> Tuple[np.ndarray, np.ndarray]:
        """(mean, variance) time series of one channel."""
        c = self.channels.index(name)
        return self.mean[:, c], self.variance[:, c]


@dataclasses.dataclass
class EnsembleResult:
    """Output of an ensemble run.

    Attributes:
        mode: 'moments' or 'trajectories'
        times: Save times, shape (S,)
        channels: Channel names (moment names, or particle indices)
        summary: Reduction over successful trajectories (None if none succeeded)
        indices: Indices of successful trajectories, ascending
        samples: Retained per-trajectory samples, shape (K_ok, S, C), if requested
        failures: Trajectories that produced no result
    """
    mode: str
    times: np.ndarray
    channels: Tuple[str, ...]
    summary: Optional[EnsembleSummary]
    indices: np.ndarray
    samples: Optional[np.ndarray] = None
    failures: List[TrajectoryFailure] = dataclasses.field(default_factory=list)

    @property
    def n_success(self) -> int:
        return len(self.indices)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def complete(self) -> bool:
        return not self.failures

    def moment_logs(self) -> List[MomentLog]:
        """Retained samples as one MomentLog per successful trajectory."""
        if self.mode != 'moments' or self.samples is None:
            raise ValueError("moment_logs() needs mode='moments' and retain_samples=True")
        return [MomentLog.from_array(self.times, sample) for sample in self.samples]


def reduce_samples(
    times: np.ndarray,
    channels: Sequence[str],
    samples: np.ndarray,
) -> EnsembleSummary:
    """Reduce per-trajectory samples to cross-trajectory mean and variance.

    Args:
        times: Save times, shape (S,)
        channels: Channel names, length C
        samples: Per-trajectory samples, shape (K, S, C) with K >= 1

    Returns:
        EnsembleSummary
    """
    samples = np.asarray(samples, dtype=float)
    if samples.ndim != 3 or samples.shape[0] == 0:
        raise ValueError(f"Expected samples of shape (K>=1, S, C), got {samples.shape}")

    n = samples.shape[0]
    mean = samples.mean(axis=0)
    if n > 1:
        variance = samples.var(axis=0, ddof=1)
    else:
        variance = np.zeros_like(mean)

    return EnsembleSummary(
        times=np.asarray(times, dtype=float),
        channels=tuple(channels),
        mean=mean,
        variance=variance,
        n_trajectories=n,
    )


class EnsembleRunner:
    """Runs K independent trajectories and reduces them.

    Example:
        >>> runner = EnsembleRunner(config, mode='moments', retain_samples=True)
        >>> result = runner.run()
        >>> mean, var = result.summary.channel('mean')

        # Spread trajectories over threads instead of vmap batches:
        >>> with ThreadPoolExecutor(4) as pool:
        ...     result = EnsembleRunner(config, executor=pool.map).run()

    Args:
        config: CatchUpConfig (trajectories, seed and max_retries are read from it)
        mode: 'moments' for (min, mean, median, max, growth) channels,
            'trajectories' for one channel per particle
        retain_samples: Keep the full (K, S, C) sample array
        executor: map-like callable; None uses batched jax.vmap
        batch_size: Trajectories per vmap batch (default: min(K, 256), or
            min(K, 16) when run() is given a deadline)
    """

    def __init__(
        self,
        config: CatchUpConfig,
        *,
        mode: Mode = 'moments',
        retain_samples: bool = False,
        executor: Optional[Executor] = None,
        batch_size: Optional[int] = None,
    ):
        if mode not in ('moments', 'trajectories'):
            raise ValueError(f"mode must be 'moments' or 'trajectories', got {mode!r}")
        if batch_size is not None and batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.config = config
        self.mode = mode
        self.retain_samples = retain_samples
        self.executor = executor
        self.batch_size = batch_size or min(config.trajectories, DEFAULT_BATCH_SIZE)
        self._batch_size_given = batch_size is not None

        self.adapter = ParticleAdapter(config)
        self.runtime = self.adapter.runtime
        self.times = config.save_time_values

        if mode == 'moments':
            self.channels = MOMENT_CHANNELS
        else:
            self.channels = tuple(str(i) for i in range(config.n_particles))

        self._batched = jax.jit(jax.vmap(self._simulate_one, in_axes=(None, 0, None)))

    def _simulate_one(self, runtime, key, times):
        states, final_state = simulate(runtime, key, times)
        if self.mode == 'moments':
            samples = compute_moments(times, states)
        else:
            samples = states
        return samples, final_state.stalled

    def run_one(
        self,
        index: int,
        *,
        attempt: int = 0,
        deadline: Optional[float] = None,
    ) -> TrajectoryResult:
        """Simulate a single trajectory with its own observer.

        Args:
            index: Trajectory index
            attempt: Retry attempt
            deadline: Optional time.monotonic() deadline

        Returns:
            TrajectoryResult (with moments in moment mode)

        Raises:
            SchedulerStallError, TrajectoryAborted
        """
        observer = MomentAggregator(self.times) if self.mode == 'moments' else None
        return self.adapter.simulate(
            seed=self.config.seed,
            index=index,
            attempt=attempt,
            observer=observer,
            deadline=deadline,
        )

    def _run_with_retries(
        self,
        index: int,
        *,
        first_attempt: int = 0,
        deadline: Optional[float] = None,
    ) -> Union[TrajectoryResult, TrajectoryFailure]:
        attempt = first_attempt
        while True:
            try:
                return self.run_one(index, attempt=attempt, deadline=deadline)
            except TrajectoryAborted as e:
                return TrajectoryFailure(index, attempt, 'deadline', str(e), e.time)
            except SchedulerStallError as e:
                if attempt >= self.config.max_retries:
                    return TrajectoryFailure(index, attempt, 'stall', str(e), e.time)
                logger.debug("Trajectory %d stalled on attempt %d; retrying", index, attempt)
                attempt += 1

    def _sample_of(self, result: TrajectoryResult) -> np.ndarray:
        return result.moments if self.mode == 'moments' else result.states

    def _run_executor(self, deadline: Optional[float]) -> Tuple[Dict[int, np.ndarray], List[TrajectoryFailure]]:
        task = functools.partial(self._run_with_retries, deadline=deadline)
        samples: Dict[int, np.ndarray] = {}
        failures: List[TrajectoryFailure] = []

        for outcome in self.executor(task, range(self.config.trajectories)):
            if isinstance(outcome, TrajectoryFailure):
                failures.append(outcome)
            else:
                samples[outcome.index] = self._sample_of(outcome)

        return samples, failures

    def _run_batched(self, deadline: Optional[float]) -> Tuple[Dict[int, np.ndarray], List[TrajectoryFailure]]:
        samples: Dict[int, np.ndarray] = {}
        failures: List[TrajectoryFailure] = []
        times = jnp.asarray(self.times)
        n_total = self.config.trajectories
        batch_size = self.batch_size
        if deadline is not None and not self._batch_size_given:
            batch_size = min(batch_size, DEADLINE_BATCH_SIZE)

        for start in range(0, n_total, batch_size):
            indices = np.arange(start, min(start + batch_size, n_total))

            if deadline is not None and time.monotonic() > deadline:
                failures.extend(
                    TrajectoryFailure(int(i), 0, 'deadline', "Deadline passed before batch start")
                    for i in indices
                )
                continue

            keys = jnp.stack([trajectory_key(self.config.seed, int(i)) for i in indices])
            batch_samples, stalled = self._batched(self.runtime, keys, times)
            batch_samples = np.asarray(batch_samples)
            stalled = np.asarray(stalled)
            logger.debug(
                "Batch %d-%d done (%d stalled)", indices[0], indices[-1], int(stalled.sum())
            )

            for offset, index in enumerate(indices):
                if not stalled[offset]:
                    samples[int(index)] = batch_samples[offset]
                    continue
                if self.config.max_retries == 0:
                    failures.append(TrajectoryFailure(
                        int(index), 0, 'stall',
                        f"Thinning stalled after {self.config.max_rejections} consecutive rejections",
                    ))
                    continue
                outcome = self._run_with_retries(int(index), first_attempt=1, deadline=deadline)
                if isinstance(outcome, TrajectoryFailure):
                    failures.append(outcome)
                else:
                    samples[int(index)] = self._sample_of(outcome)

        return samples, failures

    def run(self, deadline: Optional[float] = None) -> EnsembleResult:
        """Run the whole ensemble.

        Args:
            deadline: Optional time.monotonic() value; trajectories not
                finished by then are reported as 'deadline' failures.
                The vmap path checks it only between batches, so a batch
                that starts before the deadline runs to completion and may
                overrun it. Without an explicit batch_size the batches
                shrink to DEADLINE_BATCH_SIZE trajectories to bound that.

        Returns:
            EnsembleResult with the summary over successful trajectories
        """
        if self.executor is None:
            samples, failures = self._run_batched(deadline)
        else:
            samples, failures = self._run_executor(deadline)

        failures.sort(key=lambda f: f.index)
        indices = np.array(sorted(samples), dtype=int)

        if failures:
            warnings.warn(
                f"{len(failures)} of {self.config.trajectories} trajectories failed "
                f"({', '.join(sorted({f.reason for f in failures}))}); the summary "
                f"covers the remaining {len(indices)}.",
                RuntimeWarning,
                stacklevel=2,
            )

        stacked = None
        summary = None
        if len(indices):
            stacked = np.stack([samples[i] for i in indices])
            summary = reduce_samples(self.times, self.channels, stacked)

        return EnsembleResult(
            mode=self.mode,
            times=np.asarray(self.times, dtype=float),
            channels=self.channels,
            summary=summary,
            indices=indices,
            samples=stacked if self.retain_samples else None,
            failures=failures,
        )


def run_ensemble(
    config: CatchUpConfig,
    *,
    deadline: Optional[float] = None,
    **kwargs,
) -> EnsembleResult:
    """Convenience wrapper: ``EnsembleRunner(config, **kwargs).run(deadline)``."""
    return EnsembleRunner(config, **kwargs).run(deadline=deadline)
