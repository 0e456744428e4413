"""High-level adapter for stateful catch-up simulations.

This module wraps the low-level JAX runtime structures with a stateful,
user-friendly API, following the same pattern for interactive
(notebook) and batch (jax.lax.scan / jax.vmap) usage: the adapter owns a
config, a runtime and a current state, while power users can call the
kernel functions on ``adapter.runtime`` and ``adapter.state`` directly.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Optional, Protocol

import jax
import jax.numpy as jnp
import numpy as np

from .errors import SchedulerStallError, TrajectoryAborted
from .moments import MomentAggregator
from .particles.config import CatchUpConfig
from .particles.kernel import advance_to, initialize
from .particles.runtime import ParticleState


__all__ = [
    'Observer',
    'TrajectoryResult',
    'ParticleAdapter',
    'trajectory_key',
]


_initialize = jax.jit(initialize)
_advance_to = jax.jit(advance_to)


def trajectory_key(seed: int, index: int, attempt: int = 0) -> jax.Array:
    """Deterministic PRNG key of one ensemble trajectory.

    Keys derive from the base seed, the trajectory index and the retry
    attempt only, so results do not depend on execution order or on how
    trajectories are distributed across workers.

    Args:
        seed: Base seed of the run
        index: Trajectory index within the ensemble
        attempt: Retry attempt (0 for the first run)

    Returns:
        PRNG key
    """
    key = jax.random.fold_in(jax.random.PRNGKey(seed), index)
    return jax.random.fold_in(key, attempt)


class Observer(Protocol):
    """Anything fed once per save time by ParticleAdapter.simulate()."""

    def reset(self) -> None:
        ...

    def observe(self, t: float, u: np.ndarray):
        ...


@dataclasses.dataclass
class TrajectoryResult:
    """Output of one simulated trajectory.

    Attributes:
        times: Save times, shape (S,)
        states: Particle values at the save times, shape (S, N)
        moments: Moment records, shape (S, 5), when a MomentAggregator observed the run
        diagnostics: Jump/candidate/violation counters of the final state
        index: Ensemble index of the trajectory
        attempt: Retry attempt that produced it
    """
    times: np.ndarray
    states: np.ndarray
    moments: Optional[np.ndarray] = None
    diagnostics: dict = dataclasses.field(default_factory=dict)
    index: int = 0
    attempt: int = 0


class ParticleAdapter:
    """High-level adapter for catch-up particle simulations with stateful API.

    Example:
        >>> config = CatchUpConfig(
        ...     drift=0.01, volatility=0.1, n_particles=50, jump_scale=1.0,
        ...     initial_condition={'family': 'exponential', 'rate': 1.0},
        ...     save_times=[0.0, 1.0, 2.0],
        ... )
        >>> adapter = ParticleAdapter(config)
        >>>
        >>> # Full trajectory with an observer
        >>> aggregator = MomentAggregator(config.save_time_values)
        >>> result = adapter.simulate(observer=aggregator)
        >>>
        >>> # Or step-by-step
        >>> adapter.reset()
        >>> jumps = adapter.step(t_end=0.5)

        # JAX power users can use the kernel directly:
        >>> new_state = advance_to(adapter.runtime, adapter.state, 1.0)

    Args:
        config: CatchUpConfig instance
        seed: Base seed (defaults to config.seed)
        index: Trajectory index used to derive the PRNG key

    Attributes:
        config: The configuration used
        runtime: JAX-ready runtime structure
        state: Current ParticleState of the stepping API
    """

    def __init__(
        self,
        config: CatchUpConfig,
        *,
        seed: Optional[int] = None,
        index: int = 0,
    ):
        self.config = config
        self.runtime = config.to_runtime()
        self.save_times = config.save_time_values
        self.reset(seed=seed, index=index)

    def _start(self, seed: Optional[int], index: int, attempt: int) -> ParticleState:
        if seed is None:
            seed = self.config.seed
        key = trajectory_key(seed, index, attempt)
        return _initialize(self.runtime, key, jnp.asarray(self.save_times[0]))

    def reset(self, seed: Optional[int] = None, index: int = 0, attempt: int = 0):
        """Reset the stepping state to a fresh trajectory at the first save time.

        Args:
            seed: Base seed (uses config seed if None)
            index: Trajectory index
            attempt: Retry attempt
        """
        self.index = index
        self.attempt = attempt
        self.state = self._start(seed, index, attempt)

    def step(self, t_end: float) -> int:
        """Advance the stepping state to t_end (stateful).

        Args:
            t_end: Time to advance to; must not precede the current time

        Returns:
            Number of jumps that occurred during this step

        Raises:
            ValueError: If t_end is before the current time
            SchedulerStallError: If the thinning loop stalled
        """
        if t_end < float(self.state.t):
            raise ValueError(
                f"Cannot step backwards: t_end={t_end} < t={float(self.state.t)}"
            )

        before = int(self.state.jump_count)
        new_state = _advance_to(self.runtime, self.state, jnp.asarray(t_end))
        self.state = new_state

        if bool(new_state.stalled):
            raise SchedulerStallError(
                f"Thinning stalled after {self.config.max_rejections} consecutive "
                f"rejections at t={float(new_state.t):.6g}",
                index=self.index, attempt=self.attempt, time=float(new_state.t),
            )

        return int(new_state.jump_count) - before

    def simulate(
        self,
        *,
        seed: Optional[int] = None,
        index: int = 0,
        attempt: int = 0,
        observer: Optional[Observer] = None,
        deadline: Optional[float] = None,
    ) -> TrajectoryResult:
        """Run one full trajectory over the save grid (functional).

        Does not modify the stepping state. The observer is reset first
        and then sees every save time exactly once, in order.

        Args:
            seed: Base seed (uses config seed if None)
            index: Trajectory index used to derive the PRNG key
            attempt: Retry attempt used to derive the PRNG key
            observer: Optional observer, e.g. a MomentAggregator
            deadline: Optional time.monotonic() value after which the run aborts

        Returns:
            TrajectoryResult with states at every save time

        Raises:
            TrajectoryAborted: If the deadline passed before the horizon
            SchedulerStallError: If the thinning loop stalled
        """
        state = self._start(seed, index, attempt)

        if observer is not None:
            observer.reset()

        states = [np.asarray(state.u)]
        if observer is not None:
            observer.observe(float(self.save_times[0]), states[0])

        for t_save in self.save_times[1:]:
            if deadline is not None and time.monotonic() > deadline:
                raise TrajectoryAborted(
                    f"Deadline passed at t={float(state.t):.6g} before horizon "
                    f"{float(self.save_times[-1]):.6g}",
                    index=index, attempt=attempt, time=float(state.t),
                )

            state = _advance_to(self.runtime, state, jnp.asarray(t_save))
            if bool(state.stalled):
                raise SchedulerStallError(
                    f"Thinning stalled after {self.config.max_rejections} consecutive "
                    f"rejections at t={float(state.t):.6g}",
                    index=index, attempt=attempt, time=float(state.t),
                )

            u = np.asarray(state.u)
            states.append(u)
            if observer is not None:
                observer.observe(float(state.t), u)

        moments = None
        if isinstance(observer, MomentAggregator):
            moments = observer.log.as_array()

        return TrajectoryResult(
            times=np.asarray(self.save_times, dtype=float),
            states=np.stack(states),
            moments=moments,
            diagnostics=state.diagnostics(),
            index=index,
            attempt=attempt,
        )

    def get_state(self) -> dict:
        """Get current stepping state as a dictionary.

        Returns:
            Dictionary with:
            - 't': current time
            - 'u': current particle values
            - 'jump_count', 'candidate_count', 'bound_violations', 'stalled'
        """
        return {
            't': float(self.state.t),
            'u': np.asarray(self.state.u),
            **self.state.diagnostics(),
        }

    def set_state(self, state: ParticleState):
        """Set the stepping state directly."""
        self.state = state
