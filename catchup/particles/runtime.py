"""Runtime structures for catch-up particle simulations.

This module provides Penzai structs for JAX-compatible simulation of the
coupled diffusion + jump system.
"""

from __future__ import annotations

import dataclasses

import jax
import jax.numpy as jnp
from penzai.core import struct

from ..runtime import QuantityNode


@struct.pytree_dataclass
class ParticleRuntime(struct.Struct):
    """JAX-compatible runtime structure for catch-up simulation.

    Attributes:
        drift: Drift μ as QuantityNode (1/time)
        volatility: Volatility σ as QuantityNode (1/sqrt(time))
        jump_scale: Jump scale ρ_max as QuantityNode (1/time)
        dt_max: Maximum internal step / thinning window as QuantityNode
        bound_sigmas: Envelope width of the thinning bound
        initial_params: Two-slot parameters of the initial distribution
        initial_values: Per-particle values for the 'fixed' family

        # Static (non-pytree) fields, fixed per configuration
        n_particles: Number of particles N
        solver_type: 0=exact, 1=euler (diffrax), 2=heun (diffrax)
        initial_family: 0=exponential, 1=constant, 2=uniform, 3=normal, 4=fixed
        max_rejections: Consecutive rejections before a trajectory stalls
        t_start: Origin of the Brownian path (at the first save time)
        brownian_end: End of the interval covered by the Brownian path
        dt0: Constant diffrax step size (same value as dt_max)
        brownian_tol: VirtualBrownianTree resolution
        max_substeps: diffrax max_steps for a single integration call
    """
    drift: QuantityNode
    volatility: QuantityNode
    jump_scale: QuantityNode
    dt_max: QuantityNode
    bound_sigmas: jax.Array
    initial_params: jax.Array
    initial_values: jax.Array

    n_particles: int = dataclasses.field(metadata={'pytree_node': False})
    solver_type: int = dataclasses.field(metadata={'pytree_node': False})
    initial_family: int = dataclasses.field(metadata={'pytree_node': False})
    max_rejections: int = dataclasses.field(metadata={'pytree_node': False})
    t_start: float = dataclasses.field(metadata={'pytree_node': False})
    brownian_end: float = dataclasses.field(metadata={'pytree_node': False})
    dt0: float = dataclasses.field(metadata={'pytree_node': False})
    brownian_tol: float = dataclasses.field(metadata={'pytree_node': False})
    max_substeps: int = dataclasses.field(metadata={'pytree_node': False})


@struct.pytree_dataclass
class ParticleState(struct.Struct):
    """Current state of one trajectory.

    Owned by exactly one trajectory; never shared across runs.

    Attributes:
        t: Current time
        u: Particle values, shape (N,)
        key: PRNG key for thinning, jump selection and exact diffusion noise
        brownian_key: Key of the trajectory's diffrax Brownian path
        jump_count: Accepted jumps
        candidate_count: Candidate events tested by thinning
        rejection_streak: Consecutive rejected candidates
        bound_violations: Candidates whose true rate exceeded the bound
        stalled: True once rejection_streak reached max_rejections
    """
    t: jax.Array
    u: jax.Array
    key: jax.Array
    brownian_key: jax.Array
    jump_count: jax.Array
    candidate_count: jax.Array
    rejection_streak: jax.Array
    bound_violations: jax.Array
    stalled: jax.Array

    @classmethod
    def zero(
        cls,
        u0: jax.Array,
        key: jax.Array,
        brownian_key: jax.Array,
        t0: float = 0.0,
    ) -> 'ParticleState':
        """Create the state at the start of a trajectory."""
        return cls(
            t=jnp.asarray(t0, dtype=u0.dtype),
            u=u0,
            key=key,
            brownian_key=brownian_key,
            jump_count=jnp.array(0, dtype=jnp.int32),
            candidate_count=jnp.array(0, dtype=jnp.int32),
            rejection_streak=jnp.array(0, dtype=jnp.int32),
            bound_violations=jnp.array(0, dtype=jnp.int32),
            stalled=jnp.array(False),
        )

    def diagnostics(self) -> dict:
        """Counters as Python scalars."""
        return {
            'jump_count': int(self.jump_count),
            'candidate_count': int(self.candidate_count),
            'bound_violations': int(self.bound_violations),
            'stalled': bool(self.stalled),
        }
