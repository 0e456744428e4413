"""Interacting particles with Brownian diffusion and catch-up jumps.

This module provides configuration, runtime structures, and kernel functions
for simulating N particles that diffuse independently and jump up to the
value of a randomly chosen peer at a state-dependent rate.
"""

from .config import CatchUpConfig, InitialConditionConfig
from .runtime import ParticleRuntime, ParticleState
from .kernel import (
    advance_to,
    apply_jump,
    diffuse,
    initialize,
    jump_rate,
    jump_rates,
    rate_bound,
    simulate,
)

__all__ = [
    'CatchUpConfig',
    'InitialConditionConfig',
    'ParticleRuntime',
    'ParticleState',
    'advance_to',
    'apply_jump',
    'diffuse',
    'initialize',
    'jump_rate',
    'jump_rates',
    'rate_bound',
    'simulate',
]
