"""Catchup: interacting-particle jump-diffusion simulation with JAX."""

from .units import UnitManager, UnitSpec, QuantityInput
from .fields import quantity_field, sequence_quantity_field
from .runtime import QuantityNode
from .errors import (
    CatchUpError,
    ConfigurationError,
    TrajectoryError,
    SchedulerStallError,
    TrajectoryAborted,
)
from .particles import (
    CatchUpConfig,
    InitialConditionConfig,
    ParticleRuntime,
    ParticleState,
    advance_to,
    apply_jump,
    jump_rate,
    jump_rates,
    rate_bound,
    simulate,
)
from .moments import (
    MOMENT_CHANNELS,
    MomentRecord,
    MomentLog,
    MomentAggregator,
    compute_moments,
)
from .adapters import (
    Observer,
    ParticleAdapter,
    TrajectoryResult,
    trajectory_key,
)
from .ensemble import (
    EnsembleResult,
    EnsembleRunner,
    EnsembleSummary,
    TrajectoryFailure,
    reduce_samples,
    run_ensemble,
)

__version__ = "0.1.0"

__all__ = [
    # Units
    "UnitManager",
    "UnitSpec",
    "QuantityInput",
    "quantity_field",
    "sequence_quantity_field",
    "QuantityNode",
    # Errors
    "CatchUpError",
    "ConfigurationError",
    "TrajectoryError",
    "SchedulerStallError",
    "TrajectoryAborted",
    # Particles
    "CatchUpConfig",
    "InitialConditionConfig",
    "ParticleRuntime",
    "ParticleState",
    "advance_to",
    "apply_jump",
    "jump_rate",
    "jump_rates",
    "rate_bound",
    "simulate",
    # Moments
    "MOMENT_CHANNELS",
    "MomentRecord",
    "MomentLog",
    "MomentAggregator",
    "compute_moments",
    # Adapters
    "Observer",
    "ParticleAdapter",
    "TrajectoryResult",
    "trajectory_key",
    # Ensembles
    "EnsembleResult",
    "EnsembleRunner",
    "EnsembleSummary",
    "TrajectoryFailure",
    "reduce_samples",
    "run_ensemble",
]
