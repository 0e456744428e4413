"""Configuration for interacting-particle catch-up simulations.

This module provides Pydantic configuration classes for the coupled
diffusion + catch-up jump system.
"""

from __future__ import annotations

import math
import warnings
from typing import Any, Literal, Optional, Tuple

import numpy as np
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ..errors import ConfigurationError
from ..fields import quantity_field, sequence_quantity_field
from ..units import UnitSpec


# Integer identifiers carried in the runtime (static for JAX)
SOLVERS = ('exact', 'euler', 'heun')
FAMILIES = ('exponential', 'constant', 'uniform', 'normal', 'fixed')

# Default internal step as a fraction of the save-grid span
DEFAULT_STEPS_PER_SPAN = 100


class _ValidatedModel(BaseModel):
    """Base model that reports validation failures as ConfigurationError."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid {type(self).__name__}: {e}"
            ) from e


class InitialConditionConfig(_ValidatedModel):
    """Distribution of the particle values at the start of a trajectory.

    Each particle draws its initial value IID from the configured family:

    - ``exponential``: rate ``rate`` (mean 1/rate)
    - ``constant``: every particle equals ``value``
    - ``uniform``: on [``low``, ``high``)
    - ``normal``: mean ``mean``, standard deviation ``std``
    - ``fixed``: explicit per-particle ``values`` (no randomness)

    Example:
        >>> InitialConditionConfig(family='exponential', rate=2.0)
        >>> InitialConditionConfig.fixed([0.0, 10.0, 10.0])
    """

    family: Literal['exponential', 'constant', 'uniform', 'normal', 'fixed'] = Field(
        default='exponential',
        description="Parametric family of the initial-value distribution"
    )

    rate: Optional[float] = Field(default=None, description="Exponential rate α")
    value: Optional[float] = Field(default=None, description="Constant initial value")
    low: Optional[float] = Field(default=None, description="Uniform lower bound")
    high: Optional[float] = Field(default=None, description="Uniform upper bound")
    mean: Optional[float] = Field(default=None, description="Normal mean")
    std: Optional[float] = Field(default=None, description="Normal standard deviation")
    values: Optional[Tuple[float, ...]] = Field(
        default=None, description="Explicit per-particle values"
    )

    @classmethod
    def exponential(cls, rate: float) -> InitialConditionConfig:
        return cls(family='exponential', rate=rate)

    @classmethod
    def constant(cls, value: float) -> InitialConditionConfig:
        return cls(family='constant', value=value)

    @classmethod
    def fixed(cls, values) -> InitialConditionConfig:
        return cls(family='fixed', values=tuple(float(v) for v in values))

    @model_validator(mode='after')
    def _check_parameters(self):
        """Check that the chosen family has well-formed parameters."""
        def finite(name):
            v = getattr(self, name)
            if v is None:
                raise ValueError(f"'{self.family}' initial condition requires '{name}'")
            if not math.isfinite(v):
                raise ValueError(f"'{name}' must be finite, got {v}")
            return v

        if self.family == 'exponential':
            if finite('rate') <= 0:
                raise ValueError(f"Exponential rate must be positive, got {self.rate}")
        elif self.family == 'constant':
            finite('value')
        elif self.family == 'uniform':
            if finite('low') >= finite('high'):
                raise ValueError(
                    f"Uniform bounds require low < high, got low={self.low}, high={self.high}"
                )
        elif self.family == 'normal':
            finite('mean')
            if finite('std') < 0:
                raise ValueError(f"Normal std must be non-negative, got {self.std}")
        else:  # fixed
            if not self.values:
                raise ValueError("'fixed' initial condition requires non-empty 'values'")
            if not all(math.isfinite(v) for v in self.values):
                raise ValueError(f"Fixed initial values must be finite, got {self.values}")

        return self

    def parameters(self) -> Tuple[float, float]:
        """Two-slot parameter vector used by the runtime sampler."""
        if self.family == 'exponential':
            return (self.rate, 0.0)
        if self.family == 'constant':
            return (self.value, 0.0)
        if self.family == 'uniform':
            return (self.low, self.high)
        if self.family == 'normal':
            return (self.mean, self.std)
        return (0.0, 0.0)


class CatchUpConfig(_ValidatedModel):
    """Configuration for the interacting-particle catch-up simulation.

    N particles follow dX = μ dt + σ dW independently, and particle i
    jumps at rate ρ (u_i - u_max)² / (u_max - u_min) to the larger of its
    own value and that of a uniformly drawn particle.

    Particle values are dimensionless, so rates are 1/time and the
    volatility is 1/sqrt(time). Bare numbers are read in seconds.

    Example:
        >>> config = CatchUpConfig(
        ...     drift="0.01 / day",
        ...     volatility="0.1 / day**0.5",
        ...     n_particles=100,
        ...     jump_scale="0.5 / day",
        ...     initial_condition=InitialConditionConfig.exponential(1.0),
        ...     save_times=["0 day", "10 day", "20 day"],
        ...     trajectories=64,
        ...     seed=42,
        ... )
        >>> runner = EnsembleRunner(config)

    Attributes:
        drift: Drift μ shared by every particle
        volatility: Diffusion magnitude σ (non-negative)
        n_particles: Number of particles N (at least 1)
        jump_scale: Jump intensity scale ρ_max (non-negative)
        initial_condition: Distribution of initial particle values
        save_times: Strictly increasing grid of observation times
        solver: Diffusion stepper ('exact', 'euler', 'heun')
        dt_max: Maximum internal step and thinning lookahead window
        bound_sigmas: Envelope width (in standard deviations) of the thinning bound
        max_rejections: Consecutive thinning rejections tolerated before a stall
        trajectories: Ensemble size K
        seed: Base random seed
        max_retries: Fresh-seed retries for a stalled trajectory
    """

    drift: Tuple[float, UnitSpec] = Field(
        default=0.0,
        validate_default=True,
        description="Drift μ (1/time)"
    )

    volatility: Tuple[float, UnitSpec] = Field(
        default=0.0,
        validate_default=True,
        description="Volatility σ (1/sqrt(time))"
    )

    n_particles: int = Field(
        ge=1,
        description="Number of particles N"
    )

    jump_scale: Tuple[float, UnitSpec] = Field(
        default=0.0,
        validate_default=True,
        description="Jump intensity scale ρ_max (1/time)"
    )

    initial_condition: InitialConditionConfig = Field(
        default_factory=lambda: InitialConditionConfig.exponential(1.0),
        description="Initial-value distribution"
    )

    save_times: Tuple[Tuple[float, ...], UnitSpec] = Field(
        description="Strictly increasing save-time grid"
    )

    solver: Literal['exact', 'euler', 'heun'] = Field(
        default='exact',
        description="Diffusion stepper"
    )

    dt_max: Optional[Tuple[float, UnitSpec]] = Field(
        default=None,
        description="Maximum internal step / thinning window (auto if omitted)"
    )

    bound_sigmas: float = Field(
        default=6.0,
        gt=0,
        description="Envelope width of the thinning bound, in standard deviations"
    )

    max_rejections: int = Field(
        default=100_000,
        ge=1,
        description="Consecutive thinning rejections before a trajectory stalls"
    )

    trajectories: int = Field(
        default=1,
        ge=1,
        description="Ensemble size K"
    )

    seed: int = Field(
        default=0,
        description="Base random seed"
    )

    max_retries: int = Field(
        default=1,
        ge=0,
        description="Fresh-seed retries for a stalled trajectory"
    )

    _validate_drift = field_validator("drift", mode="before")(
        quantity_field("1/time", "1/second")
    )

    _validate_volatility = field_validator("volatility", mode="before")(
        quantity_field("1/sqrt(time)", "1/second**0.5", min_value=0.0)
    )

    _validate_jump_scale = field_validator("jump_scale", mode="before")(
        quantity_field("1/time", "1/second", min_value=0.0)
    )

    _validate_save_times = field_validator("save_times", mode="before")(
        sequence_quantity_field("time", "second", strictly_increasing=True)
    )

    @field_validator("dt_max", mode="before")
    @classmethod
    def validate_dt_max(cls, v):
        """Validate dt_max has time dimension and is positive."""
        if v is None:
            return v
        dt_value, dt_spec = quantity_field("time", "second")(v)
        if dt_value <= 0:
            raise ValueError(f"dt_max must be positive, got {dt_value}")
        return (dt_value, dt_spec)

    @field_validator("initial_condition", mode="before")
    @classmethod
    def validate_initial_condition(cls, v):
        """Accept shorthands: a number means constant, a sequence means fixed."""
        if isinstance(v, bool):
            raise ValueError("initial_condition cannot be a boolean")
        if isinstance(v, (int, float)):
            return InitialConditionConfig.constant(float(v))
        if isinstance(v, (list, tuple, np.ndarray)):
            return InitialConditionConfig.fixed(v)
        return v

    @model_validator(mode='after')
    def _check_consistency(self):
        """Cross-field checks and the auto-computed dt_max."""
        ic = self.initial_condition
        if ic.family == 'fixed' and len(ic.values) != self.n_particles:
            raise ValueError(
                f"Fixed initial condition has {len(ic.values)} values "
                f"but n_particles={self.n_particles}"
            )

        span = self.t_end - self.t_start
        if self.dt_max is None:
            default_dt = span / DEFAULT_STEPS_PER_SPAN if span > 0 else 1.0
            self.dt_max = (default_dt, UnitSpec("time", "second", 1.0))
        elif span > 0 and self.dt_max[0] > span:
            warnings.warn(
                f"dt_max={self.dt_max[0]:.6g} s exceeds the save-grid span "
                f"{span:.6g} s; clipping dt_max to the span.",
                UserWarning
            )
            self.dt_max = (span, self.dt_max[1])

        return self

    @property
    def save_time_values(self) -> np.ndarray:
        """Save-time grid in canonical units (seconds)."""
        return np.asarray(self.save_times[0], dtype=float)

    @property
    def t_start(self) -> float:
        return float(self.save_times[0][0])

    @property
    def t_end(self) -> float:
        return float(self.save_times[0][-1])

    def to_runtime(self) -> 'ParticleRuntime':
        """Convert config to JAX-ready runtime structure."""
        import jax.numpy as jnp

        from ..runtime import QuantityNode
        from .runtime import ParticleRuntime

        dt_max_value, dt_max_spec = self.dt_max
        drift_value, drift_spec = self.drift
        vol_value, vol_spec = self.volatility
        rho_value, rho_spec = self.jump_scale

        ic = self.initial_condition
        if ic.family == 'fixed':
            initial_values = jnp.asarray(ic.values)
        else:
            initial_values = jnp.zeros(self.n_particles)

        span = self.t_end - self.t_start
        # Brownian paths must cover a non-empty interval even for one-point
        # grids, padded so float32 save times never fall outside it
        pad = 1e-6 * max(abs(self.t_start), abs(self.t_end), 1.0)
        brownian_start = self.t_start - pad
        brownian_end = self.t_start + max(span, dt_max_value) + pad

        return ParticleRuntime(
            drift=QuantityNode.from_float(drift_value, drift_spec),
            volatility=QuantityNode.from_float(vol_value, vol_spec),
            jump_scale=QuantityNode.from_float(rho_value, rho_spec),
            dt_max=QuantityNode.from_float(dt_max_value, dt_max_spec),
            bound_sigmas=jnp.asarray(self.bound_sigmas),
            initial_params=jnp.asarray(ic.parameters()),
            initial_values=initial_values,
            n_particles=self.n_particles,
            solver_type=SOLVERS.index(self.solver),
            initial_family=FAMILIES.index(ic.family),
            max_rejections=self.max_rejections,
            t_start=brownian_start,
            brownian_end=brownian_end,
            dt0=dt_max_value,
            brownian_tol=dt_max_value / 16.0,
            max_substeps=int(math.ceil((brownian_end - brownian_start) / dt_max_value)) + 2,
        )
