"""Tests for CatchUpConfig validation and unit handling."""

import math

import numpy as np
import pytest

from catchup import (
    CatchUpConfig,
    ConfigurationError,
    InitialConditionConfig,
    UnitManager,
)
from catchup.particles.kernel import FAMILY_CONSTANT, FAMILY_FIXED, SOLVER_HEUN


BASE = dict(
    drift=0.0,
    volatility=0.0,
    n_particles=3,
    jump_scale=0.0,
    initial_condition=0.0,
    save_times=[0.0, 1.0],
)


def make(**overrides):
    params = dict(BASE)
    params.update(overrides)
    return CatchUpConfig(**params)


class TestUnits:
    """Parameters accept pint strings and are stored in canonical units."""

    def test_bare_numbers_are_seconds(self):
        config = make(drift=0.5, volatility=0.2, jump_scale=3.0)

        assert config.drift[0] == pytest.approx(0.5)
        assert config.volatility[0] == pytest.approx(0.2)
        assert config.jump_scale[0] == pytest.approx(3.0)

    def test_rates_per_day(self):
        config = make(drift="0.01 / day", jump_scale="2 / day")

        assert config.drift[0] == pytest.approx(0.01 / 86400)
        assert config.jump_scale[0] == pytest.approx(2 / 86400)
        assert config.drift[1].dimension == "1/time"

    def test_volatility_per_sqrt_day(self):
        config = make(volatility="0.1 / day**0.5")

        assert config.volatility[0] == pytest.approx(0.1 / math.sqrt(86400))
        assert config.volatility[1].dimension == "1/sqrt(time)"

    def test_save_times_mixed_units(self):
        config = make(save_times=["0 second", "1 hour", "1 day"])

        np.testing.assert_allclose(config.save_time_values, [0.0, 3600.0, 86400.0])
        assert config.t_start == 0.0
        assert config.t_end == pytest.approx(86400.0)

    def test_quantity_roundtrip_through_runtime(self):
        config = make(drift="0.01 / day")
        runtime = config.to_runtime()

        q = runtime.drift.to_quantity(UnitManager.instance())
        assert q.magnitude == pytest.approx(0.01)
        assert str(q.units) == "1 / day"

    def test_wrong_dimension_rejected(self):
        with pytest.raises(ConfigurationError, match="Dimension mismatch"):
            make(drift="1 meter")

    def test_boolean_rejected(self):
        with pytest.raises(ConfigurationError):
            make(drift=True)

    def test_canonical_dimensions(self):
        units = UnitManager.instance()

        assert set(units.canonical_units) == {"time", "1/time", "1/sqrt(time)"}


class TestValidation:
    """Invalid configurations raise ConfigurationError before any run."""

    def test_zero_particles(self):
        with pytest.raises(ConfigurationError):
            make(n_particles=0)

    def test_negative_volatility(self):
        with pytest.raises(ConfigurationError, match="below minimum"):
            make(volatility=-0.1)

    def test_negative_jump_scale(self):
        with pytest.raises(ConfigurationError, match="below minimum"):
            make(jump_scale=-1.0)

    def test_non_finite_drift(self):
        with pytest.raises(ConfigurationError, match="finite"):
            make(drift=float('nan'))

    def test_empty_save_times(self):
        with pytest.raises(ConfigurationError, match="empty"):
            make(save_times=[])

    def test_decreasing_save_times(self):
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            make(save_times=[0.0, 2.0, 1.0])

    def test_repeated_save_times(self):
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            make(save_times=[0.0, 1.0, 1.0])

    def test_scalar_save_times(self):
        with pytest.raises(ConfigurationError):
            make(save_times=1.0)

    def test_fixed_values_must_match_n_particles(self):
        with pytest.raises(ConfigurationError, match="n_particles"):
            make(initial_condition=[0.0, 1.0])

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            make(trajectories=0)

    def test_unknown_solver(self):
        with pytest.raises(ConfigurationError):
            make(solver='rk4')

    def test_non_positive_dt_max(self):
        with pytest.raises(ConfigurationError, match="positive"):
            make(dt_max=0.0)


class TestInitialCondition:
    """Initial-value distributions and their shorthands."""

    def test_default_is_exponential(self):
        config = CatchUpConfig(n_particles=2, save_times=[0.0, 1.0])

        assert config.initial_condition.family == 'exponential'
        assert config.initial_condition.rate == 1.0

    def test_number_means_constant(self):
        config = make(initial_condition=5.0)

        assert config.initial_condition.family == 'constant'
        assert config.initial_condition.value == 5.0
        assert config.to_runtime().initial_family == FAMILY_CONSTANT

    def test_sequence_means_fixed(self):
        config = make(initial_condition=[0.0, 10.0, 10.0])

        assert config.initial_condition.family == 'fixed'
        assert config.initial_condition.values == (0.0, 10.0, 10.0)
        runtime = config.to_runtime()
        assert runtime.initial_family == FAMILY_FIXED
        np.testing.assert_allclose(np.asarray(runtime.initial_values), [0.0, 10.0, 10.0])

    def test_dict_form(self):
        config = make(initial_condition={'family': 'uniform', 'low': 1.0, 'high': 2.0})

        assert config.initial_condition.parameters() == (1.0, 2.0)

    def test_exponential_rate_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="positive"):
            InitialConditionConfig.exponential(0.0)

    def test_uniform_bounds_ordered(self):
        with pytest.raises(ConfigurationError, match="low < high"):
            InitialConditionConfig(family='uniform', low=2.0, high=1.0)

    def test_missing_parameter(self):
        with pytest.raises(ConfigurationError, match="requires 'std'"):
            InitialConditionConfig(family='normal', mean=0.0)

    def test_nested_error_reported_as_configuration_error(self):
        with pytest.raises(ConfigurationError):
            make(initial_condition={'family': 'exponential', 'rate': -1.0})


class TestDerivedSettings:
    """dt_max defaults and runtime conversion."""

    def test_dt_max_defaults_to_fraction_of_span(self):
        config = make(save_times=[0.0, 1.0, 2.0])

        assert config.dt_max[0] == pytest.approx(0.02)

    def test_dt_max_for_single_save_time(self):
        config = make(save_times=[3.0])

        assert config.dt_max[0] == 1.0
        runtime = config.to_runtime()
        assert runtime.brownian_end > runtime.t_start

    def test_dt_max_clipped_to_span(self):
        with pytest.warns(UserWarning, match="clipping"):
            config = make(save_times=[0.0, 2.0], dt_max="1 minute")

        assert config.dt_max[0] == pytest.approx(2.0)

    def test_dt_max_units(self):
        config = make(save_times=["0 hour", "10 hour"], dt_max="1 minute")

        assert config.dt_max[0] == pytest.approx(60.0)

    def test_to_runtime(self):
        config = make(
            drift=0.1, volatility=0.2, jump_scale=3.0, solver='heun',
            save_times=[1.0, 2.0], max_rejections=7,
        )
        runtime = config.to_runtime()

        assert float(runtime.drift.value) == pytest.approx(0.1)
        assert float(runtime.volatility.value) == pytest.approx(0.2)
        assert float(runtime.jump_scale.value) == pytest.approx(3.0)
        assert runtime.n_particles == 3
        assert runtime.solver_type == SOLVER_HEUN
        assert runtime.max_rejections == 7
        assert runtime.t_start == pytest.approx(1.0, abs=1e-5)
        assert runtime.brownian_end == pytest.approx(2.0, abs=1e-5)
