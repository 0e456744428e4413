"""Tests for moment records, logs and the MomentAggregator observer."""

import jax
import numpy as np
import pytest

from catchup import (
    MOMENT_CHANNELS,
    MomentAggregator,
    MomentLog,
    MomentRecord,
    compute_moments,
)
from catchup.moments import moment_record


class TestMomentRecord:

    def test_values(self):
        record = moment_record(np.array([3.0, 1.0, 2.0, 10.0]))

        assert record.min == 1.0
        assert record.mean == 4.0
        assert record.median == 2.5
        assert record.max == 10.0
        assert record.growth == 0.0

    def test_growth(self):
        record = moment_record(np.array([2.0, 4.0]), previous_mean=1.0, spacing=0.5)

        assert record.growth == pytest.approx(4.0)

    def test_channel_order(self):
        assert MomentRecord._fields == MOMENT_CHANNELS


class TestComputeMoments:

    def test_matches_records(self):
        times = np.array([0.0, 0.5, 2.0])
        states = jax.random.normal(jax.random.PRNGKey(0), (3, 7))

        moments = np.asarray(compute_moments(times, states))
        assert moments.shape == (3, 5)

        previous = None
        for k in range(3):
            spacing = None if k == 0 else times[k] - times[k - 1]
            expected = moment_record(np.asarray(states[k]), previous, spacing)
            np.testing.assert_allclose(moments[k], expected, rtol=1e-5, atol=1e-5)
            previous = expected.mean

    def test_first_growth_zero(self):
        moments = np.asarray(compute_moments(np.array([1.0]), np.ones((1, 4))))

        assert moments.shape == (1, 5)
        assert moments[0, 4] == 0.0

    def test_batched(self):
        times = np.array([0.0, 1.0])
        states = jax.random.normal(jax.random.PRNGKey(1), (6, 2, 3))

        moments = jax.vmap(compute_moments, in_axes=(None, 0))(times, states)
        assert moments.shape == (6, 2, 5)


class TestMomentLog:

    def test_append_in_order(self):
        log = MomentLog()
        log.append(0.0, MomentRecord(0, 0, 0, 0, 0))
        log.append(1.0, MomentRecord(1, 1, 1, 1, 1))

        assert len(log) == 2
        assert log.as_array().shape == (2, 5)
        assert [r.mean for r in log] == [0, 1]

    def test_out_of_order_rejected(self):
        log = MomentLog()
        log.append(1.0, MomentRecord(0, 0, 0, 0, 0))

        with pytest.raises(ValueError, match="time-ordered"):
            log.append(1.0, MomentRecord(0, 0, 0, 0, 0))

    def test_empty_array(self):
        assert MomentLog().as_array().shape == (0, 5)

    def test_from_array(self):
        values = np.arange(10.0).reshape(2, 5)
        log = MomentLog.from_array([0.0, 1.0], values)

        assert log.times == [0.0, 1.0]
        assert log.records[1].growth == 9.0


class TestMomentAggregator:

    def test_records_every_save_time(self):
        aggregator = MomentAggregator([0.0, 1.0, 3.0])
        aggregator.observe(0.0, np.array([1.0, 3.0]))
        aggregator.observe(1.0, np.array([2.0, 4.0]))
        aggregator.observe(3.0, np.array([2.0, 8.0]))

        assert aggregator.complete
        values = aggregator.log.as_array()
        np.testing.assert_allclose(values[:, 1], [2.0, 3.0, 5.0])
        np.testing.assert_allclose(values[:, 4], [0.0, 1.0, 1.0])

    def test_skipped_point_rejected(self):
        aggregator = MomentAggregator([0.0, 1.0, 2.0])
        aggregator.observe(0.0, np.zeros(2))

        with pytest.raises(ValueError, match="expected save time 1.0"):
            aggregator.observe(2.0, np.zeros(2))

    def test_duplicate_point_rejected(self):
        aggregator = MomentAggregator([0.0, 1.0, 2.0])
        aggregator.observe(0.0, np.zeros(2))

        with pytest.raises(ValueError):
            aggregator.observe(0.0, np.zeros(2))

    def test_extra_point_rejected(self):
        aggregator = MomentAggregator([0.0])
        aggregator.observe(0.0, np.zeros(2))

        with pytest.raises(ValueError, match="already observed"):
            aggregator.observe(1.0, np.zeros(2))

    def test_tolerates_float32_times(self):
        aggregator = MomentAggregator([0.0, 0.1, 0.7])
        for t in np.asarray([0.0, 0.1, 0.7], dtype=np.float32):
            aggregator.observe(float(t), np.zeros(3))

        assert aggregator.log.times == [0.0, 0.1, 0.7]

    def test_reset_between_trajectories(self):
        aggregator = MomentAggregator([0.0, 1.0])
        aggregator.observe(0.0, np.ones(2))
        aggregator.observe(1.0, np.ones(2))

        aggregator.reset()
        assert len(aggregator.log) == 0
        assert not aggregator.complete
        aggregator.observe(0.0, np.full(2, 5.0))
        assert aggregator.log.records[0].mean == 5.0

    def test_empty_grid_rejected(self):
        with pytest.raises(ValueError):
            MomentAggregator([])
