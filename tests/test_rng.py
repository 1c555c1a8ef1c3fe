import math

import numpy as np
import pytest

from beamline_mc.core.rng import EventRandom, RandomStreams, TargetRect, rect_solid_angle


class TestStreams:
    """Counter-based per-event streams"""

    def test_same_key_same_sequence(self):
        a = EventRandom(42, 7)
        b = EventRandom(42, 7)
        assert [a.uniform01() for _ in range(5)] == [b.uniform01() for _ in range(5)]

    def test_different_events_differ(self):
        a = EventRandom(42, 7)
        b = EventRandom(42, 8)
        assert [a.uniform01() for _ in range(5)] != [b.uniform01() for _ in range(5)]

    def test_order_of_creation_does_not_matter(self):
        streams = RandomStreams(99)
        later_first = [streams.stream(i).uniform01() for i in reversed(range(10))][::-1]
        in_order = [streams.stream(i).uniform01() for i in range(10)]
        assert later_first == in_order

    def test_fresh_seed_recorded(self):
        streams = RandomStreams()
        assert 0 <= streams.run_seed < 2 ** 64

    def test_invalid_seed(self):
        with pytest.raises(ValueError):
            EventRandom(-1, 0)


class TestPrimitives:

    def test_ranges(self):
        r = EventRandom(1, 1)
        for _ in range(1000):
            assert 0.0 <= r.uniform01() < 1.0
            assert -1.0 <= r.uniform_pm1() < 1.0
            assert -1.0 < r.triangular() < 1.0

    def test_isotropic_direction_is_unit(self):
        r = EventRandom(1, 2)
        for _ in range(100):
            assert np.linalg.norm(r.isotropic_direction()) == pytest.approx(1.0)

    def test_normal_moments(self):
        r = EventRandom(5, 0)
        samples = np.array([r.standard_normal() for _ in range(20000)])
        assert abs(samples.mean()) < 0.05
        assert samples.std() == pytest.approx(1.0, abs=0.05)


class TestSolidAngleSampling:
    """Importance sampling on a target rectangle"""

    def test_point_lies_on_target(self):
        r = EventRandom(3, 0)
        target = TargetRect(0.2, 0.1, center_x=0.05)
        for _ in range(200):
            point, omega = r.sample_target_solid_angle((0.0, 0.0, 0.0), target, 2.0)
            assert point[2] == 2.0
            assert -0.05 <= point[0] <= 0.15
            assert -0.05 <= point[1] <= 0.05
            assert omega > 0.0

    def test_converges_to_true_solid_angle(self):
        target = TargetRect(1.0, 1.0)
        n = 20000
        weights = np.empty(n)
        for i in range(n):
            _, weights[i] = EventRandom(11, i).sample_target_solid_angle((0.0, 0.0, 0.0), target, 1.0)
        exact = rect_solid_angle(1.0, 1.0, 1.0)
        assert exact == pytest.approx(0.8054, abs=1e-4)
        standard_error = weights.std() / math.sqrt(n)
        assert abs(weights.mean() - exact) < 5.0 * standard_error

    def test_target_behind_gives_zero(self):
        r = EventRandom(3, 1)
        _, omega = r.sample_target_solid_angle((0.0, 0.0, 2.0), TargetRect(1.0, 1.0), 1.0)
        assert omega == 0.0

    def test_invalid_target(self):
        with pytest.raises(ValueError):
            TargetRect(0.0, 1.0)

    def test_circle_converges(self):
        n = 20000
        weights = [EventRandom(12, i).sample_target_circle((0.0, 0.0, 0.0), 0.5, 1.0)[1]
                   for i in range(n)]
        # Disc of radius R at distance d: 2π(1 - d/sqrt(d² + R²))
        exact = 2.0 * math.pi * (1.0 - 1.0 / math.sqrt(1.25))
        assert np.mean(weights) == pytest.approx(exact, rel=0.01)
