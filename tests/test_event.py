import math

import numpy as np
import pytest

from beamline_mc.core.constants import K2E, K2V, SPEED_OF_LIGHT, VS2E
from beamline_mc.core.event import ALL_FIELDS, Event


class TestKinematics:
    """Speed and energy laws per species"""

    def test_xray_energy_from_k(self):
        event = Event(species='xray', k=(0.0, 0.0, 5.0))
        assert event.energy == pytest.approx(5.0 * K2E)
        assert event.speed == SPEED_OF_LIGHT
        assert event.wavelength == pytest.approx(2.0 * math.pi / 5.0)

    def test_neutron_speed_and_energy(self):
        event = Event(species='neutron', k=(0.0, 1.0, 0.0))
        assert event.speed == pytest.approx(K2V)
        assert event.energy == pytest.approx(VS2E * K2V ** 2)
        np.testing.assert_allclose(event.velocity, [0.0, K2V, 0.0])

    def test_from_energy_roundtrip(self):
        event = Event.from_energy(12.4, (0.0, 0.0, 2.0), species='xray')
        assert event.energy == pytest.approx(12.4)
        np.testing.assert_allclose(event.direction, [0.0, 0.0, 1.0])

        neutron = Event.from_energy(25.0, (1.0, 0.0, 0.0), species='neutron')
        assert neutron.energy == pytest.approx(25.0, rel=1e-6)

    def test_unknown_species_rejected(self):
        with pytest.raises(ValueError):
            Event(species='electron')

    def test_set_direction_rejects_zero(self):
        event = Event(k=(0.0, 0.0, 3.0))
        assert not event.set_direction((0.0, 0.0, 0.0))
        np.testing.assert_array_equal(event.k, [0.0, 0.0, 3.0])


class TestPropagation:
    """Propagation directives"""

    def test_propagate_to_plane_lands_exactly(self):
        event = Event(position=(0.0, 0.0, 0.0), k=(1.0, 0.0, 1.0))
        assert event.propagate_to_plane(0.3)
        assert event.position[2] == 0.3
        assert event.position[0] == pytest.approx(0.3)
        assert event.time == pytest.approx(0.3 * math.sqrt(2.0) / SPEED_OF_LIGHT)

    def test_propagate_to_plane_behind_fails(self):
        event = Event(position=(0.0, 0.0, 1.0), k=(0.0, 0.0, 1.0))
        before = event.snapshot()
        assert not event.propagate_to_plane(0.5)
        for name in ALL_FIELDS:
            np.testing.assert_array_equal(event.snapshot()[name], before[name])

    def test_propagate_to_plane_parallel_fails(self):
        event = Event(k=(1.0, 0.0, 0.0))
        assert not event.propagate_to_plane(1.0)

    def test_propagate_by_distance(self):
        event = Event(species='neutron', k=(0.0, 0.0, 2.0))
        assert event.propagate_by_distance(1.5)
        np.testing.assert_allclose(event.position, [0.0, 0.0, 1.5])
        assert event.time == pytest.approx(1.5 / (2.0 * K2V))

    def test_negative_distance_and_time_rejected(self):
        event = Event()
        assert not event.propagate_by_distance(-1.0)
        assert not event.propagate_by_time(-1e-3)
        assert not event.propagate_by_distance(float('nan'))

    def test_propagate_by_time(self):
        event = Event(species='neutron', k=(0.0, 0.0, 1.0))
        assert event.propagate_by_time(1e-3)
        assert event.position[2] == pytest.approx(K2V * 1e-3)
        assert event.time == pytest.approx(1e-3)


class TestControlDirectives:
    """Absorb, weights, snapshot/restore"""

    def test_absorb(self):
        event = Event()
        event.absorb()
        assert not event.alive

    def test_weight_must_be_finite_and_non_negative(self):
        event = Event()
        with pytest.raises(ValueError):
            event.weight = -1.0
        with pytest.raises(ValueError):
            event.weight = float('inf')

    def test_scale_weight_guards(self):
        event = Event(weight=2.0)
        assert event.scale_weight(0.25)
        assert event.weight == 0.5
        assert not event.scale_weight(float('nan'))
        assert not event.alive
        assert event.weight == 0.5

    def test_restore_is_field_complete(self):
        event = Event(position=(1.0, 2.0, 3.0), k=(0.0, 0.1, 4.0), time=1e-6,
                      polarization=(1.0, 0.0, 0.0), weight=0.7)
        snapshot = event.snapshot()

        event.position = (9.0, 9.0, 9.0)
        event.k = (1.0, 1.0, 1.0)
        event.time = 5.0
        event.polarization = (0.0, 1.0, 0.0)
        event.weight = 0.1

        event.restore(snapshot)
        for name in ALL_FIELDS:
            np.testing.assert_array_equal(event.snapshot()[name], snapshot[name])

    def test_partial_restore(self):
        event = Event(position=(0.0, 0.0, 0.0), weight=1.0)
        snapshot = event.snapshot()
        event.position = (1.0, 1.0, 1.0)
        event.weight = 0.5

        event.restore(snapshot, fields=('weight',))
        assert event.weight == 1.0
        np.testing.assert_array_equal(event.position, [1.0, 1.0, 1.0])

    def test_restore_unknown_field(self):
        event = Event()
        with pytest.raises(ValueError):
            event.restore(event.snapshot(), fields=('spin',))

    def test_mark_interaction(self):
        event = Event()
        event.mark_interaction('crystal')
        event.mark_interaction('crystal')
        assert event.n_interactions == 2
        assert event.interactions == ['crystal', 'crystal']

    def test_is_finite(self):
        event = Event()
        assert event.is_finite()
        event.position = (np.nan, 0.0, 0.0)
        assert not event.is_finite()

    def test_copy_is_independent(self):
        event = Event(position=(1.0, 0.0, 0.0))
        clone = event.copy()
        clone.position[0] = 5.0
        assert event.position[0] == 1.0
