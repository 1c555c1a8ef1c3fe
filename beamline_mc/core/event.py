"""
Per-event state and control directives.

One Event is one particle trajectory. Its numeric state lives in a single
NumPy structured record so that a snapshot is a plain copy and a restore is
field-complete by construction.
"""

import math
import numpy as np
from typing import Iterable, Optional, Sequence, Tuple

from beamline_mc.core.constants import (
    SPEED_OF_LIGHT, K2E, E2K, K2V, VS2E, SE2V, V2K, SPECIES,
)


# Define event dtype (one record per event)
EVENT_DTYPE = np.dtype([
    ('position', np.float64, 3),      # x, y, z [m]
    ('k', np.float64, 3),             # wavevector [1/Å]
    ('time', np.float64),             # [s]
    ('polarization', np.float64, 3),  # polarization vector (zero = unpolarized)
    ('weight', np.float64),           # statistical weight
])

ALL_FIELDS: Tuple[str, ...] = EVENT_DTYPE.names


def check_fields(fields: Iterable[str]) -> Tuple[str, ...]:
    fields = tuple(fields)
    unknown = [f for f in fields if f not in ALL_FIELDS]
    if unknown:
        raise ValueError(f"Unknown event fields {unknown}. Available: {list(ALL_FIELDS)}")
    return fields


class Event:
    """Single simulated particle: X-ray photon or neutron."""

    def __init__(self, index: int = 0, species: str = 'xray',
                 position: Sequence[float] = (0.0, 0.0, 0.0),
                 k: Sequence[float] = (0.0, 0.0, 1.0),
                 time: float = 0.0,
                 polarization: Sequence[float] = (0.0, 0.0, 0.0),
                 weight: float = 1.0):
        """
        Initialize an event.

        Parameters:
            index: Event number within the run
            species: 'xray' or 'neutron' (selects the speed law)
            position: (x, y, z) [m]
            k: Wavevector (kx, ky, kz) [1/Å]
            time: Time [s]
            polarization: Polarization vector
            weight: Statistical weight (finite, >= 0)
        """
        if species not in SPECIES:
            raise ValueError(f"Unknown species '{species}'. Available: {list(SPECIES)}")

        self.index = index
        self.species = species
        self.alive = True
        self.interactions = []

        self._record = np.zeros(1, dtype=EVENT_DTYPE)
        self._record['position'][0] = position
        self._record['k'][0] = k
        self._record['time'][0] = time
        self._record['polarization'][0] = polarization
        self.weight = weight

    @classmethod
    def from_energy(cls, energy: float, direction: Sequence[float],
                    species: str = 'xray', **kwargs) -> 'Event':
        """Create an event with wavevector along ``direction`` for a given energy.

        Energy is in keV for X-rays and meV for neutrons.
        """
        event = cls(species=species, **kwargs)
        if not event.set_direction(direction, energy=energy):
            raise ValueError(f"Cannot build wavevector from direction {direction} "
                             f"and energy {energy}")
        return event

    # ------------------------------------------------------------------
    # Field access (arrays are views into the record)
    # ------------------------------------------------------------------

    @property
    def position(self) -> np.ndarray:
        return self._record['position'][0]

    @position.setter
    def position(self, value):
        self._record['position'][0] = value

    @property
    def k(self) -> np.ndarray:
        return self._record['k'][0]

    @k.setter
    def k(self, value):
        self._record['k'][0] = value

    @property
    def polarization(self) -> np.ndarray:
        return self._record['polarization'][0]

    @polarization.setter
    def polarization(self, value):
        self._record['polarization'][0] = value

    @property
    def time(self) -> float:
        return float(self._record['time'][0])

    @time.setter
    def time(self, value: float):
        self._record['time'][0] = value

    @property
    def weight(self) -> float:
        return float(self._record['weight'][0])

    @weight.setter
    def weight(self, value: float):
        value = float(value)
        if not math.isfinite(value) or value < 0.0:
            raise ValueError(f"Event weight must be finite and non-negative, got {value}")
        self._record['weight'][0] = value

    # ------------------------------------------------------------------
    # Derived kinematics
    # ------------------------------------------------------------------

    @property
    def k_norm(self) -> float:
        k = self.k
        return math.sqrt(k[0] * k[0] + k[1] * k[1] + k[2] * k[2])

    @property
    def speed(self) -> float:
        """Speed [m/s]."""
        if self.species == 'xray':
            return SPEED_OF_LIGHT
        return K2V * self.k_norm

    @property
    def direction(self) -> np.ndarray:
        """Unit vector along k (zero vector when k vanishes)."""
        norm = self.k_norm
        if norm == 0.0:
            return np.zeros(3)
        return self.k / norm

    @property
    def velocity(self) -> np.ndarray:
        """Velocity vector [m/s]."""
        return self.speed * self.direction

    @property
    def energy(self) -> float:
        """Energy [keV] for X-rays, [meV] for neutrons."""
        if self.species == 'xray':
            return K2E * self.k_norm
        v = K2V * self.k_norm
        return VS2E * v * v

    @property
    def wavelength(self) -> float:
        """Wavelength [Å]."""
        norm = self.k_norm
        if norm == 0.0:
            return math.inf
        return 2.0 * math.pi / norm

    def set_direction(self, direction: Sequence[float],
                      energy: Optional[float] = None) -> bool:
        """
        Point k along ``direction``.

        Keeps |k| unless ``energy`` is given. Returns False (state unchanged)
        for a zero or non-finite direction or a non-positive energy.
        """
        d = np.asarray(direction, dtype=np.float64)
        norm = math.sqrt(float(d @ d))
        if not math.isfinite(norm) or norm == 0.0:
            return False

        if energy is None:
            magnitude = self.k_norm
        else:
            if not math.isfinite(energy) or energy <= 0.0:
                return False
            if self.species == 'xray':
                magnitude = E2K * energy
            else:
                magnitude = V2K * SE2V * math.sqrt(energy)

        self.k = d * (magnitude / norm)
        return True

    def is_finite(self) -> bool:
        """True when no field holds NaN or Inf."""
        for name in ALL_FIELDS:
            if not np.all(np.isfinite(self._record[name])):
                return False
        return True

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def propagate_to_plane(self, z: float, allow_backward: bool = False) -> bool:
        """
        Advance along k until position z equals ``z`` exactly.

        Returns False, leaving the event unchanged, when k_z is zero or the
        plane lies behind the event. The caller is expected to absorb.
        """
        k = self.k
        kz = k[2]
        knorm = self.k_norm
        if kz == 0.0 or knorm == 0.0 or not math.isfinite(z):
            return False

        dz = z - self.position[2]
        distance = dz * knorm / kz
        if not math.isfinite(distance) or (distance < 0.0 and not allow_backward):
            return False

        pos = self.position
        pos[0] += dz * k[0] / kz
        pos[1] += dz * k[1] / kz
        pos[2] = z  # exact landing on the plane
        self._record['time'][0] += distance / self.speed
        return True

    def propagate_by_distance(self, distance: float) -> bool:
        """Advance ``distance`` metres along k. False for negative/non-finite input."""
        if not math.isfinite(distance) or distance < 0.0 or self.k_norm == 0.0:
            return False
        self.position += distance * self.direction
        self._record['time'][0] += distance / self.speed
        return True

    def propagate_by_time(self, dt: float) -> bool:
        """Advance ``dt`` seconds along the velocity. False for negative/non-finite input."""
        if not math.isfinite(dt) or dt < 0.0 or self.k_norm == 0.0:
            return False
        self.position += dt * self.velocity
        self._record['time'][0] += dt
        return True

    # ------------------------------------------------------------------
    # Control directives
    # ------------------------------------------------------------------

    def mark_interaction(self, node_name: str):
        """Record that ``node_name`` modified this event (bookkeeping only)."""
        self.interactions.append(node_name)

    @property
    def n_interactions(self) -> int:
        return len(self.interactions)

    def absorb(self):
        """Terminate the event: no later node sees it."""
        self.alive = False

    def scale_weight(self, factor: float) -> bool:
        """
        Multiply the weight by ``factor``.

        Non-finite or negative factors (or a non-finite product) absorb the
        event instead and return False.
        """
        factor = float(factor)
        if not math.isfinite(factor) or factor < 0.0:
            self.absorb()
            return False
        new_weight = self._record['weight'][0] * factor
        if not math.isfinite(new_weight):
            self.absorb()
            return False
        self._record['weight'][0] = new_weight
        return True

    def snapshot(self) -> np.ndarray:
        """Copy of the full numeric state."""
        return self._record.copy()

    def restore(self, snapshot: np.ndarray, fields: Optional[Iterable[str]] = None):
        """
        Replace fields with those of ``snapshot``.

        Parameters:
            snapshot: Record returned by snapshot()
            fields: Field names to restore (default: all fields)
        """
        fields = ALL_FIELDS if fields is None else check_fields(fields)
        for name in fields:
            self._record[name] = snapshot[name]

    def copy(self) -> 'Event':
        clone = Event.__new__(Event)
        clone.index = self.index
        clone.species = self.species
        clone.alive = self.alive
        clone.interactions = list(self.interactions)
        clone._record = self._record.copy()
        return clone

    def __repr__(self) -> str:
        pos = self.position
        return (f"Event(#{self.index} {self.species}, "
                f"pos=({pos[0]:.4g}, {pos[1]:.4g}, {pos[2]:.4g}) m, "
                f"E={self.energy:.4g}, p={self.weight:.4g}, "
                f"{'alive' if self.alive else 'absorbed'})")
