"""
Random variates for event generation.

Each event draws from its own counter-based Philox stream keyed by
(run seed, event index); the Philox counter plays the role of the draw index.
A run is therefore reproducible whatever the worker count or scheduling.
"""

import math
import numpy as np
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

MAX_SEED = 2 ** 64


@dataclass(frozen=True)
class TargetRect:
    """Rectangle in a plane z = const, centred on (center_x, center_y)."""

    width: float
    height: float
    center_x: float = 0.0
    center_y: float = 0.0

    def __post_init__(self):
        for name in ('width', 'height'):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0.0:
                raise ValueError(f"TargetRect {name} must be positive, got {value}")

    @property
    def area(self) -> float:
        return self.width * self.height


def rect_solid_angle(width: float, height: float, distance: float) -> float:
    """Exact solid angle of a centred width x height rectangle seen from ``distance`` on axis."""
    return 4.0 * math.asin(width * height /
                           math.sqrt((width ** 2 + 4.0 * distance ** 2) *
                                     (height ** 2 + 4.0 * distance ** 2)))


class EventRandom:
    """Independent random stream of one event."""

    def __init__(self, run_seed: int, event_index: int):
        run_seed = int(run_seed)
        event_index = int(event_index)
        if not 0 <= run_seed < MAX_SEED:
            raise ValueError(f"Run seed must be in [0, 2**64), got {run_seed}")
        if not 0 <= event_index < MAX_SEED:
            raise ValueError(f"Event index must be in [0, 2**64), got {event_index}")
        self.run_seed = run_seed
        self.event_index = event_index
        self._generator = np.random.Generator(
            np.random.Philox(key=(run_seed << 64) | event_index))

    # Primitives

    def uniform01(self) -> float:
        """Uniform on [0, 1)."""
        return float(self._generator.random())

    def uniform_pm1(self) -> float:
        """Uniform on [-1, 1)."""
        return 2.0 * float(self._generator.random()) - 1.0

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * float(self._generator.random())

    def standard_normal(self) -> float:
        return float(self._generator.standard_normal())

    def normal(self, mean: float, sigma: float) -> float:
        return mean + sigma * float(self._generator.standard_normal())

    def triangular(self) -> float:
        """Symmetric triangular distribution on (-1, 1)."""
        return float(self._generator.triangular(-1.0, 0.0, 1.0))

    def isotropic_direction(self) -> np.ndarray:
        """Unit vector uniformly distributed on the sphere."""
        z = self.uniform_pm1()
        phi = 2.0 * math.pi * self.uniform01()
        r_xy = math.sqrt(max(0.0, 1.0 - z * z))
        return np.array([r_xy * math.cos(phi), r_xy * math.sin(phi), z], dtype=np.float64)

    # Solid-angle importance sampling

    def sample_target_solid_angle(self, origin: Sequence[float], target: TargetRect,
                                  distance: float) -> Tuple[np.ndarray, float]:
        """
        Sample a point uniformly on a target rectangle at z = ``distance``.

        Instead of drawing a direction and rejecting misses, the point is drawn
        over the target area and the differential solid angle
        ``area * cos(theta) / r^2`` is returned. Multiplying an event weight by
        it keeps the estimator unbiased; its mean over draws is the solid angle
        the rectangle subtends from ``origin``.

        Returns:
            (point, solid_angle): point on the target [m], solid angle [sr].
            solid_angle is 0.0 when the target plane is not ahead of ``origin``.
        """
        ox, oy, oz = (float(c) for c in origin)
        x = target.center_x + target.width * (self.uniform01() - 0.5)
        y = target.center_y + target.height * (self.uniform01() - 0.5)
        point = np.array([x, y, distance], dtype=np.float64)

        dz = distance - oz
        if not dz > 0.0:
            return point, 0.0
        dx = x - ox
        dy = y - oy
        r2 = dx * dx + dy * dy + dz * dz
        if not (r2 > 0.0 and math.isfinite(r2)):
            return point, 0.0
        cos_theta = dz / math.sqrt(r2)
        return point, target.area * cos_theta / r2

    def sample_target_circle(self, origin: Sequence[float], radius: float,
                             distance: float) -> Tuple[np.ndarray, float]:
        """Same as sample_target_solid_angle for a disc of ``radius`` centred on the z axis."""
        ox, oy, oz = (float(c) for c in origin)
        rho = radius * math.sqrt(self.uniform01())
        phi = 2.0 * math.pi * self.uniform01()
        point = np.array([rho * math.cos(phi), rho * math.sin(phi), distance], dtype=np.float64)

        dz = distance - oz
        if not (dz > 0.0 and radius > 0.0):
            return point, 0.0
        dx = point[0] - ox
        dy = point[1] - oy
        r2 = dx * dx + dy * dy + dz * dz
        cos_theta = dz / math.sqrt(r2)
        return point, math.pi * radius * radius * cos_theta / r2


class RandomStreams:
    """Factory of per-event streams for one run."""

    def __init__(self, run_seed: Optional[int] = None):
        if run_seed is None:
            run_seed = np.random.SeedSequence().entropy % MAX_SEED
        run_seed = int(run_seed)
        if not 0 <= run_seed < MAX_SEED:
            raise ValueError(f"Run seed must be in [0, 2**64), got {run_seed}")
        self.run_seed = run_seed

    def stream(self, event_index: int) -> EventRandom:
        return EventRandom(self.run_seed, event_index)

    def __repr__(self) -> str:
        return f"RandomStreams(seed={self.run_seed})"
