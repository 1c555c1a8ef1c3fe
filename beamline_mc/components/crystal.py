"""
Flat perfect crystal in symmetric Bragg geometry.

The reflecting surface is the local plane y = 0 (normal +y), bounded by
|x| <= xwidth/2 and |z| <= zdepth/2; the lattice planes are parallel to it.
Events hitting the surface from above are reflected specularly with their
weight scaled by the Darwin reflectivity, projected onto the sigma and pi
polarization channels. Events that miss the crystal leave it untouched.

Material data comes from tables:
    form_factor_file   columns: sin(theta)/lambda [1/Å], f0
                       header:  a (lattice constant [Å]), B (Debye-Waller [Å²]), optional
    dispersion_file    columns: E [keV], f', f''   (optional)
"""

import logging
import math
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple

from beamline_mc.core.errors import ConfigurationError
from beamline_mc.core.event import Event
from beamline_mc.core.geometry import intersect_plane, smallest_positive
from beamline_mc.core.rng import EventRandom
from beamline_mc.physics.bragg import (
    CRYSTAL_PROPERTIES, bragg_angle, cubic_d_spacing, darwin_reflectivity, darwin_width,
    diamond_structure_factor, polarization_basis, reflect, refraction_shift,
)
from beamline_mc.physics.table import TableData
from beamline_mc.transport.node import ComponentNode, TraceStatus, register_component

logger = logging.getLogger(__name__)

SURFACE_NORMAL = np.array([0.0, 1.0, 0.0])
ORIGIN = np.zeros(3)


@dataclass
class CrystalState:
    form_factor: TableData
    dispersion: Optional[TableData]
    a: float
    B: float
    hkl: Tuple[int, int, int]
    d_spacing: float
    cell_volume: float
    half_x: float
    half_z: float
    f0_forward: float


@register_component
class FlatCrystal(ComponentNode):
    """
    Bragg reflection on a flat diamond-structure crystal (Si, Ge, C).

    Parameters:
        form_factor_file: f0(sin(theta)/lambda) table
        dispersion_file: f'(E), f''(E) table (optional)
        h, k, l: Miller indices (default 1 1 1)
        xwidth, zdepth: Crystal size [m]
        material: Fallback for constants missing from the table header (default Si)
        a, B: Explicit lattice constant [Å] and Debye-Waller factor [Å²]
        use_cache: Use .npy side-car caches for the tables
    """

    def _constant(self, name: str, table: TableData, material: str) -> float:
        if name in self.params:
            return self.param(name)
        if table.has_field(name):
            return table.header_field(name)
        if material not in CRYSTAL_PROPERTIES:
            raise ConfigurationError(f"'{name}' not given and unknown material '{material}'. "
                                     f"Available: {list(CRYSTAL_PROPERTIES)}", self.name)
        return float(CRYSTAL_PROPERTIES[material][name])

    def setup(self) -> CrystalState:
        use_cache = self.param('use_cache', False, bool)
        form_factor = TableData.load(self.resolve_path(self.param('form_factor_file', kind=str)),
                                     use_cache=use_cache)
        dispersion = None
        if self.params.get('dispersion_file'):
            dispersion = TableData.load(self.resolve_path(self.param('dispersion_file', kind=str)),
                                        use_cache=use_cache)
            if dispersion.n_columns < 3:
                raise ConfigurationError("dispersion table needs columns E, f', f''", self.name)

        material = str(self.params.get('material', 'Si'))
        a = self._constant('a', form_factor, material)
        B = self._constant('B', form_factor, material)
        if not a > 0.0 or B < 0.0:
            raise ConfigurationError(f"invalid cell constants a={a}, B={B}", self.name)

        hkl = (self.param('h', 1, int), self.param('k', 1, int), self.param('l', 1, int))
        if diamond_structure_factor(1.0, *hkl) == 0:
            raise ConfigurationError(f"reflection {hkl} is forbidden in the diamond structure",
                                     self.name)

        return CrystalState(
            form_factor=form_factor,
            dispersion=dispersion,
            a=a,
            B=B,
            hkl=hkl,
            d_spacing=cubic_d_spacing(a, *hkl),
            cell_volume=a ** 3,
            half_x=0.5 * self.positive('xwidth'),
            half_z=0.5 * self.positive('zdepth'),
            f0_forward=form_factor.value_at(form_factor.domain[0]),
        )

    def release(self):
        self.state.form_factor = None
        self.state.dispersion = None

    # ------------------------------------------------------------------
    # Physics
    # ------------------------------------------------------------------

    def _anomalous(self, energy: float) -> Tuple[float, float]:
        if self.state.dispersion is None:
            return 0.0, 0.0
        return (self.state.dispersion.value_at(energy, 1),
                self.state.dispersion.value_at(energy, 2))

    def reflection(self, wavelength: float, energy: float):
        """
        Darwin widths and plateau centre for one wavelength.

        Returns:
            (theta_center, width_sigma, width_pi) in radians, or None when
            the reflection cannot be excited (lambda > 2d).
        """
        s = self.state
        theta_b = bragg_angle(wavelength, s.d_spacing)
        if theta_b < 0.0:
            return None

        q = math.sin(theta_b) / wavelength
        f_prime, f_second = self._anomalous(energy)
        f = complex(s.form_factor.value_at(q) + f_prime, f_second)
        debye_waller = math.exp(-s.B * q * q)
        structure_factor = abs(diamond_structure_factor(f, *s.hkl)) * debye_waller
        forward = 8.0 * abs(complex(s.f0_forward + f_prime, f_second))

        width_sigma = darwin_width(wavelength, structure_factor, s.cell_volume, theta_b, 1.0)
        width_pi = darwin_width(wavelength, structure_factor, s.cell_volume, theta_b,
                                math.cos(2.0 * theta_b))
        shift = refraction_shift(wavelength, forward, s.cell_volume, theta_b)
        return theta_b + shift, width_sigma, width_pi

    def reflectivity(self, wavelength: float, energy: float, theta: float) -> Tuple[float, float]:
        """(R_sigma, R_pi) at glancing angle ``theta`` [rad]."""
        reflection = self.reflection(wavelength, energy)
        if reflection is None:
            return 0.0, 0.0
        center, width_sigma, width_pi = reflection
        deviation = theta - center
        return darwin_reflectivity(deviation, width_sigma), darwin_reflectivity(deviation, width_pi)

    # ------------------------------------------------------------------
    # Trace
    # ------------------------------------------------------------------

    def trace(self, event: Event, rng: EventRandom) -> TraceStatus:
        s = self.state
        if event.species != 'xray':
            return TraceStatus.RESTORED

        position = event.position
        direction = event.direction
        # Only the top face reflects
        if not (position[1] > 0.0 and direction[1] < 0.0):
            return TraceStatus.RESTORED
        t = smallest_positive(intersect_plane(position, direction, ORIGIN, SURFACE_NORMAL))
        if t is None:
            return TraceStatus.RESTORED
        hit = position + t * direction
        if abs(hit[0]) > s.half_x or abs(hit[2]) > s.half_z:
            return TraceStatus.RESTORED

        if not event.propagate_by_distance(t):
            event.absorb()
            return TraceStatus.ABSORBED
        event.position[1] = 0.0

        theta = math.asin(min(1.0, -float(direction @ SURFACE_NORMAL)))
        r_sigma, r_pi = self.reflectivity(event.wavelength, event.energy, theta)

        k_in = event.k.copy()
        sigma, pi_in = polarization_basis(k_in, SURFACE_NORMAL)
        k_out = reflect(k_in, SURFACE_NORMAL)
        _, pi_out = polarization_basis(k_out, SURFACE_NORMAL)

        polarization = event.polarization
        p_norm = float(np.linalg.norm(polarization))
        if p_norm > 0.0:
            a_sigma = float(polarization @ sigma) / p_norm
            a_pi = float(polarization @ pi_in) / p_norm
            total = a_sigma * a_sigma + a_pi * a_pi
            if total <= 0.0:
                # Polarization along k carries no field
                reflectivity = 0.5 * (r_sigma + r_pi)
                new_polarization = polarization
            else:
                reflectivity = (a_sigma * a_sigma * r_sigma + a_pi * a_pi * r_pi) / total
                field = (math.sqrt(r_sigma) * a_sigma * sigma
                         - math.sqrt(r_pi) * a_pi * pi_out)
                field_norm = float(np.linalg.norm(field))
                new_polarization = field * (p_norm / field_norm) if field_norm > 0.0 else polarization
        else:
            reflectivity = 0.5 * (r_sigma + r_pi)
            new_polarization = polarization

        if not reflectivity > 0.0 or not event.scale_weight(reflectivity):
            event.absorb()
            return TraceStatus.ABSORBED

        event.k = k_out
        event.polarization = new_polarization
        return TraceStatus.SCATTERED
