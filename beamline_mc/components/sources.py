"""
Event sources.

A source node overwrites the initial event state with a freshly generated
trajectory; it is normally the first component of an instrument.
"""

import math
import numpy as np
from dataclasses import dataclass
from typing import Optional

from beamline_mc.core.constants import FOUR_PI
from beamline_mc.core.errors import ConfigurationError
from beamline_mc.core.event import Event
from beamline_mc.core.rng import EventRandom, TargetRect
from beamline_mc.transport.node import ComponentNode, TraceStatus, register_component


@dataclass
class PointSourceState:
    target: TargetRect
    dist: float
    E0: Optional[float]
    dE: float
    lambda0: Optional[float]
    dlambda: float
    flux: float
    solid_angle_weighting: bool
    polarization: np.ndarray


@register_component
class PointSource(ComponentNode):
    """
    Isotropic point source illuminating a rectangular target.

    Directions are drawn towards a point sampled uniformly on a focus_xw x
    focus_yh rectangle at z = dist (solid-angle importance sampling). With
    ``solid_angle_weighting`` the weight is flux * Ω / 4π, where Ω is the
    sampled solid angle; without it every event has unit weight.

    Parameters:
        focus_xw, focus_yh: Target rectangle [m]
        dist: Distance to the target plane [m]
        E0, dE: Energy window centre and half-width (keV for X-rays, meV for neutrons)
        lambda0, dlambda: Alternative wavelength window [Å]
        flux: Source strength (default 1)
        solid_angle_weighting: Weight by the sampled solid angle (default true)
        polarization: Polarization vector (default unpolarized)
    """

    def setup(self) -> PointSourceState:
        target = TargetRect(self.positive('focus_xw'), self.positive('focus_yh'))
        dist = self.positive('dist')

        E0 = self.param('E0', None)
        lambda0 = self.param('lambda0', None)
        if (E0 is None) == (lambda0 is None):
            raise ConfigurationError("exactly one of 'E0' or 'lambda0' must be given", self.name)
        dE = self.param('dE', 0.0)
        dlambda = self.param('dlambda', 0.0)
        if dE < 0.0 or dlambda < 0.0:
            raise ConfigurationError("energy/wavelength spread must be non-negative", self.name)
        if E0 is not None and not E0 - dE > 0.0:
            raise ConfigurationError(f"energy window [{E0 - dE}, {E0 + dE}] must be positive", self.name)
        if lambda0 is not None and not lambda0 - dlambda > 0.0:
            raise ConfigurationError(f"wavelength window [{lambda0 - dlambda}, {lambda0 + dlambda}] "
                                     f"must be positive", self.name)

        flux = self.positive('flux', 1.0)
        polarization = np.asarray(self.params.get('polarization', (0.0, 0.0, 0.0)), dtype=np.float64)
        if polarization.shape != (3,) or not np.all(np.isfinite(polarization)):
            raise ConfigurationError(f"polarization must be three finite numbers, "
                                     f"got {self.params.get('polarization')!r}", self.name)

        return PointSourceState(
            target=target,
            dist=dist,
            E0=E0,
            dE=dE,
            lambda0=lambda0,
            dlambda=dlambda,
            flux=flux,
            solid_angle_weighting=self.param('solid_angle_weighting', True, bool),
            polarization=polarization,
        )

    def trace(self, event: Event, rng: EventRandom) -> TraceStatus:
        s = self.state
        origin = (0.0, 0.0, 0.0)
        point, solid_angle = rng.sample_target_solid_angle(origin, s.target, s.dist)
        if solid_angle <= 0.0:
            event.absorb()
            return TraceStatus.ABSORBED

        event.position = origin
        event.time = 0.0
        event.polarization = s.polarization

        if s.E0 is not None:
            energy = s.E0 + s.dE * rng.uniform_pm1()
            if not event.set_direction(point, energy=energy):
                event.absorb()
                return TraceStatus.ABSORBED
        else:
            wavelength = s.lambda0 + s.dlambda * rng.uniform_pm1()
            event.k = point * (2.0 * math.pi / (wavelength * float(np.linalg.norm(point))))

        if s.solid_angle_weighting:
            event.weight = s.flux * solid_angle / FOUR_PI
        else:
            event.weight = 1.0
        return TraceStatus.PASS_THROUGH
