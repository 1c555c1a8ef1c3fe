"""Reference frames and apertures."""

from dataclasses import dataclass
from typing import Optional

from beamline_mc.core.errors import ConfigurationError
from beamline_mc.core.event import Event
from beamline_mc.core.rng import EventRandom
from beamline_mc.transport.node import ComponentNode, TraceStatus, register_component


@register_component
class Arm(ComponentNode):
    """Empty component: a named reference frame for placing other components."""

    def trace(self, event: Event, rng: EventRandom) -> TraceStatus:
        return TraceStatus.PASS_THROUGH


@dataclass
class SlitState:
    xmin: float
    xmax: float
    ymin: float
    ymax: float
    radius: Optional[float]


@register_component
class Slit(ComponentNode):
    """
    Aperture in the local plane z = 0; events outside the opening are absorbed.

    Parameters:
        xwidth, yheight: Rectangular opening centred on the axis [m]
        xmin, xmax, ymin, ymax: Explicit rectangular bounds [m]
        radius: Circular opening [m] (instead of a rectangle)
    """

    def setup(self) -> SlitState:
        radius = self.param('radius', None)
        if radius is not None:
            if not radius > 0.0:
                raise ConfigurationError(f"parameter 'radius' must be positive, got {radius}", self.name)
            return SlitState(-radius, radius, -radius, radius, radius)

        xwidth = self.param('xwidth', None)
        yheight = self.param('yheight', None)
        if xwidth is not None:
            xmin, xmax = -0.5 * xwidth, 0.5 * xwidth
        else:
            xmin, xmax = self.param('xmin', None), self.param('xmax', None)
        if yheight is not None:
            ymin, ymax = -0.5 * yheight, 0.5 * yheight
        else:
            ymin, ymax = self.param('ymin', None), self.param('ymax', None)

        if None in (xmin, xmax, ymin, ymax):
            raise ConfigurationError("give either 'radius' or a rectangular opening "
                                     "(xwidth/yheight or xmin/xmax/ymin/ymax)", self.name)
        if not (xmax > xmin and ymax > ymin):
            raise ConfigurationError(f"empty opening x=[{xmin}, {xmax}] y=[{ymin}, {ymax}]", self.name)
        return SlitState(xmin, xmax, ymin, ymax, None)

    def trace(self, event: Event, rng: EventRandom) -> TraceStatus:
        s = self.state
        if not event.propagate_to_plane(0.0):
            event.absorb()
            return TraceStatus.ABSORBED

        x, y = event.position[0], event.position[1]
        if s.radius is not None:
            inside = x * x + y * y <= s.radius * s.radius
        else:
            inside = s.xmin <= x <= s.xmax and s.ymin <= y <= s.ymax
        if not inside:
            event.absorb()
            return TraceStatus.ABSORBED
        return TraceStatus.PASS_THROUGH
