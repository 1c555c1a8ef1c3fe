"""Core module: event state, geometry primitives, random variates, placement."""

from beamline_mc.core.errors import (
    ConfigurationError, RunAbortedError, ParseError, LifecycleError,
)
from beamline_mc.core.event import Event, EVENT_DTYPE, ALL_FIELDS
from beamline_mc.core.geometry import (
    intersect_plane, intersect_sphere, intersect_cylinder, intersect_box,
    smallest_positive,
)
from beamline_mc.core.placement import Placement
from beamline_mc.core.rng import EventRandom, RandomStreams, TargetRect, rect_solid_angle

__all__ = [
    "ConfigurationError", "RunAbortedError", "ParseError", "LifecycleError",
    "Event", "EVENT_DTYPE", "ALL_FIELDS",
    "intersect_plane", "intersect_sphere", "intersect_cylinder", "intersect_box",
    "smallest_positive",
    "Placement",
    "EventRandom", "RandomStreams", "TargetRect", "rect_solid_angle",
]
