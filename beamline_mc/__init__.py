"""
BEAMLINE_MC: Monte Carlo ray tracing for X-ray and neutron instruments

Events (photons or neutrons) are traced through an ordered list of beamline
components; each component may move, redirect, reweight, absorb or restore
an event and score it into weighted histograms.

Modules:
    core: Event state, geometry primitives, random variates, placement
    physics: Tabulated material data, Bragg reflection
    scoring: Weighted histograms for detector output
    transport: Component lifecycle, pipeline, run driver, instrument loader
    components: Sources, apertures, monitors, crystal optics
"""

__version__ = "0.1.0"
__author__ = "William Comaskey"

from beamline_mc.core.event import Event
from beamline_mc.core.rng import EventRandom, RandomStreams
from beamline_mc.physics.table import TableData
from beamline_mc.scoring.histogram import WeightedHistogram
from beamline_mc.transport.node import ComponentNode, TraceStatus
from beamline_mc.transport.pipeline import Pipeline
from beamline_mc.transport.engine import RunDriver
from beamline_mc.transport.instrument import load_instrument

__all__ = [
    "Event",
    "EventRandom",
    "RandomStreams",
    "TableData",
    "WeightedHistogram",
    "ComponentNode",
    "TraceStatus",
    "Pipeline",
    "RunDriver",
    "load_instrument",
]
