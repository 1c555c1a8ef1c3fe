"""Transport module: component nodes, pipeline, run driver, instrument loader."""

from beamline_mc.transport.node import (
    ComponentNode, NodeState, TraceStatus, register_component, COMPONENT_REGISTRY,
)
from beamline_mc.transport.pipeline import Pipeline, NodeStatistics
from beamline_mc.transport.engine import RunDriver, RunSummary
from beamline_mc.transport.instrument import Instrument, build_instrument, load_instrument

__all__ = [
    "ComponentNode", "NodeState", "TraceStatus", "register_component", "COMPONENT_REGISTRY",
    "Pipeline", "NodeStatistics",
    "RunDriver", "RunSummary",
    "Instrument", "build_instrument", "load_instrument",
]
