"""Component library: sources, apertures, monitors, crystal optics.

Importing this package registers every component type for instrument
descriptions.
"""

from beamline_mc.components.sources import PointSource
from beamline_mc.components.optics import Arm, Slit
from beamline_mc.components.monitors import PSDMonitor, EnergyMonitor, EnergyPSDMonitor
from beamline_mc.components.crystal import FlatCrystal

__all__ = [
    "PointSource",
    "Arm",
    "Slit",
    "PSDMonitor",
    "EnergyMonitor",
    "EnergyPSDMonitor",
    "FlatCrystal",
]
