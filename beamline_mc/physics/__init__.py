"""Physics module: tabulated material data, Bragg reflection."""

from beamline_mc.physics.table import TableData
from beamline_mc.physics.bragg import (
    CRYSTAL_PROPERTIES, bragg_angle, darwin_width, darwin_reflectivity,
)

__all__ = ["TableData", "CRYSTAL_PROPERTIES", "bragg_angle", "darwin_width",
           "darwin_reflectivity"]
