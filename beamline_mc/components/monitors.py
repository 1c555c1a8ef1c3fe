"""
Detector monitors in the local plane z = 0.

Each monitor propagates the event to its plane and scores it if it falls in
the sensitive window. With ``restore`` (the default) the event then continues
as if the monitor were not there.
"""

from dataclasses import dataclass
from typing import Dict, Union

from beamline_mc.core.errors import ConfigurationError
from beamline_mc.core.event import Event
from beamline_mc.core.rng import EventRandom
from beamline_mc.scoring.histogram import Axis, SlicedHistogram, WeightedHistogram
from beamline_mc.transport.node import ComponentNode, TraceStatus, register_component


@dataclass
class MonitorState:
    half_x: float
    half_y: float
    restore: bool
    histogram: Union[WeightedHistogram, SlicedHistogram]


class _PlaneMonitor(ComponentNode):
    """Shared window/propagation logic of the plane monitors."""

    default_suffix = 'dat'

    def _window(self):
        xwidth = self.positive('xwidth')
        yheight = self.positive('yheight')
        return 0.5 * xwidth, 0.5 * yheight

    def _filename(self) -> str:
        return str(self.params.get('filename') or f"{self.name}.{self.default_suffix}")

    def _bins(self, name: str, default: int) -> int:
        value = self.param(name, default, int)
        if value < 1:
            raise ConfigurationError(f"parameter '{name}' must be a positive integer, got {value}",
                                     self.name)
        return value

    def _energy_axis(self, label: str) -> Axis:
        e_min = self.param('Emin')
        e_max = self.param('Emax')
        if not e_max > e_min:
            raise ConfigurationError(f"Emax ({e_max}) must exceed Emin ({e_min})", self.name)
        return Axis(label, self._bins('nE', 20), e_min, e_max)

    def score(self, event: Event) -> bool:
        raise NotImplementedError

    def trace(self, event: Event, rng: EventRandom) -> TraceStatus:
        s = self.state
        if not event.propagate_to_plane(0.0):
            event.absorb()
            return TraceStatus.ABSORBED

        x, y = event.position[0], event.position[1]
        hit = -s.half_x <= x < s.half_x and -s.half_y <= y < s.half_y and self.score(event)
        if s.restore:
            return TraceStatus.RESTORED
        return TraceStatus.SCATTERED if hit else TraceStatus.PASS_THROUGH

    def accumulators(self) -> Dict[str, WeightedHistogram]:
        if self.state is None:
            return {}
        hist = self.state.histogram
        if isinstance(hist, SlicedHistogram):
            return {h.filename: h for h in hist.histograms()}
        return {hist.filename: hist}

    def release(self):
        self.state.histogram = None


@register_component
class PSDMonitor(_PlaneMonitor):
    """
    Position-sensitive detector: 2-D histogram of (x, y) on the plane.

    Parameters:
        xwidth, yheight: Sensitive window [m]
        nx, ny: Number of bins (default 90)
        filename: Output file (default: <name>.psd)
        restore: Leave the event untouched (default true)
    """

    default_suffix = 'psd'

    def setup(self) -> MonitorState:
        half_x, half_y = self._window()
        axes = [Axis('X position [m]', self._bins('nx', 90), -half_x, half_x),
                Axis('Y position [m]', self._bins('ny', 90), -half_y, half_y)]
        title = self.params.get('title') or f"PSD monitor {self.name}"
        return MonitorState(half_x, half_y, self.param('restore', True, bool),
                            WeightedHistogram(title, axes, self._filename()))

    def score(self, event: Event) -> bool:
        return self.state.histogram.add(event.weight, event.position[0], event.position[1])


@register_component
class EnergyMonitor(_PlaneMonitor):
    """
    Energy spectrum of events crossing the window.

    Parameters:
        xwidth, yheight: Sensitive window [m]
        Emin, Emax, nE: Energy range and bins (keV for X-rays, meV for neutrons)
        filename: Output file (default: <name>.E)
        restore: Leave the event untouched (default true)
    """

    default_suffix = 'E'

    def setup(self) -> MonitorState:
        half_x, half_y = self._window()
        axis = self._energy_axis(str(self.params.get('label', 'Energy')))
        title = self.params.get('title') or f"Energy monitor {self.name}"
        return MonitorState(half_x, half_y, self.param('restore', True, bool),
                            WeightedHistogram(title, [axis], self._filename()))

    def score(self, event: Event) -> bool:
        return self.state.histogram.add(event.weight, event.energy)


@register_component
class EnergyPSDMonitor(_PlaneMonitor):
    """
    Position-sensitive detector resolved in energy.

    Writes one (x, y) map per energy slice (``<filename>.<i>``) plus the map
    integrated over all slices (``<filename>``).

    Parameters:
        xwidth, yheight, nx, ny: As PSDMonitor
        Emin, Emax, nE: Energy slices (default nE = 20)
        filename: Base output file (default: <name>.epsd)
        restore: Leave the event untouched (default true)
    """

    default_suffix = 'epsd'

    def setup(self) -> MonitorState:
        half_x, half_y = self._window()
        axes = [Axis('X position [m]', self._bins('nx', 90), -half_x, half_x),
                Axis('Y position [m]', self._bins('ny', 90), -half_y, half_y)]
        energy_axis = self._energy_axis('E')
        title = self.params.get('title') or f"Energy-resolved PSD {self.name}"
        return MonitorState(half_x, half_y, self.param('restore', True, bool),
                            SlicedHistogram(title, axes, energy_axis, self._filename()))

    def score(self, event: Event) -> bool:
        return self.state.histogram.add(event.weight, event.position[0], event.position[1],
                                        event.energy)
