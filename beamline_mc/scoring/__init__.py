"""Scoring module: weighted histograms for detector output."""

from beamline_mc.scoring.histogram import Axis, WeightedHistogram, SlicedHistogram

__all__ = ["Axis", "WeightedHistogram", "SlicedHistogram"]
