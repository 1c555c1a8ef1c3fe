"""
Component placement: position and orientation of a node's local frame.

A global point is ``rotation @ local + position``. Orientation angles follow
the usual beamline convention: rotations about x, then y, then z, in degrees,
applied in the parent's frame.
"""

import numpy as np
from scipy.spatial.transform import Rotation
from typing import Optional, Sequence

from beamline_mc.core.event import Event


class Placement:
    """Position and orientation of a local frame in global coordinates."""

    def __init__(self, position: Sequence[float] = (0.0, 0.0, 0.0),
                 rotation: Optional[np.ndarray] = None):
        self.position = np.array(position, dtype=np.float64).reshape(3)
        if rotation is None:
            rotation = np.eye(3)
        self.rotation = np.array(rotation, dtype=np.float64).reshape(3, 3)
        self.is_identity = (not np.any(self.position)
                            and np.array_equal(self.rotation, np.eye(3)))

    @classmethod
    def from_angles(cls, position: Sequence[float] = (0.0, 0.0, 0.0),
                    angles_deg: Sequence[float] = (0.0, 0.0, 0.0),
                    parent: Optional['Placement'] = None) -> 'Placement':
        """
        Build a placement from a position and x/y/z rotation angles.

        Parameters:
            position: Origin of the frame [m], in the parent frame
            angles_deg: Rotations about x, y, z [degrees], in the parent frame
            parent: Frame the values are relative to (None = global)
        """
        angles = np.asarray(angles_deg, dtype=np.float64).reshape(3)
        local_rotation = Rotation.from_euler('xyz', angles, degrees=True).as_matrix()
        local = cls(position, local_rotation)
        if parent is None:
            return local
        return parent.compose(local)

    def compose(self, child: 'Placement') -> 'Placement':
        """Placement of ``child`` (given in this frame) in global coordinates."""
        return Placement(self.rotation @ child.position + self.position,
                         self.rotation @ child.rotation)

    def to_local(self, event: Event):
        """Transform the event in place from global to this frame."""
        if self.is_identity:
            return
        rt = self.rotation.T
        event.position = rt @ (event.position - self.position)
        event.k = rt @ event.k
        event.polarization = rt @ event.polarization

    def to_global(self, event: Event):
        """Transform the event in place from this frame to global."""
        if self.is_identity:
            return
        r = self.rotation
        event.position = r @ event.position + self.position
        event.k = r @ event.k
        event.polarization = r @ event.polarization

    def __repr__(self) -> str:
        angles = Rotation.from_matrix(self.rotation).as_euler('xyz', degrees=True)
        return (f"Placement(at={tuple(np.round(self.position, 6))}, "
                f"rotated={tuple(np.round(angles, 4))})")
