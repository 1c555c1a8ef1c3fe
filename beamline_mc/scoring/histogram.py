"""
Weighted histograms for detector output.

Each cell accumulates (count, Σw, Σw²). Updates are atomic per cell: a cell
is guarded by one lock out of a fixed pool of lock stripes, so concurrent
events landing in different cells do not serialize on a single lock.
"""

import logging
import math
import os
import threading
import h5py
import numpy as np
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

FORMAT_NAME = "beamline_mc histogram"


@dataclass(frozen=True)
class Axis:
    """One histogram axis: ``bins`` equal bins over [min, max)."""

    label: str
    bins: int
    min: float
    max: float

    def __post_init__(self):
        if int(self.bins) != self.bins or self.bins < 1:
            raise ValueError(f"Axis '{self.label}': bin count must be a positive integer, got {self.bins}")
        if not (math.isfinite(self.min) and math.isfinite(self.max)):
            raise ValueError(f"Axis '{self.label}': bounds must be finite")
        if self.max <= self.min:
            raise ValueError(f"Axis '{self.label}': upper bound {self.max} <= lower bound {self.min}")

    def index(self, coord: float) -> int:
        """Bin index of ``coord``, -1 when outside [min, max) or non-finite."""
        if not self.min <= coord < self.max:
            return -1
        i = int(math.floor((coord - self.min) * self.bins / (self.max - self.min)))
        # Rounding can push a coordinate just below max onto the upper edge
        return min(i, self.bins - 1)

    @property
    def edges(self) -> np.ndarray:
        return np.linspace(self.min, self.max, self.bins + 1)

    @property
    def centers(self) -> np.ndarray:
        edges = self.edges
        return 0.5 * (edges[:-1] + edges[1:])


class WeightedHistogram:
    """
    N-dimensional binned accumulator.

    Example:
        hist = WeightedHistogram('PSD', [Axis('x [m]', 10, -0.5, 0.5),
                                         Axis('y [m]', 10, -0.5, 0.5)], 'psd.dat')
        hist.add(event.weight, x, y)
        hist.save(output_dir)
    """

    # Upper bound on the number of locks; below it every cell has its own lock
    LOCK_STRIPES = 4096

    def __init__(self, title: str, axes: Sequence[Axis], filename: Optional[str] = None):
        """
        Parameters:
            title: Title written in the output header
            axes: One Axis per dimension
            filename: Output file name (default: derived from the title)
        """
        if not axes:
            raise ValueError("A histogram needs at least one axis")
        self.title = title
        self.axes = tuple(axes)
        self.filename = filename or (title.strip().replace(' ', '_') + '.dat')
        self.shape = tuple(axis.bins for axis in self.axes)

        self.count = np.zeros(self.shape, dtype=np.int64)
        self.weight_sum = np.zeros(self.shape, dtype=np.float64)
        self.weight_sq_sum = np.zeros(self.shape, dtype=np.float64)

        # Flat views share memory with the shaped arrays
        self._count_flat = self.count.reshape(-1)
        self._sum_flat = self.weight_sum.reshape(-1)
        self._sq_flat = self.weight_sq_sum.reshape(-1)

        n_locks = min(self._count_flat.size, self.LOCK_STRIPES)
        self._locks = [threading.Lock() for _ in range(n_locks)]

    @property
    def rank(self) -> int:
        return len(self.axes)

    def cell_index(self, *coords: float) -> int:
        """Flat cell index of ``coords`` or -1 if any coordinate is out of range."""
        if len(coords) != self.rank:
            raise TypeError(f"Histogram '{self.title}' has rank {self.rank}, got {len(coords)} coordinates")
        flat = 0
        for axis, coord in zip(self.axes, coords):
            i = axis.index(coord)
            if i < 0:
                return -1
            flat = flat * axis.bins + i
        return flat

    def add(self, weight: float, *coords: float) -> bool:
        """
        Accumulate one event.

        Out-of-range coordinates (or a non-finite weight) are a silent no-op.

        Returns:
            True if a cell was updated
        """
        flat = self.cell_index(*coords)
        if flat < 0:
            return False
        weight = float(weight)
        if not math.isfinite(weight):
            return False

        with self._locks[flat % len(self._locks)]:
            self._count_flat[flat] += 1
            self._sum_flat[flat] += weight
            self._sq_flat[flat] += weight * weight
        return True

    def errors(self) -> np.ndarray:
        """Error estimate per cell, sqrt(Σw²) (weighted Poisson statistics)."""
        return np.sqrt(self.weight_sq_sum)

    def total(self) -> Dict[str, float]:
        return {
            'count': int(self.count.sum()),
            'intensity': float(self.weight_sum.sum()),
            'error': float(math.sqrt(self.weight_sq_sum.sum())),
        }

    def arrays(self) -> Dict[str, np.ndarray]:
        """Copies of the accumulator arrays (for process reduction)."""
        return {
            'count': self.count.copy(),
            'weight_sum': self.weight_sum.copy(),
            'weight_sq_sum': self.weight_sq_sum.copy(),
        }

    def merge_arrays(self, count: np.ndarray, weight_sum: np.ndarray,
                     weight_sq_sum: np.ndarray):
        """Add accumulators gathered elsewhere (e.g. a worker process).

        Not meant to run concurrently with add().
        """
        for name, value in (('count', count), ('weight_sum', weight_sum),
                            ('weight_sq_sum', weight_sq_sum)):
            if np.shape(value) != self.shape:
                raise ValueError(f"Cannot merge {name} of shape {np.shape(value)} "
                                 f"into histogram of shape {self.shape}")
        self.count += count
        self.weight_sum += weight_sum
        self.weight_sq_sum += weight_sq_sum

    def merge(self, other: 'WeightedHistogram'):
        if other.axes != self.axes:
            raise ValueError(f"Cannot merge histograms with different axes: {other.axes} vs {self.axes}")
        self.merge_arrays(other.count, other.weight_sum, other.weight_sq_sum)

    def reset(self):
        self.count.fill(0)
        self.weight_sum.fill(0.0)
        self.weight_sq_sum.fill(0.0)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _output_path(self, path: Union[str, Path]) -> Path:
        """Existing directories, and strings ending in a separator, get ``self.filename`` appended."""
        as_dir = isinstance(path, str) and path.endswith(("/", os.sep))
        path = Path(path)
        if as_dir or path.is_dir():
            path = path / self.filename
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def _block(self, values: np.ndarray) -> np.ndarray:
        if self.rank == 1:
            return values.reshape(-1, 1)
        if self.rank == 2:
            # One row per bin of the second axis
            return values.T
        return values.reshape(-1, self.shape[-1])

    def header_lines(self, n_events: Optional[int] = None) -> List[str]:
        if self.rank == 1:
            kind = f"array_1d({self.shape[0]})"
        else:
            kind = f"array_{self.rank}d({', '.join(str(b) for b in self.shape)})"
        lines = [
            f"Format: {FORMAT_NAME}",
            f"title: {self.title}",
            f"filename: {self.filename}",
            f"type: {kind}",
        ]
        names = 'xyzuvw'
        for i, axis in enumerate(self.axes):
            lines.append(f"{names[i]}label: {axis.label}")
        for i, axis in enumerate(self.axes):
            lines.append(f"{names[i]}limits: {axis.min:.10g} {axis.max:.10g} {axis.bins}")
        if n_events is not None:
            lines.append(f"events: {n_events}")
        return lines

    def save(self, path: Union[str, Path], n_events: Optional[int] = None) -> Path:
        """
        Write the histogram as self-describing text.

        Parameters:
            path: Output file, or a directory (then ``self.filename`` is used); a
                directory that does not exist yet is given as a string ending in "/"
            n_events: Number of simulated events, recorded in the header

        Returns:
            Path of the written file
        """
        path = self._output_path(path)
        with open(path, 'w', encoding='utf-8') as f:
            for line in self.header_lines(n_events):
                f.write(f"# {line}\n")
            f.write("# Data [counts]:\n")
            np.savetxt(f, self._block(self.count), fmt='%d')
            f.write("# Data [intensity]:\n")
            np.savetxt(f, self._block(self.weight_sum), fmt='%.10g')
            f.write("# Data [error]:\n")
            np.savetxt(f, self._block(self.errors()), fmt='%.10g')
        logger.info("Saved histogram '%s' to %s", self.title, path)
        return path

    def save_hdf5(self, path: Union[str, Path], n_events: Optional[int] = None) -> Path:
        """Write the histogram to an HDF5 file (datasets counts/intensity/error)."""
        path = Path(path)
        if path.is_dir():
            path = path / (Path(self.filename).stem + '.h5')
        path.parent.mkdir(parents=True, exist_ok=True)
        with h5py.File(path, 'w') as f:
            f.create_dataset('counts', data=self.count)
            f.create_dataset('intensity', data=self.weight_sum)
            f.create_dataset('error', data=self.errors())
            for i, axis in enumerate(self.axes):
                f.create_dataset(f'axis_{i}_edges', data=axis.edges)
            f.attrs['title'] = self.title
            f.attrs['filename'] = self.filename
            f.attrs['labels'] = np.array([axis.label for axis in self.axes], dtype=h5py.string_dtype())
            f.attrs['limits'] = np.array([[axis.min, axis.max] for axis in self.axes])
            f.attrs['bins'] = np.array(self.shape)
            if n_events is not None:
                f.attrs['events'] = n_events
        return path

    @staticmethod
    def read(path: Union[str, Path]) -> Dict[str, object]:
        """
        Read a file written by save().

        Returns:
            dict with 'header' (key -> str) and arrays 'counts', 'intensity',
            'error' shaped like the histogram.
        """
        header: Dict[str, str] = {}
        blocks: Dict[str, List[List[float]]] = {}
        current = None
        for raw in Path(path).read_text(encoding='utf-8').splitlines():
            line = raw.strip()
            if not line:
                continue
            if line.startswith('#'):
                body = line.lstrip('#').strip()
                if body.startswith('Data ['):
                    current = body[len('Data ['):body.index(']')]
                    blocks[current] = []
                elif ':' in body:
                    key, value = body.split(':', 1)
                    header[key.strip()] = value.strip()
                continue
            if current is None:
                raise ValueError(f"Data outside a block in {path}")
            blocks[current].append([float(v) for v in line.split()])

        shape = tuple(int(header[k].split()[2]) for k in header if k.endswith('limits'))
        result: Dict[str, object] = {'header': header}
        for name, key in (('counts', 'counts'), ('intensity', 'intensity'), ('error', 'error')):
            block = np.array(blocks[key], dtype=np.float64)
            if len(shape) == 2:
                block = block.T
            result[name] = block.reshape(shape)
        return result

    def __repr__(self) -> str:
        total = self.total()
        return (f"WeightedHistogram('{self.title}', shape={self.shape}, "
                f"N={total['count']}, I={total['intensity']:.4g})")


class SlicedHistogram:
    """
    2-D histograms resolved along a third variable (e.g. energy).

    Keeps one histogram per slice plus one integrated over all slices; saved
    as ``<filename>.<i>`` per slice and ``<filename>`` for the integrated map.
    """

    def __init__(self, title: str, axes: Sequence[Axis], slice_axis: Axis,
                 filename: Optional[str] = None):
        self.title = title
        self.slice_axis = slice_axis
        self.integrated = WeightedHistogram(title, axes, filename)
        self.filename = self.integrated.filename
        edges = slice_axis.edges
        self.slices = [
            WeightedHistogram(
                f"{title} [{slice_axis.label} {edges[i]:.6g}..{edges[i + 1]:.6g}]",
                axes, f"{self.filename}.{i}")
            for i in range(slice_axis.bins)
        ]

    def add(self, weight: float, *coords: float) -> bool:
        """``coords`` = (histogram coordinates..., slice coordinate)."""
        *hist_coords, slice_coord = coords
        i = self.slice_axis.index(slice_coord)
        if i < 0:
            return False
        if not self.slices[i].add(weight, *hist_coords):
            return False
        self.integrated.add(weight, *hist_coords)
        return True

    def histograms(self) -> List[WeightedHistogram]:
        return self.slices + [self.integrated]

    def save(self, directory: Union[str, Path], n_events: Optional[int] = None) -> List[Path]:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        return [hist.save(directory / hist.filename, n_events) for hist in self.histograms()]

    def reset(self):
        for hist in self.histograms():
            hist.reset()
