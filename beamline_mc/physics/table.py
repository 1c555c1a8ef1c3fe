"""
Tabulated data (material constants, form factors, spectra).

Text format:
    # free-text header lines, may embed "name: value" or "name = value"
    # Z: 14
    # density: 2.329
    x0  y0  [z0 ...]
    x1  y1  [z1 ...]

The first column is the interpolation domain and must be strictly increasing.
"""

import logging
import math
import re
import numba
import numpy as np
from pathlib import Path
from typing import List, Optional, Sequence, Union

from beamline_mc.core.errors import ParseError

logger = logging.getLogger(__name__)

COMMENT = '#'
_NUMBER = r'[-+]?(?:\d+\.?\d*|\.\d+)(?:[eEdD][-+]?\d+)?'


@numba.njit(cache=True)
def _interpolate_linear(x_array: np.ndarray, y_array: np.ndarray, x: float) -> float:
    """
    Binary search + linear interpolation, clamped at both ends.

    Knot values come back unchanged: the bracketing interval starts at the
    knot, so the interpolation term is exactly zero there.
    """
    n = len(x_array)
    if x != x:
        return np.nan
    if x <= x_array[0]:
        return y_array[0]
    if x >= x_array[n - 1]:
        return y_array[n - 1]

    i = np.searchsorted(x_array, x, side='right') - 1
    x0 = x_array[i]
    if x == x0:
        return y_array[i]
    y0 = y_array[i]
    return y0 + (y_array[i + 1] - y0) * (x - x0) / (x_array[i + 1] - x0)


def _parse_number(token: str) -> float:
    token = token.strip().rstrip(',;')
    # Fortran-style exponents appear in older material files
    return float(token.replace('d', 'e').replace('D', 'E'))


class TableData:
    """
    Immutable 2-D table with linear interpolation on the first column.

    Attributes:
        header: Header lines (comment marker stripped)
        data: (n_rows, n_columns) float64 array
        source: Path the table was read from (None for in-memory tables)
    """

    def __init__(self, data: np.ndarray, header: Optional[List[str]] = None,
                 source: Optional[Path] = None):
        data = np.array(data, dtype=np.float64)
        if data.ndim != 2 or data.shape[0] < 1 or data.shape[1] < 2:
            raise ParseError(f"Table needs at least one row and two columns, got shape {data.shape}",
                             path=source)
        if not np.all(np.isfinite(data)):
            raise ParseError("Table contains non-finite values", path=source)
        steps = np.diff(data[:, 0])
        if np.any(steps <= 0.0):
            bad = int(np.argmax(steps <= 0.0)) + 1
            raise ParseError(f"First column must be strictly increasing (row {bad})", path=source)

        data.setflags(write=False)
        self.data = data
        self.header = list(header or [])
        self.source = source
        self._x = np.ascontiguousarray(data[:, 0])
        self._columns = [np.ascontiguousarray(data[:, j]) for j in range(data.shape[1])]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_array(cls, data, header: Optional[Sequence[str]] = None) -> 'TableData':
        return cls(np.asarray(data, dtype=np.float64), list(header or []))

    @classmethod
    def load(cls, path: Union[str, Path], use_cache: bool = False) -> 'TableData':
        """
        Load a table from a text file.

        Parameters:
            path: Table file
            use_cache: Use (and create) a binary .npy side-car next to the file.
                       It is only trusted when newer than the text file.

        Raises:
            FileNotFoundError: missing file
            ParseError: malformed header or rows, unsorted domain column
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Table file not found: {path}")

        npy_file = path.with_suffix(path.suffix + '.npy')
        if use_cache and npy_file.exists() and npy_file.stat().st_mtime >= path.stat().st_mtime:
            header, _ = cls._read_text(path, header_only=True)
            table = cls(np.load(npy_file), header, source=path)
            logger.debug("Loaded %s from binary cache %s", path.name, npy_file.name)
            return table

        header, rows = cls._read_text(path)
        table = cls(np.array(rows, dtype=np.float64), header, source=path)
        logger.info("Loaded table %s: %d rows x %d columns", path.name, table.n_rows, table.n_columns)

        if use_cache:
            np.save(npy_file, table.data)
            logger.debug("Wrote binary cache %s", npy_file.name)
        return table

    @staticmethod
    def _read_text(path: Path, header_only: bool = False):
        header: List[str] = []
        rows: List[List[float]] = []
        n_columns = None
        in_data = False

        try:
            text = path.read_text(encoding='utf-8')
        except UnicodeDecodeError as e:
            raise ParseError(f"Not a text table ({e})", path=path) from e

        for line_no, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line:
                continue
            if line.startswith(COMMENT):
                if not in_data:
                    header.append(line.lstrip(COMMENT).strip())
                continue

            in_data = True
            if header_only:
                break

            line = line.split(COMMENT, 1)[0]
            try:
                values = [_parse_number(tok) for tok in line.split()]
            except ValueError as e:
                raise ParseError(f"Non-numeric data: {raw.strip()!r}", path=path, line=line_no) from e

            if n_columns is None:
                n_columns = len(values)
                if n_columns < 2:
                    raise ParseError("Rows need at least two columns", path=path, line=line_no)
            elif len(values) != n_columns:
                raise ParseError(f"Expected {n_columns} columns, got {len(values)}",
                                 path=path, line=line_no)
            if not all(math.isfinite(v) for v in values):
                raise ParseError("Non-finite value in row", path=path, line=line_no)
            if rows and values[0] <= rows[-1][0]:
                raise ParseError(f"First column not strictly increasing ({values[0]} after {rows[-1][0]})",
                                 path=path, line=line_no)
            rows.append(values)

        if not header_only and not rows:
            raise ParseError("No data rows", path=path)

        declared = TableData._declared_columns(header)
        if not header_only and declared is not None and declared != n_columns:
            raise ParseError(f"Header declares {declared} columns, rows have {n_columns}", path=path)
        return header, rows

    @staticmethod
    def _declared_columns(header: List[str]) -> Optional[int]:
        for line in header:
            match = re.search(r'\bcolumns\s*[:=]\s*(\d+)\s*$', line, re.IGNORECASE)
            if match:
                return int(match.group(1))
        return None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def n_rows(self) -> int:
        return self.data.shape[0]

    @property
    def n_columns(self) -> int:
        return self.data.shape[1]

    @property
    def domain(self):
        """(min, max) of the first column."""
        return float(self._x[0]), float(self._x[-1])

    def column(self, index: int) -> np.ndarray:
        return self._columns[self._check_column(index)]

    def _check_column(self, column: int) -> int:
        if not 1 <= column < self.n_columns:
            raise IndexError(f"Column {column} out of range [1, {self.n_columns - 1}]")
        return column

    def value_at(self, x: float, column: int = 1) -> float:
        """
        Linearly interpolated value of ``column`` at ``x``.

        Out-of-domain x is clamped to the edge rows.
        """
        x = float(x)
        if not math.isfinite(x):
            raise ValueError(f"Cannot interpolate at non-finite x={x}")
        return float(_interpolate_linear(self._x, self._columns[self._check_column(column)], x))

    def values_at(self, xs, column: int = 1) -> np.ndarray:
        """Vectorized value_at (same clamping)."""
        y = self._columns[self._check_column(column)]
        return np.interp(np.asarray(xs, dtype=np.float64), self._x, y)

    def header_field(self, name: str) -> float:
        """
        Numeric value of a ``name: value`` (or ``name = value``) header annotation.

        Raises:
            KeyError: no such field in the header
            ParseError: field present but not numeric
        """
        pattern = re.compile(r'(?<![\w])' + re.escape(name) + r'\s*[:=]\s*(\S+)', re.IGNORECASE)
        for line in self.header:
            match = pattern.search(line)
            if match is None:
                continue
            token = match.group(1)
            if not re.fullmatch(_NUMBER + r'[,;]?', token):
                raise ParseError(f"Header field '{name}' is not numeric: {token!r}", path=self.source)
            return _parse_number(token)
        raise KeyError(f"Header field '{name}' not found in {self.source or 'table'}")

    def has_field(self, name: str) -> bool:
        try:
            self.header_field(name)
        except KeyError:
            return False
        return True

    def info(self) -> str:
        lo, hi = self.domain
        name = self.source.name if self.source is not None else '<memory>'
        return (f"Table {name}: {self.n_rows} rows x {self.n_columns} columns, "
                f"x in [{lo:g}, {hi:g}], {len(self.header)} header lines")

    def __repr__(self) -> str:
        return f"TableData({self.info()})"
