"""
Ray / primitive intersection routines.

Rays are parameterized as ``origin + t * direction``; ``direction`` does not
need to be normalized (t is then in units of the direction vector, e.g. time
when a velocity is passed). Every routine returns the ray parameters sorted
ascending: ``()``, ``(t,)`` or ``(t_entry, t_exit)``. Negative roots are
returned as well - picking the useful one is the caller's job.

Degenerate input (zero direction, zero denominators, non-positive sizes)
gives ``()``, never NaN or Inf.

The kernels are scalar Numba functions returning ``(n_roots, t0, t1)``.
fastmath is left off on purpose: the NaN/Inf guards must survive compilation.
"""

import math
import numba
import numpy as np
from typing import Optional, Sequence, Tuple

Roots = Tuple[float, ...]


@numba.njit(cache=True)
def _plane_roots(ox, oy, oz, dx, dy, dz, px, py, pz, nx, ny, nz):
    denom = dx * nx + dy * ny + dz * nz
    if denom == 0.0 or not math.isfinite(denom):
        return 0, 0.0, 0.0
    t = ((px - ox) * nx + (py - oy) * ny + (pz - oz) * nz) / denom
    if not math.isfinite(t):
        return 0, 0.0, 0.0
    return 1, t, t


@numba.njit(cache=True)
def _quadratic_roots(a, b, c):
    """Real roots of a*t^2 + b*t + c = 0 with a != 0 (cancellation-free)."""
    if a == 0.0 or not math.isfinite(a):
        return 0, 0.0, 0.0
    disc = b * b - 4.0 * a * c
    if disc < 0.0 or not math.isfinite(disc):
        return 0, 0.0, 0.0
    if disc == 0.0:
        t = -b / (2.0 * a)
        return 1, t, t
    sq = math.sqrt(disc)
    if b >= 0.0:
        q = -0.5 * (b + sq)
    else:
        q = -0.5 * (b - sq)
    t0 = q / a
    t1 = c / q
    if t0 > t1:
        t0, t1 = t1, t0
    if not (math.isfinite(t0) and math.isfinite(t1)):
        return 0, 0.0, 0.0
    return 2, t0, t1


@numba.njit(cache=True)
def _sphere_roots(ox, oy, oz, dx, dy, dz, cx, cy, cz, radius):
    if not radius > 0.0:
        return 0, 0.0, 0.0
    rx = ox - cx
    ry = oy - cy
    rz = oz - cz
    a = dx * dx + dy * dy + dz * dz
    b = 2.0 * (dx * rx + dy * ry + dz * rz)
    c = rx * rx + ry * ry + rz * rz - radius * radius
    return _quadratic_roots(a, b, c)


@numba.njit(cache=True)
def _cylinder_roots(ox, oy, oz, dx, dy, dz, cx, cy, cz, radius, height):
    # Axis along y, capped at cy +/- height/2
    if not (radius > 0.0 and height > 0.0):
        return 0, 0.0, 0.0
    rx = ox - cx
    ry = oy - cy
    rz = oz - cz
    half = 0.5 * height
    r2 = radius * radius

    t_min = math.inf
    t_max = -math.inf
    found = 0

    # Lateral surface
    a = dx * dx + dz * dz
    if a > 0.0:
        n, t0, t1 = _quadratic_roots(a, 2.0 * (dx * rx + dz * rz), rx * rx + rz * rz - r2)
        for i in range(n):
            t = t0 if i == 0 else t1
            y = ry + t * dy
            if -half <= y <= half:
                t_min = min(t_min, t)
                t_max = max(t_max, t)
                found += 1

    # End caps
    if dy != 0.0:
        for sign in (-1.0, 1.0):
            t = (sign * half - ry) / dy
            x = rx + t * dx
            z = rz + t * dz
            if math.isfinite(t) and x * x + z * z <= r2:
                t_min = min(t_min, t)
                t_max = max(t_max, t)
                found += 1

    if found == 0:
        return 0, 0.0, 0.0
    if t_min == t_max:
        return 1, t_min, t_min
    return 2, t_min, t_max


@numba.njit(cache=True)
def _box_roots(ox, oy, oz, dx, dy, dz, cx, cy, cz, xw, yh, zd):
    if not (xw > 0.0 and yh > 0.0 and zd > 0.0):
        return 0, 0.0, 0.0
    if dx == 0.0 and dy == 0.0 and dz == 0.0:
        return 0, 0.0, 0.0

    t_min = -math.inf
    t_max = math.inf
    origin = (ox - cx, oy - cy, oz - cz)
    direction = (dx, dy, dz)
    half = (0.5 * xw, 0.5 * yh, 0.5 * zd)

    for axis in range(3):
        o = origin[axis]
        d = direction[axis]
        h = half[axis]
        if d == 0.0:
            # Parallel to this slab: inside or never
            if o < -h or o > h:
                return 0, 0.0, 0.0
            continue
        t1 = (-h - o) / d
        t2 = (h - o) / d
        if t1 > t2:
            t1, t2 = t2, t1
        t_min = max(t_min, t1)
        t_max = min(t_max, t2)
        if t_min > t_max:
            return 0, 0.0, 0.0

    if not (math.isfinite(t_min) and math.isfinite(t_max)):
        return 0, 0.0, 0.0
    if t_min == t_max:
        return 1, t_min, t_min
    return 2, t_min, t_max


def _vec(value) -> np.ndarray:
    v = np.asarray(value, dtype=np.float64).reshape(3)
    return v


def _roots(n: int, t0: float, t1: float) -> Roots:
    if n == 0:
        return ()
    if n == 1:
        return (float(t0),)
    return (float(t0), float(t1))


def intersect_plane(origin, direction, point, normal) -> Roots:
    """Intersection with the infinite plane through ``point`` with ``normal``."""
    o, d, p, n = _vec(origin), _vec(direction), _vec(point), _vec(normal)
    return _roots(*_plane_roots(o[0], o[1], o[2], d[0], d[1], d[2],
                                p[0], p[1], p[2], n[0], n[1], n[2]))


def intersect_sphere(origin, direction, center, radius: float) -> Roots:
    """Intersection with a sphere (0, 1 for a tangent ray, or 2 roots)."""
    o, d, c = _vec(origin), _vec(direction), _vec(center)
    return _roots(*_sphere_roots(o[0], o[1], o[2], d[0], d[1], d[2],
                                 c[0], c[1], c[2], float(radius)))


def intersect_cylinder(origin, direction, center, radius: float, height: float) -> Roots:
    """
    Intersection with a closed cylinder whose axis is parallel to y.

    Returns the entry and exit parameters over the lateral surface and the
    two end caps.
    """
    o, d, c = _vec(origin), _vec(direction), _vec(center)
    return _roots(*_cylinder_roots(o[0], o[1], o[2], d[0], d[1], d[2],
                                   c[0], c[1], c[2], float(radius), float(height)))


def intersect_box(origin, direction, center, size: Sequence[float]) -> Roots:
    """Intersection with an axis-aligned box of full widths ``size = (xw, yh, zd)``."""
    o, d, c = _vec(origin), _vec(direction), _vec(center)
    xw, yh, zd = (float(s) for s in size)
    return _roots(*_box_roots(o[0], o[1], o[2], d[0], d[1], d[2],
                              c[0], c[1], c[2], xw, yh, zd))


def smallest_positive(roots: Roots, epsilon: float = 0.0) -> Optional[float]:
    """Smallest root strictly greater than ``epsilon`` (None if there is none)."""
    candidates = [t for t in roots if t > epsilon]
    if not candidates:
        return None
    return min(candidates)
