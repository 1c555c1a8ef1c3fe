"""
Bragg reflection from perfect crystals (Darwin theory).

Small set of helpers consumed by the crystal component: lattice geometry,
structure factors for the diamond structure, Darwin width and reflectivity
curve, specular reflection and the sigma/pi polarization basis.

References:
    - Als-Nielsen & McMorrow, Elements of Modern X-ray Physics, ch. 6
    - Authier, Dynamical Theory of X-ray Diffraction
"""

import math
import numba
import numpy as np
from typing import Tuple

from beamline_mc.core.constants import CLASSICAL_ELECTRON_RADIUS

# Crystal properties database (cubic, diamond structure)
CRYSTAL_PROPERTIES = {
    'Si': {
        'a': 5.4309,         # Lattice constant [Å]
        'Z': 14,
        'n_atoms': 8,        # Atoms per conventional cell
        'B': 0.4632,         # Debye-Waller B [Å²] at 295 K
    },
    'Ge': {
        'a': 5.6578,
        'Z': 32,
        'n_atoms': 8,
        'B': 0.5650,
    },
    'C': {
        'a': 3.5670,
        'Z': 6,
        'n_atoms': 8,
        'B': 0.1500,
    },
}


def cubic_d_spacing(a: float, h: int, k: int, l: int) -> float:
    """Lattice plane spacing d_hkl [Å] of a cubic cell with constant ``a``."""
    norm = math.sqrt(h * h + k * k + l * l)
    if norm == 0.0:
        raise ValueError("Miller indices (0, 0, 0) do not define a reflection")
    return a / norm


def diamond_structure_factor(f: complex, h: int, k: int, l: int) -> complex:
    """
    Structure factor of the conventional diamond cell for atomic scattering factor ``f``.

    F = 8f  if h+k+l = 4n (all even),
        4(1 ± i)f  if h, k, l all odd,
        0   otherwise.
    """
    parities = {h % 2, k % 2, l % 2}
    if parities == {1}:
        sign = 1.0 if (h + k + l) % 4 == 1 else -1.0
        return 4.0 * complex(1.0, sign) * f
    if parities == {0} and (h + k + l) % 4 == 0:
        return 8.0 * f
    return 0j


@numba.njit(cache=True)
def bragg_angle(wavelength: float, d_spacing: float) -> float:
    """Bragg angle [rad]; -1.0 when no reflection is possible (λ > 2d)."""
    if not (wavelength > 0.0 and d_spacing > 0.0):
        return -1.0
    s = wavelength / (2.0 * d_spacing)
    if s > 1.0:
        return -1.0
    return math.asin(s)


@numba.njit(cache=True)
def darwin_width(wavelength: float, structure_factor: float, cell_volume: float,
                 theta_b: float, polarization_factor: float) -> float:
    """
    Full Darwin width [rad] of the total-reflection plateau.

        ω = 2 r_e λ² |C| |F| / (π V sin 2θ_B)

    Parameters:
        wavelength: [Å]
        structure_factor: |F| (electrons), Debye-Waller included
        cell_volume: [Å³]
        theta_b: Bragg angle [rad]
        polarization_factor: 1 for sigma, |cos 2θ_B| for pi
    """
    sin2 = math.sin(2.0 * theta_b)
    if sin2 <= 0.0 or cell_volume <= 0.0:
        return 0.0
    return (2.0 * CLASSICAL_ELECTRON_RADIUS * wavelength * wavelength *
            abs(polarization_factor) * structure_factor / (math.pi * cell_volume * sin2))


@numba.njit(cache=True)
def darwin_reflectivity(deviation: float, width: float) -> float:
    """
    Darwin curve (no absorption) at angular ``deviation`` from the plateau centre.

        y = 2 Δθ / ω ;  R = 1 for |y| <= 1,  (|y| - sqrt(y² - 1))² otherwise
    """
    if not width > 0.0:
        return 0.0
    y = abs(2.0 * deviation / width)
    if y <= 1.0:
        return 1.0
    r = y - math.sqrt(y * y - 1.0)
    return r * r


@numba.njit(cache=True)
def refraction_shift(wavelength: float, structure_factor_0: float, cell_volume: float,
                     theta_b: float) -> float:
    """Angular offset [rad] of the Darwin plateau centre from θ_B due to refraction.

    Δθ = 2δ / sin 2θ_B with δ = r_e λ² F_0 / (2π V)
    """
    sin2 = math.sin(2.0 * theta_b)
    if sin2 <= 0.0 or cell_volume <= 0.0:
        return 0.0
    return (CLASSICAL_ELECTRON_RADIUS * wavelength * wavelength * structure_factor_0 /
            (math.pi * cell_volume * sin2))


def reflect(k: np.ndarray, normal: np.ndarray) -> np.ndarray:
    """Specular reflection of ``k`` on a plane with unit ``normal``.

    Equivalent to rotating k by 2θ about the diffraction axis k × n.
    """
    return k - 2.0 * float(k @ normal) * normal


def polarization_basis(k: np.ndarray, normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Unit sigma (perpendicular to the scattering plane) and pi vectors for ``k``.

    Falls back to an arbitrary perpendicular pair at normal incidence.
    """
    k_hat = k / np.linalg.norm(k)
    sigma = np.cross(k_hat, normal)
    norm = np.linalg.norm(sigma)
    if norm < 1e-12:
        ref = np.array([1.0, 0.0, 0.0]) if abs(k_hat[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
        sigma = np.cross(k_hat, ref)
        norm = np.linalg.norm(sigma)
    sigma = sigma / norm
    pi = np.cross(sigma, k_hat)
    return sigma, pi
