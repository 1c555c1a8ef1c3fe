"""
Physical constants and unit conversions.

Units used throughout the package:
    position [m], time [s], wavevector k [1/Å],
    X-ray energy [keV], neutron energy [meV].
"""

import math

SPEED_OF_LIGHT = 299792458.0          # m/s

# X-rays: E[keV] = K2E * |k|[1/Å]  (hbar*c in keV*Å)
K2E = 1.973269804
E2K = 1.0 / K2E

# Neutrons: v[m/s] = K2V * |k|[1/Å],  E[meV] = VS2E * v^2
K2V = 629.622368
V2K = 1.0 / K2V
VS2E = 5.227037e-6
SE2V = 437.393377

CLASSICAL_ELECTRON_RADIUS = 2.8179403262e-5   # Å

FOUR_PI = 4.0 * math.pi
DEG2RAD = math.pi / 180.0
RAD2DEG = 180.0 / math.pi

SPECIES = ('xray', 'neutron')
