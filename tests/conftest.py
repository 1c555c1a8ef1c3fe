"""Shared fixtures: small table files written into tmp_path."""

import pytest

from beamline_mc.core.rng import EventRandom

# Silicon f0(sin(theta)/lambda), International Tables vol. C (rounded)
SI_FORM_FACTOR = """\
# Silicon atomic form factor f0
# columns: s f0
# a: 5.4309
# B = 0.4632
# Z: 14
0.00  14.000
0.05  13.436
0.10  12.160
0.15  10.790
0.20   9.670
0.25   8.750
0.30   7.900
0.40   6.370
0.50   5.000
0.60   3.960
0.80   2.530
1.00   1.790
"""

SI_DISPERSION = """\
# Silicon anomalous scattering factors
# E[keV] f' f''
5.0   0.35  0.65
8.0   0.25  0.33
10.0  0.20  0.23
15.0  0.13  0.10
20.0  0.09  0.06
"""


@pytest.fixture
def write_table(tmp_path):
    """Factory: write text to a file under tmp_path and return its path."""

    def _write(text: str, name: str = 'table.dat'):
        path = tmp_path / name
        path.write_text(text, encoding='utf-8')
        return path

    return _write


@pytest.fixture
def linear_table(write_table):
    return write_table("# test table\n# scale: 10\n1 10\n2 20\n3 30\n", 'linear.dat')


@pytest.fixture
def si_tables(write_table):
    """(form factor path, dispersion path) for silicon."""
    return (write_table(SI_FORM_FACTOR, 'Si_f0.dat'),
            write_table(SI_DISPERSION, 'Si_f1f2.dat'))


@pytest.fixture
def rng():
    return EventRandom(1234, 0)
