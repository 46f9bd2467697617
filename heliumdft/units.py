"""Atomic-unit conversion constants for the helium density-functional solver.

All internal quantities are in Hartree atomic units (hbar = m_e = e = 1):
lengths in bohr, energies in hartree, times in hbar/hartree. The constants
below convert *from* atomic units *to* the named unit, e.g.

    length_angstrom = length_bohr * AUTOANG
    energy_kelvin = energy_hartree * AUTOK
"""

# ============================================================================
# Conversion factors (multiply an atomic-unit value to get the named unit)
# ============================================================================

AUTOANG = 0.52917721092       # bohr -> Angstrom
AUTOM = AUTOANG * 1e-10       # bohr -> m
AUTOK = 3.1577465e5           # hartree -> Kelvin
AUTOFS = 0.02418884326505     # hbar/hartree -> fs
AUTOS = AUTOFS * 1e-15        # hbar/hartree -> s
AUTOMPS = 2.18769126e6        # bohr hartree/hbar -> m/s
AUTOVPM = 5.14220652e11       # hartree/(e bohr) -> V/m
AUTOPA = 2.9421912e13         # hartree/bohr^3 -> Pa
AUTOBAR = 2.9421912e8         # hartree/bohr^3 -> bar
AUTOAMU = 1.0 / 1822.888486   # m_e -> unified atomic mass unit

HBAR = 1.0
ELEMENTARY_CHARGE = 1.602176565e-19  # C

# 4He atom mass in electron masses
HELIUM_MASS = 4.002602 / AUTOAMU

# Lambda point of the superfluid transition (K)
LAMBDA_TEMPERATURE = 2.1768


def fs_to_au(t_fs: float) -> float:
    """Convert a time in femtoseconds to atomic units."""
    return t_fs / AUTOFS


def density_from_angstrom(rho: float) -> float:
    """Convert a number density in Angstrom^-3 to bohr^-3."""
    return rho * AUTOANG ** 3


def density_to_angstrom(rho: float) -> float:
    """Convert a number density in bohr^-3 to Angstrom^-3."""
    return rho / AUTOANG ** 3
