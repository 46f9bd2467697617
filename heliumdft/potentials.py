"""
External potentials for impurities embedded in the liquid.

- ExponentialRepulsion: He-impurity potential
      V(r) = A0 exp(-A1 r) - A2/r^4 - A3/r^6 - A4/r^8 - A5/r^10,
  with r measured from a sphere of radius `radd` and clamped below `rmin`.
  The default parameters approximate an electron bubble.
- RadialTable: two-column radial potential (e.g. an electron-helium
  pseudo-potential) interpolated linearly and clamped at the table ends.

Both are capabilities `func(context, x, y, z)` for Grid.map / smooth_map.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import numpy as np
from numpy.typing import NDArray

from heliumdft.units import AUTOANG, AUTOK


@dataclass(frozen=True)
class ExponentialRepulsion:
    """Parameters of the exponential-repulsion impurity potential (atomic units)."""
    a0: float = 3.8003e5 / AUTOK
    a1: float = 1.6245 * AUTOANG
    a2: float = 0.0
    a3: float = 0.0
    a4: float = 0.0
    a5: float = 0.0
    rmin: float = 2.0
    radd: float = 6.0
    center: Tuple[float, float, float] = (0.0, 0.0, 0.0)


def exponential_repulsion(ctx: ExponentialRepulsion, x, y, z):
    r = np.sqrt((x - ctx.center[0]) ** 2 + (y - ctx.center[1]) ** 2 + (z - ctx.center[2]) ** 2)
    r = np.maximum(r - ctx.radd, ctx.rmin)
    r2 = r * r
    r4 = r2 * r2
    r6 = r4 * r2
    r8 = r6 * r2
    return (ctx.a0 * np.exp(-ctx.a1 * r) - ctx.a2 / r4 - ctx.a3 / r6
            - ctx.a4 / r8 - ctx.a5 / (r8 * r2))


@dataclass(frozen=True, eq=False)
class RadialTable:
    """Tabulated radial potential in atomic units (r [bohr], V [hartree])."""
    r: NDArray[np.float64]
    v: NDArray[np.float64]

    @classmethod
    def load(cls, path, angstrom_kelvin: bool = False) -> 'RadialTable':
        """Read a two-column text table; convert from (Angstrom, K) if requested."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Potential table not found: {path}")
        data = np.loadtxt(path, comments='#')
        if data.ndim != 2 or data.shape[1] < 2:
            raise ValueError(f"Potential table {path} must have two columns")
        r, v = data[:, 0], data[:, 1]
        if angstrom_kelvin:
            r = r / AUTOANG
            v = v / AUTOK
        order = np.argsort(r)
        return cls(r=r[order], v=v[order])


def radial_table_potential(ctx: RadialTable, x, y, z):
    return np.interp(np.sqrt(x * x + y * y + z * z), ctx.r, ctx.v)
