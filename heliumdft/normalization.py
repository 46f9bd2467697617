"""
Normalization and boundary policies applied after each full step.

Normalization modes:
- BULK_PINNED: rescale so that the density at a reference grid point equals
  the bulk density rho0 (extended / periodic liquid). Applied on steps with
  an imaginary time component; real-time steps are left unitary.
- FIXED_PARTICLE_COUNT: rescale the integral of |psi|^2 to N every step
  (finite droplets). Until `recentre_until`, the centre of mass is also
  translated back to the origin so a nucleating droplet does not drift.
- UNCONSTRAINED: no rescaling; the chemical-potential offset in the
  potential keeps the norm stationary.

Boundary handling is orthogonal: an AbsorbingShell damps the amplitude in a
marginal shell on each side of each axis after every corrected step.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from heliumdft.grid import Boundary, Grid, Wavefunction


class NormalizationMode(Enum):
    BULK_PINNED = 'bulk_pinned'
    FIXED_PARTICLE_COUNT = 'fixed_particle_count'
    UNCONSTRAINED = 'unconstrained'


# ============================================================================
# Absorbing shell
# ============================================================================

@dataclass(frozen=True)
class AbsorbingShell:
    """Damping shell widths [bohr] per axis and side, and damping amplitude.

    Parameters
    ----------
    widths : tuple of 6 floats
        (lower_x, upper_x, lower_y, upper_y, lower_z, upper_z). Zero disables
        that side.
    amplitude : float
        Envelope is exp(-amplitude * s^2) per axis, s in (0, 1] being the
        fractional depth into the shell.
    """
    widths: Tuple[float, float, float, float, float, float]
    amplitude: float = 0.1

    def __post_init__(self):
        widths = tuple(float(w) for w in self.widths)
        if len(widths) != 6:
            raise ValueError(f"Absorbing shell needs 6 widths, got {len(widths)}")
        if any(w < 0 for w in widths):
            raise ValueError(f"Absorbing widths must be non-negative, got {widths}")
        if self.amplitude < 0:
            raise ValueError(f"Absorbing amplitude must be non-negative, got {self.amplitude}")
        object.__setattr__(self, 'widths', widths)

    @classmethod
    def uniform(cls, width: float, amplitude: float = 0.1) -> 'AbsorbingShell':
        return cls(widths=(width,) * 6, amplitude=amplitude)

    def axis_profile(self, n: int, step: float, lower: float, upper: float) -> NDArray[np.float64]:
        """1-D damping factors along one axis."""
        i = np.arange(n, dtype=np.float64)
        s = np.zeros(n)
        nl = int(round(lower / step))
        nu = int(round(upper / step))
        if nl + nu > n:
            raise ValueError(f"Absorbing shell ({nl} + {nu} cells) wider than axis ({n} cells)")
        if nl > 0:
            s = np.where(i < nl, (nl - i) / nl, s)
        if nu > 0:
            s = np.where(i >= n - nu, (i - (n - nu) + 1) / nu, s)
        return np.exp(-self.amplitude * s * s)

    def envelope(self, grid: Grid) -> NDArray[np.float64]:
        """Product of the three axis profiles (1 in the interior)."""
        w = self.widths
        fx = self.axis_profile(grid.nx, grid.step, w[0], w[1])
        fy = self.axis_profile(grid.ny, grid.step, w[2], w[3])
        fz = self.axis_profile(grid.nz, grid.step, w[4], w[5])
        return fx[:, None, None] * fy[None, :, None] * fz[None, None, :]

    def inside(self, grid: Grid) -> NDArray[np.bool_]:
        """Mask of grid points within the shell."""
        return self.envelope(grid) < 1.0


def apply_absorption(wf: Wavefunction) -> None:
    """Damp wf.psi in its absorbing shell (no-op without one)."""
    if wf.absorb is None:
        return
    wf.psi *= wf.absorb.envelope(wf.grid)


def center_of_mass(wf: Wavefunction) -> NDArray[np.float64]:
    """<r> weighted by |psi|^2 [bohr]."""
    rho = wf.density()
    total = wf.grid.integral(rho)
    if total <= 0.0:
        return np.zeros(3)
    x, y, z = wf.grid.coordinates
    return np.array([wf.grid.integral(rho * c) / total for c in (x, y, z)])


# ============================================================================
# Normalization policy
# ============================================================================

@dataclass
class NormalizationPolicy:
    """Post-step normalization state machine.

    Parameters
    ----------
    mode : NormalizationMode
        Active normalization.
    rho0 : float, optional
        Bulk density for BULK_PINNED [bohr^-3].
    natoms : float, optional
        Target particle count for FIXED_PARTICLE_COUNT.
    reference : tuple of 3 ints, optional
        Reference grid index for BULK_PINNED (default: each axis n // divisor).
    divisor : int
        Reference-point divisor used when `reference` is omitted.
    recentre_until : int
        FIXED_PARTICLE_COUNT recentres the centre of mass while
        iteration < recentre_until (0 disables recentring).
    """
    mode: NormalizationMode = NormalizationMode.UNCONSTRAINED
    rho0: Optional[float] = None
    natoms: Optional[float] = None
    reference: Optional[Tuple[int, int, int]] = None
    divisor: int = 4
    recentre_until: int = 0

    def __post_init__(self):
        if not isinstance(self.mode, NormalizationMode):
            self.mode = NormalizationMode(self.mode)
        if self.mode == NormalizationMode.BULK_PINNED:
            if self.rho0 is None or self.rho0 <= 0:
                raise ValueError(f"BULK_PINNED requires rho0 > 0, got {self.rho0}")
        if self.mode == NormalizationMode.FIXED_PARTICLE_COUNT:
            if self.natoms is None or self.natoms <= 0:
                raise ValueError(f"FIXED_PARTICLE_COUNT requires natoms > 0, got {self.natoms}")
        if self.divisor < 1:
            raise ValueError(f"Reference divisor must be >= 1, got {self.divisor}")

    def reference_index(self, grid: Grid) -> Tuple[int, int, int]:
        if self.reference is not None:
            return tuple(int(i) for i in self.reference)
        return (grid.nx // self.divisor, grid.ny // self.divisor, grid.nz // self.divisor)

    def apply(self, wf: Wavefunction, ts: complex, iteration: int) -> float:
        """Normalize wf after a full step; returns the amplitude scale factor."""
        if self.mode == NormalizationMode.UNCONSTRAINED:
            return 1.0

        if self.mode == NormalizationMode.BULK_PINNED:
            if complex(ts).imag == 0.0:
                return 1.0
            idx = self.reference_index(wf.grid)
            rho_ref = abs(wf.psi[idx]) ** 2
            if rho_ref <= 0.0:
                raise ValueError(f"Density vanished at reference point {idx}; cannot pin to bulk")
            factor = float(np.sqrt(self.rho0 / rho_ref))
            wf.psi *= factor
            wf.norm = wf.current_norm()
            return factor

        # FIXED_PARTICLE_COUNT
        if iteration < self.recentre_until and wf.grid.boundary != Boundary.NEUMANN:
            com = center_of_mass(wf)
            wf.psi[...] = wf.grid.fourier_shift(wf.psi, -com[0], -com[1], -com[2])
        wf.norm = self.natoms
        return wf.normalize(self.natoms)
