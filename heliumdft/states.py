"""
Initial states and spectral filters.

Every initializer is a capability `func(context, x, y, z)` evaluated on
broadcast coordinate arrays by `Grid.map`; its parameters travel in a
StateContext. Spectral filters follow the same pattern over wavenumbers,
`func(context, kx, ky, kz)`, and are applied with `apply_filter`.

    >>> ctx = StateContext(rho0=rho0, radius=10.0)
    >>> wf.psi[...] = grid.map(bubble, ctx, dtype=complex)
"""

from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np

from heliumdft.grid import Grid, Wavefunction


@dataclass(frozen=True)
class StateContext:
    """Parameters shared by the initial-state capabilities.

    rho0 : bulk density [bohr^-3]
    natoms : particle count (gaussian droplet)
    radius : bubble / droplet / vortex-ring radius [bohr]
    width : interface or vortex-core width [bohr]
    center : (x0, y0, z0) [bohr]
    """
    rho0: float = 0.0
    natoms: float = 0.0
    radius: float = 0.0
    width: float = 1.0
    center: Tuple[float, float, float] = (0.0, 0.0, 0.0)


def _shifted(ctx: StateContext, x, y, z):
    return x - ctx.center[0], y - ctx.center[1], z - ctx.center[2]


def constant(ctx: StateContext, x, y, z):
    """Uniform liquid, sqrt(rho0)."""
    return np.sqrt(ctx.rho0) + 0.0 * (x + y + z)


def gaussian(ctx: StateContext, x, y, z):
    """Gaussian droplet of ctx.natoms atoms with 1/e density radius ctx.radius."""
    x, y, z = _shifted(ctx, x, y, z)
    w = ctx.radius
    amp = np.sqrt(ctx.natoms / (np.pi ** 1.5 * w ** 3))
    return amp * np.exp(-(x * x + y * y + z * z) / (2.0 * w * w))


def bubble(ctx: StateContext, x, y, z):
    """Liquid with a spherical cavity of radius ctx.radius (tanh edge of ctx.width)."""
    x, y, z = _shifted(ctx, x, y, z)
    r = np.sqrt(x * x + y * y + z * z)
    return np.sqrt(ctx.rho0) * 0.5 * (1.0 + np.tanh((r - ctx.radius) / ctx.width))


def vortex_line(ctx: StateContext, x, y, z):
    """Singly quantized vortex line along z: sqrt(rho0) (1 - exp(-d/width)) e^{i phi}."""
    x, y, _ = _shifted(ctx, x, y, z)
    d = np.sqrt(x * x + y * y)
    return np.sqrt(ctx.rho0) * (1.0 - np.exp(-d / ctx.width)) * np.exp(1j * np.arctan2(y, x)) + 0.0 * z


def vortex_ring(ctx: StateContext, x, y, z):
    """Vortex ring of radius ctx.radius in the xy-plane, moving along z."""
    x, y, z = _shifted(ctx, x, y, z)
    rho = np.sqrt(x * x + y * y) - ctx.radius
    d = np.sqrt(rho * rho + z * z)
    return np.sqrt(ctx.rho0) * (1.0 - np.exp(-d / ctx.width)) * np.exp(1j * np.arctan2(z, rho))


STATES = {
    'constant': constant,
    'gaussian': gaussian,
    'bubble': bubble,
    'vortex_line': vortex_line,
    'vortex_ring': vortex_ring,
}


def initialize(wf: Wavefunction, name: str, ctx: StateContext) -> None:
    """Fill wf.psi from one of the named initial states."""
    if name not in STATES:
        raise ValueError(f"Unknown initial state '{name}'. Options: {', '.join(STATES)}")
    wf.psi[...] = wf.grid.map(STATES[name], ctx, dtype=np.complex128)


# ============================================================================
# Spectral filters
# ============================================================================

@dataclass(frozen=True)
class FilterContext:
    kcut: float


def high_cut_filter(ctx: FilterContext, kx, ky, kz):
    """Remove components with |k| above ctx.kcut."""
    return np.where(kx * kx + ky * ky + kz * kz <= ctx.kcut ** 2, 1.0, 0.0)


def apply_filter(wf: Wavefunction, func: Callable, ctx) -> None:
    """Filter wf.psi in reciprocal space with func(ctx, kx, ky, kz)."""
    grid: Grid = wf.grid
    wf.psi[...] = grid.ifft(grid.fft_filter(grid.fft(wf.psi), func, ctx))
