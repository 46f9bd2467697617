"""
Convolution-based evaluation of nonlocal potentials.

V(r) = integral K(r - r') rho(r') dr' is computed as a transform-domain
product, O(N log N) instead of the O(N^2) direct sum:

    V = ifft( K_hat * fft(rho) ),    K_hat = fft(K) * dV

Kernels are either sampled in real space on the wrapped grid (origin at
index 0) or given analytically in k-space as a capability
`func(context, kx, ky, kz)`.

ConvolutionEvaluator owns an explicit cache of kernel and density
transforms keyed on (kernel object, grid topology). Two kernels that share
a name are distinct cache entries. `prepare` fills the cache,
`evaluate` only multiplies cached transforms, and a null operand to
`prepare` keeps the previously cached transform of that operand. This
supports the usual pattern of a static kernel combined with a new density
every iteration. The cache must be invalidated when the grid changes
(`rebind`), otherwise evaluate raises KernelNotPreparedError rather than
reuse a transform of the wrong topology.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from heliumdft.errors import KernelNotPreparedError
from heliumdft.grid import Grid
from heliumdft.potentials import RadialTable, radial_table_potential


# ============================================================================
# Pair kernels
# ============================================================================

@dataclass(frozen=True, eq=False)
class PairKernel:
    """Fixed real convolution kernel.

    Exactly one of `values` (real-space samples on `grid`) or `transform`
    (analytic k-space capability) must be given.

    Parameters
    ----------
    name : str
        Label used in messages; the evaluator caches by kernel object.
    values : ndarray, optional
        Real-space kernel on the wrapped coordinates of `grid`.
    grid : Grid, optional
        Grid the samples belong to (required with `values`).
    transform : callable, optional
        func(context, kx, ky, kz) returning the continuous Fourier transform.
    context : any
        Auxiliary parameters passed to `transform`.
    """
    name: str
    values: Optional[NDArray[np.float64]] = None
    grid: Optional[Grid] = None
    transform: Optional[Callable] = None
    context: Any = None

    def __post_init__(self):
        if (self.values is None) == (self.transform is None):
            raise ValueError(f"Kernel '{self.name}' needs exactly one of values or transform")
        if self.values is not None:
            if self.grid is None:
                raise ValueError(f"Kernel '{self.name}': sampled values require a grid")
            if self.values.shape != self.grid.shape:
                raise ValueError(
                    f"Kernel '{self.name}': values shape {self.values.shape} "
                    f"does not match grid {self.grid.shape}"
                )

    def hat(self, grid: Grid) -> NDArray[np.complex128]:
        """Transform of the kernel on `grid`, including the dV quadrature weight."""
        if self.transform is not None:
            return grid.kmap(self.transform, self.context)
        if self.grid.topology != grid.topology:
            raise KernelNotPreparedError(
                f"Kernel '{self.name}' was sampled on {self.grid}, not {grid}"
            )
        return grid.fft(self.values) * grid.dV

    def integral(self, grid: Grid) -> float:
        """Integral of the kernel over space (zero-wavevector component)."""
        if self.transform is not None:
            return float(np.real(self.transform(self.context, np.zeros(1), np.zeros(1), np.zeros(1))[0]))
        return float(grid.integral(self.values))

    @classmethod
    def from_table(cls, path, grid: Grid, name: Optional[str] = None) -> 'PairKernel':
        """Radial pair potential from a two-column text table.

        Columns are r [Angstrom] and V(r) [K]. Values between rows are
        linearly interpolated and clamped to the first/last row outside the
        tabulated range.
        """
        table = RadialTable.load(path, angstrom_kelvin=True)
        values = grid.map_wrapped(radial_table_potential, table)
        return cls(name=name or Path(path).stem, values=values, grid=grid)


# ----------------------------------------------------------------------------
# Kernel shapes used by the Orsay-Trento functional
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class LennardJonesContext:
    eps: float
    sigma: float
    h: float


def lennard_jones(ctx: LennardJonesContext, x, y, z):
    """4 eps [(s/r)^12 - (s/r)^6] for r >= h, zero inside the core."""
    r = np.sqrt(x * x + y * y + z * z)
    rs = np.maximum(r, ctx.h)
    sr6 = (ctx.sigma / rs) ** 6
    return np.where(r >= ctx.h, 4.0 * ctx.eps * (sr6 * sr6 - sr6), 0.0)


def lennard_jones_kernel(grid: Grid, eps: float, sigma: float, h: float, ns: int = 4) -> PairKernel:
    """Screened Lennard-Jones kernel sampled with sub-cell smoothing."""
    ctx = LennardJonesContext(eps=eps, sigma=sigma, h=h)
    values = grid.smooth_map(lennard_jones, ctx, ns=ns, wrapped=True)
    return PairKernel(name='lennard-jones', values=values, grid=grid)


@dataclass(frozen=True)
class SphereContext:
    radius: float


def sphere_transform(ctx: SphereContext, kx, ky, kz):
    """Transform of the unit-normalized sphere: 3 (sin q - q cos q) / q^3, q = k R."""
    q = np.sqrt(kx * kx + ky * ky + kz * kz) * ctx.radius
    qs = np.where(q < 1e-4, 1.0, q)
    exact = 3.0 * (np.sin(qs) - qs * np.cos(qs)) / qs ** 3
    return np.where(q < 1e-4, 1.0 - q * q / 10.0, exact)


def spherical_average_kernel(grid: Grid, radius: float) -> PairKernel:
    return PairKernel(name=f'sphere-{radius:.6g}', transform=sphere_transform,
                      context=SphereContext(radius=radius))


@dataclass(frozen=True)
class GaussianContext:
    length: float


def gaussian_transform(ctx: GaussianContext, kx, ky, kz):
    """Transform of exp(-r^2/l^2) / (pi^{3/2} l^3)."""
    k2 = kx * kx + ky * ky + kz * kz
    return np.exp(-k2 * ctx.length ** 2 / 4.0)


def gaussian_kernel(grid: Grid, length: float) -> PairKernel:
    return PairKernel(name=f'gaussian-{length:.6g}', transform=gaussian_transform,
                      context=GaussianContext(length=length))


@dataclass(frozen=True)
class BackflowContext:
    g11: float
    g12: float
    a1: float
    g21: float
    g22: float
    a2: float


def backflow_transform(ctx: BackflowContext, kx, ky, kz):
    """Transform of (g11 + g12 r^2) exp(-a1 r^2) + (g21 + g22 r^2) exp(-a2 r^2)."""
    k2 = kx * kx + ky * ky + kz * kz
    out = 0.0
    for g0, g2, a in ((ctx.g11, ctx.g12, ctx.a1), (ctx.g21, ctx.g22, ctx.a2)):
        gauss = (np.pi / a) ** 1.5 * np.exp(-k2 / (4.0 * a))
        out = out + gauss * (g0 + g2 * (1.5 / a - k2 / (4.0 * a * a)))
    return out


def backflow_kernel(grid: Grid, ctx: BackflowContext) -> PairKernel:
    return PairKernel(name='backflow', transform=backflow_transform, context=ctx)


# ============================================================================
# Evaluator
# ============================================================================

class ConvolutionEvaluator:
    """Prepare-once / evaluate-many convolution engine with an explicit cache.

    Parameters
    ----------
    grid : Grid
        Grid all operands live on.

    Examples
    --------
    >>> conv = ConvolutionEvaluator(grid)
    >>> conv.prepare(kernel=lj)            # once
    >>> conv.prepare(density=rho)          # every iteration
    >>> v = conv.evaluate(lj)
    """

    def __init__(self, grid: Grid):
        self.grid = grid
        # key -> (kernel, K_hat); the kernel is held so its id stays unique
        self._kernels: Dict[Tuple, Tuple[PairKernel, NDArray[np.complex128]]] = {}
        self._density: Optional[Tuple[Tuple, NDArray[np.complex128]]] = None

    def _key(self, kernel: PairKernel) -> Tuple:
        return (id(kernel), self.grid.topology)

    def is_prepared(self, kernel: PairKernel) -> bool:
        return self._key(kernel) in self._kernels

    def prepare(self, kernel: Optional[PairKernel] = None, density: Optional[NDArray] = None) -> None:
        """Transform and cache the kernel and/or the density.

        A None operand keeps whatever transform is already cached for it.
        """
        if kernel is None and density is None:
            raise ValueError("prepare() needs a kernel, a density, or both")
        if kernel is not None:
            self._kernels[self._key(kernel)] = (kernel, kernel.hat(self.grid))
        if density is not None:
            if density.shape != self.grid.shape:
                raise ValueError(
                    f"Density shape {density.shape} does not match grid {self.grid.shape}"
                )
            self._density = (self.grid.topology, self.grid.fft(density))

    def evaluate(self, kernel: PairKernel, density: Optional[NDArray] = None) -> NDArray[np.float64]:
        """Convolve a prepared kernel with the cached (or given) density.

        Raises
        ------
        KernelNotPreparedError
            If the kernel or the density has no transform cached for the
            current grid topology.
        """
        if density is not None:
            self.prepare(density=density)
        key = self._key(kernel)
        if key not in self._kernels:
            raise KernelNotPreparedError(
                f"Kernel '{kernel.name}' not prepared for {self.grid}"
            )
        if self._density is None or self._density[0] != self.grid.topology:
            raise KernelNotPreparedError(f"No density prepared for {self.grid}")
        return self.grid.ifft(self._kernels[key][1] * self._density[1]).real

    def convolve(self, kernel: PairKernel, density: NDArray) -> NDArray[np.float64]:
        """Prepare the kernel if needed, then evaluate against `density`."""
        if not self.is_prepared(kernel):
            self.prepare(kernel=kernel)
        return self.evaluate(kernel, density)

    def kernel_hat(self, kernel: PairKernel) -> NDArray[np.complex128]:
        key = self._key(kernel)
        if key not in self._kernels:
            raise KernelNotPreparedError(f"Kernel '{kernel.name}' not prepared for {self.grid}")
        return self._kernels[key][1]

    def invalidate(self, kernel: Optional[PairKernel] = None) -> None:
        """Drop one kernel's cached transform, or everything if kernel is None."""
        if kernel is None:
            self._kernels.clear()
            self._density = None
        else:
            self._kernels.pop(self._key(kernel), None)

    def rebind(self, grid: Grid) -> None:
        """Switch to a new grid; a topology change invalidates the whole cache."""
        if grid.topology != self.grid.topology:
            self.invalidate()
        self.grid = grid
