"""
Grid and FFT primitives for complex order-parameter fields.

This module provides the dense-grid layer the rest of the solver is built on:
- Grid: immutable (nx, ny, nz, step, boundary, threads) description with
  coordinate and wavenumber arrays, forward/inverse transforms, reductions
- Wavefunction: complex amplitude psi on a Grid with a mass, a norm target,
  a frame momentum and optional absorbing-shell parameters

Coordinates are centred on the box: x_i = (i - nx/2) * step. Pair kernels are
sampled on "wrapped" coordinates with the origin at index 0 so that a
transform-domain product gives the convolution without an extra shift.

Transforms use scipy.fft with `workers=threads`. Convolutions are always
periodic (fftn/ifftn). Grids with Neumann boundaries propagate the kinetic
energy with an orthonormal type-2 DCT instead, whose wavenumbers are
k_j = pi j / (n step).

Field initializers and spectral filters are capabilities: plain callables
`func(context, x, y, z)` (or `func(context, kx, ky, kz)`) evaluated on
broadcast numpy arrays, with any auxiliary parameters carried by an explicit
context value rather than globals.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Callable, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
import scipy.fft as sfft

from heliumdft.errors import AllocationError

# Type aliases
RealField = NDArray[np.float64]
ComplexField = NDArray[np.complex128]
Capability = Callable[[Any, NDArray, NDArray, NDArray], Any]


class Boundary(Enum):
    """Boundary treatment of a grid."""
    PERIODIC = 'periodic'
    NEUMANN = 'neumann'
    ABSORBING = 'absorbing'


# ============================================================================
# Grid
# ============================================================================

@dataclass(frozen=True)
class Grid:
    """Regular 3-D grid with fixed dimensions and spacing.

    Parameters
    ----------
    nx, ny, nz : int
        Number of points along each axis.
    step : float
        Grid spacing [bohr].
    boundary : Boundary
        Boundary treatment (default: PERIODIC).
    threads : int
        Worker count handed to scipy.fft (-1 = all cores).

    Raises
    ------
    AllocationError
        If a dimension or the step is not positive.

    Notes
    -----
    Instances are frozen: dimensions and step never change after
    construction. Derived arrays (coordinates, wavenumbers) are computed
    lazily and cached on the instance.
    """
    nx: int
    ny: int
    nz: int
    step: float
    boundary: Boundary = Boundary.PERIODIC
    threads: int = 1

    def __post_init__(self):
        for name in ('nx', 'ny', 'nz'):
            n = getattr(self, name)
            if int(n) != n or n <= 0:
                raise AllocationError(f"Grid dimension {name} must be a positive integer, got {n}")
        if not self.step > 0:
            raise AllocationError(f"Grid step must be positive, got {self.step}")
        if not isinstance(self.boundary, Boundary):
            object.__setattr__(self, 'boundary', Boundary(self.boundary))

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.nx, self.ny, self.nz)

    @property
    def size(self) -> int:
        return self.nx * self.ny * self.nz

    @property
    def dV(self) -> float:
        """Volume element step^3."""
        return self.step ** 3

    @property
    def volume(self) -> float:
        return self.size * self.dV

    @property
    def topology(self) -> Tuple:
        """Hashable identity of the grid layout, used as a cache key."""
        return (self.nx, self.ny, self.nz, float(self.step), self.boundary.value)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def alloc_real(self) -> RealField:
        """Allocate a zeroed real field."""
        return self._alloc(np.float64)

    def alloc_complex(self) -> ComplexField:
        """Allocate a zeroed complex field."""
        return self._alloc(np.complex128)

    def _alloc(self, dtype):
        try:
            return np.zeros(self.shape, dtype=dtype)
        except (MemoryError, ValueError) as e:
            raise AllocationError(
                f"Cannot allocate {np.dtype(dtype).name} grid {self.shape}: {e}"
            ) from e

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------

    @cached_property
    def axes(self) -> Tuple[NDArray, NDArray, NDArray]:
        """1-D centred coordinate vectors (x, y, z)."""
        return tuple((np.arange(n) - n // 2) * self.step for n in self.shape)

    @cached_property
    def coordinates(self) -> Tuple[NDArray, NDArray, NDArray]:
        """Broadcastable centred coordinates, shapes (nx,1,1), (1,ny,1), (1,1,nz)."""
        x, y, z = self.axes
        return (x[:, None, None], y[None, :, None], z[None, None, :])

    @cached_property
    def wrapped_coordinates(self) -> Tuple[NDArray, NDArray, NDArray]:
        """Broadcastable coordinates with the origin at index 0 (minimum-image)."""
        out = []
        for n in self.shape:
            i = np.arange(n)
            out.append(np.where(i < (n + 1) // 2, i, i - n) * self.step)
        x, y, z = out
        return (x[:, None, None], y[None, :, None], z[None, None, :])

    @cached_property
    def k_fft(self) -> Tuple[NDArray, NDArray, NDArray]:
        """Broadcastable angular wavenumbers of the periodic FFT."""
        kx, ky, kz = (2.0 * np.pi * sfft.fftfreq(n, d=self.step) for n in self.shape)
        return (kx[:, None, None], ky[None, :, None], kz[None, None, :])

    @cached_property
    def k_dct(self) -> Tuple[NDArray, NDArray, NDArray]:
        """Broadcastable wavenumbers of the type-2 DCT (Neumann boundaries)."""
        kx, ky, kz = (np.pi * np.arange(n) / (n * self.step) for n in self.shape)
        return (kx[:, None, None], ky[None, :, None], kz[None, None, :])

    @property
    def k_kinetic(self) -> Tuple[NDArray, NDArray, NDArray]:
        """Wavenumbers matching `kinetic_forward` for this boundary."""
        if self.boundary == Boundary.NEUMANN:
            return self.k_dct
        return self.k_fft

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def fft(self, f: NDArray) -> ComplexField:
        """Forward periodic transform (unnormalized)."""
        return sfft.fftn(f, workers=self.threads)

    def ifft(self, F: NDArray) -> ComplexField:
        """Inverse periodic transform (1/N normalized)."""
        return sfft.ifftn(F, workers=self.threads)

    def kinetic_forward(self, f: NDArray) -> NDArray:
        """Transform used for kinetic propagation (FFT, or DCT-II for Neumann)."""
        if self.boundary == Boundary.NEUMANN:
            return self._dct(f, sfft.dctn)
        return self.fft(f)

    def kinetic_inverse(self, F: NDArray) -> NDArray:
        if self.boundary == Boundary.NEUMANN:
            return self._dct(F, sfft.idctn)
        return self.ifft(F)

    def _dct(self, f, transform):
        if np.iscomplexobj(f):
            re = transform(f.real, type=2, norm='ortho', workers=self.threads)
            im = transform(f.imag, type=2, norm='ortho', workers=self.threads)
            return re + 1j * im
        return transform(f, type=2, norm='ortho', workers=self.threads)

    # ------------------------------------------------------------------
    # Reductions
    # ------------------------------------------------------------------

    def integral(self, f: NDArray):
        """Riemann sum of f over the box."""
        return np.sum(f) * self.dV

    def expectation_value(self, psi: NDArray, f: NDArray) -> float:
        """<psi|f|psi> = integral of |psi|^2 f."""
        return float(np.real(self.integral((psi.real ** 2 + psi.imag ** 2) * f)))

    # ------------------------------------------------------------------
    # Capability maps
    # ------------------------------------------------------------------

    def map(self, func: Capability, context: Any = None, dtype=np.float64) -> NDArray:
        """Evaluate func(context, x, y, z) on every grid point."""
        x, y, z = self.coordinates
        return self._fill(func(context, x, y, z), dtype)

    def map_wrapped(self, func: Capability, context: Any = None, dtype=np.float64) -> NDArray:
        """Like `map` but on minimum-image coordinates (origin at index 0)."""
        x, y, z = self.wrapped_coordinates
        return self._fill(func(context, x, y, z), dtype)

    def smooth_map(
        self,
        func: Capability,
        context: Any = None,
        ns: int = 2,
        wrapped: bool = False,
        dtype=np.float64,
    ) -> NDArray:
        """Evaluate func averaged over ns^3 sub-samples inside each cell.

        Smoothing suppresses aliasing of sharply varying functions (pair
        potentials near their core, hard-wall external potentials).
        """
        if ns < 1:
            raise ValueError(f"Number of sub-samples must be >= 1, got {ns}")
        x, y, z = self.wrapped_coordinates if wrapped else self.coordinates
        offsets = ((np.arange(ns) + 0.5) / ns - 0.5) * self.step
        out = self._alloc(dtype)
        for ox in offsets:
            for oy in offsets:
                for oz in offsets:
                    out += func(context, x + ox, y + oy, z + oz)
        out /= ns ** 3
        return out

    def kmap(self, func: Capability, context: Any = None, kinetic: bool = False) -> NDArray:
        """Evaluate func(context, kx, ky, kz) on the wavenumber grid."""
        kx, ky, kz = self.k_kinetic if kinetic else self.k_fft
        return self._fill(func(context, kx, ky, kz), np.complex128)

    def fft_filter(self, F: NDArray, func: Capability, context: Any = None) -> NDArray:
        """Multiply a spectrum by func(context, kx, ky, kz)."""
        return F * self.kmap(func, context)

    def _fill(self, values, dtype):
        out = self._alloc(dtype)
        out[...] = values
        return out

    # ------------------------------------------------------------------
    # Spectral calculus
    # ------------------------------------------------------------------

    def gradient(self, f: NDArray) -> Tuple[NDArray, NDArray, NDArray]:
        """Gradient of f (spectral for periodic grids, finite difference for Neumann)."""
        if self.boundary == Boundary.NEUMANN:
            return tuple(np.gradient(f, self.step, edge_order=2))
        F = self.fft(f)
        grads = tuple(self.ifft(1j * k * F) for k in self.k_fft)
        if not np.iscomplexobj(f):
            grads = tuple(g.real for g in grads)
        return grads

    def divergence(self, fx: NDArray, fy: NDArray, fz: NDArray) -> NDArray:
        if self.boundary == Boundary.NEUMANN:
            return (np.gradient(fx, self.step, axis=0, edge_order=2)
                    + np.gradient(fy, self.step, axis=1, edge_order=2)
                    + np.gradient(fz, self.step, axis=2, edge_order=2))
        kx, ky, kz = self.k_fft
        out = self.ifft(1j * (kx * self.fft(fx) + ky * self.fft(fy) + kz * self.fft(fz)))
        if not any(np.iscomplexobj(a) for a in (fx, fy, fz)):
            out = out.real
        return out

    def laplacian(self, f: NDArray) -> NDArray:
        kx, ky, kz = self.k_fft
        out = self.ifft(-(kx ** 2 + ky ** 2 + kz ** 2) * self.fft(f))
        return out if np.iscomplexobj(f) else out.real

    def fourier_shift(self, f: NDArray, dx: float, dy: float, dz: float) -> NDArray:
        """Translate f by (dx, dy, dz) using a phase ramp (sub-cell accurate, periodic)."""
        kx, ky, kz = self.k_fft
        phase = np.exp(-1j * (kx * dx + ky * dy + kz * dz))
        out = self.ifft(self.fft(f) * phase)
        return out if np.iscomplexobj(f) else out.real

    def __str__(self) -> str:
        return (f"Grid({self.nx}x{self.ny}x{self.nz}, step={self.step:.4g} bohr, "
                f"{self.boundary.value})")


# ============================================================================
# Wavefunction
# ============================================================================

@dataclass
class Wavefunction:
    """Complex order parameter on a grid.

    Parameters
    ----------
    grid : Grid
        Grid the amplitude lives on.
    mass : float
        Particle mass [m_e].
    psi : ndarray, optional
        Complex amplitude of shape grid.shape (zeros if omitted).
    norm : float
        Target value of the integral of |psi|^2 (particle count).
    k0 : array-like, shape (3,)
        Frame momentum per particle [bohr^-1]; kinetic energy is evaluated as
        |k - k0|^2 / 2m, i.e. the frame moves at k0/m relative to the liquid.
    absorb : AbsorbingShell, optional
        Absorbing-shell parameters applied after each corrected step.
    name : str
        Label used in snapshots and checkpoints.
    """
    grid: Grid
    mass: float
    psi: Optional[ComplexField] = None
    norm: float = 1.0
    k0: NDArray = field(default_factory=lambda: np.zeros(3))
    absorb: Any = None
    name: str = 'wf'

    def __post_init__(self):
        if self.mass <= 0:
            raise ValueError(f"Wavefunction mass must be positive, got {self.mass}")
        if self.psi is None:
            self.psi = self.grid.alloc_complex()
        else:
            self.psi = np.ascontiguousarray(self.psi, dtype=np.complex128)
            if self.psi.shape != self.grid.shape:
                raise ValueError(
                    f"Amplitude shape {self.psi.shape} does not match grid {self.grid.shape}"
                )
        self.k0 = np.asarray(self.k0, dtype=np.float64)
        if self.k0.shape != (3,):
            raise ValueError(f"Frame momentum must have shape (3,), got {self.k0.shape}")
        if self.grid.boundary == Boundary.NEUMANN and np.any(self.k0 != 0.0):
            raise ValueError("Frame momentum requires a periodic grid")

    def density(self) -> RealField:
        """|psi|^2."""
        return self.psi.real ** 2 + self.psi.imag ** 2

    def current_norm(self) -> float:
        return float(self.grid.integral(self.density()))

    def normalize(self, target: Optional[float] = None) -> float:
        """Scale psi so its integral equals target (default: self.norm). Returns the factor."""
        target = self.norm if target is None else target
        current = self.current_norm()
        if current <= 0.0:
            raise ValueError(f"Cannot normalize '{self.name}': amplitude is zero")
        factor = np.sqrt(target / current)
        self.psi *= factor
        return float(factor)

    def clone(self, name: Optional[str] = None) -> 'Wavefunction':
        """Independent copy with its own storage."""
        return Wavefunction(
            grid=self.grid,
            mass=self.mass,
            psi=self.psi.copy(),
            norm=self.norm,
            k0=self.k0.copy(),
            absorb=self.absorb,
            name=name if name is not None else self.name,
        )

    def __repr__(self) -> str:
        return (f"Wavefunction(name={self.name!r}, grid={self.grid}, mass={self.mass:.6g}, "
                f"norm={self.norm:.6g})")
