"""
Orsay-Trento density functional for superfluid helium.

Energy density (hbar = 1):

    E = 1/2 rho (V_LJ * rho) + c2/2 rho rho_bar^2 + c3/3 rho rho_bar^3     [PLAIN]
        - C G . (F * G),  G = (1 - rho_bar/rho0s) grad rho                  [KC]
        - m/2 [rho v^2 (U_J * rho) - J . (U_J * J)]                          [BACKFLOW]

where `*` is convolution, rho_bar = w * rho is the density averaged over a
sphere of radius h, V_LJ is the Lennard-Jones potential screened to zero
inside h, F is a normalized Gaussian of width l, C = alpha_s / (4 m) and
U_J is the two-Gaussian backflow kernel.

The mean-field potential is the functional derivative dE/drho:

    U = V_LJ * rho + c2/2 rho_bar^2 + c3/3 rho_bar^3 + w * (c2 rho rho_bar + c3 rho rho_bar^2)
        + (2C/rho0s) w * (A . grad rho) + 2C div((1 - rho_bar/rho0s) A),   A = F * G
        + backflow terms (complex; the imaginary part carries the current)

For a uniform density all gradient and current terms vanish and U equals
the bulk chemical potential

    mu(rho) = b rho + 3/2 c2 rho^2 + 4/3 c3 rho^3,    b = integral of V_LJ

with b taken from the grid-sampled kernel so that the identity holds to
FFT round-off on any grid.

References: Dalfovo et al., Phys. Rev. B 52, 1193 (1995).
"""

from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from heliumdft.convolution import (
    BackflowContext,
    ConvolutionEvaluator,
    backflow_kernel,
    gaussian_kernel,
    lennard_jones_kernel,
    spherical_average_kernel,
)
from heliumdft.errors import ConvergenceAssumptionError
from heliumdft.grid import Grid
from heliumdft.units import AUTOANG, AUTOK, HELIUM_MASS, density_from_angstrom


class Model(IntFlag):
    """Terms included in the functional (bit set, as in parameter files)."""
    PLAIN = 1
    KC = 2
    BACKFLOW = 4
    FULL = PLAIN | KC | BACKFLOW


# ============================================================================
# Physical regimes
# ============================================================================

class Regime(Enum):
    """Temperature regime of the surrounding liquid."""
    T0MK = 0
    T400MK = 400
    T800MK = 800
    T1200MK = 1200
    T1600MK = 1600
    T1800MK = 1800
    T2100MK = 2100

    @property
    def temperature(self) -> float:
        """Temperature [K]."""
        return self.value / 1000.0

    @property
    def parameters(self) -> 'RegimeParameters':
        return REGIME_PARAMETERS[self]

    @classmethod
    def from_name(cls, name) -> 'Regime':
        """Look up a regime by name ('T1600MK') or temperature in mK (1600)."""
        if isinstance(name, Regime):
            return name
        if isinstance(name, (int, np.integer)):
            return cls(int(name))
        key = str(name).strip().upper()
        if key not in cls.__members__:
            raise ValueError(
                f"Unknown regime '{name}'. Options: {', '.join(cls.__members__)}"
            )
        return cls[key]


@dataclass(frozen=True)
class RegimeParameters:
    """Saturated-vapor-pressure liquid properties for a regime.

    density : number density [Angstrom^-3]
    viscosity : normal-fluid viscosity [Pa s]
    normal_fraction : rho_n / rho
    """
    density: float
    viscosity: float
    normal_fraction: float

    @property
    def density_au(self) -> float:
        return density_from_angstrom(self.density)


REGIME_PARAMETERS: Dict[Regime, RegimeParameters] = {
    Regime.T2100MK: RegimeParameters(0.021954, 1.71877e-6, 0.752),
    Regime.T1800MK: RegimeParameters(0.021885, 1.25e-6, 0.35),
    Regime.T1600MK: RegimeParameters(0.021845, 1.30977e-6, 0.171),
    Regime.T1200MK: RegimeParameters(0.021846, 1.809e-6, 0.0289),
    Regime.T800MK: RegimeParameters(0.021876, 15.823e-6, 0.001),
    Regime.T400MK: RegimeParameters(0.021845, 114.15e-6, 1.3e-6),
    Regime.T0MK: RegimeParameters(0.021836, 0.0, 0.0),
}


# ============================================================================
# Functional constants
# ============================================================================

@dataclass(frozen=True)
class OTParameters:
    """Orsay-Trento constants in atomic units."""
    eps: float          # LJ well depth [hartree]
    sigma: float        # LJ length [bohr]
    h: float            # core / averaging radius [bohr]
    c2: float           # [hartree bohr^6]
    c3: float           # [hartree bohr^9]
    alpha_s: float      # kinetic-correlation strength [bohr^3]
    rho0s: float        # kinetic-correlation density scale [bohr^-3]
    l_g: float          # kinetic-correlation Gaussian width [bohr]
    backflow: BackflowContext
    mass: float = HELIUM_MASS

    @classmethod
    def orsay_trento(cls) -> 'OTParameters':
        """Standard parameter set (Dalfovo et al. 1995), converted from K and Angstrom."""
        a = AUTOANG
        return cls(
            eps=10.22 / AUTOK,
            sigma=2.556 / a,
            h=2.190323 / a,
            c2=-2.41186e4 / AUTOK / a ** 6,
            c3=1.85850e6 / AUTOK / a ** 9,
            alpha_s=54.31 / a ** 3,
            rho0s=0.04 * a ** 3,
            l_g=1.0 / a,
            backflow=BackflowContext(
                g11=-19.7544, g12=12.5616 * a ** 2, a1=1.023 * a ** 2,
                g21=-0.2395, g22=0.0312 * a ** 2, a2=0.14912 * a ** 2,
            ),
        )


# ============================================================================
# Functional
# ============================================================================

class OTFunctional:
    """Orsay-Trento mean-field evaluator on a grid.

    Parameters
    ----------
    grid : Grid
        Grid of the helium order parameter.
    model : Model
        Terms to include (default: PLAIN).
    regime : Regime
        Temperature regime; sets the reference bulk density.
    params : OTParameters, optional
        Functional constants (default: standard Orsay-Trento).
    density_floor : float
        Below this density [bohr^-3] the backflow velocity is taken as zero.
    velocity_cutoff : float
        Backflow velocities are clipped to +/- this value [bohr hartree].
    lj_smoothing : int
        Sub-samples per axis when sampling the Lennard-Jones kernel.

    Notes
    -----
    All convolution kernels are transformed once at construction and kept
    in the evaluator's cache. The potential itself is never cached: it is a
    nonlinear functional of the density and is recomputed on every call.
    """

    def __init__(
        self,
        grid: Grid,
        model: Model = Model.PLAIN,
        regime: Regime = Regime.T0MK,
        params: Optional[OTParameters] = None,
        density_floor: float = 1e-8,
        velocity_cutoff: float = 1e-2,
        lj_smoothing: int = 4,
    ):
        self.grid = grid
        self.model = Model(model) | Model.PLAIN
        self.regime = Regime.from_name(regime)
        self.params = params if params is not None else OTParameters.orsay_trento()
        self.density_floor = density_floor
        self.velocity_cutoff = velocity_cutoff
        self.lj_smoothing = lj_smoothing
        self.conv = ConvolutionEvaluator(grid)
        self._build_kernels()

    def _build_kernels(self) -> None:
        p = self.params
        grid = self.grid
        self.lj = lennard_jones_kernel(grid, p.eps, p.sigma, p.h, ns=self.lj_smoothing)
        self.sphere = spherical_average_kernel(grid, p.h)
        self.conv.prepare(kernel=self.lj)
        self.conv.prepare(kernel=self.sphere)
        self.gauss = None
        self.bf = None
        if Model.KC in self.model:
            self.gauss = gaussian_kernel(grid, p.l_g)
            self.conv.prepare(kernel=self.gauss)
        if Model.BACKFLOW in self.model:
            self.bf = backflow_kernel(grid, p.backflow)
            self.conv.prepare(kernel=self.bf)
        # Grid-consistent LJ integral used by the bulk calibration
        self.b = self.lj.integral(grid)

    def rebind(self, grid: Grid) -> None:
        """Move the functional to a new grid and rebuild its kernels."""
        self.conv.rebind(grid)
        self.grid = grid
        self._build_kernels()

    @property
    def mass(self) -> float:
        return self.params.mass

    @property
    def rho0(self) -> float:
        """Reference bulk density of the regime [bohr^-3]."""
        return self.regime.parameters.density_au

    # ------------------------------------------------------------------
    # Potential
    # ------------------------------------------------------------------

    def potential(
        self,
        psi: NDArray,
        ext: Optional[NDArray] = None,
        mu0: float = 0.0,
        partner: Optional[NDArray] = None,
    ) -> NDArray:
        """Effective potential U[rho] + ext - mu0.

        Parameters
        ----------
        psi : ndarray (complex)
            Helium order parameter.
        ext : ndarray or float, optional
            External potential added to the mean field.
        mu0 : float
            Chemical-potential offset subtracted everywhere.
        partner : ndarray (complex), optional
            Order parameter of a second helium species; the density terms
            are evaluated on the summed density.

        Returns
        -------
        ndarray
            Real potential, or complex when the backflow term is active.
        """
        rho = psi.real ** 2 + psi.imag ** 2
        if partner is not None:
            rho = rho + partner.real ** 2 + partner.imag ** 2
        pot = self.potential_from_density(rho)
        if ext is not None:
            pot = pot + ext
        pot = pot - mu0
        if self.bf is not None:
            pot = pot + self.backflow_potential(psi)
        return pot

    def potential_pair(self, psi_a: NDArray, psi_b: NDArray, ext=None, mu0: float = 0.0):
        """Potentials of two helium species sharing the functional.

        Both see the mean field of the summed density; the backflow term,
        when active, follows each species' own current.

        Returns
        -------
        (pot_a, pot_b) : tuple of ndarray
        """
        rho = psi_a.real ** 2 + psi_a.imag ** 2 + psi_b.real ** 2 + psi_b.imag ** 2
        common = self.potential_from_density(rho)
        if ext is not None:
            common = common + ext
        common = common - mu0
        if self.bf is None:
            return common, common.copy()
        return common + self.backflow_potential(psi_a), common + self.backflow_potential(psi_b)

    def potential_from_density(self, rho: NDArray) -> NDArray[np.float64]:
        """Density-only part of the potential (PLAIN and KC terms)."""
        p = self.params
        conv = self.conv
        pot = conv.evaluate(self.lj, rho)
        rho_bar = conv.evaluate(self.sphere)
        pot += 0.5 * p.c2 * rho_bar ** 2 + (p.c3 / 3.0) * rho_bar ** 3
        pot += conv.evaluate(self.sphere, rho * (p.c2 * rho_bar + p.c3 * rho_bar ** 2))
        if self.gauss is not None:
            pot += self._kc_potential(rho, rho_bar)
        return pot

    def _kc_fields(self, rho: NDArray, rho_bar: NDArray):
        p = self.params
        grad = self.grid.gradient(rho)
        screen = 1.0 - rho_bar / p.rho0s
        G = [screen * g for g in grad]
        A = [self.conv.evaluate(self.gauss, g) for g in G]
        return grad, screen, G, A

    def _kc_potential(self, rho: NDArray, rho_bar: NDArray) -> NDArray[np.float64]:
        p = self.params
        C = p.alpha_s / (4.0 * p.mass)
        grad, screen, _, A = self._kc_fields(rho, rho_bar)
        a_dot_grad = A[0] * grad[0] + A[1] * grad[1] + A[2] * grad[2]
        out = (2.0 * C / p.rho0s) * self.conv.evaluate(self.sphere, a_dot_grad)
        out += 2.0 * C * self.grid.divergence(screen * A[0], screen * A[1], screen * A[2])
        return out

    def _currents(self, psi: NDArray):
        """Density, clipped velocity field and current J = rho v."""
        m = self.params.mass
        rho = psi.real ** 2 + psi.imag ** 2
        grads = self.grid.gradient(psi)
        mask = rho > self.density_floor
        safe = np.where(mask, rho, 1.0)
        v = []
        for g in grads:
            vi = np.where(mask, np.imag(np.conj(psi) * g) / (m * safe), 0.0)
            v.append(np.clip(vi, -self.velocity_cutoff, self.velocity_cutoff))
        J = [rho * vi for vi in v]
        return rho, v, J, mask, safe

    def backflow_potential(self, psi: NDArray) -> NDArray[np.complex128]:
        """Backflow contribution; complex, vanishes for a current-free state."""
        m = self.params.mass
        conv = self.conv
        rho, v, J, mask, safe = self._currents(psi)
        v2 = v[0] ** 2 + v[1] ** 2 + v[2] ** 2
        phi = conv.evaluate(self.bf, rho)
        uj_rv2 = conv.evaluate(self.bf, rho * v2)
        uj_J = [conv.evaluate(self.bf, Ji) for Ji in J]
        real = -0.5 * m * (v2 * phi + uj_rv2
                           - 2.0 * (v[0] * uj_J[0] + v[1] * uj_J[1] + v[2] * uj_J[2]))
        flux = [rho * (phi * v[i] - uj_J[i]) for i in range(3)]
        div = self.grid.divergence(*flux)
        imag = np.where(mask, div / (2.0 * safe), 0.0)
        return real + 1j * imag

    # ------------------------------------------------------------------
    # Energy
    # ------------------------------------------------------------------

    def energy_density(self, psi: NDArray) -> NDArray[np.float64]:
        """Interaction energy density (kinetic energy of psi not included)."""
        p = self.params
        conv = self.conv
        rho = psi.real ** 2 + psi.imag ** 2
        v_lj = conv.evaluate(self.lj, rho)
        rho_bar = conv.evaluate(self.sphere)
        out = 0.5 * rho * v_lj + 0.5 * p.c2 * rho * rho_bar ** 2 + (p.c3 / 3.0) * rho * rho_bar ** 3
        if self.gauss is not None:
            C = p.alpha_s / (4.0 * p.mass)
            _, _, G, A = self._kc_fields(rho, rho_bar)
            out -= C * (G[0] * A[0] + G[1] * A[1] + G[2] * A[2])
        if self.bf is not None:
            rho, v, J, _, _ = self._currents(psi)
            v2 = v[0] ** 2 + v[1] ** 2 + v[2] ** 2
            phi = conv.evaluate(self.bf, rho)
            j_uj = sum(J[i] * conv.evaluate(self.bf, J[i]) for i in range(3))
            out -= 0.5 * p.mass * (rho * v2 * phi - j_uj)
        return out

    def energy(self, psi: NDArray) -> float:
        return float(self.grid.integral(self.energy_density(psi)))

    # ------------------------------------------------------------------
    # Bulk calibration (uniform density)
    # ------------------------------------------------------------------

    def bulk_chempot(self, rho: float) -> float:
        """mu(rho) = b rho + 3/2 c2 rho^2 + 4/3 c3 rho^3 [hartree]."""
        p = self.params
        return self.b * rho + 1.5 * p.c2 * rho ** 2 + (4.0 / 3.0) * p.c3 * rho ** 3

    def bulk_energy_density(self, rho: float) -> float:
        p = self.params
        return 0.5 * self.b * rho ** 2 + 0.5 * p.c2 * rho ** 3 + (p.c3 / 3.0) * rho ** 4

    def bulk_energy(self, rho: float) -> float:
        """Energy per particle of the uniform liquid [hartree]."""
        if rho <= 0.0:
            raise ValueError(f"Bulk density must be positive, got {rho}")
        return self.bulk_energy_density(rho) / rho

    def bulk_pressure(self, rho: float) -> float:
        """P = rho mu - E/V [hartree/bohr^3]."""
        p = self.params
        return 0.5 * self.b * rho ** 2 + p.c2 * rho ** 3 + p.c3 * rho ** 4

    def _dpressure(self, rho: float) -> float:
        p = self.params
        return self.b * rho + 3.0 * p.c2 * rho ** 2 + 4.0 * p.c3 * rho ** 3

    def bulk_compressibility(self, rho: float) -> float:
        """Isothermal compressibility 1 / (rho dP/drho) [bohr^3/hartree]."""
        return 1.0 / (rho * self._dpressure(rho))

    def bulk_sound_speed(self, rho: float) -> float:
        """sqrt(dP/drho / m) [bohr hartree]."""
        return float(np.sqrt(self._dpressure(rho) / self.params.mass))

    def bulk_density(self, pressure: float = 0.0, tol: float = 1e-12, max_iter: int = 100) -> float:
        """Uniform density at the given pressure [hartree/bohr^3].

        The zero-pressure root of c3 rho^2 + c2 rho + b/2 is used directly;
        other pressures are solved by Newton iteration from it.

        Raises
        ------
        ConvergenceAssumptionError
            If Newton iteration does not converge.
        """
        p = self.params
        disc = p.c2 ** 2 - 2.0 * self.b * p.c3
        if disc < 0.0:
            raise ConvergenceAssumptionError("No liquid state: functional has no zero-pressure density")
        rho = (-p.c2 + np.sqrt(disc)) / (2.0 * p.c3)
        if pressure == 0.0:
            return float(rho)
        for _ in range(max_iter):
            delta = (self.bulk_pressure(rho) - pressure) / self._dpressure(rho)
            rho -= delta
            if abs(delta) < tol * abs(rho):
                return float(rho)
        raise ConvergenceAssumptionError(
            f"Bulk density at P = {pressure:.6e} did not converge in {max_iter} iterations"
        )

    def __repr__(self) -> str:
        return (f"OTFunctional(model={self.model!r}, regime={self.regime.name}, "
                f"grid={self.grid})")
