"""Diagnostics for helium order-parameter simulations.

This module provides read-only reductions over a wavefunction:
- Particle number, kinetic and potential energy
- Probability flux and velocity field
- Transport quantities: added mass, drag force, mobility, hydrodynamic radius
- Norm-drift and NaN detection

and a DiagnosticSampler that evaluates them at a fixed cadence between steps
and hands an immutable Snapshot of the amplitude to a writer callable.

None of the functions here modify the wavefunction they are given.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import warnings

import numpy as np
from numpy.typing import NDArray

from heliumdft.errors import NumericalInstabilityError
from heliumdft.grid import Boundary, Wavefunction
from heliumdft.normalization import center_of_mass
from heliumdft.units import AUTOMPS, AUTOVPM, ELEMENTARY_CHARGE


# ============================================================================
# Reductions
# ============================================================================

def natoms(wf: Wavefunction) -> float:
    """Number of particles: integral of |psi|^2."""
    return wf.current_norm()


def kinetic_energy(wf: Wavefunction) -> float:
    """Kinetic energy <psi| |k - k0|^2 / 2m |psi> [hartree].

    Evaluated in reciprocal space (Parseval), so it is exact for the
    spectral propagator and includes the frame momentum k0.
    """
    grid = wf.grid
    kx, ky, kz = grid.k_kinetic
    k0 = wf.k0
    k2 = (kx - k0[0]) ** 2 + (ky - k0[1]) ** 2 + (kz - k0[2]) ** 2
    F = grid.kinetic_forward(wf.psi)
    power = F.real ** 2 + F.imag ** 2
    if grid.boundary == Boundary.NEUMANN:
        weight = grid.dV
    else:
        weight = grid.dV / grid.size
    return float(np.sum(power * k2) * weight / (2.0 * wf.mass))


def potential_energy(wf: Wavefunction, functional=None, ext=None) -> float:
    """Functional energy plus the external-potential energy [hartree]."""
    energy = 0.0
    if functional is not None:
        energy += functional.energy(wf.psi)
    if ext is not None:
        energy += wf.grid.expectation_value(wf.psi, np.broadcast_to(ext, wf.grid.shape))
    return float(energy)


def probability_flux(wf: Wavefunction):
    """Probability current J = Im(psi* grad psi) / m, components (jx, jy, jz)."""
    grads = wf.grid.gradient(wf.psi)
    return tuple(np.imag(np.conj(wf.psi) * g) / wf.mass for g in grads)


def velocity_field(wf: Wavefunction, density_floor: float = 1e-8):
    """v = J / rho where rho > density_floor, zero elsewhere."""
    rho = wf.density()
    mask = rho > density_floor
    safe = np.where(mask, rho, 1.0)
    return tuple(np.where(mask, j / safe, 0.0) for j in probability_flux(wf))


def _single_axis(velocity) -> int:
    v = np.asarray(velocity, dtype=np.float64)
    if v.shape != (3,):
        raise ValueError(f"Velocity must be a 3-vector, got shape {v.shape}")
    nonzero = np.flatnonzero(v != 0.0)
    if nonzero.size != 1:
        raise ValueError(
            f"Added mass is defined for a velocity along a single grid axis; got {v.tolist()}"
        )
    return int(nonzero[0])


def added_mass(wf: Wavefunction, velocity) -> float:
    """Added mass of an object moving through the liquid [helium atoms].

    The liquid is represented in the frame of the object, flowing past it
    with velocity -`velocity`. When the frame is carried by the kinetic
    operator (wf.k0), the physical current in that frame is
    J_psi - rho k0/m. Shifting back to the frame of the liquid at rest and
    dividing by the velocity gives the number of helium atoms dragged with
    the object:

        M_add = integral (J_a - rho k0_a/m + rho v_a) dV / v_a

    which reduces to integral J_psi,a dV / v_a for k0 = m v.

    Parameters
    ----------
    wf : Wavefunction
        Helium order parameter.
    velocity : array-like, shape (3,)
        Object velocity relative to the liquid [bohr hartree]; must have
        exactly one nonzero component.

    Raises
    ------
    ValueError
        If the velocity is zero or not aligned with a single axis.
    """
    axis = _single_axis(velocity)
    v = float(np.asarray(velocity)[axis])
    rho = wf.density()
    J = probability_flux(wf)[axis] - rho * wf.k0[axis] / wf.mass
    return float(wf.grid.integral(J + rho * v) / v)


def drag_force(wf_impurity: Wavefunction, pair_potential: NDArray, axis: int = 2) -> float:
    """Force on an impurity along `axis` from the liquid [hartree/bohr].

    Parameters
    ----------
    wf_impurity : Wavefunction
        Impurity wavefunction.
    pair_potential : ndarray
        Liquid-impurity potential felt by the impurity, V_pair * rho_He.
    """
    grad = wf_impurity.grid.gradient(np.asarray(pair_potential, dtype=np.float64))[axis]
    return float(-wf_impurity.grid.integral(wf_impurity.density() * grad))


def mobility(velocity: float, force: float) -> float:
    """Ion mobility v / E [m^2/(V s)] from a steady-state drag force.

    The electric field balancing the drag on a unit charge is -force.
    """
    if force == 0.0:
        raise ValueError("Mobility undefined for zero drag force")
    return (velocity * AUTOMPS) / (-force * AUTOVPM)


def hydrodynamic_radius(mobility_si: float, viscosity: float, normal_fraction: float,
                        stokes_factor: float = 4.0) -> float:
    """Stokes radius [Angstrom] from the mobility.

    R = e / (S pi mu rho_n eta), with S = 4 for slip (electron bubble) and
    S = 6 for stick boundary conditions.
    """
    denom = stokes_factor * np.pi * mobility_si * normal_fraction * viscosity
    if denom == 0.0:
        raise ValueError("Hydrodynamic radius undefined without normal-fluid viscosity")
    return 1e10 * ELEMENTARY_CHARGE / denom


def _relative_drift(n: float, reference: float) -> float:
    return abs(n - reference) / abs(reference) if reference != 0 else abs(n)


def check_norm(wf: Wavefunction, reference: float, tolerance: float = 1e-6) -> float:
    """Relative norm drift |N - N_ref| / N_ref; warns above `tolerance`.

    Raises
    ------
    NumericalInstabilityError
        If the amplitude contains NaN or Inf.
    """
    if not np.all(np.isfinite(wf.psi)):
        raise NumericalInstabilityError(f"Non-finite amplitude in '{wf.name}'")
    n = wf.current_norm()
    drift = _relative_drift(n, reference)
    if drift > tolerance:
        warnings.warn(
            f"Norm of '{wf.name}' drifted by {drift:.3e} (tolerance {tolerance:.1e})",
            RuntimeWarning,
        )
    return float(drift)


# ============================================================================
# Sampler
# ============================================================================

@dataclass(frozen=True, eq=False)
class Snapshot:
    """Immutable copy of a field handed to snapshot writers."""
    label: str
    iteration: int
    data: NDArray
    step: float

    @classmethod
    def of(cls, wf: Wavefunction, iteration: int, label: Optional[str] = None) -> 'Snapshot':
        data = wf.psi.copy()
        data.setflags(write=False)
        return cls(label=label or f'{wf.name}-{iteration}', iteration=iteration,
                   data=data, step=wf.grid.step)


class DiagnosticSampler:
    """Periodic read-only diagnostics between steps.

    Parameters
    ----------
    cadence : int
        Sample every `cadence` iterations (0 disables sampling).
    writer : callable, optional
        writer(snapshot) invoked with a Snapshot at each sample.
    functional : OTFunctional, optional
        Used for the potential energy.
    norm_tolerance : float
        Relative drift above which check_norm warns.
    """

    def __init__(
        self,
        cadence: int,
        writer: Optional[Callable[[Snapshot], Any]] = None,
        functional=None,
        norm_tolerance: float = 1e-6,
    ):
        if cadence < 0:
            raise ValueError(f"Sampling cadence must be >= 0, got {cadence}")
        self.cadence = cadence
        self.writer = writer
        self.functional = functional
        self.norm_tolerance = norm_tolerance
        self.reference_norm: Optional[float] = None

    def due(self, iteration: int) -> bool:
        return self.cadence > 0 and iteration % self.cadence == 0

    def sample(self, wf: Wavefunction, iteration: int, ext=None, velocity=None,
               check_drift: bool = False, force: bool = False) -> Optional[Dict]:
        """Compute a diagnostics record if `iteration` is on the cadence.

        Non-finite amplitudes always raise; `check_drift` additionally warns
        when the norm leaves `norm_tolerance` of the first sampled value.

        Returns
        -------
        dict or None
            'iteration', 'natoms', 'kinetic', 'potential', 'energy',
            'center_of_mass', 'norm_drift' and, with a single-axis
            `velocity`, 'added_mass'.

        Raises
        ------
        NumericalInstabilityError
            If the amplitude contains NaN or Inf.
        """
        if not (force or self.due(iteration)):
            return None
        if self.reference_norm is None:
            self.reference_norm = natoms(wf)
        drift = check_norm(wf, self.reference_norm,
                           self.norm_tolerance if check_drift else np.inf)
        n = natoms(wf)
        kin = kinetic_energy(wf)
        pot = potential_energy(wf, self.functional, ext)
        record = {
            'iteration': iteration,
            'natoms': n,
            'kinetic': kin,
            'potential': pot,
            'energy': kin + pot,
            'center_of_mass': center_of_mass(wf),
            'norm_drift': drift,
        }
        if velocity is not None and np.count_nonzero(velocity) == 1:
            record['added_mass'] = added_mass(wf, velocity)
        if self.writer is not None:
            self.writer(Snapshot.of(wf, iteration))
        return record
