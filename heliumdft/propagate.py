"""
Predictor-corrector time integration of the order parameter.

One step of length ts (complex) is taken as

1. PREDICT: V1 = U[psi] + ext - mu0; psi_f = P(V1, ts) psi
2. V2 = U[psi_f] + ext - mu0
3. CORRECT: psi <- P((V1 + V2) / 2, ts) psi

where P(V, ts) is the Strang split-step propagator

    P psi = exp(-i V ts/2) F^-1[ exp(-i T ts) F[ exp(-i V ts/2) psi ] ],
    T = |k - k0|^2 / (2 m).

The real and imaginary parts of ts select the propagation mode:
ts = dt is unitary real-time dynamics, ts = -i dt is imaginary-time
relaxation towards the ground state (norm not conserved), and
`timestep_schedule` blends the two during a warm-up.

Predict writes only into the separate "future" wavefunction; correct reads
the untouched current amplitude, so the result of a step is independent of
the contents of the future buffer before the step.
"""

from typing import Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from heliumdft.errors import NumericalInstabilityError
from heliumdft.grid import Boundary, Grid, Wavefunction
from heliumdft.normalization import NormalizationPolicy, apply_absorption


# ============================================================================
# Time step schedule and frame helpers
# ============================================================================

def timestep_schedule(dt: float, iteration: int, warmup: int = 0, imaginary: bool = False) -> complex:
    """Complex time step for an iteration.

    Parameters
    ----------
    dt : float
        Step length [hbar/hartree].
    iteration : int
        Current iteration (0-based).
    warmup : int
        Iterations over which x ramps 0 -> 1 in ts = x dt + (1 - x)(-i dt).
    imaginary : bool
        Pure imaginary time (ts = -i dt) regardless of the warm-up.

    Examples
    --------
    >>> timestep_schedule(1.0, 0, warmup=10)
    -1j
    >>> timestep_schedule(1.0, 10, warmup=10)
    (1+0j)
    """
    dt = abs(dt)
    if imaginary:
        return complex(0.0, -dt)
    if warmup <= 0 or iteration >= warmup:
        return complex(dt, 0.0)
    x = iteration / warmup
    return complex(x * dt, -(1.0 - x) * dt)


def momentum_for_velocity(velocity, mass: float):
    """Wavenumber k = m v / hbar of a frame moving at `velocity` (scalar or 3-vector)."""
    return mass * np.asarray(velocity, dtype=np.float64)


def round_velocity(velocity: float, length: float, mass: float) -> float:
    """Nearest velocity whose momentum fits the periodic box of `length`.

    A moving background exp(i k x) is only periodic for k = 2 pi n / L.
    """
    quantum = 2.0 * np.pi / (length * mass)
    return round(velocity / quantum) * quantum


# ============================================================================
# Split-step propagation
# ============================================================================

def kinetic_propagator(grid: Grid, mass: float, ts: complex, k0=(0.0, 0.0, 0.0)) -> NDArray:
    """exp(-i |k - k0|^2 ts / 2m) on the kinetic transform grid."""
    kx, ky, kz = grid.k_kinetic
    k0 = np.asarray(k0, dtype=np.float64)
    if grid.boundary == Boundary.NEUMANN and np.any(k0 != 0.0):
        raise ValueError("Frame momentum requires a periodic grid")
    k2 = (kx - k0[0]) ** 2 + (ky - k0[1]) ** 2 + (kz - k0[2]) ** 2
    return np.exp(-1j * ts * k2 / (2.0 * mass))


def propagate(
    grid: Grid,
    psi: NDArray,
    potential,
    ts: complex,
    mass: float,
    k0=(0.0, 0.0, 0.0),
    kinetic: Optional[NDArray] = None,
) -> NDArray[np.complex128]:
    """One Strang split step of psi under `potential` (real or complex).

    Returns a new array; psi is not modified.
    """
    if kinetic is None:
        kinetic = kinetic_propagator(grid, mass, ts, k0)
    half = np.exp(-0.5j * ts * np.asarray(potential))
    out = grid.kinetic_forward(half * psi)
    out *= kinetic
    out = grid.kinetic_inverse(out)
    out *= half
    return out


# ============================================================================
# Predictor-corrector integrator
# ============================================================================

class PredictorCorrector:
    """Predictor-corrector integrator for one wavefunction.

    Parameters
    ----------
    functional : OTFunctional, optional
        Mean-field evaluator. Without one the effective potential is just
        ext - mu0 (e.g. for an impurity).
    ext : ndarray or float, optional
        Static external potential.
    mu0 : float
        Chemical-potential offset.
    policy : NormalizationPolicy, optional
        Applied after every full step (default: UNCONSTRAINED).
    check_finite : bool
        Raise NumericalInstabilityError if the corrected field is not finite.
    """

    def __init__(
        self,
        functional=None,
        ext=None,
        mu0: float = 0.0,
        policy: Optional[NormalizationPolicy] = None,
        check_finite: bool = False,
    ):
        self.functional = functional
        self.ext = ext
        self.mu0 = mu0
        self.policy = policy if policy is not None else NormalizationPolicy()
        self.check_finite = check_finite
        self._v_predict = None
        self._future: Optional[Wavefunction] = None
        self._kinetic_key = None
        self._kinetic = None

    def effective_potential(self, psi: NDArray, ext=None, partner: Optional[NDArray] = None):
        """U[psi] + ext - mu0 (recomputed on every call)."""
        ext = self.ext if ext is None else ext
        if self.functional is None:
            pot = np.zeros(psi.shape) if ext is None else np.broadcast_to(ext, psi.shape)
            return pot - self.mu0
        return self.functional.potential(psi, ext=ext, mu0=self.mu0, partner=partner)

    def _kinetic_for(self, wf: Wavefunction, ts: complex) -> NDArray:
        key = (wf.grid.topology, wf.mass, complex(ts), tuple(wf.k0))
        if key != self._kinetic_key:
            self._kinetic = kinetic_propagator(wf.grid, wf.mass, ts, wf.k0)
            self._kinetic_key = key
        return self._kinetic

    def future_for(self, wf: Wavefunction) -> Wavefunction:
        """Scratch wavefunction holding the predicted amplitude."""
        if self._future is None or self._future.grid.topology != wf.grid.topology:
            self._future = wf.clone(name=f'{wf.name}-future')
        return self._future

    def predict(self, wf: Wavefunction, future: Wavefunction, ts: complex, ext=None) -> None:
        """Store V1 and write the provisional amplitude into `future`."""
        self._v_predict = self.effective_potential(wf.psi, ext)
        future.psi[...] = propagate(wf.grid, wf.psi, self._v_predict, ts, wf.mass,
                                    kinetic=self._kinetic_for(wf, ts))

    def correct(self, wf: Wavefunction, future: Wavefunction, ts: complex, ext=None) -> None:
        """Propagate the current amplitude with the averaged potential."""
        if self._v_predict is None:
            raise RuntimeError("correct() called without a preceding predict()")
        v_future = self.effective_potential(future.psi, ext)
        v_mid = 0.5 * (self._v_predict + v_future)
        self._v_predict = None
        wf.psi[...] = propagate(wf.grid, wf.psi, v_mid, ts, wf.mass,
                                kinetic=self._kinetic_for(wf, ts))
        apply_absorption(wf)
        if self.check_finite and not np.all(np.isfinite(wf.psi)):
            raise NumericalInstabilityError(f"Non-finite amplitude in '{wf.name}' after correct step")

    def step(self, wf: Wavefunction, ts: complex, iteration: int = 0, ext=None) -> Dict:
        """Full predict + correct + normalize step.

        Returns
        -------
        dict
            'ts': time step used, 'scale': normalization factor applied.
        """
        future = self.future_for(wf)
        self.predict(wf, future, ts, ext)
        self.correct(wf, future, ts, ext)
        scale = self.policy.apply(wf, ts, iteration)
        return {'ts': ts, 'scale': scale}
