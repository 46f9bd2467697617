"""
Tests for the split-step predictor-corrector integrator.

Validates:
1. Complex time-step schedule and frame-velocity helpers
2. Real-time steps are unitary; a uniform liquid at mu0 is stationary
3. Imaginary-time relaxation reaches the harmonic-oscillator ground state
4. Predict never touches the current amplitude; correct needs predict
5. The corrector is more accurate than one explicit step
6. BULK_PINNED imaginary-time relaxation reaches a stationary state
"""

import numpy as np
import pytest

from heliumdft.diagnostics import kinetic_energy
from heliumdft.errors import KernelNotPreparedError, NumericalInstabilityError
from heliumdft.functional import OTFunctional
from heliumdft.grid import Boundary, Grid, Wavefunction
from heliumdft.normalization import NormalizationMode, NormalizationPolicy
from heliumdft.propagate import (
    PredictorCorrector,
    kinetic_propagator,
    momentum_for_velocity,
    propagate,
    round_velocity,
    timestep_schedule,
)
from heliumdft.states import StateContext, gaussian, initialize


def harmonic(ctx, x, y, z):
    return 0.5 * ctx * (x * x + y * y + z * z)


class CubicNonlinearity:
    """Contact interaction g |psi|^2, the simplest density-dependent potential."""

    def __init__(self, g):
        self.g = g

    def potential(self, psi, ext=None, mu0=0.0, partner=None):
        pot = self.g * (psi.real ** 2 + psi.imag ** 2)
        if ext is not None:
            pot = pot + ext
        return pot - mu0


class TestSchedule:
    """Tests for timestep_schedule and frame helpers."""

    def test_real(self):
        assert timestep_schedule(2.0, 5) == complex(2.0, 0.0)

    def test_imaginary(self):
        assert timestep_schedule(2.0, 500, warmup=10, imaginary=True) == complex(0.0, -2.0)

    def test_warmup_blend(self):
        ts = timestep_schedule(1.0, 5, warmup=10)
        assert ts == complex(0.5, -0.5)
        assert timestep_schedule(1.0, 0, warmup=10) == complex(0.0, -1.0)
        assert timestep_schedule(1.0, 10, warmup=10) == complex(1.0, 0.0)

    def test_negative_dt_uses_magnitude(self):
        assert timestep_schedule(-1.0, 0) == complex(1.0, 0.0)

    def test_round_velocity(self):
        length, mass = 10.0, 2.0
        quantum = 2.0 * np.pi / (length * mass)
        assert round_velocity(1.3 * quantum, length, mass) == quantum
        assert round_velocity(0.0, length, mass) == 0.0

    def test_momentum_for_velocity(self):
        assert momentum_for_velocity(0.5, 4.0) == 2.0
        k0 = momentum_for_velocity((0.0, 0.0, 1e-3), 7294.3)
        assert k0.shape == (3,)
        assert abs(k0[2] - 7.2943) < 1e-12


class TestPropagate:
    """Tests for the bare split-step propagator."""

    def test_free_step_is_unitary(self):
        grid = Grid(16, 16, 16, 0.5)
        wf = Wavefunction(grid, 1.0, norm=1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=1.0))
        out = propagate(grid, wf.psi, 0.0, 0.1, wf.mass)
        assert abs(grid.integral(np.abs(out) ** 2) - grid.integral(wf.density())) < 1e-12
        # psi itself is left alone
        assert not np.allclose(out, wf.psi)

    def test_neumann_step_is_unitary(self):
        grid = Grid(12, 12, 12, 0.5, boundary=Boundary.NEUMANN)
        wf = Wavefunction(grid, 1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=0.8, center=(0.5, 0.0, 0.0)))
        out = propagate(grid, wf.psi, 0.0, 0.1, wf.mass)
        assert abs(grid.integral(np.abs(out) ** 2) - grid.integral(wf.density())) < 1e-12

    def test_plane_wave_phase(self):
        grid = Grid(8, 8, 8, 1.0)
        k = 2.0 * np.pi / 8.0
        x, _, _ = grid.coordinates
        psi = np.broadcast_to(np.exp(1j * k * x), grid.shape).astype(np.complex128)
        ts = 0.3
        out = propagate(grid, psi, 0.0, ts, mass=1.0)
        assert np.allclose(out, psi * np.exp(-1j * ts * k * k / 2.0))

    def test_frame_momentum_cancels(self):
        grid = Grid(8, 8, 8, 1.0)
        k = 2.0 * np.pi / 8.0
        kinetic = kinetic_propagator(grid, 1.0, 0.3, k0=(k, 0.0, 0.0))
        x, _, _ = grid.coordinates
        psi = np.broadcast_to(np.exp(1j * k * x), grid.shape).astype(np.complex128)
        out = propagate(grid, psi, 0.0, 0.3, 1.0, kinetic=kinetic)
        assert np.allclose(out, psi)

    def test_neumann_rejects_momentum(self):
        grid = Grid(8, 8, 8, 1.0, boundary=Boundary.NEUMANN)
        with pytest.raises(ValueError):
            kinetic_propagator(grid, 1.0, 0.1, k0=(0.1, 0.0, 0.0))


class TestPredictorCorrector:
    """Tests for the two-stage integrator."""

    def test_uniform_liquid_is_stationary(self):
        grid = Grid(16, 16, 16, 1.0)
        functional = OTFunctional(grid)
        rho0 = functional.bulk_density(0.0)
        wf = Wavefunction(grid, functional.mass,
                          psi=np.full(grid.shape, np.sqrt(rho0)), norm=rho0 * grid.volume)
        integrator = PredictorCorrector(functional, mu0=functional.bulk_chempot(rho0))
        for i in range(5):
            integrator.step(wf, timestep_schedule(50.0, i), i)
        assert np.allclose(wf.psi, np.sqrt(rho0), rtol=1e-8)

    def test_real_time_norm_conserved(self):
        grid = Grid(16, 16, 16, 0.5)
        wf = Wavefunction(grid, 1.0, norm=1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=1.0, center=(0.5, 0.0, 0.0)))
        ext = grid.map(harmonic, 1.0)
        integrator = PredictorCorrector(ext=ext)
        for i in range(20):
            integrator.step(wf, 0.05, i)
        assert abs(wf.current_norm() - 1.0) < 1e-10

    def test_harmonic_ground_state(self):
        grid = Grid(32, 32, 32, 0.5)
        wf = Wavefunction(grid, 1.0, norm=1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=2.0, center=(0.7, -0.4, 0.3)))
        ext = grid.map(harmonic, 1.0)
        policy = NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT, natoms=1.0)
        integrator = PredictorCorrector(ext=ext, policy=policy)
        for i in range(400):
            integrator.step(wf, timestep_schedule(0.05, i, imaginary=True), i)
        energy = kinetic_energy(wf) + grid.expectation_value(wf.psi, ext)
        assert abs(energy - 1.5) < 1e-2
        assert abs(wf.current_norm() - 1.0) < 1e-10

    def test_predict_leaves_current_alone(self):
        grid = Grid(8, 8, 8, 0.5)
        wf = Wavefunction(grid, 1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=1.0))
        before = wf.psi.copy()
        integrator = PredictorCorrector(ext=grid.map(harmonic, 1.0))
        future = integrator.future_for(wf)
        integrator.predict(wf, future, 0.1)
        assert np.array_equal(wf.psi, before)
        assert not np.array_equal(future.psi, before)

    def test_step_independent_of_future_contents(self):
        grid = Grid(8, 8, 8, 0.5)
        ext = grid.map(harmonic, 1.0)
        results = []
        for garbage in (0.0, 7.0):
            wf = Wavefunction(grid, 1.0)
            initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=1.0))
            integrator = PredictorCorrector(ext=ext)
            integrator.future_for(wf).psi[...] = garbage
            integrator.step(wf, 0.1)
            results.append(wf.psi.copy())
        assert np.array_equal(results[0], results[1])

    def test_correct_without_predict(self):
        grid = Grid(4, 4, 4, 1.0)
        wf = Wavefunction(grid, 1.0, psi=np.ones(grid.shape))
        integrator = PredictorCorrector()
        with pytest.raises(RuntimeError):
            integrator.correct(wf, wf.clone(), 0.1)

    def test_check_finite(self):
        grid = Grid(4, 4, 4, 1.0)
        wf = Wavefunction(grid, 1.0, psi=np.ones(grid.shape))
        wf.psi[1, 1, 1] = np.nan
        integrator = PredictorCorrector(check_finite=True)
        with pytest.raises(NumericalInstabilityError):
            integrator.step(wf, 0.1)

    def test_step_reports_scale(self):
        grid = Grid(8, 8, 8, 0.5)
        wf = Wavefunction(grid, 1.0, psi=np.full(grid.shape, 0.3))
        policy = NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT, natoms=2.0)
        info = PredictorCorrector(policy=policy).step(wf, complex(0.0, -0.1))
        assert info['ts'] == complex(0.0, -0.1)
        assert info['scale'] > 0.0
        assert abs(wf.current_norm() - 2.0) < 1e-12

    def test_invalidated_kernels_fail_the_step(self):
        grid = Grid(16, 16, 16, 1.0)
        functional = OTFunctional(grid)
        rho0 = functional.bulk_density(0.0)
        wf = Wavefunction(grid, functional.mass, psi=np.full(grid.shape, np.sqrt(rho0)))
        integrator = PredictorCorrector(functional, mu0=functional.bulk_chempot(rho0))
        integrator.step(wf, 10.0)
        before = wf.psi.copy()
        functional.conv.invalidate()
        with pytest.raises(KernelNotPreparedError):
            integrator.step(wf, 10.0)
        assert np.array_equal(wf.psi, before)

    def test_corrector_beats_single_explicit_step(self):
        grid = Grid(16, 16, 16, 0.5)
        wf = Wavefunction(grid, 1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=1.0, center=(0.3, 0.0, 0.0)))
        nonlinear = CubicNonlinearity(g=20.0)
        dt = 0.05

        reference = wf.clone()
        fine = PredictorCorrector(nonlinear)
        for _ in range(50):
            fine.step(reference, dt / 50)

        integrator = PredictorCorrector(nonlinear)
        explicit = integrator.future_for(wf)
        corrected = wf.clone()
        # The predictor alone is one explicit step with the start-of-step potential
        integrator.predict(wf, explicit, dt)
        PredictorCorrector(nonlinear).step(corrected, dt)

        err_explicit = np.max(np.abs(explicit.psi - reference.psi))
        err_corrected = np.max(np.abs(corrected.psi - reference.psi))
        assert err_explicit > 0.0
        assert err_corrected < 0.5 * err_explicit


class TestPinnedRelaxation:
    """Imaginary-time relaxation under BULK_PINNED normalization."""

    def test_converges_to_pinned_ground_state(self):
        grid = Grid(32, 32, 32, 0.5)
        rho0 = 0.02
        wf = Wavefunction(grid, 1.0)
        initialize(wf, 'gaussian', StateContext(natoms=1.0, radius=2.0, center=(0.7, -0.4, 0.3)))
        ext = grid.map(harmonic, 1.0)
        # divisor 2 puts the reference point at the trap centre
        policy = NormalizationPolicy(NormalizationMode.BULK_PINNED, rho0=rho0, divisor=2)
        integrator = PredictorCorrector(ext=ext, policy=policy)
        for i in range(400):
            integrator.step(wf, timestep_schedule(0.05, i, imaginary=True), i)

        assert abs(abs(wf.psi[16, 16, 16]) ** 2 - rho0) < 1e-12
        x, y, z = grid.coordinates
        expected = rho0 * np.exp(-(x * x + y * y + z * z))
        assert np.allclose(wf.density(), expected, rtol=0.0, atol=1e-2 * rho0)

        # Converged: one more step leaves the density in place
        before = wf.density()
        integrator.step(wf, timestep_schedule(0.05, 400, imaginary=True), 400)
        assert np.max(np.abs(wf.density() - before)) < 1e-6 * rho0
