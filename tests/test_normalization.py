"""
Tests for post-step normalization and the absorbing shell.

Validates:
1. BULK_PINNED: reference density pinned on imaginary steps only
2. FIXED_PARTICLE_COUNT: norm restored, centre of mass recentred early on
3. UNCONSTRAINED leaves the amplitude alone
4. AbsorbingShell profile and damping
"""

import numpy as np
import pytest

from heliumdft.grid import Grid, Wavefunction
from heliumdft.normalization import (
    AbsorbingShell,
    NormalizationMode,
    NormalizationPolicy,
    apply_absorption,
    center_of_mass,
)
from heliumdft.states import StateContext, initialize


def random_wf(grid, seed=0):
    rng = np.random.default_rng(seed)
    psi = 0.05 + 0.01 * rng.random(grid.shape)
    return Wavefunction(grid, 1.0, psi=psi)


class TestPolicyValidation:
    """Tests for policy construction."""

    def test_pinned_needs_rho0(self):
        with pytest.raises(ValueError):
            NormalizationPolicy(NormalizationMode.BULK_PINNED)

    def test_fixed_needs_natoms(self):
        with pytest.raises(ValueError):
            NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT, natoms=0.0)

    def test_mode_from_string(self):
        policy = NormalizationPolicy('bulk_pinned', rho0=0.003)
        assert policy.mode == NormalizationMode.BULK_PINNED

    def test_bad_divisor(self):
        with pytest.raises(ValueError):
            NormalizationPolicy(divisor=0)

    def test_reference_index(self):
        grid = Grid(16, 8, 12, 1.0)
        assert NormalizationPolicy().reference_index(grid) == (4, 2, 3)
        assert NormalizationPolicy(reference=(1, 2, 3)).reference_index(grid) == (1, 2, 3)


class TestBulkPinned:
    """Tests for BULK_PINNED normalization."""

    def test_pins_reference_point(self):
        grid = Grid(16, 16, 16, 1.0)
        wf = random_wf(grid)
        policy = NormalizationPolicy(NormalizationMode.BULK_PINNED, rho0=0.0033)
        policy.apply(wf, complex(0.0, -1.0), 0)
        assert abs(abs(wf.psi[4, 4, 4]) ** 2 - 0.0033) < 1e-15
        assert abs(wf.norm - wf.current_norm()) < 1e-12

    def test_real_time_untouched(self):
        grid = Grid(8, 8, 8, 1.0)
        wf = random_wf(grid)
        before = wf.psi.copy()
        policy = NormalizationPolicy(NormalizationMode.BULK_PINNED, rho0=0.0033)
        assert policy.apply(wf, complex(1.0, 0.0), 0) == 1.0
        assert np.array_equal(wf.psi, before)

    def test_warmup_step_is_pinned(self):
        grid = Grid(8, 8, 8, 1.0)
        wf = random_wf(grid)
        policy = NormalizationPolicy(NormalizationMode.BULK_PINNED, rho0=0.0033)
        policy.apply(wf, complex(0.5, -0.5), 0)
        assert abs(abs(wf.psi[2, 2, 2]) ** 2 - 0.0033) < 1e-15

    def test_vanished_reference(self):
        grid = Grid(8, 8, 8, 1.0)
        wf = random_wf(grid)
        wf.psi[2, 2, 2] = 0.0
        policy = NormalizationPolicy(NormalizationMode.BULK_PINNED, rho0=0.0033)
        with pytest.raises(ValueError):
            policy.apply(wf, complex(0.0, -1.0), 0)


class TestFixedParticleCount:
    """Tests for FIXED_PARTICLE_COUNT normalization."""

    def test_restores_norm(self):
        grid = Grid(8, 8, 8, 1.0)
        wf = random_wf(grid)
        policy = NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT, natoms=50.0)
        policy.apply(wf, complex(0.0, -1.0), 0)
        assert abs(wf.current_norm() - 50.0) < 1e-10
        assert wf.norm == 50.0

    def test_recentres_droplet(self):
        grid = Grid(32, 32, 32, 0.5)
        wf = Wavefunction(grid, 1.0)
        initialize(wf, 'gaussian', StateContext(natoms=10.0, radius=1.5, center=(2.0, 0.0, -1.0)))
        policy = NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT,
                                     natoms=10.0, recentre_until=5)
        policy.apply(wf, complex(0.0, -1.0), 0)
        assert np.allclose(center_of_mass(wf), 0.0, atol=1e-3)
        assert abs(wf.current_norm() - 10.0) < 1e-10

    def test_no_recentring_after_cutoff(self):
        grid = Grid(32, 32, 32, 0.5)
        wf = Wavefunction(grid, 1.0)
        initialize(wf, 'gaussian', StateContext(natoms=10.0, radius=1.5, center=(2.0, 0.0, 0.0)))
        policy = NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT,
                                     natoms=10.0, recentre_until=5)
        policy.apply(wf, complex(0.0, -1.0), 5)
        assert abs(center_of_mass(wf)[0] - 2.0) < 1e-3


class TestUnconstrained:

    def test_noop(self):
        grid = Grid(8, 8, 8, 1.0)
        wf = random_wf(grid)
        before = wf.psi.copy()
        assert NormalizationPolicy().apply(wf, complex(0.0, -1.0), 0) == 1.0
        assert np.array_equal(wf.psi, before)


class TestAbsorbingShell:
    """Tests for the absorbing boundary shell."""

    def test_profile(self):
        shell = AbsorbingShell.uniform(2.0, amplitude=0.5)
        profile = shell.axis_profile(10, 1.0, 2.0, 2.0)
        assert np.allclose(profile[2:8], 1.0)
        assert profile[0] < profile[1] < 1.0
        assert profile[9] < profile[8] < 1.0
        assert abs(profile[0] - np.exp(-0.5)) < 1e-14

    def test_envelope_interior(self):
        grid = Grid(10, 10, 10, 1.0)
        shell = AbsorbingShell.uniform(2.0)
        inside = shell.inside(grid)
        assert not inside[5, 5, 5]
        assert inside[0, 5, 5]
        assert inside[5, 9, 5]

    def test_damping_only_in_shell(self):
        grid = Grid(10, 10, 10, 1.0)
        shell = AbsorbingShell.uniform(2.0, amplitude=0.3)
        wf = Wavefunction(grid, 1.0, psi=np.ones(grid.shape), absorb=shell)
        apply_absorption(wf)
        mask = shell.inside(grid)
        assert np.allclose(wf.psi[~mask], 1.0)
        assert np.all(np.abs(wf.psi[mask]) < 1.0)

    def test_no_shell_is_noop(self):
        grid = Grid(4, 4, 4, 1.0)
        wf = Wavefunction(grid, 1.0, psi=np.ones(grid.shape))
        apply_absorption(wf)
        assert np.all(wf.psi == 1.0)

    def test_invalid_widths(self):
        with pytest.raises(ValueError):
            AbsorbingShell(widths=(1.0, 1.0, 1.0))
        with pytest.raises(ValueError):
            AbsorbingShell.uniform(-1.0)
        with pytest.raises(ValueError):
            AbsorbingShell.uniform(6.0).envelope(Grid(10, 10, 10, 1.0))
