"""
Tests for the convolution-based potential evaluator.

Validates:
1. Delta-density convolution reproduces the (shifted) kernel
2. Analytic kernels: normalization and uniform densities
3. Cache semantics: prepare once, evaluate many, null operand keeps cache
4. KernelNotPreparedError on missing transforms and after a grid change
"""

import numpy as np
import pytest

from heliumdft.convolution import (
    ConvolutionEvaluator,
    GaussianContext,
    PairKernel,
    gaussian_kernel,
    gaussian_transform,
    lennard_jones_kernel,
    spherical_average_kernel,
)
from heliumdft.errors import KernelNotPreparedError
from heliumdft.grid import Grid


def sampled_kernel(grid, name='k'):
    values = grid.map_wrapped(lambda ctx, x, y, z: np.exp(-(x * x + y * y + z * z)))
    return PairKernel(name=name, values=values, grid=grid)


def delta(grid, index=(0, 0, 0)):
    rho = grid.alloc_real()
    rho[index] = 1.0 / grid.dV
    return rho


class TestPairKernel:
    """Tests for kernel construction."""

    def test_needs_exactly_one_source(self):
        with pytest.raises(ValueError):
            PairKernel(name='none')
        grid = Grid(4, 4, 4, 1.0)
        with pytest.raises(ValueError):
            PairKernel(name='both', values=grid.alloc_real(), grid=grid,
                       transform=gaussian_transform, context=GaussianContext(1.0))

    def test_values_need_grid(self):
        with pytest.raises(ValueError):
            PairKernel(name='k', values=np.zeros((4, 4, 4)))

    def test_values_shape(self):
        with pytest.raises(ValueError):
            PairKernel(name='k', values=np.zeros((4, 4, 3)), grid=Grid(4, 4, 4, 1.0))

    def test_integral_sampled(self):
        grid = Grid(8, 8, 8, 1.0)
        kernel = sampled_kernel(grid)
        assert abs(kernel.integral(grid) - grid.integral(kernel.values)) < 1e-12

    def test_integral_analytic(self):
        grid = Grid(8, 8, 8, 1.0)
        assert abs(gaussian_kernel(grid, 1.5).integral(grid) - 1.0) < 1e-14
        assert abs(spherical_average_kernel(grid, 2.0).integral(grid) - 1.0) < 1e-14

    def test_from_table(self, tmp_path):
        path = tmp_path / "pair.dat"
        np.savetxt(path, np.column_stack([np.linspace(0.0, 20.0, 41), np.linspace(100.0, 0.0, 41)]))
        grid = Grid(8, 8, 8, 1.0)
        kernel = PairKernel.from_table(path, grid)
        assert kernel.name == 'pair'
        assert kernel.values.shape == grid.shape
        # Origin sits at index 0; 100 K in hartree
        assert abs(kernel.values[0, 0, 0] - 100.0 / 3.1577465e5) < 1e-12
        assert kernel.values[0, 0, 0] > kernel.values[2, 0, 0]


class TestConvolutionEvaluator:
    """Tests for prepare/evaluate semantics."""

    def test_delta_reproduces_kernel(self):
        grid = Grid(8, 8, 8, 0.5)
        kernel = sampled_kernel(grid)
        conv = ConvolutionEvaluator(grid)
        out = conv.convolve(kernel, delta(grid))
        assert np.allclose(out, kernel.values)

    def test_shifted_delta_rolls_kernel(self):
        grid = Grid(8, 8, 8, 0.5)
        kernel = sampled_kernel(grid)
        conv = ConvolutionEvaluator(grid)
        out = conv.convolve(kernel, delta(grid, (2, 0, 5)))
        expected = np.roll(np.roll(kernel.values, 2, axis=0), 5, axis=2)
        assert np.allclose(out, expected)

    def test_uniform_density(self):
        grid = Grid(8, 8, 8, 1.0)
        kernel = lennard_jones_kernel(grid, eps=1e-4, sigma=4.8, h=4.1, ns=2)
        conv = ConvolutionEvaluator(grid)
        rho = np.full(grid.shape, 0.003)
        out = conv.convolve(kernel, rho)
        assert np.allclose(out, 0.003 * kernel.integral(grid), rtol=1e-10)

    def test_gaussian_smooths_to_mean(self):
        grid = Grid(16, 16, 16, 1.0)
        conv = ConvolutionEvaluator(grid)
        rng = np.random.default_rng(4)
        rho = rng.random(grid.shape)
        out = conv.convolve(gaussian_kernel(grid, 1.0), rho)
        assert abs(grid.integral(out) - grid.integral(rho)) < 1e-9 * grid.integral(rho)
        assert out.std() < rho.std()

    def test_evaluate_reuses_cached_density(self):
        grid = Grid(8, 8, 8, 1.0)
        k1 = sampled_kernel(grid, 'k1')
        k2 = gaussian_kernel(grid, 1.0)
        conv = ConvolutionEvaluator(grid)
        conv.prepare(kernel=k1)
        conv.prepare(kernel=k2)
        rho = np.random.default_rng(5).random(grid.shape)
        a = conv.evaluate(k1, rho)
        b = conv.evaluate(k2)
        assert np.allclose(b, conv.convolve(k2, rho))
        assert np.allclose(a, conv.evaluate(k1))

    def test_same_name_kernels_are_distinct(self):
        """A second kernel sharing a name must not reuse the first one's transform."""
        grid = Grid(8, 8, 8, 1.0)
        conv = ConvolutionEvaluator(grid)
        weak = lennard_jones_kernel(grid, eps=1e-4, sigma=4.8, h=4.1, ns=2)
        strong = lennard_jones_kernel(grid, eps=5e-4, sigma=4.8, h=4.1, ns=2)
        assert weak.name == strong.name
        conv.prepare(kernel=weak)
        with pytest.raises(KernelNotPreparedError):
            conv.evaluate(strong, delta(grid))
        conv.prepare(kernel=strong)
        assert np.allclose(conv.evaluate(strong, delta(grid)), strong.values, atol=1e-12)
        assert np.allclose(conv.evaluate(weak), weak.values, atol=1e-12)
        assert conv.convolve(strong, delta(grid)).max() > 4.0 * conv.evaluate(weak).max()

    def test_prepare_requires_operand(self):
        conv = ConvolutionEvaluator(Grid(4, 4, 4, 1.0))
        with pytest.raises(ValueError):
            conv.prepare()

    def test_density_shape_checked(self):
        conv = ConvolutionEvaluator(Grid(4, 4, 4, 1.0))
        with pytest.raises(ValueError):
            conv.prepare(density=np.zeros((4, 4, 5)))

    def test_unprepared_kernel(self):
        grid = Grid(4, 4, 4, 1.0)
        conv = ConvolutionEvaluator(grid)
        with pytest.raises(KernelNotPreparedError):
            conv.evaluate(sampled_kernel(grid), np.ones(grid.shape))

    def test_unprepared_density(self):
        grid = Grid(4, 4, 4, 1.0)
        conv = ConvolutionEvaluator(grid)
        kernel = sampled_kernel(grid)
        conv.prepare(kernel=kernel)
        assert conv.is_prepared(kernel)
        with pytest.raises(KernelNotPreparedError):
            conv.evaluate(kernel)

    def test_invalidate(self):
        grid = Grid(4, 4, 4, 1.0)
        conv = ConvolutionEvaluator(grid)
        kernel = sampled_kernel(grid)
        conv.prepare(kernel=kernel, density=np.ones(grid.shape))
        conv.invalidate(kernel)
        assert not conv.is_prepared(kernel)
        with pytest.raises(KernelNotPreparedError):
            conv.kernel_hat(kernel)

    def test_rebind_invalidates_cache(self):
        grid = Grid(8, 8, 8, 1.0)
        conv = ConvolutionEvaluator(grid)
        kernel = gaussian_kernel(grid, 1.0)
        conv.prepare(kernel=kernel, density=np.ones(grid.shape))
        new_grid = Grid(8, 8, 8, 0.5)
        conv.rebind(new_grid)
        with pytest.raises(KernelNotPreparedError):
            conv.evaluate(kernel)
        # Sampled kernels of the old grid cannot be moved silently
        with pytest.raises(KernelNotPreparedError):
            conv.prepare(kernel=sampled_kernel(grid))

    def test_rebind_same_topology_keeps_cache(self):
        grid = Grid(8, 8, 8, 1.0)
        conv = ConvolutionEvaluator(grid)
        kernel = gaussian_kernel(grid, 1.0)
        conv.prepare(kernel=kernel)
        conv.rebind(Grid(8, 8, 8, 1.0))
        assert conv.is_prepared(kernel)
