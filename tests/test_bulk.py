"""
Tests for the bulk equation-of-state spline service.

Validates:
1. Cubic B-spline evaluation against polynomials with known coefficients
2. Out-of-range sentinel, DomainWarning and strict DomainError
3. Bounded inverse scan (crossing found, or ConvergenceAssumptionError)
4. BulkProperties lookups (dispersion below the table, superfluid fraction)
5. Persistence of tables
"""

import numpy as np
import pytest

from heliumdft.bulk import (
    SPLINE_SENTINEL,
    SUPERFLUID_FRACTION_SCALE,
    BulkProperties,
    SplineTable,
    spline_eval,
    spline_inverse,
)
from heliumdft.errors import ConvergenceAssumptionError, DomainError, DomainWarning
from heliumdft.units import LAMBDA_TEMPERATURE

KNOTS = np.array([0.0, 0.0, 0.0, 0.0, 1.0, 2.0, 3.0, 3.0, 3.0, 3.0])


def linear_table():
    """Spline reproducing f(x) = x (Greville abscissae as coefficients)."""
    c = [(KNOTS[i + 1] + KNOTS[i + 2] + KNOTS[i + 3]) / 3.0 for i in range(6)]
    return SplineTable(KNOTS, c, name='linear')


def square_table():
    """Spline reproducing f(x) = x^2 (symmetric blossom of the knots)."""
    c = []
    for i in range(6):
        a, b, d = KNOTS[i + 1], KNOTS[i + 2], KNOTS[i + 3]
        c.append((a * b + a * d + b * d) / 3.0)
    return SplineTable(KNOTS, c, name='square')


class TestSplineTable:
    """Tests for table construction."""

    def test_domain(self):
        table = linear_table()
        assert table.ncap7 == 10
        assert table.domain == (0.0, 3.0)
        assert table.contains(1.5)
        assert not table.contains(3.5)

    def test_arrays_read_only(self):
        table = linear_table()
        with pytest.raises(ValueError):
            table.knots[0] = 1.0

    def test_too_few_coefficients(self):
        with pytest.raises(ValueError):
            SplineTable(KNOTS, [0.0, 1.0, 2.0])

    def test_decreasing_knots(self):
        with pytest.raises(ValueError):
            SplineTable(KNOTS[::-1], np.zeros(6))

    def test_save_load(self, tmp_path):
        table = square_table()
        path = tmp_path / "square.npz"
        table.save(path)
        loaded = SplineTable.load(path)
        assert np.array_equal(loaded.knots, table.knots)
        assert np.array_equal(loaded.coefficients, table.coefficients)
        assert loaded.name == 'square'

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SplineTable.load(tmp_path / "missing.npz")


class TestSplineEval:
    """Tests for value and analytic derivatives."""

    @pytest.mark.parametrize("x", [0.0, 0.3, 1.0, 1.7, 2.5, 3.0])
    def test_linear(self, x):
        v = spline_eval(linear_table(), x)
        assert abs(v.value - x) < 1e-12
        assert abs(v.first - 1.0) < 1e-12
        assert abs(v.second) < 1e-12

    @pytest.mark.parametrize("x", [0.0, 0.5, 1.0, 1.25, 2.0, 2.9, 3.0])
    def test_square(self, x):
        v = spline_eval(square_table(), x)
        assert abs(v.value - x * x) < 1e-12
        assert abs(v.first - 2.0 * x) < 1e-12
        assert abs(v.second - 2.0) < 1e-11

    def test_call_shortcut(self):
        table = square_table()
        assert table(2.0) == spline_eval(table, 2.0)

    def test_from_samples_sine(self):
        x = np.linspace(0.0, np.pi, 60)
        table = SplineTable.from_samples(x, np.sin(x), name='sin')
        for xq in (0.4, 1.3, 2.2):
            v = table(xq)
            assert abs(v.value - np.sin(xq)) < 1e-5
            assert abs(v.first - np.cos(xq)) < 1e-3
            assert abs(v.second + np.sin(xq)) < 1e-1

    def test_from_samples_cubic_exact(self):
        x = np.linspace(-1.0, 2.0, 9)
        y = x ** 3 - 2.0 * x
        table = SplineTable.from_samples(x, y)
        v = table(0.7)
        assert abs(v.value - (0.7 ** 3 - 1.4)) < 1e-10
        assert abs(v.first - (3 * 0.49 - 2.0)) < 1e-9

    def test_from_samples_least_squares(self):
        x = np.linspace(0.0, 3.0, 40)
        y = x ** 3 - x + 0.5
        noise = 1e-3 * np.where(np.arange(x.size) % 2 == 0, 1.0, -1.0)
        table = SplineTable.from_samples(x, y + noise, interior_knots=[1.0, 2.0])
        assert table.knots.size == 10
        assert table.coefficients.size == 6
        assert table.domain == (0.0, 3.0)
        # The fit averages out the alternating noise instead of following it
        for xq in (0.5, 1.5, 2.5):
            assert abs(table(xq).value - (xq ** 3 - xq + 0.5)) < 5e-4

    def test_from_samples_bad_knots(self):
        x = np.linspace(0.0, 1.0, 10)
        with pytest.raises(ValueError):
            SplineTable.from_samples(x, x, interior_knots=[0.0, 0.5])

    def test_out_of_range_sentinel(self):
        with pytest.warns(DomainWarning):
            v = spline_eval(linear_table(), 3.5)
        assert v.value == SPLINE_SENTINEL
        assert v.first == 0.0
        assert v.second == 0.0

    def test_out_of_range_strict(self):
        with pytest.raises(DomainError):
            spline_eval(linear_table(), -0.1, strict=True)


class TestSplineInverse:
    """Tests for the bounded forward scan."""

    def test_square_root(self):
        x = spline_inverse(square_table(), 2.25, acc=1e-3)
        assert abs(x - 1.5) < 1e-3

    def test_exact_start(self):
        assert spline_inverse(square_table(), 0.0, acc=0.1) == 0.0

    def test_baseline(self):
        x = spline_inverse(linear_table(), 2.5, acc=0.01, baseline=2.0)
        assert abs(x - 2.5) < 1e-9

    def test_not_crossed(self):
        with pytest.raises(ConvergenceAssumptionError):
            spline_inverse(square_table(), 100.0, acc=0.01)

    def test_max_steps(self):
        with pytest.raises(ConvergenceAssumptionError):
            spline_inverse(square_table(), 8.0, acc=0.01, max_steps=10)

    def test_bad_step(self):
        with pytest.raises(ValueError):
            spline_inverse(square_table(), 1.0, acc=0.0)


class TestBulkProperties:
    """Tests for property lookups."""

    def make(self):
        k = np.linspace(0.5, 3.0, 12)
        T = np.linspace(0.5, 2.0, 12)
        return BulkProperties(
            enthalpy_table=SplineTable.from_samples(T, 10.0 * T, name='enthalpy'),
            entropy_table=SplineTable.from_samples(T, T ** 2, name='entropy'),
            dispersion_table=SplineTable.from_samples(k, 20.0 * k, name='dispersion'),
            superfluid_fraction_table=SplineTable.from_samples(
                T, SUPERFLUID_FRACTION_SCALE * (1.0 - T / 2.5), name='superfluid_fraction'),
        )

    def test_enthalpy_roundtrip(self):
        bulk = self.make()
        h = bulk.enthalpy(1.2).value
        assert abs(h - 12.0) < 1e-9
        assert abs(bulk.enthalpy_inverse(h, acc=1e-4) - 1.2) < 1e-6

    def test_entropy_inverse(self):
        bulk = self.make()
        assert abs(bulk.entropy_inverse(1.0, acc=1e-4) - 1.0) < 1e-4

    def test_dispersion_below_table(self):
        bulk = self.make()
        v = bulk.dispersion(0.25)
        assert abs(v.value - 5.0) < 1e-9
        assert abs(v.first - 20.0) < 1e-9

    def test_dispersion_inverse(self):
        bulk = self.make()
        assert abs(bulk.dispersion_inverse(30.0, acc=1e-4) - 1.5) < 1e-6

    def test_superfluid_fraction(self):
        bulk = self.make()
        assert abs(bulk.superfluid_fraction(1.0).value - 0.6) < 1e-9
        assert bulk.superfluid_fraction(LAMBDA_TEMPERATURE).value == 0.0
        assert bulk.superfluid_fraction(3.0).value == 0.0

    def test_superfluid_fraction_inverse(self):
        bulk = self.make()
        assert abs(bulk.superfluid_fraction_inverse(0.6, acc=1e-4) - 1.0) < 1e-6
        # Above the value at the lowest tabulated temperature
        assert bulk.superfluid_fraction_inverse(0.9, acc=1e-3) == 0.5
        assert bulk.superfluid_fraction_inverse(0.0, acc=1e-3) == LAMBDA_TEMPERATURE

    def test_superfluid_fraction_inverse_not_reached(self):
        bulk = self.make()
        with pytest.raises(ConvergenceAssumptionError):
            bulk.superfluid_fraction_inverse(0.05, acc=1e-3)

    def test_missing_table(self):
        bulk = BulkProperties(enthalpy_table=linear_table())
        with pytest.raises(ValueError):
            bulk.entropy(1.0)

    def test_save_load(self, tmp_path):
        bulk = self.make()
        path = tmp_path / "bulk.npz"
        bulk.save(path)
        loaded = BulkProperties.load(path)
        assert abs(loaded.enthalpy(1.0).value - 10.0) < 1e-9
        assert loaded.superfluid_fraction_table.name == 'superfluid_fraction'
