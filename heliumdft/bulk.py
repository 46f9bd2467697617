"""
Bulk equation-of-state spline service for liquid helium.

Experimental bulk properties at saturated vapor pressure (enthalpy, entropy,
elementary-excitation dispersion, superfluid fraction) are stored as cubic
B-spline knot/coefficient tables in the layout of the Donnelly-Barenghi
compilation (J. Phys. Chem. Ref. Data 27, 1217 (1998)):

- `ncap7` knots k[0..ncap7-1], with the first four equal to the lower domain
  bound a = k[3] and the last four equal to the upper bound b = k[ncap7-4]
- `ncap7 - 4` coefficients c[0..ncap7-5]

On the knot interval [k[j+3], k[j+4]] the spline is a blend of the four
coefficients c[j..j+3] over the six knots k[j+1..j+6]. This is the same
layout as scipy.interpolate.BSpline with degree 3, so tables can be fitted
from samples with scipy and evaluated here.

Tables are SI-valued (J/mol, J/(K g), K); they are not converted to atomic
units. Queries outside [a, b] return the sentinel SPLINE_SENTINEL with zero
derivatives and emit a DomainWarning; callers must check for it (or pass
strict=True to get a DomainError instead).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, NamedTuple, Optional
import warnings

import numpy as np
from numpy.typing import NDArray
from scipy.interpolate import make_interp_spline, make_lsq_spline

from heliumdft.errors import ConvergenceAssumptionError, DomainError, DomainWarning
from heliumdft.units import LAMBDA_TEMPERATURE

SPLINE_SENTINEL = 1e99

# The published superfluid-fraction table tends to this value at T -> 0
SUPERFLUID_FRACTION_SCALE = 1.451275e-01

PROPERTY_NAMES = ('enthalpy', 'entropy', 'dispersion', 'superfluid_fraction')


class SplineValue(NamedTuple):
    """Spline value with analytic first and second derivatives."""
    value: float
    first: float
    second: float


# ============================================================================
# Spline tables
# ============================================================================

@dataclass(frozen=True, eq=False)
class SplineTable:
    """Immutable cubic B-spline knot/coefficient table.

    Parameters
    ----------
    knots : ndarray, shape (ncap7,)
        Knot vector (non-decreasing, four-fold repeated end knots).
    coefficients : ndarray, shape (ncap7 - 4,)
        B-spline coefficients.
    name : str
        Property name used in messages.
    """
    knots: NDArray[np.float64]
    coefficients: NDArray[np.float64]
    name: str = 'spline'

    def __post_init__(self):
        k = np.array(self.knots, dtype=np.float64)
        c = np.array(self.coefficients, dtype=np.float64)
        if k.ndim != 1 or k.size < 8:
            raise ValueError(f"Spline '{self.name}' needs at least 8 knots, got {k.size}")
        if c.size < k.size - 4:
            raise ValueError(
                f"Spline '{self.name}' needs {k.size - 4} coefficients for {k.size} knots, "
                f"got {c.size}"
            )
        if np.any(np.diff(k) < 0):
            raise ValueError(f"Spline '{self.name}' knots must be non-decreasing")
        k.setflags(write=False)
        c.setflags(write=False)
        object.__setattr__(self, 'knots', k)
        object.__setattr__(self, 'coefficients', c)

    @property
    def ncap7(self) -> int:
        return self.knots.size

    @property
    def domain(self):
        """Valid interval (knot[3], knot[last-3])."""
        return (float(self.knots[3]), float(self.knots[-4]))

    def contains(self, x: float) -> bool:
        a, b = self.domain
        return a <= x <= b

    def __call__(self, x: float, strict: bool = False) -> SplineValue:
        return spline_eval(self, x, strict=strict)

    # ------------------------------------------------------------------
    # Construction and persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_samples(cls, x, y, name: str = 'spline', interior_knots=None) -> 'SplineTable':
        """Cubic B-spline table from samples (x strictly increasing).

        Without `interior_knots` the spline interpolates every sample. With
        them, the coefficients are the least-squares fit on the knot vector
        [x0]*4 + interior_knots + [xn]*4, which smooths noisy tables.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if x.shape != y.shape or x.ndim != 1:
            raise ValueError("Sample arrays must be 1-D and of equal length")
        if x.size < 4:
            raise ValueError(f"Need at least 4 samples for a cubic spline, got {x.size}")
        if interior_knots is None:
            bspl = make_interp_spline(x, y, k=3)
        else:
            inner = np.asarray(interior_knots, dtype=np.float64)
            if inner.size and (inner.min() <= x[0] or inner.max() >= x[-1]):
                raise ValueError("Interior knots must lie strictly inside the sample range")
            t = np.r_[[x[0]] * 4, np.sort(inner), [x[-1]] * 4]
            bspl = make_lsq_spline(x, y, t, k=3)
        n = bspl.t.size - 4
        return cls(knots=bspl.t, coefficients=bspl.c[:n], name=name)

    @classmethod
    def load(cls, path, name: Optional[str] = None) -> 'SplineTable':
        """Load a table from an .npz file with arrays 'knots' and 'coefficients'."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Spline table not found: {path}")
        with np.load(path) as data:
            return cls(knots=data['knots'], coefficients=data['coefficients'],
                       name=name or path.stem)

    def save(self, path) -> None:
        np.savez(path, knots=self.knots, coefficients=self.coefficients)


# ============================================================================
# Evaluation
# ============================================================================

def _bracket(knots: NDArray, x: float) -> int:
    """Index j such that knots[j+3] <= x <= knots[j+4] (bisection)."""
    lo = -1
    hi = knots.size - 8
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if x >= knots[mid + 4]:
            lo = mid
        else:
            hi = mid
    return hi


def spline_eval(table: SplineTable, x: float, strict: bool = False) -> SplineValue:
    """Evaluate a spline table with first and second derivatives.

    Parameters
    ----------
    table : SplineTable
        Knot/coefficient table.
    x : float
        Abscissa.
    strict : bool
        Raise DomainError instead of returning the sentinel.

    Returns
    -------
    SplineValue
        (value, first, second). Outside [knot[3], knot[last-3]] the value is
        SPLINE_SENTINEL and both derivatives are zero.

    Raises
    ------
    DomainError
        If strict and x is outside the table domain.

    Notes
    -----
    The containing interval is found by bisection over j in [0, ncap7 - 8],
    so the upper domain bound maps onto the last non-degenerate interval.
    The value is then obtained by nested linear blends of the coefficients
    (de Boor recursion written out for degree 3), each level carrying its
    own derivative so no numerical differencing is needed.
    """
    x = float(x)
    if not table.contains(x):
        a, b = table.domain
        msg = f"Spline '{table.name}': x = {x:.6g} outside valid range [{a:.6g}, {b:.6g}]"
        if strict:
            raise DomainError(msg)
        warnings.warn(msg, DomainWarning, stacklevel=2)
        return SplineValue(SPLINE_SENTINEL, 0.0, 0.0)

    k = table.knots
    c = table.coefficients
    j = _bracket(k, x)

    k1, k2, k3, k4, k5, k6 = k[j + 1:j + 7]
    e2 = x - k2
    e3 = x - k3
    e4 = k4 - x
    e5 = k5 - x

    # First level
    c11 = ((x - k1) * c[j + 1] + e4 * c[j]) / (k4 - k1)
    cd11 = (c[j + 1] - c[j]) / (k4 - k1)
    c21 = (e2 * c[j + 2] + e5 * c[j + 1]) / (k5 - k2)
    cd21 = (c[j + 2] - c[j + 1]) / (k5 - k2)
    c31 = (e3 * c[j + 3] + (k6 - x) * c[j + 2]) / (k6 - k3)
    cd31 = (c[j + 3] - c[j + 2]) / (k6 - k3)

    # Second level
    c12 = (e2 * c21 + e4 * c11) / (k4 - k2)
    cd12 = (c21 + e2 * cd21 - c11 + e4 * cd11) / (k4 - k2)
    cdd12 = 2.0 * (cd21 - cd11) / (k4 - k2)
    c22 = (e3 * c31 + e5 * c21) / (k5 - k3)
    cd22 = (c31 + e3 * cd31 - c21 + e5 * cd21) / (k5 - k3)
    cdd22 = 2.0 * (cd31 - cd21) / (k5 - k3)

    # Third level
    s = (e3 * c22 + e4 * c12) / (k4 - k3)
    first = (e3 * cd22 + c22 + e4 * cd12 - c12) / (k4 - k3)
    second = (e3 * cdd22 + 2.0 * cd22 + e4 * cdd12 - 2.0 * cd12) / (k4 - k3)

    return SplineValue(float(s), float(first), float(second))


def spline_inverse(
    table: SplineTable,
    target: float,
    acc: float,
    baseline: Optional[float] = None,
    upper: Optional[float] = None,
    max_steps: Optional[int] = None,
) -> float:
    """Find x where a monotonic spline crosses `target` by a forward scan.

    Starting at `baseline` (default: lower domain bound), x advances in steps
    of `acc` until spline(x) - target changes sign; the crossing is then
    located by linear interpolation inside the last step.

    Parameters
    ----------
    table : SplineTable
        Table assumed monotonic over the scanned range.
    target : float
        Value to invert.
    acc : float
        Scan step (> 0). Cost is O((x* - baseline) / acc) evaluations.
    baseline : float, optional
        Scan start.
    upper : float, optional
        Scan end (default: upper domain bound).
    max_steps : int, optional
        Hard cap on the number of steps.

    Returns
    -------
    float
        Abscissa of the crossing, accurate to about acc.

    Raises
    ------
    ConvergenceAssumptionError
        If the target is not crossed before the scan leaves [baseline, upper]
        or exceeds max_steps.
    """
    if not acc > 0:
        raise ValueError(f"Scan step must be positive, got {acc}")
    a, b = table.domain
    x = a if baseline is None else float(baseline)
    start = x
    end = b if upper is None else min(float(upper), b)
    if x < a or x > end:
        raise ConvergenceAssumptionError(
            f"Spline '{table.name}': scan baseline {x:.6g} outside [{a:.6g}, {end:.6g}]"
        )
    limit = int(np.ceil((end - x) / acc)) + 1
    if max_steps is not None:
        limit = min(limit, int(max_steps))

    f_prev = spline_eval(table, x).value - target
    if f_prev == 0.0:
        return x
    x_prev = x
    for _ in range(limit):
        x = min(x_prev + acc, end)
        f = spline_eval(table, x).value - target
        if f == 0.0 or (f > 0.0) != (f_prev > 0.0):
            return x_prev + (x - x_prev) * f_prev / (f_prev - f)
        if x >= end:
            break
        x_prev, f_prev = x, f

    raise ConvergenceAssumptionError(
        f"Spline '{table.name}': value {target:.6g} not crossed in [{start:.6g}, "
        f"{x:.6g}] with step {acc:.3g}"
    )


# ============================================================================
# Bulk helium properties
# ============================================================================

@dataclass(frozen=True)
class BulkProperties:
    """Experimental bulk liquid helium properties at saturated vapor pressure.

    Parameters
    ----------
    enthalpy : SplineTable
        Enthalpy [J/mol] vs temperature [K].
    entropy : SplineTable
        Entropy [J/(K g)] vs temperature [K].
    dispersion : SplineTable
        Excitation energy [K] vs wavevector [Angstrom^-1].
    superfluid_fraction : SplineTable
        Unnormalized superfluid fraction vs temperature [K].
    """
    enthalpy_table: Optional[SplineTable] = None
    entropy_table: Optional[SplineTable] = None
    dispersion_table: Optional[SplineTable] = None
    superfluid_fraction_table: Optional[SplineTable] = None

    @classmethod
    def load(cls, path) -> 'BulkProperties':
        """Load tables from one .npz with arrays '<property>_knots' and
        '<property>_coefficients' for each available property."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Bulk property file not found: {path}")
        tables: Dict[str, SplineTable] = {}
        with np.load(path) as data:
            for prop in PROPERTY_NAMES:
                if f'{prop}_knots' in data.files:
                    tables[f'{prop}_table'] = SplineTable(
                        knots=data[f'{prop}_knots'],
                        coefficients=data[f'{prop}_coefficients'],
                        name=prop,
                    )
        if not tables:
            raise ValueError(f"No bulk property tables found in {path}")
        return cls(**tables)

    def save(self, path) -> None:
        arrays = {}
        for prop in PROPERTY_NAMES:
            table = getattr(self, f'{prop}_table')
            if table is not None:
                arrays[f'{prop}_knots'] = table.knots
                arrays[f'{prop}_coefficients'] = table.coefficients
        np.savez(path, **arrays)

    def _table(self, prop: str) -> SplineTable:
        table = getattr(self, f'{prop}_table')
        if table is None:
            raise ValueError(f"No {prop} table loaded")
        return table

    # ------------------------------------------------------------------
    # Forward lookups
    # ------------------------------------------------------------------

    def enthalpy(self, temperature: float) -> SplineValue:
        return spline_eval(self._table('enthalpy'), temperature)

    def entropy(self, temperature: float) -> SplineValue:
        return spline_eval(self._table('entropy'), temperature)

    def dispersion(self, k: float) -> SplineValue:
        """Excitation energy at wavevector k.

        The table does not reach k = 0; below its first knot the energy is
        interpolated linearly to zero.
        """
        table = self._table('dispersion')
        k_min = table.domain[0]
        if k < k_min:
            edge = spline_eval(table, k_min).value
            return SplineValue(k / k_min * edge, edge / k_min, 0.0)
        return spline_eval(table, k)

    def superfluid_fraction(self, temperature: float) -> SplineValue:
        """Superfluid fraction rho_s/rho in [0, 1]; zero at and above T_lambda."""
        if temperature >= LAMBDA_TEMPERATURE:
            return SplineValue(0.0, 0.0, 0.0)
        v = spline_eval(self._table('superfluid_fraction'), temperature)
        if v.value == SPLINE_SENTINEL:
            return v
        return SplineValue(v.value / SUPERFLUID_FRACTION_SCALE,
                           v.first / SUPERFLUID_FRACTION_SCALE,
                           v.second / SUPERFLUID_FRACTION_SCALE)

    # ------------------------------------------------------------------
    # Inverse lookups
    # ------------------------------------------------------------------

    def enthalpy_inverse(self, enthalpy: float, acc: float, max_steps: Optional[int] = None) -> float:
        """Temperature at which the enthalpy equals `enthalpy` (unique, increasing)."""
        return spline_inverse(self._table('enthalpy'), enthalpy, acc, max_steps=max_steps)

    def entropy_inverse(self, entropy: float, acc: float, max_steps: Optional[int] = None) -> float:
        return spline_inverse(self._table('entropy'), entropy, acc, max_steps=max_steps)

    def dispersion_inverse(self, energy: float, acc: float, max_steps: Optional[int] = None) -> float:
        """Wavevector on the phonon branch (below the maxon) with the given energy."""
        return spline_inverse(self._table('dispersion'), energy, acc, max_steps=max_steps)

    def superfluid_fraction_inverse(self, fraction: float, acc: float) -> float:
        """Temperature with the given superfluid fraction; T_lambda if never reached below it."""
        if fraction <= 0.0:
            return LAMBDA_TEMPERATURE
        table = self._table('superfluid_fraction')
        if fraction * SUPERFLUID_FRACTION_SCALE >= spline_eval(table, table.domain[0]).value:
            return table.domain[0]
        try:
            return spline_inverse(table, fraction * SUPERFLUID_FRACTION_SCALE, acc,
                                  upper=LAMBDA_TEMPERATURE)
        except ConvergenceAssumptionError:
            if table.domain[1] >= LAMBDA_TEMPERATURE:
                return LAMBDA_TEMPERATURE
            raise
