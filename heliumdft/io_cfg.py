"""Configuration and I/O module for the helium density-functional solver.

This module provides:
- SimulationConfig: immutable run configuration (atomic units internally)
- Keyword parameter-file loading (threads, grid, gstep, timestep, ...)
- YAML configuration loading and validation
- Example config generation
- Checkpoint save/restore of order parameters
- JSON and CSV output of diagnostics

Parameter-file units follow the usual conventions of the field: the grid
step is in bohr, time steps in fs and densities in Angstrom^-3; everything
is converted to atomic units on load.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import json
import re
import warnings

import numpy as np
import yaml

from heliumdft.errors import ConfigError
from heliumdft.functional import Model, Regime
from heliumdft.grid import Boundary, Wavefunction
from heliumdft.normalization import NormalizationMode
from heliumdft.units import AUTOMPS, HELIUM_MASS, density_from_angstrom, fs_to_au

PARAMETER_KEYS = (
    'threads', 'grid', 'gstep', 'timestep', 'timestep_el', 'iter',
    'itermode', 'dump', 'model', 'rho0', 'restart',
)


# ============================================================================
# Configuration value
# ============================================================================

@dataclass(frozen=True)
class SimulationConfig:
    """Immutable configuration of a simulation run (atomic units).

    Parameters
    ----------
    nx, ny, nz : int
        Grid dimensions.
    step : float
        Grid spacing [bohr].
    timestep : float
        Helium time step [hbar/hartree].
    iterations : int
        Number of iterations.
    threads : int
        FFT worker count.
    timestep_el : float
        Impurity time step [hbar/hartree].
    imaginary : bool
        Pure imaginary-time propagation.
    warmup : int
        Iterations over which real/imaginary time is blended (real-time runs).
    dump : int
        Sampling / snapshot cadence (0 disables).
    model : Model
        Functional terms.
    regime : Regime
        Liquid temperature regime.
    rho0 : float
        Bulk density [bohr^-3]; 0 selects the reference density of `regime`.
    restart : bool
        Start from a checkpoint instead of the initial state.
    boundary : Boundary
        Grid boundary treatment.
    absorb_width : float
        Absorbing shell width [bohr] (ABSORBING boundary only).
    absorb_amplitude : float
        Absorbing envelope strength.
    normalization : NormalizationMode
        Post-step normalization.
    natoms : float
        Target atom count for FIXED_PARTICLE_COUNT.
    recentre_until : int
        Droplet centre-of-mass recentring stops at this iteration.
    reference_divisor : int
        BULK_PINNED reference point is (nx, ny, nz) // reference_divisor.
    initial_state : str
        Name of the initial state (see heliumdft.states).
    state_radius, state_width : float
        Initial-state geometry [bohr].
    frame_velocity : tuple of 3 floats
        Velocity of the frame (and of an object at rest in it) relative to
        the liquid [bohr hartree].
    round_velocity : bool
        Round the frame velocity to the nearest value compatible with PBC.
    impurity : bool
        Propagate an impurity wavefunction coupled to the liquid.
    impurity_mass : float
        Impurity mass [m_e].
    pair_potential : str, optional
        Two-column (Angstrom, K) table of the impurity-helium potential.
    bubble_potential : bool
        Add the exponential-repulsion bubble potential as external potential.
    norm_tolerance : float
        Relative norm drift that triggers a warning in norm-conserving runs.
    check_finite : bool
        Raise NumericalInstabilityError as soon as a step produces NaN or Inf.
    checkpoint_every : int
        Checkpoint cadence (0 disables).
    output_dir : str
        Directory for checkpoints and diagnostics.
    """
    nx: int
    ny: int
    nz: int
    step: float
    timestep: float
    iterations: int
    threads: int = 1
    timestep_el: float = 0.0
    imaginary: bool = False
    warmup: int = 0
    dump: int = 0
    model: Model = Model.PLAIN
    regime: Regime = Regime.T0MK
    rho0: float = 0.0
    restart: bool = False
    boundary: Boundary = Boundary.PERIODIC
    absorb_width: float = 0.0
    absorb_amplitude: float = 0.1
    normalization: NormalizationMode = NormalizationMode.UNCONSTRAINED
    natoms: float = 0.0
    recentre_until: int = 0
    reference_divisor: int = 4
    initial_state: str = 'constant'
    state_radius: float = 10.0
    state_width: float = 1.0
    frame_velocity: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    round_velocity: bool = True
    impurity: bool = False
    impurity_mass: float = 1.0
    pair_potential: Optional[str] = None
    bubble_potential: bool = False
    norm_tolerance: float = 1e-6
    check_finite: bool = True
    checkpoint_every: int = 0
    output_dir: str = 'output'

    def __post_init__(self):
        for name in ('nx', 'ny', 'nz'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"Grid dimension '{name}' must be positive, got {getattr(self, name)}")
        if self.step <= 0:
            raise ConfigError(f"Grid step must be positive, got {self.step}")
        if self.timestep <= 0:
            raise ConfigError(f"Time step must be positive, got {self.timestep}")
        if self.iterations < 0:
            raise ConfigError(f"Iteration count must be non-negative, got {self.iterations}")
        if self.dump < 0 or self.checkpoint_every < 0 or self.warmup < 0:
            raise ConfigError("dump, checkpoint_every and warmup must be non-negative")
        if self.rho0 < 0:
            raise ConfigError(f"rho0 must be non-negative, got {self.rho0}")
        if self.impurity and self.timestep_el <= 0:
            raise ConfigError("Impurity propagation requires timestep_el > 0")
        if self.impurity_mass <= 0:
            raise ConfigError(f"Impurity mass must be positive, got {self.impurity_mass}")
        if self.normalization == NormalizationMode.FIXED_PARTICLE_COUNT and self.natoms <= 0:
            raise ConfigError("FIXED_PARTICLE_COUNT normalization requires natoms > 0")
        if len(self.frame_velocity) != 3:
            raise ConfigError(f"frame_velocity must have 3 components, got {self.frame_velocity}")

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.nx, self.ny, self.nz)

    def with_overrides(self, **changes) -> 'SimulationConfig':
        """Copy with some fields replaced (validated again)."""
        return replace(self, **changes)


# ============================================================================
# Keyword parameter file
# ============================================================================

def _parse_value(key: str, tokens: List[str], kind, count: int, lineno: int, path):
    if len(tokens) < count:
        raise ConfigError(
            f"{path}:{lineno}: '{key}' expects {count} value(s), got {len(tokens)}"
        )
    try:
        values = [kind(t) for t in tokens[:count]]
    except ValueError as e:
        raise ConfigError(f"{path}:{lineno}: invalid value for '{key}': {e}") from e
    return values if count > 1 else values[0]


def load_parameters(path, **overrides) -> SimulationConfig:
    """Load a keyword parameter file.

    The file holds one `key = value(s)` entry per line ('#' starts a
    comment; the '=' is optional). Required keys:

        threads = 4
        grid = 64 64 64          # nx ny nz
        gstep = 1.0              # bohr
        timestep = 10.0          # fs (helium)
        timestep_el = 0.1        # fs (impurity)
        iter = 10000
        itermode = 1             # 0 = real time, 1 = imaginary time
        dump = 500               # output cadence
        model = 1                # functional bit set (1 plain, 2 KC, 4 backflow)
        rho0 = 0.0218360         # Angstrom^-3 (0 = density of the regime)
        restart = 0

    Parameters
    ----------
    path : str or Path
        Parameter file.
    **overrides
        Extra SimulationConfig fields not expressible in the keyword format.

    Raises
    ------
    ConfigError
        If the file is missing, a key is absent or repeated, or a value
        does not parse.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Parameter file not found: {path}")

    specs = {
        'threads': (int, 1), 'grid': (int, 3), 'gstep': (float, 1),
        'timestep': (float, 1), 'timestep_el': (float, 1), 'iter': (int, 1),
        'itermode': (int, 1), 'dump': (int, 1), 'model': (int, 1),
        'rho0': (float, 1), 'restart': (int, 1),
    }
    values: Dict[str, Any] = {}
    with open(path, 'r') as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.split('#', 1)[0].strip()
            if not line:
                continue
            tokens = line.replace('=', ' ').split()
            key = tokens[0].lower()
            if key not in specs:
                warnings.warn(f"{path}:{lineno}: ignoring unknown key '{key}'", UserWarning)
                continue
            if key in values:
                raise ConfigError(f"{path}:{lineno}: duplicate key '{key}'")
            kind, count = specs[key]
            values[key] = _parse_value(key, tokens[1:], kind, count, lineno, path)

    missing = [k for k in PARAMETER_KEYS if k not in values]
    if missing:
        raise ConfigError(f"{path}: missing required key(s): {', '.join(missing)}")

    if values['itermode'] not in (0, 1):
        raise ConfigError(f"{path}: itermode must be 0 (real) or 1 (imaginary), got {values['itermode']}")
    try:
        model = Model(values['model'])
    except ValueError as e:
        raise ConfigError(f"{path}: invalid model {values['model']}: {e}") from e

    nx, ny, nz = values['grid']
    try:
        return SimulationConfig(
            nx=nx, ny=ny, nz=nz,
            step=values['gstep'],
            timestep=fs_to_au(values['timestep']),
            timestep_el=fs_to_au(values['timestep_el']),
            iterations=values['iter'],
            threads=values['threads'],
            imaginary=values['itermode'] == 1,
            dump=values['dump'],
            model=model,
            rho0=density_from_angstrom(values['rho0']),
            restart=bool(values['restart']),
            **overrides,
        )
    except TypeError as e:
        raise ConfigError(f"Invalid configuration override: {e}") from e


# ============================================================================
# YAML configuration
# ============================================================================

def _enum(kind, value, section: str):
    try:
        if isinstance(value, str):
            return kind[value.strip().upper()]
        return kind(value)
    except (KeyError, ValueError) as e:
        options = ', '.join(kind.__members__)
        raise ConfigError(f"Invalid {section} '{value}'. Options: {options}") from e


def _model(value) -> Model:
    if isinstance(value, (list, tuple)):
        model = Model(0)
        for item in value:
            model |= _enum(Model, item, 'functional.model')
        return model
    return _enum(Model, value, 'functional.model')


def load_config(yaml_path) -> SimulationConfig:
    """Load and parse a YAML configuration file.

    Parameters
    ----------
    yaml_path : str or Path
        YAML file with sections 'grid' and 'time' (required) and
        'functional', 'normalization', 'initial', 'frame', 'impurity',
        'output' (optional).

    Returns
    -------
    SimulationConfig

    Raises
    ------
    ConfigError
        If the file is missing or empty, a required section or key is
        missing, or a value is invalid.

    Examples
    --------
    >>> config = load_config("bubble.yaml")
    >>> print(f"{config.nx}x{config.ny}x{config.nz}, step {config.step} bohr")
    64x64x64, step 1.0 bohr

    See Also
    --------
    validate_config : Validate loaded configuration
    create_example_config : Generate example YAML file
    """
    yaml_path = Path(yaml_path)
    if not yaml_path.exists():
        raise ConfigError(f"Configuration file not found: {yaml_path}")

    with open(yaml_path, 'r') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {yaml_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Empty or invalid YAML file: {yaml_path}")

    for section in ('grid', 'time'):
        if section not in raw:
            raise ConfigError(f"Configuration missing required section '{section}'")

    try:
        grid_cfg = raw['grid']
        time_cfg = raw['time']
        func_cfg = raw.get('functional', {}) or {}
        norm_cfg = raw.get('normalization', {}) or {}
        init_cfg = raw.get('initial', {}) or {}
        frame_cfg = raw.get('frame', {}) or {}
        imp_cfg = raw.get('impurity', {}) or {}
        out_cfg = raw.get('output', {}) or {}

        velocity = tuple(float(v) / AUTOMPS for v in frame_cfg.get('velocity_mps', (0.0, 0.0, 0.0)))

        return SimulationConfig(
            nx=int(grid_cfg['nx']),
            ny=int(grid_cfg['ny']),
            nz=int(grid_cfg['nz']),
            step=float(grid_cfg['step']),
            threads=int(grid_cfg.get('threads', 1)),
            boundary=_enum(Boundary, grid_cfg.get('boundary', 'periodic'), 'grid.boundary'),
            absorb_width=float(grid_cfg.get('absorb_width', 0.0)),
            absorb_amplitude=float(grid_cfg.get('absorb_amplitude', 0.1)),
            timestep=fs_to_au(float(time_cfg['timestep_fs'])),
            timestep_el=fs_to_au(float(time_cfg.get('timestep_el_fs', 0.0))),
            iterations=int(time_cfg['iterations']),
            imaginary=bool(time_cfg.get('imaginary', False)),
            warmup=int(time_cfg.get('warmup', 0)),
            model=_model(func_cfg.get('model', 'PLAIN')),
            regime=Regime.from_name(func_cfg.get('regime', 'T0MK')),
            rho0=density_from_angstrom(float(func_cfg.get('rho0', 0.0))),
            normalization=_enum(NormalizationMode, norm_cfg.get('mode', 'unconstrained'),
                                'normalization.mode'),
            natoms=float(norm_cfg.get('natoms', 0.0)),
            recentre_until=int(norm_cfg.get('recentre_until', 0)),
            reference_divisor=int(norm_cfg.get('reference_divisor', 4)),
            initial_state=str(init_cfg.get('state', 'constant')),
            state_radius=float(init_cfg.get('radius', 10.0)),
            state_width=float(init_cfg.get('width', 1.0)),
            frame_velocity=velocity,
            round_velocity=bool(frame_cfg.get('round', True)),
            impurity=bool(imp_cfg.get('enabled', False)),
            impurity_mass=float(imp_cfg.get('mass', 1.0)),
            pair_potential=imp_cfg.get('pair_potential'),
            bubble_potential=bool(imp_cfg.get('bubble_potential', False)),
            restart=bool(raw.get('restart', False)),
            dump=int(out_cfg.get('dump', 0)),
            checkpoint_every=int(out_cfg.get('checkpoint_every', 0)),
            norm_tolerance=float(out_cfg.get('norm_tolerance', 1e-6)),
            check_finite=bool(out_cfg.get('check_finite', True)),
            output_dir=str(out_cfg.get('output_dir', 'output')),
        )
    except KeyError as e:
        raise ConfigError(f"Configuration missing required key {e}") from e
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"Invalid configuration value: {e}") from e


def validate_config(config: SimulationConfig) -> Tuple[bool, List[str]]:
    """Validate a configuration for numerical sanity.

    Returns
    -------
    is_valid : bool
        False if the configuration cannot run.
    warnings_list : list of str
        Problems found (fatal or advisory).

    Notes
    -----
    Checks performed:

    1. Kinetic phase per step at the grid cutoff, dt k_max^2 / 2m, is
       below pi (otherwise the highest modes alias in time).
    2. Absorbing shells fit in the box.
    3. BULK_PINNED runs have some imaginary-time component, since pinning
       is only applied on such steps.
    4. Frame momentum is compatible with the periodic box.
    """
    warnings_list = []
    is_valid = True

    kmax = np.pi / config.step
    phase = config.timestep * kmax ** 2 / (2.0 * HELIUM_MASS)
    if phase > np.pi:
        warnings_list.append(
            f"Time step too large for grid: kinetic phase {phase:.2f} rad at k_max exceeds pi"
        )

    if config.impurity:
        phase_el = config.timestep_el * kmax ** 2 / (2.0 * config.impurity_mass)
        if phase_el > np.pi:
            warnings_list.append(
                f"Impurity time step too large: kinetic phase {phase_el:.2f} rad at k_max exceeds pi"
            )

    if config.boundary == Boundary.ABSORBING:
        if config.absorb_width <= 0:
            is_valid = False
            warnings_list.append("ABSORBING boundary requires absorb_width > 0")
        elif 2 * config.absorb_width >= config.step * min(config.shape):
            is_valid = False
            warnings_list.append(
                f"Absorbing width {config.absorb_width:.3g} bohr leaves no interior in the box"
            )

    if (config.normalization == NormalizationMode.BULK_PINNED
            and not config.imaginary and config.warmup == 0):
        warnings_list.append(
            "BULK_PINNED normalization has no effect in pure real-time runs"
        )

    if any(v != 0.0 for v in config.frame_velocity) and config.boundary == Boundary.NEUMANN:
        is_valid = False
        warnings_list.append("Moving background requires a periodic grid")

    if config.pair_potential is not None and not Path(config.pair_potential).exists():
        is_valid = False
        warnings_list.append(f"Pair potential table not found: {config.pair_potential}")

    return is_valid, warnings_list


def create_example_config(output_path) -> None:
    """Write a commented example YAML configuration (electron bubble)."""
    yaml_content = """# Helium DFT simulation configuration
# Electron bubble in bulk superfluid helium, imaginary-time relaxation.

# ============================================================================
# Grid
# ============================================================================
grid:
  nx: 64
  ny: 64
  nz: 64
  step: 1.0              # bohr
  threads: 4             # scipy.fft workers
  boundary: periodic     # periodic | neumann | absorbing
  absorb_width: 0.0      # bohr (absorbing boundary only)
  absorb_amplitude: 0.1

# ============================================================================
# Time stepping
# ============================================================================
time:
  timestep_fs: 10.0      # helium time step
  timestep_el_fs: 0.1    # impurity time step
  iterations: 2000
  imaginary: true        # false = real time
  warmup: 0              # real-time runs: blend from imaginary over N iterations

# ============================================================================
# Functional
# ============================================================================
functional:
  model: [PLAIN]         # any of PLAIN, KC, BACKFLOW
  regime: T0MK           # T0MK, T400MK, ..., T2100MK
  rho0: 0.0              # Angstrom^-3, 0 = density of the regime

normalization:
  mode: bulk_pinned      # bulk_pinned | fixed_particle_count | unconstrained
  natoms: 0              # fixed_particle_count only
  recentre_until: 0
  reference_divisor: 4

initial:
  state: bubble          # constant | gaussian | bubble | vortex_line | vortex_ring
  radius: 10.0           # bohr
  width: 1.0             # bohr

frame:
  velocity_mps: [0.0, 0.0, 0.0]
  round: true

impurity:
  enabled: false
  mass: 1.0              # electron masses
  pair_potential: null   # two-column table, Angstrom / K
  bubble_potential: true # exponential-repulsion external potential

output:
  dump: 100
  checkpoint_every: 1000
  norm_tolerance: 1.0e-6 # drift warning, norm-conserving runs only
  check_finite: true     # stop on NaN / Inf
  output_dir: output
"""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        f.write(yaml_content)
    print(f"Created example configuration: {output_path}")


# ============================================================================
# Checkpoints
# ============================================================================

_CHECKPOINT_RE = re.compile(r'^(?P<name>.+)-(?P<iteration>\d+)$')


def checkpoint_path(directory, name: str, iteration: int) -> Path:
    return Path(directory) / f"{name}-{iteration}.npy"


def save_checkpoint(wf: Wavefunction, prefix: Optional[str], iteration: int, directory='.') -> Path:
    """Dump wf.psi to `<directory>/<prefix>-<iteration>.npy` (prefix defaults to wf.name)."""
    path = checkpoint_path(directory, prefix or wf.name, iteration)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.save(path, wf.psi)
    return path


def save_snapshot(snapshot, directory) -> Path:
    """Write a diagnostics Snapshot as `<directory>/<label>.npy`."""
    path = Path(directory) / f"{snapshot.label}.npy"
    path.parent.mkdir(parents=True, exist_ok=True)
    np.save(path, snapshot.data)
    return path


def load_checkpoint(path, shape: Optional[Tuple[int, int, int]] = None) -> Tuple[np.ndarray, Optional[int]]:
    """Read a checkpoint written by save_checkpoint.

    Returns
    -------
    psi : ndarray (complex)
    iteration : int or None
        Parsed from the file name when it has the `<name>-<iteration>` form.

    Raises
    ------
    ConfigError
        If the file is missing or its shape does not match `shape`.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Checkpoint not found: {path}")
    psi = np.load(path)
    if shape is not None and psi.shape != tuple(shape):
        raise ConfigError(f"Checkpoint {path} has shape {psi.shape}, expected {tuple(shape)}")
    match = _CHECKPOINT_RE.match(path.stem)
    iteration = int(match.group('iteration')) if match else None
    return psi.astype(np.complex128), iteration


# ============================================================================
# Diagnostics output
# ============================================================================

def _to_serializable(obj):
    """Recursively convert numpy types to native Python types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {key: _to_serializable(val) for key, val in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_serializable(item) for item in obj]
    elif isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, complex):
        return [obj.real, obj.imag]
    return obj


def save_diagnostics_json(filepath, diagnostics: Dict[str, Any]) -> None:
    """Save a diagnostics dictionary to JSON (arrays become lists)."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'w') as f:
        json.dump(_to_serializable(diagnostics), f, indent=2)
    print(f"Saved diagnostics to {filepath} ({len(diagnostics)} top-level keys)")


def save_diagnostics_csv(filepath, records: List[Dict[str, Any]]) -> None:
    """Save scalar diagnostics records as CSV, one row per sample."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    columns = []
    for record in records:
        for key, value in record.items():
            if np.isscalar(value) and key not in columns:
                columns.append(key)
    with open(filepath, 'w') as f:
        f.write(",".join(columns) + "\n")
        for record in records:
            row = []
            for key in columns:
                value = record.get(key, '')
                row.append(f"{value:.15e}" if isinstance(value, (float, np.floating)) else str(value))
            f.write(",".join(row) + "\n")
    print(f"Saved {len(records)} diagnostics rows to {filepath}")
