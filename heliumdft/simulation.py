"""
Simulation object: one immutable configuration, all grids and policies.

A Simulation is built from a SimulationConfig and owns

- the Grid and the Orsay-Trento functional evaluated on it,
- the helium Wavefunction and, optionally, an impurity Wavefunction with
  its own mass and time step,
- the static external potential and the impurity-helium pair kernel,
- the NormalizationPolicy and PredictorCorrector of each field,
- the DiagnosticSampler.

Per iteration the impurity is advanced first in the potential of the
current helium density, V_pair * rho_He, then the helium in
ext + V_pair * rho_imp (both products are convolutions). The impurity is
kept at unit norm.

The interrupt flag of heliumdft.run is polled between steps only, so an
interrupted run always stops on a completed step.
"""

from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
import sys

import numpy as np

from heliumdft.convolution import ConvolutionEvaluator, PairKernel
from heliumdft.diagnostics import (
    DiagnosticSampler,
    Snapshot,
    drag_force,
    hydrodynamic_radius,
    kinetic_energy,
    mobility,
)
from heliumdft.errors import ConfigError
from heliumdft.functional import OTFunctional
from heliumdft.grid import Boundary, Grid, Wavefunction
from heliumdft.io_cfg import SimulationConfig, load_checkpoint, save_checkpoint, save_snapshot
from heliumdft.normalization import AbsorbingShell, NormalizationMode, NormalizationPolicy
from heliumdft.potentials import ExponentialRepulsion, exponential_repulsion
from heliumdft.propagate import (
    PredictorCorrector,
    momentum_for_velocity,
    round_velocity,
    timestep_schedule,
)
from heliumdft.states import StateContext, initialize as initialize_state
from heliumdft.units import AUTOK

# Width [bohr] of the Gaussian initial guess for the impurity
IMPURITY_WIDTH = 14.5


def _interrupted() -> bool:
    run_module = sys.modules.get('heliumdft.run')
    return bool(run_module is not None and getattr(run_module, '_interrupted', False))


class Simulation:
    """Owner of every field and policy of a run.

    Parameters
    ----------
    config : SimulationConfig
        Immutable run configuration.
    verbose : bool
        Print setup information and progress.
    write_files : bool
        Write snapshots and checkpoints to config.output_dir.

    Examples
    --------
    >>> sim = Simulation(load_parameters("electron.par"))
    >>> sim.initialize()
    >>> records, interrupted = sim.run()
    """

    def __init__(self, config: SimulationConfig, verbose: bool = False, write_files: bool = True):
        self.config = config
        self.verbose = verbose
        self.write_files = write_files
        self.output_dir = Path(config.output_dir)

        self.grid = Grid(config.nx, config.ny, config.nz, config.step,
                         boundary=config.boundary, threads=config.threads)
        self.functional = OTFunctional(self.grid, model=config.model, regime=config.regime)
        self.rho0 = config.rho0 if config.rho0 > 0 else self.functional.rho0
        self.mu0 = self.functional.bulk_chempot(self.rho0)

        absorb = None
        if config.boundary == Boundary.ABSORBING:
            absorb = AbsorbingShell.uniform(config.absorb_width, config.absorb_amplitude)

        mass = self.functional.mass
        self.velocity = np.array(config.frame_velocity, dtype=np.float64)
        if config.round_velocity:
            lengths = np.array(self.grid.shape) * self.grid.step
            self.velocity = np.array([round_velocity(v, L, mass)
                                      for v, L in zip(self.velocity, lengths)])

        self.helium = Wavefunction(self.grid, mass, k0=momentum_for_velocity(self.velocity, mass),
                                   absorb=absorb, name='helium')

        self.ext = None
        if config.bubble_potential:
            self.ext = self.grid.map(exponential_repulsion, ExponentialRepulsion())

        self.impurity: Optional[Wavefunction] = None
        self.pair: Optional[PairKernel] = None
        self.pair_conv: Optional[ConvolutionEvaluator] = None
        self.impurity_integrator: Optional[PredictorCorrector] = None
        if config.impurity:
            self.impurity = Wavefunction(self.grid, config.impurity_mass, norm=1.0, name='el')
            self.pair = self._pair_kernel()
            self.pair_conv = ConvolutionEvaluator(self.grid)
            self.pair_conv.prepare(kernel=self.pair)
            self.impurity_integrator = PredictorCorrector(
                policy=NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT, natoms=1.0),
                check_finite=config.check_finite,
            )

        self.policy: Optional[NormalizationPolicy] = None
        self.integrator: Optional[PredictorCorrector] = None
        self.sampler = DiagnosticSampler(
            config.dump,
            writer=self._write_snapshot if write_files else None,
            functional=self.functional,
            norm_tolerance=config.norm_tolerance,
        )
        self.start_iteration = 0

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _pair_kernel(self) -> PairKernel:
        if self.config.pair_potential is not None:
            return PairKernel.from_table(self.config.pair_potential, self.grid, name='pair')
        # Exponential core centred on the impurity
        values = self.grid.map_wrapped(exponential_repulsion, ExponentialRepulsion(radd=0.0))
        return PairKernel(name='pair', values=values, grid=self.grid)

    def _build_policy(self, droplet_n: Optional[float]) -> NormalizationPolicy:
        cfg = self.config
        if droplet_n is not None:
            return NormalizationPolicy(NormalizationMode.FIXED_PARTICLE_COUNT, natoms=droplet_n,
                                       recentre_until=cfg.recentre_until)
        mode = cfg.normalization
        if mode == NormalizationMode.BULK_PINNED:
            return NormalizationPolicy(mode, rho0=self.rho0, divisor=cfg.reference_divisor)
        if mode == NormalizationMode.FIXED_PARTICLE_COUNT:
            return NormalizationPolicy(mode, natoms=cfg.natoms, recentre_until=cfg.recentre_until)
        return NormalizationPolicy(mode)

    def initialize(self, restart=None, droplet_n: Optional[float] = None) -> None:
        """Set the initial fields and build the integrators.

        Parameters
        ----------
        restart : str or Path, optional
            Helium checkpoint to resume from. The impurity is read from the
            matching `el-<iteration>.npy` next to it when present.
        droplet_n : float, optional
            Start a droplet of this many atoms with FIXED_PARTICLE_COUNT
            normalization instead of the configured state.

        Raises
        ------
        ConfigError
            If the checkpoint is missing or does not fit the grid.
        """
        cfg = self.config
        if droplet_n is not None and droplet_n <= 0:
            raise ConfigError(f"Droplet atom count must be positive, got {droplet_n}")
        self.policy = self._build_policy(droplet_n)
        mu0 = 0.0 if self.policy.mode == NormalizationMode.FIXED_PARTICLE_COUNT else self.mu0
        self.integrator = PredictorCorrector(self.functional, ext=self.ext, mu0=mu0,
                                             policy=self.policy, check_finite=cfg.check_finite)

        if restart is not None:
            psi, iteration = load_checkpoint(restart, shape=self.grid.shape)
            self.helium.psi[...] = psi
            self.start_iteration = iteration if iteration is not None else 0
            if self.impurity is not None and iteration is not None:
                el_path = Path(restart).parent / f"{self.impurity.name}-{iteration}.npy"
                if el_path.exists():
                    self.impurity.psi[...] = load_checkpoint(el_path, shape=self.grid.shape)[0]
                else:
                    self._init_impurity()
            elif self.impurity is not None:
                self._init_impurity()
        else:
            if droplet_n is not None:
                ctx = StateContext(natoms=droplet_n, radius=cfg.state_radius, width=cfg.state_width)
                initialize_state(self.helium, 'gaussian', ctx)
            else:
                ctx = StateContext(rho0=self.rho0, natoms=cfg.natoms,
                                   radius=cfg.state_radius, width=cfg.state_width)
                initialize_state(self.helium, cfg.initial_state, ctx)
            if self.impurity is not None:
                self._init_impurity()
            self.start_iteration = 0

        self.helium.norm = self.helium.current_norm()

        if self.verbose:
            print(f"Grid: {self.grid}")
            print(f"Functional: {self.functional!r}")
            print(f"rho0 = {self.rho0:.6e} bohr^-3, mu0 = {self.mu0 * AUTOK:.6f} K")
            print(f"Normalization: {self.policy.mode.value}")
            if self.impurity is not None:
                print(f"Impurity included (mass {self.impurity.mass:.6g} m_e)")
            if restart is not None:
                print(f"Restarting from {restart} at iteration {self.start_iteration}")

    def _init_impurity(self) -> None:
        initialize_state(self.impurity, 'gaussian',
                         StateContext(natoms=1.0, radius=IMPURITY_WIDTH))
        self.impurity.normalize(1.0)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _coupling(self, wf: Wavefunction) -> np.ndarray:
        """V_pair * |psi|^2 (convolution)."""
        return self.pair_conv.evaluate(self.pair, wf.density())

    def helium_potential(self):
        """External potential felt by the helium this iteration."""
        if self.impurity is None:
            return self.ext
        coupling = self._coupling(self.impurity)
        return coupling if self.ext is None else self.ext + coupling

    def step(self, iteration: int) -> Dict:
        """Advance impurity (if any) and helium by one iteration."""
        if self.integrator is None:
            raise RuntimeError("Simulation.step() called before initialize()")
        cfg = self.config
        info = {}
        if self.impurity is not None:
            ts_el = timestep_schedule(cfg.timestep_el, iteration, cfg.warmup, cfg.imaginary)
            self.impurity_integrator.step(self.impurity, ts_el, iteration,
                                          ext=self._coupling(self.helium))
            info['ts_el'] = ts_el
        ts = timestep_schedule(cfg.timestep, iteration, cfg.warmup, cfg.imaginary)
        info.update(self.integrator.step(self.helium, ts, iteration, ext=self.helium_potential()))
        return info

    # ------------------------------------------------------------------
    # Diagnostics and output
    # ------------------------------------------------------------------

    def _write_snapshot(self, snapshot) -> None:
        save_snapshot(snapshot, self.output_dir)

    def _conserves_norm(self) -> bool:
        """True when nothing in the run changes the particle number."""
        cfg = self.config
        return not cfg.imaginary and cfg.warmup == 0 and cfg.boundary != Boundary.ABSORBING

    def _transport(self, record: Dict) -> None:
        """Drag, mobility and Stokes radius of the impurity in the moving frame."""
        axis = int(np.flatnonzero(self.velocity)[0])
        v = float(self.velocity[axis])
        force = drag_force(self.impurity, self._coupling(self.helium), axis=axis)
        record['drag_force'] = force
        if force == 0.0:
            return
        record['mobility'] = mobility(v, force)
        regime = self.functional.regime.parameters
        if regime.viscosity > 0.0 and regime.normal_fraction > 0.0:
            record['hydrodynamic_radius'] = hydrodynamic_radius(
                abs(record['mobility']), regime.viscosity, regime.normal_fraction,
            )

    def sample(self, iteration: int, force: bool = False) -> Optional[Dict]:
        """Diagnostics record for the current state (None if not due).

        Raises
        ------
        NumericalInstabilityError
            If a field contains NaN or Inf.
        """
        record = self.sampler.sample(self.helium, iteration, ext=self.helium_potential(),
                                     velocity=self.velocity,
                                     check_drift=self._conserves_norm(), force=force)
        if record is None:
            return None
        if self.impurity is not None:
            el_kin = kinetic_energy(self.impurity)
            record['impurity_kinetic'] = el_kin
            record['energy'] += el_kin
            if np.count_nonzero(self.velocity) == 1:
                self._transport(record)
            if self.write_files:
                save_snapshot(Snapshot.of(self.impurity, iteration), self.output_dir)
        record['energy_vs_bulk_K'] = (
            record['energy'] - self.functional.bulk_energy(self.rho0) * record['natoms']
        ) * AUTOK
        return record

    def checkpoint(self, iteration: int) -> List[Path]:
        """Write restartable checkpoints of every field."""
        paths = [save_checkpoint(self.helium, None, iteration, self.output_dir)]
        if self.impurity is not None:
            paths.append(save_checkpoint(self.impurity, None, iteration, self.output_dir))
        return paths

    def _record(self, iteration: int, record: Dict, records: List[Dict], callback) -> None:
        records.append(record)
        if callback is not None:
            callback(iteration, record)
        if self.verbose:
            print(f"  iter {iteration:7d}: N = {record['natoms']:.6f}, "
                  f"E - E_bulk = {record['energy_vs_bulk_K']:.6f} K")

    def run(self, n_iter: Optional[int] = None,
            callback: Optional[Callable[[int, Dict], None]] = None,
            stop: Optional[Callable[[], bool]] = None) -> Tuple[List[Dict], bool]:
        """Iterate from start_iteration.

        Iteration i is sampled (at the dump cadence) before its step; the
        state reached when the loop ends is always sampled under the index
        of the next iteration, so the last record describes the final fields.

        Parameters
        ----------
        n_iter : int, optional
            Number of iterations (default: config.iterations).
        callback : callable, optional
            callback(iteration, record) after every sampled iteration.
        stop : callable, optional
            Polled before every step; True ends the run. Defaults to the
            interrupt flag of heliumdft.run.

        Returns
        -------
        records : list of dict
            Diagnostics records (see DiagnosticSampler.sample).
        interrupted : bool
            True if the run stopped on the interrupt flag.
        """
        if self.integrator is None:
            self.initialize()
        stop = stop if stop is not None else _interrupted
        cfg = self.config
        n_iter = cfg.iterations if n_iter is None else n_iter
        start = self.start_iteration
        end = start + n_iter
        progress_every = max(1, n_iter // 10)

        records: List[Dict] = []
        interrupted = False
        reached = end

        if self.verbose:
            print(f"Starting propagation: {n_iter} iterations, dt={cfg.timestep:.6e} au"
                  f" ({'imaginary' if cfg.imaginary else 'real'} time)")

        for iteration in range(start, end):
            if stop():
                print(f"\nPropagation interrupted at iteration {iteration}.")
                interrupted = True
                reached = iteration
                break

            record = self.sample(iteration)
            if record is not None:
                self._record(iteration, record, records, callback)

            self.step(iteration)

            if self.write_files and cfg.checkpoint_every > 0 and (iteration + 1) % cfg.checkpoint_every == 0:
                self.checkpoint(iteration + 1)

            if self.verbose and cfg.dump == 0 and (iteration - start + 1) % progress_every == 0:
                print(f"  Progress: {iteration - start + 1}/{n_iter} "
                      f"({100.0 * (iteration - start + 1) / n_iter:.1f}%)")

        if n_iter > 0:
            self._record(reached, self.sample(reached, force=True), records, callback)

        self.start_iteration = reached
        return records, interrupted
