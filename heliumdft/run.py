#!/usr/bin/env python3
"""
Main command-line interface for the helium density-functional solver.

This script runs one simulation from a keyword parameter file or a YAML
configuration. It handles:
- Configuration loading and validation
- Bulk-liquid, restart and droplet start modes
- Simulation execution with progress reporting
- Checkpoint, CSV and JSON output
- Graceful keyboard interrupt handling

Usage:
    python -m heliumdft.run electron.par
    python -m heliumdft.run electron.par helium-500.npy --mode restart
    python -m heliumdft.run droplet.par 300 --mode droplet
    python -m heliumdft.run --yaml bubble.yaml --output-dir results --verbose
    python -m heliumdft.run electron.par --validate-only

Exit status: 0 on success, 1 on configuration or runtime errors, 2 on
usage errors and 130 when interrupted.
"""

import argparse
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from heliumdft.errors import ConfigError
from heliumdft.io_cfg import (
    SimulationConfig,
    load_config,
    load_parameters,
    save_diagnostics_csv,
    save_diagnostics_json,
    validate_config,
)
from heliumdft.simulation import Simulation
from heliumdft.units import AUTOANG, AUTOK, AUTOPA


# ============================================================================
# Global state for interrupt handling
# ============================================================================
_interrupted = False


def signal_handler(signum, frame):
    """Handle keyboard interrupt gracefully (polled between steps)."""
    global _interrupted
    _interrupted = True
    print("\n\nKeyboard interrupt received. Stopping after the current step...")


# ============================================================================
# Simulation runner
# ============================================================================

def run_simulation(
    config: SimulationConfig,
    restart: Optional[str] = None,
    droplet_n: Optional[float] = None,
    verbose: bool = False,
) -> Dict[str, Any]:
    """
    Build, initialize and run a Simulation.

    Parameters
    ----------
    config : SimulationConfig
        Loaded and validated configuration
    restart : str, optional
        Checkpoint file to resume from
    droplet_n : float, optional
        Atom count of a droplet start
    verbose : bool
        Enable progress output

    Returns
    -------
    results : dict
        - 'simulation': the Simulation (final fields)
        - 'records': diagnostics records
        - 'summary': summary statistics dict
        - 'interrupted': bool, True if interrupted
    """
    global _interrupted
    _interrupted = False
    signal.signal(signal.SIGINT, signal_handler)

    sim = Simulation(config, verbose=verbose)
    if verbose:
        print("=" * 80)
        print("HELIUM DENSITY-FUNCTIONAL SIMULATION")
        print("=" * 80)
        print()
    sim.initialize(restart=restart, droplet_n=droplet_n)

    if verbose:
        f = sim.functional
        print(f"Applied P = {f.bulk_pressure(sim.rho0) * AUTOPA / 1e6:.6f} MPa")
        print(f"rho0 = {sim.rho0 / AUTOANG ** 3:.6f} Angstrom^-3")
        print()

    t_start = time.time()
    records, interrupted = sim.run(stop=lambda: _interrupted)
    elapsed = time.time() - t_start

    if _interrupted:
        interrupted = True

    return {
        'simulation': sim,
        'records': records,
        'summary': compute_summary(sim, records, elapsed),
        'interrupted': interrupted,
    }


def compute_summary(sim: Simulation, records: List[Dict], elapsed_time: float) -> Dict[str, Any]:
    """
    Summary statistics of a run.

    Parameters
    ----------
    sim : Simulation
        Simulation after the run
    records : List[dict]
        Diagnostics records
    elapsed_time : float
        Wall-clock time [seconds]
    """
    n_iter = sim.start_iteration
    summary: Dict[str, Any] = {
        'timing': {
            'elapsed_seconds': elapsed_time,
            'final_iteration': n_iter,
        },
        'bulk': {
            'rho0_angstrom': sim.rho0 / AUTOANG ** 3,
            'mu0_K': sim.mu0 * AUTOK,
            'energy_per_atom_K': sim.functional.bulk_energy(sim.rho0) * AUTOK,
        },
    }
    if records:
        first, last = records[0], records[-1]
        summary['energy'] = {
            'initial_K': first['energy'] * AUTOK,
            'final_K': last['energy'] * AUTOK,
            'final_vs_bulk_K': last['energy_vs_bulk_K'],
        }
        summary['natoms'] = {
            'initial': first['natoms'],
            'final': last['natoms'],
            'max_norm_drift': float(np.max([r['norm_drift'] for r in records])),
        }
        if 'added_mass' in last:
            summary['added_mass'] = last['added_mass']
    return summary


def print_summary(summary: Dict[str, Any]) -> None:
    """Print human-readable simulation summary."""
    print()
    print("=" * 80)
    print("SIMULATION SUMMARY")
    print("=" * 80)
    print()

    t = summary['timing']
    print("Performance:")
    print(f"  Wall time:          {t['elapsed_seconds']:.2f} seconds")
    print(f"  Final iteration:    {t['final_iteration']:,}")
    print()

    b = summary['bulk']
    print("Bulk liquid:")
    print(f"  rho0:               {b['rho0_angstrom']:.6f} Angstrom^-3")
    print(f"  mu0:                {b['mu0_K']:.6f} K")
    print(f"  E/N:                {b['energy_per_atom_K']:.6f} K")
    print()

    if 'energy' in summary:
        e = summary['energy']
        n = summary['natoms']
        print("Energy:")
        print(f"  Initial:            {e['initial_K']:+.10e} K")
        print(f"  Final:              {e['final_K']:+.10e} K")
        print(f"  Final vs. bulk:     {e['final_vs_bulk_K']:+.6f} K")
        print()
        print("Particle number:")
        print(f"  Initial:            {n['initial']:.6f}")
        print(f"  Final:              {n['final']:.6f}")
        print(f"  Max. norm drift:    {n['max_norm_drift']:.3e}")
        print()
    if 'added_mass' in summary:
        print(f"Added mass:           {summary['added_mass']:.6f} He atoms")
        print()


def save_outputs(results: Dict[str, Any], output_dir: Path, verbose: bool = False) -> None:
    """Save final checkpoints, diagnostics CSV and JSON."""
    output_dir.mkdir(parents=True, exist_ok=True)
    sim: Simulation = results['simulation']
    records = results['records']

    paths = sim.checkpoint(sim.start_iteration)
    csv_path = output_dir / "diagnostics.csv"
    json_path = output_dir / "diagnostics.json"
    if verbose:
        print(f"Saving diagnostics to {csv_path}...")
    save_diagnostics_csv(csv_path, records)
    save_diagnostics_json(json_path, {
        'records': records,
        'summary': results['summary'],
        'interrupted': results['interrupted'],
    })

    print()
    print(f"Outputs saved to: {output_dir.absolute()}")
    for path in paths + [csv_path, json_path]:
        print(f"  - {Path(path).name}")
    print()


# ============================================================================
# Command-line interface
# ============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog='heliumdft.run',
        description=(
            'Helium density-functional solver: ground states and dynamics of '
            'superfluid helium (optionally with an embedded impurity) on a '
            'regular 3-D grid.'
        ),
        epilog=(
            'Examples:\n'
            '  python -m heliumdft.run electron.par\n'
            '  python -m heliumdft.run electron.par output/helium-500.npy --mode restart\n'
            '  python -m heliumdft.run droplet.par 300 --mode droplet\n'
            '  python -m heliumdft.run --yaml bubble.yaml --verbose\n'
            '\n'
            'Parameter file keys: threads grid gstep timestep timestep_el iter\n'
            'itermode dump model rho0 restart.'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        'params',
        nargs='?',
        type=str,
        help='Keyword parameter file',
    )

    parser.add_argument(
        'arg',
        nargs='?',
        type=str,
        help='Restart checkpoint (restart mode) or atom count (droplet mode)',
    )

    parser.add_argument(
        '--yaml',
        type=str,
        default=None,
        help='YAML configuration file (instead of a parameter file)',
    )

    parser.add_argument(
        '--mode',
        choices=['restart', 'droplet'],
        default=None,
        help='Start mode requiring ARG (default: restart if the config says so)',
    )

    parser.add_argument(
        '--output-dir',
        type=str,
        default=None,
        help='Output directory for results (default: from config, else output/)',
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output (progress, diagnostics, etc.)',
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Validate configuration and exit (no simulation)',
    )

    parser.add_argument(
        '--plot',
        action='store_true',
        help='Save density-slice and diagnostics plots',
    )

    return parser


def main(argv=None):
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.params is None and args.yaml is None:
        parser.error("a parameter file or --yaml CONFIG is required")
    if args.params is not None and args.yaml is not None:
        parser.error("give either a parameter file or --yaml, not both")

    # 1) Load configuration
    try:
        if args.yaml is not None:
            config = load_config(args.yaml)
        else:
            config = load_parameters(args.params)
    except ConfigError as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.output_dir is not None:
        config = config.with_overrides(output_dir=args.output_dir)

    mode = args.mode or ('restart' if config.restart else None)
    restart = None
    droplet_n = None
    if mode is not None and args.arg is None:
        parser.error(f"mode '{mode}' requires ARG "
                     f"({'checkpoint file' if mode == 'restart' else 'atom count'})")
    if mode == 'restart':
        restart = args.arg
    elif mode == 'droplet':
        try:
            droplet_n = float(args.arg)
        except ValueError:
            parser.error(f"droplet atom count must be a number, got '{args.arg}'")

    # 2) Validate configuration
    is_valid, warnings_list = validate_config(config)
    if warnings_list:
        print("Configuration warnings/errors:")
        for w in warnings_list:
            print(f"    - {w}")
        print()

    if not is_valid:
        print("Configuration is INVALID. Please fix errors above.", file=sys.stderr)
        return 1

    if args.validate_only:
        print("Configuration validated successfully. Exiting (--validate-only mode).")
        return 0

    # 3) Run simulation
    try:
        results = run_simulation(config, restart=restart, droplet_n=droplet_n,
                                 verbose=args.verbose)
    except KeyboardInterrupt:
        print("\n\nSimulation interrupted by user. Exiting without saving.")
        return 130
    except (ConfigError, ValueError, RuntimeError, MemoryError) as e:
        print(f"\nERROR: Simulation failed: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1

    # 4) Summary and outputs
    print_summary(results['summary'])
    output_dir = Path(config.output_dir)
    try:
        save_outputs(results, output_dir, verbose=args.verbose)
        if args.plot:
            from heliumdft.viz import plot_density_slice, plot_diagnostics
            plot_density_slice(results['simulation'].helium, output_dir / "density.png")
            if results['records']:
                plot_diagnostics(results['records'], output_dir / "diagnostics.png")
    except OSError as e:
        print(f"ERROR: Failed to save outputs: {e}", file=sys.stderr)
        return 1

    print()
    print("=" * 80)
    print("Simulation complete!")
    print("=" * 80)
    print()

    if results['interrupted']:
        print("Note: Simulation was interrupted. Results may be incomplete.")
        return 130

    return 0


if __name__ == '__main__':
    sys.exit(main())
