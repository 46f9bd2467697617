"""Visualization module for helium density-functional simulations.

This module provides plotting functions for simulation output:
- Density slices through the centre of the box (xy and xz planes)
- Diagnostics history (energy relative to bulk, particle number, norm drift)

Plots are written with the non-interactive Agg backend at dpi=150, with
lengths in Angstrom, densities in Angstrom^-3 and energies in K.
"""

from pathlib import Path
from typing import Dict, List

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from heliumdft.grid import Wavefunction
from heliumdft.units import AUTOANG, density_to_angstrom


def plot_density_slice(wf: Wavefunction, output_path, dpi: int = 150) -> None:
    """Plot |psi|^2 in the central xy and xz planes.

    Parameters
    ----------
    wf : Wavefunction
        Field to plot.
    output_path : str or Path
        Output image file.
    dpi : int, optional
        Output resolution (default: 150)
    """
    grid = wf.grid
    rho = density_to_angstrom(wf.density())
    x, y, z = (a * AUTOANG for a in grid.axes)
    ix, iy, iz = grid.nx // 2, grid.ny // 2, grid.nz // 2

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    im1 = ax1.pcolormesh(x, y, rho[:, :, iz].T, shading='auto', cmap='viridis')
    ax1.set_xlabel('x [Angstrom]', fontsize=12)
    ax1.set_ylabel('y [Angstrom]', fontsize=12)
    ax1.set_title(f'{wf.name}: z = {z[iz]:.2f} Angstrom', fontsize=12)
    ax1.set_aspect('equal')
    fig.colorbar(im1, ax=ax1, label='density [Angstrom$^{-3}$]')

    im2 = ax2.pcolormesh(x, z, rho[:, iy, :].T, shading='auto', cmap='viridis')
    ax2.set_xlabel('x [Angstrom]', fontsize=12)
    ax2.set_ylabel('z [Angstrom]', fontsize=12)
    ax2.set_title(f'{wf.name}: y = {y[iy]:.2f} Angstrom', fontsize=12)
    ax2.set_aspect('equal')
    fig.colorbar(im2, ax=ax2, label='density [Angstrom$^{-3}$]')

    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    print(f"Saved density slice plot to {output_path}")


def plot_diagnostics(records: List[Dict], output_path, dpi: int = 150) -> None:
    """Plot the diagnostics history of a run.

    Three panels against iteration: energy relative to bulk [K], number
    of helium atoms and relative norm drift (log scale).

    Parameters
    ----------
    records : list of dict
        Records from Simulation.run (need 'iteration', 'natoms',
        'norm_drift' and 'energy_vs_bulk_K').
    output_path : str or Path
        Output image file.
    dpi : int, optional
        Output resolution (default: 150)
    """
    if not records:
        raise ValueError("No diagnostics records to plot")

    it = np.array([r['iteration'] for r in records])
    energy = np.array([r['energy_vs_bulk_K'] for r in records])
    natoms = np.array([r['natoms'] for r in records])
    drift = np.array([r['norm_drift'] for r in records])

    fig, (ax1, ax2, ax3) = plt.subplots(3, 1, figsize=(10, 10), sharex=True)

    ax1.plot(it, energy, 'b-', linewidth=1.5)
    ax1.set_ylabel('E - E$_{bulk}$ [K]', fontsize=12)
    ax1.set_title('Energy with respect to bulk', fontsize=14, fontweight='bold')
    ax1.grid(True, alpha=0.3)

    ax2.plot(it, natoms, 'k-', linewidth=1.5)
    ax2.set_ylabel('N [atoms]', fontsize=12)
    ax2.grid(True, alpha=0.3)

    # Zero drift cannot be shown on a log axis
    ax3.semilogy(it, np.maximum(drift, 1e-16), 'r-', linewidth=1.5)
    ax3.set_xlabel('Iteration', fontsize=12)
    ax3.set_ylabel('|N - N$_0$| / N$_0$', fontsize=12)
    ax3.grid(True, alpha=0.3)

    textstr = f'Final: {energy[-1]:.4f} K\nN: {natoms[-1]:.4f}'
    ax1.text(0.02, 0.98, textstr, transform=ax1.transAxes,
             verticalalignment='top', bbox=dict(boxstyle='round',
             facecolor='wheat', alpha=0.5), fontsize=10)

    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    print(f"Saved diagnostics plot to {output_path}")
