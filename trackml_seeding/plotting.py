from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.colors import Normalize

from trackml_seeding.edm import SeedCollection, SpacepointCollection
from trackml_seeding.grid import SpacepointGrid

logger = logging.getLogger(__name__)

__all__ = ["plot_seeds_rz", "plot_grid_occupancy"]


def _show_and_close(fig, *, do_show: bool = True, out_path: Optional[str] = None) -> None:
    """Lay out, optionally save and show, then always close ``fig``."""
    fig.tight_layout()
    if out_path:
        fig.savefig(out_path, dpi=150)
        logger.info("Saved figure to %s", out_path)
    if do_show:
        plt.show()
    plt.close(fig)


def plot_seeds_rz(
    seeds: SeedCollection,
    spacepoints: SpacepointCollection,
    *,
    max_seeds: Optional[int] = None,
    show: bool = True,
    out_path: Optional[str] = None,
) -> None:
    r"""
    Seeds as three-point polylines in :math:`(z, r)` over the spacepoint cloud.

    Polylines are colored by seed weight. ``max_seeds`` keeps only the highest
    weighted seeds.
    """
    fig, ax = plt.subplots(figsize=(12, 7))
    ax.scatter(spacepoints.z, spacepoints.radius(), s=1, c="0.75", alpha=0.5, label="spacepoints")

    if len(seeds):
        order = np.argsort(-seeds.weight, kind="stable")
        if max_seeds is not None:
            order = order[:max_seeds]
        norm = Normalize(vmin=float(seeds.weight[order].min()), vmax=float(seeds.weight[order].max()))
        cmap = plt.get_cmap("viridis")
        r = spacepoints.radius()
        for k in order:
            idx = [seeds.bottom[k], seeds.middle[k], seeds.top[k]]
            ax.plot(spacepoints.z[idx], r[idx], "o-", color=cmap(norm(seeds.weight[k])),
                    linewidth=0.9, markersize=2.5, alpha=0.85)
        sm = plt.cm.ScalarMappable(norm=norm, cmap=cmap)
        fig.colorbar(sm, ax=ax, label="seed weight")

    ax.set_xlabel("z (mm)")
    ax.set_ylabel("r (mm)")
    ax.set_title(f"Seeds in r-z ({len(seeds)} seeds)")
    ax.grid(True, alpha=0.3)
    _show_and_close(fig, do_show=show, out_path=out_path)


def plot_grid_occupancy(grid: SpacepointGrid, *, show: bool = True, out_path: Optional[str] = None) -> None:
    """Heat map of spacepoints per ``(phi, z)`` bin."""
    counts = np.diff(grid.offsets).reshape(grid.phi_axis.n_bins, grid.z_axis.n_bins)
    fig, ax = plt.subplots(figsize=(10, 6))
    mesh = ax.pcolormesh(grid.z_axis.edges, grid.phi_axis.edges, counts, shading="flat", cmap="magma")
    fig.colorbar(mesh, ax=ax, label="spacepoints")
    ax.set_xlabel("z (mm)")
    ax.set_ylabel(r"$\phi$ (rad)")
    ax.set_title("Grid occupancy")
    _show_and_close(fig, do_show=show, out_path=out_path)
