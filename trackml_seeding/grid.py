from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from trackml_seeding.config import SeedFinderConfig
from trackml_seeding.edm import SpacepointCollection
from trackml_seeding.errors import ConfigurationError
from trackml_seeding.memory import exclusive_scan

logger = logging.getLogger(__name__)

__all__ = ["Axis", "SpacepointGrid", "make_axes", "build_grid"]


class Axis:
    r"""
    One binned coordinate with (possibly non-uniform) edges.

    Bin ``i`` covers ``[edges[i], edges[i+1])``; the last bin also includes its
    upper edge. A circular axis wraps around when neighbors are requested.
    """

    def __init__(self, edges: Sequence[float], circular: bool = False) -> None:
        edges = np.asarray(edges, dtype=np.float64)
        if edges.ndim != 1 or edges.size < 2:
            raise ConfigurationError("An axis needs at least two edges (one bin)")
        if np.any(np.diff(edges) <= 0.0):
            raise ConfigurationError("Axis edges must be strictly increasing")
        self.edges = edges
        self.circular = bool(circular)

    @classmethod
    def uniform(cls, lo: float, hi: float, n: int, circular: bool = False) -> "Axis":
        if n < 1:
            raise ConfigurationError(f"Axis over [{lo}, {hi}] has zero bins")
        return cls(np.linspace(lo, hi, int(n) + 1), circular)

    @property
    def n_bins(self) -> int:
        return int(self.edges.size - 1)

    def index(self, values) -> np.ndarray:
        """Bin index of each value, ``-1`` outside ``[edges[0], edges[-1]]``."""
        v = np.asarray(values, dtype=np.float64)
        idx = np.searchsorted(self.edges, v, side="right") - 1
        idx = np.where(v == self.edges[-1], self.n_bins - 1, idx)
        inside = (v >= self.edges[0]) & (v <= self.edges[-1])
        return np.where(inside, idx, -1).astype(np.int64)

    def neighborhood(self, i: int, k: int) -> List[int]:
        """Distinct bins within ``k`` of bin ``i``, in ascending offset order."""
        n = self.n_bins
        out: List[int] = []
        for d in range(-k, k + 1):
            j = i + d
            if self.circular:
                j %= n
            elif not 0 <= j < n:
                continue
            if j not in out:
                out.append(j)
        return out

    def __repr__(self) -> str:
        kind = "circular" if self.circular else "open"
        return f"Axis({kind}, n_bins={self.n_bins}, [{self.edges[0]:.4g}, {self.edges[-1]:.4g}])"


def _helix_phi_bins(config: SeedFinderConfig) -> int:
    # Azimuthal deflection of a minimum-pT helix between the innermost
    # possible bottom radius and r_max sets the bin width.
    two_r = 2.0 * config.min_helix_radius
    r_max = config.r_max
    r_in = max(0.0, r_max - config.delta_r_max)
    outer = math.asin(min(1.0, r_max / two_r))
    inner = math.asin(min(1.0, r_in / two_r))
    delta = (outer - inner) / config.phi_bin_deflection_coverage
    if delta <= 0.0:
        raise ConfigurationError("Helix-derived phi bin width is zero")
    return int(math.floor((config.phi_max - config.phi_min) / delta))


def make_axes(config: SeedFinderConfig):
    r"""
    Build the ``(phi, z)`` axes for a finder configuration.

    Phi
        ``phi_bin_edges`` if given, else ``phi_bins`` uniform bins, else the
        number of bins spanned by the minimum-pT helix deflection over
        ``[r_max - delta_r_max, r_max]``.
    Z
        ``z_bin_edges`` if given, else uniform bins of width
        ``cot_theta_max * delta_r_max`` over ``[z_min, z_max]``.

    Raises
    ------
    ConfigurationError
        If either axis ends up with zero bins.
    """
    if config.phi_bin_edges is not None:
        phi_axis = Axis(config.phi_bin_edges, circular=True)
    else:
        n_phi = config.phi_bins if config.phi_bins is not None else _helix_phi_bins(config)
        phi_axis = Axis.uniform(config.phi_min, config.phi_max, int(n_phi), circular=True)

    if config.z_bin_edges is not None:
        z_axis = Axis(config.z_bin_edges, circular=False)
    else:
        width = config.cot_theta_max * config.delta_r_max
        n_z = int(math.floor((config.z_max - config.z_min) / width)) if width > 0 else 0
        z_axis = Axis.uniform(config.z_min, config.z_max, max(1, n_z), circular=False)
    return phi_axis, z_axis


@dataclass
class SpacepointGrid:
    r"""
    Spacepoint indices grouped by ``(phi, z)`` bin in CSR layout.

    Bin ``b = iphi * n_z + iz`` holds ``content[offsets[b]:offsets[b+1]]``,
    sorted by spacepoint index. ``sp_bin[i]`` is the bin of spacepoint ``i``
    or ``-1`` if it lies outside the acceptance.
    """

    phi_axis: Axis
    z_axis: Axis
    sp_bin: np.ndarray
    offsets: np.ndarray
    content: np.ndarray
    phi_neighbors: int = 1
    z_neighbors: int = 1

    @property
    def n_bins(self) -> int:
        return self.phi_axis.n_bins * self.z_axis.n_bins

    def __len__(self) -> int:
        return int(self.content.size)

    def bin_of(self, phi, z) -> np.ndarray:
        """Pure bin assignment of ``(phi, z)`` pairs; ``-1`` if either is out of range."""
        ip = self.phi_axis.index(phi)
        iz = self.z_axis.index(z)
        return np.where((ip >= 0) & (iz >= 0), ip * self.z_axis.n_bins + iz, -1)

    def bin_content(self, b: int) -> np.ndarray:
        return self.content[self.offsets[b]:self.offsets[b + 1]]

    def neighbors(self, b: int) -> np.ndarray:
        """Distinct bins of the neighbor patch around bin ``b`` (including ``b``)."""
        nz = self.z_axis.n_bins
        ip, iz = divmod(int(b), nz)
        out = [
            p * nz + q
            for p in self.phi_axis.neighborhood(ip, self.phi_neighbors)
            for q in self.z_axis.neighborhood(iz, self.z_neighbors)
        ]
        return np.asarray(out, dtype=np.int64)

    def neighbor_table(self) -> np.ndarray:
        """``(n_bins, K)`` table of neighbor bins, padded with ``-1``."""
        rows = [self.neighbors(b) for b in range(self.n_bins)]
        width = max((r.size for r in rows), default=0)
        table = np.full((self.n_bins, width), -1, dtype=np.int64)
        for b, r in enumerate(rows):
            table[b, :r.size] = r
        return table


def build_grid(
    spacepoints: SpacepointCollection,
    config: SeedFinderConfig,
    axes: Optional[tuple] = None,
) -> SpacepointGrid:
    r"""
    Bin an event's spacepoints.

    Uses the same count-then-fill pattern as the stages: per-bin counts,
    exclusive prefix sum into ``offsets``, then a stable scatter so each bin
    lists its spacepoints in ascending index order.

    Parameters
    ----------
    spacepoints : SpacepointCollection
    config : SeedFinderConfig
    axes : tuple of Axis, optional
        Pre-built ``(phi_axis, z_axis)``; built from ``config`` otherwise.
    """
    phi_axis, z_axis = axes if axes is not None else make_axes(config)
    r = spacepoints.radius(config.beam_pos)
    phi = spacepoints.phi(config.beam_pos)
    z = spacepoints.z

    grid = SpacepointGrid(
        phi_axis, z_axis,
        sp_bin=np.empty(0, dtype=np.int64),
        offsets=np.zeros(1, dtype=np.int64),
        content=np.empty(0, dtype=np.int64),
        phi_neighbors=config.phi_bin_neighbors,
        z_neighbors=config.z_bin_neighbors,
    )
    in_range = (
        (r >= config.r_min) & (r <= config.r_max)
        & (z >= config.z_min) & (z <= config.z_max)
        & (phi >= config.phi_min) & (phi <= config.phi_max)
    )
    sp_bin = np.where(in_range, grid.bin_of(phi, z), -1).astype(np.int64)

    binned = np.flatnonzero(sp_bin >= 0)
    counts = np.bincount(sp_bin[binned], minlength=grid.n_bins)
    grid.sp_bin = sp_bin
    grid.offsets = exclusive_scan(counts)
    grid.content = binned[np.argsort(sp_bin[binned], kind="stable")].astype(np.int64)

    logger.debug(
        "Grid %dx%d: %d/%d spacepoints binned",
        phi_axis.n_bins, z_axis.n_bins, grid.content.size, len(spacepoints),
    )
    return grid
