from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from trackml_seeding.backend import ExecutionBackend, HostBackend, Session, StagedOutput
from trackml_seeding.config import SeedFilterConfig, SeedFinderConfig
from trackml_seeding.doublet_finding import BOTTOM, TOP, find_doublets
from trackml_seeding.duplicates import suppress_duplicates
from trackml_seeding.edm import SeedCollection, SpacepointCollection, Triplet
from trackml_seeding.grid import SpacepointGrid, build_grid, make_axes
from trackml_seeding.seed_selecting import select_seeds
from trackml_seeding.triplet_finding import find_triplets, triplets_from_arrays
from trackml_seeding.weight_updating import update_triplet_weights

logger = logging.getLogger(__name__)

__all__ = ["SeedingAlgorithm", "SeedingStats"]


@dataclass
class SeedingStats:
    """Per-event stage counts and timing."""
    n_spacepoints: int = 0
    n_binned: int = 0
    n_bottom_doublets: int = 0
    n_top_doublets: int = 0
    n_triplets: int = 0
    n_seeds: int = 0
    n_duplicates_removed: int = 0
    launches: int = 0
    bytes_allocated: int = 0
    elapsed: float = 0.0


class SeedingAlgorithm:
    r"""
    Seed finding over an execution backend.

    The pipeline for one event is

    1. bin the spacepoints into the ``(phi, z)`` grid,
    2. find bottom and top doublets of every middle spacepoint,
    3. combine them into triplets with a conformal circle fit,
    4. update the triplet weights from compatible triplets of the same middle,
    5. select at most ``max_seeds_per_middle`` seeds per middle,

    optionally followed by duplicate suppression on the host. Every stage is
    keyed by the middle spacepoint and written once against the
    :class:`~trackml_seeding.backend.Session` interface, so the host and the
    kernel backend run identical per-key arithmetic.

    Parameters
    ----------
    finder_config : SeedFinderConfig
    filter_config : SeedFilterConfig
    backend : ExecutionBackend, optional
        Defaults to a :class:`HostBackend`.

    Raises
    ------
    ConfigurationError
        If the grid axes cannot be built from ``finder_config``.

    Notes
    -----
    An instance holds no per-event state; one algorithm may process several
    events concurrently, each in its own session.
    """

    def __init__(
        self,
        finder_config: Optional[SeedFinderConfig] = None,
        filter_config: Optional[SeedFilterConfig] = None,
        backend: Optional[ExecutionBackend] = None,
    ) -> None:
        self.finder_config = finder_config or SeedFinderConfig()
        self.filter_config = filter_config or SeedFilterConfig()
        self.backend = backend or HostBackend()
        self.axes = make_axes(self.finder_config)
        self._finder_params = self.finder_config.kernel_params()
        self._filter_params = self.filter_config.kernel_params()
        empty = np.empty(0, dtype=np.int64)
        self._neighbor_table = SpacepointGrid(
            *self.axes, sp_bin=empty, offsets=np.zeros(1, dtype=np.int64), content=empty,
            phi_neighbors=self.finder_config.phi_bin_neighbors,
            z_neighbors=self.finder_config.z_bin_neighbors,
        ).neighbor_table()
        logger.debug(
            "SeedingAlgorithm on %r: %d phi x %d z bins",
            self.backend, self.axes[0].n_bins, self.axes[1].n_bins,
        )

    def __repr__(self) -> str:
        return f"SeedingAlgorithm(backend={self.backend!r})"

    # ----------------------------------------------------------------- stages
    def _triplet_stages(
        self, session: Session, spacepoints: SpacepointCollection, stats: SeedingStats
    ) -> Tuple[np.ndarray, StagedOutput]:
        grid = build_grid(spacepoints, self.finder_config, self.axes)
        stats.n_binned = len(grid)

        sp = session.upload(spacepoints.kernel_array(self.finder_config.beam_pos)).view
        grid_args = (
            sp,
            session.upload(grid.sp_bin).view,
            session.upload(grid.offsets).view,
            session.upload(grid.content).view,
            session.upload(self._neighbor_table).view,
        )
        fp, flt = self._finder_params, self._filter_params

        bottom = find_doublets(session, grid_args, fp, BOTTOM)
        top = find_doublets(session, grid_args, fp, TOP)
        stats.n_bottom_doublets = bottom.total
        stats.n_top_doublets = top.total

        triplets = find_triplets(session, sp, bottom, top, fp, flt)
        stats.n_triplets = triplets.total
        update_triplet_weights(session, sp, triplets, flt)
        return sp, triplets

    def run(self, spacepoints: SpacepointCollection) -> Tuple[SeedCollection, SeedingStats]:
        r"""
        Seeds of one event together with its stage statistics.

        Raises
        ------
        SpacepointIndexError
            If a produced seed links outside the collection.
        AllocationError, BufferSizeMismatchError
            On resource failures; only this event is affected.
        """
        t0 = time.perf_counter()
        stats = SeedingStats(n_spacepoints=len(spacepoints))
        if len(spacepoints) == 0:
            return SeedCollection.empty(), stats

        with self.backend.session() as session:
            sp, triplets = self._triplet_stages(session, spacepoints, stats)
            staged = select_seeds(session, sp, triplets, self._filter_params)
            links = session.download(staged.ints)
            values = session.download(staged.floats)
            stats.launches = session.launches
            stats.bytes_allocated = session.scope.bytes_allocated

        spacepoints.check_links(links)
        seeds = SeedCollection.from_arrays(links, values)
        n_selected = len(seeds)
        seeds = suppress_duplicates(seeds, spacepoints, self.filter_config.duplicate_radius)
        stats.n_duplicates_removed = n_selected - len(seeds)
        stats.n_seeds = len(seeds)
        stats.elapsed = time.perf_counter() - t0

        logger.debug(
            "Stage counts: binned=%d bottom=%d top=%d triplets=%d seeds=%d",
            stats.n_binned, stats.n_bottom_doublets, stats.n_top_doublets,
            stats.n_triplets, stats.n_seeds,
        )
        logger.info(
            "Seeding [%s]: %d spacepoints -> %d seeds in %.3fs",
            self.backend.name, stats.n_spacepoints, stats.n_seeds, stats.elapsed,
        )
        return seeds, stats

    def find_seeds(self, spacepoints: SpacepointCollection) -> SeedCollection:
        seeds, _ = self.run(spacepoints)
        return seeds

    __call__ = find_seeds

    def find_triplets(self, spacepoints: SpacepointCollection) -> List[Triplet]:
        """All weighted triplets of an event, grouped by middle spacepoint."""
        if len(spacepoints) == 0:
            return []
        stats = SeedingStats(n_spacepoints=len(spacepoints))
        with self.backend.session() as session:
            _, triplets = self._triplet_stages(session, spacepoints, stats)
            ints = session.download(triplets.ints)
            floats = session.download(triplets.floats)
        spacepoints.check_links(ints)
        return triplets_from_arrays(ints, floats)
