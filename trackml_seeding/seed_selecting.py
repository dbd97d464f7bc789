from __future__ import annotations

import logging

import numpy as np
from numba import njit, prange

from trackml_seeding.backend import CountFillKernel, Session, StagedOutput
from trackml_seeding.config import FilterParams
from trackml_seeding.edm import SP_R
from trackml_seeding.triplet_finding import TR_B, TR_IMPACT, TR_M, TR_T, TR_WEIGHT, TR_ZV

logger = logging.getLogger(__name__)

__all__ = [
    "SEED_KERNEL",
    "SD_ZV", "SD_WEIGHT", "SD_FLOAT_WIDTH", "SD_INT_WIDTH",
    "passes_seed_cuts",
    "ranks_before",
    "count_seeds",
    "fill_seeds",
    "select_seeds",
]

SD_ZV, SD_WEIGHT = range(2)
SD_FLOAT_WIDTH = 2
SD_INT_WIDTH = 3


@njit(cache=True, nogil=True)
def passes_seed_cuts(weight, r_bottom, fp):
    # Bottoms far out need a high weight on their own.
    if r_bottom > fp.good_spb_min_radius and weight < fp.good_spb_min_weight:
        return False
    if weight < fp.seed_min_weight and r_bottom <= fp.spb_min_radius:
        return False
    return True


@njit(cache=True, nogil=True)
def ranks_before(i, j, ints, floats):
    """Total order of triplets: weight desc, impact asc, bottom asc, top asc."""
    wi = floats[i, TR_WEIGHT]
    wj = floats[j, TR_WEIGHT]
    if wi != wj:
        return wi > wj
    di = floats[i, TR_IMPACT]
    dj = floats[j, TR_IMPACT]
    if di != dj:
        return di < dj
    if ints[i, TR_B] != ints[j, TR_B]:
        return ints[i, TR_B] < ints[j, TR_B]
    return ints[i, TR_T] < ints[j, TR_T]


@njit(cache=True, nogil=True)
def _candidates(m, sp, offsets, ints, floats, fp):
    lo = offsets[m]
    hi = offsets[m + 1]
    rows = np.empty(hi - lo, dtype=np.int64)
    n = 0
    for i in range(lo, hi):
        if passes_seed_cuts(floats[i, TR_WEIGHT], sp[ints[i, TR_B], SP_R], fp):
            rows[n] = i
            n += 1
    return rows[:n]


@njit(cache=True, nogil=True)
def count_seeds(m, sp, offsets, ints, floats, fp):
    if offsets[m] == offsets[m + 1]:
        return 0
    n = _candidates(m, sp, offsets, ints, floats, fp).shape[0]
    return min(n, int(fp.max_seeds_per_middle))


@njit(cache=True, nogil=True)
def fill_seeds(m, begin, end, out_i, out_f, sp, offsets, ints, floats, fp):
    r"""
    Rank the surviving triplets of middle ``m`` and write the best
    ``max_seeds_per_middle`` of them as seed rows.
    """
    if offsets[m] == offsets[m + 1]:
        return 0
    rows = _candidates(m, sp, offsets, ints, floats, fp)
    n = rows.shape[0]
    # Insertion sort: triplet lists per middle are short.
    for a in range(1, n):
        cur = rows[a]
        b = a - 1
        while b >= 0 and ranks_before(cur, rows[b], ints, floats):
            rows[b + 1] = rows[b]
            b -= 1
        rows[b + 1] = cur
    n_keep = min(n, int(fp.max_seeds_per_middle))
    for k in range(n_keep):
        row = begin + k
        if row >= end:
            break
        t = rows[k]
        out_i[row, 0] = ints[t, TR_B]
        out_i[row, 1] = ints[t, TR_M]
        out_i[row, 2] = ints[t, TR_T]
        out_f[row, SD_ZV] = floats[t, TR_ZV]
        out_f[row, SD_WEIGHT] = floats[t, TR_WEIGHT]
    return n_keep


@njit(cache=True, parallel=True)
def _count_seeds_kernel(counts, sp, offsets, ints, floats, fp):
    for m in prange(counts.shape[0]):
        counts[m] = count_seeds(m, sp, offsets, ints, floats, fp)


@njit(cache=True, parallel=True)
def _fill_seeds_kernel(seed_offsets, out_i, out_f, written, sp, offsets, ints, floats, fp):
    for m in prange(written.shape[0]):
        written[m] = fill_seeds(
            m, seed_offsets[m], seed_offsets[m + 1], out_i, out_f, sp, offsets, ints, floats, fp
        )


SEED_KERNEL = CountFillKernel("seeds", count_seeds, fill_seeds, _count_seeds_kernel, _fill_seeds_kernel)


def select_seeds(session: Session, sp, triplets: StagedOutput, filter_params: FilterParams) -> StagedOutput:
    r"""
    Per-middle seed selection.

    Seeds of middle ``m`` appear in rank order in rows
    ``offsets[m]:offsets[m+1]``; ``ints`` holds ``(bottom, middle, top)`` and
    ``floats`` holds ``(z_vertex, weight)``.
    """
    args = (sp, triplets.offsets.view, triplets.ints.view, triplets.floats.view, filter_params)
    staged = session.count_then_fill(SEED_KERNEL, sp.shape[0], args, SD_INT_WIDTH, SD_FLOAT_WIDTH)
    logger.debug("Seeds: %d", staged.total)
    return staged
