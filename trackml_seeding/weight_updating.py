from __future__ import annotations

import logging

import numpy as np
from numba import njit, prange

from trackml_seeding.backend import ForEachKernel, Session, StagedOutput
from trackml_seeding.config import FilterParams
from trackml_seeding.edm import SP_R
from trackml_seeding.triplet_finding import TR_B, TR_CURV, TR_IMPACT, TR_T, TR_WEIGHT

logger = logging.getLogger(__name__)

__all__ = ["WEIGHT_KERNEL", "count_radius_clusters", "region_bonus", "update_weights", "update_triplet_weights"]


@njit(cache=True, nogil=True)
def count_radius_clusters(radii, gap):
    r"""
    Number of distinct radii in ``radii`` when values closer than ``gap`` to
    the first radius of the current cluster are merged.

    The input is sorted in place, so the result does not depend on the order
    in which the triplets were produced.
    """
    n = radii.shape[0]
    if n == 0:
        return 0
    radii.sort()
    clusters = 1
    anchor = radii[0]
    for i in range(1, n):
        if radii[i] - anchor >= gap:
            clusters += 1
            anchor = radii[i]
    return clusters


@njit(cache=True, nogil=True)
def region_bonus(r_bottom, r_top, fp):
    bonus = 0.0
    if r_bottom > fp.good_spb_min_radius:
        bonus = fp.good_spb_weight
    if r_top < fp.good_spt_max_radius:
        bonus = fp.good_spt_weight
    return bonus


@njit(cache=True, nogil=True)
def update_weights(m, sp, offsets, ints, floats, fp):
    r"""
    Final weight of every triplet of middle ``m``.

    .. math::

        w_i = -f_{\mathrm{imp}}\,d_{0,i}
              + w_{\mathrm{compat}}\,\min(n_i, n_{\mathrm{limit}})
              + w_{\mathrm{ROI}}(r_B, r_T)

    Only the weight column of rows owned by ``m`` is written.
    """
    lo = offsets[m]
    hi = offsets[m + 1]
    if hi == lo:
        return
    radii = np.empty(hi - lo, dtype=np.float64)
    for i in range(lo, hi):
        curv_i = floats[i, TR_CURV]
        imp_i = floats[i, TR_IMPACT]
        r_top_i = sp[ints[i, TR_T], SP_R]
        k = 0
        for j in range(lo, hi):
            if j == i:
                continue
            r_top_j = sp[ints[j, TR_T], SP_R]
            if abs(r_top_i - r_top_j) < fp.compat_delta_r:
                continue
            if abs(curv_i - floats[j, TR_CURV]) > fp.delta_inv_helix_diameter:
                continue
            if abs(imp_i - floats[j, TR_IMPACT]) > fp.delta_impact:
                continue
            radii[k] = r_top_j
            k += 1
        n_compat = min(float(count_radius_clusters(radii[:k], fp.compat_delta_r)), fp.compat_seed_limit)
        floats[i, TR_WEIGHT] = (
            -imp_i * fp.impact_weight_factor
            + fp.compat_seed_weight * n_compat
            + region_bonus(sp[ints[i, TR_B], SP_R], r_top_i, fp)
        )


@njit(cache=True, parallel=True)
def _update_weights_kernel(n_keys, sp, offsets, ints, floats, fp):
    for m in prange(n_keys):
        update_weights(m, sp, offsets, ints, floats, fp)


WEIGHT_KERNEL = ForEachKernel("weights", update_weights, _update_weights_kernel)


def update_triplet_weights(session: Session, sp, triplets: StagedOutput, filter_params: FilterParams) -> None:
    """Rewrite the weight column of ``triplets`` in place, one task per middle."""
    args = (sp, triplets.offsets.view, triplets.ints.view, triplets.floats.view, filter_params)
    session.parallel_for(WEIGHT_KERNEL, sp.shape[0], args)
