from __future__ import annotations

import logging
import math
from typing import List

import numpy as np
from numba import njit, prange

from trackml_seeding.backend import CountFillKernel, Session, StagedOutput
from trackml_seeding.config import FilterParams, FinderParams
from trackml_seeding.doublet_finding import DB_COT, DB_ER, DB_IDR, DB_U, DB_V, DB_ZO
from trackml_seeding.edm import SP_R, SP_VAR_R, SP_VAR_Z, Triplet

logger = logging.getLogger(__name__)

__all__ = [
    "TR_B", "TR_M", "TR_T", "TR_INT_WIDTH",
    "TR_CURV", "TR_IMPACT", "TR_ZV", "TR_WEIGHT", "TR_FLOAT_WIDTH",
    "TRIPLET_KERNEL",
    "fit_triplet",
    "count_triplets",
    "fill_triplets",
    "find_triplets",
    "triplets_from_arrays",
]

TR_B, TR_M, TR_T = range(3)
TR_INT_WIDTH = 3
TR_CURV, TR_IMPACT, TR_ZV, TR_WEIGHT = range(4)
TR_FLOAT_WIDTH = 4


@njit(cache=True, nogil=True)
def fit_triplet(lb, lt, r_m, var_r_m, var_z_m, p):
    r"""
    Circle fit of a bottom/top doublet pair sharing the middle spacepoint.

    In the conformal frame of the middle spacepoint the two candidates map to
    points :math:`(u_b, v_b)` and :math:`(u_t, v_t)` on a straight line
    :math:`v = A u + B`. A circle through the middle point has

    .. math::

        \frac{1}{D} = \frac{B}{\sqrt{1 + A^2}}, \qquad
        d_0 = \left|(A - B\,r_M)\,r_M\right| .

    Parameters
    ----------
    lb, lt : ndarray, shape (6,)
        Linearised circles (``DB_*`` columns) of the bottom and top doublet.
    r_m, var_r_m, var_z_m : float
        Middle radius and position variances.
    p : FinderParams

    Returns
    -------
    ok : bool
        ``False`` for incompatible or degenerate combinations.
    curvature : float
        Signed inverse helix diameter.
    impact : float
        Transverse impact parameter.
    """
    cot_b = lb[DB_COT]
    cot_t = lt[DB_COT]
    i_sin_theta2 = 1.0 + cot_b * cot_b
    sigma2 = p.sigma_scattering * p.sigma_scattering
    scattering_in_region2 = p.max_scattering_angle2 * i_sin_theta2 * sigma2

    error2 = (
        lt[DB_ER] + lb[DB_ER]
        + 2.0 * (cot_b * cot_t * var_r_m + var_z_m) * lb[DB_IDR] * lt[DB_IDR]
    )
    delta_cot = cot_b - cot_t
    delta_cot2 = delta_cot * delta_cot
    d_cot_minus_error2 = 0.0
    beyond_error = delta_cot2 - error2 > 0.0
    if beyond_error:
        d_cot_minus_error2 = delta_cot2 + error2 - 2.0 * abs(delta_cot) * math.sqrt(error2)
        if d_cot_minus_error2 > scattering_in_region2:
            return False, 0.0, 0.0

    du = lt[DB_U] - lb[DB_U]
    if du == 0.0:
        return False, 0.0, 0.0
    a = (lt[DB_V] - lb[DB_V]) / du
    s2 = 1.0 + a * a
    b = lb[DB_V] - a * lb[DB_U]
    b2 = b * b
    if b2 == 0.0:
        return False, 0.0, 0.0
    if s2 < b2 * p.min_helix_diameter2:
        return False, 0.0, 0.0

    # Polar-angle tolerance from the fitted pT, frozen above max_pt_scattering.
    pt = p.pt_per_helix_radius * 0.5 * math.sqrt(s2 / b2)
    if pt > p.max_pt_scattering:
        pt2_scatter = (p.highland / p.max_pt_scattering) ** 2
    else:
        pt2_scatter = 4.0 * (b2 / s2) * p.pt2_per_radius
    if beyond_error and d_cot_minus_error2 > pt2_scatter * i_sin_theta2 * sigma2:
        return False, 0.0, 0.0

    impact = abs((a - b * r_m) * r_m)
    if impact > p.impact_max:
        return False, 0.0, 0.0
    return True, b / math.sqrt(s2), impact


@njit(cache=True, nogil=True)
def count_triplets(m, sp, bo, bi, bf, to, ti, tf, p, fp):
    """Number of accepted bottom/top combinations of middle ``m``."""
    n = 0
    if bo[m] == bo[m + 1] or to[m] == to[m + 1]:
        return 0
    r_m = sp[m, SP_R]
    var_r = sp[m, SP_VAR_R]
    var_z = sp[m, SP_VAR_Z]
    for i in range(bo[m], bo[m + 1]):
        for j in range(to[m], to[m + 1]):
            ok, _, _ = fit_triplet(bf[i], tf[j], r_m, var_r, var_z, p)
            if ok:
                n += 1
    return n


@njit(cache=True, nogil=True)
def fill_triplets(m, begin, end, out_i, out_f, sp, bo, bi, bf, to, ti, tf, p, fp):
    n = 0
    if bo[m] == bo[m + 1] or to[m] == to[m + 1]:
        return 0
    r_m = sp[m, SP_R]
    var_r = sp[m, SP_VAR_R]
    var_z = sp[m, SP_VAR_Z]
    for i in range(bo[m], bo[m + 1]):
        for j in range(to[m], to[m + 1]):
            ok, curvature, impact = fit_triplet(bf[i], tf[j], r_m, var_r, var_z, p)
            if not ok:
                continue
            row = begin + n
            if row < end:
                out_i[row, TR_B] = bi[i, 0]
                out_i[row, TR_M] = m
                out_i[row, TR_T] = ti[j, 0]
                out_f[row, TR_CURV] = curvature
                out_f[row, TR_IMPACT] = impact
                out_f[row, TR_ZV] = bf[i, DB_ZO]
                out_f[row, TR_WEIGHT] = -impact * fp.impact_weight_factor
            n += 1
    return n


@njit(cache=True, parallel=True)
def _count_triplets_kernel(counts, sp, bo, bi, bf, to, ti, tf, p, fp):
    for m in prange(counts.shape[0]):
        counts[m] = count_triplets(m, sp, bo, bi, bf, to, ti, tf, p, fp)


@njit(cache=True, parallel=True)
def _fill_triplets_kernel(offsets, out_i, out_f, written, sp, bo, bi, bf, to, ti, tf, p, fp):
    for m in prange(written.shape[0]):
        written[m] = fill_triplets(
            m, offsets[m], offsets[m + 1], out_i, out_f, sp, bo, bi, bf, to, ti, tf, p, fp
        )


TRIPLET_KERNEL = CountFillKernel(
    "triplets", count_triplets, fill_triplets, _count_triplets_kernel, _fill_triplets_kernel
)


def find_triplets(
    session: Session,
    sp,
    bottom: StagedOutput,
    top: StagedOutput,
    params: FinderParams,
    filter_params: FilterParams,
) -> StagedOutput:
    r"""
    Combine the bottom and top doublets of every middle spacepoint.

    Rows of middle ``m`` list ``(bottom, middle, top)`` in ``ints`` and
    ``(curvature, impact, z_vertex, weight)`` in ``floats``; the weight holds
    the impact-parameter term only until the weight update runs.
    """
    args = (
        sp,
        bottom.offsets.view, bottom.ints.view, bottom.floats.view,
        top.offsets.view, top.ints.view, top.floats.view,
        params, filter_params,
    )
    staged = session.count_then_fill(
        TRIPLET_KERNEL, sp.shape[0], args, TR_INT_WIDTH, TR_FLOAT_WIDTH
    )
    logger.debug("Triplets: %d", staged.total)
    return staged


def triplets_from_arrays(ints: np.ndarray, floats: np.ndarray) -> List[Triplet]:
    """Host-side :class:`Triplet` records from downloaded triplet rows."""
    return [
        Triplet(
            int(row_i[TR_B]), int(row_i[TR_M]), int(row_i[TR_T]),
            float(row_f[TR_CURV]), float(row_f[TR_IMPACT]),
            float(row_f[TR_ZV]), float(row_f[TR_WEIGHT]),
        )
        for row_i, row_f in zip(ints, floats)
    ]
