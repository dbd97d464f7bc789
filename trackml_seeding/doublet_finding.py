from __future__ import annotations

import logging
import math

from numba import njit, prange

from trackml_seeding.backend import CountFillKernel, Session, StagedOutput
from trackml_seeding.config import FinderParams
from trackml_seeding.edm import SP_R, SP_VAR_R, SP_VAR_Z, SP_X, SP_Y, SP_Z

logger = logging.getLogger(__name__)

__all__ = [
    "BOTTOM",
    "TOP",
    "DB_COT", "DB_ZO", "DB_IDR", "DB_ER", "DB_U", "DB_V", "DB_FLOAT_WIDTH", "DB_INT_WIDTH",
    "DOUBLET_KERNEL",
    "count_doublets",
    "fill_doublets",
    "find_doublets",
]

BOTTOM = 0
TOP = 1

# Float columns of a doublet row: linearised circle of (middle, candidate).
DB_COT, DB_ZO, DB_IDR, DB_ER, DB_U, DB_V = range(6)
DB_FLOAT_WIDTH = 6
# Int column: candidate spacepoint index.
DB_INT_WIDTH = 1


@njit(cache=True, nogil=True)
def _middle_accepted(m, sp, sp_bin, p):
    if sp_bin[m] < 0:
        return False
    r_m = sp[m, SP_R]
    return r_m > 0.0 and p.r_min_middle <= r_m <= p.r_max_middle


@njit(cache=True, nogil=True)
def _passes_interaction_point(m, c, sp, p):
    r"""
    Transformed-coordinate impact test of a top candidate.

    In the frame rotated onto the middle spacepoint, accept directly if
    :math:`|r_M y'| \le d_{\max} x'`. Otherwise the straight line in the
    conformal plane through the candidate and the image of the point
    :math:`(-r_M, \pm d_{\max})` must describe a circle no smaller than the
    minimum helix diameter.
    """
    r_m = sp[m, SP_R]
    cos_phi = sp[m, SP_X] / r_m
    sin_phi = sp[m, SP_Y] / r_m
    dx = sp[c, SP_X] - sp[m, SP_X]
    dy = sp[c, SP_Y] - sp[m, SP_Y]
    x_new = dx * cos_phi + dy * sin_phi
    y_new = dy * cos_phi - dx * sin_phi
    if abs(r_m * y_new) <= p.impact_max * x_new:
        return True

    dr2 = dx * dx + dy * dy
    if dr2 == 0.0:
        return False
    u_t = x_new / dr2
    v_t = y_new / dr2
    u_ip = -1.0 / r_m
    v_ip_abs = p.impact_max * u_ip * u_ip
    v_ip = -v_ip_abs if y_new > 0.0 else v_ip_abs
    du = u_t - u_ip
    if du == 0.0:
        return False
    a = (v_t - v_ip) / du
    b = v_ip - a * u_ip
    return b * b * p.min_helix_diameter2 <= 1.0 + a * a


@njit(cache=True, nogil=True)
def _compatible(m, c, sp, p, bottom):
    r_m = sp[m, SP_R]
    z_m = sp[m, SP_Z]
    if bottom:
        delta_r = r_m - sp[c, SP_R]
    else:
        delta_r = sp[c, SP_R] - r_m
    if not (delta_r > 0.0 and p.delta_r_min <= delta_r <= p.delta_r_max):
        return False
    if bottom:
        cot_theta = (z_m - sp[c, SP_Z]) / delta_r
    else:
        cot_theta = (sp[c, SP_Z] - z_m) / delta_r
    if abs(cot_theta) > p.cot_theta_max:
        return False
    z_origin = z_m - r_m * cot_theta
    if z_origin < p.collision_region_min or z_origin > p.collision_region_max:
        return False
    if not bottom and p.interaction_point_cut > 0.5:
        return _passes_interaction_point(m, c, sp, p)
    return True


@njit(cache=True, nogil=True)
def _write_lin_circle(m, c, sp, bottom, out_f, row):
    r_m = sp[m, SP_R]
    cos_phi = sp[m, SP_X] / r_m
    sin_phi = sp[m, SP_Y] / r_m
    dx = sp[c, SP_X] - sp[m, SP_X]
    dy = sp[c, SP_Y] - sp[m, SP_Y]
    dz = sp[c, SP_Z] - sp[m, SP_Z]
    x_new = dx * cos_phi + dy * sin_phi
    y_new = dy * cos_phi - dx * sin_phi
    i_dr2 = 1.0 / (dx * dx + dy * dy)
    i_dr = math.sqrt(i_dr2)
    cot_theta = dz * i_dr * (-1.0 if bottom else 1.0)
    out_f[row, DB_COT] = cot_theta
    out_f[row, DB_ZO] = sp[m, SP_Z] - r_m * cot_theta
    out_f[row, DB_IDR] = i_dr
    out_f[row, DB_ER] = (
        (sp[m, SP_VAR_Z] + sp[c, SP_VAR_Z])
        + cot_theta * cot_theta * (sp[m, SP_VAR_R] + sp[c, SP_VAR_R])
    ) * i_dr2
    out_f[row, DB_U] = x_new * i_dr2
    out_f[row, DB_V] = y_new * i_dr2


@njit(cache=True, nogil=True)
def count_doublets(m, sp, sp_bin, bin_offsets, bin_content, nbr, p, role):
    """Number of compatible bottom (``role == 0``) or top candidates of middle ``m``."""
    if not _middle_accepted(m, sp, sp_bin, p):
        return 0
    bottom = role == BOTTOM
    b = sp_bin[m]
    n = 0
    for j in range(nbr.shape[1]):
        nb = nbr[b, j]
        if nb < 0:
            break
        for q in range(bin_offsets[nb], bin_offsets[nb + 1]):
            if _compatible(m, bin_content[q], sp, p, bottom):
                n += 1
    return n


@njit(cache=True, nogil=True)
def fill_doublets(m, begin, end, out_i, out_f, sp, sp_bin, bin_offsets, bin_content, nbr, p, role):
    r"""
    Write the doublets of middle ``m`` into rows ``[begin, end)``.

    Visits candidates in exactly the order of :func:`count_doublets` and
    returns how many it found, which may exceed ``end - begin`` only if the
    two passes disagree; rows past ``end`` are never written.
    """
    if not _middle_accepted(m, sp, sp_bin, p):
        return 0
    bottom = role == BOTTOM
    b = sp_bin[m]
    n = 0
    for j in range(nbr.shape[1]):
        nb = nbr[b, j]
        if nb < 0:
            break
        for q in range(bin_offsets[nb], bin_offsets[nb + 1]):
            c = bin_content[q]
            if not _compatible(m, c, sp, p, bottom):
                continue
            row = begin + n
            if row < end:
                out_i[row, 0] = c
                _write_lin_circle(m, c, sp, bottom, out_f, row)
            n += 1
    return n


@njit(cache=True, parallel=True)
def _count_doublets_kernel(counts, sp, sp_bin, bin_offsets, bin_content, nbr, p, role):
    for m in prange(counts.shape[0]):
        counts[m] = count_doublets(m, sp, sp_bin, bin_offsets, bin_content, nbr, p, role)


@njit(cache=True, parallel=True)
def _fill_doublets_kernel(offsets, out_i, out_f, written, sp, sp_bin, bin_offsets, bin_content, nbr, p, role):
    for m in prange(written.shape[0]):
        written[m] = fill_doublets(
            m, offsets[m], offsets[m + 1], out_i, out_f,
            sp, sp_bin, bin_offsets, bin_content, nbr, p, role,
        )


DOUBLET_KERNEL = CountFillKernel(
    "doublets", count_doublets, fill_doublets, _count_doublets_kernel, _fill_doublets_kernel
)


def find_doublets(session: Session, grid_args: tuple, params: FinderParams, role: int) -> StagedOutput:
    r"""
    Bottom or top doublets of every middle spacepoint.

    Parameters
    ----------
    session : Session
    grid_args : tuple
        Session views ``(sp, sp_bin, bin_offsets, bin_content, neighbor_table)``.
    params : FinderParams
    role : int
        :data:`BOTTOM` or :data:`TOP`.

    Returns
    -------
    StagedOutput
        Rows of middle ``m`` are ``offsets[m]:offsets[m+1]``; ``ints[:, 0]`` is
        the candidate spacepoint, ``floats`` its ``DB_*`` columns.
    """
    n_keys = grid_args[0].shape[0]
    staged = session.count_then_fill(
        DOUBLET_KERNEL, n_keys, (*grid_args, params, int(role)), DB_INT_WIDTH, DB_FLOAT_WIDTH
    )
    logger.debug("%s doublets: %d", "Bottom" if role == BOTTOM else "Top", staged.total)
    return staged
