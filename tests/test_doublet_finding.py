import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from conftest import collection, helix_points
from trackml_seeding.backend import HostBackend, KernelBackend
from trackml_seeding.config import SeedFinderConfig
from trackml_seeding.doublet_finding import (
    BOTTOM,
    DB_COT,
    DB_U,
    DB_ZO,
    TOP,
    count_doublets,
    find_doublets,
)
from trackml_seeding.grid import build_grid


def _grid_args(coll, cfg):
    grid = build_grid(coll, cfg)
    return (coll.kernel_array(cfg.beam_pos), grid.sp_bin, grid.offsets, grid.content, grid.neighbor_table())


def test_single_helix_counts(single_helix):
    cfg = SeedFinderConfig()
    args = _grid_args(single_helix, cfg)
    p = cfg.kernel_params()
    assert count_doublets(1, *args, p, BOTTOM) == 1
    assert count_doublets(1, *args, p, TOP) == 1
    # Innermost point has no bottom, outermost no top.
    assert count_doublets(0, *args, p, BOTTOM) == 0
    assert count_doublets(2, *args, p, TOP) == 0


def test_delta_r_window(single_helix):
    cfg = SeedFinderConfig(delta_r_max=25.0)
    args = _grid_args(single_helix, cfg)
    assert count_doublets(1, *args, cfg.kernel_params(), BOTTOM) == 0


def test_collision_region():
    coll = collection(helix_points([50.0, 80.0, 110.0], z0=300.0))
    cfg = SeedFinderConfig()
    args = _grid_args(coll, cfg)
    p = cfg.kernel_params()
    assert count_doublets(1, *args, p, BOTTOM) == 0
    assert count_doublets(1, *args, p, TOP) == 0
    wide = cfg.replace(collision_region_min=-400.0, collision_region_max=400.0)
    assert count_doublets(1, *_grid_args(coll, wide), wide.kernel_params(), TOP) == 1


def test_middle_radius_window(single_helix):
    cfg = SeedFinderConfig(r_min_middle=90.0)
    args = _grid_args(single_helix, cfg)
    assert count_doublets(1, *args, cfg.kernel_params(), BOTTOM) == 0


def test_interaction_point_cut_on_tops():
    # Top displaced 20 mm sideways from the line through the beam and the middle.
    coll = collection([[80.0, 0.0, 0.0], [110.0, 20.0, 0.0]])
    on = SeedFinderConfig(phi_bins=8)
    off = on.replace(interaction_point_cut=False)
    assert count_doublets(0, *_grid_args(coll, on), on.kernel_params(), TOP) == 0
    assert count_doublets(0, *_grid_args(coll, off), off.kernel_params(), TOP) == 1


@pytest.mark.parametrize("backend", [HostBackend(max_workers=2), KernelBackend()])
def test_lin_circle_columns(single_helix, backend):
    cfg = SeedFinderConfig()
    args = _grid_args(single_helix, cfg)
    with backend.session() as s:
        views = tuple(s.upload(a).view for a in args)
        bottom = find_doublets(s, views, cfg.kernel_params(), BOTTOM)
        top = find_doublets(s, views, cfg.kernel_params(), TOP)
        b_off, b_int, b_flt = (s.download(x) for x in bottom)
        t_off, t_int, t_flt = (s.download(x) for x in top)

    np.testing.assert_array_equal(b_off, [0, 0, 1, 3])
    np.testing.assert_array_equal(t_off, [0, 2, 3, 3])
    assert b_int[:, 0].tolist() == [0, 0, 1]
    assert t_int[:, 0].tolist() == [1, 2, 2]
    # Doublets of the middle spacepoint 1.
    b, t = b_off[1], t_off[1]
    assert b_flt[b, DB_COT] == pytest.approx(0.3, rel=1e-3)
    assert t_flt[t, DB_COT] == pytest.approx(0.3, rel=1e-3)
    assert b_flt[b, DB_ZO] == pytest.approx(0.0, abs=0.05)
    assert t_flt[t, DB_ZO] == pytest.approx(0.0, abs=0.05)
    assert b_flt[b, DB_U] < 0.0 < t_flt[t, DB_U]
