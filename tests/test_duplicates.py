import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np

from conftest import collection
from trackml_seeding.duplicates import duplicate_groups, suppress_duplicates
from trackml_seeding.edm import SeedCollection

POINTS = collection([
    [50.0, 0.0, 0.0],   # bottom
    [80.0, 0.0, 0.0],   # middle 1
    [80.5, 0.0, 0.0],   # middle 2, next to middle 1
    [110.0, 0.0, 0.0],  # top
    [80.0, 30.0, 0.0],  # middle 3, far from the others
    [120.0, 0.0, 0.0],  # second top
])


def _seeds(rows):
    rows = np.asarray(rows, dtype=np.float64)
    return SeedCollection(rows[:, 0], rows[:, 1], rows[:, 2], np.zeros(len(rows)), rows[:, 3])


def test_groups_need_shared_bottom_and_top():
    seeds = _seeds([[0, 1, 3, 300.0], [0, 2, 3, 400.0], [0, 2, 5, 100.0]])
    graph = duplicate_groups(seeds, POINTS, 1.0)
    assert sorted(graph.nodes) == [0, 1, 2]
    assert sorted(tuple(sorted(e)) for e in graph.edges) == [(0, 1)]


def test_best_of_group_survives():
    seeds = _seeds([[0, 1, 3, 300.0], [0, 2, 3, 400.0], [0, 4, 3, 500.0]])
    kept = suppress_duplicates(seeds, POINTS, 1.0)
    assert kept.as_set() == {(0, 2, 3), (0, 4, 3)}
    # Survivors keep their relative order.
    np.testing.assert_array_equal(kept.middle, [2, 4])

    wide = suppress_duplicates(seeds, POINTS, 40.0)
    assert wide.as_set() == {(0, 4, 3)}


def test_weight_tie_prefers_lower_middle():
    seeds = _seeds([[0, 2, 3, 300.0], [0, 1, 3, 300.0]])
    assert suppress_duplicates(seeds, POINTS, 1.0).as_set() == {(0, 1, 3)}


def test_disabled_or_trivial():
    seeds = _seeds([[0, 1, 3, 300.0], [0, 2, 3, 400.0]])
    assert suppress_duplicates(seeds, POINTS, None) is seeds
    one = seeds.take([0])
    assert suppress_duplicates(one, POINTS, 1.0) is one
    assert len(suppress_duplicates(SeedCollection.empty(), POINTS, 1.0)) == 0
