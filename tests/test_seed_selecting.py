import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from collections import Counter

import numpy as np
import pytest

from conftest import collection, helix_points
from trackml_seeding.backend import HostBackend, KernelBackend
from trackml_seeding.config import SeedFilterConfig
from trackml_seeding.seed_selecting import passes_seed_cuts, ranks_before
from trackml_seeding.seeding import SeedingAlgorithm
from trackml_seeding.triplet_finding import TR_IMPACT, TR_WEIGHT


def test_seed_cuts():
    fp = SeedFilterConfig().kernel_params()
    assert passes_seed_cuts(150.0, 60.0, fp)
    # Inner bottoms need the minimum weight.
    assert not passes_seed_cuts(150.0, 40.0, fp)
    assert passes_seed_cuts(200.0, 40.0, fp)
    # Far-out bottoms need a high weight.
    assert not passes_seed_cuts(379.0, 160.0, fp)
    assert passes_seed_cuts(380.0, 160.0, fp)


def test_rank_order_is_total():
    ints = np.array([[0, 5, 9], [1, 5, 8], [0, 5, 7], [0, 5, 6]], dtype=np.int64)
    floats = np.zeros((4, 4))
    floats[:, TR_WEIGHT] = [300.0, 300.0, 300.0, 500.0]
    floats[:, TR_IMPACT] = [0.5, 0.5, 0.5, 2.0]
    assert ranks_before(3, 0, ints, floats)  # higher weight
    assert ranks_before(0, 1, ints, floats)  # lower bottom
    assert ranks_before(2, 0, ints, floats)  # lower top
    assert not ranks_before(0, 0, ints, floats)
    floats[0, TR_IMPACT] = 0.1
    assert ranks_before(0, 2, ints, floats)  # lower impact


@pytest.mark.parametrize("backend", [HostBackend(max_workers=2, min_chunk=1), KernelBackend()])
def test_best_triplets_of_middle_become_seeds(long_helix, backend):
    algo = SeedingAlgorithm(backend=backend)
    triplets = [t for t in algo.find_triplets(long_helix) if t.middle == 4]
    ranked = sorted(triplets, key=lambda t: (-t.weight, t.impact_parameter, t.bottom, t.top))
    expected = [(t.bottom, t.middle, t.top) for t in ranked[:5]]

    seeds = algo.find_seeds(long_helix)
    got = [s.links for s in seeds if s.middle == 4]
    assert got == expected


def test_max_seeds_per_middle(long_helix):
    for cap in (1, 3):
        algo = SeedingAlgorithm(filter_config=SeedFilterConfig(max_seeds_per_middle=cap), backend=HostBackend())
        seeds = algo.find_seeds(long_helix)
        per_middle = Counter(seeds.middle.tolist())
        assert per_middle[4] == cap
        assert max(per_middle.values()) <= cap


def test_inner_bottom_needs_minimum_weight():
    # Bottom at 40 mm sits inside spb_min_radius.
    coll = collection(helix_points([40.0, 80.0, 110.0]))
    strict = SeedingAlgorithm(filter_config=SeedFilterConfig(seed_min_weight=250.0), backend=HostBackend(1))
    assert len(strict.find_triplets(coll)) == 1
    assert len(strict.find_seeds(coll)) == 0
    loose = SeedingAlgorithm(filter_config=SeedFilterConfig(seed_min_weight=100.0), backend=HostBackend(1))
    assert loose.find_seeds(coll).as_set() == {(0, 1, 2)}
