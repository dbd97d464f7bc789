import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from trackml_seeding.config import PT_PER_TESLA_MM, SeedFinderConfig
from trackml_seeding.edm import SpacepointCollection

BFIELD = SeedFinderConfig().bfield_in_z
LAYERS = (35.0, 50.0, 70.0, 90.0, 120.0, 150.0, 180.0)


def helix_points(radii, *, pt=2000.0, phi0=0.3, cot_theta=0.3, z0=0.0, charge=1):
    """Positions at the given transverse radii of a helix through the origin."""
    radius = pt / (PT_PER_TESLA_MM * BFIELD)
    r = np.asarray(radii, dtype=np.float64)
    phi = phi0 + charge * np.arcsin(r / (2.0 * radius))
    return np.column_stack((r * np.cos(phi), r * np.sin(phi), z0 + cot_theta * r))


def collection(points):
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return SpacepointCollection(pts[:, 0], pts[:, 1], pts[:, 2], measurement_id=np.arange(len(pts)) + 1)


@pytest.fixture
def single_helix():
    """Bottom, middle and top spacepoint of one 2 GeV track."""
    return collection(helix_points([50.0, 80.0, 110.0]))


@pytest.fixture
def long_helix():
    """One track crossing nine radii; index 4 (r = 80) has four bottoms and four tops."""
    return collection(helix_points([45.0, 50.0, 55.0, 60.0, 80.0, 100.0, 110.0, 120.0, 130.0]))


@pytest.fixture
def random_event():
    """Spacepoints and truth of 40 helices on seven layers plus uniform noise."""
    rng = np.random.default_rng(1234)
    points, pids = [], []
    for pid in range(1, 41):
        pts = helix_points(
            LAYERS,
            pt=rng.uniform(1000.0, 10000.0),
            phi0=rng.uniform(-math.pi, math.pi),
            cot_theta=rng.uniform(-2.0, 2.0),
            z0=rng.normal(0.0, 30.0),
            charge=int(rng.choice([-1, 1])),
        )
        points.append(pts)
        pids.extend([pid] * len(pts))
    n_noise = 100
    r = rng.uniform(35.0, 180.0, n_noise)
    phi = rng.uniform(-math.pi, math.pi, n_noise)
    points.append(np.column_stack((r * np.cos(phi), r * np.sin(phi), rng.uniform(-500.0, 500.0, n_noise))))
    pids.extend([0] * n_noise)

    pts = np.vstack(points)
    spacepoints = collection(pts)
    truth = pd.DataFrame({"hit_id": spacepoints.measurement_id, "particle_id": np.asarray(pids)})
    return spacepoints, truth
