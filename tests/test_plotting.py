import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt

from trackml_seeding.config import SeedFinderConfig
from trackml_seeding.edm import SeedCollection
from trackml_seeding.grid import build_grid
from trackml_seeding.plotting import plot_grid_occupancy, plot_seeds_rz
from trackml_seeding.seeding import SeedingAlgorithm


def test_plot_seeds_rz_writes_file(random_event, tmp_path):
    spacepoints, _ = random_event
    seeds = SeedingAlgorithm().find_seeds(spacepoints)
    out = tmp_path / "seeds.png"
    plot_seeds_rz(seeds, spacepoints, max_seeds=20, show=False, out_path=str(out))
    assert out.exists() and out.stat().st_size > 0
    assert plt.get_fignums() == []


def test_plot_without_seeds(single_helix, tmp_path):
    out = tmp_path / "empty.png"
    plot_seeds_rz(SeedCollection.empty(), single_helix, show=False, out_path=str(out))
    assert out.exists()


def test_plot_grid_occupancy(random_event, tmp_path):
    spacepoints, _ = random_event
    grid = build_grid(spacepoints, SeedFinderConfig(phi_bins=16))
    out = tmp_path / "grid.png"
    plot_grid_occupancy(grid, show=False, out_path=str(out))
    assert out.exists()
