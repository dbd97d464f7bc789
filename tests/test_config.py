import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import orjson
import pytest

from trackml_seeding.config import (
    FilterParams,
    FinderParams,
    SeedFilterConfig,
    SeedFinderConfig,
    load_config,
)
from trackml_seeding.errors import ConfigurationError, SeedingError


def test_derived_quantities():
    cfg = SeedFinderConfig(min_pt=500.0, bfield_in_z=2.0)
    k = 0.299792458 * 2.0
    assert cfg.pt_per_helix_radius == pytest.approx(k)
    assert cfg.min_helix_radius == pytest.approx(500.0 / k)
    assert cfg.min_helix_diameter2 == pytest.approx((1000.0 / k) ** 2)
    x = cfg.rad_length_per_seed
    highland = 13.6 * math.sqrt(x) * (1.0 + 0.038 * math.log(x))
    assert cfg.highland == pytest.approx(highland)
    assert cfg.max_scattering_angle2 == pytest.approx((highland / 500.0) ** 2)
    assert cfg.pt2_per_radius == pytest.approx((highland / k) ** 2)


def test_middle_range_defaults_to_grid_range():
    assert SeedFinderConfig().middle_radius_range == (33.0, 200.0)
    assert SeedFinderConfig(r_min_middle=60.0).middle_radius_range == (60.0, 200.0)


def test_kernel_params_are_uniform_floats():
    fp = SeedFinderConfig(interaction_point_cut=False).kernel_params()
    assert isinstance(fp, FinderParams)
    assert all(isinstance(v, float) for v in fp)
    assert fp.interaction_point_cut == 0.0

    flt = SeedFilterConfig(max_seeds_per_middle=3).kernel_params()
    assert isinstance(flt, FilterParams)
    assert all(isinstance(v, float) for v in flt)
    assert flt.max_seeds_per_middle == 3.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"r_min": 100.0, "r_max": 50.0},
        {"z_min": 10.0, "z_max": -10.0},
        {"delta_r_min": 20.0, "delta_r_max": 10.0},
        {"min_pt": 0.0},
        {"phi_bin_deflection_coverage": 0},
        {"z_bin_edges": (0.0, 10.0, 5.0)},
        {"beam_pos": (0.0, 0.0, 0.0)},
    ],
)
def test_invalid_finder_config(kwargs):
    with pytest.raises(ConfigurationError):
        SeedFinderConfig(**kwargs)


def test_invalid_filter_config():
    with pytest.raises(ConfigurationError):
        SeedFilterConfig(max_seeds_per_middle=0)
    with pytest.raises(ConfigurationError):
        SeedFilterConfig(duplicate_radius=-1.0)


def test_configuration_error_is_value_error():
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(ConfigurationError, SeedingError)


def test_from_dict_roundtrip_and_unknown_key():
    cfg = SeedFinderConfig.from_dict({"min_pt": 900.0, "z_bin_edges": [-100.0, 0.0, 100.0]})
    assert cfg.min_pt == 900.0
    assert cfg.z_bin_edges == (-100.0, 0.0, 100.0)
    assert SeedFinderConfig.from_dict(cfg.to_dict()) == cfg
    with pytest.raises(ConfigurationError, match="min_ptt"):
        SeedFinderConfig.from_dict({"min_ptt": 1.0})


def test_replace_keeps_validation():
    cfg = SeedFilterConfig()
    assert cfg.replace(max_seeds_per_middle=2).max_seeds_per_middle == 2
    with pytest.raises(ConfigurationError):
        cfg.replace(max_seeds_per_middle=-1)


def test_load_config(tmp_path):
    path = tmp_path / "seeding.json"
    path.write_bytes(orjson.dumps({"finder": {"min_pt": 800.0}, "filter": {"max_seeds_per_middle": 2}}))
    finder, flt = load_config(path)
    assert finder.min_pt == 800.0
    assert flt.max_seeds_per_middle == 2
    assert flt.seed_min_weight == SeedFilterConfig().seed_min_weight


def test_load_config_errors(tmp_path):
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(bad_json)

    bad_block = tmp_path / "block.json"
    bad_block.write_bytes(orjson.dumps({"finder": {}, "grid": {}}))
    with pytest.raises(ConfigurationError, match="grid"):
        load_config(bad_block)

    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.json")
