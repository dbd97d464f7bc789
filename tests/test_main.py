import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pandas as pd
import pytest

from trackml_seeding import main as cli
from trackml_seeding.main import _resolve_event_paths, build_parser


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.backend == "host"
    assert args.volumes == [7, 8, 9]
    assert args.metrics is True
    assert args.jobs == 1


def test_resolve_event_paths(tmp_path):
    for name in ("train_10.zip", "train_2.zip", "train_1.zip", "notes.txt"):
        (tmp_path / name).write_text("")
    names = [p.name for p in _resolve_event_paths(str(tmp_path), 5)]
    assert names == ["train_1.zip", "train_2.zip", "train_10.zip"]
    names = [p.name for p in _resolve_event_paths(str(tmp_path / "train_2.zip"), 2)]
    assert names == ["train_2.zip", "train_10.zip"]
    names = [p.name for p in _resolve_event_paths(str(tmp_path / "train_*.zip"), 2)]
    assert names == ["train_1.zip", "train_2.zip"]


def test_main_writes_seed_files(random_event, tmp_path, monkeypatch):
    spacepoints, truth = random_event
    calls = []

    def fake_load_event(path, volumes=None):
        calls.append((path, volumes))
        return spacepoints, truth

    monkeypatch.setattr(cli, "load_event", fake_load_event)
    out = tmp_path / "seeds"
    cli.main(["-f", "fake.zip", "--out", str(out), "-b", "kernel"])

    assert calls == [("fake.zip", [7, 8, 9])]
    df = pd.read_csv(out / "fake-seeds.csv")
    assert len(df) > 0
    assert {"bottom", "middle", "top", "weight", "bottom_hit_id", "top_hit_id"} <= set(df.columns)
    assert (df["middle_hit_id"] == df["middle"] + 1).all()


def test_main_reports_failed_events(monkeypatch, tmp_path):
    def broken(path, volumes=None):
        raise OSError(f"cannot read {path}")

    monkeypatch.setattr(cli, "load_event", broken)
    with pytest.raises(SystemExit):
        cli.main(["-f", "missing.zip", "--no-metrics"])
