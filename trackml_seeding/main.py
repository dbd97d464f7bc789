#!/usr/bin/env python3
r"""
TrackML seed finding runner.

Loads one or more TrackML events, runs triplet seeding on the chosen execution
backend and reports per-event stage statistics and, using the event truth,
seed purity, particle efficiency and duplicate rate.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   trackml-seeding -f train_1.zip --backend host --workers 8
   trackml-seeding -f data/ -n 10 --backend kernel -j 4 --out seeds/
   trackml-seeding -f train_1.zip --config seeding.json --plot --profile

Events given with ``-j > 1`` are processed concurrently, each in its own
backend session, by one shared :class:`~trackml_seeding.seeding.SeedingAlgorithm`.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from glob import glob
from pathlib import Path
from typing import Dict, List, Optional

from trackml_seeding.backend import make_backend
from trackml_seeding.config import SeedFilterConfig, SeedFinderConfig, load_config
from trackml_seeding.data import load_event
from trackml_seeding.metrics import seed_metrics
from trackml_seeding.profiling import prof
from trackml_seeding.seeding import SeedingAlgorithm

logger = logging.getLogger("trackml_seeding")


def build_parser() -> argparse.ArgumentParser:
    """Command-line interface of the seeding runner."""
    p = argparse.ArgumentParser(description="Find track seeds in TrackML event(s).")
    p.add_argument(
        "-f", "--file", type=str, default="train_1.zip",
        help=(
            "Input TrackML .zip event, a directory containing *.zip, or a glob "
            "(e.g. data/train_*.zip). Default: train_1.zip"
        ),
    )
    p.add_argument("-n", "--n-events", type=int, default=1,
                   help="Number of events to run (default: 1).")
    p.add_argument("-b", "--backend", type=str, choices=("host", "kernel"), default="host",
                   help="Execution backend: host | kernel (default: host).")
    p.add_argument("-w", "--workers", type=int, default=None,
                   help="Host backend thread count (default: all cores).")
    p.add_argument("-j", "--jobs", type=int, default=1,
                   help="Events processed concurrently (default: 1).")
    p.add_argument("--config", type=str, default=None,
                   help="JSON file with 'finder' and 'filter' blocks (default: built-in defaults).")
    p.add_argument("--volumes", type=int, nargs="*", default=[7, 8, 9],
                   help="Detector volumes to seed from; empty for all (default: 7 8 9).")
    p.add_argument("--out", type=str, default=None,
                   help="Directory for per-event seed CSV files.")
    p.add_argument("--no-metrics", dest="metrics", action="store_false", default=True,
                   help="Skip truth-based seed metrics.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show an r-z plot of the seeds of each event.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around the seeding phase.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="If set, write pstats text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    """``DEBUG`` with ``verbose``, else ``INFO``; ``'time | level | message'`` records."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    """Select the non-interactive Agg backend unless plots are requested."""
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)


def _natural_key(path: Path):
    """Natural sort key (split digits) so train_2 comes before train_10."""
    parts = re.split(r"(\d+)", path.name)
    return [int(p) if p.isdigit() else p.lower() for p in parts]


def _resolve_event_paths(file_arg: str, n_events: int) -> List[Path]:
    """
    Turn --file into a list of up to n_events event paths.

    Accepts a single archive, a directory of ``*.zip`` archives or a glob
    pattern. A single archive with ``n_events > 1`` continues through its
    siblings in natural order.
    """
    n = max(1, int(n_events))
    p = Path(file_arg)
    if any(ch in file_arg for ch in "*?[]"):
        return sorted((Path(x) for x in glob(file_arg)), key=_natural_key)[:n]
    if p.is_dir():
        return sorted(p.glob("*.zip"), key=_natural_key)[:n]
    if p.is_file():
        sibs = sorted(p.parent.glob("*.zip"), key=_natural_key)
        if p in sibs:
            i = sibs.index(p)
            return sibs[i:i + n]
    return [p]


def run_event(
    path: Path,
    algorithm: SeedingAlgorithm,
    args: argparse.Namespace,
) -> Dict[str, float]:
    """Load, seed and evaluate one event; returns its summary row."""
    spacepoints, truth = load_event(str(path), volumes=args.volumes or None)
    seeds, stats = algorithm.run(spacepoints)
    logger.info(
        "%s: %d/%d binned | doublets b=%d t=%d | triplets=%d | seeds=%d (dups removed %d) | %.3fs",
        path.name, stats.n_binned, stats.n_spacepoints, stats.n_bottom_doublets,
        stats.n_top_doublets, stats.n_triplets, stats.n_seeds,
        stats.n_duplicates_removed, stats.elapsed,
    )
    row: Dict[str, float] = {"n_seeds": float(stats.n_seeds), "elapsed": stats.elapsed}

    if args.metrics:
        m = seed_metrics(seeds, spacepoints, truth)
        logger.info(
            "%s: purity=%.3f efficiency=%.3f duplicate_rate=%.3f (%d particles)",
            path.name, m["purity"], m["efficiency"], m["duplicate_rate"], int(m["n_particles"]),
        )
        row.update(m)

    if args.out:
        out_dir = Path(args.out)
        out_dir.mkdir(parents=True, exist_ok=True)
        df = seeds.to_dataframe()
        for role in ("bottom", "middle", "top"):
            df[f"{role}_hit_id"] = spacepoints.measurement_id[df[role].to_numpy()]
        out_file = out_dir / f"{path.stem}-seeds.csv"
        df.to_csv(out_file, index=False)
        logger.debug("Wrote %s", out_file)

    if args.plot:
        from trackml_seeding.plotting import plot_seeds_rz
        plot_seeds_rz(seeds, spacepoints, max_seeds=500)
    return row


def main(argv: Optional[List[str]] = None) -> None:
    r"""
    End-to-end seeding: **resolve events -> configure -> seed -> evaluate**.

    Each event failure is logged with its traceback and does not stop the
    remaining events; the process exits non-zero if any event failed.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    event_paths = _resolve_event_paths(args.file, args.n_events)
    if not event_paths:
        raise FileNotFoundError(f"No events found for --file={args.file}")
    logger.info("Running on %d event(s). First: %s", len(event_paths), event_paths[0].name)

    if args.config:
        logger.info("Reading config from %s", args.config)
        finder_cfg, filter_cfg = load_config(args.config)
    else:
        finder_cfg, filter_cfg = SeedFinderConfig(), SeedFilterConfig()

    backend = make_backend(args.backend, max_workers=args.workers)
    algorithm = SeedingAlgorithm(finder_cfg, filter_cfg, backend)
    logger.info("Using %r", algorithm)

    failures = 0
    rows: List[Dict[str, float]] = []
    with prof(args.profile, out_path=args.profile_out, logger=logger):
        with ThreadPoolExecutor(max_workers=max(1, args.jobs)) as pool:
            futures = {pool.submit(run_event, p, algorithm, args): p for p in event_paths}
            for fut, path in futures.items():
                try:
                    rows.append(fut.result())
                except Exception:
                    failures += 1
                    logger.exception("Event %s failed", path.name)

    if rows:
        total = sum(r["n_seeds"] for r in rows)
        elapsed = sum(r["elapsed"] for r in rows)
        logger.info("Done: %d event(s), %d seeds, %.3fs seeding time", len(rows), int(total), elapsed)
    if failures:
        raise SystemExit(f"{failures} event(s) failed")


if __name__ == "__main__":
    main()
