from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from trackml_seeding.edm import SpacepointCollection

logger = logging.getLogger(__name__)

__all__ = ["module_key", "spacepoints_from_hits", "load_event"]

# Pixel barrel and end-caps of the TrackML detector.
PIXEL_VOLUMES = (7, 8, 9)


def module_key(volume_id, layer_id, module_id) -> np.ndarray:
    """Pack TrackML ``(volume, layer, module)`` ids into one integer per hit."""
    v = np.asarray(volume_id, dtype=np.int64)
    l = np.asarray(layer_id, dtype=np.int64)
    m = np.asarray(module_id, dtype=np.int64)
    return (v << 24) | (l << 12) | m


def spacepoints_from_hits(
    hits: pd.DataFrame,
    *,
    volumes: Optional[Sequence[int]] = PIXEL_VOLUMES,
    sigma_r: float = 0.0,
    sigma_z: float = 0.0,
) -> SpacepointCollection:
    r"""
    Build a spacepoint collection from a TrackML ``hits`` table.

    Parameters
    ----------
    hits : pandas.DataFrame
        Columns ``hit_id, x, y, z`` (millimeters) and, if present,
        ``volume_id, layer_id, module_id``.
    volumes : sequence of int or None
        Keep only hits in these detector volumes; ``None`` keeps all.
    sigma_r, sigma_z : float
        Uniform position resolution assigned to every spacepoint (mm).

    Returns
    -------
    SpacepointCollection
        ``measurement_id`` holds the TrackML ``hit_id``; ``module_id`` the
        packed :func:`module_key`.
    """
    if volumes is not None and "volume_id" in hits.columns:
        hits = hits.loc[hits["volume_id"].isin(list(volumes))]
    hits = hits.reset_index(drop=True)

    n = len(hits)
    if {"volume_id", "layer_id", "module_id"}.issubset(hits.columns):
        modules = module_key(hits["volume_id"], hits["layer_id"], hits["module_id"])
    else:
        modules = np.full(n, -1, dtype=np.int64)

    return SpacepointCollection(
        hits["x"].to_numpy(dtype=np.float64),
        hits["y"].to_numpy(dtype=np.float64),
        hits["z"].to_numpy(dtype=np.float64),
        measurement_id=hits["hit_id"].to_numpy(dtype=np.int64),
        module_id=modules,
        var_r=np.full(n, sigma_r * sigma_r),
        var_z=np.full(n, sigma_z * sigma_z),
    )


def load_event(
    event_path: str,
    *,
    volumes: Optional[Sequence[int]] = PIXEL_VOLUMES,
    sigma_r: float = 0.0,
    sigma_z: float = 0.0,
) -> Tuple[SpacepointCollection, pd.DataFrame]:
    r"""
    Load the first event of a TrackML archive or directory.

    Returns
    -------
    spacepoints : SpacepointCollection
    truth : pandas.DataFrame
        ``hit_id, particle_id`` plus the TrackML truth columns, restricted to
        the hits kept in ``spacepoints``.
    """
    from trackml.dataset import load_dataset

    event_id, hits, truth = next(load_dataset(event_path, nevents=1, parts=["hits", "truth"]))
    spacepoints = spacepoints_from_hits(hits, volumes=volumes, sigma_r=sigma_r, sigma_z=sigma_z)
    truth = truth.loc[truth["hit_id"].isin(spacepoints.measurement_id)].reset_index(drop=True)

    logger.info(
        "Loaded event %s: %d hits, %d spacepoints in volumes %s",
        event_id, len(hits), len(spacepoints), "all" if volumes is None else tuple(volumes),
    )
    return spacepoints, truth
