from __future__ import annotations

from typing import Dict

import numpy as np
import pandas as pd

from trackml_seeding.edm import SeedCollection, SpacepointCollection

__all__ = ["seed_particles", "seed_metrics"]


def seed_particles(
    seeds: SeedCollection, spacepoints: SpacepointCollection, truth: pd.DataFrame
) -> pd.DataFrame:
    r"""
    Truth particle of each seed spacepoint.

    Returns a frame with one row per seed and columns ``particle_b``,
    ``particle_m``, ``particle_t`` (``0`` for noise or unmatched hits) and
    ``particle_id``, which is the common particle of a pure seed and ``0``
    otherwise.
    """
    hit_to_particle = (
        truth[["hit_id", "particle_id"]].drop_duplicates("hit_id").set_index("hit_id")["particle_id"]
    )
    out = {}
    for role, links in (("b", seeds.bottom), ("m", seeds.middle), ("t", seeds.top)):
        hit_ids = pd.Series(spacepoints.measurement_id[links])
        out[f"particle_{role}"] = hit_ids.map(hit_to_particle).fillna(0).astype(np.int64).to_numpy()
    df = pd.DataFrame(out)
    pure = (
        (df["particle_b"] == df["particle_m"])
        & (df["particle_m"] == df["particle_t"])
        & (df["particle_b"] != 0)
    )
    df["particle_id"] = np.where(pure, df["particle_b"], 0)
    return df


def seed_metrics(
    seeds: SeedCollection,
    spacepoints: SpacepointCollection,
    truth: pd.DataFrame,
    *,
    min_spacepoints: int = 3,
) -> Dict[str, float]:
    r"""
    Truth-based seed quality.

    Let :math:`S` be the seeds, :math:`S_p \subseteq S` the *pure* seeds (all
    three spacepoints from one particle), :math:`P` the particles with at
    least ``min_spacepoints`` spacepoints in the collection and
    :math:`P_s \subseteq P` those with at least one pure seed. Then

    .. math::

        \mathrm{purity} = \frac{|S_p|}{|S|},\qquad
        \mathrm{efficiency} = \frac{|P_s|}{|P|},\qquad
        \mathrm{duplicate\ rate} = \frac{|S_p| - |P_s|}{|S_p|}.

    Empty denominators yield ``0.0``.
    """
    in_event = truth.loc[
        truth["hit_id"].isin(spacepoints.measurement_id) & (truth["particle_id"] != 0)
    ]
    hits_per_particle = in_event.groupby("particle_id")["hit_id"].nunique()
    reconstructable = set(hits_per_particle.index[hits_per_particle >= min_spacepoints].tolist())

    matched = seed_particles(seeds, spacepoints, truth)["particle_id"]
    pure = matched[matched != 0]
    found = set(pure.unique().tolist()) & reconstructable
    n_pure_found = int(pure.isin(found).sum())

    n_seeds = len(seeds)
    return {
        "n_seeds": float(n_seeds),
        "n_particles": float(len(reconstructable)),
        "purity": len(pure) / n_seeds if n_seeds else 0.0,
        "efficiency": len(found) / len(reconstructable) if reconstructable else 0.0,
        "duplicate_rate": (n_pure_found - len(found)) / n_pure_found if n_pure_found else 0.0,
    }
