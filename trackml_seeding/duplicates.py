from __future__ import annotations

import logging
from typing import Optional

import networkx as nx
import numpy as np
from scipy.spatial import cKDTree

from trackml_seeding.edm import SeedCollection, SpacepointCollection

logger = logging.getLogger(__name__)

__all__ = ["duplicate_groups", "suppress_duplicates"]


def duplicate_groups(
    seeds: SeedCollection, spacepoints: SpacepointCollection, radius: float
) -> nx.Graph:
    r"""
    Graph over seed indices whose edges join duplicate seeds.

    Two seeds are duplicates when they share the bottom and the top
    spacepoint and their middle spacepoints lie within ``radius`` (3D
    distance). Seeds without duplicates are isolated nodes.
    """
    n = len(seeds)
    graph = nx.Graph()
    graph.add_nodes_from(range(n))
    if n < 2:
        return graph
    tree = cKDTree(spacepoints.positions(seeds.middle))
    pairs = tree.query_pairs(r=float(radius), output_type="ndarray")
    if pairs.size == 0:
        return graph
    i, j = pairs[:, 0], pairs[:, 1]
    same = (seeds.bottom[i] == seeds.bottom[j]) & (seeds.top[i] == seeds.top[j])
    graph.add_edges_from(zip(i[same].tolist(), j[same].tolist()))
    return graph


def suppress_duplicates(
    seeds: SeedCollection,
    spacepoints: SpacepointCollection,
    radius: Optional[float],
) -> SeedCollection:
    r"""
    Keep the best seed of every duplicate group.

    Within a connected group the survivor is the seed with the highest weight,
    ties broken by the lower middle, bottom and top index. The relative order
    of surviving seeds is preserved. ``radius=None`` returns ``seeds``
    unchanged.
    """
    if radius is None or len(seeds) < 2:
        return seeds
    graph = duplicate_groups(seeds, spacepoints, radius)

    def _rank(k: int):
        return (-seeds.weight[k], seeds.middle[k], seeds.bottom[k], seeds.top[k])

    keep = sorted(min(component, key=_rank) for component in nx.connected_components(graph))
    removed = len(seeds) - len(keep)
    if removed:
        logger.debug("Duplicate suppression removed %d of %d seeds", removed, len(seeds))
    return seeds.take(np.asarray(keep, dtype=np.int64))
