from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from trackml_seeding.errors import SpacepointIndexError

__all__ = [
    "SpacepointCollection",
    "Seed",
    "SeedCollection",
    "Triplet",
    "SP_X", "SP_Y", "SP_Z", "SP_R", "SP_PHI", "SP_VAR_R", "SP_VAR_Z", "SP_WIDTH",
]

# Columns of the dense (N, SP_WIDTH) spacepoint array handed to the kernels.
SP_X, SP_Y, SP_Z, SP_R, SP_PHI, SP_VAR_R, SP_VAR_Z = range(7)
SP_WIDTH = 7


def _column(values, n: Optional[int], dtype, name: str) -> np.ndarray:
    arr = np.ascontiguousarray(values, dtype=dtype)
    if arr.ndim != 1:
        raise ValueError(f"`{name}` must be one-dimensional, got shape {arr.shape}")
    if n is not None and arr.size != n:
        raise ValueError(f"`{name}` has {arr.size} entries, expected {n}")
    arr = arr.copy()
    arr.flags.writeable = False
    return arr


class SpacepointCollection:
    r"""
    Read-only structure-of-arrays view over an event's spacepoints.

    Every other object of the engine refers to a spacepoint by its integer row
    index into this collection; positions are never copied into doublets,
    triplets or seeds.

    Parameters
    ----------
    x, y, z : array_like, shape (N,)
        Global positions (mm).
    measurement_id : array_like of int, optional
        Link back to the originating measurement (e.g. TrackML ``hit_id``).
        Defaults to ``arange(N)``.
    module_id : array_like of int, optional
        Detector module of the measurement. Defaults to ``-1``.
    var_r, var_z : array_like, optional
        Position variances in :math:`r` and :math:`z` (mm²). Default ``0``.

    Notes
    -----
    All arrays are copied once and frozen (``writeable=False``), so a
    collection can be shared by concurrent events without locking.
    """

    __slots__ = ("x", "y", "z", "measurement_id", "module_id", "var_r", "var_z")

    def __init__(
        self,
        x: Sequence[float],
        y: Sequence[float],
        z: Sequence[float],
        *,
        measurement_id: Optional[Sequence[int]] = None,
        module_id: Optional[Sequence[int]] = None,
        var_r: Optional[Sequence[float]] = None,
        var_z: Optional[Sequence[float]] = None,
    ) -> None:
        self.x = _column(x, None, np.float64, "x")
        n = self.x.size
        self.y = _column(y, n, np.float64, "y")
        self.z = _column(z, n, np.float64, "z")
        self.measurement_id = _column(
            np.arange(n) if measurement_id is None else measurement_id, n, np.int64, "measurement_id"
        )
        self.module_id = _column(
            np.full(n, -1) if module_id is None else module_id, n, np.int64, "module_id"
        )
        self.var_r = _column(np.zeros(n) if var_r is None else var_r, n, np.float64, "var_r")
        self.var_z = _column(np.zeros(n) if var_z is None else var_z, n, np.float64, "var_z")

    @classmethod
    def empty(cls) -> "SpacepointCollection":
        return cls(np.empty(0), np.empty(0), np.empty(0))

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        *,
        measurement_col: Optional[str] = "hit_id",
        module_col: Optional[str] = "module_id",
    ) -> "SpacepointCollection":
        r"""
        Build a collection from a table with at least columns ``x, y, z``.

        Optional columns ``var_r``/``var_z`` and the named measurement/module
        columns are picked up when present. Row order defines spacepoint indices.

        Raises
        ------
        KeyError
            If a coordinate column is missing.
        """
        try:
            x = df["x"].to_numpy(dtype=np.float64, copy=False)
            y = df["y"].to_numpy(dtype=np.float64, copy=False)
            z = df["z"].to_numpy(dtype=np.float64, copy=False)
        except KeyError as e:
            raise KeyError(f"Missing required column: {e.args[0]}") from e

        def _opt(col, dtype):
            if col is not None and col in df.columns:
                return df[col].to_numpy(dtype=dtype, copy=False)
            return None

        return cls(
            x, y, z,
            measurement_id=_opt(measurement_col, np.int64),
            module_id=_opt(module_col, np.int64),
            var_r=_opt("var_r", np.float64),
            var_z=_opt("var_z", np.float64),
        )

    def __len__(self) -> int:
        return int(self.x.size)

    def __repr__(self) -> str:
        return f"SpacepointCollection(n={len(self)})"

    def check_links(self, links: np.ndarray) -> None:
        r"""
        Verify that every index in ``links`` lies in ``[0, N)``.

        Raises
        ------
        SpacepointIndexError
            On the first out-of-range index (reported with its value).
        """
        links = np.asarray(links)
        if links.size == 0:
            return
        bad = (links < 0) | (links >= len(self))
        if bad.any():
            first = int(links[bad].ravel()[0])
            raise SpacepointIndexError(
                f"Spacepoint index {first} out of range for collection of size {len(self)}"
            )

    def position(self, index: int) -> np.ndarray:
        """Global ``(x, y, z)`` of one spacepoint (bounds-checked)."""
        i = int(index)
        if not 0 <= i < len(self):
            raise SpacepointIndexError(
                f"Spacepoint index {i} out of range for collection of size {len(self)}"
            )
        return np.array([self.x[i], self.y[i], self.z[i]], dtype=np.float64)

    def positions(self, indices: Optional[np.ndarray] = None) -> np.ndarray:
        if indices is None:
            return np.column_stack((self.x, self.y, self.z))
        indices = np.asarray(indices, dtype=np.int64)
        self.check_links(indices)
        return np.column_stack((self.x[indices], self.y[indices], self.z[indices]))

    def radius(self, beam_pos: Tuple[float, float] = (0.0, 0.0)) -> np.ndarray:
        return np.hypot(self.x - beam_pos[0], self.y - beam_pos[1])

    def phi(self, beam_pos: Tuple[float, float] = (0.0, 0.0)) -> np.ndarray:
        return np.arctan2(self.y - beam_pos[1], self.x - beam_pos[0])

    def kernel_array(self, beam_pos: Tuple[float, float] = (0.0, 0.0)) -> np.ndarray:
        r"""
        Dense ``(N, 7)`` ``float64`` array consumed by the numba kernels.

        Columns are ``x, y, z, r, phi, var_r, var_z`` with the transverse
        coordinates taken relative to ``beam_pos``.
        """
        n = len(self)
        out = np.empty((n, SP_WIDTH), dtype=np.float64)
        out[:, SP_X] = self.x - beam_pos[0]
        out[:, SP_Y] = self.y - beam_pos[1]
        out[:, SP_Z] = self.z
        out[:, SP_R] = np.hypot(out[:, SP_X], out[:, SP_Y])
        out[:, SP_PHI] = np.arctan2(out[:, SP_Y], out[:, SP_X])
        out[:, SP_VAR_R] = self.var_r
        out[:, SP_VAR_Z] = self.var_z
        return out

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "measurement_id": self.measurement_id,
                "module_id": self.module_id,
                "x": self.x,
                "y": self.y,
                "z": self.z,
                "r": self.radius(),
                "var_r": self.var_r,
                "var_z": self.var_z,
            }
        )


@dataclass(frozen=True, slots=True)
class Triplet:
    r"""
    A bottom/middle/top combination accepted by the circle fit.

    ``curvature`` is the signed inverse helix diameter (1/mm) and
    ``impact_parameter`` the transverse distance of closest approach to the
    beam axis (mm).
    """
    bottom: int
    middle: int
    top: int
    curvature: float
    impact_parameter: float
    z_vertex: float
    weight: float


@dataclass(frozen=True, slots=True)
class Seed:
    """Final seed record: three spacepoint links, z-vertex estimate and weight."""
    bottom: int
    middle: int
    top: int
    z_vertex: float
    weight: float

    @property
    def links(self) -> Tuple[int, int, int]:
        return (self.bottom, self.middle, self.top)

    def get_spacepoints(self, spacepoints: SpacepointCollection) -> np.ndarray:
        """Positions of the bottom, middle and top spacepoints as a ``(3, 3)`` array."""
        return spacepoints.positions(np.asarray(self.links, dtype=np.int64))

    def get_measurements(self, spacepoints: SpacepointCollection) -> Tuple[int, int, int]:
        idx = np.asarray(self.links, dtype=np.int64)
        spacepoints.check_links(idx)
        return tuple(int(m) for m in spacepoints.measurement_id[idx])


class SeedCollection:
    r"""
    Host-resident collection of seeds (structure of arrays).

    Attributes
    ----------
    bottom, middle, top : ndarray of int64, shape (S,)
        Spacepoint links.
    z_vertex, weight : ndarray of float64, shape (S,)
    """

    __slots__ = ("bottom", "middle", "top", "z_vertex", "weight")

    def __init__(self, bottom, middle, top, z_vertex, weight) -> None:
        self.bottom = np.asarray(bottom, dtype=np.int64)
        self.middle = np.asarray(middle, dtype=np.int64)
        self.top = np.asarray(top, dtype=np.int64)
        self.z_vertex = np.asarray(z_vertex, dtype=np.float64)
        self.weight = np.asarray(weight, dtype=np.float64)
        n = self.bottom.size
        if not (self.middle.size == self.top.size == self.z_vertex.size == self.weight.size == n):
            raise ValueError("Mismatched seed column lengths.")

    @classmethod
    def empty(cls) -> "SeedCollection":
        e_i = np.empty(0, dtype=np.int64)
        e_f = np.empty(0, dtype=np.float64)
        return cls(e_i, e_i, e_i, e_f, e_f)

    @classmethod
    def from_arrays(cls, links: np.ndarray, values: np.ndarray) -> "SeedCollection":
        """From an ``(S, 3)`` link array and an ``(S, 2)`` ``(z_vertex, weight)`` array."""
        links = np.asarray(links, dtype=np.int64).reshape(-1, 3)
        values = np.asarray(values, dtype=np.float64).reshape(-1, 2)
        if links.shape[0] != values.shape[0]:
            raise ValueError("Mismatched seed link/value row counts.")
        return cls(links[:, 0], links[:, 1], links[:, 2], values[:, 0], values[:, 1])

    def __len__(self) -> int:
        return int(self.bottom.size)

    def __getitem__(self, i: int) -> Seed:
        return Seed(
            int(self.bottom[i]), int(self.middle[i]), int(self.top[i]),
            float(self.z_vertex[i]), float(self.weight[i]),
        )

    def __iter__(self) -> Iterator[Seed]:
        for i in range(len(self)):
            yield self[i]

    def __repr__(self) -> str:
        return f"SeedCollection(n={len(self)})"

    @property
    def links(self) -> np.ndarray:
        return np.column_stack((self.bottom, self.middle, self.top))

    def as_set(self) -> Set[Tuple[int, int, int]]:
        """Seeds as a set of ``(bottom, middle, top)`` index triples."""
        return set(zip(self.bottom.tolist(), self.middle.tolist(), self.top.tolist()))

    def take(self, indices) -> "SeedCollection":
        idx = np.asarray(indices, dtype=np.int64)
        return SeedCollection(
            self.bottom[idx], self.middle[idx], self.top[idx], self.z_vertex[idx], self.weight[idx]
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "bottom": self.bottom,
                "middle": self.middle,
                "top": self.top,
                "z_vertex": self.z_vertex,
                "weight": self.weight,
            }
        )
