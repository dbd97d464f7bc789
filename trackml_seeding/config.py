from __future__ import annotations

import dataclasses
import math
from collections import namedtuple
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import orjson

from trackml_seeding.errors import ConfigurationError

__all__ = [
    "SeedFinderConfig",
    "SeedFilterConfig",
    "FinderParams",
    "FilterParams",
    "load_config",
]

# Conversion pT[MeV] = PT_PER_TESLA_MM * B[T] * R[mm]
PT_PER_TESLA_MM = 0.299792458

FinderParams = namedtuple(
    "FinderParams",
    [
        "r_min_middle",
        "r_max_middle",
        "delta_r_min",
        "delta_r_max",
        "cot_theta_max",
        "collision_region_min",
        "collision_region_max",
        "impact_max",
        "min_helix_diameter2",
        "pt2_per_radius",
        "pt_per_helix_radius",
        "max_scattering_angle2",
        "sigma_scattering",
        "max_pt_scattering",
        "highland",
        "interaction_point_cut",
    ],
)

FilterParams = namedtuple(
    "FilterParams",
    [
        "impact_weight_factor",
        "compat_seed_weight",
        "compat_seed_limit",
        "delta_inv_helix_diameter",
        "delta_impact",
        "compat_delta_r",
        "good_spb_min_radius",
        "good_spb_weight",
        "good_spt_max_radius",
        "good_spt_weight",
        "good_spb_min_weight",
        "seed_min_weight",
        "spb_min_radius",
        "max_seeds_per_middle",
    ],
)


def _as_tuple(value: Any) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    return tuple(float(v) for v in value)


def _from_mapping(cls, data: Mapping[str, Any]):
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} option(s): {', '.join(unknown)}")
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class SeedFinderConfig:
    r"""
    Immutable grid and doublet/triplet finder parameters.

    Units are millimeters, MeV and Tesla. Defaults describe a pixel barrel of a
    TrackML/ITk-like detector in a 2 T solenoid.

    Derived quantities
    ------------------
    With :math:`B` the solenoid field and :math:`p_T^{\min}` the minimum
    transverse momentum,

    .. math::

        k = 0.2998\,B \quad[\mathrm{MeV/mm}],\qquad
        D_{\min}^2 = \left(\frac{2\,p_T^{\min}}{k}\right)^2,

    and the Highland multiple-scattering angle for a seed traversing
    ``rad_length_per_seed`` radiation lengths :math:`x`,

    .. math::

        \theta_0 = 13.6\,\sqrt{x}\,(1 + 0.038 \ln x) / p_T .

    Attributes
    ----------
    z_min, z_max : float
        Longitudinal acceptance of spacepoints entering the grid.
    r_min, r_max : float
        Radial acceptance of spacepoints entering the grid.
    r_min_middle, r_max_middle : float or None
        Optional radial window for middle spacepoints (defaults to the grid range).
    delta_r_min, delta_r_max : float
        Radial separation window of a doublet.
    min_pt : float
        Minimum transverse momentum of a seed.
    cot_theta_max : float
        Maximum :math:`|\cot\theta|` of a doublet (2.7 in pseudorapidity).
    impact_max : float
        Maximum transverse impact parameter of a triplet.
    collision_region_min, collision_region_max : float
        Window for the doublet z-origin along the beam axis.
    phi_min, phi_max : float
        Azimuthal acceptance.
    sigma_scattering, max_pt_scattering, rad_length_per_seed : float
        Multiple-scattering model of the triplet polar-angle test.
    bfield_in_z : float
        Solenoid field in Tesla.
    beam_pos : tuple of float
        Transverse beam position subtracted from every spacepoint.
    phi_bins : int or None
        Explicit azimuthal bin count; derived from the helix geometry if ``None``.
    phi_bin_edges, z_bin_edges : tuple of float or None
        Explicit (possibly non-uniform) bin edges.
    phi_bin_neighbors, z_bin_neighbors : int
        Half-width of the neighbor patch scanned around a middle spacepoint.
    phi_bin_deflection_coverage : int
        Number of phi bins the minimum-pT deflection is spread over.
    interaction_point_cut : bool
        Apply the transformed-coordinate impact test to top doublets.
    """

    z_min: float = -1186.0
    z_max: float = 1186.0
    r_min: float = 33.0
    r_max: float = 200.0
    r_min_middle: Optional[float] = None
    r_max_middle: Optional[float] = None
    delta_r_min: float = 5.0
    delta_r_max: float = 160.0
    min_pt: float = 500.0
    cot_theta_max: float = 7.40627
    impact_max: float = 10.0
    collision_region_min: float = -250.0
    collision_region_max: float = 250.0
    phi_min: float = -math.pi
    phi_max: float = math.pi
    sigma_scattering: float = 1.0
    max_pt_scattering: float = 10000.0
    bfield_in_z: float = 1.99724
    rad_length_per_seed: float = 0.05
    beam_pos: Tuple[float, float] = (0.0, 0.0)
    phi_bins: Optional[int] = None
    phi_bin_edges: Optional[Tuple[float, ...]] = None
    z_bin_edges: Optional[Tuple[float, ...]] = None
    phi_bin_neighbors: int = 1
    z_bin_neighbors: int = 1
    phi_bin_deflection_coverage: int = 1
    interaction_point_cut: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "beam_pos", _as_tuple(self.beam_pos))
        object.__setattr__(self, "phi_bin_edges", _as_tuple(self.phi_bin_edges))
        object.__setattr__(self, "z_bin_edges", _as_tuple(self.z_bin_edges))

        if not self.r_min < self.r_max:
            raise ConfigurationError(f"r_min ({self.r_min}) must be below r_max ({self.r_max})")
        if not self.z_min < self.z_max:
            raise ConfigurationError(f"z_min ({self.z_min}) must be below z_max ({self.z_max})")
        if not self.phi_min < self.phi_max:
            raise ConfigurationError("phi_min must be below phi_max")
        if not 0.0 <= self.delta_r_min <= self.delta_r_max:
            raise ConfigurationError("Require 0 <= delta_r_min <= delta_r_max")
        if self.collision_region_min > self.collision_region_max:
            raise ConfigurationError("collision_region_min must not exceed collision_region_max")
        for name in ("min_pt", "bfield_in_z", "cot_theta_max", "rad_length_per_seed", "max_pt_scattering"):
            if not getattr(self, name) > 0.0:
                raise ConfigurationError(f"{name} must be positive")
        if self.impact_max < 0.0 or self.sigma_scattering < 0.0:
            raise ConfigurationError("impact_max and sigma_scattering must be non-negative")
        if len(self.beam_pos) != 2:
            raise ConfigurationError("beam_pos must hold exactly two values (x, y)")
        if self.phi_bin_neighbors < 0 or self.z_bin_neighbors < 0:
            raise ConfigurationError("Neighbor half-widths must be non-negative")
        if self.phi_bin_deflection_coverage < 1:
            raise ConfigurationError("phi_bin_deflection_coverage must be >= 1")
        for name in ("phi_bin_edges", "z_bin_edges"):
            edges = getattr(self, name)
            if edges is not None and any(b <= a for a, b in zip(edges[:-1], edges[1:])):
                raise ConfigurationError(f"{name} must be strictly increasing")

    # ------------------------------------------------------------------ derived
    @property
    def middle_radius_range(self) -> Tuple[float, float]:
        lo = self.r_min if self.r_min_middle is None else float(self.r_min_middle)
        hi = self.r_max if self.r_max_middle is None else float(self.r_max_middle)
        return lo, hi

    @property
    def pt_per_helix_radius(self) -> float:
        """Transverse momentum per millimeter of helix radius (MeV/mm)."""
        return PT_PER_TESLA_MM * self.bfield_in_z

    @property
    def min_helix_radius(self) -> float:
        return self.min_pt / self.pt_per_helix_radius

    @property
    def min_helix_diameter2(self) -> float:
        return (2.0 * self.min_helix_radius) ** 2

    @property
    def highland(self) -> float:
        x = self.rad_length_per_seed
        return 13.6 * math.sqrt(x) * (1.0 + 0.038 * math.log(x))

    @property
    def max_scattering_angle2(self) -> float:
        return (self.highland / self.min_pt) ** 2

    @property
    def pt2_per_radius(self) -> float:
        return (self.highland / self.pt_per_helix_radius) ** 2

    def kernel_params(self) -> FinderParams:
        r"""
        Flatten the configuration into a homogeneous float namedtuple.

        The result is what numba kernels receive; every field is a Python
        ``float`` so the tuple is typed as a single uniform record.
        """
        r_lo, r_hi = self.middle_radius_range
        return FinderParams(
            r_min_middle=float(r_lo),
            r_max_middle=float(r_hi),
            delta_r_min=float(self.delta_r_min),
            delta_r_max=float(self.delta_r_max),
            cot_theta_max=float(self.cot_theta_max),
            collision_region_min=float(self.collision_region_min),
            collision_region_max=float(self.collision_region_max),
            impact_max=float(self.impact_max),
            min_helix_diameter2=float(self.min_helix_diameter2),
            pt2_per_radius=float(self.pt2_per_radius),
            pt_per_helix_radius=float(self.pt_per_helix_radius),
            max_scattering_angle2=float(self.max_scattering_angle2),
            sigma_scattering=float(self.sigma_scattering),
            max_pt_scattering=float(self.max_pt_scattering),
            highland=float(self.highland),
            interaction_point_cut=1.0 if self.interaction_point_cut else 0.0,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SeedFinderConfig":
        return _from_mapping(cls, data)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def replace(self, **changes: Any) -> "SeedFinderConfig":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class SeedFilterConfig:
    r"""
    Immutable weight and selection parameters.

    The triplet weight is

    .. math::

        w = -f_{\mathrm{imp}}\,d_0
            + w_{\mathrm{compat}}\,\min(n_{\mathrm{compat}}, n_{\mathrm{limit}})
            + w_{\mathrm{ROI}},

    with :math:`n_{\mathrm{compat}}` the number of distinct top radii (clustered
    with gap ``compat_delta_r``) among the other triplets of the same middle
    spacepoint whose curvature and impact parameter agree within
    ``delta_inv_helix_diameter`` and ``delta_impact``.

    Attributes
    ----------
    impact_weight_factor : float
        :math:`f_{\mathrm{imp}}`.
    compat_seed_weight : float
        Bonus per corroborating triplet.
    compat_seed_limit : int
        Saturation cap :math:`n_{\mathrm{limit}}`.
    delta_inv_helix_diameter : float
        Curvature tolerance (1/mm).
    delta_impact : float
        Impact-parameter tolerance (mm).
    compat_delta_r : float
        Minimum radial separation of corroborating top spacepoints (mm).
    good_spb_min_radius, good_spb_weight, good_spt_max_radius, good_spt_weight : float
        Region-of-interest bonus: bottoms beyond ``good_spb_min_radius`` earn
        ``good_spb_weight``; tops within ``good_spt_max_radius`` earn
        ``good_spt_weight`` (the latter takes precedence).
    good_spb_min_weight : float
        Bottoms beyond ``good_spb_min_radius`` must reach this weight.
    seed_min_weight : float
        Triplets below this weight are dropped unless their bottom radius
        exceeds ``spb_min_radius``.
    spb_min_radius : float
        See ``seed_min_weight``.
    max_seeds_per_middle : int
        Maximum seeds retained per middle spacepoint.
    duplicate_radius : float or None
        Radius of the optional cross-middle duplicate suppression; ``None``
        disables the post-pass.
    """

    impact_weight_factor: float = 1.0
    compat_seed_weight: float = 200.0
    compat_seed_limit: int = 2
    delta_inv_helix_diameter: float = 0.00003
    delta_impact: float = 1.0
    compat_delta_r: float = 5.0
    good_spb_min_radius: float = 150.0
    good_spb_weight: float = 400.0
    good_spt_max_radius: float = 150.0
    good_spt_weight: float = 200.0
    good_spb_min_weight: float = 380.0
    seed_min_weight: float = 200.0
    spb_min_radius: float = 43.0
    max_seeds_per_middle: int = 5
    duplicate_radius: Optional[float] = None

    def __post_init__(self) -> None:
        if int(self.max_seeds_per_middle) <= 0:
            raise ConfigurationError(
                f"max_seeds_per_middle must be positive, got {self.max_seeds_per_middle}"
            )
        if int(self.compat_seed_limit) < 0:
            raise ConfigurationError("compat_seed_limit must be non-negative")
        for name in ("delta_inv_helix_diameter", "delta_impact", "compat_delta_r"):
            if getattr(self, name) < 0.0:
                raise ConfigurationError(f"{name} must be non-negative")
        if self.duplicate_radius is not None and self.duplicate_radius < 0.0:
            raise ConfigurationError("duplicate_radius must be non-negative or None")

    def kernel_params(self) -> FilterParams:
        values = {f: float(getattr(self, f)) for f in FilterParams._fields}
        return FilterParams(**values)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SeedFilterConfig":
        return _from_mapping(cls, data)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def replace(self, **changes: Any) -> "SeedFilterConfig":
        return dataclasses.replace(self, **changes)


def load_config(path: Union[str, Path]) -> Tuple[SeedFinderConfig, SeedFilterConfig]:
    r"""
    Read finder and filter configuration from a JSON file.

    The file holds two optional blocks::

        {"finder": {"min_pt": 900.0, "z_bin_edges": [...]},
         "filter": {"max_seeds_per_middle": 3}}

    Missing blocks or keys fall back to the dataclass defaults.

    Raises
    ------
    ConfigurationError
        If the file cannot be parsed, contains unknown blocks/keys, or holds
        invalid values.
    """
    path = Path(path)
    try:
        raw = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a JSON object")
    extra = sorted(set(raw) - {"finder", "filter"})
    if extra:
        raise ConfigurationError(f"{path}: unknown block(s) {', '.join(extra)}")
    finder = SeedFinderConfig.from_dict(raw.get("finder", {}))
    flt = SeedFilterConfig.from_dict(raw.get("filter", {}))
    return finder, flt
