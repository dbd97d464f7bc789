__all__ = [
    "SeedingAlgorithm", "SeedingStats",
    "SeedFinderConfig", "SeedFilterConfig", "load_config",
    "SpacepointCollection", "Seed", "SeedCollection", "Triplet",
    "SpacepointGrid", "build_grid",
    "ExecutionBackend", "HostBackend", "KernelBackend", "make_backend",
    "HostMemoryResource", "DeviceMemoryResource", "CachingMemoryResource",
    "suppress_duplicates",
    "SeedingError", "ConfigurationError", "SpacepointIndexError",
    "AllocationError", "BufferSizeMismatchError",
    "load_event", "spacepoints_from_hits",
    "seed_metrics",
]

# Errors
from .errors import (
    SeedingError,
    ConfigurationError,
    SpacepointIndexError,
    AllocationError,
    BufferSizeMismatchError,
)

# Configuration & event data model
from .config import SeedFinderConfig, SeedFilterConfig, load_config
from .edm import SpacepointCollection, Seed, SeedCollection, Triplet

# Execution
from .memory import HostMemoryResource, DeviceMemoryResource, CachingMemoryResource
from .backend import ExecutionBackend, HostBackend, KernelBackend, make_backend

# Algorithm
from .grid import SpacepointGrid, build_grid
from .duplicates import suppress_duplicates
from .seeding import SeedingAlgorithm, SeedingStats

# Data & metrics (plotting imported lazily)
from .data import load_event, spacepoints_from_hits
from .metrics import seed_metrics
