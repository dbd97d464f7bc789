from __future__ import annotations


class SeedingError(RuntimeError):
    """Base class for every error raised by the seeding engine."""


class ConfigurationError(SeedingError, ValueError):
    r"""
    Invalid finder/filter configuration.

    Raised at setup time (config construction or :class:`SeedingAlgorithm`
    construction), before any event is processed.
    """


class SpacepointIndexError(SeedingError, IndexError):
    r"""
    A doublet, triplet or seed links to an index outside ``[0, N)``.

    This is never a legitimate data condition; it aborts the seed finding of
    the affected event only.
    """


class AllocationError(SeedingError, MemoryError):
    """A memory resource could not satisfy an allocation request."""


class BufferSizeMismatchError(SeedingError):
    r"""
    Buffer sizes disagree at a stage or copy boundary.

    Raised instead of truncating data, e.g. when a fill pass writes a different
    number of rows than its count pass reserved.
    """
