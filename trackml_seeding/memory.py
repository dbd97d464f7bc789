from __future__ import annotations

import abc
import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from trackml_seeding.errors import AllocationError

logger = logging.getLogger(__name__)

__all__ = [
    "MemoryResource",
    "HostMemoryResource",
    "DeviceMemoryResource",
    "CachingMemoryResource",
    "Buffer",
    "BufferScope",
    "exclusive_scan",
]

Shape = Union[int, Tuple[int, ...]]

# Pooled blocks are rounded up to this granularity so nearby sizes share a pool.
_BLOCK_GRANULARITY = 256


class MemoryResource(abc.ABC):
    r"""
    Raw byte allocator for one memory *space* (``"host"`` or ``"device"``).

    Resources hand out 1-D ``uint8`` blocks; typed views are carved out of them
    by :class:`BufferScope`. Implementations must be thread-safe: one resource
    may serve many concurrent events.
    """

    space: str = "host"

    @abc.abstractmethod
    def allocate(self, nbytes: int) -> np.ndarray:
        """Return a block of at least ``nbytes`` bytes or raise :class:`AllocationError`."""

    @abc.abstractmethod
    def deallocate(self, block: np.ndarray) -> None:
        """Give a block obtained from :meth:`allocate` back to the resource."""


class HostMemoryResource(MemoryResource):
    """Plain host heap."""

    space = "host"

    def allocate(self, nbytes: int) -> np.ndarray:
        try:
            return np.empty(int(nbytes), dtype=np.uint8)
        except MemoryError as e:
            raise AllocationError(f"Host allocation of {nbytes} bytes failed") from e

    def deallocate(self, block: np.ndarray) -> None:
        return None


class DeviceMemoryResource(MemoryResource):
    r"""
    Accelerator-space memory with an optional capacity limit.

    Buffers from this resource are only reached through explicit copies made by
    a kernel session. ``capacity`` (bytes) bounds the total outstanding
    allocation; exceeding it raises :class:`AllocationError` without touching
    memory already handed out.
    """

    space = "device"

    def __init__(self, capacity: Optional[int] = None) -> None:
        self.capacity = None if capacity is None else int(capacity)
        self._in_use = 0
        self._lock = threading.Lock()

    @property
    def bytes_in_use(self) -> int:
        return self._in_use

    def allocate(self, nbytes: int) -> np.ndarray:
        nbytes = int(nbytes)
        with self._lock:
            if self.capacity is not None and self._in_use + nbytes > self.capacity:
                raise AllocationError(
                    f"Device allocation of {nbytes} bytes exceeds capacity "
                    f"({self._in_use}/{self.capacity} bytes in use)"
                )
            self._in_use += nbytes
        try:
            return np.empty(nbytes, dtype=np.uint8)
        except MemoryError as e:
            with self._lock:
                self._in_use -= nbytes
            raise AllocationError(f"Device allocation of {nbytes} bytes failed") from e

    def deallocate(self, block: np.ndarray) -> None:
        with self._lock:
            self._in_use -= int(block.nbytes)


class CachingMemoryResource(MemoryResource):
    r"""
    Pooling front-end over an upstream resource.

    Freed blocks are kept in size-keyed free lists and handed out again to
    later requests of the same (rounded) size, amortising allocation cost over
    many events. A block is owned by exactly one :class:`BufferScope` between
    :meth:`allocate` and :meth:`deallocate`, so concurrent events never see each
    other's intermediate data.

    Parameters
    ----------
    upstream : MemoryResource
        Resource used on a pool miss.
    """

    def __init__(self, upstream: MemoryResource) -> None:
        self.upstream = upstream
        self.space = upstream.space
        self._pools: Dict[int, List[np.ndarray]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _round(nbytes: int) -> int:
        g = _BLOCK_GRANULARITY
        return max(g, ((int(nbytes) + g - 1) // g) * g)

    def allocate(self, nbytes: int) -> np.ndarray:
        size = self._round(nbytes)
        with self._lock:
            pool = self._pools.get(size)
            if pool:
                self.hits += 1
                return pool.pop()
            self.misses += 1
        return self.upstream.allocate(size)

    def deallocate(self, block: np.ndarray) -> None:
        with self._lock:
            self._pools.setdefault(int(block.nbytes), []).append(block)

    @property
    def cached_bytes(self) -> int:
        with self._lock:
            return sum(b.nbytes for pool in self._pools.values() for b in pool)

    def release_all(self) -> None:
        """Return every pooled block to the upstream resource."""
        with self._lock:
            pools, self._pools = self._pools, {}
        for pool in pools.values():
            for block in pool:
                self.upstream.deallocate(block)


class Buffer:
    r"""
    Typed array living in one memory space.

    ``view`` is the array the kernels read and write. Buffers created by a
    :class:`BufferScope` hold a pooled block and are released with the scope;
    host buffers wrapping caller-owned arrays own nothing.
    """

    __slots__ = ("view", "space", "_block", "_resource")

    def __init__(
        self,
        view: np.ndarray,
        space: str,
        *,
        block: Optional[np.ndarray] = None,
        resource: Optional[MemoryResource] = None,
    ) -> None:
        self.view = view
        self.space = space
        self._block = block
        self._resource = resource

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.view.shape

    @property
    def dtype(self) -> np.dtype:
        return self.view.dtype

    @property
    def nbytes(self) -> int:
        return int(self.view.nbytes)

    def __len__(self) -> int:
        return int(self.view.shape[0])

    def __repr__(self) -> str:
        return f"Buffer(space={self.space!r}, shape={self.shape}, dtype={self.dtype})"

    def release(self) -> None:
        if self._resource is not None and self._block is not None:
            self._resource.deallocate(self._block)
        self._resource = None
        self._block = None


class BufferScope:
    r"""
    Per-event owner of every buffer allocated through it.

    On :meth:`close` (or leaving the ``with`` block, also on error) all buffers
    are released to the resource. After release their views must not be used.
    """

    def __init__(self, resource: MemoryResource) -> None:
        self.resource = resource
        self._buffers: List[Buffer] = []
        self.bytes_allocated = 0

    def allocate(self, shape: Shape, dtype) -> Buffer:
        shape = (int(shape),) if np.isscalar(shape) else tuple(int(s) for s in shape)
        if any(s < 0 for s in shape):
            raise ValueError(f"Negative buffer shape {shape}")
        dtype = np.dtype(dtype)
        nbytes = int(np.prod(shape, dtype=np.int64)) * dtype.itemsize
        block = self.resource.allocate(nbytes)
        view = block[:nbytes].view(dtype).reshape(shape)
        buf = Buffer(view, self.resource.space, block=block, resource=self.resource)
        self._buffers.append(buf)
        self.bytes_allocated += nbytes
        return buf

    def close(self) -> None:
        buffers, self._buffers = self._buffers, []
        for buf in buffers:
            buf.release()
        if buffers:
            logger.debug("Released %d buffers (%d bytes)", len(buffers), self.bytes_allocated)

    def __enter__(self) -> "BufferScope":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def exclusive_scan(counts: Sequence[int] | np.ndarray) -> np.ndarray:
    r"""
    Exclusive prefix sum with a trailing total.

    For counts :math:`c_0,\dots,c_{n-1}` returns :math:`o` of length
    :math:`n+1` with :math:`o_0=0` and :math:`o_{k+1}=o_k+c_k`, so key
    :math:`k` owns rows :math:`[o_k, o_{k+1})` and :math:`o_n` is the total.
    """
    counts = np.asarray(counts, dtype=np.int64)
    out = np.zeros(counts.size + 1, dtype=np.int64)
    np.cumsum(counts, out=out[1:])
    return out
