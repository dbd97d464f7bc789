from __future__ import annotations

import abc
import logging
import math
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, NamedTuple, Optional, Tuple

import numpy as np

from trackml_seeding.errors import BufferSizeMismatchError
from trackml_seeding.memory import (
    Buffer,
    BufferScope,
    CachingMemoryResource,
    DeviceMemoryResource,
    HostMemoryResource,
    MemoryResource,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CountFillKernel",
    "ForEachKernel",
    "StagedOutput",
    "ExecutionBackend",
    "Session",
    "HostBackend",
    "KernelBackend",
    "make_backend",
]


class CountFillKernel(NamedTuple):
    r"""
    Per-key functions and batch launchers of a variable-output stage.

    ``count(key, *args) -> int`` and
    ``fill(key, begin, end, out_i, out_f, *args) -> int`` are numba functions
    evaluated for a single key; ``fill`` writes at most ``end - begin`` rows and
    returns how many it *found*. ``count_all(counts, *args)`` and
    ``fill_all(offsets, out_i, out_f, written, *args)`` are the corresponding
    ``prange`` kernels over every key.
    """
    name: str
    count: Callable
    fill: Callable
    count_all: Callable
    fill_all: Callable


class ForEachKernel(NamedTuple):
    """Per-key ``body(key, *args)`` and batch launcher ``body_all(n_keys, *args)``."""
    name: str
    body: Callable
    body_all: Callable


class StagedOutput(NamedTuple):
    r"""
    Result of a count-then-fill stage.

    Key ``k`` owns rows ``offsets[k]:offsets[k+1]`` of ``ints`` and ``floats``.
    """
    offsets: Buffer
    ints: Buffer
    floats: Buffer

    @property
    def total(self) -> int:
        return int(self.ints.shape[0])


class Session(abc.ABC):
    r"""
    Execution context of one event on one backend.

    A session owns every intermediate buffer of its event through a
    :class:`~trackml_seeding.memory.BufferScope`; nothing allocated here is
    visible to other sessions, and everything is released when the session
    closes, whether the event succeeded or failed.

    The generic :meth:`count_then_fill` protocol lives here; subclasses only
    supply how a per-key phase is *launched* and how data crosses the memory
    boundary.
    """

    def __init__(self, backend: "ExecutionBackend") -> None:
        self.backend = backend
        self.scope = BufferScope(backend.memory_resource)
        self.launches = 0

    # ----------------------------------------------------------------- memory
    @property
    def space(self) -> str:
        return self.scope.resource.space

    def allocate(self, shape, dtype) -> Buffer:
        return self.scope.allocate(shape, dtype)

    @staticmethod
    def copy(src: np.ndarray, dst: np.ndarray) -> None:
        """Element-wise copy across the memory boundary; shapes must agree exactly."""
        if src.shape != dst.shape or src.dtype != dst.dtype:
            raise BufferSizeMismatchError(
                f"Copy between {src.shape}/{src.dtype} and {dst.shape}/{dst.dtype}"
            )
        np.copyto(dst, src)

    @abc.abstractmethod
    def upload(self, array: np.ndarray) -> Buffer:
        """Make a host array available to this session's kernels."""

    def download(self, buffer: Buffer) -> np.ndarray:
        """Copy a session buffer into a fresh host array."""
        self.synchronize()
        out = np.empty(buffer.shape, dtype=buffer.dtype)
        self.copy(buffer.view, out)
        return out

    def read_scalar(self, buffer: Buffer, index: int) -> int:
        self.synchronize()
        return int(buffer.view[index])

    # ---------------------------------------------------------------- launches
    @abc.abstractmethod
    def _launch_count(self, kernel: CountFillKernel, counts: np.ndarray, args: Tuple) -> None:
        ...

    @abc.abstractmethod
    def _launch_fill(
        self,
        kernel: CountFillKernel,
        offsets: np.ndarray,
        out_i: np.ndarray,
        out_f: np.ndarray,
        written: np.ndarray,
        args: Tuple,
    ) -> None:
        ...

    @abc.abstractmethod
    def _launch_for_each(self, kernel: ForEachKernel, n_keys: int, args: Tuple) -> None:
        ...

    def synchronize(self) -> None:
        """Block until every launched phase has completed."""

    def parallel_for(self, kernel: ForEachKernel, n_keys: int, args: Tuple) -> None:
        r"""
        Run ``kernel.body`` for every key in ``[0, n_keys)``.

        Keys are processed in no particular order and possibly concurrently;
        each key must only write data it exclusively owns.
        """
        if n_keys <= 0:
            return
        self.launches += 1
        self._launch_for_each(kernel, int(n_keys), args)
        self.synchronize()

    def count_then_fill(
        self,
        kernel: CountFillKernel,
        n_keys: int,
        args: Tuple,
        int_width: int,
        float_width: int,
    ) -> StagedOutput:
        r"""
        Two-phase variable-output stage.

        1. **Count**: ``counts[k]`` = number of output rows of key ``k``.
        2. **Scan**: exclusive prefix sum :math:`o_{k+1} = o_k + c_k` sizes the
           output exactly (:math:`o_n` rows, no over-allocation, no resizing).
        3. **Fill**: each key scatter-writes its rows into
           ``[o_k, o_{k+1})``.

        The fill phase reports how many rows each key produced; any difference
        from the count phase raises :class:`BufferSizeMismatchError` rather than
        silently truncating.

        Parameters
        ----------
        kernel : CountFillKernel
            Stage functions.
        n_keys : int
            Number of keys (middle spacepoints).
        args : tuple
            Extra arguments forwarded to every per-key call (session views and
            kernel parameter tuples).
        int_width, float_width : int
            Columns of the ``int64`` and ``float64`` output tables.

        Returns
        -------
        StagedOutput
        """
        n_keys = int(n_keys)
        counts = self.allocate((n_keys,), np.int64)
        self.launches += 1
        self._launch_count(kernel, counts.view, args)
        self.synchronize()

        offsets = self.allocate((n_keys + 1,), np.int64)
        self._scan(counts, offsets)
        total = self.read_scalar(offsets, n_keys)

        ints = self.allocate((total, int_width), np.int64)
        floats = self.allocate((total, float_width), np.float64)
        written = self.allocate((n_keys,), np.int64)
        self.launches += 1
        self._launch_fill(kernel, offsets.view, ints.view, floats.view, written.view, args)
        self.synchronize()

        if not np.array_equal(written.view, counts.view):
            bad = np.flatnonzero(written.view != counts.view)
            k = int(bad[0])
            raise BufferSizeMismatchError(
                f"Stage '{kernel.name}': key {k} counted {int(counts.view[k])} rows "
                f"but filled {int(written.view[k])} ({bad.size} keys disagree)"
            )
        logger.debug("Stage '%s': %d rows over %d keys", kernel.name, total, n_keys)
        return StagedOutput(offsets, ints, floats)

    def _scan(self, counts: Buffer, offsets: Buffer) -> None:
        offsets.view[0] = 0
        np.cumsum(counts.view, out=offsets.view[1:])

    # --------------------------------------------------------------- lifetime
    def close(self) -> None:
        self.scope.close()


class ExecutionBackend(abc.ABC):
    r"""
    Capability set the seeding stages are written against.

    A backend is a long-lived, thread-safe factory of per-event
    :class:`Session` objects and holds the (possibly pooled) memory resource
    shared by those sessions.
    """

    name: str = "abstract"

    def __init__(self, memory_resource: Optional[MemoryResource] = None) -> None:
        self.memory_resource = memory_resource or self._default_resource()

    @abc.abstractmethod
    def _default_resource(self) -> MemoryResource:
        ...

    @abc.abstractmethod
    def _open_session(self) -> Session:
        ...

    @contextmanager
    def session(self) -> Iterator[Session]:
        s = self._open_session()
        try:
            yield s
        finally:
            s.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(resource={type(self.memory_resource).__name__})"


# ---------------------------------------------------------------------------
# Host backend: thread pool over chunks of keys
# ---------------------------------------------------------------------------


class _HostSession(Session):
    def __init__(self, backend: "HostBackend") -> None:
        super().__init__(backend)
        self.max_workers = backend.max_workers
        self.min_chunk = backend.min_chunk
        self._pool: Optional[ThreadPoolExecutor] = None

    def upload(self, array: np.ndarray) -> Buffer:
        # Host memory is read in place; the collection arrays are read-only.
        return Buffer(np.ascontiguousarray(array), "host")

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="seeding-host"
            )
        return self._pool

    def _map_chunks(self, n_keys: int, body: Callable[[int, int], None]) -> None:
        if n_keys <= 0:
            return
        n_chunks = min(self.max_workers * 4, math.ceil(n_keys / self.min_chunk))
        if self.max_workers <= 1 or n_chunks <= 1:
            body(0, n_keys)
            return
        step = math.ceil(n_keys / n_chunks)
        exe = self._executor()
        futures: List[Future] = [
            exe.submit(body, lo, min(lo + step, n_keys)) for lo in range(0, n_keys, step)
        ]
        # Propagate the first failure after every chunk has finished.
        errors = []
        for f in as_completed(futures):
            exc = f.exception()
            if exc is not None:
                errors.append(exc)
        if errors:
            raise errors[0]

    def _launch_count(self, kernel, counts, args):
        count = kernel.count

        def _chunk(lo: int, hi: int) -> None:
            for k in range(lo, hi):
                counts[k] = count(k, *args)

        self._map_chunks(counts.shape[0], _chunk)

    def _launch_fill(self, kernel, offsets, out_i, out_f, written, args):
        fill = kernel.fill

        def _chunk(lo: int, hi: int) -> None:
            for k in range(lo, hi):
                written[k] = fill(k, offsets[k], offsets[k + 1], out_i, out_f, *args)

        self._map_chunks(written.shape[0], _chunk)

    def _launch_for_each(self, kernel, n_keys, args):
        body = kernel.body

        def _chunk(lo: int, hi: int) -> None:
            for k in range(lo, hi):
                body(k, *args)

        self._map_chunks(n_keys, _chunk)

    def close(self) -> None:
        try:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None
        finally:
            super().close()


class HostBackend(ExecutionBackend):
    r"""
    Thread-parallel host execution.

    Keys (middle spacepoints) are split into contiguous chunks and distributed
    over a fixed :class:`~concurrent.futures.ThreadPoolExecutor`; every chunk
    calls the compiled per-key functions, which release the GIL. Stage ``N+1``
    starts only after all chunks of stage ``N`` completed.

    Parameters
    ----------
    max_workers : int, optional
        Pool size. Defaults to ``os.cpu_count()``.
    min_chunk : int, optional
        Minimum keys per task; tiny events run inline.
    memory_resource : MemoryResource, optional
        Defaults to a :class:`HostMemoryResource`.
    """

    name = "host"

    def __init__(
        self,
        max_workers: Optional[int] = None,
        *,
        min_chunk: int = 64,
        memory_resource: Optional[MemoryResource] = None,
    ) -> None:
        super().__init__(memory_resource)
        if self.memory_resource.space != "host":
            raise ValueError("HostBackend requires a host-space memory resource")
        self.max_workers = max(1, int(max_workers or os.cpu_count() or 1))
        self.min_chunk = max(1, int(min_chunk))

    def _default_resource(self) -> MemoryResource:
        return HostMemoryResource()

    def _open_session(self) -> Session:
        return _HostSession(self)


# ---------------------------------------------------------------------------
# Kernel backend: one prange launch per phase, queued on a per-session stream
# ---------------------------------------------------------------------------


# One launch at a time across all kernel sessions; numba parallel kernels
# must not be entered concurrently from several threads.
_LAUNCH_LOCK = threading.Lock()


def _locked_launch(fn: Callable, *args: Any) -> None:
    with _LAUNCH_LOCK:
        fn(*args)


class _KernelSession(Session):
    def __init__(self, backend: "KernelBackend") -> None:
        super().__init__(backend)
        self._stream = ThreadPoolExecutor(max_workers=1, thread_name_prefix="seeding-stream")
        self._pending: List[Future] = []

    def _enqueue(self, fn: Callable, *args: Any) -> None:
        self._pending.append(self._stream.submit(_locked_launch, fn, *args))

    def synchronize(self) -> None:
        pending, self._pending = self._pending, []
        for f in pending:
            f.result()

    def upload(self, array: np.ndarray) -> Buffer:
        array = np.ascontiguousarray(array)
        buf = self.allocate(array.shape, array.dtype)
        self.copy(array, buf.view)
        return buf

    def read_scalar(self, buffer: Buffer, index: int) -> int:
        self.synchronize()
        host = np.empty(1, dtype=buffer.dtype)
        self.copy(buffer.view[index:index + 1] if index >= 0 else buffer.view[index:], host)
        return int(host[0])

    def _scan(self, counts: Buffer, offsets: Buffer) -> None:
        self._enqueue(_device_exclusive_scan, counts.view, offsets.view)

    def _launch_count(self, kernel, counts, args):
        self._enqueue(kernel.count_all, counts, *args)

    def _launch_fill(self, kernel, offsets, out_i, out_f, written, args):
        self._enqueue(kernel.fill_all, offsets, out_i, out_f, written, *args)

    def _launch_for_each(self, kernel, n_keys, args):
        self._enqueue(kernel.body_all, n_keys, *args)

    def close(self) -> None:
        try:
            try:
                self.synchronize()
            finally:
                self._stream.shutdown(wait=True)
        finally:
            super().close()


def _device_exclusive_scan(counts: np.ndarray, offsets: np.ndarray) -> None:
    offsets[0] = 0
    np.cumsum(counts, out=offsets[1:])


class KernelBackend(ExecutionBackend):
    r"""
    Accelerator-style execution: kernel per stage phase on a stream.

    Every phase of every stage is one numba ``parallel=True`` kernel launch
    (one logical thread per key via ``prange``) queued asynchronously on the
    session's stream. Inputs are copied into device-space buffers, outputs are
    copied back explicitly, and the host synchronizes on the stream before it
    reads sizes or results.

    Parameters
    ----------
    memory_resource : MemoryResource, optional
        Device-space resource. Defaults to a
        :class:`CachingMemoryResource` over a :class:`DeviceMemoryResource`,
        which pools buffers across events.
    """

    name = "kernel"

    def __init__(self, *, memory_resource: Optional[MemoryResource] = None) -> None:
        super().__init__(memory_resource)
        if self.memory_resource.space != "device":
            raise ValueError("KernelBackend requires a device-space memory resource")

    def _default_resource(self) -> MemoryResource:
        return CachingMemoryResource(DeviceMemoryResource())

    def _open_session(self) -> Session:
        return _KernelSession(self)


def make_backend(name: str, *, max_workers: Optional[int] = None) -> ExecutionBackend:
    """Construct a backend by name (``"host"`` or ``"kernel"``)."""
    key = name.lower()
    if key == "host":
        return HostBackend(max_workers=max_workers)
    if key == "kernel":
        return KernelBackend()
    raise ValueError(f"Unknown backend {name!r}; expected 'host' or 'kernel'")
