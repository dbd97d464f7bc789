import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackml_seeding.backend import (
    CountFillKernel,
    ForEachKernel,
    HostBackend,
    KernelBackend,
    make_backend,
)
from trackml_seeding.errors import BufferSizeMismatchError
from trackml_seeding.memory import DeviceMemoryResource


def _count(k, sizes):
    return int(sizes[k])


def _fill(k, begin, end, out_i, out_f, sizes):
    n = int(sizes[k])
    for j in range(n):
        row = begin + j
        if row < end:
            out_i[row, 0] = k
            out_f[row, 0] = 10.0 * k + j
    return n


def _overfill(k, begin, end, out_i, out_f, sizes):
    return _fill(k, begin, end, out_i, out_f, sizes) + (1 if k == 1 else 0)


def _count_all(counts, sizes):
    for k in range(counts.shape[0]):
        counts[k] = _count(k, sizes)


def _launcher(fill):
    def fill_all(offsets, out_i, out_f, written, sizes):
        for k in range(written.shape[0]):
            written[k] = fill(k, offsets[k], offsets[k + 1], out_i, out_f, sizes)
    return fill_all


STAGE = CountFillKernel("test", _count, _fill, _count_all, _launcher(_fill))
BAD_STAGE = CountFillKernel("bad", _count, _overfill, _count_all, _launcher(_overfill))


def _square(k, values):
    values[k] = values[k] ** 2


def _square_all(n, values):
    for k in range(n):
        _square(k, values)


SQUARE = ForEachKernel("square", _square, _square_all)

BACKENDS = [
    lambda: HostBackend(max_workers=1),
    lambda: HostBackend(max_workers=4, min_chunk=1),
    lambda: KernelBackend(),
]


@pytest.mark.parametrize("make", BACKENDS)
def test_count_then_fill_exact_allocation(make):
    sizes = np.array([2, 0, 3, 1], dtype=np.int64)
    with make().session() as s:
        staged = s.count_then_fill(STAGE, 4, (s.upload(sizes).view,), 1, 1)
        offsets = s.download(staged.offsets)
        ints = s.download(staged.ints)
        floats = s.download(staged.floats)
    np.testing.assert_array_equal(offsets, [0, 2, 2, 5, 6])
    assert staged.total == 6
    np.testing.assert_array_equal(ints[:, 0], [0, 0, 2, 2, 2, 3])
    np.testing.assert_allclose(floats[:, 0], [0.0, 1.0, 20.0, 21.0, 22.0, 30.0])


@pytest.mark.parametrize("make", BACKENDS)
def test_count_fill_disagreement_raises(make):
    sizes = np.array([1, 1, 1], dtype=np.int64)
    with make().session() as s:
        with pytest.raises(BufferSizeMismatchError, match="key 1"):
            s.count_then_fill(BAD_STAGE, 3, (s.upload(sizes).view,), 1, 1)


@pytest.mark.parametrize("make", BACKENDS)
def test_count_then_fill_zero_keys(make):
    with make().session() as s:
        staged = s.count_then_fill(STAGE, 0, (s.upload(np.empty(0, dtype=np.int64)).view,), 1, 1)
        assert staged.total == 0
        assert s.download(staged.ints).shape == (0, 1)


@pytest.mark.parametrize("make", BACKENDS)
def test_parallel_for(make):
    values = np.arange(100, dtype=np.float64)
    with make().session() as s:
        buf = s.upload(values)
        s.parallel_for(SQUARE, 100, (buf.view,))
        out = s.download(buf)
    np.testing.assert_allclose(out, np.arange(100) ** 2)


def test_kernel_upload_is_a_copy():
    values = np.ones(4)
    with KernelBackend().session() as s:
        buf = s.upload(values)
        assert buf.space == "device"
        buf.view[:] = 5.0
        assert values.tolist() == [1.0] * 4
        out = s.download(buf)
    out[:] = 7.0
    assert values.tolist() == [1.0] * 4


def test_copy_shape_mismatch():
    with KernelBackend().session() as s:
        with pytest.raises(BufferSizeMismatchError):
            s.copy(np.zeros(3), np.zeros(4))


def test_worker_error_propagates():
    def boom(k, values):
        if k == 37:
            raise RuntimeError("boom at 37")

    def boom_all(n, values):
        for k in range(n):
            boom(k, values)

    kernel = ForEachKernel("boom", boom, boom_all)
    for backend in (HostBackend(max_workers=4, min_chunk=1), KernelBackend()):
        with backend.session() as s:
            with pytest.raises(RuntimeError, match="boom at 37"):
                s.parallel_for(kernel, 100, (np.zeros(1),))


def test_session_releases_buffers():
    res = DeviceMemoryResource()
    backend = KernelBackend(memory_resource=res)
    with backend.session() as s:
        s.upload(np.zeros(16))
        assert res.bytes_in_use == 128
    assert res.bytes_in_use == 0


def test_backend_resource_space_checked():
    with pytest.raises(ValueError):
        KernelBackend(memory_resource=HostBackend().memory_resource)
    with pytest.raises(ValueError):
        HostBackend(memory_resource=DeviceMemoryResource())


def test_make_backend():
    assert isinstance(make_backend("host", max_workers=2), HostBackend)
    assert isinstance(make_backend("KERNEL"), KernelBackend)
    with pytest.raises(ValueError):
        make_backend("gpu")
