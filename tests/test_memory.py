import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from trackml_seeding.errors import AllocationError
from trackml_seeding.memory import (
    BufferScope,
    CachingMemoryResource,
    DeviceMemoryResource,
    HostMemoryResource,
    exclusive_scan,
)


def test_exclusive_scan():
    np.testing.assert_array_equal(exclusive_scan([3, 0, 2, 1]), [0, 3, 3, 5, 6])
    np.testing.assert_array_equal(exclusive_scan([]), [0])


def test_scope_allocates_typed_views():
    with BufferScope(HostMemoryResource()) as scope:
        buf = scope.allocate((4, 3), np.float64)
        assert buf.shape == (4, 3)
        assert buf.dtype == np.float64
        assert buf.space == "host"
        buf.view[:] = 1.0
        empty = scope.allocate(0, np.int64)
        assert empty.shape == (0,)
        assert scope.bytes_allocated == 96


def test_device_capacity_limit():
    res = DeviceMemoryResource(capacity=100)
    block = res.allocate(80)
    assert res.bytes_in_use == 80
    with pytest.raises(AllocationError):
        res.allocate(40)
    assert res.bytes_in_use == 80
    res.deallocate(block)
    assert res.bytes_in_use == 0


def test_scope_close_releases_device_memory():
    res = DeviceMemoryResource()
    scope = BufferScope(res)
    scope.allocate((10,), np.float64)
    scope.allocate((5, 2), np.int64)
    assert res.bytes_in_use == 160
    scope.close()
    assert res.bytes_in_use == 0


def test_caching_resource_reuses_blocks():
    upstream = DeviceMemoryResource()
    pool = CachingMemoryResource(upstream)
    assert pool.space == "device"

    with BufferScope(pool) as scope:
        scope.allocate(100, np.uint8)
    assert pool.misses == 1
    assert pool.cached_bytes == 256

    with BufferScope(pool) as scope:
        scope.allocate(200, np.uint8)
    assert pool.hits == 1
    assert pool.misses == 1

    pool.release_all()
    assert pool.cached_bytes == 0
    assert upstream.bytes_in_use == 0
