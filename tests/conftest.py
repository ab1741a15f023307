"""Shared fixtures: device slots backed by the CPU."""

import numpy as np
import pytest

from torch_ivf_nm import DeviceResourcePool


@pytest.fixture
def pool():
    """Pool with slots 0 and 1 registered on the CPU."""
    pool = DeviceResourcePool()
    pool.init_device(0, device="cpu")
    pool.init_device(1, device="cpu")
    pool.init_resource()
    yield pool
    pool.free()


@pytest.fixture
def vectors():
    np.random.seed(42)
    return np.random.randn(1000, 32).astype(np.float32)
