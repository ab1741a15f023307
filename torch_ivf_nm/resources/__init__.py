"""Device resource management."""

from torch_ivf_nm.resources.pool import (
    DeviceParams,
    DeviceResource,
    DeviceResourcePool,
    get_resource_pool,
)
from torch_ivf_nm.resources.scope import ResourceScope

__all__ = [
    "DeviceParams",
    "DeviceResource",
    "DeviceResourcePool",
    "ResourceScope",
    "get_resource_pool",
]
