"""Index implementations."""

from torch_ivf_nm.indexes.base import BaseIndex
from torch_ivf_nm.indexes.device_ivf_flat import DeviceIVFFlatIndex
from torch_ivf_nm.indexes.invlists import ArrayInvertedLists
from torch_ivf_nm.indexes.ivf_flat import HostIVFFlatIndex

__all__ = ["ArrayInvertedLists", "BaseIndex", "DeviceIVFFlatIndex", "HostIVFFlatIndex"]
