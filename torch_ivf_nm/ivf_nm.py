"""Host-resident IVF index in the no-memory layout."""

import logging
import threading
from typing import Optional, Tuple

import numpy as np

from torch_ivf_nm.arrange import arrange_raw_data
from torch_ivf_nm.binary_set import BinarySet
from torch_ivf_nm.cloner import index_host_to_device
from torch_ivf_nm.config import INDEX_BLOB_NAME, RAW_DATA, ConfigLike, resolve_config
from torch_ivf_nm.exceptions import (
    NotTrainedError,
    ResourceUnavailableError,
    SerializationError,
)
from torch_ivf_nm.index_io import read_index_nm, write_index_nm
from torch_ivf_nm.indexes.ivf_flat import HostIVFFlatIndex
from torch_ivf_nm.resources.pool import DeviceResourcePool, get_resource_pool
from torch_ivf_nm.resources.scope import ResourceScope

logger = logging.getLogger(__name__)


def load_host_structure(binary_set: BinarySet) -> Tuple[HostIVFFlatIndex, np.ndarray]:
    """
    Read the NM structure and arrange the raw vectors stored beside it.

    Returns:
        The codes-free host index and its arranged raw buffer

    Raises:
        SerializationError: If a blob is missing or malformed
    """
    try:
        index_blob = binary_set.get_by_name(INDEX_BLOB_NAME)
        raw_blob = binary_set.get_by_name(RAW_DATA)
        host_index = read_index_nm(index_blob.data)
        arranged = arrange_raw_data(raw_blob.data, host_index.invlists, host_index.dim)
    except (KeyError, ValueError, RuntimeError) as e:
        raise SerializationError(f"Load error: {e}") from e
    return host_index, arranged


class IVFNM:
    """
    Host-side NM index handle.

    Holds the codes-free host structure and, when known, the arranged raw
    vectors needed to rebuild a device index from it.

    Args:
        index: Host structure
        arranged_data: Raw vectors in inverted-list order, as bytes
        pool: Pool used to reach devices (default: process pool)
    """

    def __init__(
        self,
        index: Optional[HostIVFFlatIndex] = None,
        arranged_data: Optional[np.ndarray] = None,
        pool: Optional[DeviceResourcePool] = None,
    ):
        self._index = index
        self._arranged_data = arranged_data
        self._pool = pool if pool is not None else get_resource_pool()
        self._mutex = threading.Lock()

    @property
    def index(self) -> Optional[HostIVFFlatIndex]:
        return self._index

    @property
    def arranged_data(self) -> Optional[np.ndarray]:
        return self._arranged_data

    @property
    def is_trained(self) -> bool:
        return self._index is not None and self._index.is_trained

    @property
    def ntotal(self) -> int:
        return 0 if self._index is None else self._index.ntotal

    @property
    def dim(self) -> int:
        return 0 if self._index is None else self._index.dim

    def serialize(self) -> BinarySet:
        with self._mutex:
            if not self.is_trained:
                raise NotTrainedError("index not initialize or trained")
            try:
                index = self._index
                if index.has_codes:
                    index = index.without_codes()
                data = write_index_nm(index)
            except Exception as e:
                raise SerializationError(str(e)) from e

        binary_set = BinarySet()
        binary_set.append(INDEX_BLOB_NAME, data)
        return binary_set

    def load(self, binary_set: BinarySet) -> None:
        with self._mutex:
            host_index, arranged = load_host_structure(binary_set)
            self._index = host_index
            self._arranged_data = arranged

    def copy_cpu_to_gpu(self, device_slot: int, config: ConfigLike = None):
        """
        Build a device-resident copy on ``device_slot``.

        Returns:
            A :class:`~torch_ivf_nm.gpu_ivf_nm.GPUIVFNM` bound to the slot
        """
        from torch_ivf_nm.gpu_ivf_nm import GPUIVFNM

        cfg = resolve_config(config)
        with self._mutex:
            if not self.is_trained:
                raise NotTrainedError("index not initialize or trained")
            resource = self._pool.acquire(device_slot)
            if resource is None:
                raise ResourceUnavailableError("CopyCpuToGpu can't get gpu resource")
            with ResourceScope(resource, device_slot, is_own=True):
                device_index = index_host_to_device(
                    resource, device_slot, self._index, self._arranged_data
                )
                if cfg.probe_count is not None:
                    device_index.nprobe = cfg.probe_count

        return GPUIVFNM.from_device_index(
            device_index, resource, device_slot, self._pool
        )
