"""Device-resident IVF index in the no-memory layout."""

import logging
import threading
import weakref
from enum import Enum
from typing import Optional, Tuple, Union

import torch
from torch import Tensor

from torch_ivf_nm.binary_set import BinarySet
from torch_ivf_nm.cloner import (
    index_device_to_host,
    index_device_to_host_without_codes,
    index_host_to_device,
    read_arranged_data,
)
from torch_ivf_nm.config import (
    INDEX_BLOB_NAME,
    QUERY_BLOCK_SIZE,
    ConfigLike,
    resolve_config,
)
from torch_ivf_nm.exceptions import (
    NotTrainedError,
    ResourceUnavailableError,
    SerializationError,
    TypeMismatchError,
)
from torch_ivf_nm.index_io import write_index_nm
from torch_ivf_nm.indexes.device_ivf_flat import DeviceIVFFlatIndex
from torch_ivf_nm.ivf_nm import IVFNM, load_host_structure
from torch_ivf_nm.resources.pool import (
    DeviceResource,
    DeviceResourcePool,
    get_resource_pool,
)
from torch_ivf_nm.resources.scope import ResourceScope
from torch_ivf_nm.utils.adapter import to_matrix

logger = logging.getLogger(__name__)


class IndexKind(Enum):
    """Where the payload of a :class:`GPUIVFNM` lives."""

    HOST = "host"
    DEVICE = "device"


class GPUIVFNM:
    """
    Device-resident IVFFlat index whose raw vectors are kept off the list codes.

    The handle holds either a device index bound to a device resource, or a
    host :class:`IVFNM` (``kind`` tells which). The resource is referenced
    weakly: once the pool drops it, every device operation fails with
    :class:`ResourceUnavailableError`. Each public operation runs under one
    handle-wide lock.

    Args:
        device_slot: Slot used by ``load``
        pool: Pool used to reach devices (default: process pool)

    Example:
        >>> index = GPUIVFNM()
        >>> index.train(vectors, {"device_slot": 0, "list_count": 16, "metric": "L2"})
        >>> index.add(vectors)
        >>> distances, labels = index.search(queries, k=10, config={"probe_count": 4})
    """

    def __init__(self, device_slot: int = 0, pool: Optional[DeviceResourcePool] = None):
        self._device_slot = device_slot
        self._pool = pool if pool is not None else get_resource_pool()
        self._mutex = threading.Lock()
        self._kind: Optional[IndexKind] = None
        self._index: Union[DeviceIVFFlatIndex, IVFNM, None] = None
        self._res: Optional[weakref.ref] = None

    @classmethod
    def from_device_index(
        cls,
        device_index: DeviceIVFFlatIndex,
        resource: DeviceResource,
        device_slot: int,
        pool: Optional[DeviceResourcePool] = None,
    ) -> "GPUIVFNM":
        handle = cls(device_slot, pool)
        handle._install(IndexKind.DEVICE, device_index, resource)
        return handle

    @classmethod
    def from_host_index(
        cls,
        host: IVFNM,
        device_slot: int = 0,
        pool: Optional[DeviceResourcePool] = None,
    ) -> "GPUIVFNM":
        handle = cls(device_slot, pool)
        handle._install(IndexKind.HOST, host, None)
        return handle

    @property
    def kind(self) -> Optional[IndexKind]:
        return self._kind

    @property
    def device_slot(self) -> int:
        return self._device_slot

    @property
    def index(self):
        return self._index

    @property
    def is_trained(self) -> bool:
        return self._index is not None and self._index.is_trained

    @property
    def ntotal(self) -> int:
        return 0 if self._index is None else self._index.ntotal

    @property
    def dim(self) -> int:
        return 0 if self._index is None else self._index.dim

    def _install(
        self,
        kind: IndexKind,
        index: Union[DeviceIVFFlatIndex, IVFNM],
        resource: Optional[DeviceResource],
    ) -> None:
        self._kind = kind
        self._index = index
        self._res = weakref.ref(resource) if resource is not None else None
        logger.info(
            "Installed %s index (ntotal=%d) for device slot %d",
            kind.value,
            index.ntotal,
            self._device_slot,
        )

    def _lease(self, detail: str) -> DeviceResource:
        resource = self._res() if self._res is not None else None
        if resource is None:
            logger.warning(
                "Device slot %d lease expired: %s", self._device_slot, detail
            )
            raise ResourceUnavailableError(detail)
        return resource

    def _device_index(self, detail: str) -> DeviceIVFFlatIndex:
        if self._kind is not IndexKind.DEVICE:
            raise TypeMismatchError(detail)
        return self._index

    def train(self, vectors, config: ConfigLike) -> None:
        """
        Train a device index and install it.

        ``config`` must give ``device_slot``, ``list_count`` and ``metric``.
        The trained index is copied to the host and back so the installed
        device structure is freshly allocated.
        """
        cfg = resolve_config(config)
        if cfg.list_count is None:
            raise ValueError("list_count is required to train")
        x = to_matrix(vectors)
        device_slot = cfg.device_slot

        resource = self._pool.acquire(device_slot)
        if resource is None:
            raise ResourceUnavailableError("Build IVF can't get gpu resource")

        with self._mutex, ResourceScope(resource, device_slot, is_own=True):
            device_index = DeviceIVFFlatIndex(
                x.shape[1], cfg.list_count, cfg.metric, resource.device
            )
            device_index.train(x)

            host_index = index_device_to_host(device_index)
            device_index = index_host_to_device(resource, device_slot, host_index)
            if cfg.probe_count is not None:
                device_index.nprobe = cfg.probe_count

            self._device_slot = device_slot
            self._install(IndexKind.DEVICE, device_index, resource)

    def add(self, vectors, ids=None) -> None:
        """
        Add vectors, with sequential ids from ``ntotal`` unless ``ids`` is given.

        Any ids are accepted for search, but ``load`` looks each id up as a
        row of the ``RAW_DATA`` blob: an index holding ids outside
        ``[0, ntotal)`` serializes yet cannot be loaded back.
        """
        with self._mutex:
            if not self.is_trained:
                raise NotTrainedError("index not initialize or trained")
            device_index = self._device_index("Add IVF needs a device index")
            resource = self._lease("Add IVF can't get gpu resource")
            x = to_matrix(vectors, device_index.dim)
            with ResourceScope(resource, self._device_slot):
                device_index.add(x, ids)

    def load(self, binary_set: BinarySet) -> None:
        """
        Rebuild a device index from a serialized structure plus raw vectors.

        ``binary_set`` must hold the ``IVF`` blob written by ``serialize``
        and the ``RAW_DATA`` blob of id-ordered float32 vectors.
        """
        with self._mutex:
            host_index, arranged = load_host_structure(binary_set)

            device_slot = self._device_slot
            resource = self._pool.acquire(device_slot)
            if resource is None:
                raise ResourceUnavailableError("Load error, can't get gpu resource")

            with ResourceScope(resource, device_slot, is_own=True):
                device_index = index_host_to_device(
                    resource, device_slot, host_index, arranged
                )
            self._install(IndexKind.DEVICE, device_index, resource)

    def copy_gpu_to_cpu(self) -> IVFNM:
        """
        Export to a host handle.

        The host structure carries ids only; the arranged vectors are read
        back beside it. A host-resident handle returns its host index as is.
        """
        with self._mutex:
            if self._kind is IndexKind.HOST:
                return self._index
            if self._index is None:
                raise NotTrainedError("index not initialize or trained")

            resource = self._lease("CopyGpuToCpu can't get gpu resource")
            with ResourceScope(resource, self._device_slot):
                host_index = index_device_to_host_without_codes(self._index)
                arranged = read_arranged_data(self._index)
        return IVFNM(host_index, arranged, self._pool)

    def copy_gpu_to_gpu(
        self, device_slot: int, config: ConfigLike = None
    ) -> "GPUIVFNM":
        host = self.copy_gpu_to_cpu()
        return host.copy_cpu_to_gpu(device_slot, config)

    def serialize(self) -> BinarySet:
        """Write the structure, without codes, under the ``IVF`` blob name."""
        with self._mutex:
            if self._kind is IndexKind.HOST:
                host = self._index
            else:
                host = None
                if not self.is_trained:
                    raise NotTrainedError("index not initialize or trained")
                resource = self._lease("Serialize IVF can't get gpu resource")
                with ResourceScope(resource, self._device_slot):
                    try:
                        host_index = index_device_to_host_without_codes(self._index)
                        data = write_index_nm(host_index)
                    except Exception as e:
                        raise SerializationError(str(e)) from e

        if host is not None:
            return host.serialize()
        binary_set = BinarySet()
        binary_set.append(INDEX_BLOB_NAME, data)
        return binary_set

    def search(
        self, queries, k: int, config: ConfigLike = None, bitset=None
    ) -> Tuple[Tensor, Tensor]:
        """
        k-nearest neighbor search, issued in blocks of ``QUERY_BLOCK_SIZE``.

        Args:
            queries: Query vectors of shape (n, dim)
            k: Number of nearest neighbors to return
            config: ``probe_count`` is applied before searching
            bitset: Ids to exclude (bool per id, or packed uint8 bits)

        Returns:
            distances: Shape (n, k)
            labels: Shape (n, k), -1 where fewer than k neighbors exist
        """
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        with self._mutex:
            device_index = self._device_index("Not a GpuIndexIVF type.")
            x = to_matrix(queries, device_index.dim)
            n = x.shape[0]
            device = device_index.device
            distances = torch.empty((n, k), dtype=torch.float32, device=device)
            labels = torch.empty((n, k), dtype=torch.long, device=device)
            self._query_impl(x, k, distances, labels, config, bitset)
        return distances, labels

    def search_into(
        self,
        queries,
        k: int,
        distances: Tensor,
        labels: Tensor,
        config: ConfigLike = None,
        bitset=None,
    ) -> None:
        """
        Like :meth:`search`, writing into caller buffers.

        Results of query ``i`` occupy ``[i * k, (i + 1) * k)`` of the
        flattened buffers. On error their content is undefined.
        """
        with self._mutex:
            device_index = self._device_index("Not a GpuIndexIVF type.")
            x = to_matrix(queries, device_index.dim)
            n = x.shape[0]
            if k < 1:
                raise ValueError(f"k must be positive, got {k}")
            if distances.numel() != n * k or labels.numel() != n * k:
                raise ValueError(f"Output buffers must hold {n * k} entries")
            self._query_impl(
                x, k, distances.view(n, k), labels.view(n, k), config, bitset
            )

    def _query_impl(
        self,
        x: Tensor,
        k: int,
        distances: Tensor,
        labels: Tensor,
        config: ConfigLike,
        bitset,
    ) -> None:
        device_index = self._index
        resource = self._lease("Search IVF can't get gpu resource")
        cfg = resolve_config(config)

        with ResourceScope(resource, self._device_slot):
            if cfg.probe_count is not None:
                device_index.nprobe = cfg.probe_count

            # Search by blocks to bound transient allocations
            n = x.shape[0]
            for start in range(0, n, QUERY_BLOCK_SIZE):
                end = min(start + QUERY_BLOCK_SIZE, n)
                block = device_index.search(x[start:end], k, bitset)
                distances[start:end], labels[start:end] = block
