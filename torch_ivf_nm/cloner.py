"""Copy indexes between host and device form."""

import logging
from typing import Optional

import numpy as np
import torch

from torch_ivf_nm.indexes.device_ivf_flat import DeviceIVFFlatIndex
from torch_ivf_nm.indexes.invlists import ArrayInvertedLists
from torch_ivf_nm.indexes.ivf_flat import HostIVFFlatIndex
from torch_ivf_nm.resources.pool import DeviceResource

logger = logging.getLogger(__name__)


def index_device_to_host(
    device_index: DeviceIVFFlatIndex, with_codes: bool = True
) -> HostIVFFlatIndex:
    """
    Copy a device index to host form.

    Args:
        device_index: Index to copy
        with_codes: Whether to copy the float payload into the list codes

    Returns:
        Host index with identical centroids and inverted-list ids
    """
    dim = device_index.dim
    nlist = device_index.nlist
    invlists = ArrayInvertedLists(nlist, dim * 4, with_codes=with_codes)

    for list_no in range(nlist):
        ids = device_index.list_ids(list_no).cpu()
        codes = None
        if with_codes:
            vectors = device_index.list_vectors(list_no).cpu().contiguous()
            codes = vectors.view(torch.uint8)
        invlists.set_list(list_no, ids, codes)

    host_index = HostIVFFlatIndex(dim, nlist, device_index.metric, invlists)
    host_index.centroids = device_index.centroids.detach().cpu().clone()
    host_index.is_trained = device_index.is_trained
    return host_index


def index_device_to_host_without_codes(
    device_index: DeviceIVFFlatIndex,
) -> HostIVFFlatIndex:
    return index_device_to_host(device_index, with_codes=False)


def read_arranged_data(device_index: DeviceIVFFlatIndex) -> np.ndarray:
    """Arranged float payload of a device index as host bytes."""
    vectors = device_index.vectors.detach().cpu().contiguous().numpy()
    return vectors.reshape(-1).view(np.uint8).copy()


def index_host_to_device(
    resource: DeviceResource,
    device_slot: int,
    host_index: HostIVFFlatIndex,
    arranged_data: Optional[np.ndarray] = None,
) -> DeviceIVFFlatIndex:
    """
    Build a device index from a host index.

    The float payload comes from the host index codes, or from
    ``arranged_data`` when the host index was stored without codes.

    Args:
        resource: Resource of the target device
        device_slot: Slot of the target device
        host_index: Source structure
        arranged_data: Raw vectors in list order, as bytes

    Returns:
        Device index on ``resource.device``
    """
    if resource.device_slot != device_slot:
        raise ValueError(
            f"Resource for slot {resource.device_slot} used as slot {device_slot}"
        )
    dim = host_index.dim
    ntotal = host_index.ntotal

    if arranged_data is not None:
        arranged = np.ascontiguousarray(arranged_data, dtype=np.uint8).reshape(-1)
        if arranged.size != ntotal * dim * 4:
            raise ValueError(
                f"Arranged data holds {arranged.size} bytes, "
                f"expected {ntotal * dim * 4} for {ntotal} vectors of dim {dim}"
            )
        rows = arranged.view(np.float32).reshape(ntotal, dim)
        vectors = torch.from_numpy(rows.copy())
    elif host_index.has_codes:
        vectors = host_index.reconstruct_vectors()
    elif ntotal == 0:
        vectors = torch.zeros(0, dim)
    else:
        raise ValueError("Host index has no codes; arranged data is required")

    device_index = DeviceIVFFlatIndex(
        dim, host_index.nlist, host_index.metric, resource.device
    )
    if host_index.is_trained:
        device_index.load_lists(
            host_index.centroids,
            vectors,
            host_index.invlists.all_ids(),
            host_index.invlists.list_sizes(),
        )
    logger.debug(
        "Copied %d vectors (nlist=%d) to device slot %d",
        ntotal,
        host_index.nlist,
        device_slot,
    )
    return device_index
