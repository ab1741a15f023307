"""Convert FAISS IVF indexes to host-form indexes."""

import numpy as np
import torch
import faiss

from torch_ivf_nm.config import Metric
from torch_ivf_nm.indexes.invlists import ArrayInvertedLists
from torch_ivf_nm.indexes.ivf_flat import HostIVFFlatIndex


def from_faiss(index) -> HostIVFFlatIndex:
    """
    Convert a trained FAISS IndexIVFFlat to a host-form index.

    The result keeps its codes, so it can be copied to a device without
    separately supplied raw vectors.

    Args:
        index: A FAISS IndexIVFFlat

    Returns:
        Host index with the same centroids, inverted lists and vectors

    Example:
        >>> import faiss
        >>> from torch_ivf_nm import IVFNM, from_faiss
        >>>
        >>> quantizer = faiss.IndexFlatL2(128)
        >>> index = faiss.IndexIVFFlat(quantizer, 128, 16)
        >>> index.train(vectors)
        >>> index.add(vectors)
        >>>
        >>> gpu_index = IVFNM(from_faiss(index)).copy_cpu_to_gpu(0)
        >>> distances, labels = gpu_index.search(queries, k=10)
    """
    index_type = type(index).__name__
    if index_type != "IndexIVFFlat":
        raise ValueError(f"Unsupported index type: {index_type}")
    if not index.is_trained:
        raise ValueError("FAISS index must be trained before conversion")

    dim = index.d
    nlist = index.nlist
    code_size = index.code_size  # bytes per vector

    # FAISS: METRIC_INNER_PRODUCT = 0, METRIC_L2 = 1
    if index.metric_type == faiss.METRIC_L2:
        metric = Metric.L2
    elif index.metric_type == faiss.METRIC_INNER_PRODUCT:
        metric = Metric.IP
    else:
        raise ValueError(f"Unsupported metric type: {index.metric_type}")

    invlists = ArrayInvertedLists(nlist, code_size)
    faiss_lists = index.invlists

    for list_id in range(nlist):
        list_size = faiss_lists.list_size(list_id)
        if list_size == 0:
            continue

        # Get vector IDs in this list using rev_swig_ptr
        ids_ptr = faiss_lists.get_ids(list_id)
        ids = faiss.rev_swig_ptr(ids_ptr, list_size).copy()

        # Codes are the raw float32 vectors stored as bytes
        codes_ptr = faiss_lists.get_codes(list_id)
        codes = faiss.rev_swig_ptr(codes_ptr, list_size * code_size).copy()

        invlists.set_list(
            list_id,
            torch.from_numpy(ids.astype(np.int64)),
            torch.from_numpy(np.asarray(codes, dtype=np.uint8)),
        )

    host_index = HostIVFFlatIndex(dim, nlist, metric, invlists)

    # Extract centroids from the quantizer
    centroids = index.quantizer.reconstruct_n(0, nlist)
    host_index.centroids = torch.from_numpy(centroids.copy()).float()
    host_index.is_trained = True
    return host_index
