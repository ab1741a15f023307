"""Reorder raw vectors into inverted-list order."""

import numpy as np

from torch_ivf_nm.indexes.invlists import ArrayInvertedLists
from torch_ivf_nm.utils.adapter import to_matrix

ELEMENT_SIZE = np.dtype(np.float32).itemsize


def arrange_raw_data(raw_data, invlists: ArrayInvertedLists, dim: int) -> np.ndarray:
    """
    Build the arranged buffer for an NM index.

    For each list in ascending order, and each id in the list's stored
    order, the id's row of ``raw_data`` is copied to the next slot of the
    output. Empty lists contribute nothing.

    Args:
        raw_data: N x dim float32 vectors in id order (bytes, numpy array
            or tensor; flat or 2-D)
        invlists: Inverted lists whose ids index into ``raw_data``
        dim: Vector dimensionality

    Returns:
        uint8 array of N * dim * 4 bytes

    Raises:
        ValueError: If an id is out of range or the lists do not cover
            exactly N vectors
    """
    vectors = to_matrix(raw_data, dim).cpu().numpy()
    n = vectors.shape[0]

    order = invlists.all_ids().numpy()
    if order.size != n:
        raise ValueError(
            f"Inverted lists hold {order.size} ids but raw data has {n} vectors"
        )
    if order.size and (order.min() < 0 or order.max() >= n):
        raise ValueError(f"Inverted list ids must lie in [0, {n})")

    arranged = np.ascontiguousarray(vectors[order])
    return arranged.reshape(-1).view(np.uint8)

