"""Host-form IVFFlat structure."""

from typing import Optional

import torch
from torch import Tensor

from torch_ivf_nm.config import Metric
from torch_ivf_nm.indexes.invlists import ArrayInvertedLists


class HostIVFFlatIndex:
    """
    Inverted File Flat index as held in host memory.

    This is the portable form of an index: it is produced by copying a
    device index back to the host, by reading a serialized blob, or by
    converting a FAISS index. It is not searched directly; it is copied to
    a device first.

    Args:
        dim: Dimensionality of vectors
        nlist: Number of clusters/centroids
        metric: Distance metric
        invlists: Inverted lists (default: empty lists with codes)
    """

    def __init__(
        self,
        dim: int,
        nlist: int,
        metric: Metric = Metric.L2,
        invlists: Optional[ArrayInvertedLists] = None,
    ):
        self.dim = dim
        self.nlist = nlist
        self.metric = Metric.parse(metric)
        self.code_size = dim * 4
        self.centroids: Tensor = torch.zeros(nlist, dim)
        self.invlists = invlists or ArrayInvertedLists(nlist, self.code_size)
        if self.invlists.nlist != nlist:
            raise ValueError(
                f"Inverted lists have {self.invlists.nlist} lists, expected {nlist}"
            )
        self.is_trained = False

    @property
    def ntotal(self) -> int:
        return self.invlists.total_size()

    @property
    def has_codes(self) -> bool:
        return self.invlists.has_codes

    def reconstruct_vectors(self) -> Tensor:
        """All stored vectors in list order, shape (ntotal, dim)."""
        if not self.has_codes:
            raise RuntimeError("Index was stored without codes; vectors are external")
        if self.ntotal == 0:
            return torch.zeros(0, self.dim)
        codes = torch.cat([self.invlists.get_codes(i) for i in range(self.nlist)])
        return codes.view(torch.float32).reshape(-1, self.dim)

    def without_codes(self) -> "HostIVFFlatIndex":
        """Copy sharing nothing with ``self`` and carrying ids only."""
        stripped = HostIVFFlatIndex(
            self.dim, self.nlist, self.metric, self.invlists.without_codes()
        )
        stripped.centroids = self.centroids.clone()
        stripped.is_trained = self.is_trained
        return stripped

    def __repr__(self) -> str:
        return (
            f"HostIVFFlatIndex(dim={self.dim}, nlist={self.nlist}, "
            f"metric={self.metric.value}, ntotal={self.ntotal}, "
            f"codes={'yes' if self.has_codes else 'no'})"
        )
