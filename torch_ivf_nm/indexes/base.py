"""Abstract base class for device-resident indexes."""

from abc import abstractmethod
from typing import Optional, Tuple

import torch
from torch import Tensor, nn


class BaseIndex(nn.Module):
    """Abstract base for all device-resident indexes."""

    @abstractmethod
    def search(
        self, queries: Tensor, k: int, bitset: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        """
        Batched k-nearest neighbor search.

        Args:
            queries: Query vectors of shape (batch_size, dim)
            k: Number of nearest neighbors to return
            bitset: Optional exclusion mask over ids

        Returns:
            distances: Shape (batch_size, k) - distances to nearest neighbors
            labels: Shape (batch_size, k) - ids of nearest neighbors
        """
        pass

    @abstractmethod
    def add(self, vectors: Tensor, ids: Optional[Tensor] = None) -> None:
        """
        Add vectors to the index.

        Args:
            vectors: Vectors of shape (n, dim)
            ids: Ids of shape (n,), sequential from ntotal when omitted
        """
        pass

    @property
    @abstractmethod
    def ntotal(self) -> int:
        """Total number of indexed vectors."""
        pass

    @property
    @abstractmethod
    def dim(self) -> int:
        """Dimensionality of indexed vectors."""
        pass

    @property
    @abstractmethod
    def device(self) -> torch.device:
        """Device holding the index buffers."""
        pass
