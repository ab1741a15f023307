"""Distance computation utilities."""

import torch
from torch import Tensor, nn

from torch_ivf_nm.config import Metric


class DistanceModule(nn.Module):
    """
    Metric-aware pairwise distances.

    ``pairwise`` always returns values where smaller = more similar, so
    top-k selection is a min-selection for every metric:

        - L2: squared Euclidean distance
        - IP: negated inner product

    ``to_output`` converts those values back to what callers expect
    (squared L2, or the inner product itself).
    """

    def __init__(self, metric: Metric = Metric.L2):
        super().__init__()
        self._metric = Metric.parse(metric)

    @property
    def metric(self) -> Metric:
        return self._metric

    def pairwise(self, x: Tensor, y: Tensor) -> Tensor:
        """
        Compute pairwise distances.

        Args:
            x: Query vectors of shape (n, dim)
            y: Database vectors of shape (m, dim)

        Returns:
            Distances of shape (n, m)
        """
        if self._metric == Metric.L2:
            # Direct evaluation keeps each row independent of the batch size
            return torch.cdist(
                x, y, p=2.0, compute_mode="donot_use_mm_for_euclid_dist"
            ).pow(2)
        return -torch.mm(x, y.t())

    def to_output(self, distances: Tensor) -> Tensor:
        if self._metric == Metric.IP:
            return -distances
        return distances

    @property
    def worst(self) -> float:
        """Output distance used to pad missing neighbors."""
        return float("-inf") if self._metric == Metric.IP else float("inf")
