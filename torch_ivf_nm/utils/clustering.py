"""K-means used to train coarse quantizers."""

import torch
from torch import Tensor

from torch_ivf_nm.utils.distance import DistanceModule


def kmeans(
    vectors: Tensor,
    nlist: int,
    distance: DistanceModule,
    max_iters: int = 20,
    tol: float = 1e-6,
) -> Tensor:
    """
    Compute ``nlist`` centroids for ``vectors``.

    Args:
        vectors: Training vectors of shape (n, dim)
        nlist: Number of centroids
        distance: Metric used to assign vectors to centroids
        max_iters: Maximum Lloyd iterations
        tol: Convergence tolerance on centroid movement

    Returns:
        Centroids of shape (nlist, dim)
    """
    n = vectors.shape[0]
    if n < nlist:
        raise ValueError(f"Need at least {nlist} vectors to train, got {n}")

    device = vectors.device

    # Random selection as initialization
    perm = torch.randperm(n, device=device)[:nlist]
    centroids = vectors[perm].clone()

    for _ in range(max_iters):
        assignments = distance.pairwise(vectors, centroids).argmin(dim=1)

        sums = torch.zeros_like(centroids).index_add_(0, assignments, vectors)
        counts = torch.bincount(assignments, minlength=nlist)

        new_centroids = sums / counts.clamp(min=1).unsqueeze(1).to(vectors.dtype)
        empty = counts == 0
        if empty.any():
            # Empty cluster: reinitialize with random vectors
            picks = torch.randint(n, (int(empty.sum()),), device=device)
            new_centroids[empty] = vectors[picks]

        if torch.allclose(centroids, new_centroids, atol=tol):
            centroids = new_centroids
            break
        centroids = new_centroids

    return centroids
