"""Device-resident IVFFlat index in the no-memory layout."""

from typing import Optional, Tuple

import torch
from torch import Tensor

from torch_ivf_nm.config import Metric
from torch_ivf_nm.indexes.base import BaseIndex
from torch_ivf_nm.utils.adapter import exclusion_mask
from torch_ivf_nm.utils.clustering import kmeans
from torch_ivf_nm.utils.distance import DistanceModule


class DeviceIVFFlatIndex(BaseIndex):
    """
    Inverted File Flat index held on one device.

    Vectors are stored once, contiguously, grouped by list in ascending list
    order (the arranged layout). Per-list entries carry only their ids; the
    float payload is addressed through ``list_offsets``/``list_sizes``.

    Args:
        dim: Dimensionality of vectors
        nlist: Number of clusters/centroids
        metric: Distance metric
        device: Device holding the buffers
    """

    def __init__(
        self,
        dim: int,
        nlist: int,
        metric: Metric = Metric.L2,
        device: Optional[torch.device] = None,
    ):
        super().__init__()
        self._dim = dim
        self._nlist = nlist
        self._distance = DistanceModule(metric)
        self._nprobe = 1
        device = torch.device("cpu") if device is None else torch.device(device)

        # Cluster centroids: (nlist, dim)
        self.register_buffer("centroids", torch.zeros(nlist, dim, device=device))

        # Arranged vectors, grouped by list: (ntotal, dim)
        self.register_buffer("vectors", torch.zeros(0, dim, device=device))

        # Id of each arranged vector: (ntotal,)
        self.register_buffer("ids", torch.zeros(0, dtype=torch.long, device=device))

        # List of each arranged vector: (ntotal,)
        self.register_buffer(
            "assignments", torch.zeros(0, dtype=torch.long, device=device)
        )

        # list_offsets[i] = start of list i in arranged order
        # list_sizes[i] = number of vectors in list i
        self.register_buffer(
            "list_offsets", torch.zeros(nlist, dtype=torch.long, device=device)
        )
        self.register_buffer(
            "list_sizes", torch.zeros(nlist, dtype=torch.long, device=device)
        )

        self._is_trained = False

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def ntotal(self) -> int:
        return self.vectors.shape[0]

    @property
    def nlist(self) -> int:
        return self._nlist

    @property
    def metric(self) -> Metric:
        return self._distance.metric

    @property
    def device(self) -> torch.device:
        return self.centroids.device

    @property
    def nprobe(self) -> int:
        return self._nprobe

    @nprobe.setter
    def nprobe(self, value: int) -> None:
        if value < 1 or value > self._nlist:
            raise ValueError(f"nprobe must be between 1 and {self._nlist}")
        self._nprobe = value

    @property
    def is_trained(self) -> bool:
        return self._is_trained

    def train(self, vectors: Tensor) -> None:
        """
        Train the coarse quantizer by k-means.

        Args:
            vectors: Training vectors of shape (n, dim)
        """
        vectors = self._check_vectors(vectors)
        self.centroids = kmeans(vectors, self._nlist, self._distance)
        self._is_trained = True

    def add(self, vectors: Tensor, ids: Optional[Tensor] = None) -> None:
        if not self._is_trained:
            raise RuntimeError("Index must be trained before adding vectors")

        vectors = self._check_vectors(vectors)
        n = vectors.shape[0]
        device = self.device

        if ids is None:
            ids = torch.arange(self.ntotal, self.ntotal + n, device=device)
        else:
            ids = torch.as_tensor(ids, dtype=torch.long).reshape(-1).to(device)
            if ids.shape[0] != n:
                raise ValueError(f"Got {ids.shape[0]} ids for {n} vectors")
        if n == 0:
            return

        new_assignments = self._distance.pairwise(vectors, self.centroids).argmin(dim=1)

        # Stable sort keeps insertion order within each list
        assignments = torch.cat([self.assignments, new_assignments])
        order = torch.argsort(assignments, stable=True)
        arranged = torch.cat([self.vectors, vectors])[order]
        arranged_ids = torch.cat([self.ids, ids])[order]
        list_sizes = torch.bincount(assignments, minlength=self._nlist)

        self._install(arranged, arranged_ids, assignments[order], list_sizes)

    def load_lists(
        self, centroids: Tensor, vectors: Tensor, ids: Tensor, list_sizes: Tensor
    ) -> None:
        """
        Install an already arranged layout.

        Args:
            centroids: Shape (nlist, dim)
            vectors: Arranged vectors of shape (ntotal, dim)
            ids: Id of each arranged vector, shape (ntotal,)
            list_sizes: Entries per list, shape (nlist,)
        """
        device = self.device
        centroids = centroids.to(device, torch.float32)
        if tuple(centroids.shape) != (self._nlist, self._dim):
            raise ValueError(
                f"Expected centroids of shape {(self._nlist, self._dim)}, "
                f"got {tuple(centroids.shape)}"
            )
        list_sizes = list_sizes.to(device, torch.long)
        total = int(list_sizes.sum())
        if vectors.shape[0] != total or ids.shape[0] != total:
            raise ValueError(
                f"List sizes sum to {total} but got {vectors.shape[0]} vectors "
                f"and {ids.shape[0]} ids"
            )
        vectors = self._check_vectors(vectors.to(device))
        assignments = torch.repeat_interleave(
            torch.arange(self._nlist, device=device), list_sizes
        )

        self.centroids = centroids
        self._install(vectors, ids.to(device, torch.long), assignments, list_sizes)
        self._is_trained = True

    def _install(
        self, vectors: Tensor, ids: Tensor, assignments: Tensor, list_sizes: Tensor
    ) -> None:
        list_offsets = torch.zeros(self._nlist, dtype=torch.long, device=self.device)
        list_offsets[1:] = torch.cumsum(list_sizes[:-1], dim=0)

        self.vectors = vectors
        self.ids = ids
        self.assignments = assignments
        self.list_sizes = list_sizes
        self.list_offsets = list_offsets

    def _check_vectors(self, vectors: Tensor) -> Tensor:
        if vectors.dim() == 1:
            vectors = vectors.unsqueeze(0)
        if vectors.shape[1] != self._dim:
            raise ValueError(
                f"Expected vectors of dim {self._dim}, got {vectors.shape[1]}"
            )
        return vectors.to(self.device, torch.float32)

    def list_ids(self, list_no: int) -> Tensor:
        offset = int(self.list_offsets[list_no])
        return self.ids[offset : offset + int(self.list_sizes[list_no])]

    def list_vectors(self, list_no: int) -> Tensor:
        offset = int(self.list_offsets[list_no])
        return self.vectors[offset : offset + int(self.list_sizes[list_no])]

    def search(
        self, queries: Tensor, k: int, bitset: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        if not self._is_trained:
            raise RuntimeError("Index must be trained before searching")
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")

        queries = self._check_vectors(queries)
        batch_size = queries.shape[0]
        device = self.device

        # Find nearest centroids for each query
        centroid_dists = self._distance.pairwise(queries, self.centroids)
        _, probe_indices = centroid_dists.topk(self._nprobe, dim=1, largest=False)

        excluded = exclusion_mask(bitset, self.ids)

        # Internal distances, smaller = better; converted on output
        all_distances = torch.full((batch_size, k), float("inf"), device=device)
        all_labels = torch.full((batch_size, k), -1, dtype=torch.long, device=device)

        for q_idx in range(batch_size):
            query = queries[q_idx : q_idx + 1]
            candidate_distances: list[Tensor] = []
            candidate_labels: list[Tensor] = []

            # Probe each selected cluster
            for probe_idx in range(self._nprobe):
                cluster_id = int(probe_indices[q_idx, probe_idx])
                list_size = int(self.list_sizes[cluster_id])
                if list_size == 0:
                    continue

                offset = int(self.list_offsets[cluster_id])
                cluster_vectors = self.vectors[offset : offset + list_size]
                cluster_ids = self.ids[offset : offset + list_size]

                dists = self._distance.pairwise(query, cluster_vectors).squeeze(0)
                if excluded is not None:
                    keep = ~excluded[offset : offset + list_size]
                    dists = dists[keep]
                    cluster_ids = cluster_ids[keep]

                candidate_distances.append(dists)
                candidate_labels.append(cluster_ids)

            if not candidate_distances:
                continue

            all_cand_dists = torch.cat(candidate_distances)
            all_cand_labels = torch.cat(candidate_labels)

            actual_k = min(k, all_cand_dists.shape[0])
            if actual_k == 0:
                continue
            topk_dists, topk_local = all_cand_dists.topk(actual_k, largest=False)

            all_distances[q_idx, :actual_k] = topk_dists
            all_labels[q_idx, :actual_k] = all_cand_labels[topk_local]

        all_distances = self._distance.to_output(all_distances)
        all_distances[all_labels < 0] = self._distance.worst
        return all_distances, all_labels
