"""Read and write host-form indexes without their codes."""

import io

import torch

from torch_ivf_nm.config import Metric
from torch_ivf_nm.indexes.invlists import ArrayInvertedLists
from torch_ivf_nm.indexes.ivf_flat import HostIVFFlatIndex

FORMAT_NAME = "IvNM"
FORMAT_VERSION = 1


def write_index_nm(host_index: HostIVFFlatIndex) -> bytes:
    """
    Serialize ``host_index`` structure: centroids and inverted-list ids.

    Codes are never written; the raw vectors are persisted separately.
    """
    state = {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "dim": host_index.dim,
        "nlist": host_index.nlist,
        "metric": host_index.metric.value,
        "is_trained": host_index.is_trained,
        "centroids": host_index.centroids.detach().cpu().contiguous(),
        "list_sizes": host_index.invlists.list_sizes(),
        "ids": host_index.invlists.all_ids(),
    }
    buffer = io.BytesIO()
    torch.save(state, buffer)
    return buffer.getvalue()


def read_index_nm(data: bytes) -> HostIVFFlatIndex:
    """Inverse of :func:`write_index_nm`; the result carries ids only."""
    try:
        state = torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)
    except Exception as e:
        raise ValueError(f"Not an NM index blob: {e}") from e
    if not isinstance(state, dict) or state.get("format") != FORMAT_NAME:
        raise ValueError("Not an NM index blob")
    if state.get("version") != FORMAT_VERSION:
        raise ValueError(f"Unsupported NM index blob version {state.get('version')}")

    try:
        dim = int(state["dim"])
        nlist = int(state["nlist"])
        metric = Metric.parse(state["metric"])
        is_trained = bool(state["is_trained"])
        centroids = state["centroids"].float()
        list_sizes = state["list_sizes"]
        ids = state["ids"]
        sizes_ok = (
            list_sizes.shape[0] == nlist and int(list_sizes.sum()) == ids.shape[0]
        )
    except (KeyError, AttributeError, TypeError, IndexError) as e:
        raise ValueError(f"Malformed NM index blob: {e!r}") from e
    if not sizes_ok:
        raise ValueError("Inverted list sizes do not match stored ids")

    invlists = ArrayInvertedLists(nlist, dim * 4, with_codes=False)
    for list_no, list_ids in enumerate(torch.split(ids, list_sizes.tolist())):
        invlists.set_list(list_no, list_ids.clone())

    host_index = HostIVFFlatIndex(dim, nlist, metric, invlists)
    host_index.centroids = centroids
    host_index.is_trained = is_trained
    return host_index
