"""Conversions from caller-supplied buffers to tensors."""

from typing import Optional

import numpy as np
import torch
from torch import Tensor


def to_matrix(data, dim: Optional[int] = None) -> Tensor:
    """
    View ``data`` as a float32 matrix of shape (n, dim).

    Args:
        data: Tensor, numpy array or raw float32 bytes; flat or 2-D
        dim: Row width, required for flat input

    Returns:
        Float32 tensor of shape (n, dim)
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        array = np.frombuffer(data, dtype=np.float32)
        tensor = torch.from_numpy(array.copy())
    elif isinstance(data, np.ndarray):
        tensor = torch.from_numpy(np.ascontiguousarray(data, dtype=np.float32))
    elif isinstance(data, Tensor):
        tensor = data.float()
    else:
        tensor = torch.as_tensor(data, dtype=torch.float32)

    if tensor.dim() == 1:
        if dim is None:
            dim = tensor.shape[0]
        if tensor.numel() % dim != 0:
            raise ValueError(
                f"Buffer of {tensor.numel()} floats is not a multiple of dim {dim}"
            )
        tensor = tensor.reshape(-1, dim)
    elif tensor.dim() != 2:
        raise ValueError(
            f"Expected 1-D or 2-D vectors, got shape {tuple(tensor.shape)}"
        )

    if dim is not None and tensor.shape[1] != dim:
        raise ValueError(f"Expected vectors of dim {dim}, got {tensor.shape[1]}")
    return tensor


def exclusion_mask(bitset, ids: Tensor) -> Optional[Tensor]:
    """
    Per-candidate exclusion mask for ``ids``.

    ``bitset`` is either a bool tensor indexed by id or a packed uint8
    bitset where bit ``i & 7`` of byte ``i >> 3`` marks id ``i``. Ids past
    the end of the bitset are not excluded.
    """
    if bitset is None:
        return None
    if isinstance(bitset, (bytes, bytearray, memoryview)):
        bitset = torch.frombuffer(bytearray(bitset), dtype=torch.uint8)
    elif isinstance(bitset, np.ndarray):
        bitset = torch.from_numpy(bitset)
    bitset = bitset.to(ids.device)

    if bitset.dtype == torch.bool:
        flags = bitset
    elif bitset.dtype == torch.uint8:
        shifts = torch.arange(8, dtype=torch.uint8, device=bitset.device)
        flags = ((bitset.unsqueeze(1) >> shifts) & 1).bool().reshape(-1)
    else:
        raise ValueError(f"Unsupported bitset dtype: {bitset.dtype}")

    in_range = (ids >= 0) & (ids < flags.shape[0])
    mask = torch.zeros(ids.shape, dtype=torch.bool, device=ids.device)
    mask[in_range] = flags[ids[in_range]]
    return mask
