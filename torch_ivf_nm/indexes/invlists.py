"""Host-side inverted list storage."""

from typing import List, Optional

import torch
from torch import Tensor


class ArrayInvertedLists:
    """
    Per-list id arrays and (optionally) per-list codes.

    Codes are ``code_size`` bytes per entry. An NM structure keeps ids only
    (``has_codes`` is False); the float payload lives elsewhere.

    Args:
        nlist: Number of lists
        code_size: Bytes per encoded vector
        with_codes: Whether code arrays are kept
    """

    def __init__(self, nlist: int, code_size: int, with_codes: bool = True):
        self.nlist = nlist
        self.code_size = code_size
        self.ids: List[Tensor] = [
            torch.zeros(0, dtype=torch.long) for _ in range(nlist)
        ]
        self.codes: Optional[List[Tensor]] = (
            [torch.zeros(0, dtype=torch.uint8) for _ in range(nlist)]
            if with_codes
            else None
        )

    @property
    def has_codes(self) -> bool:
        return self.codes is not None

    def list_size(self, list_no: int) -> int:
        return int(self.ids[list_no].shape[0])

    def list_sizes(self) -> Tensor:
        return torch.tensor([ids.shape[0] for ids in self.ids], dtype=torch.long)

    def total_size(self) -> int:
        return sum(self.list_size(i) for i in range(self.nlist))

    def get_ids(self, list_no: int) -> Tensor:
        return self.ids[list_no]

    def get_codes(self, list_no: int) -> Tensor:
        if self.codes is None:
            raise RuntimeError("Inverted lists were built without codes")
        return self.codes[list_no]

    def set_list(
        self, list_no: int, ids: Tensor, codes: Optional[Tensor] = None
    ) -> None:
        """Replace the content of one list."""
        ids = ids.detach().to("cpu", torch.long).reshape(-1)
        if self.codes is None:
            self.ids[list_no] = ids
            return
        if codes is None:
            raise ValueError("codes are required for inverted lists with codes")
        codes = codes.detach().to("cpu", torch.uint8).reshape(-1)
        if codes.numel() != ids.numel() * self.code_size:
            raise ValueError(
                f"List {list_no}: {codes.numel()} code bytes for {ids.numel()} ids "
                f"(code_size={self.code_size})"
            )
        self.ids[list_no] = ids
        self.codes[list_no] = codes

    def all_ids(self) -> Tensor:
        """Ids of every list concatenated in list order."""
        if self.nlist == 0:
            return torch.zeros(0, dtype=torch.long)
        return torch.cat(self.ids)

    def without_codes(self) -> "ArrayInvertedLists":
        stripped = ArrayInvertedLists(self.nlist, self.code_size, with_codes=False)
        stripped.ids = [ids.clone() for ids in self.ids]
        return stripped
