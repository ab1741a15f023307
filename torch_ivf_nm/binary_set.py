"""Named blob container used to persist index structures."""

import struct
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

_HEADER = struct.Struct("<I")
_LENGTH = struct.Struct("<Q")


@dataclass(frozen=True)
class Binary:
    """A named, sized byte region."""

    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class BinarySet:
    """
    Ordered mapping from blob names to byte regions.

    Example:
        >>> bs = BinarySet()
        >>> bs.append("IVF", b"abc")
        >>> bs.get_by_name("IVF").size
        3
    """

    def __init__(self):
        self._binaries: Dict[str, Binary] = {}

    def append(self, name: str, data, length: Optional[int] = None) -> None:
        """Store ``data`` (truncated to ``length`` bytes when given) under ``name``."""
        payload = bytes(memoryview(data).cast("B"))
        if length is not None:
            if length > len(payload):
                raise ValueError(
                    f"length {length} exceeds buffer size {len(payload)} for {name!r}"
                )
            payload = payload[:length]
        self._binaries[name] = Binary(payload)

    def get_by_name(self, name: str) -> Binary:
        try:
            return self._binaries[name]
        except KeyError:
            raise KeyError(f"BinarySet has no entry named {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._binaries

    def __len__(self) -> int:
        return len(self._binaries)

    def __iter__(self) -> Iterator[Tuple[str, Binary]]:
        return iter(self._binaries.items())

    def to_bytes(self) -> bytes:
        """Encode as: count, then (name length, name, data length, data) per entry."""
        parts = [_HEADER.pack(len(self._binaries))]
        for name, binary in self._binaries.items():
            encoded = name.encode("utf-8")
            parts.append(_HEADER.pack(len(encoded)))
            parts.append(encoded)
            parts.append(_LENGTH.pack(binary.size))
            parts.append(binary.data)
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "BinarySet":
        view = memoryview(data)
        offset = 0

        def take(n: int) -> memoryview:
            nonlocal offset
            if offset + n > len(view):
                raise ValueError("truncated BinarySet encoding")
            chunk = view[offset : offset + n]
            offset += n
            return chunk

        result = cls()
        (count,) = _HEADER.unpack(take(_HEADER.size))
        for _ in range(count):
            (name_len,) = _HEADER.unpack(take(_HEADER.size))
            name = bytes(take(name_len)).decode("utf-8")
            (data_len,) = _LENGTH.unpack(take(_LENGTH.size))
            result._binaries[name] = Binary(bytes(take(data_len)))
        if offset != len(view):
            raise ValueError("trailing bytes after BinarySet encoding")
        return result
