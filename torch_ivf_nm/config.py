"""Index configuration and shared constants."""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Mapping, Optional, Union

# Blob names used inside a BinarySet
INDEX_BLOB_NAME = "IVF"
RAW_DATA = "RAW_DATA"

# Queries are searched in blocks of this size to bound transient allocations
QUERY_BLOCK_SIZE = 2048


class Metric(str, Enum):
    """Similarity function of an index."""

    L2 = "L2"
    IP = "IP"

    @classmethod
    def parse(cls, value: Union[str, "Metric"]) -> "Metric":
        if isinstance(value, Metric):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"Unsupported metric type: {value!r}") from None


# Keys understood by IndexConfig.from_mapping besides the field names
_ALIASES = {
    "gpu_id": "device_slot",
    "nlist": "list_count",
    "metric_type": "metric",
    "nprobe": "probe_count",
}


@dataclass(frozen=True)
class IndexConfig:
    """
    Options recognized by the index lifecycle operations.

    Args:
        device_slot: Target accelerator slot
        list_count: Number of inverted lists (Train only)
        metric: Similarity function ('L2' or 'IP')
        probe_count: Lists examined per query (search only)
    """

    device_slot: int = 0
    list_count: Optional[int] = None
    metric: Metric = Metric.L2
    probe_count: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "device_slot", int(self.device_slot))
        object.__setattr__(self, "metric", Metric.parse(self.metric))
        if self.list_count is not None and int(self.list_count) < 1:
            raise ValueError(f"list_count must be positive, got {self.list_count}")
        if self.probe_count is not None and int(self.probe_count) < 1:
            raise ValueError(f"probe_count must be positive, got {self.probe_count}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "IndexConfig":
        """Build a config from a dict, accepting the legacy key names."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in mapping.items():
            name = _ALIASES.get(key, key)
            if name in known:
                values[name] = value
        return cls(**values)


ConfigLike = Union[IndexConfig, Mapping[str, Any], None]


def resolve_config(config: ConfigLike) -> IndexConfig:
    if config is None:
        return IndexConfig()
    if isinstance(config, IndexConfig):
        return config
    return IndexConfig.from_mapping(config)
