"""PyTorch device-resident IVF indexes with externalized raw vectors."""

from torch_ivf_nm.arrange import arrange_raw_data
from torch_ivf_nm.binary_set import Binary, BinarySet
from torch_ivf_nm.config import INDEX_BLOB_NAME, RAW_DATA, IndexConfig, Metric
from torch_ivf_nm.converters.faiss_converter import from_faiss
from torch_ivf_nm.exceptions import (
    ErrorKind,
    IVFNMError,
    NotTrainedError,
    ResourceUnavailableError,
    SerializationError,
    TypeMismatchError,
)
from torch_ivf_nm.gpu_ivf_nm import GPUIVFNM, IndexKind
from torch_ivf_nm.ivf_nm import IVFNM
from torch_ivf_nm.resources import (
    DeviceParams,
    DeviceResourcePool,
    ResourceScope,
    get_resource_pool,
)

__all__ = [
    "Binary",
    "BinarySet",
    "DeviceParams",
    "DeviceResourcePool",
    "ErrorKind",
    "GPUIVFNM",
    "INDEX_BLOB_NAME",
    "IVFNM",
    "IVFNMError",
    "IndexConfig",
    "IndexKind",
    "Metric",
    "NotTrainedError",
    "RAW_DATA",
    "ResourceScope",
    "ResourceUnavailableError",
    "SerializationError",
    "TypeMismatchError",
    "arrange_raw_data",
    "from_faiss",
    "get_resource_pool",
]
__version__ = "0.1.0"
