"""Pool of per-device execution contexts."""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Union

import torch

logger = logging.getLogger(__name__)

DeviceLike = Union[str, torch.device, None]


@dataclass(frozen=True)
class DeviceParams:
    """Memory budgets recorded for one device slot."""

    temp_mem_size: int = 256 * 1024 * 1024
    pinned_mem_size: int = 256 * 1024 * 1024
    resource_num: int = 2


class DeviceResource:
    """
    Execution context bound to one device slot.

    Indexes keep only a weak reference to this object; the pool owns it.
    """

    def __init__(self, device_slot: int, device: torch.device, params: DeviceParams):
        self.device_slot = device_slot
        self.device = device
        self.params = params
        self.mutex = threading.Lock()
        self.owner: Optional[int] = None
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def mark_busy(self) -> None:
        self._busy = True

    def mark_idle(self) -> None:
        self._busy = False

    def __repr__(self) -> str:
        return f"DeviceResource(slot={self.device_slot}, device={self.device})"


class DeviceResourcePool:
    """
    Registry of device resources keyed by device slot.

    ``acquire`` returns ``None`` for a slot that is not registered or not
    initialized, leaving fallback/abort policy to the caller.
    """

    _instance: Optional["DeviceResourcePool"] = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self._lock = threading.Lock()
        self._params: Dict[int, DeviceParams] = {}
        self._devices: Dict[int, torch.device] = {}
        self._resources: Dict[int, DeviceResource] = {}
        self._initialized = False

    @classmethod
    def instance(cls) -> "DeviceResourcePool":
        """Process-wide pool."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def init_device(
        self,
        device_slot: int,
        params: Optional[DeviceParams] = None,
        device: DeviceLike = None,
    ) -> None:
        """
        Register a device slot.

        Args:
            device_slot: Slot number used by index configs
            params: Memory budgets for the slot
            device: Torch device backing the slot (default: ``cuda:<slot>``)
        """
        torch_device = (
            torch.device("cuda", device_slot)
            if device is None
            else torch.device(device)
        )
        with self._lock:
            self._params[device_slot] = params or DeviceParams()
            self._devices[device_slot] = torch_device
            if self._initialized:
                self._create_resource(device_slot)
        logger.info("Registered device slot %d on %s", device_slot, torch_device)

    def init_from_torch(self, params: Optional[DeviceParams] = None) -> None:
        """Register and initialize every visible CUDA device."""
        count = torch.cuda.device_count() if torch.cuda.is_available() else 0
        if count == 0:
            logger.warning("No CUDA devices visible; no device slots registered")
        for slot in range(count):
            self.init_device(slot, params)
        self.init_resource()

    def init_resource(self) -> None:
        """Create a resource for every registered slot."""
        with self._lock:
            for device_slot in self._devices:
                if device_slot not in self._resources:
                    self._create_resource(device_slot)
            self._initialized = True

    def _create_resource(self, device_slot: int) -> None:
        device = self._devices[device_slot]
        if device.type == "cuda":
            available = torch.cuda.device_count() if torch.cuda.is_available() else 0
            index = device.index if device.index is not None else 0
            if index >= available:
                logger.warning(
                    "Skipping device slot %d: %s is not available (%d visible)",
                    device_slot,
                    device,
                    available,
                )
                return
        self._resources[device_slot] = DeviceResource(
            device_slot, device, self._params[device_slot]
        )

    def acquire(self, device_slot: int) -> Optional[DeviceResource]:
        """Return the resource for ``device_slot``, or ``None`` if unavailable."""
        with self._lock:
            resource = self._resources.get(device_slot)
        if resource is None:
            logger.debug("No resource available for device slot %d", device_slot)
        return resource

    def is_idle(self, device_slot: int) -> bool:
        with self._lock:
            resource = self._resources.get(device_slot)
        return resource is not None and not resource.busy

    def release(self, device_slot: int) -> None:
        """Drop the slot; indexes bound to it lose their lease."""
        with self._lock:
            self._resources.pop(device_slot, None)
            self._devices.pop(device_slot, None)
            self._params.pop(device_slot, None)
        logger.info("Released device slot %d", device_slot)

    def free(self) -> None:
        """Drop every resource."""
        with self._lock:
            self._resources.clear()
            self._devices.clear()
            self._params.clear()
            self._initialized = False

    @property
    def device_slots(self):
        with self._lock:
            return sorted(self._resources)


def get_resource_pool() -> DeviceResourcePool:
    return DeviceResourcePool.instance()
