"""Scoped acquisition of a device resource."""

import contextlib
import logging
import threading

import torch

from torch_ivf_nm.resources.pool import DeviceResource

logger = logging.getLogger(__name__)


class ResourceScope:
    """
    Hold a device resource for the duration of a ``with`` block.

    On entry the resource's mutex is taken and its device made current; on
    exit, on every path, the previous device is restored and the resource is
    handed back. Entering a second scope on the same resource from the thread
    that already holds it raises ``RuntimeError``.

    Args:
        resource: Resource to hold
        device_slot: Slot the resource was acquired for
        is_own: True when building new state on the device, False when
            reusing existing device state
    """

    def __init__(
        self, resource: DeviceResource, device_slot: int, is_own: bool = False
    ):
        if resource.device_slot != device_slot:
            raise ValueError(
                f"Resource for slot {resource.device_slot} used as slot {device_slot}"
            )
        self.resource = resource
        self.device_slot = device_slot
        self.is_own = is_own
        self._stack = None

    def __enter__(self) -> "ResourceScope":
        resource = self.resource
        ident = threading.get_ident()
        if resource.owner == ident:
            raise RuntimeError(
                f"Device slot {self.device_slot} is already held by this thread"
            )
        resource.mutex.acquire()
        stack = contextlib.ExitStack()
        try:
            resource.owner = ident
            resource.mark_busy()
            stack.callback(self._hand_back)
            if resource.device.type == "cuda":
                stack.enter_context(torch.cuda.device(resource.device))
        except BaseException:
            stack.close()
            raise
        self._stack = stack
        logger.debug(
            "Entered scope on slot %d (%s)",
            self.device_slot,
            "own" if self.is_own else "shared",
        )
        return self

    def _hand_back(self) -> None:
        resource = self.resource
        resource.mark_idle()
        resource.owner = None
        resource.mutex.release()

    def __exit__(self, exc_type, exc, tb) -> None:
        stack, self._stack = self._stack, None
        stack.close()
        logger.debug("Left scope on slot %d", self.device_slot)
