"""
Device Registry - One RemoteInterface per device address

Applications hold a DeviceRegistry at their root and ask it for device
handles; all sessions against the same device then share one interface and
one record of requested destinations.

Example:
    with DeviceRegistry() as devices:
        device = devices.get_or_create_device("192.168.0.12")
        ...
    # on exit every device deletes the destinations it requested
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .config import DEFAULT_REQUEST_TIMEOUT_MS
from .remote_interface import RemoteInterface

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Thread-safe table of device handles keyed by device address.
    """

    def __init__(self, factory: Optional[Callable[..., RemoteInterface]] = None, **interface_kwargs):
        """
        Args:
            factory: Creates a handle from (address, request_timeout_ms, **kwargs)
                (default: RemoteInterface)
            interface_kwargs: Extra keyword arguments passed to the factory,
                e.g. module_states or transport
        """
        self._factory = factory or RemoteInterface
        self._interface_kwargs = interface_kwargs
        self._devices: Dict[str, RemoteInterface] = {}
        self._lock = threading.Lock()

    def get_or_create_device(
        self,
        address: str,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    ) -> RemoteInterface:
        """
        Return the handle for address, creating it on first use.

        Creating a handle fetches the device's stream catalog. If that fails
        the error propagates and nothing is stored. request_timeout_ms only
        applies when the handle is created.
        """
        with self._lock:
            device = self._devices.get(address)
            if device is not None:
                return device

            logger.info(f"Creating remote interface for device {address}")
            device = self._factory(address, request_timeout_ms, **self._interface_kwargs)
            self._devices[address] = device
            return device

    def get(self, address: str) -> Optional[RemoteInterface]:
        with self._lock:
            return self._devices.get(address)

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._devices)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._devices

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def close_all(self) -> Dict[str, Dict[str, List[str]]]:
        """
        Close every device handle.

        Returns:
            Per device address, the stale destinations that could not be
            deleted (devices without leftovers are omitted)
        """
        with self._lock:
            devices = list(self._devices.items())
            self._devices.clear()

        stale = {}
        for address, device in devices:
            leftovers = device.close()
            if leftovers:
                stale[address] = leftovers

        if stale:
            logger.warning(f"{len(stale)} device(s) still have destinations registered: "
                           f"{', '.join(stale)}")
        logger.info("All remote interfaces closed")
        return stale

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_all()
        return False
