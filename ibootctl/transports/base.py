"""USB host stack interface consumed by the protocol engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from ibootctl.core.model import ControlSetup, DeviceDescriptor, UsbEvent

EventHandler = Callable[[UsbEvent, Any], None]


class UsbHost(Protocol):
    """Blocking USB primitives plus a synchronous event pump.

    Failing primitives raise ``UsbTransferError``. ``handle_events`` delivers
    queued events to the handler registered with ``open`` before returning.
    """

    def open(self, handler: EventHandler) -> None: ...

    def close(self) -> None: ...

    def handle_events(self) -> None: ...

    def is_host(self) -> bool: ...

    def get_device_descriptor(self, device: Any) -> DeviceDescriptor: ...

    def get_string_descriptor(self, device: Any, index: int, langid: int, max_length: int) -> str:
        """Return the decoded (UTF-16LE) string, at most ``max_length`` characters."""

    def get_configuration_descriptor_total_length(self, device: Any, index: int) -> int: ...

    def get_configuration_descriptor(self, device: Any, index: int, length: int) -> bytes: ...

    def set_configuration(self, device: Any, descriptor: bytes) -> None: ...

    def control_transfer(self, device: Any, setup: ControlSetup, data: bytes | None = None) -> int | bytes:
        """Return bytes read for device-to-host requests, else the number of bytes written."""

    def bulk_transfer(self, device: Any, endpoint: int, data: bytes) -> int: ...

    def reset_device(self, device: Any) -> None: ...
