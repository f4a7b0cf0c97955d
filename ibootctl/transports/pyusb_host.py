"""USB host stack implementation using pyusb (libusb backend)."""

from __future__ import annotations

import logging
from typing import Any

import usb.control
import usb.core
import usb.util

from ibootctl.core.errors import ClientAlreadyActiveError, UsbInitError, UsbTransferError
from ibootctl.core.model import APPLE_VENDOR_ID, ControlSetup, DeviceDescriptor, UsbEvent
from ibootctl.transports.base import EventHandler

USB_TIMEOUT = 10000
_CONFIG_HEADER_SIZE = 9

LOGGER = logging.getLogger(__name__)


class PyUSBHost:
    """Desktop host stack.

    The operating system has already reset and enumerated every device, so the
    event pump only reports Apple devices appearing (enabled) and disappearing
    (disconnected). The role never changes.
    """

    def __init__(self, *, vendor_id: int = APPLE_VENDOR_ID, timeout_ms: int = USB_TIMEOUT) -> None:
        self._vendor_id = vendor_id
        self._timeout_ms = timeout_ms
        self._handler: EventHandler | None = None
        self._devices: dict[tuple[int, int], Any] = {}

    def open(self, handler: EventHandler) -> None:
        if self._handler is not None:
            raise ClientAlreadyActiveError("USB host stack is already bound to a client")
        try:
            usb.core.find(find_all=True, idVendor=self._vendor_id)
        except usb.core.NoBackendError as exc:
            raise UsbInitError(f"No libusb backend available: {exc}") from exc
        self._handler = handler

    def close(self) -> None:
        for device in self._devices.values():
            usb.util.dispose_resources(device)
        self._devices.clear()
        self._handler = None

    def handle_events(self) -> None:
        if self._handler is None:
            return
        try:
            present = {
                (device.bus, device.address): device
                for device in usb.core.find(find_all=True, idVendor=self._vendor_id)
            }
        except usb.core.USBError as exc:
            LOGGER.warning("USB enumeration failed: %s", exc)
            return

        for key in [k for k in self._devices if k not in present]:
            device = self._devices.pop(key)
            self._handler(UsbEvent.DEVICE_DISCONNECTED, device)
            usb.util.dispose_resources(device)

        for key, device in present.items():
            if key in self._devices:
                continue
            self._devices[key] = device
            self._handler(UsbEvent.DEVICE_ENABLED, device)

    def is_host(self) -> bool:
        return True

    def get_device_descriptor(self, device: Any) -> DeviceDescriptor:
        return DeviceDescriptor(
            id_vendor=device.idVendor,
            id_product=device.idProduct,
            i_serial_number=device.iSerialNumber,
        )

    def get_string_descriptor(self, device: Any, index: int, langid: int, max_length: int) -> str:
        try:
            value = usb.util.get_string(device, index, langid or None)
        except (usb.core.USBError, ValueError) as exc:
            raise UsbTransferError(f"String descriptor {index} fetch failed: {exc}") from exc
        if value is None:
            raise UsbTransferError(f"Device has no string descriptor at index {index}")
        return value[:max_length]

    def get_configuration_descriptor_total_length(self, device: Any, index: int) -> int:
        header = self._get_config_descriptor(device, index, _CONFIG_HEADER_SIZE)
        if len(header) < 4:
            raise UsbTransferError(f"Short configuration descriptor header for index {index}")
        return int.from_bytes(header[2:4], "little")

    def get_configuration_descriptor(self, device: Any, index: int, length: int) -> bytes:
        return self._get_config_descriptor(device, index, length)

    def set_configuration(self, device: Any, descriptor: bytes) -> None:
        if len(descriptor) < 6:
            raise UsbTransferError("Configuration descriptor too short to carry bConfigurationValue")
        try:
            device.set_configuration(descriptor[5])
        except usb.core.USBError as exc:
            raise UsbTransferError(f"set_configuration({descriptor[5]}) failed: {exc}") from exc

    def control_transfer(self, device: Any, setup: ControlSetup, data: bytes | None = None) -> int | bytes:
        data_or_length: int | bytes | None
        if setup.is_device_to_host:
            data_or_length = setup.w_length
        else:
            data_or_length = data if data else None
        try:
            result = device.ctrl_transfer(
                setup.bm_request_type,
                setup.b_request,
                wValue=setup.w_value,
                wIndex=setup.w_index,
                data_or_wLength=data_or_length,
                timeout=self._timeout_ms,
            )
        except usb.core.USBError as exc:
            raise UsbTransferError(
                f"Control transfer {setup.bm_request_type:#04x}/{setup.b_request} failed: {exc}"
            ) from exc
        if setup.is_device_to_host:
            return bytes(result)
        return int(result)

    def bulk_transfer(self, device: Any, endpoint: int, data: bytes) -> int:
        try:
            return device.write(endpoint, data, timeout=self._timeout_ms)
        except usb.core.USBError as exc:
            raise UsbTransferError(f"Bulk transfer to endpoint {endpoint:#04x} failed: {exc}") from exc

    def reset_device(self, device: Any) -> None:
        try:
            device.reset()
        except usb.core.USBError as exc:
            raise UsbTransferError(f"USB reset failed: {exc}") from exc

    def _get_config_descriptor(self, device: Any, index: int, length: int) -> bytes:
        try:
            return bytes(usb.control.get_descriptor(device, length, usb.util.DESC_TYPE_CONFIG, index))
        except usb.core.USBError as exc:
            raise UsbTransferError(f"Configuration descriptor {index} fetch failed: {exc}") from exc
