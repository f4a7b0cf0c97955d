"""Stable public API for building tooling on top of ibootctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import logging
import time

from ibootctl.core.catalog import (
    default_catalog,
    devices_get_all,
    get_device_by_hardware_model,
    get_device_by_info,
    get_device_by_product_type,
)
from ibootctl.core.errors import (
    CatalogLoadError,
    CatalogValidationError,
    ClientAlreadyActiveError,
    CommandTooLongError,
    DescriptorFetchError,
    DescriptorSetError,
    EcidMismatchError,
    FinalizationBlockedError,
    IBootCtlError,
    InvalidArgumentError,
    InvalidUsbStatusError,
    NoCommandError,
    NoDeviceError,
    ServiceNotAvailableError,
    TransportError,
    UnknownEventTypeError,
    UploadFailedError,
    UsbInitError,
    UsbResetError,
    UsbTransferError,
)
from ibootctl.core.model import (
    AppleDevice,
    ClientConfig,
    ConnectionPolicy,
    DeviceInfo,
    EventType,
    Mode,
    ProgressEvent,
    SendOptions,
    mode_to_str,
)
from ibootctl.core.service import ProgressObserver, RecoveryService
from ibootctl.transports.base import UsbHost

__all__ = [
    "IBootCtlError",
    "InvalidArgumentError",
    "ClientAlreadyActiveError",
    "UsbInitError",
    "NoDeviceError",
    "DescriptorFetchError",
    "DescriptorSetError",
    "EcidMismatchError",
    "FinalizationBlockedError",
    "UploadFailedError",
    "InvalidUsbStatusError",
    "CommandTooLongError",
    "NoCommandError",
    "ServiceNotAvailableError",
    "UsbResetError",
    "UnknownEventTypeError",
    "CatalogLoadError",
    "CatalogValidationError",
    "TransportError",
    "UsbTransferError",
    "AppleDevice",
    "ConnectionPolicy",
    "DeviceInfo",
    "EventType",
    "Mode",
    "ProgressEvent",
    "SendOptions",
    "UsbHost",
    "mode_to_str",
    "devices_get_all",
    "get_device_by_product_type",
    "get_device_by_hardware_model",
    "Client",
]

_WAIT_INTERVAL_S = 0.1


class Client:
    """Public client for one iBoot/iBSS device connection at a time.

    A `Client` owns the USB host stack binding, admits devices according to its
    connection policy, and exposes buffer uploads and console commands once the
    attached device has been finalized by `poll()`.
    """

    def __init__(
        self,
        *,
        policy: ConnectionPolicy = ConnectionPolicy.ACCEPT_ALL,
        ecid: int = 0,
        logger: logging.Logger | None = None,
        host: UsbHost | None = None,
    ) -> None:
        if ecid < 0:
            raise InvalidArgumentError("ECID restriction must be non-negative")
        if host is None:
            from ibootctl.transports.pyusb_host import PyUSBHost

            host = PyUSBHost()
        self._service = RecoveryService(
            host,
            ClientConfig(policy=policy, ecid_restriction=ecid, logger=logger),
        )

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def config(self) -> ClientConfig:
        return self._service.config

    def poll(self) -> bool:
        """Run one event/finalize pass; True once a device is ready, False if none is."""
        return self._service.poll()

    def wait_for_device(self, timeout_s: float = 10.0) -> None:
        deadline = time.monotonic() + timeout_s
        while not self.poll():
            if time.monotonic() >= deadline:
                raise NoDeviceError(f"No device found within {timeout_s:g}s")
            time.sleep(_WAIT_INTERVAL_S)

    def is_usable(self, run_event_handler: bool = True) -> bool:
        return self._service.is_usable(run_event_handler)

    def close(self) -> None:
        self._service.close()

    def reset(self) -> None:
        self._service.reset()

    def reset_counters(self) -> None:
        self._service.reset_counters()

    def finish_transfer(self) -> None:
        self._service.finish_transfer()

    def get_mode(self) -> Mode:
        return self._service.get_mode()

    def get_device_info(self) -> DeviceInfo | None:
        return self._service.get_device_info()

    def event_subscribe(self, event_type: EventType, callback: ProgressObserver) -> None:
        self._service.event_subscribe(event_type, callback)

    def event_unsubscribe(self, event_type: EventType) -> None:
        self._service.event_unsubscribe(event_type)

    def send_buffer(
        self,
        data: bytes,
        options: SendOptions = SendOptions.NONE,
        *,
        progress: ProgressObserver | None = None,
    ) -> None:
        self._service.send_buffer(data, options, progress)

    def send_command(self, command: str) -> None:
        self._service.send_command(command)

    def send_command_breq(self, command: str, b_request: int) -> None:
        self._service.send_command_breq(command, b_request)

    def saveenv(self) -> None:
        self._service.saveenv()

    def getenv(self, variable: str) -> str:
        return self._service.getenv(variable)

    def setenv(self, variable: str, value: str) -> None:
        self._service.setenv(variable, value)

    def setenv_np(self, variable: str, value: str) -> None:
        self._service.setenv_np(variable, value)

    def reboot(self) -> None:
        self._service.reboot()

    def getret(self) -> int:
        return self._service.getret()

    def get_device(self) -> AppleDevice | None:
        """Catalog entry matching the finalized device's chip and board ids."""
        info = self.get_device_info()
        if info is None:
            raise NoDeviceError("No finalized device.")
        return get_device_by_info(info, default_catalog().devices)
