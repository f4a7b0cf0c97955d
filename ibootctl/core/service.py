"""Connection state machine, finalization, and console protocol for iBoot devices."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ibootctl.core.device_info import parse_device_info, parse_nonce
from ibootctl.core.device_match import qualify_device
from ibootctl.core.errors import (
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
)
from ibootctl.core.model import (
    ClientConfig,
    ConnectionPolicy,
    ControlSetup,
    DeviceInfo,
    EventType,
    FinalizationStatus,
    Mode,
    ProgressEvent,
    SendOptions,
    Session,
    UsbEvent,
    UsbRole,
)
from ibootctl.core.upload import upload_buffer
from ibootctl.transports.base import UsbHost

ProgressObserver = Callable[[ProgressEvent], None]

STRING_BUFFER_SIZE = 255
MAX_COMMAND_LENGTH = 255
NONCE_STRING_INDEX = 1
CONFIGURATION_VALUE = 1
# Descriptor index of the first configuration, whose bConfigurationValue is 1.
CONFIGURATION_INDEX = 0
BREQ_COMMANDS = frozenset({"go", "bootx", "reboot", "memboot"})

LOGGER = logging.getLogger(__name__)


class RecoveryService:
    """Owns the single device session of a client and every protocol operation on it.

    Driven by repeated ``poll()`` calls: the host stack's event pump runs inside the
    caller's thread and the USB event handler only ever swaps the session.
    """

    def __init__(self, host: UsbHost, config: ClientConfig | None = None) -> None:
        self.config = config or ClientConfig()
        self.log = self.config.logger or LOGGER
        self.num_connections = 0
        self.progress_observer: ProgressObserver | None = None
        self._host = host
        self._session = Session()
        self._closed = False
        self.log.debug("Initializing USB...")
        try:
            host.open(self._handle_usb_event)
        except TransportError as exc:
            raise UsbInitError(f"Failed to initialize the USB backend: {exc}") from exc

    @property
    def session(self) -> Session:
        return self._session

    @property
    def host(self) -> UsbHost:
        return self._host

    # -- session ownership --

    def clear_session(self) -> None:
        if self._session.is_empty:
            return
        self._session = Session()
        self.log.info("Device session was cleared.")

    def is_usable(self, run_event_handler: bool = True) -> bool:
        if self._closed:
            return False
        if run_event_handler:
            self._host.handle_events()
        return self._session.handle is not None and self._host.is_host()

    def require_usable(self) -> Session:
        if not self.is_usable(True):
            raise NoDeviceError("No device.")
        return self._session

    def close(self) -> None:
        if self._closed:
            return
        self.log.debug("Closing client...")
        self._host.close()
        self.clear_session()
        self._closed = True

    def _handle_usb_event(self, event: UsbEvent, data: Any) -> None:
        if event is UsbEvent.ROLE_CHANGED:
            if data is not UsbRole.HOST:
                self.log.info("No longer the USB host.")
                self.clear_session()
        elif event is UsbEvent.DEVICE_DISCONNECTED:
            self.log.info("Device %r was disconnected.", data)
            if data is not None and data is self._session.handle:
                self.clear_session()
        elif event is UsbEvent.DEVICE_CONNECTED:
            if not self._host.is_host():
                self.log.debug("Device %r connected, but we are not the host. Ignoring.", data)
                return
            try:
                self._host.reset_device(data)
            except TransportError as exc:
                self.log.warning("Reset of newly connected device %r failed: %s", data, exc)
            else:
                self.log.debug("Reset newly connected device %r.", data)
        elif event is UsbEvent.DEVICE_DISABLED:
            which = "Existing" if data is self._session.handle else "Unrelated"
            self.log.debug("%s device %r was disabled.", which, data)
        elif event is UsbEvent.DEVICE_ENABLED:
            self._on_device_enabled(data)

    def _on_device_enabled(self, device: Any) -> None:
        if not self._host.is_host():
            self.log.debug("Device %r was enabled, but we are not the host. Ignoring.", device)
            return
        if device is self._session.handle:
            self.log.debug("Device %r was re-enabled.", device)
            return

        policy = self.config.policy
        if policy is ConnectionPolicy.ACCEPT_ALL:
            self.clear_session()
        elif policy is ConnectionPolicy.ACCEPT_ONLY_WHEN_EMPTY:
            if self.is_usable(False):
                self.log.info("Ignoring device %r: a device is already connected.", device)
                return
        elif policy is ConnectionPolicy.ONE_CONNECTION_LIMIT:
            if self.num_connections >= 1:
                self.log.info("Ignoring device %r: connection limit reached.", device)
                return

        descriptor = qualify_device(self._host, device)
        if descriptor is None:
            self.log.info("Device %r is not handleable. Ignoring.", device)
            self.clear_session()
            return
        self._session = Session(handle=device, descriptor=descriptor)
        self.num_connections += 1
        self.log.info("Device %r (pid %#06x) is ready to be handled.", device, descriptor.id_product)

    # -- finalization --

    def poll(self) -> bool:
        """Pump USB events and finalize a captured device.

        Returns False when there is no device; other failures raise.
        """
        if self._closed:
            return False
        self._host.handle_events()
        try:
            self.finalize()
        except NoDeviceError:
            return False
        return True

    def finalize(self) -> None:
        if not self.is_usable(False):
            raise NoDeviceError("No device.")
        session = self._session
        if session.finalization is FinalizationStatus.SUCCESS:
            return
        if session.finalization is FinalizationStatus.BLOCKED:
            raise FinalizationBlockedError("Finalization is not allowed right now.")

        serial = self.get_string_descriptor_ascii(session.descriptor.i_serial_number)
        info = parse_device_info(serial, pid=session.descriptor.id_product)

        restriction = self.config.ecid_restriction
        if restriction and restriction != info.ecid:
            self.log.warning("ECID mismatch, finalization will no longer be available.")
            self._latch_blocked(session)
            raise EcidMismatchError(
                f"Device ECID {info.ecid:#x} does not match restriction {restriction:#x}"
            )

        try:
            self.set_configuration(CONFIGURATION_VALUE)
        except IBootCtlError:
            self._latch_blocked(session)
            raise

        info = replace(
            info,
            ap_nonce=self._copy_nonce_with_tag("NONC"),
            sep_nonce=self._copy_nonce_with_tag("SNON"),
        )
        if self._session is not session:
            raise NoDeviceError("Device went away during finalization.")
        self._session = replace(
            session,
            device_info=info,
            mode=Mode(session.descriptor.id_product),
            finalization=FinalizationStatus.SUCCESS,
        )
        self.log.info("Device session was finalized (ECID %#x).", info.ecid)

    def _latch_blocked(self, session: Session) -> None:
        # A session cleared meanwhile must not hand the latch to its successor.
        if self._session is session:
            self._session = replace(session, finalization=FinalizationStatus.BLOCKED)

    def get_string_descriptor_ascii(self, index: int, size: int = STRING_BUFFER_SIZE) -> str:
        session = self.require_usable()
        if size <= 0:
            raise InvalidArgumentError("Destination buffer size is zero.")
        self.log.debug("Getting string descriptor (ascii) at index %d...", index)
        try:
            text = self._host.get_string_descriptor(session.handle, index, 0, size)
        except TransportError as exc:
            raise DescriptorFetchError(f"Failed to fetch string descriptor {index}: {exc}") from exc
        # One slot of the buffer is reserved for the terminator.
        return "".join(ch if ord(ch) <= 0x7F else "?" for ch in text[:size - 1])

    def set_configuration(self, configuration: int) -> None:
        session = self.require_usable()
        self.log.debug("Setting configuration to %d...", configuration)
        try:
            length = self._host.get_configuration_descriptor_total_length(session.handle, CONFIGURATION_INDEX)
            if length == 0:
                raise DescriptorFetchError("Configuration descriptor reports zero length.")
            descriptor = self._host.get_configuration_descriptor(session.handle, CONFIGURATION_INDEX, length)
        except TransportError as exc:
            raise DescriptorFetchError(f"Failed to fetch configuration descriptor: {exc}") from exc
        if not descriptor:
            raise DescriptorFetchError("Configuration descriptor came back empty.")
        self.log.debug("Configuration %d is %d bytes.", configuration, length)
        try:
            self._host.set_configuration(session.handle, descriptor)
        except TransportError as exc:
            raise DescriptorSetError(f"Failed to set configuration {configuration}: {exc}") from exc

    def _copy_nonce_with_tag(self, tag: str) -> bytes | None:
        try:
            text = self.get_string_descriptor_ascii(NONCE_STRING_INDEX)
        except IBootCtlError as exc:
            self.log.warning("Could not read nonce string for %s: %s", tag, exc)
            return None
        return parse_nonce(text, tag)

    # -- queries --

    def get_device_info(self) -> DeviceInfo | None:
        if not self.is_usable(True):
            return None
        return self._session.device_info

    def get_mode(self) -> Mode:
        session = self.require_usable()
        if session.mode is None:
            raise NoDeviceError("Device is not finalized yet.")
        if session.device_info is not None and session.device_info.pwnd:
            return Mode.PWNDFU_MODE
        return session.mode

    # -- transfer primitives --

    def control_transfer(
        self,
        bm_request_type: int,
        b_request: int,
        w_value: int = 0,
        w_index: int = 0,
        data: bytes | int = b"",
    ) -> int | bytes:
        """Issue a control transfer on endpoint 0.

        ``data`` is the payload for host-to-device requests and the number of
        bytes to read for device-to-host ones.
        """
        session = self.require_usable()
        if isinstance(data, int):
            setup = ControlSetup(bm_request_type, b_request, w_value, w_index, data)
            payload = None
        else:
            setup = ControlSetup(bm_request_type, b_request, w_value, w_index, len(data))
            payload = bytes(data)
        try:
            return self._host.control_transfer(session.handle, setup, payload)
        except TransportError as exc:
            raise UploadFailedError(str(exc)) from exc

    def bulk_transfer(self, endpoint: int, data: bytes) -> int:
        session = self.require_usable()
        try:
            return self._host.bulk_transfer(session.handle, endpoint, bytes(data))
        except TransportError as exc:
            raise UploadFailedError(str(exc)) from exc

    def reset(self) -> None:
        session = self.require_usable()
        try:
            self._host.reset_device(session.handle)
        except TransportError as exc:
            raise UsbResetError(f"Failed to reset the USB device: {exc}") from exc

    def get_status(self) -> int:
        response = self.control_transfer(0xA1, 3, 0, 0, 6)
        if len(response) != 6:
            raise InvalidUsbStatusError(f"Expected 6 status bytes, got {len(response)}")
        return response[4]

    def reset_counters(self) -> None:
        session = self.require_usable()
        if session.mode in (Mode.DFU_MODE, Mode.WTF_MODE):
            self.control_transfer(0x21, 4)

    def finish_transfer(self) -> None:
        self.require_usable()
        try:
            self.control_transfer(0x21, 1)
            for _ in range(3):
                self.get_status()
            self.reset()
        except IBootCtlError as exc:
            self.log.warning("finish_transfer: %s", exc)

    # -- events --

    def event_subscribe(self, event_type: EventType, callback: ProgressObserver) -> None:
        if callback is None:
            raise InvalidArgumentError("callback must not be None")
        if event_type != EventType.PROGRESS:
            raise UnknownEventTypeError(f"The provided event type {event_type!r} is unknown.")
        self.progress_observer = callback

    def event_unsubscribe(self, event_type: EventType) -> None:
        if event_type != EventType.PROGRESS:
            raise UnknownEventTypeError(f"The provided event type {event_type!r} is unknown.")
        self.progress_observer = None

    # -- buffers --

    def send_buffer(
        self,
        data: bytes,
        options: SendOptions = SendOptions.NONE,
        progress: ProgressObserver | None = None,
    ) -> None:
        upload_buffer(self, data, options, progress or self.progress_observer)

    # -- console --

    def _require_recovery(self) -> Session:
        session = self.require_usable()
        if session.mode is None or not session.mode.is_recovery:
            raise ServiceNotAvailableError("The device's mode doesn't support this function.")
        return session

    def send_command_raw(self, command: str, b_request: int = 0) -> None:
        self._require_recovery()
        encoded = command.encode("utf-8")
        if len(encoded) > MAX_COMMAND_LENGTH:
            raise CommandTooLongError(f"Command is {len(encoded)} bytes; at most {MAX_COMMAND_LENGTH} fit.")
        if not encoded:
            raise NoCommandError("There was no command to handle.")
        self.control_transfer(0x40, b_request, 0, 0, encoded + b"\0")

    def send_command_breq(self, command: str, b_request: int) -> None:
        try:
            self.send_command_raw(command, b_request)
        except IBootCtlError:
            self.log.warning("Failed to send command %s", command)
            raise

    def send_command(self, command: str) -> None:
        self.send_command_breq(command, 1 if command in BREQ_COMMANDS else 0)

    def saveenv(self) -> None:
        self.send_command_raw("saveenv")

    def getenv(self, variable: str) -> str:
        self.send_command_raw(f"getenv {variable}")
        response = self.control_transfer(0xC0, 0, 0, 0, STRING_BUFFER_SIZE)
        return bytes(response).split(b"\0", 1)[0].decode("utf-8", errors="replace")

    def setenv(self, variable: str, value: str) -> None:
        self.send_command_raw(f"setenv {variable} {value}")

    def setenv_np(self, variable: str, value: str) -> None:
        self.send_command_raw(f"setenvnp {variable} {value}")

    def reboot(self) -> None:
        self.send_command_raw("reboot")

    def getret(self) -> int:
        self.require_usable()
        response = self.control_transfer(0xC0, 0, 0, 0, STRING_BUFFER_SIZE)
        return response[0] if response else 0
