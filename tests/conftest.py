from __future__ import annotations

from collections import deque

import pytest

from ibootctl.core.errors import UsbTransferError
from ibootctl.core.model import APPLE_VENDOR_ID, ClientConfig, ControlSetup, DeviceDescriptor, Mode, UsbEvent
from ibootctl.core.service import RecoveryService

DEFAULT_SERIAL = (
    "CPID:8960 CPRV:11 CPFM:03 SCEP:01 BDID:00 ECID:000012345678ABCD IBFL:1C "
    "SRTG:[iBoot-1704.10]"
)
DEFAULT_NONCES = "NONC:a1b2c3d4 SNON:00ff"
SERIAL_INDEX = 3


class FakeDevice:
    def __init__(
        self,
        name: str,
        *,
        pid: int = Mode.RECOVERY_MODE_2,
        vendor: int = APPLE_VENDOR_ID,
        serial: str = DEFAULT_SERIAL,
        nonces: str = DEFAULT_NONCES,
    ) -> None:
        self.name = name
        self.pid = pid
        self.vendor = vendor
        self.serial = serial
        self.nonces = nonces

    def __repr__(self) -> str:
        return f"FakeDevice({self.name!r})"


class FakeUsbHost:
    """In-memory host stack that records every transfer."""

    def __init__(self) -> None:
        self.handler = None
        self.host = True
        self.closed = False
        self.pending: list[tuple[UsbEvent, object]] = []
        self.control_log: list[tuple[ControlSetup, bytes | None]] = []
        self.bulk_log: list[tuple[int, bytes]] = []
        self.resets: list[object] = []
        self.configured: list[int] = []
        self.statuses: deque[int] = deque()
        self.dfu_state = 2
        self.in_response = b""
        self.short_bulk = False
        self.fail_set_configuration = False
        self.fail_config_fetch = False

    # event plumbing
    def open(self, handler) -> None:
        self.handler = handler

    def close(self) -> None:
        self.closed = True

    def queue(self, event: UsbEvent, data: object) -> None:
        self.pending.append((event, data))

    def enable(self, device: FakeDevice) -> None:
        self.queue(UsbEvent.DEVICE_ENABLED, device)

    def disconnect(self, device: FakeDevice) -> None:
        self.queue(UsbEvent.DEVICE_DISCONNECTED, device)

    def handle_events(self) -> None:
        while self.pending:
            event, data = self.pending.pop(0)
            self.handler(event, data)

    def is_host(self) -> bool:
        return self.host

    # descriptors
    def get_device_descriptor(self, device: FakeDevice) -> DeviceDescriptor:
        return DeviceDescriptor(id_vendor=device.vendor, id_product=device.pid, i_serial_number=SERIAL_INDEX)

    def get_string_descriptor(self, device: FakeDevice, index: int, langid: int, max_length: int) -> str:
        if index == SERIAL_INDEX:
            return device.serial[:max_length]
        if index == 1:
            return device.nonces[:max_length]
        raise UsbTransferError(f"no string at {index}")

    def get_configuration_descriptor_total_length(self, device: FakeDevice, index: int) -> int:
        if self.fail_config_fetch:
            raise UsbTransferError("stall")
        return 25

    def get_configuration_descriptor(self, device: FakeDevice, index: int, length: int) -> bytes:
        return bytes([9, 2, length, 0, 1, 1, 0, 0x80, 0xFA]) + bytes(length - 9)

    def set_configuration(self, device: FakeDevice, descriptor: bytes) -> None:
        if self.fail_set_configuration:
            raise UsbTransferError("set_configuration stalled")
        self.configured.append(descriptor[5])

    # transfers
    def control_transfer(self, device: FakeDevice, setup: ControlSetup, data: bytes | None = None) -> int | bytes:
        self.control_log.append((setup, data))
        if setup.is_device_to_host:
            request = (setup.bm_request_type, setup.b_request)
            if request == (0xA1, 5):
                return bytes([self.dfu_state])
            if request == (0xA1, 3):
                status = self.statuses.popleft() if self.statuses else 5
                return bytes([0, 0, 0, 0, status, 0])
            return self.in_response[:setup.w_length]
        return len(data or b"")

    def bulk_transfer(self, device: FakeDevice, endpoint: int, data: bytes) -> int:
        self.bulk_log.append((endpoint, bytes(data)))
        if self.short_bulk and data:
            return len(data) - 1
        return len(data)

    def reset_device(self, device: FakeDevice) -> None:
        self.resets.append(device)


@pytest.fixture
def host() -> FakeUsbHost:
    return FakeUsbHost()


@pytest.fixture
def make_device():
    def _make(name: str = "device", **kwargs) -> FakeDevice:
        return FakeDevice(name, **kwargs)

    return _make


@pytest.fixture
def make_service(host):
    def _make(**config) -> RecoveryService:
        return RecoveryService(host, ClientConfig(**config))

    return _make


@pytest.fixture
def connected(host, make_service, make_device):
    """Return a finalized (service, device) pair with the transfer logs cleared."""

    def _connect(pid: int = Mode.RECOVERY_MODE_2, **config):
        service = make_service(**config)
        device = make_device(pid=pid)
        host.enable(device)
        assert service.poll() is True
        host.control_log.clear()
        host.bulk_log.clear()
        return service, device

    return _connect
