from __future__ import annotations

import pytest
import usb.control
import usb.core
import usb.util

from ibootctl.core.errors import ClientAlreadyActiveError, UsbInitError, UsbTransferError
from ibootctl.core.model import ControlSetup, DeviceDescriptor, UsbEvent
from ibootctl.transports.pyusb_host import PyUSBHost


class FakeUsbDevice:
    def __init__(self, bus: int, address: int, product: int = 0x1227) -> None:
        self.bus = bus
        self.address = address
        self.idVendor = 0x05AC
        self.idProduct = product
        self.iSerialNumber = 3
        self.ctrl_calls: list[tuple] = []
        self.configuration = None
        self.fail = False

    def ctrl_transfer(self, bm_request_type, b_request, wValue=0, wIndex=0, data_or_wLength=None, timeout=None):
        if self.fail:
            raise usb.core.USBError("Pipe error")
        self.ctrl_calls.append((bm_request_type, b_request, wValue, wIndex, data_or_wLength))
        if bm_request_type & 0x80:
            return bytearray(range(data_or_wLength))
        return len(data_or_wLength or b"")

    def write(self, endpoint, data, timeout=None):
        return len(data)

    def set_configuration(self, value):
        self.configuration = value

    def reset(self):
        raise usb.core.USBError("No such device")


@pytest.fixture
def usb_bus(monkeypatch: pytest.MonkeyPatch) -> list[FakeUsbDevice]:
    present: list[FakeUsbDevice] = []
    monkeypatch.setattr(usb.core, "find", lambda find_all=False, idVendor=None: list(present))
    monkeypatch.setattr(usb.util, "dispose_resources", lambda device: None)
    return present


def test_handle_events_reports_arrivals_and_departures(usb_bus) -> None:
    events = []
    host = PyUSBHost()
    host.open(lambda event, data: events.append((event, data)))
    device = FakeUsbDevice(1, 4)

    usb_bus.append(device)
    host.handle_events()
    host.handle_events()
    assert events == [(UsbEvent.DEVICE_ENABLED, device)]

    usb_bus.clear()
    host.handle_events()
    assert events[-1] == (UsbEvent.DEVICE_DISCONNECTED, device)
    assert host.is_host()


def test_open_twice_rejected(usb_bus) -> None:
    host = PyUSBHost()
    host.open(lambda event, data: None)
    with pytest.raises(ClientAlreadyActiveError):
        host.open(lambda event, data: None)

    host.close()
    host.open(lambda event, data: None)


def test_missing_backend_raises_clean_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def no_backend(**kwargs):
        raise usb.core.NoBackendError("No backend available")

    monkeypatch.setattr(usb.core, "find", no_backend)
    with pytest.raises(UsbInitError):
        PyUSBHost().open(lambda event, data: None)


def test_device_descriptor_fields(usb_bus) -> None:
    device = FakeUsbDevice(1, 4, product=0x1281)
    assert PyUSBHost().get_device_descriptor(device) == DeviceDescriptor(0x05AC, 0x1281, 3)


def test_control_transfer_directions(usb_bus) -> None:
    host = PyUSBHost()
    device = FakeUsbDevice(1, 4)

    assert host.control_transfer(device, ControlSetup(0xA1, 3, 0, 0, 6)) == bytes(range(6))
    assert host.control_transfer(device, ControlSetup(0x21, 1, 7, 0, 3), b"abc") == 3
    assert host.control_transfer(device, ControlSetup(0x21, 4)) == 0
    assert device.ctrl_calls == [
        (0xA1, 3, 0, 0, 6),
        (0x21, 1, 7, 0, b"abc"),
        (0x21, 4, 0, 0, None),
    ]

    device.fail = True
    with pytest.raises(UsbTransferError):
        host.control_transfer(device, ControlSetup(0x21, 4))


def test_configuration_helpers(monkeypatch: pytest.MonkeyPatch, usb_bus) -> None:
    descriptor = bytes([9, 2, 0x20, 0, 1, 1, 0, 0x80, 0xFA]) + bytes(23)
    monkeypatch.setattr(
        usb.control,
        "get_descriptor",
        lambda device, length, desc_type, index: descriptor[:length],
    )
    host = PyUSBHost()
    device = FakeUsbDevice(1, 4)

    assert host.get_configuration_descriptor_total_length(device, 0) == 32
    assert host.get_configuration_descriptor(device, 0, 32) == descriptor
    host.set_configuration(device, descriptor)
    assert device.configuration == 1

    with pytest.raises(UsbTransferError):
        host.set_configuration(device, b"\x09\x02")


def test_reset_failure_is_wrapped(usb_bus) -> None:
    with pytest.raises(UsbTransferError):
        PyUSBHost().reset_device(FakeUsbDevice(1, 4))
