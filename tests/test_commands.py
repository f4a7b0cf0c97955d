from __future__ import annotations

import logging

import pytest

from ibootctl.core.errors import (
    CommandTooLongError,
    NoCommandError,
    ServiceNotAvailableError,
    UploadFailedError,
    UsbTransferError,
)
from ibootctl.core.model import ControlSetup, Mode


def _command(text: str, b_request: int = 0) -> tuple[ControlSetup, bytes]:
    payload = text.encode() + b"\0"
    return ControlSetup(0x40, b_request, 0, 0, len(payload)), payload


@pytest.mark.parametrize("command", ["go", "bootx", "reboot", "memboot"])
def test_boot_commands_use_breq_1(connected, host, command: str) -> None:
    service, _ = connected()
    service.send_command(command)
    assert host.control_log == [_command(command, 1)]


@pytest.mark.parametrize("command", ["setpicture 0", "gox", "go now"])
def test_other_commands_use_breq_0(connected, host, command: str) -> None:
    service, _ = connected()
    service.send_command(command)
    assert host.control_log == [_command(command, 0)]


def test_command_length_limit(connected, host) -> None:
    service, _ = connected()

    service.send_command("a" * 255)
    assert len(host.control_log[0][1]) == 256

    with pytest.raises(CommandTooLongError):
        service.send_command("a" * 256)
    with pytest.raises(NoCommandError):
        service.send_command("")
    assert len(host.control_log) == 1


@pytest.mark.parametrize("pid", [Mode.DFU_MODE, Mode.WTF_MODE])
def test_console_unavailable_outside_recovery(connected, host, pid: int) -> None:
    service, _ = connected(pid=pid)
    with pytest.raises(ServiceNotAvailableError):
        service.send_command("help")
    with pytest.raises(ServiceNotAvailableError):
        service.getenv("auto-boot")
    assert host.control_log == []


def test_getenv_reads_response(connected, host) -> None:
    service, _ = connected()
    host.in_response = b"true\0garbage"

    assert service.getenv("auto-boot") == "true"
    assert host.control_log == [
        _command("getenv auto-boot"),
        (ControlSetup(0xC0, 0, 0, 0, 255), None),
    ]


def test_setenv_variants(connected, host) -> None:
    service, _ = connected()

    service.setenv("auto-boot", "false")
    service.setenv_np("boot-args", "-v")
    service.saveenv()

    assert host.control_log == [
        _command("setenv auto-boot false"),
        _command("setenvnp boot-args -v"),
        _command("saveenv"),
    ]


def test_reboot_uses_breq_0(connected, host) -> None:
    service, _ = connected()
    service.reboot()
    assert host.control_log == [_command("reboot", 0)]


def test_getret_returns_first_byte(connected, host) -> None:
    service, _ = connected()
    host.in_response = b"\x07\x00"
    assert service.getret() == 7


def test_failed_command_is_logged(connected, host, monkeypatch, caplog) -> None:
    service, _ = connected()

    def broken(device, setup, data=None):
        raise UsbTransferError("pipe error")

    monkeypatch.setattr(host, "control_transfer", broken)
    with caplog.at_level(logging.WARNING), pytest.raises(UploadFailedError):
        service.send_command("go")
    assert "Failed to send command go" in caplog.text


def test_rejected_command_is_logged(connected, caplog) -> None:
    service, _ = connected(pid=Mode.DFU_MODE)

    with caplog.at_level(logging.WARNING), pytest.raises(ServiceNotAvailableError):
        service.send_command_breq("go", 1)
    assert "Failed to send command go" in caplog.text


def test_reset_counters_only_in_dfu(connected, host) -> None:
    service, _ = connected()
    service.reset_counters()
    assert host.control_log == []

    service, _ = connected(pid=Mode.DFU_MODE)
    host.control_log.clear()
    service.reset_counters()
    assert host.control_log == [(ControlSetup(0x21, 4, 0, 0, 0), b"")]


def test_finish_transfer_is_best_effort(connected, host, monkeypatch, caplog) -> None:
    service, device = connected(pid=Mode.DFU_MODE)

    service.finish_transfer()
    requests = [(s.bm_request_type, s.b_request) for s, _ in host.control_log]
    assert requests == [(0x21, 1), (0xA1, 3), (0xA1, 3), (0xA1, 3)]
    assert host.resets == [device]

    def broken(device):
        raise UsbTransferError("reset failed")

    monkeypatch.setattr(host, "reset_device", broken)
    with caplog.at_level(logging.WARNING):
        service.finish_transfer()
    assert "finish_transfer" in caplog.text
