"""Chunked buffer upload for Recovery (bulk) and DFU/WTF (control + CRC trailer) modes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from ibootctl.core.crc32 import Crc32
from ibootctl.core.errors import IBootCtlError, InvalidArgumentError, NoDeviceError, UploadFailedError
from ibootctl.core.model import ProgressEvent, SendOptions

if TYPE_CHECKING:
    from ibootctl.core.service import ProgressObserver, RecoveryService

RECOVERY_PACKET_SIZE = 0x8000
DFU_PACKET_SIZE = 0x800
RECOVERY_BULK_ENDPOINT = 0x04
ZLP_ALIGNMENT = 512

DFU_STATE_IDLE = 2
DFU_STATE_ERROR = 10
DFU_STATUS_OK = 5
DFU_STATUS_RETRIES = 20
DFU_STATUS_POLL_INTERVAL_S = 1.0

DFU_DNLOAD = 1
DFU_GETSTATUS = 3
DFU_CLRSTATUS = 4
DFU_GETSTATE = 5
DFU_ABORT = 6

# Salt appended before the CRC on the last DFU packet; 12 bytes + 4 CRC bytes = 16.
DFU_FOOTER = bytes([0xFF, 0xFF, 0xFF, 0xFF, 0xAC, 0x05, 0x00, 0x01, 0x55, 0x46, 0x44, 0x10])
DFU_TRAILER_SIZE = len(DFU_FOOTER) + 4


def upload_buffer(
    service: RecoveryService,
    data: bytes,
    options: SendOptions = SendOptions.NONE,
    observer: ProgressObserver | None = None,
) -> None:
    """Send ``data`` to the finalized device, picking the framing from its mode.

    Any short transfer aborts the whole upload; there is no resume.
    """
    session = service.require_usable()
    if not data:
        raise InvalidArgumentError("Refusing to upload an empty buffer.")
    if session.mode is None:
        raise NoDeviceError("Device is not finalized yet.")

    data = bytes(data)
    if session.mode.is_recovery:
        _upload_recovery(service, data, observer)
    else:
        _upload_dfu(service, data, options, observer)


def _chunks(length: int, packet_size: int) -> list[tuple[int, int]]:
    return [(offset, min(packet_size, length - offset)) for offset in range(0, length, packet_size)]


def _report(service: RecoveryService, observer: ProgressObserver | None, count: int, total: int) -> None:
    if observer is not None:
        observer(ProgressEvent(size=count, progress=count / total * 100.0))
    else:
        service.log.info("Sent %d of %d bytes", count, total)


def _upload_recovery(service: RecoveryService, data: bytes, observer: ProgressObserver | None) -> None:
    # initiate transfer
    service.control_transfer(0x41, 0)

    count = 0
    for offset, size in _chunks(len(data), RECOVERY_PACKET_SIZE):
        sent = service.bulk_transfer(RECOVERY_BULK_ENDPOINT, data[offset:offset + size])
        if sent != size:
            raise UploadFailedError(f"Bulk transfer sent {sent} of {size} bytes at offset {offset}")
        count += size
        _report(service, observer, count, len(data))

    if len(data) % ZLP_ALIGNMENT == 0:
        service.bulk_transfer(RECOVERY_BULK_ENDPOINT, b"")


def _check_dfu_state(service: RecoveryService) -> None:
    response = service.control_transfer(0xA1, DFU_GETSTATE, 0, 0, 1)
    if len(response) != 1:
        raise UploadFailedError("Could not read DFU state")
    state = response[0]
    if state == DFU_STATE_IDLE:
        return
    if state == DFU_STATE_ERROR:
        service.log.warning("DFU ERROR, issuing CLRSTATUS")
        service.control_transfer(0x21, DFU_CLRSTATUS)
        raise UploadFailedError("Device is in DFU error state")
    service.log.warning("Unexpected state %d, issuing ABORT", state)
    service.control_transfer(0x21, DFU_ABORT)
    raise UploadFailedError(f"Unexpected DFU state {state}")


def _dnload(service: RecoveryService, index: int, payload: bytes) -> None:
    sent = service.control_transfer(0x21, DFU_DNLOAD, index, 0, payload)
    if sent != len(payload):
        raise UploadFailedError(f"DFU packet {index} sent {sent} of {len(payload)} bytes")


def _wait_for_status(service: RecoveryService) -> None:
    if service.get_status() == DFU_STATUS_OK:
        return
    for _ in range(DFU_STATUS_RETRIES):
        try:
            status = service.get_status()
        except IBootCtlError as exc:
            service.log.debug("DFU status poll failed: %s", exc)
            status = 0
        if status == DFU_STATUS_OK:
            return
        time.sleep(DFU_STATUS_POLL_INTERVAL_S)
    raise UploadFailedError("Device never reported DFU status 5")


def _upload_dfu(
    service: RecoveryService,
    data: bytes,
    options: SendOptions,
    observer: ProgressObserver | None,
) -> None:
    _check_dfu_state(service)

    crc = Crc32()
    chunks = _chunks(len(data), DFU_PACKET_SIZE)
    count = 0
    for index, (offset, size) in enumerate(chunks):
        chunk = data[offset:offset + size]
        crc.update(chunk)
        if index + 1 < len(chunks):
            _dnload(service, index, chunk)
        else:
            if size + DFU_TRAILER_SIZE > DFU_PACKET_SIZE:
                # The trailer does not fit; flush the payload on its own first.
                _dnload(service, index, chunk)
                chunk = b""
            crc.update(DFU_FOOTER)
            _dnload(service, index, chunk + DFU_FOOTER + crc.digest())

        _wait_for_status(service)
        count += size
        _report(service, observer, count, len(data))

    if options & SendOptions.DFU_NOTIFY_FINISH:
        service.control_transfer(0x21, DFU_DNLOAD, len(chunks), 0)
        for _ in range(2):
            service.get_status()
        if options & SendOptions.DFU_FORCE_ZLP:
            service.control_transfer(0x21, 0)
        try:
            service.reset()
        except IBootCtlError as exc:
            service.log.warning("Reset after DFU upload failed: %s", exc)
