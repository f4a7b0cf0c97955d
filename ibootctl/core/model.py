"""Core data models shared by the service, transports, catalog, and CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum, IntFlag
from typing import Any

APPLE_VENDOR_ID = 0x05AC


class Mode(IntEnum):
    RECOVERY_MODE_1 = 0x1280
    RECOVERY_MODE_2 = 0x1281
    RECOVERY_MODE_3 = 0x1282
    RECOVERY_MODE_4 = 0x1283
    WTF_MODE = 0x1222
    DFU_MODE = 0x1227
    # Never reported on the wire; inferred from a PWND marker in the device info.
    PWNDFU_MODE = 0xFFFF

    @property
    def is_recovery(self) -> bool:
        return self in RECOVERY_MODES


RECOVERY_MODES = frozenset(
    {Mode.RECOVERY_MODE_1, Mode.RECOVERY_MODE_2, Mode.RECOVERY_MODE_3, Mode.RECOVERY_MODE_4}
)
SUPPORTED_PRODUCT_IDS = frozenset(RECOVERY_MODES | {Mode.WTF_MODE, Mode.DFU_MODE})


def mode_to_str(mode: int | None) -> str:
    if mode in RECOVERY_MODES:
        return "Recovery"
    if mode == Mode.WTF_MODE:
        return "WTF"
    if mode == Mode.DFU_MODE:
        return "DFU"
    if mode == Mode.PWNDFU_MODE:
        return "PWNDFU"
    return "Unknown"


class ConnectionPolicy(Enum):
    # A new device discards the current session, even if the new one turns out unusable.
    ACCEPT_ALL = "accept-all"
    ACCEPT_ONLY_WHEN_EMPTY = "accept-when-empty"
    ONE_CONNECTION_LIMIT = "one-connection"


class FinalizationStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    BLOCKED = "blocked"


class UsbEvent(Enum):
    ROLE_CHANGED = "role-changed"
    DEVICE_CONNECTED = "device-connected"
    DEVICE_DISCONNECTED = "device-disconnected"
    DEVICE_ENABLED = "device-enabled"
    DEVICE_DISABLED = "device-disabled"


class UsbRole(Enum):
    HOST = "host"
    DEVICE = "device"


class EventType(IntEnum):
    PROGRESS = 1


class SendOptions(IntFlag):
    NONE = 0
    DFU_NOTIFY_FINISH = 1 << 0
    DFU_FORCE_ZLP = 1 << 1


@dataclass(frozen=True)
class DeviceDescriptor:
    id_vendor: int
    id_product: int
    i_serial_number: int


@dataclass(frozen=True)
class ControlSetup:
    bm_request_type: int
    b_request: int
    w_value: int = 0
    w_index: int = 0
    w_length: int = 0

    @property
    def is_device_to_host(self) -> bool:
        return bool(self.bm_request_type & 0x80)


@dataclass(frozen=True)
class DeviceInfo:
    cpid: int = 0
    cprv: int = 0
    cpfm: int = 0
    scep: int = 0
    bdid: int = 0
    ecid: int = 0
    ibfl: int = 0
    pid: int = 0
    srnm: str | None = None
    imei: str | None = None
    srtg: str | None = None
    serial_string: str | None = None
    pwnd: str | None = None
    ap_nonce: bytes | None = None
    sep_nonce: bytes | None = None

    @property
    def ap_nonce_size(self) -> int:
        return len(self.ap_nonce) if self.ap_nonce is not None else 0

    @property
    def sep_nonce_size(self) -> int:
        return len(self.sep_nonce) if self.sep_nonce is not None else 0


@dataclass(frozen=True)
class Session:
    """Everything tied to the currently captured device.

    Replaced as a whole on every transition; ``Session()`` is the empty session.
    """

    handle: Any = None
    descriptor: DeviceDescriptor | None = None
    device_info: DeviceInfo | None = None
    mode: Mode | None = None
    finalization: FinalizationStatus = FinalizationStatus.PENDING

    @property
    def is_empty(self) -> bool:
        return self == Session()


@dataclass(frozen=True)
class ClientConfig:
    policy: ConnectionPolicy = ConnectionPolicy.ACCEPT_ALL
    ecid_restriction: int = 0
    logger: logging.Logger | None = None


@dataclass(frozen=True)
class ProgressEvent:
    size: int
    progress: float
    data: str = "Uploading"
    type: EventType = EventType.PROGRESS


@dataclass(frozen=True)
class AppleDevice:
    product_type: str
    hardware_model: str
    board_id: int
    chip_id: int
    display_name: str
