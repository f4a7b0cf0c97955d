"""Streaming CRC32 used for the DFU upload trailer."""

from __future__ import annotations

import binascii

_MASK = 0xFFFFFFFF


class Crc32:
    """CRC32 register without the final inversion, as DFU trailers expect.

    ``binascii.crc32`` inverts on entry and exit, so the raw register is
    translated on each side of the call.
    """

    def __init__(self, seed: int = 0xFFFFFFFF) -> None:
        self.value = seed & _MASK

    def update(self, data: bytes) -> int:
        self.value = binascii.crc32(data, self.value ^ _MASK) ^ _MASK
        return self.value

    def digest(self) -> bytes:
        return self.value.to_bytes(4, "little")
