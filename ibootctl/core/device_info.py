"""Parsers for the identity strings iBoot publishes in its USB string descriptors."""

from __future__ import annotations

import logging
import re

from ibootctl.core.model import DeviceInfo

LOGGER = logging.getLogger(__name__)

_MASK_32 = 0xFFFFFFFF
_MASK_64 = 0xFFFFFFFFFFFFFFFF

# Same acceptance as scanf's %x: optional whitespace and 0x prefix, then hex digits.
_HEX_RUN_RE = re.compile(r"\s*(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_WORD_RE = re.compile(r"\S*")
_HEX_PAIR_RE = re.compile(r"[0-9a-fA-F]{2}")

_HEX_TAGS_32 = {"CPID:": "cpid", "CPRV:": "cprv", "CPFM:": "cpfm", "SCEP:": "scep", "IBFL:": "ibfl"}
_HEX_TAGS_64 = {"BDID:": "bdid", "ECID:": "ecid"}
_BRACKET_TAGS = {"SRNM:[": "srnm", "IMEI:[": "imei", "SRTG:[": "srtg", "PWND:[": "pwnd"}


def _scan_hex(text: str, tag: str) -> int:
    start = text.find(tag)
    if start < 0:
        return 0
    match = _HEX_RUN_RE.match(text, start + len(tag))
    if match is None:
        return 0
    return int(match.group(1), 16)


def _scan_bracketed(text: str, tag: str) -> str | None:
    start = text.find(tag)
    if start < 0:
        return None
    word = _WORD_RE.match(text, start + len(tag)).group(0)
    return word.split("]", 1)[0]


def parse_device_info(serial_string: str, *, pid: int = 0) -> DeviceInfo:
    """Parse an iBoot serial-number string such as ``CPID:8960 ... SRNM:[C8847234FGHT]``.

    Each tag is looked up independently; a missing tag leaves its field at the
    default (zero for numbers, ``None`` for strings), exactly as an explicit zero
    would.
    """
    fields: dict[str, object] = {}
    for tag, name in _HEX_TAGS_32.items():
        fields[name] = _scan_hex(serial_string, tag) & _MASK_32
    for tag, name in _HEX_TAGS_64.items():
        fields[name] = _scan_hex(serial_string, tag) & _MASK_64
    # BDID is scanned as 64 bits but stored narrowed.
    fields["bdid"] = fields["bdid"] & _MASK_32
    for tag, name in _BRACKET_TAGS.items():
        fields[name] = _scan_bracketed(serial_string, tag)

    return DeviceInfo(serial_string=serial_string, pid=pid, **fields)


def parse_nonce(text: str, tag: str) -> bytes | None:
    """Extract the hex payload of ``TAG:hexdigits`` from a space-separated token list.

    Returns ``None`` (after logging) when the tag is missing or its payload is not hex.
    """
    taglen = len(tag)
    nonce_hex: str | None = None
    pos = 0
    while True:
        colon = text.find(":", pos)
        if colon < 0 or colon - taglen < pos:
            break
        space = text.find(" ", colon)
        if text[colon - taglen:colon] == tag:
            end = len(text) if space < 0 else space
            nonce_hex = text[colon + 1:end]
            break
        if space < 0:
            break
        pos = space + 1

    nlen = len(nonce_hex) // 2 if nonce_hex else 0
    if nlen == 0:
        LOGGER.warning("Couldn't find tag %s in string %s", tag, text)
        return None

    nonce = bytearray()
    for i in range(nlen):
        pair = nonce_hex[i * 2:i * 2 + 2]
        if not _HEX_PAIR_RE.fullmatch(pair):
            LOGGER.warning("Unexpected data in nonce result (%s); unable to parse nonce", pair)
            return None
        nonce.append(int(pair, 16))
    return bytes(nonce)
