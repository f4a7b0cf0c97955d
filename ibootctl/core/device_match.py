"""Qualification of newly enabled USB devices."""

from __future__ import annotations

import logging
from typing import Any

from ibootctl.core.errors import TransportError
from ibootctl.core.model import APPLE_VENDOR_ID, SUPPORTED_PRODUCT_IDS, DeviceDescriptor
from ibootctl.transports.base import UsbHost

LOGGER = logging.getLogger(__name__)


def is_supported_descriptor(descriptor: DeviceDescriptor) -> bool:
    return descriptor.id_vendor == APPLE_VENDOR_ID and descriptor.id_product in SUPPORTED_PRODUCT_IDS


def qualify_device(host: UsbHost, device: Any) -> DeviceDescriptor | None:
    """Return the device descriptor if ``device`` is an Apple recovery-class device."""
    try:
        descriptor = host.get_device_descriptor(device)
    except TransportError as exc:
        LOGGER.debug("Could not fetch device descriptor for %r: %s", device, exc)
        return None
    if not is_supported_descriptor(descriptor):
        return None
    return descriptor
