"""Domain-specific errors for ibootctl."""


class IBootCtlError(Exception):
    """Base error for ibootctl."""


class InvalidArgumentError(IBootCtlError):
    """Raised when a caller passes an unusable argument."""


class ClientAlreadyActiveError(IBootCtlError):
    """Raised when a host stack is already bound to another client."""


class UsbInitError(IBootCtlError):
    """Raised when the USB host stack cannot be initialized."""


class NoDeviceError(IBootCtlError):
    """Raised when no usable device session exists (disconnected, wrong role, never connected)."""


class DescriptorFetchError(IBootCtlError):
    """Raised when a descriptor cannot be fetched from the device."""


class DescriptorSetError(IBootCtlError):
    """Raised when a descriptor/property of the device cannot be set."""


class EcidMismatchError(IBootCtlError):
    """Raised when the attached device does not match the client's ECID restriction."""


class FinalizationBlockedError(IBootCtlError):
    """Raised when finalization was permanently blocked for the current session."""


class UploadFailedError(IBootCtlError):
    """Raised on short transfers or exhausted DFU status polling."""


class InvalidUsbStatusError(IBootCtlError):
    """Raised when the device returns a malformed DFU status."""


class CommandTooLongError(IBootCtlError):
    """Raised when a console command does not fit in a single request."""


class NoCommandError(IBootCtlError):
    """Raised when an empty console command is sent."""


class ServiceNotAvailableError(IBootCtlError):
    """Raised when the device's mode doesn't support the requested function."""


class UsbResetError(IBootCtlError):
    """Raised when the USB device cannot be reset."""


class UnknownEventTypeError(IBootCtlError):
    """Raised when subscribing to an event type that does not exist."""


class CatalogValidationError(IBootCtlError):
    """Raised when a device catalog file does not conform to schema or semantics."""


class CatalogLoadError(IBootCtlError):
    """Raised when reading device catalog sources fails."""


class TransportError(IBootCtlError):
    """Base host stack error."""


class UsbTransferError(TransportError):
    """Raised by a host stack when a USB request fails."""
