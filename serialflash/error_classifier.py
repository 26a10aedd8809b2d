import asyncio
import errno
from typing import Dict, Tuple, Union

import serial
from pydantic import BaseModel, ConfigDict, ValidationError

from serialflash.errors import DeviceConnectionError, FailureCause, FlashError, TransportError

GENERIC_SUGGESTION = "Check your device connection and try again."
UNKNOWN_MESSAGE = "An unknown error occurred"

# cause -> (message, suggestion)
MESSAGES: Dict[FailureCause, Tuple[str, str]] = {
    FailureCause.NO_DEVICE_SELECTED: (
        "No device selected. Please reconnect your device and try again.",
        "Make sure your device is connected via USB and try clicking Connect again.",
    ),
    FailureCause.UNSUPPORTED_ENVIRONMENT: (
        "Serial port access is not supported in this environment. Please use a supported runtime.",
        "Run the flasher on a desktop OS where pyserial can open local serial ports.",
    ),
    FailureCause.PERMISSION_DENIED: (
        "Permission denied. Please allow access to the serial port.",
        "Grant access to the serial port (on Linux add your user to the 'dialout' group) and try again.",
    ),
    FailureCause.COMMUNICATION_FAILURE: (
        "Failed to communicate with device. Check your connection and try again.",
        "Check the USB cable, then hold BOOT, press RESET, release BOOT and retry.",
    ),
    FailureCause.CHECKSUM_MISMATCH: (
        "Verification failed: flash contents do not match the firmware image.",
        "Erase the flash before writing and run the flash again.",
    ),
    FailureCause.TIMEOUT: (
        "Timed out waiting for the device to respond.",
        "Try a lower baud rate, check the cable, then hold BOOT, press RESET, release BOOT and retry.",
    ),
    FailureCause.DEVICE_BUSY: (
        "The device is busy and did not accept the operation.",
        "Wait for the running operation to finish, then try again.",
    ),
    FailureCause.NOT_CONNECTED: (
        "No device connected.",
        "Click Connect and select your device before flashing.",
    ),
    FailureCause.INVALID_OPTIONS: (
        "Invalid flash settings.",
        "Select a .bin firmware file up to 16 MB, a positive baud rate and a hex flash offset such as 0x1000.",
    ),
    FailureCause.CANCELLED: (
        "Flash cancelled.",
        "Start a new flash when you are ready.",
    ),
}


class ClassifiedError(BaseModel):
    model_config = ConfigDict(frozen=True)

    cause: FailureCause
    message: str
    suggestion: str


def cause_of(error: BaseException) -> FailureCause:
    """Maps a raw exception onto the failure taxonomy."""
    if isinstance(error, (TransportError, DeviceConnectionError, FlashError)):
        return error.cause
    if isinstance(error, asyncio.CancelledError):
        return FailureCause.CANCELLED
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, serial.SerialTimeoutException)):
        return FailureCause.TIMEOUT
    if isinstance(error, PermissionError):
        return FailureCause.PERMISSION_DENIED
    if isinstance(error, ValidationError):
        return FailureCause.INVALID_OPTIONS
    if isinstance(error, (serial.SerialException, OSError)):
        err_no = getattr(error, "errno", None)
        text: str = str(error).lower()
        if err_no in (errno.EACCES, errno.EPERM) or "permission denied" in text or "access is denied" in text:
            return FailureCause.PERMISSION_DENIED
        if err_no == errno.EBUSY or "resource busy" in text:
            return FailureCause.DEVICE_BUSY
        return FailureCause.COMMUNICATION_FAILURE
    if isinstance(error, NotImplementedError):
        return FailureCause.UNSUPPORTED_ENVIRONMENT
    return FailureCause.UNKNOWN


def classify(cause: Union[FailureCause, BaseException]) -> ClassifiedError:
    """Returns a user-facing message and remediation for any failure.

    The mapping is total: every input, including causes outside the known
    taxonomy, yields a non-empty message and suggestion.
    """
    if isinstance(cause, (DeviceConnectionError, FlashError)) and cause.message and cause.suggestion:
        return ClassifiedError(cause=cause.cause, message=cause.message, suggestion=cause.suggestion)

    if isinstance(cause, FailureCause):
        kind: FailureCause = cause
        raw: str = ""
    else:
        kind = cause_of(cause)
        raw = str(cause).strip()

    if kind in MESSAGES:
        message, suggestion = MESSAGES[kind]
        return ClassifiedError(cause=kind, message=message, suggestion=suggestion)
    return ClassifiedError(cause=FailureCause.UNKNOWN, message=raw or UNKNOWN_MESSAGE, suggestion=GENERIC_SUGGESTION)
