import asyncio
import errno

import pytest
import serial

from serialflash.error_classifier import GENERIC_SUGGESTION, UNKNOWN_MESSAGE, cause_of, classify
from serialflash.errors import DeviceConnectionError, FailureCause, FlashError, TransportError
from serialflash.models import Phase


@pytest.mark.parametrize("cause", list(FailureCause))
def test_every_cause_has_message_and_suggestion(cause):
    classified = classify(cause)
    assert classified.message
    assert classified.suggestion


def test_no_device_selected_asks_to_reconnect():
    classified = classify(FailureCause.NO_DEVICE_SELECTED)
    assert "reconnect" in classified.message.lower()
    assert "connect again" in classified.suggestion.lower()


def test_communication_failure_suggests_boot_sequence():
    suggestion = classify(FailureCause.COMMUNICATION_FAILURE).suggestion
    assert "BOOT" in suggestion and "RESET" in suggestion


def test_permission_denied_mentions_serial_port():
    classified = classify(FailureCause.PERMISSION_DENIED)
    assert "serial port" in classified.message
    assert "access" in classified.suggestion.lower()


def test_unclassified_exception_falls_back_to_raw_message():
    classified = classify(RuntimeError("flux capacitor offline"))
    assert classified.cause == FailureCause.UNKNOWN
    assert classified.message == "flux capacitor offline"
    assert classified.suggestion == GENERIC_SUGGESTION


def test_unclassified_exception_without_message():
    classified = classify(RuntimeError())
    assert classified.message == UNKNOWN_MESSAGE
    assert classified.suggestion == GENERIC_SUGGESTION


@pytest.mark.parametrize("error, expected", [
    (PermissionError(errno.EACCES, "Permission denied"), FailureCause.PERMISSION_DENIED),
    (serial.SerialException("[Errno 13] could not open port /dev/ttyUSB0: Permission denied"), FailureCause.PERMISSION_DENIED),
    (serial.SerialException("could not open port /dev/ttyUSB9: No such file or directory"), FailureCause.COMMUNICATION_FAILURE),
    (serial.SerialTimeoutException("Write timeout"), FailureCause.TIMEOUT),
    (OSError(errno.EBUSY, "Device or resource busy"), FailureCause.DEVICE_BUSY),
    (asyncio.TimeoutError(), FailureCause.TIMEOUT),
    (NotImplementedError("no serial support"), FailureCause.UNSUPPORTED_ENVIRONMENT),
    (TransportError(FailureCause.CHECKSUM_MISMATCH, "bad md5"), FailureCause.CHECKSUM_MISMATCH),
    (ValueError("nope"), FailureCause.UNKNOWN),
])
def test_cause_of_raw_exceptions(error, expected):
    assert cause_of(error) == expected


def test_cancelled_error_maps_to_cancelled():
    assert cause_of(asyncio.CancelledError()) == FailureCause.CANCELLED


def test_already_classified_errors_pass_through():
    error = DeviceConnectionError(FailureCause.PERMISSION_DENIED, "custom message", "custom suggestion")
    classified = classify(error)
    assert classified.message == "custom message"
    assert classified.suggestion == "custom suggestion"

    flash_error = FlashError(FailureCause.TIMEOUT, "slow", "wait", phase=Phase.WRITING)
    assert classify(flash_error).message == "slow"


def test_transport_error_retryable_flag():
    assert TransportError(FailureCause.DEVICE_BUSY).retryable
    assert TransportError(FailureCause.TIMEOUT).retryable
    assert not TransportError(FailureCause.CHECKSUM_MISMATCH).retryable


def test_flash_error_kind():
    assert FlashError(FailureCause.NOT_CONNECTED, "m", "s").kind == "NotConnected"
    assert FlashError(FailureCause.INVALID_OPTIONS, "m", "s").kind == "InvalidOptions"
    assert FlashError(FailureCause.TIMEOUT, "m", "s", phase=Phase.VERIFYING).kind == "PhaseFailure"
    assert FlashError(FailureCause.TIMEOUT, "m", "s", phase=Phase.VERIFYING).to_dict()["phase"] == "Verifying"
