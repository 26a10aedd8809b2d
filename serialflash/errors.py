from enum import Enum
from typing import Optional

from serialflash.models import Phase


class FailureCause(str, Enum):
    NO_DEVICE_SELECTED = "no_device_selected"
    UNSUPPORTED_ENVIRONMENT = "unsupported_environment"
    PERMISSION_DENIED = "permission_denied"
    COMMUNICATION_FAILURE = "communication_failure"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    TIMEOUT = "timeout"
    DEVICE_BUSY = "device_busy"
    NOT_CONNECTED = "not_connected"
    INVALID_OPTIONS = "invalid_options"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


RETRYABLE_CAUSES = {FailureCause.DEVICE_BUSY, FailureCause.TIMEOUT}


class TransportError(Exception):
    """Raised by transports for any failed device operation."""

    def __init__(self, cause: FailureCause, message: str = "") -> None:
        super().__init__(message or cause.value)
        self.cause: FailureCause = cause

    @property
    def retryable(self) -> bool:
        return self.cause in RETRYABLE_CAUSES


class DeviceConnectionError(Exception):
    """Raised by DeviceSession.connect() with an already classified message."""

    def __init__(self, cause: FailureCause, message: str, suggestion: str) -> None:
        super().__init__(message)
        self.cause: FailureCause = cause
        self.message: str = message
        self.suggestion: str = suggestion


class FlashError(Exception):
    """Terminal failure of one flashing run.

    `phase` is the phase that was active when the run failed, or None when the
    run was rejected before any phase started (not connected, invalid options,
    another run in progress).
    """

    def __init__(
        self,
        cause: FailureCause,
        message: str,
        suggestion: str,
        phase: Optional[Phase] = None,
        detail: str = "",
    ) -> None:
        super().__init__(message)
        self.cause: FailureCause = cause
        self.message: str = message
        self.suggestion: str = suggestion
        self.phase: Optional[Phase] = phase
        self.detail: str = detail

    @property
    def kind(self) -> str:
        if self.phase is not None:
            return "PhaseFailure"
        if self.cause == FailureCause.NOT_CONNECTED:
            return "NotConnected"
        if self.cause == FailureCause.INVALID_OPTIONS:
            return "InvalidOptions"
        return "Rejected"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "cause": self.cause.value,
            "phase": self.phase.value if self.phase else None,
            "message": self.message,
            "suggestion": self.suggestion,
            "detail": self.detail,
        }
