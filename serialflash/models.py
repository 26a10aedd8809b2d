from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_FIRMWARE_SIZE: int = 16 * 1024 * 1024
DEFAULT_BAUD_RATE: int = 115200
DEFAULT_FLASH_OFFSET: str = "0x1000"

# Percent layout of a run. Phases ahead of Writing step by PRE_WRITE_STEP from 0.
PRE_WRITE_STEP: float = 10.0
WRITE_END_PERCENT: float = 85.0
VERIFY_PERCENT: float = 90.0
DONE_PERCENT: float = 100.0


class Phase(str, Enum):
    """Stages of a flashing run, in pipeline order."""

    CONNECTING = "Connecting"
    SYNCING = "Syncing"
    ERASING = "Erasing"
    WRITING = "Writing"
    VERIFYING = "Verifying"
    DONE = "Done"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


def build_phase_plan(erase_before_write: bool) -> List[Phase]:
    """Returns the ordered phases for one run."""
    plan: List[Phase] = [Phase.CONNECTING, Phase.SYNCING]
    if erase_before_write:
        plan.append(Phase.ERASING)
    plan += [Phase.WRITING, Phase.VERIFYING, Phase.DONE]
    return plan


def phase_ranges(plan: List[Phase]) -> Dict[Phase, Tuple[float, float]]:
    """Derives the (start, end) percent window of every phase from the plan alone.

    Phases before Writing are spaced PRE_WRITE_STEP apart starting at 0, Writing
    picks up one step after whatever precedes it and runs to WRITE_END_PERCENT,
    then Verifying and Done report fixed tail values.
    """
    ranges: Dict[Phase, Tuple[float, float]] = {}
    cursor: float = 0.0
    for phase in plan:
        if phase == Phase.WRITING:
            ranges[phase] = (cursor, WRITE_END_PERCENT)
            cursor = WRITE_END_PERCENT
        elif phase == Phase.VERIFYING:
            ranges[phase] = (VERIFY_PERCENT, DONE_PERCENT)
            cursor = DONE_PERCENT
        elif phase == Phase.DONE:
            ranges[phase] = (DONE_PERCENT, DONE_PERCENT)
        else:
            ranges[phase] = (cursor, cursor + PRE_WRITE_STEP)
            cursor += PRE_WRITE_STEP
    return ranges


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def parse_flash_offset(value: Union[str, int]) -> int:
    """Parses a flash offset such as "0x1000" (or a bare hex string) into an int."""
    if isinstance(value, bool):
        raise ValueError("flash offset must be a hex string or an integer")
    if isinstance(value, int):
        offset = value
    else:
        text: str = str(value).strip().lower()
        if not text:
            raise ValueError("flash offset is empty")
        try:
            offset = int(text, 16)
        except ValueError:
            raise ValueError(f"flash offset {value!r} is not a valid hex number")
    if offset < 0:
        raise ValueError("flash offset must not be negative")
    return offset


class DeviceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    chip: str
    port_label: str
    mac: Optional[str] = None


class PortInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    device: str
    description: str = ""
    usb: bool = False


class FlashOptions(BaseModel):
    """One flashing attempt's inputs, validated once at construction."""

    model_config = ConfigDict(frozen=True)

    firmware: bytes = Field(repr=False)
    baud_rate: int = DEFAULT_BAUD_RATE
    flash_offset: int = 0x1000
    erase_before_write: bool = True

    @field_validator("firmware")
    @classmethod
    def _check_firmware(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("firmware image is empty")
        if len(value) > MAX_FIRMWARE_SIZE:
            raise ValueError(f"firmware image is larger than {format_bytes(MAX_FIRMWARE_SIZE)}")
        return value

    @field_validator("baud_rate")
    @classmethod
    def _check_baud_rate(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("baud rate must be a positive integer")
        return value

    @field_validator("flash_offset", mode="before")
    @classmethod
    def _check_flash_offset(cls, value: Union[str, int]) -> int:
        return parse_flash_offset(value)

    @property
    def total_bytes(self) -> int:
        return len(self.firmware)

    @classmethod
    def from_user_input(
        cls,
        firmware: bytes,
        baud_rate: Union[int, str, None] = DEFAULT_BAUD_RATE,
        offset: Union[str, int, None] = DEFAULT_FLASH_OFFSET,
        erase: bool = True,
    ) -> "FlashOptions":
        """Builds options from raw form fields, falling back to the defaults for blanks."""
        if baud_rate in (None, ""):
            baud_rate = DEFAULT_BAUD_RATE
        if offset in (None, ""):
            offset = DEFAULT_FLASH_OFFSET
        return cls(firmware=firmware, baud_rate=baud_rate, flash_offset=offset, erase_before_write=erase)


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    percent: float = Field(ge=0.0, le=100.0)
    bytes_written: int = Field(ge=0)
    total_bytes: int = Field(ge=0)
    message: str

    def render(self) -> str:
        return f"[{self.phase.value}] {self.percent:5.1f}% {self.message}"


class FlashOutcome(BaseModel):
    chip: str
    baud_rate: int
    file_size_bytes: int
    duration_ms: int
