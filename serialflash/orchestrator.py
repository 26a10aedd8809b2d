import asyncio
import hashlib
import inspect
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from serialflash.error_classifier import classify
from serialflash.errors import FailureCause, FlashError, TransportError
from serialflash.models import (
    FlashOptions,
    FlashOutcome,
    Phase,
    ProgressEvent,
    build_phase_plan,
    format_bytes,
    phase_ranges,
)
from serialflash.session import DeviceSession
from serialflash.transport import Transport

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]

DEFAULT_CHUNK_COUNT: int = 50


class CancelToken:
    """Checked by a running flash at every phase and chunk boundary."""

    def __init__(self) -> None:
        self._cancelled: bool = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def split_chunks(total_bytes: int, chunk_count: int = DEFAULT_CHUNK_COUNT) -> List[Tuple[int, int]]:
    """Returns (position, length) pairs covering total_bytes in at most chunk_count equal chunks."""
    if total_bytes <= 0:
        return []
    chunk_size: int = math.ceil(total_bytes / chunk_count)
    return [(pos, min(chunk_size, total_bytes - pos)) for pos in range(0, total_bytes, chunk_size)]


class _FlashRun:
    """State of one run: the fixed phase plan, the active phase and the event sink."""

    def __init__(self, options: FlashOptions, on_progress: ProgressCallback, token: CancelToken) -> None:
        self.options: FlashOptions = options
        self.on_progress: ProgressCallback = on_progress
        self.token: CancelToken = token
        self.plan: Tuple[Phase, ...] = tuple(build_phase_plan(options.erase_before_write))
        self.ranges: Dict[Phase, Tuple[float, float]] = phase_ranges(list(self.plan))
        self.phase: Optional[Phase] = None

    async def emit(self, phase: Phase, bytes_written: int, message: str, percent: Optional[float] = None) -> None:
        self.phase = phase
        if percent is None:
            percent = self.ranges[phase][0]
        event = ProgressEvent(
            phase=phase,
            percent=percent,
            bytes_written=bytes_written,
            total_bytes=self.options.total_bytes,
            message=message,
        )
        result = self.on_progress(event)
        if inspect.isawaitable(result):
            await result
        # Hand control back to the loop so whoever renders progress can run.
        await asyncio.sleep(0)

    def check_cancelled(self) -> None:
        if self.token.cancelled:
            raise TransportError(FailureCause.CANCELLED, "Cancelled by user")


class FlashOrchestrator:
    """Drives Connecting → Syncing → [Erasing] → Writing → Verifying → Done on a connected session."""

    def __init__(
        self,
        session: DeviceSession,
        chunk_count: int = DEFAULT_CHUNK_COUNT,
        phase_timeout: float = 30.0,
        write_timeout: float = 5.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
    ) -> None:
        if chunk_count <= 0:
            raise ValueError("chunk_count must be positive")
        self.session: DeviceSession = session
        self.chunk_count: int = chunk_count
        self.phase_timeout: float = phase_timeout
        self.write_timeout: float = write_timeout
        self.max_retries: int = max_retries
        self.retry_backoff: float = retry_backoff

    async def run(
        self,
        options: Union[FlashOptions, Mapping[str, Any]],
        on_progress: ProgressCallback,
        cancel_token: Optional[CancelToken] = None,
    ) -> FlashOutcome:
        """Flashes the connected device and returns the outcome once Done is reported.

        Raises FlashError for every failure: NotConnected and InvalidOptions
        before any event is emitted, PhaseFailure (with the failing phase)
        once the pipeline has started.
        """
        if not self.session.is_connected:
            raise self._error(FailureCause.NOT_CONNECTED)
        options = self._validate(options)
        if self.session.is_busy:
            raise self._error(FailureCause.DEVICE_BUSY, detail="Another operation holds the device")

        run = _FlashRun(options, on_progress, cancel_token or CancelToken())
        started: float = time.monotonic()
        try:
            async with self.session.exclusive() as transport:
                await self._run_phases(run, transport)
        except FlashError:
            raise
        except TransportError as e:
            if e.cause == FailureCause.NOT_CONNECTED and run.phase is None:
                raise self._error(FailureCause.NOT_CONNECTED)
            raise self._error(e, run.phase)
        except Exception as e:
            raise self._error(e, run.phase)

        descriptor = self.session.descriptor
        return FlashOutcome(
            chip=descriptor.chip if descriptor else "Unknown",
            baud_rate=options.baud_rate,
            file_size_bytes=options.total_bytes,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _run_phases(self, run: _FlashRun, transport: Transport) -> None:
        options: FlashOptions = run.options
        total: int = options.total_bytes

        await run.emit(Phase.CONNECTING, 0, "Establishing connection...")
        run.check_cancelled()
        await self._call(transport.enter_bootloader())

        await run.emit(Phase.SYNCING, 0, "Syncing with device...")
        run.check_cancelled()
        await self._call(transport.sync())
        await self._call(transport.change_baud(options.baud_rate))

        if Phase.ERASING in run.plan:
            await run.emit(Phase.ERASING, 0, "Erasing flash memory...")
            run.check_cancelled()
            await self._call(transport.erase())

        start, end = run.ranges[Phase.WRITING]
        await run.emit(Phase.WRITING, 0, "Writing firmware...")
        chunks = split_chunks(total, self.chunk_count)
        written: int = 0
        for index, (position, length) in enumerate(chunks):
            run.check_cancelled()
            block: bytes = options.firmware[position:position + length]
            await self._write_block(transport, options.flash_offset + position, block)
            written = position + length
            percent: float = start + (end - start) * (index + 1) / len(chunks)
            await run.emit(
                Phase.WRITING,
                written,
                f"Writing: {format_bytes(written)}/{format_bytes(total)}",
                percent=percent,
            )

        await run.emit(Phase.VERIFYING, total, "Verifying flash...")
        run.check_cancelled()
        digest: str = hashlib.md5(options.firmware).hexdigest()
        await self._call(transport.verify(options.flash_offset, total, digest))

        run.check_cancelled()
        await run.emit(Phase.DONE, total, "Flash completed successfully!")

    async def _call(self, operation: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        timeout = self.phase_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(operation, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportError(FailureCause.TIMEOUT, f"Device did not respond within {timeout}s")

    async def _write_block(self, transport: Transport, address: int, block: bytes) -> None:
        """Writes one chunk, retrying busy or timed-out writes with a linear backoff."""
        last_error: Optional[TransportError] = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                await asyncio.sleep(self.retry_backoff * attempt)
            try:
                await asyncio.wait_for(transport.write_block(address, block), timeout=self.write_timeout)
                return
            except asyncio.TimeoutError:
                last_error = TransportError(
                    FailureCause.TIMEOUT,
                    f"Write of {len(block)} bytes at 0x{address:x} timed out after {self.write_timeout}s",
                )
            except TransportError as e:
                if not e.retryable:
                    raise
                last_error = e
        assert last_error is not None
        raise last_error

    def _validate(self, options: Union[FlashOptions, Mapping[str, Any]]) -> FlashOptions:
        try:
            if isinstance(options, FlashOptions):
                # Re-check instances too: model_construct() skips validation.
                return FlashOptions.model_validate(options.model_dump())
            return FlashOptions.model_validate(dict(options))
        except (ValidationError, TypeError, ValueError) as e:
            raise self._error(FailureCause.INVALID_OPTIONS, detail=str(e))

    def _error(
        self,
        cause: Union[FailureCause, BaseException],
        phase: Optional[Phase] = None,
        detail: str = "",
    ) -> FlashError:
        classified = classify(cause)
        if not detail and isinstance(cause, BaseException):
            detail = str(cause)
        return FlashError(classified.cause, classified.message, classified.suggestion, phase=phase, detail=detail)
