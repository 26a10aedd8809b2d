from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError
from typing import List, Dict, Any, Optional, AsyncGenerator
import os
import asyncio
import uuid

from serialflash.error_classifier import classify
from serialflash.errors import DeviceConnectionError, FailureCause, FlashError
from serialflash.models import (
    DEFAULT_BAUD_RATE,
    DEFAULT_FLASH_OFFSET,
    MAX_FIRMWARE_SIZE,
    FlashOptions,
    FlashOutcome,
    PortInfo,
    ProgressEvent,
    build_phase_plan,
    format_bytes,
)
from serialflash.orchestrator import CancelToken, FlashOrchestrator
from serialflash.session import DeviceSession
from serialflash.steps import FlashLog, StepTracker
from serialflash.transport import Transport, get_transport_class

app = FastAPI(title="SerialFlash API", version="0.3.0")

# Configuration
BACKEND: str = os.getenv("SERIALFLASH_BACKEND", "simulated")
FIRMWARE_DIR: str = os.path.abspath(os.path.expanduser(os.getenv("FIRMWARE_DIR", "~/serialflash/firmware")))
DEFAULT_BAUD: int = int(os.getenv("SERIALFLASH_DEFAULT_BAUD", str(DEFAULT_BAUD_RATE)))
OPEN_TIMEOUT: float = float(os.getenv("SERIALFLASH_OPEN_TIMEOUT", "5.0"))
SIM_DELAY_SCALE: float = float(os.getenv("SERIALFLASH_SIM_DELAY_SCALE", "1.0"))

# Ensure directories exist
os.makedirs(FIRMWARE_DIR, exist_ok=True)


def make_transport() -> Transport:
    transport_cls = get_transport_class(BACKEND)
    return transport_cls(delay_scale=SIM_DELAY_SCALE)


session = DeviceSession(make_transport, default_baud=DEFAULT_BAUD, open_timeout=OPEN_TIMEOUT)
orchestrator = FlashOrchestrator(session)

# HTTP status per failure cause
STATUS_CODES: Dict[FailureCause, int] = {
    FailureCause.NO_DEVICE_SELECTED: 400,
    FailureCause.INVALID_OPTIONS: 400,
    FailureCause.PERMISSION_DENIED: 403,
    FailureCause.NOT_CONNECTED: 409,
    FailureCause.DEVICE_BUSY: 409,
    FailureCause.UNSUPPORTED_ENVIRONMENT: 501,
    FailureCause.COMMUNICATION_FAILURE: 502,
    FailureCause.TIMEOUT: 504,
}


def error_detail(cause: FailureCause, message: str, suggestion: str) -> Dict[str, str]:
    return {"cause": cause.value, "message": message, "suggestion": suggestion}


def http_error(cause: FailureCause, detail: str = "") -> HTTPException:
    classified = classify(cause)
    body: Dict[str, str] = error_detail(classified.cause, classified.message, classified.suggestion)
    if detail:
        body["detail"] = detail
    return HTTPException(status_code=STATUS_CODES.get(cause, 500), detail=body)


class TaskStore:
    def __init__(self) -> None:
        self.tasks = {}
        self._trackers: Dict[str, StepTracker] = {}
        self._logs: Dict[str, FlashLog] = {}
        self._tokens: Dict[str, CancelToken] = {}

    def create_task(self, task_id: str, options: FlashOptions) -> CancelToken:
        plan = build_phase_plan(options.erase_before_write)
        tracker = StepTracker(plan)
        token = CancelToken()
        self._trackers[task_id] = tracker
        self._logs[task_id] = FlashLog()
        self._tokens[task_id] = token
        self.tasks[task_id] = {
            "status": "running",
            "logs": [],
            "completed": False,
            "cancelled": False,
            "progress": 0.0,
            "bytes_written": 0,
            "total_bytes": options.total_bytes,
            "steps": tracker.as_list(),
            "summary": None,
            "error": None,
        }
        return token

    def record_event(self, task_id: str, event: ProgressEvent) -> None:
        if task_id not in self.tasks:
            return
        tracker = self._trackers[task_id]
        log = self._logs[task_id]
        tracker.on_event(event)
        log.on_event(event)
        task = self.tasks[task_id]
        task["steps"] = tracker.as_list()
        task["logs"] = list(log.lines)
        task["progress"] = log.percent
        task["bytes_written"] = log.bytes_written

    def add_log(self, task_id: str, line: str) -> None:
        if task_id in self.tasks:
            self._logs[task_id].add(line)
            self.tasks[task_id]["logs"] = list(self._logs[task_id].lines)

    def complete_task(self, task_id: str, outcome: FlashOutcome) -> None:
        if task_id in self.tasks:
            self._trackers[task_id].on_success()
            task = self.tasks[task_id]
            task["steps"] = self._trackers[task_id].as_list()
            task["status"] = "completed"
            task["completed"] = True
            task["summary"] = outcome.model_dump()

    def fail_task(self, task_id: str, error: FlashError) -> None:
        if task_id in self.tasks:
            self._trackers[task_id].on_failure()
            task = self.tasks[task_id]
            task["steps"] = self._trackers[task_id].as_list()
            task["status"] = "cancelled" if error.cause == FailureCause.CANCELLED else "failed"
            task["completed"] = True
            task["error"] = error.to_dict()

    def cancel_task(self, task_id: str) -> None:
        if task_id in self.tasks:
            self.tasks[task_id]["cancelled"] = True
            self._tokens[task_id].cancel()
            self.add_log(task_id, "!!! TASK CANCELLED BY USER !!!")

    def is_cancelled(self, task_id: str) -> bool:
        return self.tasks.get(task_id, {}).get("cancelled", False)

    def get_task(self, task_id: str):
        return self.tasks.get(task_id)


task_store = TaskStore()


class FlashRequest(BaseModel):
    firmware: str  # file name inside FIRMWARE_DIR
    baud_rate: Optional[int] = DEFAULT_BAUD_RATE
    offset: Optional[str] = DEFAULT_FLASH_OFFSET
    erase: bool = True


def load_firmware(name: str) -> bytes:
    """File intake: only .bin files from FIRMWARE_DIR, up to the maximum image size."""
    filename: str = os.path.basename(name)
    if not filename or not filename.lower().endswith(".bin"):
        raise http_error(FailureCause.INVALID_OPTIONS, "Please select a .bin firmware file")
    path: str = os.path.join(FIRMWARE_DIR, filename)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail=f"Firmware '{filename}' not found in {FIRMWARE_DIR}")
    if os.path.getsize(path) > MAX_FIRMWARE_SIZE:
        raise http_error(FailureCause.INVALID_OPTIONS, f"File too large. Maximum size is {format_bytes(MAX_FIRMWARE_SIZE)}")
    with open(path, "rb") as f:
        return f.read()


@app.get("/api/status")
async def get_status() -> Dict[str, Any]:
    descriptor = session.descriptor
    return {
        "message": "SerialFlash API is running",
        "backend": BACKEND,
        "transport_available": session.check_transport_available(),
        "connected": session.is_connected,
        "busy": session.is_busy,
        "device": descriptor.model_dump() if descriptor else None,
    }


@app.get("/devices/discover")
async def discover_devices() -> Dict[str, List[Dict[str, Any]]]:
    """Lists the ports the current backend can open."""
    ports: List[PortInfo] = []
    try:
        ports = await asyncio.to_thread(session.list_ports)
    except Exception as e:
        print(f"Error discovering serial ports: {e}")
    return {"ports": [p.model_dump() for p in ports]}


@app.post("/device/connect")
async def connect_device(port: Optional[str] = None) -> Dict[str, Any]:
    """Connects to the port the user picked. Replaces any existing connection."""
    try:
        descriptor = await session.connect(port_selector=lambda ports: port)
    except DeviceConnectionError as e:
        raise HTTPException(
            status_code=STATUS_CODES.get(e.cause, 500),
            detail=error_detail(e.cause, e.message, e.suggestion),
        )
    return {"message": f"Connected to {descriptor.chip} at {descriptor.port_label}", "device": descriptor.model_dump()}


@app.post("/device/disconnect")
async def disconnect_device() -> Dict[str, str]:
    await session.disconnect()
    return {"message": "Disconnected"}


@app.get("/firmware")
async def list_firmware() -> Dict[str, List[Dict[str, Any]]]:
    """Lists .bin images available for flashing."""
    images = []
    for name in sorted(os.listdir(FIRMWARE_DIR)):
        path: str = os.path.join(FIRMWARE_DIR, name)
        if name.lower().endswith(".bin") and os.path.isfile(path):
            images.append({"name": name, "size": os.path.getsize(path)})
    return {"firmware": images}


@app.post("/flash")
async def flash_device(req: FlashRequest) -> StreamingResponse:
    """Flashes a firmware image and streams progress lines."""
    if not session.is_connected:
        raise http_error(FailureCause.NOT_CONNECTED)
    if session.is_busy:
        raise http_error(FailureCause.DEVICE_BUSY)

    firmware: bytes = load_firmware(req.firmware)
    try:
        options = FlashOptions.from_user_input(firmware, baud_rate=req.baud_rate, offset=req.offset, erase=req.erase)
    except ValidationError as e:
        raise http_error(FailureCause.INVALID_OPTIONS, str(e))

    task_id: str = f"task_{uuid.uuid4().hex[:12]}"
    token: CancelToken = task_store.create_task(task_id, options)

    async def generate() -> AsyncGenerator[str, None]:
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(event: ProgressEvent) -> None:
            task_store.record_event(task_id, event)
            queue.put_nowait(f">>> {event.render()}\n")

        async def run_flash() -> None:
            try:
                outcome: FlashOutcome = await orchestrator.run(options, on_progress, cancel_token=token)
                task_store.complete_task(task_id, outcome)
                queue.put_nowait(
                    f">>> Flashed {format_bytes(outcome.file_size_bytes)} to {outcome.chip} "
                    f"at {outcome.baud_rate} baud in {outcome.duration_ms // 1000}s\n"
                )
            except FlashError as e:
                task_store.fail_task(task_id, e)
                where: str = f" during {e.phase.value}" if e.phase else ""
                queue.put_nowait(f"!!! Flash failed{where}: {e.message}\n")
                queue.put_nowait(f"!!! {e.suggestion}\n")
            finally:
                queue.put_nowait(None)

        yield f">>> Flashing {req.firmware} ({format_bytes(options.total_bytes)}) at 0x{options.flash_offset:x}...\n"
        flash_task = asyncio.create_task(run_flash())
        try:
            while True:
                line: Optional[str] = await queue.get()
                if line is None:
                    break
                yield line
        finally:
            # Client went away mid-stream: stop at the next boundary and release the device.
            if not flash_task.done():
                token.cancel()
                await flash_task

    return StreamingResponse(generate(), media_type="text/plain", headers={"X-Task-Id": task_id})


@app.get("/task/status/{task_id}")
async def get_task_status(task_id: str):
    task = task_store.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.post("/task/cancel/{task_id}")
async def cancel_task_operation(task_id: str) -> Dict[str, str]:
    task = task_store.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if task_store.is_cancelled(task_id):
        return {"message": "Task already cancelled"}
    task_store.cancel_task(task_id)
    return {"message": "Cancellation requested"}
