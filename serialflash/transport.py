import asyncio
import hashlib
import os
import random
from typing import Dict, List, Optional, Type

import serial
import serial.tools.list_ports

from serialflash.errors import FailureCause, TransportError
from serialflash.models import DeviceDescriptor, PortInfo

KNOWN_CHIPS: List[str] = ["ESP32", "ESP32-S2", "ESP32-S3", "ESP32-C3", "ESP8266"]
ESPRESSIF_OUI: str = "24:6F:28"

# Flash size assumed by the simulated device image.
SIMULATED_FLASH_SIZE: int = 32 * 1024 * 1024


class Transport:
    """Slots a device backend fills for one session.

    The session owns exactly one Transport at a time. Every device operation is
    a coroutine so the orchestrator can bound it with a timeout and yield to the
    event loop between steps.
    """

    name: str = "base"

    @classmethod
    def is_available(cls) -> bool:
        """Capability probe. Must not prompt the user or touch a device."""
        return False

    def list_ports(self) -> List[PortInfo]:
        raise NotImplementedError(f"{self.__class__.__name__}.list_ports() not implemented")

    @property
    def is_open(self) -> bool:
        raise NotImplementedError(f"{self.__class__.__name__}.is_open not implemented")

    async def open(self, port: str, baud_rate: int) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.open() not implemented")

    async def close(self) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.close() not implemented")

    async def identify(self) -> DeviceDescriptor:
        raise NotImplementedError(f"{self.__class__.__name__}.identify() not implemented")

    async def enter_bootloader(self) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.enter_bootloader() not implemented")

    async def sync(self) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.sync() not implemented")

    async def change_baud(self, baud_rate: int) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.change_baud() not implemented")

    async def erase(self) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.erase() not implemented")

    async def write_block(self, offset: int, data: bytes) -> None:
        raise NotImplementedError(f"{self.__class__.__name__}.write_block() not implemented")

    async def verify(self, offset: int, length: int, digest: str) -> None:
        """Re-reads `length` bytes at `offset` and raises CHECKSUM_MISMATCH if the MD5 differs."""
        raise NotImplementedError(f"{self.__class__.__name__}.verify() not implemented")


class SimulatedTransport(Transport):
    """In-memory device used when no real hardware protocol is wired in.

    Identity is fabricated the way a browser demo would (random chip family,
    Espressif MAC prefix). The flash is a real byte image so erase, write and
    verify behave consistently: verify fails if a write was lost or corrupted.

    Fault injection for tests and demos:
      - fail_on:        {"open"|"sync"|"erase"|"write"|"verify"|...: FailureCause}
      - busy_writes:    the first N block writes report DEVICE_BUSY
      - corrupt_writes: writes land with a flipped byte, so verify fails
    """

    name = "simulated"

    # Seconds per operation before delay_scale is applied.
    DELAYS: Dict[str, float] = {
        "open": 0.0,
        "identify": 1.0,
        "enter_bootloader": 0.5,
        "sync": 0.8,
        "change_baud": 0.0,
        "erase": 1.5,
        "write": 0.05,
        "verify": 1.0,
    }

    def __init__(
        self,
        delay_scale: float = 1.0,
        fail_on: Optional[Dict[str, FailureCause]] = None,
        busy_writes: int = 0,
        corrupt_writes: bool = False,
        chip: Optional[str] = None,
        seed: Optional[int] = None,
        ports: Optional[List[PortInfo]] = None,
    ) -> None:
        self.delay_scale: float = delay_scale
        self.fail_on: Dict[str, FailureCause] = dict(fail_on or {})
        self.busy_writes: int = busy_writes
        self.corrupt_writes: bool = corrupt_writes
        self._chip: Optional[str] = chip
        self._rng: random.Random = random.Random(seed)
        self._ports: List[PortInfo] = ports if ports is not None else [
            PortInfo(device="sim0", description="Simulated ESP device", usb=True)
        ]
        self._port: Optional[str] = None
        self.baud_rate: int = 0
        # Grows on demand; anything past the end reads back as erased (0xFF).
        self.flash: bytearray = bytearray()
        self.synced: bool = False
        self.write_attempts: int = 0

    @classmethod
    def is_available(cls) -> bool:
        return True

    def list_ports(self) -> List[PortInfo]:
        return list(self._ports)

    @property
    def is_open(self) -> bool:
        return self._port is not None

    @property
    def port(self) -> Optional[str]:
        return self._port

    async def _step(self, operation: str) -> None:
        """Simulated device latency, plus any injected fault for this operation."""
        delay: float = self.DELAYS.get(operation, 0.0) * self.delay_scale
        if delay > 0:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        cause: Optional[FailureCause] = self.fail_on.get(operation)
        if cause is not None:
            raise TransportError(cause, f"Simulated {cause.value} during {operation}")

    def _require_open(self) -> None:
        if self._port is None:
            raise TransportError(FailureCause.COMMUNICATION_FAILURE, "Port is not open")

    async def open(self, port: str, baud_rate: int) -> None:
        if not any(p.device == port for p in self._ports):
            raise TransportError(FailureCause.COMMUNICATION_FAILURE, f"Could not open port {port}: no such device")
        await self._step("open")
        self._port = port
        self.baud_rate = baud_rate
        self.synced = False

    async def close(self) -> None:
        self._port = None
        self.synced = False

    async def identify(self) -> DeviceDescriptor:
        self._require_open()
        await self._step("identify")
        if self._chip is None:
            self._chip = self._rng.choice(KNOWN_CHIPS)
        nic: str = ":".join(f"{self._rng.randrange(256):02X}" for _ in range(3))
        return DeviceDescriptor(chip=self._chip, port_label=self._port or "", mac=f"{ESPRESSIF_OUI}:{nic}")

    async def enter_bootloader(self) -> None:
        self._require_open()
        await self._step("enter_bootloader")

    async def sync(self) -> None:
        self._require_open()
        await self._step("sync")
        self.synced = True

    async def change_baud(self, baud_rate: int) -> None:
        self._require_open()
        await self._step("change_baud")
        self.baud_rate = baud_rate

    async def erase(self) -> None:
        self._require_open()
        await self._step("erase")
        self.flash = bytearray()

    def read_flash(self, offset: int, length: int) -> bytes:
        data: bytes = bytes(self.flash[offset:offset + length])
        return data + b"\xff" * (length - len(data))

    async def write_block(self, offset: int, data: bytes) -> None:
        self._require_open()
        self.write_attempts += 1
        if self.busy_writes > 0:
            self.busy_writes -= 1
            raise TransportError(FailureCause.DEVICE_BUSY, "Device busy, block not accepted")
        await self._step("write")
        end: int = offset + len(data)
        if end > SIMULATED_FLASH_SIZE:
            raise TransportError(
                FailureCause.COMMUNICATION_FAILURE,
                f"Write of {len(data)} bytes at 0x{offset:x} runs past end of flash",
            )
        block = bytearray(data)
        if self.corrupt_writes and block:
            block[0] ^= 0xFF
        if end > len(self.flash):
            self.flash.extend(b"\xff" * (end - len(self.flash)))
        self.flash[offset:end] = block

    async def verify(self, offset: int, length: int, digest: str) -> None:
        self._require_open()
        await self._step("verify")
        actual: str = hashlib.md5(self.read_flash(offset, length)).hexdigest()
        if actual != digest:
            raise TransportError(
                FailureCause.CHECKSUM_MISMATCH,
                f"MD5 of flash region 0x{offset:x}+{length} is {actual}, expected {digest}",
            )


class SerialTransport(SimulatedTransport):
    """A real serial port with the simulated device protocol on top.

    Port discovery, opening, baud changes and the DTR/RTS boot-mode reset are
    real pyserial operations; chip identification and the flash slots are
    inherited from SimulatedTransport until a vendor protocol is plugged in.
    """

    name = "serial"

    def __init__(self, read_timeout: float = 1.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.read_timeout: float = read_timeout
        self._serial: Optional[serial.Serial] = None

    @classmethod
    def is_available(cls) -> bool:
        return os.name in ("posix", "nt")

    def list_ports(self) -> List[PortInfo]:
        ports: List[PortInfo] = []
        for p in serial.tools.list_ports.comports():
            ports.append(PortInfo(
                device=p.device,
                description=p.description or p.device,
                usb=p.vid is not None,
            ))
        return ports

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self, port: str, baud_rate: int) -> None:
        opener = asyncio.ensure_future(
            asyncio.to_thread(serial.Serial, port, baud_rate, timeout=self.read_timeout)
        )
        try:
            self._serial = await asyncio.shield(opener)
        except asyncio.CancelledError:
            # The worker thread cannot be stopped; close the port if it opens after we gave up.
            opener.add_done_callback(_close_abandoned_port)
            raise
        except PermissionError as e:
            raise TransportError(FailureCause.PERMISSION_DENIED, str(e))
        except (serial.SerialException, OSError) as e:
            text: str = str(e).lower()
            if "permission denied" in text or "access is denied" in text:
                raise TransportError(FailureCause.PERMISSION_DENIED, str(e))
            raise TransportError(FailureCause.COMMUNICATION_FAILURE, str(e))
        self._port = port
        self.baud_rate = baud_rate
        self.synced = False

    async def close(self) -> None:
        ser: Optional[serial.Serial] = self._serial
        self._serial = None
        self._port = None
        self.synced = False
        if ser is not None:
            try:
                await asyncio.to_thread(ser.close)
            except (serial.SerialException, OSError) as e:
                print(f"Error closing serial port: {e}")

    def _require_open(self) -> None:
        if not self.is_open:
            raise TransportError(FailureCause.COMMUNICATION_FAILURE, "Serial port is not open")

    async def enter_bootloader(self) -> None:
        """Classic auto-reset: pulse EN via RTS while holding IO0 low via DTR."""
        self._require_open()
        ser: serial.Serial = self._serial
        try:
            ser.dtr = False
            ser.rts = True
            await asyncio.sleep(0.1)
            ser.dtr = True
            ser.rts = False
            await asyncio.sleep(0.05)
            ser.dtr = False
            await asyncio.to_thread(ser.reset_input_buffer)
        except (serial.SerialException, OSError) as e:
            raise TransportError(FailureCause.COMMUNICATION_FAILURE, f"Boot-mode reset failed: {e}")

    async def change_baud(self, baud_rate: int) -> None:
        self._require_open()
        try:
            self._serial.baudrate = baud_rate
        except (serial.SerialException, ValueError) as e:
            raise TransportError(FailureCause.COMMUNICATION_FAILURE, f"Could not switch to {baud_rate} baud: {e}")
        self.baud_rate = baud_rate


def _close_abandoned_port(opener: "asyncio.Future[serial.Serial]") -> None:
    if opener.cancelled() or opener.exception() is not None:
        return
    try:
        opener.result().close()
    except (serial.SerialException, OSError) as e:
        print(f"Error closing abandoned serial port: {e}")


TRANSPORTS: Dict[str, Type[Transport]] = {
    SimulatedTransport.name: SimulatedTransport,
    SerialTransport.name: SerialTransport,
}


def get_transport_class(name: str) -> Type[Transport]:
    try:
        return TRANSPORTS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown transport '{name}'. Choose one of: {', '.join(sorted(TRANSPORTS))}")
