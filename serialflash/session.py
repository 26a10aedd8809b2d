import asyncio
import inspect
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Type, Union

from serialflash.error_classifier import cause_of, classify
from serialflash.errors import DeviceConnectionError, FailureCause, TransportError
from serialflash.models import DEFAULT_BAUD_RATE, DeviceDescriptor, PortInfo
from serialflash.transport import Transport

# Receives the candidate ports and returns the chosen device name, or None if the
# user dismissed the chooser. May be a plain function or a coroutine function.
PortSelector = Callable[[List[PortInfo]], Union[Optional[str], Awaitable[Optional[str]]]]
TransportFactory = Callable[[], Transport]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class DeviceSession:
    """Owns the connection to at most one device at a time."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        port_selector: Optional[PortSelector] = None,
        default_baud: int = DEFAULT_BAUD_RATE,
        open_timeout: float = 5.0,
    ) -> None:
        self.transport_factory: TransportFactory = transport_factory
        self.port_selector: Optional[PortSelector] = port_selector
        self.default_baud: int = default_baud
        self.open_timeout: float = open_timeout

        # Connect, disconnect and flash runs all take this lock, so there is
        # never more than one open transport or one operation on it.
        self._lock: asyncio.Lock = asyncio.Lock()
        self._transport: Optional[Transport] = None
        self._descriptor: Optional[DeviceDescriptor] = None

    @property
    def state(self) -> SessionState:
        if self._transport is not None and self._descriptor is not None:
            return SessionState.CONNECTED
        return SessionState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def descriptor(self) -> Optional[DeviceDescriptor]:
        return self._descriptor

    def _transport_class(self) -> Type[Transport]:
        factory = self.transport_factory
        return factory if inspect.isclass(factory) else type(factory())

    def check_transport_available(self) -> bool:
        """Returns whether this environment can reach serial devices at all. Never prompts."""
        try:
            return self._transport_class().is_available()
        except Exception as e:
            print(f"Error probing transport: {e}")
            return False

    def list_ports(self) -> List[PortInfo]:
        """Lists the ports the configured transport could open."""
        return self.transport_factory().list_ports()

    async def _select_port(self, ports: List[PortInfo]) -> Optional[str]:
        if self.port_selector is None:
            return None
        choice = self.port_selector(ports)
        if inspect.isawaitable(choice):
            choice = await choice
        return choice or None

    async def connect(self, port_selector: Optional[PortSelector] = None) -> DeviceDescriptor:
        """Asks for a port once, opens it and identifies the device.

        An existing connection is torn down first. On any failure the session
        is left disconnected and a classified DeviceConnectionError is raised.
        """
        if port_selector is not None:
            self.port_selector = port_selector
        async with self._lock:
            await self._teardown()
            if not self.check_transport_available():
                raise self._connection_error(FailureCause.UNSUPPORTED_ENVIRONMENT)

            transport: Transport = self.transport_factory()
            try:
                ports: List[PortInfo] = transport.list_ports()
                port: Optional[str] = await self._select_port(ports)
                if port is None:
                    raise self._connection_error(FailureCause.NO_DEVICE_SELECTED)
                try:
                    await asyncio.wait_for(transport.open(port, self.default_baud), timeout=self.open_timeout)
                    descriptor: DeviceDescriptor = await asyncio.wait_for(transport.identify(), timeout=self.open_timeout)
                except asyncio.TimeoutError:
                    raise self._connection_error(FailureCause.COMMUNICATION_FAILURE)
            except (DeviceConnectionError, asyncio.CancelledError):
                await self._close_quietly(transport)
                raise
            except Exception as e:
                await self._close_quietly(transport)
                cause: FailureCause = cause_of(e)
                # Anything else raised while opening is a link problem as far as the user is concerned.
                if cause in (FailureCause.UNKNOWN, FailureCause.TIMEOUT, FailureCause.DEVICE_BUSY):
                    cause = FailureCause.COMMUNICATION_FAILURE
                raise self._connection_error(cause) from e

            self._transport = transport
            self._descriptor = descriptor
            return descriptor

    async def disconnect(self) -> None:
        """Closes the session. Safe to call when not connected."""
        async with self._lock:
            await self._teardown()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[Transport]:
        """Holds the session for one operation and yields its open transport."""
        async with self._lock:
            if self._transport is None:
                raise TransportError(FailureCause.NOT_CONNECTED, "No device connected")
            yield self._transport

    async def _teardown(self) -> None:
        transport: Optional[Transport] = self._transport
        self._transport = None
        self._descriptor = None
        if transport is not None:
            await self._close_quietly(transport)

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            print(f"Error closing transport: {e}")

    def _connection_error(self, cause: FailureCause) -> DeviceConnectionError:
        classified = classify(cause)
        return DeviceConnectionError(cause, classified.message, classified.suggestion)
