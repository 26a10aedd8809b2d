import pytest
import sys
import os
from unittest.mock import MagicMock, patch

# Add the repository root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from serialflash.models import FlashOptions
from serialflash.orchestrator import FlashOrchestrator
from serialflash.session import DeviceSession
from serialflash.transport import SimulatedTransport


def make_firmware(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


@pytest.fixture
def transport():
    """A simulated device with no latency and a fixed identity."""
    return SimulatedTransport(delay_scale=0, chip="ESP32", seed=1)


@pytest.fixture
def session(transport):
    return DeviceSession(lambda: transport, port_selector=lambda ports: ports[0].device)


@pytest.fixture
def orchestrator(session):
    return FlashOrchestrator(session, retry_backoff=0)


@pytest.fixture
def firmware():
    return make_firmware(4096)


@pytest.fixture
def options(firmware):
    return FlashOptions.from_user_input(firmware, baud_rate=115200, offset="0x1000", erase=True)


@pytest.fixture
def mock_serial():
    """Mocks serial.Serial and serial.tools.list_ports.comports"""
    with patch("serial.Serial") as mock_cls, \
         patch("serial.tools.list_ports.comports") as mock_comports:
        port_mock = MagicMock()
        port_mock.is_open = True
        mock_cls.return_value = port_mock

        usb_port = MagicMock()
        usb_port.device = "/dev/ttyUSB0"
        usb_port.description = "CP2102 USB to UART Bridge Controller"
        usb_port.vid = 0x10C4
        uart_port = MagicMock()
        uart_port.device = "/dev/ttyS0"
        uart_port.description = ""
        uart_port.vid = None
        mock_comports.return_value = [usb_port, uart_port]

        yield mock_cls, mock_comports, port_mock
