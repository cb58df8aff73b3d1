"""Serial port checks used before handing an address to the device link."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from cux_lib import protocol
from cux_lib.errors import CUXError

logger = logging.getLogger(__name__)


@dataclass
class PortProbe:
    """Result of trying to open a serial port.

    Attributes:
        address: Device name or pyserial URL that was probed.
        available: True if the port opened at the 14CUX line settings.
        error: Reason the port could not be opened, if any.
    """

    address: str
    available: bool
    error: Optional[str] = None


def _import_serial():
    try:
        import serial  # type: ignore
    except ImportError as e:
        raise CUXError("pyserial not installed. Run: pip install pyserial") from e
    return serial


def probe_serial_port(address: str, timeout_s: float = protocol.SERIAL_PROBE_TIMEOUT_S) -> PortProbe:
    """Open and immediately close ``address`` at 7812 baud, 8N1.

    Accepts anything ``serial.serial_for_url`` does, so "loop://" works
    without hardware.

    Args:
        address: Serial device (e.g. "/dev/ttyUSB0") or pyserial URL
        timeout_s: Read timeout applied to the probe

    Returns:
        PortProbe describing whether the port is usable
    """
    serial = _import_serial()

    try:
        port = serial.serial_for_url(
            address,
            baudrate=protocol.SERIAL_BAUD,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout_s,
            rtscts=False,
            dsrdtr=False,
            xonxoff=False,
        )
    except (serial.SerialException, ValueError, OSError) as e:
        logger.warning(f"Port {address} unavailable: {e}")
        return PortProbe(address=address, available=False, error=str(e))

    try:
        available = bool(port.is_open)
    finally:
        port.close()

    logger.debug(f"Port {address} probed OK at {protocol.SERIAL_BAUD} baud")
    return PortProbe(address=address, available=available)


def list_serial_ports() -> List[str]:
    """Device names of the serial ports present on this machine."""
    _import_serial()
    from serial.tools import list_ports  # type: ignore

    return sorted(info.device for info in list_ports.comports())
