"""Tests for serial port probing (pyserial loop:// URL, no hardware)."""

from cux_lib.port_probe import PortProbe, list_serial_ports, probe_serial_port


def test_loopback_url_is_available() -> None:
    probe = probe_serial_port("loop://")
    assert probe == PortProbe(address="loop://", available=True, error=None)


def test_missing_device_is_unavailable() -> None:
    probe = probe_serial_port("/dev/no-such-cux-port")

    assert probe.available is False
    assert probe.address == "/dev/no-such-cux-port"
    assert probe.error


def test_list_serial_ports_returns_device_names() -> None:
    ports = list_serial_ports()
    assert isinstance(ports, list)
    assert ports == sorted(ports)
