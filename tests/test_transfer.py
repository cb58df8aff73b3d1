"""Tests for the cancellable PROM dump."""

import threading
from pathlib import Path

import pytest

from cux_lib import protocol
from cux_lib.errors import CUXError, LinkIOError
from cux_lib.models import Notification
from cux_lib.notifications import NotificationHub
from cux_lib.transfer import CancellableTransfer, save_image
from fakes.fake_link import FakeDeviceLink


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def link() -> FakeDeviceLink:
    fake = FakeDeviceLink()
    fake.connect("/dev/fake")
    return fake


def _kinds(hub: NotificationHub):
    return [e.kind for e in hub.recent()]


def test_successful_dump_hands_over_image(hub, link) -> None:
    transfer = CancellableTransfer(hub)

    assert transfer.run(link) is True

    image = transfer.image
    assert image is not None
    assert len(image) == protocol.PROM_SIZE
    assert image[:4] == bytes([0, 1, 2, 3])

    events = hub.recent()
    assert [e.kind for e in events] == [Notification.PROM_IMAGE_READY]
    assert events[0].payload == image


def test_cancel_mid_transfer_discards_result(hub) -> None:
    """A cancel during the dump suppresses both completion notifications."""
    link = FakeDeviceLink(dump_delay_s=2.0)
    link.connect("/dev/fake")
    transfer = CancellableTransfer(hub)
    result = {}

    worker = threading.Thread(target=lambda: result.setdefault("ok", transfer.run(link)))
    worker.start()
    assert link.dump_started.wait(timeout=2.0)

    transfer.request_cancel(link)
    worker.join(timeout=5.0)

    assert not worker.is_alive()
    assert result["ok"] is False
    assert transfer.image is None
    assert _kinds(hub) == []
    assert not transfer.cancel_requested()

    # The next dump is unaffected
    link.dump_delay_s = 0.0
    assert transfer.run(link) is True
    assert _kinds(hub) == [Notification.PROM_IMAGE_READY]


def test_cancel_before_start_skips_dump(hub, link) -> None:
    transfer = CancellableTransfer(hub)
    transfer.request_cancel(None)

    assert transfer.run(link) is False
    assert link.call_count("dump_rom") == 0
    assert not transfer.cancel_requested()

    assert transfer.run(link) is True


def test_link_failure_emits_read_failed(hub, link) -> None:
    link.dump_ok = False
    transfer = CancellableTransfer(hub)

    assert transfer.run(link) is False
    assert transfer.image is None
    assert _kinds(hub) == [Notification.PROM_IMAGE_READ_FAILED]


def test_short_image_is_a_failure(hub, link) -> None:
    """The image is only handed over when exactly PROM_SIZE bytes arrived."""
    link.dump_length = 100
    transfer = CancellableTransfer(hub)

    assert transfer.run(link) is False
    assert _kinds(hub) == [Notification.PROM_IMAGE_READ_FAILED]

    link.dump_length = None
    assert transfer.run(link) is True
    assert len(transfer.image) == protocol.PROM_SIZE


def test_raised_link_error_is_a_failure(hub, link) -> None:
    class BrokenLink(FakeDeviceLink):
        def dump_rom(self, buffer: bytearray) -> bool:
            raise LinkIOError("checksum mismatch")

    broken = BrokenLink()
    broken.connect("/dev/fake")
    transfer = CancellableTransfer(hub)

    assert transfer.run(broken) is False
    assert _kinds(hub) == [Notification.PROM_IMAGE_READ_FAILED]


def test_release_drops_image(hub, link) -> None:
    transfer = CancellableTransfer(hub)
    transfer.run(link)
    transfer.release()
    assert transfer.image is None


def test_save_image_writes_raw_bytes(tmp_path: Path) -> None:
    image = bytes(i & 0xFF for i in range(protocol.PROM_SIZE))
    out = tmp_path / "prom.bin"

    saved = save_image(image, out)

    assert Path(saved) == out.resolve()
    assert out.read_bytes() == image


def test_save_image_rejects_wrong_size(tmp_path: Path) -> None:
    out = tmp_path / "prom.bin"
    with pytest.raises(CUXError):
        save_image(b"\x00" * 100, out)
    assert not out.exists()
